"""Authorization configuration.

Environment-aware configuration for the reference monitor: where rules
are loaded from, whether they are re-read on every engine lookup, and
the test-only access control bypass.
"""

import os
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from packages.authz.errors import AuthorizationUsageError
from packages.authz.models import GUEST_ROLE

DEFAULT_RULES_PATH = "config/authorization_rules.yaml"


class AuthzMode(str, Enum):
    """Deployment mode."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"
    TEST = "test"


class AuthzConfig(BaseModel):
    """Reference monitor configuration.

    Rules:
    - Production: rules are loaded once, reloading on lookup is forbidden
    - Development: rules may be re-read on every engine lookup
    - Test: the access control bypass may be switched on
    """

    mode: AuthzMode = Field(
        default=AuthzMode.DEVELOPMENT,
        description="Environment mode"
    )
    rules_path: str = Field(
        default=DEFAULT_RULES_PATH,
        description="Default rule source (YAML)"
    )
    reload_rules: bool = Field(
        default=False,
        description="Rebuild the engine on every get_engine() call (development only)"
    )
    default_role: str = Field(
        default=GUEST_ROLE,
        description="Role assumed for subjects without roles"
    )

    @model_validator(mode="after")
    def validate_reload(self) -> "AuthzConfig":
        """Forbid rule reloading in production."""
        if self.mode == AuthzMode.PRODUCTION and self.reload_rules:
            raise ValueError(
                "Rule reloading is not allowed in production mode"
            )
        return self

    @classmethod
    def from_env(cls) -> "AuthzConfig":
        """Create configuration from environment variables."""
        mode_str = os.getenv("AUTHZ_MODE", "development").lower()

        return cls(
            mode=AuthzMode(mode_str),
            rules_path=os.getenv("AUTHZ_RULES_PATH", DEFAULT_RULES_PATH),
            reload_rules=os.getenv("AUTHZ_RELOAD_RULES", "false").lower() == "true",
        )

    def should_reload(self) -> bool:
        return self.mode == AuthzMode.DEVELOPMENT and self.reload_rules


_config: AuthzConfig | None = None
_ignore_access_control = False


def get_config() -> AuthzConfig:
    """Get the process configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AuthzConfig.from_env()
    return _config


def set_config(config: AuthzConfig | None) -> None:
    """Replace the process configuration (None re-reads the environment)."""
    global _config
    _config = config


def ignore_access_control(state: bool | None = None) -> bool:
    """Get or set the test-only access control bypass.

    Setting the flag outside test mode raises AuthorizationUsageError.
    The bypass is only in effect while the mode is ``test``.
    """
    global _ignore_access_control
    is_test = get_config().mode == AuthzMode.TEST
    if state is not None:
        if state and not is_test:
            raise AuthorizationUsageError(
                "Access control can only be ignored in test mode", "bypass_refused"
            )
        _ignore_access_control = state
    return is_test and _ignore_access_control

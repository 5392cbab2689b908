"""Reference monitor.

Decides whether a subject holds a privilege in a context, optionally on
a specific object, and derives the obligations under which a privilege
would be granted.
"""

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from packages.authz.attributes import AttributeEvaluator, EvaluationContext
from packages.authz.config import AuthzConfig, get_config, ignore_access_control
from packages.authz.errors import (
    AttributeAuthorizationError,
    AuthorizationUsageError,
    NotAuthorized,
    RuleSourceError,
)
from packages.authz.hierarchy import HierarchyResolver
from packages.authz.models import (
    AuthorizationRule,
    AuthzDecision,
    DecisionKind,
    DenialReason,
    RuleSet,
)
from packages.authz.reader import load_rules
from packages.authz.rules import RuleIndex
from packages.authz.subjects import Subject, SubjectProvider, SubjectScope

logger = logging.getLogger(__name__)

RuleSource = RuleSet | str | Path | None


def _load_default(config: AuthzConfig) -> RuleSet:
    try:
        return load_rules(config.rules_path)
    except (OSError, UnicodeDecodeError, yaml.YAMLError, RuleSourceError) as e:
        logger.warning(
            "Could not load authorization rules from %s, denying everything: %s",
            config.rules_path, e
        )
        return RuleSet()


def infer_context(obj: Any) -> str | None:
    """Context of an object: its table name, if it has one."""
    if obj is None:
        return None
    cls = type(obj)
    for name in ("__tablename__", "table_name"):
        value = getattr(cls, name, None)
        if isinstance(value, str):
            return value
    return None


class ReferenceMonitor:
    """Authorization engine.

    Usage:
        engine = ReferenceMonitor(rule_set, subject_provider=lambda: request.user)

        engine.permit("read", context="projects")        # True or raises
        if engine.permit_query("read", obj=project):
            ...
        engine.obligations("read", context="projects")  # [{...}, ...]

    The instance is immutable once built; to change rules build a new one
    (see reload_engine).
    """

    def __init__(
        self,
        source: RuleSource = None,
        subject_provider: SubjectProvider | None = None,
        config: AuthzConfig | None = None,
    ):
        """Initialize the engine.

        Args:
            source: A RuleSet, a path to a YAML rule file, or None for the
                configured default file (missing or broken file means no rules)
            subject_provider: Called for the subject when a call passes none
            config: Configuration, defaults to the process configuration
        """
        self.config = config or get_config()
        if source is None:
            rule_set = _load_default(self.config)
        elif isinstance(source, RuleSet):
            rule_set = source
        else:
            rule_set = load_rules(source)

        self._roles = tuple(rule_set.roles)
        self._privileges = tuple(rule_set.privileges)
        self.hierarchy = HierarchyResolver(
            rule_set.role_hierarchy,
            rule_set.privilege_hierarchy,
            default_role=self.config.default_role,
        )
        self.rules = RuleIndex(rule_set.auth_rules)
        self.evaluator = AttributeEvaluator()
        self.subject_provider = subject_provider

        logger.info(
            "ReferenceMonitor initialized with %d rules, %d roles",
            len(self.rules), len(self._roles)
        )

    @property
    def roles(self) -> tuple[str, ...]:
        """Roles declared in the rule source."""
        return self._roles

    @property
    def privileges(self) -> tuple[str, ...]:
        """Privileges declared in the rule source."""
        return self._privileges

    def for_subject(self, subject: Any) -> SubjectScope:
        """Bind calls to ``subject``."""
        return SubjectScope(self, subject)

    def permit(
        self,
        privilege: str | list[str],
        *,
        context: str | None = None,
        obj: Any = None,
        subject: Any = None,
        skip_attribute_test: bool = False,
    ) -> bool:
        """Return True if ``privilege`` is granted, raise otherwise.

        Args:
            privilege: A privilege or a list of privileges (any suffices)
            context: Context of the privilege; inferred from ``obj``'s table
                name when omitted
            obj: Object to check attribute conditions against
            subject: Subject to check for; defaults to the subject provider
            skip_attribute_test: Grant on role/privilege match alone

        Raises:
            NotAuthorized: No rule matches
            AttributeAuthorizationError: Rules match but no attribute
                condition holds
            AuthorizationUsageError: The call or configuration is invalid
        """
        self._check(
            privilege,
            context=context,
            obj=obj,
            subject=subject,
            skip_attribute_test=skip_attribute_test,
        )
        return True

    def _check(
        self,
        privilege: str | list[str],
        *,
        context: str | None = None,
        obj: Any = None,
        subject: Any = None,
        skip_attribute_test: bool = False,
    ) -> list[AuthorizationRule]:
        """Run a permit check and return the rules that matched.

        The bypass grants with no matched rules.
        """
        if ignore_access_control():
            return []

        if context is None:
            context = infer_context(obj)
        subject, roles, privileges = self._resolve(privilege, context, subject)

        rules = self.rules.matching_rules(roles, privileges, context)
        if not rules:
            logger.info(
                "Access DENIED (no rule): privilege=%s roles=%s context=%s",
                privilege, roles, context
            )
            raise NotAuthorized(
                f"No matching rules found for {privilege} for {subject!r} "
                f"(roles {roles!r}, privileges {privileges!r}, context {context!r})."
            )

        ctx = EvaluationContext(subject=subject, object=obj)
        if skip_attribute_test or any(
            self.evaluator.grants(rule.attributes, ctx) for rule in rules
        ):
            logger.debug(
                "Access ALLOWED: privilege=%s roles=%s context=%s",
                privilege, roles, context
            )
            return rules

        logger.info(
            "Access DENIED (attributes): privilege=%s roles=%s context=%s",
            privilege, roles, context
        )
        raise AttributeAuthorizationError(
            f"{privilege} not allowed for {subject!r} on {obj!r}.",
            matched_rules=len(rules),
        )

    def permit_query(
        self,
        privilege: str | list[str],
        callback: Callable[[], Any] | None = None,
        **options: Any,
    ) -> bool:
        """Like permit, but answers False on denial.

        ``callback`` is called when the privilege is granted. Usage errors
        propagate.
        """
        try:
            self.permit(privilege, **options)
        except NotAuthorized:
            return False
        if callback is not None:
            callback()
        return True

    def obligations(
        self,
        privilege: str | list[str],
        *,
        context: str | None = None,
        obj: Any = None,
        subject: Any = None,
    ) -> list[dict[str, Any]]:
        """Data conditions under which ``privilege`` is granted.

        Returns a list of obligation trees to be OR'ed; the conditions
        inside each tree are AND'ed. Leaves are ``(operator, literal)``:

            [{"branch": {"company": ("equals", 24)}}, {"active": ("equals", True)}]

        A matching rule without attribute conditions contributes ``{}``.
        Value expressions are evaluated without an object.
        """
        if context is None:
            context = infer_context(obj)
        subject, roles, privileges = self._resolve(privilege, context, subject)

        ctx = EvaluationContext(subject=subject)
        obligations: list[dict[str, Any]] = []
        for rule in self.rules.matching_rules(roles, privileges, context):
            obligations.extend(self._rule_obligations(rule, ctx))
        return obligations

    def decide(self, privilege: str | list[str], **options: Any) -> AuthzDecision:
        """Run permit and report the outcome as a value.

        Denials carry their reason; usage and configuration errors come
        back as ``DecisionKind.ERROR`` instead of propagating.
        """
        privileges = [privilege] if isinstance(privilege, str) else list(privilege)
        context = options.get("context") or infer_context(options.get("obj"))
        try:
            rules = self._check(privilege, **options)
        except NotAuthorized as e:
            return AuthzDecision(
                kind=DecisionKind.DENIED,
                privileges=privileges,
                context=context,
                reason=DenialReason(e.reason),
                message=e.message,
                matched_rules=e.matched_rules,
            )
        except AuthorizationUsageError as e:
            return AuthzDecision(
                kind=DecisionKind.ERROR,
                privileges=privileges,
                context=context,
                message=e.message,
            )
        return AuthzDecision(
            kind=DecisionKind.ALLOWED,
            privileges=privileges,
            context=context,
            message="Granted",
            matched_rules=len(rules),
        )

    def _rule_obligations(self, rule: AuthorizationRule, ctx: EvaluationContext) -> list[dict[str, Any]]:
        if not rule.attributes:
            return [{}]
        return [
            self.evaluator.derive_obligation(attribute.conditions, ctx)
            for attribute in rule.attributes
        ]

    def _resolve(
        self,
        privilege: str | list[str],
        context: str | None,
        subject: Any,
    ) -> tuple[Any, list[str], list[str]]:
        if subject is None and self.subject_provider is not None:
            subject = self.subject_provider()
        if subject is None:
            raise AuthorizationUsageError("No subject available", "missing_subject")
        if not isinstance(subject, Subject):
            raise AuthorizationUsageError(
                f"Subject {subject!r} doesn't expose roles", "malformed_subject"
            )
        subject_roles = subject.roles
        if not isinstance(subject_roles, (list, tuple)) or not all(
            isinstance(role, str) for role in subject_roles
        ):
            raise AuthorizationUsageError(
                f"Subject roles must be a list of labels, got {subject_roles!r}",
                "malformed_roles",
            )

        privileges = [privilege] if isinstance(privilege, str) else list(privilege)
        roles = self.hierarchy.flatten_roles(subject_roles)
        privileges = self.hierarchy.flatten_privileges(privileges, context)
        return subject, roles, privileges


# Process-wide instance
_engine: ReferenceMonitor | None = None
_engine_source: RuleSource = None
_engine_kwargs: dict[str, Any] = {}
_engine_lock = threading.Lock()


def init_engine(source: RuleSource = None, **kwargs: Any) -> ReferenceMonitor:
    """Build an engine and publish it as the process instance."""
    global _engine, _engine_source, _engine_kwargs
    engine = ReferenceMonitor(source, **kwargs)
    with _engine_lock:
        _engine = engine
        _engine_source = source
        _engine_kwargs = dict(kwargs)
    return engine


def reload_engine() -> ReferenceMonitor:
    """Rebuild the process instance from its source and swap it in.

    Calls already holding the old instance finish against it.
    """
    with _engine_lock:
        source = _engine_source
        kwargs = dict(_engine_kwargs)
    logger.info("Reloading authorization rules")
    return init_engine(source, **kwargs)


def get_engine(source: RuleSource = None) -> ReferenceMonitor:
    """Get the process instance.

    A new instance is built when ``source`` is given, and on every call in
    development mode with rule reloading enabled.
    """
    global _engine
    if source is not None:
        return init_engine(source)
    if get_config().should_reload():
        return reload_engine()
    engine = _engine
    if engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = ReferenceMonitor()
            engine = _engine
    return engine


def reset_engine() -> None:
    """Drop the process instance."""
    global _engine, _engine_source, _engine_kwargs
    with _engine_lock:
        _engine = None
        _engine_source = None
        _engine_kwargs = {}

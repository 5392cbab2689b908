"""Authorization package.

Reference monitor with role and privilege hierarchies, context-scoped
authorization rules and attribute conditions on the checked object.

Usage:
    from packages.authz import get_engine

    engine = get_engine()

    # Raises NotAuthorized when denied
    engine.permit("read", context="projects", subject=user)

    # Boolean check against an object
    if engine.permit_query("update", obj=project, subject=user):
        pass

    # Conditions for a query filter
    engine.obligations("read", context="projects", subject=user)
"""

from packages.authz.errors import (
    AuthorizationError,
    NotAuthorized,
    AttributeAuthorizationError,
    AuthorizationUsageError,
    RuleSourceError,
)
from packages.authz.models import (
    Attribute,
    AuthorizationRule,
    AuthzDecision,
    ConditionOperator,
    DecisionKind,
    DenialReason,
    RuleSet,
    constant,
    object_attr,
    subject_attr,
)
from packages.authz.subjects import GuestUser, SubjectScope
from packages.authz.engine import (
    ReferenceMonitor,
    get_engine,
    init_engine,
    reload_engine,
)

__all__ = [
    "AuthorizationError",
    "NotAuthorized",
    "AttributeAuthorizationError",
    "AuthorizationUsageError",
    "RuleSourceError",
    "Attribute",
    "AuthorizationRule",
    "AuthzDecision",
    "ConditionOperator",
    "DecisionKind",
    "DenialReason",
    "RuleSet",
    "constant",
    "object_attr",
    "subject_attr",
    "GuestUser",
    "SubjectScope",
    "ReferenceMonitor",
    "get_engine",
    "init_engine",
    "reload_engine",
]

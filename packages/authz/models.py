"""Authorization data models.

Defines authorization rules, attribute condition trees, the parsed rule
set handed to the engine, and the decision result.

An attribute condition tree maps object field names either to a nested
tree or to a leaf ``(operator, value_expression)``::

    {"branch": {"company": (ConditionOperator.EQUALS, subject_attr("company_id"))}}

Value expressions are plain callables ``(subject, obj) -> literal``.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field

from packages.authz.errors import AuthorizationUsageError

GUEST_ROLE = "guest"

ValueExpression = Callable[[Any, Any], Any]
PrivilegePair = tuple[str, str | None]


class ConditionOperator(str, Enum):
    """Operators allowed in attribute condition leaves."""

    EQUALS = "equals"
    CONTAINS = "contains"

    @classmethod
    def parse(cls, value: Any) -> "ConditionOperator":
        """Coerce a raw operator token, accepting ``is`` for ``equals``."""
        if isinstance(value, cls):
            return value
        if value == "is":
            return cls.EQUALS
        try:
            return cls(value)
        except ValueError:
            raise AuthorizationUsageError(
                f"Unknown operator {value!r}", "unknown_operator"
            ) from None


class Condition(NamedTuple):
    """Leaf of an attribute condition tree."""

    operator: ConditionOperator
    expression: ValueExpression


def read_field(obj: Any, name: str) -> Any:
    """Read ``name`` from ``obj``.

    Mappings are looked up by key, anything else through its attribute.
    Bound methods are called without arguments. Only AttributeError and
    TypeError are treated as a missing accessor by callers; anything else
    an accessor raises propagates unchanged.
    """
    if isinstance(obj, Mapping):
        if name not in obj:
            raise AttributeError(f"{type(obj).__name__} has no key {name!r}")
        return obj[name]
    value = getattr(obj, name)
    if callable(value) and not isinstance(value, type):
        value = value()
    return value


def resolve_path(obj: Any, path: str) -> Any:
    """Follow a dotted path of fields starting at ``obj``."""
    for part in path.split("."):
        obj = read_field(obj, part)
    return obj


def constant(value: Any) -> ValueExpression:
    """Value expression that always yields ``value``."""

    def expression(subject: Any, obj: Any) -> Any:
        return value

    expression.__qualname__ = f"constant({value!r})"
    return expression


def subject_attr(path: str) -> ValueExpression:
    """Value expression reading a (dotted) field of the subject."""

    def expression(subject: Any, obj: Any) -> Any:
        try:
            return resolve_path(subject, path)
        except (AttributeError, TypeError) as e:
            raise AuthorizationUsageError(
                f"Error reading {path!r} on subject {subject!r}: {e}"
            ) from e

    expression.__qualname__ = f"subject_attr({path!r})"
    return expression


def object_attr(path: str) -> ValueExpression:
    """Value expression reading a (dotted) field of the checked object.

    Not usable for obligations, where no object exists.
    """

    def expression(subject: Any, obj: Any) -> Any:
        if obj is None:
            raise AuthorizationUsageError(
                f"Expression reads {path!r} on the checked object, "
                "but no object is available"
            )
        try:
            return resolve_path(obj, path)
        except (AttributeError, TypeError) as e:
            raise AuthorizationUsageError(
                f"Error reading {path!r} on object {obj!r}: {e}"
            ) from e

    expression.__qualname__ = f"object_attr({path!r})"
    return expression


def normalize_tree(tree: Any) -> dict[str, Any]:
    """Check the shape of a condition tree and return a normalized copy.

    Leaves become Condition tuples with a parsed operator and a callable
    expression; literals are wrapped with ``constant``.
    """
    if not isinstance(tree, Mapping):
        raise AuthorizationUsageError(
            f"Wrong conditions hash format: {tree!r}", "malformed_conditions"
        )
    normalized: dict[str, Any] = {}
    for attr, value in tree.items():
        if isinstance(value, Mapping):
            normalized[attr] = normalize_tree(value)
        elif isinstance(value, (tuple, list)) and len(value) == 2:
            operator, expression = value
            if not callable(expression):
                expression = constant(expression)
            normalized[attr] = Condition(ConditionOperator.parse(operator), expression)
        else:
            raise AuthorizationUsageError(
                f"Wrong conditions hash format for {attr!r}: {value!r}",
                "malformed_conditions",
            )
    return normalized


class Attribute:
    """One alternative of a rule's attribute conditions.

    Conditions inside the tree are AND'ed, a rule's attributes are OR'ed.
    """

    def __init__(self, conditions: Mapping[str, Any]):
        self.conditions = normalize_tree(conditions)

    def __repr__(self) -> str:
        return f"Attribute({self.conditions!r})"


class AuthorizationRule:
    """Grants ``role`` the ``privileges`` within ``contexts``."""

    def __init__(
        self,
        role: str,
        privileges: list[str] | set[str] | None = None,
        contexts: str | list[str] | set[str] | None = None,
    ):
        self.role = role
        self.privileges: set[str] = set(privileges or ())
        if isinstance(contexts, str):
            contexts = [contexts]
        self.contexts: set[str] = set(contexts or ())
        self.attributes: list[Attribute] = []

    def append_privileges(self, privileges: list[str] | set[str]) -> None:
        """Extend the granted privileges while the rule set is being built."""
        self.privileges.update(privileges)

    def append_attribute(self, attribute: Attribute | Mapping[str, Any]) -> None:
        """Add an attribute alternative while the rule set is being built."""
        if not isinstance(attribute, Attribute):
            attribute = Attribute(attribute)
        self.attributes.append(attribute)

    def matches(
        self,
        roles: list[str] | set[str],
        privileges: list[str] | set[str],
        context: str | None,
    ) -> bool:
        return (
            context in self.contexts
            and self.role in roles
            and not self.privileges.isdisjoint(privileges)
        )

    def __repr__(self) -> str:
        return (
            f"AuthorizationRule(role={self.role!r}, privileges={sorted(self.privileges)!r}, "
            f"contexts={sorted(self.contexts)!r}, attributes={len(self.attributes)})"
        )


@dataclass
class RuleSet:
    """Parsed rule source handed to the engine."""

    privileges: list[str] = field(default_factory=list)
    # {(priv, ctx): [(priv, ctx), ...]}, ctx may be None
    privilege_hierarchy: dict[PrivilegePair, list[PrivilegePair]] = field(default_factory=dict)
    auth_rules: list[AuthorizationRule] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    role_hierarchy: dict[str, list[str]] = field(default_factory=dict)


class DecisionKind(str, Enum):
    """Kind of an authorization decision."""

    ALLOWED = "allowed"
    DENIED = "denied"
    ERROR = "error"


class DenialReason(str, Enum):
    """Why a denial happened."""

    NO_RULE = "no_rule"
    NO_ATTRIBUTE_MATCH = "no_attribute_match"


class AuthzDecision(BaseModel):
    """Result of an authorization decision."""

    kind: DecisionKind = Field(description="Allowed, denied or usage/config error")
    privileges: list[str] = Field(default_factory=list, description="Privileges that were checked")
    context: str | None = Field(default=None, description="Context the check ran in")
    reason: DenialReason | None = Field(
        default=None,
        description="Denial reason (only for denied decisions)"
    )
    message: str = Field(default="", description="Explanation of decision")
    matched_rules: int = Field(
        default=0,
        description="Number of rules that matched role, privilege and context"
    )

    @property
    def allowed(self) -> bool:
        return self.kind == DecisionKind.ALLOWED

"""Authorization error taxonomy.

Two families hang off AuthorizationError:

- NotAuthorized (and AttributeAuthorizationError): the access was denied.
- AuthorizationUsageError: the application or the rule configuration
  misused the engine. These are defects and are never turned into a
  denial.
"""


class AuthorizationError(Exception):
    """Base class for everything raised in the authorization realm."""

    def __init__(self, message: str, code: str = "authorization_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotAuthorized(AuthorizationError):
    """Raised when no rule grants the privilege to the subject."""

    reason = "no_rule"

    def __init__(self, message: str, matched_rules: int = 0):
        super().__init__(message, "not_authorized")
        self.matched_rules = matched_rules


class AttributeAuthorizationError(NotAuthorized):
    """Raised when a rule matched but none of its attribute conditions held."""

    reason = "no_attribute_match"

    def __init__(self, message: str, matched_rules: int = 0):
        super().__init__(message, matched_rules)
        self.code = "attribute_not_authorized"


class AuthorizationUsageError(AuthorizationError):
    """Raised when the engine is used incorrectly.

    Missing subject, malformed roles, missing context, malformed condition
    trees, failing field accessors and unknown operators all end up here.
    """

    def __init__(self, message: str, code: str = "usage_error"):
        super().__init__(message, code)


class RuleSourceError(AuthorizationUsageError):
    """Raised when a rule source cannot be turned into a rule set."""

    def __init__(self, message: str):
        super().__init__(message, "rule_source_error")

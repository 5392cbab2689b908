"""Rule index.

Holds the authorization rules of one engine instance and answers which
of them apply to a set of roles, privileges and a context.
"""

from collections.abc import Iterable

from packages.authz.models import AuthorizationRule


class RuleIndex:
    """Immutable, insertion-ordered collection of authorization rules.

    Rules are bucketed per context for lookup. Results always come back
    in the order the rules were given, since obligations are flattened in
    that order.
    """

    def __init__(self, rules: Iterable[AuthorizationRule] = ()):
        self._rules: tuple[AuthorizationRule, ...] = tuple(rules)
        by_context: dict[str, list[int]] = {}
        for position, rule in enumerate(self._rules):
            for context in rule.contexts:
                by_context.setdefault(context, []).append(position)
        self._by_context = {ctx: tuple(positions) for ctx, positions in by_context.items()}

    def __len__(self) -> int:
        return len(self._rules)

    def matching_rules(
        self,
        roles: Iterable[str],
        privileges: Iterable[str],
        context: str | None,
    ) -> list[AuthorizationRule]:
        """Rules for one of ``roles`` granting any of ``privileges`` in ``context``."""
        roles = set(roles)
        privileges = set(privileges)
        return [
            self._rules[position]
            for position in self._by_context.get(context, ())
            if self._rules[position].matches(roles, privileges, context)
        ]


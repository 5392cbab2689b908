"""Role and privilege hierarchy closure."""

import logging

from packages.authz.errors import AuthorizationUsageError
from packages.authz.models import GUEST_ROLE, PrivilegePair

logger = logging.getLogger(__name__)


class HierarchyResolver:
    """Computes transitive closures over the role and privilege hierarchies.

    The privilege hierarchy is stored as ``{(priv, ctx): [(priv, ctx), ...]}``
    meaning the key privilege includes the listed ones. Flattening walks
    the reverse direction: a request for ``read`` is also satisfied by a
    rule granting ``manage`` if ``manage`` includes ``read``.

    Cycles in either hierarchy are not reported; the visited set makes the
    closure saturate instead of looping.
    """

    def __init__(
        self,
        role_hierarchy: dict[str, list[str]] | None = None,
        privilege_hierarchy: dict[PrivilegePair, list[PrivilegePair]] | None = None,
        default_role: str = GUEST_ROLE,
    ):
        self.role_hierarchy = {
            role: tuple(implied) for role, implied in (role_hierarchy or {}).items()
        }
        self.privilege_hierarchy = {
            key: tuple(implied) for key, implied in (privilege_hierarchy or {}).items()
        }
        self.default_role = default_role

        # {(priv, ctx): (implying priv, ...)}
        reverse: dict[PrivilegePair, list[str]] = {}
        for (priv, _ctx), implied in self.privilege_hierarchy.items():
            for pair in implied:
                implying = reverse.setdefault(pair, [])
                if priv not in implying:
                    implying.append(priv)
        self.reverse_privilege_hierarchy = {
            pair: tuple(implying) for pair, implying in reverse.items()
        }

    def flatten_roles(self, roles: list[str] | tuple[str, ...] | set[str]) -> list[str]:
        """Return ``roles`` plus every role they imply, in discovery order.

        An empty input stands for the guest role.
        """
        flattened = list(dict.fromkeys(roles)) or [self.default_role]
        visited = set(flattened)
        index = 0
        while index < len(flattened):
            for implied in self.role_hierarchy.get(flattened[index], ()):
                if implied not in visited:
                    visited.add(implied)
                    flattened.append(implied)
            index += 1
        return flattened

    def flatten_privileges(
        self,
        privileges: list[str] | tuple[str, ...] | set[str],
        context: str | None,
    ) -> list[str]:
        """Return ``privileges`` plus every privilege that includes them.

        Context-free hierarchy entries are consulted before the entries
        for ``context``.
        """
        if context is None:
            raise AuthorizationUsageError(
                "No context given or inferable from object", "missing_context"
            )
        flattened = list(dict.fromkeys(privileges))
        visited = set(flattened)
        index = 0
        while index < len(flattened):
            priv = flattened[index]
            for key in ((priv, None), (priv, context)):
                for implying in self.reverse_privilege_hierarchy.get(key, ()):
                    if implying not in visited:
                        visited.add(implying)
                        flattened.append(implying)
            index += 1
        logger.debug("Flattened privileges %s in %s to %s", list(privileges), context, flattened)
        return flattened

"""Subjects the engine checks privileges for.

A subject is any value with a ``roles`` attribute returning a list of
role labels. There is no process-wide "current user": callers pass the
subject explicitly, inject a provider into the engine, or bind one with
``ReferenceMonitor.for_subject``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from packages.authz.models import GUEST_ROLE

if TYPE_CHECKING:
    from packages.authz.engine import ReferenceMonitor

SubjectProvider = Callable[[], Any]


@runtime_checkable
class Subject(Protocol):
    """Anything exposing role labels."""

    @property
    def roles(self) -> list[str]: ...


class GuestUser:
    """Pseudo-user for callers without a logged-in user."""

    def __init__(self, roles: list[str] | None = None):
        self.roles = list(roles) if roles is not None else [GUEST_ROLE]

    def __repr__(self) -> str:
        return f"GuestUser(roles={self.roles!r})"


class SubjectScope:
    """Engine calls bound to one subject.

    Usage:
        scope = engine.for_subject(user)
        scope.permit("read", context="projects")
        scope.obligations("read", context="projects")
    """

    def __init__(self, engine: ReferenceMonitor, subject: Any):
        self.engine = engine
        self.subject = subject

    def permit(self, privilege: str | list[str], **options: Any) -> bool:
        return self.engine.permit(privilege, subject=self.subject, **options)

    def permit_query(
        self,
        privilege: str | list[str],
        callback: Callable[[], Any] | None = None,
        **options: Any,
    ) -> bool:
        return self.engine.permit_query(privilege, callback, subject=self.subject, **options)

    def obligations(self, privilege: str | list[str], **options: Any) -> list[dict[str, Any]]:
        return self.engine.obligations(privilege, subject=self.subject, **options)

    def decide(self, privilege: str | list[str], **options: Any):
        return self.engine.decide(privilege, subject=self.subject, **options)

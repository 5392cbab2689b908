"""FastAPI dependency helpers.

Usage:
    @app.get("/projects/{project_id}")
    async def show_project(
        project_id: int,
        _: bool = Depends(require_privilege("read", context="projects")),
    ):
        ...

The subject comes from ``get_current_subject``, which reads
``request.state.user`` (set by authentication middleware) and falls back
to a guest. Override it with ``app.dependency_overrides`` as needed.
"""

from typing import Any

from fastapi import Depends, HTTPException, Request, status

from packages.authz.engine import ReferenceMonitor, get_engine
from packages.authz.errors import NotAuthorized
from packages.authz.subjects import GuestUser


def get_current_subject(request: Request) -> Any:
    """Subject of the current request."""
    return getattr(request.state, "user", None) or GuestUser()


def get_reference_monitor() -> ReferenceMonitor:
    """Engine used by the dependencies below."""
    return get_engine()


def require_privilege(
    privilege: str | list[str],
    context: str | None = None,
    skip_attribute_test: bool = False,
):
    """FastAPI dependency to require a privilege in a context.

    Denials become 403 responses; usage errors are not caught.
    """

    def check(
        subject: Any = Depends(get_current_subject),
        engine: ReferenceMonitor = Depends(get_reference_monitor),
    ) -> bool:
        try:
            return engine.permit(
                privilege,
                context=context,
                subject=subject,
                skip_attribute_test=skip_attribute_test,
            )
        except NotAuthorized as e:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "forbidden",
                    "reason": e.reason,
                    "message": e.message,
                    "privilege": privilege,
                    "context": context,
                },
            ) from e

    return check


def obligations_for(privilege: str | list[str], context: str):
    """FastAPI dependency returning the obligations of the current subject."""

    def resolve(
        subject: Any = Depends(get_current_subject),
        engine: ReferenceMonitor = Depends(get_reference_monitor),
    ) -> list[dict[str, Any]]:
        return engine.obligations(privilege, context=context, subject=subject)

    return resolve

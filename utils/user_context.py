"""Carry the authenticated staff user's id through a request via contextvars."""

from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)


def get_current_user_id() -> UUID:
    """
    Return the authenticated user id for the current request.

    Raises RuntimeError when called outside an authenticated request; routes
    that need a signed-in user (password change, admin invites) rely on the
    session middleware having run first.
    """
    user_id = _current_user_id.get()
    if user_id is None:
        raise RuntimeError("No authenticated user in the current context")
    return user_id


def set_current_user_id(user_id: UUID) -> None:
    """Set by AuthMiddleware once the session and its session_version check out."""
    _current_user_id.set(user_id)


def clear_current_user_id() -> None:
    """Reset the context. Call from a finally block."""
    _current_user_id.set(None)


@contextmanager
def user_context(user_id: UUID):
    """
    Temporarily act as a user, restoring the previous value on exit.

    Example:
        with user_context(admin_id):
            response = client.post("/auth/admin/users", json=payload)
    """
    previous = _current_user_id.get()
    set_current_user_id(user_id)
    try:
        yield
    finally:
        if previous is None:
            clear_current_user_id()
        else:
            set_current_user_id(previous)

"""Typed exceptions for the identity core.

Expected outcomes (wrong password, expired code, rate limits) are returned as
result values by the services. Exceptions are reserved for faults the caller
cannot prevent by changing its input.
"""


class IdentityError(Exception):
    """Base class for identity errors."""


class EmailDeliveryError(IdentityError):
    """
    The email sender could not hand a message to the delivery gateway.

    Raised by EmailSender implementations. The invite flow turns this into a
    result so the admin can resend; other flows let it propagate.
    """


class SessionExpiredError(IdentityError):
    """Session has expired or does not exist; the user must sign in again."""


class SessionRevokedError(IdentityError):
    """
    Session was invalidated by a security action.

    Raised when the user's session_version moved on (password change), or the
    account was disabled after the session was created.
    """

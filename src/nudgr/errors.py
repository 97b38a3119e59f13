"""Domain exceptions raised by the service layer.

Routers let these propagate; ``middleware.error_handler`` renders them as
``{"detail": ...}`` JSON with the class's ``status_code``. Race losses
(already triggered, already resolved) are NOT exceptions: the stores return
an outcome value for them.
"""

from __future__ import annotations


class NudgrError(Exception):
    """Base class for all domain errors."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(NudgrError):
    """Input failed a business rule. No state was changed."""


class PastTimeError(ValidationError):
    """A delivery time or deadline is not in the future."""


class InsufficientPointsError(ValidationError):
    """The bettor cannot cover the wager."""


class NotFoundError(NudgrError):
    status_code = 404


class ForbiddenError(NudgrError):
    status_code = 403


class AuthorizationError(NudgrError):
    """Token invalid, expired, or the session was revoked."""

    status_code = 401


class ConflictError(NudgrError):
    status_code = 409


class DuplicateError(ConflictError):
    """A record already exists for this (user, task) pair."""


class AlreadyTerminalError(ConflictError):
    """The record is triggered, canceled or resolved and accepts no further transition."""


class DeadlineMissedError(ConflictError):
    """The task started after the bet deadline; the bet is left for expiry."""


class NotExpiredError(ConflictError):
    """The bet deadline has not passed yet."""


class GenerationError(NudgrError):
    """The message provider failed or returned nothing usable."""

    status_code = 502


class MessageRejectedError(GenerationError):
    """The provider answered, but the message failed validation."""

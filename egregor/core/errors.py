"""Error hierarchy for the room sync layer and its HTTP status taxonomy."""

from __future__ import annotations

from typing import Dict

_STATUS_TO_CODE: Dict[int, str] = {
    400: "INVALID_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "UNKNOWN_ERROR")


class EgregorError(Exception):
    """Base class; ``status_code`` is what the HTTP layer answers with."""

    status_code = 500

    @property
    def code(self) -> str:
        return error_code_for_status(self.status_code)


class BackendError(EgregorError):
    """A data backend call failed (network blip, timeout, storage error)."""

    status_code = 503


class NotAuthenticatedError(EgregorError):
    status_code = 401

    def __init__(self, message: str = "Not signed in.") -> None:
        super().__init__(message)


class NotAuthorizedError(EgregorError):
    status_code = 403

    def __init__(self, message: str = "Not authorized") -> None:
        super().__init__(message)


class NotHostError(NotAuthorizedError):
    """A host-only room action was attempted by a non-host viewer."""

    def __init__(self, message: str = "Only the host can control the session.") -> None:
        super().__init__(message)


class EventNotFoundError(EgregorError):
    status_code = 404

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class InvalidTransitionError(EgregorError):
    status_code = 409


class ChatValidationError(EgregorError):
    status_code = 422


class RoomLoadError(EgregorError):
    """Initial room load failed; the only backend failure shown as blocking."""

    status_code = 503

from __future__ import annotations


class DomainError(Exception):
    """Base for errors that map onto a problem-details response."""

    status_code = 400
    title = "Domain Error"
    type: str | None = None
    retryable = False

    def __init__(
        self,
        detail: str,
        *,
        title: str | None = None,
        errors: list[dict[str, str]] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        if title is not None:
            self.title = title
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors or []


class ValidationError(DomainError):
    status_code = 422
    title = "Validation Error"
    type = "https://bookflow.dev/problems/validation-error"


class NotFoundError(DomainError):
    status_code = 404
    title = "Not Found"
    type = "https://bookflow.dev/problems/not-found"


class StaleEventWarning(DomainError):
    """An event the state machine rejected as out of order.

    Logged and acknowledged; it is carried on transition outcomes and is not
    raised to HTTP callers.
    """

    status_code = 200
    title = "Stale Event"
    type = "https://bookflow.dev/problems/stale-event"

    def __init__(self, detail: str, *, booking_id: str, state: str, event_type: str) -> None:
        super().__init__(detail)
        self.booking_id = booking_id
        self.state = state
        self.event_type = event_type


class CollaboratorUnavailable(DomainError):
    status_code = 503
    title = "Service Unavailable"
    type = "https://bookflow.dev/problems/collaborator-unavailable"
    retryable = True

    def __init__(self, detail: str, *, collaborator: str, retry_after_seconds: int = 5) -> None:
        super().__init__(detail)
        self.collaborator = collaborator
        self.retry_after_seconds = retry_after_seconds


class ConflictExceeded(DomainError):
    status_code = 409
    title = "Conflict"
    type = "https://bookflow.dev/problems/conflict-exceeded"

    def __init__(self, detail: str, *, booking_id: str, attempts: int) -> None:
        super().__init__(detail)
        self.booking_id = booking_id
        self.attempts = attempts

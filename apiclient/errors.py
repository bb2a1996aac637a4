from __future__ import annotations

from typing import TYPE_CHECKING

from .classifier import ClassifiedFailure, FailureKind, TransportFailure

if TYPE_CHECKING:
    from .models import RequestDescriptor

GENERIC_ERROR_MESSAGE = "Unexpected error. Please try again later."

_STATUS_MESSAGES = {
    400: "Invalid request parameters. Please check your input.",
    401: "Authentication failed. Please check your credentials.",
    403: "You don't have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "Conflict: the resource already exists.",
    422: "Input validation failed.",
    429: "Too many requests. Please try again later.",
    500: "Internal server error. Please try again later.",
    502: "Bad gateway.",
    503: "Service temporarily unavailable. Please try again later.",
    504: "Gateway timeout.",
}

_TRANSPORT_MESSAGES = {
    TransportFailure.CONNECTION_REFUSED: "Unable to reach the server. Is the backend running?",
    TransportFailure.TIMEOUT: "The request timed out. Please check your network connection.",
    TransportFailure.NETWORK: "Network connection failed. Please check your network settings.",
}


def friendly_error_message(failure: ClassifiedFailure) -> str:
    envelope = failure.envelope
    if envelope is not None and envelope.message and envelope.message.strip():
        return envelope.message

    if failure.transport is not None:
        return _TRANSPORT_MESSAGES[failure.transport]

    status = failure.status_code
    if status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status]
    if status is not None and status >= 500:
        return "The API is experiencing issues. Please try again later."
    if status is not None:
        return f"API request failed with status {status}."
    return GENERIC_ERROR_MESSAGE


class ApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        failure: ClassifiedFailure | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.failure = failure
        self.request_id = request_id

    @classmethod
    def from_failure(
        cls,
        failure: ClassifiedFailure,
        descriptor: "RequestDescriptor | None" = None,
    ) -> "ApiError":
        return cls(
            friendly_error_message(failure),
            failure=failure,
            request_id=descriptor.request_id if descriptor is not None else None,
        )

    @property
    def kind(self) -> FailureKind:
        if self.failure is None:
            return FailureKind.UNKNOWN
        return self.failure.kind

    @property
    def status_code(self) -> int | None:
        return self.failure.status_code if self.failure is not None else None

    @property
    def code(self):
        if self.failure is None or self.failure.envelope is None:
            return None
        return self.failure.envelope.code

    @property
    def error_code(self) -> str | None:
        if self.failure is None or self.failure.envelope is None:
            return None
        return self.failure.envelope.error_code

    @property
    def errors(self) -> list[dict]:
        if self.failure is None or self.failure.envelope is None:
            return []
        return self.failure.envelope.errors


class SessionExpiredError(ApiError):
    """Terminal error shared by every request waiting on a failed renewal."""

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        failure: ClassifiedFailure | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, failure=failure)
        self.reason = reason
        self._error_code = error_code

    @property
    def error_code(self) -> str | None:
        if self._error_code is not None:
            return self._error_code
        return super().error_code

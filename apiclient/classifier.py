from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from .models import ResponseEnvelope


class FailureKind(enum.Enum):
    AUTH_EXPIRED = "auth-expired"
    AUTH_ENDPOINT_REJECTED = "auth-endpoint-rejected"
    BUSINESS_ERROR = "business-error"
    CLIENT_ERROR = "client-error"
    SERVER_ERROR = "server-error"
    TRANSPORT_ERROR = "transport-error"
    UNKNOWN = "unknown"


class TransportFailure(enum.Enum):
    CONNECTION_REFUSED = "connection-refused"
    TIMEOUT = "timeout"
    NETWORK = "network"


@dataclass
class ClassifiedFailure:
    kind: FailureKind
    status_code: int | None = None
    transport: TransportFailure | None = None
    envelope: ResponseEnvelope | None = None
    response: httpx.Response | None = None
    error: Exception | None = None

    @property
    def is_connection_refused(self) -> bool:
        return self.transport is TransportFailure.CONNECTION_REFUSED


def is_auth_endpoint(path: str, auth_endpoints: Iterable[str]) -> bool:
    normalized = path.rstrip("/") or "/"
    for endpoint in auth_endpoints:
        endpoint = endpoint.rstrip("/")
        if endpoint and (normalized == endpoint or normalized.endswith(endpoint)):
            return True
    return False


def _is_connection_refused(error: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if "connection refused" in str(current).lower():
            return True
        current = current.__cause__ or current.__context__
    return False


def classify_transport_error(error: httpx.TransportError) -> TransportFailure:
    if isinstance(error, httpx.ConnectError) and _is_connection_refused(error):
        return TransportFailure.CONNECTION_REFUSED
    if isinstance(error, httpx.TimeoutException):
        return TransportFailure.TIMEOUT
    return TransportFailure.NETWORK


def classify(
    outcome: httpx.Response | httpx.RequestError,
    *,
    path: str,
    auth_endpoints: Iterable[str],
    skip_auth: bool = False,
) -> ClassifiedFailure | None:
    """Map a finished request to a failure kind, or ``None`` on success.

    A missing response wins over everything else; request errors outside the
    transport family (decoding, redirect loops) are ``UNKNOWN``. A 401 only
    counts as an expired access token when the request is neither an auth
    bootstrap call nor a skip-auth call, so those can never start a renewal.
    """
    if isinstance(outcome, httpx.TransportError):
        return ClassifiedFailure(
            kind=FailureKind.TRANSPORT_ERROR,
            transport=classify_transport_error(outcome),
            error=outcome,
        )
    if isinstance(outcome, httpx.RequestError):
        return ClassifiedFailure(kind=FailureKind.UNKNOWN, error=outcome)

    status = outcome.status_code
    envelope = ResponseEnvelope.from_response(outcome)

    if status == 401:
        if skip_auth or is_auth_endpoint(path, auth_endpoints):
            kind = FailureKind.AUTH_ENDPOINT_REJECTED
        else:
            kind = FailureKind.AUTH_EXPIRED
    elif 400 <= status < 500:
        kind = FailureKind.CLIENT_ERROR
    elif 500 <= status < 600:
        kind = FailureKind.SERVER_ERROR
    elif 200 <= status < 300:
        if envelope is None or envelope.success:
            return None
        kind = FailureKind.BUSINESS_ERROR
    else:
        kind = FailureKind.UNKNOWN

    return ClassifiedFailure(
        kind=kind,
        status_code=status,
        envelope=envelope,
        response=outcome,
    )

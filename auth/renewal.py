from __future__ import annotations

import time
from dataclasses import dataclass

from apiclient.constants import DEFAULT_REFRESH_PATH, DEFAULT_TOKEN_TTL_SECONDS
from apiclient.models import RequestDescriptor, ResponseEnvelope
from auth.models import TokenState


class RenewalResponseError(RuntimeError):
    def __init__(self, message: str, *, envelope: ResponseEnvelope | None = None) -> None:
        super().__init__(message)
        self.envelope = envelope


@dataclass
class RenewedToken:
    access_token: str
    expires_at: float
    expires_in: int

    def to_state(self) -> TokenState:
        return TokenState(access_token=self.access_token, expires_at=self.expires_at)

    @classmethod
    def from_envelope(
        cls,
        envelope: ResponseEnvelope | None,
        *,
        now: float | None = None,
    ) -> "RenewedToken":
        if envelope is None or envelope.success is not True:
            message = envelope.message if envelope and envelope.message else None
            raise RenewalResponseError(
                message or "Token renewal failed.",
                envelope=envelope,
            )

        data = envelope.data if isinstance(envelope.data, dict) else {}
        access_token = data.get("accessToken")
        expires_at_ms = data.get("expiresAt")

        if not isinstance(access_token, str) or not access_token:
            raise RenewalResponseError(
                "Token renewal response missing accessToken.",
                envelope=envelope,
            )

        current = time.time() if now is None else now
        if isinstance(expires_at_ms, (int, float)) and not isinstance(expires_at_ms, bool):
            expires_in = int(expires_at_ms / 1000 - current)
        else:
            expires_in = DEFAULT_TOKEN_TTL_SECONDS

        return cls(
            access_token=access_token,
            expires_at=current + expires_in,
            expires_in=expires_in,
        )


def build_renewal_request(refresh_path: str = DEFAULT_REFRESH_PATH) -> RequestDescriptor:
    # no body: the renewal credential travels as a cookie on the shared client
    return RequestDescriptor(method="POST", target=refresh_path, skip_auth=True)

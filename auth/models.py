from __future__ import annotations

import time
from dataclasses import dataclass

NEEDS_REFRESH_MARGIN_SECONDS = 300


@dataclass(frozen=True)
class TokenState:
    access_token: str
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at

    def needs_refresh(
        self,
        now: float | None = None,
        *,
        margin: float = NEEDS_REFRESH_MARGIN_SECONDS,
    ) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at - margin

    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenState":
        access_token = payload.get("access_token")
        expires_at = payload.get("expires_at")
        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Stored token is missing access_token.")
        if not isinstance(expires_at, (int, float)):
            raise RuntimeError("Stored token is missing expires_at.")
        return cls(access_token=access_token, expires_at=float(expires_at))

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any

from apiclient.constants import EVENT_SESSION_EXPIRED, LOGGER
from apiclient.errors import SessionExpiredError
from apiclient.events import EventDispatcher
from auth.token_store import TokenStore

DEFAULT_REASON = "session-expired"
DEFAULT_MESSAGE = "Authentication failed, please sign in again."

SESSION_REASONS: dict[str, tuple[str, str]] = {
    "REFRESH_TOKEN_EXPIRED": (
        "refresh-token-expired",
        "Your sign-in has expired, please sign in again.",
    ),
    "SESSION_REVOKED": (
        "session-revoked",
        "Your session was revoked, please sign in again.",
    ),
    "SESSION_INVALID": (
        "session-invalid",
        "Your session is no longer valid, please sign in again.",
    ),
}


def resolve_session_reason(
    error_code: str | None,
    server_message: str | None = None,
) -> tuple[str, str]:
    """Map a renewal ``errorCode`` to ``(reason, user message)``.

    A message supplied by the server wins over the built-in text for known
    codes. Unknown codes fall back to the generic session-expired reason.
    """
    if error_code in SESSION_REASONS:
        reason, message = SESSION_REASONS[error_code]
        return reason, server_message or message
    return DEFAULT_REASON, DEFAULT_MESSAGE


class SessionInvalidator:
    def __init__(
        self,
        token_store: TokenStore,
        events: EventDispatcher,
        *,
        location_provider: Callable[[], str | None] | None = None,
        on_auth_failure: Callable[[SessionExpiredError], Any] | None = None,
    ) -> None:
        self._token_store = token_store
        self._events = events
        self._location_provider = location_provider
        self._on_auth_failure = on_auth_failure

    async def invalidate(self, error: SessionExpiredError) -> None:
        LOGGER.warning(
            "Session invalidated reason=%s error_code=%s message=%s",
            error.reason,
            error.error_code,
            error.message,
        )
        await self._token_store.clear()

        redirect = self._location_provider() if self._location_provider else None
        self._events.emit(
            EVENT_SESSION_EXPIRED,
            {
                "message": error.message,
                "reason": error.reason,
                "error_code": error.error_code,
                "redirect": redirect,
            },
        )

        if self._on_auth_failure is not None:
            result = self._on_auth_failure(error)
            if inspect.isawaitable(result):
                await result

from __future__ import annotations

import asyncio
import enum
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from apiclient.classifier import ClassifiedFailure
from apiclient.constants import DEFAULT_REFRESH_PATH, EVENT_TOKEN_REFRESHED, LOGGER
from apiclient.errors import ApiError, SessionExpiredError
from apiclient.events import EventDispatcher
from apiclient.models import RequestDescriptor, ResponseEnvelope
from auth.models import TokenState
from auth.renewal import RenewalResponseError, RenewedToken, build_renewal_request
from auth.session import SessionInvalidator, resolve_session_reason
from auth.token_store import TokenStore

SendFn = Callable[[RequestDescriptor], Awaitable[httpx.Response]]


class RefreshState(enum.Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    DRAINING = "draining"


@dataclass
class _Waiter:
    descriptor: RequestDescriptor
    future: asyncio.Future[str]


def _settle(future: asyncio.Future[str], token: str | None, error: BaseException | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(token)


class RefreshCoordinator:
    """Single-flight renewal of the access token.

    The first caller that reports an expired token starts the renewal; every
    caller that arrives while it is in flight joins a FIFO queue instead of
    issuing its own call. When the renewal settles, the whole queue is
    released with the new token, or with one shared ``SessionExpiredError``
    after which the session invalidator runs once.

    The renewal runs in its own task, so cancelling a waiting caller only
    drops that caller and never aborts the renewal for the others.
    """

    def __init__(
        self,
        send: SendFn,
        token_store: TokenStore,
        invalidator: SessionInvalidator,
        *,
        events: EventDispatcher | None = None,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._send = send
        self._token_store = token_store
        self._invalidator = invalidator
        self._events = events
        self._refresh_path = refresh_path
        self._clock = clock

        self._lock = threading.Lock()
        self._state = RefreshState.IDLE
        self._queue: deque[_Waiter] = deque()
        self._renewal_task: asyncio.Task[None] | None = None
        self.renewal_count = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    async def join(self) -> None:
        """Wait until the in-flight renewal, including invalidation, has finished."""
        task = self._renewal_task
        if task is not None and not task.done():
            await task

    async def await_token(
        self,
        descriptor: RequestDescriptor,
        sent_token: str | None = None,
    ) -> str:
        """Return a token to replay ``descriptor`` with.

        ``sent_token`` is the token the failed attempt carried. If a renewal
        already committed a different token while that attempt was in
        flight, the stored token is returned without a new renewal.
        """
        loop = asyncio.get_running_loop()
        waiter = _Waiter(descriptor=descriptor, future=loop.create_future())
        current = await self._token_store.read()

        with self._lock:
            if (
                self._state is RefreshState.IDLE
                and current is not None
                and current.access_token != sent_token
            ):
                LOGGER.info(
                    "Token already renewed, replaying request_id=%s target=%s",
                    descriptor.request_id,
                    descriptor.target,
                )
                return current.access_token
            self._queue.append(waiter)
            queue_size = len(self._queue)
            start_renewal = self._state is RefreshState.IDLE
            if start_renewal:
                self._state = RefreshState.REFRESHING
                self.renewal_count += 1

        if start_renewal:
            LOGGER.info(
                "Access token expired, starting renewal request_id=%s target=%s",
                descriptor.request_id,
                descriptor.target,
            )
            self._renewal_task = loop.create_task(self._run_renewal())
        else:
            LOGGER.info(
                "Renewal in flight, queued request_id=%s target=%s queue_size=%s",
                descriptor.request_id,
                descriptor.target,
                queue_size,
            )

        return await waiter.future

    async def _run_renewal(self) -> None:
        try:
            state = await self._request_new_token()
            await self._token_store.write(state)
        except SessionExpiredError as error:
            await self._fail(error)
        except asyncio.CancelledError:
            reason, _ = resolve_session_reason(None)
            self._release(error=SessionExpiredError("Token renewal was cancelled.", reason=reason))
            raise
        except Exception as error:
            LOGGER.exception("Token renewal failed unexpectedly")
            reason, message = resolve_session_reason(None)
            terminal = SessionExpiredError(message, reason=reason)
            terminal.__cause__ = error
            await self._fail(terminal)
        else:
            self._release(token=state.access_token)
            LOGGER.info("Access token renewed, expires_at=%s", state.expires_at)
            if self._events is not None:
                self._events.emit(
                    EVENT_TOKEN_REFRESHED,
                    {"expires_at": state.expires_at},
                )

    async def _fail(self, error: SessionExpiredError) -> None:
        LOGGER.error(
            "Token renewal failed reason=%s error_code=%s",
            error.reason,
            error.error_code,
        )
        self._release(error=error)
        await self._invalidator.invalidate(error)

    async def _request_new_token(self) -> TokenState:
        descriptor = build_renewal_request(self._refresh_path)
        try:
            response = await self._send(descriptor)
            renewed = RenewedToken.from_envelope(
                ResponseEnvelope.from_response(response),
                now=self._clock(),
            )
        except ApiError as error:
            raise self._terminal_error(error.failure) from error
        except RenewalResponseError as error:
            raise self._terminal_error(None, envelope=error.envelope) from error
        return renewed.to_state()

    def _terminal_error(
        self,
        failure: ClassifiedFailure | None,
        *,
        envelope: ResponseEnvelope | None = None,
    ) -> SessionExpiredError:
        if envelope is None and failure is not None:
            envelope = failure.envelope
        error_code = envelope.error_code if envelope is not None else None
        server_message = envelope.message if envelope is not None else None
        reason, message = resolve_session_reason(error_code, server_message)
        return SessionExpiredError(
            message,
            reason=reason,
            failure=failure,
            error_code=error_code,
        )

    def _release(
        self,
        *,
        token: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            self._state = RefreshState.DRAINING
            waiters = list(self._queue)
            self._queue.clear()
            LOGGER.info(
                "Releasing %s queued request(s) has_error=%s",
                len(waiters),
                error is not None,
            )
            running = _running_loop()
            for waiter in waiters:
                loop = waiter.future.get_loop()
                if loop is running:
                    _settle(waiter.future, token, error)
                else:
                    loop.call_soon_threadsafe(_settle, waiter.future, token, error)
            self._state = RefreshState.IDLE


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None

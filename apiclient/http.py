from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import httpx

from .classifier import ClassifiedFailure, FailureKind, classify
from .constants import (
    DEFAULT_AUTH_ENDPOINTS,
    EVENT_RATE_LIMITED,
    EVENT_REQUEST_FORBIDDEN,
    EVENT_SERVER_ERROR,
    LOGGER,
    SKIP_AUTH_HEADER,
)
from .env import is_truthy
from .errors import ApiError, friendly_error_message
from .events import EventDispatcher
from .models import RequestDescriptor
from .retry import RetryPolicy

if TYPE_CHECKING:
    from auth.refresh import RefreshCoordinator
    from auth.token_store import TokenStore

MAX_LOGGED_BODY = 1000


def _retry_after_seconds(header: str | None) -> int | None:
    if header is None:
        return None
    try:
        return max(0, int(header))
    except ValueError:
        return None


class RequestPipeline:
    """Runs one request through auth injection, classification and recovery.

    ``execute`` returns the successful ``httpx.Response`` or raises
    ``ApiError``. Expired access tokens are handed to the refresh coordinator
    once per request; transient failures are retried per ``RetryPolicy``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_store: TokenStore,
        *,
        retry_policy: RetryPolicy | None = None,
        events: EventDispatcher | None = None,
        auth_endpoints: Iterable[str] = DEFAULT_AUTH_ENDPOINTS,
        sleep=asyncio.sleep,
        clock: Callable[[], float] = time.time,
        debug: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._token_store = token_store
        self._retry_policy = retry_policy or RetryPolicy()
        self._events = events or EventDispatcher()
        self._auth_endpoints = tuple(auth_endpoints)
        self._sleep = sleep
        self._clock = clock
        self._debug = debug
        self._logger = logger or LOGGER
        self._request_ids = itertools.count(1)
        self.coordinator: RefreshCoordinator | None = None

    @property
    def events(self) -> EventDispatcher:
        return self._events

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
        self._tag(descriptor)
        token: str | None = None

        while True:
            request, sent_token = await self._build_request(descriptor, token)
            started = self._clock()
            self._log_request(descriptor, request)

            outcome: httpx.Response | httpx.RequestError
            try:
                outcome = await self._client.send(request)
            except httpx.RequestError as error:
                outcome = error

            failure = classify(
                outcome,
                path=request.url.path,
                auth_endpoints=self._auth_endpoints,
                skip_auth=descriptor.skip_auth,
            )
            if failure is None:
                self._log_response(descriptor, outcome, started)
                return outcome

            await self._log_failure(descriptor, failure, started)
            self._notify(descriptor, failure)

            if (
                failure.kind is FailureKind.AUTH_EXPIRED
                and not descriptor.retried
                and self.coordinator is not None
            ):
                descriptor.retried = True
                token = await self.coordinator.await_token(descriptor, sent_token)
                self._logger.info(
                    "Replaying request with renewed token request_id=%s (%s %s)",
                    descriptor.request_id,
                    descriptor.method,
                    descriptor.target,
                )
                continue

            delay = self._retry_policy.should_retry(failure, descriptor.retry_count)
            if delay is None:
                raise ApiError.from_failure(failure, descriptor)

            descriptor.retry_count += 1
            self._logger.warning(
                "Retrying %s after %ss (%s %s) attempt=%s/%s request_id=%s",
                failure.status_code or failure.transport.value,
                delay,
                descriptor.method,
                descriptor.target,
                descriptor.retry_count,
                self._retry_policy.max_attempts,
                descriptor.request_id,
            )
            if failure.response is not None:
                await failure.response.aclose()
            await self._sleep(delay)

    def _tag(self, descriptor: RequestDescriptor) -> None:
        if descriptor.request_id is not None:
            return
        now = self._clock()
        descriptor.request_id = f"req-{next(self._request_ids)}-{int(now * 1000)}"
        descriptor.issued_at = now

    async def _build_request(
        self,
        descriptor: RequestDescriptor,
        token: str | None,
    ) -> tuple[httpx.Request, str | None]:
        headers = httpx.Headers(descriptor.headers)
        sent_token: str | None = None
        marker = headers.get(SKIP_AUTH_HEADER)
        if marker is not None:
            del headers[SKIP_AUTH_HEADER]
            if is_truthy(marker):
                descriptor.skip_auth = True

        if descriptor.skip_auth:
            headers.pop("Authorization", None)
            self._logger.debug(
                "Skipping auth request_id=%s (%s %s)",
                descriptor.request_id,
                descriptor.method,
                descriptor.target,
            )
        elif token is not None:
            headers["Authorization"] = f"Bearer {token}"
            sent_token = token
        else:
            state = await self._token_store.read()
            if state is not None:
                headers["Authorization"] = state.authorization_header()
                sent_token = state.access_token

        request = self._client.build_request(
            descriptor.method,
            descriptor.target,
            headers=headers,
            params=descriptor.params,
            json=descriptor.json,
            content=descriptor.content,
        )
        return request, sent_token

    def _notify(self, descriptor: RequestDescriptor, failure: ClassifiedFailure) -> None:
        payload = {
            "message": friendly_error_message(failure),
            "status_code": failure.status_code,
            "request_id": descriptor.request_id,
            "target": descriptor.target,
        }
        if failure.status_code == 403:
            self._events.emit(EVENT_REQUEST_FORBIDDEN, payload)
        elif failure.status_code == 429:
            retry_after = None
            if failure.response is not None:
                retry_after = _retry_after_seconds(failure.response.headers.get("retry-after"))
            self._events.emit(EVENT_RATE_LIMITED, {**payload, "retry_after": retry_after})
        elif failure.kind is FailureKind.SERVER_ERROR:
            self._events.emit(EVENT_SERVER_ERROR, payload)

    def _log_request(self, descriptor: RequestDescriptor, request: httpx.Request) -> None:
        if not self._debug:
            return
        self._logger.info(
            "API request %s %s request_id=%s",
            request.method,
            request.url,
            descriptor.request_id,
        )

    def _log_response(
        self,
        descriptor: RequestDescriptor,
        response: httpx.Response,
        started: float,
    ) -> None:
        if not self._debug:
            return
        self._logger.info(
            "API response %s %s -> %s request_id=%s duration=%.0fms",
            response.request.method,
            response.request.url,
            response.status_code,
            descriptor.request_id,
            (self._clock() - started) * 1000,
        )

    async def _log_failure(
        self,
        descriptor: RequestDescriptor,
        failure: ClassifiedFailure,
        started: float,
    ) -> None:
        if failure.response is None:
            self._logger.warning(
                "API request failed %s %s kind=%s transport=%s request_id=%s error=%s",
                descriptor.method,
                descriptor.target,
                failure.kind.value,
                failure.transport.value if failure.transport else None,
                descriptor.request_id,
                failure.error,
            )
            return

        self._logger.warning(
            "API request failed %s %s -> %s kind=%s request_id=%s duration=%.0fms",
            descriptor.method,
            descriptor.target,
            failure.status_code,
            failure.kind.value,
            descriptor.request_id,
            (self._clock() - started) * 1000,
        )
        if self._debug:
            body = await failure.response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > MAX_LOGGED_BODY:
                text = text[:MAX_LOGGED_BODY] + "...<truncated>"
            self._logger.warning("API error body: %s", text)

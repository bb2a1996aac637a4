from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any

import httpx

from apiclient.classifier import ClassifiedFailure, FailureKind, TransportFailure, classify
from apiclient.constants import (
    APP_VERSION,
    DEFAULT_AUTH_ENDPOINTS,
    DEFAULT_REFRESH_PATH,
    HTTP_METHODS,
    LOGGER,
)
from apiclient.env import (
    get_env_float,
    get_env_int,
    load_env,
    parse_csv_env,
    setup_logging,
    validate_env,
)
from apiclient.errors import ApiError, SessionExpiredError, friendly_error_message
from apiclient.events import EventDispatcher
from apiclient.http import RequestPipeline
from apiclient.models import RequestDescriptor, ResponseEnvelope
from apiclient.retry import RetryPolicy
from auth.models import TokenState
from auth.refresh import RefreshCoordinator, RefreshState
from auth.session import SessionInvalidator
from auth.token_store import FileTokenStore, MemoryTokenStore, TokenStore


def extract_data(response: httpx.Response) -> Any:
    envelope = ResponseEnvelope.from_response(response)
    if envelope is not None:
        return envelope.data
    return response.json()


class ApiClient:
    """Application-facing client; every call goes through the request pipeline."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        pipeline: RequestPipeline,
        coordinator: RefreshCoordinator,
        token_store: TokenStore,
        events: EventDispatcher,
    ) -> None:
        self.http_client = http_client
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.token_store = token_store
        self.events = events

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        skip_auth: bool = False,
    ) -> httpx.Response:
        if method.lower() not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        descriptor = RequestDescriptor(
            method=method.upper(),
            target=path,
            headers=dict(headers or {}),
            json=json,
            content=content,
            params=params,
            skip_auth=skip_auth,
        )
        return await self.pipeline.execute(descriptor)

    async def get(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    async def set_access_token(self, access_token: str, expires_at: float) -> None:
        await self.token_store.write(TokenState(access_token=access_token, expires_at=expires_at))

    async def aclose(self) -> None:
        await self.coordinator.join()
        await self.events.drain()
        await self.http_client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def build_client(
    base_url: str,
    *,
    token_store: TokenStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = 30.0,
    retry_policy: RetryPolicy | None = None,
    auth_endpoints: set[str] | tuple[str, ...] = DEFAULT_AUTH_ENDPOINTS,
    refresh_path: str = DEFAULT_REFRESH_PATH,
    events: EventDispatcher | None = None,
    location_provider: Callable[[], str | None] | None = None,
    on_auth_failure: Callable[[SessionExpiredError], Any] | None = None,
    sleep=asyncio.sleep,
    debug: bool = False,
) -> ApiClient:
    token_store = token_store or MemoryTokenStore()
    events = events or EventDispatcher()
    endpoints = set(auth_endpoints) | {refresh_path}

    http_client = httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        transport=transport,
    )
    pipeline = RequestPipeline(
        http_client,
        token_store,
        retry_policy=retry_policy,
        events=events,
        auth_endpoints=sorted(endpoints),
        debug=debug,
        logger=LOGGER,
        sleep=sleep,
    )
    invalidator = SessionInvalidator(
        token_store,
        events,
        location_provider=location_provider,
        on_auth_failure=on_auth_failure,
    )
    coordinator = RefreshCoordinator(
        pipeline.execute,
        token_store,
        invalidator,
        events=events,
        refresh_path=refresh_path,
    )
    pipeline.coordinator = coordinator
    return ApiClient(http_client, pipeline, coordinator, token_store, events)


def create_client(
    *,
    location_provider: Callable[[], str | None] | None = None,
    on_auth_failure: Callable[[SessionExpiredError], Any] | None = None,
) -> ApiClient:
    load_env()
    debug_enabled = setup_logging()
    validate_env()

    base_url = os.getenv("API_BASE_URL", "").strip()
    timeout = get_env_float("API_TIMEOUT", 30.0)
    retry_policy = RetryPolicy(
        max_attempts=get_env_int("API_MAX_RETRIES", 3),
        base_delay=get_env_float("API_RETRY_BASE_DELAY", 1.0),
    )
    auth_endpoints = parse_csv_env("API_AUTH_ENDPOINTS") or set(DEFAULT_AUTH_ENDPOINTS)
    refresh_path = os.getenv("API_REFRESH_PATH", "").strip() or DEFAULT_REFRESH_PATH

    store_path = os.getenv("API_TOKEN_STORE_PATH", "").strip()
    token_store: TokenStore = FileTokenStore(store_path) if store_path else MemoryTokenStore()

    LOGGER.info(
        "Creating API client base_url=%s max_retries=%s refresh_path=%s",
        base_url,
        retry_policy.max_attempts,
        refresh_path,
    )
    return build_client(
        base_url,
        token_store=token_store,
        timeout=timeout,
        retry_policy=retry_policy,
        auth_endpoints=auth_endpoints,
        refresh_path=refresh_path,
        location_provider=location_provider,
        on_auth_failure=on_auth_failure,
        debug=debug_enabled,
    )


__all__ = [
    "APP_VERSION",
    "ApiClient",
    "ApiError",
    "ClassifiedFailure",
    "EventDispatcher",
    "FailureKind",
    "FileTokenStore",
    "MemoryTokenStore",
    "RefreshCoordinator",
    "RefreshState",
    "RequestDescriptor",
    "RequestPipeline",
    "RetryPolicy",
    "SessionExpiredError",
    "SessionInvalidator",
    "TokenState",
    "TokenStore",
    "TransportFailure",
    "build_client",
    "classify",
    "create_client",
    "extract_data",
    "friendly_error_message",
    "load_env",
    "setup_logging",
    "validate_env",
]

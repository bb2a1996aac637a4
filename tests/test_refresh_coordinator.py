import asyncio

import httpx
import pytest

from apiclient.classifier import FailureKind
from apiclient.errors import ApiError, SessionExpiredError
from apiclient.events import EventDispatcher
from apiclient.models import RequestDescriptor
from auth.models import TokenState
from auth.refresh import RefreshCoordinator, RefreshState
from auth.session import SessionInvalidator
from auth.token_store import MemoryTokenStore
from tests.api_helpers import (
    EventLog,
    FakeApi,
    make_client,
    renewal_rejected,
    renewal_success,
)

PATHS = ["/goals", "/tasks", "/reminders", "/settings", "/dashboard"]


async def _spin_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.mark.asyncio
async def test_concurrent_401s_trigger_single_renewal() -> None:
    api = FakeApi()
    client = make_client(api)

    async with client:
        responses = await asyncio.gather(*(client.get(path) for path in PATHS))

    assert [response.status_code for response in responses] == [200] * 5
    assert api.renewal_calls == 1
    assert api.renewal_requests[0].method == "POST"
    assert api.renewal_requests[0].content == b""
    for path in PATHS:
        replay = api.requests_for(f"/api/v1{path}")[-1]
        assert replay.headers["authorization"] == "Bearer T2"

    state = await client.token_store.read()
    assert state.access_token == "T2"


class _HeldApi(FakeApi):
    """Holds responses for one path until ``release`` is set."""

    def __init__(self, held_path: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.held_path = held_path
        self.release = asyncio.Event()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        response = await super().handler(request)
        if request.url.path == self.held_path and not self.release.is_set():
            await self.release.wait()
        return response


@pytest.mark.asyncio
async def test_late_401_reuses_renewed_token() -> None:
    api = _HeldApi("/api/v1/slow")
    client = make_client(api)

    async with client:
        slow = asyncio.create_task(client.get("/slow"))
        await _spin_until(lambda: len(api.requests_for("/api/v1/slow")) == 1)

        fast = await client.get("/fast")
        assert fast.status_code == 200
        assert api.renewal_calls == 1

        api.release.set()
        response = await slow

    assert response.status_code == 200
    assert api.renewal_calls == 1
    sent = api.requests_for("/api/v1/slow")
    assert [request.headers["authorization"] for request in sent] == [
        "Bearer T1",
        "Bearer T2",
    ]


@pytest.mark.asyncio
async def test_queue_drains_every_waiter_once() -> None:
    api = FakeApi()
    client = make_client(api)

    async with client:
        await asyncio.gather(*(client.get(path) for path in PATHS))

        assert client.coordinator.state is RefreshState.IDLE
        assert client.coordinator.pending == 0

    for path in PATHS:
        sent = api.requests_for(f"/api/v1{path}")
        assert [request.headers["authorization"] for request in sent] == [
            "Bearer T1",
            "Bearer T2",
        ]


@pytest.mark.asyncio
async def test_failed_renewal_fans_out_to_all_waiters() -> None:
    api = FakeApi(renewal_response=renewal_rejected("REFRESH_TOKEN_EXPIRED"))
    log = EventLog()
    client = make_client(api, location_provider=lambda: "/goals/42")
    client.events.subscribe("session-expired", log)

    async with client:
        results = await asyncio.gather(
            *(client.get(path) for path in PATHS),
            return_exceptions=True,
        )
        await client.coordinator.join()

        assert await client.token_store.read() is None

    assert all(isinstance(result, SessionExpiredError) for result in results)
    assert all(result is results[0] for result in results)
    assert results[0].reason == "refresh-token-expired"
    assert results[0].error_code == "REFRESH_TOKEN_EXPIRED"
    assert results[0].message == "Renewal rejected"
    assert api.renewal_calls == 1
    for path in PATHS:
        assert len(api.requests_for(f"/api/v1{path}")) == 1

    assert len(log.events) == 1
    event = log.events[0]
    assert event["reason"] == "refresh-token-expired"
    assert event["error_code"] == "REFRESH_TOKEN_EXPIRED"
    assert event["redirect"] == "/goals/42"


@pytest.mark.asyncio
async def test_next_renewal_waits_for_fresh_auth_expiry() -> None:
    api = FakeApi(renewal_response=renewal_rejected("SESSION_INVALID"))
    client = make_client(api)

    async with client:
        with pytest.raises(SessionExpiredError):
            await client.get("/goals")
        await client.coordinator.join()
        assert api.renewal_calls == 1

        api.renewal_response = renewal_success("T2")
        response = await client.get("/goals")

    assert response.status_code == 200
    assert api.renewal_calls == 2


@pytest.mark.asyncio
async def test_renewal_401_never_starts_another_renewal() -> None:
    api = FakeApi(renewal_response=httpx.Response(401, json={"detail": "no cookie"}))
    client = make_client(api)

    async with client:
        with pytest.raises(SessionExpiredError) as exc_info:
            await client.get("/goals")

    assert api.renewal_calls == 1
    assert exc_info.value.reason == "session-expired"
    assert exc_info.value.kind is FailureKind.AUTH_ENDPOINT_REJECTED


@pytest.mark.asyncio
async def test_business_rejection_of_renewal_is_terminal() -> None:
    api = FakeApi(
        renewal_response=renewal_rejected(
            "SESSION_REVOKED",
            status=200,
            message="Session revoked from another device",
        )
    )
    log = EventLog()
    client = make_client(api)
    client.events.subscribe("session-expired", log)

    async with client:
        with pytest.raises(SessionExpiredError) as exc_info:
            await client.get("/goals")

    assert exc_info.value.reason == "session-revoked"
    assert exc_info.value.message == "Session revoked from another device"
    assert [event["reason"] for event in log.events] == ["session-revoked"]


@pytest.mark.asyncio
async def test_renewal_without_access_token_fails() -> None:
    api = FakeApi(
        renewal_response=httpx.Response(200, json={"success": True, "code": 200, "data": {}})
    )
    client = make_client(api)

    async with client:
        with pytest.raises(SessionExpiredError) as exc_info:
            await client.get("/goals")

    assert exc_info.value.reason == "session-expired"
    assert await client.token_store.read() is None


@pytest.mark.asyncio
async def test_auth_retry_happens_once_per_request() -> None:
    api = FakeApi(valid_token="T3", renewal_response=renewal_success("T2"))
    sleep_calls = []

    async def _sleep(seconds: float) -> None:
        sleep_calls.append(seconds)

    client = make_client(api, sleep=_sleep)

    async with client:
        with pytest.raises(ApiError) as exc_info:
            await client.get("/goals")

    assert exc_info.value.kind is FailureKind.AUTH_EXPIRED
    assert exc_info.value.status_code == 401
    assert api.renewal_calls == 1
    assert len(api.requests_for("/api/v1/goals")) == 2
    assert sleep_calls == []


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_abort_renewal() -> None:
    gate = asyncio.Event()
    api = FakeApi(gate=gate)
    client = make_client(api)

    async with client:
        first = asyncio.create_task(client.get("/goals"))
        second = asyncio.create_task(client.get("/tasks"))
        await _spin_until(lambda: api.renewal_calls == 1 and client.coordinator.pending == 2)

        first.cancel()
        await asyncio.sleep(0)
        gate.set()

        response = await second
        with pytest.raises(asyncio.CancelledError):
            await first

    assert response.status_code == 200
    assert api.renewal_calls == 1
    assert (await client.token_store.read()).access_token == "T2"


@pytest.mark.asyncio
async def test_renewal_carries_ambient_cookie() -> None:
    api = FakeApi()
    api.routes["/api/v1/auth/login"] = httpx.Response(
        200,
        headers={"set-cookie": "refreshToken=r1; Path=/; HttpOnly; Secure"},
        json={"success": True, "code": 200, "data": {}},
    )
    client = make_client(api)

    async with client:
        await client.post("/auth/login", json={"username": "u"}, skip_auth=True)
        await client.get("/goals")

    assert api.renewal_calls == 1
    assert "refreshToken=r1" in api.renewal_requests[0].headers["cookie"]


@pytest.mark.asyncio
async def test_token_refreshed_event() -> None:
    api = FakeApi()
    log = EventLog()
    client = make_client(api)
    client.events.subscribe("token-refreshed", log)

    async with client:
        await client.get("/goals")

    assert len(log.events) == 1
    assert log.events[0]["expires_at"] > 0


class _GatedRenewal:
    def __init__(self) -> None:
        self.calls: list[RequestDescriptor] = []
        self.gate = asyncio.Event()

    async def __call__(self, descriptor: RequestDescriptor) -> httpx.Response:
        self.calls.append(descriptor)
        await self.gate.wait()
        return renewal_success("fresh")


def _coordinator(send) -> tuple[RefreshCoordinator, MemoryTokenStore]:
    store = MemoryTokenStore()
    events = EventDispatcher()
    invalidator = SessionInvalidator(store, events)
    return RefreshCoordinator(send, store, invalidator, events=events), store


@pytest.mark.asyncio
async def test_coordinator_releases_waiters_in_fifo_order() -> None:
    send = _GatedRenewal()
    coordinator, store = _coordinator(send)
    resumed: list[int] = []

    async def _wait(index: int) -> str:
        token = await coordinator.await_token(RequestDescriptor("GET", f"/items/{index}"))
        resumed.append(index)
        return token

    tasks = [asyncio.create_task(_wait(index)) for index in range(10)]
    await _spin_until(lambda: coordinator.pending == 10)
    assert coordinator.state is RefreshState.REFRESHING

    send.gate.set()
    tokens = await asyncio.gather(*tasks)

    assert tokens == ["fresh"] * 10
    assert resumed == list(range(10))
    assert len(send.calls) == 1
    assert coordinator.renewal_count == 1
    assert coordinator.state is RefreshState.IDLE
    assert (await store.read()).access_token == "fresh"


@pytest.mark.asyncio
async def test_coordinator_renewal_request_is_skip_auth() -> None:
    send = _GatedRenewal()
    send.gate.set()
    coordinator, _ = _coordinator(send)

    await coordinator.await_token(RequestDescriptor("GET", "/items"))

    renewal = send.calls[0]
    assert renewal.skip_auth is True
    assert renewal.method == "POST"
    assert renewal.target == "/auth/refresh"
    assert renewal.json is None and renewal.content is None


@pytest.mark.asyncio
async def test_coordinator_renews_when_store_matches_failed_token() -> None:
    send = _GatedRenewal()
    send.gate.set()
    coordinator, store = _coordinator(send)
    await store.write(TokenState("stale", 1.0))

    token = await coordinator.await_token(RequestDescriptor("GET", "/items"), "stale")

    assert token == "fresh"
    assert len(send.calls) == 1

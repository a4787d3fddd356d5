from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from codeprep.config import Settings, socket_base_url
from codeprep.errors import AuthError, ServerRejectionError, TransientInfraError
from codeprep.services.transport import (
    CodingApi,
    CredentialStore,
    Identity,
    RestTransport,
    classify_status,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def _transport(settings, handler, *, notify=None, on_redirect=None, clock=None, identity=True) -> RestTransport:
    clock = clock or FakeClock()
    credentials = CredentialStore(Identity(token="tok-1", user_id="u1", user_name="Ada") if identity else None)
    return RestTransport(
        settings,
        credentials,
        notify=notify,
        on_auth_redirect=on_redirect,
        http_transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.mark.parametrize(
    "status,error_type",
    [
        (401, AuthError),
        (502, TransientInfraError),
        (503, TransientInfraError),
        (504, TransientInfraError),
        (500, ServerRejectionError),
        (429, ServerRejectionError),
        (400, ServerRejectionError),
        (404, ServerRejectionError),
    ],
)
def test_classify_status(status, error_type):
    error = classify_status(status, {"message": "nope"}, "coding/execute")
    assert isinstance(error, error_type)
    assert error.details["status"] == status


def test_server_message_is_surfaced():
    error = classify_status(400, {"success": False, "message": "Code is required"})
    assert error.message == "Code is required"


def test_socket_url_is_derived_from_api_url():
    assert socket_base_url(Settings(API_URL="https://example.test/api")) == "https://example.test"
    assert socket_base_url(Settings(API_URL="https://example.test/api/")) == "https://example.test"
    assert socket_base_url(Settings(API_URL="https://x.test/api", SOCKET_URL="https://ws.test/")) == "https://ws.test"


def test_request_sends_bearer_token_and_unwraps_envelope(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        return httpx.Response(200, json={"success": True, "data": {"sessionId": "s1"}})

    async def scenario():
        async with _transport(settings, handler) as transport:
            return await CodingApi(transport).get_session("s1")

    data = asyncio.run(scenario())
    assert data == {"sessionId": "s1"}
    assert seen == {"auth": "Bearer tok-1", "path": "/api/coding/session/s1"}


def test_concurrent_401s_redirect_once(settings, notices):
    redirects = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Token expired"})

    async def scenario():
        transport = _transport(settings, handler, notify=notices, on_redirect=lambda: redirects.append(1))
        results = await asyncio.gather(
            transport.get("coding/session/s1"),
            transport.get("coding/progress/s1"),
            transport.post("coding/save-progress", {}),
            return_exceptions=True,
        )
        await transport.close()
        return transport, results

    transport, results = asyncio.run(scenario())
    assert all(isinstance(result, AuthError) for result in results)
    assert redirects == [1]
    assert transport.credentials.identity is None
    assert len(notices.levels("error")) == 1


def test_suppressed_auth_redirect_leaves_credentials(settings):
    redirects = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Invalid credentials"})

    async def scenario():
        transport = _transport(settings, handler, on_redirect=lambda: redirects.append(1))
        with pytest.raises(AuthError):
            await transport.post("auth/login", {}, suppress_auth_redirect=True)
        await transport.close()
        return transport

    transport = asyncio.run(scenario())
    assert redirects == []
    assert transport.credentials.token == "tok-1"


def test_cold_start_wakes_and_retries_once(settings):
    calls = {"session": 0, "health": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/health"):
            calls["health"] += 1
            if calls["health"] < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "ok"})
        calls["session"] += 1
        if calls["session"] == 1:
            return httpx.Response(502, text="Bad Gateway")
        return httpx.Response(200, json={"success": True, "data": {"sessionId": "s1"}})

    async def scenario():
        transport = _transport(settings, handler)
        data = await CodingApi(transport).get_session("s1")
        await transport.close()
        return transport, data

    transport, data = asyncio.run(scenario())
    assert data["sessionId"] == "s1"
    assert calls == {"session": 2, "health": 3}
    assert transport.waker.attempts == 3


def test_cold_start_gives_up_after_budget(settings, notices):
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/health"):
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(503)

    async def scenario():
        transport = _transport(settings, handler, notify=notices, clock=clock)
        with pytest.raises(TransientInfraError) as excinfo:
            await transport.get("coding/session/s1", wake_on_cold_start=True)
        await transport.close()
        return transport, excinfo.value

    transport, error = asyncio.run(scenario())
    assert "Unable to reach server" in error.message
    assert clock.now >= settings.WAKE_MAX_WAIT_S
    assert transport.waker.attempts > 1
    # the wake sequence itself stays quiet
    assert notices.items == []


def test_server_errors_are_not_retried(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(500, json={"message": "boom"})

    async def scenario():
        transport = _transport(settings, handler)
        with pytest.raises(ServerRejectionError) as excinfo:
            await transport.get("coding/session/s1", wake_on_cold_start=True)
        await transport.close()
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.status == 500
    assert calls == ["/api/coding/session/s1"]


def test_network_notices_are_rate_limited(settings, notices):
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        transport = _transport(settings, handler, notify=notices, clock=clock)
        for _ in range(3):
            with pytest.raises(TransientInfraError):
                await transport.post("coding/save-progress", {"code": "x"})
        clock.now += settings.NETWORK_NOTICE_COOLDOWN_S + 1
        with pytest.raises(TransientInfraError):
            await transport.post("coding/save-progress", {"code": "x"})
        with pytest.raises(TransientInfraError):
            await transport.post("coding/save-progress", {"code": "x"}, quiet=True)
        await transport.close()

    asyncio.run(scenario())
    assert len(notices.levels("error")) == 2


def test_timeout_is_transient(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def scenario():
        transport = _transport(settings, handler)
        with pytest.raises(TransientInfraError) as excinfo:
            await transport.post("coding/execute", {}, quiet=True)
        await transport.close()
        return excinfo.value

    assert asyncio.run(scenario()).message == "Request timed out"


def test_execution_failure_in_400_body_is_a_result(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "success": False,
                "message": "SyntaxError: invalid syntax",
                "data": {"testResults": [{"testCase": 1, "passed": False}]},
            },
        )

    async def scenario():
        transport = _transport(settings, handler)
        data = await CodingApi(transport).execute({"code": "def"})
        await transport.close()
        return data

    data = asyncio.run(scenario())
    assert data["success"] is False
    assert data["error"] == "SyntaxError: invalid syntax"
    assert data["testResults"][0]["passed"] is False


def test_plain_400_is_still_rejected(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"success": False, "message": "Code is required"})

    async def scenario():
        transport = _transport(settings, handler)
        with pytest.raises(ServerRejectionError) as excinfo:
            await CodingApi(transport).execute({"code": ""})
        await transport.close()
        return excinfo.value

    assert asyncio.run(scenario()).message == "Code is required"

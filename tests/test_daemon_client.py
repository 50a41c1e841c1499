"""Tests for the daemon control client's transport and error mapping."""

import json

import httpx
import pytest

from mcps.core.errors import (
    ConnectionFailed,
    DaemonNotRunning,
    DaemonUnavailable,
    McpsError,
    ServerNotFound,
    ToolInvocationError,
)
from mcps.daemon.client import DaemonClient

URL = "http://127.0.0.1:4999"


def make_client(handler) -> DaemonClient:
    return DaemonClient(URL, transport=httpx.MockTransport(handler))


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


class TestHealth:
    @pytest.mark.asyncio
    async def test_is_running(self):
        client = make_client(lambda request: httpx.Response(200, json={"status": "healthy"}))

        assert await client.is_running() is True

    @pytest.mark.asyncio
    async def test_not_running_when_refused(self):
        assert await make_client(refuse).is_running() is False

    @pytest.mark.asyncio
    async def test_status(self):
        def handler(request):
            assert request.url.path == "/health"
            return httpx.Response(
                200,
                json={"status": "healthy", "uptime_seconds": 12.5, "port": 4999, "pid": 42, "connections": {"alpha": "ready"}},
            )

        status = await make_client(handler).get_status()

        assert status.running is True
        assert status.pid == 42
        assert status.connections == {"alpha": "ready"}

    @pytest.mark.asyncio
    async def test_status_when_refused(self):
        status = await make_client(refuse).get_status()

        assert status.running is False
        assert status.error == "Daemon not running"


class TestOperations:
    @pytest.mark.asyncio
    async def test_list_tools(self):
        def handler(request):
            assert request.method == "POST"
            assert request.url.path == "/list"
            assert json.loads(request.read()) == {"server": "alpha"}
            return httpx.Response(200, json={"tools": [{"name": "echo"}]})

        assert await make_client(handler).list_tools("alpha") == [{"name": "echo"}]

    @pytest.mark.asyncio
    async def test_call_tool_returns_result_unchanged(self):
        result = {"content": [{"type": "text", "text": "done"}], "isError": False, "structuredContent": {"n": 1}}
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(200, json=result)

        assert await make_client(handler).call_tool("alpha", "echo", {"text": "hi"}) == result
        assert seen["path"] == "/call"
        assert json.loads(seen["body"])["arguments"] == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_restart_message(self):
        client = make_client(lambda request: httpx.Response(200, json={"message": "Restarted all connections (0 closed)."}))

        assert await client.restart() == "Restarted all connections (0 closed)."


class TestErrors:
    @pytest.mark.asyncio
    async def test_refused_is_not_running(self):
        with pytest.raises(DaemonNotRunning):
            await make_client(refuse).list_tools("alpha")

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable_not_fallback(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(DaemonUnavailable) as exc_info:
            await make_client(handler).call_tool("alpha", "slow")

        assert not isinstance(exc_info.value, DaemonNotRunning)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,code,error_cls",
        [
            (404, "server_not_found", ServerNotFound),
            (502, "connection_failed", ConnectionFailed),
            (422, "tool_invocation_error", ToolInvocationError),
        ],
    )
    async def test_error_payload_rebuilt(self, status, code, error_cls):
        payload = {"error": "it broke", "code": code, "server": "alpha"}
        client = make_client(lambda request: httpx.Response(status, json=payload))

        with pytest.raises(error_cls) as exc_info:
            await client.call_tool("alpha", "echo")

        assert exc_info.value.message == "it broke"
        assert exc_info.value.server == "alpha"

    @pytest.mark.asyncio
    async def test_validation_detail(self):
        client = make_client(lambda request: httpx.Response(422, json={"detail": [{"msg": "field required"}]}))

        with pytest.raises(McpsError, match="field required"):
            await client.call_tool("alpha", "echo")

    @pytest.mark.asyncio
    async def test_non_json_error(self):
        client = make_client(lambda request: httpx.Response(500, text="Internal Server Error"))

        with pytest.raises(McpsError, match="HTTP 500"):
            await client.restart()

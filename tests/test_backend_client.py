"""
Tests for the backend RPC client and the invalidation notifier.
"""

from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from converse.backend.client import BackendClient
from converse.backend.notifier import InvalidationNotifier
from converse.cache.invalidation import PresenceOffline
from converse.exceptions import BackendError


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(BackendClient._post.retry, "wait", wait_none())


def make_client(handler, deploy_key: str | None = None) -> BackendClient:
    return BackendClient(
        "http://backend.test/", deploy_key=deploy_key, transport=httpx.MockTransport(handler)
    )


class TestBackendClient:
    @pytest.mark.asyncio
    async def test_query_posts_rpc_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "success", "value": [{"_id": "c1"}]})

        client = make_client(handler)
        value = await client.query("conversations:get", {"limit": 5}, token="tok")
        await client.close()

        assert value == [{"_id": "c1"}]
        request = seen[0]
        assert request.url == "http://backend.test/api/query"
        assert json.loads(request.content) == {
            "path": "conversations:get",
            "args": {"limit": 5},
            "format": "json",
        }
        assert request.headers["authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_action_posts_to_action_endpoint(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "success", "value": {"title": "Hi"}})

        client = make_client(handler)
        value = await client.action("linkPreviews:fetchLinkPreview", {"url": "https://a.b"})
        await client.close()

        assert value == {"title": "Hi"}
        assert seen[0].url == "http://backend.test/api/action"
        assert json.loads(seen[0].content)["args"] == {"url": "https://a.b"}

    @pytest.mark.asyncio
    async def test_deploy_key_used_without_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "success", "value": None})

        client = make_client(handler, deploy_key="prod:abc")
        assert await client.query("presence:getUserStatus") is None

        assert seen[0].headers["authorization"] == "Convex prod:abc"
        assert json.loads(seen[0].content)["args"] == {}

    @pytest.mark.asyncio
    async def test_function_error_raises_backend_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "error", "errorMessage": "Unauthorized"})

        with pytest.raises(BackendError) as exc_info:
            await make_client(handler).query("user:getCurrent")

        assert "Unauthorized" in exc_info.value.message
        assert exc_info.value.context["path"] == "user:getCurrent"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"status": "error", "errorMessage": "bad args"})

        with pytest.raises(BackendError) as exc_info:
            await make_client(handler).query("messages:get")

        assert calls == 1
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self) -> None:
        responses = [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"status": "success", "value": 7}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        assert await make_client(handler).query("requests:count") == 7
        assert responses == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500, text="boom")

        with pytest.raises(BackendError) as exc_info:
            await make_client(handler).query("rooms:getRooms")

        assert calls == 3
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackendError) as exc_info:
            await make_client(handler).query("friends:get")

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        with pytest.raises(BackendError):
            await make_client(handler).query("friends:get")


class TestInvalidationNotifier:
    @pytest.mark.asyncio
    async def test_notify_posts_event(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        notifier = InvalidationNotifier(
            "http://app.test/", webhook_secret="s3cret", transport=httpx.MockTransport(handler)
        )
        ok = await notifier.notify("presence.heartbeat", userId="u1")
        await notifier.close()

        assert ok is True
        assert seen[0].url == "http://app.test/cache/invalidate"
        assert seen[0].headers["x-webhook-secret"] == "s3cret"
        assert json.loads(seen[0].content) == {"type": "presence.heartbeat", "userId": "u1"}

    @pytest.mark.asyncio
    async def test_notify_event(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        notifier = InvalidationNotifier("http://app.test", transport=httpx.MockTransport(handler))

        assert await notifier.notify_event(PresenceOffline(user_id="u1")) is True
        assert bodies == [{"type": "presence.offline", "userId": "u1"}]

    @pytest.mark.asyncio
    async def test_failures_return_false(self) -> None:
        def failing(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        for handler in (failing, unreachable):
            notifier = InvalidationNotifier("http://app.test", transport=httpx.MockTransport(handler))
            assert await notifier.notify("typing.change", conversationId="c1") is False

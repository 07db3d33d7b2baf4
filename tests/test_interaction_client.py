"""Tests for the outbound Discord webhook client (httpx.MockTransport)."""

import json

import httpx
import pytest

from core.errors import ConfigError
from core.settings import DiscordConfig
from worker.interaction_client import InteractionClient


def _client(status: int = 200, body: dict | None = None, **kwargs):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InteractionClient(client=http, **kwargs), requests


class TestInteractionClient:
    async def test_edit_original_response(self) -> None:
        client, requests = _client(body={"id": "m1"}, base_url="https://discord.test/api/v10/")

        result = await client.edit_original_response("app-1", "tok-1", "hello")

        assert result == {"id": "m1"}
        req = requests[0]
        assert req.method == "PATCH"
        assert str(req.url) == "https://discord.test/api/v10/webhooks/app-1/tok-1/messages/@original"
        assert json.loads(req.content) == {"content": "hello"}
        assert "authorization" not in req.headers
        await client.aclose()

    async def test_create_followup_message(self) -> None:
        client, requests = _client(body={"id": "m2"}, bot_token="bot-secret")

        await client.create_followup_message("app-1", "tok-1", "done")

        req = requests[0]
        assert req.method == "POST"
        assert req.url.path == "/api/v10/webhooks/app-1/tok-1"
        assert req.headers["authorization"] == "Bot bot-secret"
        assert req.headers["user-agent"].startswith("discord-relay/")
        await client.aclose()

    async def test_empty_body(self) -> None:
        client, _ = _client(status=204)
        assert await client.create_followup_message("a", "t", "x") == {}
        await client.aclose()

    async def test_http_error_raises(self) -> None:
        client, _ = _client(status=404, body={"message": "Unknown Webhook"})
        with pytest.raises(httpx.HTTPStatusError):
            await client.edit_original_response("a", "t", "x")
        await client.aclose()

    def test_from_config_requires_application_id(self) -> None:
        with pytest.raises(ConfigError, match="application_id"):
            InteractionClient.from_config(DiscordConfig())

"""Outbound Discord client for interaction follow-ups.

Only the two webhook calls used by agent listeners are implemented. The
interaction token authorizes both; the bot token is sent when configured.
"""

from typing import Any

import httpx

from core.config import DEFAULT_API_BASE_URL
from core.errors import ConfigError
from core.settings import DiscordConfig

REQUEST_TIMEOUT = 10.0  # seconds


class InteractionClient:
    """Edits original interaction responses and posts follow-ups."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        bot_token: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"User-Agent": "discord-relay/0.1.0"}
        if bot_token:
            headers["Authorization"] = f"Bot {bot_token}"
        self._client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        self._base_url = (base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self._headers = headers

    @classmethod
    def from_config(cls, cfg: DiscordConfig) -> "InteractionClient":
        if not cfg.application_id:
            raise ConfigError(
                "discord.application_id is required to edit responses",
                hint="Set discord.application_id or RELAY_DISCORD__APPLICATION_ID.",
            )
        return cls(base_url=cfg.api_base_url, bot_token=cfg.bot_token)

    async def _request(self, method: str, path: str, json_body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.request(
            method,
            f"{self._base_url}{path}",
            json=json_body,
            headers=self._headers,
        )
        resp.raise_for_status()
        if not resp.content:
            return {}
        return resp.json()

    async def edit_original_response(
        self, application_id: str, token: str, content: str
    ) -> dict[str, Any]:
        """PATCH /webhooks/{app}/{token}/messages/@original"""
        return await self._request(
            "PATCH",
            f"/webhooks/{application_id}/{token}/messages/@original",
            {"content": content},
        )

    async def create_followup_message(
        self, application_id: str, token: str, content: str
    ) -> dict[str, Any]:
        """POST /webhooks/{app}/{token}"""
        return await self._request(
            "POST",
            f"/webhooks/{application_id}/{token}",
            {"content": content},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

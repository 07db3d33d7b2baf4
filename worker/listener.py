"""Agent listener: answers routed interactions through the deferred-response protocol."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from core.envelope import Envelope
from core.errors import ListenerError

logger = logging.getLogger("relay.listener")

RESPONSE_DEADLINE = 10.0  # seconds for edit + follow-up together


class InteractionResponder(Protocol):
    """The two Discord calls a listener needs."""

    async def edit_original_response(
        self, application_id: str, token: str, content: str
    ) -> dict[str, Any]: ...

    async def create_followup_message(
        self, application_id: str, token: str, content: str
    ) -> dict[str, Any]: ...


class AgentListener:
    """Handles envelopes published for one agent identity."""

    def __init__(
        self,
        agent_id: str,
        application_id: str,
        responder: InteractionResponder,
        deadline: float = RESPONSE_DEADLINE,
    ) -> None:
        self.agent_id = agent_id
        self.application_id = application_id
        self.responder = responder
        self.deadline = deadline

    async def handle_payload(self, raw: str | bytes) -> None:
        """Process one published envelope.

        Malformed envelopes and envelopes for other agents are skipped.

        Raises:
            ListenerError: The interaction cannot be answered, or Discord
                rejected the edit or the follow-up.
        """
        try:
            envelope = Envelope.from_json(raw)
        except ValueError as e:
            logger.warning("Invalid payload: %s", e)
            return None

        # Channels are per agent already; this guards against a shared channel.
        if envelope.agent.lower() != self.agent_id.lower():
            logger.debug("Skipping envelope for agent %s", envelope.agent)
            return None

        try:
            interaction = json.loads(envelope.interaction)
        except json.JSONDecodeError as e:
            raise ListenerError("decode interaction") from e
        if not isinstance(interaction, dict):
            raise ListenerError("decode interaction: not a JSON object")
        token = interaction.get("token") or ""
        if not token:
            raise ListenerError("interaction missing token")

        received = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
        content = f"Agent {self.agent_id} received {envelope.kind} `{envelope.key}` at {received}"
        followup = f"Follow-up: {self.agent_id} completed {envelope.kind} `{envelope.key}`"

        try:
            async with asyncio.timeout(self.deadline):
                try:
                    await self.responder.edit_original_response(
                        self.application_id, token, content
                    )
                except Exception as e:
                    raise ListenerError(f"edit original response: {e}") from e
                try:
                    await self.responder.create_followup_message(
                        self.application_id, token, followup
                    )
                except Exception as e:
                    raise ListenerError(f"create followup response: {e}") from e
        except TimeoutError as e:
            raise ListenerError(
                f"responding to {envelope.kind} {envelope.key!r} exceeded {self.deadline:g}s"
            ) from e

        logger.info("Processed %s interaction %s", envelope.kind, envelope.key)
        return None

"""Verification and routing state machine for interaction callbacks.

``InteractionServer.handle`` is transport independent: the FastAPI
router passes it the request headers and raw body and writes back the
status code and JSON it returns.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from core.envelope import Envelope
from core.errors import PublishError
from server.app.interactions.crypto import SignatureVerifier
from server.app.interactions.dispatcher import Dispatcher, HandlerKind

logger = logging.getLogger("relay.interactions")

SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

# Interaction types
PING = 1
APPLICATION_COMMAND = 2
MESSAGE_COMPONENT = 3
APPLICATION_COMMAND_AUTOCOMPLETE = 4
MODAL_SUBMIT = 5

# Interaction callback types
PONG = 1
DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE = 5
APPLICATION_COMMAND_AUTOCOMPLETE_RESULT = 8

_KIND_BY_TYPE = {
    APPLICATION_COMMAND: HandlerKind.COMMAND,
    MESSAGE_COMPONENT: HandlerKind.COMPONENT,
    APPLICATION_COMMAND_AUTOCOMPLETE: HandlerKind.AUTOCOMPLETE,
    MODAL_SUBMIT: HandlerKind.MODAL,
}


class Publisher(Protocol):
    async def publish(self, envelope: Envelope) -> int: ...

    def channel_for(self, agent: str) -> str: ...


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower(), "")
    return value or ""


def _error(status: int, detail: str) -> tuple[int, dict[str, Any]]:
    return status, {"detail": detail}


def interaction_key(kind: HandlerKind, data: Mapping[str, Any]) -> str:
    if kind in (HandlerKind.COMMAND, HandlerKind.AUTOCOMPLETE):
        return str(data.get("name") or "").lower()
    return str(data.get("custom_id") or "")


class InteractionServer:
    """Answers each callback with a pong, a deferred ack or autocomplete choices.

    Args:
        verifier: Signature verifier, or None to accept unsigned requests
            (dry run only).
        dispatcher: Compiled route table.
        publisher: Envelope publisher for routed interactions.
        timeout_seconds: Interaction lifetime recorded in each envelope.
    """

    def __init__(
        self,
        verifier: SignatureVerifier | None,
        dispatcher: Dispatcher,
        publisher: Publisher,
        timeout_seconds: float,
    ) -> None:
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.timeout_seconds = timeout_seconds

    async def handle(
        self, headers: Mapping[str, str], body: bytes
    ) -> tuple[int, dict[str, Any]]:
        if self.verifier is not None:
            signature = _header(headers, SIGNATURE_HEADER)
            timestamp = _header(headers, TIMESTAMP_HEADER)
            if not self.verifier.verify(signature, timestamp, body):
                logger.warning("Rejected interaction with invalid signature")
                return _error(401, "invalid request signature")

        try:
            interaction = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "invalid interaction payload")
        if not isinstance(interaction, dict) or "type" not in interaction:
            return _error(400, "invalid interaction payload")

        itype = interaction["type"]
        if itype == PING:
            return 200, {"type": PONG}

        kind = _KIND_BY_TYPE.get(itype) if isinstance(itype, int) else None
        if kind is None:
            return _error(400, f"unsupported interaction type {itype!r}")

        data = interaction.get("data")
        if not isinstance(data, dict):
            data = {}
        key = interaction_key(kind, data)
        binding = self.dispatcher.lookup(kind, key)
        if binding is None:
            logger.info(
                "No handler for %s %r", kind.value, key,
                extra={"kind": kind.value, "key": key},
            )
            return _error(404, f"no handler for {kind.value} {key!r}")

        if kind is HandlerKind.AUTOCOMPLETE:
            return 200, {
                "type": APPLICATION_COMMAND_AUTOCOMPLETE_RESULT,
                "data": {"choices": [dict(c) for c in binding.choices]},
            }

        envelope = Envelope.from_interaction(
            agent=binding.agent,
            kind=kind.value,
            key=binding.key,
            interaction=interaction,
            timeout_seconds=self.timeout_seconds,
        )
        channel = self.publisher.channel_for(binding.agent)
        try:
            await self.publisher.publish(envelope)
        except PublishError as e:
            logger.error(
                "Publish failed: %s", e,
                extra={"kind": kind.value, "key": key, "agent": binding.agent, "channel": channel},
            )
            return _error(502, "failed to dispatch interaction")

        logger.info(
            "Dispatched %s %r to %s", kind.value, key, binding.agent,
            extra={"kind": kind.value, "key": key, "agent": binding.agent, "channel": channel},
        )
        return 200, {"type": DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE}

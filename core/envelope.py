"""Envelope wire format shared by the interaction server and agent listeners.

An envelope wraps one raw Discord interaction with its routing metadata.
It is published as JSON on ``{prefix}:agent:{agent}``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.config import ENVELOPE_SOURCE, normalize_channel_prefix


def agent_channel(prefix: str, agent: str) -> str:
    """Broker channel for an agent, e.g. ``relay:discord:agent:deploy``."""
    return f"{normalize_channel_prefix(prefix)}:agent:{agent.strip().lower()}"


def registry_key(prefix: str, agent: str) -> str:
    """Registry key for an agent, e.g. ``relay:discord:registry:deploy``."""
    return f"{normalize_channel_prefix(prefix)}:registry:{agent.strip().lower()}"


def _compact(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode()


def _format_time(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return ts.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Envelope:
    """One interaction routed to one agent.

    ``interaction`` holds the compact JSON encoding of the original
    interaction object. It is embedded verbatim (not as a string) when
    the envelope is serialized.
    """

    agent: str
    kind: str
    key: str
    interaction: bytes
    timeout_seconds: int
    received_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    source: str = ENVELOPE_SOURCE

    @classmethod
    def from_interaction(
        cls,
        agent: str,
        kind: str,
        key: str,
        interaction: dict[str, Any],
        timeout_seconds: float,
    ) -> "Envelope":
        return cls(
            agent=agent,
            kind=kind,
            key=key,
            interaction=_compact(interaction),
            timeout_seconds=int(timeout_seconds),
        )

    def interaction_data(self) -> dict[str, Any]:
        """Decode the embedded interaction."""
        return json.loads(self.interaction)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "kind": self.kind,
            "key": self.key,
            "interaction": self.interaction_data(),
            "received_at": _format_time(self.received_at),
            "timeout_seconds": self.timeout_seconds,
            "source": self.source,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Envelope":
        """Parse a published envelope.

        Raises:
            ValueError: The payload is not valid JSON or lacks required fields.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid envelope JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("envelope must be a JSON object")

        interaction = data.get("interaction")
        if not isinstance(interaction, dict):
            raise ValueError("envelope is missing the interaction object")

        received_raw = data.get("received_at")
        try:
            received_at = (
                datetime.fromisoformat(received_raw)
                if received_raw
                else datetime.now(timezone.utc)
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid received_at {received_raw!r}") from e

        try:
            timeout_seconds = int(data.get("timeout_seconds") or 0)
        except (TypeError, ValueError) as e:
            raise ValueError("invalid timeout_seconds") from e

        return cls(
            agent=str(data.get("agent", "")),
            kind=str(data.get("kind", "")),
            key=str(data.get("key", "")),
            interaction=_compact(interaction),
            timeout_seconds=timeout_seconds,
            received_at=received_at,
            source=str(data.get("source", "")),
        )

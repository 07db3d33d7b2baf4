"""Route table compiled from the ``interactions.handlers`` config section."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.errors import ConfigError
from core.settings import AutocompleteChoice, HandlerRoute, InteractionsConfig


class HandlerKind(str, Enum):
    COMMAND = "command"
    COMPONENT = "component"
    MODAL = "modal"
    AUTOCOMPLETE = "autocomplete"


@dataclass(frozen=True)
class HandlerBinding:
    """One ``(kind, key) -> route`` association.

    Autocomplete bindings have no agent; they answer with ``choices``.
    """

    kind: HandlerKind
    key: str
    agent: str = ""
    channel: str = ""
    choices: tuple[dict[str, Any], ...] = field(default_factory=tuple)


def build_autocomplete_choices(raw: list[AutocompleteChoice]) -> tuple[dict[str, Any], ...]:
    """Keep choices with a non-blank name and a value."""
    return tuple(
        {"name": choice.name, "value": choice.value}
        for choice in raw
        if choice.name.strip() and choice.value is not None
    )


def _routed(kind: HandlerKind, key: str, route: HandlerRoute) -> HandlerBinding | None:
    if not route.agent.strip():
        return None
    return HandlerBinding(kind=kind, key=key, agent=route.agent.strip(), channel=route.channel)


def collect_handler_bindings(cfg: InteractionsConfig) -> list[HandlerBinding]:
    """Compile configured routes into bindings.

    Routes without an agent are dropped, as are autocomplete routes with
    no valid choices. A disabled section compiles to nothing.
    """
    if not cfg.enabled:
        return []

    handlers = cfg.handlers
    bindings: list[HandlerBinding] = []
    for kind, table, lower in (
        (HandlerKind.COMMAND, handlers.commands, True),
        (HandlerKind.COMPONENT, handlers.components, False),
        (HandlerKind.MODAL, handlers.modals, False),
    ):
        for key, route in table.items():
            binding = _routed(kind, key.lower() if lower else key, route)
            if binding is not None:
                bindings.append(binding)

    for key, route in handlers.autocomplete.items():
        choices = build_autocomplete_choices(route.choices)
        if not choices:
            continue
        bindings.append(
            HandlerBinding(kind=HandlerKind.AUTOCOMPLETE, key=key.lower(), choices=choices)
        )
    return bindings


class Dispatcher:
    """Immutable lookup from ``(kind, key)`` to a binding."""

    def __init__(self, bindings: list[HandlerBinding]) -> None:
        if not bindings:
            raise ConfigError(
                "no interaction handlers configured",
                hint="Set interactions.handlers in discord.yaml.",
            )
        self._bindings: dict[tuple[HandlerKind, str], HandlerBinding] = {
            (b.kind, b.key): b for b in bindings
        }

    @classmethod
    def from_config(cls, cfg: InteractionsConfig) -> "Dispatcher":
        return cls(collect_handler_bindings(cfg))

    def lookup(self, kind: HandlerKind, key: str) -> HandlerBinding | None:
        if kind in (HandlerKind.COMMAND, HandlerKind.AUTOCOMPLETE):
            key = key.lower()
        return self._bindings.get((kind, key))

    def bindings(self) -> list[HandlerBinding]:
        return list(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)

"""Exception hierarchy shared by the server, worker and CLI.

Every error carries an optional operator hint. Underlying causes are
chained with ``raise ... from err`` so the CLI can print the full chain.
"""


class RelayError(Exception):
    """Base class for all relay errors."""

    def __init__(self, message: str, hint: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ConfigError(RelayError):
    """Invalid or incomplete configuration detected at startup."""


class PublishError(RelayError):
    """An envelope could not be written to the broker."""


class ListenerError(RelayError):
    """An agent listener could not relay a reply back to Discord."""


class TunnelError(RelayError):
    """A tunnel subprocess failed to start, become ready, or stop."""


class DaemonError(RelayError):
    """The background server daemon could not be started or stopped."""


def format_error_chain(err: BaseException) -> list[str]:
    """Return the messages of an exception and all of its causes."""
    lines: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current) or type(current).__name__
        lines.append(text)
        current = current.__cause__
    return lines

"""Server-sent event frames emitted while a turn is streaming."""

from __future__ import annotations

HEARTBEAT_EVENT = ": ping\n\n"
DONE_EVENT = "event: done\ndata:\n\n"


def format_data_event(text: str) -> str:
    """Frame ``text`` as one SSE message, one ``data:`` line per line of text."""
    return "".join(f"data: {line}\n" for line in text.split("\n")) + "\n"


def format_error_event(message: str) -> str:
    return format_data_event(f"[Error: {message}]")

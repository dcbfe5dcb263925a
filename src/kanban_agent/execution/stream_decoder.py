"""Incremental decoder for the agent's line-delimited JSON event stream.

The agent writes one JSON object per line. Lines come in two shapes for the
same streamed content events: wrapped in a ``{"type": "stream_event",
"event": {...}}`` envelope, or bare at the top level. Both route through
``_process_stream_event``. Whole-message lines (``system``, ``user``,
``assistant``, ``result``) are handled independently of the block machinery.

The decoder never raises on malformed input: lines that are not JSON objects,
or that carry unexpected field types, are dropped.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from kanban_agent.execution.events import (
    DomainEvent,
    SessionResult,
    SessionStarted,
    TextFragment,
    ToolInvocationCompleted,
    ToolInvocationStarted,
    ToolResult,
)

logger = logging.getLogger(__name__)

_STREAM_EVENT_TYPES = frozenset(
    {
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_start",
        "message_delta",
        "message_stop",
    },
)


@dataclass(slots=True)
class ToolAccumulator:
    """Open tool-use block collecting its streamed input JSON."""

    name: str
    id: str
    index: int
    json_chunks: list[str] = field(default_factory=list)

    def parse_input(self) -> dict[str, Any]:
        try:
            parsed = json.loads("".join(self.json_chunks))
        except (ValueError, RecursionError):
            return {}
        return parsed if isinstance(parsed, dict) else {}


class StreamDecoder:
    """Turn raw stdout chunks into domain events delivered to ``on_event``."""

    def __init__(self, on_event: Callable[[DomainEvent], None]) -> None:
        self._on_event = on_event
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._active_tools: dict[int, ToolAccumulator] = {}

    @property
    def open_blocks(self) -> tuple[int, ...]:
        return tuple(sorted(self._active_tools))

    def feed(self, chunk: bytes | str) -> None:
        """Append a chunk and process every complete line it finishes."""

        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._process_line(line)

    def finish(self) -> None:
        """Process a trailing line left without a terminator at end of stream."""

        self._buffer += self._utf8.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        self._process_line(remainder)

    def _process_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            obj = json.loads(stripped)
        except (ValueError, RecursionError):
            logger.debug("Dropping malformed stream line: %.120s", stripped)
            return
        if isinstance(obj, dict):
            self._process_top_level(obj)

    def _process_top_level(self, obj: dict[str, Any]) -> None:  # noqa: C901
        kind = obj.get("type")

        if kind == "stream_event":
            event = obj.get("event")
            if isinstance(event, dict):
                self._process_stream_event(event)
            return

        if kind == "system":
            session_id = obj.get("session_id")
            if obj.get("subtype") == "init" and isinstance(session_id, str) and session_id:
                self._emit(SessionStarted(session_id=session_id))
            return

        if kind == "user":
            for block in _message_content(obj):
                if block.get("type") == "tool_result":
                    self._emit(
                        ToolResult(
                            tool_use_id=_as_str(block.get("tool_use_id")),
                            content=flatten_tool_result_content(block.get("content")),
                        ),
                    )
            return

        if kind == "assistant":
            for block in _message_content(obj):
                if block.get("type") == "tool_use":
                    tool_input = block.get("input")
                    self._emit(
                        ToolInvocationCompleted(
                            tool_name=_as_str(block.get("name")),
                            tool_id=_as_str(block.get("id")),
                            input=tool_input if isinstance(tool_input, dict) else {},
                        ),
                    )
            return

        if kind == "result":
            status = obj.get("subtype") or obj.get("status") or "unknown"
            session_id = obj.get("session_id")
            duration_ms = obj.get("duration_ms")
            self._emit(
                SessionResult(
                    status=str(status),
                    session_id=session_id if isinstance(session_id, str) and session_id else None,
                    duration_ms=_as_int(duration_ms),
                ),
            )
            return

        if kind in _STREAM_EVENT_TYPES:
            self._process_stream_event(obj)
            return

        # Older agents announce the session with a bare init line.
        if kind == "init":
            session_id = obj.get("session_id")
            if isinstance(session_id, str) and session_id:
                self._emit(SessionStarted(session_id=session_id))

    def _process_stream_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        index = _as_int(event.get("index"))

        if kind == "content_block_start":
            block = event.get("content_block")
            if not isinstance(block, dict) or block.get("type") != "tool_use" or index is None:
                return
            tool = ToolAccumulator(
                name=_as_str(block.get("name")),
                id=_as_str(block.get("id")),
                index=index,
            )
            # A new block at a reused index replaces the stale accumulator.
            self._active_tools[index] = tool
            self._emit(
                ToolInvocationStarted(tool_name=tool.name, tool_id=tool.id, block_index=index),
            )
            return

        if kind == "content_block_delta":
            delta = event.get("delta")
            if not isinstance(delta, dict):
                return
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text")
                if isinstance(text, str):
                    self._emit(TextFragment(text=text))
            elif delta_type == "input_json_delta" and index is not None:
                partial = delta.get("partial_json")
                tool = self._active_tools.get(index)
                if tool is not None and isinstance(partial, str):
                    tool.json_chunks.append(partial)
            return

        if kind == "content_block_stop" and index is not None:
            tool = self._active_tools.pop(index, None)
            if tool is not None:
                self._emit(
                    ToolInvocationCompleted(
                        tool_name=tool.name,
                        tool_id=tool.id,
                        input=tool.parse_input(),
                    ),
                )

    def _emit(self, event: DomainEvent) -> None:
        self._on_event(event)


def flatten_tool_result_content(content: object) -> str:
    """Render a tool_result ``content`` field as plain text."""

    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return json.dumps(content, ensure_ascii=False)


def decode_chunks(chunks: Iterable[bytes | str]) -> list[DomainEvent]:
    """Decode a finite stream and return every event it produced."""

    events: list[DomainEvent] = []
    decoder = StreamDecoder(events.append)
    for chunk in chunks:
        decoder.feed(chunk)
    decoder.finish()
    return events


def _message_content(obj: dict[str, Any]) -> list[dict[str, Any]]:
    message = obj.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _as_str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _as_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value

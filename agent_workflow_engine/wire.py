"""
Line-delimited JSON protocol spoken by worker processes.

``ProtocolDecoder`` is a pure state machine: it is fed one line at a time and
keeps the accumulated text, the resumable session handle and the inactivity
deadline. It never touches the process, so it can be tested by feeding it
strings with a fake clock.
"""

import base64
import binascii
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TTS_TOOL_NAME = "mcp__tts__text_to_speech"
PERMISSION_SUBTYPES = ("can_use_tool", "can-use-tool")


@dataclass
class SystemEvent:
    """Session established by the worker."""

    session_id: str | None
    model: str | None
    tool_count: int = 0


@dataclass
class TextEvent:
    text: str


@dataclass
class ToolResultEvent:
    """A tool call finished.

    Args:
        tool_name: Tool that ran, None when it came from an echoed user message
        result: Raw result (string or decoded JSON object)
    """

    tool_name: str | None
    result: Any


@dataclass
class PermissionRequestEvent:
    request_id: str
    tool_name: str
    tool_input: Any


@dataclass
class ResultEvent:
    """Terminal event of one invocation."""

    is_error: bool
    result: Any
    duration_ms: int | None = None


Event = SystemEvent | TextEvent | ToolResultEvent | PermissionRequestEvent | ResultEvent


@dataclass
class ProtocolDecoder:
    """Decode worker output lines and track the inactivity deadline.

    Args:
        timeout: Seconds of silence allowed between recognized events
        clock: Monotonic clock, replaceable in tests
    """

    timeout: float
    clock: Callable[[], float] = time.monotonic
    session_id: str | None = None
    model: str | None = None
    audio: bytes | None = None
    final: ResultEvent | None = None
    _parts: list[str] = field(default_factory=list, init=False)
    _deadline: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.touch()

    def touch(self) -> None:
        """Re-arm the watchdog."""
        self._deadline = self.clock() + self.timeout

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def finished(self) -> bool:
        return self.final is not None

    def remaining(self) -> float:
        """Seconds left before the watchdog fires (never negative)."""
        return max(0.0, self._deadline - self.clock())

    def expired(self) -> bool:
        return not self.finished and self.clock() >= self._deadline

    @property
    def text(self) -> str:
        """Streamed text so far, or the result payload when nothing streamed."""
        streamed = "".join(self._parts)
        if streamed:
            return streamed
        if self.final is not None and isinstance(self.final.result, str):
            return self.final.result
        return ""

    def feed(self, line: str | bytes) -> list[Event]:
        """Decode one line and return the events it carries.

        Blank lines, non-JSON lines and unknown event types yield nothing and
        do not re-arm the watchdog.
        """
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return []

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring non-JSON worker output: {e}")
            return []

        if not isinstance(data, dict):
            return []

        events = self._decode(data)
        if events:
            self.touch()
        return events

    def _decode(self, data: dict[str, Any]) -> list[Event]:
        kind = data.get("type")

        if kind == "system":
            self.session_id = data.get("session_id") or self.session_id
            self.model = data.get("model") or self.model
            tools = data.get("tools")
            event = SystemEvent(
                session_id=self.session_id,
                model=self.model,
                tool_count=len(tools) if isinstance(tools, list) else 0,
            )
            logger.debug(f"Session initialized: {self.model} ({self.session_id})")
            return [event]

        if kind == "assistant":
            text = _message_text(data.get("message"))
            if text:
                self._parts.append(text)
                return [TextEvent(text)]
            # Tool-use-only messages are still activity
            return [TextEvent("")]

        if kind == "content_block_delta":
            text = (data.get("delta") or {}).get("text")
            if text:
                self._parts.append(text)
                return [TextEvent(text)]
            return []

        if kind == "tool_result":
            event = ToolResultEvent(tool_name=data.get("tool_name"), result=data.get("result"))
            self._capture_audio(event)
            return [event]

        if kind == "user":
            return list(_echoed_tool_results(data.get("message")))

        if kind == "control_request":
            request = data.get("request") or {}
            if request.get("subtype") not in PERMISSION_SUBTYPES:
                logger.debug(f"Ignoring control request subtype {request.get('subtype')}")
                return []
            return [
                PermissionRequestEvent(
                    request_id=data.get("request_id", ""),
                    tool_name=request.get("tool_name", ""),
                    tool_input=request.get("input"),
                )
            ]

        if kind == "result":
            self.final = ResultEvent(
                is_error=bool(data.get("is_error")),
                result=data.get("result"),
                duration_ms=data.get("duration_ms"),
            )
            return [self.final]

        return []

    def _capture_audio(self, event: ToolResultEvent) -> None:
        if event.tool_name != TTS_TOOL_NAME or not event.result:
            return
        payload = decode_tool_payload(event.result)
        encoded = payload.get("audioBase64") if isinstance(payload, dict) else None
        if not encoded:
            return
        try:
            self.audio = base64.b64decode(encoded)
            logger.info(f"TTS audio received ({len(self.audio)} bytes)")
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Failed to decode TTS audio: {e}")


def _message_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        item.get("text", "")
        for item in content
        if isinstance(item, dict) and item.get("type") == "text"
    )


def _echoed_tool_results(message: Any):
    if not isinstance(message, dict):
        return
    content = message.get("content")
    items = content if isinstance(content, list) else [content]
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "tool_result":
            continue
        inner = item.get("content")
        if isinstance(inner, list):
            inner = next(
                (c.get("text", "") for c in inner if isinstance(c, dict) and c.get("type") == "text"),
                "",
            )
        if inner:
            yield ToolResultEvent(tool_name=None, result=inner)


def decode_tool_payload(result: Any) -> Any:
    """Return a tool result as a JSON object when it is JSON text, else unchanged."""
    if isinstance(result, str):
        try:
            return json.loads(result)
        except json.JSONDecodeError:
            return result
    return result


def encode_user_message(content: Any) -> str:
    """Structured user message line (``--input-format stream-json``)."""
    return json.dumps({"type": "user", "message": {"role": "user", "content": content}}) + "\n"


def encode_permission_response(
    request_id: str, allow: bool, tool_input: Any = None, reason: str | None = None
) -> str:
    """``control_response`` line answering a permission request."""
    if allow:
        decision = {"behavior": "allow", "updatedInput": tool_input}
    else:
        decision = {"behavior": "deny", "message": reason or "Permission denied by user"}
    response = {
        "type": "control_response",
        "response": {"subtype": "success", "request_id": request_id, "response": decision},
    }
    return json.dumps(response) + "\n"

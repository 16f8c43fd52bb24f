"""Unit tests for the line protocol decoder."""

import base64
import json

from agent_workflow_engine.wire import (
    PermissionRequestEvent,
    ProtocolDecoder,
    ResultEvent,
    SystemEvent,
    TextEvent,
    ToolResultEvent,
    TTS_TOOL_NAME,
    decode_tool_payload,
    encode_permission_response,
    encode_user_message,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def line(data: dict) -> str:
    return json.dumps(data) + "\n"


class TestDecoder:
    """Test event decoding."""

    def test_system_event(self):
        decoder = ProtocolDecoder(timeout=5)

        events = decoder.feed(line({"type": "system", "session_id": "s1", "model": "m", "tools": ["a"]}))

        assert events == [SystemEvent(session_id="s1", model="m", tool_count=1)]
        assert decoder.session_id == "s1"

    def test_text_accumulates(self):
        decoder = ProtocolDecoder(timeout=5)
        decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hel"}]}}))
        decoder.feed(line({"type": "content_block_delta", "delta": {"text": "lo"}}))
        decoder.feed(line({"type": "result", "is_error": False, "result": "ignored", "duration_ms": 5}))

        assert decoder.text == "Hello"
        assert decoder.finished
        assert decoder.final == ResultEvent(is_error=False, result="ignored", duration_ms=5)

    def test_tool_use_message_is_activity(self):
        decoder = ProtocolDecoder(timeout=5)

        events = decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "tool_use"}]}}))

        assert events == [TextEvent("")]

    def test_echoed_tool_result(self):
        decoder = ProtocolDecoder(timeout=5)
        message = {"content": [{"type": "tool_result", "content": [{"type": "text", "text": '{"ok": true}'}]}]}

        events = decoder.feed(line({"type": "user", "message": message}))

        assert events == [ToolResultEvent(tool_name=None, result='{"ok": true}')]

    def test_permission_request(self):
        decoder = ProtocolDecoder(timeout=5)
        request = {"subtype": "can-use-tool", "tool_name": "Bash", "input": {"command": "ls"}}

        events = decoder.feed(line({"type": "control_request", "request_id": "r1", "request": request}))

        assert events == [PermissionRequestEvent("r1", "Bash", {"command": "ls"})]

    def test_ignored_lines(self):
        decoder = ProtocolDecoder(timeout=5)

        assert decoder.feed("") == []
        assert decoder.feed("not json") == []
        assert decoder.feed("[1, 2]") == []
        assert decoder.feed(line({"type": "mystery"})) == []
        assert decoder.feed(line({"type": "control_request", "request": {"subtype": "interrupt"}})) == []

    def test_legacy_tts_audio(self):
        decoder = ProtocolDecoder(timeout=5)
        payload = json.dumps({"audioBase64": base64.b64encode(b"mp3-bytes").decode()})

        decoder.feed(line({"type": "tool_result", "tool_name": TTS_TOOL_NAME, "result": payload}))

        assert decoder.audio == b"mp3-bytes"


class TestWatchdog:
    """Test the inactivity deadline."""

    def test_recognized_events_rearm(self):
        clock = FakeClock()
        decoder = ProtocolDecoder(timeout=10, clock=clock)

        clock.now = 108.0
        decoder.feed(line({"type": "assistant", "message": {"content": "still working"}}))
        clock.now = 115.0

        assert decoder.remaining() == 3.0
        assert not decoder.expired()

    def test_noise_does_not_rearm(self):
        clock = FakeClock()
        decoder = ProtocolDecoder(timeout=10, clock=clock)

        clock.now = 108.0
        decoder.feed("plain log line")
        decoder.feed(line({"type": "mystery"}))
        clock.now = 110.0

        assert decoder.expired()
        assert decoder.remaining() == 0.0

    def test_finished_never_expires(self):
        clock = FakeClock()
        decoder = ProtocolDecoder(timeout=1, clock=clock)
        decoder.feed(line({"type": "result", "result": "done"}))

        clock.now = 500.0

        assert not decoder.expired()


class TestEncoding:
    def test_user_message(self):
        encoded = encode_user_message([{"type": "text", "text": "hi"}])

        assert encoded.endswith("\n")
        assert json.loads(encoded) == {
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": "hi"}]},
        }

    def test_permission_allow(self):
        encoded = json.loads(encode_permission_response("r1", True, {"command": "ls"}))

        assert encoded["type"] == "control_response"
        assert encoded["response"]["request_id"] == "r1"
        assert encoded["response"]["response"] == {"behavior": "allow", "updatedInput": {"command": "ls"}}

    def test_permission_deny(self):
        encoded = json.loads(encode_permission_response("r1", False, reason="Not now"))

        assert encoded["response"]["response"] == {"behavior": "deny", "message": "Not now"}

    def test_decode_tool_payload(self):
        assert decode_tool_payload('{"a": 1}') == {"a": 1}
        assert decode_tool_payload("plain") == "plain"
        assert decode_tool_payload({"a": 1}) == {"a": 1}

"""Unit tests for media requests and tool-router configuration."""

import json
from pathlib import Path

from agent_workflow_engine.config import MediaSettings
from agent_workflow_engine.media import IMAGE_TOOL_NAME, SPEECH_TOOL_NAME, MediaRequest
from agent_workflow_engine.tooling import ToolProfile, build_router_config, router_config_file
from agent_workflow_engine.wire import ToolResultEvent


class TestMediaRequest:
    """Test turn-2 instructions and result recognition."""

    def test_image_arguments(self):
        media = MediaRequest.image(MediaSettings(), "bot-1/user-1", prompt="A red fox", style_context="watercolor")

        arguments = media.tool_arguments("ignored")

        assert arguments["prompt"] == "A red fox. Style: watercolor"
        assert arguments["model"] == "dall-e-2"
        assert arguments["size"] == "256x256"
        assert arguments["include_base64"] is False
        assert arguments["filename"].startswith("bot-1-user-1-")

    def test_speech_defaults_to_turn1_text(self):
        media = MediaRequest.speech(MediaSettings(), "bot-1/user-1")

        arguments = media.tool_arguments("Hello there")

        assert arguments["text"] == "Hello there"
        assert arguments["voice"] == "nova"
        assert media.tool_name == SPEECH_TOOL_NAME

    def test_instruction_pins_parameters(self):
        media = MediaRequest.image(MediaSettings(), "owner", prompt="A fox", style_context="ink")

        instruction = media.instruction()

        assert instruction.startswith(f"CRITICAL INSTRUCTION: Call the {IMAGE_TOOL_NAME} tool NOW")
        assert "STYLE CONTEXT:\nink" in instruction
        assert f'Use the filename parameter EXACTLY as provided: "{media.filename}"' in instruction

    def test_extract_path(self):
        media = MediaRequest.image(MediaSettings(), "owner")
        ok = json.dumps({"success": True, "image_path": "/tmp/a.png"})

        assert media.extract_path(ToolResultEvent(IMAGE_TOOL_NAME, ok)) == "/tmp/a.png"
        assert media.extract_path(ToolResultEvent(None, ok)) == "/tmp/a.png"
        assert media.extract_path(ToolResultEvent("other_tool", ok)) is None
        assert media.extract_path(ToolResultEvent(None, json.dumps({"success": False}))) is None
        assert media.extract_path(ToolResultEvent(None, "plain text")) is None

    def test_organize_moves_file(self, tmp_path: Path):
        settings = MediaSettings(audio_output_dir=str(tmp_path / "audio"))
        media = MediaRequest.speech(settings, "bot-1/user-1")
        generated = tmp_path / "speech.mp3"
        generated.write_bytes(b"mp3")

        organized = media.organize(str(generated), settings)

        assert organized == str(tmp_path / "audio" / "bot-1" / "user-1" / "speech.mp3")
        assert not generated.exists()

    def test_organize_missing_file(self, tmp_path: Path):
        media = MediaRequest.speech(MediaSettings(), "owner")

        assert media.organize(str(tmp_path / "nope.mp3"), MediaSettings()) == str(tmp_path / "nope.mp3")


class TestRouterConfig:
    """Test per-invocation tool-router configuration."""

    def test_without_media(self):
        config = build_router_config(
            ToolProfile.WITHOUT_MEDIA, ["node", "~/router/index.js"], "http://blob/upload", "u1", "wf1"
        )

        router = config["mcpServers"]["router"]
        assert router["command"] == "node"
        assert not router["args"][0].startswith("~")
        assert router["env"] == {
            "R2_UPLOAD_URL": "http://blob/upload",
            "CURRENT_USER_ID": "u1",
            "CURRENT_WORKFLOW_ID": "wf1",
            "DISABLE_IMAGE_TOOLS": "true",
        }

    def test_with_media_defaults(self):
        config = build_router_config(ToolProfile.WITH_MEDIA, ["router"], "http://blob/upload")

        env = config["mcpServers"]["router"]["env"]
        assert "DISABLE_IMAGE_TOOLS" not in env
        assert env["CURRENT_USER_ID"] == "anonymous"
        assert env["CURRENT_WORKFLOW_ID"] == "general"

    def test_config_file_removed(self):
        with router_config_file(ToolProfile.WITH_MEDIA, ["router"], "http://blob/upload") as path:
            assert json.loads(path.read_text())["mcpServers"]["router"]["command"] == "router"
            assert path.name.startswith("mcp-router-with-image-tools-")

        assert not path.exists()

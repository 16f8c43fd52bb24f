"""
Media requests for two-phase worker invocations.

Turn 2 of a media invocation resumes the worker session with media tools
available and an instruction that pins every generation parameter, including
the output filename. This module builds that instruction and recognizes the
tool result that carries the generated file.
"""

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import MediaSettings
from .wire import ToolResultEvent, decode_tool_payload

logger = logging.getLogger(__name__)

IMAGE_TOOL_NAME = "mcp__image-gen__generate_image"
SPEECH_TOOL_NAME = "mcp__tts__text_to_speech"


class MediaKind(str, Enum):
    IMAGE = "image"
    SPEECH = "speech"


def media_filename(owner: str) -> str:
    """Unique filename stem for one generated file."""
    stem = owner.strip("/").replace("/", "-")
    return f"{stem}-{int(time.time() * 1000)}"


@dataclass
class MediaRequest:
    """
    A media file the worker must generate in turn 2.

    Args:
        kind: Image or speech
        owner: Relative folder the output is organized under (e.g. "bot-3/user-42")
        prompt: Image prompt; for speech, the text to speak (turn 1 text when None)
        style_context: Extra style guidance for image prompts
        parameters: Fixed generation parameters passed to the tool
        filename: Output filename stem the tool must use
    """

    kind: MediaKind
    owner: str
    prompt: str | None = None
    style_context: str | None = None
    parameters: dict = field(default_factory=dict)
    filename: str = ""

    def __post_init__(self):
        if not self.filename:
            self.filename = media_filename(self.owner)

    @classmethod
    def image(
        cls,
        settings: MediaSettings,
        owner: str,
        prompt: str | None = None,
        style_context: str | None = None,
    ) -> "MediaRequest":
        parameters = {
            "model": settings.image_model,
            "size": settings.image_size,
            "quality": settings.image_quality,
            "style": settings.image_style,
        }
        return cls(MediaKind.IMAGE, owner, prompt, style_context, parameters)

    @classmethod
    def speech(
        cls, settings: MediaSettings, owner: str, text: str | None = None
    ) -> "MediaRequest":
        parameters = {"voice": settings.voice, "speed": settings.speed}
        return cls(MediaKind.SPEECH, owner, text, parameters=parameters)

    @property
    def tool_name(self) -> str:
        return IMAGE_TOOL_NAME if self.kind == MediaKind.IMAGE else SPEECH_TOOL_NAME

    @property
    def result_key(self) -> str:
        return "image_path" if self.kind == MediaKind.IMAGE else "audio_path"

    def output_root(self, settings: MediaSettings) -> Path:
        root = settings.image_output_dir if self.kind == MediaKind.IMAGE else settings.audio_output_dir
        return Path(root)

    def tool_arguments(self, turn1_text: str) -> dict:
        if self.kind == MediaKind.IMAGE:
            request = self.prompt or "Generate an image"
            if self.style_context:
                request = f"{request}. Style: {self.style_context}"
            arguments = {"prompt": request, **self.parameters}
        else:
            arguments = {"text": self.prompt or turn1_text, **self.parameters}
        arguments["filename"] = self.filename
        arguments["include_base64"] = False
        return arguments

    def instruction(self, turn1_text: str = "") -> str:
        """Turn-2 message that forces exactly one tool call with fixed parameters."""
        style_section = ""
        if self.kind == MediaKind.IMAGE and self.style_context:
            style_section = (
                f"\n\nSTYLE CONTEXT:\n{self.style_context}\n\n"
                "You MUST follow the style context above when creating the prompt.\n"
            )
        arguments = json.dumps(self.tool_arguments(turn1_text), indent=2)
        return (
            f"CRITICAL INSTRUCTION: Call the {self.tool_name} tool NOW with the EXACT "
            f"parameters below.{style_section}\n\n"
            "DO NOT modify, interpret, or change any of these parameters. "
            "Use them EXACTLY as specified:\n\n"
            f"REQUIRED TOOL CALL:\nTool: {self.tool_name}\n\n"
            f"EXACT PARAMETERS (DO NOT CHANGE):\n{arguments}\n\n"
            f'CRITICAL: Use the filename parameter EXACTLY as provided: "{self.filename}"\n'
            "DO NOT create a custom filename. DO NOT modify the filename parameter.\n\n"
            "Call the tool now with these exact parameters. No additional response needed."
        )

    def extract_path(self, event: ToolResultEvent) -> str | None:
        """Return the generated file path if ``event`` is this request's tool result."""
        if event.tool_name is not None and event.tool_name != self.tool_name:
            return None
        payload = decode_tool_payload(event.result)
        if not isinstance(payload, dict) or not payload.get("success"):
            return None
        path = payload.get(self.result_key)
        return str(path) if path else None

    def organize(self, generated: str, settings: MediaSettings) -> str:
        """
        Move the generated file under ``<output root>/<owner>/``.

        Returns the new path, or the reported path unchanged when the file is
        not on this machine.
        """
        source = Path(generated)
        if not source.exists():
            logger.warning(f"Generated {self.kind.value} not found at {generated}")
            return generated

        target_dir = self.output_root(settings) / self.owner
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / source.name
        shutil.move(str(source), str(target))
        logger.info(f"Organized {self.kind.value} file: {target}")
        return str(target)

"""
Configuration loading for the workflow engine.

Settings are plain Pydantic models so they can be written in YAML, validated on
load, and overridden from the environment for deployment-specific values.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

DEFAULT_DISALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "NotebookEdit",
    "Task",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class WorkerSettings(BaseModel):
    """
    How worker processes are launched.

    Attributes:
        command: Argv prefix used to start a worker
        disallowed_tools: Built-in worker tools that are always turned off
        tool_router_command: Argv for the tool router the worker connects to
        inactivity_timeout: Seconds of protocol silence before a call is cancelled
        planner_timeout: Inactivity timeout used for planning calls
        exit_grace: Seconds to wait for a worker to exit after its result
        stream_limit: Maximum length of one protocol line in bytes
        workspace_path: Working directory for worker processes
    """

    command: list[str] = Field(
        default_factory=lambda: ["claude"], description="Argv prefix used to start a worker"
    )
    disallowed_tools: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DISALLOWED_TOOLS),
        description="Built-in worker tools that are always turned off",
    )
    tool_router_command: list[str] = Field(
        default_factory=lambda: ["node", "~/mcp-router/index.js"],
        description="Argv for the tool router the worker connects to",
    )
    inactivity_timeout: float = Field(
        default=120.0, gt=0, description="Seconds of protocol silence before a call is cancelled"
    )
    planner_timeout: float = Field(
        default=180.0, gt=0, description="Inactivity timeout used for planning calls"
    )
    exit_grace: float = Field(
        default=5.0, ge=0, description="Seconds to wait for a worker to exit after its result"
    )
    stream_limit: int = Field(
        default=16 * 1024 * 1024, description="Maximum length of one protocol line in bytes"
    )
    workspace_path: str | None = Field(
        default=None, description="Working directory for worker processes"
    )


class ExecutionSettings(BaseModel):
    """Retry policy and prompt location for the engine."""

    parse_retries: int = Field(
        default=2, ge=0, description="Corrective re-asks after an unparseable planner reply"
    )
    timeout_retries: int = Field(
        default=1, ge=0, description="Automatic retries after a worker inactivity timeout"
    )
    planner_prompt_path: str | None = Field(
        default=None, description="Replaces the built-in planner system prompt"
    )


class BlobSettings(BaseModel):
    upload_url: str = Field(
        default="http://localhost:8080/assets/upload", description="Blob upload endpoint"
    )
    http_timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds")


class MediaSettings(BaseModel):
    """Output folders and fixed generation parameters for media turns."""

    image_output_dir: str = Field(default="image-output")
    audio_output_dir: str = Field(default="audio-output")
    image_model: str = Field(default="dall-e-2")
    image_size: str = Field(default="256x256")
    image_quality: str = Field(default="standard")
    image_style: str = Field(default="vivid")
    voice: str = Field(default="nova")
    speed: float = Field(default=1.0)


class RecoverySettings(BaseModel):
    requests_dir: str = Field(
        default=".active-requests", description="Where active-request records are kept"
    )
    max_request_age: float = Field(
        default=15 * 60, gt=0, description="Seconds after which a request is considered hung"
    )


class EngineSettings(BaseModel):
    """
    Complete engine configuration.

    Every section has defaults, so an empty YAML document is a valid
    configuration.
    """

    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    engine: ExecutionSettings = Field(default_factory=ExecutionSettings)
    blob: BlobSettings = Field(default_factory=BlobSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)

    def apply_env(self, environ: dict[str, str] | None = None) -> "EngineSettings":
        """Overlay deployment values from the environment (R2_UPLOAD_URL, MCP_ROUTER_PATH)."""
        env = os.environ if environ is None else environ

        upload_url = env.get("R2_UPLOAD_URL")
        if upload_url:
            self.blob.upload_url = upload_url

        router_path = env.get("MCP_ROUTER_PATH")
        if router_path:
            command = list(self.worker.tool_router_command)
            if len(command) > 1:
                command[-1] = router_path
            else:
                command.append(router_path)
            self.worker.tool_router_command = command

        return self


def load_settings(yaml_path: str | Path, environ: dict[str, str] | None = None) -> EngineSettings:
    """
    Load engine settings from a YAML file.

    Args:
        yaml_path: Path to the YAML settings file
        environ: Environment used for overrides (defaults to os.environ)

    Returns:
        Parsed and validated EngineSettings object

    Raises:
        FileNotFoundError: If the YAML file doesn't exist
        yaml.YAMLError: If the YAML is malformed
        pydantic.ValidationError: If the settings structure is invalid
    """
    path = Path(yaml_path)

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    # An empty file parses to None
    settings = EngineSettings.model_validate(data or {})
    return settings.apply_env(environ)


def configure_logging(level: str | None = None) -> None:
    """Set up root logging and quiet the HTTP client loggers."""
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

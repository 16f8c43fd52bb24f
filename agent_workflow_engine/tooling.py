"""Per-invocation tool-router configuration for worker processes."""

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "anonymous"
DEFAULT_WORKFLOW_ID = "general"


class ToolProfile(str, Enum):
    """Which tool set the router exposes to the worker."""

    WITH_MEDIA = "with-image-tools"
    WITHOUT_MEDIA = "no-image-tools"


def build_router_config(
    profile: ToolProfile,
    router_command: list[str],
    upload_url: str,
    user_id: str | None = None,
    workflow_id: str | None = None,
) -> dict:
    """
    Build the ``mcpServers`` document handed to the worker.

    Args:
        profile: Tool set to expose
        router_command: Argv of the router process; the first item is the executable
        upload_url: Blob upload endpoint the router forwards generated files to
        user_id: Owner used to scope uploads
        workflow_id: Workflow used to scope uploads

    Returns:
        Config dictionary ready to be written as JSON
    """
    env = {
        "R2_UPLOAD_URL": upload_url,
        "CURRENT_USER_ID": user_id or DEFAULT_USER_ID,
        "CURRENT_WORKFLOW_ID": workflow_id or DEFAULT_WORKFLOW_ID,
    }
    if profile == ToolProfile.WITHOUT_MEDIA:
        env["DISABLE_IMAGE_TOOLS"] = "true"

    command, *args = router_command
    return {
        "mcpServers": {
            "router": {
                "command": command,
                "args": [os.path.expanduser(a) for a in args],
                "env": env,
            }
        }
    }


@contextmanager
def router_config_file(
    profile: ToolProfile,
    router_command: list[str],
    upload_url: str,
    user_id: str | None = None,
    workflow_id: str | None = None,
) -> Iterator[Path]:
    """Write the router config to a temporary file and remove it afterwards."""
    config = build_router_config(profile, router_command, upload_url, user_id, workflow_id)
    fd, name = tempfile.mkstemp(prefix=f"mcp-router-{profile.value}-", suffix=".json")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove router config {path}: {e}")

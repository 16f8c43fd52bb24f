"""
Deterministic actions and asset preparation.

Action steps run one operation from a small fixed catalog without involving a
worker. Only ``download_url_to_r2`` is enabled: it copies a URL into blob
storage. Media generation is disabled here; plans create a specialized
worker agent for it instead.
"""

import base64
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from posixpath import basename
from typing import Any
from urllib.parse import urlparse

import httpx

from .config import BlobSettings
from .errors import ActionDisabledError, ActionError, TemplateResolutionError, UnknownActionError
from .models import Workflow
from .templates import find_placeholders

logger = logging.getLogger(__name__)

DOWNLOAD_URL_TO_R2 = "download_url_to_r2"
SUPPORTED_ACTIONS = (DOWNLOAD_URL_TO_R2,)

DISABLED_ACTIONS = {
    "generate_image": (
        'Action "generate_image" is not available. '
        "Create a specialized image-generation agent with MCP image tools instead. "
        'Use step_type: "create" with an agent that has image generation capabilities, '
        'then step_type: "delegate" to have that agent generate the image.'
    ),
    "text_to_speech": (
        'Action "text_to_speech" is not available. '
        "Create a specialized audio-generation agent with MCP TTS tools instead. "
        'Use step_type: "create" with an agent that has TTS capabilities, '
        'then step_type: "delegate" to have that agent generate the audio.'
    ),
}

ASSET_URL_KEYS = ("r2_url", "image_url", "audio_url", "url")


def asset_url(data: dict[str, Any] | None) -> str | None:
    """URL of the asset an action produced, if any."""
    if not data:
        return None
    for key in ASSET_URL_KEYS:
        if data.get(key):
            return str(data[key])
    return None


def image_media_type(content_type: str) -> str:
    content_type = content_type.lower()
    if "jpeg" in content_type or "jpg" in content_type:
        return "image/jpeg"
    if "gif" in content_type:
        return "image/gif"
    if "webp" in content_type:
        return "image/webp"
    return "image/png"


@dataclass
class PreparedAsset:
    """
    An asset from a dependency step, ready to attach to a worker message.

    Attributes:
        kind: "image" (attached for vision) or "audio"/"file" (described as text)
        step: Step that produced the asset
        label: Heading shown to the worker
        blocks: Structured content blocks to append to the message
    """

    kind: str
    step: int
    label: str
    url: str
    blocks: list[dict[str, Any]] = field(default_factory=list)


class ActionDispatcher:
    """
    Runs action steps and fetches assets over HTTP.

    Args:
        settings: Blob storage settings (upload endpoint, HTTP timeout)
        transport: Optional httpx transport, used by tests to avoid the network
        clock: Epoch clock used for generated filenames
    """

    def __init__(
        self,
        settings: BlobSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.transport = transport
        self.clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout,
            transport=self.transport,
            follow_redirects=True,
        )

    async def dispatch(self, action: str, params: dict[str, Any], workflow: Workflow) -> dict[str, Any]:
        """
        Execute one action.

        Raises:
            UnknownActionError: If ``action`` is not in the catalog
            ActionDisabledError: If ``action`` is in the catalog but disabled
            ActionError: If the action itself fails
        """
        if action == DOWNLOAD_URL_TO_R2:
            return await self.download_url_to_r2(params, workflow)
        if action in DISABLED_ACTIONS:
            raise ActionDisabledError(DISABLED_ACTIONS[action])
        raise UnknownActionError(action, list(SUPPORTED_ACTIONS))

    async def download_url_to_r2(self, params: dict[str, Any], workflow: Workflow) -> dict[str, Any]:
        """Fetch ``params["url"]`` and upload it to blob storage under the workflow's prefix."""
        url = params.get("url")
        if not url:
            raise ActionError(f'{DOWNLOAD_URL_TO_R2} action requires "url" parameter')
        url = str(url)
        unresolved = find_placeholders(url)
        if unresolved:
            raise TemplateResolutionError(
                f"Unresolved reference in url: {', '.join(unresolved)}", unresolved
            )

        logger.info(f"Downloading {url} to blob storage")

        try:
            async with self._client() as client:
                response = await client.get(url)
                if not response.is_success:
                    raise ActionError(f"Failed to fetch URL: HTTP {response.status_code}")

                content_type = response.headers.get("content-type") or "application/octet-stream"
                body = response.content
                filename = params.get("filename") or self._filename(url, content_type)

                upload = await client.post(
                    self.settings.upload_url,
                    params={
                        "workflowId": f"users/{workflow.user_id}/workflows/{workflow.id}",
                        "filename": filename,
                        "contentType": content_type,
                    },
                    headers={"Content-Type": content_type},
                    content=body,
                )
                if not upload.is_success:
                    raise ActionError(f"R2 upload failed: {upload.text}")
                uploaded = upload.json()
        except httpx.HTTPError as e:
            raise ActionError(f"{DOWNLOAD_URL_TO_R2} request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise ActionError(f"R2 upload returned invalid JSON: {e}") from e

        logger.info(f"Uploaded to blob storage: {uploaded.get('key')}")
        return {
            "success": True,
            "r2_url": uploaded.get("signedUrl"),
            "r2_key": uploaded.get("key"),
            "source_url": url,
            "filename": filename,
            "content_type": content_type,
            "size_bytes": len(body),
        }

    def _filename(self, url: str, content_type: str) -> str:
        name = basename(urlparse(url).path)
        if name and "." in name:
            return name
        ext = content_type.split("/")[-1].split(";")[0].strip() or "bin"
        return f"download-{int(self.clock() * 1000)}.{ext}"

    async def fetch_image_block(self, url: str) -> dict[str, Any] | None:
        """Fetch an image as a base64 content block; None when it cannot be fetched."""
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching image {url[:60]}: {e}")
            return None
        if not response.is_success:
            logger.warning(f"Failed to fetch image: HTTP {response.status_code}")
            return None

        media_type = image_media_type(response.headers.get("content-type") or "image/png")
        data = base64.b64encode(response.content).decode("ascii")
        logger.info(f"Image fetched ({len(data) // 1024}KB, {media_type})")
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }

    async def prepare_asset(
        self, action: str | None, url: str, step: int, data: dict[str, Any]
    ) -> PreparedAsset:
        """
        Turn an action's asset into content blocks for a worker.

        Images are fetched and attached for vision. Anything else, including
        an image that could not be fetched, is described with its URL.
        """
        content_type = str(data.get("content_type") or "")

        if action == "generate_image" or content_type.startswith("image/"):
            image = await self.fetch_image_block(url)
            if image is not None:
                prefix = "Downloaded Image" if action == DOWNLOAD_URL_TO_R2 else "Image"
                label = f"{prefix} from Step {step}"
                return PreparedAsset(
                    kind="image",
                    step=step,
                    label=label,
                    url=url,
                    blocks=[{"type": "text", "text": f"\n\n--- {label} ---"}, image],
                )

        if action == "text_to_speech":
            kind, label, asset_type = "audio", f"Audio from Step {step}", "audio/mp3"
            metadata = {k: data.get(k) for k in ("voice", "model", "speed", "duration") if k in data}
        elif action == DOWNLOAD_URL_TO_R2:
            kind, label = "file", f"File from Step {step}"
            asset_type = content_type or "application/octet-stream"
            metadata = {
                "sourceUrl": data.get("source_url"),
                "filename": data.get("filename"),
                "size": data.get("size_bytes"),
            }
        else:
            kind, label, asset_type = "file", f"Asset from Step {step} ({action})", "unknown"
            metadata = data

        text = f"\n\n--- {label} ---\nAsset Type: {asset_type}\nURL: {url}\n"
        if metadata:
            text += f"Metadata: {json.dumps(metadata, default=str)}"
        return PreparedAsset(
            kind=kind, step=step, label=label, url=url, blocks=[{"type": "text", "text": text}]
        )

"""
WorkerClient - invokes one external worker process per request.

Each invocation spawns the worker, writes the request to its stdin, decodes
line-delimited JSON events from its stdout and returns the final text. An
inactivity watchdog cancels the call only when the worker goes silent, and
every child process the worker started is terminated once it is done.
"""

import asyncio
import inspect
import logging
import os
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any

import psutil

from .config import EngineSettings
from .errors import WorkerErrorKind, WorkerInvocationError, WorkerTimeoutError
from .media import MediaKind, MediaRequest
from .recovery import RequestTracker
from .tooling import DEFAULT_USER_ID, DEFAULT_WORKFLOW_ID, ToolProfile, router_config_file
from .wire import (
    PermissionRequestEvent,
    ProtocolDecoder,
    ResultEvent,
    SystemEvent,
    TextEvent,
    ToolResultEvent,
    encode_permission_response,
    encode_user_message,
)

logger = logging.getLogger(__name__)

NO_HANDLER_REASON = "No permission handler configured"


@dataclass
class PermissionDecision:
    """Answer to a worker's request to use a tool."""

    allow: bool
    updated_input: Any = None
    reason: str | None = None


StreamCallback = Callable[[str], Awaitable[None] | None]
ToolResultCallback = Callable[[str | None, Any], Awaitable[None] | None]
PermissionCallback = Callable[
    [str, Any], Awaitable[PermissionDecision | bool] | PermissionDecision | bool
]


@dataclass
class WorkerResponse:
    """
    Successful result of one invocation.

    Attributes:
        text: Accumulated assistant text (or the result payload when nothing streamed)
        session_id: Resumable session handle reported by the worker
        model: Model reported by the worker
        audio: Audio bytes captured from a legacy TTS tool result
        image_path: Generated image (two-phase image invocations)
        audio_path: Generated audio file (two-phase speech invocations)
        duration_ms: Duration reported in the terminal event
    """

    text: str
    session_id: str | None = None
    model: str | None = None
    audio: bytes | None = None
    image_path: str | None = None
    audio_path: str | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class WorkerClient:
    """
    Spawns worker processes and speaks the line-JSON protocol with them.

    The client never retries; retry policy belongs to the caller.

    Usage:
        client = WorkerClient(settings)
        response = await client.invoke("Summarize this", on_stream=print)
        follow_up = await client.invoke("Shorter please", session_id=response.session_id)
    """

    def __init__(self, settings: EngineSettings, tracker: RequestTracker | None = None):
        self.settings = settings
        self.tracker = tracker

    def build_args(
        self,
        session_id: str | None = None,
        interactive: bool = False,
        structured: bool = False,
        config_path: str | None = None,
    ) -> list[str]:
        """Worker command-line arguments for one invocation."""
        worker = self.settings.worker
        disallowed = ",".join(worker.disallowed_tools)
        args = ["--ide"]
        if interactive:
            if session_id:
                args += ["--resume", session_id]
            args += [
                "--input-format", "stream-json",
                "--output-format", "stream-json",
                "--verbose",
                "--permission-prompt-tool", "stdio",
                "--disallowedTools", disallowed,
            ]
            return args

        if structured:
            args += ["--input-format", "stream-json"]
        if session_id:
            args += ["--resume", session_id]
        args += [
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            "--disallowedTools", disallowed,
        ]
        if config_path:
            args += ["--strict-mcp-config", "--mcp-config", config_path]
        return args

    async def invoke(
        self,
        message: str,
        session_id: str | None = None,
        *,
        content: list[dict] | None = None,
        structured: bool | None = None,
        timeout: float | None = None,
        on_stream: StreamCallback | None = None,
        on_tool_result: ToolResultCallback | None = None,
        on_permission_request: PermissionCallback | None = None,
        interactive: bool | None = None,
        profile: ToolProfile = ToolProfile.WITHOUT_MEDIA,
        user_id: str | None = None,
        workflow_id: str | None = None,
        track_key: str | None = None,
        track_callback: dict[str, Any] | None = None,
    ) -> WorkerResponse:
        """
        Run one worker turn.

        Args:
            message: Text of the request
            session_id: Resume this worker session instead of starting fresh
            content: Structured content blocks (text and images); sent instead of
                ``message`` when given
            structured: Force the structured input format (implied by ``content``)
            timeout: Inactivity timeout in seconds (defaults to the worker setting)
            on_stream: Called with each text delta as it arrives
            on_tool_result: Called with ``(tool_name, result)`` for each tool result
            on_permission_request: Awaited with ``(tool_name, tool_input)`` in
                interactive mode; returns a PermissionDecision or a bool
            interactive: Use the permission sub-protocol (defaults to True when
                a permission callback is given)
            profile: Tool-router profile for auto-approve mode
            user_id: Owner exported to the worker and its tools
            workflow_id: Workflow exported to the worker and its tools
            track_key: Write an active-request record under this key while running
            track_callback: Caller coordinates stored in the active-request record

        Returns:
            WorkerResponse with the accumulated text and session metadata

        Raises:
            WorkerTimeoutError: If no protocol event arrived within the timeout
            WorkerInvocationError: On spawn failure, abnormal exit or a worker error
        """
        interactive = bool(on_permission_request) if interactive is None else interactive
        structured = interactive or content is not None or bool(structured)
        timeout = timeout or self.settings.worker.inactivity_timeout

        if structured:
            payload = encode_user_message(content if content is not None else message)
        else:
            payload = message + "\n"

        with ExitStack() as stack:
            config_path = None
            if not interactive:
                config_path = stack.enter_context(
                    router_config_file(
                        profile,
                        self.settings.worker.tool_router_command,
                        self.settings.blob.upload_url,
                        user_id,
                        workflow_id,
                    )
                )
            args = self.build_args(
                session_id=session_id,
                interactive=interactive,
                structured=structured,
                config_path=str(config_path) if config_path else None,
            )
            decoder = ProtocolDecoder(timeout=timeout)
            await self._run(
                args,
                payload,
                decoder,
                keep_stdin_open=interactive,
                on_stream=on_stream,
                on_tool_result=on_tool_result,
                on_permission_request=on_permission_request,
                env=self._environment(user_id, workflow_id),
                track_key=track_key,
                track_callback=track_callback,
                session_id=session_id,
            )

        final = decoder.final
        return WorkerResponse(
            text=decoder.text,
            session_id=decoder.session_id or session_id,
            model=decoder.model,
            audio=decoder.audio,
            duration_ms=final.duration_ms if final else None,
            metadata={"duration": final.duration_ms if final else None, "mode": "interactive" if interactive else "auto"},
        )

    async def invoke_with_media(
        self,
        message: str,
        media: MediaRequest,
        session_id: str | None = None,
        *,
        content: list[dict] | None = None,
        timeout: float | None = None,
        on_stream: StreamCallback | None = None,
        on_tool_result: ToolResultCallback | None = None,
        on_turn2_start: Callable[[], Awaitable[None] | None] | None = None,
        user_id: str | None = None,
        workflow_id: str | None = None,
        track_key: str | None = None,
        track_callback: dict[str, Any] | None = None,
    ) -> WorkerResponse:
        """
        Two-phase invocation producing text plus one media file.

        Turn 1 runs without media tools to get the textual answer. Turn 2
        resumes the same session with media tools and an instruction that pins
        the tool parameters. A turn 2 that ends without a recognizable tool
        result is a hard failure.
        """
        turn1 = await self.invoke(
            message,
            session_id,
            content=content,
            structured=True,
            timeout=timeout,
            on_stream=on_stream,
            on_tool_result=on_tool_result,
            profile=ToolProfile.WITHOUT_MEDIA,
            user_id=user_id,
            workflow_id=workflow_id,
            track_key=track_key,
            track_callback=track_callback,
        )
        logger.info(f"Turn 1 complete ({len(turn1.text)} chars), starting {media.kind.value} turn")

        if not turn1.session_id:
            raise WorkerInvocationError(
                WorkerErrorKind.WORKER_ERROR, "Turn 1 did not report a session to resume"
            )

        if on_turn2_start is not None:
            try:
                await _call(on_turn2_start)
            except Exception as e:
                logger.error(f"Error in turn 2 start callback: {e}")

        captured: list[str] = []

        async def capture(tool_name: str | None, result: Any) -> None:
            path = media.extract_path(ToolResultEvent(tool_name, result))
            if path:
                captured.append(path)
            if on_tool_result is not None:
                await _call(on_tool_result, tool_name, result)

        turn2 = await self.invoke(
            media.instruction(turn1.text),
            turn1.session_id,
            structured=True,
            timeout=timeout,
            on_tool_result=capture,
            profile=ToolProfile.WITH_MEDIA,
            user_id=user_id,
            workflow_id=workflow_id,
            track_key=track_key,
            track_callback=track_callback,
        )

        if not captured:
            raise WorkerInvocationError(
                WorkerErrorKind.WORKER_ERROR,
                f"Turn 2 finished without a {media.kind.value} result from {media.tool_name}",
                payload=turn2.text,
            )

        organized = media.organize(captured[-1], self.settings.media)
        response = WorkerResponse(
            text=turn1.text,
            session_id=turn2.session_id or turn1.session_id,
            model=turn1.model,
            audio=turn1.audio,
            duration_ms=turn1.duration_ms,
            metadata={"turn1": turn1.metadata, "turn2": turn2.metadata},
        )
        if media.kind == MediaKind.IMAGE:
            response.image_path = organized
        else:
            response.audio_path = organized
        return response

    def _environment(self, user_id: str | None, workflow_id: str | None) -> dict[str, str]:
        env = dict(os.environ)
        env["CURRENT_USER_ID"] = user_id or DEFAULT_USER_ID
        env["CURRENT_WORKFLOW_ID"] = workflow_id or DEFAULT_WORKFLOW_ID
        return env

    async def _run(
        self,
        args: list[str],
        payload: str,
        decoder: ProtocolDecoder,
        *,
        keep_stdin_open: bool,
        on_stream: StreamCallback | None,
        on_tool_result: ToolResultCallback | None,
        on_permission_request: PermissionCallback | None,
        env: dict[str, str],
        track_key: str | None,
        track_callback: dict[str, Any] | None,
        session_id: str | None,
    ) -> None:
        worker = self.settings.worker
        argv = [*worker.command, *args]
        logger.info(f"Spawning worker: {' '.join(argv)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=worker.workspace_path,
                limit=worker.stream_limit,
            )
        except OSError as e:
            raise WorkerInvocationError(
                WorkerErrorKind.SPAWN_FAILED, f"Failed to spawn: {e}"
            ) from e

        if self.tracker is not None and track_key:
            self.tracker.track(track_key, process.pid, track_callback, session_id=session_id)

        children: dict[int, psutil.Process] = {}
        stderr_tail: deque[str] = deque(maxlen=20)
        stderr_task = asyncio.create_task(self._drain_stderr(process, stderr_tail))

        try:
            await self._write(process, payload)
            if not keep_stdin_open:
                self._close_stdin(process)

            while not decoder.finished:
                try:
                    line = await asyncio.wait_for(
                        process.stdout.readline(), timeout=decoder.remaining()
                    )
                except asyncio.TimeoutError:
                    self._snapshot_children(process.pid, children)
                    logger.error(
                        f"Inactivity timeout after {decoder.timeout:g}s - no output from worker {process.pid}"
                    )
                    raise WorkerTimeoutError(
                        f"No response after {decoder.timeout:g} seconds", decoder.timeout
                    ) from None
                except ValueError as e:
                    raise WorkerInvocationError(
                        WorkerErrorKind.PROCESS_ERROR, f"Worker output line too long: {e}"
                    ) from e

                if not line:
                    break

                for event in decoder.feed(line):
                    if isinstance(event, (SystemEvent, ResultEvent)):
                        self._snapshot_children(process.pid, children)
                    await self._dispatch(
                        event, process, on_stream, on_tool_result, on_permission_request
                    )
                    if isinstance(event, PermissionRequestEvent):
                        # Time spent waiting on the decision is not worker silence
                        decoder.touch()

            if keep_stdin_open:
                self._close_stdin(process)

            returncode = await self._wait_for_exit(process)
            await asyncio.wait({stderr_task}, timeout=1.0)

            final = decoder.final
            if final is None:
                detail = f": {stderr_tail[-1]}" if stderr_tail else ""
                raise WorkerInvocationError(
                    WorkerErrorKind.PROCESS_ERROR,
                    f"Exited with code {returncode} before a result{detail}",
                    payload="\n".join(stderr_tail) or None,
                )
            if final.is_error:
                raise WorkerInvocationError(
                    WorkerErrorKind.WORKER_ERROR,
                    str(final.result or "Unknown error"),
                    payload=final.result,
                )
            if returncode:
                logger.warning(f"Worker {process.pid} exited with code {returncode} after its result")
            logger.info(f"Worker completed in {final.duration_ms}ms")
        finally:
            if process.returncode is None:
                self._snapshot_children(process.pid, children)
                await self._stop(process)
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.to_thread(self._reap_children, process.pid, children)
            if self.tracker is not None and track_key:
                self.tracker.clear(track_key)

    async def _dispatch(
        self,
        event: Any,
        process: asyncio.subprocess.Process,
        on_stream: StreamCallback | None,
        on_tool_result: ToolResultCallback | None,
        on_permission_request: PermissionCallback | None,
    ) -> None:
        if isinstance(event, TextEvent):
            if event.text and on_stream is not None:
                try:
                    await _call(on_stream, event.text)
                except Exception as e:
                    logger.error(f"Error in stream callback: {e}")
        elif isinstance(event, ToolResultEvent):
            if on_tool_result is not None and event.result:
                try:
                    await _call(on_tool_result, event.tool_name, event.result)
                except Exception as e:
                    logger.error(f"Error in tool result callback: {e}")
        elif isinstance(event, PermissionRequestEvent):
            decision = await self._decide(event, on_permission_request)
            line = encode_permission_response(
                event.request_id,
                decision.allow,
                decision.updated_input if decision.updated_input is not None else event.tool_input,
                decision.reason,
            )
            if process.stdin is None or process.stdin.is_closing():
                logger.error(f"Cannot answer permission request for {event.tool_name}: stdin closed")
                return
            await self._write(process, line)
            logger.info(
                f"Permission {'granted' if decision.allow else 'denied'} for {event.tool_name}"
            )

    async def _decide(
        self, event: PermissionRequestEvent, callback: PermissionCallback | None
    ) -> PermissionDecision:
        logger.info(f"Permission requested: {event.tool_name}")
        if callback is None:
            return PermissionDecision(allow=False, reason=NO_HANDLER_REASON)
        try:
            outcome = await _call(callback, event.tool_name, event.tool_input)
        except Exception as e:
            logger.error(f"Permission callback error: {e}")
            return PermissionDecision(allow=False, reason=f"Permission check failed: {e}")
        if isinstance(outcome, PermissionDecision):
            return outcome
        return PermissionDecision(allow=bool(outcome))

    async def _write(self, process: asyncio.subprocess.Process, data: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Worker {process.pid} closed stdin early: {e}")

    def _close_stdin(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

    async def _wait_for_exit(self, process: asyncio.subprocess.Process) -> int | None:
        try:
            return await asyncio.wait_for(process.wait(), timeout=self.settings.worker.exit_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Worker {process.pid} did not exit in time, terminating")
            await self._stop(process)
            return process.returncode

    async def _drain_stderr(self, process: asyncio.subprocess.Process, tail: deque) -> None:
        if process.stderr is None:
            return
        try:
            async for raw in process.stderr:
                text = raw.decode("utf-8", errors="replace").rstrip()
                if not text:
                    continue
                tail.append(text)
                if "Error" in text or "Failed" in text:
                    logger.error(f"Worker stderr: {text}")
        except ValueError as e:
            logger.warning(f"Stopped reading worker stderr: {e}")

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate a worker that is still running and wait for it."""
        self._terminate(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=max(self.settings.worker.exit_grace, 1.0))
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    def _snapshot_children(self, pid: int, children: dict[int, psutil.Process]) -> None:
        try:
            for child in psutil.Process(pid).children(recursive=True):
                children.setdefault(child.pid, child)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    def _reap_children(self, pid: int, children: dict[int, psutil.Process]) -> None:
        """Terminate tool servers the worker left behind."""
        alive = [child for child in children.values() if child.is_running()]
        if not alive:
            return
        logger.info(f"Cleaning up {len(alive)} child process(es) of worker {pid}")
        for child in alive:
            try:
                child.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        _, remaining = psutil.wait_procs(alive, timeout=1.0)
        for child in remaining:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

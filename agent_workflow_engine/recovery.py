"""
Restart recovery for in-flight worker requests.

Before a request is handed to a worker process, a small JSON record is written
to the requests directory. On startup ``RequestTracker.recover`` reconciles
those records against live process ids and cleans up whatever user-facing
placeholder a dead or hung request left behind.
"""

import asyncio
import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CleanupCallback = Callable[["ActiveRequest"], Awaitable[None] | None]

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ActiveRequest(BaseModel):
    """
    On-disk record of one request being served by a worker process.

    Attributes:
        key: Identifies the requester (one active request per key)
        pid: Worker process id
        start_time: Epoch seconds when the request was handed to the worker
        callback: Caller coordinates needed to clean up the placeholder
        mode: Kind of request (text, image, speech, workflow)
        session_id: Resumable session handle, when known
    """

    key: str
    pid: int
    start_time: float
    callback: dict[str, Any] = Field(default_factory=dict)
    mode: str = "text"
    session_id: str | None = None


@dataclass
class RecoveryReport:
    active: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    corrupted: list[str] = field(default_factory=list)


def _terminate(pid: int) -> bool:
    try:
        psutil.Process(pid).terminate()
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug(f"Could not terminate PID {pid}: {e}")
        return False


class RequestTracker:
    """
    Writes, clears and reconciles active-request records.

    Args:
        directory: Folder holding one ``<key>.json`` file per request
        max_age: Seconds after which a request is considered hung
        clock: Epoch clock, replaceable in tests
    """

    def __init__(
        self,
        directory: str | Path,
        max_age: float = 15 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.max_age = max_age
        self.clock = clock

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def track(
        self,
        key: str,
        pid: int,
        callback: dict[str, Any] | None = None,
        mode: str = "text",
        session_id: str | None = None,
    ) -> ActiveRequest | None:
        """Record that ``pid`` is serving the request identified by ``key``."""
        record = ActiveRequest(
            key=key,
            pid=pid,
            start_time=self.clock(),
            callback=callback or {},
            mode=mode,
            session_id=session_id,
        )
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(key).write_text(record.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            # Tracking is best effort; the request itself goes ahead
            logger.warning(f"Failed to track request {key}: {e}")
            return None
        return record

    def clear(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clear request {key}: {e}")

    def pending(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob("*.json"))

    async def recover(self, cleanup: CleanupCallback | None = None) -> RecoveryReport:
        """
        Reconcile every record left by a previous run.

        - alive and younger than ``max_age``: left alone, it may still finish
        - older than ``max_age``: the process is terminated if still alive,
          then cleaned up
        - process gone: cleaned up
        - unreadable record: deleted

        Cleanup runs ``cleanup(record)`` once and deletes the record. Errors
        are logged, never raised.
        """
        report = RecoveryReport()
        files = self.pending()
        if not files:
            return report

        logger.info(f"Checking {len(files)} request record(s) from previous run")

        for path in files:
            try:
                record = ActiveRequest.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Deleting corrupted request record {path.name}: {e}")
                report.corrupted.append(path.name)
                path.unlink(missing_ok=True)
                continue

            age = self.clock() - record.start_time
            alive = psutil.pid_exists(record.pid)

            if age >= self.max_age:
                logger.info(f"Cleaning up hung request {record.key} ({age / 60:.0f} min old)")
                if alive and _terminate(record.pid):
                    logger.info(f"Terminated hung worker PID {record.pid}")
                    report.killed.append(record.pid)
            elif alive:
                logger.info(f"Request {record.key} still active (PID {record.pid}, {age:.0f}s old)")
                report.active.append(record.key)
                continue
            else:
                logger.info(f"Cleaning up request {record.key} (worker process died)")

            await self._run_cleanup(cleanup, record)
            path.unlink(missing_ok=True)
            report.cleaned.append(record.key)

        if report.cleaned:
            logger.info(f"Cleaned up {len(report.cleaned)} orphaned request(s)")
        if report.active:
            logger.info(f"{len(report.active)} request(s) still active")
        return report

    async def _run_cleanup(self, cleanup: CleanupCallback | None, record: ActiveRequest) -> None:
        if cleanup is None:
            return
        try:
            outcome = cleanup(record)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Cleanup for request {record.key} failed: {e}")

"""
Audio capture for connected calls.

A CaptureHandle is acquired before dialing, fed the call's audio once it
connects, and released on every exit path. Release is synchronous and
idempotent; buffered audio is flushed to ``recordings_dir``.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from app.errors import CaptureUnavailableError, SessionStateError
from app.telephony import AudioStream

log = structlog.get_logger(__name__)

RECORDINGS_URL_PREFIX = "/recordings"


class CaptureHandle:
    def __init__(self, recorder: "AudioRecorder", capture_id: str):
        self.capture_id = capture_id
        self.engaged = True
        self._recorder = recorder
        self._buffer = bytearray()
        self._task: Optional[asyncio.Task] = None
        self._provider_url: Optional[str] = None
        self._result: Optional[str] = None

    @property
    def captured_bytes(self) -> int:
        return len(self._buffer)

    def begin(self, stream: AudioStream) -> None:
        """Start consuming the call's audio."""
        if not self.engaged:
            raise SessionStateError("Capture handle already released")
        self._provider_url = stream.recording_url
        if stream.chunks is not None:
            self._task = asyncio.create_task(self._consume(stream.chunks))

    async def _consume(self, chunks: AsyncIterator[bytes]) -> None:
        async for chunk in chunks:
            self._buffer.extend(chunk)

    def release(self) -> Optional[str]:
        """Stop capturing and return a recording URL, or None if nothing was captured."""
        if not self.engaged:
            return self._result
        self.engaged = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

        self._result = self._provider_url
        try:
            if self._buffer:
                self._result = self._recorder._flush(self.capture_id, bytes(self._buffer))
        except OSError as e:
            log.error("capture_flush_failed", capture_id=self.capture_id, error=str(e))
        finally:
            self._buffer.clear()
            self._recorder._released(self)
        log.info("capture_released", capture_id=self.capture_id, recording_url=self._result)
        return self._result


class AudioRecorder:
    """Hands out capture handles writing into one directory."""

    def __init__(self, recordings_dir: Path):
        self.recordings_dir = recordings_dir
        self._engaged: set[str] = set()

    @property
    def engaged_count(self) -> int:
        return len(self._engaged)

    def acquire(self) -> CaptureHandle:
        try:
            self.recordings_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error("capture_unavailable", path=str(self.recordings_dir), error=str(e))
            raise CaptureUnavailableError(f"Recording storage unavailable: {e}") from e
        if not os.access(self.recordings_dir, os.W_OK):
            log.error("capture_unavailable", path=str(self.recordings_dir), error="not writable")
            raise CaptureUnavailableError("Recording storage is not writable")

        handle = CaptureHandle(self, uuid.uuid4().hex)
        self._engaged.add(handle.capture_id)
        return handle

    def _flush(self, capture_id: str, data: bytes) -> str:
        name = f"{capture_id}.raw"
        (self.recordings_dir / name).write_bytes(data)
        return f"{RECORDINGS_URL_PREFIX}/{name}"

    def _released(self, handle: CaptureHandle) -> None:
        self._engaged.discard(handle.capture_id)

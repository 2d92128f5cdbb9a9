"""Tests for audio capture handles."""

import pytest

from app.errors import CaptureUnavailableError, SessionStateError
from app.recording import AudioRecorder
from app.telephony import AudioStream

from conftest import audio, drain


@pytest.mark.asyncio
async def test_release_flushes_buffer(recorder):
    handle = recorder.acquire()
    assert recorder.engaged_count == 1

    handle.begin(AudioStream(chunks=audio(3, size=10)))
    await drain()
    assert handle.captured_bytes == 30

    url = handle.release()
    assert url == f"/recordings/{handle.capture_id}.raw"
    assert (recorder.recordings_dir / f"{handle.capture_id}.raw").read_bytes() == b"\x01" * 30
    assert recorder.engaged_count == 0
    assert handle.engaged is False


@pytest.mark.asyncio
async def test_release_is_idempotent(recorder):
    handle = recorder.acquire()
    handle.begin(AudioStream(chunks=audio(1)))
    await drain()
    first = handle.release()
    assert handle.release() == first
    assert recorder.engaged_count == 0


@pytest.mark.asyncio
async def test_release_without_audio_returns_provider_url(recorder):
    handle = recorder.acquire()
    handle.begin(AudioStream(recording_url="https://api.twilio.com/rec/RE1"))
    assert handle.release() == "https://api.twilio.com/rec/RE1"


def test_release_before_connect(recorder):
    handle = recorder.acquire()
    assert handle.release() is None
    assert recorder.engaged_count == 0
    with pytest.raises(SessionStateError):
        handle.begin(AudioStream())


def test_acquire_fails_when_directory_cannot_be_created(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    recorder = AudioRecorder(blocker / "recordings")
    with pytest.raises(CaptureUnavailableError):
        recorder.acquire()
    assert recorder.engaged_count == 0


@pytest.mark.asyncio
async def test_flush_failure_still_releases(recorder):
    handle = recorder.acquire()
    handle.begin(AudioStream(chunks=audio(2)))
    await drain()
    # a directory where the file should go makes the write fail
    (recorder.recordings_dir / f"{handle.capture_id}.raw").mkdir()

    assert handle.release() is None
    assert recorder.engaged_count == 0

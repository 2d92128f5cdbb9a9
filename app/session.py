"""
Call session workflow. Drives one outgoing call attempt from "operator
presses call" to "outcome recorded".

    idle ──start──▶ dialing ──connected──▶ active ──hangup / remote / drop──▶ finished
                       │                                                        ▲
                       └──────────── busy / no answer / cancel ─────────────────┘

A session that reaches ``dialing`` appends exactly one history record.
Bridge server errors and capture failures return the session to ``idle``
without a record. All transitions run on the event loop; each handler is
synchronous up to the moment the state becomes ``finished``.
"""

from __future__ import annotations

import abc
import asyncio
import functools
from datetime import datetime
from typing import Callable, Optional

import structlog

from app.config import Settings
from app.errors import (
    BridgeError,
    CaptureUnavailableError,
    ConfigurationError,
    SessionStateError,
)
from app.history import HistoryStore
from app.models import CallRecord, CallStatus, SessionStatus, SessionView, Student, utcnow
from app.output import format_duration
from app.preferences import PreferenceStore
from app.recording import AudioRecorder, CaptureHandle
from app.telephony import BridgeEvent, BridgeOutcome, OutcomeKind, TelephonyBridge

log = structlog.get_logger(__name__)


# ── Periodic tick ───────────────────────────────────────────────


class TickHandle(abc.ABC):
    @abc.abstractmethod
    def cancel(self) -> None: ...


class Ticker(abc.ABC):
    """Source of the once-per-interval duration tick."""

    @abc.abstractmethod
    def start(self, callback: Callable[[], None]) -> TickHandle: ...


class _RepeatingTimer(TickHandle):
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle = loop.call_later(interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._handle = self._loop.call_later(self._interval, self._fire)
        self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()


class LoopTicker(Ticker):
    def __init__(self, interval: float = 1.0):
        self.interval = interval

    def start(self, callback: Callable[[], None]) -> TickHandle:
        return _RepeatingTimer(asyncio.get_running_loop(), self.interval, callback)


# ── Session ─────────────────────────────────────────────────────


class CallSession:
    """One operator's call screen. At most one attempt in flight."""

    def __init__(
        self,
        operator: str,
        bridge: TelephonyBridge,
        history: HistoryStore,
        recorder: AudioRecorder,
        ticker: Ticker,
    ):
        self.operator = operator
        self._bridge = bridge
        self._history = history
        self._recorder = recorder
        self._ticker = ticker
        self._persist_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._attempt = 0
        self._clear()

    def _clear(self) -> None:
        self.status = SessionStatus.IDLE
        self.student: Optional[Student] = None
        self.duration = 0
        self.message = ""
        self.finish_reason = ""
        self.record: Optional[CallRecord] = None
        self._started_at: Optional[datetime] = None
        self._call_id = ""
        self._tick: Optional[TickHandle] = None
        self._capture: Optional[CaptureHandle] = None
        self._dial_task: Optional[asyncio.Task] = None

    @property
    def capture_engaged(self) -> bool:
        return self._capture is not None and self._capture.engaged

    def view(self) -> SessionView:
        return SessionView(
            status=self.status,
            student=self.student,
            duration=self.duration,
            message=self.message,
            finish_reason=self.finish_reason,
            record=self.record,
            recording=self.capture_engaged,
        )

    # ── Operator actions ────────────────────────────────────────

    def start(self, student: Student, caller: str, record: bool = False) -> None:
        """Begin an attempt: acquire capture if recording, then dial."""
        if self.status is not SessionStatus.IDLE:
            raise SessionStateError(f"Cannot start a call while {self.status.value}")

        capture = None
        if record:
            try:
                capture = self._recorder.acquire()
            except CaptureUnavailableError as e:
                self.message = str(e)
                log.warning("call_session_capture_failed", operator=self.operator, error=str(e))
                raise

        self.student = student
        self.status = SessionStatus.DIALING
        self.duration = 0
        self.message = f"Connecting to {student.name}..."
        self.finish_reason = ""
        self.record = None
        self._started_at = utcnow()
        self._capture = capture
        self._attempt += 1
        self._dial_task = asyncio.create_task(self._dial(student.phone, caller, record, self._attempt))
        log.info(
            "call_session_started",
            operator=self.operator,
            student_id=student.id,
            record=record,
        )

    def cancel(self) -> None:
        """Abandon the attempt while still dialing."""
        if self.status is not SessionStatus.DIALING:
            raise SessionStateError(f"Cannot cancel while {self.status.value}")
        task, self._dial_task = self._dial_task, None
        self._finish(
            CallStatus.CANCELED,
            reason="canceled",
            message=f"Call to {self.student.name} was canceled.",
        )
        if task is not None and not task.done():
            task.cancel()

    def hangup(self) -> None:
        """End the call from our side. While dialing this is a cancel."""
        if self.status is SessionStatus.DIALING:
            self.cancel()
            return
        if self.status is not SessionStatus.ACTIVE:
            raise SessionStateError(f"Cannot hang up while {self.status.value}")
        self._terminate(CallStatus.COMPLETED, "operator_hangup")

    def reset(self) -> None:
        """Acknowledge a finished attempt and return to idle."""
        if self.status in (SessionStatus.DIALING, SessionStatus.ACTIVE):
            raise SessionStateError(f"Cannot reset while {self.status.value}")
        self._attempt += 1
        self._clear()

    async def settled(self) -> None:
        """Wait until the last attempt's record has been written."""
        if self._persist_task is not None:
            await asyncio.shield(self._persist_task)

    # ── Bridge callbacks ────────────────────────────────────────

    async def _dial(self, callee: str, caller: str, record: bool, attempt: int) -> None:
        listener = functools.partial(self._on_bridge_event, attempt=attempt)
        try:
            outcome = await self._bridge.place(callee, caller, record, listener)
        except BridgeError as e:
            outcome = BridgeOutcome.server_error(str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("bridge_place_crashed", operator=self.operator)
            outcome = BridgeOutcome.server_error(f"Unexpected telephony error: {e}")
        self._resolve(outcome, asyncio.current_task())

    def _resolve(self, outcome: BridgeOutcome, task: Optional[asyncio.Task]) -> None:
        if self.status is not SessionStatus.DIALING or task is not self._dial_task:
            log.info("bridge_outcome_ignored", operator=self.operator, outcome=outcome.kind.value)
            if outcome.kind is OutcomeKind.CONNECTED:
                self._spawn_hangup(outcome.call_id)
            return

        self._dial_task = None
        self._call_id = outcome.call_id
        name = self.student.name

        if outcome.kind is OutcomeKind.CONNECTED:
            self.status = SessionStatus.ACTIVE
            self.message = f"Connected to {name}."
            self._tick = self._ticker.start(self._on_tick)
            if self._capture is not None and outcome.audio is not None:
                self._capture.begin(outcome.audio)
            log.info("call_session_active", operator=self.operator, call_id=outcome.call_id)
        elif outcome.kind is OutcomeKind.BUSY:
            self._finish(CallStatus.FAILED_BUSY, "busy", f"{name}'s line is busy.")
        elif outcome.kind is OutcomeKind.NO_ANSWER:
            self._finish(CallStatus.FAILED_NO_ANSWER, "no_answer", f"{name} did not answer.")
        else:
            self._abort(outcome.message or "The call service reported an error.")

    def _on_bridge_event(self, event: BridgeEvent, attempt: int) -> None:
        if attempt != self._attempt or self.status is not SessionStatus.ACTIVE:
            log.info("bridge_event_ignored", operator=self.operator, bridge_event=event.value)
            return
        if event is BridgeEvent.DROPPED:
            self._terminate(CallStatus.FAILED_DROPPED, "dropped")
        else:
            self._terminate(CallStatus.COMPLETED, "remote_hangup")

    def _on_tick(self) -> None:
        if self.status is SessionStatus.ACTIVE:
            self.duration += 1

    # ── Terminal transitions ────────────────────────────────────

    def _terminate(self, status: CallStatus, reason: str) -> None:
        # Stop the clock before anything reads the duration.
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None

        name = self.student.name
        elapsed = format_duration(self.duration)
        if reason == "remote_hangup":
            message = f"{name} ended the call after {elapsed}."
        elif reason == "dropped":
            message = f"The call with {name} dropped after {elapsed}."
        else:
            message = f"Call with {name} ended after {elapsed}."

        call_id = self._call_id
        self._finish(status, reason, message, duration=self.duration)
        if reason != "remote_hangup":
            self._spawn_hangup(call_id)

    def _finish(self, status: CallStatus, reason: str, message: str, duration: int = 0) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
        recording_url = self._release_capture()

        self.status = SessionStatus.FINISHED
        self.finish_reason = reason
        self.message = message

        fields = dict(
            student_name=self.student.name,
            status=status,
            duration=duration if status.connected else 0,
            teacher_name=self.operator,
            timestamp=self._started_at,
            recording_url=recording_url,
        )
        self._persist_task = asyncio.create_task(self._persist(fields, self._attempt))
        log.info(
            "call_session_finished",
            operator=self.operator,
            status=status.value,
            reason=reason,
            duration=fields["duration"],
        )

    def _abort(self, message: str) -> None:
        """Back to idle without a record (the provider never took the call)."""
        self._release_capture()
        log.warning("call_session_aborted", operator=self.operator, error=message)
        self._clear()
        self.message = message

    def _release_capture(self) -> Optional[str]:
        capture, self._capture = self._capture, None
        return capture.release() if capture is not None else None

    async def _persist(self, fields: dict, attempt: int) -> None:
        try:
            record = await self._history.append(**fields)
        except Exception:
            log.exception("call_record_write_failed", operator=self.operator)
            raise
        # A reset or a newer attempt owns the view now.
        if attempt == self._attempt:
            self.record = record

    def _spawn_hangup(self, call_id: str) -> None:
        if call_id:
            task = asyncio.create_task(self._bridge.hangup(call_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)


# ── Registry ────────────────────────────────────────────────────


class CallSessionManager:
    """One CallSession per operator, plus the configuration gate."""

    def __init__(
        self,
        settings: Settings,
        bridge: TelephonyBridge,
        history: HistoryStore,
        recorder: AudioRecorder,
        preferences: PreferenceStore,
        ticker: Optional[Ticker] = None,
    ):
        self.settings = settings
        self.bridge = bridge
        self.history = history
        self.recorder = recorder
        self.preferences = preferences
        self.ticker = ticker or LoopTicker(settings.tick_interval_seconds)
        self._sessions: dict[str, CallSession] = {}

        issues = settings.calling_issues()
        if issues:
            log.warning("calling_not_configured", issues=issues)

    def get(self, operator: str) -> CallSession:
        session = self._sessions.get(operator)
        if session is None:
            session = CallSession(operator, self.bridge, self.history, self.recorder, self.ticker)
            self._sessions[operator] = session
        return session

    async def start(self, operator: str, student: Student) -> CallSession:
        prefs = await self.preferences.load(operator)
        issues = self.settings.calling_issues(prefs.staff_phone_number)
        if issues:
            raise ConfigurationError(issues)
        session = self.get(operator)
        session.start(student, caller=prefs.staff_phone_number, record=prefs.recording_enabled)
        return session

    async def close(self) -> None:
        """End every in-flight attempt and wait for records to be written."""
        for session in self._sessions.values():
            if session.status in (SessionStatus.DIALING, SessionStatus.ACTIVE):
                session.hangup()
        for session in self._sessions.values():
            try:
                await session.settled()
            except Exception:
                log.warning("call_session_close_incomplete", operator=session.operator)

"""
Telephony bridge: places a bridged call (staff phone first, then the
student) and reports how the placement resolved.

Two implementations:
  - TwilioBridge     REST API via httpx, outcome driven by status callbacks
  - SimulatedBridge  demo stand-in with configurable outcome probabilities
"""

from __future__ import annotations

import abc
import asyncio
import base64
import enum
import hashlib
import hmac
import random
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Mapping, Optional
from xml.sax.saxutils import escape, quoteattr

import httpx
import structlog

from app.config import Settings
from app.errors import BridgeError

log = structlog.get_logger(__name__)


class BridgeEvent(str, enum.Enum):
    """Signals the bridge may raise after a call has connected."""

    REMOTE_HANGUP = "remote_hangup"
    DROPPED = "dropped_connection"


class OutcomeKind(str, enum.Enum):
    CONNECTED = "connected"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    SERVER_ERROR = "server_error"


@dataclass
class AudioStream:
    """Live audio of a connected call.

    ``chunks`` yields raw audio until the call ends. ``recording_url`` is set
    when the provider records the call itself.
    """

    chunks: Optional[AsyncIterator[bytes]] = None
    recording_url: Optional[str] = None


@dataclass(frozen=True)
class BridgeOutcome:
    kind: OutcomeKind
    call_id: str = ""
    audio: Optional[AudioStream] = None
    message: str = ""

    @classmethod
    def connected(cls, call_id: str, audio: Optional[AudioStream] = None) -> "BridgeOutcome":
        return cls(OutcomeKind.CONNECTED, call_id, audio or AudioStream())

    @classmethod
    def busy(cls, call_id: str = "") -> "BridgeOutcome":
        return cls(OutcomeKind.BUSY, call_id)

    @classmethod
    def no_answer(cls, call_id: str = "") -> "BridgeOutcome":
        return cls(OutcomeKind.NO_ANSWER, call_id)

    @classmethod
    def server_error(cls, message: str, call_id: str = "") -> "BridgeOutcome":
        return cls(OutcomeKind.SERVER_ERROR, call_id, message=message)


BridgeListener = Callable[[BridgeEvent], None]


class TelephonyBridge(abc.ABC):
    """Port used by the call session workflow."""

    @abc.abstractmethod
    async def place(
        self,
        callee: str,
        caller: str,
        record: bool,
        listener: BridgeListener,
    ) -> BridgeOutcome:
        """
        Start a call and wait until it connects, is refused, or errors.

        ``listener`` is invoked (synchronously, on the event loop) with
        REMOTE_HANGUP or DROPPED at any point after a CONNECTED outcome.
        Cancelling the awaiting task abandons the placement.
        """

    @abc.abstractmethod
    async def hangup(self, call_id: str) -> None:
        """End a call from our side. Must be safe to call on an ended call."""

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════
#  Twilio
# ═══════════════════════════════════════════════════════════════

_BUSY = {"busy"}
_NO_ANSWER = {"no-answer", "canceled"}
_CONNECTED = {"in-progress", "answered"}
_ENDED = {"completed"}
_FAILED = {"failed"}


def build_bridge_twiml(callee: str, caller_id: str, status_callback: str = "") -> str:
    """TwiML that dials the student once the staff member answers."""
    number_attrs = ""
    if status_callback:
        number_attrs = (
            f" statusCallback={quoteattr(status_callback)}"
            ' statusCallbackEvent="answered completed" statusCallbackMethod="POST"'
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Dial callerId={quoteattr(caller_id)}>"
        f"<Number{number_attrs}>{escape(callee)}</Number>"
        "</Dial></Response>"
    )


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """HMAC-SHA1 over the URL followed by the sorted POST parameters."""
    payload = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def validate_twilio_signature(
    auth_token: str, url: str, params: Mapping[str, str], signature: str
) -> bool:
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature or "")


@dataclass
class _PendingCall:
    listener: BridgeListener
    resolution: asyncio.Future
    connected: bool = False
    ended: bool = False


class TwilioBridge(TelephonyBridge):
    """Async client for the Twilio Calls API."""

    API_VERSION = "2010-04-01"

    def __init__(self, settings: Settings, answer_timeout: float = 60.0, transport=None):
        self.settings = settings
        self.base_url = settings.twilio_base_url.rstrip("/")
        self.answer_timeout = answer_timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._calls: dict[str, _PendingCall] = {}

    @property
    def active_call_ids(self) -> list[str]:
        return list(self._calls)

    @property
    def _account_path(self) -> str:
        return f"/{self.API_VERSION}/Accounts/{self.settings.twilio_account_sid}"

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ── Outbound calls ──────────────────────────────────────────

    async def _create_call(self, callee: str, caller: str, record: bool) -> str:
        client = await self._client()
        callback = self.settings.twilio_status_callback_url
        form: dict = {
            "To": caller,
            "From": self.settings.twilio_phone_number,
            "Twiml": build_bridge_twiml(callee, self.settings.twilio_phone_number, callback),
        }
        if record:
            form["Record"] = "true"
        if callback:
            form["StatusCallback"] = callback
            form["StatusCallbackMethod"] = "POST"
            form["StatusCallbackEvent"] = ["answered", "completed"]

        try:
            resp = await client.post(f"{self._account_path}/Calls.json", data=form)
        except httpx.RequestError as e:
            log.error("twilio_request_failed", error=str(e))
            raise BridgeError(f"Could not reach Twilio: {e}") from e

        if resp.status_code >= 400:
            try:
                message = resp.json().get("message") or resp.text
            except ValueError:
                message = resp.text
            log.error("twilio_call_rejected", status=resp.status_code, message=message)
            raise BridgeError(message or f"Twilio error {resp.status_code}", resp.status_code)

        sid = resp.json()["sid"]
        log.info("bridge_call_placed", call_sid=sid, record=record)
        return sid

    def _recording_reference(self, sid: str) -> str:
        return f"{self.base_url}{self._account_path}/Calls/{sid}/Recordings.json"

    async def place(
        self,
        callee: str,
        caller: str,
        record: bool,
        listener: BridgeListener,
    ) -> BridgeOutcome:
        try:
            sid = await self._create_call(callee, caller, record)
        except BridgeError as e:
            return BridgeOutcome.server_error(str(e))

        audio = AudioStream(recording_url=self._recording_reference(sid) if record else None)

        # Without status callbacks we cannot observe the answer; the call is
        # treated as connected as soon as Twilio accepts it.
        if not self.settings.twilio_status_callback_url:
            self._calls[sid] = _PendingCall(listener, asyncio.get_running_loop().create_future(), connected=True)
            return BridgeOutcome.connected(sid, audio)

        pending = _PendingCall(listener, asyncio.get_running_loop().create_future())
        self._calls[sid] = pending
        try:
            kind: OutcomeKind = await asyncio.wait_for(pending.resolution, timeout=self.answer_timeout)
        except asyncio.TimeoutError:
            log.info("bridge_answer_timeout", call_sid=sid)
            self._calls.pop(sid, None)
            await self.hangup(sid)
            return BridgeOutcome.no_answer(sid)
        except asyncio.CancelledError:
            self._calls.pop(sid, None)
            await self.hangup(sid)
            raise

        if kind is OutcomeKind.CONNECTED:
            return BridgeOutcome.connected(sid, audio)
        self._calls.pop(sid, None)
        if kind is OutcomeKind.BUSY:
            return BridgeOutcome.busy(sid)
        if kind is OutcomeKind.NO_ANSWER:
            return BridgeOutcome.no_answer(sid)
        return BridgeOutcome.server_error("The call could not be connected.", sid)

    async def hangup(self, call_id: str) -> None:
        pending = self._calls.pop(call_id, None)
        if pending:
            pending.ended = True
        client = await self._client()
        try:
            resp = await client.post(
                f"{self._account_path}/Calls/{call_id}.json",
                data={"Status": "completed"},
            )
            if resp.status_code >= 400:
                log.warning("twilio_hangup_rejected", call_sid=call_id, status=resp.status_code)
        except httpx.RequestError as e:
            log.warning("twilio_hangup_failed", call_sid=call_id, error=str(e))

    # ── Status callbacks ────────────────────────────────────────

    def handle_status_callback(self, params: Mapping[str, str]) -> None:
        """
        Feed a Twilio status callback into the matching call.

        The call we create rings the staff phone; its ``<Number>`` leg to
        the student reports back with ``ParentCallSid`` set. Only the
        student leg answering connects the placement. The staff leg
        ending first settles it as a refusal.
        """
        student_leg = bool(params.get("ParentCallSid"))
        sid = params.get("ParentCallSid") or params.get("CallSid", "")
        status = params.get("CallStatus", "").lower()
        pending = self._calls.get(sid)
        if pending is None or pending.ended:
            log.info("twilio_status_ignored", call_sid=sid, status=status)
            return

        log.info("twilio_status", call_sid=sid, status=status, child=student_leg)

        if not pending.connected:
            kind = None
            if status in _CONNECTED:
                if not student_leg:
                    log.info("twilio_staff_answered", call_sid=sid)
                    return
                kind = OutcomeKind.CONNECTED
                pending.connected = True
            elif status in _BUSY:
                kind = OutcomeKind.BUSY
            elif status in _NO_ANSWER or status in _ENDED:
                kind = OutcomeKind.NO_ANSWER
            elif status in _FAILED:
                kind = OutcomeKind.SERVER_ERROR
            if kind is not None and not pending.resolution.done():
                pending.resolution.set_result(kind)
            return

        if status in _ENDED:
            event = BridgeEvent.REMOTE_HANGUP
        elif status in _FAILED or status in _BUSY or status in _NO_ANSWER:
            event = BridgeEvent.DROPPED
        else:
            return
        pending.ended = True
        self._calls.pop(sid, None)
        pending.listener(event)


# ═══════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════


@dataclass
class _SimCall:
    ended: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class SimulatedBridge(TelephonyBridge):
    """
    Demo bridge: waits ``connect_delay``, then draws busy / no-answer /
    connected. A connected call later ends by remote hang-up or, with
    probability ``drop_rate``, a dropped connection.
    """

    def __init__(
        self,
        connect_delay: float = 2.0,
        busy_rate: float = 0.1,
        no_answer_rate: float = 0.1,
        drop_rate: float = 0.05,
        max_call_seconds: float = 120,
        min_call_seconds: float = 5,
        rng: Optional[random.Random] = None,
    ):
        self.connect_delay = connect_delay
        self.busy_rate = busy_rate
        self.no_answer_rate = no_answer_rate
        self.drop_rate = drop_rate
        self.max_call_seconds = max_call_seconds
        self.min_call_seconds = min(min_call_seconds, max_call_seconds)
        self.rng = rng or random.Random()
        self._calls: dict[str, _SimCall] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimulatedBridge":
        return cls(
            connect_delay=settings.sim_connect_delay_seconds,
            busy_rate=settings.sim_busy_rate,
            no_answer_rate=settings.sim_no_answer_rate,
            drop_rate=settings.sim_drop_rate,
            max_call_seconds=settings.sim_max_call_seconds,
        )

    async def place(self, callee, caller, record, listener) -> BridgeOutcome:
        call_id = f"SIM{uuid.uuid4().hex[:16]}"
        log.info("sim_call_placed", call_id=call_id, callee=callee)
        await asyncio.sleep(self.connect_delay)

        roll = self.rng.random()
        if roll < self.busy_rate:
            return BridgeOutcome.busy(call_id)
        if roll < self.busy_rate + self.no_answer_rate:
            return BridgeOutcome.no_answer(call_id)

        call = _SimCall()
        self._calls[call_id] = call
        lifetime = self.rng.uniform(self.min_call_seconds, self.max_call_seconds)
        event = BridgeEvent.DROPPED if self.rng.random() < self.drop_rate else BridgeEvent.REMOTE_HANGUP
        call.task = asyncio.create_task(self._run_call(call_id, lifetime, event, listener))
        return BridgeOutcome.connected(call_id, AudioStream(chunks=self._audio(call)))

    async def _run_call(self, call_id: str, lifetime: float, event: BridgeEvent, listener) -> None:
        try:
            await asyncio.wait_for(self._calls[call_id].ended.wait(), timeout=lifetime)
        except asyncio.TimeoutError:
            call = self._calls.pop(call_id, None)
            if call is not None:
                call.ended.set()
                log.info("sim_call_ended", call_id=call_id, bridge_event=event.value)
                listener(event)

    async def _audio(self, call: _SimCall) -> AsyncIterator[bytes]:
        while not call.ended.is_set():
            yield bytes(self.rng.getrandbits(8) for _ in range(160))
            await asyncio.sleep(0.02)

    async def hangup(self, call_id: str) -> None:
        call = self._calls.pop(call_id, None)
        if call is None:
            return
        call.ended.set()
        if call.task and not call.task.done():
            call.task.cancel()
        log.info("sim_call_hungup", call_id=call_id)

    async def close(self) -> None:
        for call_id in list(self._calls):
            await self.hangup(call_id)


def create_bridge(settings: Settings) -> TelephonyBridge:
    if settings.telephony_backend == "simulated":
        return SimulatedBridge.from_settings(settings)
    return TwilioBridge(settings)

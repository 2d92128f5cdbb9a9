"""Shared fakes: a scripted telephony bridge and a hand-driven ticker."""

import asyncio

import pytest
import pytest_asyncio

from app.database import MemoryKeyValueStore
from app.history import HistoryStore
from app.models import Student
from app.recording import AudioRecorder
from app.session import CallSession, TickHandle, Ticker
from app.telephony import BridgeOutcome, TelephonyBridge


class ScriptedBridge(TelephonyBridge):
    """Placements stay pending until the test resolves them."""

    def __init__(self):
        self.placed: list[tuple[str, str, bool]] = []
        self.hung_up: list[str] = []
        self.listeners = []
        self._pending: list[asyncio.Future] = []

    async def place(self, callee, caller, record, listener):
        self.placed.append((callee, caller, record))
        self.listeners.append(listener)
        fut = asyncio.get_running_loop().create_future()
        self._pending.append(fut)
        return await fut

    def resolve(self, outcome: BridgeOutcome) -> None:
        """Settle the oldest placement that is still waiting."""
        while self._pending:
            fut = self._pending.pop(0)
            if not fut.done():
                fut.set_result(outcome)
                return

    def signal(self, event, index: int = -1) -> None:
        self.listeners[index](event)

    async def hangup(self, call_id):
        self.hung_up.append(call_id)


class FailingBridge(ScriptedBridge):
    def __init__(self, exc: Exception):
        super().__init__()
        self.exc = exc

    async def place(self, callee, caller, record, listener):
        self.placed.append((callee, caller, record))
        raise self.exc


class IgnoresCancelBridge(ScriptedBridge):
    """Reports a connection even though the placement was abandoned."""

    async def place(self, callee, caller, record, listener):
        try:
            return await super().place(callee, caller, record, listener)
        except asyncio.CancelledError:
            return BridgeOutcome.connected("CA-late")


class _ManualHandle(TickHandle):
    def __init__(self, ticker):
        self._ticker = ticker

    def cancel(self):
        self._ticker.active = False


class ManualTicker(Ticker):
    def __init__(self):
        self.callback = None
        self.active = False
        self.starts = 0

    def start(self, callback):
        self.callback = callback
        self.active = True
        self.starts += 1
        return _ManualHandle(self)

    def advance(self, ticks: int) -> None:
        for _ in range(ticks):
            if self.active:
                self.callback()


async def drain(rounds: int = 10) -> None:
    """Let pending tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def audio(chunks: int, size: int = 160):
    for _ in range(chunks):
        yield b"\x01" * size
    await asyncio.Event().wait()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def history(store):
    return HistoryStore(store)


@pytest.fixture
def recorder(tmp_path):
    return AudioRecorder(tmp_path / "recordings")


@pytest.fixture
def bridge():
    return ScriptedBridge()


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest_asyncio.fixture
async def session(bridge, history, recorder, ticker):
    return CallSession("Ali Hassan", bridge, history, recorder, ticker)


@pytest.fixture
def omar():
    return Student(id=1, name="Omar", phone="+12015550123", added_by="Administrator")


@pytest.fixture
def aisha():
    return Student(id=2, name="Aisha", phone="+12015550124", added_by="Administrator")

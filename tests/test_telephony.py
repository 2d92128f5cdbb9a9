"""Tests for the Twilio and simulated telephony bridges."""

import asyncio
import random
from urllib.parse import parse_qs

import httpx
import pytest

from app.config import Settings
from app.telephony import (
    BridgeEvent,
    OutcomeKind,
    SimulatedBridge,
    TwilioBridge,
    build_bridge_twiml,
    compute_twilio_signature,
    create_bridge,
    validate_twilio_signature,
)

CALLBACK = "https://caller.example.com/webhook/twilio/status"


async def _until_placed(bridge):
    for _ in range(1000):
        if bridge.active_call_ids:
            return
        await asyncio.sleep(0)
    raise AssertionError("call was never created")


def _settings(**overrides):
    values = dict(
        twilio_account_sid="AC123",
        twilio_auth_token="secret-token",
        twilio_phone_number="+12015550199",
        twilio_status_callback_url=CALLBACK,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeTwilio:
    """Records requests and answers the Calls API."""

    def __init__(self, create_status=201, create_body=None):
        self.requests: list[httpx.Request] = []
        self.create_status = create_status
        self.create_body = create_body or {"sid": "CA100", "status": "queued"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/Calls.json"):
            return httpx.Response(self.create_status, json=self.create_body)
        return httpx.Response(200, json={"sid": "CA100", "status": "completed"})

    def form(self, index: int) -> dict:
        return parse_qs(self.requests[index].content.decode())


def _bridge(fake, **overrides):
    return TwilioBridge(_settings(**overrides), transport=httpx.MockTransport(fake))


# ── TwiML and signatures ────────────────────────────────────────


def test_twiml_dials_student_with_callback():
    twiml = build_bridge_twiml("+12015550123", "+12015550199", CALLBACK)
    assert twiml.startswith('<?xml version="1.0" encoding="UTF-8"?><Response>')
    assert '<Dial callerId="+12015550199">' in twiml
    assert f'statusCallback="{CALLBACK}"' in twiml
    assert ">+12015550123</Number>" in twiml


def test_twiml_escapes_values():
    twiml = build_bridge_twiml("<bad>", "+1", "https://x.test/?a=1&b=2")
    assert "&lt;bad&gt;" in twiml
    assert "a=1&amp;b=2" in twiml


def test_signature_round_trip():
    params = {"CallSid": "CA1", "CallStatus": "completed", "AccountSid": "AC123"}
    signature = compute_twilio_signature("secret-token", CALLBACK, params)
    assert validate_twilio_signature("secret-token", CALLBACK, params, signature)
    assert not validate_twilio_signature("other-token", CALLBACK, params, signature)
    assert not validate_twilio_signature(
        "secret-token", CALLBACK, {**params, "CallStatus": "busy"}, signature
    )
    assert not validate_twilio_signature("secret-token", CALLBACK, params, "")


# ── TwilioBridge ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_place_calls_staff_first_and_connects_on_answer():
    fake = FakeTwilio()
    bridge = _bridge(fake)
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", True, lambda e: None))
    await _until_placed(bridge)

    form = fake.form(0)
    assert fake.requests[0].url.path == "/2010-04-01/Accounts/AC123/Calls.json"
    assert form["To"] == ["+12015550100"]
    assert form["From"] == ["+12015550199"]
    assert "+12015550123" in form["Twiml"][0]
    assert form["Record"] == ["true"]
    assert form["StatusCallback"] == [CALLBACK]
    assert bridge.active_call_ids == ["CA100"]

    bridge.handle_status_callback({"CallSid": "CA999", "ParentCallSid": "CA100", "CallStatus": "in-progress"})
    outcome = await task
    assert outcome.kind is OutcomeKind.CONNECTED
    assert outcome.call_id == "CA100"
    assert outcome.audio.recording_url.endswith("/Calls/CA100/Recordings.json")
    await bridge.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected",
    [
        ("busy", OutcomeKind.BUSY),
        ("no-answer", OutcomeKind.NO_ANSWER),
        ("completed", OutcomeKind.NO_ANSWER),
        ("failed", OutcomeKind.SERVER_ERROR),
    ],
)
async def test_place_resolves_refusals(status, expected):
    bridge = _bridge(FakeTwilio())
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, lambda e: None))
    await _until_placed(bridge)
    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": status})

    outcome = await task
    assert outcome.kind is expected
    assert bridge.active_call_ids == []


@pytest.mark.asyncio
async def test_staff_answer_alone_does_not_connect():
    bridge = _bridge(FakeTwilio())
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, lambda e: None))
    await _until_placed(bridge)

    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "in-progress"})
    await asyncio.sleep(0)
    assert not task.done()

    bridge.handle_status_callback({"CallSid": "CA999", "ParentCallSid": "CA100", "CallStatus": "busy"})
    outcome = await task
    assert outcome.kind is OutcomeKind.BUSY
    assert bridge.active_call_ids == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected",
    [
        ("no-answer", OutcomeKind.NO_ANSWER),
        ("completed", OutcomeKind.NO_ANSWER),
        ("failed", OutcomeKind.SERVER_ERROR),
    ],
)
async def test_student_leg_refusals_after_staff_answer(status, expected):
    bridge = _bridge(FakeTwilio())
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, lambda e: None))
    await _until_placed(bridge)
    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "answered"})
    bridge.handle_status_callback({"CallSid": "CA999", "ParentCallSid": "CA100", "CallStatus": status})

    assert (await task).kind is expected


@pytest.mark.asyncio
async def test_rejected_request_surfaces_provider_message():
    fake = FakeTwilio(
        create_status=400,
        create_body={"code": 21211, "message": "The 'To' number +1 is not a valid phone number."},
    )
    bridge = _bridge(fake)
    outcome = await bridge.place("+12015550123", "+1", False, lambda e: None)

    assert outcome.kind is OutcomeKind.SERVER_ERROR
    assert outcome.message == "The 'To' number +1 is not a valid phone number."


@pytest.mark.asyncio
async def test_unreachable_provider_is_a_server_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    bridge = TwilioBridge(_settings(), transport=httpx.MockTransport(handler))
    outcome = await bridge.place("+12015550123", "+12015550100", False, lambda e: None)
    assert outcome.kind is OutcomeKind.SERVER_ERROR
    assert "Could not reach Twilio" in outcome.message


@pytest.mark.asyncio
async def test_without_callback_url_connects_immediately():
    fake = FakeTwilio()
    bridge = _bridge(fake, twilio_status_callback_url="")
    outcome = await bridge.place("+12015550123", "+12015550100", False, lambda e: None)

    assert outcome.kind is OutcomeKind.CONNECTED
    assert outcome.audio.recording_url is None
    assert "StatusCallback" not in fake.form(0)


@pytest.mark.asyncio
async def test_answer_timeout_hangs_up_as_no_answer():
    fake = FakeTwilio()
    bridge = TwilioBridge(_settings(), answer_timeout=0.05, transport=httpx.MockTransport(fake))
    outcome = await bridge.place("+12015550123", "+12015550100", False, lambda e: None)

    assert outcome.kind is OutcomeKind.NO_ANSWER
    assert fake.requests[-1].url.path == "/2010-04-01/Accounts/AC123/Calls/CA100.json"
    assert fake.form(-1) == {"Status": ["completed"]}


@pytest.mark.asyncio
async def test_cancelled_placement_hangs_up():
    fake = FakeTwilio()
    bridge = _bridge(fake)
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, lambda e: None))
    await _until_placed(bridge)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake.requests[-1].url.path.endswith("/Calls/CA100.json")
    assert bridge.active_call_ids == []


@pytest.mark.asyncio
async def test_events_after_connect_reach_listener_once():
    events = []
    bridge = _bridge(FakeTwilio())
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, events.append))
    await _until_placed(bridge)
    bridge.handle_status_callback({"CallSid": "CA999", "ParentCallSid": "CA100", "CallStatus": "in-progress"})
    await task

    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "completed"})
    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "completed"})
    assert events == [BridgeEvent.REMOTE_HANGUP]
    assert bridge.active_call_ids == []


@pytest.mark.asyncio
async def test_failure_after_connect_is_a_drop():
    events = []
    bridge = _bridge(FakeTwilio())
    task = asyncio.create_task(bridge.place("+12015550123", "+12015550100", False, events.append))
    await _until_placed(bridge)
    bridge.handle_status_callback({"CallSid": "CA999", "ParentCallSid": "CA100", "CallStatus": "answered"})
    await task
    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "failed"})
    assert events == [BridgeEvent.DROPPED]


@pytest.mark.asyncio
async def test_hangup_of_connected_call_silences_callbacks():
    events = []
    fake = FakeTwilio()
    bridge = _bridge(fake, twilio_status_callback_url="")
    await bridge.place("+12015550123", "+12015550100", False, events.append)

    await bridge.hangup("CA100")
    bridge.handle_status_callback({"CallSid": "CA100", "CallStatus": "completed"})
    assert events == []
    assert fake.form(-1) == {"Status": ["completed"]}


# ── SimulatedBridge ─────────────────────────────────────────────


def _sim(**overrides):
    values = dict(
        connect_delay=0,
        busy_rate=0,
        no_answer_rate=0,
        drop_rate=0,
        max_call_seconds=0.05,
        rng=random.Random(7),
    )
    values.update(overrides)
    return SimulatedBridge(**values)


@pytest.mark.asyncio
async def test_simulated_busy_and_no_answer():
    busy = await _sim(busy_rate=1).place("+1", "+2", False, lambda e: None)
    assert busy.kind is OutcomeKind.BUSY
    missed = await _sim(no_answer_rate=1).place("+1", "+2", False, lambda e: None)
    assert missed.kind is OutcomeKind.NO_ANSWER


@pytest.mark.asyncio
@pytest.mark.parametrize("drop_rate, expected", [(0, BridgeEvent.REMOTE_HANGUP), (1, BridgeEvent.DROPPED)])
async def test_simulated_call_ends_by_itself(drop_rate, expected):
    events = []
    bridge = _sim(drop_rate=drop_rate)
    outcome = await bridge.place("+1", "+2", False, events.append)
    assert outcome.kind is OutcomeKind.CONNECTED

    chunk = await outcome.audio.chunks.__anext__()
    assert len(chunk) == 160

    await asyncio.sleep(0.15)
    assert events == [expected]


@pytest.mark.asyncio
async def test_simulated_hangup_suppresses_events():
    events = []
    bridge = _sim(max_call_seconds=0.2)
    outcome = await bridge.place("+1", "+2", False, events.append)
    await bridge.hangup(outcome.call_id)
    await asyncio.sleep(0.3)
    assert events == []
    # hanging up twice is harmless
    await bridge.hangup(outcome.call_id)


def test_create_bridge_selects_backend():
    assert isinstance(create_bridge(_settings(telephony_backend="simulated")), SimulatedBridge)
    assert isinstance(create_bridge(_settings()), TwilioBridge)

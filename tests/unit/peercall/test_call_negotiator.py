"""Unit tests for the call negotiator.

Tests the call state machine, signal handling, peer connection events,
resource cleanup and call metrics against an in-memory bus and fake
peer connections.
"""

import asyncio
from unittest.mock import Mock

import pytest

from peercall.bus.base import SignalSendError
from peercall.bus.memory_bus import InMemorySignalBus
from peercall.config import CallConfig
from peercall.negotiator import (
    VALID_TRANSITIONS,
    CallEventKind,
    CallMetrics,
    CallNegotiator,
    CallState,
)
from peercall.signaling.protocol import (
    IceCandidate,
    SessionDescription,
    SignalMessage,
    SignalType,
    parse_signal_body,
)
from peercall.transport.base import ConnectionStateChanged, IceCandidateGathered
from tests.helpers.fake_webrtc import FakeMediaCapture, FakeNetwork, FakeTrack

REMOTE_OFFER = SessionDescription(type="offer", sdp="v=0 remote offer")
REMOTE_ANSWER = SessionDescription(type="answer", sdp="v=0 remote answer")


@pytest.fixture
def bus() -> InMemorySignalBus:
    return InMemorySignalBus()


@pytest.fixture
def media() -> FakeMediaCapture:
    return FakeMediaCapture()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def alice(bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork) -> CallNegotiator:
    negotiator = CallNegotiator("alice", "Alice", bus, media, network.create)
    bus.subscribe(negotiator.handle_signal_message)
    return negotiator


@pytest.fixture
def notifying_alice(
    bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> CallNegotiator:
    negotiator = CallNegotiator(
        "alice", "Alice", bus, media, network.create, CallConfig(notify_peer_on_hangup=True)
    )
    bus.subscribe(negotiator.handle_signal_message)
    return negotiator


def sent_signals(bus: InMemorySignalBus, sender_id: str = "alice") -> list[SignalMessage]:
    """Signals appended to the bus by ``sender_id``, in order."""
    signals = []
    for record in bus.history:
        signal = parse_signal_body(record.body)
        if signal is not None and record.sender_id == sender_id:
            signals.append(signal)
    return signals


async def send_from(
    bus: InMemorySignalBus,
    sender_id: str,
    signal_type: SignalType,
    payload: dict,
    target_user_id: str = "alice",
) -> None:
    """Append a signal as if sent by another participant."""
    message = SignalMessage(
        type=signal_type,
        target_user_id=target_user_id,
        sender_id=sender_id,
        sender_name=sender_id.title(),
        payload=payload,
    )
    await bus.append(message.to_body(), sender_id, sender_id.title())


async def connect_outgoing(alice: CallNegotiator, bus: InMemorySignalBus) -> None:
    """Place a call from alice to bob and apply bob's answer."""
    await alice.initiate_call("bob")
    await send_from(bus, "bob", SignalType.ANSWER, REMOTE_ANSWER.model_dump())


# ============================================================================
# State machine
# ============================================================================


def test_valid_transitions_table() -> None:
    """Test the transition table matches the call lifecycle."""
    assert VALID_TRANSITIONS[CallState.IDLE] == {CallState.CALLING, CallState.ENDED}
    assert VALID_TRANSITIONS[CallState.CALLING] == {CallState.CONNECTED, CallState.ENDED}
    assert VALID_TRANSITIONS[CallState.CONNECTED] == {CallState.ENDED}
    assert VALID_TRANSITIONS[CallState.ENDED] == {CallState.IDLE}


def test_invalid_transition_raises(alice: CallNegotiator) -> None:
    """Test that skipping a state raises ValueError."""
    with pytest.raises(ValueError, match="Invalid state transition"):
        alice.transition_state(CallState.CONNECTED)

    assert alice.state is CallState.IDLE


def test_initial_state(alice: CallNegotiator) -> None:
    """Test a fresh negotiator is idle and holds nothing."""
    assert alice.state is CallState.IDLE
    assert alice.incoming_call is None
    assert alice.local_stream is None
    assert alice.remote_stream is None
    assert alice.peer_connection is None
    assert not alice.is_busy


# ============================================================================
# Outgoing calls
# ============================================================================


async def test_initiate_call_sends_one_offer(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture
) -> None:
    """Test initiating a call acquires media and sends exactly one offer."""
    await alice.initiate_call("bob")

    assert alice.state is CallState.CALLING
    assert alice.peer_id == "bob"
    assert alice.local_stream is media.acquired[0]
    assert alice.peer_connection is not None
    assert alice.peer_connection.tracks == media.acquired[0].tracks

    signals = sent_signals(bus)
    assert len(signals) == 1
    assert signals[0].type is SignalType.OFFER
    assert signals[0].target_user_id == "bob"
    assert signals[0].sender_name == "Alice"
    assert signals[0].session_description().type == "offer"
    assert alice.metrics.calls_started == 1
    assert alice.metrics.signals_sent == 1


async def test_initiate_then_end_call_releases_everything(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test ending a call in progress returns to idle with no resources held."""
    await alice.initiate_call("bob")
    await alice.end_call()

    assert alice.state is CallState.IDLE
    assert alice.local_stream is None
    assert alice.peer_connection is None
    assert alice.peer_id is None
    assert media.active_streams == []
    assert all(track.stopped for track in media.acquired[0].tracks)
    assert network.connections[0].closed


async def test_end_call_does_not_notify_peer_by_default(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test hanging up sends nothing unless notification is enabled."""
    await connect_outgoing(alice, bus)
    await alice.end_call()

    assert [s.type for s in sent_signals(bus)] == [SignalType.OFFER]


async def test_end_call_notifies_peer_when_enabled(
    notifying_alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test hang-up sends end-call to the peer when configured."""
    alice = notifying_alice

    await connect_outgoing(alice, bus)
    await alice.end_call()

    signals = sent_signals(bus)
    assert [s.type for s in signals] == [SignalType.OFFER, SignalType.END_CALL]
    assert signals[1].target_user_id == "bob"
    assert alice.state is CallState.IDLE


async def test_end_call_before_answer_does_not_notify_callee(
    notifying_alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a callee that never answered is not sent end-call.

    A busy callee drops the offer, and end-call would end its other call.
    """
    await notifying_alice.initiate_call("bob")
    await notifying_alice.end_call()

    assert [s.type for s in sent_signals(bus)] == [SignalType.OFFER]
    assert notifying_alice.state is CallState.IDLE


async def test_end_call_after_accepting_notifies_caller(
    notifying_alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a caller we answered is told about the hang-up."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())
    await notifying_alice.accept_call()

    await notifying_alice.end_call()

    signals = sent_signals(bus)
    assert [s.type for s in signals] == [SignalType.ANSWER, SignalType.END_CALL]
    assert signals[1].target_user_id == "bob"


async def test_send_signal_without_identity_raises(
    bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test signals cannot be sent by a negotiator with no user identity."""
    negotiator = CallNegotiator(None, None, bus, media, network.create)

    with pytest.raises(SignalSendError, match="user identity"):
        await negotiator._send_signal(SignalType.OFFER, "bob", {})

    assert bus.history == []


async def test_end_call_is_idempotent(
    alice: CallNegotiator, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test calling end_call repeatedly is safe."""
    await alice.end_call()
    await alice.initiate_call("bob")
    await alice.end_call()
    await alice.end_call()

    assert alice.state is CallState.IDLE
    assert media.release_count == 1
    assert len(network.connections) == 1


async def test_initiate_call_while_busy_is_ignored(
    alice: CallNegotiator, bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test a second call attempt does not replace the current one."""
    await alice.initiate_call("bob")
    await alice.initiate_call("carol")

    assert alice.peer_id == "bob"
    assert len(network.connections) == 1
    assert len(sent_signals(bus)) == 1


async def test_initiate_call_without_identity_is_noop(
    bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test that a negotiator without a user identity never starts a call."""
    negotiator = CallNegotiator(None, None, bus, media, network.create)

    await negotiator.initiate_call("bob")

    assert negotiator.state is CallState.IDLE
    assert media.acquired == []
    assert bus.history == []


async def test_media_denied_returns_to_idle(
    bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test microphone denial is logged and leaves no call behind."""
    media = FakeMediaCapture(deny=True)
    alice = CallNegotiator("alice", "Alice", bus, media, network.create)

    await alice.initiate_call("bob")

    assert alice.state is CallState.IDLE
    assert not alice.is_busy
    assert alice.peer_connection is None
    assert network.connections == []
    assert bus.history == []
    assert alice.metrics.setup_failures == 1


async def test_create_offer_failure_cleans_up(
    bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test a failing offer releases the microphone and closes the connection."""

    def failing_factory(ice_servers):
        pc = network.create(ice_servers)
        pc.fail_create_offer = True
        return pc

    alice = CallNegotiator("alice", "Alice", bus, media, failing_factory)

    await alice.initiate_call("bob")

    assert alice.state is CallState.IDLE
    assert media.active_streams == []
    assert network.connections[0].closed
    assert bus.history == []
    assert alice.metrics.setup_failures == 1


async def test_offer_send_failure_cleans_up(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture, network: FakeNetwork
) -> None:
    """Test a rejected offer send ends the call attempt."""
    await bus.close()

    await alice.initiate_call("bob")

    assert alice.state is CallState.IDLE
    assert not alice.is_busy
    assert media.active_streams == []
    assert network.connections[0].closed
    assert alice.metrics.signals_sent == 0


async def test_end_call_during_media_acquisition(
    bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test hanging up while the microphone is being opened aborts the setup."""
    gate = asyncio.Event()
    media = FakeMediaCapture(gate=gate)
    alice = CallNegotiator("alice", "Alice", bus, media, network.create)

    task = asyncio.create_task(alice.initiate_call("bob"))
    await asyncio.sleep(0)
    assert alice.is_busy

    await alice.end_call()
    gate.set()
    await task

    assert alice.state is CallState.IDLE
    assert not alice.is_busy
    assert alice.local_stream is None
    assert media.acquired[0].released
    assert network.connections == []
    assert bus.history == []


# ============================================================================
# Incoming signals
# ============================================================================


async def test_offer_while_idle_sets_incoming_call(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test an offer creates a pending incoming call and notifies listeners."""
    events = []
    alice.add_listener(events.append)

    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    assert alice.incoming_call is not None
    assert alice.incoming_call.caller_id == "bob"
    assert alice.incoming_call.caller_name == "Bob"
    assert alice.incoming_call.offer == REMOTE_OFFER
    assert alice.state is CallState.IDLE
    assert [e.kind for e in events] == [CallEventKind.INCOMING_CALL]


async def test_duplicate_offer_while_idle_last_write_wins(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a newer offer replaces the pending one."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())
    second = SessionDescription(type="offer", sdp="v=0 carol offer")
    await send_from(bus, "carol", SignalType.OFFER, second.model_dump())

    assert alice.incoming_call is not None
    assert alice.incoming_call.caller_id == "carol"
    assert alice.incoming_call.offer == second


async def test_offer_while_calling_is_dropped(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test an offer arriving during call setup is dropped."""
    await alice.initiate_call("bob")

    await send_from(bus, "carol", SignalType.OFFER, REMOTE_OFFER.model_dump())

    assert alice.state is CallState.CALLING
    assert alice.incoming_call is None
    assert alice.peer_id == "bob"
    assert alice.metrics.offers_dropped == 1


async def test_offer_while_connected_is_dropped(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test an offer arriving during an established call is dropped."""
    await connect_outgoing(alice, bus)
    assert alice.state is CallState.CONNECTED

    await send_from(bus, "carol", SignalType.OFFER, REMOTE_OFFER.model_dump())

    assert alice.state is CallState.CONNECTED
    assert alice.incoming_call is None
    assert alice.metrics.offers_dropped == 1


async def test_answer_completes_outgoing_call(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test applying the answer connects the call and records latency."""
    await connect_outgoing(alice, bus)

    assert alice.state is CallState.CONNECTED
    assert alice.peer_connection.remote_description == REMOTE_ANSWER
    assert alice.metrics.connect_latency_ms is not None


async def test_answer_while_stable_is_ignored(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a duplicate answer on a stable connection changes nothing."""
    await connect_outgoing(alice, bus)
    pc = alice.peer_connection

    await send_from(bus, "bob", SignalType.ANSWER, REMOTE_ANSWER.model_dump())

    assert alice.state is CallState.CONNECTED
    assert alice.peer_connection is pc
    assert alice.metrics.answers_ignored == 1


async def test_answer_without_call_is_ignored(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test an answer with no connection is a no-op."""
    await send_from(bus, "bob", SignalType.ANSWER, REMOTE_ANSWER.model_dump())

    assert alice.state is CallState.IDLE
    assert alice.metrics.answers_ignored == 1


async def test_ice_candidate_before_remote_description_is_dropped(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test early candidates are dropped without error and never retried."""
    await alice.initiate_call("bob")
    pc = alice.peer_connection

    candidate = IceCandidate(candidate="candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host")
    await send_from(bus, "bob", SignalType.ICE_CANDIDATE, candidate.model_dump(by_alias=True))

    assert alice.metrics.candidates_dropped == 1
    assert pc.candidates == []

    await send_from(bus, "bob", SignalType.ANSWER, REMOTE_ANSWER.model_dump())

    assert alice.state is CallState.CONNECTED
    assert pc.candidates == []


async def test_ice_candidate_after_remote_description_is_added(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test candidates are applied once the remote description is set."""
    await connect_outgoing(alice, bus)

    payload = {"candidate": "candidate:1 1 udp 1 10.0.0.2 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    await send_from(bus, "bob", SignalType.ICE_CANDIDATE, payload)

    added = alice.peer_connection.candidates
    assert len(added) == 1
    assert added[0].sdp_mid == "0"
    assert added[0].sdp_mline_index == 0


async def test_invalid_ice_candidate_does_not_end_call(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a candidate the connection rejects is logged and skipped."""
    await connect_outgoing(alice, bus)

    await send_from(bus, "bob", SignalType.ICE_CANDIDATE, {"candidate": "bad"})

    assert alice.state is CallState.CONNECTED
    assert alice.peer_connection.candidates == []


async def test_end_call_signal_ends_call(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture
) -> None:
    """Test the peer's end-call tears down the local call."""
    await connect_outgoing(alice, bus)

    await send_from(bus, "bob", SignalType.END_CALL, {})

    assert alice.state is CallState.IDLE
    assert alice.peer_connection is None
    assert media.active_streams == []


async def test_signal_for_other_user_is_ignored(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test signals addressed to someone else are not processed."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump(), target_user_id="carol")

    assert alice.incoming_call is None
    assert alice.metrics.signals_received == 0


async def test_own_signals_are_ignored(alice: CallNegotiator, bus: InMemorySignalBus) -> None:
    """Test records sent by the local user are never handled."""
    await send_from(bus, "alice", SignalType.OFFER, REMOTE_OFFER.model_dump())

    assert alice.incoming_call is None
    assert alice.metrics.signals_received == 0


async def test_chat_text_and_malformed_signals_are_ignored(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test plain text and broken signal bodies do not raise."""
    await bus.append("hello everyone", "bob", "Bob")
    await bus.append('{"type": "offer", "targetUserId": "alice"}', "bob", "Bob")
    await bus.append('{"type": "offer"', "bob", "Bob")

    assert alice.incoming_call is None
    assert alice.metrics.signals_received == 0


async def test_offer_with_invalid_payload_is_logged(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test an offer whose payload is not an SDP description is dropped."""
    await send_from(bus, "bob", SignalType.OFFER, {"sdp": 42})

    assert alice.incoming_call is None
    assert alice.state is CallState.IDLE


# ============================================================================
# Incoming calls
# ============================================================================


async def test_accept_call_sends_answer(
    alice: CallNegotiator, bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test accepting applies the offer and sends exactly one answer."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    await alice.accept_call()

    assert alice.incoming_call is None
    assert alice.state is CallState.CALLING
    assert alice.peer_id == "bob"
    pc = network.connections[0]
    assert pc.remote_description == REMOTE_OFFER
    assert pc.signaling_state == "stable"

    signals = sent_signals(bus)
    assert [s.type for s in signals] == [SignalType.ANSWER]
    assert signals[0].target_user_id == "bob"
    assert signals[0].session_description().type == "answer"
    assert alice.metrics.calls_accepted == 1


async def test_accept_without_incoming_call_is_noop(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture
) -> None:
    """Test accept with nothing pending does nothing."""
    await alice.accept_call()

    assert alice.state is CallState.IDLE
    assert media.acquired == []
    assert bus.history == []


async def test_accept_with_media_denied_returns_to_idle(
    bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test a failed accept leaves no call behind."""
    media = FakeMediaCapture(deny=True)
    alice = CallNegotiator("alice", "Alice", bus, media, network.create)
    bus.subscribe(alice.handle_signal_message)
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    await alice.accept_call()

    assert alice.state is CallState.IDLE
    assert not alice.is_busy
    assert sent_signals(bus) == []
    assert alice.metrics.setup_failures == 1


async def test_reject_call_sends_end_call(alice: CallNegotiator, bus: InMemorySignalBus) -> None:
    """Test rejecting clears the pending call and notifies the caller."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    await alice.reject_call()

    assert alice.incoming_call is None
    assert alice.state is CallState.IDLE
    signals = sent_signals(bus)
    assert [s.type for s in signals] == [SignalType.END_CALL]
    assert signals[0].target_user_id == "bob"
    assert alice.metrics.calls_rejected == 1


async def test_reject_without_pending_call_is_noop(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test reject with nothing pending sends no signal."""
    await alice.reject_call()

    assert alice.state is CallState.IDLE
    assert bus.history == []


async def test_reject_send_failure_still_clears_incoming(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a failed rejection send is logged and the offer still discarded."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())
    await bus.close()

    await alice.reject_call()

    assert alice.incoming_call is None


async def test_end_call_with_incoming_call_rejects(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test hanging up while ringing rejects the pending call."""
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    await alice.end_call()

    assert alice.incoming_call is None
    assert [s.type for s in sent_signals(bus)] == [SignalType.END_CALL]


async def test_end_call_rejects_pending_call_and_notifies_active_peer(
    notifying_alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test hanging up with a call ringing ends both the ringing and the live call."""
    await send_from(bus, "carol", SignalType.OFFER, REMOTE_OFFER.model_dump())
    await connect_outgoing(notifying_alice, bus)
    assert notifying_alice.incoming_call is not None

    await notifying_alice.end_call()

    end_calls = [s for s in sent_signals(bus) if s.type is SignalType.END_CALL]
    assert sorted(s.target_user_id for s in end_calls) == ["bob", "carol"]
    assert notifying_alice.incoming_call is None
    assert notifying_alice.state is CallState.IDLE


async def test_reject_does_not_cancel_call_back_to_caller(
    bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test rejecting a pending offer leaves our own call to that user running."""
    gate = asyncio.Event()
    media = FakeMediaCapture(gate=gate)
    alice = CallNegotiator("alice", "Alice", bus, media, network.create)
    bus.subscribe(alice.handle_signal_message)
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    task = asyncio.create_task(alice.initiate_call("bob"))
    await asyncio.sleep(0)
    assert alice.is_busy

    await alice.reject_call()
    gate.set()
    await task

    assert alice.state is CallState.CALLING
    assert alice.peer_id == "bob"
    assert alice.local_stream is media.acquired[0]
    signals = sent_signals(bus)
    assert [s.type for s in signals] == [SignalType.END_CALL, SignalType.OFFER]
    assert all(s.target_user_id == "bob" for s in signals)


async def test_reject_during_accept_abandons_setup(
    bus: InMemorySignalBus, network: FakeNetwork
) -> None:
    """Test rejecting while the accept is still opening the microphone cleans up."""
    gate = asyncio.Event()
    media = FakeMediaCapture(gate=gate)
    alice = CallNegotiator("alice", "Alice", bus, media, network.create)
    bus.subscribe(alice.handle_signal_message)
    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    task = asyncio.create_task(alice.accept_call())
    await asyncio.sleep(0)

    await alice.reject_call()
    gate.set()
    await task

    assert alice.state is CallState.IDLE
    assert not alice.is_busy
    assert media.acquired[0].released
    assert [s.type for s in sent_signals(bus)] == [SignalType.END_CALL]


# ============================================================================
# Peer connection events
# ============================================================================


async def test_remote_track_sets_remote_stream(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a received track becomes the remote stream."""
    events = []
    alice.add_listener(events.append)
    await connect_outgoing(alice, bus)
    track = FakeTrack()

    await alice.peer_connection.receive_track(track)

    assert alice.remote_stream is track
    assert events[-1].kind is CallEventKind.REMOTE_STREAM

    await alice.end_call()
    assert alice.remote_stream is None


async def test_gathered_candidate_is_sent_to_peer(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test local candidates are trickled to the peer in browser form."""
    await alice.initiate_call("bob")
    pc = alice.peer_connection
    candidate = IceCandidate(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdp_mid="0", sdp_mline_index=0)

    await alice.handle_peer_event(IceCandidateGathered(source=pc, candidate=candidate))

    signal = sent_signals(bus)[-1]
    assert signal.type is SignalType.ICE_CANDIDATE
    assert signal.target_user_id == "bob"
    assert signal.payload == {
        "candidate": candidate.candidate,
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def test_connection_failure_ends_call(
    alice: CallNegotiator, bus: InMemorySignalBus, media: FakeMediaCapture
) -> None:
    """Test a failed connection tears the call down."""
    await connect_outgoing(alice, bus)

    await alice.peer_connection.set_connection_state("failed")

    assert alice.state is CallState.IDLE
    assert alice.peer_connection is None
    assert media.active_streams == []


async def test_events_from_stale_connection_are_ignored(
    alice: CallNegotiator, network: FakeNetwork
) -> None:
    """Test events from a connection that is no longer current are dropped."""
    await alice.initiate_call("bob")
    old_pc = alice.peer_connection
    await alice.end_call()
    await alice.initiate_call("bob")

    await alice.handle_peer_event(ConnectionStateChanged(source=old_pc, state="failed"))

    assert alice.state is CallState.CALLING
    assert alice.peer_connection is network.connections[1]


async def test_listener_errors_do_not_break_negotiation(
    alice: CallNegotiator, bus: InMemorySignalBus
) -> None:
    """Test a raising listener is logged and the call proceeds."""
    alice.add_listener(Mock(side_effect=RuntimeError("boom")))

    await connect_outgoing(alice, bus)

    assert alice.state is CallState.CONNECTED


async def test_remove_listener(alice: CallNegotiator, bus: InMemorySignalBus) -> None:
    """Test a removed listener receives no further events."""
    listener = Mock()
    remove = alice.add_listener(listener)
    remove()
    remove()

    await send_from(bus, "bob", SignalType.OFFER, REMOTE_OFFER.model_dump())

    listener.assert_not_called()


# ============================================================================
# Metrics
# ============================================================================


def test_call_metrics_initial_state() -> None:
    """Test initial state of call metrics."""
    metrics = CallMetrics()

    assert metrics.calls_started == 0
    assert metrics.signals_sent == 0
    assert metrics.setup_start_ts is None
    assert metrics.connect_latency_ms is None
    assert metrics.last_call_duration_s is None


def test_call_metrics_connect_latency() -> None:
    """Test connect latency is measured from setup start."""
    metrics = CallMetrics()

    metrics.record_setup_started()
    metrics.record_connected()

    assert metrics.connect_latency_ms is not None
    assert metrics.connect_latency_ms >= 0

    metrics.record_call_ended()
    assert metrics.last_call_duration_s is not None
    assert metrics.setup_start_ts is None


async def test_metrics_summary(alice: CallNegotiator, bus: InMemorySignalBus) -> None:
    """Test the metrics summary reflects call activity."""
    await connect_outgoing(alice, bus)
    await alice.end_call()

    summary = alice.get_metrics_summary()
    assert summary["user_id"] == "alice"
    assert summary["state"] == "idle"
    assert summary["calls_started"] == 1
    assert summary["signals_sent"] == 1
    assert summary["signals_received"] == 1
    assert summary["last_call_duration_s"] is not None

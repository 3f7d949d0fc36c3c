"""Peer-to-peer call negotiation over the room signal bus.

Drives one outbound or inbound audio call per session. Offers, answers,
ICE candidates and hang-ups are relayed as signal messages on the room's
chat record stream; the media itself flows directly between the peers.

All state changes happen through three entry points: the user operations
(initiate/accept/reject/end), ``handle_signal_message`` for bus records and
``handle_peer_event`` for peer connection events.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from peercall.bus.base import BusRecord, SignalBus, SignalSendError
from peercall.config import CallConfig
from peercall.media.base import LocalAudio, MediaCapture
from peercall.signaling.protocol import (
    SessionDescription,
    SignalMessage,
    SignalType,
    parse_signal_body,
)
from peercall.transport.base import (
    ConnectionStateChanged,
    IceCandidateGathered,
    PeerConnection,
    PeerConnectionFactory,
    PeerEvent,
    TrackReceived,
)
from peercall.utils.logging import log_event

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Call state machine states.

    State Transitions:
    - IDLE → CALLING (offer sent, or answer sent for an accepted call)
    - CALLING → CONNECTED (peer connection reports connected)
    - IDLE/CALLING/CONNECTED → ENDED (hang-up, end-call, failure)
    - ENDED → IDLE (immediately, once resources are released)
    """

    IDLE = "idle"
    CALLING = "calling"
    CONNECTED = "connected"
    ENDED = "ended"


# Valid state transitions
VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.IDLE: {CallState.CALLING, CallState.ENDED},
    CallState.CALLING: {CallState.CONNECTED, CallState.ENDED},
    CallState.CONNECTED: {CallState.ENDED},
    CallState.ENDED: {CallState.IDLE},
}

TERMINAL_CONNECTION_STATES = frozenset({"disconnected", "failed"})


@dataclass(frozen=True)
class IncomingCall:
    """Offer waiting for the user to accept or reject."""

    caller_id: str
    caller_name: str
    offer: SessionDescription


class CallEventKind(Enum):
    STATE = "state"
    INCOMING_CALL = "incoming_call"
    REMOTE_STREAM = "remote_stream"


@dataclass(frozen=True)
class CallEvent:
    """Notification delivered to negotiator listeners."""

    kind: CallEventKind
    negotiator: "CallNegotiator"


CallListener = Callable[[CallEvent], None]


@dataclass
class CallMetrics:
    """Call activity counters and timings."""

    calls_started: int = 0
    calls_accepted: int = 0
    calls_rejected: int = 0
    setup_failures: int = 0

    signals_sent: int = 0
    signals_received: int = 0
    offers_dropped: int = 0  # Offer arrived while busy
    answers_ignored: int = 0  # Answer arrived with nothing to answer
    candidates_dropped: int = 0  # Candidate arrived before the remote description

    setup_start_ts: float | None = None
    connected_ts: float | None = None
    connect_latency_ms: float | None = None  # Setup start → connected
    last_call_duration_s: float | None = None

    def record_setup_started(self) -> None:
        self.setup_start_ts = time.monotonic()
        self.connected_ts = None
        self.connect_latency_ms = None

    def record_connected(self) -> None:
        now = time.monotonic()
        self.connected_ts = now
        if self.setup_start_ts is not None:
            self.connect_latency_ms = (now - self.setup_start_ts) * 1000.0

    def record_call_ended(self) -> None:
        """Close the timing window of the current call."""
        if self.connected_ts is not None:
            self.last_call_duration_s = time.monotonic() - self.connected_ts
        else:
            self.last_call_duration_s = None
        self.setup_start_ts = None
        self.connected_ts = None


class CallNegotiator:
    """Per-session call state machine.

    Owns the local audio stream and the peer connection of the current call;
    nothing else may touch them. Every failure path ends in a full cleanup
    back to IDLE.
    """

    def __init__(
        self,
        user_id: str | None,
        user_name: str | None,
        bus: SignalBus,
        media: MediaCapture,
        peer_factory: PeerConnectionFactory,
        config: CallConfig | None = None,
    ) -> None:
        """Initialize call negotiator.

        Args:
            user_id: Identity of the local user (signals are addressed to it)
            user_name: Display name sent along with outgoing signals
            bus: Room record stream used as the signaling channel
            media: Local audio capture backend
            peer_factory: Creates a peer connection from the ICE server list
            config: Call configuration (defaults if omitted)
        """
        self._user_id = user_id
        self._user_name = user_name
        self._bus = bus
        self._media = media
        self._peer_factory = peer_factory
        self._config = config or CallConfig()

        self._state = CallState.IDLE
        self._incoming_call: IncomingCall | None = None
        self._local_stream: LocalAudio | None = None
        self._remote_stream: Any = None
        self._peer_connection: PeerConnection | None = None
        self._peer_id: str | None = None

        # Bumped by every cleanup; a setup step resuming under a newer
        # generation has been cancelled
        self._generation = 0
        self._setup_in_progress = False
        self._accepting = False
        # Set once the peer has answered us or we have answered the peer
        self._peer_engaged = False

        self._listeners: list[CallListener] = []
        self.metrics = CallMetrics()

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def incoming_call(self) -> IncomingCall | None:
        return self._incoming_call

    @property
    def remote_stream(self) -> Any:
        """Remote audio track to render, once the peer's media arrives."""
        return self._remote_stream

    @property
    def local_stream(self) -> LocalAudio | None:
        return self._local_stream

    @property
    def peer_connection(self) -> PeerConnection | None:
        return self._peer_connection

    @property
    def peer_id(self) -> str | None:
        """User on the other end of the call being set up or in progress."""
        return self._peer_id

    @property
    def is_busy(self) -> bool:
        """True while a call is being set up or is in progress."""
        return (
            self._state is not CallState.IDLE
            or self._setup_in_progress
            or self._peer_connection is not None
        )

    def add_listener(self, listener: CallListener) -> Callable[[], None]:
        """Register a callback for state, incoming call and remote stream changes.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, kind: CallEventKind) -> None:
        event = CallEvent(kind=kind, negotiator=self)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Call listener failed", extra={"kind": kind.value, "error": str(e)})

    def _has_identity(self) -> bool:
        return bool(self._user_id) and bool(self._user_name)

    def transition_state(self, new_state: CallState) -> None:
        """Transition call to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self._state, set()):
            raise ValueError(f"Invalid state transition: {self._state.value} → {new_state.value}")

        old_state = self._state
        self._state = new_state

        logger.info(
            "Call state transition",
            extra={
                "user_id": self._user_id,
                "peer_id": self._peer_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        self._notify(CallEventKind.STATE)

    async def _send_signal(
        self, signal_type: SignalType, target_user_id: str, payload: dict[str, Any]
    ) -> None:
        """Append a signal addressed to ``target_user_id``.

        Raises:
            SignalSendError: If the bus rejects the record
        """
        if self._user_id is None or self._user_name is None:
            raise SignalSendError("Cannot send signals without a user identity")

        message = SignalMessage(
            type=signal_type,
            target_user_id=target_user_id,
            sender_id=self._user_id,
            sender_name=self._user_name,
            payload=payload,
        )
        await self._bus.append(message.to_body(), self._user_id, self._user_name)
        self.metrics.signals_sent += 1

        logger.debug(
            "Signal sent",
            extra={"type": signal_type.value, "target_user_id": target_user_id},
        )

    async def _open_peer_connection(self, generation: int) -> PeerConnection | None:
        """Acquire the microphone and create the call's peer connection.

        Returns:
            The new connection, or None if the call was ended meanwhile
        """
        stream = await self._media.acquire_local_audio()
        if generation != self._generation:
            # Ended while waiting for the microphone
            self._media.release_stream(stream)
            return None

        self._local_stream = stream

        pc = self._peer_factory(self._config.ice_servers)
        pc.set_event_handler(self.handle_peer_event)
        self._peer_connection = pc

        for track in stream.tracks:
            pc.add_track(track)

        return pc

    def _begin_setup(self, peer_id: str) -> int:
        self._setup_in_progress = True
        self._peer_id = peer_id
        self.metrics.record_setup_started()
        return self._generation

    def _finish_setup(self, generation: int) -> None:
        if generation == self._generation:
            self._setup_in_progress = False

    async def initiate_call(self, target_user_id: str) -> None:
        """Call ``target_user_id``.

        Acquires the microphone, creates the peer connection and sends one
        offer. Failures are logged and end in a cleanup back to IDLE.
        """
        if not self._has_identity():
            logger.warning("Cannot place a call without a user identity")
            return

        if self.is_busy:
            logger.warning(
                "Call already in progress",
                extra={"target_user_id": target_user_id, "state": self._state.value},
            )
            return

        generation = self._begin_setup(target_user_id)
        self.metrics.calls_started += 1

        try:
            pc = await self._open_peer_connection(generation)
            if pc is None:
                return

            offer = await pc.create_offer()
            await pc.set_local_description(offer)
            if generation != self._generation:
                return

            self.transition_state(CallState.CALLING)
            description = pc.local_description or offer
            await self._send_signal(SignalType.OFFER, target_user_id, description.model_dump())

        except Exception:
            logger.exception("Error starting call", extra={"target_user_id": target_user_id})
            self.metrics.setup_failures += 1
            if generation == self._generation:
                await self._cleanup("setup_failed")
        finally:
            self._finish_setup(generation)

    async def accept_call(self) -> None:
        """Answer the pending incoming call.

        Sends one answer and clears ``incoming_call``. Failures are logged
        and end in a cleanup back to IDLE.
        """
        incoming = self._incoming_call
        if incoming is None:
            logger.debug("No incoming call to accept")
            return

        if not self._has_identity():
            logger.warning("Cannot accept a call without a user identity")
            return

        if self.is_busy:
            logger.warning("Call setup already in progress", extra={"caller_id": incoming.caller_id})
            return

        generation = self._begin_setup(incoming.caller_id)
        self._accepting = True
        self.metrics.calls_accepted += 1

        try:
            pc = await self._open_peer_connection(generation)
            if pc is None:
                return

            await pc.set_remote_description(incoming.offer)
            answer = await pc.create_answer()
            await pc.set_local_description(answer)
            if generation != self._generation:
                return

            self._incoming_call = None
            self._notify(CallEventKind.INCOMING_CALL)

            # The connection may already have come up while answering
            if self._state is CallState.IDLE:
                self.transition_state(CallState.CALLING)

            description = pc.local_description or answer
            await self._send_signal(SignalType.ANSWER, incoming.caller_id, description.model_dump())
            if generation == self._generation:
                self._peer_engaged = True

        except Exception:
            logger.exception("Error accepting call", extra={"caller_id": incoming.caller_id})
            self.metrics.setup_failures += 1
            if generation == self._generation:
                await self._cleanup("setup_failed")
        finally:
            if generation == self._generation:
                self._accepting = False
            self._finish_setup(generation)

    async def reject_call(self) -> None:
        """Decline the pending incoming call. No-op if there is none."""
        incoming = self._incoming_call
        if incoming is None:
            return

        self._incoming_call = None
        self.metrics.calls_rejected += 1
        self._notify(CallEventKind.INCOMING_CALL)

        try:
            await self._send_signal(SignalType.END_CALL, incoming.caller_id, {})
        except SignalSendError as e:
            logger.error(
                "Failed to send call rejection",
                extra={"caller_id": incoming.caller_id, "error": str(e)},
            )

        # Rejected while an accept was still in flight
        if self._accepting:
            await self._cleanup("rejected")

    async def end_call(self) -> None:
        """Hang up. Safe to call in any state, any number of times.

        A pending incoming call is rejected first. An established call is
        only ended locally unless ``notify_peer_on_hangup`` is set, and then
        only a peer that answered us, or that we answered, is notified.
        """
        rejected_id = None
        if self._incoming_call is not None:
            rejected_id = self._incoming_call.caller_id
            await self.reject_call()

        if (
            self._config.notify_peer_on_hangup
            and self._peer_engaged
            and self._peer_id is not None
            and self._peer_id != rejected_id
        ):
            try:
                await self._send_signal(SignalType.END_CALL, self._peer_id, {})
            except SignalSendError as e:
                logger.error(
                    "Failed to notify peer of hang-up",
                    extra={"peer_id": self._peer_id, "error": str(e)},
                )

        await self._cleanup("hangup")

    async def handle_signal_message(self, record: BusRecord) -> None:
        """Process a record from the signal bus.

        Records sent by this user, ordinary chat text, malformed signals and
        signals addressed to someone else are ignored.
        """
        if not self._user_id or record.sender_id == self._user_id:
            return

        signal = parse_signal_body(record.body)
        if signal is None or signal.target_user_id != self._user_id:
            return

        self.metrics.signals_received += 1
        logger.debug(
            "Signal received",
            extra={"type": signal.type.value, "sender_id": signal.sender_id},
        )

        try:
            if signal.type is SignalType.OFFER:
                if self.is_busy:
                    self.metrics.offers_dropped += 1
                    logger.info(
                        "Dropping offer while busy",
                        extra={"caller_id": signal.sender_id, "state": self._state.value},
                    )
                    return

                self._incoming_call = IncomingCall(
                    caller_id=signal.sender_id,
                    caller_name=signal.sender_name,
                    offer=signal.session_description(),
                )
                logger.info("Incoming call", extra={"caller_id": signal.sender_id})
                self._notify(CallEventKind.INCOMING_CALL)

            elif signal.type is SignalType.ANSWER:
                pc = self._peer_connection
                if pc is None or pc.signaling_state == "stable":
                    self.metrics.answers_ignored += 1
                    logger.debug("Ignoring answer", extra={"sender_id": signal.sender_id})
                    return

                await pc.set_remote_description(signal.session_description())
                if pc is self._peer_connection:
                    self._peer_engaged = True

            elif signal.type is SignalType.ICE_CANDIDATE:
                pc = self._peer_connection
                if pc is None or pc.remote_description is None:
                    self.metrics.candidates_dropped += 1
                    logger.debug(
                        "Dropping ICE candidate without remote description",
                        extra={"sender_id": signal.sender_id},
                    )
                    return

                try:
                    await pc.add_ice_candidate(signal.ice_candidate())
                except Exception as e:
                    logger.warning(
                        "Error adding ICE candidate",
                        extra={"sender_id": signal.sender_id, "error": str(e)},
                    )

            elif signal.type is SignalType.END_CALL:
                await self._cleanup("remote_end_call")

        except Exception as e:
            logger.error(
                "Signal handling error",
                extra={"type": signal.type.value, "sender_id": signal.sender_id, "error": str(e)},
            )

    async def handle_peer_event(self, event: PeerEvent) -> None:
        """Process an event raised by the current peer connection."""
        if event.source is not self._peer_connection:
            logger.debug("Ignoring event from stale peer connection")
            return

        if isinstance(event, TrackReceived):
            self._remote_stream = event.track
            self._notify(CallEventKind.REMOTE_STREAM)

        elif isinstance(event, IceCandidateGathered):
            if self._peer_id is None:
                return
            try:
                await self._send_signal(
                    SignalType.ICE_CANDIDATE,
                    self._peer_id,
                    event.candidate.model_dump(by_alias=True),
                )
            except SignalSendError as e:
                logger.warning("Failed to send ICE candidate", extra={"error": str(e)})

        elif isinstance(event, ConnectionStateChanged):
            if event.state == "connected":
                if self._state is CallState.IDLE:
                    self.transition_state(CallState.CALLING)
                if self._state is CallState.CALLING:
                    self.metrics.record_connected()
                    self.transition_state(CallState.CONNECTED)
            elif event.state in TERMINAL_CONNECTION_STATES:
                await self._cleanup(f"connection_{event.state}")

    async def _cleanup(self, reason: str) -> None:
        """Release everything the call holds and return to IDLE.

        Resources are detached before anything is awaited, so a cleanup
        running concurrently or afterwards finds nothing left to release.
        """
        self._generation += 1
        self._setup_in_progress = False
        self._accepting = False
        self._peer_engaged = False

        stream, self._local_stream = self._local_stream, None
        pc, self._peer_connection = self._peer_connection, None
        had_remote = self._remote_stream is not None
        had_incoming = self._incoming_call is not None
        self._remote_stream = None
        self._incoming_call = None
        peer_id, self._peer_id = self._peer_id, None

        active = self._state is not CallState.IDLE or stream is not None or pc is not None

        if active and self._state is not CallState.ENDED:
            self.transition_state(CallState.ENDED)

        if stream is not None:
            try:
                self._media.release_stream(stream)
            except Exception as e:
                logger.warning("Error releasing local audio", extra={"error": str(e)})

        if active:
            self.metrics.record_call_ended()
            self.transition_state(CallState.IDLE)
            log_event("call_ended", {"reason": reason, "peer_id": peer_id, **self.get_metrics_summary()})

        if had_remote:
            self._notify(CallEventKind.REMOTE_STREAM)
        if had_incoming:
            self._notify(CallEventKind.INCOMING_CALL)

        if pc is not None:
            pc.set_event_handler(None)
            try:
                await pc.close()
            except Exception as e:
                logger.warning("Error closing peer connection", extra={"error": str(e)})

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get call metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "user_id": self._user_id,
            "state": self._state.value,
            "calls_started": self.metrics.calls_started,
            "calls_accepted": self.metrics.calls_accepted,
            "calls_rejected": self.metrics.calls_rejected,
            "setup_failures": self.metrics.setup_failures,
            "signals_sent": self.metrics.signals_sent,
            "signals_received": self.metrics.signals_received,
            "offers_dropped": self.metrics.offers_dropped,
            "answers_ignored": self.metrics.answers_ignored,
            "candidates_dropped": self.metrics.candidates_dropped,
            "connect_latency_ms": self.metrics.connect_latency_ms,
            "last_call_duration_s": self.metrics.last_call_duration_s,
        }

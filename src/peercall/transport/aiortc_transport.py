"""aiortc peer connection implementation.

Wraps ``aiortc.RTCPeerConnection`` behind the PeerConnection interface.
aiortc gathers all candidates before ``setLocalDescription`` returns and
embeds them in the SDP, so this implementation never raises
IceCandidateGathered events. Candidates trickled by browser peers are
still accepted.
"""

import asyncio
import logging
import uuid
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from peercall.config import IceServerConfig
from peercall.signaling.protocol import IceCandidate, SessionDescription
from peercall.transport.base import (
    ConnectionStateChanged,
    PeerConnection,
    TrackReceived,
)

logger = logging.getLogger(__name__)


def _to_rtc_description(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def _from_rtc_description(description: RTCSessionDescription | None) -> SessionDescription | None:
    if description is None:
        return None
    return SessionDescription(type=description.type, sdp=description.sdp)


class AiortcPeerConnection(PeerConnection):
    """Peer connection backed by aiortc."""

    def __init__(self, ice_servers: list[IceServerConfig]) -> None:
        """Initialize peer connection.

        Args:
            ice_servers: STUN/TURN servers used for candidate gathering
        """
        super().__init__()
        self._connection_id = f"pc-{uuid.uuid4().hex[:12]}"
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=server.urls,
                    username=server.username,
                    credential=server.credential,
                )
                for server in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._pc.on("track", self._on_track)
        self._pc.on("connectionstatechange", self._on_connection_state_change)

        # Keeps event tasks alive until they finish
        self._pending_events: set[asyncio.Task[None]] = set()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    def _on_track(self, track: Any) -> None:
        logger.info(
            "Remote track received",
            extra={"connection_id": self._connection_id, "kind": track.kind},
        )
        if track.kind != "audio":
            return

        task = asyncio.ensure_future(self._emit(TrackReceived(source=self, track=track)))
        self._pending_events.add(task)
        task.add_done_callback(self._pending_events.discard)

    async def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        logger.info(
            "Peer connection state changed",
            extra={"connection_id": self._connection_id, "state": state},
        )
        await self._emit(ConnectionStateChanged(source=self, state=state))

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(_to_rtc_description(description))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(_to_rtc_description(description))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate.strip()
        if not sdp:
            # End-of-candidates marker
            logger.debug(
                "End of remote candidates",
                extra={"connection_id": self._connection_id},
            )
            return

        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]

        try:
            rtc_candidate = candidate_from_sdp(sdp)
        except (AssertionError, ValueError, IndexError) as e:
            raise ValueError(f"Invalid ICE candidate '{candidate.candidate}': {e}") from e

        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    async def close(self) -> None:
        await self._pc.close()
        for task in list(self._pending_events):
            task.cancel()
        logger.info("Peer connection closed", extra={"connection_id": self._connection_id})

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> SessionDescription | None:
        return _from_rtc_description(self._pc.localDescription)

    @property
    def remote_description(self) -> SessionDescription | None:
        return _from_rtc_description(self._pc.remoteDescription)


def create_aiortc_peer_connection(ice_servers: list[IceServerConfig]) -> PeerConnection:
    """PeerConnectionFactory for aiortc."""
    return AiortcPeerConnection(ice_servers)

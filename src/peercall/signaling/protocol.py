"""Call signaling message protocol definitions.

Defines Pydantic models for the call-control messages exchanged over the
room's chat record stream. A signal travels as the JSON-encoded body of an
ordinary chat record, so every body has to be probed before it can be
treated as one.
"""

import json
import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class SignalType(str, Enum):
    """Call-control message types."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    END_CALL = "end-call"


SIGNAL_TYPES: frozenset[str] = frozenset(t.value for t in SignalType)


class SessionDescription(BaseModel):
    """SDP offer or answer."""

    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str


class IceCandidate(BaseModel):
    """Trickled ICE candidate in browser (RTCIceCandidateInit) form."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class SignalMessage(BaseModel):
    """Call-control message addressed to a single user.

    Serialized with camelCase keys so browser peers can read it unchanged.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: SignalType
    target_user_id: str = Field(..., min_length=1, alias="targetUserId")
    sender_id: str = Field(..., min_length=1, alias="senderId")
    sender_name: str = Field(default="", alias="senderName")
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_body(self) -> str:
        """Encode as a chat record body."""
        return self.model_dump_json(by_alias=True)

    def session_description(self) -> SessionDescription:
        """Payload of an offer/answer.

        Raises:
            ValidationError: If the payload is not a session description
        """
        return SessionDescription.model_validate(self.payload)

    def ice_candidate(self) -> IceCandidate:
        """Payload of an ice-candidate.

        Raises:
            ValidationError: If the payload is not a candidate descriptor
        """
        return IceCandidate.model_validate(self.payload)


def _load_object(body: str | None) -> dict[str, Any] | None:
    if not body or not body.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _has_signal_type(data: dict[str, Any] | None) -> bool:
    if data is None:
        return False
    signal_type = data.get("type")
    return isinstance(signal_type, str) and signal_type in SIGNAL_TYPES


def is_signal_body(body: str | None) -> bool:
    """Check whether a record body carries a call-control message.

    Only the ``type`` marker is inspected, so malformed signals are still
    recognized (and kept out of the visible chat).
    """
    data = _load_object(body)
    return _has_signal_type(data)


def parse_signal_body(body: str | None) -> SignalMessage | None:
    """Decode a record body into a signal message.

    Returns:
        The signal, or None for ordinary chat text and malformed signals
    """
    data = _load_object(body)
    if data is None or not _has_signal_type(data):
        return None

    try:
        return SignalMessage.model_validate(data)
    except ValidationError as e:
        logger.debug("Malformed signal body dropped", extra={"error": str(e)})
        return None

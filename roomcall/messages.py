"""
Signaling message model and JSON codec.

Every frame exchanged with the relay is a JSON object carrying a ``type`` tag
plus the room/participant context and a type specific payload:

    {"type": "offer", "roomId": "room-1", "participantId": "User-a1", "sdp": "v=0..."}

Parsing is strict about the fields each type needs; anything missing raises
:class:`~roomcall.errors.MalformedMessage` so the caller can drop the frame.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import MalformedMessage


class MessageType(str, enum.Enum):
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    ROOM_JOINED = "room-joined"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    ERROR = "error"


MEMBERSHIP_TYPES = frozenset(
    {MessageType.ROOM_JOINED, MessageType.USER_JOINED, MessageType.USER_LEFT}
)
DESCRIPTION_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER})

# Older relays only reported the count inside the human readable text.
_PARTICIPANTS_TEXT = re.compile(r"Participants:\s*(\d+)")


@dataclass(frozen=True)
class IceCandidatePayload:
    """Connectivity candidate as carried on the wire"""

    candidate: str
    sdp_mid: str
    sdp_mline_index: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IceCandidatePayload":
        candidate = payload.get("candidate")
        sdp_mid = payload.get("sdpMid")
        sdp_mline_index = payload.get("sdpMLineIndex")

        if not isinstance(candidate, str) or not candidate:
            raise MalformedMessage("ice-candidate without candidate string")
        if not isinstance(sdp_mid, str) or not sdp_mid:
            raise MalformedMessage("ice-candidate without sdpMid")
        if isinstance(sdp_mline_index, bool) or not isinstance(sdp_mline_index, int):
            raise MalformedMessage("ice-candidate without sdpMLineIndex")

        return cls(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=sdp_mline_index)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


@dataclass(frozen=True)
class SignalingMessage:
    type: MessageType
    room_id: Optional[str] = None
    participant_id: Optional[str] = None
    participants: Optional[int] = None
    sdp: Optional[str] = None
    candidate: Optional[IceCandidatePayload] = None
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "SignalingMessage":
        """Validate a decoded frame and build the matching message"""
        if not isinstance(data, Mapping):
            raise MalformedMessage("signaling frame is not an object")

        try:
            message_type = MessageType(data.get("type"))
        except ValueError:
            raise MalformedMessage(f"unknown message type: {data.get('type')!r}") from None

        room_id = _optional_str(data, "roomId")
        participant_id = _optional_str(data, "participantId")
        text = _optional_str(data, "message")

        participants = None
        if message_type in MEMBERSHIP_TYPES:
            participants = _participant_count(data, text)

        sdp = None
        if message_type in DESCRIPTION_TYPES:
            sdp = data.get("sdp")
            if not isinstance(sdp, str) or not sdp:
                raise MalformedMessage(f"{message_type.value} without sdp")

        candidate = None
        if message_type is MessageType.ICE_CANDIDATE:
            raw = data.get("candidate")
            # Accept both the nested form and the flat form browsers produce
            # when spreading an RTCIceCandidate into the message.
            candidate = IceCandidatePayload.from_payload(raw if isinstance(raw, Mapping) else data)

        if message_type in (MessageType.JOIN_ROOM, MessageType.LEAVE_ROOM) and not room_id:
            raise MalformedMessage(f"{message_type.value} without roomId")

        return cls(
            type=message_type,
            room_id=room_id,
            participant_id=participant_id,
            participants=participants,
            sdp=sdp,
            candidate=candidate,
            message=text,
        )

    @classmethod
    def from_json(cls, raw) -> "SignalingMessage":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedMessage(f"invalid JSON: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.room_id is not None:
            data["roomId"] = self.room_id
        if self.participant_id is not None:
            data["participantId"] = self.participant_id
        if self.participants is not None:
            data["participants"] = self.participants
        if self.sdp is not None:
            data["sdp"] = self.sdp
        if self.candidate is not None:
            data["candidate"] = self.candidate.to_payload()
        if self.message is not None:
            data["message"] = self.message
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedMessage(f"{key} must be a string")
    return value


def _participant_count(data: Mapping[str, Any], text: Optional[str]) -> int:
    count = data.get("participants")
    if count is None and text:
        match = _PARTICIPANTS_TEXT.search(text)
        if match:
            count = int(match.group(1))
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise MalformedMessage(f"{data.get('type')} without a valid participant count")
    return count


__all__ = [
    "DESCRIPTION_TYPES",
    "IceCandidatePayload",
    "MEMBERSHIP_TYPES",
    "MessageType",
    "SignalingMessage",
]

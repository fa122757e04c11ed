"""
Events consumed by the session controller queue.

Transport callbacks, peer connection callbacks, user commands and timers are
all turned into one of these and processed one at a time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .messages import SignalingMessage


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelLost:
    reason: str = ""


@dataclass(frozen=True)
class MessageReceived:
    message: SignalingMessage


@dataclass(frozen=True)
class JoinRequested:
    room_id: str


@dataclass(frozen=True)
class LeaveRequested:
    pass


@dataclass(frozen=True)
class InitiatorStartDue:
    """Settling delay after initiator election has elapsed"""

    generation: int


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str
    peer_serial: int


@dataclass(frozen=True)
class LocalCandidateGathered:
    candidate: Any
    peer_serial: int


@dataclass(frozen=True)
class RemoteTrackReceived:
    track: Any
    peer_serial: int


SESSION_EVENTS = (
    ChannelOpened,
    ChannelLost,
    MessageReceived,
    JoinRequested,
    LeaveRequested,
    InitiatorStartDue,
    ConnectionStateChanged,
    LocalCandidateGathered,
    RemoteTrackReceived,
)

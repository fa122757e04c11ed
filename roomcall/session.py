"""
Per-call session state shared by the membership tracker, the negotiation
engine and the lifecycle controller.

A :class:`Session` is owned by exactly one controller. Nothing here is module
global so several sessions (rooms, tabs) can coexist in one process.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional


class Role(enum.Enum):
    UNDETERMINED = "undetermined"
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationState(enum.Enum):
    IDLE = "idle"
    AWAITING_LOCAL_DESCRIPTION = "awaiting-local-description"
    OFFER_SENT = "offer-sent"
    ANSWERING_REMOTE_OFFER = "answering-remote-offer"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    FAILED = "failed"


class LifecycleState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ROOM_JOINING = "room-joining"
    IN_CALL = "in-call"


def generate_participant_id() -> str:
    return f"User-{uuid.uuid4().hex[:6]}"


def generate_room_id() -> str:
    return f"room-{uuid.uuid4().hex[:9]}"


@dataclass
class Session:
    """
    State of the one call a controller can hold at a time.

    ``generation`` is bumped on every teardown so scheduled work created for a
    previous call can recognise itself as stale. ``peer_serial`` identifies the
    current peer connection in the same way for engine callbacks.
    """

    participant_id: str = field(default_factory=generate_participant_id)
    room_id: Optional[str] = None
    role: Role = Role.UNDETERMINED
    participant_count: int = 0
    negotiation_state: NegotiationState = NegotiationState.IDLE
    peer: Any = None
    peer_serial: int = 0
    local_media: Any = None
    remote_description_set: bool = False
    pending_candidates: List[Any] = field(default_factory=list)
    generation: int = 0

    def reset(self) -> None:
        """Return to the between-calls state; the room id is kept for rejoining"""
        self.role = Role.UNDETERMINED
        self.participant_count = 0
        self.negotiation_state = NegotiationState.IDLE
        self.peer = None
        self.local_media = None
        self.remote_description_set = False
        self.pending_candidates.clear()
        self.generation += 1

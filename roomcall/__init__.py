"""
Two-party WebRTC calls over a room based signaling relay.
"""

from .controller import SessionController
from .messages import MessageType, SignalingMessage
from .session import LifecycleState, NegotiationState, Role, Session

__all__ = [
    "LifecycleState",
    "MessageType",
    "NegotiationState",
    "Role",
    "Session",
    "SessionController",
    "SignalingMessage",
]

"""
Room membership tracking and role election
"""

from __future__ import annotations

import logging

from .session import Role, Session

logger = logging.getLogger(__name__)


class RoomMembershipTracker:
    """
    Interprets room-joined / user-joined / user-left events for one session.

    The participant count is always the value reported by the relay; it is
    never adjusted locally. Role election happens at most once per call:
    the first client in a room becomes the initiator when the second one
    arrives, a client that joins an occupied room waits for an offer.
    """

    def __init__(self, session: Session, schedule_initiator_start, end_call):
        self.session = session
        self.schedule_initiator_start = schedule_initiator_start
        self.end_call = end_call

    async def on_room_joined(self, count):
        self.session.participant_count = count
        logger.info(f"Joined room {self.session.room_id} (participants: {count})")

        if count >= 2 and self.session.role is Role.UNDETERMINED:
            self.session.role = Role.RESPONDER
            logger.info("Late joiner, waiting for an offer")

    async def on_user_joined(self, count):
        self.session.participant_count = count
        logger.info(f"User joined room {self.session.room_id} (participants: {count})")

        if count != 2:
            if count > 2:
                logger.warning(f"Room has {count} participants, only two-party calls are negotiated")
            return
        if self.session.role is not Role.UNDETERMINED:
            logger.debug(f"Role already {self.session.role.value}, ignoring user-joined")
            return

        self.session.role = Role.INITIATOR
        logger.info("Elected initiator")
        self.schedule_initiator_start()

    async def on_user_left(self, count):
        self.session.participant_count = count
        logger.info(f"User left room {self.session.room_id} (participants: {count})")

        # The count includes this client, so below two the peer is gone.
        if count == 0 or (count < 2 and self.session.role is not Role.UNDETERMINED):
            await self.end_call("Peer left the room")

    def assume_responder(self):
        """Switch to responder because a remote offer is being answered"""
        if self.session.role is Role.INITIATOR:
            logger.info("Yielding initiator role to the remote offer")
        self.session.role = Role.RESPONDER

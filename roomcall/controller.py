"""
Session lifecycle controller.

Ties the signaling channel, room membership and negotiation into one state
machine (disconnected -> connected -> room-joining -> in-call). Every input,
whether a relay message, a peer connection callback, a user command or the
initiator timer, is posted to a single asyncio queue and handled to completion
before the next one is looked at.
"""

from __future__ import annotations

import asyncio
import logging

from .errors import (
    ChannelClosed,
    MediaDenied,
    NegotiationFailed,
    NoPeerHandle,
    PeerHandleUnavailable,
    SignalingError,
)
from .events import (
    ChannelLost,
    ChannelOpened,
    ConnectionStateChanged,
    InitiatorStartDue,
    JoinRequested,
    LeaveRequested,
    LocalCandidateGathered,
    MessageReceived,
    RemoteTrackReceived,
)
from .media import MediaCapture, RemoteMediaSink
from .membership import RoomMembershipTracker
from .messages import MessageType, SignalingMessage
from .negotiation import NegotiationEngine
from .session import LifecycleState, NegotiationState, Role, Session, generate_participant_id

logger = logging.getLogger(__name__)

# Time given to a new peer to finish its own room-joined handling before the
# initiator sends an offer.
SETTLE_DELAY = 1.0

IN_ROOM_STATES = (LifecycleState.ROOM_JOINING, LifecycleState.IN_CALL)


class SessionController:
    def __init__(
        self,
        participant_id=None,
        media_provider=None,
        peer_factory=None,
        ice_servers=None,
        settle_delay=SETTLE_DELAY,
        sink_factory=None,
        audio=True,
        video=True,
        on_status=None,
        on_error=None,
    ):
        self.session = Session(participant_id=participant_id or generate_participant_id())
        self.state = LifecycleState.DISCONNECTED
        self.status = "Disconnected"
        self.channel = None
        self.events: asyncio.Queue = asyncio.Queue()

        self.media_provider = media_provider or MediaCapture(label=self.session.participant_id).request
        self.sink_factory = sink_factory or RemoteMediaSink
        self.settle_delay = settle_delay
        self.audio = audio
        self.video = video
        self.on_status = on_status
        self.on_error = on_error

        self.tracker = RoomMembershipTracker(self.session, self._schedule_initiator_start, self.end_call)
        self.engine = NegotiationEngine(self.session, self._send, self.post, peer_factory, ice_servers)

        self._initiator_timer = None
        self._remote_sink = None
        self._closing = False

        self._event_handlers = {
            ChannelOpened: self._on_channel_opened,
            ChannelLost: self._on_channel_lost,
            MessageReceived: self._on_message,
            JoinRequested: self._on_join_requested,
            LeaveRequested: self._on_leave_requested,
            InitiatorStartDue: self._on_initiator_start_due,
            ConnectionStateChanged: self._on_connection_state_changed,
            LocalCandidateGathered: self._on_local_candidate,
            RemoteTrackReceived: self._on_remote_track,
        }
        self._message_handlers = {
            MessageType.JOIN_ROOM: self._on_unexpected_message,
            MessageType.LEAVE_ROOM: self._on_unexpected_message,
            MessageType.ROOM_JOINED: self._on_room_joined,
            MessageType.USER_JOINED: self._on_user_joined,
            MessageType.USER_LEFT: self._on_user_left,
            MessageType.OFFER: self._on_offer,
            MessageType.ANSWER: self._on_answer,
            MessageType.ICE_CANDIDATE: self._on_ice_candidate,
            MessageType.ERROR: self._on_error_message,
        }

    # Read-only views used by the CLI and tests

    @property
    def participant_id(self):
        return self.session.participant_id

    @property
    def role(self) -> Role:
        return self.session.role

    @property
    def negotiation_state(self) -> NegotiationState:
        return self.session.negotiation_state

    @property
    def participant_count(self) -> int:
        return self.session.participant_count

    # Commands

    def post(self, event):
        self.events.put_nowait(event)

    def join_room(self, room_id):
        self.post(JoinRequested(room_id))

    def leave_room(self):
        self.post(LeaveRequested())

    async def disconnect(self):
        """Close the channel; the run loop ends once the closure is processed"""
        if self.channel is not None:
            self._closing = True
            await self.channel.close()

    async def run(self, channel):
        """Process events for ``channel`` until it closes"""
        self.channel = channel
        self.post(ChannelOpened())
        reader = asyncio.create_task(self._read(channel))
        try:
            while True:
                event = await self.events.get()
                await self.dispatch(event)
                if isinstance(event, ChannelLost):
                    break
        finally:
            reader.cancel()
            await self.end_call("Disconnected", notify_relay=False)

    async def drain(self):
        """Process whatever is queued right now"""
        while not self.events.empty():
            await self.dispatch(self.events.get_nowait())

    async def _read(self, channel):
        try:
            async for message in channel:
                self.post(MessageReceived(message))
        finally:
            self.post(ChannelLost("Connection to signaling server closed"))

    async def dispatch(self, event):
        handler = self._event_handlers[type(event)]
        try:
            await handler(event)
        except PeerHandleUnavailable:
            raise
        except NegotiationFailed as e:
            logger.error(f"Negotiation failed: {e}")
            self._report_error(e)
            await self.end_call("Connection Failed")
        except SignalingError as e:
            logger.warning(f"Ignoring {type(event).__name__}: {type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Error handling {type(event).__name__}: {e}")

    # Teardown

    async def end_call(self, reason="Call Ended", notify_relay=True):
        """
        Release everything the current call holds.

        Safe to call from any state and any number of times; only the first
        call after joining a room does anything.
        """
        if self.state not in IN_ROOM_STATES:
            return False

        logger.info(f"Ending call: {reason}")
        self._cancel_initiator_timer()
        await self.engine.close()

        if self._remote_sink is not None:
            await self._remote_sink.stop()
            self._remote_sink = None

        if self.session.local_media is not None:
            self.session.local_media.stop()

        if notify_relay:
            await self._send(MessageType.LEAVE_ROOM)

        self.session.reset()
        self.state = LifecycleState.CONNECTED
        self._set_status(reason)
        return True

    # Event handlers

    async def _on_channel_opened(self, event):
        self._closing = False
        self.state = LifecycleState.CONNECTED
        self._set_status(f"Connected as {self.participant_id}")

    async def _on_channel_lost(self, event):
        await self.end_call("Disconnected", notify_relay=False)
        was_connected = self.state is not LifecycleState.DISCONNECTED
        self.state = LifecycleState.DISCONNECTED
        self.channel = None
        self._set_status("Disconnected")
        if was_connected and not self._closing:
            self._report_error(ChannelClosed(event.reason or "Signaling channel closed"))
        self._closing = False

    async def _on_join_requested(self, event):
        if self.state is not LifecycleState.CONNECTED:
            logger.warning(f"Cannot join a room while {self.state.value}")
            return
        room_id = (event.room_id or "").strip()
        if not room_id:
            logger.warning("Please enter a room ID")
            return

        try:
            media = await self.media_provider(audio=self.audio, video=self.video)
        except MediaDenied as e:
            logger.error(f"Error accessing media devices: {e}")
            self._set_status("Media Access Denied")
            self._report_error(e)
            return

        self.session.room_id = room_id
        self.session.local_media = media
        self.state = LifecycleState.ROOM_JOINING
        await self._send(MessageType.JOIN_ROOM)
        self._set_status("Joining room...")

    async def _on_leave_requested(self, event):
        await self.end_call("Call Ended")

    async def _on_initiator_start_due(self, event):
        self._initiator_timer = None
        if event.generation != self.session.generation or self.state not in IN_ROOM_STATES:
            logger.debug("Dropping initiator start for a finished call")
            return
        if self.session.role is not Role.INITIATOR:
            return

        await self.engine.start_as_initiator()
        self._enter_call("Calling...")

    async def _on_connection_state_changed(self, event):
        if not self._is_current_peer(event.peer_serial):
            return
        logger.info(f"Connection state: {event.state}")

        state = self.engine.on_connection_state_changed(event.state)
        if state is NegotiationState.CONNECTED:
            self._enter_call("WebRTC Connected")
        elif state is NegotiationState.FAILED:
            raise NegotiationFailed("Peer connection failed")
        elif event.state == "disconnected":
            self._set_status("Connection Lost")

    async def _on_local_candidate(self, event):
        if not self._is_current_peer(event.peer_serial):
            return
        await self.engine.on_local_candidate_gathered(event.candidate)

    async def _on_remote_track(self, event):
        if not self._is_current_peer(event.peer_serial):
            return
        logger.info(f"Received track: {event.track.kind}")
        if self._remote_sink is None:
            self._remote_sink = self.sink_factory()
        await self._remote_sink.add_track(event.track)
        self._set_status(f"{self.participant_id} - Connected with remote peer")

    async def _on_message(self, event):
        message = event.message
        handler = self._message_handlers[message.type]
        await handler(message)

    # Message handlers

    async def _on_room_joined(self, message):
        if self._accepts(message):
            self._set_status(f"Joined room: {self.session.room_id}")
            await self.tracker.on_room_joined(message.participants)

    async def _on_user_joined(self, message):
        if self._accepts(message):
            self._set_status("New user joined the room")
            await self.tracker.on_user_joined(message.participants)

    async def _on_user_left(self, message):
        if self._accepts(message):
            self._set_status("User left the room")
            await self.tracker.on_user_left(message.participants)

    async def _on_offer(self, message):
        if not self._accepts(message):
            return
        logger.info(f"Received offer from {message.participant_id}")
        if await self.engine.handle_remote_offer(message):
            self._cancel_initiator_timer()
            self.tracker.assume_responder()
            self._enter_call("Answering call")

    async def _on_answer(self, message):
        if not self._accepts(message):
            return
        logger.info(f"Received answer from {message.participant_id}")
        if await self.engine.handle_remote_answer(message):
            self._set_status(f"{self.participant_id} - Call Connected")

    async def _on_ice_candidate(self, message):
        if self._accepts(message):
            await self.engine.handle_remote_candidate(message.candidate)

    async def _on_error_message(self, message):
        logger.error(f"Server error: {message.message}")
        self._set_status(f"Error: {message.message or 'Unknown error'}")

    async def _on_unexpected_message(self, message):
        logger.warning(f"Unexpected {message.type.value} from relay")

    # Helpers

    def _accepts(self, message):
        """Check a membership or negotiation message belongs to the current call"""
        if self.state not in IN_ROOM_STATES:
            raise NoPeerHandle(f"{message.type.value} received outside a room")
        if message.room_id and message.room_id != self.session.room_id:
            logger.warning(f"Ignoring {message.type.value} for room {message.room_id}")
            return False
        return True

    def _is_current_peer(self, peer_serial):
        return self.session.peer is not None and peer_serial == self.session.peer_serial

    def _enter_call(self, status):
        if self.state is LifecycleState.ROOM_JOINING:
            self.state = LifecycleState.IN_CALL
        self._set_status(f"{self.participant_id} - {status}")

    def _schedule_initiator_start(self):
        self._cancel_initiator_timer()
        generation = self.session.generation

        async def fire():
            await asyncio.sleep(self.settle_delay)
            self.post(InitiatorStartDue(generation))

        self._initiator_timer = asyncio.create_task(fire())
        logger.info(f"Sending offer in {self.settle_delay}s")

    def _cancel_initiator_timer(self):
        if self._initiator_timer is not None:
            self._initiator_timer.cancel()
            self._initiator_timer = None

    async def _send(self, message_type, **fields):
        message = SignalingMessage(
            type=message_type,
            room_id=self.session.room_id,
            participant_id=self.session.participant_id,
            **fields,
        )
        if self.channel is None:
            logger.warning(f"Dropping {message_type.value}: not connected")
            return
        await self.channel.send(message)

    def _set_status(self, status):
        self.status = status
        logger.info(f"Status: {status}")
        if self.on_status:
            self.on_status(status)

    def _report_error(self, error):
        if self.on_error:
            self.on_error(error)

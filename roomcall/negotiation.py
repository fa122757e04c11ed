"""
Offer/answer/candidate negotiation over a single aiortc peer connection.

The engine owns at most one RTCPeerConnection per session. Callbacks from the
connection are never acted on directly: they are posted to the session event
queue tagged with the connection serial, so a callback from a connection that
has since been replaced is recognised and dropped by the controller.
"""

from __future__ import annotations

import logging

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import (
    AlreadyNegotiating,
    MalformedMessage,
    NegotiationFailed,
    NoLocalMedia,
    NoPeerHandle,
    PeerHandleUnavailable,
)
from .events import ConnectionStateChanged, LocalCandidateGathered, RemoteTrackReceived
from .messages import IceCandidatePayload, MessageType
from .session import NegotiationState, Session

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = [
    "stun:localhost:3478",
    "stun:stun.l.google.com:19302",  # fallback
]

# Errors aiortc raises for a description it cannot apply
DESCRIPTION_ERRORS = (ValueError, InvalidStateError, InvalidAccessError)


def create_peer_connection(ice_servers):
    """Default peer factory"""
    configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in ice_servers])
    return RTCPeerConnection(configuration=configuration)


def parse_candidate(payload: IceCandidatePayload):
    """Convert a wire candidate into an aiortc RTCIceCandidate"""
    sdp = payload.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    try:
        candidate = candidate_from_sdp(sdp)
    except (AssertionError, IndexError, ValueError) as e:
        raise MalformedMessage(f"Unparseable candidate {payload.candidate!r}: {e}") from e
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


def serialize_candidate(candidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate="candidate:" + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid or "0",
        sdp_mline_index=candidate.sdpMLineIndex or 0,
    )


class NegotiationEngine:
    def __init__(self, session: Session, send, post, peer_factory=None, ice_servers=None):
        self.session = session
        self.send = send
        self.post = post
        self.peer_factory = peer_factory or create_peer_connection
        self.ice_servers = list(ice_servers if ice_servers is not None else DEFAULT_ICE_SERVERS)
        self._serial = 0

    @property
    def state(self) -> NegotiationState:
        return self.session.negotiation_state

    async def _create_peer(self):
        """Replace the current peer connection with a fresh one"""
        await self.release_peer()

        try:
            pc = self.peer_factory(self.ice_servers)
        except Exception as e:
            raise PeerHandleUnavailable(f"Failed to create peer connection: {e}") from e

        self._serial += 1
        serial = self._serial
        self.session.peer = pc
        self.session.peer_serial = serial
        self.session.remote_description_set = False

        # Set up event handlers
        @pc.on("track")
        def on_track(track):
            self.post(RemoteTrackReceived(track, serial))

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            if candidate:
                self.post(LocalCandidateGathered(candidate, serial))

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            self.post(ConnectionStateChanged(pc.connectionState, serial))

        for track in self.session.local_media.tracks:
            pc.addTrack(track)
            logger.debug(f"Added local track: {track.kind}")

        logger.info(f"Created peer connection #{serial}")
        return pc

    async def release_peer(self):
        """Close the current peer connection, if any"""
        pc = self.session.peer
        if pc is None:
            return False
        self.session.peer = None
        self.session.remote_description_set = False
        await pc.close()
        logger.info(f"Closed peer connection #{self.session.peer_serial}")
        return True

    async def close(self):
        """Release everything negotiation holds and go back to idle"""
        released = await self.release_peer()
        self.session.pending_candidates.clear()
        self.session.negotiation_state = NegotiationState.IDLE
        return released

    def _fail(self, step, error):
        self.session.negotiation_state = NegotiationState.FAILED
        return NegotiationFailed(f"{step}: {error}")

    async def start_as_initiator(self):
        """Create the peer connection and send an offer"""
        session = self.session
        if session.local_media is None:
            raise NoLocalMedia("Cannot start negotiation without local media")
        if session.negotiation_state is not NegotiationState.IDLE:
            raise AlreadyNegotiating(f"Negotiation already {session.negotiation_state.value}")

        pc = await self._create_peer()

        # Always offer to receive both kinds, even when not sending them
        local_kinds = session.local_media.kinds()
        for kind in ("audio", "video"):
            if kind not in local_kinds:
                pc.addTransceiver(kind, direction="recvonly")

        session.negotiation_state = NegotiationState.AWAITING_LOCAL_DESCRIPTION
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except DESCRIPTION_ERRORS as e:
            raise self._fail("Failed to create offer", e) from e

        session.negotiation_state = NegotiationState.OFFER_SENT
        await self.send(MessageType.OFFER, sdp=pc.localDescription.sdp)
        logger.info("Sent offer")

    def yields_to(self, remote_participant_id):
        """
        Decide an offer collision.

        Both sides apply the same comparison so exactly one of them answers:
        the side with the greater participant id drops its own offer.
        """
        if not remote_participant_id:
            return True
        return self.session.participant_id > remote_participant_id

    async def handle_remote_offer(self, message):
        """Answer a remote offer; returns False when the offer loses a collision"""
        session = self.session
        if session.local_media is None:
            raise NoLocalMedia("Cannot answer without local media")

        if session.negotiation_state is NegotiationState.OFFER_SENT:
            if not self.yields_to(message.participant_id):
                logger.warning(f"Offer collision with {message.participant_id}, keeping local offer")
                return False
            logger.info(f"Offer collision with {message.participant_id}, answering remote offer")

        pc = await self._create_peer()
        session.negotiation_state = NegotiationState.ANSWERING_REMOTE_OFFER

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="offer"))
        except DESCRIPTION_ERRORS as e:
            raise self._fail("Failed to apply remote offer", e) from e
        session.remote_description_set = True
        await self._drain_pending(pc)

        try:
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except DESCRIPTION_ERRORS as e:
            raise self._fail("Failed to create answer", e) from e

        session.negotiation_state = NegotiationState.ANSWER_SENT
        await self.send(MessageType.ANSWER, sdp=pc.localDescription.sdp)
        logger.info("Sent answer")
        return True

    async def handle_remote_answer(self, message):
        session = self.session
        pc = session.peer
        if pc is None:
            raise NoPeerHandle("Answer received with no peer connection")
        if session.negotiation_state is not NegotiationState.OFFER_SENT:
            logger.warning(f"Ignoring answer received in state {session.negotiation_state.value}")
            return False

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="answer"))
        except DESCRIPTION_ERRORS as e:
            raise self._fail("Failed to apply remote answer", e) from e
        session.remote_description_set = True
        await self._drain_pending(pc)

        session.negotiation_state = NegotiationState.ANSWER_SENT
        logger.info("Applied remote answer")
        return True

    async def handle_remote_candidate(self, payload: IceCandidatePayload):
        candidate = parse_candidate(payload)
        session = self.session

        if session.peer is not None and session.remote_description_set:
            await self._add_candidate(session.peer, candidate)
        else:
            session.pending_candidates.append(candidate)
            logger.info(f"Buffered remote candidate ({len(session.pending_candidates)} pending)")

    async def _drain_pending(self, pc):
        pending = self.session.pending_candidates
        if pending:
            logger.info(f"Applying {len(pending)} buffered candidate(s)")
        while pending:
            await self._add_candidate(pc, pending.pop(0))

    async def _add_candidate(self, pc, candidate):
        try:
            await pc.addIceCandidate(candidate)
        except DESCRIPTION_ERRORS as e:
            logger.warning(f"Failed to add ICE candidate: {e}")

    def on_connection_state_changed(self, state):
        """Map the connection state; returns the new negotiation state or None"""
        if state == "connected":
            self.session.negotiation_state = NegotiationState.CONNECTED
        elif state == "failed":
            self.session.negotiation_state = NegotiationState.FAILED
        else:
            return None
        return self.session.negotiation_state

    async def on_local_candidate_gathered(self, candidate):
        await self.send(MessageType.ICE_CANDIDATE, candidate=serialize_candidate(candidate))
        logger.debug("Sent ICE candidate")

from __future__ import annotations

from typing import Any

import pytest
from conftest import FakePeerFactory, FakeTrack, host_candidate, local_candidate

from roomcall.errors import (
    AlreadyNegotiating,
    MalformedMessage,
    NegotiationFailed,
    NoLocalMedia,
    NoPeerHandle,
    PeerHandleUnavailable,
)
from roomcall.events import ConnectionStateChanged, LocalCandidateGathered
from roomcall.media import LocalMedia
from roomcall.messages import IceCandidatePayload, MessageType, SignalingMessage
from roomcall.negotiation import NegotiationEngine, parse_candidate
from roomcall.session import NegotiationState, Session


class Recorder:
    def __init__(self, pc_source: FakePeerFactory) -> None:
        self.pc_source = pc_source
        self.sent: list[tuple[MessageType, dict[str, Any]]] = []
        self.local_description_at_send: list[Any] = []
        self.posted: list[Any] = []

    async def send(self, message_type: MessageType, **fields: Any) -> None:
        self.sent.append((message_type, fields))
        pc = self.pc_source.latest if self.pc_source.created else None
        self.local_description_at_send.append(pc.localDescription if pc else None)

    def post(self, event: Any) -> None:
        self.posted.append(event)


def make_engine(participant_id="User-a", kinds=("audio", "video"), factory=None):
    factory = factory or FakePeerFactory()
    session = Session(participant_id=participant_id, room_id="r1")
    session.local_media = LocalMedia([FakeTrack(kind) for kind in kinds])
    recorder = Recorder(factory)
    engine = NegotiationEngine(session, recorder.send, recorder.post, factory, ["stun:stun.example.org"])
    return engine, session, factory, recorder


def offer_from(participant_id: str, sdp: str = "v=0 remote-offer") -> SignalingMessage:
    return SignalingMessage(type=MessageType.OFFER, room_id="r1", participant_id=participant_id, sdp=sdp)


def answer_from(participant_id: str, sdp: str = "v=0 remote-answer") -> SignalingMessage:
    return SignalingMessage(type=MessageType.ANSWER, room_id="r1", participant_id=participant_id, sdp=sdp)


@pytest.mark.anyio("asyncio")
async def test_offer_is_sent_only_after_local_description_is_set() -> None:
    engine, session, factory, recorder = make_engine()

    await engine.start_as_initiator()

    pc = factory.latest
    assert pc.log == ["createOffer", "setLocalDescription:offer"]
    assert session.negotiation_state is NegotiationState.OFFER_SENT
    assert recorder.sent == [(MessageType.OFFER, {"sdp": "v=0 offer-1"})]
    assert recorder.local_description_at_send[0].sdp == "v=0 offer-1"
    assert [track.kind for track in pc.tracks] == ["audio", "video"]
    assert pc.ice_servers == ["stun:stun.example.org"]


@pytest.mark.anyio("asyncio")
async def test_offer_requests_receive_capability_for_missing_kinds() -> None:
    engine, _, factory, _ = make_engine(kinds=("audio",))

    await engine.start_as_initiator()

    assert factory.latest.transceivers == [("video", "recvonly")]


@pytest.mark.anyio("asyncio")
async def test_start_requires_media_and_idle_state() -> None:
    engine, session, factory, _ = make_engine()
    session.local_media = None
    with pytest.raises(NoLocalMedia):
        await engine.start_as_initiator()
    assert factory.created == []

    engine, session, factory, _ = make_engine()
    await engine.start_as_initiator()
    with pytest.raises(AlreadyNegotiating):
        await engine.start_as_initiator()
    assert len(factory.created) == 1


@pytest.mark.anyio("asyncio")
async def test_peer_allocation_failure_is_fatal() -> None:
    engine, _, _, _ = make_engine(factory=FakePeerFactory(fail=True))

    with pytest.raises(PeerHandleUnavailable):
        await engine.start_as_initiator()


@pytest.mark.anyio("asyncio")
async def test_candidates_before_offer_are_applied_in_arrival_order() -> None:
    engine, session, factory, recorder = make_engine(participant_id="User-b")

    for port in (50001, 50002, 50003):
        await engine.handle_remote_candidate(host_candidate(port))
    assert len(session.pending_candidates) == 3
    assert factory.created == []

    await engine.handle_remote_offer(offer_from("User-a"))

    pc = factory.latest
    assert [candidate.port for candidate in pc.candidates] == [50001, 50002, 50003]
    assert pc.log == [
        "setRemoteDescription:offer",
        "addIceCandidate",
        "addIceCandidate",
        "addIceCandidate",
        "createAnswer",
        "setLocalDescription:answer",
    ]
    assert session.pending_candidates == []
    assert session.negotiation_state is NegotiationState.ANSWER_SENT
    assert recorder.sent == [(MessageType.ANSWER, {"sdp": "v=0 answer-1"})]


@pytest.mark.anyio("asyncio")
async def test_candidates_after_remote_description_are_added_immediately() -> None:
    engine, session, factory, _ = make_engine()
    await engine.start_as_initiator()

    await engine.handle_remote_candidate(host_candidate(50001))
    assert factory.latest.candidates == []
    assert len(session.pending_candidates) == 1

    await engine.handle_remote_answer(answer_from("User-b"))
    await engine.handle_remote_candidate(host_candidate(50002))

    assert [candidate.port for candidate in factory.latest.candidates] == [50001, 50002]
    assert session.pending_candidates == []
    assert session.negotiation_state is NegotiationState.ANSWER_SENT


@pytest.mark.anyio("asyncio")
async def test_unparseable_candidate_is_rejected_without_state_change() -> None:
    engine, session, _, _ = make_engine()
    await engine.start_as_initiator()

    with pytest.raises(MalformedMessage):
        await engine.handle_remote_candidate(
            IceCandidatePayload(candidate="candidate:garbage", sdp_mid="0", sdp_mline_index=0)
        )

    assert session.pending_candidates == []
    assert session.negotiation_state is NegotiationState.OFFER_SENT


def test_parse_candidate_strips_prefix_and_keeps_media_line() -> None:
    candidate = parse_candidate(IceCandidatePayload(
        candidate="candidate:842163049 1 udp 1677729535 203.0.113.5 54321 typ srflx raddr 10.0.0.2 rport 54321",
        sdp_mid="1",
        sdp_mline_index=1,
    ))

    assert candidate.foundation == "842163049"
    assert candidate.type == "srflx"
    assert candidate.relatedAddress == "10.0.0.2"
    assert candidate.sdpMid == "1"
    assert candidate.sdpMLineIndex == 1


@pytest.mark.anyio("asyncio")
async def test_answer_outside_offer_sent_is_dropped() -> None:
    engine, session, factory, _ = make_engine(participant_id="User-b")
    await engine.handle_remote_offer(offer_from("User-a"))

    assert await engine.handle_remote_answer(answer_from("User-a")) is False

    assert factory.latest.log.count("setRemoteDescription:answer") == 0
    assert session.negotiation_state is NegotiationState.ANSWER_SENT


@pytest.mark.anyio("asyncio")
async def test_answer_without_peer_connection_raises_no_peer_handle() -> None:
    engine, _, _, _ = make_engine()

    with pytest.raises(NoPeerHandle):
        await engine.handle_remote_answer(answer_from("User-b"))


@pytest.mark.anyio("asyncio")
async def test_repeated_offer_replaces_the_peer_connection() -> None:
    engine, session, factory, _ = make_engine(participant_id="User-b")

    await engine.handle_remote_offer(offer_from("User-a"))
    await engine.handle_remote_offer(offer_from("User-a", sdp="v=0 second"))

    assert len(factory.created) == 2
    assert factory.created[0].closed
    assert factory.open == [factory.created[1]]
    assert session.peer is factory.created[1]


@pytest.mark.anyio("asyncio")
async def test_answer_requires_local_media() -> None:
    engine, session, factory, _ = make_engine()
    session.local_media = None

    with pytest.raises(NoLocalMedia):
        await engine.handle_remote_offer(offer_from("User-b"))
    assert factory.created == []


@pytest.mark.anyio("asyncio")
async def test_offer_collision_is_answered_by_exactly_one_side() -> None:
    engine_a, session_a, factory_a, _ = make_engine(participant_id="User-a")
    engine_b, session_b, factory_b, _ = make_engine(participant_id="User-b")
    await engine_a.start_as_initiator()
    await engine_b.start_as_initiator()

    answered_a = await engine_a.handle_remote_offer(offer_from("User-b"))
    answered_b = await engine_b.handle_remote_offer(offer_from("User-a"))

    assert (answered_a, answered_b) == (False, True)
    assert session_a.negotiation_state is NegotiationState.OFFER_SENT
    assert session_b.negotiation_state is NegotiationState.ANSWER_SENT
    assert len(factory_a.open) == 1
    assert len(factory_b.open) == 1
    assert factory_b.created[0].closed


@pytest.mark.anyio("asyncio")
async def test_description_error_marks_negotiation_failed() -> None:
    engine, session, factory, _ = make_engine(participant_id="User-b")

    async def reject(description):
        raise ValueError("Invalid SDP line")

    await engine.start_as_initiator()
    factory.latest.setRemoteDescription = reject

    with pytest.raises(NegotiationFailed):
        await engine.handle_remote_answer(answer_from("User-a"))
    assert session.negotiation_state is NegotiationState.FAILED


@pytest.mark.anyio("asyncio")
async def test_peer_callbacks_are_posted_with_their_connection_serial() -> None:
    engine, _, factory, recorder = make_engine()
    await engine.start_as_initiator()

    pc = factory.latest
    candidate = local_candidate(40000)
    pc.emit("icecandidate", candidate)
    pc.emit("icecandidate", None)
    pc.set_connection_state("connecting")

    assert recorder.posted == [
        LocalCandidateGathered(candidate, 1),
        ConnectionStateChanged("connecting", 1),
    ]


@pytest.mark.anyio("asyncio")
async def test_local_candidates_are_sent_one_per_message() -> None:
    engine, _, _, recorder = make_engine()

    await engine.on_local_candidate_gathered(local_candidate(40000))
    await engine.on_local_candidate_gathered(local_candidate(40001))

    assert [message_type for message_type, _ in recorder.sent] == [MessageType.ICE_CANDIDATE] * 2
    first = recorder.sent[0][1]["candidate"]
    assert first.candidate.startswith("candidate:2 1 udp")
    assert "40000" in first.candidate
    assert first.sdp_mid == "0"


def test_connection_state_mapping() -> None:
    engine, session, _, _ = make_engine()

    assert engine.on_connection_state_changed("connecting") is None
    assert engine.on_connection_state_changed("connected") is NegotiationState.CONNECTED
    assert engine.on_connection_state_changed("failed") is NegotiationState.FAILED
    assert session.negotiation_state is NegotiationState.FAILED


@pytest.mark.anyio("asyncio")
async def test_close_releases_everything_and_returns_to_idle() -> None:
    engine, session, factory, _ = make_engine()
    await engine.start_as_initiator()
    await engine.handle_remote_candidate(host_candidate(50001))

    assert await engine.close() is True
    assert await engine.close() is False

    assert factory.latest.closed
    assert session.peer is None
    assert session.pending_candidates == []
    assert session.negotiation_state is NegotiationState.IDLE

"""Shared fakes and fixtures for the signaling client tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from roomcall.controller import SessionController
from roomcall.errors import MediaDenied
from roomcall.events import ChannelOpened, MessageReceived
from roomcall.media import LocalMedia
from roomcall.messages import IceCandidatePayload, MessageType, SignalingMessage


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakePeerConnection:
    """Records the calls the engine makes, in order."""

    def __init__(self, ice_servers: list[str], serial: int) -> None:
        self.ice_servers = ice_servers
        self.serial = serial
        self.handlers: dict[str, list[Any]] = {}
        self.tracks: list[Any] = []
        self.transceivers: list[tuple[str, str]] = []
        self.localDescription = None
        self.remoteDescription = None
        self.candidates: list[Any] = []
        self.connectionState = "new"
        self.closed = False
        self.log: list[str] = []

    def on(self, event: str, f=None):
        def register(func):
            self.handlers.setdefault(event, []).append(func)
            return func

        return register(f) if f is not None else register

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers.get(event, []):
            handler(*args)

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> None:
        self.transceivers.append((kind, direction))

    async def createOffer(self) -> RTCSessionDescription:
        self.log.append("createOffer")
        return RTCSessionDescription(sdp=f"v=0 offer-{self.serial}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        self.log.append("createAnswer")
        return RTCSessionDescription(sdp=f"v=0 answer-{self.serial}", type="answer")

    async def setLocalDescription(self, description) -> None:
        self.log.append(f"setLocalDescription:{description.type}")
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:
        self.log.append(f"setRemoteDescription:{description.type}")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        self.log.append("addIceCandidate")
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"
        self.emit("connectionstatechange")

    def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")


class FakePeerFactory:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.created: list[FakePeerConnection] = []

    def __call__(self, ice_servers: list[str]) -> FakePeerConnection:
        if self.fail:
            raise RuntimeError("out of ports")
        pc = FakePeerConnection(ice_servers, len(self.created) + 1)
        self.created.append(pc)
        return pc

    @property
    def open(self) -> list[FakePeerConnection]:
        return [pc for pc in self.created if not pc.closed]

    @property
    def latest(self) -> FakePeerConnection:
        return self.created[-1]


class FakeMediaProvider:
    def __init__(self, deny: bool = False, kinds=("audio", "video")) -> None:
        self.deny = deny
        self.kinds = kinds
        self.handles: list[LocalMedia] = []

    async def __call__(self, audio: bool = True, video: bool = True) -> LocalMedia:
        if self.deny:
            raise MediaDenied("Permission denied")
        media = LocalMedia([FakeTrack(kind) for kind in self.kinds])
        self.handles.append(media)
        return media


class FakeChannel:
    """Client side channel recording everything sent."""

    def __init__(self) -> None:
        self.sent: list[SignalingMessage] = []
        self.inbound: asyncio.Queue[SignalingMessage | None] = asyncio.Queue()
        self.closed = False

    async def send(self, message: SignalingMessage) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(None)

    async def __aiter__(self):
        while True:
            message = await self.inbound.get()
            if message is None:
                break
            yield message

    def types(self) -> list[MessageType]:
        return [message.type for message in self.sent]


def host_candidate(port: int) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:1 1 udp 2122260223 192.0.2.1 {port} typ host",
        sdp_mid="0",
        sdp_mline_index=0,
    )


def local_candidate(port: int):
    candidate = candidate_from_sdp(f"2 1 udp 2122260223 198.51.100.7 {port} typ host")
    candidate.sdpMid = "0"
    candidate.sdpMLineIndex = 0
    return candidate


def received(message_type: MessageType, **fields: Any) -> MessageReceived:
    fields.setdefault("room_id", "r1")
    return MessageReceived(SignalingMessage(type=message_type, **fields))


async def pump(*controllers: SessionController, rounds: int = 20) -> None:
    """Let timers fire and process every queued event."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for controller in controllers:
            await controller.drain()


async def connect(controller: SessionController, channel) -> None:
    controller.channel = channel
    controller.post(ChannelOpened())
    await controller.drain()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def peer_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture()
def media_provider() -> FakeMediaProvider:
    return FakeMediaProvider()


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def errors() -> list[Exception]:
    return []


@pytest.fixture()
def controller(peer_factory, media_provider, errors) -> SessionController:
    return SessionController(
        participant_id="User-a",
        media_provider=media_provider,
        peer_factory=peer_factory,
        ice_servers=["stun:stun.example.org:3478"],
        settle_delay=0,
        on_error=errors.append,
    )

#!/usr/bin/env python3
"""
Command line peer: connects to the signaling server, joins a room and holds
a two-party call with whoever else joins it
"""

import argparse
import asyncio
import logging

from .channel import SignalingChannel
from .controller import SETTLE_DELAY, SessionController
from .errors import ChannelClosed, MediaDenied, PeerHandleUnavailable
from .media import MediaCapture, RemoteMediaSink
from .negotiation import DEFAULT_ICE_SERVERS
from .session import generate_participant_id, generate_room_id

logger = logging.getLogger(__name__)


class PeerClient:
    def __init__(
        self,
        signaling_url="ws://localhost:8765",
        room_id=None,
        participant_id=None,
        ice_servers=None,
        settle_delay=SETTLE_DELAY,
        media_capture=None,
        record_to=None,
        audio=True,
        video=True,
    ):
        self.signaling_url = signaling_url
        self.room_id = room_id or generate_room_id()
        self.participant_id = participant_id or generate_participant_id()
        self.record_to = record_to
        self.media_capture = media_capture or MediaCapture(label=self.participant_id)

        self.controller = SessionController(
            participant_id=self.participant_id,
            media_provider=self.media_capture.request,
            ice_servers=ice_servers,
            settle_delay=settle_delay,
            sink_factory=lambda: RemoteMediaSink(self.record_to),
            audio=audio,
            video=video,
            on_status=self.on_status,
            on_error=self.on_error,
        )

    def on_status(self, status):
        print(f"[{self.participant_id}] {status}")

    def on_error(self, error):
        if isinstance(error, MediaDenied):
            logger.error(f"Cannot start call, media unavailable: {error}")
        elif isinstance(error, ChannelClosed):
            logger.warning(f"Signaling channel lost: {error}")
        else:
            logger.error(f"Call error: {error}")

    async def run(self):
        """Connect, join the room and process events until the channel closes"""
        channel = SignalingChannel(self.signaling_url)
        await channel.connect()

        logger.info(f"Joining room {self.room_id} as {self.participant_id}")
        self.controller.join_room(self.room_id)
        await self.controller.run(channel)


async def main():
    """Start the command line peer"""
    parser = argparse.ArgumentParser(description="Two-party WebRTC room call peer")
    parser.add_argument("--signaling-url", default="ws://localhost:8765",
                        help="WebSocket URL for signaling server")
    parser.add_argument("--room", help="Room ID to join (default: generated)")
    parser.add_argument("--participant-id", help="Participant ID (default: generated)")
    parser.add_argument("--stun", action="append",
                        help=f"STUN/TURN URL, repeatable (default: {', '.join(DEFAULT_ICE_SERVERS)})")
    parser.add_argument("--settle-delay", type=float, default=SETTLE_DELAY,
                        help=f"Seconds to wait before sending the offer (default: {SETTLE_DELAY})")
    parser.add_argument("--media", choices=["test-pattern", "device"], default="test-pattern",
                        help="Local media source (default: test-pattern)")
    parser.add_argument("--video-device", help="Video capture device, e.g. /dev/video0")
    parser.add_argument("--video-format", help="FFmpeg input format for the video device, e.g. v4l2")
    parser.add_argument("--audio-device", help="Audio capture device, e.g. default")
    parser.add_argument("--audio-format", help="FFmpeg input format for the audio device, e.g. pulse")
    parser.add_argument("--no-audio", action="store_true", help="Do not send audio")
    parser.add_argument("--no-video", action="store_true", help="Do not send video")
    parser.add_argument("--record-to", help="Record remote media to this file instead of discarding it")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")

    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    participant_id = args.participant_id or generate_participant_id()
    capture = MediaCapture(
        source=args.media,
        label=participant_id,
        video_device=args.video_device,
        video_format=args.video_format,
        audio_device=args.audio_device,
        audio_format=args.audio_format,
    )

    client = PeerClient(
        signaling_url=args.signaling_url,
        room_id=args.room,
        participant_id=participant_id,
        ice_servers=args.stun,
        settle_delay=args.settle_delay,
        media_capture=capture,
        record_to=args.record_to,
        audio=not args.no_audio,
        video=not args.no_video,
    )
    print(f"Your ID: {client.participant_id}")
    print(f"Room ID: {client.room_id}")

    try:
        await client.run()
    except PeerHandleUnavailable as e:
        logger.error(f"Fatal: {e}")
        raise SystemExit(1)
    except OSError as e:
        logger.error(f"Failed to connect to signaling server: {e}")
        raise SystemExit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Peer stopped by user")


if __name__ == "__main__":
    run()

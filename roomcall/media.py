"""
Local media capture and remote media sinks.

Capture comes either from real devices through aiortc's MediaPlayer or from a
synthetic test pattern, which is what the command line peer uses when running
headless.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

import cv2
import numpy as np
from aiortc import AudioStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av import VideoFrame
from av.error import FFmpegError

from .errors import MediaDenied

logger = logging.getLogger(__name__)


class PatternVideoTrack(VideoStreamTrack):
    """
    Video track generating a dark frame with the participant label and a clock
    """

    def __init__(self, label, width=640, height=480):
        super().__init__()
        self.label = label
        self.width = width
        self.height = height
        self.frame_count = 0

    def draw_frame(self):
        """Render one BGR frame"""
        img = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        img[:] = (48, 32, 24)

        font = cv2.FONT_HERSHEY_SIMPLEX
        cv2.putText(img, self.label, (20, 50), font, 1.0, (0, 255, 0), 2)
        cv2.putText(img, datetime.now().strftime("%H:%M:%S"), (20, 90), font, 0.8, (255, 255, 255), 2)
        cv2.putText(img, f"Frame: {self.frame_count}", (20, 125), font, 0.6, (200, 200, 200), 1)

        # Moving bar so a frozen stream is visible on the far side
        x = (self.frame_count * 4) % self.width
        cv2.rectangle(img, (x, self.height - 30), (min(x + 40, self.width), self.height - 10), (0, 200, 255), -1)
        return img

    async def recv(self):
        pts, time_base = await self.next_timestamp()

        img = self.draw_frame()
        self.frame_count += 1

        frame = VideoFrame.from_ndarray(img, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class LocalMedia:
    """Handle on the captured local tracks; stopping is idempotent"""

    def __init__(self, tracks, players=None):
        self.tracks = list(tracks)
        self.players = list(players or [])
        self.stopped = False

    def kinds(self):
        return {track.kind for track in self.tracks}

    def stop(self):
        """Stop every local track exactly once"""
        if self.stopped:
            return False
        self.stopped = True
        for track in self.tracks:
            track.stop()
        logger.info(f"Stopped {len(self.tracks)} local track(s)")
        return True


class MediaCapture:
    """
    Acquires local media on request.

    ``source`` is ``"test-pattern"`` for synthetic tracks or ``"device"`` to
    open capture devices with FFmpeg (e.g. ``/dev/video0`` with format
    ``v4l2``, ``default`` with format ``pulse``).
    """

    def __init__(
        self,
        source="test-pattern",
        label="",
        video_device=None,
        video_format=None,
        audio_device=None,
        audio_format=None,
        video_size="640x480",
        framerate="30",
    ):
        self.source = source
        self.label = label
        self.video_device = video_device
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.video_size = video_size
        self.framerate = framerate

    async def request(self, audio=True, video=True) -> LocalMedia:
        """Return the local stream handle, or raise MediaDenied"""
        if not audio and not video:
            raise MediaDenied("Neither audio nor video requested")

        if self.source == "test-pattern":
            tracks = []
            if audio:
                tracks.append(AudioStreamTrack())
            if video:
                tracks.append(PatternVideoTrack(self.label))
            logger.info(f"Using test pattern media: {sorted(t.kind for t in tracks)}")
            return LocalMedia(tracks)

        if self.source != "device":
            raise MediaDenied(f"Unknown media source: {self.source}")

        players: List[MediaPlayer] = []
        tracks = []
        try:
            if video:
                if not self.video_device:
                    raise MediaDenied("No video device configured")
                player = MediaPlayer(
                    self.video_device,
                    format=self.video_format,
                    options={"video_size": self.video_size, "framerate": self.framerate},
                )
                players.append(player)
                if player.video is None:
                    raise MediaDenied(f"{self.video_device} has no video stream")
                tracks.append(player.video)
            if audio:
                if self.audio_device:
                    player = MediaPlayer(self.audio_device, format=self.audio_format)
                    players.append(player)
                    audio_track = player.audio
                else:
                    # A video device may carry its own audio stream
                    audio_track = players[0].audio if players else None
                if audio_track is None:
                    raise MediaDenied("No audio device available")
                tracks.append(audio_track)
        except (FFmpegError, OSError) as e:
            _stop_players(players)
            raise MediaDenied(f"Failed to open capture device: {e}") from e
        except MediaDenied:
            _stop_players(players)
            raise

        logger.info(f"Captured local media: {sorted(t.kind for t in tracks)}")
        return LocalMedia(tracks, players)


def _stop_players(players):
    for player in players:
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()


class RemoteMediaSink:
    """
    Consumes remote tracks, either discarding them or recording to a file
    """

    def __init__(self, record_to: Optional[str] = None):
        self.record_to = record_to
        self.sink = MediaRecorder(record_to) if record_to else MediaBlackhole()
        self.tracks = []

    async def add_track(self, track):
        self.sink.addTrack(track)
        self.tracks.append(track)
        await self.sink.start()
        logger.info(f"Consuming remote {track.kind} track")

    async def stop(self):
        await self.sink.stop()
        self.tracks = []

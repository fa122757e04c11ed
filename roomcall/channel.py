"""
WebSocket signaling channel: framing and delivery only
"""

from __future__ import annotations

import logging

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import MalformedMessage
from .messages import SignalingMessage

logger = logging.getLogger(__name__)


class SignalingChannel:
    """
    Thin adapter over a websockets client connection.

    Sends are fire-and-forget: a send on a dropped connection is logged and
    discarded, the closure itself is reported by the receive side ending.
    """

    def __init__(self, url="ws://localhost:8765", ping_interval=20, ping_timeout=10):
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.websocket = None

    async def connect(self):
        """Connect to signaling server"""
        logger.info(f"Connecting to signaling server: {self.url}")
        self.websocket = await websockets.connect(
            self.url,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
        )
        return self

    async def send(self, message: SignalingMessage):
        if self.websocket is None:
            logger.warning(f"Dropping {message.type.value}: channel not connected")
            return
        try:
            await self.websocket.send(message.to_json())
            logger.debug(f"Sent {message.type.value}")
        except ConnectionClosed:
            logger.warning(f"Dropping {message.type.value}: connection closed")

    async def __aiter__(self):
        """Yield parsed messages until the connection closes"""
        if self.websocket is None:
            return
        try:
            async for raw in self.websocket:
                try:
                    message = SignalingMessage.from_json(raw)
                except MalformedMessage as e:
                    logger.warning(f"Dropping malformed message: {e}")
                    continue
                logger.debug(f"Received {message.type.value}")
                yield message
        except ConnectionClosed as e:
            logger.info(f"Connection to signaling server closed: {e}")

    async def close(self):
        if self.websocket is not None:
            await self.websocket.close()

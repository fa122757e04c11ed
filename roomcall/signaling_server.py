#!/usr/bin/env python3
"""
Room based WebRTC signaling relay using WebSockets
Tracks room membership and forwards offer/answer/candidates between room members
"""

import argparse
import asyncio
import logging
import uuid

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import MalformedMessage
from .messages import MessageType, SignalingMessage

logger = logging.getLogger(__name__)

FORWARDED_TYPES = {MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE}


class SignalingServer:
    def __init__(self):
        self.rooms = {}  # room_id -> {participant_id: websocket}
        self.clients = {}  # websocket -> (participant_id, room_id)

    async def send_to(self, websocket, message):
        """Send one message, dropping it if the client is gone"""
        try:
            await websocket.send(message.to_json())
        except ConnectionClosed:
            logger.info("Dropped message to a closed client")

    async def broadcast(self, room_id, message, exclude=None):
        for participant_id, websocket in list(self.rooms.get(room_id, {}).items()):
            if participant_id != exclude:
                await self.send_to(websocket, message)

    async def join_room(self, websocket, room_id, participant_id):
        """Add a client to a room and announce it"""
        if websocket in self.clients:
            await self.leave_room(websocket)

        participant_id = participant_id or f"User-{uuid.uuid4().hex[:6]}"
        holder = self.rooms.get(room_id, {}).get(participant_id)
        if holder is not None and holder is not websocket:
            logger.warning(f"Rejected duplicate participant {participant_id} in {room_id}")
            await self.send_error(websocket, f"Participant {participant_id} is already in room {room_id}")
            return

        members = self.rooms.setdefault(room_id, {})
        members[participant_id] = websocket
        self.clients[websocket] = (participant_id, room_id)
        count = len(members)
        logger.info(f"{participant_id} joined {room_id} (participants: {count})")

        await self.send_to(websocket, SignalingMessage(
            type=MessageType.ROOM_JOINED,
            room_id=room_id,
            participant_id=participant_id,
            participants=count,
        ))
        await self.broadcast(room_id, SignalingMessage(
            type=MessageType.USER_JOINED,
            room_id=room_id,
            participant_id=participant_id,
            participants=count,
        ), exclude=participant_id)

    async def leave_room(self, websocket):
        """Remove a client from its room and tell the rest"""
        entry = self.clients.pop(websocket, None)
        if entry is None:
            return
        participant_id, room_id = entry
        members = self.rooms.get(room_id, {})
        members.pop(participant_id, None)
        remaining = len(members)
        if not members:
            self.rooms.pop(room_id, None)
        logger.info(f"{participant_id} left {room_id} (participants: {remaining})")

        await self.broadcast(room_id, SignalingMessage(
            type=MessageType.USER_LEFT,
            room_id=room_id,
            participant_id=participant_id,
            participants=remaining,
        ))

    async def forward_message(self, websocket, message):
        """Forward negotiation messages to the other members of the sender's room"""
        entry = self.clients.get(websocket)
        if entry is None:
            await self.send_error(websocket, f"Join a room before sending {message.type.value}")
            return
        participant_id, room_id = entry
        forwarded = SignalingMessage(
            type=message.type,
            room_id=room_id,
            participant_id=participant_id,
            sdp=message.sdp,
            candidate=message.candidate,
        )
        await self.broadcast(room_id, forwarded, exclude=participant_id)
        logger.info(f"Forwarded {message.type.value} from {participant_id} in {room_id}")

    async def send_error(self, websocket, text):
        await self.send_to(websocket, SignalingMessage(type=MessageType.ERROR, message=text))

    async def handle_message(self, websocket, raw):
        """Handle one frame from a client"""
        try:
            message = SignalingMessage.from_json(raw)
        except MalformedMessage as e:
            logger.warning(f"Invalid message: {e}")
            await self.send_error(websocket, str(e))
            return

        if message.type is MessageType.JOIN_ROOM:
            await self.join_room(websocket, message.room_id, message.participant_id)
        elif message.type is MessageType.LEAVE_ROOM:
            await self.leave_room(websocket)
        elif message.type in FORWARDED_TYPES:
            await self.forward_message(websocket, message)
        else:
            logger.warning(f"Unknown message type: {message.type.value}")
            await self.send_error(websocket, f"Unsupported message type: {message.type.value}")

    async def handle_client(self, websocket):
        """Handle WebSocket connection from client"""
        try:
            async for raw in websocket:
                await self.handle_message(websocket, raw)
        except ConnectionClosed:
            logger.info("Client disconnected")
        finally:
            await self.leave_room(websocket)


async def main():
    """Start the signaling server"""
    parser = argparse.ArgumentParser(description="Room based WebRTC signaling relay")
    parser.add_argument("--host", default="localhost", help="Interface to bind (default: localhost)")
    parser.add_argument("--port", type=int, default=8765, help="Port to listen on (default: 8765)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    server = SignalingServer()

    # Start WebSocket server
    start_server = websockets.serve(
        server.handle_client,
        args.host,
        args.port,
        ping_interval=20,
        ping_timeout=10,
    )

    logger.info(f"WebRTC Signaling Server starting on ws://{args.host}:{args.port}")

    async with start_server:
        # Keep the server running
        await asyncio.Future()  # Run forever


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    run()

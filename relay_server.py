import argparse
import asyncio
import json
import logging
import uuid
from http import HTTPStatus
from urllib.parse import urlsplit

import websockets
from websockets.datastructures import Headers
from websockets.http11 import Response

from core.room_registry import RELAYED_EVENTS, RoomRegistry
from security.rate_limiter import RateLimiter
from utils.config import RelayConfig
from utils.error_codes import ErrorCodes, RoomFull
from utils.validators import validate_connection_code

logger = logging.getLogger("relay")

ROOM_FULL_CLOSE_CODE = 4000


def json_response(status: HTTPStatus, body: dict) -> Response:
    data = json.dumps(body).encode("utf-8")
    headers = Headers(
        [
            ("Content-Type", "application/json"),
            ("Content-Length", str(len(data))),
            ("Access-Control-Allow-Origin", "*"),
        ]
    )
    return Response(status.value, status.phrase, headers, data)


def error_message(code: int, message: str, room_id=None) -> dict:
    return {"type": "error", "roomId": room_id, "payload": {"code": code, "message": message}}


class RelayServer:
    """Routes signaling events between the two members of each room. Never touches media."""

    def __init__(self, config: RelayConfig = None, registry: RoomRegistry = None):
        self.config = config or RelayConfig()
        self.registry = registry or RoomRegistry(
            capacity=self.config.room_capacity,
            idle_timeout=self.config.room_idle_timeout,
        )

    def process_request(self, connection, request):
        """Plain HTTP endpoints served on the websocket port; None lets the handshake proceed."""
        path = urlsplit(request.path).path.rstrip("/")
        if path == "/room":
            room = self.registry.create_room()
            return json_response(HTTPStatus.OK, {"roomId": room.room_id})
        if path == "/healthz":
            return connection.respond(HTTPStatus.OK, "OK\n")
        return None

    async def handler(self, websocket):
        connection_id = uuid.uuid4().hex
        limiter = RateLimiter(self.config.rate_limit_calls, self.config.rate_limit_period)
        send = self._sender(websocket, connection_id)
        logger.info("Connection %s opened", connection_id)
        try:
            async for raw in websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await send(error_message(ErrorCodes.ERR_PROTOCOL, "Malformed JSON"))
                    continue
                if not isinstance(message, dict):
                    await send(error_message(ErrorCodes.ERR_PROTOCOL, "Expected a JSON object"))
                    continue

                if not limiter.check():
                    logger.warning("Rate limit exceeded by %s", connection_id)
                    await send(
                        error_message(ErrorCodes.ERR_RATE_LIMITED, "Rate limit exceeded", message.get("roomId"))
                    )
                    continue

                await self.dispatch(websocket, connection_id, send, message)

        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            await self.registry.leave(connection_id)
            logger.info("Connection %s closed", connection_id)

    async def dispatch(self, websocket, connection_id, send, message):
        event = message.get("type")
        room_id = message.get("roomId")

        if event == "join-room":
            room_id = room_id or message.get("payload")
            if not validate_connection_code(room_id):
                await send(error_message(ErrorCodes.ERR_INVALID_ROOM, "Invalid room code", room_id))
                return
            try:
                await self.registry.join(room_id, connection_id, send)
            except RoomFull as exc:
                await send({"type": "room-full", "roomId": room_id, "payload": {"capacity": exc.capacity}})
                await websocket.close(code=ROOM_FULL_CLOSE_CODE, reason="Room Full")
            return

        if event == "leave-room":
            await self.registry.leave(connection_id)
            return

        if event in RELAYED_EVENTS:
            if "payload" not in message:
                await send(error_message(ErrorCodes.ERR_PROTOCOL, f"{event} without payload", room_id))
                return
            room_id = room_id or self.registry.room_of(connection_id)
            await self.registry.relay(room_id, connection_id, event, message["payload"])
            return

        await send(error_message(ErrorCodes.ERR_PROTOCOL, f"Unknown event {event!r}", room_id))

    async def sweep(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            purged = self.registry.purge_idle()
            if purged:
                logger.info("Purged %d idle rooms", purged)

    def serve(self):
        return websockets.serve(
            self.handler,
            self.config.host,
            self.config.port,
            process_request=self.process_request,
        )

    @staticmethod
    def _sender(websocket, connection_id):
        async def send(message: dict):
            try:
                await websocket.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed:
                logger.debug("Dropped %s for closed connection %s", message.get("type"), connection_id)

        return send


async def run(config: RelayConfig):
    server = RelayServer(config)
    logger.info("Starting signaling relay on %s:%d", config.host, config.port)
    async with server.serve():
        await server.sweep()  # run forever


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(message)s")

    parser = argparse.ArgumentParser(description="Signaling relay for two-party calls")
    try:
        config = RelayConfig.from_env()
    except ValueError as exc:
        parser.error(str(exc))
    parser.add_argument("--host", default=config.host)
    parser.add_argument("--port", type=int, default=config.port)
    args = parser.parse_args()
    config.host = args.host
    config.port = args.port

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

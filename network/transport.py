import asyncio
import contextlib
import inspect
import json
import logging
from collections import defaultdict

import websockets

from utils.error_codes import ErrorCodes, RoomFull, SignalingUnavailable

logger = logging.getLogger(__name__)

ROOM_FULL_CLOSE_CODE = 4000


class SignalingChannel:
    """
    Websocket link to the relay.

    Inbound events are dispatched one at a time in arrival order.  Outbound
    events go through a queue drained by a single writer so they leave in the
    order they were emitted.
    """

    def __init__(self, uri: str, connect_timeout: float = 10.0, join_timeout: float = 10.0):
        self.uri = uri
        self.connect_timeout = connect_timeout
        self.join_timeout = join_timeout
        self.websocket = None
        self.on_closed_callback = None
        self._handlers = defaultdict(list)
        self._outbox = None
        self._listener = None
        self._writer = None
        self._pending_join = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closing

    async def connect(self):
        if not self.uri:
            raise SignalingUnavailable("No signaling relay configured")
        try:
            self.websocket = await asyncio.wait_for(websockets.connect(self.uri), timeout=self.connect_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise SignalingUnavailable(f"Could not connect to relay at {self.uri}: {exc}") from exc

        self._closing = False
        self._outbox = asyncio.Queue()
        self._listener = asyncio.create_task(self.listen())
        self._writer = asyncio.create_task(self._drain())
        logger.info("Connected to relay %s", self.uri)

    def on(self, event: str, handler):
        """Register a handler (sync or async) for ``event``; returns a callable that unregisters it."""
        self._handlers[event].append(handler)

        def unsubscribe():
            with contextlib.suppress(ValueError):
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, room_id, payload=None):
        if not self.connected:
            raise SignalingUnavailable(f"Cannot send {event}: not connected to relay")
        self._outbox.put_nowait({"type": event, "roomId": room_id, "payload": payload})

    async def join_room(self, room_id: str) -> dict:
        """Send ``join-room`` and wait for the relay's verdict."""
        self._pending_join = asyncio.get_running_loop().create_future()
        self.emit("join-room", room_id, room_id)
        try:
            return await asyncio.wait_for(self._pending_join, timeout=self.join_timeout)
        except asyncio.TimeoutError as exc:
            raise SignalingUnavailable("Relay did not confirm the join") from exc
        finally:
            self._pending_join = None

    async def listen(self):
        close_code = None
        try:
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed message from relay")
                    continue
                if not isinstance(data, dict):
                    continue
                await self._dispatch(data)
        except websockets.exceptions.ConnectionClosed as exc:
            close_code = exc.rcvd.code if exc.rcvd else None
        finally:
            self._resolve_join_on_close(close_code)
            if not self._closing:
                logger.warning("Relay connection lost")
                self._closing = True
                if self._outbox is not None:
                    self._outbox.put_nowait(None)
                if self.on_closed_callback:
                    self.on_closed_callback()

    async def _dispatch(self, data: dict):
        event = data.get("type")

        if self._pending_join is not None and not self._pending_join.done():
            if event == "room-joined":
                self._pending_join.set_result(data.get("payload") or {})
            elif event == "room-full":
                capacity = (data.get("payload") or {}).get("capacity", 2)
                self._pending_join.set_exception(RoomFull(data.get("roomId"), capacity))
            elif event == "error":
                error = data.get("payload") or {}
                if error.get("code") == ErrorCodes.ERR_INVALID_ROOM:
                    self._pending_join.set_exception(ValueError(error.get("message", "Invalid room code")))

        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed; dropping the event", event)

    def _resolve_join_on_close(self, close_code):
        if self._pending_join is None or self._pending_join.done():
            return
        if close_code == ROOM_FULL_CLOSE_CODE:
            self._pending_join.set_exception(RoomFull(None))
        else:
            self._pending_join.set_exception(SignalingUnavailable("Relay closed the connection during join"))

    async def _drain(self):
        while True:
            message = await self._outbox.get()
            if message is None:
                return
            try:
                await self.websocket.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Dropped outbound %s: relay connection closed", message["type"])
                return

    async def disconnect(self):
        if self.websocket is None:
            return
        already_closing = self._closing
        self._closing = True
        if self._writer is not None:
            if not already_closing:
                # Flush what is already queued, then stop.
                self._outbox.put_nowait(None)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._writer, timeout=self.connect_timeout)
        await self.websocket.close()
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
        self.websocket = None
        self._listener = None
        self._writer = None
        logger.info("Disconnected from relay")

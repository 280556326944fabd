import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional

from core.negotiator import SessionNegotiator
from core.state_machine import SignalingState
from media.local_media import acquire_local_media
from media.peer_connection import AiortcPeerConnection
from network.transport import SignalingChannel
from utils.error_codes import AlreadyNegotiating, CallError, CallSetupTimeout, SignalingUnavailable
from utils.validators import validate_connection_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallStatus:
    room_id: Optional[str]
    connection_id: Optional[str]
    peer_id: Optional[str]
    signaling_state: str
    ice_state: str
    health: str
    mic_enabled: bool
    camera_enabled: bool
    calling: bool
    last_error: Optional[str]


class CallController:
    """
    Wires one SessionNegotiator to the SignalingChannel and exposes the user
    intents.  Presentation code listens through ``ui_callback(event, data)``.
    """

    def __init__(
        self,
        config,
        ui_callback=None,
        channel=None,
        peer_connection_factory=None,
        media_acquirer=None,
        renderer=None,
    ):
        config.validate()
        self.config = config
        self.ui_callback = ui_callback
        self.channel = channel or SignalingChannel(config.signaling_url, connect_timeout=config.connect_timeout)
        self._peer_connection_factory = peer_connection_factory or partial(
            AiortcPeerConnection, config.ice_servers
        )
        self._acquire_media = media_acquirer or partial(acquire_local_media, config)
        self._renderer = renderer

        self.media = None
        self.negotiator: Optional[SessionNegotiator] = None
        self.room_id = None
        self.connection_id = None
        self.peer_id = None
        self.last_error: Optional[CallError] = None
        self._subscriptions = []
        self._setup_timer: Optional[asyncio.Task] = None
        self._background = set()
        self._joined = False
        self._left = False

        self.channel.on_closed_callback = self.on_channel_closed

    # -- observable state -------------------------------------------------

    @property
    def status(self) -> CallStatus:
        negotiator = self.negotiator
        return CallStatus(
            room_id=self.room_id,
            connection_id=self.connection_id,
            peer_id=self.peer_id,
            signaling_state=negotiator.state.value if negotiator else SignalingState.CLOSED.value,
            ice_state=negotiator.ice_state.value if negotiator else "new",
            health=negotiator.health.value if negotiator else "closed",
            mic_enabled=bool(self.media and self.media.audio_enabled),
            camera_enabled=bool(self.media and self.media.video_enabled),
            calling=bool(negotiator and negotiator.state is not SignalingState.IDLE and not negotiator.closed),
            last_error=self.last_error.message if self.last_error else None,
        )

    def notify(self, event, data=None):
        if self.ui_callback:
            self.ui_callback(event, data)

    def report(self, error: CallError):
        self.last_error = error
        if error.fatal:
            logger.error("%s", error)
        else:
            logger.warning("%s", error)
        self.notify("ERROR", error)

    # -- user intents -----------------------------------------------------

    async def join_room(self, room_id: str):
        if not validate_connection_code(room_id):
            raise ValueError("Invalid room code. Use A-Z, 0-9, length 8-16.")
        if self._joined:
            raise AlreadyNegotiating(f"Already in room {self.room_id}")

        await self.channel.connect()
        try:
            self.media = self._acquire_media()
        except CallError as exc:
            self.last_error = exc
            await self.channel.disconnect()
            raise

        self.room_id = room_id
        self._subscriptions = [
            self.channel.on("room-joined", self.on_room_joined),
            self.channel.on("user-connected", self.on_user_connected),
            self.channel.on("user-disconnected", self.on_user_disconnected),
            self.channel.on("offer", self.on_offer),
            self.channel.on("answer", self.on_answer),
            self.channel.on("candidate", self.on_candidate),
            self.channel.on("error", self.on_relay_error),
        ]
        # Negotiator must exist before the relay can deliver the peer's offer.
        await self._replace_negotiator()

        try:
            await self.channel.join_room(room_id)
        except (CallError, ValueError) as exc:
            if isinstance(exc, CallError):
                self.last_error = exc
            await self._teardown()
            raise
        self._joined = True
        self.notify("JOINED", self.status)

    async def start_call(self):
        negotiator = self.negotiator
        if negotiator is None or not self._joined:
            raise SignalingUnavailable("Join a room before starting a call")

        offer = await negotiator.initiate()
        if offer is None:
            return
        self._send("offer", offer.to_dict())
        self._arm_setup_timer(negotiator)

    def toggle_microphone(self) -> bool:
        enabled = self.media.toggle_audio() if self.media else False
        self.notify("STATE", self.status)
        return enabled

    def toggle_camera(self) -> bool:
        enabled = self.media.toggle_video() if self.media else False
        self.notify("STATE", self.status)
        return enabled

    async def leave_room(self):
        if self._left:
            return
        self._left = True
        if self.room_id and self.channel.connected:
            with contextlib.suppress(SignalingUnavailable):
                self.channel.emit("leave-room", self.room_id)
        await self._teardown()
        self.notify("DESTROYED")

    # -- inbound signaling ------------------------------------------------

    def on_room_joined(self, message):
        payload = message.get("payload") or {}
        self.connection_id = payload.get("connectionId")
        members = payload.get("members") or []
        self.peer_id = members[0] if members else None
        if self.negotiator:
            self.negotiator.local_id = self.connection_id
        logger.info("Joined room %s as %s", self.room_id, self.connection_id)

    def on_user_connected(self, message):
        self.peer_id = message.get("payload")
        logger.info("User connected: %s", self.peer_id)
        self.notify("PEER_JOINED", self.peer_id)

    async def on_user_disconnected(self, message):
        user_id = message.get("payload")
        logger.info("User disconnected: %s", user_id)
        if user_id != self.peer_id:
            return
        self.peer_id = None
        self.notify("PEER_LEFT", user_id)
        # The call is over; the next participant gets a fresh peer connection.
        await self._replace_negotiator()

    async def on_offer(self, message):
        negotiator = self.negotiator
        sender = message.get("from")
        if self.peer_id is None:
            self.peer_id = sender
        try:
            answer = await negotiator.handle_remote_offer(message.get("payload"), sender)
        except CallError as exc:
            self.report(exc)
            return
        if answer is not None:
            self._send("answer", answer.to_dict())

    async def on_answer(self, message):
        try:
            await self.negotiator.handle_remote_answer(message.get("payload"))
        except CallError as exc:
            self.report(exc)

    async def on_candidate(self, message):
        try:
            await self.negotiator.handle_remote_candidate(message.get("payload"))
        except CallError as exc:
            self.report(exc)

    def on_relay_error(self, message):
        error = message.get("payload") or {}
        logger.warning("Relay error %s: %s", error.get("code"), error.get("message"))
        self.report(CallError(error.get("message", "Relay error"), code=error.get("code")))

    def on_channel_closed(self):
        if self._left or not self._joined:
            return
        self.report(SignalingUnavailable("Lost connection to the signaling relay"))

    # -- outbound wiring --------------------------------------------------

    def on_local_candidate(self, candidate):
        self._send("candidate", candidate.to_dict())

    def on_remote_track(self, track):
        self.notify("REMOTE_TRACK", track)
        if self._renderer is None:
            return
        result = self._renderer(track)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def on_negotiator_state(self, negotiator):
        if negotiator is not self.negotiator:
            return
        if negotiator.state is SignalingState.STABLE:
            self._cancel_setup_timer()
        self.notify("STATE", self.status)

    def _send(self, event, payload):
        try:
            self.channel.emit(event, self.room_id, payload)
        except SignalingUnavailable as exc:
            self.report(exc)

    # -- lifecycle --------------------------------------------------------

    async def _replace_negotiator(self):
        self._cancel_setup_timer()
        previous = self.negotiator
        if previous is not None:
            # Closed negotiators turn late handlers into no-ops until the swap.
            await previous.close()

        tracks = self.media.tracks if self.media else []
        negotiator = SessionNegotiator(
            self._peer_connection_factory(tracks=tracks),
            local_id=self.connection_id,
            candidate_limit=self.config.candidate_buffer_limit,
        )
        negotiator.on_local_candidate(self.on_local_candidate)
        negotiator.on_remote_track(self.on_remote_track)
        negotiator.on_state_change(self.on_negotiator_state)
        self.negotiator = negotiator
        self.notify("STATE", self.status)

    def _arm_setup_timer(self, negotiator):
        self._cancel_setup_timer()
        self._setup_timer = asyncio.create_task(self._watch_call_setup(negotiator))

    def _cancel_setup_timer(self):
        if self._setup_timer is not None and self._setup_timer is not asyncio.current_task():
            self._setup_timer.cancel()
        self._setup_timer = None

    async def _watch_call_setup(self, negotiator):
        await asyncio.sleep(self.config.call_setup_timeout)
        if negotiator is not self.negotiator or negotiator.state is SignalingState.STABLE:
            return
        self.report(CallSetupTimeout(f"No answer within {self.config.call_setup_timeout:g}s"))
        await self._replace_negotiator()

    async def _teardown(self):
        self._cancel_setup_timer()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        if self.negotiator is not None:
            await self.negotiator.close()
        await self.channel.disconnect()
        if self.media is not None:
            self.media.stop()
        for task in list(self._background):
            task.cancel()
        self._joined = False

import asyncio
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.panel import Panel
from rich.theme import Theme

from core.call_controller import CallController
from media.rendering import RemoteStreamSink
from network.room_lookup import RoomLookup
from utils.error_codes import CallError
from utils.validators import validate_connection_code

custom_theme = Theme({
    "info": "dim cyan",
    "warning": "magenta",
    "danger": "bold red",
    "success": "bold green",
    "peer": "green",
    "muted": "dim white"
})

console = Console(theme=custom_theme)

HELP = "[muted]/call  start the call   /mic  toggle microphone   /cam  toggle camera   /status   /quit[/muted]"


class CallCLI:
    def __init__(self, config, room_code=None):
        self.config = config
        self.room_code = room_code
        self.sink = RemoteStreamSink()
        self.controller = CallController(config, self.ui_callback, renderer=self.sink.render)
        self.session = PromptSession()
        self.running = True
        self._last_health = None

    def ui_callback(self, event_type, data=None):
        # Called from the asyncio loop when state changes or media arrives
        if event_type == "JOINED":
            console.print(Panel(
                f"[bold white]Room: {data.room_id}[/bold white]\n[dim]Share this code with one other person.[/dim]",
                expand=False,
            ))
            if data.peer_id:
                console.print("[success]Someone is already here. Type /call to start.[/success]")
            else:
                console.print("[info]Waiting for the other participant...[/info]")
        elif event_type == "PEER_JOINED":
            console.print("[success]Participant joined. Type /call to start.[/success]")
        elif event_type == "PEER_LEFT":
            console.print("[warning]Participant left the room.[/warning]")
            self._last_health = None
        elif event_type == "REMOTE_TRACK":
            console.print(f"[info]Receiving remote {data.kind}[/info]")
        elif event_type == "STATE":
            self._render_health(data)
        elif event_type == "ERROR":
            console.print(f"[danger]Error: {data.message}[/danger]")
            if data.fatal:
                self.running = False
        elif event_type == "DESTROYED":
            console.print("[danger]Left the room.[/danger]")
            self.running = False

    def _render_health(self, status):
        if status.health == self._last_health:
            return
        self._last_health = status.health
        if status.health == "connected":
            console.print(Panel("[bold green]CALL CONNECTED[/bold green]\n[dim]Media flows directly between you and your peer.[/dim]", expand=False))
        elif status.health == "degraded":
            console.print("[warning]Connection interrupted, trying to recover...[/warning]")
        elif status.health == "failed":
            console.print("[danger]Connection failed. Type /call to retry once your peer is back.[/danger]")

    def render_status(self):
        status = self.controller.status
        mic = "[success]on[/success]" if status.mic_enabled else "[danger]Mic Off[/danger]"
        cam = "[success]on[/success]" if status.camera_enabled else "[danger]Camera Off[/danger]"
        console.print(
            f"[info]room[/info] {status.room_id}  [info]peer[/info] {status.peer_id or '-'}  "
            f"[info]signaling[/info] {status.signaling_state}  [info]ice[/info] {status.ice_state}  "
            f"[info]mic[/info] {mic}  [info]camera[/info] {cam}"
        )
        if status.last_error:
            console.print(f"[muted]last error: {status.last_error}[/muted]")

    async def choose_room(self):
        while True:
            room_code = await self.session.prompt_async("Enter Room Code (blank creates one): ")
            room_code = room_code.strip().upper()
            if not room_code:
                try:
                    return await RoomLookup(self.config.http_url).create_room()
                except CallError as e:
                    console.print(f"[danger]Could not create a room: {e.message}[/danger]")
                    continue
            if validate_connection_code(room_code):
                return room_code
            console.print("[warning]Invalid format. Use A-Z, 0-9, length 8-16.[/warning]")

    async def handle_command(self, text):
        command = text.lower()
        if command == "/quit":
            await self.controller.leave_room()
        elif command == "/call":
            try:
                await self.controller.start_call()
                console.print("[info]Calling...[/info]")
            except CallError as e:
                console.print(f"[warning]{e.message}[/warning]")
        elif command == "/mic":
            enabled = self.controller.toggle_microphone()
            console.print("[success]Mic on[/success]" if enabled else "[danger]Mic Off[/danger]")
        elif command == "/cam":
            enabled = self.controller.toggle_camera()
            console.print("[success]Camera on[/success]" if enabled else "[danger]Camera Off[/danger]")
        elif command == "/status":
            self.render_status()
        else:
            console.print(HELP)

    async def run(self):
        console.clear()
        console.print(Panel.fit("[bold white]P2P CALL[/bold white]\n[dim]Direct audio/video between two people.[/dim]", style="blue"))

        # 1. Get Room Code
        room_code = self.room_code or await self.choose_room()

        # 2. Join
        try:
            await self.controller.join_room(room_code)
        except (CallError, ValueError) as e:
            console.print(f"[danger]Failed to join: {e}[/danger]")
            return
        console.print(HELP)

        # 3. Command Loop
        with patch_stdout():
            while self.running:
                input_task = asyncio.create_task(self.session.prompt_async("> "))
                # Poll so a peer-side fatal error can end the loop while we wait for input
                while self.running and not input_task.done():
                    await asyncio.wait([input_task], timeout=0.5)
                if not input_task.done():
                    input_task.cancel()
                    break
                try:
                    text = input_task.result().strip()
                except (EOFError, KeyboardInterrupt):
                    break
                if text:
                    await self.handle_command(text)

        await self.controller.leave_room()
        await self.sink.stop()

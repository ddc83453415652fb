import asyncio
import logging

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

from peerchat.core.chat import Origin
from peerchat.core.handshake import HandshakePhase
from peerchat.core.session_manager import Session
from peerchat.core.state_machine import SessionState
from peerchat.utils.error_codes import PeerChatError
from peerchat.utils.validators import validate_message_length, validate_nickname, validate_session_id

logger = logging.getLogger(__name__)

custom_theme = Theme({
    "info": "dim cyan",
    "warning": "magenta",
    "danger": "bold red",
    "success": "bold green",
    "system": "dim white",
    "chat_peer": "green",
    "chat_self": "cyan",
})

console = Console(theme=custom_theme)


class PeerChatCLI:
    def __init__(self, config, signaling, connection_factory):
        self.config = config
        self.signaling = signaling
        self.connection_factory = connection_factory
        self.prompt = PromptSession()
        # Typed lines are erased and re-printed with a timestamp
        self.chat_prompt = PromptSession(bottom_toolbar=self.toolbar, refresh_interval=0.5, erase_when_done=True)
        self.session = None
        self.nickname = None
        self.running = True

    def toolbar(self):
        if self.session and self.session.peer_is_typing:
            return f"{self.session.peer_nickname} is typing..."
        return ""

    def ui_callback(self, event_type, data=None):
        # Called from the session's event loop on every observable change
        if event_type == "STATE":
            if data is SessionState.CHATTING:
                console.print(Panel("[bold green]DIRECT PEER-TO-PEER CHANNEL OPEN[/bold green]\n"
                                    "[dim]Messages are sent directly and are never stored.[/dim]", expand=False))
        elif event_type == "SESSION_ID":
            console.print(Panel(f"[bold white]{data}[/bold white]", title="Chat created. Share the ID!",
                                expand=False))
        elif event_type == "PHASE":
            # Both descriptions are in place once the answer has been applied
            if data is HandshakePhase.DESCRIPTION_EXCHANGED:
                console.print("[info]Connecting...[/info]")
        elif event_type == "MESSAGE":
            self.print_message(data)
        elif event_type == "NOTIFY":
            console.bell()
        elif event_type == "ERROR":
            console.print(f"[danger]Error: {data}[/danger]")
        elif event_type == "DESTROYED":
            console.print("[danger]Session closed.[/danger]")
            self.running = False

    def print_message(self, message):
        # Peer-supplied text is never parsed as markup
        stamp = message.timestamp.strftime("%H:%M")
        if message.origin is Origin.SYSTEM:
            console.print(Text(message.text, style="system"))
        elif message.origin is Origin.PEER:
            console.print(Text.assemble((stamp, "dim"), " ", (f"{self.session.peer_nickname}:", "chat_peer"),
                                        " ", message.text))
        else:
            console.print(Text.assemble((stamp, "dim"), " ", ("You:", "chat_self"), " ", message.text))

    def new_session(self) -> Session:
        session = Session(self.nickname, self.signaling, self.connection_factory, self.config,
                          ui_callback=self.ui_callback)
        session.subscribe(lambda event_type, data: logger.debug("Session event %s", event_type))
        return session

    async def ask_nickname(self):
        while True:
            nickname = (await self.prompt.prompt_async("Your nickname: ")).strip()
            if validate_nickname(nickname):
                return nickname
            console.print("[warning]Please enter a nickname (up to 32 characters).[/warning]")

    async def start(self, join_id=None):
        """Creates or joins a session, asking again until one starts."""
        while True:
            if join_id is None:
                choice = (await self.prompt.prompt_async("[c]reate a chat or [j]oin one? ")).strip().lower()
                if choice.startswith("j"):
                    join_id = (await self.prompt.prompt_async("Peer's chat ID: ")).strip()
                    if not validate_session_id(join_id):
                        console.print("[warning]That does not look like a chat ID.[/warning]")
                        join_id = None
                        continue
                elif not choice.startswith("c"):
                    continue

            self.session = self.new_session()
            try:
                if join_id:
                    console.print("[info]Joining chat...[/info]")
                    await self.session.join_as_responder(join_id)
                else:
                    console.print("[info]Creating chat...[/info]")
                    await self.session.begin_as_initiator()
                return
            except PeerChatError as e:
                console.print(f"[danger]{e.message}[/danger]")
                join_id = None

    async def chat_loop(self):
        buffer = self.chat_prompt.default_buffer
        on_change = lambda _: self.session.notify_typing()
        buffer.on_text_changed += on_change
        try:
            with patch_stdout():
                while self.running:
                    input_task = asyncio.create_task(self.chat_prompt.prompt_async("You: "))
                    closed_task = asyncio.create_task(self.session.wait_closed())
                    done, _ = await asyncio.wait([input_task, closed_task], return_when=asyncio.FIRST_COMPLETED)
                    closed_task.cancel()
                    if input_task not in done:
                        input_task.cancel()
                        break

                    text = input_task.result().strip()
                    if not text:
                        continue
                    if text.lower() == "/quit":
                        await self.session.disconnect()
                        break
                    if not validate_message_length(text):
                        console.print("[warning]Message too long.[/warning]")
                        continue
                    if self.session.state is not SessionState.CHATTING:
                        console.print("[warning]Not connected yet; message dropped.[/warning]")
                        continue
                    self.session.send_chat_message(text)
        finally:
            buffer.on_text_changed -= on_change

    async def shutdown(self):
        # Best effort: never hold up exit for an unreachable signaling store
        if self.session is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self.session.disconnect()), timeout=self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing session %s", self.session.session_id)

    async def run(self, nickname=None, join_id=None):
        console.clear()
        console.print(Panel.fit("[bold white]PEER-TO-PEER CHAT[/bold white]\n"
                                "[dim]Direct connection. Nothing stored.[/dim]", style="blue"))
        try:
            self.nickname = nickname if nickname and validate_nickname(nickname) else await self.ask_nickname()
            await self.start(join_id)
            await self.chat_loop()
        except (EOFError, KeyboardInterrupt):
            pass
        finally:
            await self.shutdown()

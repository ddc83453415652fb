import asyncio
import logging

from peerchat.config import Config
from peerchat.core.chat import ChatEngine
from peerchat.core.handshake import HandshakeController
from peerchat.core.records import SessionRecordLifecycle
from peerchat.core.state_machine import SessionState, StateMachine
from peerchat.utils.error_codes import ErrorCodes, InvalidStateTransition

logger = logging.getLogger(__name__)


class _Timer:
    def __init__(self):
        self.cancelled = False
        self.handle = None

    def cancel(self):
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()


class Session:
    """
    One connection attempt, from the first offer to the final teardown.

    Signaling callbacks, transport events and timers are posted to a single
    queue and handled one at a time by a consumer task, so no two handlers
    for this session ever interleave. A closed session is never reused:
    start over with a new Session.

    Observers receive (event_type, data) with event types STATE, PHASE, SESSION_ID,
    MESSAGE, TYPING, NOTIFY, ERROR and DESTROYED.
    """

    def __init__(self, nickname, signaling, connection_factory, config=None,
                 ui_callback=None, on_disconnected=None):
        self.config = config or Config()
        self.nickname = nickname.strip()
        self.signaling = signaling
        self.connection = connection_factory()
        self.records = SessionRecordLifecycle(signaling)
        self.state_machine = StateMachine(on_change=lambda state: self._notify("STATE", state))
        self.chat = ChatEngine(
            self.nickname,
            schedule=self._call_later,
            emit=self._notify,
            on_disconnect=self._on_peer_gone,
            typing_timeout=self.config.typing_timeout,
            disconnect_grace=self.config.disconnect_grace,
        )
        self.handshake = HandshakeController(
            signaling,
            self.connection,
            self.records,
            post=self._post,
            spawn=self._spawn,
            on_channel=self._attach_channel,
            on_failed=self._on_handshake_failed,
            on_connection_lost=self._on_channel_closed,
            on_phase=lambda phase: self._notify("PHASE", phase),
            channel_label=self.config.channel_label,
        )
        self.channel = None
        self.session_id = None
        self.error = None
        self.on_disconnected = on_disconnected
        self._listeners = [ui_callback] if ui_callback else []

        self._queue = asyncio.Queue()
        self._consumer = None
        self._tasks = set()
        self._negotiation_timer = None
        self._closing = False
        self._teardown_task = None
        self._closed_event = asyncio.Event()

    # Observation

    @property
    def state(self) -> SessionState:
        return self.state_machine.current_state

    @property
    def messages(self):
        return list(self.chat.messages)

    @property
    def peer_is_typing(self) -> bool:
        return self.chat.peer_is_typing

    @property
    def peer_nickname(self) -> str:
        return self.chat.peer_nickname

    def subscribe(self, callback):
        self._listeners.append(callback)

    def _notify(self, event_type, data=None):
        for callback in list(self._listeners):
            callback(event_type, data)

    # Event loop plumbing

    def _ensure_consumer(self):
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            item = await self._queue.get()
            if item is None:
                break
            if self._closing:
                continue
            handler, args = item
            try:
                handler(*args)
            except Exception:
                logger.exception("Session event handler %s failed", getattr(handler, "__name__", handler))

    def _post(self, handler, *args):
        if self._closing:
            return
        self._queue.put_nowait((handler, args))

    def _spawn(self, coro, fatal=False):
        if self._closing:
            coro.close()
            return
        task = asyncio.ensure_future(self._guard(coro, fatal))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro, fatal):
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if fatal:
                self._post(self._on_background_failure, e)
            else:
                logger.warning("Background signaling/transport operation failed: %s", e)

    def _on_background_failure(self, error):
        self.handshake.fail(f"Negotiation step failed: {error}")

    def _call_later(self, delay, fn):
        timer = _Timer()
        timer.handle = asyncio.get_running_loop().call_later(delay, self._post, self._fire_timer, timer, fn)
        return timer

    def _fire_timer(self, timer, fn):
        if not timer.cancelled:
            fn()

    # Handshake

    def _start_negotiating(self):
        if self.state is not SessionState.IDLE:
            raise InvalidStateTransition(f"Session already used (state {self.state.name})")
        self._ensure_consumer()
        self.state_machine.transition_to(SessionState.NEGOTIATING)
        if self.config.negotiation_timeout is not None:
            self._negotiation_timer = self._call_later(self.config.negotiation_timeout, self._negotiation_timed_out)

    async def begin_as_initiator(self) -> str:
        self._start_negotiating()
        try:
            self.session_id = await self.handshake.begin_as_initiator()
        except Exception:
            await self.disconnect()
            raise
        self._notify("SESSION_ID", self.session_id)
        return self.session_id

    async def join_as_responder(self, session_id: str):
        self._start_negotiating()
        try:
            await self.handshake.join_as_responder(session_id)
        except Exception:
            await self.disconnect()
            raise
        self.session_id = self.handshake.record_id

    def _negotiation_timed_out(self):
        self._negotiation_timer = None
        if self.state is SessionState.NEGOTIATING:
            self.handshake.fail(
                f"No peer connected within {self.config.negotiation_timeout}s",
                code=ErrorCodes.ERR_NEGOTIATION_TIMEOUT,
            )

    def _on_handshake_failed(self, error):
        self.error = error
        self._notify("ERROR", error)
        self._start_teardown()

    # Channel

    def _attach_channel(self, channel):
        self.channel = channel
        channel.on_open(lambda: self._post(self._on_channel_open))
        channel.on_message(lambda raw: self._post(self.chat.handle_message, raw))
        channel.on_close(lambda: self._post(self._on_channel_closed))

    def _on_channel_open(self):
        if self.state is not SessionState.NEGOTIATING:
            return
        if self._negotiation_timer is not None:
            self._negotiation_timer.cancel()
            self._negotiation_timer = None
        self.handshake.handle_channel_open()
        self.state_machine.transition_to(SessionState.OPEN)
        self.chat.on_channel_open(self.channel)
        self.state_machine.transition_to(SessionState.CHATTING)

    def _on_channel_closed(self):
        state = self.state
        if state in (SessionState.OPEN, SessionState.CHATTING):
            logger.info("Peer closed the channel for session %s", self.session_id)
            self.state_machine.transition_to(SessionState.CLOSED)
            self.chat.on_channel_closed()
        elif state is SessionState.NEGOTIATING:
            self.handshake.fail("Data channel closed before it opened")

    def _on_peer_gone(self):
        self._start_teardown()

    # User actions

    def send_chat_message(self, text: str) -> bool:
        if self._closing:
            return False
        return self.chat.send_chat_message(text)

    def notify_typing(self) -> bool:
        if self._closing:
            return False
        return self.chat.notify_typing()

    async def disconnect(self):
        await self._start_teardown()

    async def wait_closed(self):
        await self._closed_event.wait()

    # Teardown

    def _start_teardown(self):
        if self._teardown_task is None:
            self._closing = True
            self._teardown_task = asyncio.ensure_future(self._teardown())
        return self._teardown_task

    async def _teardown(self):
        self._closing = True
        self.chat.cancel_timers()
        if self._negotiation_timer is not None:
            self._negotiation_timer.cancel()
        self.handshake.cancel_subscriptions()
        self.state_machine.transition_to(SessionState.CLOSED)
        for task in list(self._tasks):
            task.cancel()
        try:
            await self.records.teardown(self.handshake.record_id, self.channel, self.connection)
        except Exception:
            logger.exception("Error while closing session %s", self.session_id)
        finally:
            self._queue.put_nowait(None)
            self._closed_event.set()
            self._notify("DESTROYED")
            if self.on_disconnected:
                self.on_disconnected()

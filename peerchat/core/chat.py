import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Callable, List, Optional

from peerchat.core.protocol import (
    ChatEnvelope,
    NicknameEnvelope,
    TypingEnvelope,
    decode_envelope,
    encode_envelope,
)
from peerchat.network.rtc import OPEN

logger = logging.getLogger(__name__)

DEFAULT_PEER_NICKNAME = "Peer"


class Origin(Enum):
    SELF = auto()
    PEER = auto()
    SYSTEM = auto()


@dataclass(frozen=True)
class ChatMessage:
    origin: Origin
    text: str
    timestamp: datetime


@dataclass
class PeerIdentity:
    peer_nickname: str = DEFAULT_PEER_NICKNAME


class ChatEngine:
    """
    Chat protocol on top of an open data channel.

    Timers are created through `schedule(delay, fn) -> handle` so the owner
    decides how expiry re-enters its event loop; handles only need cancel().
    `emit(event_type, data)` reports MESSAGE, TYPING and NOTIFY to observers.
    """

    def __init__(self, nickname: str, schedule, emit=None, on_disconnect: Optional[Callable[[], None]] = None,
                 typing_timeout: float = 2.0, disconnect_grace: float = 3.0, clock=datetime.now):
        self.nickname = nickname
        self.identity = PeerIdentity()
        self.messages: List[ChatMessage] = []
        self.peer_is_typing = False
        self.channel = None

        self._schedule = schedule
        self._emit = emit or (lambda event_type, data=None: None)
        self._on_disconnect = on_disconnect
        self._typing_timeout = typing_timeout
        self._disconnect_grace = disconnect_grace
        self._clock = clock
        self._typing_timer = None
        self._grace_timer = None
        self._disconnect_fired = False

    @property
    def peer_nickname(self) -> str:
        return self.identity.peer_nickname

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.ready_state == OPEN

    def _append(self, origin: Origin, text: str) -> ChatMessage:
        message = ChatMessage(origin=origin, text=text, timestamp=self._clock())
        self.messages.append(message)
        self._emit("MESSAGE", message)
        return message

    def _set_typing(self, value: bool):
        if self.peer_is_typing != value:
            self.peer_is_typing = value
            self._emit("TYPING", value)

    def _cancel_typing_timer(self):
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _send(self, envelope) -> bool:
        if not self.channel_open:
            return False
        self.channel.send(encode_envelope(envelope))
        return True

    # Channel lifecycle

    def on_channel_open(self, channel):
        self.channel = channel
        self._send(NicknameEnvelope(self.nickname))

    def on_channel_closed(self):
        self._cancel_typing_timer()
        self._set_typing(False)
        self._append(Origin.SYSTEM, f"{self.peer_nickname} has disconnected.")
        if self._grace_timer is None:
            self._grace_timer = self._schedule(self._disconnect_grace, self._grace_elapsed)

    def _grace_elapsed(self):
        self._grace_timer = None
        if self._disconnect_fired:
            return
        self._disconnect_fired = True
        if self._on_disconnect:
            self._on_disconnect()

    def handle_message(self, raw):
        envelope = decode_envelope(raw)
        if envelope is None:
            logger.debug("Dropping unrecognised envelope")
            return

        if isinstance(envelope, NicknameEnvelope):
            self.identity.peer_nickname = envelope.name
            self._append(Origin.SYSTEM, f"{envelope.name} has joined.")
        elif isinstance(envelope, ChatEnvelope):
            self._cancel_typing_timer()
            self._set_typing(False)
            message = self._append(Origin.PEER, envelope.message)
            self._emit("NOTIFY", message)
        elif isinstance(envelope, TypingEnvelope):
            self._cancel_typing_timer()
            self._set_typing(True)
            self._typing_timer = self._schedule(self._typing_timeout, self._typing_expired)

    def _typing_expired(self):
        self._typing_timer = None
        self._set_typing(False)

    # Outbound user actions

    def send_chat_message(self, text: str) -> bool:
        text = (text or "").strip()
        if not text or not self.channel_open:
            return False
        self._send(ChatEnvelope(text))
        self._append(Origin.SELF, text)
        return True

    def notify_typing(self) -> bool:
        return self._send(TypingEnvelope())

    def cancel_timers(self):
        self._cancel_typing_timer()
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

"""
Envelopes exchanged over the data channel.

Each envelope travels as one JSON text message discriminated by its "type"
field. Anything that does not decode to a known envelope is dropped by the
receiver so that newer peers can add envelope types.
"""

import json
from dataclasses import dataclass
from typing import Optional, Union

NICKNAME = "nickname"
CHAT = "chat"
TYPING = "typing"


@dataclass(frozen=True)
class NicknameEnvelope:
    name: str
    kind = NICKNAME


@dataclass(frozen=True)
class ChatEnvelope:
    message: str
    kind = CHAT


@dataclass(frozen=True)
class TypingEnvelope:
    kind = TYPING


Envelope = Union[NicknameEnvelope, ChatEnvelope, TypingEnvelope]


def encode_envelope(envelope: Envelope) -> str:
    if isinstance(envelope, NicknameEnvelope):
        payload = {"type": NICKNAME, "name": envelope.name}
    elif isinstance(envelope, ChatEnvelope):
        payload = {"type": CHAT, "message": envelope.message}
    elif isinstance(envelope, TypingEnvelope):
        payload = {"type": TYPING}
    else:
        raise TypeError(f"Not an envelope: {envelope!r}")
    return json.dumps(payload)


def decode_envelope(raw) -> Optional[Envelope]:
    """Returns the envelope carried by `raw`, or None if it is malformed or unknown."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    kind = data.get("type")
    if kind == NICKNAME:
        name = data.get("name")
        return NicknameEnvelope(name) if isinstance(name, str) else None
    if kind == CHAT:
        message = data.get("message")
        return ChatEnvelope(message) if isinstance(message, str) else None
    if kind == TYPING:
        return TypingEnvelope()
    return None

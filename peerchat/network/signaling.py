"""
Signaling store interface and an in-process implementation.

A session record holds the offer and answer descriptions plus two append-only
candidate lists, one per role. Subscribers receive the current state as soon
as they subscribe and one callback per change afterwards.
"""

import logging
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from peerchat.utils.error_codes import FieldConflict, RecordNotFound

logger = logging.getLogger(__name__)

OFFER = "offer"
ANSWER = "answer"
RECORD_FIELDS = (OFFER, ANSWER)

INITIATOR_CANDIDATES = "initiator_candidates"
RESPONDER_CANDIDATES = "responder_candidates"
CANDIDATE_LISTS = (INITIATOR_CANDIDATES, RESPONDER_CANDIDATES)

_ID_ALPHABET = string.ascii_letters + string.digits
ID_LENGTH = 20


def generate_record_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(ID_LENGTH))


@dataclass(frozen=True)
class SessionRecord:
    id: str
    offer: Optional[dict] = None
    answer: Optional[dict] = None

    def to_dict(self) -> dict:
        return {"id": self.id, OFFER: self.offer, ANSWER: self.answer}

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        return cls(id=data["id"], offer=data.get(OFFER), answer=data.get(ANSWER))


RecordCallback = Callable[[Optional[SessionRecord]], None]
ItemCallback = Callable[[dict], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle returned by the subscribe calls; cancel() is idempotent."""

    def __init__(self, on_cancel: Callable[[], None]):
        self._on_cancel = on_cancel
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        self._on_cancel()


class SignalingClient(ABC):
    """
    Capability used by the handshake to exchange descriptions and candidates.

    Implementations raise SignalingUnavailable when the store cannot be
    reached and RecordNotFound when the addressed record does not exist.
    """

    @abstractmethod
    async def create_record(self) -> str:
        ...

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[SessionRecord]:
        ...

    @abstractmethod
    async def set_field(self, record_id: str, field_name: str, value: dict):
        ...

    @abstractmethod
    async def append_to_list(self, record_id: str, list_name: str, item: dict):
        ...

    @abstractmethod
    async def subscribe_record(self, record_id: str, on_change: RecordCallback,
                               on_error: Optional[ErrorCallback] = None) -> Subscription:
        ...

    @abstractmethod
    async def subscribe_list(self, record_id: str, list_name: str, on_item_added: ItemCallback,
                             on_error: Optional[ErrorCallback] = None) -> Subscription:
        ...

    @abstractmethod
    async def delete_record(self, record_id: str):
        ...

    async def close(self):
        pass


def _check_field(field_name: str):
    if field_name not in RECORD_FIELDS:
        raise ValueError(f"Unknown record field: {field_name!r}")


def _check_list(list_name: str):
    if list_name not in CANDIDATE_LISTS:
        raise ValueError(f"Unknown candidate list: {list_name!r}")


class _StoredRecord:
    def __init__(self, record_id: str):
        self.id = record_id
        self.fields: Dict[str, dict] = {}
        self.lists: Dict[str, List[dict]] = {name: [] for name in CANDIDATE_LISTS}
        self.record_listeners: List[RecordCallback] = []
        self.list_listeners: Dict[str, List[ItemCallback]] = {name: [] for name in CANDIDATE_LISTS}

    def snapshot(self) -> SessionRecord:
        return SessionRecord(id=self.id, offer=self.fields.get(OFFER), answer=self.fields.get(ANSWER))


class InMemorySignalingStore(SignalingClient):
    """
    Signaling store kept in process memory.

    Used directly when both peers share a process (tests, demos) and as the
    backing store of the websocket signaling server. Callbacks run
    synchronously inside the mutating call.
    """

    def __init__(self, id_factory: Callable[[], str] = generate_record_id):
        self._records: Dict[str, _StoredRecord] = {}
        self._id_factory = id_factory

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def _require(self, record_id: str) -> _StoredRecord:
        stored = self._records.get(record_id)
        if stored is None:
            raise RecordNotFound(f"No session record {record_id!r}")
        return stored

    def list_items(self, record_id: str, list_name: str) -> List[dict]:
        _check_list(list_name)
        return list(self._require(record_id).lists[list_name])

    async def create_record(self) -> str:
        record_id = self._id_factory()
        while record_id in self._records:
            record_id = self._id_factory()
        self._records[record_id] = _StoredRecord(record_id)
        logger.debug("Created session record %s", record_id)
        return record_id

    async def get_record(self, record_id: str) -> Optional[SessionRecord]:
        stored = self._records.get(record_id)
        return stored.snapshot() if stored else None

    async def set_field(self, record_id: str, field_name: str, value: dict):
        _check_field(field_name)
        stored = self._require(record_id)
        if stored.fields.get(field_name) is not None:
            raise FieldConflict(f"Field {field_name!r} of {record_id!r} is already set")
        stored.fields[field_name] = value
        snapshot = stored.snapshot()
        for callback in list(stored.record_listeners):
            callback(snapshot)

    async def append_to_list(self, record_id: str, list_name: str, item: dict):
        _check_list(list_name)
        stored = self._require(record_id)
        stored.lists[list_name].append(item)
        for callback in list(stored.list_listeners[list_name]):
            callback(item)

    async def subscribe_record(self, record_id, on_change, on_error=None) -> Subscription:
        stored = self._require(record_id)
        stored.record_listeners.append(on_change)

        def _remove():
            if on_change in stored.record_listeners:
                stored.record_listeners.remove(on_change)

        on_change(stored.snapshot())
        return Subscription(_remove)

    async def subscribe_list(self, record_id, list_name, on_item_added, on_error=None) -> Subscription:
        _check_list(list_name)
        stored = self._require(record_id)
        listeners = stored.list_listeners[list_name]
        listeners.append(on_item_added)

        def _remove():
            if on_item_added in listeners:
                listeners.remove(on_item_added)

        for item in list(stored.lists[list_name]):
            on_item_added(item)
        return Subscription(_remove)

    async def delete_record(self, record_id: str):
        stored = self._records.pop(record_id, None)
        if stored is None:
            raise RecordNotFound(f"No session record {record_id!r}")
        logger.debug("Deleted session record %s", record_id)
        listeners = list(stored.record_listeners)
        stored.record_listeners.clear()
        for name in CANDIDATE_LISTS:
            stored.list_listeners[name].clear()
        for callback in listeners:
            callback(None)

"""
Offer/answer/candidate exchange for one side of a connection attempt.

The controller never decides on its own that the connection is ready: the
transport's channel-open event does. Everything arriving from the signaling
store or the transport is posted back through `post(handler, *args)` so the
owning session runs each handler to completion, one at a time.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

from peerchat.network.rtc import SessionDescription
from peerchat.network.signaling import (
    ANSWER,
    INITIATOR_CANDIDATES,
    OFFER,
    RESPONDER_CANDIDATES,
)
from peerchat.utils.error_codes import HandshakeFailed

logger = logging.getLogger(__name__)


class Role(Enum):
    INITIATOR = auto()
    RESPONDER = auto()


class HandshakePhase(Enum):
    IDLE = auto()
    DESCRIPTION_EXCHANGED = auto()
    CANDIDATES_FLOWING = auto()
    READY = auto()
    FAILED = auto()


@dataclass
class HandshakeState:
    role: Role
    phase: HandshakePhase = HandshakePhase.IDLE
    remote_description_set: bool = False


def candidate_key(candidate: dict) -> str:
    return json.dumps(candidate, sort_keys=True)


class HandshakeController:
    def __init__(self, signaling, connection, records, post, spawn,
                 on_channel, on_failed, on_connection_lost=None, on_phase=None, channel_label="chat"):
        self.signaling = signaling
        self.connection = connection
        self.records = records
        self.state: Optional[HandshakeState] = None
        self.record_id: Optional[str] = None
        self.subscriptions = []

        self._post = post
        self._spawn = spawn
        self._on_channel = on_channel
        self._on_failed = on_failed
        self._on_connection_lost = on_connection_lost
        self._on_phase = on_phase
        self._channel_label = channel_label
        self._pending_candidates: List[dict] = []
        self._seen_candidates = set()
        self._answer_pending = False
        self._local_published = False

    @property
    def phase(self) -> Optional[HandshakePhase]:
        return self.state.phase if self.state else None

    @property
    def ready(self) -> bool:
        return self.phase is HandshakePhase.READY

    def _set_phase(self, phase: HandshakePhase):
        self.state.phase = phase
        logger.debug("Handshake for session %s is now %s", self.record_id, phase.name)
        if self._on_phase:
            self._on_phase(phase)

    def _local_list(self) -> str:
        return INITIATOR_CANDIDATES if self.state.role is Role.INITIATOR else RESPONDER_CANDIDATES

    def _attach_transport_listeners(self):
        self.connection.on_local_candidate(lambda candidate: self._post(self.handle_local_candidate, candidate))
        self.connection.on_failure(lambda reason: self._post(self.handle_connection_failed, reason))

    def _on_subscription_error(self, error):
        self._post(self.handle_signaling_error, error)

    async def begin_as_initiator(self) -> str:
        self.record_id = await self.records.create()
        self.state = HandshakeState(role=Role.INITIATOR)
        logger.info("Created session %s as initiator", self.record_id)

        self._attach_transport_listeners()
        self._on_channel(self.connection.create_data_channel(self._channel_label))

        offer = await self.connection.create_offer()
        await self.connection.set_local_description(offer)
        await self.signaling.set_field(self.record_id, OFFER, self.connection.local_description.to_dict())
        self._local_published = True

        self.subscriptions.append(await self.signaling.subscribe_record(
            self.record_id,
            lambda record: self._post(self.handle_record_changed, record),
            self._on_subscription_error,
        ))
        self.subscriptions.append(await self.signaling.subscribe_list(
            self.record_id, RESPONDER_CANDIDATES,
            lambda candidate: self._post(self.handle_remote_candidate, candidate),
            self._on_subscription_error,
        ))
        return self.record_id

    async def join_as_responder(self, session_id: str):
        record = await self.records.lookup(session_id)
        self.record_id = record.id
        self.state = HandshakeState(role=Role.RESPONDER)
        logger.info("Joining session %s as responder", self.record_id)

        self._attach_transport_listeners()
        self.connection.on_data_channel(lambda channel: self._post(self._on_channel, channel))

        await self.connection.set_remote_description(SessionDescription.from_dict(record.offer))
        self.handle_remote_description_set()

        answer = await self.connection.create_answer()
        await self.connection.set_local_description(answer)
        await self.signaling.set_field(self.record_id, ANSWER, self.connection.local_description.to_dict())
        self._local_published = True
        self._maybe_exchanged()

        self.subscriptions.append(await self.signaling.subscribe_list(
            self.record_id, INITIATOR_CANDIDATES,
            lambda candidate: self._post(self.handle_remote_candidate, candidate),
            self._on_subscription_error,
        ))

    # Handlers, run one at a time by the owning session

    def handle_record_changed(self, record):
        if self.phase is HandshakePhase.FAILED:
            return
        if record is None:
            if not self.ready:
                self.fail("Session record was deleted before the channel opened")
            return
        if self.state.remote_description_set or self._answer_pending or record.answer is None:
            return
        self._answer_pending = True
        logger.info("Answer received for session %s", self.record_id)
        self._spawn(self._apply_answer(SessionDescription.from_dict(record.answer)), fatal=True)

    async def _apply_answer(self, answer: SessionDescription):
        await self.connection.set_remote_description(answer)
        self._post(self.handle_remote_description_set)

    def handle_remote_description_set(self):
        self.state.remote_description_set = True
        self._answer_pending = False
        self._maybe_exchanged()
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug("Flushing %d queued candidates", len(pending))
        for candidate in pending:
            self._apply_candidate(candidate)

    def _maybe_exchanged(self):
        if (self.state.phase is HandshakePhase.IDLE
                and self.state.remote_description_set and self._local_published):
            self._set_phase(HandshakePhase.DESCRIPTION_EXCHANGED)

    def handle_remote_candidate(self, candidate):
        if not candidate or self.phase is HandshakePhase.FAILED:
            return
        key = candidate_key(candidate)
        if key in self._seen_candidates:
            return
        self._seen_candidates.add(key)
        if not self.state.remote_description_set:
            self._pending_candidates.append(candidate)
            return
        self._apply_candidate(candidate)

    def _apply_candidate(self, candidate):
        if self.state.phase is HandshakePhase.DESCRIPTION_EXCHANGED:
            self._set_phase(HandshakePhase.CANDIDATES_FLOWING)
        self._spawn(self.connection.add_remote_candidate(candidate), fatal=False)

    def handle_local_candidate(self, candidate):
        if not candidate or self.record_id is None:
            return
        self._spawn(self.signaling.append_to_list(self.record_id, self._local_list(), candidate), fatal=False)

    def handle_channel_open(self):
        if self.phase is HandshakePhase.FAILED:
            return
        self._set_phase(HandshakePhase.READY)
        logger.info("Data channel open for session %s", self.record_id)

    def handle_connection_failed(self, reason):
        if self.ready:
            if self._on_connection_lost:
                self._on_connection_lost()
            return
        self.fail(f"Transport failure: {reason}")

    def handle_signaling_error(self, error):
        if self.ready:
            logger.warning("Signaling subscription error after connect (ignored): %s", error)
            return
        self.fail(f"Signaling subscription failed: {error}")

    def fail(self, reason: str, code=None) -> Optional[HandshakeFailed]:
        if self.phase in (HandshakePhase.FAILED, HandshakePhase.READY):
            return None
        if self.state is not None:
            self._set_phase(HandshakePhase.FAILED)
        error = HandshakeFailed(reason, code=code)
        logger.warning("Handshake for session %s failed: %s", self.record_id, reason)
        self._on_failed(error)
        return error

    def cancel_subscriptions(self):
        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()

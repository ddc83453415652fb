import logging

from peerchat.network.signaling import SessionRecord
from peerchat.utils.error_codes import (
    ErrorCodes,
    RecordNotFound,
    SessionNotFound,
    SignalingUnavailable,
)

logger = logging.getLogger(__name__)


class SessionRecordLifecycle:
    """Creates, looks up and removes the signaling record behind one handshake."""

    def __init__(self, signaling):
        self.signaling = signaling

    async def create(self) -> str:
        try:
            return await self.signaling.create_record()
        except SignalingUnavailable:
            raise
        except Exception as e:
            raise SignalingUnavailable(f"Could not create session record: {e}")

    async def lookup(self, record_id: str) -> SessionRecord:
        """
        Returns the record a responder may join.

        Raises SessionNotFound when the record is missing, carries no offer,
        or already has an answer from another responder.
        """
        if not record_id or not record_id.strip():
            raise SessionNotFound("No session id given")
        record = await self.signaling.get_record(record_id.strip())
        if record is None or record.offer is None:
            raise SessionNotFound(f"Session {record_id!r} does not exist")
        if record.answer is not None:
            raise SessionNotFound(f"Session {record_id!r} already has a peer", code=ErrorCodes.ERR_SESSION_TAKEN)
        return record

    async def teardown(self, record_id, channel=None, connection=None):
        """
        Deletes the record, then closes the channel and the connection, in
        that order. A record that is already gone counts as deleted and
        signaling outages are logged; closing always happens.
        """
        try:
            if record_id:
                await self.signaling.delete_record(record_id)
                logger.info("Deleted session record %s", record_id)
        except RecordNotFound:
            logger.debug("Session record %s already deleted", record_id)
        except SignalingUnavailable as e:
            logger.warning("Could not delete session record %s: %s", record_id, e)
        finally:
            if channel is not None:
                channel.close()
            if connection is not None:
                await connection.close()

import asyncio
import itertools
import json
import logging

import websockets

from peerchat.network.signaling import SessionRecord, SignalingClient, Subscription
from peerchat.utils.error_codes import FieldConflict, RecordNotFound, SignalingUnavailable

logger = logging.getLogger(__name__)

_ERRORS = {
    "not_found": RecordNotFound,
    "conflict": FieldConflict,
}


class WebSocketSignalingClient(SignalingClient):
    """
    Signaling client talking to peerchat.signaling_server.

    Requests carry a request id ("rid") answered by exactly one reply;
    subscription changes arrive as pushed events tagged with the
    client-chosen subscription id ("sub").
    """

    def __init__(self, uri="ws://localhost:8765"):
        self.uri = uri
        self.websocket = None
        self._listener = None
        self._closing = False
        self._request_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._pending = {}
        # sub id -> (on_event, on_error)
        self._subscriptions = {}

    async def connect(self):
        try:
            self.websocket = await websockets.connect(self.uri)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise SignalingUnavailable(f"Could not connect to signaling server at {self.uri}: {e}")
        self._listener = asyncio.create_task(self.listen())
        logger.info("Connected to signaling server %s", self.uri)

    async def listen(self):
        try:
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed signaling frame")
                    continue
                if "rid" in data:
                    future = self._pending.pop(data["rid"], None)
                    if future and not future.done():
                        future.set_result(data)
                elif "sub" in data:
                    entry = self._subscriptions.get(data["sub"])
                    if entry:
                        entry[0](data)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._connection_lost()

    def _connection_lost(self):
        error = SignalingUnavailable("Signaling connection lost")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        if self._closing:
            return
        logger.warning("Signaling connection to %s lost", self.uri)
        for _, on_error in subscriptions:
            if on_error:
                on_error(error)

    async def _send(self, payload: dict):
        if self.websocket is None:
            raise SignalingUnavailable("Not connected to a signaling server")
        try:
            await self.websocket.send(json.dumps(payload))
        except websockets.exceptions.ConnectionClosed:
            raise SignalingUnavailable("Signaling connection closed")

    async def _request(self, op: str, **fields) -> dict:
        rid = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[rid] = future
        try:
            await self._send({"op": op, "rid": rid, **fields})
            reply = await future
        finally:
            self._pending.pop(rid, None)
        if not reply.get("ok"):
            error = reply.get("error", "error")
            exc_type = _ERRORS.get(error, SignalingUnavailable)
            raise exc_type(reply.get("message") or error)
        return reply

    async def create_record(self) -> str:
        reply = await self._request("create")
        return reply["id"]

    async def get_record(self, record_id):
        reply = await self._request("get", id=record_id)
        record = reply.get("record")
        return SessionRecord.from_dict(record) if record else None

    async def set_field(self, record_id, field_name, value):
        await self._request("set", id=record_id, field=field_name, value=value)

    async def append_to_list(self, record_id, list_name, item):
        await self._request("append", id=record_id, list=list_name, item=item)

    async def delete_record(self, record_id):
        await self._request("delete", id=record_id)

    async def _subscribe(self, op, on_event, on_error, **fields) -> Subscription:
        sub = next(self._subscription_ids)
        # Registered before the request: the server pushes the initial state ahead of its reply
        self._subscriptions[sub] = (on_event, on_error)
        try:
            await self._request(op, sub=sub, **fields)
        except Exception:
            self._subscriptions.pop(sub, None)
            raise

        def _cancel():
            if self._subscriptions.pop(sub, None) is not None and self.websocket is not None:
                asyncio.ensure_future(self._unsubscribe(sub))

        return Subscription(_cancel)

    async def _unsubscribe(self, sub):
        try:
            await self._request("unsubscribe", sub=sub)
        except Exception as e:
            logger.debug("Unsubscribe %s failed: %s", sub, e)

    async def subscribe_record(self, record_id, on_change, on_error=None):
        def on_event(data):
            record = data.get("record")
            on_change(SessionRecord.from_dict(record) if record else None)

        return await self._subscribe("subscribe_record", on_event, on_error, id=record_id)

    async def subscribe_list(self, record_id, list_name, on_item_added, on_error=None):
        def on_event(data):
            on_item_added(data["item"])

        return await self._subscribe("subscribe_list", on_event, on_error, id=record_id, list=list_name)

    async def close(self):
        self._closing = True
        if self.websocket:
            await self.websocket.close()
        if self._listener:
            await self._listener

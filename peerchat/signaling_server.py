import argparse
import asyncio
import json
import logging

import websockets

from peerchat.config import Config, configure_logging
from peerchat.network.signaling import InMemorySignalingStore
from peerchat.security.rate_limiter import RateLimiter
from peerchat.utils.error_codes import FieldConflict, RecordNotFound

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    pass


class SignalingServer:
    """
    Exposes one InMemorySignalingStore to websocket clients.

    Each connection gets its own outbound queue so replies and pushed
    subscription events leave in the order they were produced.
    """

    def __init__(self, store=None, rate_limit=100):
        self.store = store or InMemorySignalingStore()
        self.rate_limit = rate_limit

    async def handler(self, websocket):
        outbox = asyncio.Queue()
        subscriptions = {}
        limiter = RateLimiter(max_calls=self.rate_limit, period=1.0)
        writer = asyncio.create_task(self._write(websocket, outbox))
        logger.info("Client connected: %s", websocket.remote_address)
        try:
            async for message in websocket:
                try:
                    request = json.loads(message)
                    if not isinstance(request, dict):
                        raise ValueError("request must be an object")
                except ValueError:
                    outbox.put_nowait({"rid": None, "ok": False, "error": "bad_request"})
                    continue

                rid = request.get("rid")
                if not limiter.check():
                    outbox.put_nowait({"rid": rid, "ok": False, "error": "rate_limited",
                                       "retry_after": limiter.retry_after()})
                    continue
                try:
                    reply = await self.dispatch(request, outbox, subscriptions)
                except RecordNotFound as e:
                    reply = {"ok": False, "error": "not_found", "message": e.message}
                except FieldConflict as e:
                    reply = {"ok": False, "error": "conflict", "message": e.message}
                except (BadRequest, KeyError, ValueError) as e:
                    reply = {"ok": False, "error": "bad_request", "message": str(e)}
                reply["rid"] = rid
                outbox.put_nowait(reply)

        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            for subscription in subscriptions.values():
                subscription.cancel()
            subscriptions.clear()
            writer.cancel()
            logger.info("Client disconnected: %s", websocket.remote_address)

    async def _write(self, websocket, outbox):
        try:
            while True:
                payload = await outbox.get()
                await websocket.send(json.dumps(payload))
        except websockets.exceptions.ConnectionClosed:
            pass

    async def dispatch(self, request, outbox, subscriptions) -> dict:
        op = request.get("op")
        store = self.store

        if op == "create":
            return {"ok": True, "id": await store.create_record()}
        if op == "get":
            record = await store.get_record(request["id"])
            return {"ok": True, "record": record.to_dict() if record else None}
        if op == "set":
            await store.set_field(request["id"], request["field"], request["value"])
            return {"ok": True}
        if op == "append":
            await store.append_to_list(request["id"], request["list"], request["item"])
            return {"ok": True}
        if op == "delete":
            await store.delete_record(request["id"])
            return {"ok": True}
        if op == "subscribe_record":
            sub = request["sub"]

            def on_change(record):
                outbox.put_nowait({"event": "record", "sub": sub,
                                   "record": record.to_dict() if record else None})

            subscriptions[sub] = await store.subscribe_record(request["id"], on_change)
            return {"ok": True, "sub": sub}
        if op == "subscribe_list":
            sub = request["sub"]

            def on_item(item):
                outbox.put_nowait({"event": "item", "sub": sub, "item": item})

            subscriptions[sub] = await store.subscribe_list(request["id"], request["list"], on_item)
            return {"ok": True, "sub": sub}
        if op == "unsubscribe":
            subscription = subscriptions.pop(request["sub"], None)
            if subscription:
                subscription.cancel()
            return {"ok": True}
        raise BadRequest(f"Unknown op {op!r}")


async def serve(config: Config):
    server = SignalingServer(rate_limit=config.server_rate_limit)
    logger.info("Starting signaling server on %s:%s", config.server_host, config.server_port)
    async with websockets.serve(server.handler, config.server_host, config.server_port):
        await asyncio.Future()  # run forever


def main():
    parser = argparse.ArgumentParser(description="peerchat signaling server")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    config = Config.from_env().with_overrides(server_host=args.host, server_port=args.port)
    configure_logging(args.log_level or "INFO")
    print(f"Starting peerchat signaling server on {config.server_host}:{config.server_port}")
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

"""
Tests for the websocket signaling server and client

Both run over a real localhost socket; the transport under the chat
sessions is still the in-process fake.
"""

import pytest
import pytest_asyncio
import websockets

from fakes import FakeNetwork

from peerchat.config import Config
from peerchat.core.session_manager import Session
from peerchat.core.state_machine import SessionState
from peerchat.network.signaling import ANSWER, OFFER, RESPONDER_CANDIDATES
from peerchat.network.transport import WebSocketSignalingClient
from peerchat.signaling_server import SignalingServer
from peerchat.utils.error_codes import FieldConflict, RecordNotFound, SignalingUnavailable


@pytest_asyncio.fixture
async def server():
    signaling_server = SignalingServer(rate_limit=1000)
    async with websockets.serve(signaling_server.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        signaling_server.uri = f"ws://127.0.0.1:{port}"
        yield signaling_server


@pytest_asyncio.fixture
async def client(server):
    signaling = WebSocketSignalingClient(server.uri)
    await signaling.connect()
    yield signaling
    await signaling.close()


@pytest.mark.asyncio
async def test_record_round_trip(client, server):
    record_id = await client.create_record()
    assert record_id in server.store

    await client.set_field(record_id, OFFER, {"type": "offer", "sdp": "v=0"})
    record = await client.get_record(record_id)
    assert record.offer == {"type": "offer", "sdp": "v=0"}
    assert record.answer is None

    await client.append_to_list(record_id, RESPONDER_CANDIDATES, {"candidate": "a"})
    assert server.store.list_items(record_id, RESPONDER_CANDIDATES) == [{"candidate": "a"}]

    await client.delete_record(record_id)
    assert await client.get_record(record_id) is None


@pytest.mark.asyncio
async def test_errors_map_to_exceptions(client):
    with pytest.raises(RecordNotFound):
        await client.delete_record("missing")
    record_id = await client.create_record()
    await client.set_field(record_id, OFFER, {"type": "offer", "sdp": "v=0"})
    with pytest.raises(FieldConflict):
        await client.set_field(record_id, OFFER, {"type": "offer", "sdp": "v=1"})
    with pytest.raises(SignalingUnavailable):
        await client.set_field(record_id, "status", {})


@pytest.mark.asyncio
async def test_subscriptions_push_initial_state_and_changes(client, until):
    record_id = await client.create_record()
    await client.append_to_list(record_id, RESPONDER_CANDIDATES, {"candidate": "a"})

    snapshots, items = [], []
    record_sub = await client.subscribe_record(record_id, snapshots.append)
    await client.subscribe_list(record_id, RESPONDER_CANDIDATES, items.append)
    assert snapshots[0].answer is None
    assert items == [{"candidate": "a"}]

    await client.set_field(record_id, ANSWER, {"type": "answer", "sdp": "v=0"})
    await client.append_to_list(record_id, RESPONDER_CANDIDATES, {"candidate": "b"})
    await until(lambda: len(snapshots) == 2 and len(items) == 2)
    assert snapshots[1].answer == {"type": "answer", "sdp": "v=0"}

    record_sub.cancel()
    await client.delete_record(record_id)
    await client.create_record()
    assert len(snapshots) == 2


@pytest.mark.asyncio
async def test_rate_limit_rejects_excess_requests():
    signaling_server = SignalingServer(rate_limit=2)
    async with websockets.serve(signaling_server.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        client = WebSocketSignalingClient(f"ws://127.0.0.1:{port}")
        await client.connect()
        await client.create_record()
        await client.create_record()
        with pytest.raises(SignalingUnavailable, match="rate_limited"):
            await client.create_record()
        await client.close()


@pytest.mark.asyncio
async def test_connection_loss_reaches_subscribers(until):
    signaling_server = SignalingServer()
    errors = []
    async with websockets.serve(signaling_server.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        client = WebSocketSignalingClient(f"ws://127.0.0.1:{port}")
        await client.connect()
        record_id = await client.create_record()
        await client.subscribe_record(record_id, lambda record: None, errors.append)

    await until(lambda: errors)
    assert isinstance(errors[0], SignalingUnavailable)
    with pytest.raises(SignalingUnavailable):
        await client.create_record()
    await client.close()


@pytest.mark.asyncio
async def test_connect_to_nothing_is_unavailable():
    client = WebSocketSignalingClient("ws://127.0.0.1:9")
    with pytest.raises(SignalingUnavailable):
        await client.connect()


@pytest.mark.asyncio
async def test_two_sessions_chat_through_the_server(server, until):
    network = FakeNetwork()
    config = Config(typing_timeout=0.05, disconnect_grace=0.1, ice_servers=())
    alice_signaling = WebSocketSignalingClient(server.uri)
    bob_signaling = WebSocketSignalingClient(server.uri)
    await alice_signaling.connect()
    await bob_signaling.connect()

    alice = Session("Alice", alice_signaling, network.factory, config)
    bob = Session("Bob", bob_signaling, network.factory, config)
    session_id = await alice.begin_as_initiator()
    await bob.join_as_responder(session_id)
    await until(lambda: alice.state is SessionState.CHATTING and bob.state is SessionState.CHATTING)

    bob.send_chat_message("hello over the relay")
    await until(lambda: alice.messages and alice.messages[-1].text == "hello over the relay")

    await alice.disconnect()
    await bob.wait_closed()
    assert session_id not in server.store

    await alice_signaling.close()
    await bob_signaling.close()

import pytest

from peerchat.network.signaling import (
    ANSWER,
    ID_LENGTH,
    INITIATOR_CANDIDATES,
    OFFER,
    RESPONDER_CANDIDATES,
    InMemorySignalingStore,
)
from peerchat.utils.error_codes import FieldConflict, RecordNotFound

OFFER_DESC = {"type": "offer", "sdp": "v=0"}


@pytest.mark.asyncio
async def test_create_generates_alphanumeric_id(store):
    record_id = await store.create_record()
    assert len(record_id) == ID_LENGTH and record_id.isalnum()
    record = await store.get_record(record_id)
    assert (record.id, record.offer, record.answer) == (record_id, None, None)


@pytest.mark.asyncio
async def test_custom_id_factory():
    store = InMemorySignalingStore(id_factory=lambda: "abc123")
    assert await store.create_record() == "abc123"


@pytest.mark.asyncio
async def test_get_missing_returns_none(store):
    assert await store.get_record("nope") is None


@pytest.mark.asyncio
async def test_fields_are_written_once(store):
    record_id = await store.create_record()
    await store.set_field(record_id, OFFER, OFFER_DESC)
    with pytest.raises(FieldConflict):
        await store.set_field(record_id, OFFER, {"type": "offer", "sdp": "other"})
    assert (await store.get_record(record_id)).offer == OFFER_DESC


@pytest.mark.asyncio
async def test_unknown_field_and_list_are_rejected(store):
    record_id = await store.create_record()
    with pytest.raises(ValueError):
        await store.set_field(record_id, "status", {})
    with pytest.raises(ValueError):
        await store.append_to_list(record_id, "candidates", {})


@pytest.mark.asyncio
async def test_writes_to_missing_record_raise(store):
    with pytest.raises(RecordNotFound):
        await store.set_field("nope", OFFER, OFFER_DESC)
    with pytest.raises(RecordNotFound):
        await store.append_to_list("nope", INITIATOR_CANDIDATES, {"candidate": "x"})
    with pytest.raises(RecordNotFound):
        await store.delete_record("nope")


@pytest.mark.asyncio
async def test_record_subscription_gets_snapshot_then_changes(store):
    record_id = await store.create_record()
    await store.set_field(record_id, OFFER, OFFER_DESC)
    snapshots = []
    subscription = await store.subscribe_record(record_id, snapshots.append)

    await store.set_field(record_id, ANSWER, {"type": "answer", "sdp": "v=0"})
    assert [s.answer for s in snapshots] == [None, {"type": "answer", "sdp": "v=0"}]

    subscription.cancel()
    subscription.cancel()
    await store.delete_record(record_id)
    assert len(snapshots) == 2


@pytest.mark.asyncio
async def test_list_subscription_replays_existing_items(store):
    record_id = await store.create_record()
    await store.append_to_list(record_id, RESPONDER_CANDIDATES, {"candidate": "a"})
    items = []
    await store.subscribe_list(record_id, RESPONDER_CANDIDATES, items.append)
    await store.append_to_list(record_id, RESPONDER_CANDIDATES, {"candidate": "b"})
    await store.append_to_list(record_id, INITIATOR_CANDIDATES, {"candidate": "other"})
    assert items == [{"candidate": "a"}, {"candidate": "b"}]


@pytest.mark.asyncio
async def test_duplicate_candidates_are_kept(store):
    record_id = await store.create_record()
    for _ in range(2):
        await store.append_to_list(record_id, INITIATOR_CANDIDATES, {"candidate": "a"})
    assert store.list_items(record_id, INITIATOR_CANDIDATES) == [{"candidate": "a"}] * 2


@pytest.mark.asyncio
async def test_delete_notifies_and_removes_lists(store):
    record_id = await store.create_record()
    await store.append_to_list(record_id, INITIATOR_CANDIDATES, {"candidate": "a"})
    snapshots = []
    await store.subscribe_record(record_id, snapshots.append)
    await store.delete_record(record_id)

    assert snapshots[-1] is None
    assert record_id not in store
    with pytest.raises(RecordNotFound):
        store.list_items(record_id, INITIATOR_CANDIDATES)

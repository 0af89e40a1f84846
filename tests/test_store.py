"""
Tests for the in-memory artifact store.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from convert_service.conversion import ArtifactStore, NotFoundError


def test_put_then_get(clock):
    store = ArtifactStore(clock=clock)
    identifier = store.put(b"abc", "image/png", "converted_image.png")

    record = store.get(identifier)
    assert record.identifier == identifier
    assert record.content == b"abc"
    assert record.content_type == "image/png"
    assert record.display_name == "converted_image.png"
    assert record.created_at == clock.now


def test_unknown_identifier_is_not_found(clock):
    store = ArtifactStore(clock=clock)
    with pytest.raises(NotFoundError):
        store.get("1700000000000-neverissued")


def test_retrieval_survives_grace_period_then_disappears(clock):
    store = ArtifactStore(grace_sec=60, clock=clock)
    identifier = store.put(b"data", "application/pdf", "compressed_document.pdf")

    store.get(identifier)
    store.schedule_delete(identifier)

    clock.advance(30)
    assert store.get(identifier).content == b"data"

    clock.advance(31)
    with pytest.raises(NotFoundError):
        store.get(identifier)
    assert store.sweep() == 1
    assert identifier not in store


def test_schedule_delete_never_extends_deadline(clock):
    store = ArtifactStore(grace_sec=60, clock=clock)
    identifier = store.put(b"x", "image/gif", "converted_image.gif")

    store.schedule_delete(identifier)
    clock.advance(50)
    store.schedule_delete(identifier)
    clock.advance(11)

    with pytest.raises(NotFoundError):
        store.get(identifier)


def test_expired_records_are_never_served(clock):
    store = ArtifactStore(retention_sec=600, clock=clock)
    identifier = store.put(b"old", "image/png", "converted_image.png")

    clock.advance(601)
    with pytest.raises(NotFoundError):
        store.get(identifier)


def test_sweep_is_idempotent(clock):
    store = ArtifactStore(retention_sec=600, clock=clock)
    store.put(b"1", "image/png", "a.png")
    store.put(b"2", "image/png", "b.png")
    clock.advance(300)
    fresh = store.put(b"3", "image/png", "c.png")
    clock.advance(301)

    assert store.sweep() == 2
    assert store.sweep() == 0
    assert len(store) == 1
    assert fresh in store


def test_put_sweeps_expired_records(clock):
    store = ArtifactStore(retention_sec=600, clock=clock)
    old = store.put(b"1", "image/png", "a.png")
    clock.advance(601)

    store.put(b"2", "image/png", "b.png")
    assert old not in store
    assert len(store) == 1


def test_identifiers_unique_within_same_millisecond(clock):
    store = ArtifactStore(clock=clock)
    ids = {store.put(b"x", "image/png", "x.png") for _ in range(500)}
    assert len(ids) == 500


def test_concurrent_puts_do_not_collide():
    store = ArtifactStore()

    def put_many(n):
        return [store.put(bytes([n % 256]), "image/png", "x.png") for _ in range(50)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        batches = list(pool.map(put_many, range(20)))

    ids = [identifier for batch in batches for identifier in batch]
    assert len(set(ids)) == 1000
    assert len(store) == 1000


def test_janitor_sweeps_in_background(clock):
    store = ArtifactStore(retention_sec=10, sweep_interval=0.01, clock=clock)
    store.put(b"x", "image/png", "x.png")
    clock.advance(11)

    async def scenario():
        await store.start()
        await asyncio.sleep(0.1)
        await store.stop()

    asyncio.run(scenario())
    assert len(store) == 0

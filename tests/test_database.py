"""Tests for the SQLite work queue store."""

import asyncio

import pytest

from conftest import read_lines
from database import InvalidTransitionError, StoreClosedError, WorkQueueStore
from models import IdentifierStatus


@pytest.mark.asyncio
async def test_load_inserts_pending_and_normalizes(store):
    pending = await store.load(["A@Example.com", "b@example.com", " c@example.com "])

    assert pending == 3
    assert sorted(await store.get_by_status(IdentifierStatus.PENDING)) == [
        "a@example.com", "b@example.com", "c@example.com"
    ]


@pytest.mark.asyncio
async def test_load_twice_does_not_duplicate(store):
    await store.load(["a@example.com", "b@example.com"], fresh=True)
    await store.load(["a@example.com", "b@example.com", "A@EXAMPLE.COM"])

    stats = await store.stats()
    assert stats.total == 2
    assert stats.pending == 2


@pytest.mark.asyncio
async def test_incremental_load_keeps_terminal_rows(store):
    await store.load(["a@example.com"], fresh=True)
    await store.update_status("a@example.com", IdentifierStatus.SUCCESS, has_result=True)

    await store.load(["a@example.com", "b@example.com"])

    record = await store.get_record("a@example.com")
    assert record.status == IdentifierStatus.SUCCESS
    assert record.has_result is True
    assert (await store.stats()).pending == 1


@pytest.mark.asyncio
async def test_fresh_load_replaces_previous_contents(store):
    await store.load(["a@example.com", "b@example.com"], fresh=True)
    await store.update_status("a@example.com", IdentifierStatus.SUCCESS, no_result=True)

    pending = await store.load(["c@example.com"], fresh=True)

    assert pending == 1
    stats = await store.stats()
    assert stats.total == 1
    assert stats.success == 0
    assert await store.get_record("a@example.com") is None


@pytest.mark.asyncio
async def test_update_status_and_stats(store):
    await store.load(["a@example.com", "b@example.com", "c@example.com", "d@example.com"], fresh=True)

    assert await store.update_status("a@example.com", IdentifierStatus.SUCCESS, has_result=True)
    assert await store.update_status("b@example.com", IdentifierStatus.SUCCESS, no_result=True)
    assert await store.update_status("c@example.com", IdentifierStatus.FAILED)

    stats = await store.stats()
    assert stats.as_dict() == {"pending": 1, "success": 2, "failed": 1, "has_result": 1, "no_result": 1}
    assert stats.remaining == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status,has_result,no_result", [
    (IdentifierStatus.PENDING, False, False),
    (IdentifierStatus.SUCCESS, True, True),
    (IdentifierStatus.SUCCESS, False, False),
    (IdentifierStatus.FAILED, True, False),
    (IdentifierStatus.FAILED, False, True),
])
async def test_update_status_rejects_invalid_combinations(store, status, has_result, no_result):
    await store.load(["a@example.com"], fresh=True)

    with pytest.raises(InvalidTransitionError):
        await store.update_status("a@example.com", status, has_result=has_result, no_result=no_result)

    record = await store.get_record("a@example.com")
    assert record.status == IdentifierStatus.PENDING


@pytest.mark.asyncio
async def test_terminal_write_happens_once(store):
    await store.load(["a@example.com"], fresh=True)

    assert await store.update_status("a@example.com", IdentifierStatus.SUCCESS, has_result=True)
    assert not await store.update_status("a@example.com", IdentifierStatus.FAILED)
    assert not await store.update_status("unknown@example.com", IdentifierStatus.FAILED)

    record = await store.get_record("a@example.com")
    assert record.status == IdentifierStatus.SUCCESS
    assert record.has_result and not record.no_result


@pytest.mark.asyncio
async def test_concurrent_updates_of_same_identifier_keep_flags_consistent(store):
    await store.load(["a@example.com"], fresh=True)

    outcomes = [
        (IdentifierStatus.SUCCESS, True, False),
        (IdentifierStatus.SUCCESS, False, True),
        (IdentifierStatus.FAILED, False, False),
    ] * 10
    results = await asyncio.gather(*[
        store.update_status("a@example.com", status, has_result=h, no_result=n)
        for status, h, n in outcomes
    ])

    assert results.count(True) == 1
    record = await store.get_record("a@example.com")
    if record.status == IdentifierStatus.SUCCESS:
        assert record.has_result != record.no_result
    else:
        assert record.status == IdentifierStatus.FAILED
        assert not record.has_result and not record.no_result


@pytest.mark.asyncio
async def test_concurrent_updates_of_distinct_identifiers(store):
    identifiers = [f"user{i}@example.com" for i in range(50)]
    await store.load(identifiers, fresh=True)

    results = await asyncio.gather(*[
        store.update_status(i, IdentifierStatus.SUCCESS, no_result=True) for i in identifiers
    ])

    assert all(results)
    stats = await store.stats()
    assert stats.success == 50
    assert stats.no_result == 50


@pytest.mark.asyncio
async def test_reset_failed_to_pending(store):
    await store.load(["a@example.com", "b@example.com", "c@example.com"], fresh=True)
    await store.update_status("a@example.com", IdentifierStatus.FAILED)
    await store.update_status("b@example.com", IdentifierStatus.FAILED)
    await store.update_status("c@example.com", IdentifierStatus.SUCCESS, no_result=True)

    count = await store.reset_failed_to_pending()

    assert count == 2
    stats = await store.stats()
    assert stats.pending == 2
    assert stats.failed == 0
    assert stats.success == 1


@pytest.mark.asyncio
async def test_export_pending_writes_header_and_identifiers(store, tmp_path):
    await store.load(["a@example.com", "b@example.com", "c@example.com"], fresh=True)
    await store.update_status("b@example.com", IdentifierStatus.SUCCESS, no_result=True)
    path = str(tmp_path / "handoff.txt")

    count = await store.export_pending(path)

    assert count == 2
    lines = read_lines(path)
    assert lines[0] == "# Pending identifiers for the next crawler run"
    assert lines[1].startswith("# Exported on: ")
    assert lines[2] == "# Total pending: 2"
    assert lines[3] == ""
    assert sorted(lines[4:]) == ["a@example.com", "c@example.com"]


@pytest.mark.asyncio
async def test_never_opened_store_opens_lazily(tmp_path):
    store = WorkQueueStore(str(tmp_path / "lazy.db"))
    try:
        assert await store.load(["a@example.com"]) == 1
        assert (await store.stats()).pending == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_closed_store_fails_loudly(tmp_path):
    path = str(tmp_path / "closed.db")
    store = WorkQueueStore(path)
    await store.load(["a@example.com"])
    await store.close()

    assert store.is_closed
    with pytest.raises(StoreClosedError):
        await store.stats()
    with pytest.raises(StoreClosedError):
        await store.load(["b@example.com"])
    with pytest.raises(StoreClosedError):
        await store.update_status("a@example.com", IdentifierStatus.FAILED)
    with pytest.raises(StoreClosedError):
        await store.get_by_status(IdentifierStatus.PENDING)
    with pytest.raises(StoreClosedError):
        await store.export_pending(str(tmp_path / "out.txt"))

    # closing twice is harmless and the data survives on disk
    await store.close()
    reopened = WorkQueueStore(path)
    try:
        assert (await reopened.stats()).pending == 1
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_info_and_reset(store, settings):
    await store.load(["a@example.com", "b@example.com"], fresh=True)

    info = await store.info()
    assert info["total_identifiers"] == 2
    assert info["db_path"] == settings.database_path
    assert info["is_closed"] is False

    await store.reset()
    assert (await store.stats()).total == 0

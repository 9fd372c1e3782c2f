import asyncio

import pytest

from mail_dispatch.persistence import Persistence


@pytest.mark.asyncio
async def test_staging_rows_in_insertion_order(persistence):
    first = await persistence.insert_staged("one")
    second = await persistence.insert_staged("two")
    assert second > first

    rows = await persistence.list_staged()
    assert [r["message"] for r in rows] == ["one", "two"]
    assert await persistence.count_staged() == 2

    assert await persistence.delete_staged(first) is True
    assert await persistence.delete_staged(first) is False
    assert [r["id"] for r in await persistence.list_staged()] == [second]


@pytest.mark.asyncio
async def test_init_db_is_idempotent(persistence):
    await persistence.insert_staged("kept")
    await persistence.init_db()
    assert await persistence.count_staged() == 1


@pytest.mark.asyncio
async def test_rates_count_and_prune(persistence):
    await persistence.insert_rate("a@example.com", 100)
    await persistence.insert_rate("a@example.com", 200)
    await persistence.insert_rate("b@example.com", 200)

    assert await persistence.count_rates_since("a@example.com", 100) == 2
    assert await persistence.count_rates_since("a@example.com", 101) == 1
    assert await persistence.count_rates_since("c@example.com", 0) == 0

    assert await persistence.prune_rates_before(150) == 1
    assert await persistence.count_rates_since("a@example.com", 0) == 1


@pytest.mark.asyncio
async def test_transaction_commit_runs_callbacks(persistence):
    calls = []

    async def on_commit():
        calls.append(await persistence.count_staged())

    persistence.on_commit(on_commit)
    async with persistence.transaction():
        assert persistence.in_transaction
        await persistence.insert_staged("msg")
        assert calls == []

    assert not persistence.in_transaction
    assert calls == [1]


@pytest.mark.asyncio
async def test_transaction_rollback_discards_rows(persistence):
    calls = []

    async def on_commit():
        calls.append(True)

    persistence.on_commit(on_commit)
    with pytest.raises(RuntimeError):
        async with persistence.transaction():
            await persistence.insert_staged("msg")
            raise RuntimeError("boom")

    assert not persistence.in_transaction
    assert await persistence.count_staged() == 0
    assert calls == []


@pytest.mark.asyncio
async def test_nested_transactions_commit_once(persistence):
    calls = []

    async def on_commit():
        calls.append(True)

    persistence.on_commit(on_commit)
    async with persistence.transaction():
        async with persistence.transaction():
            await persistence.insert_staged("inner")
        assert persistence.in_transaction
        assert calls == []

    assert calls == [True]
    assert await persistence.count_staged() == 1


@pytest.mark.asyncio
async def test_transaction_is_scoped_to_the_calling_task(persistence):
    opened = asyncio.Event()
    release = asyncio.Event()

    async def unit_of_work():
        async with persistence.transaction():
            await persistence.insert_staged("doomed")
            opened.set()
            await release.wait()
            raise RuntimeError("boom")

    unit = asyncio.create_task(unit_of_work())
    await opened.wait()
    assert not persistence.in_transaction

    outside = asyncio.create_task(persistence.insert_staged("outside"))
    await asyncio.sleep(0.01)
    assert not outside.done()

    release.set()
    with pytest.raises(RuntimeError):
        await unit
    await outside

    assert [r["message"] for r in await persistence.list_staged()] == ["outside"]


@pytest.mark.asyncio
async def test_data_survives_reconnect(tmp_path):
    path = str(tmp_path / "nested" / "mail.db")
    p = Persistence(path)
    await p.init_db()
    await p.insert_staged("persisted")
    await p.close()

    p2 = Persistence(path)
    await p2.init_db()
    assert [r["message"] for r in await p2.list_staged()] == ["persisted"]
    await p2.close()

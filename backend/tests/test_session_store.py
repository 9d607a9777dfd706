"""Versioned session persistence against a temporary SQLite database."""

import pytest
from sqlalchemy import select

from conftest import make_session, make_shot
from shotweave.db.models import LegacyContinuitySessionRecord, UnifiedSessionRecord
from shotweave.services.continuity.errors import (
    ContinuitySessionNotFoundError,
    ContinuitySessionVersionMismatchError,
)
from shotweave.services.continuity.serialization import serialize_session
from shotweave.services.continuity.session_store import ContinuitySessionStore


@pytest.mark.asyncio
async def test_save_with_version_increments_by_one(store):
    session = make_session()

    assert await store.save_with_version(session, 0) == 1
    assert session.version == 1
    assert await store.save_with_version(session, 1) == 2

    loaded = await store.get(session.id)
    assert loaded.version == 2


@pytest.mark.asyncio
async def test_stale_save_rejected_after_concurrent_writer(store):
    session = make_session()
    await store.save_with_version(session, 0)

    writer_a = await store.get(session.id)
    writer_b = await store.get(session.id)

    writer_a.name = "Renamed by A"
    await store.save_with_version(writer_a, 1)

    writer_b.name = "Renamed by B"
    with pytest.raises(ContinuitySessionVersionMismatchError) as exc_info:
        await store.save_with_version(writer_b, 1)

    error = exc_info.value
    assert error.session_id == session.id
    assert error.expected_version == 1
    assert error.actual_version == 2
    assert session.id in str(error) and "1" in str(error) and "2" in str(error)

    stored = await store.get(session.id)
    assert stored.name == "Renamed by A"
    assert stored.version == 2


@pytest.mark.asyncio
async def test_first_save_of_existing_id_with_version_zero_conflicts(store):
    await store.save_with_version(make_session(), 0)

    with pytest.raises(ContinuitySessionVersionMismatchError):
        await store.save_with_version(make_session(name="Duplicate"), 0)


@pytest.mark.asyncio
async def test_unconditional_save_bumps_stored_version(store):
    session = make_session()
    await store.save_with_version(session, 0)

    stale = make_session(version=0)
    assert await store.save(stale) == 2
    assert (await store.get_version(session.id)) == 2


@pytest.mark.asyncio
async def test_dual_write_mirrors_legacy_row(store, session_factory):
    session = make_session(shots=[make_shot()])
    await store.save_with_version(session, 0)

    async with session_factory() as db:
        legacy = await db.get(LegacyContinuitySessionRecord, session.id)

    assert legacy is not None
    assert legacy.version == 1
    assert legacy.document["shots"][0]["id"] == "shot_1"


@pytest.mark.asyncio
async def test_dual_write_disabled_skips_legacy(session_factory):
    store = ContinuitySessionStore(session_factory, dual_write=False, read_fallback=True)
    session = make_session()
    await store.save_with_version(session, 0)

    async with session_factory() as db:
        assert await db.get(LegacyContinuitySessionRecord, session.id) is None


async def _seed_legacy(session_factory, session, version=3):
    document = serialize_session(session)
    document["version"] = version
    async with session_factory() as db:
        db.add(
            LegacyContinuitySessionRecord(
                id=session.id,
                user_id=session.user_id,
                version=version,
                document=document,
                updated_at_ms=document["updated_at_ms"],
            )
        )
        await db.commit()


@pytest.mark.asyncio
async def test_legacy_read_fallback_backfills_unified(store, session_factory):
    await _seed_legacy(session_factory, make_session(id="legacy_1"))

    loaded = await store.get("legacy_1")

    assert loaded is not None
    assert loaded.version == 3
    async with session_factory() as db:
        unified = await db.get(UnifiedSessionRecord, "legacy_1")
    assert unified is not None
    assert unified.version == 3


@pytest.mark.asyncio
async def test_legacy_version_is_honoured_by_versioned_save(store, session_factory):
    await _seed_legacy(session_factory, make_session(id="legacy_2"), version=5)

    with pytest.raises(ContinuitySessionVersionMismatchError):
        await store.save_with_version(make_session(id="legacy_2"), 0)

    session = await store.get("legacy_2")
    assert await store.save_with_version(session, 5) == 6


@pytest.mark.asyncio
async def test_read_fallback_disabled_ignores_legacy(session_factory):
    await _seed_legacy(session_factory, make_session(id="legacy_3"))
    store = ContinuitySessionStore(session_factory, dual_write=True, read_fallback=False)

    assert await store.get("legacy_3") is None


@pytest.mark.asyncio
async def test_backfill_legacy_migrates_only_missing(store, session_factory):
    await store.save_with_version(make_session(id="already_unified"), 0)
    await _seed_legacy(session_factory, make_session(id="legacy_a"))
    await _seed_legacy(session_factory, make_session(id="legacy_b"))

    assert await store.backfill_legacy() == 2
    assert await store.backfill_legacy() == 0

    async with session_factory() as db:
        ids = set((await db.execute(select(UnifiedSessionRecord.id))).scalars().all())
    assert ids == {"already_unified", "legacy_a", "legacy_b"}


@pytest.mark.asyncio
async def test_find_by_user_merges_stores(store, session_factory):
    await store.save_with_version(make_session(id="s_unified"), 0)
    await _seed_legacy(session_factory, make_session(id="s_legacy"))
    await store.save_with_version(make_session(id="s_other", user_id="someone_else"), 0)

    sessions = await store.find_by_user("user_1")

    assert {s.id for s in sessions} == {"s_unified", "s_legacy"}
    assert sessions == sorted(sessions, key=lambda s: s.updated_at, reverse=True)


@pytest.mark.asyncio
async def test_update_reloads_once_on_conflict(store):
    session = make_session()
    await store.save_with_version(session, 0)
    calls = []

    async def mutate(fresh):
        calls.append(fresh.version)
        if len(calls) == 1:
            # Concurrent writer sneaks in between load and save
            other = await store.get(fresh.id)
            other.description = "concurrent"
            await store.save_with_version(other, other.version)
        fresh.name = "Updated"

    updated = await store.update(session.id, mutate)

    assert calls == [1, 2]
    assert updated.version == 3
    stored = await store.get(session.id)
    assert stored.name == "Updated"
    assert stored.description == "concurrent"


@pytest.mark.asyncio
async def test_update_second_conflict_propagates(store):
    session = make_session()
    await store.save_with_version(session, 0)

    async def always_conflict(fresh):
        other = await store.get(fresh.id)
        await store.save_with_version(other, other.version)

    with pytest.raises(ContinuitySessionVersionMismatchError):
        await store.update(session.id, always_conflict)


@pytest.mark.asyncio
async def test_update_missing_session_raises_not_found(store):
    with pytest.raises(ContinuitySessionNotFoundError):
        await store.update("missing", lambda s: None)


@pytest.mark.asyncio
async def test_delete_removes_both_rows(store):
    session = make_session()
    await store.save_with_version(session, 0)

    assert await store.delete(session.id) is True
    assert await store.get(session.id) is None
    assert await store.delete(session.id) is False


def test_db_package_exports_only_what_the_store_and_cli_use():
    import shotweave.db as db

    assert set(db.__all__) == {
        "Base",
        "engine",
        "async_session",
        "shutdown",
        "init_database",
        "UnifiedSessionRecord",
        "LegacyContinuitySessionRecord",
    }
    assert all(hasattr(db, name) for name in db.__all__)

"""
Integration tests for concurrency control.

Tests cover:
- Version archival on commit and save
- Concurrent writers of one version
- Document locks and their timeout
- Locking a query result under one lock id
- Freezing
"""

import asyncio

import pytest

from docdb import ConcurrencyConfig, DocDbConfig, LockedBatch
from docdb.errors import BadRequestError, ConflictError, DocumentStateError


@pytest.fixture
def versioned(world):
    return world.get_collection("versioned")


@pytest.fixture
def lockables(world):
    return world.get_collection("lockables")


@pytest.fixture
def freezables(world):
    return world.get_collection("freezables")


async def store_lockables(lockables):
    documents = []
    for data in ("x", "x", "x", "y"):
        document = lockables.create_document({"data": data})
        await document.save()
        documents.append(document)
    return documents


async def history(world, document_id):
    versions = await world.versions_collection()
    batch = await versions.find({"_activeVersion._id": document_id})
    return sorted(batch, key=lambda record: record.get("_version"))


class TestVersioning:
    """Tests for optimistic version archival."""

    @pytest.mark.asyncio
    async def test_new_document_starts_at_version_one(self, world, versioned):
        """Creating a record archives nothing."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        assert doc.raw["_version"] == 1
        assert doc.raw["_lastModified"] > 0
        assert world.versions is None

    @pytest.mark.asyncio
    async def test_commit_archives_previous_version(self, world, versioned):
        """The pre-mutation record goes to the history."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        loaded = await versioned.get(doc.id)
        loaded.set("name", "w")
        await loaded.commit()

        stored = versioned.driver.peek(doc.id)
        assert stored["_version"] == 2
        assert stored["name"] == "w"

        records = await history(world, doc.id)
        assert len(records) == 1
        assert records[0].get("_version") == 1
        assert records[0].get("name") == "v"
        assert records[0].raw["_activeVersion"] == {"_id": doc.id, "_collection": "versioned"}

    @pytest.mark.asyncio
    async def test_each_write_adds_a_version(self, world, versioned):
        """Successive commits of one instance archive successive versions."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        for count in range(1, 4):
            doc.set("count", count)
            await doc.commit()

        assert doc.raw["_version"] == 4
        records = await history(world, doc.id)
        assert [record.get("count") for record in records] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_save_archives(self, world, versioned):
        """A full save of a changed record archives too."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()
        doc.set("name", "w")

        await doc.save()

        assert versioned.driver.peek(doc.id)["_version"] == 2
        assert len(await history(world, doc.id)) == 1

    @pytest.mark.asyncio
    async def test_clean_commit_archives_nothing(self, world, versioned):
        """No change, no version."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        loaded = await versioned.get(doc.id)
        await loaded.commit()

        assert world.versions is None
        assert versioned.driver.peek(doc.id)["_version"] == 1

    @pytest.mark.asyncio
    async def test_race_takes_next_version(self, world, versioned):
        """Two writers of version 1: the second archives version 2."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        first = await versioned.get(doc.id)
        second = await versioned.get(doc.id)
        first.set("count", 1)
        second.set("count", 2)

        await first.commit()
        await second.commit()

        assert first.raw["_version"] == 2
        assert second.raw["_version"] == 3
        stored = versioned.driver.peek(doc.id)
        assert stored["_version"] == 3
        assert stored["count"] == 2
        assert [record.get("_version") for record in await history(world, doc.id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_writers_never_share_a_version(self, world, versioned):
        """Writers running together archive distinct versions."""
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        writers = [await versioned.get(doc.id) for _ in range(3)]
        for count, writer in enumerate(writers):
            writer.set("count", count + 1)

        await asyncio.gather(*(writer.commit() for writer in writers))

        versions = [record.get("_version") for record in await history(world, doc.id)]
        assert versions == [1, 2, 3]
        assert sorted(writer.raw["_version"] for writer in writers) == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_world):
        """Without retries the loser of a race gets a version_race conflict."""
        world = make_world(DocDbConfig(concurrency=ConcurrencyConfig(max_version_retries=0)))
        versioned = world.get_collection("versioned")
        doc = versioned.create_document({"name": "v"})
        await doc.save()

        first = await versioned.get(doc.id)
        second = await versioned.get(doc.id)
        first.set("count", 1)
        second.set("count", 2)
        await first.commit()

        with pytest.raises(ConflictError) as exc_info:
            await second.commit()

        assert exc_info.value.kind == ConflictError.VERSION_RACE
        assert versioned.driver.peek(doc.id)["count"] == 1

    @pytest.mark.asyncio
    async def test_versions_collection_created_once(self, world):
        """Concurrent first uses share one history collection."""
        results = await asyncio.gather(*(world.versions_collection() for _ in range(5)))

        assert all(result is results[0] for result in results)
        assert "versions" in world


class TestLocks:
    """Tests for document locks."""

    @pytest.mark.asyncio
    async def test_lock_is_exclusive_until_timeout(self, lockables):
        """A held lock blocks another holder until it expires."""
        doc = lockables.create_document({"data": "one"})
        await doc.save()

        lock_id = await doc.lock()
        assert lock_id is not None
        assert doc.lock_id == lock_id
        assert doc.locked_by == lock_id

        other = await lockables.get(doc.id)
        assert other.locked_by == lock_id
        assert await other.lock() is None

        await asyncio.sleep(0.05)
        assert await other.lock() is not None

    @pytest.mark.asyncio
    async def test_unlock_by_holder_only(self, lockables):
        """A stale holder cannot release a lock taken over by another."""
        doc = lockables.create_document({"data": "one"})
        await doc.save()
        await doc.lock()

        await asyncio.sleep(0.05)
        other = await lockables.get(doc.id)
        taken = await other.lock()

        assert await doc.unlock() is False
        assert lockables.driver.peek(doc.id)["_lockedBy"] == taken
        assert await other.unlock() is True
        assert lockables.driver.peek(doc.id)["_lockedBy"] is None
        assert other.lock_id is None

    @pytest.mark.asyncio
    async def test_reload_forgets_lost_lock(self, lockables):
        """reload() keeps a lock still held and drops one taken over."""
        doc = lockables.create_document({"data": "one"})
        await doc.save()
        lock_id = await doc.lock()

        await doc.reload()
        assert doc.lock_id == lock_id

        await asyncio.sleep(0.05)
        other = await lockables.get(doc.id)
        taken = await other.lock()
        await doc.reload()

        assert doc.lock_id is None
        assert doc.locked_by == taken

    @pytest.mark.asyncio
    async def test_lock_before_save(self, lockables):
        """Locking a new document reserves a lock written on save."""
        doc = lockables.create_document({"data": "new"})

        lock_id = await doc.lock()
        await doc.save()

        assert lockables.driver.peek(doc.id)["_lockedBy"] == lock_id
        other = await lockables.get(doc.id)
        assert await other.lock() is None

    @pytest.mark.asyncio
    async def test_unlock_before_save(self, lockables):
        """Unlocking a new document drops the reservation."""
        doc = lockables.create_document({"data": "new"})
        await doc.lock()

        assert await doc.unlock() is True
        await doc.save()

        assert lockables.driver.peek(doc.id).get("_lockedBy") is None

    @pytest.mark.asyncio
    async def test_explicit_timeout(self, lockables):
        """A caller timeout overrides the collection one."""
        doc = lockables.create_document({"data": "one"})
        await doc.save()
        await doc.lock(timeout_ms=10_000)

        await asyncio.sleep(0.05)
        other = await lockables.get(doc.id)

        assert await other.lock(timeout_ms=10_000) is None

    @pytest.mark.asyncio
    async def test_collection_cannot_lock(self, users):
        """Locks need can_lock."""
        user = users.create_document({})
        with pytest.raises(BadRequestError):
            await user.lock()

        await user.save()
        with pytest.raises(BadRequestError):
            await user.lock()
        with pytest.raises(BadRequestError):
            await users.lock_retrieve_release({})


class TestLockRetrieveRelease:
    """Tests for lock_retrieve_release."""

    @pytest.mark.asyncio
    async def test_locks_every_free_match(self, lockables):
        """Free matches are locked under one id; a second call gets none."""
        await store_lockables(lockables)

        locked = await lockables.lock_retrieve_release({"data": "x"})

        assert isinstance(locked, LockedBatch)
        assert len(locked.batch) == 3
        assert all(document.lock_id == locked.lock_id for document in locked.batch)
        assert all(document.locked_by == locked.lock_id for document in locked.batch)

        again = await lockables.lock_retrieve_release({"data": "x"})
        assert len(again.batch) == 0

    @pytest.mark.asyncio
    async def test_release(self, lockables):
        """release() frees the locks once."""
        await store_lockables(lockables)

        locked = await lockables.lock_retrieve_release({"data": "x"})

        assert await locked.release() == 3
        assert await locked.release() == 0
        assert locked.released

        relocked = await lockables.lock_retrieve_release({"data": "x"})
        assert len(relocked.batch) == 3

    @pytest.mark.asyncio
    async def test_context_manager(self, lockables):
        """Leaving the context releases the locks."""
        await store_lockables(lockables)

        async with await lockables.lock_retrieve_release({"data": "x"}) as batch:
            assert len(batch) == 3
            assert len((await lockables.lock_retrieve_release({"data": "x"})).batch) == 0

        assert len((await lockables.lock_retrieve_release({"data": "x"})).batch) == 3

    @pytest.mark.asyncio
    async def test_expired_locks_are_taken(self, lockables):
        """Locks older than the timeout no longer hold."""
        await store_lockables(lockables)

        await lockables.lock_retrieve_release({"data": "x"})

        await asyncio.sleep(0.05)
        locked = await lockables.lock_retrieve_release({"data": "x"})

        assert len(locked.batch) == 3

    @pytest.mark.asyncio
    async def test_individual_lock_excluded(self, lockables):
        """A record locked on its own is skipped."""
        stored = await store_lockables(lockables)

        await stored[0].lock()

        locked = await lockables.lock_retrieve_release({"data": "x"})

        assert stored[0].id not in locked.batch.ids()
        assert len(locked.batch) == 2


class TestFreeze:
    """Tests for freeze / unfreeze."""

    @pytest.mark.asyncio
    async def test_freeze_blocks_writes(self, freezables):
        """A frozen document rejects mutation, locally and after reload."""
        doc = freezables.create_document({"name": "ice"})
        await doc.save()

        await doc.freeze()

        assert doc.frozen
        with pytest.raises(DocumentStateError):
            doc.set("name", "water")
        assert freezables.driver.peek(doc.id)["_frozen"] is True

        other = await freezables.get(doc.id)
        with pytest.raises(DocumentStateError):
            other.set("name", "water")

    @pytest.mark.asyncio
    async def test_unfreeze(self, freezables):
        """unfreeze allows writes again."""
        doc = freezables.create_document({"name": "ice"})
        await doc.save()
        await doc.freeze()

        await doc.unfreeze()
        doc.set("name", "water")
        await doc.commit()

        stored = freezables.driver.peek(doc.id)
        assert stored["name"] == "water"
        assert stored["_frozen"] is False

    @pytest.mark.asyncio
    async def test_freeze_new_document(self, freezables):
        """A new document carries the flag into its first save."""
        doc = freezables.create_document({"name": "ice"})

        await doc.freeze()
        await doc.save()

        assert freezables.driver.peek(doc.id)["_frozen"] is True

    @pytest.mark.asyncio
    async def test_not_freezable(self, users):
        """Freezing needs freezable."""
        user = users.create_document({})

        with pytest.raises(BadRequestError):
            await user.freeze()

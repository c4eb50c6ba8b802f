"""
Integration tests for Collection and World.

Tests cover:
- The create / save / fetch flow with hooks and defaults
- Minimal patches reaching storage
- Reads: get, get_unique, multi_get, collect, find
- Identity maps and cached reads
- Unique indexes and duplicate keys
- Driver failures
- Collection registry
- Attachments through documents
"""

import textwrap

import pytest

from docdb import CollectionHooks, CollectionSchema, DocDbConfig, InMemoryDriver, IndexDef, World, field
from docdb.config import StorageConfig
from docdb.drivers.base import DriverError
from docdb.errors import BadRequestError, ConflictError, NotFoundError, StorageError


async def saved(collection, raw):
    document = collection.create_document(raw)
    await document.save()
    return document


class BrokenDriver(InMemoryDriver):
    """In-memory driver whose reads fail."""

    async def get(self, id):
        raise DriverError("disk on fire")


class CountingDriver(InMemoryDriver):
    """In-memory driver counting multi_get calls."""

    def __init__(self, url="memory://default", **options):
        super().__init__(url, **options)
        self.multi_get_calls = []

    async def multi_get(self, ids):
        self.multi_get_calls.append(list(ids))
        return await super().multi_get(ids)


class TestEndToEnd:
    """Tests for the create / save / fetch flow."""

    @pytest.mark.asyncio
    async def test_jack_doe(self):
        """Defaults and an after-create hook end up in the stored record."""

        def member_sid(document):
            document.set("memberSid", f"{document.get('firstName')} {document.get('lastName')}")

        world = World()
        people = world.create_collection(
            "people",
            CollectionSchema(
                fields=(
                    field("firstName", "string"),
                    field("lastName", "string", default="Doe"),
                    field("memberSid", "string"),
                ),
                hooks=CollectionHooks(after_create_document=[member_sid]),
            ),
        )

        jack = people.create_document({"firstName": "Jack"})
        await jack.save()
        fetched = await people.get(jack.id)

        assert fetched.raw == {
            "_id": jack.id,
            "firstName": "Jack",
            "lastName": "Doe",
            "memberSid": "Jack Doe",
        }
        assert fetched is not jack

    @pytest.mark.asyncio
    async def test_link_matches_direct_fetch(self, world, users, jobs):
        """A.link has B's id and is B's session instance."""
        b = await saved(jobs, {"title": "developer"})
        a = await saved(users, {"job": b})

        cache = world.create_memory_model()
        loaded = await users.get(a.id, cache=cache, populate=["job"])
        direct = await jobs.get(b.id, cache=cache)

        assert loaded.get("job").id == b.id
        assert loaded.get("job") is direct

    @pytest.mark.asyncio
    async def test_commit_writes_only_changes(self, users):
        """Concurrent writers of different properties both persist."""
        user = await saved(users, {"firstName": "Jack", "age": 30})
        first = await users.get(user.id)
        second = await users.get(user.id)

        first.set("firstName", "Jim")
        second.set("age", 31)
        await first.commit()
        await second.commit()

        stored = users.driver.peek(user.id)
        assert stored["firstName"] == "Jim"
        assert stored["age"] == 31

    @pytest.mark.asyncio
    async def test_commit_nested_and_unset(self, users):
        """Nested writes and removals reach storage."""
        user = await saved(users, {"age": 30, "meta": {"country": "FR", "city": "Paris"}})
        loaded = await users.get(user.id)

        loaded.set("meta.city", "Lyon")
        loaded.unset("age")
        await loaded.commit()

        stored = users.driver.peek(user.id)
        assert stored["meta"] == {"country": "FR", "city": "Lyon"}
        assert "age" not in stored

    @pytest.mark.asyncio
    async def test_delete(self, users):
        """Deleted records are gone."""
        user = await saved(users, {})

        await user.delete()

        with pytest.raises(NotFoundError):
            await users.get(user.id)

    @pytest.mark.asyncio
    async def test_batch_save_and_export(self, users):
        """Batches save and export their documents."""
        batch = users.create_batch([{"firstName": "Jack"}, {"firstName": "Jim"}])

        await batch.save()

        assert users.driver.record_count() == 2
        assert [raw["firstName"] for raw in batch.export(tier=2)] == ["Jack", "Jim"]


class TestReads:
    """Tests for read operations."""

    @pytest.mark.asyncio
    async def test_get_missing(self, users):
        """Unknown ids raise NotFoundError with the id."""
        with pytest.raises(NotFoundError) as exc_info:
            await users.get("nope")

        assert exc_info.value.details["document_id"] == "nope"

    @pytest.mark.asyncio
    async def test_get_unique(self, world, users):
        """A fingerprint covering a unique index finds one document."""
        await world.build_indexes()
        jack = await saved(users, {"firstName": "Jack", "memberSid": "Jack Doe"})

        found = await users.get_unique({"memberSid": "Jack Doe"})

        assert found.id == jack.id
        assert (await users.get_unique({"_id": jack.id})).id == jack.id
        with pytest.raises(NotFoundError):
            await users.get_unique({"memberSid": "Jim Doe"})
        with pytest.raises(BadRequestError):
            await users.get_unique({"firstName": "Jack"})

    @pytest.mark.asyncio
    async def test_get_unique_needs_whole_index_path(self, world):
        """A key below a uniquely indexed object is not a unique lookup."""
        places = world.create_collection(
            "places",
            CollectionSchema(
                url="memory://places",
                fields=(field("meta", "object", extra_properties=True),),
                indexes=(IndexDef(("meta",), unique=True),),
            ),
        )
        await places.build_indexes()
        await saved(places, {"meta": {"country": "FR", "city": "Paris"}})
        lyon = await saved(places, {"meta": {"country": "FR", "city": "Lyon"}})

        with pytest.raises(BadRequestError):
            await places.get_unique({"meta.country": "FR"})

        found = await places.get_unique({"meta": {"country": "FR", "city": "Lyon"}})
        assert found.id == lyon.id

    @pytest.mark.asyncio
    async def test_multi_get_order(self, users):
        """Results follow the requested ids; missing and repeated ids are dropped."""
        a = await saved(users, {"firstName": "A"})
        b = await saved(users, {"firstName": "B"})

        batch = await users.multi_get([b.id, "nope", a.id, b.id])

        assert batch.ids() == [b.id, a.id]
        assert len(await users.multi_get([])) == 0

    @pytest.mark.asyncio
    async def test_multi_get_cached(self):
        """Fully cached reads do no I/O; partly cached ones fetch the rest."""
        world = World(drivers={"counting": CountingDriver})
        people = world.create_collection(
            "people", CollectionSchema(url="counting://people", extra_properties=True)
        )
        a = await saved(people, {"name": "A"})
        b = await saved(people, {"name": "B"})

        cache = world.create_memory_model()
        first = await people.multi_get([a.id], cache=cache)
        assert people.driver.multi_get_calls == [[a.id]]

        both = await people.multi_get([b.id, a.id], cache=cache)
        assert people.driver.multi_get_calls == [[a.id], [b.id]]
        assert both[1] is first[0]

        again = await people.multi_get([a.id, b.id], cache=cache)
        assert len(people.driver.multi_get_calls) == 2
        assert again[0] is first[0]
        assert again[1] is both[0]

    @pytest.mark.asyncio
    async def test_collect_and_find(self, users, jobs):
        """collect takes fingerprints, find takes queries."""
        job = await saved(jobs, {"title": "developer"})
        jack = await saved(users, {"firstName": "Jack", "age": 30, "job": job, "meta": {"country": "FR"}})
        await saved(users, {"firstName": "Jim", "age": 20})

        assert (await users.collect({"meta.country": "FR"})).ids() == [jack.id]
        assert (await users.collect({"meta": {"country": "FR"}}, is_partial=True)).ids() == [jack.id]
        assert (await users.find({"age": {"$gte": 25}})).ids() == [jack.id]
        assert (await users.find({"job._id": job.id})).ids() == [jack.id]
        assert len(await users.find({})) == 2

    @pytest.mark.asyncio
    async def test_cache_keeps_local_state(self, world, users):
        """A cached instance is returned as is, with its local changes."""
        user = await saved(users, {"firstName": "Jack"})
        cache = world.create_memory_model()

        loaded = await users.get(user.id, cache=cache)
        loaded.set("firstName", "Jim")

        assert await users.get(user.id, cache=cache) is loaded
        assert (await users.get(user.id, cache=cache)).get("firstName") == "Jim"
        assert (await users.get(user.id)).get("firstName") == "Jack"


class TestIndexes:
    """Tests for unique indexes and index maintenance."""

    @pytest.mark.asyncio
    async def test_duplicate_key(self, world, users):
        """A unique violation names the collection and index fields."""
        await world.build_indexes()
        await saved(users, {"memberSid": "Jack Doe"})

        with pytest.raises(ConflictError) as exc_info:
            await saved(users, {"memberSid": "Jack Doe"})

        assert exc_info.value.collection == "users"
        assert exc_info.value.index_fields == ("memberSid",)
        assert exc_info.value.kind == ConflictError.DUPLICATE_KEY

    @pytest.mark.asyncio
    async def test_duplicate_key_on_commit(self, world, users):
        """Patches are checked too."""
        await world.build_indexes()
        await saved(users, {"memberSid": "Jack Doe"})
        jim = await saved(users, {"memberSid": "Jim Doe"})

        jim.set("memberSid", "Jack Doe")
        with pytest.raises(ConflictError):
            await jim.commit()

    @pytest.mark.asyncio
    async def test_unique_is_sparse(self, world, users):
        """Records without the property do not collide."""
        await world.build_indexes()

        await saved(users, {})
        await saved(users, {})

        assert users.driver.record_count() == 2

    @pytest.mark.asyncio
    async def test_build_indexes_reconciles(self, users):
        """Obsolete indexes are dropped, declared ones built."""
        await users.connect()
        obsolete = IndexDef(("age",))
        await users.driver.build_index(obsolete)

        await users.build_indexes()

        upstream = await users.driver.get_indexes()
        assert obsolete.name not in upstream
        assert set(upstream) == {index.name for index in users.schema.all_indexes()}

        await users.build_indexes()
        assert set(await users.driver.get_indexes()) == set(upstream)


class TestDriverErrors:
    """Tests for driver failure annotation."""

    @pytest.mark.asyncio
    async def test_storage_error(self, caplog):
        """Driver failures become StorageError with the collection name."""
        world = World(drivers={"broken": BrokenDriver})
        broken = world.create_collection("broken", CollectionSchema(url="broken://x"))

        with pytest.raises(StorageError) as exc_info:
            await broken.get("x")

        error = exc_info.value
        assert error.collection == "broken"
        assert error.operation == "get"
        assert isinstance(error.__cause__, DriverError)
        assert any(record.levelname == "ERROR" for record in caplog.records)


class TestWorld:
    """Tests for the collection registry."""

    def test_duplicate_collection(self, world):
        """Names are declared once."""
        with pytest.raises(BadRequestError):
            world.create_collection("users")

    def test_unknown_collection(self, world):
        """Unknown names are a bad request."""
        assert "planets" not in world
        with pytest.raises(BadRequestError):
            world.get_collection("planets")

    def test_unsupported_scheme(self, world):
        """Unknown URL schemes are a bad request."""
        with pytest.raises(BadRequestError):
            world.create_collection("remote", CollectionSchema(url="postgres://db/remote"))

    def test_default_url(self):
        """Collections without url use the configured default."""
        world = World(DocDbConfig(storage=StorageConfig(default_url="memory://shared")))

        assert world.create_collection("notes").url == "memory://shared"

    def test_register_driver(self):
        """Extra schemes can be registered."""
        world = World()
        world.register_driver("COUNTING", CountingDriver)

        notes = world.create_collection("notes", {"url": "counting://notes"})

        assert isinstance(notes.driver, CountingDriver)

    def test_load_collections(self):
        """YAML descriptors declare collections."""
        world = World()

        declared = world.load_collections(
            textwrap.dedent(
                """
                collections:
                  jobs:
                    fields:
                      - name: title
                        kind: string
                  users:
                    fields:
                      - name: job
                        kind: link
                        collection: jobs
                """
            )
        )

        assert [collection.name for collection in declared] == ["jobs", "users"]
        assert world.get_collection("users").link_field("job").collection == "jobs"

    def test_collections_are_not_shared(self):
        """Two Worlds never see each other's collections."""
        first = World()
        second = World()
        first.create_collection("notes")

        assert "notes" in first
        assert "notes" not in second

    @pytest.mark.asyncio
    async def test_close(self, world, users):
        """Closing the world closes every driver."""
        await saved(users, {})

        async with world:
            assert users.driver.is_connected

        assert not users.driver.is_connected


class TestDocumentAttachments:
    """Tests for attachments stored through documents."""

    @pytest.fixture
    def attach_world(self, make_world, tmp_path):
        return make_world(DocDbConfig(storage=StorageConfig(attachment_dir=str(tmp_path))))

    @pytest.mark.asyncio
    async def test_set_and_read(self, attach_world):
        """The descriptor is persisted, the content read back."""
        users = attach_world.get_collection("users")
        user = users.create_document({})

        attachment = await user.set_attachment("avatar", b"png!", filename="a.png", content_type="image/png")
        await user.save()

        loaded = await users.get(user.id)
        avatar = loaded.get_attachment("avatar")
        assert avatar.id == attachment.id
        assert avatar.content_type == "image/png"
        assert avatar.size == 4
        assert await avatar.load() == b"png!"

    @pytest.mark.asyncio
    async def test_replace_deletes_previous(self, attach_world):
        """Replacing an attachment removes the old content."""
        users = attach_world.get_collection("users")
        user = users.create_document({})
        first = await user.set_attachment("avatar", b"one", filename="a.png")

        second = await user.set_attachment("avatar", b"two", filename="b.png")

        assert not users.attachment_driver.path_of(first).exists()
        assert users.attachment_driver.path_of(second).exists()

    @pytest.mark.asyncio
    async def test_delete_removes_content(self, attach_world):
        """Deleting a document deletes its attachments."""
        users = attach_world.get_collection("users")
        user = users.create_document({})
        attachment = await user.set_attachment("avatar", b"one", filename="a.png")
        await user.save()

        await user.delete()

        assert not users.attachment_driver.path_of(attachment).exists()

    @pytest.mark.asyncio
    async def test_not_an_attachment(self, attach_world):
        """Only attachment properties accept content."""
        user = attach_world.get_collection("users").create_document({})

        with pytest.raises(BadRequestError):
            await user.set_attachment("firstName", b"x", filename="x")

    @pytest.mark.asyncio
    async def test_no_storage(self, users):
        """Without attachment storage, set_attachment is a bad request."""
        user = users.create_document({})

        with pytest.raises(BadRequestError):
            await user.set_attachment("avatar", b"x", filename="x")

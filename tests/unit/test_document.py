"""
Unit tests for Document change tracking.

Tests cover:
- Creation, defaults and hooks
- Field access and deep-equal no-op writes
- Minimal patches from dirty paths
- Lifecycle states
- Link helpers that need no I/O
- Export masks
"""

import pytest

from docdb import UNSET, CollectionHooks, CollectionSchema, DocumentState, World, field
from docdb.errors import BadRequestError, DocumentStateError, ValidationError


class TestDocumentCreation:
    """Tests for create_document."""

    def test_defaults_and_generated_id(self, users):
        """A new document gets an id and defaults."""
        user = users.create_document({"memberSid": "Joe Doe"})

        assert len(user.id) == 32
        assert user.raw["firstName"] == "Joe"
        assert user.raw["lastName"] == "Doe"
        assert user.state == DocumentState.DETACHED
        assert not user.upstream_exists
        assert not user.is_dirty

    def test_invalid_record(self, users):
        """Schema violations surface with the collection name."""
        with pytest.raises(ValidationError) as exc_info:
            users.create_document({"age": "old"})

        assert exc_info.value.collection == "users"
        assert exc_info.value.message.startswith("Collection 'users': ")

    def test_hooks(self):
        """before hooks see the raw record, after hooks the document."""
        seen = []

        def before(raw):
            raw.setdefault("memberSid", f"{raw.get('firstName')} Doe")

        world = World()
        people = world.create_collection(
            "people",
            CollectionSchema(
                fields=(field("firstName", "string"), field("memberSid", "string")),
                hooks=CollectionHooks(
                    before_create_document=[before],
                    after_create_document=[seen.append],
                ),
            ),
        )

        person = people.create_document({"firstName": "Jack"})

        assert person.raw["memberSid"] == "Jack Doe"
        assert seen == [person]

        people.wrap_upstream({"_id": "p2", "firstName": "Jim"})
        assert seen == [person]

    def test_custom_document_class(self):
        """Collections can use a Document subclass."""
        from docdb import Document

        class User(Document):
            @property
            def full_name(self):
                return f"{self.get('firstName')} {self.get('lastName')}"

        world = World()
        people = world.create_collection(
            "people",
            CollectionSchema(
                fields=(field("firstName", "string"), field("lastName", "string")),
                document_class=User,
            ),
        )

        assert people.create_document({"firstName": "Jack", "lastName": "Doe"}).full_name == "Jack Doe"


class TestFieldAccess:
    """Tests for get / set / unset / patch."""

    def test_get_paths(self, users):
        """Nested reads and defaults."""
        user = users.create_document({"meta": {"country": "FR"}})

        assert user.get("meta.country") == "FR"
        assert user.get("meta.city", "none") == "none"
        assert user["firstName"] == "Joe"
        with pytest.raises(KeyError):
            user["age"]

    def test_set_marks_dirty(self, users):
        """A write records its path."""
        user = users.wrap_upstream({"_id": "u1", "firstName": "Joe"})

        assert user.set("firstName", "Jack") is True
        assert user.dirty_paths == ["firstName"]
        assert user.raw["firstName"] == "Jack"

    def test_deep_equal_write_is_noop(self, users):
        """Writing the current value changes nothing."""
        user = users.wrap_upstream({"_id": "u1", "firstName": "Joe", "meta": {"a": [1, 2]}})

        assert user.set("firstName", "Joe") is False
        assert user.set("meta", {"a": [1, 2]}) is False
        assert not user.is_dirty

    def test_set_sanitizes(self, users):
        """Values go through the path's sanitizer."""
        user = users.wrap_upstream({"_id": "u1"})
        user["age"] = "42"

        assert user.raw["age"] == 42

    def test_set_invalid_leaves_record(self, users):
        """An invalid write changes nothing."""
        user = users.wrap_upstream({"_id": "u1", "age": 3})

        with pytest.raises(ValidationError):
            user.set("age", -5)
        with pytest.raises(ValidationError):
            user.set("unknownProperty", 1)

        assert user.raw["age"] == 3
        assert not user.is_dirty

    def test_unset(self, users):
        """unset removes a property; unsetting a missing one is a no-op."""
        user = users.wrap_upstream({"_id": "u1", "age": 3})

        assert user.unset("age") is True
        assert "age" not in user.raw
        assert user.unset("age") is False
        assert user.dirty_paths == ["age"]

    def test_patch_all_or_nothing(self, users):
        """patch validates every value before applying any."""
        user = users.wrap_upstream({"_id": "u1", "firstName": "Joe", "age": 3})

        with pytest.raises(ValidationError):
            user.patch({"firstName": "Jack", "age": "x"})
        assert user.raw["firstName"] == "Joe"

        changed = user.patch({"firstName": "Jack", "lastName": "Smith", "age": UNSET})
        assert sorted(changed) == ["age", "firstName", "lastName"]
        assert "age" not in user.raw

    def test_back_link_not_writable(self, jobs):
        """Back-links are read-only."""
        job = jobs.create_document({})

        with pytest.raises(BadRequestError):
            job.set("users", [])


class TestBuildPatch:
    """Tests for minimal patch computation."""

    def test_clean_document_has_no_patch(self, users):
        """Nothing dirty, no patch."""
        assert users.wrap_upstream({"_id": "u1"}).build_patch() is None

    def test_leaf_paths(self, users):
        """Only touched leaves are in the patch."""
        user = users.wrap_upstream({"_id": "u1", "firstName": "Joe", "meta": {"a": 1, "b": 2}})
        user.set("meta.b", 3)
        user.set("firstName", "Jack")

        patch = user.build_patch()

        assert patch.set == {"meta.b": 3, "firstName": "Jack"}
        assert patch.unset == []

    def test_ancestor_absorbs_descendants(self, users):
        """Writing an ancestor replaces its descendant paths."""
        user = users.wrap_upstream({"_id": "u1", "meta": {"a": 1}})
        user.set("meta.a", 2)
        user.set("meta", {"c": 3})
        user.set("meta.d", 4)

        patch = user.build_patch()

        assert patch.set == {"meta": {"c": 3, "d": 4}}

    def test_unset_in_patch(self, users):
        """Removed paths go to unset."""
        user = users.wrap_upstream({"_id": "u1", "age": 3})
        user.unset("age")

        patch = user.build_patch()

        assert patch.set == {}
        assert patch.unset == ["age"]

    def test_stage_raw_mutation(self, users):
        """Direct raw mutations are declared with stage()."""
        user = users.wrap_upstream({"_id": "u1", "meta": {"a": 1}})
        user.raw["meta"]["a"] = 5
        user.stage("meta.a")

        assert user.build_patch().set == {"meta.a": 5}

    def test_stage_validates(self, users):
        """Staged values are validated."""
        user = users.wrap_upstream({"_id": "u1"})
        user.raw["age"] = "twelve"

        with pytest.raises(ValidationError):
            user.stage("age")


class TestLifecycle:
    """Tests for state transitions."""

    @pytest.mark.asyncio
    async def test_save_commit_delete(self, users):
        """DETACHED -> SAVED -> SAVED -> DELETED."""
        user = users.create_document({"firstName": "Jack"})

        await user.save()
        assert user.state == DocumentState.SAVED
        assert user.upstream_exists

        user.set("firstName", "Jim")
        await user.commit()
        assert user.state == DocumentState.SAVED
        assert not user.is_dirty

        await user.delete()
        assert user.state == DocumentState.DELETED

    @pytest.mark.asyncio
    async def test_clean_commit_stays_loaded(self, users):
        """Committing a clean loaded document is a no-op."""
        user = users.wrap_upstream({"_id": "u1"})

        await user.commit()

        assert user.state == DocumentState.LOADED

    @pytest.mark.asyncio
    async def test_deleted_is_terminal(self, users):
        """Nothing can be written from a deleted document."""
        user = users.create_document({})
        await user.save()
        await user.delete()

        with pytest.raises(DocumentStateError):
            await user.save()
        with pytest.raises(DocumentStateError):
            await user.commit()
        with pytest.raises(DocumentStateError):
            user.set("firstName", "Jack")
        with pytest.raises(DocumentStateError):
            await user.delete()

    @pytest.mark.asyncio
    async def test_commit_of_new_document_saves(self, users):
        """commit() on a document not yet stored saves it whole."""
        user = users.create_document({"firstName": "Jack"})

        await user.commit()

        assert (await users.get(user.id)).raw["firstName"] == "Jack"

    @pytest.mark.asyncio
    async def test_reload(self, users):
        """reload discards local changes."""
        user = users.create_document({"firstName": "Jack"})
        await user.save()
        user.set("firstName", "Jim")

        await user.reload()

        assert user.raw["firstName"] == "Jack"
        assert user.state == DocumentState.LOADED
        assert not user.is_dirty


class TestLinksLocal:
    """Tests for link helpers without I/O."""

    def test_set_link_from_document(self, users, jobs):
        """A Document is stored as its link shape and read back live."""
        job = jobs.create_document({"title": "developer"})
        user = users.create_document({})

        user.set_link("job", job)

        assert user.raw["job"] == {"_id": job.id}
        assert user.get("job") is job

    def test_document_in_create(self, users, jobs):
        """Documents passed at creation are remembered."""
        job = jobs.create_document({"title": "developer"})
        user = users.create_document({"job": job})

        assert user.get("job") is job

    def test_link_details(self, users, jobs):
        """Details describe the three link kinds."""
        job = jobs.create_document({})
        user = users.create_document({"job": job})

        details = user.get_link_details("job")
        assert details.foreign_collection == "jobs"
        assert details.foreign_id == job.id

        back = job.get_link_details("users")
        assert back.foreign_collection == "users"
        assert back.foreign_path == "job"
        assert back.foreign_id == job.id

    def test_kind_mismatch(self, users, world):
        """Single and multi link accessors are not interchangeable."""
        schools = world.get_collection("schools")
        school = schools.create_document({"title": "MIT"})
        user = users.create_document({})

        with pytest.raises(BadRequestError):
            school.set_link("jobs", None)
        with pytest.raises(BadRequestError):
            user.add_link("job", user)
        with pytest.raises(BadRequestError):
            user.get_link_details("firstName")

    def test_add_and_remove_links(self, world):
        """add_link ignores duplicates; remove_link accepts ids."""
        jobs = world.get_collection("jobs")
        school = world.get_collection("schools").create_document({"title": "MIT"})
        a = jobs.create_document({})
        b = jobs.create_document({})

        assert school.add_link("jobs", a) is True
        assert school.add_link("jobs", b) is True
        assert school.add_link("jobs", a) is False
        assert [doc.id for doc in school.get("jobs")] == [a.id, b.id]

        assert school.remove_link("jobs", a.id) is True
        assert school.remove_link("jobs", a) is False
        assert school.raw["jobs"] == [{"_id": b.id}]


class TestExport:
    """Tests for export masks."""

    def test_export_copy(self, users):
        """export() returns a deep copy."""
        user = users.create_document({"meta": {"a": 1}})
        exported = user.export()
        exported["meta"]["a"] = 2

        assert user.raw["meta"]["a"] == 1

    def test_export_masks(self, users):
        """Tier and tag masks."""
        user = users.create_document({"firstName": "Jack", "age": 3, "memberSid": "Jack Doe"})

        assert set(user.export(tier=1)) == {"_id"}
        assert set(user.export(tier=2)) == {"_id", "firstName", "lastName"}
        assert set(user.export(tags=["id"])) == {"_id", "memberSid"}

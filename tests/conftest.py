"""
Shared fixtures for docdb tests.

The `world` fixture declares a small application schema on in-memory
drivers:
- users: names with defaults, a job link, a godfather self-link, a
  connection object of three links, and an unique memberSid
- jobs: a title and a back-link to the users holding the job
- schools: a multi-link to jobs
- towns: a polymorphic link to any collection
- lockables: lockable records with a 40 ms lock timeout
- versioned: records archived on every write
- freezables: freezable records
"""

import pytest

from docdb import CollectionSchema, DocDbConfig, IndexDef, World, field
from docdb.config import StorageConfig


def users_schema(url: str = "memory://users") -> CollectionSchema:
    return CollectionSchema(
        url=url,
        fields=(
            field("firstName", "string", default="Joe", max_length=40, tier=2),
            field("lastName", "string", default="Doe", max_length=40, tier=2),
            field("memberSid", "string", tags=("id", "content")),
            field("age", "integer", minimum=0),
            field("job", "link", collection="jobs"),
            field("godfather", "link", collection="users"),
            field(
                "connection",
                "object",
                properties=(
                    field("A", "link", collection="users"),
                    field("B", "link", collection="users"),
                    field("C", "link", collection="users"),
                ),
            ),
            field("meta", "object", extra_properties=True, tier=5, tags=("meta",)),
            field("avatar", "attachment"),
        ),
        indexes=(
            IndexDef(("job",)),
            IndexDef(("memberSid",), unique=True),
        ),
    )


def jobs_schema(url: str = "memory://jobs") -> CollectionSchema:
    return CollectionSchema(
        url=url,
        fields=(
            field("title", "string", default="unemployed"),
            field("salary", "number"),
            field("users", "backLink", collection="users", path="job"),
        ),
    )


def schools_schema(url: str = "memory://schools") -> CollectionSchema:
    return CollectionSchema(
        url=url,
        fields=(
            field("title", "string", required=True),
            field("jobs", "multiLink", collection="jobs"),
        ),
    )


def towns_schema(url: str = "memory://towns") -> CollectionSchema:
    return CollectionSchema(
        url=url,
        fields=(
            field("name", "string", required=True),
            field("landmark", "link", any_collection=True),
        ),
    )


def declare_collections(world: World, base_url: str = "memory://") -> None:
    """Declare the test schema; base_url selects the driver."""

    def url(name: str) -> str:
        if base_url.startswith("sqlite"):
            return f"{base_url}?table={name}"
        return f"{base_url}{name}"

    world.create_collection("users", users_schema(url("users")))
    world.create_collection("jobs", jobs_schema(url("jobs")))
    world.create_collection("schools", schools_schema(url("schools")))
    world.create_collection("towns", towns_schema(url("towns")))
    world.create_collection(
        "lockables",
        CollectionSchema(
            url=url("lockables"),
            fields=(field("data", "string"),),
            can_lock=True,
            lock_timeout_ms=40,
        ),
    )
    world.create_collection(
        "versioned",
        CollectionSchema(
            url=url("versioned"),
            fields=(field("name", "string"), field("count", "integer", default=0)),
            versioning=True,
        ),
    )
    world.create_collection(
        "freezables",
        CollectionSchema(
            url=url("freezables"),
            fields=(field("name", "string"),),
            freezable=True,
        ),
    )


@pytest.fixture
def make_world():
    """Factory of in-memory Worlds with the test schema and a given config."""

    def make(config=None):
        world = World(config or DocDbConfig())
        declare_collections(world)
        return world

    return make


@pytest.fixture
def world(make_world):
    """World with the test schema on in-memory drivers."""
    return make_world()


@pytest.fixture
def sqlite_world(tmp_path):
    """World with the test schema on one SQLite file."""
    db_url = f"sqlite://{tmp_path / 'docdb.db'}"
    config = DocDbConfig(storage=StorageConfig(versions_url=f"{db_url}?table=versions"))
    world = World(config)
    declare_collections(world, db_url)
    return world


@pytest.fixture
def users(world):
    return world.get_collection("users")


@pytest.fixture
def jobs(world):
    return world.get_collection("jobs")

import asyncio
import re
from datetime import datetime, timedelta, timezone

import pytest

from cranlike.domain.errors import NotFoundError, ValidationError
from cranlike.domain.models import ArtifactType, PackageRecord, RegistryConfig
from cranlike.storage.json_metadata_store import JsonMetadataStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def record(id, package="mypkg", version="1.0", type=ArtifactType.SRC, minutes=0, **kw) -> PackageRecord:
    return PackageRecord(
        id=id,
        user="jane",
        package=package,
        version=version,
        type=type,
        nocasepkg=package.lower(),
        created=T0 + timedelta(minutes=minutes),
        **kw,
    )


def test_records_survive_a_restart(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("a", contents={"rundeps": ["jsonlite"]}))

        reopened = JsonMetadataStore(data_dir)
        await reopened.initialize()
        loaded = await reopened.get("a")
        assert loaded is not None
        assert loaded.contents == {"rundeps": ["jsonlite"]}

    asyncio.run(scenario())


def test_registry_config_is_written_with_defaults(data_dir):
    (data_dir / "registry.json").write_text('{"universe_domain": "example.test"}')
    store = JsonMetadataStore(data_dir)
    config = store.get_registry_config()
    assert config.universe_domain == "example.test"
    assert config.mirror_publisher == "cran"
    assert "max_canonical_matches" in (data_dir / "registry.json").read_text()

    store.save_registry_config(RegistryConfig(mentions_cap=10))
    assert JsonMetadataStore(data_dir).get_registry_config().mentions_cap == 10


def test_unreadable_record_files_are_skipped(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("good"))
        (data_dir / "records" / "broken.json").write_text("{not json")

        reopened = JsonMetadataStore(data_dir)
        await reopened.initialize()
        assert await reopened.count({}) == 1

    asyncio.run(scenario())


def test_query_matching(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("a", indexed=True, contents={"rundeps": ["curl", "jsonlite"]}))
        await store.insert(record("b", package="other", minutes=5))
        await store.insert(record("c", type=ArtifactType.MAC, minutes=10, architecture="aarch64"))

        assert await store.count({"contents.rundeps": "curl"}) == 1
        assert await store.count({"type": ArtifactType.SRC}) == 2
        assert await store.count({"type": "mac"}) == 1
        assert await store.count({"architecture": None}) == 2
        assert await store.count({"package": re.compile("^oth")}) == 1
        assert [r.id for r in await store.find({}, newest_first=True)] == ["c", "b", "a"]
        assert [r.id for r in await store.find({}, limit=2)] == ["a", "b"]
        assert await store.distinct("package", {}) == ["mypkg", "other"]

    asyncio.run(scenario())


def test_find_returns_copies(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("a"))
        found = await store.find_one({"package": "mypkg"})
        found.version = "9.9"
        assert (await store.get("a")).version == "1.0"

    asyncio.run(scenario())


def test_find_one_and_replace_keeps_id_and_upserts(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        query = {"user": "jane", "package": "mypkg", "type": ArtifactType.FAILURE}

        assert await store.find_one_and_replace(query, record("f1", type=ArtifactType.FAILURE)) is None
        assert await store.count(query) == 0

        assert await store.find_one_and_replace(query, record("f1", type=ArtifactType.FAILURE), upsert=True) is None
        original = await store.find_one_and_replace(
            query, record("f2", version="1.1", type=ArtifactType.FAILURE), upsert=True
        )
        assert original.id == "f1"
        stored = await store.find(query)
        assert [(r.id, r.version) for r in stored] == [("f1", "1.1")]

    asyncio.run(scenario())


def test_update_sets_and_unsets_dotted_paths(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("a", index_url="https://x"))

        updated = await store.update("a", {"builder.status": "failure", "indexed": True}, ["index_url"])
        assert updated.builder.status == "failure"
        assert updated.indexed is True
        assert updated.index_url is None

        with pytest.raises(ValidationError):
            await store.update("a", {"id": "other"})
        with pytest.raises(ValidationError):
            await store.update("a", {"created": "not a date"})
        with pytest.raises(NotFoundError):
            await store.update("missing", {"indexed": True})

    asyncio.run(scenario())


def test_delete_and_delete_many(data_dir):
    async def scenario():
        store = JsonMetadataStore(data_dir)
        await store.initialize()
        await store.insert(record("a"))
        await store.insert(record("b", version="1.1"))
        await store.insert(record("c", package="other"))

        assert (await store.delete("a")).id == "a"
        assert await store.delete("a") is None
        assert not (data_dir / "records" / "a.json").exists()

        deleted = await store.delete_many({"package": "other"})
        assert [r.id for r in deleted] == ["c"]
        assert await store.count({}) == 1

    asyncio.run(scenario())

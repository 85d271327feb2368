from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from sermon_prep.config import AppConfig
from sermon_prep.services.cascade import chunked, unique_members
from sermon_prep.services.container import SeriesServices, build_services
from sermon_prep.services.documents import BatchOperation
from sermon_prep.services.errors import CascadeError
from sermon_prep.services.membership import MemberRef, MemberType
from sermon_prep.services.series import SERIES_COLLECTION


def _populated_series(services: SeriesServices, sermon_count: int) -> str:
    sermon_ids = []
    for index in range(sermon_count):
        sermon_id = f"s{index}"
        services.store.set(
            "sermons",
            sermon_id,
            {"userId": "u1", "title": f"Sermon {index}", "seriesId": "big", "seriesPosition": index + 1},
        )
        sermon_ids.append(sermon_id)
    services.store.set(SERIES_COLLECTION, "big", {"userId": "u1", "sermonIds": sermon_ids})
    return "big"


def test_chunked_never_exceeds_the_limit() -> None:
    operations = [BatchOperation.delete("sermons", str(index)) for index in range(7)]

    assert [len(chunk) for chunk in chunked(operations, 3)] == [3, 3, 1]
    assert chunked([], 3) == []
    with pytest.raises(ValueError):
        chunked(operations, 0)


def test_unique_members_drops_repeated_references() -> None:
    members = [
        MemberRef(MemberType.SERMON, "a", "i1"),
        MemberRef(MemberType.SERMON, "a", "i2"),
        MemberRef(MemberType.GROUP, "a", "i3"),
    ]

    assert [str(member) for member in unique_members(members)] == ["sermon:a", "group:a"]


def test_delete_series_clears_every_member(services: SeriesServices) -> None:
    series_id = services.series.create_series("u1", theme="Hope", book_or_topic="Acts")["id"]
    sermon_id = services.sermons.create_sermon("u1", "One")["id"]
    group_id = services.groups.create_group("u1", "Group")["id"]
    services.series.add_sermon_to_series(series_id, sermon_id)
    services.series.add_group_to_series(series_id, group_id)
    asyncio.run(services.engine.sync_series_item_positions(series_id))

    report = asyncio.run(services.cascade.delete_series(series_id))

    assert report.existed is True
    assert report.cleared == 2
    assert report.batches == 1
    assert services.series.fetch_series_by_id(series_id) is None
    for document in (services.sermons.require(sermon_id), services.groups.require(group_id)):
        assert document["seriesId"] is None
        assert document["seriesPosition"] is None

    again = asyncio.run(services.cascade.delete_series(series_id))
    assert again.existed is False
    assert again.batches == 0


def test_delete_series_tolerates_members_already_deleted(services: SeriesServices) -> None:
    series_id = services.series.create_series("u1", theme="Hope", book_or_topic="Acts")["id"]
    services.series.add_sermon_to_series(series_id, "never-created")

    report = asyncio.run(services.cascade.delete_series(series_id))

    assert report.existed is True
    assert report.cleared == 0
    assert services.series.fetch_series_by_id(series_id) is None


@pytest.mark.parametrize(("member_count", "expected_batches"), [(500, 1), (501, 2)])
def test_delete_series_chunks_at_the_batch_limit(
    services: SeriesServices, member_count: int, expected_batches: int
) -> None:
    series_id = _populated_series(services, member_count)
    batch_sizes = []
    original_batch_write = services.store.batch_write

    def recording_batch_write(operations):
        batch_sizes.append(len(operations))
        return original_batch_write(operations)

    services.store.batch_write = recording_batch_write  # type: ignore[method-assign]

    report = asyncio.run(services.cascade.delete_series(series_id))

    assert report.batches == expected_batches
    assert report.cleared == member_count
    assert max(batch_sizes) <= services.store.batch_limit
    assert services.sermons.require(f"s{member_count - 1}")["seriesId"] is None


def test_failed_chunk_leaves_earlier_chunks_applied(temp_config: AppConfig) -> None:
    services = build_services(replace(temp_config, batch_limit=2))
    try:
        series_id = _populated_series(services, 5)
        original_batch_write = services.store.batch_write
        calls = {"count": 0}

        def flaky_batch_write(operations):
            calls["count"] += 1
            if calls["count"] == 2:
                raise RuntimeError("disk full")
            return original_batch_write(operations)

        services.store.batch_write = flaky_batch_write  # type: ignore[method-assign]

        with pytest.raises(CascadeError) as excinfo:
            asyncio.run(services.cascade.delete_series(series_id))

        assert excinfo.value.committed_batches == 1
        assert services.sermons.require("s0")["seriesId"] is None
        assert services.sermons.require("s2")["seriesId"] == "big"
        assert services.series.fetch_series_by_id(series_id) is not None

        services.store.batch_write = original_batch_write  # type: ignore[method-assign]
        report = asyncio.run(services.cascade.delete_series(series_id))
        assert report.batches == 3
        assert services.series.fetch_series_by_id(series_id) is None
        assert all(services.sermons.require(f"s{index}")["seriesId"] is None for index in range(5))
    finally:
        services.close()


def test_delete_group_renumbers_remaining_members(services: SeriesServices) -> None:
    series_id = services.series.create_series("u1", theme="Hope", book_or_topic="Acts")["id"]
    s1 = services.sermons.create_sermon("u1", "One")["id"]
    g1 = services.groups.create_group("u1", "Group")["id"]
    s2 = services.sermons.create_sermon("u1", "Two")["id"]
    services.series.add_sermon_to_series(series_id, s1)
    services.series.add_group_to_series(series_id, g1)
    services.series.add_sermon_to_series(series_id, s2)
    asyncio.run(services.engine.sync_series_item_positions(series_id))

    report = asyncio.run(services.cascade.delete_group(g1))

    assert report.existed is True
    assert report.series_touched == [series_id]
    assert services.groups.get(g1) is None
    series = services.series.require_series(series_id)
    assert [item["refId"] for item in series["items"]] == [s1, s2]
    assert [item["position"] for item in series["items"]] == [1, 2]
    assert services.sermons.require(s2)["seriesPosition"] == 2

    again = asyncio.run(services.cascade.delete_group(g1))
    assert again.existed is False


def test_delete_sermon_updates_legacy_series(services: SeriesServices) -> None:
    first = services.sermons.create_sermon("u1", "First")["id"]
    second = services.sermons.create_sermon("u1", "Second")["id"]
    services.store.set(SERIES_COLLECTION, "legacy", {"userId": "u1", "sermonIds": [first, second]})
    asyncio.run(services.engine.sync_series_item_positions("legacy"))

    report = asyncio.run(services.cascade.delete_sermon(first))

    assert report.series_touched == ["legacy"]
    assert services.sermons.get(first) is None
    assert services.series.require_series("legacy")["sermonIds"] == [second]
    assert services.sermons.require(second)["seriesPosition"] == 1


def test_deleting_members_of_a_migrated_series_leaves_no_reference(services: SeriesServices) -> None:
    sermon_id = services.sermons.create_sermon("u1", "One")["id"]
    group_id = services.groups.create_group("u1", "Group")["id"]
    services.store.set(SERIES_COLLECTION, "legacy", {"userId": "u1", "sermonIds": [sermon_id]})
    asyncio.run(services.engine.sync_series_item_positions("legacy"))
    asyncio.run(services.add_member("legacy", MemberType.GROUP, group_id))

    asyncio.run(services.cascade.delete_group(group_id))
    report = asyncio.run(services.cascade.delete_sermon(sermon_id))

    assert report.series_touched == ["legacy"]
    series = services.series.require_series("legacy")
    assert series["items"] == []
    assert series["sermonIds"] == []
    assert asyncio.run(services.engine.resync("legacy")).members == []


def test_delete_group_detaches_a_dangling_reference(services: SeriesServices) -> None:
    series_id = services.series.create_series("u1", theme="Hope", book_or_topic="Acts")["id"]
    sermon_id = services.sermons.create_sermon("u1", "One")["id"]
    group_id = services.groups.create_group("u1", "Group")["id"]
    services.series.add_group_to_series(series_id, group_id)
    services.series.add_sermon_to_series(series_id, sermon_id)
    services.groups.delete(group_id)

    report = asyncio.run(services.cascade.delete_group(group_id))

    assert report.existed is False
    assert report.series_touched == [series_id]
    series = services.series.require_series(series_id)
    assert [item["refId"] for item in series["items"]] == [sermon_id]
    assert services.sermons.require(sermon_id)["seriesPosition"] == 1

from __future__ import annotations

from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from sermon_prep.services.container import SeriesServices
from sermon_prep.services.errors import ConcurrentModificationError
from sermon_prep.services.series import SERIES_COLLECTION
from sermon_prep.web import create_app


@pytest.fixture()
def client(services: SeriesServices) -> TestClient:
    return TestClient(create_app(services, config=services.config))


def _create_series(client: TestClient, **overrides: Any) -> Dict[str, Any]:
    payload = {"userId": "u1", "theme": "Hope", "bookOrTopic": "Romans", **overrides}
    response = client.post("/api/series", json=payload)
    assert response.status_code == 201
    return response.json()["series"]


def _create_sermon(client: TestClient, title: str) -> str:
    response = client.post("/api/sermons", json={"userId": "u1", "title": title})
    assert response.status_code == 201
    return response.json()["sermon"]["id"]


def _create_group(client: TestClient, title: str) -> str:
    response = client.post("/api/groups", json={"userId": "u1", "title": title})
    assert response.status_code == 201
    return response.json()["group"]["id"]


def test_series_crud_endpoints(client: TestClient) -> None:
    series = _create_series(client, title="Romans Road", startDate="2024-03-03")

    listed = client.get("/api/series", params={"userId": "u1"}).json()["series"]
    assert [entry["id"] for entry in listed] == [series["id"]]

    fetched = client.get(f"/api/series/{series['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["series"]["title"] == "Romans Road"

    updated = client.put(f"/api/series/{series['id']}", json={"status": "active"})
    assert updated.status_code == 200
    assert updated.json()["series"]["status"] == "active"

    invalid = client.put(f"/api/series/{series['id']}", json={"status": "paused"})
    assert invalid.status_code == 400

    missing = client.get("/api/series/missing")
    assert missing.status_code == 404
    assert missing.json() == {"detail": "Series not found"}


def test_create_series_requires_theme(client: TestClient) -> None:
    response = client.post("/api/series", json={"userId": "u1", "bookOrTopic": "Romans"})

    assert response.status_code == 400


def test_add_items_syncs_back_references(client: TestClient) -> None:
    series_id = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "One")
    group_id = _create_group(client, "Advent")

    client.post(f"/api/series/{series_id}/items", json={"type": "sermon", "refId": sermon_id})
    response = client.post(
        f"/api/series/{series_id}/items",
        json={"type": "group", "refId": group_id, "position": 1},
    )

    assert response.status_code == 200
    body = response.json()
    assert [item["refId"] for item in body["series"]["items"]] == [group_id, sermon_id]
    assert body["series"]["seriesKind"] == "mixed"
    assert body["sync"]["synced"] == 2
    assert client.get(f"/api/groups/{group_id}").json()["group"]["seriesPosition"] == 1
    sermon = client.get(f"/api/sermons/{sermon_id}").json()["sermon"]
    assert (sermon["seriesId"], sermon["seriesPosition"]) == (series_id, 2)


@pytest.mark.parametrize(
    ("payload", "detail"),
    [
        ({"type": "video", "refId": "x"}, "Invalid item type"),
        ({"type": "sermon"}, "refId is required"),
    ],
)
def test_add_item_validation(client: TestClient, payload, detail) -> None:
    series_id = _create_series(client)["id"]

    response = client.post(f"/api/series/{series_id}/items", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == detail


def test_add_item_to_missing_series_or_member(client: TestClient) -> None:
    series_id = _create_series(client)["id"]

    missing_series = client.post("/api/series/nope/items", json={"type": "sermon", "refId": "s"})
    missing_sermon = client.post(
        f"/api/series/{series_id}/items", json={"type": "sermon", "refId": "ghost"}
    )

    assert missing_series.status_code == 404
    assert missing_series.json()["detail"] == "Series not found"
    assert missing_sermon.status_code == 404
    assert missing_sermon.json()["detail"] == "Sermon not found"


def test_member_cannot_join_two_series(client: TestClient) -> None:
    first = _create_series(client)["id"]
    second = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "Shared")
    client.post(f"/api/series/{first}/sermons", json={"sermonId": sermon_id})

    response = client.post(f"/api/series/{second}/sermons", json={"sermonId": sermon_id})

    assert response.status_code == 409


def test_reorder_and_remove_items(client: TestClient) -> None:
    series_id = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "One")
    group_id = _create_group(client, "Two")
    client.post(f"/api/series/{series_id}/items", json={"type": "sermon", "refId": sermon_id})
    series = client.post(
        f"/api/series/{series_id}/items", json={"type": "group", "refId": group_id}
    ).json()["series"]
    item_ids = [item["id"] for item in series["items"]]

    reordered = client.put(f"/api/series/{series_id}/items", json={"itemIds": item_ids[::-1]})
    assert reordered.status_code == 200
    assert client.get(f"/api/groups/{group_id}").json()["group"]["seriesPosition"] == 1

    empty = client.put(f"/api/series/{series_id}/items", json={"itemIds": []})
    assert empty.status_code == 400
    assert empty.json()["detail"] == "itemIds cannot be empty"
    not_strings = client.put(f"/api/series/{series_id}/items", json={"itemIds": [1, 2]})
    assert not_strings.json()["detail"] == "itemIds must be an array of strings"

    removed = client.delete(
        f"/api/series/{series_id}/items", params={"type": "group", "refId": group_id}
    )
    assert removed.status_code == 200
    assert removed.json()["sync"]["cleared"] == 1
    group = client.get(f"/api/groups/{group_id}").json()["group"]
    assert group["seriesId"] is None and group["seriesPosition"] is None
    assert client.get(f"/api/sermons/{sermon_id}").json()["sermon"]["seriesPosition"] == 1

    again = client.delete(
        f"/api/series/{series_id}/items", params={"type": "group", "refId": group_id}
    )
    assert again.status_code == 404


def test_legacy_sermon_endpoints(client: TestClient, services: SeriesServices) -> None:
    first = _create_sermon(client, "First")
    second = _create_sermon(client, "Second")
    services.store.set(SERIES_COLLECTION, "legacy", {"userId": "u1", "sermonIds": [first]})

    added = client.post("/api/series/legacy/sermons", json={"sermonId": second, "position": 1})
    assert added.status_code == 200
    assert added.json()["series"]["sermonIds"] == [second, first]
    assert added.json()["sync"]["source"] == "sermonIds"

    reordered = client.put("/api/series/legacy/sermons", json={"sermonIds": [first, second]})
    assert reordered.status_code == 200
    assert client.get(f"/api/sermons/{second}").json()["sermon"]["seriesPosition"] == 2

    removed = client.delete("/api/series/legacy/sermons", params={"sermonId": first})
    assert removed.status_code == 200
    assert removed.json()["series"]["sermonIds"] == [second]
    assert client.get(f"/api/sermons/{first}").json()["sermon"]["seriesId"] is None


def test_delete_series_is_idempotent(client: TestClient) -> None:
    series_id = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "One")
    client.post(f"/api/series/{series_id}/sermons", json={"sermonId": sermon_id})

    deleted = client.delete(f"/api/series/{series_id}")
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Series deleted successfully"
    assert client.get(f"/api/sermons/{sermon_id}").json()["sermon"]["seriesId"] is None

    again = client.delete(f"/api/series/{series_id}")
    assert again.status_code == 200
    assert again.json() == {"message": "Series not found"}


def test_delete_group_and_sermon(client: TestClient) -> None:
    series_id = _create_series(client)["id"]
    group_id = _create_group(client, "Group")
    sermon_id = _create_sermon(client, "Sermon")
    client.post(f"/api/series/{series_id}/items", json={"type": "group", "refId": group_id})
    client.post(f"/api/series/{series_id}/items", json={"type": "sermon", "refId": sermon_id})

    deleted_group = client.delete(f"/api/groups/{group_id}")
    assert deleted_group.json()["message"] == "Group deleted successfully"
    assert client.get(f"/api/sermons/{sermon_id}").json()["sermon"]["seriesPosition"] == 1
    assert client.delete(f"/api/groups/{group_id}").json() == {"message": "Group not found"}

    deleted_sermon = client.delete(f"/api/sermons/{sermon_id}")
    assert deleted_sermon.json()["message"] == "Sermon deleted successfully"
    assert client.get(f"/api/series/{series_id}").json()["series"]["items"] == []
    assert client.get(f"/api/sermons/{sermon_id}").status_code == 404


def test_entity_updates_ignore_back_reference_fields(client: TestClient) -> None:
    sermon_id = _create_sermon(client, "Draft")

    response = client.put(
        f"/api/sermons/{sermon_id}", json={"title": "Final", "isPreached": True}
    )

    assert response.status_code == 200
    sermon = response.json()["sermon"]
    assert sermon["title"] == "Final"
    assert sermon["isPreached"] is True
    assert sermon["seriesId"] is None
    assert [entry["id"] for entry in client.get("/api/sermons", params={"userId": "u1"}).json()["sermons"]] == [sermon_id]
    assert client.put("/api/groups/missing", json={"title": "x"}).status_code == 404


def test_resync_endpoint(client: TestClient, services: SeriesServices) -> None:
    series_id = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "One")
    client.post(f"/api/series/{series_id}/sermons", json={"sermonId": sermon_id})
    services.sermons.update_series_info(sermon_id, series_id, 7)

    response = client.post(f"/api/series/{series_id}/resync")

    assert response.status_code == 200
    assert response.json()["sync"]["positions"] == {f"sermon:{sermon_id}": 1}
    assert client.get(f"/api/sermons/{sermon_id}").json()["sermon"]["seriesPosition"] == 1
    assert client.post("/api/series/missing/resync").status_code == 404


def test_concurrent_modification_maps_to_conflict(
    client: TestClient, services: SeriesServices, monkeypatch
) -> None:
    series_id = _create_series(client)["id"]
    sermon_id = _create_sermon(client, "One")

    def always_conflicting(*args, **kwargs):
        raise ConcurrentModificationError(SERIES_COLLECTION, series_id, 1, 2)

    monkeypatch.setattr(services.series, "add_item_to_series", always_conflicting)

    response = client.post(f"/api/series/{series_id}/sermons", json={"sermonId": sermon_id})

    assert response.status_code == 409

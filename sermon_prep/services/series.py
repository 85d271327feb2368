"""Series persistence and item-list mutators.

Each mutator reads the series, edits its ``items`` (or legacy ``sermonIds``)
in memory and writes the whole field back as a compare-and-set on the
document version. When another writer got there first the mutation is
re-applied to the fresh document, up to ``write_attempts`` times.

Mutators never push back-references; callers run the sync engine afterwards.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .documents import DocumentStore
from .entities import utc_timestamp
from .errors import ConcurrentModificationError, DocumentNotFoundError, SeriesNotFoundError, ValidationError
from .membership import (
    MemberRef,
    MemberType,
    clamp_insert_index,
    derive_series_kind,
    make_item,
    materialize_items,
    renumber,
    resolve_membership,
    uses_items,
    validate_item,
    validate_permutation,
    validate_ref_id,
)


LOGGER = logging.getLogger(__name__)

SERIES_COLLECTION = "series"
SERIES_STATUSES = ("draft", "active", "completed")
SERIES_METADATA_FIELDS = (
    "title",
    "theme",
    "description",
    "bookOrTopic",
    "startDate",
    "duration",
    "color",
    "status",
    "seriesKind",
)

Mutator = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def _validate_status(status: Any) -> None:
    if status not in SERIES_STATUSES:
        raise ValidationError("Invalid status. Must be one of: draft, active, completed")


def _validate_position(position: Optional[int]) -> Optional[int]:
    if position is None:
        return None
    if isinstance(position, bool) or not isinstance(position, int):
        raise ValidationError("position must be an integer")
    return position


def _items_update(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    checked = renumber(validate_item(item) for item in items)
    return {"items": checked, "seriesKind": derive_series_kind(checked)}


class SeriesRepository:
    """Owns the series documents."""

    def __init__(self, store: DocumentStore, *, write_attempts: int = 3) -> None:
        self._store = store
        self._write_attempts = max(1, int(write_attempts))

    # ------------------------------------------------------------------
    # Whole-document helpers
    # ------------------------------------------------------------------
    def create_series(
        self,
        user_id: str,
        *,
        theme: str,
        book_or_topic: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        start_date: Optional[str] = None,
        duration: Optional[int] = None,
        color: Optional[str] = None,
        status: str = "draft",
    ) -> Dict[str, Any]:
        validate_ref_id(user_id, label="userId")
        _validate_status(status)
        now = utc_timestamp()
        metadata = {
            "title": title,
            "theme": theme,
            "bookOrTopic": book_or_topic,
            "description": description,
            "startDate": start_date,
            "duration": duration,
            "color": color,
        }
        document = {
            **{key: value for key, value in metadata.items() if value is not None},
            "userId": user_id.strip(),
            "status": status,
            "items": [],
            "sermonIds": [],
            "seriesKind": "sermon",
            "createdAt": now,
            "updatedAt": now,
        }
        series_id = self._store.create(SERIES_COLLECTION, document)
        LOGGER.info("Created series %s for user %s", series_id, document["userId"])
        created = self.fetch_series_by_id(series_id)
        assert created is not None
        return created

    def fetch_series_by_id(self, series_id: str) -> Optional[Dict[str, Any]]:
        series = self._store.get(SERIES_COLLECTION, series_id)
        if series is None:
            LOGGER.debug("Series %s not found", series_id)
        return series

    def require_series(self, series_id: str) -> Dict[str, Any]:
        series = self.fetch_series_by_id(series_id)
        if series is None:
            raise SeriesNotFoundError(series_id)
        return series

    def list_series_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Return a user's series, newest ``startDate`` first, undated last."""

        documents = self._store.query(SERIES_COLLECTION, "userId", user_id)
        dated = [doc for doc in documents if doc.get("startDate")]
        undated = [doc for doc in documents if not doc.get("startDate")]
        dated.sort(key=lambda doc: doc["startDate"], reverse=True)
        return dated + undated

    def list_all_series(self) -> List[Dict[str, Any]]:
        return self._store.list_documents(SERIES_COLLECTION)

    def update_series(self, series_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Update metadata fields; membership is only changed through the mutators."""

        filtered = {
            key: value
            for key, value in updates.items()
            if key in SERIES_METADATA_FIELDS and value is not None
        }
        if not filtered:
            raise ValidationError("No valid fields provided for update")
        if "status" in filtered:
            _validate_status(filtered["status"])
        filtered["updatedAt"] = utc_timestamp()
        try:
            self._store.update(SERIES_COLLECTION, series_id, filtered)
        except DocumentNotFoundError as error:
            raise SeriesNotFoundError(series_id) from error
        LOGGER.info("Series %s updated (%s)", series_id, ", ".join(sorted(filtered)))
        return self.require_series(series_id)

    def delete_series(self, series_id: str) -> bool:
        """Delete the series document only; back-references are left to the caller."""

        deleted = self._store.delete(SERIES_COLLECTION, series_id)
        LOGGER.info("Series %s deleted (existed=%s)", series_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Read-modify-write
    # ------------------------------------------------------------------
    def _mutate(self, series_id: str, action: str, mutator: Mutator) -> Dict[str, Any]:
        last_conflict: Optional[ConcurrentModificationError] = None
        for attempt in range(1, self._write_attempts + 1):
            series = self.require_series(series_id)
            fields = mutator(series)
            if fields is None:
                LOGGER.debug("%s on series %s changed nothing", action, series_id)
                return series
            fields["updatedAt"] = utc_timestamp()
            try:
                self._store.update(
                    SERIES_COLLECTION,
                    series_id,
                    fields,
                    expected_version=series["version"],
                )
            except ConcurrentModificationError as conflict:
                last_conflict = conflict
                LOGGER.warning(
                    "%s on series %s hit a concurrent write (attempt %d/%d)",
                    action,
                    series_id,
                    attempt,
                    self._write_attempts,
                )
                continue
            except DocumentNotFoundError as error:
                raise SeriesNotFoundError(series_id) from error
            LOGGER.debug("%s on series %s wrote %s", action, series_id, sorted(fields))
            return self.require_series(series_id)
        assert last_conflict is not None
        raise last_conflict

    @staticmethod
    def _insert_item(
        series: Dict[str, Any],
        member_type: MemberType,
        ref_id: str,
        position: Optional[int],
    ) -> Dict[str, Any]:
        items = materialize_items(series)
        existing = next(
            (item for item in items if item["type"] == member_type.value and item["refId"] == ref_id),
            None,
        )
        if existing is not None:
            items.remove(existing)
        item = existing or make_item(member_type, ref_id)
        items.insert(clamp_insert_index(position, len(items)), item)
        return _items_update(items)

    # ------------------------------------------------------------------
    # Sermon mutators (items or legacy list)
    # ------------------------------------------------------------------
    def add_sermon_to_series(
        self, series_id: str, sermon_id: str, position: Optional[int] = None
    ) -> Dict[str, Any]:
        ref_id = validate_ref_id(sermon_id, label="sermonId")
        position = _validate_position(position)

        def mutate(series: Dict[str, Any]) -> Dict[str, Any]:
            legacy_ids = series.get("sermonIds") or []
            if not uses_items(series) and legacy_ids:
                sermon_ids = [value for value in legacy_ids if value != ref_id]
                sermon_ids.insert(clamp_insert_index(position, len(sermon_ids)), ref_id)
                return {"sermonIds": sermon_ids}
            return self._insert_item(series, MemberType.SERMON, ref_id, position)

        LOGGER.debug("Adding sermon %s to series %s at %s", ref_id, series_id, position)
        return self._mutate(series_id, "add_sermon", mutate)

    def remove_sermon_from_series(self, series_id: str, sermon_id: str) -> Dict[str, Any]:
        ref_id = validate_ref_id(sermon_id, label="sermonId")

        def mutate(series: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            legacy_ids = series.get("sermonIds") or []
            fields = self._filter_items(series, MemberType.SERMON, ref_id) if uses_items(series) else None
            if ref_id in legacy_ids:
                # A stale legacy list must not resurface a removed sermon once items empties.
                fields = fields or {}
                fields.setdefault("sermonIds", [value for value in legacy_ids if value != ref_id])
            return fields

        return self._mutate(series_id, "remove_sermon", mutate)

    def reorder_sermons_in_series(self, series_id: str, ordered_sermon_ids: List[str]) -> Dict[str, Any]:
        def mutate(series: Dict[str, Any]) -> Dict[str, Any]:
            if not uses_items(series):
                current = list(series.get("sermonIds") or [])
                return {"sermonIds": validate_permutation(current, ordered_sermon_ids, label="sermonIds")}
            items = [dict(item) for item in series["items"]]
            slots = [index for index, item in enumerate(items) if item["type"] == MemberType.SERMON.value]
            current = [items[index]["refId"] for index in slots]
            ordered = validate_permutation(current, ordered_sermon_ids, label="sermonIds")
            by_ref = {items[index]["refId"]: items[index] for index in slots}
            for slot, ref_id in zip(slots, ordered):
                items[slot] = by_ref[ref_id]
            return _items_update(items)

        return self._mutate(series_id, "reorder_sermons", mutate)

    # ------------------------------------------------------------------
    # Group and mixed-item mutators (items only)
    # ------------------------------------------------------------------
    def add_group_to_series(
        self, series_id: str, group_id: str, position: Optional[int] = None
    ) -> Dict[str, Any]:
        ref_id = validate_ref_id(group_id, label="groupId")
        position = _validate_position(position)
        LOGGER.debug("Adding group %s to series %s at %s", ref_id, series_id, position)
        return self._mutate(
            series_id,
            "add_group",
            lambda series: self._insert_item(series, MemberType.GROUP, ref_id, position),
        )

    def add_item_to_series(
        self,
        series_id: str,
        member_type: MemberType | str,
        ref_id: str,
        position: Optional[int] = None,
    ) -> Dict[str, Any]:
        ref_id = validate_ref_id(ref_id)
        if MemberType.parse(member_type) is MemberType.SERMON:
            return self.add_sermon_to_series(series_id, ref_id, position)
        return self.add_group_to_series(series_id, ref_id, position)

    def remove_group_from_series(self, series_id: str, group_id: str) -> Dict[str, Any]:
        ref_id = validate_ref_id(group_id, label="groupId")
        return self._mutate(
            series_id,
            "remove_group",
            lambda series: self._filter_items(series, MemberType.GROUP, ref_id),
        )

    def remove_item_from_series(
        self, series_id: str, member_type: MemberType | str, ref_id: str
    ) -> Dict[str, Any]:
        ref_id = validate_ref_id(ref_id)
        if MemberType.parse(member_type) is MemberType.SERMON:
            return self.remove_sermon_from_series(series_id, ref_id)
        return self.remove_group_from_series(series_id, ref_id)

    def reorder_series_items(self, series_id: str, ordered_item_ids: List[str]) -> Dict[str, Any]:
        def mutate(series: Dict[str, Any]) -> Dict[str, Any]:
            items = [dict(item) for item in series.get("items") or []]
            current = [str(item.get("id")) for item in items]
            ordered = validate_permutation(current, ordered_item_ids, label="itemIds")
            by_id = {str(item.get("id")): item for item in items}
            return _items_update([by_id[item_id] for item_id in ordered])

        return self._mutate(series_id, "reorder_items", mutate)

    def renumber_items(self, series_id: str) -> Dict[str, Any]:
        """Rewrite cached item positions when they drifted from list order."""

        def mutate(series: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            items = series.get("items") or []
            if all(item.get("position") == index for index, item in enumerate(items, start=1)):
                return None
            return _items_update([dict(item) for item in items])

        return self._mutate(series_id, "renumber_items", mutate)

    @staticmethod
    def _filter_items(
        series: Dict[str, Any], member_type: MemberType, ref_id: str
    ) -> Optional[Dict[str, Any]]:
        items = series.get("items") or []
        kept = [
            dict(item)
            for item in items
            if not (item.get("type") == member_type.value and item.get("refId") == ref_id)
        ]
        if len(kept) == len(items):
            return None
        fields: Dict[str, Any] = {"items": kept, "seriesKind": derive_series_kind(kept)}
        if not kept:
            fields["sermonIds"] = []
        return fields

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    def find_series_containing(self, member_type: MemberType | str, ref_id: str) -> List[Dict[str, Any]]:
        """Return every series whose current membership includes the entity."""

        target = MemberRef(MemberType.parse(member_type), ref_id)
        matches = []
        for series in self.list_all_series():
            members = resolve_membership(series)
            if any(
                member.member_type is target.member_type and member.ref_id == target.ref_id
                for member in members
            ):
                matches.append(series)
        return matches


__all__ = [
    "SERIES_COLLECTION",
    "SERIES_METADATA_FIELDS",
    "SERIES_STATUSES",
    "SeriesRepository",
]

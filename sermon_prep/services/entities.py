"""Sermon and group repositories.

Both aggregates carry the same denormalized back-reference to the series
that contains them: ``seriesId`` and ``seriesPosition``, either both set or
both ``None``. Only :meth:`EntityRepository.update_series_info` writes those
two fields.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type

from .documents import DocumentStore
from .errors import (
    DocumentNotFoundError,
    GroupNotFoundError,
    NotFoundError,
    SermonNotFoundError,
    ValidationError,
)


LOGGER = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityRepository:
    """CRUD for one collection of series members."""

    collection: str = ""
    label: str = "entity"
    not_found_error: Type[NotFoundError] = NotFoundError
    editable_fields: Tuple[str, ...] = ()

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store

    def _create(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        if not user_id or not str(user_id).strip():
            raise ValidationError("userId is required")
        now = utc_timestamp()
        document = {
            **{key: value for key, value in fields.items() if value is not None},
            "userId": str(user_id).strip(),
            "seriesId": None,
            "seriesPosition": None,
            "createdAt": now,
            "updatedAt": now,
        }
        identifier = self._store.create(self.collection, document)
        LOGGER.info("Created %s %s for user %s", self.label, identifier, document["userId"])
        created = self._store.get(self.collection, identifier)
        assert created is not None
        return created

    def get(self, entity_id: str) -> Optional[Dict[str, Any]]:
        return self._store.get(self.collection, entity_id)

    def require(self, entity_id: str) -> Dict[str, Any]:
        document = self.get(entity_id)
        if document is None:
            raise self.not_found_error(entity_id)
        return document

    def list_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        documents = self._store.query(self.collection, "userId", user_id)
        return sorted(documents, key=lambda doc: doc.get("updatedAt") or "", reverse=True)

    def update(self, entity_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply whitelisted field updates; back-references are never touched here."""

        filtered = {
            key: value
            for key, value in updates.items()
            if key in self.editable_fields and value is not None
        }
        if not filtered:
            raise ValidationError("No valid fields provided for update")
        filtered["updatedAt"] = utc_timestamp()
        try:
            self._store.update(self.collection, entity_id, filtered)
        except DocumentNotFoundError as error:
            raise self.not_found_error(entity_id) from error
        LOGGER.debug("Updated %s %s fields=%s", self.label, entity_id, sorted(filtered))
        return self.require(entity_id)

    def delete(self, entity_id: str) -> bool:
        return self._store.delete(self.collection, entity_id)

    def update_series_info(
        self,
        entity_id: str,
        series_id: Optional[str],
        position: Optional[int],
    ) -> None:
        """Write the back-reference of one entity."""

        if (series_id is None) != (position is None):
            raise ValidationError("seriesId and seriesPosition must be set or cleared together")
        if position is not None and int(position) < 1:
            raise ValidationError("seriesPosition is 1-based")
        fields = {
            "seriesId": series_id,
            "seriesPosition": int(position) if position is not None else None,
        }
        try:
            self._store.update(self.collection, entity_id, fields)
        except DocumentNotFoundError as error:
            raise self.not_found_error(entity_id) from error
        LOGGER.debug(
            "%s %s back-reference set to series=%s position=%s",
            self.label.capitalize(),
            entity_id,
            series_id,
            position,
        )


class SermonRepository(EntityRepository):
    collection = "sermons"
    label = "sermon"
    not_found_error = SermonNotFoundError
    editable_fields = ("title", "verse", "date", "isPreached")

    def create_sermon(
        self,
        user_id: str,
        title: str,
        *,
        verse: Optional[str] = None,
        date: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not title or not title.strip():
            raise ValidationError("Sermon title is required")
        return self._create(
            user_id,
            {"title": title.strip(), "verse": verse, "date": date, "isPreached": False},
        )


class GroupRepository(EntityRepository):
    collection = "groups"
    label = "group"
    not_found_error = GroupNotFoundError
    editable_fields = ("title", "description", "status")

    def create_group(
        self,
        user_id: str,
        title: str,
        *,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not title or not title.strip():
            raise ValidationError("Group title is required")
        return self._create(
            user_id,
            {"title": title.strip(), "description": description, "status": "draft"},
        )


__all__ = [
    "EntityRepository",
    "GroupRepository",
    "SermonRepository",
    "utc_timestamp",
]

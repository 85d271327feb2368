"""JSON document store backed by SQLite.

Documents live in a single ``documents`` table keyed by ``(collection, id)``.
Every document carries a ``version`` that is bumped on each write so callers
can perform compare-and-set updates. Multi-document writes go through
:meth:`DocumentStore.batch_write`, which commits at most ``batch_limit``
operations in a single transaction.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .errors import BatchLimitExceededError, ConcurrentModificationError, DocumentNotFoundError


LOGGER = logging.getLogger(__name__)

# Keys injected into every returned document; never persisted inside ``data``.
RESERVED_KEYS = ("id", "version")

_CONNECT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class BatchOperation:
    """One write inside a batch."""

    kind: str
    collection: str
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    must_exist: bool = True

    @classmethod
    def update(
        cls,
        collection: str,
        document_id: str,
        fields: Dict[str, Any],
        *,
        must_exist: bool = True,
    ) -> "BatchOperation":
        return cls("update", collection, document_id, dict(fields), must_exist)

    @classmethod
    def delete(cls, collection: str, document_id: str) -> "BatchOperation":
        return cls("delete", collection, document_id)


def _strip_reserved(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key not in RESERVED_KEYS}


def _encode(data: Dict[str, Any]) -> str:
    return json.dumps(_strip_reserved(data), sort_keys=True)


def _decode(document_id: str, raw: str, version: int) -> Dict[str, Any]:
    document = json.loads(raw)
    document["id"] = document_id
    document["version"] = int(version)
    return document


def _json_path(field_name: str) -> str:
    if not field_name or not all(part.isidentifier() for part in field_name.split(".")):
        raise ValueError(f"Unsupported field path: {field_name!r}")
    return "$." + field_name


class DocumentStore:
    """Document CRUD, field queries and bounded batched writes."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._batch_limit = int(config.batch_limit)
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    @property
    def batch_limit(self) -> int:
        return self._batch_limit

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        return connection.execute(statement, params)

    @contextlib.contextmanager
    def _connect(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection; ``write`` wraps the block in an immediate transaction."""

        connection = sqlite3.connect(
            self._db_path,
            timeout=_CONNECT_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        try:
            if not write:
                yield connection
                return
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")
        finally:
            connection.close()

    def _fetch_row(
        self, connection: sqlite3.Connection, collection: str, document_id: str
    ) -> Optional[sqlite3.Row]:
        cursor = self._execute(
            connection,
            "SELECT id, data, version FROM documents WHERE collection = ? AND id = ?",
            (collection, document_id),
        )
        return cursor.fetchone()

    def _apply_update(
        self,
        connection: sqlite3.Connection,
        collection: str,
        document_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
        must_exist: bool = True,
    ) -> Optional[int]:
        row = self._fetch_row(connection, collection, document_id)
        if row is None:
            if must_exist:
                raise DocumentNotFoundError(collection, document_id)
            LOGGER.debug("Skipping update for missing %s/%s", collection, document_id)
            return None
        current_version = int(row["version"])
        if expected_version is not None and current_version != expected_version:
            raise ConcurrentModificationError(
                collection, document_id, expected_version, current_version
            )
        merged = json.loads(row["data"])
        merged.update(_strip_reserved(fields))
        new_version = current_version + 1
        self._execute(
            connection,
            "UPDATE documents SET data = ?, version = ? WHERE collection = ? AND id = ?",
            (_encode(merged), new_version, collection, document_id),
        )
        return new_version

    # ------------------------------------------------------------------
    # Single document helpers
    # ------------------------------------------------------------------
    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        with self._track_db_event("get", collection=collection, id=document_id) as event:
            with self._connect() as connection:
                row = self._fetch_row(connection, collection, document_id)
            event["found"] = row is not None
        if row is None:
            LOGGER.debug("Document %s/%s not found", collection, document_id)
            return None
        return _decode(row["id"], row["data"], row["version"])

    def create(
        self,
        collection: str,
        data: Dict[str, Any],
        *,
        document_id: Optional[str] = None,
    ) -> str:
        identifier = document_id or uuid.uuid4().hex
        with self._track_db_event("create", collection=collection, id=identifier):
            with self._connect(write=True) as connection:
                self._execute(
                    connection,
                    "INSERT INTO documents(collection, id, data, version) VALUES (?, ?, ?, 1)",
                    (collection, identifier, _encode(data)),
                )
        LOGGER.debug("Created document %s/%s", collection, identifier)
        return identifier

    def set(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        """Create or fully replace a document."""

        with self._track_db_event("set", collection=collection, id=document_id):
            with self._connect(write=True) as connection:
                self._execute(
                    connection,
                    """
                    INSERT INTO documents(collection, id, data, version) VALUES (?, ?, ?, 1)
                    ON CONFLICT(collection, id)
                    DO UPDATE SET data = excluded.data, version = documents.version + 1
                    """,
                    (collection, document_id, _encode(data)),
                )

    def update(
        self,
        collection: str,
        document_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        """Merge ``fields`` into a document and return its new version.

        With ``expected_version`` the write only lands when the stored
        version still matches.
        """

        with self._track_db_event(
            "update",
            collection=collection,
            id=document_id,
            fields=sorted(fields),
            expected_version=expected_version,
        ) as event:
            with self._connect(write=True) as connection:
                new_version = self._apply_update(
                    connection,
                    collection,
                    document_id,
                    fields,
                    expected_version=expected_version,
                )
            event["version"] = new_version
        assert new_version is not None  # must_exist is always set here
        return new_version

    def delete(self, collection: str, document_id: str) -> bool:
        """Delete a document; return whether it existed."""

        with self._track_db_event("delete", collection=collection, id=document_id) as event:
            with self._connect(write=True) as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                )
                deleted = cursor.rowcount > 0
            event["deleted"] = deleted
        LOGGER.debug("Delete %s/%s (existed=%s)", collection, document_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _select(
        self, action: str, statement: str, parameters: Tuple[Any, ...], **payload: Any
    ) -> List[Dict[str, Any]]:
        with self._track_db_event(action, **payload) as event:
            with self._connect() as connection:
                rows = self._execute(connection, statement, parameters).fetchall()
            event["rowcount"] = len(rows)
        return [_decode(row["id"], row["data"], row["version"]) for row in rows]

    def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        return self._select(
            "list",
            "SELECT id, data, version FROM documents WHERE collection = ? ORDER BY rowid",
            (collection,),
            collection=collection,
        )

    def query(self, collection: str, field_name: str, value: Any) -> List[Dict[str, Any]]:
        """Return documents whose ``field_name`` equals ``value``."""

        return self._select(
            "query",
            """
            SELECT id, data, version FROM documents
            WHERE collection = ? AND json_extract(data, ?) = ?
            ORDER BY rowid
            """,
            (collection, _json_path(field_name), value),
            collection=collection,
            field=field_name,
        )

    def array_contains(self, collection: str, field_name: str, value: Any) -> List[Dict[str, Any]]:
        """Return documents whose array ``field_name`` contains ``value``."""

        return self._select(
            "array_contains",
            """
            SELECT id, data, version FROM documents
            WHERE collection = ? AND EXISTS (
                SELECT 1 FROM json_each(documents.data, ?) WHERE json_each.value = ?
            )
            ORDER BY rowid
            """,
            (collection, _json_path(field_name), value),
            collection=collection,
            field=field_name,
        )

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------
    def batch_write(self, operations: Sequence[BatchOperation]) -> int:
        """Apply ``operations`` atomically and return how many took effect.

        Raises :class:`BatchLimitExceededError` before touching the database
        when the batch is larger than the configured limit.
        """

        if len(operations) > self._batch_limit:
            raise BatchLimitExceededError(len(operations), self._batch_limit)
        if not operations:
            return 0

        applied = 0
        with self._track_db_event("batch_write", operations=len(operations)) as event:
            with self._connect(write=True) as connection:
                for operation in operations:
                    if operation.kind == "update":
                        version = self._apply_update(
                            connection,
                            operation.collection,
                            operation.id,
                            operation.fields,
                            must_exist=operation.must_exist,
                        )
                        if version is not None:
                            applied += 1
                    elif operation.kind == "delete":
                        cursor = self._execute(
                            connection,
                            "DELETE FROM documents WHERE collection = ? AND id = ?",
                            (operation.collection, operation.id),
                        )
                        applied += 1 if cursor.rowcount > 0 else 0
                    else:
                        raise ValueError(f"Unsupported batch operation: {operation.kind!r}")
            event["applied"] = applied
        LOGGER.debug("Committed batch of %d operation(s), %d applied", len(operations), applied)
        return applied


__all__ = ["BatchOperation", "DocumentStore", "RESERVED_KEYS"]

"""Cascading cleanup when a series, group or sermon is deleted.

Deleting a series clears the back-reference of every member through chunked
batches (no chunk exceeds the store's batch limit) and then deletes the
series document. Deleting a group or sermon first removes it from every
series that lists it and renumbers the remaining members.

A failure part-way leaves earlier chunks applied; running the same delete
again finishes the job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from .documents import BatchOperation, DocumentStore
from .entities import EntityRepository
from .errors import CascadeError
from .membership import MemberRef, MemberType, resolve_membership
from .series import SeriesRepository
from .sync import SeriesSyncEngine


LOGGER = logging.getLogger(__name__)


@dataclass
class CascadeReport:
    """What a cascading delete did."""

    target_id: str
    existed: bool
    cleared: int = 0
    batches: int = 0
    series_touched: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.target_id,
            "existed": self.existed,
            "cleared": self.cleared,
            "batches": self.batches,
            "seriesTouched": list(self.series_touched),
        }


def chunked(operations: Sequence[BatchOperation], size: int) -> List[List[BatchOperation]]:
    if size < 1:
        raise ValueError("Chunk size must be positive")
    return [list(operations[start:start + size]) for start in range(0, len(operations), size)]


def unique_members(members: Sequence[MemberRef]) -> List[MemberRef]:
    seen = set()
    unique: List[MemberRef] = []
    for member in members:
        key: Tuple[MemberType, str] = (member.member_type, member.ref_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(member)
    return unique


class SeriesCascade:
    """Keeps both sides of the series relationship clean on deletion."""

    def __init__(
        self,
        store: DocumentStore,
        series_repository: SeriesRepository,
        engine: SeriesSyncEngine,
    ) -> None:
        self._store = store
        self._series = series_repository
        self._engine = engine

    def _clear_operations(self, members: Sequence[MemberRef]) -> List[BatchOperation]:
        return [
            BatchOperation.update(
                self._engine.repository_for(member.member_type).collection,
                member.ref_id,
                {"seriesId": None, "seriesPosition": None},
                must_exist=False,
            )
            for member in members
        ]

    async def delete_series(self, series_id: str) -> CascadeReport:
        """Clear every member's back-reference, then delete the series.

        Deleting a series that does not exist is a successful no-op.
        """

        loop = asyncio.get_running_loop()
        series = await loop.run_in_executor(None, self._series.fetch_series_by_id, series_id)
        if series is None:
            LOGGER.info("Series %s already absent; nothing to delete", series_id)
            return CascadeReport(target_id=series_id, existed=False)

        members = unique_members(resolve_membership(series))
        batches = chunked(self._clear_operations(members), self._store.batch_limit)
        report = CascadeReport(target_id=series_id, existed=True)
        for index, batch in enumerate(batches, start=1):
            try:
                report.cleared += await loop.run_in_executor(None, self._store.batch_write, batch)
            except Exception as error:
                LOGGER.error(
                    "Clearing batch %d/%d for series %s failed: %s",
                    index,
                    len(batches),
                    series_id,
                    error,
                )
                raise CascadeError(series_id, report.batches, error) from error
            report.batches += 1
            LOGGER.debug(
                "Committed clear batch %d/%d (%d operation(s)) for series %s",
                index,
                len(batches),
                len(batch),
                series_id,
            )

        await loop.run_in_executor(None, self._series.delete_series, series_id)
        LOGGER.info(
            "Deleted series %s after clearing %d member(s) in %d batch(es)",
            series_id,
            report.cleared,
            report.batches,
        )
        return report

    async def _detach_everywhere(self, member: MemberRef) -> List[str]:
        loop = asyncio.get_running_loop()
        containing = await loop.run_in_executor(
            None, self._series.find_series_containing, member.member_type, member.ref_id
        )
        touched: List[str] = []
        for series in containing:
            series_id = series["id"]
            await loop.run_in_executor(
                None,
                self._series.remove_item_from_series,
                series_id,
                member.member_type,
                member.ref_id,
            )
            await self._engine.sync_series_item_positions(series_id)
            touched.append(series_id)
            LOGGER.debug("Detached %s from series %s", member, series_id)
        return touched

    async def _delete_member(self, repository: EntityRepository, member: MemberRef) -> CascadeReport:
        loop = asyncio.get_running_loop()
        existing = await loop.run_in_executor(None, repository.get, member.ref_id)
        # Series may still reference a document that is already gone.
        touched = await self._detach_everywhere(member)
        if existing is None:
            LOGGER.info("%s already absent; detached from %d series", member, len(touched))
        else:
            await loop.run_in_executor(None, repository.delete, member.ref_id)
            LOGGER.info("Deleted %s (removed from %d series)", member, len(touched))
        return CascadeReport(
            target_id=member.ref_id,
            existed=existing is not None,
            cleared=len(touched),
            series_touched=touched,
        )

    async def delete_group(self, group_id: str) -> CascadeReport:
        """Remove the group from every series, renumber them, then delete it."""

        member = MemberRef(MemberType.GROUP, group_id)
        return await self._delete_member(self._engine.repository_for(MemberType.GROUP), member)

    async def delete_sermon(self, sermon_id: str) -> CascadeReport:
        """Remove the sermon from every series (legacy lists too), then delete it."""

        member = MemberRef(MemberType.SERMON, sermon_id)
        return await self._delete_member(self._engine.repository_for(MemberType.SERMON), member)


__all__ = ["CascadeReport", "SeriesCascade", "chunked", "unique_members"]

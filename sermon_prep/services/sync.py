"""Back-reference synchronization between a series and its members.

The engine holds no state of its own. Every call re-reads the series,
derives each member's 1-based position from list order and pushes
``(seriesId, seriesPosition)`` to every member concurrently. Writes that
succeed are never rolled back; re-running the sync converges.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .entities import EntityRepository
from .errors import NotFoundError, SeriesNotFoundError, SeriesSyncError
from .events import emit_sync_event
from .membership import MemberRef, MemberType, resolve_membership, uses_items
from .series import SeriesRepository


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SyncReport:
    """Outcome of one sync run."""

    series_id: str
    source: str
    members: List[MemberRef] = field(default_factory=list)
    cleared: List[MemberRef] = field(default_factory=list)

    @property
    def positions(self) -> Dict[str, int]:
        return {str(member): index for index, member in enumerate(self.members, start=1)}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seriesId": self.series_id,
            "source": self.source,
            "synced": len(self.members),
            "cleared": len(self.cleared),
            "positions": self.positions,
        }


class SeriesSyncEngine:
    """Push series membership order onto sermon and group back-references."""

    def __init__(
        self,
        series_repository: SeriesRepository,
        repositories: Mapping[MemberType, EntityRepository],
        *,
        executor: Optional[Executor] = None,
        max_workers: int = 8,
    ) -> None:
        missing = [member_type.value for member_type in MemberType if member_type not in repositories]
        if missing:
            raise ValueError(f"No repository registered for member type(s): {', '.join(missing)}")
        self._series = series_repository
        self._repositories: Dict[MemberType, EntityRepository] = dict(repositories)
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="series-sync",
        )

    def repository_for(self, member_type: MemberType) -> EntityRepository:
        return self._repositories[member_type]

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    async def _run(self, operation: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(operation, *args))

    async def _fan_out(
        self,
        series_id: Optional[str],
        writes: Sequence[Tuple[MemberRef, Optional[int]]],
        *,
        tolerate_missing: bool = False,
    ) -> List[Tuple[MemberRef, BaseException]]:
        loop = asyncio.get_running_loop()
        pending = [
            loop.run_in_executor(
                self._executor,
                functools.partial(
                    self.repository_for(member.member_type).update_series_info,
                    member.ref_id,
                    series_id if position is not None else None,
                    position,
                ),
            )
            for member, position in writes
        ]
        results = await asyncio.gather(*pending, return_exceptions=True)
        failures: List[Tuple[MemberRef, BaseException]] = []
        for (member, _position), result in zip(writes, results):
            if not isinstance(result, BaseException):
                continue
            if tolerate_missing and isinstance(result, NotFoundError):
                LOGGER.info("Skipping back-reference clear for missing %s", member)
                continue
            failures.append((member, result))
        return failures

    async def sync_series_item_positions(self, series_id: str) -> SyncReport:
        """Re-read the series and rewrite every member's back-reference."""

        started = time.perf_counter()
        series = await self._run(self._series.fetch_series_by_id, series_id)
        if series is None:
            raise SeriesNotFoundError(series_id)

        members = resolve_membership(series)
        if uses_items(series):
            source = "items"
            drifted = any(
                item.get("position") != index
                for index, item in enumerate(series["items"], start=1)
            )
            if drifted:
                await self._run(self._series.renumber_items, series_id)
        elif members:
            source = "sermonIds"
        else:
            source = "empty"

        report = SyncReport(series_id=series_id, source=source, members=members)
        if not members:
            LOGGER.debug("Series %s has no members; nothing to sync", series_id)
            return report

        emit_sync_event(
            "started",
            series_id,
            payload={"members": len(members), "source": source},
            level=logging.DEBUG,
        )
        failures = await self._fan_out(
            series_id,
            [(member, index) for index, member in enumerate(members, start=1)],
        )
        duration_ms = (time.perf_counter() - started) * 1000.0
        if failures:
            emit_sync_event(
                "failed",
                series_id,
                payload={"failures": len(failures)},
                duration_ms=duration_ms,
                level=logging.WARNING,
            )
            raise SeriesSyncError(series_id, failures)

        emit_sync_event(
            "finished",
            series_id,
            payload={"members": len(members), "source": source},
            duration_ms=duration_ms,
        )
        return report

    async def resync(self, series_id: str) -> SyncReport:
        """Repair drift for one series; safe to call at any time."""

        return await self.sync_series_item_positions(series_id)

    async def clear_members(
        self,
        series_id: str,
        members: Sequence[MemberRef],
    ) -> List[MemberRef]:
        """Null the back-reference of members that left ``series_id``.

        Members whose document no longer exists are skipped.
        """

        if not members:
            return []
        failures = await self._fan_out(
            series_id,
            [(member, None) for member in members],
            tolerate_missing=True,
        )
        if failures:
            raise SeriesSyncError(series_id, failures)
        LOGGER.debug("Cleared back-references of %d member(s) of series %s", len(members), series_id)
        return list(members)

    async def remove_and_sync(
        self,
        series_id: str,
        member: MemberRef,
    ) -> SyncReport:
        """Remove one member, clear its back-reference and renumber the rest."""

        await self._run(
            self._series.remove_item_from_series,
            series_id,
            member.member_type,
            member.ref_id,
        )
        cleared = await self.clear_members(series_id, [member])
        report = await self.sync_series_item_positions(series_id)
        report.cleared = cleared
        return report


__all__ = ["SeriesSyncEngine", "SyncReport"]

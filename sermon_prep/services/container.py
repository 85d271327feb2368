"""Wiring of the store, repositories, sync engine and cascade.

:class:`SeriesServices` is what the web layer and the CLI hold on to. Its
membership methods pair every series mutation with the back-reference sync
that has to follow it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..config import AppConfig
from .cascade import SeriesCascade
from .documents import DocumentStore
from .entities import GroupRepository, SermonRepository
from .errors import MembershipConflictError, NotFoundError
from .membership import MemberRef, MemberType, resolve_membership, validate_ref_id
from .series import SeriesRepository
from .sync import SeriesSyncEngine, SyncReport


LOGGER = logging.getLogger(__name__)


@dataclass
class SeriesServices:
    config: AppConfig
    store: DocumentStore
    series: SeriesRepository
    sermons: SermonRepository
    groups: GroupRepository
    engine: SeriesSyncEngine
    cascade: SeriesCascade

    def close(self) -> None:
        self.engine.close()

    def _check_joinable(self, series_id: str, member: MemberRef) -> None:
        entity = self.engine.repository_for(member.member_type).require(member.ref_id)
        current = entity.get("seriesId")
        if current and current != series_id:
            raise MembershipConflictError(member, current)

    async def add_member(
        self,
        series_id: str,
        member_type: MemberType | str,
        ref_id: str,
        position: Optional[int] = None,
    ) -> Tuple[Dict[str, Any], SyncReport]:
        """Insert (or move) a member, then renumber every back-reference."""

        self.series.require_series(series_id)
        member = MemberRef(MemberType.parse(member_type), validate_ref_id(ref_id))
        self._check_joinable(series_id, member)
        self.series.add_item_to_series(series_id, member.member_type, member.ref_id, position)
        report = await self.engine.sync_series_item_positions(series_id)
        LOGGER.info("Added %s to series %s", member, series_id)
        return self.series.require_series(series_id), report

    async def remove_member(
        self,
        series_id: str,
        member_type: MemberType | str,
        ref_id: str,
    ) -> Tuple[Dict[str, Any], SyncReport]:
        series = self.series.require_series(series_id)
        member = MemberRef(MemberType.parse(member_type), validate_ref_id(ref_id))
        if not any(
            existing.member_type is member.member_type and existing.ref_id == member.ref_id
            for existing in resolve_membership(series)
        ):
            raise NotFoundError(member.ref_id, "Item not found in series")
        report = await self.engine.remove_and_sync(series_id, member)
        LOGGER.info("Removed %s from series %s", member, series_id)
        return self.series.require_series(series_id), report

    async def reorder_items(
        self, series_id: str, item_ids: List[str]
    ) -> Tuple[Dict[str, Any], SyncReport]:
        self.series.reorder_series_items(series_id, item_ids)
        report = await self.engine.sync_series_item_positions(series_id)
        return self.series.require_series(series_id), report

    async def reorder_sermons(
        self, series_id: str, sermon_ids: List[str]
    ) -> Tuple[Dict[str, Any], SyncReport]:
        self.series.reorder_sermons_in_series(series_id, sermon_ids)
        report = await self.engine.sync_series_item_positions(series_id)
        return self.series.require_series(series_id), report


def build_services(config: AppConfig) -> SeriesServices:
    """Create the service graph for an already bootstrapped ``config``."""

    store = DocumentStore(config)
    series = SeriesRepository(store, write_attempts=config.write_attempts)
    sermons = SermonRepository(store)
    groups = GroupRepository(store)
    engine = SeriesSyncEngine(
        series,
        {MemberType.SERMON: sermons, MemberType.GROUP: groups},
        max_workers=config.sync_workers,
    )
    cascade = SeriesCascade(store, series, engine)
    return SeriesServices(
        config=config,
        store=store,
        series=series,
        sermons=sermons,
        groups=groups,
        engine=engine,
        cascade=cascade,
    )


__all__ = ["SeriesServices", "build_services"]

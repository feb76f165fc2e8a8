"""Persistence for the collections that mirror external catalogs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CatalogGroup
from ..models import MediaKind

logger = logging.getLogger(__name__)


@dataclass
class GroupRecord:
    """Snapshot of a stored ``(catalog_id, media_kind)`` collection."""

    catalog_id: str
    media_kind: MediaKind
    name: str
    group_ref: str | None
    catalog_total: int
    last_synced_at: datetime | None = None


class GroupStore:
    """Reads and writes ``catalog_groups`` rows, one key per statement."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, catalog_id: str, media_kind: MediaKind) -> GroupRecord | None:
        async with self._session_factory() as session:
            row = await self._load(session, catalog_id, media_kind)
            return self._to_record(row) if row is not None else None

    async def list_groups(self) -> list[GroupRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CatalogGroup).order_by(CatalogGroup.id)
            )
            return [self._to_record(row) for row in result.scalars().all()]

    async def resolve(
        self,
        catalog_id: str,
        media_kind: MediaKind,
        *,
        name: str | None,
        catalog_total: int,
    ) -> GroupRecord:
        """Return the stored group, creating the row and syncing its total."""

        now = datetime.utcnow()
        async with self._session_factory() as session:
            row = await self._load(session, catalog_id, media_kind)
            if row is None:
                row = CatalogGroup(
                    catalog_id=catalog_id,
                    media_kind=media_kind,
                    name=name or catalog_id,
                    catalog_total=catalog_total,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                logger.info(
                    "Tracking catalog %s (%s) with %s entries",
                    catalog_id,
                    media_kind,
                    catalog_total,
                )
            elif row.catalog_total != catalog_total:
                logger.info(
                    "Catalog %s total changed from %s to %s",
                    catalog_id,
                    row.catalog_total,
                    catalog_total,
                )
                row.catalog_total = catalog_total
                row.updated_at = now
            await session.commit()
            return self._to_record(row)

    async def attach_ref(
        self, catalog_id: str, media_kind: MediaKind, group_ref: str
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(CatalogGroup)
                .where(
                    CatalogGroup.catalog_id == catalog_id,
                    CatalogGroup.media_kind == media_kind,
                )
                .values(group_ref=group_ref, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def mark_synced(self, catalog_id: str, media_kind: MediaKind) -> None:
        now = datetime.utcnow()
        async with self._session_factory() as session:
            await session.execute(
                update(CatalogGroup)
                .where(
                    CatalogGroup.catalog_id == catalog_id,
                    CatalogGroup.media_kind == media_kind,
                )
                .values(last_synced_at=now, updated_at=now)
            )
            await session.commit()

    @staticmethod
    async def _load(
        session: AsyncSession, catalog_id: str, media_kind: MediaKind
    ) -> CatalogGroup | None:
        result = await session.execute(
            select(CatalogGroup)
            .where(
                CatalogGroup.catalog_id == catalog_id,
                CatalogGroup.media_kind == media_kind,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_record(row: CatalogGroup) -> GroupRecord:
        return GroupRecord(
            catalog_id=row.catalog_id,
            media_kind=row.media_kind,  # type: ignore[arg-type]
            name=row.name,
            group_ref=row.group_ref,
            catalog_total=row.catalog_total,
            last_synced_at=row.last_synced_at,
        )

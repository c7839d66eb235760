from __future__ import annotations

import uuid
from datetime import datetime
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import HistoryEntry
from app.utils.time import utcnow


class HistoryService:
    def __init__(self, session: AsyncSession, limit: int = 1000) -> None:
        self.session = session
        self.limit = limit

    async def append(
        self,
        user_id: int,
        kind: str,
        url: str,
        prompt: str,
        task_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            url=url,
            prompt=prompt,
            task_id=task_id,
            timestamp=timestamp or utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        await self._trim(user_id, kind)
        return entry

    async def _trim(self, user_id: int, kind: str) -> None:
        # Keep only the newest ``limit`` entries per user and kind.
        keep = (
            select(HistoryEntry.id)
            .where(HistoryEntry.user_id == user_id, HistoryEntry.kind == kind)
            .order_by(HistoryEntry.timestamp.desc())
            .limit(self.limit)
        )
        await self.session.execute(
            delete(HistoryEntry).where(
                HistoryEntry.user_id == user_id,
                HistoryEntry.kind == kind,
                HistoryEntry.id.not_in(keep.scalar_subquery()),
            )
        )

    async def list(self, user_id: int, kind: str) -> List[HistoryEntry]:
        result = await self.session.execute(
            select(HistoryEntry)
            .where(HistoryEntry.user_id == user_id, HistoryEntry.kind == kind)
            .order_by(HistoryEntry.timestamp.desc())
        )
        return list(result.scalars().all())

    async def delete(self, user_id: int, kind: str, entry_id: str) -> bool:
        result = await self.session.execute(
            delete(HistoryEntry)
            .where(
                HistoryEntry.id == entry_id,
                HistoryEntry.user_id == user_id,
                HistoryEntry.kind == kind,
            )
            .returning(HistoryEntry.id)
        )
        return result.scalar_one_or_none() is not None

    async def clear(self, user_id: int, kind: str) -> int:
        result = await self.session.execute(
            delete(HistoryEntry)
            .where(HistoryEntry.user_id == user_id, HistoryEntry.kind == kind)
            .returning(HistoryEntry.id)
        )
        return len(result.all())

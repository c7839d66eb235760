from __future__ import annotations

import asyncio
from typing import List, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.db.models import ACTIVE_TASK_STATUSES, Task
from app.services.provider import GenerationProvider
from app.services.reconciliation import ReconcileResult, TaskReconciler
from app.utils.logging import bind_context, get_logger


logger = get_logger('poller')


class PollManager:
    """Background poll path for tasks whose callback never arrived."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        providers: Mapping[str, GenerationProvider],
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.providers = providers
        self.settings = settings or get_settings()
        self.global_sem = asyncio.Semaphore(self.settings.reconciler_max_concurrency)
        self._inflight: set[int] = set()

    async def pending_ids(self) -> List[int]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(Task.id)
                .where(Task.status.in_(ACTIVE_TASK_STATUSES), Task.credits_deducted.is_(False))
                .order_by(Task.created_at)
                .limit(self.settings.reconciler_batch_size)
            )
            return [row[0] for row in result.all()]

    async def run_once(self) -> List[ReconcileResult]:
        ids = [task_id for task_id in await self.pending_ids() if task_id not in self._inflight]
        self._inflight.update(ids)
        results = await asyncio.gather(*(self._poll_task(task_id) for task_id in ids))
        return [result for result in results if result is not None]

    async def watch_pending(self, interval: int | None = None) -> None:
        interval = interval or self.settings.reconciler_interval_seconds
        while True:
            try:
                results = await self.run_once()
                applied = sum(1 for result in results if result.applied)
                if applied:
                    logger.info('poll_round_applied', checked=len(results), applied=applied)
            except Exception as exc:
                logger.warning('poll_watch_failed', error=str(exc))
            await asyncio.sleep(interval)

    async def _poll_task(self, task_id: int) -> ReconcileResult | None:
        try:
            async with self.global_sem, self.sessionmaker() as session:
                with bind_context(task_id=task_id, source='poll'):
                    task = await session.get(Task, task_id)
                    if not task:
                        return None
                    reconciler = TaskReconciler(session, self.providers, self.settings)
                    return await reconciler.refresh(task)
        except Exception as exc:
            logger.warning('poll_task_failed', task_id=task_id, error=str(exc))
            return None
        finally:
            self._inflight.discard(task_id)

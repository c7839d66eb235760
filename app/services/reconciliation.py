"""Task state machine shared by the webhook and the poll path.

Both paths feed a provider outcome into :func:`reconcile`, which is pure and
decides the transition. :class:`TaskReconciler` then persists it with a
compare-and-set on the task row; only the caller whose update matched the
row runs the side effects (refund, history, usage counter), in the same
transaction. A caller whose update missed re-reads the row and decides
again; it reports ``applied=False`` once the row is settled.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.models import (
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_PROCESSING,
    TERMINAL_TASK_STATUSES,
    Task,
)
from app.errors import MalformedPayload, TaskNotFound
from app.services.credits import CreditsService
from app.services.history import HistoryService
from app.services.outcomes import Failure, InProgress, ProviderOutcome, Success, failure
from app.services.provider import GenerationProvider, ProviderError, extract_task_id
from app.utils.logging import get_logger
from app.utils.time import as_utc, utcnow


logger = get_logger('reconciliation')


@dataclass(frozen=True)
class TaskSnapshot:
    id: int
    task_id: str | None
    user_id: int
    task_type: str
    prompt: str
    status: str
    credits_reserved: int
    credits_deducted: bool
    version: int
    created_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> 'TaskSnapshot':
        return cls(
            id=task.id,
            task_id=task.task_id,
            user_id=task.user_id,
            task_type=task.task_type,
            prompt=task.prompt,
            status=task.status,
            credits_reserved=task.credits_reserved,
            credits_deducted=task.credits_deducted,
            version=task.version,
            created_at=task.created_at,
        )


@dataclass(frozen=True)
class AppendHistory:
    kind: str
    url: str
    prompt: str


@dataclass(frozen=True)
class Refund:
    amount: int


@dataclass(frozen=True)
class CountGeneration:
    count: int


Effect = Union[AppendHistory, Refund, CountGeneration]


@dataclass(frozen=True)
class Transition:
    status: str | None = None
    images: Tuple[str, ...] = ()
    videos: Tuple[str, ...] = ()
    error: str | None = None
    settle: bool = False
    effects: Tuple[Effect, ...] = field(default_factory=tuple)
    at: datetime | None = None

    @property
    def is_noop(self) -> bool:
        return self.status is None

    def values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {'status': self.status, 'updated_at': self.at}
        if self.settle:
            values['credits_deducted'] = True
            values['completed_at'] = self.at
        if self.images:
            values['images'] = list(self.images)
        if self.videos:
            values['videos'] = list(self.videos)
        if self.error is not None:
            values['error'] = self.error
        return values


NOOP = Transition()


def is_timed_out(created_at: datetime, now: datetime, timeout_seconds: int) -> bool:
    return as_utc(now) - as_utc(created_at) > timedelta(seconds=timeout_seconds)


def reconcile(
    snapshot: TaskSnapshot,
    outcome: ProviderOutcome,
    now: datetime,
    refund_on_fail: bool = True,
) -> Transition:
    if snapshot.credits_deducted or snapshot.status in TERMINAL_TASK_STATUSES:
        return NOOP

    if isinstance(outcome, InProgress):
        if snapshot.status == TASK_PENDING:
            return Transition(status=TASK_PROCESSING, at=now)
        return NOOP

    if isinstance(outcome, Success):
        kind = 'video' if snapshot.task_type == 'video' else 'image'
        effects: list[Effect] = [AppendHistory(kind, url, snapshot.prompt) for url in outcome.urls]
        if kind == 'image':
            effects.append(CountGeneration(len(outcome.urls)))
        return Transition(
            status=TASK_COMPLETED,
            images=outcome.urls if kind == 'image' else (),
            videos=outcome.urls if kind == 'video' else (),
            settle=True,
            effects=tuple(effects),
            at=now,
        )

    if isinstance(outcome, Failure):
        effects = []
        if refund_on_fail and snapshot.credits_reserved > 0:
            effects.append(Refund(snapshot.credits_reserved))
        return Transition(
            status=TASK_FAILED,
            error=outcome.message,
            settle=True,
            effects=tuple(effects),
            at=now,
        )

    raise TypeError(f'unknown outcome {outcome!r}')


@dataclass(frozen=True)
class ReconcileResult:
    task_id: int
    status: str
    applied: bool


APPLY_ATTEMPTS = 3


def refund_key(task_id: int) -> str:
    return f'refund:task:{task_id}'


class TaskReconciler:
    def __init__(
        self,
        session: AsyncSession,
        providers: Mapping[str, GenerationProvider],
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.providers = providers
        self.settings = settings or get_settings()

    async def get_by_provider_id(self, provider_task_id: str) -> Task | None:
        result = await self.session.execute(
            select(Task).where(Task.task_id == provider_task_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def apply(self, task: Task, outcome: ProviderOutcome, force_refund: bool = False) -> ReconcileResult:
        refund_on_fail = force_refund or self.settings.refund_on_fail
        for attempt in range(1, APPLY_ATTEMPTS + 1):
            snapshot = TaskSnapshot.from_task(task)
            transition = reconcile(snapshot, outcome, utcnow(), refund_on_fail=refund_on_fail)
            if transition.is_noop:
                return ReconcileResult(snapshot.id, snapshot.status, applied=False)

            result = await self.session.execute(
                update(Task)
                .where(
                    Task.id == snapshot.id,
                    Task.version == snapshot.version,
                    Task.status == snapshot.status,
                    Task.credits_deducted.is_(False),
                )
                .values(version=Task.version + 1, **transition.values())
                .returning(Task.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is not None:
                break
            # Another writer moved the row; re-decide from what it left behind.
            await self.session.rollback()
            await self.session.refresh(task)
            logger.info(
                'reconcile_conflict',
                task_id=snapshot.id,
                provider_task_id=snapshot.task_id,
                expected_version=snapshot.version,
                status=task.status,
                attempt=attempt,
            )
        else:
            logger.warning('reconcile_gave_up', task_id=task.id, provider_task_id=task.task_id, status=task.status)
            return ReconcileResult(task.id, task.status, applied=False)

        try:
            await self._run_effects(snapshot, transition)
        except Exception:
            await self.session.rollback()
            raise
        await self.session.commit()
        await self.session.refresh(task)
        logger.info(
            'reconcile_applied',
            task_id=snapshot.id,
            provider_task_id=snapshot.task_id,
            from_status=snapshot.status,
            to_status=transition.status,
            effects=len(transition.effects),
        )
        return ReconcileResult(snapshot.id, transition.status, applied=True)

    async def _run_effects(self, snapshot: TaskSnapshot, transition: Transition) -> None:
        credits = CreditsService(self.session)
        history = HistoryService(self.session, limit=self.settings.history_limit)
        for effect in transition.effects:
            if isinstance(effect, Refund):
                await credits.refund(
                    snapshot.user_id,
                    effect.amount,
                    meta={'task_id': snapshot.id, 'provider_task_id': snapshot.task_id},
                    idempotency_key=refund_key(snapshot.id),
                )
            elif isinstance(effect, AppendHistory):
                await history.append(
                    snapshot.user_id,
                    effect.kind,
                    effect.url,
                    effect.prompt,
                    task_id=snapshot.task_id,
                    timestamp=transition.at,
                )
            elif isinstance(effect, CountGeneration):
                await credits.count_generations(snapshot.user_id, effect.count)

    async def handle_callback(self, payload: Dict[str, Any]) -> ReconcileResult:
        provider_task_id = extract_task_id(payload)
        if not provider_task_id:
            logger.warning('callback_malformed', reason='missing_task_id')
            raise MalformedPayload('missing_task_id', 'callback payload has no taskId')
        task = await self.get_by_provider_id(provider_task_id)
        if not task:
            logger.warning('callback_unknown_task', provider_task_id=provider_task_id)
            raise TaskNotFound(provider_task_id)
        provider = self.providers.get(task.provider)
        if provider is None:
            raise MalformedPayload('unknown_provider', f'no client for provider {task.provider}')
        try:
            outcome = provider.classify_callback(payload)
        except MalformedPayload as exc:
            logger.warning('callback_malformed', provider_task_id=provider_task_id, reason=exc.code)
            raise
        return await self.apply(task, outcome)

    async def refresh(self, task: Task) -> ReconcileResult:
        if task.is_terminal or task.credits_deducted:
            return ReconcileResult(task.id, task.status, applied=False)
        timed_out = is_timed_out(task.created_at, utcnow(), self.settings.task_timeout_seconds)
        if timed_out:
            logger.info('task_timed_out', task_id=task.id, provider_task_id=task.task_id)
            return await self.apply(task, failure(None, 'timeout'), force_refund=True)
        if not task.task_id:
            return ReconcileResult(task.id, task.status, applied=False)
        provider = self.providers.get(task.provider)
        if provider is None:
            return ReconcileResult(task.id, task.status, applied=False)
        try:
            record = await provider.get_task(task.task_id)
        except ProviderError as exc:
            logger.warning(
                'provider_poll_failed',
                task_id=task.id,
                provider_task_id=task.task_id,
                error=str(exc),
                status_code=exc.status_code,
            )
            return ReconcileResult(task.id, task.status, applied=False)
        return await self.apply(task, provider.classify_record(record))

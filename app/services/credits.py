from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CreditLedger, User
from app.errors import InsufficientCredits, NotFound, ValidationError
from app.services.pricing import PLAN_PERIOD_DAYS, Plan
from app.utils.logging import get_logger
from app.utils.time import utcnow


logger = get_logger('credits')


class CreditsService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_user_by_mobile(self, mobile_number: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.mobile_number == mobile_number))
        return result.scalar_one_or_none()

    async def has_ledger_key(self, idempotency_key: str) -> bool:
        result = await self.session.execute(
            select(CreditLedger.id).where(CreditLedger.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none() is not None

    async def add_ledger(
        self,
        user_id: int,
        delta: int,
        reason: str,
        meta: dict | None = None,
        idempotency_key: str | None = None,
    ) -> CreditLedger:
        entry = CreditLedger(
            user_id=user_id,
            delta_credits=delta,
            reason=reason,
            meta=meta or {},
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def reserve(
        self,
        user_id: int,
        amount: int,
        reason: str = 'generation_reserve',
        meta: dict | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """Atomically take ``amount`` credits from the user, failing closed.

        Returns the new balance.
        """
        if amount < 0:
            raise ValidationError('invalid_amount')
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount, updated_at=utcnow())
            .returning(User.credits)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            user = await self.get_user(user_id)
            if not user:
                raise NotFound('user_not_found')
            raise InsufficientCredits(amount, user.credits)
        await self.add_ledger(user_id, -amount, reason, meta=meta, idempotency_key=idempotency_key)
        logger.info('credits_reserved', user_id=user_id, amount=amount, balance=balance)
        return balance

    async def refund(
        self,
        user_id: int,
        amount: int,
        reason: str = 'generation_refund',
        meta: dict | None = None,
        idempotency_key: str | None = None,
    ) -> bool:
        """Give ``amount`` credits back. A repeated ``idempotency_key`` is a no-op."""
        return await self.add_credits(user_id, amount, reason, meta=meta, idempotency_key=idempotency_key)

    async def add_credits(
        self,
        user_id: int,
        amount: int,
        reason: str,
        meta: dict | None = None,
        idempotency_key: str | None = None,
    ) -> bool:
        if amount < 0:
            raise ValidationError('invalid_amount')
        if idempotency_key and await self.has_ledger_key(idempotency_key):
            logger.info('credits_duplicate_skipped', user_id=user_id, key=idempotency_key)
            return False
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount, updated_at=utcnow())
        )
        await self.add_ledger(user_id, amount, reason, meta=meta, idempotency_key=idempotency_key)
        logger.info('credits_added', user_id=user_id, amount=amount, reason=reason)
        return True

    async def count_generations(self, user_id: int, count: int) -> None:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(images_generated_this_month=User.images_generated_this_month + count)
        )

    async def set_plan(self, user: User, plan: Plan, idempotency_key: str | None = None) -> User:
        """Replace the balance with the plan allotment and restart the monthly period."""
        now = utcnow()
        previous = user.credits
        user.current_plan = plan.key
        user.plan_start_date = now
        user.plan_end_date = now + timedelta(days=PLAN_PERIOD_DAYS)
        user.credits = plan.credits
        user.images_generated_this_month = 0
        user.monthly_reset_date = now + timedelta(days=PLAN_PERIOD_DAYS)
        user.updated_at = now
        await self.add_ledger(
            user.id,
            plan.credits - previous,
            'plan_change',
            meta={'plan': plan.key, 'previous_balance': previous},
            idempotency_key=idempotency_key,
        )
        logger.info('plan_set', user_id=user.id, plan=plan.key, credits=plan.credits)
        return user

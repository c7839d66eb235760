from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Discount
from app.errors import DiscountInvalid, ValidationError
from app.utils.amounts import percent_of
from app.utils.logging import get_logger
from app.utils.text import normalize_code
from app.utils.time import as_utc, utcnow


logger = get_logger('discounts')

DISCOUNT_TYPES = ('percentage', 'fixed')


def invalid_reason(discount: Discount, now: datetime) -> str | None:
    if not discount.is_active:
        return 'discount_inactive'
    if discount.used_count >= discount.capacity:
        return 'discount_exhausted'
    if discount.expires_at and as_utc(now) > as_utc(discount.expires_at):
        return 'discount_expired'
    return None


def is_valid(discount: Discount, now: datetime) -> bool:
    return invalid_reason(discount, now) is None


def calculate_discount(discount: Discount, amount: int, now: datetime | None = None) -> int:
    if not is_valid(discount, now or utcnow()):
        return 0
    if discount.discount_type == 'percentage':
        return percent_of(amount, discount.discount_value)
    return min(discount.discount_value, amount)


@dataclass(frozen=True)
class DiscountQuote:
    code: str
    discount_type: str
    discount_value: int
    discount_amount: int
    original_amount: int
    final_amount: int


class DiscountService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, code: str) -> Discount | None:
        result = await self.session.execute(
            select(Discount)
            .where(Discount.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate(self, code: str, amount: int) -> DiscountQuote:
        if amount <= 0:
            raise ValidationError('invalid_amount', 'Valid amount is required')
        discount = await self.get(code)
        if not discount:
            raise DiscountInvalid('discount_not_found')
        reason = invalid_reason(discount, utcnow())
        if reason:
            raise DiscountInvalid(reason)
        discount_amount = calculate_discount(discount, amount)
        return DiscountQuote(
            code=discount.code,
            discount_type=discount.discount_type,
            discount_value=discount.discount_value,
            discount_amount=discount_amount,
            original_amount=amount,
            final_amount=amount - discount_amount,
        )

    async def redeem(self, code: str) -> None:
        """Consume one use of ``code``; fails if it became invalid meanwhile."""
        now = utcnow()
        result = await self.session.execute(
            update(Discount)
            .where(
                Discount.code == normalize_code(code),
                Discount.is_active.is_(True),
                Discount.used_count < Discount.capacity,
                or_(Discount.expires_at.is_(None), Discount.expires_at >= now),
            )
            .values(used_count=Discount.used_count + 1, updated_at=now)
            .returning(Discount.used_count)
            .execution_options(synchronize_session=False)
        )
        used = result.scalar_one_or_none()
        if used is None:
            discount = await self.get(code)
            if not discount:
                raise DiscountInvalid('discount_not_found')
            raise DiscountInvalid(invalid_reason(discount, now) or 'discount_exhausted')
        logger.info('discount_redeemed', code=normalize_code(code), used_count=used)

    async def create(
        self,
        code: str,
        discount_type: str,
        discount_value: int,
        capacity: int,
        expires_at: datetime | None = None,
        is_active: bool = True,
    ) -> Discount:
        code = normalize_code(code)
        if len(code) < 3 or len(code) > 50:
            raise ValidationError('invalid_code', 'code must be 3 to 50 characters')
        if discount_type not in DISCOUNT_TYPES:
            raise ValidationError('invalid_discount_type')
        if discount_value <= 0:
            raise ValidationError('invalid_discount_value', 'discount value must be positive')
        if discount_type == 'percentage' and discount_value > 100:
            raise ValidationError('invalid_discount_value', 'percentage cannot exceed 100')
        if capacity < 1:
            raise ValidationError('invalid_capacity', 'capacity must be at least 1')
        if await self.get(code):
            raise ValidationError('discount_exists', 'discount code already exists')
        now = utcnow()
        discount = Discount(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            capacity=capacity,
            used_count=0,
            expires_at=expires_at,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        self.session.add(discount)
        await self.session.flush()
        logger.info('discount_created', code=code, discount_type=discount_type, capacity=capacity)
        return discount

    async def list(self) -> List[Discount]:
        result = await self.session.execute(select(Discount).order_by(Discount.created_at.desc()))
        return list(result.scalars().all())

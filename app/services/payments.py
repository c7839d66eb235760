from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import BillingEntry, User
from app.errors import DiscountInvalid, NotFound, ValidationError
from app.services.credits import CreditsService
from app.services.discounts import DiscountService
from app.services.pricing import get_package, get_plan
from app.services.zarinpal import ZarinpalClient, ZarinpalError
from app.utils.amounts import toman_to_rial
from app.utils.logging import get_logger
from app.utils.time import as_utc, utcnow


logger = get_logger('payments')


def new_billing_id() -> str:
    return f'inv-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}'


@dataclass(frozen=True)
class PaymentRequestResult:
    billing_id: str
    amount: int
    free: bool
    authority: str | None = None
    payment_url: str | None = None


class PaymentsService:
    def __init__(self, session: AsyncSession, zarinpal: ZarinpalClient | None = None) -> None:
        self.session = session
        self.zarinpal = zarinpal

    async def list_billing(self, user_id: int) -> list[BillingEntry]:
        result = await self.session.execute(
            select(BillingEntry).where(BillingEntry.user_id == user_id).order_by(BillingEntry.date.desc())
        )
        return list(result.scalars().all())

    async def change_plan(self, user: User, plan_key: str) -> BillingEntry:
        """Switch plans without the gateway. Only free plans qualify."""
        plan = get_plan(plan_key)
        if plan.price > 0:
            raise ValidationError('payment_required', 'paid plans are purchased through the payment gateway')
        if user.current_plan == plan.key:
            raise ValidationError('same_plan', 'You already have this plan')
        entry = BillingEntry(
            id=new_billing_id(),
            user_id=user.id,
            date=utcnow(),
            kind='plan',
            plan=plan.key,
            amount=plan.price,
            status='paid',
        )
        self.session.add(entry)
        await CreditsService(self.session).set_plan(user, plan, idempotency_key=f'billing:{entry.id}')
        return entry

    async def request_payment(
        self,
        user: User,
        kind: str,
        callback_url: str,
        plan_key: str | None = None,
        package_id: str | None = None,
        discount_code: str | None = None,
    ) -> PaymentRequestResult:
        now = utcnow()
        entry = BillingEntry(id=new_billing_id(), user_id=user.id, date=now, kind=kind, status='pending')
        if kind == 'credits':
            package = get_package(package_id)
            if not user.current_plan or user.current_plan == 'free':
                raise ValidationError(
                    'paid_plan_required',
                    'You must have an active plan (other than free) to purchase extra credits',
                )
            if user.plan_end_date and as_utc(user.plan_end_date) < now:
                raise ValidationError('plan_expired', 'Your plan has expired. Please purchase a new plan first')
            entry.credits = package.credits
            original = package.price
            description = f'Purchase of {package.credits} credits'
        elif kind == 'plan':
            plan = get_plan(plan_key)
            if plan.price <= 0:
                raise ValidationError('invalid_plan', 'Cannot purchase free plan')
            if user.current_plan == plan.key:
                raise ValidationError('same_plan', 'You already have this plan')
            entry.plan = plan.key
            original = plan.price
            description = f'Purchase of plan {plan.key}'
        else:
            raise ValidationError('invalid_type')

        entry.amount = original
        if discount_code and discount_code.strip():
            quote = await DiscountService(self.session).validate(discount_code, original)
            if quote.discount_amount > 0:
                entry.original_amount = original
                entry.discount_amount = quote.discount_amount
                entry.discount_code = quote.code
                entry.amount = quote.final_amount

        if entry.amount <= 0:
            entry.amount = 0
            entry.status = 'paid'
            self.session.add(entry)
            await self._grant(user, entry, strict_discount=True)
            logger.info('payment_granted_free', user_id=user.id, billing_id=entry.id, kind=kind)
            return PaymentRequestResult(billing_id=entry.id, amount=0, free=True)

        if self.zarinpal is None:
            raise ZarinpalError('payment gateway is not configured')
        authority = await self.zarinpal.request_payment(
            amount=toman_to_rial(entry.amount),
            callback_url=callback_url,
            description=description,
            mobile=user.mobile_number,
        )
        entry.authority = authority
        self.session.add(entry)
        await self.session.flush()
        logger.info('payment_requested', user_id=user.id, billing_id=entry.id, amount=entry.amount, authority=authority)
        return PaymentRequestResult(
            billing_id=entry.id,
            amount=entry.amount,
            free=False,
            authority=authority,
            payment_url=self.zarinpal.start_pay_url(authority),
        )

    async def _grant(self, user: User, entry: BillingEntry, strict_discount: bool) -> None:
        if entry.discount_code:
            try:
                await DiscountService(self.session).redeem(entry.discount_code)
            except DiscountInvalid as exc:
                # A captured payment is honoured even if the code ran out meanwhile.
                if strict_discount:
                    raise
                logger.warning('discount_redeem_failed', billing_id=entry.id, code=entry.discount_code, reason=exc.code)
        credits = CreditsService(self.session)
        if entry.kind == 'plan':
            await credits.set_plan(user, get_plan(entry.plan), idempotency_key=f'billing:{entry.id}')
        else:
            await credits.add_credits(
                user.id,
                entry.credits or 0,
                'credit_purchase',
                meta={'billing_id': entry.id},
                idempotency_key=f'billing:{entry.id}',
            )

    async def _transition(self, entry_id: str, status: str, ref_id: str | None = None) -> bool:
        values = {'status': status}
        if ref_id:
            values['ref_id'] = ref_id
        result = await self.session.execute(
            update(BillingEntry)
            .where(BillingEntry.id == entry_id, BillingEntry.status == 'pending')
            .values(**values)
            .returning(BillingEntry.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def verify_payment(self, authority: str, status: str) -> str:
        """Settle a gateway return. Returns the outcome reported to the browser."""
        result = await self.session.execute(select(BillingEntry).where(BillingEntry.authority == authority))
        entry = result.scalar_one_or_none()
        if not entry:
            return 'not_found'
        if entry.status == 'paid':
            return 'already_verified'
        if entry.status != 'pending':
            return 'failed'
        if status != 'OK':
            await self._transition(entry.id, 'failed')
            logger.info('payment_cancelled', billing_id=entry.id)
            return 'cancelled'
        if self.zarinpal is None:
            raise ZarinpalError('payment gateway is not configured')

        try:
            verified = await self.zarinpal.verify(authority=authority, amount=toman_to_rial(entry.amount))
        except ZarinpalError as exc:
            await self._transition(entry.id, 'failed')
            logger.warning('payment_verify_failed', billing_id=entry.id, error=str(exc))
            return 'error'
        if verified.already_verified:
            return 'already_verified'
        if not verified.paid:
            await self._transition(entry.id, 'failed')
            logger.info('payment_rejected', billing_id=entry.id, code=verified.code)
            return 'failed'

        if not await self._transition(entry.id, 'paid', ref_id=verified.ref_id):
            return 'already_verified'
        user = await self.session.get(User, entry.user_id)
        if not user:
            raise NotFound('user_not_found')
        await self._grant(user, entry, strict_discount=False)
        logger.info('payment_verified', billing_id=entry.id, user_id=user.id, ref_id=verified.ref_id)
        return 'success'

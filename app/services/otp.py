"""One-time SMS codes for passwordless login."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.models import OtpCode, User
from app.errors import TooManyRequests, ValidationError
from app.services.kavenegar import KavenegarClient, SmsError
from app.services.rate_limit import RateLimiter
from app.services.users import clean_name
from app.utils.logging import get_logger
from app.utils.text import is_valid_mobile, normalize_mobile
from app.utils.time import as_utc, utcnow


logger = get_logger('otp')


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def hash_code(code: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), code.encode('utf-8'), hashlib.sha256).hexdigest()


def clean_mobile(mobile: str) -> str:
    mobile = normalize_mobile(mobile)
    if not is_valid_mobile(mobile):
        raise ValidationError('invalid_mobile', 'mobile number must look like 09xxxxxxxxx')
    return mobile


class OtpService:
    def __init__(
        self,
        session: AsyncSession,
        sms: KavenegarClient | None = None,
        settings: Settings | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.session = session
        self.sms = sms
        self.settings = settings or get_settings()
        self.limiter = limiter

    async def send_otp(self, mobile: str) -> datetime:
        mobile = clean_mobile(mobile)
        if self.limiter and not self.limiter.allow(mobile):
            raise TooManyRequests('otp_cooldown', 'please wait before requesting another code')
        if self.sms is None:
            raise SmsError('SMS client is not configured')

        code = generate_code()
        now = utcnow()
        expires_at = now + timedelta(seconds=self.settings.otp_ttl_seconds)
        await self.session.execute(delete(OtpCode).where(OtpCode.mobile_number == mobile))
        self.session.add(
            OtpCode(
                mobile_number=mobile,
                hashed_code=hash_code(code, self.settings.otp_secret),
                expires_at=expires_at,
                attempts=0,
                created_at=now,
            )
        )
        await self.session.commit()

        try:
            await self.sms.send_verify_code(mobile, code)
        except SmsError as exc:
            await self.session.execute(delete(OtpCode).where(OtpCode.mobile_number == mobile))
            await self.session.commit()
            if self.limiter:
                self.limiter.reset(mobile)
            logger.warning('otp_send_failed', mobile=mobile, error=str(exc))
            raise
        logger.info('otp_sent', mobile=mobile)
        return expires_at

    async def verify_otp(self, mobile: str, code: str) -> str:
        """Check ``code`` and consume it. Returns the normalised mobile number."""
        mobile = clean_mobile(mobile)
        result = await self.session.execute(
            select(OtpCode)
            .where(OtpCode.mobile_number == mobile)
            .order_by(OtpCode.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if not record:
            raise ValidationError('otp_not_found', 'Verification code not found. Please request a new one.')
        if utcnow() > as_utc(record.expires_at):
            await self.session.delete(record)
            await self.session.commit()
            raise ValidationError('otp_expired', 'Verification code has expired. Please request a new one.')
        if record.attempts >= self.settings.otp_max_attempts:
            await self.session.delete(record)
            await self.session.commit()
            raise ValidationError('otp_attempts_exceeded', 'Too many attempts. Please request a new code.')

        expected = record.hashed_code
        provided = hash_code((code or '').strip(), self.settings.otp_secret)
        if not hmac.compare_digest(expected, provided):
            attempts = await self.record_miss(record.id)
            await self.session.commit()
            if attempts is None:
                raise ValidationError('otp_attempts_exceeded', 'Too many attempts. Please request a new code.')
            remaining = self.settings.otp_max_attempts - attempts
            logger.info('otp_invalid', mobile=mobile, attempts_remaining=remaining)
            raise ValidationError('otp_invalid', f'Invalid verification code. {remaining} attempts remaining.')

        consumed = await self.session.execute(
            delete(OtpCode)
            .where(OtpCode.id == record.id, OtpCode.attempts < self.settings.otp_max_attempts)
            .returning(OtpCode.id)
            .execution_options(synchronize_session=False)
        )
        used = consumed.scalar_one_or_none()
        await self.session.commit()
        if used is None:
            raise ValidationError('otp_attempts_exceeded', 'Too many attempts. Please request a new code.')
        return mobile

    async def record_miss(self, otp_id: int) -> int | None:
        """Count one wrong guess. Returns the new count, or None once the code is used up."""
        result = await self.session.execute(
            update(OtpCode)
            .where(OtpCode.id == otp_id, OtpCode.attempts < self.settings.otp_max_attempts)
            .values(attempts=OtpCode.attempts + 1)
            .returning(OtpCode.attempts)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def register_user(self, mobile: str, first_name: str, last_name: str) -> User:
        mobile = clean_mobile(mobile)
        first_name = clean_name(first_name, 'first name')
        last_name = clean_name(last_name, 'last name')
        existing = await self.session.execute(select(User.id).where(User.mobile_number == mobile))
        if existing.scalar_one_or_none() is not None:
            raise ValidationError('user_exists', 'A user with this mobile number already exists')
        now = utcnow()
        user = User(
            mobile_number=mobile,
            first_name=first_name,
            last_name=last_name,
            credits=0,
            images_generated_this_month=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ValidationError('user_exists', 'A user with this mobile number already exists') from exc
        logger.info('user_registered', user_id=user.id, mobile=mobile)
        return user

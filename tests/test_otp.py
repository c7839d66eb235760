from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.db.models import OtpCode
from app.errors import TooManyRequests, ValidationError
from app.services.otp import OtpService, clean_mobile, generate_code, hash_code
from app.services.rate_limit import RateLimiter
from app.utils.time import utcnow


MOBILE = "09121234567"


def test_codes_and_hashes() -> None:
    code = generate_code()
    assert len(code) == 6 and code.isdigit()
    assert hash_code("123456", "secret") == hash_code("123456", "secret")
    assert hash_code("123456", "secret") != hash_code("123456", "other")
    assert clean_mobile(" 0912 123 4567 ") == MOBILE
    with pytest.raises(ValidationError):
        clean_mobile("+989121234567")


def test_rate_limiter_cooldown() -> None:
    limiter = RateLimiter(60)
    assert limiter.allow(MOBILE)
    assert not limiter.allow(MOBILE)
    assert limiter.allow("09120000000")
    limiter.reset(MOBILE)
    assert limiter.allow(MOBILE)


def test_attempts_are_limited(run_db, settings, fakes) -> None:
    async def scenario(sessionmaker):
        async with sessionmaker() as session:
            service = OtpService(session, fakes["sms"], settings, limiter=RateLimiter(60))
            await service.send_otp(MOBILE)
            with pytest.raises(TooManyRequests):
                await service.send_otp(MOBILE)

            for _ in range(settings.otp_max_attempts):
                with pytest.raises(ValidationError) as exc:
                    await service.verify_otp(MOBILE, "000000")
                assert exc.value.code == "otp_invalid"

            code = fakes["sms"].sent[-1][1]
            with pytest.raises(ValidationError) as exc:
                await service.verify_otp(MOBILE, code)
            assert exc.value.code == "otp_attempts_exceeded"
            with pytest.raises(ValidationError) as exc:
                await service.verify_otp(MOBILE, code)
            assert exc.value.code == "otp_not_found"

    run_db(scenario)


def test_wrong_guesses_cannot_pass_the_limit_from_a_stale_read(run_db, settings, fakes) -> None:
    async def scenario(sessionmaker):
        async with sessionmaker() as session:
            await OtpService(session, fakes["sms"], settings).send_otp(MOBILE)
            record = await session.scalar(select(OtpCode).where(OtpCode.mobile_number == MOBILE))
            assert record.attempts == 0

        async with sessionmaker() as other:
            await other.execute(update(OtpCode).values(attempts=settings.otp_max_attempts - 1))
            await other.commit()

        async with sessionmaker() as session:
            service = OtpService(session, fakes["sms"], settings)
            assert await service.record_miss(record.id) == settings.otp_max_attempts
            assert await service.record_miss(record.id) is None
            await session.commit()

        async with sessionmaker() as session:
            stored = await session.get(OtpCode, record.id)
            assert stored.attempts == settings.otp_max_attempts
            with pytest.raises(ValidationError) as exc:
                await OtpService(session, fakes["sms"], settings).verify_otp(MOBILE, fakes["sms"].sent[-1][1])
            assert exc.value.code == "otp_attempts_exceeded"

    run_db(scenario)


def test_expired_code_is_rejected(run_db, settings, fakes) -> None:
    async def scenario(sessionmaker):
        async with sessionmaker() as session:
            service = OtpService(session, fakes["sms"], settings)
            await service.send_otp(MOBILE)
            await session.execute(update(OtpCode).values(expires_at=utcnow() - timedelta(seconds=1)))
            await session.commit()
            with pytest.raises(ValidationError) as exc:
                await service.verify_otp(MOBILE, fakes["sms"].sent[-1][1])
            assert exc.value.code == "otp_expired"

    run_db(scenario)


def test_register_rejects_duplicates(run_db, settings, make_user) -> None:
    async def scenario(sessionmaker):
        async with sessionmaker() as session:
            await make_user(session, mobile=MOBILE)
            service = OtpService(session, settings=settings)
            with pytest.raises(ValidationError) as exc:
                await service.register_user(MOBILE, "Sara", "Karimi")
            assert exc.value.code == "user_exists"
            user = await service.register_user("09127654321", " Reza ", "Ahmadi")
            assert (user.first_name, user.credits, user.current_plan) == ("Reza", 0, None)

    run_db(scenario)

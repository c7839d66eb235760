from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.db.models import User
from app.db.session import create_all, create_engine, create_sessionmaker
from app.services.kavenegar import KavenegarClient, SmsError
from app.services.kie_client import KlingClient
from app.services.nanobanana_client import NanoBananaClient
from app.services.provider import ProviderError, ProviderRequest
from app.services.zarinpal import VerifyResult, ZarinpalClient
from app.utils.time import utcnow


class FakeNanoBanana(NanoBananaClient):
    """Keeps the real payload classification, replaces the HTTP calls."""

    def __init__(self) -> None:
        self.created: list[tuple[str, ProviderRequest, str]] = []
        self.records: dict[str, Any] = {}
        self.fail_create: ProviderError | None = None
        self.closed = False

    async def create_task(self, request: ProviderRequest, callback_url: str) -> str:
        if self.fail_create:
            raise self.fail_create
        task_id = f"nb-{len(self.created) + 1}"
        self.created.append((task_id, request, callback_url))
        return task_id

    async def get_task(self, task_id: str) -> dict[str, Any]:
        record = self.records.get(task_id)
        if isinstance(record, Exception):
            raise record
        return record or {"code": 200, "data": {"taskId": task_id, "successFlag": 0}}

    async def close(self) -> None:
        self.closed = True


class FakeKling(KlingClient):
    def __init__(self) -> None:
        self.created: list[tuple[str, ProviderRequest, str]] = []
        self.records: dict[str, Any] = {}
        self.fail_create: ProviderError | None = None
        self.closed = False

    async def create_task(self, request: ProviderRequest, callback_url: str) -> str:
        if self.fail_create:
            raise self.fail_create
        task_id = f"kl-{len(self.created) + 1}"
        self.created.append((task_id, request, callback_url))
        return task_id

    async def get_task(self, task_id: str) -> dict[str, Any]:
        record = self.records.get(task_id)
        if isinstance(record, Exception):
            raise record
        return record or {"code": 200, "data": {"taskId": task_id, "state": "waiting"}}

    async def close(self) -> None:
        self.closed = True


class FakeSms(KavenegarClient):
    def __init__(self) -> None:
        super().__init__("test-key")
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send_verify_code(self, receptor: str, token: str) -> dict[str, Any]:
        if self.fail:
            raise SmsError("Kavenegar rejected OTP request", 418)
        self.sent.append((receptor, token))
        return {"return": {"status": 200, "message": "ok"}}


class FakeZarinpal(ZarinpalClient):
    def __init__(self) -> None:
        super().__init__("merchant-test", sandbox=True)
        self.requests: list[dict[str, Any]] = []
        self.verifications: list[dict[str, Any]] = []
        self.verify_code = 100

    async def request_payment(self, *, amount: int, callback_url: str, description: str, mobile: str | None = None) -> str:
        authority = f"A{len(self.requests) + 1:035d}"
        self.requests.append({"amount": amount, "callback_url": callback_url, "authority": authority})
        return authority

    async def verify(self, *, authority: str, amount: int) -> VerifyResult:
        self.verifications.append({"authority": authority, "amount": amount})
        return VerifyResult(code=self.verify_code, ref_id="201")


@pytest.fixture
def settings(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}")
    monkeypatch.setenv("DATABASE_AUTO_CREATE", "true")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://studio.test")
    monkeypatch.setenv("WEB_SECRET", "test-secret")
    monkeypatch.setenv("OTP_SECRET", "otp-secret")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin-pass")
    monkeypatch.setenv("RECONCILER_ENABLED", "false")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def providers() -> dict[str, Any]:
    return {"nanobanana": FakeNanoBanana(), "kling": FakeKling()}


@pytest.fixture
def run_db(settings: Settings) -> Callable[[Callable[[async_sessionmaker[AsyncSession]], Awaitable[Any]]], Any]:
    """Run ``fn(sessionmaker)`` on a fresh event loop against the test database."""

    def runner(fn):
        async def main():
            engine = create_engine(settings.database_url)
            await create_all(engine)
            try:
                return await fn(create_sessionmaker(engine))
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner


async def add_user(
    session: AsyncSession,
    credits: int = 0,
    mobile: str = "09120000000",
    plan: str | None = None,
) -> User:
    now = utcnow()
    user = User(
        mobile_number=mobile,
        first_name="Sara",
        last_name="Karimi",
        credits=credits,
        current_plan=plan,
        images_generated_this_month=0,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
def make_user():
    return add_user


@pytest.fixture
def fakes(providers) -> dict[str, Any]:
    return {"providers": providers, "sms": FakeSms(), "zarinpal": FakeZarinpal()}


@pytest.fixture
def client(settings: Settings, fakes: dict[str, Any]) -> TestClient:
    from app.web.app import create_app

    app = create_app(providers=fakes["providers"], sms=fakes["sms"], zarinpal=fakes["zarinpal"])
    with TestClient(app) as test_client:
        yield test_client

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


PAID = 100
ALREADY_VERIFIED = 101


class ZarinpalError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class VerifyResult:
    code: int | None
    ref_id: str | None = None

    @property
    def paid(self) -> bool:
        return self.code == PAID

    @property
    def already_verified(self) -> bool:
        return self.code == ALREADY_VERIFIED


class ZarinpalClient:
    """Zarinpal v4 gateway. Amounts passed in are Rial."""

    def __init__(
        self,
        merchant_id: str,
        sandbox: bool = False,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.merchant_id = (merchant_id or '').strip()
        self.host = 'https://sandbox.zarinpal.com' if sandbox else 'https://payment.zarinpal.com'
        self.timeout = timeout
        self.transport = transport

    def start_pay_url(self, authority: str) -> str:
        return f'{self.host}/pg/StartPay/{authority}'

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.merchant_id:
            raise ZarinpalError('ZARINPAL_MERCHANT_ID is not configured')
        body = {'merchant_id': self.merchant_id, **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    f'{self.host}/pg/v4/payment/{method}.json',
                    headers={'Accept': 'application/json', 'Content-Type': 'application/json'},
                    json=body,
                )
        except httpx.HTTPError as exc:
            raise ZarinpalError(f'{method}_request_failed:{exc}') from exc
        if resp.status_code >= 400:
            raise ZarinpalError(f'{method}_http_failed:{resp.text}', resp.status_code)
        data = resp.json()
        errors = data.get('errors')
        if errors:
            raise ZarinpalError(f'{method}_rejected:{errors}')
        return data.get('data') or {}

    async def request_payment(
        self,
        *,
        amount: int,
        callback_url: str,
        description: str,
        mobile: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            'amount': amount,
            'callback_url': callback_url,
            'description': description,
        }
        if mobile:
            payload['metadata'] = {'mobile': mobile}
        data = await self._call('request', payload)
        authority = str(data.get('authority') or '').strip()
        if data.get('code') != PAID or not authority:
            raise ZarinpalError(f'request_invalid_response:{data}')
        return authority

    async def verify(self, *, authority: str, amount: int) -> VerifyResult:
        data = await self._call('verify', {'authority': authority, 'amount': amount})
        ref_id = data.get('ref_id')
        return VerifyResult(code=data.get('code'), ref_id=str(ref_id) if ref_id is not None else None)

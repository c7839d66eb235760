from __future__ import annotations

from typing import Any

import httpx


class SmsError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class KavenegarClient:
    def __init__(
        self,
        api_key: str,
        template: str = 'verify',
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or '').strip()
        self.template = template
        self.timeout = timeout
        self.transport = transport

    async def send_verify_code(self, receptor: str, token: str) -> dict[str, Any]:
        if not self.api_key:
            raise SmsError('KAVENEGAR_API_KEY is not configured')
        url = f'https://api.kavenegar.com/v1/{self.api_key}/verify/lookup.json'
        params = {'receptor': receptor, 'token': token, 'template': self.template}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(url, params=params, headers={'Accept': 'application/json'})
        except httpx.HTTPError as exc:
            raise SmsError(f'Kavenegar request failed: {exc}') from exc
        if resp.status_code >= 400:
            raise SmsError(f'Kavenegar API error: {resp.status_code} - {resp.text}', resp.status_code)
        data = resp.json()
        result = data.get('return') or {}
        if result.get('status') != 200:
            raise SmsError(
                f'Kavenegar rejected OTP request: {result.get("message")} (status: {result.get("status")})',
                result.get('status'),
            )
        return data

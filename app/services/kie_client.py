from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx

from app.config import Settings, get_settings
from app.errors import MalformedPayload
from app.services.outcomes import InProgress, ProviderOutcome, failure, success
from app.services.provider import ProviderError, ProviderRequest
from app.utils.logging import get_logger


logger = get_logger('kling')

SUCCESS_STATES = {'success'}
FAIL_STATES = {'fail'}
PENDING_STATES = {'waiting', 'queuing', 'generating'}


class KlingClient:
    """Kling image-to-video through the kie.ai jobs API."""

    name = 'kling'

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = settings.kie_base_url.rstrip('/')
        self.api_key = settings.kie_api_key
        self.model = settings.kling_model
        self._client = httpx.AsyncClient(timeout=60, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    async def create_task(self, request: ProviderRequest, callback_url: str) -> str:
        if not self.api_key:
            raise ProviderError('KIE_API_KEY is not configured')
        body = {
            'model': self.model,
            'callBackUrl': callback_url,
            'input': {
                'prompt': request.prompt,
                'image_urls': list(request.image_urls),
                'sound': bool(request.sound),
                'duration': request.duration,
            },
        }
        try:
            resp = await self._client.post(f'{self.base_url}/jobs/createTask', headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise ProviderError(f'Kie createTask request failed: {exc}') from exc
        data = self._json(resp, 'createTask')
        self._raise_for_code(data)
        task_id = str(((data.get('data') or {}).get('taskId')) or '').strip()
        if not task_id:
            raise ProviderError('Kie createTask response has no taskId')
        logger.info('kling_task_created', task_id=task_id, duration=request.duration, sound=request.sound)
        return task_id

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        try:
            resp = await self._client.get(
                f'{self.base_url}/jobs/recordInfo',
                headers=self._headers(),
                params={'taskId': task_id},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f'Kie recordInfo request failed: {exc}') from exc
        data = self._json(resp, 'recordInfo')
        self._raise_for_code(data)
        return data

    @staticmethod
    def _json(resp: httpx.Response, endpoint: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise ProviderError(f'Kie {endpoint} error {resp.status_code}: {resp.text}', resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f'Kie {endpoint} returned invalid JSON') from exc
        if not isinstance(data, dict):
            raise ProviderError(f'Kie {endpoint} returned unexpected payload')
        return data

    @staticmethod
    def _raise_for_code(data: Dict[str, Any]) -> None:
        code = data.get('code')
        if code == 200:
            return
        message = data.get('message') or data.get('msg')
        if not message and code == 402:
            message = 'Payment required - API account has insufficient balance or subscription expired'
        elif not message and code == 401:
            message = 'Unauthorized - Invalid API key'
        raise ProviderError(str(message or f'API returned error code: {code}'), code)

    @staticmethod
    def parse_result_urls(record: Dict[str, Any]) -> List[str]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        urls: List[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                urls.append(value)
            elif isinstance(value, list):
                urls.extend(item for item in value if isinstance(item, str))

        extend_from(data.get('resultUrls'))
        result_json = data.get('resultJson') or {}
        parsed: Dict[str, Any] = {}
        if isinstance(result_json, str):
            try:
                parsed = json.loads(result_json) if result_json else {}
            except ValueError as exc:
                logger.warning('failed_to_parse_result', error=str(exc))
        elif isinstance(result_json, dict):
            parsed = result_json
        if isinstance(parsed, dict):
            extend_from(parsed.get('resultUrls'))
            extend_from(parsed.get('urls'))
        return urls

    @classmethod
    def classify_record(cls, record: Dict[str, Any]) -> ProviderOutcome:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        state = str(data.get('state') or '').strip().lower()
        if state in SUCCESS_STATES:
            return success(cls.parse_result_urls(record))
        if state in FAIL_STATES:
            return failure(data.get('failMsg'), data.get('failCode') or 'fail')
        return InProgress(state=state)

    @classmethod
    def classify_callback(cls, payload: Dict[str, Any]) -> ProviderOutcome:
        data = payload.get('data')
        if not isinstance(data, dict):
            raise MalformedPayload('invalid_payload', 'callback payload has no data object')
        state = str(data.get('state') or '').strip().lower()
        if state not in SUCCESS_STATES | FAIL_STATES | PENDING_STATES:
            raise MalformedPayload('invalid_state', f'unexpected callback state {state!r}')
        return cls.classify_record(payload)

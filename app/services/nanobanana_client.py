from __future__ import annotations

from typing import Any, Dict

import httpx

from app.config import Settings, get_settings
from app.errors import MalformedPayload
from app.services.outcomes import InProgress, ProviderOutcome, failure, success
from app.services.provider import ProviderError, ProviderRequest
from app.utils.logging import get_logger


logger = get_logger('nanobanana')

# The provider spells these with the typo; they are wire values.
GENERATION_TYPES = {
    'text-to-image': 'TEXTTOIAMGE',
    'image-to-image': 'IMAGETOIAMGE',
}
CALLBACK_CODES = {200, 400, 500, 501}


class NanoBananaClient:
    name = 'nanobanana'

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = settings.nanobanana_base_url.rstrip('/')
        self.api_key = settings.nanobanana_api_key
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
            raise ProviderError('NANOBANANA_API_KEY is not configured')
        gen_type = GENERATION_TYPES.get(request.mode)
        if not gen_type:
            raise ProviderError(f'unsupported mode {request.mode}')
        body: Dict[str, Any] = {
            'prompt': request.prompt,
            'numImages': request.num_images,
            'type': gen_type,
            'image_size': request.image_size or '16:9',
            'callBackUrl': callback_url,
        }
        if request.image_urls:
            body['imageUrls'] = list(request.image_urls)

        try:
            resp = await self._client.post(f'{self.base_url}/generate', headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise ProviderError(f'NanoBanana generate request failed: {exc}') from exc
        data = self._json(resp, 'generate')
        # The API reports errors in the body, not only through HTTP status.
        if data.get('code') != 200:
            raise ProviderError(str(data.get('msg') or f'API returned error code: {data.get("code")}'), data.get('code'))
        task_id = str(((data.get('data') or {}).get('taskId')) or '').strip()
        if not task_id:
            raise ProviderError('NanoBanana generate response has no taskId')
        logger.info('nanobanana_task_created', task_id=task_id, mode=request.mode)
        return task_id

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        try:
            resp = await self._client.get(
                f'{self.base_url}/record-info',
                headers=self._headers(),
                params={'taskId': task_id},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f'NanoBanana record-info request failed: {exc}') from exc
        data = self._json(resp, 'record-info')
        if data.get('code') != 200:
            raise ProviderError(str(data.get('msg') or f'API returned error code: {data.get("code")}'), data.get('code'))
        return data

    @staticmethod
    def _json(resp: httpx.Response, endpoint: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            try:
                detail = resp.json()
                message = detail.get('msg') or detail.get('message') or detail.get('error')
            except ValueError:
                message = None
            raise ProviderError(message or f'NanoBanana {endpoint} error {resp.status_code}', resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f'NanoBanana {endpoint} returned invalid JSON') from exc
        if not isinstance(data, dict):
            raise ProviderError(f'NanoBanana {endpoint} returned unexpected payload')
        return data

    @staticmethod
    def classify_record(record: Dict[str, Any]) -> ProviderOutcome:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        flag = data.get('successFlag')
        response = data.get('response') if isinstance(data.get('response'), dict) else {}
        url = str(response.get('resultImageUrl') or '').strip()
        if flag == 1 and url:
            return success([url])
        if flag in (2, 3):
            return failure(data.get('errorMessage'), flag)
        error_message = str(data.get('errorMessage') or '').strip()
        if error_message and not url:
            return failure(error_message, flag)
        return InProgress(state=str(flag if flag is not None else ''))

    @staticmethod
    def classify_callback(payload: Dict[str, Any]) -> ProviderOutcome:
        data = payload.get('data')
        if not isinstance(data, dict):
            raise MalformedPayload('invalid_payload', 'callback payload has no data object')
        code = payload.get('code')
        if code not in CALLBACK_CODES:
            raise MalformedPayload('invalid_status_code', f'unexpected callback code {code!r}')
        info = data.get('info') if isinstance(data.get('info'), dict) else {}
        url = str(info.get('resultImageUrl') or '').strip()
        if code == 200 and url:
            return success([url])
        if code == 200:
            return failure(payload.get('msg'), 'no_result')
        return failure(payload.get('msg'), code)

from __future__ import annotations

import base64
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from app.services.outcomes import ProviderOutcome


class ProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ProviderRequest:
    mode: str
    prompt: str
    num_images: int = 1
    image_urls: List[str] = field(default_factory=list)
    image_size: str = '16:9'
    duration: str = '5'
    sound: bool = False


class GenerationProvider(Protocol):
    name: str

    async def create_task(self, request: ProviderRequest, callback_url: str) -> str:
        ...

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        ...

    def classify_record(self, record: Dict[str, Any]) -> ProviderOutcome:
        ...

    def classify_callback(self, payload: Dict[str, Any]) -> ProviderOutcome:
        ...

    async def close(self) -> None:
        ...


def extract_task_id(payload: Dict[str, Any]) -> str:
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    candidates = [
        data.get('taskId'),
        data.get('task_id'),
        payload.get('taskId'),
        payload.get('task_id'),
    ]
    for candidate in candidates:
        value = str(candidate or '').strip()
        if value:
            return value
    return ''


def compute_webhook_signature(task_id: str, timestamp_seconds: str, webhook_hmac_key: str) -> str:
    message = f'{task_id}.{timestamp_seconds}'
    digest = hmac.new(
        webhook_hmac_key.encode('utf-8'),
        message.encode('utf-8'),
        'sha256',
    ).digest()
    return base64.b64encode(digest).decode('utf-8')


def verify_webhook_signature(
    *,
    task_id: str,
    timestamp_seconds: str,
    received_signature: str,
    webhook_hmac_key: str,
) -> bool:
    expected = compute_webhook_signature(task_id, timestamp_seconds, webhook_hmac_key)
    received = (received_signature or '').strip()
    return hmac.compare_digest(expected, received)

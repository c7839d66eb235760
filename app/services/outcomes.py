"""Provider status, reduced to what reconciliation needs to know.

Providers answer with loosely typed JSON whose shape differs between the
create, poll and callback endpoints. Each client turns those payloads into
one of the three variants below so that the state machine never has to look
at raw provider data.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple, Union


GENERIC_RETRY_MESSAGE = 'Something went wrong, please try again.'

DEFAULT_FAILURE_MESSAGES = {
    '400': 'Content policy violation: the prompt was rejected.',
    '500': 'Internal provider error, please try again later.',
    '501': 'Generation failed.',
    '2': 'Task creation failed at the provider.',
    '3': 'Generation failed at the provider.',
    'no_result': 'The provider reported success without a result URL.',
    'timeout': 'Generation timed out. Your credits have been refunded.',
    'provider_unavailable': 'The generation service is unavailable. Your credits have been refunded.',
}


@dataclass(frozen=True)
class Success:
    urls: Tuple[str, ...]


@dataclass(frozen=True)
class Failure:
    message: str
    code: str | None = None


@dataclass(frozen=True)
class InProgress:
    state: str = field(default='')


ProviderOutcome = Union[Success, Failure, InProgress]


def failure(message: str | None, code: str | int | None = None) -> Failure:
    code_text = str(code) if code not in (None, '') else None
    text = (message or '').strip()
    if not text:
        text = DEFAULT_FAILURE_MESSAGES.get(code_text or '', 'Unknown provider error.')
    lowered = text.lower()
    # Upstream schema validation errors are not meaningful to end users.
    if 'string' in lowered and ('pattern' in lowered or 'matched' in lowered):
        text = GENERIC_RETRY_MESSAGE
    return Failure(message=text, code=code_text)


def success(urls) -> ProviderOutcome:
    cleaned = [str(url).strip() for url in urls or [] if str(url or '').strip()]
    if not cleaned:
        return failure(None, 'no_result')
    # Preserve order while removing duplicates.
    return Success(urls=tuple(dict.fromkeys(cleaned)))

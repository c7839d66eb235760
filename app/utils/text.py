from __future__ import annotations

import re
from typing import Any


MOBILE_RE = re.compile(r'^09\d{9}$')


def normalize_mobile(value: str) -> str:
    return re.sub(r'\s+', '', value or '')


def is_valid_mobile(value: str) -> bool:
    return bool(MOBILE_RE.match(value or ''))


def normalize_code(value: str) -> str:
    return (value or '').strip().upper()


TRUE_WORDS = frozenset({'true', '1', 'yes', 'on'})
FALSE_WORDS = frozenset({'false', '0', 'no', 'off', ''})


def to_flag(value: Any) -> bool:
    """Read a JSON or form-style boolean; raises ``ValueError`` for anything ambiguous."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
    raise ValueError(f'not a boolean: {value!r}')

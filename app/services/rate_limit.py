from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Hashable


@dataclass
class CooldownState:
    last_action: float = 0.0


class RateLimiter:
    def __init__(self, cooldown_seconds: int) -> None:
        self._cooldown_seconds = cooldown_seconds
        self._state: Dict[Hashable, CooldownState] = {}

    def allow(self, key: Hashable) -> bool:
        now = time.time()
        state = self._state.get(key) or CooldownState()
        if now - state.last_action < self._cooldown_seconds:
            self._state[key] = state
            return False
        state.last_action = now
        self._state[key] = state
        return True

    def reset(self, key: Hashable) -> None:
        self._state.pop(key, None)

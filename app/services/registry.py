from __future__ import annotations

from typing import Dict

from app.config import Settings
from app.services.kie_client import KlingClient
from app.services.nanobanana_client import NanoBananaClient
from app.services.provider import GenerationProvider


def build_providers(settings: Settings) -> Dict[str, GenerationProvider]:
    return {
        NanoBananaClient.name: NanoBananaClient(settings),
        KlingClient.name: KlingClient(settings),
    }

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from app.errors import ValidationError


VIDEO_DURATIONS = ('5', '10')
PLAN_PERIOD_DAYS = 30


@dataclass(frozen=True)
class Plan:
    key: str
    credits: int
    price: int  # Toman


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price: int  # Toman


PLANS: Dict[str, Plan] = {
    'free': Plan('free', credits=12, price=0),
    'explorer': Plan('explorer', credits=200, price=350_000),
    'creator': Plan('creator', credits=600, price=999_000),
    'studio': Plan('studio', credits=2000, price=2_990_000),
}

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    'pack_100': CreditPackage('pack_100', credits=100, price=180_000),
    'pack_300': CreditPackage('pack_300', credits=300, price=500_000),
    'pack_1000': CreditPackage('pack_1000', credits=1000, price=1_500_000),
}


def image_cost(num_images: int, credits_per_image: int) -> int:
    return credits_per_image * num_images


def video_cost(duration: str, sound: bool) -> int:
    if duration not in VIDEO_DURATIONS:
        raise ValidationError('invalid_duration', 'duration must be 5 or 10 seconds')
    base = 110 if duration == '10' else 55
    return base * 2 if sound else base


def get_plan(key: str | None) -> Plan:
    plan = PLANS.get((key or '').strip().lower())
    if not plan:
        raise ValidationError('invalid_plan')
    return plan


def get_package(package_id: str | None) -> CreditPackage:
    package = CREDIT_PACKAGES.get((package_id or '').strip())
    if not package:
        raise ValidationError('invalid_package')
    return package

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

FREE = "free"
MIDDLE = "middle"
TOP = "top"

BEST_BUY = "Best Buy"
HOME_DEPOT = "Home Depot"
LOWES = "Lowes"


@dataclass(frozen=True)
class SubscriptionTier:
    key: str
    name: str
    price: float
    query_limit: float
    max_recommendations: int = 5
    comparison_feature: bool = False
    personalized_recommendations: bool = False
    follow_up_questions: bool = False
    specifications_sheet: bool = False
    user_manual: bool = False
    installation_instructions: bool = False
    retailers: tuple[str, ...] = (BEST_BUY,)

    @property
    def unlimited(self) -> bool:
        return math.isinf(self.query_limit)


SUBSCRIPTION_TIERS: Dict[str, SubscriptionTier] = {
    FREE: SubscriptionTier(
        key=FREE,
        name="Appliance Guide",
        price=0.0,
        query_limit=50,
        max_recommendations=5,
        retailers=(BEST_BUY,),
    ),
    MIDDLE: SubscriptionTier(
        key=MIDDLE,
        name="Appliance Voyager",
        price=9.99,
        query_limit=25,
        max_recommendations=10,
        comparison_feature=True,
        specifications_sheet=True,
        retailers=(BEST_BUY, HOME_DEPOT),
    ),
    TOP: SubscriptionTier(
        key=TOP,
        name="Appliance Pioneer",
        price=29.99,
        query_limit=math.inf,
        max_recommendations=10,
        comparison_feature=True,
        personalized_recommendations=True,
        follow_up_questions=True,
        specifications_sheet=True,
        user_manual=True,
        installation_instructions=True,
        retailers=(BEST_BUY, HOME_DEPOT, LOWES),
    ),
}


def _is_truthy(raw_value: Optional[str], default: bool = False) -> bool:
    if raw_value is None:
        return default
    return str(raw_value).strip().lower() in {"1", "true", "yes", "on"}


def get_tier(name: Optional[str]) -> SubscriptionTier:
    return SUBSCRIPTION_TIERS.get(str(name or "").strip().lower(), SUBSCRIPTION_TIERS[FREE])


def get_query_limit(name: Optional[str]) -> float:
    return get_tier(name).query_limit


def retailers_for_tier(name: Optional[str]) -> tuple[str, ...]:
    if _is_truthy(os.getenv("TESTING_MODE")):
        LOGGER.info("Testing mode enabled: searching all retailers regardless of tier")
        return SUBSCRIPTION_TIERS[TOP].retailers
    return get_tier(name).retailers


class QueryQuotaGuard:
    """Monthly query quota per subscription tier."""

    def __init__(self, repository, *, window_days: int = 30) -> None:  # noqa: ANN001
        self.repository = repository
        self.window_days = window_days

    def check(self, user_id: str) -> Dict[str, Any]:
        try:
            user = self.repository.get_user(user_id)
            if not user:
                return self._status(FREE, used=0, exceeded=True, remaining=0)

            tier = get_tier(user.get("subscription_tier"))
            used = int(self.repository.count_user_queries_since(user_id, days=self.window_days))
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Query quota check failed | user_id=%s error=%s", user_id, exc)
            return self._status(FREE, used=0, exceeded=True, remaining=0)

        if tier.unlimited:
            return self._status(tier.key, used=used, exceeded=False, remaining=None)

        limit = int(tier.query_limit)
        return self._status(
            tier.key,
            used=used,
            exceeded=used >= limit,
            remaining=max(0, limit - used),
        )

    def has_exceeded(self, user_id: str) -> bool:
        return bool(self.check(user_id)["exceeded"])

    def remaining(self, user_id: str) -> Optional[int]:
        return self.check(user_id)["remaining"]

    @staticmethod
    def _status(tier_key: str, *, used: int, exceeded: bool, remaining: Optional[int]) -> Dict[str, Any]:
        tier = get_tier(tier_key)
        return {
            "tier": tier.key,
            "limit": None if tier.unlimited else int(tier.query_limit),
            "used": used,
            "remaining": remaining,
            "exceeded": exceeded,
        }


__all__ = [
    "BEST_BUY",
    "FREE",
    "HOME_DEPOT",
    "LOWES",
    "MIDDLE",
    "QueryQuotaGuard",
    "SUBSCRIPTION_TIERS",
    "SubscriptionTier",
    "TOP",
    "get_query_limit",
    "get_tier",
    "retailers_for_tier",
]

from __future__ import annotations

import base64
import json
import logging
import os
import random
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from supabase import Client, create_client

from cache import DEFAULT_VALIDITY, validity_to_ms

LOGGER = logging.getLogger(__name__)

ANONYMOUS_USER_ID = "00000000-0000-0000-0000-000000000000"


@dataclass
class ProductRecord:
    product_name: str
    retailer: str
    url: str
    price: Optional[float] = None
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    validity_period: str = DEFAULT_VALIDITY
    last_updated: Optional[str] = None
    next_update_at: Optional[str] = None
    update_priority: int = 0


@dataclass
class QueryRecord:
    user_id: str
    input_text: str
    interpretation: Dict[str, Any] = field(default_factory=dict)
    selected_product: Optional[str] = None


@dataclass
class CategoryRecord:
    name: str
    display_name: str
    parent_id: Optional[str] = None
    level: int = 1


class ApplianceFinderRepository:
    """Supabase data access layer with retry-safe helpers."""

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 1.5,
    ) -> None:
        self.client: Client = create_client(supabase_url, supabase_key)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    @classmethod
    def from_env(cls) -> "ApplianceFinderRepository":
        supabase_url = os.getenv("SUPABASE_URL")
        service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        fallback_key = os.getenv("SUPABASE_KEY")
        supabase_key = service_key or fallback_key

        if not supabase_url or not supabase_key:
            raise RuntimeError("Missing SUPABASE_URL/SUPABASE_KEY environment variables")

        if not service_key and cls._looks_like_anon_jwt(supabase_key):
            LOGGER.warning(
                "SUPABASE_KEY appears to be anon/publishable key; writes may be rejected by row level security"
            )

        return cls(supabase_url=supabase_url, supabase_key=supabase_key)

    @staticmethod
    def _looks_like_anon_jwt(token: str) -> bool:
        parts = str(token or "").split(".")
        if len(parts) != 3:
            return False
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        try:
            payload = json.loads(base64.urlsafe_b64decode(padded.encode("utf-8")))
        except (ValueError, UnicodeDecodeError):
            return False
        if not isinstance(payload, dict):
            return False
        return str(payload.get("role") or "").lower() in {"anon", "authenticated"}

    def _with_retry(self, operation_name: str, fn):
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn()
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                if attempt >= self.max_retries:
                    break
                delay = self.retry_base_delay * (2 ** (attempt - 1)) + random.uniform(0.1, 0.7)
                LOGGER.warning(
                    "Operation '%s' failed (attempt %s/%s): %s. Retrying in %.2fs",
                    operation_name,
                    attempt,
                    self.max_retries,
                    exc,
                    delay,
                )
                time.sleep(delay)

        raise RuntimeError(f"Supabase operation '{operation_name}' failed") from last_exc

    @staticmethod
    def _first_row(result: Any) -> Optional[Dict[str, Any]]:
        rows = getattr(result, "data", None) or []
        return rows[0] if rows else None

    # Users and query history

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = self._with_retry(
            "get_user",
            lambda: self.client.table("users").select("*").eq("id", user_id).limit(1).execute(),
        )
        return self._first_row(result)

    def save_query(self, record: QueryRecord) -> Optional[str]:
        payload = asdict(record)
        result = self._with_retry(
            "save_query",
            lambda: self.client.table("queries").insert(payload).execute(),
        )
        row = self._first_row(result)
        return row.get("id") if row else None

    def get_user_queries(self, user_id: str, limit: int = 5) -> list[Dict[str, Any]]:
        result = self._with_retry(
            "get_user_queries",
            lambda: self.client.table("queries")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute(),
        )
        return result.data or []

    def count_user_queries_since(self, user_id: str, *, days: int = 30) -> int:
        since_iso = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        result = self._with_retry(
            "count_user_queries_since",
            lambda: self.client.table("queries")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .gte("created_at", since_iso)
            .execute(),
        )
        count = getattr(result, "count", None)
        if count is None:
            return len(result.data or [])
        return int(count)

    # Product cache

    def get_product_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        result = self._with_retry(
            "get_product_by_url",
            lambda: self.client.table("products").select("*").eq("url", url).limit(1).execute(),
        )
        return self._first_row(result)

    def create_or_update_product(self, record: ProductRecord) -> Dict[str, Any]:
        payload = asdict(record)
        now = datetime.now(timezone.utc)
        payload["last_updated"] = payload.get("last_updated") or now.isoformat()
        if not payload.get("next_update_at"):
            validity_ms = validity_to_ms(record.validity_period)
            payload["next_update_at"] = (now + timedelta(milliseconds=validity_ms)).isoformat()

        result = self._with_retry(
            "create_or_update_product",
            lambda: self.client.table("products").upsert(payload, on_conflict="url").execute(),
        )
        return self._first_row(result) or payload

    def find_similar_products(self, product_name: str, retailer: str, limit: int = 5) -> list[Dict[str, Any]]:
        safe_name = str(product_name or "").strip().replace("%", "\\%")
        if not safe_name:
            return []

        result = self._with_retry(
            "find_similar_products",
            lambda: self.client.table("products")
            .select("*")
            .ilike("product_name", f"%{safe_name}%")
            .eq("retailer", retailer)
            .order("last_updated", desc=True)
            .limit(limit)
            .execute(),
        )
        return result.data or []

    def get_products_to_update(self, limit: int = 20) -> list[Dict[str, Any]]:
        now_iso = datetime.now(timezone.utc).isoformat()
        result = self._with_retry(
            "get_products_to_update",
            lambda: self.client.table("products")
            .select("*")
            .lte("next_update_at", now_iso)
            .order("update_priority", desc=True)
            .order("next_update_at", desc=False)
            .limit(limit)
            .execute(),
        )
        return result.data or []

    def increment_recommendation_count(self, product_id: str) -> None:
        self._with_retry(
            "increment_recommendation_count",
            lambda: self.client.rpc("increment_product_recommendation", {"product_id": product_id}).execute(),
        )

    # Category taxonomy

    def get_category_id(self, name: str, parent_id: Optional[str] = None) -> Optional[str]:
        query = self.client.table("product_categories").select("id").eq("name", name)
        if parent_id:
            query = query.eq("parent_id", parent_id)
        else:
            query = query.is_("parent_id", "null")

        result = self._with_retry("get_category_id", lambda: query.limit(1).execute())
        row = self._first_row(result)
        return row.get("id") if row else None

    def create_category(self, record: CategoryRecord) -> Optional[str]:
        payload = asdict(record)
        result = self._with_retry(
            "create_category",
            lambda: self.client.table("product_categories")
            .upsert(payload, on_conflict="name,parent_id")
            .execute(),
        )
        row = self._first_row(result)
        return row.get("id") if row else None

    def add_product_to_category(self, product_id: str, category_id: str, is_primary: bool = False) -> None:
        if is_primary:
            self._with_retry(
                "set_primary_category",
                lambda: self.client.table("products")
                .update({"primary_category_id": category_id})
                .eq("id", product_id)
                .execute(),
            )
            self._with_retry(
                "clear_primary_flags",
                lambda: self.client.table("product_category_junction")
                .update({"is_primary": False})
                .eq("product_id", product_id)
                .execute(),
            )

        payload = {"product_id": product_id, "category_id": category_id, "is_primary": is_primary}
        self._with_retry(
            "add_product_to_category",
            lambda: self.client.table("product_category_junction")
            .upsert(payload, on_conflict="product_id,category_id")
            .execute(),
        )


__all__ = [
    "ANONYMOUS_USER_ID",
    "ApplianceFinderRepository",
    "CategoryRecord",
    "ProductRecord",
    "QueryRecord",
]

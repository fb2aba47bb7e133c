from __future__ import annotations

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from cache import SearchResultCache
from catalog import ProductCatalog
from interpreter import ApplianceQueryInterpreter, QueryInterpretation
from models import ANONYMOUS_USER_ID, ApplianceFinderRepository, QueryRecord
from resilience import describe_error
from scrapers import PLACEHOLDER_IMAGE, OxylabsClient, Product, RetailerSearchScraper
from tiers import BEST_BUY, FREE, HOME_DEPOT, LOWES, TOP, QueryQuotaGuard, get_tier

LOGGER = logging.getLogger(__name__)

QUICK_TIMEOUT_SECONDS = 60.0
FULL_TIMEOUT_SECONDS = 120.0
STORE_TIMEOUT_SECONDS = 5.0
CACHED_RETAILERS = (BEST_BUY, HOME_DEPOT, LOWES)

# Shared across warm invocations of the same serverless instance.
SEARCH_CACHE = SearchResultCache()
# Kept off the default executor, which asyncio.run joins before returning.
STORAGE_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix="product-store")


class QueryLimitExceededError(RuntimeError):
    def __init__(self, remaining: Optional[int], diagnostics: Optional[list[Dict[str, Any]]] = None) -> None:
        super().__init__("You have reached your query limit.")
        self.remaining = remaining
        self.diagnostics = diagnostics or []


class FollowUpNotAllowedError(RuntimeError):
    def __init__(self, tier: str) -> None:
        super().__init__("Follow-up questions are only available to premium subscribers")
        self.tier = tier


class SearchStageError(RuntimeError):
    """A mandatory search stage failed; ``stage`` names it."""

    def __init__(self, stage: str, message: str, diagnostics: Optional[list[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.diagnostics = diagnostics or []


def check_environment() -> list[str]:
    missing: list[str] = []
    if not os.getenv("GEMINI_API_KEY") and not os.getenv("OPENROUTER_API_KEY"):
        missing.append("GEMINI_API_KEY")
    for name in ("OXYLABS_USERNAME", "OXYLABS_PASSWORD", "SUPABASE_URL"):
        if not os.getenv(name):
            missing.append(name)
    if not os.getenv("SUPABASE_SERVICE_ROLE_KEY") and not os.getenv("SUPABASE_KEY"):
        missing.append("SUPABASE_KEY")
    if missing:
        LOGGER.warning("Missing environment variables: %s. Demo data may be used.", ", ".join(missing))
    return missing


async def collect_with_progressive_timeout(
    factory: Callable[[], Awaitable[list[Any]]],
    partial: list[Any],
    *,
    quick_timeout: float = QUICK_TIMEOUT_SECONDS,
    full_timeout: float = FULL_TIMEOUT_SECONDS,
) -> list[Any]:
    """Await a search, settling for partial results once the quick timeout passes."""
    task = asyncio.ensure_future(factory())
    try:
        done, _ = await asyncio.wait({task}, timeout=quick_timeout)
        if task in done:
            return task.result()

        if partial:
            LOGGER.info("Quick timeout reached (%ss). Returning %s partial results.", quick_timeout, len(partial))
            task.cancel()
            return list(partial)

        remaining = max(0.0, full_timeout - quick_timeout)
        return await asyncio.wait_for(task, timeout=remaining)
    except Exception as exc:  # noqa: BLE001
        if partial:
            LOGGER.warning("Search failed (%s) but returning %s partial results.", exc, len(partial))
            return list(partial)
        raise


def _product_from_row(row: Dict[str, Any]) -> Product:
    metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    features = metadata.get("features") if isinstance(metadata.get("features"), list) else []
    return Product(
        name=str(row.get("product_name") or ""),
        price=float(row.get("price") or 0),
        product_url=str(row.get("url") or ""),
        retailer=str(row.get("retailer") or ""),
        image_url=row.get("image_url") or metadata.get("image_url") or PLACEHOLDER_IMAGE,
        features=[str(item) for item in features],
    )


class ApplianceSearchService:
    """End-to-end appliance search: quota, interpretation, cache, live search."""

    def __init__(
        self,
        repository,  # noqa: ANN001
        interpreter: ApplianceQueryInterpreter,
        scraper: RetailerSearchScraper,
        catalog: Optional[ProductCatalog] = None,
        *,
        quota_guard: Optional[QueryQuotaGuard] = None,
        quick_timeout: float = QUICK_TIMEOUT_SECONDS,
        full_timeout: float = FULL_TIMEOUT_SECONDS,
        min_cached_products: int = 3,
        cached_per_retailer: int = 5,
        store_timeout: float = STORE_TIMEOUT_SECONDS,
        storage_executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.repository = repository
        self.interpreter = interpreter
        self.scraper = scraper
        self.catalog = catalog
        self.quota_guard = quota_guard or QueryQuotaGuard(repository)
        self.quick_timeout = quick_timeout
        self.full_timeout = full_timeout
        self.min_cached_products = min_cached_products
        self.cached_per_retailer = cached_per_retailer
        self.store_timeout = store_timeout
        self.storage_executor = storage_executor or STORAGE_EXECUTOR

    @classmethod
    def from_env(cls) -> "ApplianceSearchService":
        repository = ApplianceFinderRepository.from_env()
        scraper = RetailerSearchScraper(OxylabsClient.from_env(), cache=SEARCH_CACHE)
        return cls(
            repository,
            ApplianceQueryInterpreter(),
            scraper,
            ProductCatalog.from_env(repository),
        )

    async def search(self, query: Any, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(query, str) or not query.strip():
            raise ValueError("Query is required")
        query = query.strip()
        user_id = user_id or ANONYMOUS_USER_ID
        started = time.monotonic()
        diagnostics: list[Dict[str, Any]] = []

        tier = await asyncio.to_thread(self._load_tier, user_id, diagnostics)
        past_queries: list[str] = []
        if tier == TOP:
            past_queries = await asyncio.to_thread(self._load_past_queries, user_id, diagnostics)

        quota = await asyncio.to_thread(self.quota_guard.check, user_id)
        if quota["exceeded"]:
            LOGGER.info("Query limit reached | user_id=%s tier=%s", user_id, quota["tier"])
            raise QueryLimitExceededError(quota["remaining"], diagnostics)

        try:
            interpretation = await asyncio.to_thread(self.interpreter.interpret, query, tier, past_queries)
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("interpretation", exc))
            LOGGER.error("Query interpretation failed | user_id=%s error=%s", user_id, exc)
            raise SearchStageError(
                "interpretation",
                "Error processing your query with AI. Please try again later.",
                diagnostics,
            ) from exc

        query_id = await asyncio.to_thread(self._save_query, user_id, query, interpretation.to_dict(), diagnostics)
        env_status = {
            "using_mock_data": not self.scraper.client.configured,
            "missing_vars": check_environment(),
        }

        cached_products = await asyncio.to_thread(self._cached_products, interpretation.appliance_type, diagnostics)
        from_cache = False
        if len(cached_products) >= self.min_cached_products:
            LOGGER.info("Using %s cached products instead of live search", len(cached_products))
            products = cached_products
            from_cache = True
        else:
            try:
                products = await self._live_search(interpretation, tier)
            except Exception as exc:  # noqa: BLE001
                diagnostics.append(self._diagnostic("product_search", exc))
                if not cached_products:
                    raise SearchStageError(
                        "product_search",
                        "Error retrieving products. Please try again later.",
                        diagnostics,
                    ) from exc
                LOGGER.warning("Live search failed, falling back to %s cached products", len(cached_products))
                products = cached_products
                from_cache = True
            else:
                await self._store_products(products, interpretation.appliance_type, diagnostics)

        remaining = quota["remaining"]
        try:
            remaining = (await asyncio.to_thread(self.quota_guard.check, user_id))["remaining"]
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("remaining_queries_check", exc))

        interpretation_payload = interpretation.to_dict()
        interpretation_payload.update({"env_status": env_status, "subscription_tier": tier})
        LOGGER.info(
            "Search done | user_id=%s tier=%s products=%s from_cache=%s elapsed=%.1fs",
            user_id,
            tier,
            len(products),
            from_cache,
            time.monotonic() - started,
        )

        result: Dict[str, Any] = {
            "interpretation": interpretation_payload,
            "products": [product.to_dict() for product in products],
            "query_id": query_id,
            "remaining_queries": remaining,
            "env_status": env_status,
            "subscription_tier": tier,
            "from_cache": from_cache,
        }
        if diagnostics:
            result["diagnostics"] = {"errors": diagnostics, "warnings": True}
        return result

    def follow_up(
        self,
        user_id: Optional[str],
        question: Any,
        *,
        original_query: Any = None,
        appliance_details: Optional[Dict[str, Any]] = None,
        query_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Answer a question about an appliance from an earlier result. Top tier only."""
        user_id = user_id or ANONYMOUS_USER_ID
        diagnostics: list[Dict[str, Any]] = []
        tier = self._load_tier(user_id, diagnostics)
        if not get_tier(tier).follow_up_questions:
            LOGGER.info("Follow-up refused | user_id=%s tier=%s", user_id, tier)
            raise FollowUpNotAllowedError(tier)

        question = str(question or "").strip()
        original_query = str(original_query or "").strip()
        if not question or (not appliance_details and not original_query):
            raise ValueError("Follow-up question and appliance details are required")

        interpretation = self.interpreter.answer_follow_up(original_query, appliance_details, question)
        payload = interpretation.to_dict()
        payload.update({"is_follow_up": True, "original_query_id": query_id})
        saved_id = self._save_query(user_id, question, payload, diagnostics)
        LOGGER.info("Follow-up answered | user_id=%s original_query_id=%s", user_id, query_id or "-")

        result: Dict[str, Any] = {"interpretation": payload, "query_id": saved_id, "subscription_tier": tier}
        if diagnostics:
            result["diagnostics"] = {"errors": diagnostics, "warnings": True}
        return result

    def _load_tier(self, user_id: str, diagnostics: list[Dict[str, Any]]) -> str:
        try:
            user = self.repository.get_user(user_id)
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("user_retrieval", exc))
            LOGGER.warning("User lookup failed | user_id=%s error=%s. Using free tier.", user_id, exc)
            return FREE
        if not user:
            LOGGER.info("No user found | user_id=%s. Using free tier.", user_id)
            return FREE
        return get_tier(user.get("subscription_tier")).key

    def _load_past_queries(self, user_id: str, diagnostics: list[Dict[str, Any]]) -> list[str]:
        try:
            rows = self.repository.get_user_queries(user_id, limit=5)
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("user_retrieval", exc))
            LOGGER.warning("Query history lookup failed | user_id=%s error=%s", user_id, exc)
            return []
        return [str(row.get("input_text")) for row in rows if row.get("input_text")]

    def _save_query(
        self,
        user_id: str,
        query: str,
        interpretation: Dict[str, Any],
        diagnostics: list[Dict[str, Any]],
    ) -> Optional[str]:
        try:
            return self.repository.save_query(QueryRecord(user_id=user_id, input_text=query, interpretation=interpretation))
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("query_saving", exc))
            LOGGER.warning("Saving query failed | user_id=%s error=%s", user_id, exc)
            return None

    def _cached_products(self, appliance_type: str, diagnostics: list[Dict[str, Any]]) -> list[Product]:
        if not appliance_type:
            return []

        products: list[Product] = []
        try:
            for retailer in CACHED_RETAILERS:
                rows = self.repository.find_similar_products(appliance_type, retailer, self.cached_per_retailer)
                if not rows:
                    continue
                LOGGER.info("Cached products found | retailer=%s count=%s", retailer, len(rows))
                products.extend(_product_from_row(row) for row in rows)
                self._bump_recommendations(rows)
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("cache_retrieval", exc))
            LOGGER.warning("Product cache lookup failed: %s", exc)
        return products

    def _bump_recommendations(self, rows: Iterable[Dict[str, Any]]) -> None:
        for row in rows:
            product_id = row.get("id")
            if not product_id:
                continue
            try:
                self.repository.increment_recommendation_count(product_id)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Recommendation count update failed | product_id=%s error=%s", product_id, exc)

    async def _live_search(self, interpretation: QueryInterpretation, tier: str) -> list[Product]:
        partial: list[Product] = []
        return await collect_with_progressive_timeout(
            lambda: self.scraper.search_products(interpretation.appliance_type, tier, partial),
            partial,
            quick_timeout=self.quick_timeout,
            full_timeout=self.full_timeout,
        )

    async def _store_products(
        self,
        products: list[Product],
        appliance_type: str,
        diagnostics: list[Dict[str, Any]],
    ) -> None:
        if self.catalog is None or not products:
            return
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(
            self.storage_executor,
            self.catalog.store_search_results,
            list(products),
            appliance_type,
        )
        try:
            await asyncio.wait_for(pending, timeout=self.store_timeout)
        except asyncio.TimeoutError:
            diagnostics.append({"stage": "product_caching", "message": f"still storing after {self.store_timeout}s"})
            LOGGER.warning("Storing search results still running after %ss; not waiting", self.store_timeout)
        except Exception as exc:  # noqa: BLE001
            diagnostics.append(self._diagnostic("product_caching", exc))
            LOGGER.warning("Storing search results failed: %s", exc)

    @staticmethod
    def _diagnostic(stage: str, exc: BaseException) -> Dict[str, Any]:
        return {"stage": stage, "message": describe_error(exc)}


__all__ = [
    "ApplianceSearchService",
    "FollowUpNotAllowedError",
    "QueryLimitExceededError",
    "SEARCH_CACHE",
    "STORAGE_EXECUTOR",
    "SearchStageError",
    "check_environment",
    "collect_with_progressive_timeout",
]

from __future__ import annotations

import asyncio
import os
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from interpreter import QueryInterpretation
from models import ANONYMOUS_USER_ID
from scrapers import Product
from search_service import (
    ApplianceSearchService,
    FollowUpNotAllowedError,
    QueryLimitExceededError,
    SearchStageError,
    check_environment,
    collect_with_progressive_timeout,
)


def _product(name: str, retailer: str = "Best Buy") -> Product:
    return Product(name=name, price=100.0, product_url=f"https://www.bestbuy.com/{name}", retailer=retailer)


class FakeSearchRepo:
    def __init__(self) -> None:
        self.users = {ANONYMOUS_USER_ID: {"id": ANONYMOUS_USER_ID, "subscription_tier": "free"}}
        self.query_count = 0
        self.saved_queries = []
        self.history = []
        self.cached_rows: dict[str, list[dict]] = {}
        self.bumped = []
        self.fail_user_lookup = False
        self.fail_save = False

    def get_user(self, user_id):  # noqa: ANN001
        if self.fail_user_lookup:
            raise RuntimeError("users table unavailable")
        return self.users.get(user_id)

    def count_user_queries_since(self, user_id, days=30):  # noqa: ANN001
        return self.query_count

    def get_user_queries(self, user_id, limit=5):  # noqa: ANN001
        return self.history[:limit]

    def save_query(self, record):  # noqa: ANN001
        if self.fail_save:
            raise RuntimeError("insert failed")
        self.saved_queries.append(record)
        self.query_count += 1
        return f"q-{len(self.saved_queries)}"

    def find_similar_products(self, product_name, retailer, limit=5):  # noqa: ANN001
        return self.cached_rows.get(retailer, [])[:limit]

    def increment_recommendation_count(self, product_id):  # noqa: ANN001
        self.bumped.append(product_id)


class FakeScraper:
    def __init__(self, products=None, error=None, configured=True) -> None:  # noqa: ANN001
        self.client = SimpleNamespace(configured=configured)
        self.products = products or []
        self.error = error
        self.calls = []

    async def search_products(self, appliance_type, tier="free", partial_results=None):  # noqa: ANN001
        self.calls.append((appliance_type, tier))
        if self.error is not None:
            raise self.error
        if partial_results is not None:
            partial_results.extend(self.products)
        return list(self.products)


class ProgressiveTimeoutTests(unittest.IsolatedAsyncioTestCase):
    async def test_fast_search_returns_full_result(self) -> None:
        async def search() -> list:
            return ["a", "b"]

        result = await collect_with_progressive_timeout(search, [], quick_timeout=1, full_timeout=2)
        self.assertEqual(result, ["a", "b"])

    async def test_partial_results_returned_after_quick_timeout(self) -> None:
        partial: list = []

        async def search() -> list:
            partial.append("early")
            await asyncio.sleep(10)
            return ["never"]

        result = await collect_with_progressive_timeout(search, partial, quick_timeout=0.05, full_timeout=1)
        self.assertEqual(result, ["early"])

    async def test_waits_for_full_timeout_without_partials(self) -> None:
        async def search() -> list:
            await asyncio.sleep(0.1)
            return ["late"]

        result = await collect_with_progressive_timeout(search, [], quick_timeout=0.02, full_timeout=2)
        self.assertEqual(result, ["late"])

    async def test_full_timeout_without_partials_raises(self) -> None:
        async def search() -> list:
            await asyncio.sleep(10)
            return []

        with self.assertRaises(asyncio.TimeoutError):
            await collect_with_progressive_timeout(search, [], quick_timeout=0.01, full_timeout=0.05)

    async def test_error_with_partials_returns_partials(self) -> None:
        partial: list = []

        async def search() -> list:
            partial.append("first")
            raise RuntimeError("retailer crashed")

        result = await collect_with_progressive_timeout(search, partial, quick_timeout=1, full_timeout=2)
        self.assertEqual(result, ["first"])

    async def test_error_without_partials_propagates(self) -> None:
        async def search() -> list:
            raise RuntimeError("retailer crashed")

        with self.assertRaises(RuntimeError):
            await collect_with_progressive_timeout(search, [], quick_timeout=1, full_timeout=2)


class ApplianceSearchServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        env_patch = patch.dict(os.environ, {}, clear=True)
        env_patch.start()
        self.addCleanup(env_patch.stop)

        self.repo = FakeSearchRepo()
        self.interpreter = MagicMock()
        self.interpreter.interpret.return_value = QueryInterpretation(
            appliance_type="refrigerator",
            features=["french door"],
            price_max=2000.0,
        )
        self.catalog = MagicMock()

    def _service(self, scraper: FakeScraper) -> ApplianceSearchService:
        return ApplianceSearchService(self.repo, self.interpreter, scraper, self.catalog, quick_timeout=1, full_timeout=2)

    async def test_live_search_stores_results_and_reports_quota(self) -> None:
        scraper = FakeScraper([_product("fridge-1"), _product("fridge-2")])

        result = await self._service(scraper).search("  french door fridge under 2000  ")

        self.assertEqual(scraper.calls, [("refrigerator", "free")])
        self.assertFalse(result["from_cache"])
        self.assertEqual([p["name"] for p in result["products"]], ["fridge-1", "fridge-2"])
        self.assertEqual(result["query_id"], "q-1")
        self.assertEqual(result["remaining_queries"], 49)
        self.assertEqual(result["subscription_tier"], "free")
        self.assertEqual(result["interpretation"]["appliance_type"], "refrigerator")
        self.assertEqual(result["interpretation"]["price_range"], {"min": None, "max": 2000.0})
        self.assertNotIn("diagnostics", result)
        self.assertEqual(self.repo.saved_queries[0].input_text, "french door fridge under 2000")
        self.assertEqual(self.repo.saved_queries[0].user_id, ANONYMOUS_USER_ID)
        self.catalog.store_search_results.assert_called_once()
        self.assertEqual(self.catalog.store_search_results.call_args.args[1], "refrigerator")

    async def test_enough_cached_products_skip_live_search(self) -> None:
        self.repo.cached_rows = {
            "Best Buy": [
                {"id": "p1", "product_name": "LG fridge", "price": 1500, "url": "https://www.bestbuy.com/1", "retailer": "Best Buy"},
                {"id": "p2", "product_name": "GE fridge", "price": 900, "url": "https://www.bestbuy.com/2", "retailer": "Best Buy"},
            ],
            "Lowes": [
                {
                    "id": "p3",
                    "product_name": "Whirlpool fridge",
                    "price": "1100.00",
                    "url": "https://www.lowes.com/3",
                    "retailer": "Lowes",
                    "metadata": {"features": ["Ice maker"]},
                }
            ],
        }
        scraper = FakeScraper([_product("live")])

        result = await self._service(scraper).search("fridge")

        self.assertTrue(result["from_cache"])
        self.assertEqual(scraper.calls, [])
        self.assertEqual(len(result["products"]), 3)
        self.assertEqual(result["products"][2]["price"], 1100.0)
        self.assertEqual(result["products"][2]["features"], ["Ice maker"])
        self.assertEqual(self.repo.bumped, ["p1", "p2", "p3"])
        self.catalog.store_search_results.assert_not_called()

    async def test_top_tier_passes_past_queries_and_is_unlimited(self) -> None:
        self.repo.users["u-top"] = {"id": "u-top", "subscription_tier": "top"}
        self.repo.history = [{"input_text": "gas range"}, {"input_text": ""}, {"input_text": "quiet dishwasher"}]
        scraper = FakeScraper([_product("fridge")])

        result = await self._service(scraper).search("fridge", "u-top")

        self.interpreter.interpret.assert_called_once_with("fridge", "top", ["gas range", "quiet dishwasher"])
        self.assertEqual(scraper.calls, [("refrigerator", "top")])
        self.assertIsNone(result["remaining_queries"])
        self.assertEqual(result["subscription_tier"], "top")

    async def test_quota_exceeded_raises_before_interpretation(self) -> None:
        self.repo.query_count = 50

        with self.assertRaises(QueryLimitExceededError) as ctx:
            await self._service(FakeScraper()).search("fridge")

        self.assertEqual(ctx.exception.remaining, 0)
        self.interpreter.interpret.assert_not_called()

    async def test_unknown_user_cannot_search(self) -> None:
        with self.assertRaises(QueryLimitExceededError):
            await self._service(FakeScraper()).search("fridge", "ghost")

    async def test_interpretation_failure_is_a_stage_error(self) -> None:
        self.interpreter.interpret.side_effect = RuntimeError("LLM down")

        with self.assertRaises(SearchStageError) as ctx:
            await self._service(FakeScraper()).search("fridge")

        self.assertEqual(ctx.exception.stage, "interpretation")
        self.assertEqual(ctx.exception.diagnostics[0]["stage"], "interpretation")
        self.assertIn("LLM down", ctx.exception.diagnostics[0]["message"])

    async def test_live_failure_falls_back_to_cached_products(self) -> None:
        self.repo.cached_rows = {
            "Home Depot": [
                {"id": "p9", "product_name": "GE fridge", "price": 900, "url": "https://www.homedepot.com/9", "retailer": "Home Depot"}
            ]
        }
        scraper = FakeScraper(error=RuntimeError("oxylabs down"))

        result = await self._service(scraper).search("fridge")

        self.assertTrue(result["from_cache"])
        self.assertEqual([p["name"] for p in result["products"]], ["GE fridge"])
        self.assertEqual(result["diagnostics"]["errors"][0]["stage"], "product_search")
        self.assertTrue(result["diagnostics"]["warnings"])

    async def test_live_failure_without_cache_is_a_stage_error(self) -> None:
        scraper = FakeScraper(error=RuntimeError("oxylabs down"))

        with self.assertRaises(SearchStageError) as ctx:
            await self._service(scraper).search("fridge")

        self.assertEqual(ctx.exception.stage, "product_search")

    async def test_soft_failures_become_diagnostics(self) -> None:
        self.repo.fail_save = True
        self.catalog.store_search_results.side_effect = RuntimeError("upsert failed")
        scraper = FakeScraper([_product("fridge")], configured=False)

        result = await self._service(scraper).search("fridge")

        stages = [item["stage"] for item in result["diagnostics"]["errors"]]
        self.assertEqual(stages, ["query_saving", "product_caching"])
        self.assertIsNone(result["query_id"])
        self.assertTrue(result["env_status"]["using_mock_data"])
        self.assertEqual(result["interpretation"]["env_status"], result["env_status"])

    async def test_slow_product_storage_does_not_hold_the_response(self) -> None:
        release = threading.Event()
        self.addCleanup(release.set)
        executor = ThreadPoolExecutor(max_workers=1)
        self.addCleanup(executor.shutdown, wait=False)
        self.catalog.store_search_results.side_effect = lambda products, appliance_type: release.wait(5)
        service = ApplianceSearchService(
            self.repo,
            self.interpreter,
            FakeScraper([_product("fridge")]),
            self.catalog,
            quick_timeout=1,
            full_timeout=2,
            store_timeout=0.2,
            storage_executor=executor,
        )

        started = time.monotonic()
        result = await service.search("fridge")
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 1.5)
        self.assertEqual([p["name"] for p in result["products"]], ["fridge"])
        self.assertEqual(result["diagnostics"]["errors"][0]["stage"], "product_caching")
        self.catalog.store_search_results.assert_called_once()

    async def test_repository_calls_run_off_the_event_loop(self) -> None:
        loop_thread = threading.get_ident()
        seen_threads = []
        original_get_user = self.repo.get_user

        def get_user(user_id):  # noqa: ANN001
            seen_threads.append(threading.get_ident())
            return original_get_user(user_id)

        self.repo.get_user = get_user

        await self._service(FakeScraper([_product("fridge")])).search("fridge")

        self.assertTrue(seen_threads)
        self.assertNotIn(loop_thread, seen_threads)

    async def test_subscription_tier_case_is_normalized(self) -> None:
        self.repo.users["u-top"] = {"id": "u-top", "subscription_tier": " TOP "}
        self.repo.history = [{"input_text": "gas range"}]
        scraper = FakeScraper([_product("fridge")])

        result = await self._service(scraper).search("fridge", "u-top")

        self.interpreter.interpret.assert_called_once_with("fridge", "top", ["gas range"])
        self.assertEqual(scraper.calls, [("refrigerator", "top")])
        self.assertEqual(result["subscription_tier"], "top")
        self.assertIsNone(result["remaining_queries"])

    async def test_unknown_subscription_tier_is_free(self) -> None:
        self.repo.users["u-odd"] = {"id": "u-odd", "subscription_tier": "platinum"}

        result = await self._service(FakeScraper([_product("fridge")])).search("fridge", "u-odd")

        self.assertEqual(result["subscription_tier"], "free")
        self.interpreter.interpret.assert_called_once_with("fridge", "free", [])

    async def test_user_lookup_failure_blocks_search(self) -> None:
        self.repo.fail_user_lookup = True

        # The quota guard fails closed on the same error.
        with self.assertRaises(QueryLimitExceededError) as ctx:
            await self._service(FakeScraper()).search("fridge")

        self.assertEqual(ctx.exception.diagnostics[0]["stage"], "user_retrieval")

    async def test_empty_query_is_rejected(self) -> None:
        for query in ("", "   ", None, 42):
            with self.assertRaises(ValueError):
                await self._service(FakeScraper()).search(query)

class FollowUpTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = FakeSearchRepo()
        self.repo.users["u-top"] = {"id": "u-top", "subscription_tier": "Top"}
        self.repo.users["u-mid"] = {"id": "u-mid", "subscription_tier": "middle"}
        self.interpreter = MagicMock()
        self.interpreter.answer_follow_up.return_value = QueryInterpretation(
            appliance_type="refrigerator",
            features=["ice maker"],
        )
        self.service = ApplianceSearchService(self.repo, self.interpreter, FakeScraper())

    def test_top_tier_gets_an_answer_and_the_question_is_logged(self) -> None:
        details = {"name": "LG French Door", "price": 1999.0}

        result = self.service.follow_up(
            "u-top",
            "  Does it have an ice maker?  ",
            original_query="french door fridge",
            appliance_details=details,
            query_id="q-7",
        )

        self.interpreter.answer_follow_up.assert_called_once_with(
            "french door fridge", details, "Does it have an ice maker?"
        )
        self.assertEqual(result["query_id"], "q-1")
        self.assertEqual(result["subscription_tier"], "top")
        self.assertTrue(result["interpretation"]["is_follow_up"])
        self.assertEqual(result["interpretation"]["original_query_id"], "q-7")
        saved = self.repo.saved_queries[0]
        self.assertEqual((saved.user_id, saved.input_text), ("u-top", "Does it have an ice maker?"))
        self.assertTrue(saved.interpretation["is_follow_up"])

    def test_lower_tiers_are_refused(self) -> None:
        for user_id in ("u-mid", ANONYMOUS_USER_ID, "ghost"):
            with self.assertRaises(FollowUpNotAllowedError):
                self.service.follow_up(user_id, "Is it quiet?", original_query="dishwasher")
        self.interpreter.answer_follow_up.assert_not_called()

    def test_question_and_context_are_required(self) -> None:
        with self.assertRaisesRegex(ValueError, "Follow-up question"):
            self.service.follow_up("u-top", "  ", original_query="dishwasher")
        with self.assertRaisesRegex(ValueError, "appliance details"):
            self.service.follow_up("u-top", "Is it quiet?")

    def test_save_failure_still_answers(self) -> None:
        self.repo.fail_save = True

        result = self.service.follow_up("u-top", "Is it quiet?", appliance_details={"name": "Bosch 800"})

        self.assertIsNone(result["query_id"])
        self.assertEqual(result["diagnostics"]["errors"][0]["stage"], "query_saving")



class CheckEnvironmentTests(unittest.TestCase):
    def test_reports_missing_variables(self) -> None:
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "SUPABASE_URL": "https://x.supabase.co"}, clear=True):
            self.assertEqual(check_environment(), ["OXYLABS_USERNAME", "OXYLABS_PASSWORD", "SUPABASE_KEY"])

    def test_complete_environment(self) -> None:
        env = {
            "GEMINI_API_KEY": "g",
            "OXYLABS_USERNAME": "u",
            "OXYLABS_PASSWORD": "p",
            "SUPABASE_URL": "https://x.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "s",
        }
        with patch.dict(os.environ, env, clear=True):
            self.assertEqual(check_environment(), [])


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlparse

from cache import DEFAULT_VALIDITY, is_fresh
from categories import CategoryClassifier, CategoryValidator
from models import ApplianceFinderRepository, ProductRecord
from scrapers import OxylabsClient, Product, ProductPageScraper, extract_retailer_from_url

LOGGER = logging.getLogger(__name__)

DEMO_PREFIXES = ("[DEMO]", "[MOCK]")


class ProductUnavailableError(RuntimeError):
    """Raised when product data cannot be retrieved from the retailer page."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Failed to retrieve product data for {url}")
        self.url = url


def validate_product_url(url: Any) -> str:
    if not url or not isinstance(url, str):
        raise ValueError("Valid URL is required")
    parsed = urlparse(url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Invalid URL format")
    return url.strip()


def _llm_value(llm_data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if llm_data.get(key) not in (None, ""):
            return llm_data.get(key)
    return None


def build_enhanced_metadata(product_data: Dict[str, Any], llm_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    llm_data = llm_data or {}
    return {
        **product_data,
        "llm_appliance_type": _llm_value(llm_data, "appliance_type", "applianceType"),
        "llm_features": _llm_value(llm_data, "features") or [],
        "llm_brands": _llm_value(llm_data, "brands") or [],
        "price_range": _llm_value(llm_data, "price_range", "priceRange") or {},
    }


class ProductCatalog:
    """Product cache backed by the repository, refreshed from retailer pages."""

    def __init__(
        self,
        repository,  # noqa: ANN001
        page_scraper: ProductPageScraper,
        classifier: Optional[CategoryClassifier] = None,
        *,
        validity_period: str = DEFAULT_VALIDITY,
    ) -> None:
        self.repository = repository
        self.page_scraper = page_scraper
        self.classifier = classifier or CategoryClassifier(repository)
        self.validity_period = validity_period

    @classmethod
    def from_env(cls, repository=None) -> "ProductCatalog":  # noqa: ANN001
        repository = repository or ApplianceFinderRepository.from_env()
        client = OxylabsClient.from_env()
        return cls(
            repository,
            ProductPageScraper(client),
            CategoryClassifier(repository, CategoryValidator(client)),
        )

    def get_product(self, url: str) -> Optional[Dict[str, Any]]:
        return self.repository.get_product_by_url(url)

    def fetch_product(self, url: Any, llm_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = validate_product_url(url)
        llm_data = llm_data if isinstance(llm_data, dict) else {}
        llm_type = _llm_value(llm_data, "appliance_type", "applianceType")

        existing = self.repository.get_product_by_url(url)
        if existing and is_fresh(existing.get("last_updated"), existing.get("validity_period") or DEFAULT_VALIDITY):
            LOGGER.info("Product served from cache | url=%s", url)
            return {"message": "Product data retrieved from cache", "product": existing, "cached": True}

        LOGGER.info("Scraping product | url=%s llm_type=%s", url, llm_type or "none")
        product_data = self.page_scraper.scrape_product_data(url)
        if not product_data:
            raise ProductUnavailableError(url)

        metadata = build_enhanced_metadata(product_data, llm_data)
        retailer = product_data.get("retailer") or extract_retailer_from_url(url) or "Unknown"
        row = self.repository.create_or_update_product(
            ProductRecord(
                product_name=str(product_data.get("name") or "Unknown Product"),
                retailer=retailer,
                url=url,
                price=product_data.get("price"),
                image_url=product_data.get("image_url"),
                metadata=metadata,
                validity_period=self.validity_period,
            )
        )

        detected = self.classifier.detect_product_categories(product_data, url, llm_type)
        product_id = row.get("id")
        if product_id and detected:
            self.classifier.apply_categories_to_product(product_id, detected)
        elif not detected:
            LOGGER.info("No categories detected | url=%s", url)

        product = {
            "id": product_id,
            "product_name": row.get("product_name") or product_data.get("name"),
            "retailer": retailer,
            "price": product_data.get("price"),
            "url": url,
            "last_updated": row.get("last_updated") or datetime.now(timezone.utc).isoformat(),
            "next_update_at": row.get("next_update_at"),
            "metadata": metadata,
            "detected_categories": len(detected),
            "validity_period": self.validity_period,
        }
        return {"message": "Product data retrieved and saved", "product": product, "cached": False}

    def store_search_results(self, products: Iterable[Product], appliance_type: Optional[str] = None) -> int:
        stored = 0
        for product in products:
            if product.name.startswith(DEMO_PREFIXES):
                continue
            try:
                row = self.repository.create_or_update_product(
                    ProductRecord(
                        product_name=product.name,
                        retailer=product.retailer,
                        url=product.product_url,
                        price=product.price,
                        image_url=product.image_url,
                        metadata={
                            "features": list(product.features),
                            "llm_appliance_type": appliance_type,
                            "source": "search",
                        },
                        validity_period=self.validity_period,
                    )
                )
                stored += 1
                product_id = row.get("id")
                if product_id:
                    detected = self.classifier.detect_product_categories(
                        {"name": product.name}, product.product_url, appliance_type
                    )
                    self.classifier.apply_categories_to_product(product_id, detected)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Failed to store search result | url=%s error=%s", product.product_url, exc)
        LOGGER.info("Stored search results | stored=%s", stored)
        return stored

    def refresh_due_products(self, *, batch_size: int = 20, pause_seconds: float = 1.0) -> Dict[str, Any]:
        started = datetime.now(timezone.utc)
        due = self.repository.get_products_to_update(batch_size)
        LOGGER.info("Product refresh start | due=%s batch_size=%s", len(due), batch_size)
        if not due:
            return {"message": "No products to update", "updated": 0, "failed": 0}

        updated: list[Dict[str, Any]] = []
        failed: list[Dict[str, Any]] = []
        for row in due:
            url = row.get("url")
            try:
                fresh = self.page_scraper.scrape_product_data(url)
                if not fresh:
                    LOGGER.warning("Refresh scrape returned nothing | url=%s", url)
                    failed.append({"id": row.get("id"), "url": url, "reason": "Failed to scrape data"})
                    continue

                name = fresh.get("name") or row.get("product_name")
                self.repository.create_or_update_product(
                    ProductRecord(
                        product_name=str(name),
                        retailer=fresh.get("retailer") or row.get("retailer") or "Unknown",
                        url=url,
                        price=fresh.get("price"),
                        image_url=fresh.get("image_url") or row.get("image_url"),
                        metadata=dict(fresh),
                        validity_period=self.validity_period,
                        update_priority=int(row.get("update_priority") or 0),
                    )
                )
                updated.append(
                    {"id": row.get("id"), "name": name, "old_price": row.get("price"), "new_price": fresh.get("price")}
                )
                if pause_seconds > 0:
                    time.sleep(pause_seconds)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Product refresh failed | id=%s url=%s error=%s", row.get("id"), url, exc)
                failed.append({"id": row.get("id"), "url": url, "reason": str(exc)})

        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        LOGGER.info("Product refresh done | updated=%s failed=%s elapsed=%.1fs", len(updated), len(failed), elapsed)
        return {
            "message": "Product update job completed",
            "updated": len(updated),
            "failed": len(failed),
            "updated_products": updated,
            "failed_products": failed,
        }


__all__ = [
    "ProductCatalog",
    "ProductUnavailableError",
    "build_enhanced_metadata",
    "validate_product_url",
]

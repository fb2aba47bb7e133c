from __future__ import annotations

import asyncio
import logging
import os
import random
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote, urlparse

import requests

from cache import SearchResultCache
from resilience import RATE_LIMITED, RemoteServiceError, classify_error
from tiers import BEST_BUY, HOME_DEPOT, LOWES, retailers_for_tier

LOGGER = logging.getLogger(__name__)

OXYLABS_ENDPOINT = "https://realtime.oxylabs.io/v1/queries"
GEO_LOCATION = "United States"
PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x300?text=No+Image"

KNOWN_BRANDS = (
    "LG",
    "Samsung",
    "GE",
    "Whirlpool",
    "Frigidaire",
    "Maytag",
    "KitchenAid",
    "Bosch",
    "Amana",
    "Kenmore",
    "Haier",
    "Hotpoint",
    "Danby",
    "Galanz",
    "Vissani",
)
MODEL_PATTERNS = (
    re.compile(r"\b([A-Z0-9]*\d[A-Z0-9]*-[A-Z0-9]+)\b", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2,}[0-9]{4,}[A-Z]*)\b", re.IGNORECASE),
    re.compile(r"\b(WR[A-Z0-9]{5,}[A-Z]*)\b", re.IGNORECASE),
    re.compile(r"\b(RF[0-9]{2}[A-Z]{1,2}[0-9]{4,}[A-Z]*)\b", re.IGNORECASE),
    re.compile(r"\b(LT[A-Z0-9]{5,}[A-Z]*)\b", re.IGNORECASE),
    re.compile(r"\b(FF[A-Z0-9]{5,}[A-Z]*)\b", re.IGNORECASE),
)
MODEL_LABELS = ("Model:", "Model #:", "Model Number:", "Item #:")
PRICE_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?|\.\d+")


@dataclass(frozen=True)
class Retailer:
    name: str
    domain: str
    source: str = "universal_ecommerce"
    priority: int = 1
    timeout_seconds: float = 45.0


RETAILERS = (
    Retailer(name=BEST_BUY, domain="bestbuy.com", priority=1),
    Retailer(name=HOME_DEPOT, domain="homedepot.com", priority=2),
    Retailer(name=LOWES, domain="lowes.com", priority=3),
)
RETAILER_DOMAINS = {retailer.domain: retailer.name for retailer in RETAILERS}


@dataclass
class Product:
    name: str
    price: float
    product_url: str
    retailer: str
    image_url: str = PLACEHOLDER_IMAGE
    features: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OxylabsClient:
    """Thin client for the Oxylabs realtime scraping API."""

    def __init__(
        self,
        username: Optional[str],
        password: Optional[str],
        *,
        endpoint: str = OXYLABS_ENDPOINT,
    ) -> None:
        self.username = (username or "").strip()
        self.password = (password or "").strip()
        self.endpoint = endpoint

    @classmethod
    def from_env(cls) -> "OxylabsClient":
        client = cls(os.getenv("OXYLABS_USERNAME"), os.getenv("OXYLABS_PASSWORD"))
        if not client.configured:
            LOGGER.warning("OXYLABS_USERNAME/OXYLABS_PASSWORD missing; scraping falls back to demo data")
        return client

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def query(self, payload: Dict[str, Any], *, timeout: float = 30.0) -> Dict[str, Any]:
        if not self.configured:
            raise RuntimeError("Oxylabs credentials missing")

        response = requests.post(
            self.endpoint,
            json=payload,
            auth=(self.username, self.password),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        if response.status_code >= 400:
            raise RemoteServiceError(
                f"Oxylabs error {response.status_code}: {response.text[:260]}",
                status_code=response.status_code,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise RemoteServiceError("Oxylabs invalid response payload")
        return data

    @staticmethod
    def first_content(data: Dict[str, Any]) -> Dict[str, Any]:
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results:
            return {}
        first = results[0]
        content = first.get("content") if isinstance(first, dict) else None
        return content if isinstance(content, dict) else {}

    def universal_search(self, domain: str, query: str, *, timeout: float = 30.0) -> list[Dict[str, Any]]:
        payload = {
            "source": "universal_search",
            "domain": domain,
            "query": query,
            "parse": True,
            "geo_location": GEO_LOCATION,
        }
        content = self.first_content(self.query(payload, timeout=timeout))
        rows = content.get("results")
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]


def extract_retailer_from_url(url: str) -> Optional[str]:
    try:
        hostname = (urlparse(str(url or "")).hostname or "").lower()
    except ValueError:
        return None
    for domain, name in RETAILER_DOMAINS.items():
        if domain in hostname:
            return name
    return None


def extract_make_and_model(product_name: str, features: Iterable[str] = ()) -> tuple[Optional[str], Optional[str]]:
    name = str(product_name or "")
    make: Optional[str] = None
    for brand in KNOWN_BRANDS:
        if re.search(rf"\b{re.escape(brand)}\b", name):
            make = brand
            break

    model_number = _match_model(name)
    if model_number:
        return make, model_number

    for feature in features:
        text = str(feature or "")
        for label in MODEL_LABELS:
            if label in text:
                tail = text.split(label, 1)[1].strip()
                if tail:
                    return make, tail.split()[0]
        model_number = _match_model(text)
        if model_number:
            return make, model_number

    return make, None


def _match_model(text: str) -> Optional[str]:
    for pattern in MODEL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def parse_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    # First amount only, so "$1,299.99 - $1,499.99" reads as the low end.
    match = PRICE_NUMBER_RE.search(str(value))
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def _is_absolute_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    if parsed.scheme == "data":
        return True
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def normalize_product(item: Dict[str, Any], retailer: str) -> Optional[Product]:
    name = str(item.get("name") or item.get("title") or item.get("product_name") or "").strip()

    price: Optional[float] = None
    for key in ("price", "price_amount", "original_price", "final_price"):
        if item.get(key) not in (None, ""):
            price = parse_price(item.get(key))
            break

    image_url = (
        item.get("image_url")
        or item.get("imageUrl")
        or item.get("image")
        or item.get("primary_image")
        or item.get("thumbnail")
        or ""
    )
    images = item.get("images")
    if not image_url and isinstance(images, list) and images:
        first = images[0]
        image_url = (first.get("url") or first.get("src") or "") if isinstance(first, dict) else first
    image_url = str(image_url or "")

    product_url = str(item.get("url") or item.get("product_url") or item.get("link") or "")

    features = item.get("features") or item.get("specifications") or item.get("specs") or []
    if not isinstance(features, list):
        features = []

    if not name:
        LOGGER.debug("Skipping %s product: missing name", retailer)
        return None
    if price is None or price <= 0:
        LOGGER.debug("Skipping %s product '%s': invalid price", retailer, name[:30])
        return None
    if not product_url or not _is_absolute_url(product_url):
        LOGGER.debug("Skipping %s product '%s': missing or invalid URL", retailer, name[:30])
        return None
    if image_url and not _is_absolute_url(image_url):
        LOGGER.debug("Skipping %s product '%s': invalid image URL", retailer, name[:30])
        return None

    return Product(
        name=name,
        price=price,
        product_url=product_url,
        retailer=retailer,
        image_url=image_url or PLACEHOLDER_IMAGE,
        features=[str(f).strip() for f in features if isinstance(f, str) and f.strip()],
    )


def build_search_url(retailer: Retailer, search_term: str) -> str:
    encoded = quote(search_term, safe="")
    if retailer.name == BEST_BUY:
        return f"https://www.bestbuy.com/site/searchpage.jsp?st={encoded}"
    if retailer.name == HOME_DEPOT:
        return f"https://www.homedepot.com/s/{encoded}"
    if retailer.name == LOWES:
        return f"https://www.lowes.com/search?searchTerm={encoded}"
    return f"https://{retailer.domain}/search?q={encoded}"


def mock_products(appliance_type: Optional[str], reason: str = "unknown") -> list[Product]:
    LOGGER.info("Using demo products | appliance_type=%s reason=%s", appliance_type, reason)
    kind = str(appliance_type or "").strip().lower()
    if kind == "refrigerator":
        return [
            Product(
                name=f"[DEMO] Sample Refrigerator 1 ({reason})",
                price=999.99,
                product_url="https://www.bestbuy.com/sample-product",
                retailer="Best Buy (Demo)",
                features=["Energy Star", "Ice Maker", "25 cu ft", "Demo Product"],
            ),
            Product(
                name=f"[DEMO] Sample Refrigerator 2 ({reason})",
                price=1299.99,
                product_url="https://www.homedepot.com/sample-product",
                retailer="Home Depot (Demo)",
                features=["French Door", "Stainless Steel", "27 cu ft", "Demo Product"],
            ),
        ]
    if kind == "washer":
        return [
            Product(
                name=f"[DEMO] Sample Washer 1 ({reason})",
                price=599.99,
                product_url="https://www.lowes.com/sample-product",
                retailer="Lowes (Demo)",
                features=["Front Load", "Steam Clean", "4.5 cu ft", "Demo Product"],
            )
        ]
    label = appliance_type or "Appliance"
    return [
        Product(
            name=f"[DEMO] Sample {label} ({reason})",
            price=499.99,
            product_url="https://www.bestbuy.com/sample-product",
            retailer="Best Buy (Demo)",
            features=["Feature 1", "Feature 2", "Feature 3", "Demo Product"],
        ),
        Product(
            name=f"[DEMO] Premium {label} ({reason})",
            price=799.99,
            product_url="https://www.homedepot.com/sample-product",
            retailer="Home Depot (Demo)",
            features=["Premium Feature 1", "Premium Feature 2", "Demo Product"],
        ),
    ]


class RetailerSearchScraper:
    """Concurrent retailer search over the scraping API with a TTL cache."""

    def __init__(
        self,
        client: OxylabsClient,
        *,
        cache: Optional[SearchResultCache] = None,
        retailers: Iterable[Retailer] = RETAILERS,
    ) -> None:
        self.client = client
        self.cache = cache if cache is not None else SearchResultCache()
        self.retailers = tuple(retailers)

    def retailers_for(self, tier: str) -> list[Retailer]:
        allowed = set(retailers_for_tier(tier))
        selected = [retailer for retailer in self.retailers if retailer.name in allowed]
        return sorted(selected, key=lambda retailer: retailer.priority)

    async def search_products(
        self,
        appliance_type: Optional[str],
        tier: str = "free",
        partial_results: Optional[list[Product]] = None,
    ) -> list[Product]:
        """Search retailers for the appliance type; falls back to demo products."""
        partial = partial_results if partial_results is not None else []

        if not self.client.configured:
            products = mock_products(appliance_type, "API credentials missing")
            self.cache.put(self.cache.make_key(appliance_type or "", tier), products)
            partial.extend(products)
            return products

        search_term = str(appliance_type or "").strip()
        if not search_term:
            LOGGER.warning("No search term provided by the interpreter")
            return mock_products(appliance_type, "No search term")

        cache_key = self.cache.make_key(search_term, tier)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            retailers = self.retailers_for(tier)
            LOGGER.info(
                "Retailer search start | term=%s tier=%s retailers=%s",
                search_term,
                tier,
                ",".join(retailer.name for retailer in retailers),
            )
            outcomes = await asyncio.gather(
                *(self._search_retailer(retailer, search_term, partial) for retailer in retailers),
                return_exceptions=True,
            )

            products: list[Product] = []
            for retailer, outcome in zip(retailers, outcomes):
                if isinstance(outcome, BaseException):
                    LOGGER.warning("Retailer search failed | retailer=%s error=%s", retailer.name, outcome)
                    continue
                products.extend(outcome)

            if products:
                LOGGER.info("Retailer search done | term=%s products=%s", search_term, len(products))
                self.cache.put(cache_key, products)
                return products

            LOGGER.warning("No products found from any retailer | term=%s", search_term)
            fallback = mock_products(search_term, "No products found")
            self.cache.put(cache_key, fallback)
            return fallback
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Retailer search process failed | term=%s error=%s", search_term, exc)
            fallback = mock_products(appliance_type, "Search process error")
            self.cache.put(cache_key, fallback, half_expired=True)
            return fallback

    async def _search_retailer(self, retailer: Retailer, search_term: str, partial: list[Product]) -> list[Product]:
        payload = {
            "source": retailer.source,
            "domain": retailer.domain,
            "parse": True,
            "render": "html",
            "geo_location": GEO_LOCATION,
            "user_agent_type": "desktop",
            "url": build_search_url(retailer, search_term),
        }
        started = time.monotonic()
        try:
            data = await asyncio.wait_for(
                asyncio.to_thread(self.client.query, payload, timeout=retailer.timeout_seconds),
                timeout=retailer.timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Retailer request failed | retailer=%s error=%s", retailer.name, exc)
            return []

        content = self.client.first_content(data)
        raw_items = content.get("results") or content.get("organic") or content.get("products") or []
        if not isinstance(raw_items, list):
            raw_items = []

        products: list[Product] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            product = normalize_product(item, retailer.name)
            if product is not None:
                products.append(product)

        LOGGER.info(
            "Retailer search | retailer=%s raw=%s valid=%s elapsed=%.1fs",
            retailer.name,
            len(raw_items),
            len(products),
            time.monotonic() - started,
        )
        if products:
            partial.extend(products)
        return products


def _product_parsing_instructions() -> Dict[str, Any]:
    def _text(selector: str, many: bool = False) -> Dict[str, Any]:
        return {"_fns": [{"_fn": "elements" if many else "element", "_args": [selector]}, {"_fn": "text"}]}

    return {
        "product": {
            "_fns": [{"_fn": "element", "_args": ["body"]}],
            "product_name": _text("h1"),
            "price": _text("[data-price], .price-display, .product-price, .price, .product-price-primary"),
            "image_url": {
                "_fns": [
                    {"_fn": "element", "_args": ["img.primary-image, img.product-image, .product-image img"]},
                    {"_fn": "attr", "_args": ["src"]},
                ]
            },
            "features": _text(
                ".product-info li, .product-features li, .product-specs li, "
                ".product-description li, .specs-table tr, .product-details-list li",
                many=True,
            ),
            "specifications": _text(
                ".product-specs .specs-table tr, .specifications tr, .specs-list li, #specifications li",
                many=True,
            ),
            "brand": _text('.product-brand, .brand, [itemprop="brand"], .manufacturer'),
            "model_number": _text("[data-product-id], [data-model], .model-number, .product-model"),
        }
    }


def _as_text_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    if isinstance(value, str):
        return [value]
    return []


class ProductPageScraper:
    """Scrapes a single retailer product page through the scraping API."""

    def __init__(
        self,
        client: OxylabsClient,
        *,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.client = client
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.timeout_seconds = timeout_seconds

    def scrape_product_data(self, url: str) -> Optional[Dict[str, Any]]:
        retailer = extract_retailer_from_url(url) or "Unknown Retailer"
        if not self.client.configured:
            LOGGER.warning("Oxylabs credentials not found, returning mock product data")
            return {
                "name": f"[MOCK] Product from {retailer}",
                "price": 999.99,
                "retailer": retailer,
                "image_url": PLACEHOLDER_IMAGE,
                "features": ["Mock Feature 1", "Mock Feature 2"],
                "make": "Mock Brand",
                "model_number": "MOCK123",
            }

        payload = {
            "source": "universal_ecommerce",
            "url": url,
            "geo_location": GEO_LOCATION,
            "render": "html",
            "parse": True,
            "parsing_instructions": _product_parsing_instructions(),
        }

        backoff = self.initial_backoff
        for attempt in range(self.max_retries + 1):
            try:
                LOGGER.info("Scraping product | url=%s attempt=%s/%s", url, attempt + 1, self.max_retries + 1)
                data = self.client.query(payload, timeout=self.timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                if attempt >= self.max_retries:
                    LOGGER.error("Product scrape gave up after %s attempts | url=%s error=%s", attempt + 1, url, exc)
                    return None
                if classify_error(exc) == RATE_LIMITED:
                    backoff = min(backoff * 2, 30.0)
                else:
                    backoff = min(backoff * random.uniform(1.5, 2.0), 15.0)
                LOGGER.warning("Product scrape failed | url=%s error=%s. Retry in %.2fs", url, exc, backoff)
                time.sleep(backoff)
                continue
            return self._parse_product_content(data, url)
        return None

    def _parse_product_content(self, data: Dict[str, Any], url: str) -> Optional[Dict[str, Any]]:
        content = self.client.first_content(data)
        product = content.get("product")
        if not isinstance(product, dict):
            LOGGER.warning("No product data in scraping response | url=%s", url)
            return None

        features = _as_text_list(product.get("features"))
        for spec in _as_text_list(product.get("specifications")):
            if spec not in features:
                features.append(spec)

        name = str(product.get("product_name") or "").strip()
        make = product.get("brand") or None
        model_number = product.get("model_number") or None
        if not make or not model_number:
            extracted_make, extracted_model = extract_make_and_model(name, features)
            make = make or extracted_make
            model_number = model_number or extracted_model

        return {
            "name": name or "Unknown Product",
            "price": parse_price(product.get("price")),
            "retailer": extract_retailer_from_url(url) or "Unknown Retailer",
            "image_url": product.get("image_url") or None,
            "features": features,
            "make": make,
            "model_number": model_number,
        }

    def search_product_by_make_model(self, make: str, model: str, retailer_domain: Optional[str] = None) -> Optional[str]:
        if not self.client.configured:
            LOGGER.warning("Oxylabs credentials not found, cannot search by make/model")
            return None

        query = f"{make} {model}".strip()
        model_lower = str(model or "").lower()
        domains = [retailer_domain] if retailer_domain else [retailer.domain for retailer in RETAILERS]
        for domain in domains:
            try:
                rows = self.client.universal_search(domain, query)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Make/model search failed | domain=%s error=%s", domain, exc)
                continue

            for row in rows:
                title = str(row.get("title") or "").lower()
                description = str(row.get("description") or "").lower()
                if row.get("url") and model_lower and (model_lower in title or model_lower in description):
                    return str(row["url"])
            if rows and rows[0].get("url"):
                return str(rows[0]["url"])
        return None


__all__ = [
    "OxylabsClient",
    "PLACEHOLDER_IMAGE",
    "Product",
    "ProductPageScraper",
    "RETAILERS",
    "Retailer",
    "RetailerSearchScraper",
    "build_search_url",
    "extract_make_and_model",
    "extract_retailer_from_url",
    "mock_products",
    "normalize_product",
    "parse_price",
]

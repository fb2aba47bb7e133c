from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from models import CategoryRecord
from scrapers import RETAILERS, OxylabsClient

LOGGER = logging.getLogger(__name__)

MAIN_CATEGORIES: Dict[str, tuple[str, ...]] = {
    "refrigerators": ("refrigerator", "fridge", "freezer", "cooler"),
    "washing_machines": ("washer", "washing machine", "wash machine", "clothes washer"),
    "dryers": ("dryer", "drying machine", "clothes dryer"),
    "dishwashers": ("dishwasher", "dish washer"),
    "ovens": ("oven", "wall oven", "built-in oven"),
    "stoves": ("stove", "range", "cooktop", "cooking surface"),
    "microwaves": ("microwave",),
    "cooktops": ("cooktop", "cooking surface", "stovetop", "hob"),
    "range_hoods": ("range hood", "vent hood", "exhaust hood", "ventilation", "hood", "stove hood"),
    "laundry_centers": ("laundry center", "stacked washer dryer", "washer dryer combo", "laundry combo"),
    "air_conditioners": ("air conditioner", "ac unit", "cooling", "air conditioning"),
    "vacuum_cleaners": ("vacuum", "cleaner", "sweeper"),
}

SMART_KEYWORDS = ("smart", "wifi", "connected", "app control")
COMPACT_KEYWORDS = ("compact", "small", "apartment size", "space saving")
GAS_KEYWORDS = ("gas", "natural gas", "propane")

SUBCATEGORIES: Dict[str, Dict[str, tuple[str, ...]]] = {
    "refrigerators": {
        "french_door": ("french door", "french-door"),
        "side_by_side": ("side by side", "side-by-side"),
        "top_freezer": ("top freezer", "top-freezer", "freezer on top"),
        "bottom_freezer": ("bottom freezer", "bottom-freezer", "freezer on bottom"),
        "counter_depth": ("counter depth", "counter-depth", "built-in depth"),
        "mini_fridge": ("mini", "compact", "small"),
    },
    "washing_machines": {
        "front_load": ("front load", "front-load", "front loader"),
        "top_load": ("top load", "top-load", "top loader"),
        "compact": COMPACT_KEYWORDS,
        "smart": SMART_KEYWORDS,
    },
    "dryers": {
        "electric": ("electric", "plug-in"),
        "gas": GAS_KEYWORDS,
        "compact": COMPACT_KEYWORDS,
        "smart": SMART_KEYWORDS,
    },
    "dishwashers": {
        "built_in": ("built in", "built-in", "under counter", "undercounter"),
        "portable": ("portable", "movable", "countertop"),
        "drawer": ("drawer", "pull out", "pull-out"),
        "smart": SMART_KEYWORDS,
        "control_panel": (
            "top control",
            "front control",
            "top",
            "front",
            "hidden controls",
            "visible controls",
            "panel location",
        ),
        "handle": (
            "pocket handle",
            "pocket-handle",
            "bar handle",
            "bar-handle",
            "handle type",
            "handle style",
            "recessed handle",
            "integrated handle",
        ),
    },
    "ovens": {
        "wall_oven": ("wall oven", "wall-oven", "built in oven", "built-in oven"),
        "double_oven": ("double oven", "double-oven", "dual oven"),
        "gas": GAS_KEYWORDS,
        "electric": ("electric",),
    },
    "stoves": {
        "freestanding": ("freestanding", "free standing", "standalone"),
        "slide_in": ("slide-in", "slide in"),
        "drop_in": ("drop-in", "drop in"),
        "gas": GAS_KEYWORDS + ("burner",),
        "electric": ("electric", "ceramic", "coil", "coil top"),
        "induction": ("induction",),
    },
    "range_hoods": {
        "under_cabinet": ("under cabinet", "under-cabinet", "mounted"),
        "over_the_range": ("over the range", "over-the-range", "otr"),
        "wall_mounted": ("wall mount", "wall-mounted", "chimney style"),
        "island": ("island", "ceiling mounted", "ceiling-mounted"),
        "downdraft": ("downdraft", "down draft", "retractable"),
        "convertible": ("convertible", "ductless", "recirculating", "ducted"),
    },
    "laundry_centers": {
        "electric": ("electric dryer", "electric"),
        "gas": ("gas dryer", "gas"),
        "compact": ("compact", "apartment size", "space saving"),
        "smart": ("smart", "wifi", "connected"),
    },
    "microwaves": {
        "countertop": ("countertop", "counter top", "portable"),
        "built_in": ("built in", "built-in", "wall mounted"),
        "over_the_range": ("over the range", "over-the-range", "otr", "microwave hood", "hood microwave"),
        "drawer": ("drawer", "pull out", "pull-out"),
        "smart": SMART_KEYWORDS,
        "convertible": ("convertible", "ducted", "ductless"),
    },
    "cooktops": {
        "gas": GAS_KEYWORDS + ("burner",),
        "electric": ("electric", "radiant", "ceramic", "coil", "coil top", "element"),
        "induction": ("induction", "magnetic"),
        "modular": ("modular", "convertible"),
        "built_in": ("built in", "built-in", "drop in"),
    },
}


@dataclass(frozen=True)
class DetectedCategory:
    category_id: str
    is_primary: bool
    name: str = ""


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Anchored at a word start only, so plurals still match.
    return re.compile(rf"(?<![a-z0-9]){re.escape(keyword.lower())}")


def _any_keyword(keywords: Iterable[str], *texts: str) -> bool:
    return any(_keyword_pattern(keyword).search(text) for keyword in keywords for text in texts if text)


def _best_keyword_category(*texts: str) -> Optional[str]:
    """Category with the longest matching keyword; earlier categories win ties."""
    best: Optional[str] = None
    best_length = 0
    for category, keywords in MAIN_CATEGORIES.items():
        for keyword in keywords:
            if len(keyword) > best_length and _any_keyword((keyword,), *texts):
                best, best_length = category, len(keyword)
    return best


def detect_main_category(product_name: str, url: str, llm_appliance_type: Optional[str] = None) -> Optional[str]:
    llm_type = str(llm_appliance_type or "").strip().lower()
    if llm_type:
        compact = llm_type.replace(" ", "").replace("_", "")
        for category in MAIN_CATEGORIES:
            label = category.replace("_", " ")
            singular = label[:-1] if label.endswith("s") else label
            if compact in {label.replace(" ", ""), singular.replace(" ", "")} or singular in llm_type:
                return category
        category = _best_keyword_category(llm_type)
        if category:
            return category

    # "Range Hood" must land in range_hoods rather than stoves via "range".
    return _best_keyword_category(str(product_name or "").lower(), str(url or "").lower())


def detect_subcategory(
    main_category: str,
    product_name: str,
    url: str,
    llm_appliance_type: Optional[str] = None,
) -> Optional[str]:
    texts = (str(product_name or "").lower(), str(url or "").lower(), str(llm_appliance_type or "").lower())
    for subcategory, keywords in SUBCATEGORIES.get(main_category, {}).items():
        if _any_keyword(keywords, *texts):
            return subcategory
    return None


def category_slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(name or "").lower()).strip("_")


def display_name_for(name: str) -> str:
    return name.replace("_", " ").title()


class CategoryValidator:
    """Checks that a candidate category returns real products at the retailers."""

    def __init__(self, client: OxylabsClient, *, min_results: int = 2, timeout_seconds: float = 30.0) -> None:
        self.client = client
        self.min_results = min_results
        self.timeout_seconds = timeout_seconds

    def validate_category_exists(self, category_name: str) -> bool:
        if not self.client.configured:
            LOGGER.warning("Oxylabs credentials not found, skipping category validation")
            return False

        for retailer in RETAILERS:
            try:
                rows = self.client.universal_search(retailer.domain, category_name, timeout=self.timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Category validation failed | domain=%s error=%s", retailer.domain, exc)
                continue

            if len(rows) >= self.min_results:
                LOGGER.info(
                    "Category validated | name=%s domain=%s results=%s",
                    category_name,
                    retailer.domain,
                    len(rows),
                )
                return True
            LOGGER.info("Category not validated | name=%s domain=%s results=%s", category_name, retailer.domain, len(rows))

        LOGGER.info("Category '%s' seems invalid: no products found", category_name)
        return False

    def extract_valid_category(self, user_query: str) -> Optional[str]:
        query = str(user_query or "").strip()
        if not query:
            return None
        if self.validate_category_exists(query):
            return query

        terms = query.split()
        for length in range(len(terms) - 1, 0, -1):
            for start in range(0, len(terms) - length + 1):
                candidate = " ".join(terms[start : start + length])
                if self.validate_category_exists(candidate):
                    return candidate
        return None


class CategoryClassifier:
    """Keyword classification of products into the category taxonomy."""

    def __init__(self, repository, validator: Optional[CategoryValidator] = None) -> None:  # noqa: ANN001
        self.repository = repository
        self.validator = validator

    def detect_product_categories(
        self,
        product: Dict[str, Any],
        url: str,
        llm_appliance_type: Optional[str] = None,
    ) -> list[DetectedCategory]:
        name = str(product.get("name") or product.get("product_name") or "")
        main_category = detect_main_category(name, url, llm_appliance_type)

        if main_category is None:
            return self._detect_validated_category(llm_appliance_type)

        LOGGER.info("Detected main category | category=%s url=%s", main_category, url)
        main_id = self._ensure_category(main_category, parent_id=None, level=1)
        if not main_id:
            return []

        subcategory = detect_subcategory(main_category, name, url, llm_appliance_type)
        if subcategory:
            sub_id = self._ensure_category(subcategory, parent_id=main_id, level=2)
            if sub_id:
                LOGGER.info("Detected subcategory | category=%s parent=%s", subcategory, main_category)
                return [DetectedCategory(category_id=sub_id, is_primary=True, name=subcategory)]

        return [DetectedCategory(category_id=main_id, is_primary=True, name=main_category)]

    def _detect_validated_category(self, llm_appliance_type: Optional[str]) -> list[DetectedCategory]:
        llm_type = str(llm_appliance_type or "").strip()
        if not llm_type or self.validator is None:
            return []

        validated = self.validator.extract_valid_category(llm_type)
        slug = category_slug(validated or "")
        if not slug:
            return []

        category_id = self._ensure_category(slug, parent_id=None, level=1)
        if not category_id:
            return []
        LOGGER.info("Created validated category | category=%s source=%s", slug, llm_type)
        return [DetectedCategory(category_id=category_id, is_primary=True, name=slug)]

    def _ensure_category(self, name: str, *, parent_id: Optional[str], level: int) -> Optional[str]:
        category_id = self.repository.get_category_id(name, parent_id)
        if category_id:
            return category_id
        return self.repository.create_category(
            CategoryRecord(name=name, display_name=display_name_for(name), parent_id=parent_id, level=level)
        )

    def apply_categories_to_product(self, product_id: str, categories: list[DetectedCategory]) -> int:
        if not categories:
            LOGGER.info("No categories detected | product_id=%s", product_id)
            return 0

        applied = 0
        for category in sorted(categories, key=lambda item: not item.is_primary):
            try:
                self.repository.add_product_to_category(product_id, category.category_id, category.is_primary)
                applied += 1
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "Failed to add product to category | product_id=%s category_id=%s error=%s",
                    product_id,
                    category.category_id,
                    exc,
                )
        return applied


__all__ = [
    "CategoryClassifier",
    "CategoryValidator",
    "DetectedCategory",
    "MAIN_CATEGORIES",
    "SUBCATEGORIES",
    "category_slug",
    "detect_main_category",
    "detect_subcategory",
]

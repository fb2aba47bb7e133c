from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional

import google.generativeai as genai
import requests

from resilience import RemoteServiceError, retry_with_backoff
from tiers import FREE, MIDDLE, TOP, get_tier

LOGGER = logging.getLogger(__name__)
JSON_RE = re.compile(r"\{.*\}", re.DOTALL)

DEFAULT_GEMINI_MODEL = "models/gemini-2.0-flash"
DEFAULT_GEMINI_BACKUP_MODEL = "models/gemini-1.5-flash"
DEFAULT_OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_MODEL = "meta-llama/llama-3.3-70b-instruct:free"
DEFAULT_OPENROUTER_BACKUP_MODEL = "mistralai/mistral-7b-instruct:free"
HEURISTIC_MODEL = "heuristic-keywords-v1"

APPLIANCE_TYPES = (
    "refrigerator",
    "washer",
    "dryer",
    "dishwasher",
    "oven",
    "microwave",
    "stove",
    "freezer",
    "range",
    "cooktop",
    "rangehood",
    "air conditioner",
    "dehumidifier",
    "vacuum",
    "wine cooler",
    "beverage center",
    "ice maker",
    "trash compactor",
    "garbage disposal",
)

TYPE_ALIASES = {
    "fridge": "refrigerator",
    "refridgerator": "refrigerator",
    "frig": "refrigerator",
    "washing machine": "washer",
    "clothes washer": "washer",
    "laundry machine": "washer",
    "clothes dryer": "dryer",
    "drying machine": "dryer",
    "tumble dryer": "dryer",
    "dish washer": "dishwasher",
    "dish-washer": "dishwasher",
    "dishwashing machine": "dishwasher",
    "stove top": "stove",
    "cooker": "stove",
    "microwave oven": "microwave",
    "micro": "microwave",
    "cooking range": "range",
    "kitchen range": "range",
    "exhaust hood": "rangehood",
    "vent hood": "rangehood",
    "range hood": "rangehood",
    "hood": "rangehood",
    "ac": "air conditioner",
    "a/c": "air conditioner",
    "air con": "air conditioner",
    "cooling unit": "air conditioner",
    "dehumid": "dehumidifier",
    "humidity remover": "dehumidifier",
    "vac": "vacuum",
    "vacuum cleaner": "vacuum",
    "hoover": "vacuum",
    "wine fridge": "wine cooler",
    "wine refrigerator": "wine cooler",
    "drink cooler": "beverage center",
    "drink fridge": "beverage center",
    "ice machine": "ice maker",
    "trash crusher": "trash compactor",
    "waste compactor": "trash compactor",
    "food disposal": "garbage disposal",
    "waste disposal": "garbage disposal",
    "disposal": "garbage disposal",
}
TYPE_ALIASES.update({name: name for name in APPLIANCE_TYPES})

BRAND_ALIASES = {
    "general electric": "GE",
    "general-electric": "GE",
    "ge": "GE",
    "lg electronics": "LG",
    "lg": "LG",
    "whirlpool": "Whirlpool",
    "samsung": "Samsung",
    "frigidaire": "Frigidaire",
    "frigidair": "Frigidaire",
    "maytag": "Maytag",
    "kitchenaid": "KitchenAid",
    "kitchen aid": "KitchenAid",
    "bosch": "Bosch",
    "miele": "Miele",
    "viking": "Viking",
    "sub-zero": "Sub-Zero",
    "subzero": "Sub-Zero",
    "sub zero": "Sub-Zero",
    "wolf": "Wolf",
    "thermador": "Thermador",
    "electrolux": "Electrolux",
    "jennair": "JennAir",
    "jenn-air": "JennAir",
    "jenn air": "JennAir",
    "ge cafe": "Café",
    "cafe": "Café",
    "café": "Café",
    "fisher & paykel": "Fisher & Paykel",
    "fisher and paykel": "Fisher & Paykel",
    "smeg": "Smeg",
    "haier": "Haier",
    "amana": "Amana",
    "bertazzoni": "Bertazzoni",
    "speed queen": "Speed Queen",
    "dacor": "Dacor",
    "ge monogram": "Monogram",
    "monogram": "Monogram",
    "liebherr": "Liebherr",
}

FEATURE_TERMS = (
    "black stainless",
    "stainless steel",
    "stainless",
    "panel ready",
    "french door",
    "side by side",
    "top freezer",
    "bottom freezer",
    "counter depth",
    "front load",
    "top load",
    "stackable",
    "portable",
    "built-in",
    "freestanding",
    "slide-in",
    "energy star",
    "energy efficient",
    "smart",
    "wifi",
    "ice maker",
    "water dispenser",
    "steam",
    "quiet",
    "third rack",
    "convection",
    "air fry",
    "induction",
    "gas",
    "electric",
    "dual fuel",
    "self-cleaning",
    "compact",
    "large capacity",
)

_AMOUNT = r"\$?\s*(\d[\d,]*(?:\.\d+)?)\s*(k\b)?"
PRICE_BETWEEN_RE = re.compile(rf"between\s+{_AMOUNT}\s+(?:and|to)\s+{_AMOUNT}", re.IGNORECASE)
PRICE_DASH_RE = re.compile(r"\$\s*(\d[\d,]*(?:\.\d+)?)\s*(k\b)?\s*(?:-|to)\s*\$?\s*(\d[\d,]*(?:\.\d+)?)\s*(k\b)?", re.IGNORECASE)
PRICE_UNDER_RE = re.compile(
    rf"(?:under|less than|below|no more than|up to|at most|max(?:imum)?)\s+{_AMOUNT}", re.IGNORECASE
)
PRICE_OVER_RE = re.compile(rf"(?:over|more than|above|at least|min(?:imum)?)\s+{_AMOUNT}", re.IGNORECASE)
PRICE_EXACT_RE = re.compile(r"\$\s*(\d[\d,]*(?:\.\d+)?)\s*(k\b)?", re.IGNORECASE)
BUDGET_TERMS = ("cheap", "inexpensive", "affordable", "budget")
MID_RANGE_TERMS = ("mid-range", "mid range", "moderately priced")
PREMIUM_TERMS = ("luxury", "high end", "high-end", "premium", "professional grade")


@dataclass
class QueryInterpretation:
    appliance_type: str = ""
    features: list[str] = field(default_factory=list)
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    brands: list[str] = field(default_factory=list)
    recommended_products: list[Dict[str, Any]] = field(default_factory=list)
    comparison_table: Optional[Dict[str, Any]] = None
    specifications_sheet_url: Optional[str] = None
    user_manual_url: Optional[str] = None
    installation_instructions_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "QueryInterpretation":
        def pick(*keys: str) -> Any:
            for key in keys:
                if payload.get(key) not in (None, ""):
                    return payload.get(key)
            return None

        price_range = pick("price_range", "priceRange")
        price_range = price_range if isinstance(price_range, dict) else {}
        recommended = pick("recommended_products", "recommendedProducts")
        comparison = pick("comparison_table", "comparisonTable")

        return cls(
            appliance_type=str(pick("appliance_type", "applianceType") or "").strip().lower(),
            features=_string_list(pick("features")),
            price_min=_coerce_price(price_range.get("min")),
            price_max=_coerce_price(price_range.get("max")),
            brands=_string_list(pick("brands")),
            recommended_products=[item for item in recommended or [] if isinstance(item, dict)]
            if isinstance(recommended, list)
            else [],
            comparison_table=comparison if isinstance(comparison, dict) else None,
            specifications_sheet_url=_optional_str(pick("specifications_sheet_url", "specificationsSheetURL")),
            user_manual_url=_optional_str(pick("user_manual_url", "userManualURL")),
            installation_instructions_url=_optional_str(
                pick("installation_instructions_url", "installationInstructionsURL")
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["price_range"] = {"min": payload.pop("price_min"), "max": payload.pop("price_max")}
        return payload


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _optional_str(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def _coerce_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(",", "").replace("$", "").strip())
    except ValueError:
        return None


def _amount(number: str, thousands: Optional[str]) -> float:
    value = float(number.replace(",", ""))
    return value * 1000 if thousands else value


def _contains_term(text: str, term: str) -> bool:
    return re.search(rf"(?<![\w]){re.escape(term)}(?![\w])", text) is not None


def parse_price_range(query: str) -> tuple[Optional[float], Optional[float]]:
    text = str(query or "").lower()

    for pattern in (PRICE_BETWEEN_RE, PRICE_DASH_RE):
        match = pattern.search(text)
        if match:
            low = _amount(match.group(1), match.group(2))
            high = _amount(match.group(3), match.group(4))
            return min(low, high), max(low, high)

    match = PRICE_UNDER_RE.search(text)
    if match:
        return None, _amount(match.group(1), match.group(2))

    match = PRICE_OVER_RE.search(text)
    if match:
        return _amount(match.group(1), match.group(2)), None

    match = PRICE_EXACT_RE.search(text)
    if match:
        value = _amount(match.group(1), match.group(2))
        return value, value

    if any(_contains_term(text, term) for term in MID_RANGE_TERMS):
        return 500.0, 1500.0
    if any(_contains_term(text, term) for term in PREMIUM_TERMS):
        return 1500.0, None
    if any(_contains_term(text, term) for term in BUDGET_TERMS):
        return None, 500.0
    return None, None


def heuristic_interpretation(query: str) -> QueryInterpretation:
    text = str(query or "").lower()

    appliance_type = ""
    for alias in sorted(TYPE_ALIASES, key=len, reverse=True):
        if _contains_term(text, alias):
            appliance_type = TYPE_ALIASES[alias]
            break

    brands: list[str] = []
    for alias in sorted(BRAND_ALIASES, key=len, reverse=True):
        brand = BRAND_ALIASES[alias]
        if brand not in brands and _contains_term(text, alias):
            brands.append(brand)

    features: list[str] = []
    for term in FEATURE_TERMS:
        if _contains_term(text, term) and not any(term in found for found in features):
            features.append(term)

    price_min, price_max = parse_price_range(text)
    return QueryInterpretation(
        appliance_type=appliance_type,
        features=features,
        price_min=price_min,
        price_max=price_max,
        brands=brands,
    )


def build_prompt(query: str, tier: str = FREE, past_queries: Optional[Iterable[str]] = None) -> str:
    tier_config = get_tier(tier)
    types = ", ".join(f'"{name}"' for name in APPLIANCE_TYPES)
    prompt = (
        "You translate requests for home appliances into structured data. The request may contain "
        "misspellings or informal language; interpret vague requests generously.\n\n"
        "Return a JSON object with these keys:\n"
        f"appliance_type (string): normalized to one of [{types}]. "
        'Map variants such as "fridge" -> "refrigerator", "washing machine" -> "washer", '
        '"hood" -> "rangehood", "AC" -> "air conditioner", "hoover" -> "vacuum".\n'
        "features (array of strings): features mentioned or clearly implied, normalized "
        '(finish such as "stainless steel", configuration such as "french door" or "front load", '
        'size, energy rating, smart features, cooking features such as "convection" or "induction").\n'
        "price_range (object): {\"min\": number|null, \"max\": number|null}. "
        '"under $1000" -> max 1000; "over $500" -> min 500; "between $500 and $1000" -> both; '
        '"cheap"/"budget" -> max 500; "mid-range" -> 500-1500; "premium"/"luxury" -> min 1500; '
        "no price mentioned -> both null.\n"
        "brands (array of strings): brand names normalized "
        '(e.g. "General Electric" -> "GE", "Kitchen Aid" -> "KitchenAid", "Sub Zero" -> "Sub-Zero").'
    )

    if tier_config.key in {MIDDLE, TOP}:
        prompt += (
            "\n\nrecommended_products (array of objects): products matching the request, each with "
            "name, features, estimated_price, retailers and product_url (a direct product URL at Best Buy, "
            f"Home Depot or Lowes). Provide up to {tier_config.max_recommendations} products."
        )
        if tier_config.comparison_feature:
            prompt += (
                "\n\ncomparison_table (object): when the request is ambiguous between appliance types, "
                '{"headers": [...], "rows": [[...], ...]} comparing them.'
            )
        if tier_config.specifications_sheet:
            prompt += (
                "\n\nspecifications_sheet_url (string): a realistic retailer or manufacturer URL with "
                "specifications for this kind of appliance."
            )

    if tier_config.key == TOP:
        prompt += (
            "\n\nuser_manual_url (string): a realistic manufacturer support URL for the user manual."
            "\n\ninstallation_instructions_url (string): a realistic manufacturer support URL for "
            "installation instructions."
        )
        history = [str(item).strip() for item in past_queries or [] if str(item or "").strip()]
        if tier_config.personalized_recommendations and history:
            prompt += (
                "\n\nTailor the recommendations to the user's past queries:\n" + "\n".join(history)
            )

    prompt += f"\n\nReturn only the JSON object, no other text.\n\nUser Input:\n{query}"
    return prompt


class ApplianceQueryInterpreter:
    """Turns free-text appliance requests into search parameters using an LLM."""

    def __init__(
        self,
        *,
        gemini_api_key: Optional[str] = None,
        gemini_model: Optional[str] = None,
        gemini_backup_model: Optional[str] = None,
        openrouter_api_key: Optional[str] = None,
        retries: int = 3,
        initial_delay: float = 2.0,
    ) -> None:
        self.retries = retries
        self.initial_delay = initial_delay
        self.gemini_api_key = gemini_api_key or os.getenv("GEMINI_API_KEY")
        self.gemini_model = self._normalize_model_name(
            gemini_model or os.getenv("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL
        )
        self.gemini_backup_model = self._normalize_model_name(
            gemini_backup_model or os.getenv("GEMINI_BACKUP_MODEL") or DEFAULT_GEMINI_BACKUP_MODEL
        )
        self.openrouter_api_key = openrouter_api_key or os.getenv("OPENROUTER_API_KEY")
        self.openrouter_api_base = (os.getenv("OPENROUTER_API_BASE") or DEFAULT_OPENROUTER_API_BASE).rstrip("/")
        self.openrouter_model = (os.getenv("OPENROUTER_MODEL") or DEFAULT_OPENROUTER_MODEL).strip()
        self.openrouter_backup_model = (
            os.getenv("OPENROUTER_BACKUP_MODEL") or DEFAULT_OPENROUTER_BACKUP_MODEL
        ).strip()

        if self.gemini_api_key:
            genai.configure(api_key=self.gemini_api_key)
            self.runtime = {"engine": "gemini", "model": self.gemini_model, "mode": "primary"}
        elif self.openrouter_api_key:
            LOGGER.warning("Gemini API key missing. Using OpenRouter.")
            self.runtime = {"engine": "openrouter", "model": self.openrouter_model, "mode": "primary"}
        else:
            LOGGER.warning("No LLM API key configured. Using keyword heuristic.")
            self.runtime = {"engine": "heuristic", "model": HEURISTIC_MODEL, "mode": "fallback_no_llm_key"}

    @staticmethod
    def _normalize_model_name(model_name: Optional[str]) -> str:
        raw = str(model_name or "").strip()
        if not raw:
            return DEFAULT_GEMINI_MODEL
        return raw if raw.startswith("models/") else f"models/{raw}"

    @property
    def engine(self) -> str:
        return str(self.runtime.get("engine"))

    @property
    def backup_model(self) -> Optional[str]:
        if self.engine == "gemini":
            return self.gemini_backup_model
        if self.engine == "openrouter":
            return self.openrouter_backup_model
        return None

    def interpret(
        self,
        query: str,
        tier: str = FREE,
        past_queries: Optional[Iterable[str]] = None,
    ) -> QueryInterpretation:
        if not str(query or "").strip():
            raise ValueError("query is required")

        if self.engine == "heuristic":
            return heuristic_interpretation(query)

        prompt = build_prompt(query, tier, past_queries)
        primary_model = self.gemini_model if self.engine == "gemini" else self.openrouter_model
        self.runtime.update({"model": primary_model, "mode": "primary"})

        def _call(model_override: Optional[str]) -> str:
            if model_override:
                self.runtime.update({"model": model_override, "mode": "backup"})
            return self._generate(prompt, model_override)

        text = retry_with_backoff(
            _call,
            operation_name=f"{self.engine} interpretation",
            retries=self.retries,
            initial_delay=self.initial_delay,
            backup_backend=self.backup_model,
        )
        payload = self._extract_json(text)
        interpretation = QueryInterpretation.from_payload(payload)
        LOGGER.info(
            "Query interpreted | engine=%s model=%s appliance_type=%s features=%s brands=%s",
            self.engine,
            self.runtime.get("model"),
            interpretation.appliance_type or "-",
            len(interpretation.features),
            len(interpretation.brands),
        )
        return interpretation

    def answer_follow_up(
        self,
        original_query: str,
        appliance_details: Optional[Dict[str, Any]],
        question: str,
    ) -> QueryInterpretation:
        if not str(question or "").strip():
            raise ValueError("follow-up question is required")
        if not appliance_details and not str(original_query or "").strip():
            raise ValueError("appliance details or original query are required")

        follow_up = (
            f"Based on this appliance: {json.dumps(appliance_details or {}, default=str)},\n"
            f"Original query: {original_query},\n"
            f"Answer this follow-up question: {question}\n\n"
            "Be detailed and specific to the appliance."
        )
        return self.interpret(follow_up, TOP)

    def _generate(self, prompt: str, model_override: Optional[str] = None) -> str:
        if self.engine == "gemini":
            return self._gemini_generate(prompt, model_override or self.gemini_model)
        return self._openrouter_generate(prompt, model_override or self.openrouter_model)

    def _gemini_generate(self, prompt: str, model_name: str) -> str:
        model = genai.GenerativeModel(model_name)
        response = model.generate_content(
            prompt,
            generation_config={
                "temperature": 0.0,
                "max_output_tokens": 2000,
                "response_mime_type": "application/json",
            },
        )
        return (response.text or "").strip()

    def _openrouter_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.openrouter_api_key}",
            "X-Title": "Appliance Finder",
            "Content-Type": "application/json",
        }

    def _openrouter_generate(self, prompt: str, model_id: str) -> str:
        response = requests.post(
            f"{self.openrouter_api_base}/chat/completions",
            headers=self._openrouter_headers(),
            json={
                "model": model_id,
                "messages": [
                    {
                        "role": "system",
                        "content": "You extract structured information from appliance queries. Respond with only JSON.",
                    },
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": 2000,
                "temperature": 0,
            },
            timeout=45,
        )
        if response.status_code >= 400:
            raise RemoteServiceError(
                f"OpenRouter error {response.status_code}: {response.text[:260]}",
                status_code=response.status_code,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise RuntimeError("OpenRouter invalid response payload")

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise RuntimeError("OpenRouter response missing choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise RuntimeError("OpenRouter response missing message")
        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            chunks = [str(part.get("text")) for part in content if isinstance(part, dict) and part.get("text")]
            if chunks:
                return " ".join(chunks).strip()
        raise RuntimeError("OpenRouter response missing text content")

    @staticmethod
    def _extract_json(raw_text: str) -> Dict[str, Any]:
        text = str(raw_text or "").strip()
        if not text:
            return {}

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            match = JSON_RE.search(text)
            if not match:
                raise
            payload = json.loads(match.group(0))
        if not isinstance(payload, dict):
            raise ValueError("LLM response is not a JSON object")
        return payload


__all__ = [
    "APPLIANCE_TYPES",
    "ApplianceQueryInterpreter",
    "QueryInterpretation",
    "build_prompt",
    "heuristic_interpretation",
    "parse_price_range",
]

"""Intent resolution: AI classification first, keyword rules as the fallback.

Flow:
    1. AI attempt (only when a classifier is injected): the classification service
       returns JSON which is shape-validated by ClassifierResult before use.
    2. Rule fallback: ordered keyword tables from the "intent-keywords" bundle and
       the vehicle tables under "vehicle-specs"._metadata.
    3. Enhancement pass: runs on every intent; narrow keyword categories
       (authentication, price, purchase, cooperation) override the type.

The resolver never raises; the worst case is a general_inquiry intent.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from .certification import detect_certifications
from .config import MAX_SEARCH_LIMIT
from .errors import MalformedUpstreamResultError, UpstreamUnavailableError
from .gemini_client import CLASSIFIER_MAX_TOKENS, CLASSIFIER_TEMPERATURE, GeminiClient
from .intent import Intent, IntentType, MatchMethod, SearchTask
from .knowledge.knowledge_store import KnowledgeStore
from .motorcycle_rules import requested_sub_type
from .models import ClassifierResult, ClassifierVehicle
from .prompt_loader import load_prompt, render_prompt
from .utils import (
    VISCOSITY_RE,
    contains_any,
    normalize_key,
    normalize_text,
    safe_json_loads,
    truncate,
)

logger = logging.getLogger("lubebot.intent")

DEFAULT_INTENT_ORDER = [
    IntentType.AUTHENTICATION.value,
    IntentType.PRICE_INQUIRY.value,
    IntentType.PURCHASE_INQUIRY.value,
    IntentType.COOPERATION_INQUIRY.value,
]
DEFAULT_INTENT_KEYWORDS = {
    "authentication": {"template": "authentication", "keywords": ["真假", "正品", "假貨", "仿冒", "防偽", "fake"]},
    "price_inquiry": {"template": "price_inquiry", "keywords": ["多少錢", "價格", "售價", "how much", "price"]},
    "purchase_inquiry": {"template": "purchase_inquiry", "keywords": ["哪裡買", "經銷商", "門市", "where to buy"]},
    "cooperation_inquiry": {"template": "cooperation_inquiry", "keywords": ["合作", "代理", "批發", "wholesale"]},
}
DEFAULT_CATEGORY = "oil"
PRODUCT_TEMPLATE = "product_recommendation"
EV_TEMPLATE = "ev_notice"


class ClassificationService(Protocol):
    async def classify(self, message: str, history: List[dict]) -> Dict[str, Any]:
        ...


class IntentClassifier:
    """Classification service backed by Gemini and the intent_analysis prompt."""

    def __init__(
        self,
        gemini: GeminiClient,
        prompt_path: Path,
        history_turns: int = 4,
        turn_chars: int = 100,
    ) -> None:
        self._gemini = gemini
        self._prompt_path = prompt_path
        self._history_turns = history_turns
        self._turn_chars = turn_chars

    async def classify(self, message: str, history: List[dict]) -> Dict[str, Any]:
        """Purpose: Ask the LLM for a structured reading of the message.
        Inputs/Outputs: Message plus prior turns; returns the parsed JSON dict.
        Side Effects / State: One LLM call (with retries inside GeminiClient).
        Dependencies: load_prompt/render_prompt, GeminiClient.generate_text, safe_json_loads.
        Failure Modes: UpstreamUnavailableError on timeout/transport failure;
            MalformedUpstreamResultError when no JSON object comes back.
        If Removed: The resolver always uses keyword rules.
        Testing Notes: Stub GeminiClient.generate_text with fenced JSON.
        """
        # Render the template with the truncated history tail.
        prompt = render_prompt(
            load_prompt(self._prompt_path),
            history=format_history(history, self._history_turns, self._turn_chars),
            message=message,
        )
        raw = await self._gemini.generate_text(
            prompt,
            temperature=CLASSIFIER_TEMPERATURE,
            max_output_tokens=CLASSIFIER_MAX_TOKENS,
        )
        payload = safe_json_loads(raw)
        if payload is None:
            raise MalformedUpstreamResultError("classifier returned no JSON object")
        return payload


def format_history(history: List[dict], max_turns: int, turn_chars: int) -> str:
    lines = []
    turns = [turn for turn in (history or []) if isinstance(turn, dict)]
    for turn in turns[-max_turns:] if max_turns > 0 else []:
        role = "user" if turn.get("role") == "user" else "assistant"
        text = str(turn.get("content") or "").strip().replace("\n", " ")
        if text:
            lines.append(f"{role}: {truncate(text, turn_chars)}")
    return "\n".join(lines) or "(none)"


def parse_classifier_result(payload: Any) -> ClassifierResult:
    """Purpose: Validate untrusted classifier output at the service boundary.
    Inputs/Outputs: Decoded JSON payload; returns a ClassifierResult.
    Side Effects / State: None.
    Dependencies: pydantic ClassifierResult.
    Failure Modes: Raises MalformedUpstreamResultError when the payload is not an
        object, `vehicles` is missing or not a list, or neither a vehicle nor a
        product category is present.
    If Removed: Garbage classifier output would leak into search and prompts.
    Testing Notes: {"vehicles": []} alone is invalid; add productCategory to pass.
    """
    # Pydantic handles types; usability is a separate business rule.
    if not isinstance(payload, dict):
        raise MalformedUpstreamResultError("classifier payload is not an object")
    try:
        result = ClassifierResult.model_validate(payload)
    except ValidationError as exc:
        raise MalformedUpstreamResultError(f"classifier payload invalid: {exc.error_count()} errors") from exc
    if not result.is_usable():
        raise MalformedUpstreamResultError("classifier found neither vehicles nor category")
    return result


class IntentResolver:
    """Resolve a user message into an Intent; collaborators are injected."""

    def __init__(
        self,
        store: KnowledgeStore,
        classifier: Optional[ClassificationService] = None,
        search_limit: int = 20,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._search_limit = search_limit

    async def resolve(self, message: str, history: Optional[List[dict]] = None) -> Intent:
        """Purpose: Classify one message into a structured, immutable Intent.
        Inputs/Outputs: Message and optional history; returns an Intent, never None.
        Side Effects / State: May call the classification service; logs the path used.
        Dependencies: ClassificationService, parse_classifier_result, keyword tables.
        Failure Modes: Classifier outages and malformed output fall back to rules;
            any rule failure yields a bare general_inquiry intent.
        If Removed: Nothing downstream knows what the user wants.
        Testing Notes: Run with classifier=None, a failing classifier, and an
            invalid payload; all must return an IntentType member.
        """
        # Stage 1: AI attempt when a classifier is configured.
        intent: Optional[Intent] = None
        if self._classifier is not None:
            try:
                payload = await self._classifier.classify(message, history or [])
                intent = self.convert_ai_result(parse_classifier_result(payload), message)
            except (UpstreamUnavailableError, MalformedUpstreamResultError) as exc:
                logger.info("intent ai_failed fallback=rules reason=%s", exc)
            except Exception as exc:
                logger.warning("intent ai_error fallback=rules error=%r", exc)

        # Stage 2: keyword rules.
        if intent is None:
            try:
                intent = self.resolve_with_rules(message)
            except Exception as exc:
                logger.error("intent rules_error error=%r", exc)
                return Intent(type=IntentType.GENERAL_INQUIRY, needs_product_recommendation=False)

        # Stage 3: motorcycle sub-type from the model lists, then enhancement.
        intent = self.infer_sub_type(intent)
        intent = self.enhance(intent, message)
        logger.info(
            "intent resolved source=%s type=%s vehicle=%s sub_type=%s category=%s",
            "ai" if intent.used_ai_classifier else "rules",
            intent.type.value,
            intent.vehicle_type,
            intent.vehicle_sub_type,
            intent.product_category,
        )
        return intent

    # -- AI path --------------------------------------------------------------

    def convert_ai_result(self, result: ClassifierResult, message: str) -> Intent:
        """Purpose: Map a validated classifier result onto the Intent record.
        Inputs/Outputs: ClassifierResult and the raw message; returns an Intent.
        Side Effects / State: None.
        Dependencies: alias tables from "intent-keywords"; special-scenario detection.
        Failure Modes: Unknown aliases pass through lowercased.
        If Removed: AI classifications cannot reach search and prompts.
        Testing Notes: A 摩托車 + 速克達 vehicle yields motorcycle/scooter.
        """
        # The first vehicle drives everything; others are kept by name only.
        tables = self._intent_tables()
        vehicle = result.vehicles[0] if result.vehicles else ClassifierVehicle()
        vehicle_type = _alias(tables.get("vehicle_aliases"), vehicle.vehicleType)
        sub_type = _alias(tables.get("sub_type_aliases"), vehicle.vehicleSubType) or _alias(
            tables.get("sub_type_aliases"), vehicle.vehicleType
        )
        if sub_type and vehicle_type is None:
            vehicle_type = "motorcycle"
        is_motorcycle = vehicle_type == "motorcycle"
        category = _alias(tables.get("category_aliases"), result.productCategory) or DEFAULT_CATEGORY

        brand = self._canonical_brand(vehicle.brand) or self._detect_brand(
            " ".join(part for part in (vehicle.vehicleName or "", message) if part)
        )
        is_ev = bool(vehicle.isElectricVehicle)
        special = self._special_scenario(
            " ".join(part for part in (vehicle.vehicleName or "", vehicle.brand or "", message) if part),
            vehicle_type,
            is_ev,
        )

        wants_products = bool(result.needsProductRecommendation)
        intent_type = IntentType.PRODUCT_RECOMMENDATION if wants_products else IntentType.GENERAL_INQUIRY
        certifications = _dedupe([*vehicle.certifications, *result.certifications])
        templates = [PRODUCT_TEMPLATE] if wants_products else []
        if is_ev:
            templates.append(EV_TEMPLATE)

        return Intent(
            type=intent_type,
            product_category=category,
            vehicle_type=vehicle_type,
            vehicle_sub_type=sub_type,
            vehicle_brand=brand,
            vehicle_model=(vehicle.vehicleName or "").strip() or None,
            certifications=tuple(certifications),
            viscosity=_normalize_viscosity(vehicle.viscosity),
            is_motorcycle=is_motorcycle,
            is_electric_vehicle=is_ev,
            special_scenario=special,
            needs_templates=tuple(templates),
            needs_specs=category == "oil" and vehicle_type == "car",
            needs_symptoms=category == "additive",
            needs_product_recommendation=wants_products,
            needs_more_info=tuple(_dedupe(result.needsMoreInfo)),
            search_keywords=tuple(_dedupe(result.searchKeywords)),
            search_tasks=tuple(self._search_tasks(result)),
            recommended_part_number=(vehicle.recommendedSKU or "").strip().upper() or None,
            prefer_full_synthetic=result.preferFullSynthetic or self._wants_full_synthetic(message),
            usage_scenario=result.usageScenario,
            additional_vehicles=tuple(
                (extra.vehicleName or "").strip() for extra in result.vehicles[1:] if extra.vehicleName
            ),
            used_ai_classifier=True,
            raw_analysis=result.model_dump(),
        )

    def _search_tasks(self, result: ClassifierResult) -> List[SearchTask]:
        tasks: List[SearchTask] = []
        for query in result.wixQueries:
            value = (query.value or "").strip()
            if not query.field or not value:
                continue
            method = MatchMethod.EQUALS if normalize_key(query.method) in ("eq", "equals") else MatchMethod.CONTAINS
            limit = query.limit if query.limit and query.limit > 0 else self._search_limit
            tasks.append(
                SearchTask(
                    field=query.field.strip(),
                    value=value,
                    match_method=method,
                    result_limit=min(limit, MAX_SEARCH_LIMIT),
                )
            )
        return tasks

    # -- Rule path ------------------------------------------------------------

    def resolve_with_rules(self, message: str) -> Intent:
        """Purpose: Classify a message from keyword tables alone.
        Inputs/Outputs: Raw message; returns an Intent with used_ai_classifier=False.
        Side Effects / State: Reads cached knowledge bundles.
        Dependencies: "intent-keywords" and "vehicle-specs" bundles, certification regex.
        Failure Modes: Missing bundles shrink to built-in intent keywords; vehicle
            detection then finds nothing and vehicle_type stays None.
        If Removed: Any classifier outage leaves the pipeline without an intent.
        Testing Notes: "Ninja 400 機油推薦" -> motorcycle, Kawasaki, oil.
        """
        # Intent type: ordered keyword tables, product recommendation by default.
        tables = self._intent_tables()
        intent_type, keyword, template = self._match_intent_keywords(
            message, tables.get("intent_order") or DEFAULT_INTENT_ORDER, tables
        )
        if intent_type is None:
            intent_type = IntentType.PRODUCT_RECOMMENDATION

        vehicle_type, brand, model = self._detect_vehicle(message)
        brand = brand or self._detect_brand(message)
        if brand and not model:
            model = self._detect_model(message, brand)
        sub_type = _alias_in_text(tables.get("sub_type_aliases"), message)
        if sub_type and vehicle_type is None:
            vehicle_type = "motorcycle"
        is_ev = contains_any(message, list(tables.get("ev_keywords") or [])) is not None
        category = self._detect_category(message, tables)
        wants_products = intent_type is IntentType.PRODUCT_RECOMMENDATION

        templates = [template] if template else ([PRODUCT_TEMPLATE] if wants_products else [])
        if is_ev:
            templates.append(EV_TEMPLATE)

        viscosity_match = VISCOSITY_RE.search(message or "")
        return Intent(
            type=intent_type,
            product_category=category,
            vehicle_type=vehicle_type,
            vehicle_sub_type=sub_type,
            vehicle_brand=brand,
            vehicle_model=model,
            certifications=tuple(detect_certifications(message)),
            viscosity=_normalize_viscosity(viscosity_match.group(0)) if viscosity_match else None,
            is_motorcycle=vehicle_type == "motorcycle",
            is_electric_vehicle=is_ev,
            special_scenario=self._special_scenario(message, vehicle_type, is_ev),
            needs_templates=tuple(templates),
            needs_specs=wants_products and vehicle_type == "car" and category == "oil",
            needs_symptoms=category == "additive",
            needs_product_recommendation=wants_products,
            prefer_full_synthetic=self._wants_full_synthetic(message),
            used_ai_classifier=False,
            detected_keyword=keyword,
            raw_analysis={"source": "rules"},
        )

    def _detect_vehicle(self, message: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        # Motorcycle models first: model names are the most specific evidence.
        metadata = self._store.load_section("vehicle-specs", "_metadata") or {}
        types = metadata.get("vehicle_types") if isinstance(metadata, dict) else None
        if not isinstance(types, dict):
            return None, None, None

        motorcycle = types.get("motorcycle") or {}
        for brand, models in (motorcycle.get("specific_models") or {}).items():
            hit = contains_any(message, list(models or []))
            if hit:
                return "motorcycle", brand, hit
        if contains_any(message, list(motorcycle.get("keywords") or [])):
            return "motorcycle", None, None

        car = types.get("car") or {}
        if contains_any(message, list(car.get("keywords") or []) + list(car.get("specific_brands") or [])):
            return "car", None, None

        for vehicle_type in ("marine", "bicycle"):
            section = types.get(vehicle_type) or {}
            if contains_any(message, list(section.get("keywords") or [])):
                return vehicle_type, None, None
        return None, None, None

    def _detect_model(self, message: str, brand: str) -> Optional[str]:
        specs = self._store.load_section("vehicle-specs", brand)
        models = specs.get("models") if isinstance(specs, dict) else None
        if not isinstance(models, dict):
            return None
        return contains_any(message, list(models.keys()))

    def _detect_category(self, message: str, tables: Dict[str, Any]) -> str:
        categories = tables.get("product_categories") or {}
        for category, keywords in categories.items():
            if contains_any(message, list(keywords or [])):
                return category
        return DEFAULT_CATEGORY

    def infer_sub_type(self, intent: Intent) -> Intent:
        """Fill vehicle_sub_type for motorcycles named only by model or certification."""
        if not intent.is_motorcycle or intent.vehicle_sub_type:
            return intent
        sub_type = requested_sub_type(intent, self._store.load_named("ai-analysis-rules"))
        if sub_type is None:
            return intent
        return intent.with_changes(vehicle_sub_type=sub_type)

    # -- Enhancement pass -----------------------------------------------------

    def enhance(self, intent: Intent, message: str) -> Intent:
        """Purpose: Let narrow keyword categories override the resolved type.
        Inputs/Outputs: Resolved intent and raw message; returns the same or a
            modified copy of the intent.
        Side Effects / State: Logs every override.
        Dependencies: "intent-keywords".enhancement_order and intent_keywords.
        Failure Modes: Missing tables leave the intent unchanged.
        If Removed: Price/authenticity questions misread by the AI get product lists.
        Testing Notes: An AI product_recommendation plus "多少錢" must become
            price_inquiry with needs_templates=("price_inquiry",).
        """
        # First keyword hit in order wins; this deliberately trumps the AI.
        tables = self._intent_tables()
        order = tables.get("enhancement_order") or DEFAULT_INTENT_ORDER
        intent_type, keyword, template = self._match_intent_keywords(message, order, tables)
        if intent_type is None or intent_type is intent.type:
            return intent
        logger.info(
            "intent enhanced from=%s to=%s keyword=%s", intent.type.value, intent_type.value, keyword
        )
        return intent.with_changes(
            type=intent_type,
            needs_templates=(template,) if template else (),
            needs_product_recommendation=False,
            needs_more_info=(),
            detected_keyword=keyword,
        )

    def _match_intent_keywords(
        self, message: str, order: List[str], tables: Dict[str, Any]
    ) -> Tuple[Optional[IntentType], Optional[str], Optional[str]]:
        keyword_tables = tables.get("intent_keywords") or DEFAULT_INTENT_KEYWORDS
        for name in order:
            config = keyword_tables.get(name) or {}
            hit = contains_any(message, list(config.get("keywords") or []))
            if not hit:
                continue
            try:
                intent_type = IntentType(name)
            except ValueError:
                logger.warning("intent unknown_table_type name=%s", name)
                continue
            return intent_type, hit, config.get("template") or name
        return None, None, None

    # -- Shared helpers -------------------------------------------------------

    def _intent_tables(self) -> Dict[str, Any]:
        return self._store.load_named("intent-keywords") or {}

    def _canonical_brand(self, brand: Optional[str]) -> Optional[str]:
        if not brand or not brand.strip():
            return None
        aliases = self._intent_tables().get("brand_aliases") or {}
        key = normalize_key(brand)
        for alias, canonical in aliases.items():
            if normalize_key(alias) == key:
                return canonical
        return brand.strip()

    def _detect_brand(self, text: str) -> Optional[str]:
        aliases = self._intent_tables().get("brand_aliases") or {}
        hit = contains_any(text, list(aliases.keys()))
        return aliases.get(hit) if hit else None

    def _special_scenario(self, text: str, vehicle_type: Optional[str], is_ev: bool) -> Optional[str]:
        if is_ev:
            return "pure_ev_motorcycle" if vehicle_type == "motorcycle" else "pure_ev_car"
        tables = self._intent_tables()
        if contains_any(text, list(tables.get("hybrid_keywords") or [])):
            return "hybrid"
        for scenario, keywords in (tables.get("special_scenarios") or {}).items():
            if contains_any(text, list(keywords or [])):
                return scenario
        return None

    def _wants_full_synthetic(self, message: str) -> bool:
        keywords = list(self._intent_tables().get("full_synthetic_keywords") or [])
        return contains_any(message, keywords) is not None


def _alias(table: Optional[Dict[str, str]], value: Optional[str]) -> Optional[str]:
    if not value or not str(value).strip():
        return None
    key = normalize_key(str(value))
    for alias, canonical in (table or {}).items():
        if normalize_key(alias) == key:
            return canonical
    return normalize_text(str(value)) or None


def _alias_in_text(table: Optional[Dict[str, str]], text: str) -> Optional[str]:
    hit = contains_any(text, list((table or {}).keys()))
    return (table or {}).get(hit) if hit else None


def _normalize_viscosity(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = VISCOSITY_RE.search(value)
    if not match:
        return value.strip() or None
    return f"{match.group(1)}W-{match.group(2)}"


def _dedupe(values) -> List[str]:
    seen = set()
    result = []
    for value in values or []:
        text = str(value).strip()
        key = text.upper()
        if text and key not in seen:
            seen.add(key)
            result.append(text)
    return result


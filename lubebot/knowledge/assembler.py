"""Conditional knowledge loading: only the sections an Intent asks for."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from ..intent import Intent
from ..utils import contains_any, normalize_key
from .knowledge_store import KnowledgeStore

logger = logging.getLogger("lubebot.knowledge")

OTHER_VERTICALS = (
    "transmission",
    "brake",
    "coolant",
    "air_conditioning",
    "chemical",
    "beauty",
    "fragrance",
    "bicycle",
)
CAR_CERT_GROUPS = ("ford", "european", "asian")
MOTORCYCLE_CERT_GROUPS = ("motorcycle",)


@dataclass(frozen=True)
class KnowledgeBundle:
    """Per-request knowledge sections; None means "not needed" or "not available"."""
    core_identity: Optional[Dict[str, Any]] = None
    conversation_rules: Optional[Dict[str, Any]] = None
    vehicle_spec: Optional[Dict[str, Any]] = None
    certification: Optional[Dict[str, Any]] = None
    symptom_guide: Optional[List[Any]] = None
    templates: Optional[Dict[str, str]] = None
    special_scenario: Optional[Dict[str, Any]] = None
    category_spec: Optional[Dict[str, Any]] = None
    urls: Optional[Dict[str, Any]] = None
    disclaimers: Optional[Dict[str, Any]] = None

    def loaded_sections(self) -> List[str]:
        return [item.name for item in fields(self) if getattr(self, item.name) is not None]


class KnowledgeAssembler:
    """Build a KnowledgeBundle from the named knowledge store."""

    def __init__(self, store: KnowledgeStore) -> None:
        self._store = store

    def assemble(self, intent: Intent) -> KnowledgeBundle:
        """Purpose: Load the always-on sections plus the ones the Intent gates in.
        Inputs/Outputs: Input is an Intent; output is a frozen KnowledgeBundle.
        Side Effects / State: Reads (cached) knowledge bundles; logs loaded sections.
        Dependencies: KnowledgeStore.load_named for every section.
        Failure Modes: Missing bundles leave their section None; never raises.
        If Removed: Prompts carry no identity, specs, certifications or templates.
        Testing Notes: A price inquiry must load templates only for price_inquiry
            and no certification table.
        """
        # Always-on identity/rules, then each gated optional section.
        bundle = KnowledgeBundle(
            core_identity=self._store.load_named("core-identity"),
            conversation_rules=self._store.load_named("rules/conversation-rules"),
            vehicle_spec=self._vehicle_spec(intent),
            certification=self._certification(intent),
            symptom_guide=self._symptom_guide(intent),
            templates=self._templates(intent),
            special_scenario=self._special_scenario(intent),
            category_spec=self._category_spec(intent),
            urls=self._store.load_named("urls"),
            disclaimers=self._store.load_named("anti-hallucination-rules"),
        )
        logger.info("knowledge assembled sections=%s", ",".join(bundle.loaded_sections()))
        return bundle

    def _vehicle_spec(self, intent: Intent) -> Optional[Dict[str, Any]]:
        if not intent.needs_specs or not intent.vehicle_brand:
            return None
        specs = self._store.load_named("vehicle-specs")
        if not specs:
            return None
        brand_key = _find_key(specs, intent.vehicle_brand)
        if brand_key is None or brand_key.startswith("_"):
            return None
        brand_data = specs.get(brand_key)
        if not isinstance(brand_data, dict):
            return None
        models = brand_data.get("models") if isinstance(brand_data.get("models"), dict) else {}
        if intent.vehicle_model and models:
            model_key = _find_key(models, intent.vehicle_model)
            if model_key is None:
                model_key = contains_any(intent.vehicle_model, list(models.keys()))
            if model_key is not None:
                return {"brand": brand_key, "model": model_key, "spec": models[model_key]}
        return {"brand": brand_key, "models": models}

    def _certification(self, intent: Intent) -> Optional[Dict[str, Any]]:
        if intent.product_category != "oil":
            return None
        table = self._store.load_named("certifications")
        if not table:
            return None
        groups = MOTORCYCLE_CERT_GROUPS if intent.is_motorcycle else CAR_CERT_GROUPS
        selected = {name: table[name] for name in groups if name in table}
        jaso = table.get("jaso") if intent.is_motorcycle else None
        if not selected and not jaso:
            return None
        return {"table": selected, "jaso": jaso}

    def _symptom_guide(self, intent: Intent) -> Optional[List[Any]]:
        if not intent.needs_symptoms:
            return None
        guide = self._store.load_section("additive-guide", "symptoms")
        return guide if isinstance(guide, list) and guide else None

    def _templates(self, intent: Intent) -> Optional[Dict[str, str]]:
        if not intent.needs_templates:
            return None
        templates = self._store.load_named("response-templates") or {}
        selected = {key: templates[key] for key in intent.needs_templates if key in templates}
        return selected or None

    def _special_scenario(self, intent: Intent) -> Optional[Dict[str, Any]]:
        if not intent.special_scenario:
            return None
        scenario = self._store.load_section("rules/special-scenarios", intent.special_scenario)
        if not isinstance(scenario, dict):
            return None
        return {"name": intent.special_scenario, **scenario}

    def _category_spec(self, intent: Intent) -> Optional[Dict[str, Any]]:
        if intent.product_category not in OTHER_VERTICALS:
            return None
        spec = self._store.load_section("category-specs", intent.product_category)
        if not isinstance(spec, dict):
            return None
        return {"category": intent.product_category, **spec}


def _find_key(table: Dict[str, Any], wanted: str) -> Optional[str]:
    key = normalize_key(wanted)
    for candidate in table.keys():
        if normalize_key(candidate) == key:
            return candidate
    return None

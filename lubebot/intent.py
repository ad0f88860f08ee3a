from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class IntentType(str, Enum):
    PRODUCT_RECOMMENDATION = "product_recommendation"
    GENERAL_INQUIRY = "general_inquiry"
    AUTHENTICATION = "authentication"
    PRICE_INQUIRY = "price_inquiry"
    PURCHASE_INQUIRY = "purchase_inquiry"
    COOPERATION_INQUIRY = "cooperation_inquiry"


class MatchMethod(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"


@dataclass(frozen=True)
class SearchTask:
    """One directed catalog query: match `value` against `field`."""
    field: str
    value: str
    match_method: MatchMethod = MatchMethod.CONTAINS
    result_limit: int = 20


@dataclass(frozen=True)
class Intent:
    """Structured reading of one user message; immutable once resolved."""
    type: IntentType
    product_category: str = "oil"
    vehicle_type: Optional[str] = None
    vehicle_sub_type: Optional[str] = None
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    certifications: Tuple[str, ...] = ()
    viscosity: Optional[str] = None
    is_motorcycle: bool = False
    is_electric_vehicle: bool = False
    special_scenario: Optional[str] = None
    needs_templates: Tuple[str, ...] = ()
    needs_specs: bool = False
    needs_symptoms: bool = False
    needs_product_recommendation: bool = True
    needs_more_info: Tuple[str, ...] = ()
    search_keywords: Tuple[str, ...] = ()
    search_tasks: Tuple[SearchTask, ...] = ()
    recommended_part_number: Optional[str] = None
    prefer_full_synthetic: bool = False
    usage_scenario: Optional[str] = None
    additional_vehicles: Tuple[str, ...] = ()
    used_ai_classifier: bool = False
    detected_keyword: Optional[str] = None
    raw_analysis: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def wants_products(self) -> bool:
        return self.type is IntentType.PRODUCT_RECOMMENDATION

    def with_changes(self, **changes: Any) -> "Intent":
        return replace(self, **changes)

    def summary(self) -> Dict[str, Any]:
        """Compact dict for logs and API responses."""
        return {
            "type": self.type.value,
            "product_category": self.product_category,
            "vehicle_type": self.vehicle_type,
            "vehicle_sub_type": self.vehicle_sub_type,
            "vehicle_brand": self.vehicle_brand,
            "vehicle_model": self.vehicle_model,
            "certifications": list(self.certifications),
            "viscosity": self.viscosity,
            "needs_more_info": list(self.needs_more_info),
            "special_scenario": self.special_scenario,
            "used_ai_classifier": self.used_ai_classifier,
        }

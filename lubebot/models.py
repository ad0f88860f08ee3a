from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatTurn(BaseModel):
    """One prior conversation turn supplied by the caller."""
    role: str
    content: str


class ChatRequest(BaseModel):
    """Request payload for the chat API."""
    message: str
    history: List[ChatTurn] = Field(default_factory=list)
    product_context: Optional[str] = None


class ChatResponse(BaseModel):
    """Response payload returned by the chat API."""
    answer_text: str
    intent_type: str
    used_ai_classifier: bool
    invalid_identifiers: List[str]
    thinking_logs: List[Dict[str, str]]


class ClassifierVehicle(BaseModel):
    """One vehicle as reported by the classification service."""
    model_config = ConfigDict(extra="ignore")

    vehicleName: Optional[str] = None
    vehicleType: Optional[str] = None
    vehicleSubType: Optional[str] = None
    brand: Optional[str] = None
    isElectricVehicle: bool = False
    certifications: List[str] = Field(default_factory=list)
    viscosity: Optional[str] = None
    recommendedSKU: Optional[str] = None

    @field_validator("certifications", mode="before")
    @classmethod
    def _coerce_certifications(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class ClassifierQuery(BaseModel):
    """A directed catalog query suggested by the classification service."""
    model_config = ConfigDict(extra="ignore")

    field: str
    value: str
    method: str = "contains"
    limit: Optional[int] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value


class ClassifierResult(BaseModel):
    """Shape of the classification service's JSON answer.

    `vehicles` is required; the remaining keys are optional hints.
    """
    model_config = ConfigDict(extra="ignore")

    vehicles: List[ClassifierVehicle]
    productCategory: Optional[str] = None
    needsProductRecommendation: bool = True
    preferFullSynthetic: bool = False
    usageScenario: Optional[str] = None
    searchKeywords: List[str] = Field(default_factory=list)
    needsMoreInfo: List[str] = Field(default_factory=list)
    wixQueries: List[ClassifierQuery] = Field(default_factory=list)
    certifications: List[str] = Field(default_factory=list)

    @field_validator("searchKeywords", "certifications", "needsMoreInfo", mode="before")
    @classmethod
    def _coerce_list(cls, value: Union[None, str, List[Any]]) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    def is_usable(self) -> bool:
        return bool(self.vehicles) or bool((self.productCategory or "").strip())

"""
Shapes of the structured data exchanged with the AI model, and their validators.

Model output is normalized in two steps: defaults are substituted for missing or
null optional fields, then the result is validated. Validation never fails just
because an optional fact was omitted; numbers are never coerced from strings.
"""
from typing import Annotated, Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.errors import SchemaError

Number = Annotated[float, Field(strict=True)]
NonNegative = Annotated[float, Field(strict=True, ge=0)]
Score = Annotated[float, Field(strict=True, ge=0, le=100)]


class _Structure(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- RFP ---

class RFPItem(_Structure):
    name: str
    quantity: NonNegative
    specifications: dict[str, Any] = Field(default_factory=dict)


class Budget(_Structure):
    amount: NonNegative
    currency: str = "USD"


class Timeline(_Structure):
    delivery_deadline: str
    response_deadline: str = "TBD"


class Terms(_Structure):
    payment_terms: str
    warranty: str


class RFPStructure(_Structure):
    title: str
    items: list[RFPItem] = Field(min_length=1)
    budget: Budget
    timeline: Timeline
    terms: Terms
    requirements: list[str]


# --- Proposal ---

class ProposalItem(_Structure):
    name: str
    quantity: Number
    unit_price: Number
    total_price: Number
    meets_specs: bool


class ProposalStructure(_Structure):
    items: list[ProposalItem]
    total_price: NonNegative
    currency: str
    delivery_time: str
    payment_terms: str
    warranty: str
    additional_notes: list[str]
    confidence: Annotated[float, Field(strict=True, ge=0, le=1)]


# --- Comparison ---

class Ranking(_Structure):
    vendor_id: str
    vendor_name: str
    score: Score
    price_score: Score
    delivery_score: Score
    compliance_score: Score
    terms_score: Score
    strengths: list[str]
    weaknesses: list[str]


class Recommendation(_Structure):
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    reasoning: str = ""


class ComparisonResult(_Structure):
    rankings: list[Ranking]
    recommendation: Optional[Recommendation] = None
    summary: str


RFP_DEFAULTS = {
    "timeline": {"responseDeadline": "TBD"},
    "terms": {"paymentTerms": "To be negotiated", "warranty": "Standard warranty"},
    "requirements": [],
}

PROPOSAL_DEFAULTS = {
    "items": [],
    "totalPrice": 0,
    "currency": "USD",
    "deliveryTime": "Not specified",
    "paymentTerms": "To be negotiated",
    "warranty": "Standard warranty",
    "additionalNotes": [],
    "confidence": 0.5,
}

RANKING_DEFAULTS = {
    "vendorName": "",
    "priceScore": 0,
    "deliveryScore": 0,
    "complianceScore": 0,
    "termsScore": 0,
    "strengths": [],
    "weaknesses": [],
}

COMPARISON_DEFAULTS = {"summary": ""}


def _fill(value: dict, defaults: dict) -> dict:
    """Copy of value with defaults applied to missing or null keys, one level of nesting deep."""
    out = dict(value)
    for key, default in defaults.items():
        current = out.get(key)
        if isinstance(default, dict):
            if current is None:
                current = {}
            if isinstance(current, dict):
                out[key] = _fill(current, default)
        elif current is None:
            out[key] = list(default) if isinstance(default, list) else default
    return out


M = TypeVar("M", bound=BaseModel)


def _validate(model: type[M], value: Any, prepare: Callable[[dict], dict]) -> M:
    if not isinstance(value, dict):
        raise SchemaError(model.__name__, ["<root>"], [f"expected an object, got {type(value).__name__}"])
    try:
        return model.model_validate(prepare(value))
    except PydanticValidationError as e:
        errors = e.errors()
        paths = [".".join(str(p) for p in err["loc"]) or "<root>" for err in errors]
        raise SchemaError(model.__name__, paths, [err["msg"] for err in errors]) from e


def normalize_rfp_structure(value: Any) -> RFPStructure:
    def prepare(v: dict) -> dict:
        out = _fill(v, RFP_DEFAULTS)
        if isinstance(out.get("items"), list):
            out["items"] = [
                _fill(i, {"specifications": {}}) if isinstance(i, dict) else i for i in out["items"]
            ]
        return out

    return _validate(RFPStructure, value, prepare)


def normalize_proposal_structure(value: Any) -> ProposalStructure:
    return _validate(ProposalStructure, value, lambda v: _fill(v, PROPOSAL_DEFAULTS))


def normalize_comparison_result(value: Any) -> ComparisonResult:
    def prepare(v: dict) -> dict:
        out = _fill(v, COMPARISON_DEFAULTS)
        if isinstance(out.get("rankings"), list):
            # a ranking without a vendor id matches no proposal
            out["rankings"] = [
                _fill(r, RANKING_DEFAULTS) if isinstance(r, dict) else r
                for r in out["rankings"]
                if not isinstance(r, dict) or isinstance(r.get("vendorId"), str)
            ]
        return out

    return _validate(ComparisonResult, value, prepare)

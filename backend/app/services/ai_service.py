import os
import json
import logging
import re
from datetime import date, timedelta
from typing import Any

from app.errors import AIResponseError, SchemaError, ValidationError
from app.schemas.structures import (
    ComparisonResult,
    ProposalStructure,
    RFPStructure,
    normalize_comparison_result,
    normalize_proposal_structure,
    normalize_rfp_structure,
)

# No retries on top of this; a timed-out call fails the whole operation.
_OLLAMA_TIMEOUT_SEC = 120
_MIN_INPUT_LEN = 10

TASK_STRUCTURE_RFP = "structure_rfp"
TASK_EXTRACT_PROPOSAL = "extract_proposal"
TASK_COMPARE_PROPOSALS = "compare_proposals"

logger = logging.getLogger(__name__)


class AIBackend:
    """One blocking round trip to a generative model. Returns the raw text it produced."""

    name = "base"

    def generate(self, task: str, system: str, prompt: str, payload: dict[str, Any]) -> str:
        raise NotImplementedError


class OllamaBackend(AIBackend):
    name = "ollama"

    def __init__(self, base_url: str, model: str = "llama3", timeout: float = _OLLAMA_TIMEOUT_SEC):
        from ollama import Client

        self.model = model
        self.client = Client(host=base_url, timeout=timeout)

    def generate(self, task: str, system: str, prompt: str, payload: dict[str, Any]) -> str:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        response = self.client.chat(
            model=self.model, messages=messages, format="json", options={"temperature": 0.3}
        )
        msg = getattr(response, "message", None) or (response.get("message") if isinstance(response, dict) else None)
        return (getattr(msg, "content", None) if msg is not None else None) or (msg.get("content") if isinstance(msg, dict) else None) or ""


# --- Mock backend: deterministic, offline; used when no model server is configured ---

_UNIT_WORDS = {
    "day", "days", "week", "weeks", "month", "months", "year", "years", "hour", "hours", "percent",
    "gb", "tb", "mb", "ghz", "inch", "inches", "in", "kg", "lbs", "mm", "cm",
}
_ITEM_RE = re.compile(r"(?<![\$\d,.])(\d+)\s+([A-Za-z][A-Za-z\-]*)")
_MONEY_RE = re.compile(r"\$\s?(\d[\d,]*(?:\.\d+)?)\s*(k\b)?", re.IGNORECASE)
_DAYS_RE = re.compile(r"(\d+)\s*(business\s+)?(day|week)s?", re.IGNORECASE)
_NET_RE = re.compile(r"net\s*-?\s*(\d+)", re.IGNORECASE)
_WARRANTY_RE = re.compile(r"(\d+)[\s-]*(year|month)s?\b[^.\n]{0,20}warranty", re.IGNORECASE)
_TOTAL_RE = re.compile(r"total[^$\n]{0,30}\$\s?(\d[\d,]*(?:\.\d+)?)", re.IGNORECASE)


def _money(raw: str, thousands: str | None = None) -> float:
    value = float(raw.replace(",", ""))
    return value * 1000 if thousands else value


def _days(text: str) -> int | None:
    m = _DAYS_RE.search(text)
    if not m:
        return None
    n = int(m.group(1))
    return n * 7 if m.group(3).lower() == "week" else n


def _mock_structure_rfp(text: str) -> dict[str, Any]:
    items = [
        {"name": name, "quantity": int(qty), "specifications": {}}
        for qty, name in _ITEM_RE.findall(text)
        if name.lower() not in _UNIT_WORDS
    ]
    if not items:
        items = [{"name": text.strip().split(".")[0][:60], "quantity": 1, "specifications": {}}]
    money = _MONEY_RE.search(text)
    days = _days(text)
    out: dict[str, Any] = {
        "title": text.strip().split(".")[0][:80],
        "items": items,
        "budget": {"amount": _money(money.group(1), money.group(2)) if money else 0, "currency": "USD"},
        "timeline": {
            "deliveryDeadline": (date.today() + timedelta(days=days)).isoformat() if days else "Not specified",
            "responseDeadline": None,
        },
        "terms": {},
    }
    net = _NET_RE.search(text)
    if net:
        out["terms"]["paymentTerms"] = f"Net {net.group(1)}"
    warranty = _WARRANTY_RE.search(text)
    if warranty:
        out["terms"]["warranty"] = f"{warranty.group(1)} {warranty.group(2).lower()} warranty"
    return out


def _mock_extract_proposal(email_text: str) -> dict[str, Any]:
    out: dict[str, Any] = {"additionalNotes": []}
    total = _TOTAL_RE.search(email_text)
    amounts = [_money(a, k) for a, k in _MONEY_RE.findall(email_text)]
    if total:
        out["totalPrice"] = _money(total.group(1))
    elif amounts:
        out["totalPrice"] = max(amounts)
    days = _days(email_text)
    if days:
        out["deliveryTime"] = f"{days} days"
    net = _NET_RE.search(email_text)
    if net:
        out["paymentTerms"] = f"Net {net.group(1)}"
    warranty = _WARRANTY_RE.search(email_text)
    if warranty:
        out["warranty"] = f"{warranty.group(1)} {warranty.group(2).lower()} warranty"
    # Fewer facts found means less confidence; no price at all stays at or below the default
    found = sum(1 for k in ("totalPrice", "deliveryTime", "paymentTerms", "warranty") if k in out)
    out["confidence"] = round(0.2 + 0.15 * found, 2) if "totalPrice" in out else 0.3
    return out


def _mock_compare_proposals(proposals: list[dict[str, Any]]) -> dict[str, Any]:
    """Rubric applied locally: price 30, delivery 20, compliance 25, terms 15, value 10."""
    prices = [p["parsedData"].get("totalPrice") or 0 for p in proposals]
    days = [_days(p["parsedData"].get("deliveryTime") or "") for p in proposals]
    min_price = min((x for x in prices if x > 0), default=0)
    min_days = min((d for d in days if d), default=0)
    rankings = []
    for p, price, d in zip(proposals, prices, days):
        data = p["parsedData"]
        price_score = round(100 * min_price / price, 1) if price > 0 and min_price else 50.0
        delivery_score = round(100 * min_days / d, 1) if d and min_days else 50.0
        compliance_score = round(100 * float(data.get("confidence") or 0.5), 1)
        terms_score = 80.0 if data.get("warranty") not in (None, "Standard warranty") else 50.0
        value = (price_score + delivery_score + compliance_score + terms_score) / 4
        score = round(
            0.30 * price_score + 0.20 * delivery_score + 0.25 * compliance_score
            + 0.15 * terms_score + 0.10 * value,
            1,
        )
        strengths = [label for label, s in (("Price", price_score), ("Delivery", delivery_score)) if s >= 90]
        weaknesses = [label for label, s in (("Price", price_score), ("Delivery", delivery_score)) if s < 60]
        rankings.append({
            "vendorId": p["vendorId"],
            "vendorName": p["vendorName"],
            "score": score,
            "priceScore": price_score,
            "deliveryScore": delivery_score,
            "complianceScore": compliance_score,
            "termsScore": terms_score,
            "strengths": strengths,
            "weaknesses": weaknesses,
        })
    rankings.sort(key=lambda r: r["score"], reverse=True)
    best = rankings[0] if rankings else None
    return {
        "rankings": rankings,
        "recommendation": {
            "vendorId": best["vendorId"],
            "vendorName": best["vendorName"],
            "reasoning": f"{best['vendorName']} has the highest weighted score ({best['score']}).",
        } if best else None,
        "summary": f"Compared {len(rankings)} proposal(s) with a local heuristic (mock AI provider).",
    }


class MockBackend(AIBackend):
    name = "mock"

    def generate(self, task: str, system: str, prompt: str, payload: dict[str, Any]) -> str:
        if task == TASK_STRUCTURE_RFP:
            out = _mock_structure_rfp(payload["input"])
        elif task == TASK_EXTRACT_PROPOSAL:
            out = _mock_extract_proposal(payload["email"])
        elif task == TASK_COMPARE_PROPOSALS:
            out = _mock_compare_proposals(payload["proposals"])
        else:
            raise ValueError(f"Unknown AI task: {task}")
        return json.dumps(out)


def get_ai_backend() -> AIBackend:
    """Ollama when OLLAMA_BASE_URL is set, otherwise the offline mock."""
    base_url = os.getenv("OLLAMA_BASE_URL", "").strip()
    if base_url:
        model = os.getenv("OLLAMA_MODEL", "llama3").strip() or "llama3"
        timeout = float(os.getenv("OLLAMA_TIMEOUT_SEC", str(_OLLAMA_TIMEOUT_SEC)))
        logger.info("AI provider: ollama at %s (model=%s, timeout=%ss)", base_url, model, timeout)
        return OllamaBackend(base_url, model=model, timeout=timeout)
    logger.info("AI provider: no OLLAMA_BASE_URL, using mock")
    return MockBackend()


# --- Prompts ---

_SYSTEM_JSON_ONLY = "Return ONLY a valid JSON object, no other text or markdown."

_RFP_SYSTEM = (
    "You are an AI assistant that converts natural language procurement requests into structured RFP data. "
    + _SYSTEM_JSON_ONLY
)

_RFP_PROMPT = """Given a user's description of what they want to procure, extract the following information:

1. title: A short title for the RFP
2. items: Array of items with name, quantity (number), and specifications (object of key/value pairs)
3. budget: Total budget amount (number) and currency (ISO code, "USD" if not stated)
4. timeline: deliveryDeadline and responseDeadline (YYYY-MM-DD; responseDeadline "TBD" if not stated)
5. terms: paymentTerms ("To be negotiated" if not stated) and warranty ("Standard warranty" if not stated)
6. requirements: Any additional requirements as an array of strings ([] if none)

Respond ONLY with valid JSON in this exact format:
{{
  "title": "string",
  "items": [{{"name": "string", "quantity": number, "specifications": {{"key": "value"}}}}],
  "budget": {{"amount": number, "currency": "USD"}},
  "timeline": {{"deliveryDeadline": "YYYY-MM-DD", "responseDeadline": "YYYY-MM-DD"}},
  "terms": {{"paymentTerms": "string", "warranty": "string"}},
  "requirements": ["string"]
}}

Never omit a field. If a fact is not mentioned, use the default given above.

User Input: {input}"""

_PROPOSAL_SYSTEM = "You are an AI that extracts structured data from vendor proposal emails. " + _SYSTEM_JSON_ONLY

_PROPOSAL_PROMPT = """Given an RFP context and a vendor's email response, extract:

1. items: What they're offering (name, quantity, unitPrice, totalPrice, meetsSpecs true/false)
2. totalPrice: Total quoted price (MUST be a number, use 0 if not found)
3. currency: Currency of the quote (use "USD" if not found)
4. deliveryTime: When they can deliver (MUST be a string, use "Not specified" if not found)
5. paymentTerms: Their payment terms (MUST be a string, use "To be negotiated" if not found)
6. warranty: Warranty offered (MUST be a string, use "Standard warranty" if not found)
7. additionalNotes: Any other important terms as an array of strings
8. confidence: How confident you are in the extraction, 0.0-1.0

IMPORTANT: All fields MUST have values. Never use null. Use default values if information is missing.

RFP Context:
{rfp}

Vendor Email:
{email}

Respond ONLY with valid JSON (no markdown, no code blocks):
{{
  "items": [{{"name": "string", "quantity": number, "unitPrice": number, "totalPrice": number, "meetsSpecs": true}}],
  "totalPrice": number,
  "currency": "USD",
  "deliveryTime": "string",
  "paymentTerms": "string",
  "warranty": "string",
  "additionalNotes": ["string"],
  "confidence": 0.0
}}"""

_COMPARE_SYSTEM = "You are a procurement analyst AI. Compare vendor proposals for an RFP. " + _SYSTEM_JSON_ONLY

SCORING_WEIGHTS = {
    "Price competitiveness": 30,
    "Delivery timeline": 20,
    "Specification compliance": 25,
    "Terms and warranty": 15,
    "Overall value": 10,
}

_COMPARE_PROMPT = """RFP Requirements:
{rfp}

Proposals:
{proposals}

Analyze and score each proposal (0-100) based on:
{rubric}

Use the vendorId exactly as given for each proposal.

Respond with JSON:
{{
  "rankings": [
    {{
      "vendorId": "string",
      "vendorName": "string",
      "score": number,
      "priceScore": number,
      "deliveryScore": number,
      "complianceScore": number,
      "termsScore": number,
      "strengths": ["string"],
      "weaknesses": ["string"]
    }}
  ],
  "recommendation": {{"vendorId": "string", "vendorName": "string", "reasoning": "string"}},
  "summary": "string"
}}"""


def strip_code_fences(text: str) -> str:
    """Drop a markdown ``` or ```json wrapper the model sometimes adds around its JSON."""
    text = (text or "").strip()
    if "```json" in text:
        text = text.split("```json", 1)[-1].split("```", 1)[0].strip()
    elif "```" in text:
        text = text.split("```", 1)[-1].split("```", 1)[0].strip()
    return text


class AIService:
    """Prompts, one model call per operation, and validation of what comes back."""

    def __init__(self, backend: AIBackend):
        self.backend = backend

    @property
    def provider(self) -> str:
        return self.backend.name

    def _ask(self, task: str, system: str, prompt: str, payload: dict[str, Any]) -> Any:
        try:
            raw = self.backend.generate(task, system, prompt, payload)
        except Exception as e:
            logger.warning("AI %s: %s call failed: %s", task, self.backend.name, e, exc_info=True)
            raise AIResponseError(f"AI request failed: {e}") from e
        text = strip_code_fences(raw)
        if not text:
            raise AIResponseError("No response from AI")
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("AI %s: response is not JSON (%s chars)", task, len(text))
            raise AIResponseError(f"AI response is not valid JSON: {e}") from e

    def structure_request(self, natural_language_input: str) -> RFPStructure:
        text = (natural_language_input or "").strip()
        if len(text) < _MIN_INPUT_LEN:
            raise ValidationError(
                f"Input must be at least {_MIN_INPUT_LEN} characters",
                details=[{"field": "input", "message": f"at least {_MIN_INPUT_LEN} characters required"}],
            )
        data = self._ask(TASK_STRUCTURE_RFP, _RFP_SYSTEM, _RFP_PROMPT.format(input=text), {"input": text})
        try:
            structure = normalize_rfp_structure(data)
        except SchemaError as e:
            raise AIResponseError(f"Failed to parse RFP: {e}") from e
        logger.info("AI structure_rfp: %s item(s), budget=%s", len(structure.items), structure.budget.amount)
        return structure

    def extract_proposal(self, rfp_context: dict[str, Any], vendor_email_text: str) -> ProposalStructure:
        prompt = _PROPOSAL_PROMPT.format(rfp=json.dumps(rfp_context, indent=2, default=str), email=vendor_email_text)
        data = self._ask(
            TASK_EXTRACT_PROPOSAL, _PROPOSAL_SYSTEM, prompt, {"rfp": rfp_context, "email": vendor_email_text}
        )
        try:
            structure = normalize_proposal_structure(data)
        except SchemaError as e:
            raise AIResponseError(f"Failed to parse proposal: {e}") from e
        logger.info("AI extract_proposal: total=%s %s confidence=%s",
                    structure.total_price, structure.currency, structure.confidence)
        return structure

    def score_proposals(self, rfp: dict[str, Any], proposals: list[dict[str, Any]]) -> ComparisonResult:
        rubric = "\n".join(f"- {label} ({weight}%)" for label, weight in SCORING_WEIGHTS.items())
        prompt = _COMPARE_PROMPT.format(
            rfp=json.dumps(rfp, indent=2, default=str),
            proposals=json.dumps(proposals, indent=2, default=str),
            rubric=rubric,
        )
        data = self._ask(TASK_COMPARE_PROPOSALS, _COMPARE_SYSTEM, prompt, {"rfp": rfp, "proposals": proposals})
        try:
            result = normalize_comparison_result(data)
        except SchemaError as e:
            raise AIResponseError(f"Failed to compare proposals: {e}") from e
        logger.info("AI compare_proposals: %s ranking(s) for %s proposal(s)", len(result.rankings), len(proposals))
        return result

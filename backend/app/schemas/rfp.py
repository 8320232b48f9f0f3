from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from app.schemas.common import APIModel
from app.schemas.proposal import ProposalResponse
from app.schemas.structures import Budget, RFPItem, Terms, Timeline
from app.schemas.vendor import VendorRef


class RFPCreate(APIModel):
    input: str = Field(min_length=10)


class RFPUpdate(APIModel):
    """Direct overwrite; only the fields present are changed. status is an administrative override."""
    title: Optional[str] = Field(default=None, min_length=1)
    status: Optional[str] = None
    items: Optional[list[RFPItem]] = Field(default=None, min_length=1)
    budget: Optional[Budget] = None
    timeline: Optional[Timeline] = None
    terms: Optional[Terms] = None
    requirements: Optional[list[str]] = None


class RFPResponse(APIModel):
    id: str
    title: str
    raw_input: str
    status: str
    items: list[dict[str, Any]]
    budget: dict[str, Any]
    timeline: dict[str, Any]
    terms: dict[str, Any]
    requirements: list[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RFPListItem(RFPResponse):
    proposal_count: int = 0
    vendor_count: int = 0


class RFPVendorResponse(APIModel):
    vendor_id: str
    sent_at: datetime
    vendor: VendorRef


class RFPDetailResponse(RFPResponse):
    vendors: list[RFPVendorResponse] = []
    proposals: list[ProposalResponse] = []


class SendRFPBody(APIModel):
    vendor_ids: list[str] = Field(min_length=1)


class DispatchResult(APIModel):
    vendor_id: str
    vendor_name: str
    email: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class DispatchReport(APIModel):
    message: str
    success_count: int
    failure_count: int
    results: list[DispatchResult]

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from app.schemas.common import APIModel
from app.schemas.vendor import VendorRef


class InboundProposal(APIModel):
    rfp_id: str
    vendor_id: str
    email: str = Field(min_length=10)
    subject: Optional[str] = None


class ProposalStatusUpdate(APIModel):
    # Checked against the enumerated set by the lifecycle manager, which answers 400
    status: str


class RFPRef(APIModel):
    id: str
    title: str
    status: str


class ProposalResponse(APIModel):
    id: str
    rfp_id: str
    vendor_id: str
    raw_email: str
    email_subject: Optional[str] = None
    parsed_data: Optional[dict[str, Any]] = None
    score: Optional[float] = None
    evaluation: Optional[dict[str, Any]] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    vendor: Optional[VendorRef] = None


class ProposalDetailResponse(ProposalResponse):
    rfp: RFPRef

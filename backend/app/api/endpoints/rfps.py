from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from app.database import get_db
from app.errors import NotFoundError
from app.models import Proposal, RFP, RFPVendor
from app.schemas.rfp import (
    DispatchReport,
    RFPCreate,
    RFPDetailResponse,
    RFPListItem,
    RFPResponse,
    RFPUpdate,
    SendRFPBody,
)
from app.schemas.structures import ComparisonResult
from app.api.deps import get_lifecycle
from app.services.lifecycle import RFPLifecycleManager, sort_by_score

router = APIRouter(prefix="/rfps", tags=["rfps"])


@router.post("", response_model=RFPResponse, status_code=201)
async def create_rfp(payload: RFPCreate, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    """Structure a natural-language request into a DRAFT RFP."""
    return await lifecycle.create_rfp(payload.input)


@router.get("", response_model=list[RFPListItem])
def list_rfps(db: Session = Depends(get_db)):
    proposal_counts = dict(
        db.query(Proposal.rfp_id, func.count(Proposal.id)).group_by(Proposal.rfp_id).all()
    )
    vendor_counts = dict(
        db.query(RFPVendor.rfp_id, func.count(RFPVendor.id)).group_by(RFPVendor.rfp_id).all()
    )
    rfps = db.query(RFP).order_by(RFP.created_at.desc()).all()
    return [
        RFPListItem(
            **RFPResponse.model_validate(r).model_dump(),
            proposal_count=proposal_counts.get(r.id, 0),
            vendor_count=vendor_counts.get(r.id, 0),
        )
        for r in rfps
    ]


@router.get("/{rfp_id}", response_model=RFPDetailResponse)
def get_rfp(rfp_id: str, db: Session = Depends(get_db)):
    """RFP with the vendors it was sent to and its proposals, best score first."""
    rfp = (
        db.query(RFP)
        .options(
            joinedload(RFP.vendors).joinedload(RFPVendor.vendor),
            joinedload(RFP.proposals).joinedload(Proposal.vendor),
        )
        .filter(RFP.id == rfp_id)
        .first()
    )
    if not rfp:
        raise NotFoundError("RFP not found")
    detail = RFPDetailResponse.model_validate(rfp)
    detail.proposals = sort_by_score(detail.proposals)
    return detail


@router.put("/{rfp_id}", response_model=RFPResponse)
def update_rfp(rfp_id: str, payload: RFPUpdate, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return lifecycle.update_rfp(rfp_id, payload.model_dump(exclude_unset=True, by_alias=True))


@router.delete("/{rfp_id}", status_code=204)
def delete_rfp(rfp_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    lifecycle.delete_rfp(rfp_id)
    return Response(status_code=204)


@router.post("/{rfp_id}/send", response_model=DispatchReport)
async def send_rfp(rfp_id: str, payload: SendRFPBody, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    """Email the RFP to the given vendors. Per-vendor failures are in the report, not an error."""
    return await lifecycle.send_rfp(rfp_id, payload.vendor_ids)


@router.post("/{rfp_id}/compare", response_model=ComparisonResult)
async def compare_proposals(rfp_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return await lifecycle.compare_proposals(rfp_id)

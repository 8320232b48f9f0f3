from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session, joinedload

from app.database import get_db
from app.errors import NotFoundError
from app.models import Proposal, RFP
from app.schemas.proposal import (
    InboundProposal,
    ProposalDetailResponse,
    ProposalResponse,
    ProposalStatusUpdate,
)
from app.api.deps import get_lifecycle
from app.services.lifecycle import RFPLifecycleManager, sort_by_score

router = APIRouter(prefix="/proposals", tags=["proposals"])


@router.post("/inbound", response_model=ProposalResponse, status_code=201)
async def receive_inbound(payload: InboundProposal, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    """Parse a vendor's emailed reply into a structured proposal."""
    return await lifecycle.receive_proposal(payload.rfp_id, payload.vendor_id, payload.email, payload.subject)


@router.get("/rfp/{rfp_id}", response_model=list[ProposalResponse])
def list_by_rfp(rfp_id: str, db: Session = Depends(get_db)):
    if not db.query(RFP.id).filter(RFP.id == rfp_id).first():
        raise NotFoundError("RFP not found")
    proposals = (
        db.query(Proposal)
        .options(joinedload(Proposal.vendor))
        .filter(Proposal.rfp_id == rfp_id)
        .all()
    )
    return sort_by_score(proposals)


@router.get("/{proposal_id}", response_model=ProposalDetailResponse)
def get_proposal(proposal_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return lifecycle.get_proposal(proposal_id)


@router.post("/{proposal_id}/reparse", response_model=ProposalResponse)
async def reparse(proposal_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return await lifecycle.reparse_proposal(proposal_id)


@router.put("/{proposal_id}/status", response_model=ProposalResponse)
def update_status(
    proposal_id: str,
    payload: ProposalStatusUpdate,
    lifecycle: RFPLifecycleManager = Depends(get_lifecycle),
):
    """Administrative override of a proposal's status."""
    return lifecycle.override_proposal_status(proposal_id, payload.status)


@router.delete("/{proposal_id}", status_code=204)
def delete_proposal(proposal_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    lifecycle.delete_proposal(proposal_id)
    return Response(status_code=204)

from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Proposal, Vendor
from app.schemas.vendor import VendorCreate, VendorResponse, VendorUpdate
from app.api.deps import get_lifecycle
from app.services.lifecycle import RFPLifecycleManager

router = APIRouter(prefix="/vendors", tags=["vendors"])


@router.post("", response_model=VendorResponse, status_code=201)
def create_vendor(payload: VendorCreate, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return lifecycle.create_vendor(payload.model_dump())


@router.get("", response_model=list[VendorResponse])
def list_vendors(db: Session = Depends(get_db)):
    proposal_counts = dict(
        db.query(Proposal.vendor_id, func.count(Proposal.id)).group_by(Proposal.vendor_id).all()
    )
    vendors = db.query(Vendor).order_by(Vendor.created_at.desc()).all()
    out = []
    for v in vendors:
        item = VendorResponse.model_validate(v)
        item.proposal_count = proposal_counts.get(v.id, 0)
        out.append(item)
    return out


@router.get("/{vendor_id}", response_model=VendorResponse)
def get_vendor(vendor_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    vendor = lifecycle.get_vendor(vendor_id)
    item = VendorResponse.model_validate(vendor)
    item.proposal_count = len(vendor.proposals)
    return item


@router.put("/{vendor_id}", response_model=VendorResponse)
def update_vendor(vendor_id: str, payload: VendorUpdate, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    return lifecycle.update_vendor(vendor_id, payload.model_dump(exclude_unset=True))


@router.delete("/{vendor_id}", status_code=204)
def delete_vendor(vendor_id: str, lifecycle: RFPLifecycleManager = Depends(get_lifecycle)):
    lifecycle.delete_vendor(vendor_id)
    return Response(status_code=204)

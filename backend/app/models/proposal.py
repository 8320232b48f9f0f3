from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.base import Base
from app.models.rfp import _uuid


class ProposalStatus:
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    EVALUATED = "EVALUATED"
    SELECTED = "SELECTED"
    REJECTED = "REJECTED"

    ALL = (RECEIVED, PARSED, EVALUATED, SELECTED, REJECTED)
    COMPARABLE = (PARSED, EVALUATED)


class Proposal(Base):
    __tablename__ = "proposals"

    id = Column(String(36), primary_key=True, default=_uuid)
    rfp_id = Column(String(36), ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False, index=True)
    raw_email = Column(Text, nullable=False)  # source of truth; never rewritten
    email_subject = Column(String(512), nullable=True)
    parsed_data = Column(JSON, nullable=True)  # ProposalData
    score = Column(Float, nullable=True)
    evaluation = Column(JSON, nullable=True)   # one ranking entry from the last comparison
    status = Column(String(20), default=ProposalStatus.RECEIVED, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    rfp = relationship("RFP", back_populates="proposals")
    vendor = relationship("Vendor", back_populates="proposals")

import uuid

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.base import Base


class RFPStatus:
    DRAFT = "DRAFT"
    SENT = "SENT"
    EVALUATING = "EVALUATING"
    AWARDED = "AWARDED"
    CLOSED = "CLOSED"

    ALL = (DRAFT, SENT, EVALUATING, AWARDED, CLOSED)
    TERMINAL = (AWARDED, CLOSED)
    # Position in the forward-only lifecycle; AWARDED and CLOSED share the last stage
    ORDER = {DRAFT: 0, SENT: 1, EVALUATING: 2, AWARDED: 3, CLOSED: 3}


def _uuid() -> str:
    return str(uuid.uuid4())


class RFP(Base):
    __tablename__ = "rfps"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    raw_input = Column(Text, nullable=False)
    status = Column(String(20), default=RFPStatus.DRAFT, nullable=False, index=True)
    items = Column(JSON, nullable=False)         # [{name, quantity, specifications}]
    budget = Column(JSON, nullable=False)        # {amount, currency}
    timeline = Column(JSON, nullable=False)      # {deliveryDeadline, responseDeadline}
    terms = Column(JSON, nullable=False)         # {paymentTerms, warranty}
    requirements = Column(JSON, nullable=False)  # [str]
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    vendors = relationship("RFPVendor", back_populates="rfp", cascade="all")
    proposals = relationship("Proposal", back_populates="rfp", cascade="all")
    dispatch_events = relationship(
        "DispatchEvent", back_populates="rfp", cascade="all",
        order_by="DispatchEvent.created_at",
    )


class RFPVendor(Base):
    """Which vendors an RFP has been sent to, and when it was last sent."""
    __tablename__ = "rfp_vendors"
    __table_args__ = (UniqueConstraint("rfp_id", "vendor_id", name="uq_rfp_vendor"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    rfp_id = Column(String(36), ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=False)

    rfp = relationship("RFP", back_populates="vendors")
    vendor = relationship("Vendor", back_populates="rfp_links")

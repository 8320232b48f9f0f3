from sqlalchemy import Boolean, Column, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.base import Base
from app.models.rfp import _uuid


class DispatchEvent(Base):
    """Audit trail: every attempt to email an RFP to a vendor, successful or not."""
    __tablename__ = "rfp_dispatch_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    rfp_id = Column(String(36), ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True, index=True)
    recipient = Column(String(255), nullable=False)
    success = Column(Boolean, nullable=False)
    message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    rfp = relationship("RFP", back_populates="dispatch_events")

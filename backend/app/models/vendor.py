from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.models.base import Base
from app.models.rfp import _uuid


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    contact_person = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=True)
    category = Column(String(512), nullable=True)  # comma-joined, e.g. "IT, Hardware"
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    rfp_links = relationship("RFPVendor", back_populates="vendor", cascade="all")
    proposals = relationship("Proposal", back_populates="vendor", cascade="all")

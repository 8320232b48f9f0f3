from datetime import datetime
from typing import Any, Optional

from pydantic import EmailStr, Field, field_validator

from app.schemas.common import APIModel


def _join_category(v: Any) -> Optional[str]:
    """Categories arrive as a list or a string and are stored comma-joined."""
    if v is None:
        return None
    if isinstance(v, (list, tuple)):
        parts = [str(c).strip() for c in v if str(c).strip()]
        return ", ".join(parts) or None
    return str(v).strip() or None


class VendorCreate(APIModel):
    name: str = Field(min_length=1)
    email: EmailStr
    contact_person: str = Field(min_length=1)
    phone: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def join_category(cls, v: Any) -> Optional[str]:
        return _join_category(v)


class VendorUpdate(APIModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None
    contact_person: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def join_category(cls, v: Any) -> Optional[str]:
        return _join_category(v)


class VendorRef(APIModel):
    id: str
    name: str
    email: str
    contact_person: Optional[str] = None


class VendorResponse(APIModel):
    id: str
    name: str
    email: str
    contact_person: str
    phone: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    proposal_count: Optional[int] = None

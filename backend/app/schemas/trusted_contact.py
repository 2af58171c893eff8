"""
Trusted contact schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class TrustedContactCreate(BaseModel):
    """At least one of phone, email or contact_user_id makes a contact reachable."""
    name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    email: Optional[str] = Field(None, max_length=255)
    contact_user_id: Optional[int] = None
    relationship: Optional[str] = Field(None, max_length=100)
    is_primary: bool = False
    notifications_enabled: bool = True


class TrustedContactResponse(BaseModel):
    id: int
    name: str
    phone: Optional[str]
    email: Optional[str]
    contact_user_id: Optional[int]
    relationship: Optional[str]
    is_primary: bool
    notifications_enabled: bool
    created_at: datetime

    class Config:
        from_attributes = True

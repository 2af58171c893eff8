"""
Guardian trip schemas.

Input models only check shapes; the lifecycle engine owns the business
validation so that every caller gets the same errors.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from backend.app.models.trip_enums import TripStatus


class TripStartRequest(BaseModel):
    """Schema for starting a guardian trip.

    Exactly one of expected_duration_minutes or expected_end_at is required.
    """
    destination: str = Field(..., max_length=255)
    destination_latitude: Optional[float] = Field(None, ge=-90, le=90)
    destination_longitude: Optional[float] = Field(None, ge=-180, le=180)
    expected_duration_minutes: Optional[int] = None
    expected_end_at: Optional[datetime] = None
    check_in_interval_minutes: Optional[int] = None
    trusted_contact_ids: List[int] = Field(default_factory=list)
    notes: Optional[str] = None


class CheckInRequest(BaseModel):
    """Check-in; a late traveler may propose their own new deadline."""
    new_expected_end_at: Optional[datetime] = None


class ExtendDeadlineRequest(BaseModel):
    """Provide either additional_minutes or new_expected_end_at."""
    additional_minutes: Optional[int] = None
    new_expected_end_at: Optional[datetime] = None


class ReportUnsafeRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class LocationSample(BaseModel):
    """Schema for recording GPS location."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_meters: Optional[float] = Field(None, gt=0)
    recorded_at: Optional[datetime] = None  # Defaults to server time


class TripContactResponse(BaseModel):
    contact_id: int
    name: str
    phone: Optional[str]
    email: Optional[str]
    contact_user_id: Optional[int]

    class Config:
        from_attributes = True


class TripResponse(BaseModel):
    """Trip details response."""
    id: str
    traveler_id: int
    destination: str
    destination_latitude: Optional[float]
    destination_longitude: Optional[float]
    notes: Optional[str]
    status: TripStatus
    started_at: datetime
    expected_duration_minutes: int
    expected_end_at: datetime
    check_in_interval_minutes: int
    last_check_in_at: Optional[datetime]
    alerted_at: Optional[datetime]
    emergency_reason: Optional[str]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    trusted_contacts: List[TripContactResponse]

    class Config:
        from_attributes = True


class TripLocationResponse(BaseModel):
    """GPS location response."""
    id: int
    latitude: float
    longitude: float
    accuracy_meters: Optional[float]
    recorded_at: datetime

    class Config:
        from_attributes = True


class ScanResult(BaseModel):
    """Outcome of one overdue sweep."""
    scanned_at: datetime
    candidates: int = 0
    transitioned: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)

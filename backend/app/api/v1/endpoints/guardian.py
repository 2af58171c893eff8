"""
Guardian Mode API Endpoints.

Travelers start trips, check in, extend their deadline, report that they
are unsafe, stream their location and end trips. Every operation is a thin
call into the trip lifecycle engine; ownership is checked there. Trusted
contacts who use the app can follow the trips they were picked for.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path, Body, Query
from typing import List, Optional

from backend.app.core.dependencies import get_current_traveler_id
from backend.app.models.trip_enums import TripStatus
from backend.app.schemas.notification import TripNotificationResponse
from backend.app.schemas.trip import (
    TripStartRequest, CheckInRequest, ExtendDeadlineRequest, ReportUnsafeRequest,
    LocationSample, TripResponse, TripLocationResponse
)
from backend.app.services.trip_engine import TripLifecycleEngine, get_trip_engine

router = APIRouter(prefix="/guardian", tags=["Guardian Mode"])


@router.post("/trips", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
async def start_trip(
    request: TripStartRequest,
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """
    Start a guardian trip.

    Any trip the traveler still has open is cancelled first, and the
    selected trusted contacts are told the trip has started.
    """
    return await engine.start_trip(traveler_id, request)


@router.get("/trips", response_model=List[TripResponse])
async def list_trips(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """Trip history, newest first."""
    return await engine.list_trips(traveler_id, limit=limit, offset=offset)


@router.get("/trips/active", response_model=TripResponse)
async def get_active_trip(
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """The open trip, ACTIVE or OVERDUE. An overdue trip is still shown so it can be checked in on."""
    trip = await engine.get_open_trip(traveler_id)
    if not trip:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active trip found"
        )
    return trip


@router.get("/monitored-trips", response_model=List[TripResponse])
async def list_monitored_trips(
    trip_status: Optional[TripStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """Trips of travelers who picked the caller as a trusted contact, newest first."""
    return await engine.list_monitored_trips(user_id, status=trip_status, limit=limit, offset=offset)


@router.get("/trips/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: str = Path(..., description="Trip ID"),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """Readable by the traveler and by the trip's in-app trusted contacts."""
    return await engine.get_trip(traveler_id, trip_id)


@router.post("/trips/{trip_id}/check-in", response_model=TripResponse)
async def check_in(
    trip_id: str = Path(..., description="Trip ID"),
    request: Optional[CheckInRequest] = Body(None),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """
    Confirm the traveler is safe.

    An overdue trip becomes active again with a fresh deadline.
    """
    new_deadline = request.new_expected_end_at if request else None
    return await engine.check_in(traveler_id, trip_id, new_deadline)


@router.post("/trips/{trip_id}/extend", response_model=TripResponse)
async def extend_deadline(
    trip_id: str = Path(..., description="Trip ID"),
    request: ExtendDeadlineRequest = Body(...),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    return await engine.extend_deadline(
        traveler_id,
        trip_id,
        additional_minutes=request.additional_minutes,
        new_expected_end_at=request.new_expected_end_at
    )


@router.post("/trips/{trip_id}/unsafe", response_model=TripResponse)
async def report_unsafe(
    trip_id: str = Path(..., description="Trip ID"),
    request: Optional[ReportUnsafeRequest] = Body(None),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """
    Report an emergency.

    Trusted contacts and campus security are alerted before this returns.
    """
    reason = request.reason if request else None
    return await engine.report_unsafe(traveler_id, trip_id, reason)


@router.post("/trips/{trip_id}/arrive", response_model=TripResponse)
async def mark_arrived(
    trip_id: str = Path(..., description="Trip ID"),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    return await engine.mark_arrived(traveler_id, trip_id)


@router.post("/trips/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(
    trip_id: str = Path(..., description="Trip ID"),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    return await engine.cancel_trip(traveler_id, trip_id)


@router.post("/trips/{trip_id}/location", response_model=TripLocationResponse, status_code=status.HTTP_201_CREATED)
async def record_location(
    trip_id: str = Path(..., description="Trip ID"),
    sample: LocationSample = Body(...),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """
    Record GPS location for a trip.

    Only extends the route; the trip's status and deadline are untouched.
    """
    return await engine.append_location_sample(traveler_id, trip_id, sample)


@router.get("/trips/{trip_id}/route", response_model=List[TripLocationResponse])
async def get_route(
    trip_id: str = Path(..., description="Trip ID"),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    return await engine.get_route(traveler_id, trip_id)


@router.get("/trips/{trip_id}/notifications", response_model=List[TripNotificationResponse])
async def get_trip_notifications(
    trip_id: str = Path(..., description="Trip ID"),
    traveler_id: int = Depends(get_current_traveler_id),
    engine: TripLifecycleEngine = Depends(get_trip_engine)
):
    """Every alert sent about this trip, including failed deliveries."""
    return await engine.get_notifications(traveler_id, trip_id)

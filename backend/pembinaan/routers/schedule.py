"""
Counselor Schedule API Routes

Counselor registry, weekly availability template and the booking-status
views the reservation form queries before calling POST /reservations.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import SessionType
from ..services.scheduling import SlotScheduler
from .serializers import counselor_to_dict, schedule_to_dict


router = APIRouter(prefix="/schedule", tags=["schedule"])


class CounselorRequest(BaseModel):
    full_name: str
    username: str
    specialty: Optional[str] = None


class AvailabilityRequest(BaseModel):
    weekday: int = Field(..., description="0 = Monday ... 6 = Sunday")
    slot_time: str = Field(..., description="HH:MM")
    session_type: SessionType


class ReleaseRequest(BaseModel):
    counselor_id: str
    slot_date: date
    slot_time: str = Field(..., description="HH:MM")
    session_type: SessionType


@router.post("/counselors", response_model=dict, status_code=201)
def add_counselor(request: CounselorRequest, db: Session = Depends(get_db)):
    counselor = SlotScheduler(db).add_counselor(request.full_name, request.username, request.specialty)
    return counselor_to_dict(counselor)


@router.get("/counselors", response_model=list)
def list_counselors(active_only: bool = Query(True), db: Session = Depends(get_db)):
    return [counselor_to_dict(c) for c in SlotScheduler(db).list_counselors(active_only=active_only)]


@router.post("/counselors/{counselor_id}/availability", response_model=dict, status_code=201)
def add_availability(counselor_id: str, request: AvailabilityRequest, db: Session = Depends(get_db)):
    entry = SlotScheduler(db).add_availability(
        counselor_id, request.weekday, request.slot_time, request.session_type
    )
    return schedule_to_dict(entry)


@router.get("/counselors/{counselor_id}/availability", response_model=list)
def get_availability(counselor_id: str, db: Session = Depends(get_db)):
    return [schedule_to_dict(s) for s in SlotScheduler(db).availability(counselor_id)]


@router.get("/status", response_model=dict)
def booking_status(
    slot_date: date = Query(..., alias="date"),
    slot_time: str = Query(..., alias="time"),
    session_type: SessionType = Query(..., alias="sessionType"),
    db: Session = Depends(get_db),
):
    """Every scheduled counselor for the slot, booked or not."""
    statuses = SlotScheduler(db).booking_status(slot_date, slot_time, session_type)
    return {
        "date": slot_date.isoformat(),
        "time": slot_time,
        "sessionType": session_type.value,
        "bookingStatus": [s.to_dict() for s in statuses],
    }


@router.get("/available", response_model=list)
def find_available(
    slot_date: date = Query(..., alias="date"),
    slot_time: str = Query(..., alias="time"),
    session_type: SessionType = Query(..., alias="sessionType"),
    db: Session = Depends(get_db),
):
    return [s.to_dict() for s in SlotScheduler(db).find_available(slot_date, slot_time, session_type)]


@router.post("/release", response_model=dict)
def release_slot(request: ReleaseRequest, db: Session = Depends(get_db)):
    """Clear a stale hold. A slot held by an active reservation is a 409; reject or cancel it instead."""
    released = SlotScheduler(db).release(
        request.counselor_id, request.slot_date, request.slot_time, request.session_type
    )
    return {"released": released}

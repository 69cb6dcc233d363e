"""
Reservation API Routes

Student-initiated counseling bookings (individual and group) and the
approval / attendance / completion lattice, plus post-session feedback.
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import ReservationStatus, SessionType
from ..services.scheduling import ReservationLedger, SlotScheduler
from .serializers import feedback_to_dict, reservation_to_dict


router = APIRouter(prefix="/reservations", tags=["reservations"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ReservationRequest(BaseModel):
    """Single atomic booking: the client picked date, time and counselor already."""
    subject_ids: List[str] = Field(..., description="Student(s) the session is for")
    counselor_id: str
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM")
    session_type: SessionType
    topic_id: Optional[str] = None
    notes: Optional[str] = None
    creator_id: Optional[str] = None


class GroupReservationRequest(BaseModel):
    creator_id: str
    member_ids: List[str] = Field(..., description="Group members besides the creator")
    counselor_id: str
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM")
    session_type: SessionType
    topic_id: Optional[str] = None
    notes: Optional[str] = None


class SetStatusRequest(BaseModel):
    status: ReservationStatus
    rejection_reason: Optional[str] = Field(None, description="Required when rejecting")
    room: Optional[str] = Field(None, description="Room assigned on approval")
    expected_version: Optional[int] = None


class AttendanceRequest(BaseModel):
    qr_token: Optional[str] = Field(None, description="Scanned check-in token")


class RescheduleRequest(BaseModel):
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM")
    counselor_id: Optional[str] = None
    expected_version: Optional[int] = None


class FeedbackRequest(BaseModel):
    subject_id: str = Field(..., description="Student giving the rating")
    rating: int = Field(..., description="1 (poor) .. 5 (excellent)")
    comment: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
def request_reservation(request: ReservationRequest, db: Session = Depends(get_db)):
    reservation = ReservationLedger(db).request_reservation(
        subject_ids=request.subject_ids,
        counselor_id=request.counselor_id,
        scheduled_date=request.scheduled_date,
        scheduled_time=request.scheduled_time,
        session_type=request.session_type,
        topic_id=request.topic_id,
        notes=request.notes,
        creator_id=request.creator_id,
    )
    return reservation_to_dict(reservation)


@router.post("/group", response_model=dict, status_code=201)
def request_group_reservation(request: GroupReservationRequest, db: Session = Depends(get_db)):
    reservation = ReservationLedger(db).request_group_reservation(
        creator_id=request.creator_id,
        member_ids=request.member_ids,
        counselor_id=request.counselor_id,
        scheduled_date=request.scheduled_date,
        scheduled_time=request.scheduled_time,
        session_type=request.session_type,
        topic_id=request.topic_id,
        notes=request.notes,
    )
    return reservation_to_dict(reservation)


@router.get("", response_model=list)
def list_reservations(
    status: Optional[ReservationStatus] = Query(None),
    student_id: Optional[str] = Query(None),
    counselor_id: Optional[str] = Query(None),
    case_id: Optional[str] = Query(None),
    include_archived: bool = Query(True),
    db: Session = Depends(get_db),
):
    reservations = ReservationLedger(db).list_reservations(
        status=status,
        student_id=student_id,
        counselor_id=counselor_id,
        case_id=case_id,
        include_archived=include_archived,
    )
    return [reservation_to_dict(r) for r in reservations]


@router.get("/{reservation_id}", response_model=dict)
def get_reservation(reservation_id: str, db: Session = Depends(get_db)):
    return reservation_to_dict(ReservationLedger(db).get(reservation_id))


@router.post("/{reservation_id}/status", response_model=dict)
def set_reservation_status(reservation_id: str, request: SetStatusRequest, db: Session = Depends(get_db)):
    reservation = ReservationLedger(db).set_status(
        reservation_id,
        request.status,
        rejection_reason=request.rejection_reason,
        room=request.room,
        expected_version=request.expected_version,
    )
    return reservation_to_dict(reservation)


@router.post("/{reservation_id}/attendance", response_model=dict)
def confirm_attendance(reservation_id: str, request: AttendanceRequest, db: Session = Depends(get_db)):
    reservation = ReservationLedger(db).confirm_attendance(reservation_id, qr_token=request.qr_token)
    return reservation_to_dict(reservation)


@router.post("/{reservation_id}/complete", response_model=dict)
def complete_reservation(reservation_id: str, db: Session = Depends(get_db)):
    return reservation_to_dict(ReservationLedger(db).complete(reservation_id))


@router.post("/{reservation_id}/reschedule", response_model=dict)
def reschedule_reservation(reservation_id: str, request: RescheduleRequest, db: Session = Depends(get_db)):
    reservation = SlotScheduler(db).reschedule(
        reservation_id,
        request.scheduled_date,
        request.scheduled_time,
        counselor_id=request.counselor_id,
        expected_version=request.expected_version,
    )
    return reservation_to_dict(reservation)


@router.post("/{reservation_id}/archive", response_model=dict)
def archive_reservation(reservation_id: str, db: Session = Depends(get_db)):
    return reservation_to_dict(ReservationLedger(db).archive(reservation_id))


@router.post("/{reservation_id}/feedback", response_model=dict, status_code=201)
def submit_feedback(reservation_id: str, request: FeedbackRequest, db: Session = Depends(get_db)):
    feedback = ReservationLedger(db).submit_feedback(
        reservation_id,
        subject_id=request.subject_id,
        rating=request.rating,
        comment=request.comment,
    )
    return feedback_to_dict(feedback)


@router.get("/{reservation_id}/feedback", response_model=list)
def list_feedback(reservation_id: str, db: Session = Depends(get_db)):
    return [feedback_to_dict(f) for f in ReservationLedger(db).list_feedback(reservation_id)]

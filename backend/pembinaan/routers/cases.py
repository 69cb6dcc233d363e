"""
Disciplinary Case API Routes

Reporting, classification override and the escalation workflow.
Service errors (PembinaanError) are mapped to HTTP responses in main.py.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import (
    ActorRole, AdministrativeDecision, CaseStatus, CommunicationMethod, EscalationTier,
)
from ..services.workflow import EscalationWorkflow
from .serializers import (
    case_to_dict, log_entry_to_dict, reservation_to_dict, review_to_dict, summons_to_dict,
)


router = APIRouter(prefix="/cases", tags=["cases"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ReportCaseRequest(BaseModel):
    """A new incident report (kasus)."""
    student_id: str = Field(..., description="Reported student")
    class_id: str = Field(..., description="Student's class")
    raw_description: str = Field(..., description="Free-text incident description")
    reporter_role: ActorRole = Field(..., description="Role of the reporting staff member")
    reporter_id: Optional[str] = Field(None, description="Reporting staff member id")


class OverrideMatchRequest(BaseModel):
    violation_id: str = Field(..., description="Catalog entry to assign")
    actor: str = Field(..., description="Operator performing the override")
    expected_version: Optional[int] = None


class SendToCounselingRequest(BaseModel):
    """Light tier: book a BK session."""
    counselor_id: str
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM")
    actor: str
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class SendToAdministrationRequest(BaseModel):
    """Severe tier: Waka review meeting."""
    recommendation: Optional[str] = None
    meeting_date: date
    meeting_time: str = Field(..., description="HH:MM")
    actor: str
    expected_version: Optional[int] = None


class SummonParentsRequest(BaseModel):
    parent_name: str
    parent_phone: Optional[str] = None
    violation_details: Optional[str] = None
    letter_content: str
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM")
    location: Optional[str] = None
    communication_method: CommunicationMethod = CommunicationMethod.MANUAL
    actor: str


class DecisionRequest(BaseModel):
    decision: AdministrativeDecision = Field(..., description="sp3 or do")
    reason: str
    actor: str


class CompleteCaseRequest(BaseModel):
    actor: str
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class ArchiveCaseRequest(BaseModel):
    reason: str = Field(..., description="Why the case is closed without resolution")
    actor: str
    expected_version: Optional[int] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
def report_case(request: ReportCaseRequest, db: Session = Depends(get_db)):
    """Report a case; the description is classified immediately."""
    case = EscalationWorkflow(db).report_case(
        student_id=request.student_id,
        class_id=request.class_id,
        raw_description=request.raw_description,
        reporter_role=request.reporter_role,
        reporter_id=request.reporter_id,
    )
    return case_to_dict(case)


@router.get("", response_model=list)
def list_cases(
    status: Optional[CaseStatus] = Query(None),
    tier: Optional[EscalationTier] = Query(None),
    student_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    cases = EscalationWorkflow(db).list_cases(status=status, tier=tier, student_id=student_id)
    return [case_to_dict(c) for c in cases]


@router.get("/{case_id}", response_model=dict)
def get_case(case_id: str, db: Session = Depends(get_db)):
    workflow = EscalationWorkflow(db)
    case = workflow.get_case(case_id)
    result = case_to_dict(case)
    result["available_actions"] = workflow.state_machine.available_actions(case)
    result["reservations"] = [reservation_to_dict(r) for r in case.reservations]
    result["administrative_review"] = (
        review_to_dict(case.administrative_review) if case.administrative_review else None
    )
    result["parent_summons"] = [summons_to_dict(s) for s in case.parent_summons]
    return result


@router.get("/{case_id}/history", response_model=list)
def get_case_history(case_id: str, db: Session = Depends(get_db)):
    """Immutable transition log, oldest first."""
    return [log_entry_to_dict(e) for e in EscalationWorkflow(db).case_history(case_id)]


@router.post("/{case_id}/override", response_model=dict)
def override_match(case_id: str, request: OverrideMatchRequest, db: Session = Depends(get_db)):
    case = EscalationWorkflow(db).override_match(
        case_id, request.violation_id, request.actor, expected_version=request.expected_version
    )
    return case_to_dict(case)


@router.post("/{case_id}/counseling", response_model=dict)
def send_to_counseling(case_id: str, request: SendToCounselingRequest, db: Session = Depends(get_db)):
    case, reservation = EscalationWorkflow(db).send_to_counseling(
        case_id,
        counselor_id=request.counselor_id,
        scheduled_date=request.scheduled_date,
        scheduled_time=request.scheduled_time,
        actor=request.actor,
        notes=request.notes,
        expected_version=request.expected_version,
    )
    return {"case": case_to_dict(case), "reservation": reservation_to_dict(reservation)}


@router.post("/{case_id}/administration", response_model=dict)
def send_to_administration(case_id: str, request: SendToAdministrationRequest, db: Session = Depends(get_db)):
    case = EscalationWorkflow(db).send_to_administration(
        case_id,
        recommendation=request.recommendation,
        meeting_date=request.meeting_date,
        meeting_time=request.meeting_time,
        actor=request.actor,
        expected_version=request.expected_version,
    )
    return {"case": case_to_dict(case), "administrative_review": review_to_dict(case.administrative_review)}


@router.post("/{case_id}/parent-summons", response_model=dict, status_code=201)
def summon_parents(case_id: str, request: SummonParentsRequest, db: Session = Depends(get_db)):
    summons = EscalationWorkflow(db).summon_parents(
        case_id,
        parent_name=request.parent_name,
        letter_content=request.letter_content,
        scheduled_date=request.scheduled_date,
        scheduled_time=request.scheduled_time,
        actor=request.actor,
        parent_phone=request.parent_phone,
        violation_details=request.violation_details,
        location=request.location,
        communication_method=request.communication_method,
    )
    return summons_to_dict(summons)


@router.post("/{case_id}/decision", response_model=dict)
def record_decision(case_id: str, request: DecisionRequest, db: Session = Depends(get_db)):
    review = EscalationWorkflow(db).record_administrative_decision(
        case_id, request.decision, request.reason, request.actor
    )
    return review_to_dict(review)


@router.post("/{case_id}/complete", response_model=dict)
def complete_case(case_id: str, request: CompleteCaseRequest, db: Session = Depends(get_db)):
    case = EscalationWorkflow(db).complete_case(
        case_id, request.actor, reason=request.reason, expected_version=request.expected_version
    )
    return case_to_dict(case)


@router.post("/{case_id}/archive", response_model=dict)
def archive_case(case_id: str, request: ArchiveCaseRequest, db: Session = Depends(get_db)):
    case = EscalationWorkflow(db).archive_case(
        case_id, request.reason, request.actor, expected_version=request.expected_version
    )
    return case_to_dict(case)

"""
JSON shapes returned by the API.

Field names follow what the school UI already consumes
(match_type, match_confidence, match_explanation, attendanceConfirmed, completedAt).
"""
from typing import Optional

from ..models.db_models import (
    AdministrativeReviewDB, CaseLogDB, CounselorDB, CounselorScheduleDB, DisciplinaryCaseDB,
    ParentSummonsDB, ReservationDB, ReservationFeedbackDB, ViolationDefinitionDB,
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _value(enum_value) -> Optional[str]:
    return enum_value.value if enum_value is not None else None


def definition_to_dict(d: ViolationDefinitionDB) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "category": d.category.value,
        "weight": d.weight,
        "description": d.description,
    }


def case_to_dict(case: DisciplinaryCaseDB) -> dict:
    matched = case.matched_violation
    return {
        "id": case.id,
        "student_id": case.student_id,
        "class_id": case.class_id,
        "reporter_role": case.reporter_role.value,
        "reporter_id": case.reporter_id,
        "raw_description": case.raw_description,
        "violation_id": case.matched_violation_id,
        "violation_name": matched.name if matched else None,
        "violation_weight": matched.weight if matched else None,
        "match_type": case.match_type.value,
        "match_confidence": case.match_confidence,
        "match_explanation": case.match_explanation,
        "status": case.status.value,
        "escalation_tier": _value(case.escalation_tier),
        "version": case.version,
        "archive_reason": case.archive_reason,
        "created_at": _iso(case.created_at),
        "updated_at": _iso(case.updated_at),
        "completed_at": _iso(case.completed_at),
        "archived_at": _iso(case.archived_at),
    }


def log_entry_to_dict(entry: CaseLogDB) -> dict:
    return {
        "id": entry.id,
        "from_status": _value(entry.from_status),
        "to_status": entry.to_status.value,
        "from_tier": _value(entry.from_tier),
        "to_tier": _value(entry.to_tier),
        "trigger": entry.trigger,
        "actor": entry.actor,
        "reason": entry.reason,
        "metadata": entry.event_metadata or {},
        "timestamp": _iso(entry.created_at),
    }


def review_to_dict(review: AdministrativeReviewDB) -> dict:
    return {
        "id": review.id,
        "case_id": review.case_id,
        "recommendation": review.recommendation,
        "meeting_date": _iso(review.meeting_date),
        "meeting_time": review.meeting_time,
        "decision": _value(review.decision),
        "decision_reason": review.decision_reason,
        "decided_by": review.decided_by,
        "decided_at": _iso(review.decided_at),
    }


def summons_to_dict(summons: ParentSummonsDB) -> dict:
    return {
        "id": summons.id,
        "case_id": summons.case_id,
        "parent_name": summons.parent_name,
        "parent_phone": summons.parent_phone,
        "violation_details": summons.violation_details,
        "letter_content": summons.letter_content,
        "date": _iso(summons.scheduled_date),
        "time": summons.scheduled_time,
        "location": summons.location,
        "communication_method": _value(summons.communication_method),
        "created_by": summons.created_by,
    }


def reservation_to_dict(r: ReservationDB) -> dict:
    return {
        "id": r.id,
        "caseId": r.case_id,
        "creatorId": r.creator_id,
        "subjectIds": list(r.subject_ids or []),
        "isGroup": bool(r.is_group),
        "bkId": r.counselor_id,
        "date": _iso(r.scheduled_date),
        "time": r.scheduled_time,
        "sessionType": r.session_type.value,
        "counselingType": _value(r.counseling_type),
        "topicId": r.topic_id,
        "notes": r.notes,
        "status": r.status.value,
        "rejectionReason": r.rejection_reason,
        "room": r.room,
        "qrToken": r.qr_token,
        "attendanceConfirmed": bool(r.attendance_confirmed),
        "attendanceConfirmedAt": _iso(r.attendance_confirmed_at),
        "completedAt": _iso(r.completed_at),
        "archivedAt": _iso(r.archived_at),
        "version": r.version,
        "createdAt": _iso(r.created_at),
    }


def feedback_to_dict(f: ReservationFeedbackDB) -> dict:
    return {
        "id": f.id,
        "reservationId": f.reservation_id,
        "subjectId": f.subject_id,
        "rating": f.rating,
        "comment": f.comment,
        "createdAt": _iso(f.created_at),
    }


def counselor_to_dict(c: CounselorDB) -> dict:
    return {
        "id": c.id,
        "fullName": c.full_name,
        "username": c.username,
        "specialty": c.specialty,
        "active": bool(c.active),
    }


def schedule_to_dict(s: CounselorScheduleDB) -> dict:
    return {
        "id": s.id,
        "bkId": s.counselor_id,
        "weekday": s.weekday,
        "time": s.slot_time,
        "sessionType": s.session_type.value,
    }

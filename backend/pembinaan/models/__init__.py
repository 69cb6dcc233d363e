"""Pembinaan Engine - Data Models"""
from .db_models import (
    # Enums
    ViolationCategory, MatchType, CaseStatus, EscalationTier, ActorRole,
    AdministrativeDecision, CommunicationMethod, SessionType, CounselingType,
    ReservationStatus, ACTIVE_RESERVATION_STATUSES,
    # Tables
    ViolationDefinitionDB, DisciplinaryCaseDB, CaseLogDB, AdministrativeReviewDB,
    ParentSummonsDB, CounselorDB, CounselorScheduleDB, CounselorSlotDB, ReservationDB,
    ReservationFeedbackDB,
)
from .domain import CatalogEntry, MatchResult, CatalogRow, ImportSummary, SlotStatus

__all__ = [
    "ViolationCategory", "MatchType", "CaseStatus", "EscalationTier", "ActorRole",
    "AdministrativeDecision", "CommunicationMethod", "SessionType", "CounselingType",
    "ReservationStatus", "ACTIVE_RESERVATION_STATUSES",
    "ViolationDefinitionDB", "DisciplinaryCaseDB", "CaseLogDB", "AdministrativeReviewDB",
    "ParentSummonsDB", "CounselorDB", "CounselorScheduleDB", "CounselorSlotDB", "ReservationDB",
    "ReservationFeedbackDB",
    "CatalogEntry", "MatchResult", "CatalogRow", "ImportSummary", "SlotStatus",
]

"""
Pembinaan Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Date, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


def _enum_column(enum_cls):
    """Store enum values (not member names) as plain VARCHAR."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# =============================================================================
# ENUMS FOR CLASSIFICATION
# =============================================================================

class ViolationCategory(str, Enum):
    """Catalog categories used by the category lexicon."""
    ATTENDANCE = "attendance"
    UNIFORM = "uniform"
    PERSONAL_CONDUCT = "personal-conduct"
    ORDER = "order"
    HEALTH = "health"


class MatchType(str, Enum):
    """How a case description was tied to a catalog entry."""
    EXACT = "exact"
    KEYWORD = "keyword"
    CATEGORY = "category"
    MANUAL = "manual"
    NONE = "none"


# =============================================================================
# ENUMS FOR ESCALATION WORKFLOW
# =============================================================================

class CaseStatus(str, Enum):
    """States of the per-case escalation state machine."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class EscalationTier(str, Enum):
    """Orthogonal tier set on entry to IN_PROGRESS."""
    LIGHT = "light"    # BK counseling (pembinaan ringan)
    SEVERE = "severe"  # Waka administrative review (pembinaan berat)


class ActorRole(str, Enum):
    """Who reported a case or triggered a transition."""
    STUDENT_AFFAIRS = "kesiswaan"
    HOMEROOM_TEACHER = "walas"
    TEACHER = "guru"
    COUNSELOR = "bk"
    VICE_PRINCIPAL = "waka"
    STUDENT = "siswa"
    SYSTEM = "system"


class AdministrativeDecision(str, Enum):
    """Outcome of a severe (Waka) review."""
    SP3 = "sp3"        # third warning letter
    EXPULSION = "do"   # drop-out


class CommunicationMethod(str, Enum):
    """Delivery channel for a parental summons letter."""
    MANUAL = "manual"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


# =============================================================================
# ENUMS FOR SCHEDULING
# =============================================================================

class SessionType(str, Enum):
    CHAT = "chat"
    IN_PERSON = "in-person"


class CounselingType(str, Enum):
    GENERAL = "umum"
    SPECIAL = "khusus"    # created on behalf of a disciplinary case
    GROUP = "kelompok"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_COUNSELING = "in_counseling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_RESERVATION_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.APPROVED,
    ReservationStatus.IN_COUNSELING,
)


# =============================================================================
# VIOLATION CATALOG
# =============================================================================

class ViolationDefinitionDB(Base):
    """
    Weighted reference entry of the violation catalog.
    Locked against edits once any case has matched it.
    """
    __tablename__ = "violation_definitions"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), unique=True, nullable=False, index=True)
    category = Column(_enum_column(ViolationCategory), nullable=False, index=True)
    weight = Column(Integer, nullable=False)  # point value 1-100
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# DISCIPLINARY CASES
# =============================================================================

class DisciplinaryCaseDB(Base):
    """
    A reported incident (pembinaan) and its escalation state.
    status / escalation_tier change only through EscalationWorkflow.
    """
    __tablename__ = "disciplinary_cases"

    id = Column(String(36), primary_key=True)  # UUID
    reporter_role = Column(_enum_column(ActorRole), nullable=False)
    reporter_id = Column(String(64), nullable=True)
    student_id = Column(String(64), nullable=False, index=True)
    class_id = Column(String(64), nullable=False)
    raw_description = Column(Text, nullable=False)

    # Classification (set synchronously at creation)
    matched_violation_id = Column(
        String(36), ForeignKey("violation_definitions.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    match_type = Column(_enum_column(MatchType), nullable=False, default=MatchType.NONE)
    match_confidence = Column(Integer, nullable=False, default=0)
    match_explanation = Column(Text, nullable=False, default="")

    # State Machine
    status = Column(_enum_column(CaseStatus), nullable=False, default=CaseStatus.PENDING, index=True)
    escalation_tier = Column(_enum_column(EscalationTier), nullable=True)
    version = Column(Integer, nullable=False, default=1)  # compare-and-swap counter

    archive_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    # Relationships
    matched_violation = relationship("ViolationDefinitionDB")
    log_entries = relationship("CaseLogDB", back_populates="case", order_by="CaseLogDB.created_at")
    reservations = relationship("ReservationDB", back_populates="case")
    administrative_review = relationship("AdministrativeReviewDB", back_populates="case", uselist=False)
    parent_summons = relationship("ParentSummonsDB", back_populates="case")


class CaseLogDB(Base):
    """
    Immutable log of case state transitions.
    Append-only - records every status/tier change and overrides.
    """
    __tablename__ = "case_log"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("disciplinary_cases.id", ondelete="RESTRICT"), nullable=False, index=True)

    from_status = Column(_enum_column(CaseStatus), nullable=True)  # NULL for creation
    to_status = Column(_enum_column(CaseStatus), nullable=False)
    from_tier = Column(_enum_column(EscalationTier), nullable=True)
    to_tier = Column(_enum_column(EscalationTier), nullable=True)

    trigger = Column(String(100), nullable=False)
    actor = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("DisciplinaryCaseDB", back_populates="log_entries")


class AdministrativeReviewDB(Base):
    """Severe-path record: Waka recommendation, meeting and final decision."""
    __tablename__ = "administrative_reviews"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("disciplinary_cases.id", ondelete="RESTRICT"), nullable=False, unique=True)

    recommendation = Column(Text, nullable=True)
    meeting_date = Column(Date, nullable=False)
    meeting_time = Column(String(5), nullable=False)  # HH:MM

    decision = Column(_enum_column(AdministrativeDecision), nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_by = Column(String(100), nullable=True)
    decided_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("DisciplinaryCaseDB", back_populates="administrative_review")


class ParentSummonsDB(Base):
    """Parental summons letter issued during light-tier handling."""
    __tablename__ = "parent_summons"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("disciplinary_cases.id", ondelete="RESTRICT"), nullable=False, index=True)

    parent_name = Column(String(255), nullable=False)
    parent_phone = Column(String(32), nullable=True)
    violation_details = Column(Text, nullable=True)
    letter_content = Column(Text, nullable=False)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    location = Column(String(255), nullable=True)
    communication_method = Column(_enum_column(CommunicationMethod), default=CommunicationMethod.MANUAL)
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("DisciplinaryCaseDB", back_populates="parent_summons")


# =============================================================================
# COUNSELORS AND SLOTS
# =============================================================================

class CounselorDB(Base):
    """BK counselor who owns bookable time slots."""
    __tablename__ = "counselors"

    id = Column(String(36), primary_key=True)
    full_name = Column(String(255), nullable=False)
    username = Column(String(100), unique=True, nullable=False)
    specialty = Column(String(255), nullable=True)
    active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    schedules = relationship("CounselorScheduleDB", back_populates="counselor", cascade="all, delete-orphan")


class CounselorScheduleDB(Base):
    """Weekly availability template; concrete slots materialize from it."""
    __tablename__ = "counselor_schedules"
    __table_args__ = (
        UniqueConstraint("counselor_id", "weekday", "slot_time", "session_type", name="uq_counselor_schedule"),
    )

    id = Column(String(36), primary_key=True)
    counselor_id = Column(String(36), ForeignKey("counselors.id", ondelete="CASCADE"), nullable=False, index=True)
    weekday = Column(Integer, nullable=False)  # 0 = Monday
    slot_time = Column(String(5), nullable=False)
    session_type = Column(_enum_column(SessionType), nullable=False)

    counselor = relationship("CounselorDB", back_populates="schedules")


class CounselorSlotDB(Base):
    """
    One bookable (counselor, date, time, session type) unit.
    The unique constraint plus the conditional booked flip forbid double-booking.
    """
    __tablename__ = "counselor_slots"
    __table_args__ = (
        UniqueConstraint("counselor_id", "slot_date", "slot_time", "session_type", name="uq_counselor_slot"),
    )

    id = Column(String(36), primary_key=True)
    counselor_id = Column(String(36), ForeignKey("counselors.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(String(5), nullable=False)
    session_type = Column(_enum_column(SessionType), nullable=False)

    booked = Column(Boolean, nullable=False, default=False)
    reservation_id = Column(String(36), nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    counselor = relationship("CounselorDB")


# =============================================================================
# RESERVATIONS
# =============================================================================

class ReservationDB(Base):
    """
    Individual or group counseling booking.
    Never hard-deleted; archived_at marks retirement.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        Index("ix_reservations_case_status", "case_id", "status"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("disciplinary_cases.id", ondelete="RESTRICT"), nullable=True)

    # Subjects: one student, or creator + roster for groups
    creator_id = Column(String(64), nullable=False, index=True)
    subject_ids = Column(JSON, nullable=False, default=list)
    is_group = Column(Boolean, default=False)

    # Slot
    counselor_id = Column(String(36), ForeignKey("counselors.id", ondelete="RESTRICT"), nullable=False, index=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    session_type = Column(_enum_column(SessionType), nullable=False)
    counseling_type = Column(_enum_column(CounselingType), default=CounselingType.GENERAL)
    topic_id = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)

    # Approval lattice
    status = Column(_enum_column(ReservationStatus), nullable=False, default=ReservationStatus.PENDING, index=True)
    rejection_reason = Column(Text, nullable=True)
    room = Column(String(100), nullable=True)
    qr_token = Column(String(64), nullable=True)
    attendance_confirmed = Column(Boolean, nullable=False, default=False)
    attendance_confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    case = relationship("DisciplinaryCaseDB", back_populates="reservations")
    counselor = relationship("CounselorDB")
    feedback = relationship("ReservationFeedbackDB", back_populates="reservation", order_by="ReservationFeedbackDB.created_at")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES


class ReservationFeedbackDB(Base):
    """A subject's rating of a completed session. One per subject per reservation."""
    __tablename__ = "reservation_feedback"
    __table_args__ = (
        UniqueConstraint("reservation_id", "subject_id", name="uq_reservation_feedback_subject"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="RESTRICT"), nullable=False, index=True)
    subject_id = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=False)  # 1 (sangat tidak puas) .. 5 (sangat puas)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    reservation = relationship("ReservationDB", back_populates="feedback")

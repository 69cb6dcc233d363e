"""
Reservation Ledger

Durable record of counseling bookings and their approval lattice:

    pending       -> approved | rejected
    approved      -> in_counseling | completed | cancelled
    in_counseling -> completed | cancelled

Rules:
- Rejection needs a reason; rejection and cancellation release the slot
- Approving an in-person reservation issues its QR check-in token
- Attendance can be confirmed only for in-person sessions that are approved
  or in counseling
- An in-person session cannot complete before attendance is confirmed
- Reservations are never deleted; terminal ones may be archived
- Each subject may rate a completed session once (1-5, optional comment)
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...exceptions import ConflictError, InfrastructureError, NotFoundError, ValidationError
from ...models.db_models import (
    ACTIVE_RESERVATION_STATUSES, CounselingType, ReservationDB, ReservationFeedbackDB,
    ReservationStatus, SessionType,
)
from ..collaborators import HMACTokenIssuer, LoggingNotifier, Notifier, QRTokenIssuer, dispatch, tokens_match
from .slot_scheduler import SlotScheduler

logger = logging.getLogger(__name__)


RESERVATION_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.APPROVED, ReservationStatus.REJECTED},
    ReservationStatus.APPROVED: {
        ReservationStatus.IN_COUNSELING, ReservationStatus.COMPLETED, ReservationStatus.CANCELLED,
    },
    ReservationStatus.IN_COUNSELING: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.REJECTED: set(),
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
}

SLOT_RELEASING_STATUSES = {ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
ATTENDANCE_STATUSES = {ReservationStatus.APPROVED, ReservationStatus.IN_COUNSELING}


def _dedupe(ids: Iterable) -> List[str]:
    seen = []
    for raw in ids or []:
        value = str(raw).strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def is_terminal(status: ReservationStatus) -> bool:
    return not RESERVATION_TRANSITIONS.get(status)


class ReservationLedger:
    """Reservation requests, approval, attendance, completion and archival."""

    def __init__(
        self,
        db_session: Session,
        scheduler: Optional[SlotScheduler] = None,
        qr_issuer: Optional[QRTokenIssuer] = None,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.scheduler = scheduler or SlotScheduler(db_session)
        self.qr_issuer = qr_issuer or HMACTokenIssuer()
        self.notifier = notifier or LoggingNotifier()

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def request_reservation(
        self,
        subject_ids: List[str],
        counselor_id: str,
        scheduled_date,
        scheduled_time,
        session_type,
        topic_id: Optional[str] = None,
        notes: Optional[str] = None,
        creator_id: Optional[str] = None,
    ) -> ReservationDB:
        """
        Student-initiated booking. One subject is an individual session;
        several subjects are a group led by the first one.
        """
        subjects = _dedupe(subject_ids)
        if not subjects:
            raise ValidationError("At least one subject student is required")

        creator = str(creator_id).strip() if creator_id else subjects[0]
        is_group = len(subjects) > 1
        reservation = self.scheduler.book(
            counselor_id,
            scheduled_date,
            scheduled_time,
            session_type,
            creator_id=creator,
            subject_ids=subjects,
            counseling_type=CounselingType.GROUP if is_group else CounselingType.GENERAL,
            is_group=is_group,
            topic_id=topic_id,
            notes=notes,
        )
        dispatch(self.notifier, "reservation_requested", self._event(reservation))
        return reservation

    def request_group_reservation(
        self,
        creator_id: str,
        member_ids: List[str],
        counselor_id: str,
        scheduled_date,
        scheduled_time,
        session_type,
        topic_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReservationDB:
        """Group booking: one counselor slot, creator plus a roster of members."""
        creator = str(creator_id or "").strip()
        if not creator:
            raise ValidationError("creator_id is required")

        members = [m for m in _dedupe(member_ids) if m != creator]
        if not members:
            raise ValidationError("A group reservation needs at least one member besides the creator")

        reservation = self.scheduler.book(
            counselor_id,
            scheduled_date,
            scheduled_time,
            session_type,
            creator_id=creator,
            subject_ids=[creator] + members,
            counseling_type=CounselingType.GROUP,
            is_group=True,
            topic_id=topic_id,
            notes=notes,
        )
        dispatch(self.notifier, "reservation_requested", self._event(reservation))
        return reservation

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, reservation_id: str) -> ReservationDB:
        reservation = self.db.query(ReservationDB).filter(ReservationDB.id == reservation_id).first()
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def list_reservations(
        self,
        status: Optional[ReservationStatus] = None,
        student_id: Optional[str] = None,
        counselor_id: Optional[str] = None,
        case_id: Optional[str] = None,
        include_archived: bool = True,
    ) -> List[ReservationDB]:
        query = self.db.query(ReservationDB)
        if status is not None:
            query = query.filter(ReservationDB.status == status)
        if counselor_id:
            query = query.filter(ReservationDB.counselor_id == counselor_id)
        if case_id:
            query = query.filter(ReservationDB.case_id == case_id)
        if not include_archived:
            query = query.filter(ReservationDB.archived_at.is_(None))

        reservations = query.order_by(
            ReservationDB.scheduled_date, ReservationDB.scheduled_time, ReservationDB.created_at
        ).all()

        # subject_ids is a JSON array; filter portably in Python
        if student_id:
            reservations = [r for r in reservations if student_id in (r.subject_ids or [])]
        return reservations

    def active_for_case(self, case_id: str) -> Optional[ReservationDB]:
        return self.db.query(ReservationDB).filter(
            ReservationDB.case_id == case_id,
            ReservationDB.status.in_(ACTIVE_RESERVATION_STATUSES),
        ).first()

    # =========================================================================
    # STATUS LATTICE
    # =========================================================================

    def set_status(
        self,
        reservation_id: str,
        status,
        rejection_reason: Optional[str] = None,
        room: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReservationDB:
        try:
            target = ReservationStatus(status)
        except ValueError:
            valid = [s.value for s in ReservationStatus]
            raise ValidationError(f"Unknown reservation status '{status}'. Must be one of: {valid}")

        if target == ReservationStatus.COMPLETED:
            return self.complete(reservation_id, expected_version=expected_version)

        reason = (rejection_reason or "").strip()
        if target == ReservationStatus.REJECTED and not reason:
            raise ValidationError("A rejection reason is required")

        reservation = self.get(reservation_id)
        values: Dict[str, Any] = {}
        if target == ReservationStatus.REJECTED:
            values["rejection_reason"] = reason
        if target == ReservationStatus.APPROVED:
            if room:
                values["room"] = room.strip()
            if reservation.session_type == SessionType.IN_PERSON:
                values["qr_token"] = self.qr_issuer.issue(reservation.id)

        return self._transition(reservation, target, values, expected_version)

    def confirm_attendance(self, reservation_id: str, qr_token: Optional[str] = None) -> ReservationDB:
        """Check-in for an in-person session. Idempotent once confirmed."""
        reservation = self.get(reservation_id)

        if reservation.session_type != SessionType.IN_PERSON:
            raise ConflictError("Attendance confirmation applies to in-person sessions only")
        if reservation.status not in ATTENDANCE_STATUSES:
            raise ConflictError(
                f"Cannot confirm attendance for a reservation in status {reservation.status.value}"
            )
        if qr_token is not None and not (reservation.qr_token and tokens_match(reservation.qr_token, qr_token)):
            raise ValidationError("QR token does not match this reservation")

        if reservation.attendance_confirmed:
            return reservation

        self._write(reservation, reservation.status, {
            "attendance_confirmed": True,
            "attendance_confirmed_at": datetime.utcnow(),
        })
        self._commit()

        logger.info(f"Attendance confirmed for reservation {reservation.id}")
        dispatch(self.notifier, "attendance_confirmed", self._event(reservation))
        return reservation

    def complete(self, reservation_id: str, expected_version: Optional[int] = None) -> ReservationDB:
        reservation = self.get(reservation_id)
        if reservation.session_type == SessionType.IN_PERSON and not reservation.attendance_confirmed:
            raise ConflictError("Attendance must be confirmed before completing an in-person session")

        return self._transition(
            reservation,
            ReservationStatus.COMPLETED,
            {"completed_at": datetime.utcnow()},
            expected_version,
        )

    def archive(self, reservation_id: str) -> ReservationDB:
        """Retire a terminal reservation from active views. Never deletes."""
        reservation = self.get(reservation_id)
        if not is_terminal(reservation.status):
            raise ConflictError(f"Cannot archive a reservation in status {reservation.status.value}")
        if reservation.archived_at:
            return reservation

        self._write(reservation, reservation.status, {"archived_at": datetime.utcnow()})
        self._commit()

        logger.info(f"Reservation {reservation.id} archived")
        return reservation

    def end_for_case(self, reservation: ReservationDB, reason: str) -> ReservationDB:
        """
        Stop an active reservation because its case is being archived or
        closed by an administrative decision.
        Pending becomes rejected, approved/in counseling becomes cancelled.
        Does not commit.
        """
        if reservation.status == ReservationStatus.PENDING:
            target = ReservationStatus.REJECTED
        else:
            target = ReservationStatus.CANCELLED

        values = {"archived_at": datetime.utcnow()}
        if target == ReservationStatus.REJECTED:
            values["rejection_reason"] = reason
        self._write(reservation, target, values)
        self.scheduler.release_for(reservation)
        return reservation

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    def submit_feedback(
        self,
        reservation_id: str,
        subject_id: str,
        rating,
        comment: Optional[str] = None,
    ) -> ReservationFeedbackDB:
        """
        Record a subject's rating of a completed session.

        Rating is an integer 1-5; comment is optional. Only the reservation's
        subjects may rate, each of them once.
        """
        subject_id = (subject_id or "").strip()
        if not subject_id:
            raise ValidationError("subject_id is required")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(f"Rating must be an integer between 1 and 5, got {rating!r}")

        reservation = self.get(reservation_id)
        if reservation.status != ReservationStatus.COMPLETED:
            raise ConflictError(
                f"Feedback is accepted for completed sessions only, reservation is {reservation.status.value}"
            )
        if subject_id not in (reservation.subject_ids or []):
            raise ValidationError(f"{subject_id} is not a subject of reservation {reservation.id}")

        existing = self.db.query(ReservationFeedbackDB).filter(
            ReservationFeedbackDB.reservation_id == reservation.id,
            ReservationFeedbackDB.subject_id == subject_id,
        ).first()
        if existing:
            raise ConflictError(f"Feedback from {subject_id} already recorded for reservation {reservation.id}")

        feedback = ReservationFeedbackDB(
            id=str(uuid4()),
            reservation_id=reservation.id,
            subject_id=subject_id,
            rating=rating,
            comment=(comment or "").strip() or None,
            created_at=datetime.utcnow(),
        )
        self.db.add(feedback)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Feedback from {subject_id} already recorded for reservation {reservation.id}")
        self._commit()

        logger.info(f"Feedback {rating}/5 from {subject_id} on reservation {reservation.id}")
        event = self._event(reservation)
        event.update({"subject_id": subject_id, "rating": rating})
        dispatch(self.notifier, "reservation_feedback", event)
        return feedback

    def list_feedback(self, reservation_id: str) -> List[ReservationFeedbackDB]:
        reservation = self.get(reservation_id)
        return self.db.query(ReservationFeedbackDB).filter(
            ReservationFeedbackDB.reservation_id == reservation.id
        ).order_by(ReservationFeedbackDB.created_at, ReservationFeedbackDB.id).all()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _transition(
        self,
        reservation: ReservationDB,
        target: ReservationStatus,
        values: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> ReservationDB:
        current = reservation.status
        if target not in RESERVATION_TRANSITIONS.get(current, set()):
            logger.warning(f"Illegal reservation transition {current.value} -> {target.value} on {reservation.id}")
            raise ConflictError(f"Cannot move reservation from {current.value} to {target.value}")

        try:
            self._write(reservation, target, values, expected_version)
            if target in SLOT_RELEASING_STATUSES:
                self.scheduler.release_for(reservation)
        except ConflictError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Reservation {reservation.id}: {current.value} -> {target.value}")
        dispatch(self.notifier, f"reservation_{target.value}", self._event(reservation))
        return reservation

    def _write(
        self,
        reservation: ReservationDB,
        target: ReservationStatus,
        values: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> None:
        """Compare-and-swap on (status, version). Does not commit."""
        version = reservation.version if expected_version is None else expected_version
        if version != reservation.version:
            raise ConflictError(
                f"Reservation {reservation.id} is at version {reservation.version}, expected {version}"
            )

        updates = dict(values)
        updates.update({
            "status": target,
            "version": version + 1,
            "updated_at": datetime.utcnow(),
        })
        rows = self.db.query(ReservationDB).filter(
            ReservationDB.id == reservation.id,
            ReservationDB.status == reservation.status,
            ReservationDB.version == version,
        ).update(updates, synchronize_session="evaluate")

        if rows != 1:
            raise ConflictError(f"Reservation {reservation.id} was modified concurrently; reload and retry")

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise InfrastructureError("Reservation store unavailable") from e

    def _event(self, reservation: ReservationDB) -> Dict[str, Any]:
        return {
            "reservation_id": reservation.id,
            "case_id": reservation.case_id,
            "status": reservation.status.value,
            "counselor_id": reservation.counselor_id,
            "subject_ids": list(reservation.subject_ids or []),
            "date": reservation.scheduled_date.isoformat(),
            "time": reservation.scheduled_time,
            "session_type": reservation.session_type.value,
        }

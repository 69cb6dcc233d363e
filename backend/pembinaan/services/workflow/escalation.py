"""
Escalation Workflow

Orchestrates a disciplinary case from report to resolution:

1. report_case: classify the description (ViolationMatcher) and open the case
2. send_to_counseling: light tier, books an in-person BK session (khusus)
3. summon_parents: parental summons letter during light handling
4. send_to_administration: severe tier, Waka review meeting
5. record_administrative_decision: SP3 or drop-out on the severe path
6. complete_case / archive_case

Every mutating method commits fully or rolls back before re-raising.
Notifications go out only after commit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...exceptions import ConflictError, InfrastructureError, NotFoundError, PembinaanError, ValidationError
from ...models.db_models import (
    ActorRole, AdministrativeDecision, AdministrativeReviewDB, CaseLogDB, CaseStatus,
    CommunicationMethod, CounselingType, DisciplinaryCaseDB, EscalationTier, MatchType,
    ParentSummonsDB, ReservationDB, ReservationStatus, SessionType,
)
from ..collaborators import LoggingNotifier, Notifier, dispatch
from ..matcher import ViolationMatcher
from ..scheduling import ReservationLedger, SlotScheduler, coerce_date, coerce_time
from .state_machine import LIGHT, PENDING, SEVERE, CaseStateMachine, describe, state_of

logger = logging.getLogger(__name__)


def _required(value, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


class EscalationWorkflow:
    """Main service for disciplinary case handling."""

    def __init__(
        self,
        db_session: Session,
        matcher: Optional[ViolationMatcher] = None,
        scheduler: Optional[SlotScheduler] = None,
        ledger: Optional[ReservationLedger] = None,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.notifier = notifier or LoggingNotifier()
        self.matcher = matcher or ViolationMatcher(db_session)
        self.scheduler = scheduler or SlotScheduler(db_session)
        self.ledger = ledger or ReservationLedger(db_session, scheduler=self.scheduler, notifier=self.notifier)
        self.state_machine = CaseStateMachine(db_session)

    # =========================================================================
    # REPORTING AND READS
    # =========================================================================

    def report_case(
        self,
        student_id: str,
        class_id: str,
        raw_description: str,
        reporter_role,
        reporter_id: Optional[str] = None,
    ) -> DisciplinaryCaseDB:
        """
        Open a case and classify it synchronously.

        Raises:
            ValidationError: empty description or missing identifiers
            InfrastructureError: catalog unavailable (nothing is written)
        """
        student_id = _required(student_id, "student_id")
        class_id = _required(class_id, "class_id")
        if not str(raw_description or "").strip():
            raise ValidationError("Case description is required")
        try:
            role = ActorRole(reporter_role)
        except ValueError:
            valid = [r.value for r in ActorRole]
            raise ValidationError(f"Unknown reporter role '{reporter_role}'. Must be one of: {valid}")

        result = self.matcher.match_description(raw_description)

        case = DisciplinaryCaseDB(
            id=str(uuid4()),
            reporter_role=role,
            reporter_id=reporter_id,
            student_id=student_id,
            class_id=class_id,
            raw_description=raw_description.strip(),
            matched_violation_id=result.violation_id,
            match_type=result.match_type,
            match_confidence=result.confidence,
            match_explanation=result.explanation,
            status=CaseStatus.PENDING,
            escalation_tier=None,
            version=1,
        )
        self.db.add(case)
        self.state_machine.log(
            case,
            trigger="case_reported",
            actor=reporter_id or role.value,
            to_state=PENDING,
            metadata=result.to_dict(),
        )
        self._commit()

        logger.info(
            f"Case {case.id} reported for student {student_id}: "
            f"{result.match_type.value} ({result.confidence}%)"
        )
        dispatch(self.notifier, "case_reported", self._event(case))
        return case

    def get_case(self, case_id: str) -> DisciplinaryCaseDB:
        case = self.db.query(DisciplinaryCaseDB).filter(DisciplinaryCaseDB.id == case_id).first()
        if not case:
            raise NotFoundError(f"Case {case_id} not found")
        return case

    def list_cases(
        self,
        status: Optional[CaseStatus] = None,
        tier: Optional[EscalationTier] = None,
        student_id: Optional[str] = None,
    ) -> List[DisciplinaryCaseDB]:
        query = self.db.query(DisciplinaryCaseDB)
        if status is not None:
            query = query.filter(DisciplinaryCaseDB.status == status)
        if tier is not None:
            query = query.filter(DisciplinaryCaseDB.escalation_tier == tier)
        if student_id:
            query = query.filter(DisciplinaryCaseDB.student_id == student_id)
        return query.order_by(DisciplinaryCaseDB.created_at.desc()).all()

    def case_history(self, case_id: str) -> List[CaseLogDB]:
        self.get_case(case_id)
        return self.db.query(CaseLogDB).filter(
            CaseLogDB.case_id == case_id
        ).order_by(CaseLogDB.created_at, CaseLogDB.id).all()

    # =========================================================================
    # CLASSIFICATION OVERRIDE
    # =========================================================================

    def override_match(
        self,
        case_id: str,
        violation_id: str,
        actor: str,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """Operator assigns the catalog entry by hand: match_type manual, 100%."""
        actor = _required(actor, "actor")
        case = self.get_case(case_id)
        self._ensure_mutable(case)
        definition = self.matcher.catalog.get(violation_id)

        previous = {
            "violation_id": case.matched_violation_id,
            "match_type": case.match_type.value,
            "match_confidence": case.match_confidence,
        }
        try:
            self.state_machine.compare_and_swap(case, {
                "matched_violation_id": definition.id,
                "match_type": MatchType.MANUAL,
                "match_confidence": 100,
                "match_explanation": f"manual: assigned '{definition.name}' by {actor}",
            }, expected_version)
            self.state_machine.log(
                case,
                trigger="match_override",
                actor=actor,
                from_state=state_of(case),
                metadata={"previous": previous, "violation_id": definition.id},
            )
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Case {case.id} match overridden to '{definition.name}' by {actor}")
        return case

    # =========================================================================
    # ESCALATION
    # =========================================================================

    def escalate(
        self,
        case_id: str,
        tier,
        actor: str,
        schedule_hint: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """
        Single entry point for both tiers.

        schedule_hint for light: counselor_id, date, time, notes?
        schedule_hint for severe: meeting_date, meeting_time, recommendation?
        """
        try:
            tier = EscalationTier(tier)
        except ValueError:
            raise ValidationError(f"Unknown escalation tier '{tier}'. Must be 'light' or 'severe'")
        hint = schedule_hint or {}

        if tier == EscalationTier.LIGHT:
            case, _ = self.send_to_counseling(
                case_id,
                counselor_id=hint.get("counselor_id"),
                scheduled_date=hint.get("date"),
                scheduled_time=hint.get("time"),
                actor=actor,
                notes=hint.get("notes"),
                expected_version=expected_version,
            )
            return case

        return self.send_to_administration(
            case_id,
            recommendation=hint.get("recommendation"),
            meeting_date=hint.get("meeting_date") or hint.get("date"),
            meeting_time=hint.get("meeting_time") or hint.get("time"),
            actor=actor,
            expected_version=expected_version,
        )

    def send_to_counseling(
        self,
        case_id: str,
        counselor_id: str,
        scheduled_date,
        scheduled_time,
        actor: str,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[DisciplinaryCaseDB, ReservationDB]:
        """
        Light tier: book an in-person khusus session with a BK counselor.

        From pending this moves the case to in_progress[light]. A light case
        whose previous reservation was rejected or cancelled can be re-booked.
        """
        actor = _required(actor, "actor")
        counselor_id = _required(counselor_id, "counselor_id")
        slot_date = coerce_date(scheduled_date)
        slot_time = coerce_time(scheduled_time)

        case = self.get_case(case_id)
        self._ensure_mutable(case)
        current = state_of(case)
        if current not in (PENDING, LIGHT):
            _, message = self.state_machine.can_transition(current, "send_to_counseling")
            raise ConflictError(message)

        active = self.ledger.active_for_case(case.id)
        if active:
            logger.warning(f"Case {case.id} already has active reservation {active.id}")
            raise ConflictError(f"Case {case.id} already has an active counseling reservation")

        reservation_id = str(uuid4())
        metadata = {
            "reservation_id": reservation_id,
            "counselor_id": counselor_id,
            "date": slot_date.isoformat(),
            "time": slot_time,
        }
        try:
            if current == PENDING:
                self.state_machine.transition(
                    case, "send_to_counseling", actor=actor,
                    metadata=metadata, expected_version=expected_version,
                )
            else:
                # Re-booking keeps the state but still takes the case version
                self.state_machine.compare_and_swap(case, {}, expected_version)
                self.state_machine.log(
                    case, trigger="counseling_rebooked", actor=actor,
                    from_state=current, metadata=metadata,
                )

            # Commits the case update together with the booking
            reservation = self.scheduler.book(
                counselor_id,
                slot_date,
                slot_time,
                SessionType.IN_PERSON,
                creator_id=case.student_id,
                subject_ids=[case.student_id],
                reservation_id=reservation_id,
                case_id=case.id,
                counseling_type=CounselingType.SPECIAL,
                notes=notes,
            )
        except PembinaanError:
            self.db.rollback()
            raise

        logger.info(f"Case {case.id} sent to counseling: reservation {reservation.id}")
        dispatch(self.notifier, "case_sent_to_counseling", self._event(case, reservation_id=reservation.id))
        return case, reservation

    def send_to_administration(
        self,
        case_id: str,
        recommendation: Optional[str],
        meeting_date,
        meeting_time,
        actor: str,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """Severe tier: hand the case to the Waka with a review meeting."""
        actor = _required(actor, "actor")
        meeting_date = coerce_date(meeting_date)
        meeting_time = coerce_time(meeting_time)

        case = self.get_case(case_id)
        self._ensure_mutable(case)

        try:
            self.state_machine.transition(
                case,
                "send_to_administration",
                actor=actor,
                reason=recommendation,
                metadata={"meeting_date": meeting_date.isoformat(), "meeting_time": meeting_time},
                expected_version=expected_version,
            )
            review = AdministrativeReviewDB(
                id=str(uuid4()),
                case_id=case.id,
                recommendation=recommendation,
                meeting_date=meeting_date,
                meeting_time=meeting_time,
            )
            self.db.add(review)
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Case {case.id} sent to administration, meeting {meeting_date} {meeting_time}")
        dispatch(self.notifier, "case_sent_to_administration", self._event(case))
        return case

    def summon_parents(
        self,
        case_id: str,
        parent_name: str,
        letter_content: str,
        scheduled_date,
        scheduled_time,
        actor: str,
        parent_phone: Optional[str] = None,
        violation_details: Optional[str] = None,
        location: Optional[str] = None,
        communication_method=CommunicationMethod.MANUAL,
    ) -> ParentSummonsDB:
        """Record a parental summons on a light case. No state change."""
        actor = _required(actor, "actor")
        parent_name = _required(parent_name, "parent_name")
        letter_content = _required(letter_content, "letter_content")
        scheduled_date = coerce_date(scheduled_date)
        scheduled_time = coerce_time(scheduled_time)
        try:
            method = CommunicationMethod(communication_method)
        except ValueError:
            valid = [m.value for m in CommunicationMethod]
            raise ValidationError(f"Unknown communication method '{communication_method}'. Must be one of: {valid}")

        case = self.get_case(case_id)
        if state_of(case) != LIGHT:
            raise ConflictError(f"Parents can only be summoned for a case in {describe(LIGHT)}, not {describe(state_of(case))}")

        summons = ParentSummonsDB(
            id=str(uuid4()),
            case_id=case.id,
            parent_name=parent_name,
            parent_phone=parent_phone,
            violation_details=violation_details,
            letter_content=letter_content,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            location=location,
            communication_method=method,
            created_by=actor,
        )
        try:
            self.state_machine.compare_and_swap(case, {})
            self.db.add(summons)
            self.state_machine.log(
                case,
                trigger="parent_summons",
                actor=actor,
                from_state=LIGHT,
                metadata={"summons_id": summons.id, "communication_method": method.value},
            )
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Parent summons {summons.id} issued for case {case.id} via {method.value}")
        dispatch(self.notifier, "parent_summons", {
            **self._event(case),
            "summons_id": summons.id,
            "parent_name": parent_name,
            "parent_phone": parent_phone,
            "communication_method": method.value,
            "date": scheduled_date.isoformat(),
            "time": scheduled_time,
        })
        return summons

    def record_administrative_decision(
        self,
        case_id: str,
        decision,
        reason: str,
        actor: str,
    ) -> AdministrativeReviewDB:
        """The resolution record that allows a severe case to complete."""
        actor = _required(actor, "actor")
        reason = _required(reason, "reason")
        try:
            decision = AdministrativeDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision '{decision}'. Must be 'sp3' or 'do'")

        case = self.get_case(case_id)
        if state_of(case) != SEVERE:
            raise ConflictError(f"Administrative decisions apply to {describe(SEVERE)} cases, not {describe(state_of(case))}")
        review = case.administrative_review
        if review is None:
            raise NotFoundError(f"Case {case.id} has no administrative review")
        if review.decision is not None:
            raise ConflictError(f"Case {case.id} already has decision {review.decision.value}")

        try:
            self.state_machine.compare_and_swap(case, {})
            review.decision = decision
            review.decision_reason = reason
            review.decided_by = actor
            review.decided_at = datetime.utcnow()
            self.state_machine.log(
                case,
                trigger="administrative_decision",
                actor=actor,
                from_state=SEVERE,
                reason=reason,
                metadata={"decision": decision.value},
            )
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Case {case.id} administrative decision: {decision.value}")
        return review

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def complete_case(
        self,
        case_id: str,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """
        Light: needs a completed reservation and none still active.
        Severe: needs a recorded administrative decision; a counseling
        reservation still active at that point is ended and its slot freed.
        """
        actor = _required(actor, "actor")
        case = self.get_case(case_id)
        current = state_of(case)
        active = None

        if current == LIGHT:
            reservations = self.ledger.list_reservations(case_id=case.id)
            if any(r.is_active for r in reservations):
                raise ConflictError("Counseling session is still active; complete it first")
            if not any(r.status == ReservationStatus.COMPLETED for r in reservations):
                raise ConflictError("Light case needs a completed counseling session before completion")
        elif current == SEVERE:
            review = case.administrative_review
            if review is None or review.decision is None:
                raise ConflictError("Severe case needs an administrative decision before completion")
            active = self.ledger.active_for_case(case.id)

        try:
            self.state_machine.transition(
                case,
                "complete",
                actor=actor,
                reason=reason,
                extra_values={"completed_at": datetime.utcnow()},
                metadata={"ended_reservation_id": active.id} if active else None,
                expected_version=expected_version,
            )
            if active:
                self.ledger.end_for_case(
                    active, f"Case completed by administrative decision {review.decision.value}"
                )
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Case {case.id} completed ({case.escalation_tier.value})")
        dispatch(self.notifier, "case_completed", self._event(case))
        return case

    def archive_case(
        self,
        case_id: str,
        reason: str,
        actor: str,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """Administrative closure; ends any active counseling reservation."""
        actor = _required(actor, "actor")
        reason = _required(reason, "Archive reason")
        case = self.get_case(case_id)
        active = self.ledger.active_for_case(case.id)

        try:
            self.state_machine.transition(
                case,
                "archive",
                actor=actor,
                reason=reason,
                extra_values={"archived_at": datetime.utcnow(), "archive_reason": reason},
                metadata={"ended_reservation_id": active.id if active else None},
                expected_version=expected_version,
            )
            if active:
                self.ledger.end_for_case(active, f"Case archived: {reason}")
        except PembinaanError:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Case {case.id} archived by {actor}: {reason}")
        dispatch(self.notifier, "case_archived", self._event(case))
        return case

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _ensure_mutable(self, case: DisciplinaryCaseDB):
        if self.state_machine.is_terminal_state(case.status):
            raise ConflictError(f"Case {case.id} is {case.status.value} and can no longer change")

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Case store unavailable: {e}")
            raise InfrastructureError("Case store unavailable") from e

    def _event(self, case: DisciplinaryCaseDB, **extra) -> Dict[str, Any]:
        payload = {
            "case_id": case.id,
            "student_id": case.student_id,
            "status": case.status.value,
            "escalation_tier": case.escalation_tier.value if case.escalation_tier else None,
        }
        payload.update(extra)
        return payload

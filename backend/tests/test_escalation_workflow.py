"""
Tests for the Escalation Workflow and the case state machine.

Test Coverage:
1. Transition table (pending -> in_progress[light|severe] -> completed | archived)
2. report_case classification, validation and store failure
3. Light path: booking side effect, one active reservation, re-booking
4. Severe path: administrative review, decision gate, leftover reservation ended on completion
5. Completion gates and illegal transitions out of terminal states
6. Archival ends the active reservation
7. Manual override, optimistic versions and the immutable log
"""
from datetime import date
from unittest.mock import MagicMock

import pytest

from pembinaan.exceptions import ConflictError, InfrastructureError, ValidationError
from pembinaan.models import (
    CaseStatus, CounselingType, DisciplinaryCaseDB, EscalationTier, MatchType,
    ReservationStatus, SessionType,
)
from pembinaan.services.workflow import CaseStateMachine, EscalationWorkflow
from pembinaan.services.workflow.state_machine import LIGHT, PENDING, SEVERE

MONDAY = date(2025, 3, 3)


@pytest.fixture
def case(workflow):
    return workflow.report_case("S001", "XI-IPS-2", "Terlambat 20 menit tanpa alasan", "walas", reporter_id="G-17")


def _to_counseling(workflow, case, counselor, slot_time="09:00"):
    return workflow.send_to_counseling(
        case.id, counselor.id, MONDAY, slot_time, actor="kesiswaan-01", notes="Terlambat tiga kali"
    )


def _finish_light(workflow, ledger, case, counselor):
    _, reservation = _to_counseling(workflow, case, counselor)
    ledger.set_status(reservation.id, "approved", room="Ruang BK")
    ledger.confirm_attendance(reservation.id)
    ledger.complete(reservation.id)
    return reservation


# =============================================================================
# TEST: TRANSITION TABLE
# =============================================================================

class TestCaseStateMachine:

    def test_allowed_transitions(self, db):
        machine = CaseStateMachine(db)

        assert machine.can_transition(PENDING, "send_to_counseling")[0]
        assert machine.can_transition(PENDING, "send_to_administration")[0]
        assert machine.can_transition(LIGHT, "send_to_administration")[0]
        assert machine.can_transition(SEVERE, "complete")[0]

    def test_forbidden_transitions(self, db):
        machine = CaseStateMachine(db)

        assert not machine.can_transition(PENDING, "complete")[0]
        assert not machine.can_transition(SEVERE, "send_to_counseling")[0]
        assert not machine.can_transition((CaseStatus.COMPLETED, EscalationTier.LIGHT), "send_to_counseling")[0]
        assert not machine.can_transition((CaseStatus.ARCHIVED, None), "archive")[0]

    def test_terminal_states(self, db):
        machine = CaseStateMachine(db)

        assert machine.is_terminal_state(CaseStatus.COMPLETED)
        assert machine.is_terminal_state(CaseStatus.ARCHIVED)
        assert not machine.is_terminal_state(CaseStatus.IN_PROGRESS)

    def test_available_actions(self, db, case):
        actions = CaseStateMachine(db).available_actions(case)

        assert actions == ["archive", "send_to_administration", "send_to_counseling"]


# =============================================================================
# TEST: REPORTING
# =============================================================================

class TestReportCase:

    def test_report_classifies_and_logs(self, workflow, case, seeded_catalog):
        assert case.status == CaseStatus.PENDING
        assert case.escalation_tier is None
        assert case.match_type == MatchType.KEYWORD
        assert case.matched_violation_id == seeded_catalog["Terlambat masuk sekolah"].id
        assert case.match_confidence >= 60

        history = workflow.case_history(case.id)
        assert [e.trigger for e in history] == ["case_reported"]
        assert history[0].from_status is None
        assert history[0].actor == "G-17"

    def test_unmatched_description_still_opens_case(self, workflow):
        case = workflow.report_case("S002", "X-1", "kejadian tidak jelas", "guru")

        assert case.match_type == MatchType.NONE
        assert case.matched_violation_id is None
        assert case.status == CaseStatus.PENDING

    @pytest.mark.parametrize("description", ["", "   ", None])
    def test_empty_description_rejected(self, db, workflow, description):
        with pytest.raises(ValidationError):
            workflow.report_case("S001", "X-1", description, "walas")

        assert db.query(DisciplinaryCaseDB).count() == 0

    def test_unknown_reporter_role(self, workflow):
        with pytest.raises(ValidationError):
            workflow.report_case("S001", "X-1", "Bolos", "kepala-sekolah")

    def test_catalog_unavailable_writes_nothing(self, db):
        matcher = MagicMock()
        matcher.match_description.side_effect = InfrastructureError("Violation catalog unavailable")
        workflow = EscalationWorkflow(db, matcher=matcher)

        with pytest.raises(InfrastructureError):
            workflow.report_case("S001", "X-1", "Bolos", "walas")

        assert db.query(DisciplinaryCaseDB).count() == 0


# =============================================================================
# TEST: LIGHT PATH
# =============================================================================

class TestLightPath:

    def test_send_to_counseling_books_khusus_session(self, workflow, case, counselor):
        updated, reservation = _to_counseling(workflow, case, counselor)

        assert updated.status == CaseStatus.IN_PROGRESS
        assert updated.escalation_tier == EscalationTier.LIGHT
        assert updated.version == 2
        assert reservation.case_id == case.id
        assert reservation.session_type == SessionType.IN_PERSON
        assert reservation.counseling_type == CounselingType.SPECIAL
        assert reservation.subject_ids == ["S001"]

    def test_second_active_reservation_is_conflict(self, workflow, case, counselor):
        _to_counseling(workflow, case, counselor, "09:00")

        with pytest.raises(ConflictError):
            _to_counseling(workflow, case, counselor, "10:00")

    def test_taken_slot_leaves_case_pending(self, workflow, ledger, case, counselor):
        ledger.request_reservation(["S099"], counselor.id, MONDAY, "09:00", "in-person")

        with pytest.raises(ConflictError):
            _to_counseling(workflow, case, counselor, "09:00")

        reloaded = workflow.get_case(case.id)
        assert reloaded.status == CaseStatus.PENDING
        assert reloaded.version == 1
        assert [e.trigger for e in workflow.case_history(case.id)] == ["case_reported"]

    def test_rebook_after_rejection(self, workflow, ledger, scheduler, case, counselor):
        _, first = _to_counseling(workflow, case, counselor, "09:00")
        ledger.set_status(first.id, "rejected", rejection_reason="Konselor rapat")

        updated, second = _to_counseling(workflow, case, counselor, "10:00")

        assert updated.escalation_tier == EscalationTier.LIGHT
        assert second.id != first.id
        assert [e.trigger for e in workflow.case_history(case.id)][-1] == "counseling_rebooked"

    def test_summon_parents(self, db, seeded_catalog, scheduler, ledger, counselor):
        notifier = MagicMock()
        workflow = EscalationWorkflow(db, scheduler=scheduler, ledger=ledger, notifier=notifier)
        case = workflow.report_case("S001", "X-1", "Membolos pelajaran", "walas")
        _to_counseling(workflow, case, counselor)

        summons = workflow.summon_parents(
            case.id,
            parent_name="Bapak Hadi",
            letter_content="Mohon hadir ke sekolah.",
            scheduled_date=MONDAY,
            scheduled_time="13:00",
            actor="bk.sari",
            parent_phone="08123456789",
            communication_method="whatsapp",
        )

        assert summons.communication_method.value == "whatsapp"
        assert workflow.get_case(case.id).status == CaseStatus.IN_PROGRESS
        events = [c.args[0] for c in notifier.notify.call_args_list]
        assert "parent_summons" in events

    def test_summon_parents_requires_light_case(self, workflow, case):
        with pytest.raises(ConflictError):
            workflow.summon_parents(case.id, "Ibu Rina", "Surat panggilan", MONDAY, "13:00", actor="bk.sari")


# =============================================================================
# TEST: SEVERE PATH
# =============================================================================

class TestSeverePath:

    def test_pending_to_severe(self, workflow, case):
        updated = workflow.send_to_administration(
            case.id, "Pelanggaran berulang", MONDAY, "10:00", actor="kesiswaan-01"
        )

        assert updated.escalation_tier == EscalationTier.SEVERE
        assert updated.administrative_review.meeting_time == "10:00"

    def test_light_to_severe(self, workflow, case, counselor):
        _to_counseling(workflow, case, counselor)

        updated = workflow.escalate(
            case.id, "severe", actor="kesiswaan-01",
            schedule_hint={"meeting_date": "2025-03-04", "meeting_time": "10:00"},
        )

        assert updated.escalation_tier == EscalationTier.SEVERE

    def test_severe_cannot_go_back_to_counseling(self, workflow, case, counselor):
        workflow.send_to_administration(case.id, None, MONDAY, "10:00", actor="kesiswaan-01")

        with pytest.raises(ConflictError):
            _to_counseling(workflow, case, counselor)

    def test_invalid_meeting_time(self, workflow, case):
        with pytest.raises(ValidationError):
            workflow.send_to_administration(case.id, None, MONDAY, "25:00", actor="kesiswaan-01")

        assert workflow.get_case(case.id).status == CaseStatus.PENDING

    def test_completion_requires_decision(self, workflow, case):
        workflow.send_to_administration(case.id, None, MONDAY, "10:00", actor="kesiswaan-01")

        with pytest.raises(ConflictError):
            workflow.complete_case(case.id, actor="waka")

        review = workflow.record_administrative_decision(case.id, "sp3", "Pelanggaran ketiga", actor="waka")
        assert review.decision.value == "sp3"

        completed = workflow.complete_case(case.id, actor="waka")
        assert completed.status == CaseStatus.COMPLETED
        assert completed.escalation_tier == EscalationTier.SEVERE

    def test_completion_ends_leftover_counseling_reservation(self, workflow, ledger, scheduler, case, counselor):
        _, reservation = _to_counseling(workflow, case, counselor)
        ledger.set_status(reservation.id, "approved", room="Ruang BK")
        workflow.escalate(
            case.id, "severe", actor="kesiswaan-01",
            schedule_hint={"meeting_date": "2025-03-04", "meeting_time": "10:00"},
        )
        workflow.record_administrative_decision(case.id, "sp3", "Pelanggaran berulang", actor="waka")

        completed = workflow.complete_case(case.id, actor="waka")

        assert completed.status == CaseStatus.COMPLETED
        ended = ledger.get(reservation.id)
        assert ended.status == ReservationStatus.CANCELLED
        assert ended.archived_at is not None
        assert ledger.active_for_case(case.id) is None
        assert scheduler.get_slot(counselor.id, MONDAY, "09:00", "in-person").booked is False
        # the freed slot is bookable again
        other = scheduler.book(
            counselor.id, MONDAY, "09:00", "in-person", creator_id="S009", subject_ids=["S009"],
        )
        assert other.status == ReservationStatus.PENDING

    def test_decision_recorded_once(self, workflow, case):
        workflow.send_to_administration(case.id, None, MONDAY, "10:00", actor="kesiswaan-01")
        workflow.record_administrative_decision(case.id, "do", "Narkoba", actor="waka")

        with pytest.raises(ConflictError):
            workflow.record_administrative_decision(case.id, "sp3", "Ralat", actor="waka")

    def test_unknown_decision(self, workflow, case):
        workflow.send_to_administration(case.id, None, MONDAY, "10:00", actor="kesiswaan-01")

        with pytest.raises(ValidationError):
            workflow.record_administrative_decision(case.id, "skors", "Alasan", actor="waka")


# =============================================================================
# TEST: COMPLETION
# =============================================================================

class TestCompletion:

    def test_light_completion_after_completed_reservation(self, workflow, ledger, case, counselor):
        """Case escalated light, reservation completed -> case completes"""
        _finish_light(workflow, ledger, case, counselor)

        completed = workflow.complete_case(case.id, actor="bk.sari")

        assert completed.status == CaseStatus.COMPLETED
        assert completed.completed_at is not None

    def test_completed_cannot_return_to_in_progress(self, workflow, ledger, case, counselor):
        _finish_light(workflow, ledger, case, counselor)
        workflow.complete_case(case.id, actor="bk.sari")

        with pytest.raises(ConflictError):
            _to_counseling(workflow, case, counselor, "10:00")
        with pytest.raises(ConflictError):
            workflow.send_to_administration(case.id, None, MONDAY, "10:00", actor="kesiswaan-01")

        assert workflow.get_case(case.id).status == CaseStatus.COMPLETED

    def test_light_completion_needs_finished_session(self, workflow, case, counselor):
        _to_counseling(workflow, case, counselor)

        with pytest.raises(ConflictError):
            workflow.complete_case(case.id, actor="bk.sari")

    def test_pending_case_cannot_complete(self, workflow, case):
        with pytest.raises(ConflictError):
            workflow.complete_case(case.id, actor="bk.sari")


# =============================================================================
# TEST: ARCHIVE
# =============================================================================

class TestArchive:

    def test_archive_requires_reason(self, workflow, case):
        with pytest.raises(ValidationError):
            workflow.archive_case(case.id, "  ", actor="kesiswaan-01")

    def test_archive_ends_active_reservation(self, workflow, ledger, scheduler, case, counselor):
        _, reservation = _to_counseling(workflow, case, counselor)

        archived = workflow.archive_case(case.id, "Laporan ditarik", actor="kesiswaan-01")

        assert archived.status == CaseStatus.ARCHIVED
        assert archived.archive_reason == "Laporan ditarik"
        ended = ledger.get(reservation.id)
        assert ended.status == ReservationStatus.REJECTED
        assert ended.archived_at is not None
        assert scheduler.get_slot(counselor.id, MONDAY, "09:00", "in-person").booked is False

    def test_archive_cancels_approved_reservation(self, workflow, ledger, case, counselor):
        _, reservation = _to_counseling(workflow, case, counselor)
        ledger.set_status(reservation.id, "approved")

        workflow.archive_case(case.id, "Siswa pindah sekolah", actor="kesiswaan-01")

        assert ledger.get(reservation.id).status == ReservationStatus.CANCELLED

    def test_archived_case_is_immutable(self, workflow, case, seeded_catalog):
        workflow.archive_case(case.id, "Duplikat laporan", actor="kesiswaan-01")

        with pytest.raises(ConflictError):
            workflow.archive_case(case.id, "Lagi", actor="kesiswaan-01")
        with pytest.raises(ConflictError):
            workflow.override_match(case.id, seeded_catalog["Membolos pelajaran"].id, actor="bk.sari")


# =============================================================================
# TEST: OVERRIDE, VERSIONS, HISTORY
# =============================================================================

class TestOverrideAndVersions:

    def test_manual_override(self, workflow, case, seeded_catalog):
        target = seeded_catalog["Membolos pelajaran"]

        updated = workflow.override_match(case.id, target.id, actor="bk.sari")

        assert updated.match_type == MatchType.MANUAL
        assert updated.match_confidence == 100
        assert updated.matched_violation_id == target.id
        assert "bk.sari" in updated.match_explanation

    def test_stale_expected_version(self, workflow, case, counselor):
        with pytest.raises(ConflictError):
            workflow.send_to_administration(
                case.id, None, MONDAY, "10:00", actor="kesiswaan-01", expected_version=3
            )

        assert workflow.get_case(case.id).status == CaseStatus.PENDING

    def test_history_records_every_transition(self, workflow, ledger, case, counselor):
        _finish_light(workflow, ledger, case, counselor)
        workflow.complete_case(case.id, actor="bk.sari")

        history = workflow.case_history(case.id)

        assert [e.trigger for e in history] == ["case_reported", "send_to_counseling", "complete"]
        assert history[1].from_status == CaseStatus.PENDING
        assert history[1].to_tier == EscalationTier.LIGHT
        assert history[2].to_status == CaseStatus.COMPLETED

    def test_list_cases_filters(self, workflow, case, counselor):
        other = workflow.report_case("S002", "X-2", "Merokok di kantin", "guru")
        workflow.send_to_administration(other.id, None, MONDAY, "10:00", actor="kesiswaan-01")

        assert [c.id for c in workflow.list_cases(tier=EscalationTier.SEVERE)] == [other.id]
        assert [c.id for c in workflow.list_cases(status=CaseStatus.PENDING)] == [case.id]
        assert [c.id for c in workflow.list_cases(student_id="S002")] == [other.id]

"""
Tests for the Slot Scheduler.

Test Coverage:
1. Availability template and booking-status views
2. Book / release: active holds are never released, stale holds clear and rebook
3. Double-booking is a ConflictError, sequentially and under a threaded race
4. Group and individual bookings compete for the same slot
5. Reschedule moves the hold atomically
"""
import threading
from datetime import date

import pytest

from pembinaan.exceptions import ConflictError, NotFoundError, ValidationError
from pembinaan.models import CounselorSlotDB, ReservationDB, ReservationStatus, SessionType
from pembinaan.services.scheduling import SlotScheduler, coerce_session_type, coerce_time

MONDAY = date(2025, 3, 3)
SATURDAY = date(2025, 3, 1)


def _book(scheduler, counselor, slot_date=MONDAY, slot_time="09:00", session_type=SessionType.CHAT, student="S001"):
    return scheduler.book(
        counselor.id, slot_date, slot_time, session_type,
        creator_id=student, subject_ids=[student],
    )


# =============================================================================
# TEST: INPUT COERCION
# =============================================================================

class TestCoercion:

    @pytest.mark.parametrize("value", ["9:00", "24:00", "09:60", "nine", "", None])
    def test_invalid_time(self, value):
        with pytest.raises(ValidationError):
            coerce_time(value)

    def test_tatap_muka_alias(self):
        assert coerce_session_type("tatap-muka") == SessionType.IN_PERSON
        assert coerce_session_type("chat") == SessionType.CHAT

    def test_unknown_session_type(self):
        with pytest.raises(ValidationError):
            coerce_session_type("video")


# =============================================================================
# TEST: AVAILABILITY
# =============================================================================

class TestAvailability:

    def test_duplicate_template_entry(self, scheduler, counselor):
        with pytest.raises(ConflictError):
            scheduler.add_availability(counselor.id, MONDAY.weekday(), "09:00", "chat")

    def test_weekday_out_of_range(self, scheduler, counselor):
        with pytest.raises(ValidationError):
            scheduler.add_availability(counselor.id, 7, "09:00", "chat")

    def test_default_grid_skips_existing(self, scheduler, counselor):
        added = scheduler.add_default_availability(counselor.id, weekdays=[MONDAY.weekday()])

        # 6 hours x 2 session types, minus the 4 Monday entries from the fixture
        assert len(added) == 8

    def test_booking_status_lists_scheduled_counselors(self, scheduler, counselor):
        other = scheduler.add_counselor("Budi Santoso", "bk.budi")
        scheduler.add_availability(other.id, MONDAY.weekday(), "09:00", "chat")
        unscheduled = scheduler.add_counselor("Citra Dewi", "bk.citra")

        statuses = scheduler.booking_status(MONDAY, "09:00", "chat")

        assert [s.full_name for s in statuses] == ["Budi Santoso", "Sari Wulandari"]
        assert unscheduled.id not in [s.counselor_id for s in statuses]
        assert not any(s.booked for s in statuses)
        assert statuses[1].to_dict()["available"] is True

    def test_other_weekday_has_no_slots(self, scheduler, counselor):
        tuesday = date(2025, 3, 4)
        assert scheduler.booking_status(tuesday, "09:00", "chat") == []


# =============================================================================
# TEST: BOOK / RELEASE
# =============================================================================

class TestBooking:

    def test_book_creates_pending_reservation(self, db, scheduler, counselor):
        reservation = _book(scheduler, counselor)

        assert reservation.status == ReservationStatus.PENDING
        assert reservation.subject_ids == ["S001"]
        slot = scheduler.get_slot(counselor.id, MONDAY, "09:00", "chat")
        assert slot.booked is True
        assert slot.reservation_id == reservation.id

    def test_booked_slot_disappears_from_find_available(self, scheduler, counselor):
        _book(scheduler, counselor)

        assert scheduler.find_available(MONDAY, "09:00", "chat") == []
        statuses = scheduler.booking_status(MONDAY, "09:00", "chat")
        assert statuses[0].booked is True
        # the in-person slot at the same hour is a different key
        assert len(scheduler.find_available(MONDAY, "09:00", "in-person")) == 1

    def test_second_booking_conflicts(self, db, scheduler, counselor):
        _book(scheduler, counselor, student="S001")

        with pytest.raises(ConflictError) as exc:
            _book(scheduler, counselor, student="S002")

        assert exc.value.message == "slot already booked"
        assert db.query(ReservationDB).count() == 1

    def test_release_refuses_slot_held_by_active_reservation(self, db, scheduler, counselor):
        held = _book(scheduler, counselor)

        with pytest.raises(ConflictError) as exc:
            scheduler.release(counselor.id, MONDAY, "09:00", "chat")

        assert held.id in exc.value.message
        assert scheduler.find_available(MONDAY, "09:00", "chat") == []

        # still exactly one holder, no double booking
        with pytest.raises(ConflictError):
            _book(scheduler, counselor, student="S002")
        assert db.query(ReservationDB).count() == 1

    def test_release_clears_stale_hold(self, db, scheduler, counselor):
        held = _book(scheduler, counselor)
        # status changed behind the ledger's back, slot left booked
        db.query(ReservationDB).filter(ReservationDB.id == held.id).update(
            {"status": ReservationStatus.CANCELLED}, synchronize_session=False
        )
        db.commit()

        assert scheduler.release(counselor.id, MONDAY, "09:00", "chat") is True
        assert len(scheduler.find_available(MONDAY, "09:00", "chat")) == 1
        assert scheduler.release(counselor.id, MONDAY, "09:00", "chat") is False

        assert _book(scheduler, counselor, student="S002").subject_ids == ["S002"]

    def test_reject_then_rebook(self, db, scheduler, ledger, counselor):
        held = _book(scheduler, counselor)
        ledger.set_status(held.id, "rejected", rejection_reason="Jadwal penuh")

        rebooked = _book(scheduler, counselor, student="S002")

        slot = db.query(CounselorSlotDB).filter(CounselorSlotDB.counselor_id == counselor.id).one()
        assert slot.booked is True
        assert slot.reservation_id == rebooked.id
        # late release of the old hold leaves the new one alone
        with pytest.raises(ConflictError):
            scheduler.release(counselor.id, MONDAY, "09:00", "chat")
        assert scheduler.release_for(held) is False
        assert db.query(CounselorSlotDB).filter(CounselorSlotDB.booked == True).count() == 1  # noqa: E712

    def test_lock_pool_is_fixed(self, scheduler, counselor):
        from pembinaan.services.scheduling import slot_scheduler as module

        pool_size = len(module._slot_locks)
        _book(scheduler, counselor, slot_time="09:00")
        _book(scheduler, counselor, slot_time="10:00")

        key = (counselor.id, MONDAY, "09:00", SessionType.CHAT)
        assert module._lock_for(key) is module._lock_for((counselor.id, MONDAY, "09:00", SessionType.CHAT))
        assert len(module._slot_locks) == pool_size

    def test_unscheduled_time_is_validation_error(self, scheduler, counselor):
        with pytest.raises(ValidationError):
            _book(scheduler, counselor, slot_time="13:00")

    def test_unknown_counselor(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.book("missing", MONDAY, "09:00", "chat", creator_id="S001")

    def test_missing_creator(self, scheduler, counselor):
        with pytest.raises(ValidationError):
            scheduler.book(counselor.id, MONDAY, "09:00", "chat", creator_id=" ")

    def test_group_and_individual_cannot_share_slot(self, ledger, counselor):
        ledger.request_group_reservation("S001", ["S002", "S003"], counselor.id, MONDAY, "10:00", "in-person")

        with pytest.raises(ConflictError):
            ledger.request_reservation(["S004"], counselor.id, MONDAY, "10:00", "in-person")


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================

def _race(file_session_factory, attempts):
    """Run `attempts` concurrent bookings of one slot, each on its own session."""
    setup = file_session_factory()
    scheduler = SlotScheduler(setup)
    counselor = scheduler.add_counselor("Konselor Tujuh", "bk.tujuh")
    scheduler.add_availability(counselor.id, SATURDAY.weekday(), "09:00", "chat")
    counselor_id = counselor.id
    setup.close()

    barrier = threading.Barrier(attempts)
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt(student_id):
        session = file_session_factory()
        try:
            barrier.wait()
            reservation = SlotScheduler(session).book(
                counselor_id, "2025-03-01", "09:00", "chat", creator_id=student_id
            )
            result = ("ok", reservation.id)
        except ConflictError as e:
            result = ("conflict", e.message)
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(f"S{i:03d}",)) for i in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    check = file_session_factory()
    try:
        reservations = check.query(ReservationDB).count()
        slot = check.query(CounselorSlotDB).filter(CounselorSlotDB.counselor_id == counselor_id).one()
        return outcomes, reservations, slot.booked
    finally:
        check.close()


class TestConcurrentBooking:

    def test_two_parallel_bookings_one_wins(self, file_session_factory):
        """Counselor booked for (2025-03-01, 09:00, chat) twice in parallel"""
        outcomes, reservations, booked = _race(file_session_factory, 2)

        assert sorted(kind for kind, _ in outcomes) == ["conflict", "ok"]
        assert reservations == 1
        assert booked is True

    def test_many_parallel_bookings_exactly_one_wins(self, file_session_factory):
        outcomes, reservations, _ = _race(file_session_factory, 8)

        assert len(outcomes) == 8
        assert [kind for kind, _ in outcomes].count("ok") == 1
        assert all(message == "slot already booked" for kind, message in outcomes if kind == "conflict")
        assert reservations == 1


# =============================================================================
# TEST: RESCHEDULE
# =============================================================================

class TestReschedule:

    def test_moves_hold_to_new_slot(self, scheduler, counselor):
        reservation = _book(scheduler, counselor)

        moved = scheduler.reschedule(reservation.id, MONDAY, "10:00")

        assert moved.scheduled_time == "10:00"
        assert moved.version == 2
        assert scheduler.get_slot(counselor.id, MONDAY, "09:00", "chat").booked is False
        assert scheduler.get_slot(counselor.id, MONDAY, "10:00", "chat").reservation_id == reservation.id

    def test_target_taken_keeps_original(self, scheduler, counselor):
        first = _book(scheduler, counselor, slot_time="09:00", student="S001")
        _book(scheduler, counselor, slot_time="10:00", student="S002")

        with pytest.raises(ConflictError):
            scheduler.reschedule(first.id, MONDAY, "10:00")

        assert scheduler.get_slot(counselor.id, MONDAY, "09:00", "chat").reservation_id == first.id

    def test_approved_returns_to_pending(self, scheduler, ledger, counselor):
        reservation = _book(scheduler, counselor, session_type=SessionType.IN_PERSON)
        ledger.set_status(reservation.id, "approved", room="Ruang BK 1")

        moved = scheduler.reschedule(reservation.id, MONDAY, "10:00")

        assert moved.status == ReservationStatus.PENDING
        assert moved.qr_token is None

    def test_terminal_reservation_cannot_move(self, scheduler, ledger, counselor):
        reservation = _book(scheduler, counselor)
        ledger.set_status(reservation.id, "rejected", rejection_reason="Jadwal penuh")

        with pytest.raises(ConflictError):
            scheduler.reschedule(reservation.id, MONDAY, "10:00")

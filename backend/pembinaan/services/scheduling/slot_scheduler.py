"""
Slot Scheduler

Allocates counselor time slots. A slot is one (counselor, date, time,
session type) key; it is either free or held by exactly one reservation.

Booking discipline:
- A striped in-process lock (keyed by the slot tuple) serializes callers
  inside one worker
- The flip itself is a conditional UPDATE ... WHERE booked = false, so two
  workers (or two hosts) racing on the same row still see exactly one winner
- The unique constraint on counselor_slots covers the lazy insert of a slot
  that has never been booked before

Slots are materialized lazily from the weekly availability template
(counselor_schedules) on first booking.
"""
import logging
import re
import threading
from datetime import date, datetime, time
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import BOOKING_RACE_RETRIES, DEFAULT_TIME_SLOTS, SLOT_LOCK_STRIPES
from ...exceptions import ConflictError, InfrastructureError, NotFoundError, ValidationError
from ...models.db_models import (
    CounselingType, CounselorDB, CounselorScheduleDB, CounselorSlotDB,
    ReservationDB, ReservationStatus, SessionType,
)
from ...models.domain import SlotStatus

logger = logging.getLogger(__name__)

SlotKey = Tuple[str, date, str, SessionType]

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

SESSION_TYPE_ALIASES = {
    "tatap-muka": SessionType.IN_PERSON,
    "tatap_muka": SessionType.IN_PERSON,
    "in_person": SessionType.IN_PERSON,
    "offline": SessionType.IN_PERSON,
    "online": SessionType.CHAT,
}

RESCHEDULABLE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.APPROVED)


# =============================================================================
# INPUT COERCION
# =============================================================================

def coerce_date(value) -> date:
    """Accept a date, a datetime or an ISO 'YYYY-MM-DD' string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD")


def coerce_time(value) -> str:
    """Accept a time or an 'HH:MM' string; returns 'HH:MM'."""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text = str(value or "").strip()
    if not TIME_PATTERN.match(text):
        raise ValidationError(f"Invalid time '{value}', expected HH:MM")
    return text


def coerce_session_type(value) -> SessionType:
    if isinstance(value, SessionType):
        return value
    text = str(value or "").strip().lower()
    if text in SESSION_TYPE_ALIASES:
        return SESSION_TYPE_ALIASES[text]
    try:
        return SessionType(text)
    except ValueError:
        valid = [s.value for s in SessionType]
        raise ValidationError(f"Unknown session type '{value}'. Must be one of: {valid}")


# =============================================================================
# STRIPED SLOT LOCKS
# =============================================================================
#
# A fixed pool: memory stays bounded however many keys get booked. Two keys
# sharing a stripe only serialize; each operation takes a single stripe.
#
# =============================================================================

_slot_locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, SLOT_LOCK_STRIPES))]


def _lock_for(key: SlotKey) -> threading.Lock:
    return _slot_locks[hash(key) % len(_slot_locks)]


def _describe(key: SlotKey) -> str:
    counselor_id, slot_date, slot_time, session_type = key
    return f"{counselor_id}@{slot_date.isoformat()} {slot_time} ({session_type.value})"


class SlotScheduler:
    """Counselor availability, booking and release."""

    def __init__(self, db_session: Session, retries: int = BOOKING_RACE_RETRIES):
        """Initialize with database session."""
        self.db = db_session
        self.retries = max(0, int(retries))

    # =========================================================================
    # COUNSELORS AND AVAILABILITY
    # =========================================================================

    def add_counselor(self, full_name: str, username: str, specialty: Optional[str] = None) -> CounselorDB:
        full_name = (full_name or "").strip()
        username = (username or "").strip()
        if not full_name or not username:
            raise ValidationError("Counselor full_name and username are required")

        if self.db.query(CounselorDB).filter(CounselorDB.username == username).first():
            raise ConflictError(f"Counselor username '{username}' already exists")

        counselor = CounselorDB(
            id=str(uuid4()),
            full_name=full_name,
            username=username,
            specialty=specialty,
            active=True,
        )
        self.db.add(counselor)
        self._commit()

        logger.info(f"Counselor added: {full_name} ({username})")
        return counselor

    def get_counselor(self, counselor_id: str) -> CounselorDB:
        counselor = self.db.query(CounselorDB).filter(CounselorDB.id == counselor_id).first()
        if not counselor:
            raise NotFoundError(f"Counselor {counselor_id} not found")
        return counselor

    def list_counselors(self, active_only: bool = True) -> List[CounselorDB]:
        query = self.db.query(CounselorDB)
        if active_only:
            query = query.filter(CounselorDB.active == True)  # noqa: E712
        return query.order_by(CounselorDB.full_name, CounselorDB.id).all()

    def add_availability(self, counselor_id: str, weekday: int, slot_time, session_type) -> CounselorScheduleDB:
        """Add one weekly template entry (weekday 0 = Monday)."""
        counselor = self.get_counselor(counselor_id)
        slot_time = coerce_time(slot_time)
        session_type = coerce_session_type(session_type)
        try:
            weekday = int(weekday)
        except (TypeError, ValueError):
            raise ValidationError(f"Weekday must be an integer 0-6, got {weekday!r}")
        if not 0 <= weekday <= 6:
            raise ValidationError(f"Weekday must be between 0 (Monday) and 6 (Sunday), got {weekday}")

        existing = self.db.query(CounselorScheduleDB).filter(
            CounselorScheduleDB.counselor_id == counselor.id,
            CounselorScheduleDB.weekday == weekday,
            CounselorScheduleDB.slot_time == slot_time,
            CounselorScheduleDB.session_type == session_type,
        ).first()
        if existing:
            raise ConflictError(
                f"{counselor.full_name} already has {session_type.value} availability at {slot_time} on weekday {weekday}"
            )

        entry = CounselorScheduleDB(
            id=str(uuid4()),
            counselor_id=counselor.id,
            weekday=weekday,
            slot_time=slot_time,
            session_type=session_type,
        )
        self.db.add(entry)
        self._commit()

        logger.info(f"Availability added for {counselor.full_name}: weekday {weekday} {slot_time} {session_type.value}")
        return entry

    def add_default_availability(
        self,
        counselor_id: str,
        weekdays=range(5),
        session_types=(SessionType.CHAT, SessionType.IN_PERSON),
    ) -> List[CounselorScheduleDB]:
        """Fill the school hour grid for the given weekdays, skipping existing entries."""
        added = []
        for weekday in weekdays:
            for slot_time in DEFAULT_TIME_SLOTS:
                for session_type in session_types:
                    try:
                        added.append(self.add_availability(counselor_id, weekday, slot_time, session_type))
                    except ConflictError:
                        continue
        return added

    def availability(self, counselor_id: str) -> List[CounselorScheduleDB]:
        self.get_counselor(counselor_id)
        return self.db.query(CounselorScheduleDB).filter(
            CounselorScheduleDB.counselor_id == counselor_id
        ).order_by(CounselorScheduleDB.weekday, CounselorScheduleDB.slot_time).all()

    def is_scheduled(self, counselor_id: str, slot_date: date, slot_time: str, session_type: SessionType) -> bool:
        return self.db.query(CounselorScheduleDB.id).filter(
            CounselorScheduleDB.counselor_id == counselor_id,
            CounselorScheduleDB.weekday == slot_date.weekday(),
            CounselorScheduleDB.slot_time == slot_time,
            CounselorScheduleDB.session_type == session_type,
        ).first() is not None

    # =========================================================================
    # READS
    # =========================================================================

    def booking_status(self, slot_date, slot_time, session_type) -> List[SlotStatus]:
        """Every active counselor scheduled for the key, with its booked flag."""
        slot_date = coerce_date(slot_date)
        slot_time = coerce_time(slot_time)
        session_type = coerce_session_type(session_type)

        counselors = self.db.query(CounselorDB).join(
            CounselorScheduleDB, CounselorScheduleDB.counselor_id == CounselorDB.id
        ).filter(
            CounselorDB.active == True,  # noqa: E712
            CounselorScheduleDB.weekday == slot_date.weekday(),
            CounselorScheduleDB.slot_time == slot_time,
            CounselorScheduleDB.session_type == session_type,
        ).order_by(CounselorDB.full_name, CounselorDB.id).all()

        booked_ids = {
            counselor_id for (counselor_id,) in self.db.query(CounselorSlotDB.counselor_id).filter(
                CounselorSlotDB.slot_date == slot_date,
                CounselorSlotDB.slot_time == slot_time,
                CounselorSlotDB.session_type == session_type,
                CounselorSlotDB.booked == True,  # noqa: E712
            )
        }

        return [
            SlotStatus(
                counselor_id=c.id,
                full_name=c.full_name,
                username=c.username,
                specialty=c.specialty,
                slot_date=slot_date.isoformat(),
                slot_time=slot_time,
                session_type=session_type,
                booked=c.id in booked_ids,
            )
            for c in counselors
        ]

    def find_available(self, slot_date, slot_time, session_type) -> List[SlotStatus]:
        return [s for s in self.booking_status(slot_date, slot_time, session_type) if not s.booked]

    def get_slot(self, counselor_id: str, slot_date, slot_time, session_type) -> Optional[CounselorSlotDB]:
        return self._get_slot((
            counselor_id,
            coerce_date(slot_date),
            coerce_time(slot_time),
            coerce_session_type(session_type),
        ))

    # =========================================================================
    # BOOKING
    # =========================================================================

    def book(
        self,
        counselor_id: str,
        slot_date,
        slot_time,
        session_type,
        creator_id: str,
        subject_ids: Optional[List[str]] = None,
        reservation_id: Optional[str] = None,
        case_id: Optional[str] = None,
        counseling_type: CounselingType = CounselingType.GENERAL,
        is_group: bool = False,
        topic_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReservationDB:
        """
        Flip the slot to booked and create the pending reservation, then commit.

        Any writes already pending on the session commit (or roll back) with
        the booking. Raises ConflictError("slot already booked") if another
        caller holds the slot.
        """
        slot_date = coerce_date(slot_date)
        slot_time = coerce_time(slot_time)
        session_type = coerce_session_type(session_type)
        creator_id = str(creator_id or "").strip()
        if not creator_id:
            raise ValidationError("creator_id is required")
        subjects = [str(s) for s in (subject_ids or [creator_id])]

        counselor = self.get_counselor(counselor_id)
        if not counselor.active:
            raise ValidationError(f"Counselor {counselor.full_name} is not active")
        if not self.is_scheduled(counselor.id, slot_date, slot_time, session_type):
            raise ValidationError(
                f"{counselor.full_name} has no {session_type.value} slot at {slot_time} on {slot_date.isoformat()}"
            )

        reservation_id = reservation_id or str(uuid4())
        key = (counselor.id, slot_date, slot_time, session_type)

        with _lock_for(key):
            try:
                self._claim_slot(key, reservation_id)
                reservation = ReservationDB(
                    id=reservation_id,
                    case_id=case_id,
                    creator_id=creator_id,
                    subject_ids=subjects,
                    is_group=is_group,
                    counselor_id=counselor.id,
                    scheduled_date=slot_date,
                    scheduled_time=slot_time,
                    session_type=session_type,
                    counseling_type=counseling_type,
                    topic_id=topic_id,
                    notes=notes,
                    status=ReservationStatus.PENDING,
                    version=1,
                )
                self.db.add(reservation)
                self.db.commit()
            except ConflictError:
                self.db.rollback()
                logger.warning(f"Booking rejected, slot already booked: {_describe(key)}")
                raise
            except IntegrityError as e:
                self.db.rollback()
                if case_id:
                    raise ConflictError(f"Case {case_id} already has an active counseling reservation") from e
                raise ConflictError("slot already booked") from e
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Slot store unavailable while booking {_describe(key)}: {e}")
                raise InfrastructureError("Slot store unavailable") from e

        logger.info(f"Slot booked: {_describe(key)} -> reservation {reservation_id}")
        return reservation

    def release(
        self,
        counselor_id: str,
        slot_date,
        slot_time,
        session_type,
    ) -> bool:
        """
        Operator release of a stale hold.

        Only frees a slot whose holding reservation is gone or already
        terminal. A slot held by a pending, approved or in-counseling
        reservation is a ConflictError: reject or cancel the reservation
        through the ledger instead.

        Returns True if a booked slot was released.
        """
        key = (
            counselor_id,
            coerce_date(slot_date),
            coerce_time(slot_time),
            coerce_session_type(session_type),
        )

        with _lock_for(key):
            slot = self._get_slot(key)
            if slot is None or not slot.booked:
                return False

            holder_id = slot.reservation_id
            if holder_id:
                holder = self.db.query(ReservationDB).filter(
                    ReservationDB.id == holder_id
                ).populate_existing().first()
                if holder is not None and holder.is_active:
                    logger.warning(f"Release refused, {_describe(key)} held by {holder.status.value} reservation {holder.id}")
                    raise ConflictError(
                        f"Slot is held by {holder.status.value} reservation {holder.id}; "
                        f"reject or cancel the reservation instead"
                    )

            released = self._release(key, holder_id)
            self._commit()
        return released

    def release_for(self, reservation: ReservationDB) -> bool:
        """
        Release the slot held by a reservation that is ending or moving
        to another slot. Only touches the slot while that reservation holds it.
        Does not commit.
        """
        key = (
            reservation.counselor_id,
            reservation.scheduled_date,
            reservation.scheduled_time,
            reservation.session_type,
        )
        return self._release(key, reservation.id)

    def reschedule(
        self,
        reservation_id: str,
        new_date,
        new_time,
        counselor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReservationDB:
        """
        Move a pending or approved reservation to another slot.

        The new slot is claimed and the old one released in one transaction.
        An approved reservation goes back to pending for re-approval.
        """
        new_date = coerce_date(new_date)
        new_time = coerce_time(new_time)

        reservation = self.db.query(ReservationDB).filter(ReservationDB.id == reservation_id).first()
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if reservation.status not in RESCHEDULABLE_STATUSES:
            raise ConflictError(f"Cannot reschedule a reservation in status {reservation.status.value}")

        counselor = self.get_counselor(counselor_id or reservation.counselor_id)
        session_type = reservation.session_type
        unchanged = (
            counselor.id == reservation.counselor_id
            and new_date == reservation.scheduled_date
            and new_time == reservation.scheduled_time
        )
        if unchanged:
            return reservation

        if not self.is_scheduled(counselor.id, new_date, new_time, session_type):
            raise ValidationError(
                f"{counselor.full_name} has no {session_type.value} slot at {new_time} on {new_date.isoformat()}"
            )

        version = reservation.version if expected_version is None else expected_version
        if version != reservation.version:
            raise ConflictError(f"Reservation {reservation.id} is at version {reservation.version}, expected {version}")

        previous_status = reservation.status
        values = {
            "counselor_id": counselor.id,
            "scheduled_date": new_date,
            "scheduled_time": new_time,
            "version": version + 1,
            "updated_at": datetime.utcnow(),
        }
        if previous_status == ReservationStatus.APPROVED:
            values.update({"status": ReservationStatus.PENDING, "qr_token": None, "room": None})

        key = (counselor.id, new_date, new_time, session_type)
        with _lock_for(key):
            try:
                self._claim_slot(key, reservation.id)
                self.release_for(reservation)
                rows = self.db.query(ReservationDB).filter(
                    ReservationDB.id == reservation.id,
                    ReservationDB.version == version,
                    ReservationDB.status == previous_status,
                ).update(values, synchronize_session="evaluate")
                if rows != 1:
                    raise ConflictError(f"Reservation {reservation.id} was modified concurrently; reload and retry")
                self.db.commit()
            except ConflictError:
                self.db.rollback()
                logger.warning(f"Reschedule of {reservation_id} rejected for {_describe(key)}")
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                raise InfrastructureError("Slot store unavailable") from e

        logger.info(f"Reservation {reservation.id} rescheduled to {_describe(key)}")
        return reservation

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _slot_query(self, key: SlotKey):
        counselor_id, slot_date, slot_time, session_type = key
        return self.db.query(CounselorSlotDB).filter(
            CounselorSlotDB.counselor_id == counselor_id,
            CounselorSlotDB.slot_date == slot_date,
            CounselorSlotDB.slot_time == slot_time,
            CounselorSlotDB.session_type == session_type,
        )

    def _release(self, key: SlotKey, holder_id: Optional[str]) -> bool:
        """Flip booked back to false only while `holder_id` still holds the slot."""
        query = self._slot_query(key).filter(CounselorSlotDB.booked == True)  # noqa: E712
        if holder_id:
            query = query.filter(CounselorSlotDB.reservation_id == holder_id)
        else:
            query = query.filter(CounselorSlotDB.reservation_id.is_(None))

        rows = query.update(
            {"booked": False, "reservation_id": None, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
        if rows:
            logger.info(f"Slot released: {_describe(key)}")
        return rows > 0

    def _get_slot(self, key: SlotKey) -> Optional[CounselorSlotDB]:
        return self._slot_query(key).populate_existing().first()

    def _claim_slot(self, key: SlotKey, reservation_id: str) -> CounselorSlotDB:
        """
        Re-check booked = false and flip it, retrying on a lost race.
        Caller holds the key lock and owns commit/rollback.
        """
        counselor_id, slot_date, slot_time, session_type = key

        for attempt in range(self.retries + 1):
            slot = self._get_slot(key)

            if slot is None:
                slot = CounselorSlotDB(
                    id=str(uuid4()),
                    counselor_id=counselor_id,
                    slot_date=slot_date,
                    slot_time=slot_time,
                    session_type=session_type,
                    booked=True,
                    reservation_id=reservation_id,
                )
                self.db.add(slot)
                try:
                    self.db.flush()
                except IntegrityError as e:
                    # Another worker materialized and took this slot first
                    raise ConflictError("slot already booked") from e
                return slot

            if slot.booked:
                raise ConflictError("slot already booked")

            rows = self._slot_query(key).filter(
                CounselorSlotDB.booked == False  # noqa: E712
            ).update(
                {"booked": True, "reservation_id": reservation_id, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )
            self.db.expire(slot)
            if rows == 1:
                return slot

            logger.warning(f"Booking race detected on {_describe(key)} (attempt {attempt + 1})")

        raise ConflictError("slot already booked")

    def _commit(self):
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Scheduling record already exists") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise InfrastructureError("Slot store unavailable") from e

"""
Counselor slot allocation and the reservation ledger built on top of it.
"""
from .slot_scheduler import SlotScheduler, coerce_date, coerce_session_type, coerce_time
from .reservation_ledger import ReservationLedger, RESERVATION_TRANSITIONS

__all__ = [
    "SlotScheduler",
    "ReservationLedger",
    "RESERVATION_TRANSITIONS",
    "coerce_date",
    "coerce_session_type",
    "coerce_time",
]

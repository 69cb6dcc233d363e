#!/usr/bin/env python3
"""
Counselor Seed Script
Registers a BK counselor with the default school hour grid
(Monday-Friday, chat and in-person).

Usage:
    python -m scripts.seed_counselor <username> "<full name>" [specialty]

Example:
    python -m scripts.seed_counselor bk.sari "Sari Wulandari, S.Pd" karir
"""
import sys

from sqlalchemy.orm import Session

from pembinaan.database import SessionLocal, init_db
from pembinaan.exceptions import PembinaanError
from pembinaan.models.db_models import CounselorDB
from pembinaan.services.scheduling import SlotScheduler


def seed_counselor(username: str, full_name: str, specialty: str = None) -> bool:
    """Create the counselor if missing and fill its weekly availability."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        scheduler = SlotScheduler(db)
        counselor = db.query(CounselorDB).filter(CounselorDB.username == username).first()
        if counselor:
            print(f"Counselor '{username}' already exists, filling missing availability.")
        else:
            counselor = scheduler.add_counselor(full_name, username, specialty)
            print(f"Counselor created: {counselor.full_name} ({counselor.id})")

        added = scheduler.add_default_availability(counselor.id)
        print(f"  Availability entries added: {len(added)}")
        return True

    except PembinaanError as e:
        print(f"Error seeding counselor: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    specialty = sys.argv[3] if len(sys.argv) == 4 else None
    sys.exit(0 if seed_counselor(sys.argv[1], sys.argv[2], specialty) else 1)


if __name__ == "__main__":
    main()

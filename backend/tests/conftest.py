"""
Shared fixtures: SQLite-backed sessions and a small seeded school setup.
"""
import os

# Engine in pembinaan.database is created at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pembinaan.database import Base
from pembinaan.models import db_models  # noqa: F401
from pembinaan.models import CatalogEntry, SessionType, ViolationCategory
from pembinaan.services.catalog import ViolationCatalog
from pembinaan.services.scheduling import ReservationLedger, SlotScheduler
from pembinaan.services.workflow import EscalationWorkflow


MONDAY = date(2025, 3, 3)
SATURDAY = date(2025, 3, 1)

CATALOG = [
    ("Terlambat masuk sekolah", ViolationCategory.ATTENDANCE, 10),
    ("Membolos pelajaran", ViolationCategory.ATTENDANCE, 25),
    ("Tidak memakai seragam lengkap", ViolationCategory.UNIFORM, 10),
    ("Berkelahi dengan teman", ViolationCategory.PERSONAL_CONDUCT, 50),
    ("Merokok di lingkungan sekolah", ViolationCategory.HEALTH, 40),
    ("Membawa senjata tajam", ViolationCategory.ORDER, 75),
]


@pytest.fixture
def catalog_entries():
    """Catalog snapshot for the pure matcher, no database involved."""
    return [
        CatalogEntry(id=f"v{i}", name=name, category=category, weight=weight)
        for i, (name, category, weight) in enumerate(CATALOG, start=1)
    ]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite so concurrent threads use separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pembinaan.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def seeded_catalog(db):
    catalog = ViolationCatalog(db)
    return {
        name: catalog.add_definition(name, category, weight)
        for name, category, weight in CATALOG
    }


@pytest.fixture
def scheduler(db):
    return SlotScheduler(db)


@pytest.fixture
def counselor(scheduler):
    """BK counselor available Monday 09:00/10:00 (both types) and Saturday 09:00 chat."""
    counselor = scheduler.add_counselor("Sari Wulandari", "bk.sari", "karir")
    for slot_time in ("09:00", "10:00"):
        scheduler.add_availability(counselor.id, MONDAY.weekday(), slot_time, SessionType.IN_PERSON)
        scheduler.add_availability(counselor.id, MONDAY.weekday(), slot_time, SessionType.CHAT)
    scheduler.add_availability(counselor.id, SATURDAY.weekday(), "09:00", SessionType.CHAT)
    return counselor


@pytest.fixture
def ledger(db, scheduler):
    return ReservationLedger(db, scheduler=scheduler)


@pytest.fixture
def workflow(db, scheduler, ledger, seeded_catalog):
    return EscalationWorkflow(db, scheduler=scheduler, ledger=ledger)

#!/usr/bin/env python3
"""
Violation Catalog Seed Script
Imports the school's violation point table (poin pelanggaran) from a
JSON or CSV export.

Usage:
    python -m scripts.seed_catalog <catalog.json|catalog.csv>

CSV headers: name, category, weight, description
(nama_pelanggaran, kategori, poin, keterangan are accepted too)
"""
import sys

from sqlalchemy.orm import Session

from pembinaan.database import SessionLocal, init_db
from pembinaan.exceptions import PembinaanError
from pembinaan.services.catalog import ViolationCatalog
from pembinaan.services.collaborators import catalog_source_for


def seed_catalog(path: str) -> bool:
    """Import catalog rows from a file into the database."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        source = catalog_source_for(path)
        summary = ViolationCatalog(db).bulk_import(source.rows())

        print("Catalog import finished")
        print(f"  Created: {len(summary.created)}")
        print(f"  Updated: {len(summary.updated)}")
        for name in summary.locked:
            print(f"  Locked (already matched by a case): {name}")
        for skipped in summary.skipped:
            print(f"  Skipped row {skipped['row']} ({skipped['name']}): {skipped['reason']}")
        return True

    except (PembinaanError, OSError) as e:
        print(f"Error importing catalog: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if seed_catalog(sys.argv[1]) else 1)


if __name__ == "__main__":
    main()

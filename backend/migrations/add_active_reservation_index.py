"""
Migration: Add partial unique index for one active reservation per case.

A disciplinary case may hold at most one reservation in pending, approved
or in_counseling. The workflow checks this before booking; the index makes
the database reject a second concurrent insert as well (PostgreSQL only).
"""
from sqlalchemy import create_engine, text

from pembinaan.config import DATABASE_URL

INDEX_NAME = "uq_reservations_one_active_per_case"


def run_migration():
    """Create the partial unique index on reservations(case_id)."""
    engine = create_engine(DATABASE_URL)

    if engine.dialect.name != "postgresql":
        print(f"Skipping {INDEX_NAME}: partial indexes are only managed on PostgreSQL")
        return

    with engine.connect() as conn:
        result = conn.execute(text("""
            SELECT indexname
            FROM pg_indexes
            WHERE tablename = 'reservations' AND indexname = :name
        """), {"name": INDEX_NAME})

        if result.fetchone():
            print(f"{INDEX_NAME} already exists")
        else:
            conn.execute(text(f"""
                CREATE UNIQUE INDEX {INDEX_NAME}
                ON reservations (case_id)
                WHERE case_id IS NOT NULL
                  AND status IN ('pending', 'approved', 'in_counseling')
            """))
            print(f"Added {INDEX_NAME} to reservations table")

        conn.commit()


if __name__ == "__main__":
    run_migration()

#!/usr/bin/env python3
"""
Audit the stored calendar for broken invariants.
Run this after migrations or manual data fixes to check nothing drifted.
"""
import logging
import sys

from sqlmodel import Session, text

from db import engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CHECKS = {
    # two slots for one employee at the same instant
    "duplicate_slots": """
        SELECT employee_id, start_time, COUNT(*) AS count
        FROM slots
        GROUP BY employee_id, start_time
        HAVING COUNT(*) > 1
    """,
    # BOOKED slot with no session
    "booked_without_session": """
        SELECT s.id, s.start_time
        FROM slots s
        LEFT JOIN sessions se ON se.slot_id = s.id
        WHERE s.type = 'BOOKED' AND se.id IS NULL
    """,
    # session whose slot is missing or not BOOKED
    "session_without_booked_slot": """
        SELECT se.id, se.slot_id
        FROM sessions se
        LEFT JOIN slots s ON s.id = se.slot_id
        WHERE s.id IS NULL OR s.type <> 'BOOKED'
    """,
    # denormalized start time drifted from the slot
    "session_start_mismatch": """
        SELECT se.id, se.start_time, s.start_time
        FROM sessions se
        JOIN slots s ON s.id = se.slot_id
        WHERE se.start_time <> s.start_time
    """,
    "invalid_duration": """
        SELECT id, duration FROM slots WHERE duration NOT IN (30, 45, 60)
    """,
}


def check_calendar(session: Session) -> dict[str, list]:
    """Run every check; returns the offending rows per check (empty when clean)."""
    problems = {}
    for name, query in CHECKS.items():
        rows = session.exec(text(query)).fetchall()
        problems[name] = [tuple(row) for row in rows]
        if rows:
            logger.warning(f"⚠️  {name}: {len(rows)} rows")
            for row in rows[:5]:
                logger.warning(f"   - {tuple(row)}")
        else:
            logger.info(f"✅ {name}: ok")
    return problems


if __name__ == "__main__":
    with Session(engine) as session:
        problems = check_calendar(session)
    sys.exit(1 if any(problems.values()) else 0)

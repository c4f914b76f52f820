"""
Migration: Install the change feed triggers.

This migration:
1. Adds AFTER INSERT/UPDATE/DELETE row triggers on slots and sessions
2. Each trigger appends a JSON snapshot of the row to change_events
3. Handles both PostgreSQL and SQLite
"""
import logging

from sqlalchemy import text

logger = logging.getLogger(__name__)

TABLE_COLUMNS = {
    "slots": ["id", "employee_id", "type", "start_time", "duration", "recurring", "created_at", "updated_at"],
    "sessions": [
        "id", "slot_id", "employee_id", "customer_id", "start_time", "message", "created_at", "updated_at",
    ],
}

SQLITE_ACTIONS = {"INSERT": ("create", "NEW"), "UPDATE": ("update", "NEW"), "DELETE": ("delete", "OLD")}


def is_postgres(engine):
    """Check if database is PostgreSQL."""
    return "postgresql" in str(engine.url).lower()


def migrate(engine):
    """Run migration."""
    with engine.connect() as conn:
        trans = conn.begin()

        try:
            if is_postgres(engine):
                migrate_postgres(conn)
            else:
                migrate_sqlite(conn)

            trans.commit()
            logger.info("Migration 001 completed successfully")
        except Exception as e:
            trans.rollback()
            logger.error(f"Migration 001 failed: {str(e)}")
            raise


def migrate_postgres(conn):
    """PostgreSQL migration: one shared trigger function, one trigger per table."""
    logger.info("Installing PostgreSQL change feed triggers...")
    conn.execute(text("""
        CREATE OR REPLACE FUNCTION publish_change_event() RETURNS trigger AS $$
        BEGIN
            IF TG_OP = 'DELETE' THEN
                INSERT INTO change_events (topic, event_action, row_data, created_at)
                VALUES (TG_ARGV[0], 'delete', to_jsonb(OLD)::text, now());
                RETURN OLD;
            END IF;
            INSERT INTO change_events (topic, event_action, row_data, created_at)
            VALUES (
                TG_ARGV[0],
                CASE WHEN TG_OP = 'INSERT' THEN 'create' ELSE 'update' END,
                to_jsonb(NEW)::text,
                now()
            );
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """))
    for table in TABLE_COLUMNS:
        # Recreate so the trigger always points at the current function
        conn.execute(text(f"DROP TRIGGER IF EXISTS {table}_change_feed ON {table}"))
        conn.execute(text(f"""
            CREATE TRIGGER {table}_change_feed
            AFTER INSERT OR UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION publish_change_event('{table}')
        """))
        logger.info(f"✅ Trigger installed on {table}")


def migrate_sqlite(conn):
    """SQLite migration: one trigger per table and operation, json_object snapshots."""
    logger.info("Installing SQLite change feed triggers...")

    result = conn.execute(text("""
        SELECT name FROM sqlite_master
        WHERE type='table' AND name='change_events'
    """))
    if not result.fetchone():
        logger.info("change_events table does not exist, skipping migration")
        return

    for table, columns in TABLE_COLUMNS.items():
        for operation, (action, ref) in SQLITE_ACTIONS.items():
            snapshot = ", ".join(f"'{column}', {ref}.{column}" for column in columns)
            conn.execute(text(f"""
                CREATE TRIGGER IF NOT EXISTS {table}_change_feed_{operation.lower()}
                AFTER {operation} ON {table}
                BEGIN
                    INSERT INTO change_events (topic, event_action, row_data, created_at)
                    VALUES ('{table}', '{action}', json_object({snapshot}), CURRENT_TIMESTAMP);
                END
            """))
        logger.info(f"✅ Triggers installed on {table}")


if __name__ == "__main__":
    from db import engine
    migrate(engine)

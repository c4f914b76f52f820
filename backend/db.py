import logging
import os
from contextlib import contextmanager

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine

from errors import SchedulingError

logger = logging.getLogger(__name__)

# Get database URL from environment, default to SQLite for local dev
db_path = os.getenv("DATABASE_PATH", "./calendar.db")
env = os.getenv("ENV", os.getenv("RENDER", "").lower() or "dev")

if os.getenv("DATABASE_URL"):
    DATABASE_URL = os.getenv("DATABASE_URL")
else:
    # Guard against SQLite fallback in production
    if env in ("prod", "production") or os.getenv("RENDER"):
        raise RuntimeError(
            "DATABASE_URL missing in production; refusing to start with SQLite. "
            "Please configure DATABASE_URL environment variable."
        )
    DATABASE_URL = f"sqlite:///{db_path}"

# Hosted Postgres hands out postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

db_driver = DATABASE_URL.split(":", 1)[0] if ":" in DATABASE_URL else "unknown"
logger.info(f"DB_URL_DRIVER={db_driver}")

CHANGE_FEED_POLL_INTERVAL = float(os.getenv("CHANGE_FEED_POLL_INTERVAL", "1.0"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)


def is_postgres(bind) -> bool:
    """Check if an engine or connection talks to PostgreSQL."""
    return bind.dialect.name == "postgresql"


def create_db_and_tables():
    """Create database and tables if they don't exist.
    This is safe to call multiple times - it won't wipe existing data.
    """
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)


def get_session():
    """Get database session."""
    with Session(engine) as session:
        yield session


@contextmanager
def transaction(session: Session, action: str):
    """Run one user action as a single unit of work.

    Commits on success. Domain failures and uniqueness races are rolled back
    and re-raised for the exception handlers; anything else is rolled back,
    logged and turned into a generic 500.
    """
    try:
        yield session
        session.commit()
    except SchedulingError as e:
        session.rollback()
        logger.warning(f"{action} failed: {e}")
        raise
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"{action} hit a uniqueness conflict: {e.orig}")
        raise
    except HTTPException:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Error in {action}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error.") from e

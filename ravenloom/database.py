import logging
import os
from pathlib import Path
from typing import Optional

from alembic import command as alembic_command
from alembic.config import Config as alembic_Config
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

# load .env file
load_dotenv()

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """
    Get database URL from Settings.

    Priority:
    1. DATABASE_URL
    2. PostgreSQL built from POSTGRES_* components
    3. SQLite fallback for development only
    """
    from ravenloom.settings import get_settings

    return get_settings().database_url


def create_db_engine(database_url: str):
    """
    Create SQLAlchemy engine with appropriate settings for the database type.
    """
    if database_url.startswith("sqlite"):
        # SQLite requires check_same_thread=False for FastAPI
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


DATABASE_URL = get_database_url()
engine = create_db_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_postgres_database(database_url: Optional[str] = None) -> bool:
    """
    Check if the database URL is for PostgreSQL.

    Args:
        database_url: Database URL to check. If None, uses the current DATABASE_URL.
    """
    if database_url is None:
        database_url = DATABASE_URL
    return bool(database_url) and database_url.startswith("postgresql")


def should_auto_migrate() -> bool:
    """Check if AUTO_MIGRATE is enabled via environment variable."""
    return os.getenv("AUTO_MIGRATE", "false").lower() in ("true", "1", "yes")


def run_alembic_upgrade() -> None:
    """
    Run Alembic migrations to upgrade the database to head.

    alembic.ini lives at the repository root, next to the alembic/ directory.
    """
    root_dir = Path(__file__).resolve().parent.parent
    alembic_ini_path = root_dir / "alembic.ini"

    if not alembic_ini_path.exists():
        logger.error("alembic.ini not found at %s", alembic_ini_path)
        return

    logger.info("Running Alembic migrations from %s", alembic_ini_path)
    config = alembic_Config(str(alembic_ini_path))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    alembic_command.upgrade(config, "head")
    logger.info("Alembic migrations completed successfully")


def init_database() -> None:
    """
    Prepare the schema on startup.

    PostgreSQL with AUTO_MIGRATE=true is upgraded through Alembic; everything
    else (SQLite, local runs) gets create_all, which is a no-op for existing
    tables.
    """
    # Register all mapped tables on Base.metadata
    import ravenloom.models  # noqa: F401

    if should_auto_migrate() and is_postgres_database():
        logger.info("AUTO_MIGRATE enabled - running database migrations")
        run_alembic_upgrade()
        return

    Base.metadata.create_all(bind=engine)

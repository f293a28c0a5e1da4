import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool

from config.settings import get_settings

# Configure logging
logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # ==========================================================================
    # SQLite (local development / single instance)
    # ==========================================================================
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False,
        future=True
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("Database mode: SQLite")
else:
    # ==========================================================================
    # PostgreSQL - conservative pool, worker threads and API share it
    # ==========================================================================
    engine = create_engine(
        DATABASE_URL,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=300,
        pool_pre_ping=True,
        echo=False,
        pool_reset_on_return='rollback',
        isolation_level="READ_COMMITTED",
        future=True
    )
    logger.info("Database mode: PostgreSQL (QueuePool)")

# Create a session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Define a base class for the models
Base = declarative_base()


def get_db():
    """
    Database dependency with rollback on error and guaranteed close
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database session error: {e}")
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.error(f"Error during rollback: {rollback_error}")
        raise
    finally:
        try:
            db.close()
        except Exception as close_error:
            logger.error(f"Error closing database session: {close_error}")


def test_db_connection() -> bool:
    """Test database connection - useful for health checks"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False


def get_pool_status():
    """Return current connection pool status for monitoring"""
    try:
        pool = engine.pool
        if not isinstance(pool, QueuePool):
            return {"pool_class": type(pool).__name__}
        capacity = pool.size() + pool._max_overflow
        return {
            "pool_size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
            "checked_in": pool.checkedin(),
            "total_capacity": capacity,
            "connection_utilization": f"{pool.checkedout()}/{capacity}",
            "pool_status": "healthy" if pool.checkedout() < capacity * 0.8 else "warning"
        }
    except Exception as e:
        logger.error(f"Error getting pool status: {e}")
        return {"error": "Could not retrieve pool status"}

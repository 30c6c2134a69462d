"""
Database connection and session management for the application.
Handles connection to MySQL-compatible databases (or SQLite for local runs) using SQLModel.
"""
import logging
from typing import Generator
from urllib.parse import urlparse

from sqlmodel import create_engine, Session, SQLModel, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy import event

from wanderchat.core.config import settings

logger = logging.getLogger(__name__)

# Global engine variable - will be initialized lazily
_engine = None


def _register_mysql_session_variables(engine):
    @event.listens_for(engine, "connect")
    def set_database_session_variables(dbapi_connection, connection_record):
        """Set database-specific session variables."""
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("SET SESSION sql_mode = 'STRICT_TRANS_TABLES,NO_ZERO_IN_DATE,ERROR_FOR_DIVISION_BY_ZERO'")
            cursor.close()
        except Exception as e:
            logger.warning(f"Failed to set database session variables: {e}")


def get_engine():
    """Get or create the SQLAlchemy engine with proper settings."""
    global _engine
    if _engine is None:
        if settings.is_sqlite:
            # In-memory SQLite must share one connection across threads
            _engine = create_engine(
                settings.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=settings.debug,
            )
        else:
            try:
                _engine = create_engine(
                    settings.database_url,
                    poolclass=QueuePool,
                    pool_size=settings.db_pool_size,
                    max_overflow=settings.db_max_overflow,
                    pool_timeout=settings.db_pool_timeout,
                    pool_pre_ping=True,  # Validate connections before use
                    pool_recycle=settings.db_pool_recycle,
                    echo=settings.debug,  # Log SQL queries in debug mode
                )
            except ImportError:
                logger.critical("mysql-connector-python is not installed. Please install it with: pip install mysql-connector-python")
                raise
            _register_mysql_session_variables(_engine)
        logger.info(f"Database engine created for {urlparse(settings.database_url).scheme}")
    return _engine


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency to get a database session using SQLModel.
    Ensures the session is properly closed and rolled back on error.
    """
    with Session(get_engine()) as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}", exc_info=True)
            session.rollback()
            raise


def _create_database_if_not_exists():
    """
    Create the MySQL database named in the URL if it doesn't already exist.
    This command cannot be run inside a transaction, so it uses a temporary
    autocommit engine without a default database.
    """
    parsed = urlparse(settings.database_url)
    db_name = parsed.path.lstrip('/') or settings.mysql_database
    password_part = f":{parsed.password}" if parsed.password else ""
    server_url = f"{parsed.scheme}://{parsed.username}{password_part}@{parsed.hostname}:{parsed.port or settings.mysql_port}"

    temp_engine = create_engine(server_url, connect_args={"autocommit": True})
    with temp_engine.connect() as connection:
        connection.execute(text(f"CREATE DATABASE IF NOT EXISTS `{db_name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"))
        logger.info(f"Database '{db_name}' created or already exists.")
    temp_engine.dispose()


def create_db_and_tables():
    """
    Create the database if it doesn't exist and then create all tables using SQLModel.
    This function is designed to be idempotent and safe to run on startup.
    """
    logger.info("Attempting to create database and tables...")
    try:
        if not settings.is_sqlite:
            _create_database_if_not_exists()

        # Import all models to ensure they are registered with SQLModel.metadata
        import wanderchat.models  # noqa: F401

        with get_engine().begin() as conn:
            SQLModel.metadata.create_all(conn)

        logger.info("Database tables created successfully with SQLModel.")

    except Exception as e:
        logger.error(f"An error occurred during database and table creation: {e}", exc_info=True)
        raise


def check_database_connection() -> bool:
    """
    Checks if a connection to the database can be established.

    Returns:
        bool: True if connection is successful, False otherwise.
    """
    try:
        with get_engine().connect() as connection:
            connection.scalar(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


class DatabaseManager:
    """A manager for handling database sessions and health checks using SQLModel."""

    def get_session(self) -> Session:
        """Provides a new SQLModel database session."""
        return Session(get_engine())

    def close_all_connections(self):
        """Close all database connections."""
        try:
            get_engine().dispose()
            logger.info("All database connections closed.")
        except Exception as e:
            logger.error(f"Error closing database connections: {e}")

    def health_check(self) -> dict:
        """
        Performs a health check of the database connection.

        Returns:
            dict: A dictionary with the health status and details.
        """
        status = {"database": "unhealthy", "details": {}}
        try:
            if check_database_connection():
                status["database"] = "healthy"
                pool = get_engine().pool
                if isinstance(pool, QueuePool):
                    status["details"] = {
                        "pool_size": pool.size(),
                        "checked_in_connections": pool.checkedin(),
                        "checked_out_connections": pool.checkedout(),
                        "overflow_connections": pool.overflow(),
                    }
            else:
                status["details"]["error"] = "Failed to establish a basic connection."
        except Exception as e:
            status["details"]["error"] = str(e)

        return status


# Global database manager instance
db_manager = DatabaseManager()

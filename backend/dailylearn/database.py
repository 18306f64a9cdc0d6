from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.engine import Engine
import os
import time
import logging

from dailylearn.config import get_settings

# Set up query logger
query_logger = logging.getLogger("sqlalchemy.query_timing")
query_logger.setLevel(logging.DEBUG if os.getenv("DEBUG_QUERIES") else logging.WARNING)

settings = get_settings()

# Slow query threshold in milliseconds
SLOW_QUERY_THRESHOLD_MS = settings.slow_query_threshold_ms

# Database URL - SQLite for local development, PostgreSQL in production
DATABASE_URL = settings.database_url


def build_engine(url: str) -> Engine:
    """Create an engine with pool settings suited to the database type."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

    # PostgreSQL with production-ready pool settings
    return create_engine(
        url,
        pool_pre_ping=True,      # Detect stale connections
        pool_recycle=1800,       # Recycle connections after 30 minutes
        pool_size=5,             # Base pool connections
        max_overflow=10,         # Additional connections under load
        pool_timeout=30,         # Wait for connection timeout
    )


engine = build_engine(DATABASE_URL)


# Query timing event listeners for slow query logging
@event.listens_for(Engine, "before_cursor_execute")
def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(Engine, "after_cursor_execute")
def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Log slow queries."""
    start_times = conn.info.get("query_start_time", [])
    if start_times:
        total_time_ms = (time.perf_counter() - start_times.pop()) * 1000

        if total_time_ms > SLOW_QUERY_THRESHOLD_MS:
            truncated_statement = statement[:500] + "..." if len(statement) > 500 else statement
            query_logger.warning(
                f"SLOW QUERY ({total_time_ms:.2f}ms): {truncated_statement}"
            )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    """Dependency for FastAPI routes"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

"""Pytest configuration and fixtures for ReviewPulse Core tests.

This module provides fixtures for:
- Database: SQLite in-memory engine and sessions
- Settings: test settings with safe defaults
- Observability: an isolated metrics collector and event sink
"""

from collections.abc import Generator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from reviewpulse_core.config import Settings
from reviewpulse_core.domain.models import Base


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        mysql_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        inference_url="http://inference.test",
        inference_model="test-model",
        log_json=False,
    )


# -----------------------------------------------------------------------------
# Synchronous Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # SQLite only supports autoincrement on INTEGER PRIMARY KEY, so compile
    # BigInteger as INTEGER while the tables are created
    from sqlalchemy.dialects import sqlite

    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"

    Base.metadata.create_all(bind=engine)

    sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# -----------------------------------------------------------------------------
# Observability Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def metrics_collector():
    """A fresh metrics collector, isolated from the process-global one."""
    from reviewpulse_core.observability.metrics import MetricsCollector

    return MetricsCollector()


@pytest.fixture
def event_sink(db_session, metrics_collector):
    """Event sink writing to the test database."""
    from reviewpulse_core.observability.sink import PipelineEventSink

    return PipelineEventSink(db_session, collector=metrics_collector)


# -----------------------------------------------------------------------------
# Extraction Mocks
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_extractor():
    """Theme extractor returning one candidate per platform call."""
    from reviewpulse_core.domain.schemas.themes import ThemeCandidate

    async def extract(app_name, platform, review_texts, batch_index=None):
        return [
            ThemeCandidate(
                title=f"{platform} login problems",
                description="Users cannot sign in after the latest update.",
                quotes=[review_texts[0]],
                suggestions=["Fix the login flow"],
                platform=platform,
            )
        ]

    extractor = AsyncMock()
    extractor.extract.side_effect = extract
    return extractor

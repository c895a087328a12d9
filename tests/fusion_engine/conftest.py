"""
Shared fixtures for fusion engine tests.

Every test gets a fresh in-memory SQLite database. StaticPool
keeps the single connection alive for the lifetime of the engine.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database.engine import Base, enable_sqlite_savepoints


NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

SUBJECT = "subject-1"
INTEGRATION = "integration-1"


# ============================================================
# DATABASE FIXTURES
# ============================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all fusion tables."""
    import fusion_engine.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Session owning one transaction for the whole test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def session_scope(session_factory):
    """transaction_scope equivalent bound to the test database."""

    @contextmanager
    def scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


# ============================================================
# COMPONENT FIXTURES
# ============================================================

@pytest.fixture
def clock():
    from fusion_engine.clock import MockClock
    return MockClock(NOW)


@pytest.fixture
def config():
    from fusion_engine.config import get_default_config
    return get_default_config()


@pytest.fixture
def repository(session):
    from fusion_engine.repository import FusionRepository
    return FusionRepository(session)


@pytest.fixture
def store(repository, config, clock):
    from fusion_engine.weighting import WeightingStore
    return WeightingStore(repository, config.bounds, clock)


@pytest.fixture
def audit(repository, clock):
    from fusion_engine.audit import AuditLogger
    return AuditLogger(repository, clock)


@pytest.fixture
def calculator(repository, config, clock):
    from fusion_engine.calculator import FusionScoreCalculator
    return FusionScoreCalculator(repository, config, clock)


@pytest.fixture
def recalibrator(repository, store, audit, config, clock):
    from fusion_engine.recalibrator import AdaptiveRecalibrator
    return AdaptiveRecalibrator(repository, store, audit, config, clock)


@pytest.fixture
def learner(repository, store, audit, config, clock, recalibrator):
    from fusion_engine.learner import FeedbackDecayLearner
    return FeedbackDecayLearner(repository, store, audit, config, clock, recalibrator)


# ============================================================
# SEED HELPERS
# ============================================================

def add_integration(
    session: Session,
    integration_id: str = INTEGRATION,
    subject_id: str = SUBJECT,
    service_name: Optional[str] = None,
    category: Optional[str] = None,
    status: str = "active",
):
    from fusion_engine.models import SubjectIntegration

    row = SubjectIntegration(
        subject_id=subject_id,
        integration_id=integration_id,
        service_name=service_name,
        category=category,
        status=status,
    )
    session.add(row)
    session.flush()
    return row


def add_metric(
    session: Session,
    name: str,
    normalized_value: float,
    metric_type: str = "count",
    weight: Optional[float] = None,
    raw_value: float = 0.0,
    subject_id: str = SUBJECT,
    integration_id: str = INTEGRATION,
):
    from fusion_engine.models import FusionMetric

    row = FusionMetric(
        subject_id=subject_id,
        integration_id=integration_id,
        metric_name=name,
        metric_type=metric_type,
        raw_value=raw_value,
        normalized_value=normalized_value,
        weight=weight,
        synced_at=NOW,
    )
    session.add(row)
    session.flush()
    return row


def add_score_history(
    session: Session,
    scores,
    subject_id: str = SUBJECT,
    integration_id: str = INTEGRATION,
    excluded: bool = False,
):
    from fusion_engine.models import FusionScoreHistory

    for i, score in enumerate(scores):
        session.add(FusionScoreHistory(
            subject_id=subject_id,
            integration_id=integration_id,
            fusion_score=score,
            excluded=excluded,
            recorded_at=NOW - timedelta(hours=len(scores) - i),
        ))
    session.flush()


def add_feedback(
    session: Session,
    feedback_type: str,
    age_days: float,
    score_before: Optional[float] = None,
    score_after: Optional[float] = None,
    subject_id: str = SUBJECT,
    integration_id: str = INTEGRATION,
):
    from fusion_engine.models import FusionFeedback

    row = FusionFeedback(
        subject_id=subject_id,
        integration_id=integration_id,
        feedback_type=feedback_type,
        score_before=score_before,
        score_after=score_after,
        created_at=NOW - timedelta(days=age_days),
    )
    session.add(row)
    session.flush()
    return row


def add_failure_state(
    session: Session,
    failure_reason: Optional[str],
    last_successful_run_at: Optional[datetime] = None,
    last_failed_run_at: Optional[datetime] = None,
    subject_id: str = SUBJECT,
    integration_id: str = INTEGRATION,
):
    from fusion_engine.models import IntegrationFailureState

    row = IntegrationFailureState(
        subject_id=subject_id,
        integration_id=integration_id,
        failure_reason=failure_reason,
        last_successful_run_at=last_successful_run_at,
        last_failed_run_at=last_failed_run_at,
    )
    session.add(row)
    session.flush()
    return row

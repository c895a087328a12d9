"""
Fusion Scoring Engine - Persistence Models.

============================================================
PURPOSE
============================================================
ORM models for the fusion scoring store.

============================================================
MODELS
============================================================
Inputs (written by the external sync layer):
1. SubjectIntegration: integration registry per subject
2. FusionMetric: current metric value per integration
3. FusionMetricHistory: raw value window for normalization
4. FusionFeedback: outcome feedback events
5. IntegrationFailureState: failure flags gating exclusion

Outputs (written by this engine):
6. FusionWeighting: current weight per metric (upserted)
7. FusionScore: current score per integration (upserted)
8. FusionScoreHistory: append-only score series
9. FusionAuditLog: append-only weight mutation trail

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4

from sqlalchemy import (
    String,
    Integer,
    Float,
    Boolean,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import Mapped, mapped_column

from database.engine import Base


def _uuid_str() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# SUBJECT INTEGRATION MODEL
# ============================================================


class SubjectIntegration(Base):
    """
    Registry of integrations connected by a subject.

    service_name resolves the category multiplier when no
    explicit category is declared. Only status == 'active'
    rows take part in batch recalibration.
    """

    __tablename__ = "subject_integrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    service_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Provider key, e.g. slack, quickbooks",
    )

    category: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Explicit category override",
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "integration_id", name="uq_subject_integration"),
        Index("ix_subject_integrations_status", "subject_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"SubjectIntegration("
            f"subject={self.subject_id}, "
            f"integration={self.integration_id}, "
            f"service={self.service_name}, "
            f"status={self.status})"
        )


# ============================================================
# METRIC MODELS
# ============================================================


class FusionMetric(Base):
    """
    Current value of one metric of one integration.

    normalized_value is the only column computed by this
    engine; everything else comes from the sync layer.
    """

    __tablename__ = "fusion_metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    metric_name: Mapped[str] = mapped_column(String(200), nullable=False)

    metric_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="count, sum, average, percentage, trend",
    )

    raw_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    normalized_value: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Normalized value (0-1)",
    )

    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    data_source: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "subject_id", "integration_id", "metric_name",
            name="uq_fusion_metrics_name",
        ),
        Index("ix_fusion_metrics_scope", "subject_id", "integration_id"),
    )

    def __repr__(self) -> str:
        return (
            f"FusionMetric("
            f"name={self.metric_name}, "
            f"type={self.metric_type}, "
            f"normalized={self.normalized_value})"
        )


class FusionMetricHistory(Base):
    """Append-only raw values of a metric, newest used first."""

    __tablename__ = "fusion_metric_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(200), nullable=False)

    raw_value: Mapped[float] = mapped_column(Float, nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index(
            "ix_fusion_metric_history_lookup",
            "subject_id", "integration_id", "metric_name", "recorded_at",
        ),
    )


# ============================================================
# WEIGHTING MODEL
# ============================================================


class FusionWeighting(Base):
    """
    Current explainable weight for one metric.

    One row per (subject, integration, metric); overwritten
    in place, never deleted. adjustment_reason and adaptive
    record who wrote it last.
    """

    __tablename__ = "fusion_weightings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_id: Mapped[str] = mapped_column(String(36), nullable=False)
    metric_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    final_weight: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Clamped to [0.1, 10.0]",
    )

    variance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    correlation_penalty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    adjustment_reason: Mapped[str] = mapped_column(Text, nullable=False)
    adaptive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "subject_id", "integration_id", "metric_id",
            name="uq_fusion_weightings_metric",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"FusionWeighting("
            f"metric={self.metric_name or self.metric_id}, "
            f"weight={self.final_weight}, "
            f"adaptive={self.adaptive})"
        )


# ============================================================
# SCORE MODELS
# ============================================================


class FusionScore(Base):
    """
    Current fusion score per (subject, integration).

    learning_rate is the per-integration rate used by the
    feedback learner.
    """

    __tablename__ = "fusion_scores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    fusion_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Fusion score (0-100)",
    )

    score_breakdown: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    trend_direction: Mapped[str] = mapped_column(String(10), nullable=False, default="stable")

    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    learning_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True, default=0.05)
    baseline_score: Mapped[float] = mapped_column(Float, nullable=False, default=50.0)

    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "integration_id", name="uq_fusion_scores_scope"),
    )

    def __repr__(self) -> str:
        return (
            f"FusionScore("
            f"integration={self.integration_id}, "
            f"score={self.fusion_score}, "
            f"trend={self.trend_direction}, "
            f"excluded={self.excluded})"
        )


class FusionScoreHistory(Base):
    """Append-only series of computed scores."""

    __tablename__ = "fusion_score_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    fusion_score: Mapped[float] = mapped_column(Float, nullable=False)
    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_fusion_score_history_lookup", "subject_id", "integration_id", "recorded_at"),
    )


# ============================================================
# FEEDBACK MODEL
# ============================================================


class FusionFeedback(Base):
    """Immutable outcome feedback for an automated action."""

    __tablename__ = "fusion_feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    score_before: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    score_after: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    feedback_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="success, neutral, fail",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_fusion_feedback_created_at", "created_at"),
        Index("ix_fusion_feedback_scope", "subject_id", "integration_id"),
    )


# ============================================================
# FAILURE STATE MODEL
# ============================================================


class IntegrationFailureState(Base):
    """Failure flags for one integration, maintained by the sync layer."""

    __tablename__ = "integration_failure_states"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_successful_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_failed_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "integration_id", name="uq_integration_failure_state"),
    )


# ============================================================
# AUDIT LOG MODEL
# ============================================================


class FusionAuditLog(Base):
    """
    Append-only record of every recalibration/learning pass.

    weight_changes maps metric_name -> {old, new}.
    event_data holds learner statistics.
    """

    __tablename__ = "fusion_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    metrics_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_variance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_ai_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    weight_changes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    event_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    triggered_by: Mapped[str] = mapped_column(String(10), nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="success, failed, partial",
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_fusion_audit_log_scope", "subject_id", "integration_id", "created_at"),
        Index("ix_fusion_audit_log_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"FusionAuditLog("
            f"event={self.event_type}, "
            f"status={self.status}, "
            f"metrics={self.metrics_count})"
        )

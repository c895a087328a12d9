"""
Fusion Scoring Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the Fusion Scoring Engine.

This module defines the enums, result dataclasses and
exceptions shared by the normalizer, calculator,
recalibrator, learner and audit logger.

============================================================
DESIGN PRINCIPLES
============================================================
- Enums for every discrete value stored in the database
- Frozen dataclasses for computed results
- Per-item results are values, not suppressed exceptions
- Every result converts to a plain dict for the CLI/API

============================================================
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMS
# ============================================================


class MetricType(str, Enum):
    """
    Discriminated metric variant.

    Each variant carries the default weight used when
    neither an explicit weighting nor the metric row
    supplies one. Any finite raw value is accepted.
    """

    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    PERCENTAGE = "percentage"
    TREND = "trend"

    @classmethod
    def parse(cls, value: Any) -> "MetricType":
        """Resolve a type string, raising MetricValidationError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise MetricValidationError(f"Unknown metric type: {value!r}") from None

    @property
    def default_weight(self) -> float:
        return _TYPE_DEFAULT_WEIGHTS[self]

    def validate(self, raw_value: float) -> float:
        """
        Validate that a raw value is a finite number.

        Out-of-window values are valid; normalization saturates
        them to [0, 1] (e.g. a net revenue sum below zero).

        Returns:
            The value as float

        Raises:
            MetricValidationError: If the value is not a finite number
        """
        try:
            value = float(raw_value)
        except (TypeError, ValueError):
            raise MetricValidationError(
                f"{self.value} metric value is not numeric: {raw_value!r}"
            ) from None

        if not math.isfinite(value):
            raise MetricValidationError(f"{self.value} metric value is not finite: {value}")
        return value


_TYPE_DEFAULT_WEIGHTS: Dict[MetricType, float] = {
    MetricType.COUNT: 0.2,
    MetricType.SUM: 0.3,
    MetricType.AVERAGE: 0.25,
    MetricType.PERCENTAGE: 0.15,
    MetricType.TREND: 0.1,
}


class TrendDirection(str, Enum):
    """Direction of a score relative to the previous computation."""

    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class FeedbackType(str, Enum):
    """Outcome judgement attached to a feedback event."""

    SUCCESS = "success"
    NEUTRAL = "neutral"
    FAIL = "fail"

    @property
    def success_value(self) -> float:
        if self is FeedbackType.SUCCESS:
            return 1.0
        if self is FeedbackType.FAIL:
            return 0.0
        return 0.5

    @classmethod
    def coerce(cls, value: Any) -> "FeedbackType":
        """Unknown feedback labels are treated as neutral."""
        try:
            return cls(value)
        except ValueError:
            return cls.NEUTRAL


class TriggeredBy(str, Enum):
    """Who initiated a weight mutation."""

    USER = "user"
    SYSTEM = "system"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class AuditEventType(str, Enum):
    """Kinds of audited passes."""

    MANUAL_RECALIBRATION = "manual_recalibration"
    SCHEDULED_RECALIBRATION = "scheduled_recalibration"
    ADAPTIVE_TRIGGER = "adaptive_trigger"
    ADAPTIVE_LEARNING_UPDATE = "adaptive_learning_update"
    MANUAL_WEIGHT_OVERRIDE = "manual_weight_override"

    @classmethod
    def for_recalibration(
        cls,
        triggered_by: TriggeredBy,
        nested: bool = False,
    ) -> "AuditEventType":
        if nested:
            return cls.ADAPTIVE_TRIGGER
        if triggered_by is TriggeredBy.USER:
            return cls.MANUAL_RECALIBRATION
        return cls.SCHEDULED_RECALIBRATION


# ============================================================
# INPUT CONTRACTS
# ============================================================


@dataclass(frozen=True)
class MetricValue:
    """
    One metric as seen by the score calculator.

    weight is the metric row's own weight (may be None).
    """

    metric_id: str
    name: str
    metric_type: MetricType
    normalized_value: float
    weight: Optional[float] = None


@dataclass(frozen=True)
class FailureState:
    """Failure flags for one (subject, integration), maintained by the sync layer."""

    failure_reason: Optional[str] = None
    last_successful_run_at: Optional[datetime] = None
    last_failed_run_at: Optional[datetime] = None


@dataclass(frozen=True)
class FeedbackSample:
    """A feedback event reduced to what the learner needs."""

    feedback_type: FeedbackType
    created_at: datetime
    score_before: Optional[float] = None
    score_after: Optional[float] = None

    @property
    def score_delta(self) -> float:
        return (self.score_after or 0.0) - (self.score_before or 0.0)


@dataclass(frozen=True)
class LearningScope:
    """Optional subject/integration filter for a learning pass."""

    subject_id: Optional[str] = None
    integration_id: Optional[str] = None


# ============================================================
# OUTPUT CONTRACTS
# ============================================================


@dataclass(frozen=True)
class BreakdownEntry:
    """Explainability record for one metric's share of the score."""

    normalized: float
    weight: float
    contribution: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "normalized": self.normalized,
            "weight": self.weight,
            "contribution": self.contribution,
        }


@dataclass(frozen=True)
class FusionScoreResult:
    """
    Output of one score computation.

    ============================================================
    OUTPUT GUARANTEES
    ============================================================
    - score: Always 0-100
    - excluded=True implies score == 0 and empty breakdown
    - trend: Always one of up, down, stable
    ============================================================
    """

    subject_id: str
    integration_id: str
    score: float = 0.0
    breakdown: Dict[str, BreakdownEntry] = field(default_factory=dict)
    trend: TrendDirection = TrendDirection.STABLE
    excluded: bool = False
    previous_score: Optional[float] = None
    category_multiplier: float = 1.0
    calculated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def contributions(self) -> Dict[str, float]:
        """breakdown reduced to metric_name -> contribution."""
        return {name: entry.contribution for name, entry in self.breakdown.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "integration_id": self.integration_id,
            "score": self.score,
            "breakdown": {name: entry.to_dict() for name, entry in self.breakdown.items()},
            "trend": self.trend.value,
            "excluded": self.excluded,
            "previous_score": self.previous_score,
            "category_multiplier": self.category_multiplier,
            "calculated_at": self.calculated_at.isoformat(),
        }


@dataclass(frozen=True)
class WeightChange:
    """Before/after value of one metric weight."""

    old: Optional[float]
    new: float

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"old": self.old, "new": self.new}


@dataclass(frozen=True)
class WeightUpdate:
    """A computed weight for one metric, persisted or not."""

    metric_id: str
    metric_name: str
    final_weight: float
    variance: Optional[float] = None
    ai_confidence: Optional[float] = None
    correlation_penalty: float = 0.0


@dataclass(frozen=True)
class RecalibrationResult:
    """Per-integration outcome of a variance-driven recalibration."""

    subject_id: str
    integration_id: str
    success: bool
    metrics_count: int = 0
    avg_confidence: float = 0.0
    variance: Optional[float] = None
    weights: List[WeightUpdate] = field(default_factory=list)
    weight_changes: Dict[str, WeightChange] = field(default_factory=dict)
    dry_run: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "success": self.success,
            "metrics_count": self.metrics_count,
            "avg_confidence": self.avg_confidence,
            "variance": self.variance,
            "weights": {w.metric_name: w.final_weight for w in self.weights},
            "weight_changes": {k: v.to_dict() for k, v in self.weight_changes.items()},
            "dry_run": self.dry_run,
            "error": self.error,
        }


@dataclass(frozen=True)
class RecalibrationBatchSummary:
    """Aggregate over a subject-wide recalibration."""

    subject_id: str
    success: bool
    results: List[RecalibrationResult] = field(default_factory=list)
    execution_time_ms: int = 0
    error: Optional[str] = None

    @property
    def total_integrations(self) -> int:
        return len(self.results)

    @property
    def total_metrics(self) -> int:
        return sum(r.metrics_count for r in self.results)

    @property
    def avg_confidence(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.avg_confidence for r in self.results) / len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "success": self.success,
            "total_integrations": self.total_integrations,
            "total_metrics": self.total_metrics,
            "avg_confidence": self.avg_confidence,
            "execution_time_ms": self.execution_time_ms,
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }


@dataclass(frozen=True)
class LearningStats:
    """Feedback statistics for one (subject, integration) group."""

    feedback_count: int
    weighted_success_rate: float
    avg_score_delta: float
    performance_factor: float
    score_delta_factor: float
    adjustment_multiplier: float
    learning_rate: float


@dataclass(frozen=True)
class LearningGroupResult:
    """Per-group outcome of a feedback-decay learning pass."""

    subject_id: str
    integration_id: str
    success: bool
    stats: Optional[LearningStats] = None
    metrics_updated: int = 0
    weights: List[WeightUpdate] = field(default_factory=list)
    weight_changes: Dict[str, WeightChange] = field(default_factory=dict)
    message: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        stats = self.stats
        return {
            "subject_id": self.subject_id,
            "integration_id": self.integration_id,
            "success": self.success,
            "feedback_count": stats.feedback_count if stats else 0,
            "success_rate": stats.weighted_success_rate if stats else None,
            "avg_score_delta": stats.avg_score_delta if stats else None,
            "adjustment_multiplier": stats.adjustment_multiplier if stats else None,
            "metrics_updated": self.metrics_updated,
            "weights": {w.metric_name: w.final_weight for w in self.weights},
            "message": self.message,
            "error": self.error,
        }


@dataclass(frozen=True)
class LearningSummary:
    """Aggregate over one learning pass."""

    success: bool
    feedback_processed: int = 0
    groups: List[LearningGroupResult] = field(default_factory=list)
    dry_run: bool = False
    message: str = ""

    @property
    def weight_updates(self) -> int:
        return sum(1 for g in self.groups if g.success)

    @property
    def failed_groups(self) -> List[LearningGroupResult]:
        return [g for g in self.groups if not g.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "feedback_processed": self.feedback_processed,
            "weight_updates": self.weight_updates,
            "dry_run": self.dry_run,
            "message": self.message,
            "groups": [g.to_dict() for g in self.groups],
        }


@dataclass(frozen=True)
class OperationResult:
    """
    Boundary result of an engine entry point.

    Top-level failures (e.g. the store is unreachable) are
    returned as success=False with an error message rather
    than raised to the caller.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


# ============================================================
# ERROR TYPES
# ============================================================


class FusionEngineError(Exception):
    """Base exception for fusion engine errors."""

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        integration_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.subject_id = subject_id
        self.integration_id = integration_id


class MetricValidationError(FusionEngineError):
    """Raised when a metric type or raw value is invalid."""
    pass


class WeightingError(FusionEngineError):
    """Raised when a weighting write violates the store contract."""
    pass


class FusionPersistenceError(FusionEngineError):
    """Raised when a repository read or write fails."""
    pass

"""
Fusion Scoring Engine - Adaptive Recalibrator.

============================================================
PURPOSE
============================================================
Re-derives metric weights from the stability of an
integration's recent score history.

============================================================
ALGORITHM
============================================================
variance   = min(stddev / mean, 1) over the last 30 non-excluded
             scores (0.5 with fewer than 2 points)
confidence = clip(1 - variance, 0, 1)
raw_i      = base_i * (1 + a*variance + b*confidence - g*penalty)
final_i    = raw_i / sum(raw)  (1/n when the total is not positive)

Final weights are clamped by the WeightingStore on write.

============================================================
FAILURE ISOLATION
============================================================
Each integration runs inside a SAVEPOINT. A failing pass rolls
back its own writes, is audited as failed, and is reported as
a per-item result; sibling integrations are unaffected.

============================================================
"""

import logging
import math
from typing import List, Optional, Sequence

from .audit import AuditLogger
from .clock import ClockProtocol, Stopwatch, SystemClock
from .config import FusionEngineConfig, RecalibrationConfig, get_default_config
from .repository import FusionRepository
from .types import (
    AuditEventType,
    AuditStatus,
    MetricType,
    MetricValue,
    RecalibrationBatchSummary,
    RecalibrationResult,
    TriggeredBy,
    WeightUpdate,
)
from .weighting import WeightingStore

logger = logging.getLogger(__name__)

NO_METRICS_MESSAGE = "No metrics found"
NO_INTEGRATIONS_MESSAGE = "No active integrations found"
DEFAULT_REASON = "Manual recalibration via API"


# ============================================================
# PURE FUNCTIONS
# ============================================================


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population stddev over mean, capped to [0, 1]; 0 when mean <= 0."""
    if not values:
        return 0.0

    mean = sum(values) / len(values)
    if mean <= 0:
        return 0.0

    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    return max(0.0, min(1.0, std_dev / mean))


def score_variance(
    history: Sequence[float],
    config: Optional[RecalibrationConfig] = None,
) -> float:
    config = config or RecalibrationConfig()
    if len(history) < config.min_history_points:
        return config.default_variance
    return coefficient_of_variation(history)


def compute_recalibrated_weights(
    metrics: Sequence[MetricValue],
    variance: float,
    config: Optional[RecalibrationConfig] = None,
) -> List[WeightUpdate]:
    """
    Variance-driven weights, normalized to sum to 1.

    Args:
        metrics: Metrics to weight; metric.weight is the base weight
        variance: Score variance in [0, 1]
        config: Recalibration constants

    Returns:
        One unclamped WeightUpdate per metric
    """
    config = config or RecalibrationConfig()
    if not metrics:
        return []

    confidence = max(0.0, min(1.0, 1.0 - variance))
    correlation_penalty = 0.0

    factor = (
        1
        + config.alpha * variance
        + config.beta * confidence
        - config.gamma * correlation_penalty
    )
    raw_weights = [(m.weight or config.fallback_base_weight) * factor for m in metrics]
    total = sum(raw_weights)

    updates = []
    for metric, raw in zip(metrics, raw_weights):
        final = raw / total if total > 0 else 1.0 / len(metrics)
        updates.append(WeightUpdate(
            metric_id=metric.metric_id,
            metric_name=metric.name,
            final_weight=final,
            variance=variance,
            ai_confidence=confidence,
            correlation_penalty=correlation_penalty,
        ))
    return updates


# ============================================================
# RECALIBRATOR
# ============================================================


class AdaptiveRecalibrator:
    """
    Runs recalibration passes against the store.

    One pass per (subject, integration); recalibrate_subject()
    runs a pass for each active integration of a subject.
    """

    def __init__(
        self,
        repository: FusionRepository,
        weighting_store: WeightingStore,
        audit_logger: AuditLogger,
        config: Optional[FusionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._repository = repository
        self._store = weighting_store
        self._audit = audit_logger
        self._config = config or get_default_config()
        self._clock = clock or SystemClock()

    def recalibrate(
        self,
        subject_id: str,
        integration_id: str,
        reason: Optional[str] = None,
        triggered_by: TriggeredBy = TriggeredBy.USER,
        dry_run: bool = False,
        nested: bool = False,
    ) -> RecalibrationResult:
        """
        Recalibrate one integration's weights.

        Failures are rolled back to a savepoint, audited and
        returned as success=False rather than raised.
        """
        triggered_by = TriggeredBy(triggered_by)
        event_type = AuditEventType.for_recalibration(triggered_by, nested)
        reason = reason or DEFAULT_REASON
        stopwatch = Stopwatch()

        try:
            with self._repository.session.begin_nested():
                result = self._run_pass(subject_id, integration_id, reason, dry_run)
        except Exception as e:
            logger.error(
                f"Recalibration failed: subject={subject_id} "
                f"integration={integration_id} error={e}"
            )
            if not dry_run:
                self._audit.record(
                    subject_id,
                    integration_id,
                    event_type,
                    triggered_by,
                    status=AuditStatus.FAILED,
                    execution_time_ms=stopwatch.elapsed_ms(),
                    error_message=str(e),
                )
            return RecalibrationResult(
                subject_id=subject_id,
                integration_id=integration_id,
                success=False,
                dry_run=dry_run,
                error=str(e),
            )

        if not dry_run:
            status = AuditStatus.SUCCESS if result.success else AuditStatus.FAILED
            self._audit.record(
                subject_id,
                integration_id,
                event_type,
                triggered_by,
                status=status,
                metrics_count=result.metrics_count,
                total_variance=result.variance,
                avg_ai_confidence=result.avg_confidence if result.success else None,
                weight_changes=result.weight_changes,
                execution_time_ms=stopwatch.elapsed_ms(),
                error_message=result.error,
            )
        return result

    def _run_pass(
        self,
        subject_id: str,
        integration_id: str,
        reason: str,
        dry_run: bool,
    ) -> RecalibrationResult:
        rows = self._repository.get_metrics(subject_id, integration_id)
        if not rows:
            logger.warning(
                f"Recalibration skipped: {NO_METRICS_MESSAGE} | "
                f"subject={subject_id} integration={integration_id}"
            )
            return RecalibrationResult(
                subject_id=subject_id,
                integration_id=integration_id,
                success=False,
                dry_run=dry_run,
                error=NO_METRICS_MESSAGE,
            )

        config = self._config.recalibration
        history = self._repository.get_score_history(
            subject_id, integration_id, limit=config.history_window
        )
        variance = score_variance(history, config)

        metrics = [
            MetricValue(
                metric_id=row.id,
                name=row.metric_name,
                metric_type=MetricType.parse(row.metric_type),
                normalized_value=row.normalized_value,
                weight=row.weight,
            )
            for row in rows
        ]
        updates = compute_recalibrated_weights(metrics, variance, config)

        existing = self._store.get_weights(subject_id, integration_id)
        if dry_run:
            written = [self._store.clamp(u) for u in updates]
        else:
            written = self._store.write_weights(
                subject_id, integration_id, updates, adjustment_reason=reason, adaptive=True
            )

        avg_confidence = sum(u.ai_confidence for u in written) / len(written)

        logger.info(
            f"Recalibrated {len(written)} weights: variance={variance:.4f} "
            f"confidence={avg_confidence:.4f} history={len(history)} dry_run={dry_run} | "
            f"subject={subject_id} integration={integration_id}"
        )

        return RecalibrationResult(
            subject_id=subject_id,
            integration_id=integration_id,
            success=True,
            metrics_count=len(written),
            avg_confidence=avg_confidence,
            variance=variance,
            weights=written,
            weight_changes=self._store.diff(existing, written),
            dry_run=dry_run,
        )

    def recalibrate_subject(
        self,
        subject_id: str,
        reason: Optional[str] = None,
        triggered_by: TriggeredBy = TriggeredBy.USER,
        dry_run: bool = False,
    ) -> RecalibrationBatchSummary:
        """Recalibrate every active integration of a subject, sequentially."""
        stopwatch = Stopwatch()
        integrations = self._repository.get_active_integrations(subject_id)

        if not integrations:
            logger.warning(f"{NO_INTEGRATIONS_MESSAGE}: subject={subject_id}")
            return RecalibrationBatchSummary(
                subject_id=subject_id,
                success=False,
                execution_time_ms=stopwatch.elapsed_ms(),
                error=NO_INTEGRATIONS_MESSAGE,
            )

        results = [
            self.recalibrate(
                subject_id,
                integration.integration_id,
                reason=reason,
                triggered_by=triggered_by,
                dry_run=dry_run,
            )
            for integration in integrations
        ]

        summary = RecalibrationBatchSummary(
            subject_id=subject_id,
            success=True,
            results=results,
            execution_time_ms=stopwatch.elapsed_ms(),
        )
        logger.info(
            f"Batch recalibration complete: integrations={summary.total_integrations} "
            f"metrics={summary.total_metrics} avg_confidence={summary.avg_confidence:.4f} "
            f"failed={sum(1 for r in results if not r.success)} | subject={subject_id}"
        )
        return summary

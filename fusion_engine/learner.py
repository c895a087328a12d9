"""
Fusion Scoring Engine - Feedback-Decay Learner.

============================================================
PURPOSE
============================================================
Nudges metric weights up or down from recent outcome
feedback, favouring newer events.

============================================================
ALGORITHM
============================================================
decay(e)      = exp(-lambda * age_days(e))
success_rate  = sum(value(e) * decay(e)) / sum(decay(e))
                value: success=1, fail=0, neutral=0.5
perf_factor   = (success_rate - 0.5) * 2
delta_factor  = clip(mean(after - before) / 10, -0.5, 0.5)
multiplier    = 1 + perf_factor*lr + delta_factor*lr
new_weight    = clip(current_weight * multiplier, MIN, MAX)

lr is the per-integration learning_rate stored on the
current fusion score row (0.05 when absent).

============================================================
"""

import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .audit import AuditLogger
from .clock import ClockProtocol, Stopwatch, SystemClock, ensure_utc
from .config import FusionEngineConfig, LearningConfig, get_default_config
from .models import FusionFeedback
from .recalibrator import AdaptiveRecalibrator, NO_METRICS_MESSAGE
from .repository import FusionRepository
from .types import (
    AuditEventType,
    AuditStatus,
    FeedbackSample,
    FeedbackType,
    LearningGroupResult,
    LearningScope,
    LearningStats,
    LearningSummary,
    TriggeredBy,
    WeightUpdate,
)
from .weighting import WeightingStore

logger = logging.getLogger(__name__)

NO_FEEDBACK_MESSAGE = "No feedback data to process"

SECONDS_PER_DAY = 86400.0


# ============================================================
# PURE FUNCTIONS
# ============================================================


def age_in_days(created_at: datetime, now: datetime) -> float:
    """Age of an event in fractional days, never negative."""
    seconds = (ensure_utc(now) - ensure_utc(created_at)).total_seconds()
    return max(0.0, seconds / SECONDS_PER_DAY)


def decay_weight(age_days: float, decay_lambda: float = 0.1) -> float:
    return math.exp(-decay_lambda * age_days)


def weighted_success_rate(
    samples: Sequence[FeedbackSample],
    now: datetime,
    decay_lambda: float = 0.1,
) -> float:
    """Decay-weighted mean success value; 0.5 when there is no weight."""
    weighted = 0.0
    total_decay = 0.0

    for sample in samples:
        decay = decay_weight(age_in_days(sample.created_at, now), decay_lambda)
        weighted += sample.feedback_type.success_value * decay
        total_decay += decay

    if total_decay <= 0:
        return 0.5
    return weighted / total_decay


def compute_learning_stats(
    samples: Sequence[FeedbackSample],
    now: datetime,
    learning_rate: float,
    config: Optional[LearningConfig] = None,
) -> LearningStats:
    config = config or LearningConfig()

    success_rate = weighted_success_rate(samples, now, config.decay_lambda)
    avg_delta = (
        sum(s.score_delta for s in samples) / len(samples) if samples else 0.0
    )

    performance_factor = (success_rate - 0.5) * 2
    score_delta_factor = max(
        -config.score_delta_cap,
        min(config.score_delta_cap, avg_delta / config.score_delta_scale),
    )
    multiplier = 1 + performance_factor * learning_rate + score_delta_factor * learning_rate

    return LearningStats(
        feedback_count=len(samples),
        weighted_success_rate=success_rate,
        avg_score_delta=avg_delta,
        performance_factor=performance_factor,
        score_delta_factor=score_delta_factor,
        adjustment_multiplier=multiplier,
        learning_rate=learning_rate,
    )


def _to_sample(row: FusionFeedback) -> FeedbackSample:
    return FeedbackSample(
        feedback_type=FeedbackType.coerce(row.feedback_type),
        created_at=row.created_at,
        score_before=row.score_before,
        score_after=row.score_after,
    )


# ============================================================
# LEARNER
# ============================================================


class FeedbackDecayLearner:
    """
    Applies feedback-decay learning per (subject, integration).

    Each group is processed inside its own SAVEPOINT; a failing
    group is audited and reported without stopping the others.
    """

    def __init__(
        self,
        repository: FusionRepository,
        weighting_store: WeightingStore,
        audit_logger: AuditLogger,
        config: Optional[FusionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        recalibrator: Optional[AdaptiveRecalibrator] = None,
    ):
        self._repository = repository
        self._store = weighting_store
        self._audit = audit_logger
        self._config = config or get_default_config()
        self._clock = clock or SystemClock()
        self._recalibrator = recalibrator

    def learn_from_feedback(
        self,
        scope: Optional[LearningScope] = None,
        dry_run: bool = False,
    ) -> LearningSummary:
        scope = scope or LearningScope()
        config = self._config.learning
        now = self._clock.now()
        since = now - timedelta(days=config.lookback_days)

        rows = self._repository.get_feedback_since(since, scope.subject_id, scope.integration_id)
        if not rows:
            logger.info(f"{NO_FEEDBACK_MESSAGE}: since={since.isoformat()}")
            return LearningSummary(success=True, dry_run=dry_run, message=NO_FEEDBACK_MESSAGE)

        grouped: Dict[Tuple[str, str], List[FeedbackSample]] = OrderedDict()
        for row in rows:
            grouped.setdefault((row.subject_id, row.integration_id), []).append(_to_sample(row))

        logger.info(
            f"Learning pass: feedback={len(rows)} groups={len(grouped)} dry_run={dry_run}"
        )

        groups = [
            self._process_group(subject_id, integration_id, samples, now, dry_run)
            for (subject_id, integration_id), samples in grouped.items()
        ]

        summary = LearningSummary(
            success=True,
            feedback_processed=len(rows),
            groups=groups,
            dry_run=dry_run,
            message=f"Processed {len(groups)} groups",
        )
        logger.info(
            f"Learning pass complete: weight_updates={summary.weight_updates} "
            f"failed={len(summary.failed_groups)} dry_run={dry_run}"
        )
        return summary

    def _learning_rate(self, subject_id: str, integration_id: str) -> float:
        score = self._repository.get_current_score(subject_id, integration_id)
        if score is not None and score.learning_rate:
            return score.learning_rate
        return self._config.learning.default_learning_rate

    def _process_group(
        self,
        subject_id: str,
        integration_id: str,
        samples: Sequence[FeedbackSample],
        now: datetime,
        dry_run: bool,
    ) -> LearningGroupResult:
        stopwatch = Stopwatch()
        event_type = AuditEventType.ADAPTIVE_LEARNING_UPDATE

        try:
            with self._repository.session.begin_nested():
                result = self._update_group(subject_id, integration_id, samples, now, dry_run)
        except Exception as e:
            logger.error(
                f"Learning update failed: subject={subject_id} "
                f"integration={integration_id} error={e}"
            )
            if not dry_run:
                self._audit.record(
                    subject_id,
                    integration_id,
                    event_type,
                    TriggeredBy.SYSTEM,
                    status=AuditStatus.FAILED,
                    event_data={"feedback_count": len(samples)},
                    execution_time_ms=stopwatch.elapsed_ms(),
                    error_message=str(e),
                )
            return LearningGroupResult(
                subject_id=subject_id,
                integration_id=integration_id,
                success=False,
                error=str(e),
            )

        if not dry_run:
            stats = result.stats
            self._audit.record(
                subject_id,
                integration_id,
                event_type,
                TriggeredBy.SYSTEM,
                status=AuditStatus.SUCCESS if result.success else AuditStatus.FAILED,
                metrics_count=result.metrics_updated,
                weight_changes=result.weight_changes,
                event_data={
                    "feedback_count": stats.feedback_count,
                    "success_rate": stats.weighted_success_rate,
                    "avg_score_delta": stats.avg_score_delta,
                    "adjustment_multiplier": stats.adjustment_multiplier,
                    "metrics_updated": result.metrics_updated,
                },
                execution_time_ms=stopwatch.elapsed_ms(),
                error_message=result.error,
            )

            if (
                result.success
                and self._config.learning.recalibrate_after_update
                and self._recalibrator is not None
            ):
                self._recalibrator.recalibrate(
                    subject_id,
                    integration_id,
                    reason="Adaptive trigger after learning update",
                    triggered_by=TriggeredBy.SYSTEM,
                    nested=True,
                )

        return result

    def _update_group(
        self,
        subject_id: str,
        integration_id: str,
        samples: Sequence[FeedbackSample],
        now: datetime,
        dry_run: bool,
    ) -> LearningGroupResult:
        config = self._config.learning
        stats = compute_learning_stats(
            samples, now, self._learning_rate(subject_id, integration_id), config
        )

        rows = self._repository.get_metrics(subject_id, integration_id)
        if not rows:
            logger.warning(
                f"Learning skipped: {NO_METRICS_MESSAGE} | "
                f"subject={subject_id} integration={integration_id}"
            )
            return LearningGroupResult(
                subject_id=subject_id,
                integration_id=integration_id,
                success=False,
                stats=stats,
                message=NO_METRICS_MESSAGE,
                error=NO_METRICS_MESSAGE,
            )

        existing = self._store.get_weights(subject_id, integration_id)
        updates = []
        for row in rows:
            weighting = existing.get(row.id)
            current = (
                (weighting.final_weight if weighting is not None else None)
                or row.weight
                or config.fallback_weight
            )
            updates.append(WeightUpdate(
                metric_id=row.id,
                metric_name=row.metric_name,
                final_weight=current * stats.adjustment_multiplier,
                variance=weighting.variance if weighting is not None else None,
                ai_confidence=weighting.ai_confidence if weighting is not None else None,
            ))

        reason = (
            f"Adaptive learning: success_rate={stats.weighted_success_rate:.2f}, "
            f"delta={stats.avg_score_delta:.1f}"
        )
        if dry_run:
            written = [self._store.clamp(u) for u in updates]
        else:
            written = self._store.write_weights(
                subject_id, integration_id, updates, adjustment_reason=reason, adaptive=True
            )

        logger.info(
            f"Learning update: multiplier={stats.adjustment_multiplier:.4f} "
            f"success_rate={stats.weighted_success_rate:.4f} feedback={stats.feedback_count} "
            f"metrics={len(written)} dry_run={dry_run} | "
            f"subject={subject_id} integration={integration_id}"
        )

        return LearningGroupResult(
            subject_id=subject_id,
            integration_id=integration_id,
            success=True,
            stats=stats,
            metrics_updated=len(written),
            weights=written,
            weight_changes=self._store.diff(existing, written),
            message=reason,
        )

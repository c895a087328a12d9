"""
Fusion Scoring Engine - Score Calculator.

============================================================
PURPOSE
============================================================
Aggregates the normalized metrics of one (subject,
integration) into a single explainable 0-100 fusion score.

============================================================
ALGORITHM
============================================================
1. Exclusion: a failing source scores 0 with excluded=True
2. No metrics: score 0, empty breakdown, not an error
3. Effective weight per metric:
   weighting override -> metric weight -> type default,
   times the integration's category multiplier
4. score = sum(n_i * w_i) / sum(w_i) * 100, clipped to [0, 100]
5. Trend against the previously persisted score with a
   symmetric dead zone (trend_band)

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .clock import ClockProtocol, SystemClock, ensure_utc
from .config import FusionEngineConfig, ScoringConfig, get_default_config
from .models import FusionMetric
from .normalizer import MetricNormalizer
from .repository import FusionRepository
from .types import (
    BreakdownEntry,
    FailureState,
    FusionScoreResult,
    MetricType,
    MetricValue,
    TrendDirection,
)

logger = logging.getLogger(__name__)


# ============================================================
# PURE SCORING FUNCTIONS
# ============================================================


def is_excluded(state: Optional[FailureState]) -> bool:
    """
    Exclusion rule.

    A source is excluded when it has a failure reason and either
    never succeeded or failed no earlier than its last success.
    """
    if state is None or not state.failure_reason:
        return False
    if state.last_successful_run_at is None:
        return True
    if state.last_failed_run_at is None:
        return False
    return ensure_utc(state.last_failed_run_at) >= ensure_utc(state.last_successful_run_at)


def resolve_weight(
    metric: MetricValue,
    override: Optional[float],
    config: Optional[ScoringConfig] = None,
) -> float:
    """Base weight before the category multiplier."""
    config = config or ScoringConfig()
    if override is not None:
        return override
    # An explicit 0.0 metric weight mutes the metric.
    if metric.weight is not None:
        return metric.weight
    return config.default_weight_for(metric.metric_type)


def compute_fusion_score(
    metrics: Sequence[MetricValue],
    weights: Mapping[str, float],
    multiplier: float = 1.0,
    config: Optional[ScoringConfig] = None,
) -> Tuple[float, Dict[str, BreakdownEntry]]:
    """
    Weighted-average score of normalized metric values.

    Args:
        metrics: Metrics with normalized values
        weights: Weighting overrides keyed by metric_id
        multiplier: Category multiplier applied to every weight
        config: Scoring configuration

    Returns:
        (score in [score_min, score_max], breakdown by metric name)
    """
    config = config or ScoringConfig()

    weighted_sum = 0.0
    total_weight = 0.0
    breakdown: Dict[str, BreakdownEntry] = {}

    for metric in metrics:
        weight = resolve_weight(metric, weights.get(metric.metric_id), config) * multiplier
        contribution = metric.normalized_value * weight

        weighted_sum += contribution
        total_weight += weight
        breakdown[metric.name] = BreakdownEntry(
            normalized=metric.normalized_value,
            weight=weight,
            contribution=contribution,
        )

    if total_weight <= 0:
        return config.score_min, breakdown

    score = (weighted_sum / total_weight) * 100
    return max(config.score_min, min(config.score_max, score)), breakdown


def classify_trend(
    new_score: float,
    previous_score: Optional[float],
    band: float = 5.0,
) -> TrendDirection:
    if previous_score is None:
        return TrendDirection.STABLE

    diff = new_score - previous_score
    if diff > band:
        return TrendDirection.UP
    if diff < -band:
        return TrendDirection.DOWN
    return TrendDirection.STABLE


def _to_metric_value(row: FusionMetric) -> MetricValue:
    return MetricValue(
        metric_id=row.id,
        name=row.metric_name,
        metric_type=MetricType.parse(row.metric_type),
        normalized_value=row.normalized_value,
        weight=row.weight,
    )


# ============================================================
# CALCULATOR
# ============================================================


class FusionScoreCalculator:
    """
    Reads inputs through the repository and computes scores.

    compute_score() is read-only; compute_and_persist_score()
    also upserts the current score row and appends history.
    """

    def __init__(
        self,
        repository: FusionRepository,
        config: Optional[FusionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._repository = repository
        self._config = config or get_default_config()
        self._clock = clock or SystemClock()
        self._normalizer = MetricNormalizer(self._config.normalizer)

    def category_multiplier(self, subject_id: str, integration_id: str) -> float:
        policy = self._config.categories
        integration = self._repository.get_integration(subject_id, integration_id)
        if integration is None:
            return policy.multiplier_for(policy.default_category)
        category = policy.category_for(integration.service_name, integration.category)
        return policy.multiplier_for(category)

    def failure_state(self, subject_id: str, integration_id: str) -> Optional[FailureState]:
        row = self._repository.get_failure_state(subject_id, integration_id)
        if row is None:
            return None
        return FailureState(
            failure_reason=row.failure_reason,
            last_successful_run_at=row.last_successful_run_at,
            last_failed_run_at=row.last_failed_run_at,
        )

    def compute_score(self, subject_id: str, integration_id: str) -> FusionScoreResult:
        now = self._clock.now()
        current = self._repository.get_current_score(subject_id, integration_id)
        previous_score = current.fusion_score if current is not None else None

        if is_excluded(self.failure_state(subject_id, integration_id)):
            logger.info(
                f"Score excluded: subject={subject_id} integration={integration_id}"
            )
            return FusionScoreResult(
                subject_id=subject_id,
                integration_id=integration_id,
                excluded=True,
                previous_score=previous_score,
                calculated_at=now,
            )

        rows = self._repository.get_metrics(subject_id, integration_id)
        if not rows:
            logger.info(
                f"No metrics to score: subject={subject_id} integration={integration_id}"
            )
            return FusionScoreResult(
                subject_id=subject_id,
                integration_id=integration_id,
                previous_score=previous_score,
                calculated_at=now,
            )

        multiplier = self.category_multiplier(subject_id, integration_id)
        overrides = {
            metric_id: weighting.final_weight
            for metric_id, weighting in self._repository.get_weightings(
                subject_id, integration_id
            ).items()
        }

        score, breakdown = compute_fusion_score(
            [_to_metric_value(row) for row in rows],
            overrides,
            multiplier,
            self._config.scoring,
        )
        trend = classify_trend(score, previous_score, self._config.scoring.trend_band)

        return FusionScoreResult(
            subject_id=subject_id,
            integration_id=integration_id,
            score=score,
            breakdown=breakdown,
            trend=trend,
            previous_score=previous_score,
            category_multiplier=multiplier,
            calculated_at=now,
        )

    def compute_and_persist_score(self, subject_id: str, integration_id: str) -> FusionScoreResult:
        result = self.compute_score(subject_id, integration_id)

        self._repository.upsert_score(
            subject_id=subject_id,
            integration_id=integration_id,
            fusion_score=result.score,
            score_breakdown={name: entry.to_dict() for name, entry in result.breakdown.items()},
            trend_direction=result.trend.value,
            excluded=result.excluded,
            calculated_at=result.calculated_at,
        )
        self._repository.append_score_history(
            subject_id=subject_id,
            integration_id=integration_id,
            fusion_score=result.score,
            excluded=result.excluded,
            recorded_at=result.calculated_at,
        )

        logger.info(
            f"Persist fusion_scores: score={result.score:.2f} trend={result.trend.value} "
            f"excluded={result.excluded} metrics={len(result.breakdown)} | "
            f"subject={subject_id} integration={integration_id}"
        )
        return result

    # --------------------------------------------------------
    # METRIC SYNC
    # --------------------------------------------------------

    def sync_metric(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        metric_type: Any,
        raw_value: float,
        data_source: Optional[Dict[str, Any]] = None,
        synced_at: Optional[datetime] = None,
    ) -> FusionMetric:
        """
        Normalize a raw value against its history and store it.

        The metric row keeps an existing explicit weight; new rows
        start with the type default.

        Raises:
            MetricValidationError: If the type or value is invalid
        """
        metric_type = MetricType.parse(metric_type)
        synced_at = synced_at or self._clock.now()

        history = self._repository.get_metric_history(
            subject_id, integration_id, metric_name, limit=self._normalizer.history_window
        )
        normalized = self._normalizer.normalize(metric_type, raw_value, history)

        existing = self._repository.get_metric(subject_id, integration_id, metric_name)
        if existing is not None and existing.weight is not None:
            weight = existing.weight
        else:
            weight = self._config.scoring.default_weight_for(metric_type)

        metric = self._repository.upsert_metric(
            subject_id=subject_id,
            integration_id=integration_id,
            metric_name=metric_name,
            metric_type=metric_type.value,
            raw_value=float(raw_value),
            normalized_value=normalized,
            weight=weight,
            data_source=data_source,
            synced_at=synced_at,
        )
        self._repository.append_metric_history(
            subject_id, integration_id, metric_name, float(raw_value), synced_at
        )

        logger.debug(
            f"Synced metric {metric_name}: raw={raw_value} normalized={normalized:.4f} "
            f"history={len(history)} | subject={subject_id} integration={integration_id}"
        )
        return metric

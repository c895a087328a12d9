"""
Fusion Scoring Engine - Main Orchestrator.

============================================================
PURPOSE
============================================================
The FusionEngine is the library entry point.

Each entry point:
1. Opens one transaction (commit on success, rollback on error)
2. Wires repository, store, audit logger and workers to it
3. Runs a single stateless pass
4. Returns an OperationResult; top-level failures are
   returned as success=False, never raised

============================================================
USAGE
============================================================
    from fusion_engine import FusionEngine

    engine = FusionEngine()

    result = engine.compute_and_persist_score("subject-1", "integration-1")
    if result.success:
        print(format_score_summary(result.data))

    engine.recalibrate_weights("subject-1")           # all active integrations
    engine.learn_from_feedback(dry_run=True)

============================================================
"""

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from database.engine import transaction_scope

from .audit import AuditLogger
from .calculator import FusionScoreCalculator
from .clock import ClockProtocol, Stopwatch, SystemClock
from .config import FusionEngineConfig, load_config_from_env
from .learner import FeedbackDecayLearner
from .recalibrator import AdaptiveRecalibrator
from .repository import FusionRepository
from .types import (
    AuditEventType,
    AuditStatus,
    FusionScoreResult,
    LearningScope,
    MetricValidationError,
    OperationResult,
    TriggeredBy,
)
from .weighting import WeightingStore

logger = logging.getLogger(__name__)


SessionScope = Callable[[], AbstractContextManager]


@dataclass
class _Components:
    repository: FusionRepository
    store: WeightingStore
    audit: AuditLogger
    calculator: FusionScoreCalculator
    recalibrator: AdaptiveRecalibrator
    learner: FeedbackDecayLearner


class FusionEngine:
    """
    Facade over the scoring, recalibration and learning workers.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Own configuration, clock and transaction boundaries
    2. Build per-call collaborators bound to one session
    3. Convert top-level failures into OperationResult
    ============================================================
    """

    def __init__(
        self,
        config: Optional[FusionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        session_scope: Optional[SessionScope] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults to environment)
            clock: Time source (defaults to system UTC clock)
            session_scope: Context manager factory yielding a Session
        """
        self.config = config or load_config_from_env()
        self.clock = clock or SystemClock()
        self._session_scope = session_scope or transaction_scope

    def _build(self, session: Session) -> _Components:
        repository = FusionRepository(session)
        store = WeightingStore(repository, self.config.bounds, self.clock)
        audit = AuditLogger(repository, self.clock)
        recalibrator = AdaptiveRecalibrator(repository, store, audit, self.config, self.clock)
        return _Components(
            repository=repository,
            store=store,
            audit=audit,
            calculator=FusionScoreCalculator(repository, self.config, self.clock),
            recalibrator=recalibrator,
            learner=FeedbackDecayLearner(
                repository, store, audit, self.config, self.clock, recalibrator
            ),
        )

    def _run(self, operation: str, work: Callable[[_Components], Any]) -> OperationResult:
        try:
            with self._session_scope() as session:
                data = work(self._build(session))
            return OperationResult.ok(data)
        except MetricValidationError as e:
            logger.warning(f"{operation} rejected: {e}")
            return OperationResult.failure(str(e))
        except Exception as e:
            logger.exception(f"{operation} failed: {e}")
            return OperationResult.failure(str(e))

    # --------------------------------------------------------
    # ENTRY POINTS
    # --------------------------------------------------------

    def compute_and_persist_score(self, subject_id: str, integration_id: str) -> OperationResult:
        return self._run(
            "compute_and_persist_score",
            lambda c: c.calculator.compute_and_persist_score(subject_id, integration_id),
        )

    def recalibrate_weights(
        self,
        subject_id: str,
        integration_id: Optional[str] = None,
        reason: Optional[str] = None,
        triggered_by: Any = TriggeredBy.USER,
        dry_run: bool = False,
    ) -> OperationResult:
        """
        Recalibrate one integration, or every active integration
        of the subject when integration_id is omitted.
        """
        def work(c: _Components):
            who = TriggeredBy(triggered_by)
            if integration_id:
                return c.recalibrator.recalibrate(subject_id, integration_id, reason, who, dry_run)
            return c.recalibrator.recalibrate_subject(subject_id, reason, who, dry_run)

        return self._run("recalibrate_weights", work)

    def learn_from_feedback(
        self,
        subject_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> OperationResult:
        scope = LearningScope(subject_id=subject_id, integration_id=integration_id)
        return self._run(
            "learn_from_feedback",
            lambda c: c.learner.learn_from_feedback(scope, dry_run),
        )

    def sync_metric(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        metric_type: Any,
        raw_value: float,
        data_source: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        def work(c: _Components) -> Dict[str, Any]:
            metric = c.calculator.sync_metric(
                subject_id, integration_id, metric_name, metric_type, raw_value, data_source
            )
            return {
                "metric_id": metric.id,
                "metric_name": metric.metric_name,
                "metric_type": metric.metric_type,
                "raw_value": metric.raw_value,
                "normalized_value": metric.normalized_value,
                "weight": metric.weight,
            }

        return self._run("sync_metric", work)

    def set_manual_weight(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        weight: float,
        reason: str,
    ) -> OperationResult:
        """Operator override of one metric weight, audited as triggered by the user."""

        def work(c: _Components) -> Dict[str, Any]:
            stopwatch = Stopwatch()
            metric = c.repository.get_metric(subject_id, integration_id, metric_name)
            if metric is None:
                raise MetricValidationError(
                    f"Unknown metric: {metric_name}",
                    subject_id=subject_id,
                    integration_id=integration_id,
                )

            existing = c.store.get_weights(subject_id, integration_id)
            written = c.store.set_manual_weight(
                subject_id, integration_id, metric.id, metric.metric_name, weight, reason
            )
            changes = c.store.diff(existing, [written])
            c.audit.record(
                subject_id,
                integration_id,
                AuditEventType.MANUAL_WEIGHT_OVERRIDE,
                TriggeredBy.USER,
                status=AuditStatus.SUCCESS,
                metrics_count=1,
                weight_changes=changes,
                event_data={"metric_name": metric_name, "reason": reason},
                execution_time_ms=stopwatch.elapsed_ms(),
            )
            return {"metric_name": metric_name, "final_weight": written.final_weight}

        return self._run("set_manual_weight", work)


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================


def compute_and_persist_score(subject_id: str, integration_id: str) -> OperationResult:
    """Score one integration with a default-configured engine."""
    return FusionEngine().compute_and_persist_score(subject_id, integration_id)


def recalibrate_weights(
    subject_id: str,
    integration_id: Optional[str] = None,
    triggered_by: Any = TriggeredBy.USER,
    dry_run: bool = False,
) -> OperationResult:
    return FusionEngine().recalibrate_weights(
        subject_id, integration_id, triggered_by=triggered_by, dry_run=dry_run
    )


def learn_from_feedback(
    subject_id: Optional[str] = None,
    integration_id: Optional[str] = None,
    dry_run: bool = False,
) -> OperationResult:
    return FusionEngine().learn_from_feedback(subject_id, integration_id, dry_run)


def format_score_summary(result: FusionScoreResult) -> str:
    """
    Format a human-readable score summary.

    Args:
        result: Score computation result

    Returns:
        Formatted summary string
    """
    lines = [
        "=" * 50,
        "FUSION SCORE SUMMARY",
        "=" * 50,
        f"Subject:      {result.subject_id}",
        f"Integration:  {result.integration_id}",
        f"Score:        {result.score:.2f}/100",
        f"Trend:        {result.trend.value}",
        f"Excluded:     {result.excluded}",
        f"Multiplier:   {result.category_multiplier}",
        f"Calculated:   {result.calculated_at.isoformat()}",
    ]

    if result.breakdown:
        lines.append("")
        lines.append("Breakdown:")
        for name, entry in sorted(
            result.breakdown.items(), key=lambda item: item[1].contribution, reverse=True
        ):
            lines.append(
                f"  {name:<24} n={entry.normalized:.3f} w={entry.weight:.3f} "
                f"c={entry.contribution:.3f}"
            )

    lines.append("=" * 50)
    return "\n".join(lines)

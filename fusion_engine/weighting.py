"""
Fusion Scoring Engine - Weighting Store.

============================================================
PURPOSE
============================================================
Single write path for metric weights.

- Every write is an upsert on (subject, integration, metric)
- Every write clamps final_weight to the configured bounds
- Every write carries a human-readable adjustment_reason
- adaptive=True for machine writes, False for manual overrides

============================================================
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

from .clock import ClockProtocol, SystemClock
from .config import WeightBounds
from .models import FusionWeighting
from .repository import FusionRepository
from .types import WeightChange, WeightUpdate, WeightingError

logger = logging.getLogger(__name__)


class WeightingStore:
    """
    Weight persistence with bound enforcement.

    Callers compute weights; the store clamps, stamps and
    upserts them. It never deletes a weighting row.
    """

    def __init__(
        self,
        repository: FusionRepository,
        bounds: Optional[WeightBounds] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._repository = repository
        self._bounds = bounds or WeightBounds()
        self._clock = clock or SystemClock()

    @property
    def bounds(self) -> WeightBounds:
        return self._bounds

    def get_weights(self, subject_id: str, integration_id: str) -> Dict[str, FusionWeighting]:
        """Current weightings keyed by metric_id."""
        return self._repository.get_weightings(subject_id, integration_id)

    def clamp(self, update: WeightUpdate) -> WeightUpdate:
        clamped = self._bounds.clamp(update.final_weight)
        if clamped == update.final_weight:
            return update
        return WeightUpdate(
            metric_id=update.metric_id,
            metric_name=update.metric_name,
            final_weight=clamped,
            variance=update.variance,
            ai_confidence=update.ai_confidence,
            correlation_penalty=update.correlation_penalty,
        )

    def write_weights(
        self,
        subject_id: str,
        integration_id: str,
        updates: Sequence[WeightUpdate],
        adjustment_reason: str,
        adaptive: bool = True,
    ) -> List[WeightUpdate]:
        """
        Clamp and upsert a set of weights.

        Args:
            subject_id: Subject identifier
            integration_id: Integration identifier
            updates: Computed weights
            adjustment_reason: Why the weights changed
            adaptive: True when machine generated

        Returns:
            The weights as written (after clamping)

        Raises:
            WeightingError: If adjustment_reason is empty
        """
        if not adjustment_reason or not adjustment_reason.strip():
            raise WeightingError(
                "adjustment_reason is required for every weight write",
                subject_id=subject_id,
                integration_id=integration_id,
            )

        now = self._clock.now()
        written = []

        for update in updates:
            clamped = self.clamp(update)
            if clamped is not update:
                logger.debug(
                    f"Clamped weight {update.metric_name}: "
                    f"{update.final_weight:.4f} -> {clamped.final_weight:.4f}"
                )

            self._repository.upsert_weighting({
                "subject_id": subject_id,
                "integration_id": integration_id,
                "metric_id": clamped.metric_id,
                "metric_name": clamped.metric_name,
                "final_weight": clamped.final_weight,
                "variance": clamped.variance,
                "ai_confidence": clamped.ai_confidence,
                "correlation_penalty": clamped.correlation_penalty,
                "adjustment_reason": adjustment_reason,
                "adaptive": adaptive,
                "updated_at": now,
            })
            written.append(clamped)

        logger.info(
            f"Persist fusion_weightings: upserted={len(written)} | "
            f"subject={subject_id} integration={integration_id} adaptive={adaptive}"
        )
        return written

    def set_manual_weight(
        self,
        subject_id: str,
        integration_id: str,
        metric_id: str,
        metric_name: str,
        weight: float,
        adjustment_reason: str,
    ) -> WeightUpdate:
        """Operator override of a single metric weight (adaptive=False)."""
        written = self.write_weights(
            subject_id,
            integration_id,
            [WeightUpdate(metric_id=metric_id, metric_name=metric_name, final_weight=float(weight))],
            adjustment_reason=adjustment_reason,
            adaptive=False,
        )
        return written[0]

    @staticmethod
    def diff(
        old: Mapping[str, FusionWeighting],
        new: Sequence[WeightUpdate],
    ) -> Dict[str, WeightChange]:
        """
        Build the {metric_name: {old, new}} change map.

        Only metrics that already had a weighting appear.
        """
        changes: Dict[str, WeightChange] = {}
        for update in new:
            existing = old.get(update.metric_id)
            if existing is None:
                continue
            changes[update.metric_name] = WeightChange(
                old=existing.final_weight,
                new=update.final_weight,
            )
        return changes

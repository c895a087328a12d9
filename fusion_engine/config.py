"""
Fusion Scoring Engine - Configuration.

============================================================
PURPOSE
============================================================
Defines all configuration dataclasses and constants for the
Fusion Scoring Engine.

The scoring, recalibration and learning constants are
pinned; the category multiplier table is business policy
and is injected rather than hard-coded into the calculator.

============================================================
ENVIRONMENT OVERRIDES
============================================================
FUSION_DECAY_LAMBDA     Feedback decay rate per day
FUSION_LEARNING_RATE    Default per-integration learning rate
FUSION_TREND_BAND       Trend dead-zone in score points
FUSION_LOOKBACK_DAYS    Feedback lookback window in days

============================================================
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .types import MetricType

logger = logging.getLogger(__name__)


# ============================================================
# WEIGHT BOUNDS
# ============================================================


@dataclass(frozen=True)
class WeightBounds:
    """
    Hard bounds applied to every persisted final_weight.
    """

    min_weight: float = 0.1
    max_weight: float = 10.0

    def clamp(self, value: float) -> float:
        return min(max(value, self.min_weight), self.max_weight)

    def to_dict(self) -> Dict[str, Any]:
        return {"min_weight": self.min_weight, "max_weight": self.max_weight}


# ============================================================
# NORMALIZER CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class NormalizerConfig:
    """
    Configuration for metric normalization.

    ============================================================
    RATIONALE
    ============================================================
    history_window: number of recent raw values forming the
        min-max window for a metric
    bootstrap_scale: divisor used before any history exists
    degenerate_value: result when the window is flat
    ============================================================
    """

    history_window: int = 10
    bootstrap_scale: float = 100.0
    degenerate_value: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "history_window": self.history_window,
            "bootstrap_scale": self.bootstrap_scale,
            "degenerate_value": self.degenerate_value,
        }


# ============================================================
# CATEGORY POLICY
# ============================================================


DEFAULT_SERVICE_CATEGORIES: Dict[str, str] = {
    "slack": "communications",
    "microsoft_teams": "communications",
    "discord": "communications",
    "zoom": "communications",
    "google_meet": "communications",
    "quickbooks": "finance",
    "xero": "finance",
    "stripe": "finance",
}

DEFAULT_CATEGORY_MULTIPLIERS: Dict[str, float] = {
    "finance": 1.2,
    "communications": 1.0,
}


@dataclass(frozen=True)
class CategoryPolicy:
    """
    Category multiplier lookup.

    Integrations resolve to a category by explicit category
    first, then by service name. Categories not present in
    the multiplier table fall back to default_multiplier.
    """

    service_categories: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SERVICE_CATEGORIES)
    )
    multipliers: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_MULTIPLIERS)
    )
    default_category: str = "other"
    default_multiplier: float = 1.1

    def category_for(
        self,
        service_name: Optional[str],
        declared_category: Optional[str] = None,
    ) -> str:
        if declared_category:
            return declared_category.lower()
        if service_name:
            return self.service_categories.get(service_name.lower(), self.default_category)
        return self.default_category

    def multiplier_for(self, category: Optional[str]) -> float:
        if not category:
            return self.default_multiplier
        return self.multipliers.get(category.lower(), self.default_multiplier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_categories": dict(self.service_categories),
            "multipliers": dict(self.multipliers),
            "default_category": self.default_category,
            "default_multiplier": self.default_multiplier,
        }


# ============================================================
# SCORING CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class ScoringConfig:
    """
    Configuration for the Fusion Score Calculator.

    trend_band is the dead zone around the previous score:
    a move must exceed it to register as up or down.
    """

    type_default_weights: Dict[MetricType, float] = field(
        default_factory=lambda: {t: t.default_weight for t in MetricType}
    )
    trend_band: float = 5.0
    score_min: float = 0.0
    score_max: float = 100.0

    def default_weight_for(self, metric_type: MetricType) -> float:
        return self.type_default_weights.get(metric_type, metric_type.default_weight)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type_default_weights": {t.value: w for t, w in self.type_default_weights.items()},
            "trend_band": self.trend_band,
            "score_min": self.score_min,
            "score_max": self.score_max,
        }


# ============================================================
# RECALIBRATION CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class RecalibrationConfig:
    """
    Configuration for variance-driven recalibration.

    ============================================================
    FORMULA
    ============================================================
    raw = base * (1 + alpha*variance + beta*confidence - gamma*penalty)
    final = raw / sum(raw)
    ============================================================
    """

    alpha: float = 0.3
    beta: float = 0.5
    gamma: float = 0.2
    history_window: int = 30
    min_history_points: int = 2
    default_variance: float = 0.5
    fallback_base_weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alpha": self.alpha,
            "beta": self.beta,
            "gamma": self.gamma,
            "history_window": self.history_window,
            "min_history_points": self.min_history_points,
            "default_variance": self.default_variance,
            "fallback_base_weight": self.fallback_base_weight,
        }


# ============================================================
# LEARNING CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class LearningConfig:
    """
    Configuration for feedback-decay learning.

    decay_lambda is per day: an event 10 days old carries
    exp(-1) of the weight of a fresh one.
    """

    decay_lambda: float = 0.1
    lookback_days: int = 30
    default_learning_rate: float = 0.05
    fallback_weight: float = 1.0
    score_delta_scale: float = 10.0
    score_delta_cap: float = 0.5
    recalibrate_after_update: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decay_lambda": self.decay_lambda,
            "lookback_days": self.lookback_days,
            "default_learning_rate": self.default_learning_rate,
            "fallback_weight": self.fallback_weight,
            "score_delta_scale": self.score_delta_scale,
            "score_delta_cap": self.score_delta_cap,
            "recalibrate_after_update": self.recalibrate_after_update,
        }


# ============================================================
# MASTER CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class FusionEngineConfig:
    """
    Master configuration for the Fusion Scoring Engine.
    """

    bounds: WeightBounds = field(default_factory=WeightBounds)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    categories: CategoryPolicy = field(default_factory=CategoryPolicy)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    recalibration: RecalibrationConfig = field(default_factory=RecalibrationConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    engine_version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bounds": self.bounds.to_dict(),
            "normalizer": self.normalizer.to_dict(),
            "categories": self.categories.to_dict(),
            "scoring": self.scoring.to_dict(),
            "recalibration": self.recalibration.to_dict(),
            "learning": self.learning.to_dict(),
            "engine_version": self.engine_version,
        }


# ============================================================
# DEFAULT CONFIGURATION
# ============================================================


def get_default_config() -> FusionEngineConfig:
    """Return the default Fusion Scoring Engine configuration."""
    return FusionEngineConfig()


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number")
        return None


def load_config_from_env(base: Optional[FusionEngineConfig] = None) -> FusionEngineConfig:
    """
    Build a configuration with environment overrides applied.

    Reads .env via python-dotenv, then FUSION_* variables.
    """
    load_dotenv()
    config = base or get_default_config()

    learning = config.learning
    decay_lambda = _env_float("FUSION_DECAY_LAMBDA")
    if decay_lambda is not None:
        learning = replace(learning, decay_lambda=decay_lambda)
    learning_rate = _env_float("FUSION_LEARNING_RATE")
    if learning_rate is not None:
        learning = replace(learning, default_learning_rate=learning_rate)
    lookback_days = _env_float("FUSION_LOOKBACK_DAYS")
    if lookback_days is not None:
        learning = replace(learning, lookback_days=int(lookback_days))

    scoring = config.scoring
    trend_band = _env_float("FUSION_TREND_BAND")
    if trend_band is not None:
        scoring = replace(scoring, trend_band=trend_band)

    return replace(config, learning=learning, scoring=scoring)

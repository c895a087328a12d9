"""
Fusion Scoring Engine - Metric Normalizer.

============================================================
PURPOSE
============================================================
Maps a raw metric value onto the unit interval using the
metric's own recent history.

- No history: bootstrap heuristic raw / 100, capped at 1
- History: min-max scale against [min, max] of the window
- Flat window (max == min): neutral midpoint 0.5

Results are always clipped to [0, 1].

============================================================
"""

from typing import Optional, Sequence

from .config import NormalizerConfig
from .types import MetricType


def normalize(
    metric_type: MetricType,
    raw_value: float,
    history: Optional[Sequence[float]] = None,
    config: Optional[NormalizerConfig] = None,
) -> float:
    """
    Normalize a raw metric value to [0, 1].

    Args:
        metric_type: Metric variant; validates the raw value
        raw_value: Current raw value
        history: Recent raw values of the same metric
        config: Normalizer configuration

    Returns:
        Normalized value in [0, 1]

    Raises:
        MetricValidationError: If the raw value is invalid for the type
    """
    config = config or NormalizerConfig()
    metric_type = MetricType.parse(metric_type)
    value = metric_type.validate(raw_value)

    if not history:
        return _clip(min(value / config.bootstrap_scale, 1.0))

    low = min(history)
    high = max(history)

    if high == low:
        return config.degenerate_value

    return _clip((value - low) / (high - low))


def _clip(value: float) -> float:
    return max(0.0, min(1.0, value))


class MetricNormalizer:
    """
    Stateful wrapper binding a NormalizerConfig.

    Used by the metric sync path, which loads the history
    window from the repository before calling normalize().
    """

    def __init__(self, config: Optional[NormalizerConfig] = None):
        self.config = config or NormalizerConfig()

    @property
    def history_window(self) -> int:
        return self.config.history_window

    def normalize(
        self,
        metric_type: MetricType,
        raw_value: float,
        history: Optional[Sequence[float]] = None,
    ) -> float:
        return normalize(metric_type, raw_value, history, self.config)

"""
Fusion Scoring Engine Package.

============================================================
PURPOSE
============================================================
Aggregates heterogeneous integration metrics into one
explainable 0-100 fusion score per (subject, integration)
and adapts the metric weights over time.

- Normalizer: raw metric -> [0, 1] against its own history
- Calculator: weighted score, exclusion rule, trend
- Recalibrator: weights from score-history variance
- Learner: weights from decay-weighted outcome feedback
- Audit log: one entry per weight mutation pass

============================================================
USAGE
============================================================
    from fusion_engine import FusionEngine

    engine = FusionEngine()
    result = engine.compute_and_persist_score("subject-1", "slack")

============================================================
"""

from .types import (
    # Enums
    MetricType,
    TrendDirection,
    FeedbackType,
    TriggeredBy,
    AuditStatus,
    AuditEventType,

    # Contracts
    MetricValue,
    FailureState,
    FeedbackSample,
    LearningScope,
    BreakdownEntry,
    FusionScoreResult,
    WeightChange,
    WeightUpdate,
    RecalibrationResult,
    RecalibrationBatchSummary,
    LearningStats,
    LearningGroupResult,
    LearningSummary,
    OperationResult,

    # Errors
    FusionEngineError,
    MetricValidationError,
    WeightingError,
    FusionPersistenceError,
)

from .config import (
    WeightBounds,
    NormalizerConfig,
    CategoryPolicy,
    ScoringConfig,
    RecalibrationConfig,
    LearningConfig,
    FusionEngineConfig,
    get_default_config,
    load_config_from_env,
)

from .normalizer import normalize, MetricNormalizer
from .calculator import (
    compute_fusion_score,
    classify_trend,
    is_excluded,
    FusionScoreCalculator,
)
from .recalibrator import (
    coefficient_of_variation,
    compute_recalibrated_weights,
    AdaptiveRecalibrator,
)
from .learner import (
    decay_weight,
    weighted_success_rate,
    compute_learning_stats,
    FeedbackDecayLearner,
)
from .weighting import WeightingStore
from .audit import AuditLogger
from .repository import FusionRepository
from .engine import (
    FusionEngine,
    compute_and_persist_score,
    recalibrate_weights,
    learn_from_feedback,
    format_score_summary,
)


__version__ = "1.0.0"


__all__ = [
    # Enums
    "MetricType",
    "TrendDirection",
    "FeedbackType",
    "TriggeredBy",
    "AuditStatus",
    "AuditEventType",

    # Contracts
    "MetricValue",
    "FailureState",
    "FeedbackSample",
    "LearningScope",
    "BreakdownEntry",
    "FusionScoreResult",
    "WeightChange",
    "WeightUpdate",
    "RecalibrationResult",
    "RecalibrationBatchSummary",
    "LearningStats",
    "LearningGroupResult",
    "LearningSummary",
    "OperationResult",

    # Errors
    "FusionEngineError",
    "MetricValidationError",
    "WeightingError",
    "FusionPersistenceError",

    # Configuration
    "WeightBounds",
    "NormalizerConfig",
    "CategoryPolicy",
    "ScoringConfig",
    "RecalibrationConfig",
    "LearningConfig",
    "FusionEngineConfig",
    "get_default_config",
    "load_config_from_env",

    # Components
    "normalize",
    "MetricNormalizer",
    "compute_fusion_score",
    "classify_trend",
    "is_excluded",
    "FusionScoreCalculator",
    "coefficient_of_variation",
    "compute_recalibrated_weights",
    "AdaptiveRecalibrator",
    "decay_weight",
    "weighted_success_rate",
    "compute_learning_stats",
    "FeedbackDecayLearner",
    "WeightingStore",
    "AuditLogger",
    "FusionRepository",

    # Engine
    "FusionEngine",
    "compute_and_persist_score",
    "recalibrate_weights",
    "learn_from_feedback",
    "format_score_summary",
]

"""
Tests for feedback-decay learning.
"""

import math
from datetime import timedelta

import pytest

from fusion_engine.config import FusionEngineConfig, LearningConfig
from fusion_engine.learner import (
    FeedbackDecayLearner,
    compute_learning_stats,
    decay_weight,
    weighted_success_rate,
)
from fusion_engine.models import FusionAuditLog, FusionScore, FusionWeighting
from fusion_engine.types import FeedbackSample, FeedbackType, LearningScope, WeightUpdate

from tests.fusion_engine.conftest import (
    INTEGRATION,
    NOW,
    SUBJECT,
    add_feedback,
    add_metric,
)


def _sample(feedback_type, age_days, before=None, after=None):
    return FeedbackSample(
        feedback_type=feedback_type,
        created_at=NOW - timedelta(days=age_days),
        score_before=before,
        score_after=after,
    )


# ============================================================
# PURE FUNCTIONS
# ============================================================

class TestDecay:

    def test_reference_values(self):
        assert decay_weight(1) == pytest.approx(0.9048, abs=1e-4)
        assert decay_weight(10) == pytest.approx(0.3679, abs=1e-4)

    def test_strictly_decreasing_in_age(self):
        ages = [0, 0.5, 1, 2, 7, 29.9]
        weights = [decay_weight(a) for a in ages]
        assert all(a > b for a, b in zip(weights, weights[1:]))


class TestLearningStats:

    def test_success_fail_scenario(self):
        samples = [
            _sample(FeedbackType.SUCCESS, 1),
            _sample(FeedbackType.FAIL, 10),
        ]

        stats = compute_learning_stats(samples, NOW, learning_rate=0.05)

        expected_rate = math.exp(-0.1) / (math.exp(-0.1) + math.exp(-1.0))
        assert stats.weighted_success_rate == pytest.approx(expected_rate)
        assert round(stats.weighted_success_rate, 3) == 0.711
        assert round(stats.performance_factor, 3) == 0.422
        assert round(stats.adjustment_multiplier, 3) == 1.021
        assert stats.adjustment_multiplier == pytest.approx(1 + (expected_rate - 0.5) * 2 * 0.05)

    def test_neutral_and_unknown_count_half(self):
        samples = [_sample(FeedbackType.coerce("meh"), 0), _sample(FeedbackType.NEUTRAL, 3)]
        assert weighted_success_rate(samples, NOW) == pytest.approx(0.5)

    def test_empty_is_neutral(self):
        assert weighted_success_rate([], NOW) == 0.5

    def test_score_delta_factor_capped(self):
        samples = [_sample(FeedbackType.NEUTRAL, 0, before=10, after=90)]
        stats = compute_learning_stats(samples, NOW, learning_rate=0.1)

        assert stats.avg_score_delta == pytest.approx(80)
        assert stats.score_delta_factor == 0.5
        assert stats.adjustment_multiplier == pytest.approx(1.05)

    def test_missing_scores_count_as_zero(self):
        samples = [_sample(FeedbackType.NEUTRAL, 0, after=20), _sample(FeedbackType.NEUTRAL, 0)]
        stats = compute_learning_stats(samples, NOW, learning_rate=0.05)
        assert stats.avg_score_delta == pytest.approx(10)


# ============================================================
# LEARNER AGAINST THE STORE
# ============================================================

class TestFeedbackDecayLearner:

    def test_no_feedback(self, learner):
        summary = learner.learn_from_feedback()

        assert summary.success is True
        assert summary.message == "No feedback data to process"
        assert summary.weight_updates == 0

    def test_updates_weights_and_audits(self, session, learner, store):
        metric = add_metric(session, "messages", 0.5, weight=2.0)
        add_feedback(session, "success", 1)
        add_feedback(session, "fail", 10)

        summary = learner.learn_from_feedback()

        assert summary.success is True
        assert summary.feedback_processed == 2
        assert summary.weight_updates == 1
        group = summary.groups[0]
        assert group.metrics_updated == 1

        weight = store.get_weights(SUBJECT, INTEGRATION)[metric.id]
        assert weight.final_weight == pytest.approx(2.0 * group.stats.adjustment_multiplier)
        assert weight.adjustment_reason == "Adaptive learning: success_rate=0.71, delta=0.0"
        assert weight.adaptive is True

        entry = session.query(FusionAuditLog).one()
        assert entry.event_type == "adaptive_learning_update"
        assert entry.triggered_by == "system"
        assert entry.event_data["feedback_count"] == 2
        assert entry.event_data["metrics_updated"] == 1
        assert entry.event_data["success_rate"] == pytest.approx(group.stats.weighted_success_rate)

    def test_existing_weighting_takes_precedence(self, session, learner, store):
        metric = add_metric(session, "messages", 0.5, weight=2.0)
        store.write_weights(
            SUBJECT,
            INTEGRATION,
            [WeightUpdate(metric_id=metric.id, metric_name="messages", final_weight=4.0)],
            "seed",
        )
        add_feedback(session, "success", 0)

        summary = learner.learn_from_feedback()

        group = summary.groups[0]
        assert group.weight_changes["messages"].old == pytest.approx(4.0)
        assert group.weight_changes["messages"].new == pytest.approx(4.0 * 1.05)

    def test_learning_rate_from_score_row(self, session, learner):
        add_metric(session, "messages", 0.5)
        session.add(FusionScore(
            subject_id=SUBJECT, integration_id=INTEGRATION, fusion_score=50.0, learning_rate=0.2
        ))
        session.flush()
        add_feedback(session, "success", 0)

        summary = learner.learn_from_feedback()

        assert summary.groups[0].stats.adjustment_multiplier == pytest.approx(1.2)

    def test_weights_stay_within_bounds(self, session, learner, store):
        metric = add_metric(session, "messages", 0.5, weight=10.0)
        add_feedback(session, "success", 0, score_before=0, score_after=100)

        learner.learn_from_feedback()

        assert store.get_weights(SUBJECT, INTEGRATION)[metric.id].final_weight == 10.0

    def test_old_feedback_outside_window_ignored(self, session, learner):
        add_metric(session, "messages", 0.5)
        add_feedback(session, "success", 45)

        summary = learner.learn_from_feedback()

        assert summary.message == "No feedback data to process"

    def test_scope_filters_groups(self, session, learner):
        add_metric(session, "messages", 0.5)
        add_metric(session, "messages", 0.5, integration_id="other")
        add_feedback(session, "success", 1)
        add_feedback(session, "success", 1, integration_id="other")

        summary = learner.learn_from_feedback(LearningScope(subject_id=SUBJECT, integration_id="other"))

        assert [g.integration_id for g in summary.groups] == ["other"]

    def test_group_without_metrics_does_not_stop_others(self, session, learner):
        add_metric(session, "messages", 0.5)
        add_feedback(session, "success", 1)
        add_feedback(session, "success", 1, integration_id="no-metrics")

        summary = learner.learn_from_feedback()

        outcomes = {g.integration_id: g.success for g in summary.groups}
        assert outcomes == {INTEGRATION: True, "no-metrics": False}
        failed = session.query(FusionAuditLog).filter_by(status="failed").one()
        assert failed.error_message == "No metrics found"

    def test_exception_in_one_group_is_isolated(self, session, learner, store, monkeypatch):
        add_metric(session, "messages", 0.5)
        add_metric(session, "messages", 0.5, integration_id="broken")
        add_feedback(session, "success", 1)
        add_feedback(session, "success", 2, integration_id="broken")

        original = store.write_weights

        def flaky(subject_id, integration_id, *args, **kwargs):
            if integration_id == "broken":
                raise RuntimeError("write failed")
            return original(subject_id, integration_id, *args, **kwargs)

        monkeypatch.setattr(store, "write_weights", flaky)

        summary = learner.learn_from_feedback()

        outcomes = {g.integration_id: g.success for g in summary.groups}
        assert outcomes == {INTEGRATION: True, "broken": False}
        assert len(summary.failed_groups) == 1
        assert session.query(FusionWeighting).count() == 1

    def test_dry_run_writes_nothing(self, session, learner):
        add_metric(session, "messages", 0.5, weight=1.0)
        add_feedback(session, "success", 1)

        summary = learner.learn_from_feedback(dry_run=True)

        assert summary.dry_run is True
        assert summary.groups[0].weights[0].final_weight > 1.0
        assert session.query(FusionWeighting).count() == 0
        assert session.query(FusionAuditLog).count() == 0


class TestAdaptiveTrigger:

    def test_nested_recalibration_after_update(
        self, session, repository, store, audit, clock, recalibrator
    ):
        config = FusionEngineConfig(learning=LearningConfig(recalibrate_after_update=True))
        learner = FeedbackDecayLearner(repository, store, audit, config, clock, recalibrator)
        add_metric(session, "a", 0.5)
        add_metric(session, "b", 0.5)
        add_feedback(session, "success", 1)

        learner.learn_from_feedback()

        events = [e.event_type for e in session.query(FusionAuditLog).order_by(FusionAuditLog.id)]
        assert events == ["adaptive_learning_update", "adaptive_trigger"]
        weights = store.get_weights(SUBJECT, INTEGRATION)
        assert sum(w.final_weight for w in weights.values()) == pytest.approx(1.0)

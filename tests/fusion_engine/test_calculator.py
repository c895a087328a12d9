"""
Tests for the Fusion Score Calculator.
"""

from datetime import timedelta

import pytest

from fusion_engine.calculator import classify_trend, compute_fusion_score, is_excluded
from fusion_engine.models import FusionScore, FusionScoreHistory
from fusion_engine.types import FailureState, MetricType, MetricValue, TrendDirection

from tests.fusion_engine.conftest import (
    INTEGRATION,
    NOW,
    SUBJECT,
    add_failure_state,
    add_integration,
    add_metric,
)


def _metric(metric_id, normalized, metric_type=MetricType.COUNT, weight=None):
    return MetricValue(
        metric_id=metric_id,
        name=f"metric_{metric_id}",
        metric_type=metric_type,
        normalized_value=normalized,
        weight=weight,
    )


# ============================================================
# PURE FUNCTIONS
# ============================================================

class TestComputeFusionScore:

    def test_golden_three_metric_default_weights(self):
        metrics = [
            _metric("a", 0.5, MetricType.COUNT),
            _metric("b", 0.8, MetricType.SUM),
            _metric("c", 0.3, MetricType.AVERAGE),
        ]

        score, breakdown = compute_fusion_score(metrics, {}, 1.0)

        assert score == pytest.approx((0.1 + 0.24 + 0.075) / 0.75 * 100)
        assert score == pytest.approx(55.3333, abs=1e-4)
        assert breakdown["metric_a"].contribution == pytest.approx(0.1)
        assert breakdown["metric_b"].weight == pytest.approx(0.3)

    def test_override_beats_metric_weight_beats_type_default(self):
        metrics = [
            _metric("a", 1.0, weight=0.5),
            _metric("b", 0.0, weight=0.5),
        ]

        score, breakdown = compute_fusion_score(metrics, {"a": 3.0}, 1.0)

        assert breakdown["metric_a"].weight == pytest.approx(3.0)
        assert breakdown["metric_b"].weight == pytest.approx(0.5)
        assert score == pytest.approx(3.0 / 3.5 * 100)

    def test_uniform_multiplier_scales_breakdown_not_score(self):
        metrics = [_metric("a", 0.5), _metric("b", 0.9, MetricType.SUM)]

        plain, _ = compute_fusion_score(metrics, {}, 1.0)
        boosted, breakdown = compute_fusion_score(metrics, {}, 1.2)

        assert boosted == pytest.approx(plain)
        assert breakdown["metric_a"].weight == pytest.approx(0.24)

    def test_explicit_zero_metric_weight_mutes_metric(self):
        metrics = [_metric("a", 1.0, weight=0.0), _metric("b", 0.4)]

        score, breakdown = compute_fusion_score(metrics, {}, 1.0)

        assert breakdown["metric_a"].weight == 0.0
        assert breakdown["metric_a"].contribution == 0.0
        assert score == pytest.approx(40.0)

    def test_empty_metrics_score_zero(self):
        score, breakdown = compute_fusion_score([], {}, 1.0)
        assert score == 0.0
        assert breakdown == {}

    def test_score_within_bounds(self):
        metrics = [_metric(str(i), i / 10) for i in range(11)]
        score, _ = compute_fusion_score(metrics, {}, 1.1)
        assert 0.0 <= score <= 100.0


class TestClassifyTrend:

    @pytest.mark.parametrize("new, prev, expected", [
        (60.0, 50.0, TrendDirection.UP),
        (55.0, 50.0, TrendDirection.STABLE),
        (55.01, 50.0, TrendDirection.UP),
        (45.0, 50.0, TrendDirection.STABLE),
        (44.99, 50.0, TrendDirection.DOWN),
        (50.0, None, TrendDirection.STABLE),
    ])
    def test_band(self, new, prev, expected):
        assert classify_trend(new, prev, 5.0) == expected


class TestIsExcluded:

    def test_no_state(self):
        assert is_excluded(None) is False

    def test_no_failure_reason(self):
        assert is_excluded(FailureState(last_failed_run_at=NOW)) is False

    def test_never_succeeded(self):
        assert is_excluded(FailureState(failure_reason="auth", last_failed_run_at=NOW)) is True

    def test_failed_after_success(self):
        state = FailureState(
            failure_reason="timeout",
            last_successful_run_at=NOW - timedelta(hours=1),
            last_failed_run_at=NOW,
        )
        assert is_excluded(state) is True

    def test_failed_at_same_instant_as_success(self):
        state = FailureState(
            failure_reason="timeout",
            last_successful_run_at=NOW,
            last_failed_run_at=NOW,
        )
        assert is_excluded(state) is True

    def test_recovered_after_failure(self):
        state = FailureState(
            failure_reason="timeout",
            last_successful_run_at=NOW,
            last_failed_run_at=NOW - timedelta(hours=1),
        )
        assert is_excluded(state) is False

    def test_missing_failure_time_with_success(self):
        state = FailureState(failure_reason="timeout", last_successful_run_at=NOW)
        assert is_excluded(state) is False


# ============================================================
# CALCULATOR AGAINST THE STORE
# ============================================================

class TestFusionScoreCalculator:

    def test_persists_score_and_history(self, session, calculator):
        add_integration(session, service_name="slack")
        add_metric(session, "messages", 0.5, "count")
        add_metric(session, "revenue", 0.8, "sum")
        add_metric(session, "response_time", 0.3, "average")

        result = calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result.score == pytest.approx(55.3333, abs=1e-4)
        assert result.trend == TrendDirection.STABLE
        assert result.excluded is False

        row = session.query(FusionScore).one()
        assert row.fusion_score == pytest.approx(result.score)
        assert set(row.score_breakdown) == {"messages", "revenue", "response_time"}
        assert row.learning_rate == pytest.approx(0.05)
        assert row.baseline_score == pytest.approx(50.0)
        assert session.query(FusionScoreHistory).count() == 1

    def test_excluded_source_scores_zero(self, session, calculator):
        add_metric(session, "messages", 0.9)
        add_failure_state(session, "token revoked", last_failed_run_at=NOW)

        result = calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result.score == 0.0
        assert result.excluded is True
        assert result.breakdown == {}
        row = session.query(FusionScore).one()
        assert row.excluded is True
        assert row.fusion_score == 0.0
        history = session.query(FusionScoreHistory).one()
        assert history.excluded is True

    def test_no_metrics_is_not_an_error(self, session, calculator):
        result = calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result.score == 0.0
        assert result.breakdown == {}
        assert result.trend == TrendDirection.STABLE
        assert result.excluded is False

    def test_trend_against_previous_score(self, session, calculator):
        metric = add_metric(session, "messages", 0.5)
        calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        metric.normalized_value = 0.9
        session.flush()
        result = calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result.previous_score == pytest.approx(50.0)
        assert result.trend == TrendDirection.UP
        assert session.query(FusionScoreHistory).count() == 2

    def test_recompute_keeps_learning_rate(self, session, calculator):
        add_metric(session, "messages", 0.5)
        calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        row = session.query(FusionScore).one()
        row.learning_rate = 0.2
        session.flush()

        calculator.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert session.query(FusionScore).one().learning_rate == pytest.approx(0.2)

    @pytest.mark.parametrize("service_name, category, expected", [
        ("quickbooks", None, 1.2),
        ("slack", None, 1.0),
        ("github", None, 1.1),
        ("slack", "finance", 1.2),
    ])
    def test_category_multiplier(self, session, calculator, service_name, category, expected):
        add_integration(session, service_name=service_name, category=category)
        add_metric(session, "messages", 0.5)

        result = calculator.compute_score(SUBJECT, INTEGRATION)

        assert result.category_multiplier == pytest.approx(expected)
        assert result.breakdown["messages"].weight == pytest.approx(0.2 * expected)


class TestSyncMetric:

    def test_bootstrap_then_history(self, session, calculator):
        first = calculator.sync_metric(SUBJECT, INTEGRATION, "messages", "count", 40)
        assert first.normalized_value == pytest.approx(0.4)
        assert first.weight == pytest.approx(0.2)

        calculator.sync_metric(SUBJECT, INTEGRATION, "messages", "count", 80)
        third = calculator.sync_metric(SUBJECT, INTEGRATION, "messages", "count", 60)

        assert third.normalized_value == pytest.approx(0.5)
        assert third.raw_value == pytest.approx(60)

    def test_keeps_explicit_weight(self, session, calculator):
        add_metric(session, "messages", 0.1, weight=2.5)

        metric = calculator.sync_metric(SUBJECT, INTEGRATION, "messages", "count", 10)

        assert metric.weight == pytest.approx(2.5)

    def test_negative_sum_is_accepted(self, session, calculator):
        calculator.sync_metric(SUBJECT, INTEGRATION, "net_revenue", "sum", 0.0)
        calculator.sync_metric(SUBJECT, INTEGRATION, "net_revenue", "sum", -100.0)

        metric = calculator.sync_metric(SUBJECT, INTEGRATION, "net_revenue", "sum", -20.0)

        assert metric.raw_value == pytest.approx(-20.0)
        assert metric.normalized_value == pytest.approx(0.8)

    def test_negative_sum_without_history_clips_to_zero(self, session, calculator):
        metric = calculator.sync_metric(SUBJECT, INTEGRATION, "net_revenue", "sum", -20.0)

        assert metric.normalized_value == 0.0

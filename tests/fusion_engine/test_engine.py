"""
Tests for the FusionEngine facade and CLI.
"""

import json
from contextlib import contextmanager

import pytest

from fusion_engine.cli import create_parser, main, run_command
from fusion_engine.engine import FusionEngine, format_score_summary
from fusion_engine.models import FusionAuditLog, FusionWeighting
from fusion_engine.types import OperationResult

from tests.fusion_engine.conftest import (
    INTEGRATION,
    SUBJECT,
    add_feedback,
    add_integration,
    add_metric,
)


@pytest.fixture
def engine(config, clock, session_scope):
    return FusionEngine(config=config, clock=clock, session_scope=session_scope)


@pytest.fixture
def seed(session_scope):
    """Commit seed rows through a short-lived session."""

    def _seed(fn):
        with session_scope() as session:
            fn(session)

    return _seed


class TestEntryPoints:

    def test_score_round_trip(self, engine, seed):
        seed(lambda s: (
            add_integration(s, service_name="slack"),
            add_metric(s, "messages", 0.5, "count"),
            add_metric(s, "revenue", 0.8, "sum"),
            add_metric(s, "response_time", 0.3, "average"),
        ))

        result = engine.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result.success is True
        assert result.data.score == pytest.approx(55.3333, abs=1e-4)
        payload = result.to_dict()
        assert payload["data"]["trend"] == "stable"
        assert set(payload["data"]["breakdown"]) == {"messages", "revenue", "response_time"}

    def test_recalibrate_single_integration(self, engine, seed, session_scope):
        seed(lambda s: (add_metric(s, "a", 0.5), add_metric(s, "b", 0.5)))

        result = engine.recalibrate_weights(SUBJECT, INTEGRATION)

        assert result.success is True
        assert result.data.success is True
        with session_scope() as session:
            assert session.query(FusionWeighting).count() == 2
            assert session.query(FusionAuditLog).count() == 1

    def test_recalibrate_whole_subject(self, engine, seed):
        seed(lambda s: (add_integration(s), add_metric(s, "a", 0.5)))

        result = engine.recalibrate_weights(SUBJECT, triggered_by="system")

        assert result.success is True
        assert result.data.total_integrations == 1
        assert result.to_dict()["data"]["total_metrics"] == 1

    def test_invalid_trigger_is_a_failure_result(self, engine):
        result = engine.recalibrate_weights(SUBJECT, INTEGRATION, triggered_by="robot")
        assert result.success is False
        assert result.error

    def test_learn(self, engine, seed):
        seed(lambda s: (add_metric(s, "a", 0.5), add_feedback(s, "success", 1)))

        result = engine.learn_from_feedback(subject_id=SUBJECT)

        assert result.success is True
        assert result.data.weight_updates == 1

    def test_sync_metric_validation_failure(self, engine):
        result = engine.sync_metric(SUBJECT, INTEGRATION, "conversion", "percentage", float("nan"))

        assert result.success is False
        assert "not finite" in result.error

    def test_sync_metric(self, engine):
        result = engine.sync_metric(SUBJECT, INTEGRATION, "messages", "count", 25)

        assert result.success is True
        assert result.data["normalized_value"] == pytest.approx(0.25)

    def test_manual_weight_is_audited(self, engine, seed, session_scope):
        seed(lambda s: add_metric(s, "messages", 0.5))

        result = engine.set_manual_weight(SUBJECT, INTEGRATION, "messages", 3.0, "pinned by ops")

        assert result.success is True
        with session_scope() as session:
            weighting = session.query(FusionWeighting).one()
            assert weighting.adaptive is False
            entry = session.query(FusionAuditLog).one()
            assert entry.event_type == "manual_weight_override"
            assert entry.triggered_by == "user"

    def test_store_failure_becomes_failure_result(self, config, clock):
        @contextmanager
        def unavailable():
            raise ConnectionError("database unreachable")
            yield  # pragma: no cover

        engine = FusionEngine(config=config, clock=clock, session_scope=unavailable)

        result = engine.compute_and_persist_score(SUBJECT, INTEGRATION)

        assert result == OperationResult(success=False, error="database unreachable")
        assert result.to_dict() == {"success": False, "error": "database unreachable"}


class TestFormatting:

    def test_score_summary(self, engine, seed):
        seed(lambda s: add_metric(s, "messages", 0.5))
        result = engine.compute_and_persist_score(SUBJECT, INTEGRATION)

        summary = format_score_summary(result.data)

        assert "FUSION SCORE SUMMARY" in summary
        assert "messages" in summary


class TestCli:

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_recalibrate_arguments(self):
        args = create_parser().parse_args(
            ["recalibrate", "--subject", "s1", "--triggered-by", "system", "--dry-run"]
        )
        assert args.subject == "s1"
        assert args.integration is None
        assert args.dry_run is True

    def test_run_command_dispatch(self, engine, seed):
        seed(lambda s: add_metric(s, "messages", 0.5))
        args = create_parser().parse_args(
            ["score", "--subject", SUBJECT, "--integration", INTEGRATION]
        )

        result = run_command(args, engine)

        assert result.success is True
        assert result.data.score == pytest.approx(50.0)

    def test_main_prints_json_and_exit_code(self, monkeypatch, capsys):
        monkeypatch.setattr(
            "fusion_engine.cli.run_command",
            lambda args: OperationResult.failure("boom"),
        )

        code = main(["learn"])

        assert code == 1
        assert json.loads(capsys.readouterr().out) == {"success": False, "error": "boom"}

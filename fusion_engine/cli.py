"""
Fusion Scoring Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the fusion scoring engine.

- argparse subcommands, one per engine entry point
- Prints the OperationResult as JSON
- Exit code 0 on success, 1 otherwise

============================================================
USAGE
============================================================
python -m fusion_engine.cli init-db
python -m fusion_engine.cli score --subject S --integration I
python -m fusion_engine.cli recalibrate --subject S --dry-run
python -m fusion_engine.cli learn --subject S

============================================================
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from database.engine import initialize_database

from .engine import FusionEngine
from .types import OperationResult, TriggeredBy

logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fusion-engine",
        description="Fusion scoring and adaptive weighting engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init-db      - Create all tables
  score        - Compute and persist the fusion score of one integration
  sync         - Normalize and store one raw metric value
  recalibrate  - Variance-driven weight recalibration
  learn        - Feedback-decay weight learning

Examples:
  %(prog)s score --subject s1 --integration i1
  %(prog)s recalibrate --subject s1 --triggered-by system
  %(prog)s learn --dry-run
        """
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create all tables")

    score = subparsers.add_parser("score", help="Compute and persist a fusion score")
    score.add_argument("--subject", required=True)
    score.add_argument("--integration", required=True)

    sync = subparsers.add_parser("sync", help="Normalize and store a raw metric value")
    sync.add_argument("--subject", required=True)
    sync.add_argument("--integration", required=True)
    sync.add_argument("--name", required=True, help="Metric name")
    sync.add_argument("--type", required=True, dest="metric_type", help="Metric type")
    sync.add_argument("--value", required=True, type=float, help="Raw metric value")

    recalibrate = subparsers.add_parser("recalibrate", help="Recalibrate metric weights")
    recalibrate.add_argument("--subject", required=True)
    recalibrate.add_argument(
        "--integration",
        help="Single integration (default: all active integrations)",
    )
    recalibrate.add_argument(
        "--triggered-by",
        choices=[t.value for t in TriggeredBy],
        default=TriggeredBy.USER.value,
    )
    recalibrate.add_argument("--reason", help="Adjustment reason stored with the weights")
    recalibrate.add_argument("--dry-run", action="store_true", help="Compute without writing")

    learn = subparsers.add_parser("learn", help="Apply feedback-decay learning")
    learn.add_argument("--subject")
    learn.add_argument("--integration")
    learn.add_argument("--dry-run", action="store_true", help="Compute without writing")

    return parser


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


# ============================================================
# COMMAND DISPATCH
# ============================================================

def run_command(args: argparse.Namespace, engine: Optional[FusionEngine] = None) -> OperationResult:
    if args.command == "init-db":
        try:
            initialize_database()
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            return OperationResult.failure(str(e))
        return OperationResult.ok({"initialized": True})

    engine = engine or FusionEngine()

    if args.command == "score":
        return engine.compute_and_persist_score(args.subject, args.integration)
    if args.command == "sync":
        return engine.sync_metric(
            args.subject, args.integration, args.name, args.metric_type, args.value
        )
    if args.command == "recalibrate":
        return engine.recalibrate_weights(
            args.subject,
            args.integration,
            reason=args.reason,
            triggered_by=args.triggered_by,
            dry_run=args.dry_run,
        )
    if args.command == "learn":
        return engine.learn_from_feedback(args.subject, args.integration, args.dry_run)

    return OperationResult.failure(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    result = run_command(args)
    print(json.dumps(result.to_dict(), indent=2, default=str))

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())

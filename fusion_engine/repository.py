"""
Fusion Scoring Engine - Repository.

============================================================
PURPOSE
============================================================
Repository pattern implementation for fusion persistence.

Provides clean interface for:
- Reading metrics, weights, failure state and feedback
- Upserting weightings, metrics and current scores
- Appending score/metric history and audit entries

============================================================
UPSERTS
============================================================
Current-state rows (weightings, metrics, scores) are written
with a single INSERT ... ON CONFLICT DO UPDATE on their
composite unique key. Concurrent writers resolve by
last-writer-wins; no row locks are taken.

Reads of upserted rows use populate_existing so the session
identity map never serves a row older than the last upsert.

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, desc, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import (
    SubjectIntegration,
    FusionMetric,
    FusionMetricHistory,
    FusionWeighting,
    FusionScore,
    FusionScoreHistory,
    FusionFeedback,
    IntegrationFailureState,
    FusionAuditLog,
)
from .types import FusionPersistenceError

logger = logging.getLogger(__name__)


def _dialect_insert(session: Session, model):
    """Return the dialect-specific insert construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise FusionPersistenceError(f"Upsert not supported for dialect: {dialect}")

    return insert(model)


class FusionRepository:
    """
    Repository for fusion engine persistence operations.

    ============================================================
    METHODS
    ============================================================
    Reads:
    - get_metrics / get_metric / get_metric_history
    - get_weightings
    - get_failure_state / get_integration / get_active_integrations
    - get_current_score / get_score_history
    - get_feedback_since / get_audit_entries

    Writes:
    - upsert_metric / append_metric_history
    - upsert_weighting
    - upsert_score / append_score_history
    - add_audit_entry
    ============================================================
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session (caller owns the transaction)
        """
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _upsert(
        self,
        model,
        values: Dict[str, Any],
        index_elements: Sequence[str],
        update_columns: Sequence[str],
    ) -> None:
        table = model.__tablename__
        stmt = _dialect_insert(self._session, model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={column: stmt.excluded[column] for column in update_columns},
        )
        try:
            self._session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert {table}: {e}")
            raise FusionPersistenceError(f"{table} upsert failed: {e}") from e

    def _add(self, record) -> None:
        table = record.__tablename__
        try:
            self._session.add(record)
            self._session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist {table}: {e}")
            raise FusionPersistenceError(f"{table} persistence failed: {e}") from e

    # --------------------------------------------------------
    # INTEGRATIONS
    # --------------------------------------------------------

    def get_integration(
        self,
        subject_id: str,
        integration_id: str,
    ) -> Optional[SubjectIntegration]:
        stmt = select(SubjectIntegration).where(
            and_(
                SubjectIntegration.subject_id == subject_id,
                SubjectIntegration.integration_id == integration_id,
            )
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_active_integrations(self, subject_id: str) -> List[SubjectIntegration]:
        stmt = (
            select(SubjectIntegration)
            .where(
                and_(
                    SubjectIntegration.subject_id == subject_id,
                    SubjectIntegration.status == "active",
                )
            )
            .order_by(SubjectIntegration.created_at, SubjectIntegration.integration_id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_failure_state(
        self,
        subject_id: str,
        integration_id: str,
    ) -> Optional[IntegrationFailureState]:
        stmt = select(IntegrationFailureState).where(
            and_(
                IntegrationFailureState.subject_id == subject_id,
                IntegrationFailureState.integration_id == integration_id,
            )
        )
        return self._session.execute(stmt).scalar_one_or_none()

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    def get_metrics(self, subject_id: str, integration_id: str) -> List[FusionMetric]:
        stmt = (
            select(FusionMetric)
            .where(
                and_(
                    FusionMetric.subject_id == subject_id,
                    FusionMetric.integration_id == integration_id,
                )
            )
            .order_by(FusionMetric.metric_name)
            .execution_options(populate_existing=True)
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_metric(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
    ) -> Optional[FusionMetric]:
        stmt = (
            select(FusionMetric)
            .where(
                and_(
                    FusionMetric.subject_id == subject_id,
                    FusionMetric.integration_id == integration_id,
                    FusionMetric.metric_name == metric_name,
                )
            )
            .execution_options(populate_existing=True)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_metric_history(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        limit: int = 10,
    ) -> List[float]:
        """Most recent raw values of a metric, newest first."""
        stmt = (
            select(FusionMetricHistory.raw_value)
            .where(
                and_(
                    FusionMetricHistory.subject_id == subject_id,
                    FusionMetricHistory.integration_id == integration_id,
                    FusionMetricHistory.metric_name == metric_name,
                )
            )
            .order_by(desc(FusionMetricHistory.recorded_at), desc(FusionMetricHistory.id))
            .limit(limit)
        )
        return [row[0] for row in self._session.execute(stmt).all()]

    def upsert_metric(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        metric_type: str,
        raw_value: float,
        normalized_value: float,
        weight: Optional[float],
        data_source: Optional[Dict[str, Any]],
        synced_at: datetime,
    ) -> FusionMetric:
        self._upsert(
            FusionMetric,
            {
                "subject_id": subject_id,
                "integration_id": integration_id,
                "metric_name": metric_name,
                "metric_type": metric_type,
                "raw_value": raw_value,
                "normalized_value": normalized_value,
                "weight": weight,
                "data_source": data_source,
                "synced_at": synced_at,
            },
            index_elements=("subject_id", "integration_id", "metric_name"),
            update_columns=(
                "metric_type", "raw_value", "normalized_value",
                "weight", "data_source", "synced_at",
            ),
        )
        return self.get_metric(subject_id, integration_id, metric_name)

    def append_metric_history(
        self,
        subject_id: str,
        integration_id: str,
        metric_name: str,
        raw_value: float,
        recorded_at: datetime,
    ) -> None:
        self._add(FusionMetricHistory(
            subject_id=subject_id,
            integration_id=integration_id,
            metric_name=metric_name,
            raw_value=raw_value,
            recorded_at=recorded_at,
        ))

    # --------------------------------------------------------
    # WEIGHTINGS
    # --------------------------------------------------------

    def get_weightings(
        self,
        subject_id: str,
        integration_id: str,
    ) -> Dict[str, FusionWeighting]:
        """Current weightings keyed by metric_id."""
        stmt = (
            select(FusionWeighting)
            .where(
                and_(
                    FusionWeighting.subject_id == subject_id,
                    FusionWeighting.integration_id == integration_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return {w.metric_id: w for w in self._session.execute(stmt).scalars().all()}

    def upsert_weighting(self, values: Dict[str, Any]) -> None:
        """
        Upsert one weighting row.

        values must contain subject_id, integration_id and
        metric_id; all other supplied columns are overwritten.
        """
        keys = ("subject_id", "integration_id", "metric_id")
        self._upsert(
            FusionWeighting,
            values,
            index_elements=keys,
            update_columns=[c for c in values if c not in keys],
        )

    # --------------------------------------------------------
    # SCORES
    # --------------------------------------------------------

    def get_current_score(
        self,
        subject_id: str,
        integration_id: str,
    ) -> Optional[FusionScore]:
        stmt = (
            select(FusionScore)
            .where(
                and_(
                    FusionScore.subject_id == subject_id,
                    FusionScore.integration_id == integration_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def upsert_score(
        self,
        subject_id: str,
        integration_id: str,
        fusion_score: float,
        score_breakdown: Dict[str, Any],
        trend_direction: str,
        excluded: bool,
        calculated_at: datetime,
    ) -> FusionScore:
        # learning_rate and baseline_score are left to their column
        # defaults on insert and untouched on conflict.
        self._upsert(
            FusionScore,
            {
                "subject_id": subject_id,
                "integration_id": integration_id,
                "fusion_score": fusion_score,
                "score_breakdown": score_breakdown,
                "trend_direction": trend_direction,
                "excluded": excluded,
                "calculated_at": calculated_at,
            },
            index_elements=("subject_id", "integration_id"),
            update_columns=(
                "fusion_score", "score_breakdown", "trend_direction",
                "excluded", "calculated_at",
            ),
        )
        return self.get_current_score(subject_id, integration_id)

    def append_score_history(
        self,
        subject_id: str,
        integration_id: str,
        fusion_score: float,
        excluded: bool,
        recorded_at: datetime,
    ) -> None:
        self._add(FusionScoreHistory(
            subject_id=subject_id,
            integration_id=integration_id,
            fusion_score=fusion_score,
            excluded=excluded,
            recorded_at=recorded_at,
        ))

    def get_score_history(
        self,
        subject_id: str,
        integration_id: str,
        limit: int = 30,
    ) -> List[float]:
        """Most recent non-excluded score values, newest first."""
        stmt = (
            select(FusionScoreHistory.fusion_score)
            .where(and_(
                FusionScoreHistory.subject_id == subject_id,
                FusionScoreHistory.integration_id == integration_id,
                FusionScoreHistory.excluded == False,  # noqa: E712
            ))
            .order_by(desc(FusionScoreHistory.recorded_at), desc(FusionScoreHistory.id))
            .limit(limit)
        )
        return [row[0] for row in self._session.execute(stmt).all()]

    # --------------------------------------------------------
    # FEEDBACK
    # --------------------------------------------------------

    def get_feedback_since(
        self,
        since: datetime,
        subject_id: Optional[str] = None,
        integration_id: Optional[str] = None,
    ) -> List[FusionFeedback]:
        """Feedback events created at or after `since`, newest first."""
        conditions = [FusionFeedback.created_at >= since]

        if subject_id:
            conditions.append(FusionFeedback.subject_id == subject_id)
        if integration_id:
            conditions.append(FusionFeedback.integration_id == integration_id)

        stmt = (
            select(FusionFeedback)
            .where(and_(*conditions))
            .order_by(desc(FusionFeedback.created_at))
        )
        return list(self._session.execute(stmt).scalars().all())

    # --------------------------------------------------------
    # AUDIT LOG
    # --------------------------------------------------------

    def add_audit_entry(self, entry: FusionAuditLog) -> FusionAuditLog:
        self._add(entry)
        return entry

    def get_audit_entries(
        self,
        subject_id: str,
        integration_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[FusionAuditLog]:
        conditions = [FusionAuditLog.subject_id == subject_id]
        if integration_id:
            conditions.append(FusionAuditLog.integration_id == integration_id)

        stmt = (
            select(FusionAuditLog)
            .where(and_(*conditions))
            .order_by(desc(FusionAuditLog.created_at), desc(FusionAuditLog.id))
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars().all())

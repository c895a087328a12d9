"""
Fusion Scoring Engine - Audit Logger.

Append-only record of every weight mutation pass. Entries are
written to fusion_audit_log and mirrored to the module logger.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from .clock import ClockProtocol, SystemClock
from .models import FusionAuditLog
from .repository import FusionRepository
from .types import AuditEventType, AuditStatus, TriggeredBy, WeightChange

logger = logging.getLogger(__name__)


class AuditLogger:
    """Timestamps and appends audit entries. Performs no computation."""

    def __init__(
        self,
        repository: FusionRepository,
        clock: Optional[ClockProtocol] = None,
    ):
        self._repository = repository
        self._clock = clock or SystemClock()

    def record(
        self,
        subject_id: str,
        integration_id: str,
        event_type: AuditEventType,
        triggered_by: TriggeredBy,
        status: AuditStatus = AuditStatus.SUCCESS,
        metrics_count: int = 0,
        total_variance: Optional[float] = None,
        avg_ai_confidence: Optional[float] = None,
        weight_changes: Optional[Mapping[str, WeightChange]] = None,
        event_data: Optional[Dict[str, Any]] = None,
        execution_time_ms: int = 0,
        error_message: Optional[str] = None,
    ) -> FusionAuditLog:
        entry = FusionAuditLog(
            subject_id=subject_id,
            integration_id=integration_id,
            event_type=AuditEventType(event_type).value,
            metrics_count=metrics_count,
            total_variance=total_variance,
            avg_ai_confidence=avg_ai_confidence,
            weight_changes={
                name: change.to_dict() for name, change in (weight_changes or {}).items()
            },
            event_data=event_data,
            triggered_by=TriggeredBy(triggered_by).value,
            execution_time_ms=execution_time_ms,
            status=AuditStatus(status).value,
            error_message=error_message,
            created_at=self._clock.now(),
        )
        self._repository.add_audit_entry(entry)

        message = (
            f"Audit {entry.event_type}: status={entry.status} | "
            f"subject={subject_id} integration={integration_id} "
            f"metrics={metrics_count} changes={len(entry.weight_changes)} "
            f"triggered_by={entry.triggered_by} elapsed_ms={execution_time_ms}"
        )
        if entry.status == AuditStatus.SUCCESS.value:
            logger.info(message)
        else:
            logger.warning(f"{message} error={error_message}")

        return entry

    def recent_entries(
        self,
        subject_id: str,
        integration_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[FusionAuditLog]:
        return self._repository.get_audit_entries(subject_id, integration_id, limit)

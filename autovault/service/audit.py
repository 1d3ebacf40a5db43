from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from autovault.logging import get_logger, redact_sensitive
from autovault.service.errors import ValidationError
from autovault.service.tasks import TaskRunner
from autovault.storage.models import (
    AUDIT_OUTCOMES,
    OUTCOME_SUCCESS,
    AuditEvent,
    AuditPage,
    AuditQuery,
    RequestContext,
    utcnow,
)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
TOP_ACTIONS = 5


class AuditTrail:
    """Append-only record of security-relevant events.

    Writes go through the task runner: audit is observability, not a gate,
    so a failed write is logged and never fails the request that caused it.
    """

    def __init__(
        self,
        store,
        tasks: TaskRunner,
        *,
        retention_days: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tasks = tasks
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self.logger = get_logger(__name__)

    def record(
        self,
        action: str,
        *,
        outcome: str = OUTCOME_SUCCESS,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEvent:
        if outcome not in AUDIT_OUTCOMES:
            raise ValueError(f"unknown audit outcome: {outcome}")
        event = AuditEvent.new(
            action,
            outcome,
            actor_id=actor_id,
            actor_name=actor_name,
            detail=redact_sensitive(detail or {}),
            context=context,
        )
        event.created_at = self._clock()
        self.tasks.submit(f"audit:{action}", self.store.append_audit_event, event)
        return event

    def query(
        self,
        query: AuditQuery,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"field": "page"})
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"field": "limit"}
            )
        if query.outcome and query.outcome not in AUDIT_OUTCOMES:
            raise ValidationError("unknown status filter", detail={"field": "status"})
        if query.start and query.end and query.start > query.end:
            raise ValidationError(
                "startDate must not be after endDate", detail={"field": "startDate"}
            )
        return self.store.query_audit_events(query, page=page, limit=limit)

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts since UTC midnight of ``now``."""
        current = now or self._clock()
        midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
        raw = self.store.audit_stats(midnight, top=TOP_ACTIONS)
        return {
            "totalToday": raw["total"],
            "successToday": raw["success"],
            "failuresToday": raw["failure"],
            "topActions": raw["top_actions"],
        }

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self.retention
        removed = self.store.purge_audit_events(cutoff)
        if removed:
            self.logger.info("audit_events_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

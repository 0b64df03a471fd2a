"""
Audit Trail

Records every write and every verification, including the ones that
fail, and answers queries over them.

    with trail.track(AuditAction.EVIDENCE_CREATED, actor_id, AuditTarget.EVIDENCE) as scope:
        record = ...
        scope.target_id = record.id

The record is written when the block exits: SUCCESS if it returned,
FAILED with the error message if it raised. The exception still
propagates.
"""

import math
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Generator, Optional
from uuid import UUID, uuid4

from ..observability import get_logger
from ..schemas.audit import (
    CRITICAL_ACTIONS,
    AuditAction,
    AuditOutcome,
    AuditPage,
    AuditRecord,
    AuditStats,
    AuditTarget,
)
from .ledger import PreconditionError

if TYPE_CHECKING:
    from ..db.store import CustodyStore


logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
TOP_ACTORS = 10
RECENT_CRITICAL = 10
DAILY_WINDOW_DAYS = 7


def _as_utc(value: datetime) -> datetime:
    # Naive times are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class AuditScope:
    """What the tracked block learns about its target while it runs."""
    target_id: Optional[UUID] = None
    target_name: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditTrail:
    """Append-only action history kept in the custody store."""

    def __init__(self, store: "CustodyStore"):
        self._store = store

    @contextmanager
    def track(
        self,
        action: AuditAction,
        actor_id: Optional[UUID],
        target_type: AuditTarget,
        target_id: Optional[UUID] = None,
        target_name: Optional[str] = None,
        **details: Any,
    ) -> Generator[AuditScope, None, None]:
        scope = AuditScope(target_id=target_id, target_name=target_name, details=details)
        try:
            yield scope
        except Exception as e:
            self.record(action, actor_id, target_type, scope, AuditOutcome.FAILED, str(e))
            raise
        self.record(action, actor_id, target_type, scope, AuditOutcome.SUCCESS)

    def record(
        self,
        action: AuditAction,
        actor_id: Optional[UUID],
        target_type: AuditTarget,
        scope: AuditScope,
        status: AuditOutcome,
        error_message: Optional[str] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            id=uuid4(),
            action=action,
            actor_id=actor_id,
            target_type=target_type,
            target_id=scope.target_id,
            target_name=scope.target_name,
            details=scope.details,
            status=status,
            error_message=error_message,
            created_at=datetime.now(timezone.utc),
        )
        self._store.append_audit(record)

        if status == AuditOutcome.FAILED:
            logger.warning(
                "Audited action failed",
                action=action.value,
                actor_id=str(actor_id) if actor_id else None,
                target_id=str(scope.target_id) if scope.target_id else None,
                error=error_message,
            )
        return record

    # ================================================================
    # QUERIES
    # ================================================================

    def _newest_first(self) -> list[AuditRecord]:
        return list(reversed(self._store.list_audit()))

    def query(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[UUID] = None,
        target_type: Optional[AuditTarget] = None,
        status: Optional[AuditOutcome] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """
        Filter the trail, newest first, one page at a time.

        search matches the target name or the case number in the
        details, case-insensitively.

        Raises:
            PreconditionError: page below 1 or limit outside 1..500
        """
        if page < 1:
            raise PreconditionError("page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise PreconditionError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        since = _as_utc(since) if since else None
        until = _as_utc(until) if until else None
        needle = search.lower() if search else None

        def matches(r: AuditRecord) -> bool:
            if action is not None and r.action != action:
                return False
            if actor_id is not None and r.actor_id != actor_id:
                return False
            if target_type is not None and r.target_type != target_type:
                return False
            if status is not None and r.status != status:
                return False
            if since is not None and r.created_at < since:
                return False
            if until is not None and r.created_at > until:
                return False
            if needle is not None:
                haystack = [r.target_name or "", str(r.details.get("case_no") or "")]
                if not any(needle in text.lower() for text in haystack):
                    return False
            return True

        selected = [r for r in self._newest_first() if matches(r)]
        start = (page - 1) * limit

        return AuditPage(
            records=selected[start:start + limit],
            page=page,
            limit=limit,
            total=len(selected),
            pages=math.ceil(len(selected) / limit),
        )

    def for_target(self, target_id: UUID) -> list[AuditRecord]:
        """Everything that happened to one record, newest first."""
        return [r for r in self._newest_first() if r.target_id == target_id]

    def stats(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> AuditStats:
        """
        Counts by action, outcome and actor over an optional time range.

        The daily activity always covers the last seven days up to now,
        whatever the range.
        """
        everything = self._newest_first()
        now = _as_utc(now) if now else datetime.now(timezone.utc)
        since = _as_utc(since) if since else None
        until = _as_utc(until) if until else None

        in_range = [
            r for r in everything
            if (since is None or r.created_at >= since)
            and (until is None or r.created_at <= until)
        ]

        by_action = Counter(r.action.value for r in in_range)
        by_status = Counter(r.status.value for r in in_range)
        by_actor = Counter(str(r.actor_id) for r in in_range if r.actor_id is not None)

        window_start = now - timedelta(days=DAILY_WINDOW_DAYS)
        daily = Counter(
            r.created_at.astimezone(timezone.utc).strftime("%Y-%m-%d")
            for r in everything
            if window_start <= r.created_at <= now
        )

        critical = [r for r in everything if r.action in CRITICAL_ACTIONS]

        return AuditStats(
            total=len(in_range),
            by_action=dict(by_action.most_common()),
            by_status=dict(by_status),
            top_actors=dict(by_actor.most_common(TOP_ACTORS)),
            daily=dict(sorted(daily.items())),
            recent_critical=critical[:RECENT_CRITICAL],
        )

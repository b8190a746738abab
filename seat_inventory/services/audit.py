from datetime import datetime
from typing import List, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seat_inventory.models.models import BookedCountAudit
from seat_inventory.schemas.availability import AuditEntry
from seat_inventory.timeutils import as_utc


def operation_kind_for(delta: int) -> str:
    if delta > 0:
        return "reservation"
    if delta < 0:
        return "cancellation"
    return "adjustment"


async def log_booked_count_change(
    db: AsyncSession,
    trip_id: int,
    before: int,
    after: int,
    timestamp: datetime,
    operation_kind: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> BookedCountAudit:
    delta = after - before
    audit = BookedCountAudit(
        trip_id=trip_id,
        before=before,
        after=after,
        delta=delta,
        operation_kind=operation_kind or operation_kind_for(delta),
        actor_id=actor_id,
        created_at=timestamp,
    )
    db.add(audit)
    # do not commit here; caller should include in transaction context
    return audit


async def list_booked_count_changes(db: AsyncSession, trip_id: int, limit: int = 10) -> List[AuditEntry]:
    stmt = (
        sa_select(BookedCountAudit)
        .where(BookedCountAudit.trip_id == trip_id)
        .order_by(BookedCountAudit.created_at.desc(), BookedCountAudit.id.desc())
        .limit(limit)
    )
    res = await db.execute(stmt)
    return [
        AuditEntry(
            trip_id=row.trip_id,
            before=row.before,
            after=row.after,
            delta=row.delta,
            operation_kind=row.operation_kind,
            actor_id=row.actor_id,
            timestamp=as_utc(row.created_at),
        )
        for row in res.scalars()
    ]

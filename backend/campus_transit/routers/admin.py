from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from campus_transit.db import get_db
from campus_transit.db_models import DriverResponsePending
from campus_transit.deps import get_poller, get_topic_cache
from campus_transit.models import TickOut
from campus_transit.security import User, require_role
from campus_transit.services.poller import Poller

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/poll", response_model=TickOut)
def run_poll(
    user: User = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    poller: Poller = Depends(get_poller),
    cache=Depends(get_topic_cache),
):
    """Run one maintenance tick now instead of waiting for the next interval."""
    report = poller.run_once(db)
    if report.changed and cache is not None:
        cache.invalidate()
    return TickOut(
        votes_deleted=report.votes_deleted,
        topics_expired=report.topics_expired,
        topics_escalated=report.topics_escalated,
        topics_transitioned=report.topics_transitioned,
        skipped=report.skipped,
    )


@router.get("/pending-drivers")
def pending_driver_windows(user: User = Depends(require_role("admin", "coordinator")), db: Session = Depends(get_db)):
    rows = db.execute(select(DriverResponsePending).order_by(DriverResponsePending.expires_at)).scalars().all()
    return [
        {
            "topic_id": row.topic_id,
            "region": row.region,
            "title": row.title,
            "expires_at": row.expires_at.isoformat(),
            "notified_count": row.notified_count,
            "declined_count": row.declined_count,
        }
        for row in rows
    ]

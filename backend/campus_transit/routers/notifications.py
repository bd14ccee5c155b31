from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock
from campus_transit.db import get_db
from campus_transit.db_models import Alert, Notification
from campus_transit.deps import get_clock, get_notifier
from campus_transit.models import AlertOut, AnnouncementCreate, Inbox, NotificationOut
from campus_transit.security import User, get_current_user, require_role
from campus_transit.services.notifier import Notifier

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _unread(db: Session, model, user_id: int) -> int:
    stmt = select(func.count(model.id)).where(model.user_id == user_id, model.is_read.is_(False))
    return db.execute(stmt).scalar() or 0


def _alert_out(alert: Alert) -> AlertOut:
    return AlertOut.model_validate(alert).model_copy(update={"announcement": alert.user_id is None})


@router.get("", response_model=Inbox)
def inbox(user: User = Depends(get_current_user), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    now = clock()
    notifications = db.execute(
        select(Notification).where(Notification.user_id == user.id).order_by(Notification.created_at.desc(), Notification.id.desc())
    ).scalars().all()
    # personal alerts plus live announcements for the caller's role
    alerts = db.execute(
        select(Alert)
        .where(
            or_(
                Alert.user_id == user.id,
                and_(
                    Alert.user_id.is_(None),
                    Alert.target_role == user.role,
                    or_(Alert.expires_at.is_(None), Alert.expires_at > now),
                ),
            )
        )
        .order_by(Alert.created_at.desc(), Alert.id.desc())
    ).scalars().all()
    return Inbox(
        notifications=[NotificationOut.model_validate(n) for n in notifications],
        alerts=[_alert_out(a) for a in alerts],
        # announcements are shared rows, so they carry no per-user read state
        unread=_unread(db, Notification, user.id) + _unread(db, Alert, user.id),
    )


@router.post("/announcements", response_model=AlertOut, status_code=status.HTTP_201_CREATED)
def create_announcement(
    payload: AnnouncementCreate,
    user: User = Depends(require_role("coordinator", "admin")),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
):
    expires_at = payload.expires_at
    if expires_at is not None and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    if expires_at is not None and expires_at <= clock():
        raise HTTPException(status_code=400, detail="expires_at must be in the future")

    alert = notifier.announce(
        payload.title.strip(),
        payload.message.strip(),
        target_role=payload.target_role,
        severity=payload.severity,
        expires_at=expires_at,
        author_id=user.id,
    )
    if alert is None:
        raise HTTPException(status_code=503, detail="announcement_not_saved")
    return _alert_out(alert)


@router.post("/{notification_id}/read", response_model=NotificationOut)
def mark_notification_read(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    note = db.get(Notification, notification_id)
    if note is None or note.user_id != user.id:
        raise HTTPException(status_code=404, detail="notification_not_found")
    note.is_read = True
    db.commit()
    db.refresh(note)
    return NotificationOut.model_validate(note)


@router.post("/alerts/{alert_id}/read", response_model=AlertOut)
def mark_alert_read(alert_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    alert = db.get(Alert, alert_id)
    if alert is None or alert.user_id != user.id:
        raise HTTPException(status_code=404, detail="alert_not_found")
    alert.is_read = True
    db.commit()
    db.refresh(alert)
    return _alert_out(alert)


@router.post("/read-all")
def mark_all_read(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = 0
    for model in (Notification, Alert):
        result = db.execute(
            update(model).where(model.user_id == user.id, model.is_read.is_(False)).values(is_read=True)
        )
        updated += result.rowcount or 0
    db.commit()
    return {"updated": updated}

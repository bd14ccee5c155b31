from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from campus_transit.core.logger import api_logger as logger
from campus_transit.db import get_db
from campus_transit.db_models import Bus, Complaint, ComplaintResponse
from campus_transit.deps import get_notifier
from campus_transit.models import ComplaintCreate, ComplaintOut, ComplaintResponseIn, ComplaintStatus, ComplaintStatusIn
from campus_transit.security import User, require_role
from campus_transit.services.notifier import Notifier

router = APIRouter(prefix="/complaints", tags=["complaints"])

# resolved/rejected complaints are final
CLOSED = ("resolved", "rejected")


def _open_complaint(db: Session, complaint_id: int) -> Complaint:
    complaint = db.get(Complaint, complaint_id)
    if complaint is None:
        raise HTTPException(status_code=404, detail="complaint_not_found")
    if complaint.status in CLOSED:
        raise HTTPException(status_code=409, detail="complaint_closed")
    return complaint


@router.post("", response_model=ComplaintOut, status_code=status.HTTP_201_CREATED)
def submit_complaint(
    payload: ComplaintCreate,
    user: User = Depends(require_role("student")),
    db: Session = Depends(get_db),
):
    if payload.bus_id is not None and db.get(Bus, payload.bus_id) is None:
        raise HTTPException(status_code=404, detail="bus_not_found")
    complaint = Complaint(
        student_id=user.id,
        bus_id=payload.bus_id,
        complaint_type=payload.complaint_type.strip(),
        description=payload.description.strip(),
        status="pending",
    )
    db.add(complaint)
    db.commit()
    db.refresh(complaint)
    logger.info(f"Complaint {complaint.id} submitted by student {user.id}")
    return complaint


@router.get("/mine", response_model=List[ComplaintOut])
def my_complaints(user: User = Depends(require_role("student")), db: Session = Depends(get_db)):
    stmt = select(Complaint).where(Complaint.student_id == user.id).order_by(Complaint.created_at.desc())
    return db.execute(stmt).scalars().all()


@router.get("", response_model=List[ComplaintOut])
def list_complaints(
    status_filter: Optional[ComplaintStatus] = Query(default=None, alias="status"),
    user: User = Depends(require_role("coordinator", "admin")),
    db: Session = Depends(get_db),
):
    stmt = select(Complaint).order_by(Complaint.created_at.desc())
    if status_filter:
        stmt = stmt.where(Complaint.status == status_filter)
    return db.execute(stmt).scalars().all()


@router.post("/{complaint_id}/respond", response_model=ComplaintOut)
def respond(
    complaint_id: int,
    payload: ComplaintResponseIn,
    user: User = Depends(require_role("coordinator", "admin")),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    complaint = _open_complaint(db, complaint_id)
    complaint.responses.append(ComplaintResponse(responder_id=user.id, message=payload.message.strip()))
    if complaint.status == "pending":
        complaint.status = "in_progress"
    db.commit()
    db.refresh(complaint)

    notifier.alert_users(
        [complaint.student_id],
        title="Complaint Update",
        message=f"A coordinator responded to your {complaint.complaint_type} complaint.",
        metadata={"complaint_id": complaint.id, "action_type": "complaint_response"},
    )
    return complaint


@router.post("/{complaint_id}/status", response_model=ComplaintOut)
def set_status(
    complaint_id: int,
    payload: ComplaintStatusIn,
    user: User = Depends(require_role("coordinator", "admin")),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    complaint = _open_complaint(db, complaint_id)
    complaint.status = payload.status
    if payload.notes:
        complaint.responses.append(ComplaintResponse(responder_id=user.id, message=payload.notes.strip()))
    db.commit()
    db.refresh(complaint)
    logger.info(f"Complaint {complaint.id} set to {complaint.status} by {user.id}")

    notifier.alert_users(
        [complaint.student_id],
        title="Complaint Status Changed",
        message=f"Your {complaint.complaint_type} complaint is now {complaint.status.replace('_', ' ')}.",
        severity="success" if complaint.status == "resolved" else "info",
        metadata={"complaint_id": complaint.id, "action_type": "complaint_status"},
    )
    return complaint

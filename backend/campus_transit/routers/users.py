from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus_transit.core.logger import api_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db import get_db
from campus_transit.db_models import Profile
from campus_transit.models import ProfileCreate, ProfileOut
from campus_transit.security import User, get_current_user, require_role

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=ProfileOut, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: ProfileCreate,
    user: User = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    email = payload.email.strip().lower()
    if db.execute(select(Profile.id).where(Profile.email == email)).first():
        raise HTTPException(status_code=409, detail="email_taken")

    region = payload.region
    if payload.role in ("student", "driver") and not region:
        region = settings.default_region
    profile = Profile(
        email=email,
        name=payload.name.strip(),
        role=payload.role,
        region=region,
        phone=payload.phone,
        telegram_chat_id=payload.telegram_chat_id,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="email_taken")
    db.refresh(profile)
    logger.info(f"Admin {user.id} created {profile.role} profile {profile.id}")
    return profile


@router.get("/me", response_model=ProfileOut)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = db.get(Profile, user.id)
    if profile is None:
        raise HTTPException(status_code=404, detail="profile_not_found")
    return profile


@router.get("/drivers", response_model=List[ProfileOut])
def list_drivers(
    region: Optional[str] = Query(default=None, max_length=80),
    user: User = Depends(require_role("coordinator", "admin")),
    db: Session = Depends(get_db),
):
    stmt = select(Profile).where(Profile.role == "driver").order_by(Profile.name)
    if region:
        stmt = stmt.where(Profile.region == region)
    return db.execute(stmt).scalars().all()

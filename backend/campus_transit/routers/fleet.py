from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from campus_transit.db import get_db
from campus_transit.db_models import Bus, Profile, Route, RouteStop, Schedule
from campus_transit.models import BusCreate, BusOut, RouteCreate, RouteOut, ScheduleCreate, ScheduleOut
from campus_transit.security import User, get_current_user, require_role

router = APIRouter(prefix="/fleet", tags=["fleet"])

MANAGERS = ("coordinator", "admin")


# ---- routes ----
@router.get("/routes", response_model=List[RouteOut])
def list_routes(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.execute(select(Route).order_by(Route.name)).scalars().all()


@router.post("/routes", response_model=RouteOut, status_code=status.HTTP_201_CREATED)
def create_route(
    payload: RouteCreate,
    user: User = Depends(require_role(*MANAGERS)),
    db: Session = Depends(get_db),
):
    route = Route(
        name=payload.name.strip(),
        start_location=payload.start_location.strip(),
        end_location=payload.end_location.strip(),
    )
    for sequence, stop in enumerate(payload.stops, start=1):
        route.stops.append(
            RouteStop(name=stop.name.strip(), latitude=stop.latitude, longitude=stop.longitude, sequence=sequence)
        )
    db.add(route)
    db.commit()
    db.refresh(route)
    return route


# ---- schedules ----
@router.get("/schedules", response_model=List[ScheduleOut])
def list_schedules(
    route_id: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    stmt = select(Schedule).order_by(Schedule.departure_time)
    if route_id is not None:
        stmt = stmt.where(Schedule.route_id == route_id)
    return db.execute(stmt).scalars().all()


@router.post("/schedules", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
def create_schedule(
    payload: ScheduleCreate,
    user: User = Depends(require_role(*MANAGERS)),
    db: Session = Depends(get_db),
):
    if db.get(Route, payload.route_id) is None:
        raise HTTPException(status_code=404, detail="route_not_found")
    schedule = Schedule(
        route_id=payload.route_id,
        departure_time=payload.departure_time,
        days_of_week=list(payload.days_of_week),
    )
    db.add(schedule)
    db.commit()
    db.refresh(schedule)
    return schedule


# ---- buses ----
@router.get("/buses", response_model=List[BusOut])
def list_buses(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.execute(select(Bus).order_by(Bus.bus_number)).scalars().all()


@router.post("/buses", response_model=BusOut, status_code=status.HTTP_201_CREATED)
def create_bus(
    payload: BusCreate,
    user: User = Depends(require_role(*MANAGERS)),
    db: Session = Depends(get_db),
):
    bus_number = payload.bus_number.strip().upper()
    if db.execute(select(Bus.id).where(Bus.bus_number == bus_number)).first():
        raise HTTPException(status_code=409, detail="bus_number_taken")
    if payload.route_id is not None and db.get(Route, payload.route_id) is None:
        raise HTTPException(status_code=404, detail="route_not_found")
    if payload.driver_id is not None:
        driver = db.get(Profile, payload.driver_id)
        if driver is None or driver.role != "driver":
            raise HTTPException(status_code=400, detail="invalid_driver")

    bus = Bus(
        bus_number=bus_number,
        name=payload.name,
        capacity=payload.capacity,
        route_id=payload.route_id,
        driver_id=payload.driver_id,
    )
    db.add(bus)
    db.commit()
    db.refresh(bus)
    return bus

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Role = Literal["student", "driver", "coordinator", "admin"]
ComplaintStatus = Literal["pending", "in_progress", "resolved", "rejected"]
AnnouncementSeverity = Literal["info", "warning", "error", "critical"]


# ---------------- Profiles ----------------
class ProfileCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=120)
    role: Role = "student"
    region: Optional[str] = Field(default=None, max_length=80)
    phone: Optional[str] = Field(default=None, max_length=32)
    telegram_chat_id: Optional[str] = Field(default=None, max_length=64)


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    role: str
    region: Optional[str] = None
    phone: Optional[str] = None


# ---------------- Fleet ----------------
class RouteStopIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class RouteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    start_location: str = Field(min_length=1, max_length=255)
    end_location: str = Field(min_length=1, max_length=255)
    stops: List[RouteStopIn] = Field(default_factory=list)


class RouteStopOut(RouteStopIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sequence: int


class RouteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    start_location: str
    end_location: str
    stops: List[RouteStopOut] = Field(default_factory=list)


class ScheduleCreate(BaseModel):
    route_id: int
    departure_time: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    days_of_week: List[str] = Field(default_factory=list)


class ScheduleOut(ScheduleCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int


class BusCreate(BaseModel):
    bus_number: str = Field(min_length=1, max_length=32)
    name: Optional[str] = Field(default=None, max_length=120)
    capacity: int = Field(default=40, ge=1, le=200)
    route_id: Optional[int] = None
    driver_id: Optional[int] = None


class BusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bus_number: str
    name: Optional[str] = None
    capacity: int
    route_id: Optional[int] = None
    status: str
    driver_id: Optional[int] = None


# ---------------- Voting ----------------
class BusRequest(BaseModel):
    bus_id: int
    route_id: Optional[int] = None
    schedule_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=2000)
    reason: Optional[str] = Field(default=None, max_length=2000)
    start_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def _window(self) -> "BusRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if not (self.description or self.reason):
            raise ValueError("description or reason is required")
        return self


class VoteRequest(BaseModel):
    option_id: Optional[int] = None


class VoteResponse(BaseModel):
    vote_id: int
    topic_id: int
    weighted_votes: float
    required_votes: float
    status: str


class VoteBreakdown(BaseModel):
    same_region: int
    other_region: int


class TopicView(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    region: str
    status: str
    route_id: Optional[int] = None
    schedule_id: Optional[int] = None
    bus_id: Optional[int] = None
    bus_number: Optional[str] = None
    driver_id: Optional[int] = None
    votes: float
    required_votes: float
    student_count: int
    vote_breakdown: VoteBreakdown
    has_voted: bool
    start_date: datetime
    end_date: datetime
    rejection_reason: Optional[str] = None


class TopicListing(BaseModel):
    active: List[TopicView]
    past: List[TopicView]


class VoteStatus(BaseModel):
    can_vote: bool
    minutes_until_next_vote: int


class AssignDriverRequest(BaseModel):
    driver_id: int


class ApproveRequest(BaseModel):
    bus_id: Optional[int] = None
    driver_id: Optional[int] = None
    departure_time: Optional[str] = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class RejectRequest(BaseModel):
    reason: str = Field(max_length=500)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be empty")
        return v


class TopicActionResponse(BaseModel):
    topic_id: int
    status: str


# ---------------- Notifications ----------------
class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    type: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    is_read: bool
    created_at: datetime


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    severity: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    is_read: bool
    created_at: datetime
    target_role: Optional[str] = None
    expires_at: Optional[datetime] = None
    announcement: bool = False


class AnnouncementCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    severity: AnnouncementSeverity = "info"
    target_role: Role = "student"
    expires_at: Optional[datetime] = None


class Inbox(BaseModel):
    notifications: List[NotificationOut]
    alerts: List[AlertOut]
    unread: int


# ---------------- Complaints ----------------
class ComplaintCreate(BaseModel):
    complaint_type: str = Field(min_length=1, max_length=60)
    description: str = Field(min_length=1, max_length=2000)
    bus_id: Optional[int] = None


class ComplaintResponseIn(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


class ComplaintStatusIn(BaseModel):
    status: ComplaintStatus
    notes: Optional[str] = Field(default=None, max_length=2000)


class ComplaintResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    responder_id: int
    message: str
    created_at: datetime


class ComplaintOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    bus_id: Optional[int] = None
    complaint_type: str
    description: str
    status: str
    created_at: datetime
    responses: List[ComplaintResponseOut] = Field(default_factory=list)


# ---------------- Maintenance ----------------
class TickOut(BaseModel):
    votes_deleted: int
    topics_expired: List[int]
    topics_escalated: List[int]
    topics_transitioned: List[int]
    skipped: bool

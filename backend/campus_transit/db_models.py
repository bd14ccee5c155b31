from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from campus_transit.core.clock import utcnow
from campus_transit.db import Base

ROLES = ("student", "driver", "coordinator", "admin")

TOPIC_STATUSES = (
    "active",
    "processing",
    "driver_assigned",
    "pending_coordinator",
    "approved",
    "rejected",
    "completed",
)

COMPLAINT_STATUSES = ("pending", "in_progress", "resolved", "rejected")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(120), nullable=False)
    role = Column(String(20), nullable=False, default="student")
    region = Column(String(80), nullable=True)
    phone = Column(String(32), nullable=True)
    telegram_chat_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Route(Base):
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    start_location = Column(String(255), nullable=False)
    end_location = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    stops = relationship(
        "RouteStop",
        back_populates="route",
        cascade="all, delete-orphan",
        order_by="RouteStop.sequence",
    )


class RouteStop(Base):
    __tablename__ = "route_stops"

    id = Column(Integer, primary_key=True, index=True)
    route_id = Column(Integer, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(120), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    sequence = Column(Integer, nullable=False, default=0)

    route = relationship("Route", back_populates="stops")


class Schedule(Base):
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    route_id = Column(Integer, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False)
    departure_time = Column(String(16), nullable=False)  # "HH:MM"
    days_of_week = Column(JSON, nullable=False, default=list)


class Bus(Base):
    __tablename__ = "buses"

    id = Column(Integer, primary_key=True, index=True)
    bus_number = Column(String(32), unique=True, nullable=False)
    name = Column(String(120), nullable=True)
    capacity = Column(Integer, nullable=False, default=40)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    driver_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class VotingTopic(Base):
    __tablename__ = "voting_topics"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    region = Column(String(80), nullable=False)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True)
    bus_id = Column(Integer, ForeignKey("buses.id"), nullable=True)
    driver_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    departure_time = Column(String(16), nullable=True)
    status = Column(String(30), nullable=False, default="active", index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    rejection_reason = Column(Text, nullable=True)
    # bumped by every status change; transitions compare-and-swap on it
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    options = relationship("VotingOption", back_populates="topic", cascade="all, delete-orphan")


class VotingOption(Base):
    __tablename__ = "voting_options"

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("voting_topics.id", ondelete="CASCADE"), nullable=False)
    option_text = Column(String(120), nullable=False, default="Approve")

    topic = relationship("VotingTopic", back_populates="options")


class Vote(Base):
    __tablename__ = "votes"

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("voting_topics.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    option_id = Column(Integer, ForeignKey("voting_options.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    student = relationship("Profile")

    __table_args__ = (
        UniqueConstraint("topic_id", "student_id", name="uq_vote_topic_student"),
        Index("idx_votes_student_created", "student_id", "created_at"),
    )


class DriverResponsePending(Base):
    __tablename__ = "driver_response_pending"

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("voting_topics.id", ondelete="CASCADE"), nullable=False, unique=True)
    region = Column(String(80), nullable=False)
    title = Column(String(200), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    notified_count = Column(Integer, nullable=False, default=0)
    declined_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(40), nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=True, index=True)
    target_role = Column(String(20), nullable=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(20), nullable=False, default="info")
    meta = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    # announcements: user_id is NULL and every profile with target_role sees the row
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Complaint(Base):
    __tablename__ = "complaints"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    bus_id = Column(Integer, ForeignKey("buses.id"), nullable=True)
    complaint_type = Column(String(60), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    responses = relationship(
        "ComplaintResponse",
        back_populates="complaint",
        cascade="all, delete-orphan",
        order_by="ComplaintResponse.created_at",
    )


class ComplaintResponse(Base):
    __tablename__ = "complaint_responses"

    id = Column(Integer, primary_key=True, index=True)
    complaint_id = Column(Integer, ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    responder_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    complaint = relationship("Complaint", back_populates="responses")

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.errors import Forbidden, NotFound, TopicNotFound, ValidationFailed
from campus_transit.core.logger import workflow_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db_models import (
    Bus,
    DriverResponsePending,
    Notification,
    Profile,
    Schedule,
    VotingOption,
    VotingTopic,
)
from campus_transit.models import BusRequest, TopicListing, TopicView, VoteBreakdown
from campus_transit.services.cache import TopicCache
from campus_transit.services.ledger import VoteLedger, voter_ids
from campus_transit.services.notifier import Notifier
from campus_transit.services.state_machine import OPEN_STATUSES, TopicStateMachine
from campus_transit.services.threshold import Evaluation, ThresholdEvaluator, tally_votes

# a driver is settled or the coordinator owns the topic; only their decision is left
AWAITING_DECISION = ("driver_assigned", "pending_coordinator")


class TopicService:
    """Student requests, listings, and the driver/coordinator actions on a topic."""

    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
        cache: Optional[TopicCache] = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()
        self.cache = cache
        self.ledger = VoteLedger(db, clock, self.settings)
        self.evaluator = ThresholdEvaluator(db, notifier, clock, self.settings)
        self.machine = TopicStateMachine(db, clock)

    # ---- helpers ----
    def _topic(self, topic_id: int) -> VotingTopic:
        topic = self.db.get(VotingTopic, topic_id)
        if topic is None:
            raise TopicNotFound("Voting topic not found")
        return topic

    def _profile(self, profile_id: int, role: Optional[str] = None) -> Profile:
        profile = self.db.get(Profile, profile_id)
        if profile is None:
            raise NotFound(f"profile {profile_id} not found")
        if role and profile.role != role:
            raise ValidationFailed(f"profile {profile_id} is not a {role}")
        return profile

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    def _driver_requests(self, driver_id: int, topic_id: int, unread_only: bool) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == driver_id, Notification.type == "driver_request")
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        rows = self.db.execute(stmt).scalars().all()
        return [n for n in rows if (n.meta or {}).get("topic_id") == topic_id]

    def _clear_pending(self, topic_id: int) -> None:
        self.db.execute(delete(DriverResponsePending).where(DriverResponsePending.topic_id == topic_id))
        self.db.commit()

    # ---- student side ----
    def request_bus(self, student_id: int, payload: BusRequest) -> VotingTopic:
        student = self._profile(student_id)
        bus = self.db.get(Bus, payload.bus_id)
        if bus is None:
            raise ValidationFailed("Please select a bus for your request")
        if payload.schedule_id is not None and self.db.get(Schedule, payload.schedule_id) is None:
            raise ValidationFailed("Selected schedule not found")

        now = self.clock()
        topic = VotingTopic(
            title=f"Additional Bus Request - {bus.bus_number}",
            description=payload.description or payload.reason,
            created_by=student.id,
            region=student.region or self.settings.default_region,
            route_id=payload.route_id or bus.route_id,
            schedule_id=payload.schedule_id,
            bus_id=bus.id,
            status="active",
            start_date=_naive(payload.start_date),
            end_date=_naive(payload.end_date),
            version=0,
            created_at=now,
        )
        topic.options.append(VotingOption(option_text="Approve"))
        self.db.add(topic)
        self.db.commit()
        self.db.refresh(topic)
        self._invalidate()
        logger.info(f"Topic {topic.id} requested by student {student.id} in {topic.region}")
        return topic

    def cast_vote(self, topic_id: int, student_id: int, option_id: Optional[int] = None) -> Dict[str, Any]:
        vote = self.ledger.cast_vote(topic_id, student_id, option_id)
        self._invalidate()
        outcome: Evaluation = self.evaluator.evaluate(topic_id)
        return {
            "vote_id": vote.id,
            "topic_id": topic_id,
            "weighted_votes": outcome.weighted_votes,
            "required_votes": outcome.threshold,
            "status": outcome.status,
        }

    def list_topics(self, user_id: int) -> TopicListing:
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached

        now = self.clock()
        topics = self.db.execute(select(VotingTopic).order_by(VotingTopic.created_at.desc(), VotingTopic.id.desc())).scalars().all()
        tallies = tally_votes(self.db, topics, now, self.settings)
        bus_numbers = dict(self.db.execute(select(Bus.id, Bus.bus_number)).all())

        active: List[TopicView] = []
        past: List[TopicView] = []
        for topic in topics:
            tally = tallies[topic.id]
            view = TopicView(
                id=topic.id,
                title=topic.title,
                description=topic.description,
                region=topic.region,
                status=topic.status,
                route_id=topic.route_id,
                schedule_id=topic.schedule_id,
                bus_id=topic.bus_id,
                bus_number=bus_numbers.get(topic.bus_id),
                driver_id=topic.driver_id,
                votes=tally.weighted,
                required_votes=self.settings.vote_threshold,
                student_count=len(set(tally.student_ids)),
                vote_breakdown=VoteBreakdown(same_region=tally.same_region, other_region=tally.other_region),
                has_voted=user_id in tally.student_ids,
                start_date=topic.start_date,
                end_date=topic.end_date,
                rejection_reason=topic.rejection_reason,
            )
            if topic.status in OPEN_STATUSES and now <= topic.end_date:
                active.append(view)
            else:
                # closed, or open past its end date and waiting for a coordinator
                past.append(view)

        listing = TopicListing(active=active, past=past)
        if self.cache is not None:
            self.cache.put(user_id, listing)
        return listing

    # ---- driver side ----
    def driver_accept(self, driver_id: int, topic_id: int) -> VotingTopic:
        driver = self._profile(driver_id, role="driver")
        topic = self._topic(topic_id)
        requests = self._driver_requests(driver.id, topic.id, unread_only=False)
        if not requests:
            raise Forbidden("You were not asked to take this route")

        self.machine.transition(topic, "driver_assigned", driver_id=driver.id)
        for note in requests:
            note.is_read = True
        self.db.commit()
        self._clear_pending(topic.id)
        self._invalidate()
        self.notifier.driver_assigned(topic, driver, voter_ids(self.db, topic.id), accepted=True)
        return topic

    def driver_decline(self, driver_id: int, topic_id: int) -> VotingTopic:
        driver = self._profile(driver_id, role="driver")
        topic = self._topic(topic_id)
        requests = self._driver_requests(driver.id, topic.id, unread_only=True)
        if not requests:
            raise Forbidden("No open route request for this driver")
        for note in requests:
            note.is_read = True

        pending = self.db.execute(
            select(DriverResponsePending).where(DriverResponsePending.topic_id == topic.id)
        ).scalars().first()
        if pending is not None:
            pending.declined_count += 1
        self.db.commit()
        logger.info(f"Driver {driver.id} declined topic {topic.id}")

        if topic.status == "processing" and (
            pending is None
            or pending.declined_count >= pending.notified_count
            or pending.expires_at <= self.clock()
        ):
            self.evaluator.escalate(topic, reason="all_drivers_declined")
            self._invalidate()
        return topic

    # ---- coordinator side ----
    def assign_driver(self, topic_id: int, driver_id: int) -> VotingTopic:
        topic = self._topic(topic_id)
        driver = self._profile(driver_id, role="driver")
        self.machine.transition(topic, "driver_assigned", driver_id=driver.id)
        self._clear_pending(topic.id)
        self._invalidate()
        self.notifier.driver_assigned(topic, driver, voter_ids(self.db, topic.id), accepted=False)
        return topic

    def approve(
        self,
        topic_id: int,
        bus_id: Optional[int] = None,
        driver_id: Optional[int] = None,
        departure_time: Optional[str] = None,
    ) -> VotingTopic:
        topic = self._topic(topic_id)
        if topic.status not in AWAITING_DECISION and self.clock() > topic.end_date:
            raise ValidationFailed("Cannot approve expired voting request")

        fields: Dict[str, Any] = {}
        if driver_id is not None:
            fields["driver_id"] = self._profile(driver_id, role="driver").id
        elif topic.driver_id is None:
            raise ValidationFailed("Please select a driver to assign")
        if bus_id is not None:
            if self.db.get(Bus, bus_id) is None:
                raise ValidationFailed("Selected bus not found")
            fields["bus_id"] = bus_id
        if departure_time:
            fields["departure_time"] = departure_time

        weighted = self.evaluator.weighted_votes(topic)
        self.machine.transition(topic, "approved", **fields)
        self._invalidate()
        self.notifier.topic_approved(topic, voter_ids(self.db, topic.id), weighted)
        return topic

    def reject(self, topic_id: int, reason: str) -> VotingTopic:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailed("A rejection reason is required")
        topic = self._topic(topic_id)
        weighted = self.evaluator.weighted_votes(topic)
        self.machine.transition(topic, "rejected", rejection_reason=reason)
        self._clear_pending(topic.id)
        self._invalidate()
        self.notifier.topic_rejected(topic, voter_ids(self.db, topic.id), weighted)
        return topic


def _naive(value: datetime) -> datetime:
    """Store aware datetimes as naive UTC like the rest of the schema."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


__all__ = ["TopicService", "AWAITING_DECISION"]

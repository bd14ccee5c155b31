from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.errors import TopicNotFound
from campus_transit.core.logger import workflow_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db_models import DriverResponsePending, Profile, Vote, VotingTopic
from campus_transit.services.notifier import Notifier
from campus_transit.services.state_machine import TopicStateMachine


@dataclass
class VoteTally:
    same_region: int = 0
    other_region: int = 0
    student_ids: List[int] = field(default_factory=list)
    cross_region_weight: float = 0.5

    @property
    def weighted(self) -> float:
        return self.same_region * 1.0 + self.other_region * self.cross_region_weight


@dataclass
class Evaluation:
    topic_id: int
    status: str
    weighted_votes: float
    threshold: float
    transitioned: bool = False
    escalated: bool = False
    drivers_notified: List[int] = field(default_factory=list)


def tally_votes(
    db: Session,
    topics: Iterable[VotingTopic],
    now: datetime,
    settings: Optional[Settings] = None,
) -> Dict[int, VoteTally]:
    """Weighted tallies for several topics in one query; expired votes are ignored."""
    settings = settings or get_settings()
    by_id = {t.id: t for t in topics}
    tallies = {tid: VoteTally(cross_region_weight=settings.cross_region_weight) for tid in by_id}
    if not by_id:
        return tallies

    cutoff = now - timedelta(minutes=settings.vote_expiry_minutes)
    stmt = (
        select(Vote.topic_id, Vote.student_id, Profile.region)
        .join(Profile, Profile.id == Vote.student_id)
        .where(Vote.topic_id.in_(list(by_id)), Vote.created_at >= cutoff)
        .order_by(Vote.id)
    )
    for topic_id, student_id, region in db.execute(stmt):
        tally = tallies[topic_id]
        tally.student_ids.append(student_id)
        # same fallback as a regionless requester gets in request_bus
        if (region or settings.default_region) == by_id[topic_id].region:
            tally.same_region += 1
        else:
            tally.other_region += 1
    return tallies


class ThresholdEvaluator:
    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()
        self.machine = TopicStateMachine(db, clock)

    def weighted_votes(self, topic: VotingTopic) -> float:
        return tally_votes(self.db, [topic], self.clock(), self.settings)[topic.id].weighted

    def evaluate(self, topic_id: int) -> Evaluation:
        topic = self.db.get(VotingTopic, topic_id)
        if topic is None:
            raise TopicNotFound("Voting topic not found")

        now = self.clock()
        weighted = self.weighted_votes(topic)
        outcome = Evaluation(
            topic_id=topic.id,
            status=topic.status,
            weighted_votes=weighted,
            threshold=self.settings.vote_threshold,
        )
        if topic.status != "active" or weighted < self.settings.vote_threshold:
            return outcome
        # past end_date the poller rejects the topic instead
        if now > topic.end_date:
            return outcome

        if not self.machine.try_transition(topic, "processing"):
            outcome.status = topic.status
            return outcome
        outcome.transitioned = True
        logger.info(f"Topic {topic.id} crossed threshold: {weighted:g}/{self.settings.vote_threshold:g}")

        drivers = list(
            self.db.execute(
                select(Profile).where(Profile.role == "driver", Profile.region == topic.region).order_by(Profile.id)
            ).scalars()
        )
        if not drivers:
            outcome.escalated = self.escalate(topic, reason="no_drivers_in_region")
        else:
            self.db.add(
                DriverResponsePending(
                    topic_id=topic.id,
                    region=topic.region,
                    title=topic.title,
                    expires_at=now + timedelta(minutes=self.settings.driver_response_minutes),
                    notified_count=len(drivers),
                    created_at=now,
                )
            )
            self.db.commit()
            self.notifier.drivers_requested(topic, drivers, weighted)
            outcome.drivers_notified = [d.id for d in drivers]
        outcome.status = topic.status
        return outcome

    def escalate(self, topic: VotingTopic, reason: str) -> bool:
        """processing -> pending_coordinator; only the winning caller notifies coordinators."""
        if not self.machine.try_transition(topic, "pending_coordinator"):
            return False
        self.db.execute(delete(DriverResponsePending).where(DriverResponsePending.topic_id == topic.id))
        self.db.commit()
        self.notifier.coordinators_needed(topic, reason)
        return True


__all__ = ["VoteTally", "Evaluation", "tally_votes", "ThresholdEvaluator"]

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.errors import DuplicateVote, TopicNotFound, ValidationFailed, VoteCooldown, VotingClosed
from campus_transit.core.logger import workflow_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db_models import Vote, VotingOption, VotingTopic


@dataclass
class SweepResult:
    deleted: int = 0
    topic_ids: Set[int] = field(default_factory=set)


def voter_ids(db: Session, topic_id: int) -> List[int]:
    stmt = select(Vote.student_id).where(Vote.topic_id == topic_id).order_by(Vote.id)
    return list(db.execute(stmt).scalars())


class VoteLedger:
    """One vote per (topic, student), one vote per student per cooldown window."""

    def __init__(self, db: Session, clock: Clock = utcnow, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.settings.vote_cooldown_minutes)

    @property
    def expiry(self) -> timedelta:
        return timedelta(minutes=self.settings.vote_expiry_minutes)

    def last_vote_at(self, student_id: int) -> Optional[datetime]:
        stmt = select(func.max(Vote.created_at)).where(Vote.student_id == student_id)
        return self.db.execute(stmt).scalar()

    def minutes_until_next_vote(self, student_id: int) -> int:
        last = self.last_vote_at(student_id)
        if last is None:
            return 0
        remaining = (last + self.cooldown) - self.clock()
        if remaining.total_seconds() <= 0:
            return 0
        return math.ceil(remaining.total_seconds() / 60)

    def can_vote(self, student_id: int) -> bool:
        return self.minutes_until_next_vote(student_id) == 0

    def _resolve_option(self, topic: VotingTopic, option_id: Optional[int]) -> VotingOption:
        if option_id is None:
            stmt = select(VotingOption).where(VotingOption.topic_id == topic.id).order_by(VotingOption.id)
            option = self.db.execute(stmt).scalars().first()
            if option is None:
                raise ValidationFailed("No voting option found for this topic")
            return option
        option = self.db.get(VotingOption, option_id)
        if option is None or option.topic_id != topic.id:
            raise ValidationFailed("Voting option does not belong to this topic")
        return option

    def cast_vote(self, topic_id: int, student_id: int, option_id: Optional[int] = None) -> Vote:
        topic = self.db.get(VotingTopic, topic_id)
        if topic is None:
            raise TopicNotFound("Voting topic not found")

        now = self.clock()
        if now > topic.end_date:
            raise VotingClosed("Voting period has ended")
        if topic.status != "active":
            raise VotingClosed("This request is no longer accepting votes")

        option = self._resolve_option(topic, option_id)

        existing = self.db.execute(
            select(Vote.id).where(Vote.topic_id == topic_id, Vote.student_id == student_id)
        ).first()
        if existing:
            raise DuplicateVote("You have already voted on this topic")

        minutes = self.minutes_until_next_vote(student_id)
        if minutes:
            raise VoteCooldown(minutes)

        vote = Vote(topic_id=topic_id, student_id=student_id, option_id=option.id, created_at=now)
        self.db.add(vote)
        try:
            self.db.commit()
        except IntegrityError:
            # a concurrent request inserted the same (topic, student) first
            self.db.rollback()
            raise DuplicateVote("You have already voted on this topic")
        self.db.refresh(vote)
        logger.info(f"Vote {vote.id} recorded: topic={topic_id} student={student_id}")
        return vote

    def sweep_expired(self) -> SweepResult:
        """Delete votes older than the expiry window; report which topics lost votes."""
        cutoff = self.clock() - self.expiry
        rows = self.db.execute(select(Vote.id, Vote.topic_id).where(Vote.created_at < cutoff)).all()
        if not rows:
            return SweepResult()

        ids = [row.id for row in rows]
        self.db.execute(delete(Vote).where(Vote.id.in_(ids)).execution_options(synchronize_session=False))
        self.db.commit()
        result = SweepResult(deleted=len(ids), topic_ids={row.topic_id for row in rows})
        logger.info(f"Swept {result.deleted} expired votes across {len(result.topic_ids)} topics")
        return result


__all__ = ["SweepResult", "VoteLedger", "voter_ids"]

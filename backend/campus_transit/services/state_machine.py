from __future__ import annotations

from typing import Any, Dict, FrozenSet

from sqlalchemy import update
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.errors import InvalidTransition, StaleTopic
from campus_transit.core.logger import workflow_logger as logger
from campus_transit.db_models import VotingTopic

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"processing", "rejected"}),
    "processing": frozenset({"driver_assigned", "pending_coordinator", "rejected"}),
    "pending_coordinator": frozenset({"driver_assigned", "approved", "rejected"}),
    "driver_assigned": frozenset({"approved", "rejected"}),
}

TERMINAL = frozenset({"approved", "rejected", "completed"})
OPEN_STATUSES = ("active", "processing", "driver_assigned", "pending_coordinator")


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class TopicStateMachine:
    """
    Owns every status change of a ``VotingTopic``.

    A transition is a single UPDATE guarded by the status and version the
    caller last saw, so two evaluators racing on the same topic cannot both
    win. The loser gets ``StaleTopic`` (or ``False`` from ``try_transition``)
    and must not perform the transition's side effects.
    """

    def __init__(self, db: Session, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def transition(self, topic: VotingTopic, target: str, **fields: Any) -> VotingTopic:
        current = topic.status
        if not can_transition(current, target):
            raise InvalidTransition(f"cannot move topic {topic.id} from {current} to {target}")

        expected_version = topic.version
        stmt = (
            update(VotingTopic)
            .where(
                VotingTopic.id == topic.id,
                VotingTopic.status == current,
                VotingTopic.version == expected_version,
            )
            .values(status=target, version=expected_version + 1, updated_at=self.clock(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(topic)
            raise StaleTopic(f"topic {topic.id} changed concurrently (now {topic.status})")

        self.db.commit()
        self.db.refresh(topic)
        logger.info(f"Topic {topic.id}: {current} -> {target} (v{topic.version})")
        return topic

    def try_transition(self, topic: VotingTopic, target: str, **fields: Any) -> bool:
        """Like ``transition`` but reports a lost race as ``False``."""
        try:
            self.transition(topic, target, **fields)
        except StaleTopic as exc:
            logger.info(f"Skipped transition to {target}: {exc}")
            return False
        return True


__all__ = ["TRANSITIONS", "TERMINAL", "OPEN_STATUSES", "can_transition", "TopicStateMachine"]

"""
Periodic maintenance tick for the voting workflow.

One tick, in order:

1. delete votes past the expiry window and re-evaluate the topics they touched;
2. reject open topics whose end date has passed;
3. escalate driver-response windows that elapsed without an acceptance;
4. re-check the threshold of every remaining active topic.

Every step goes through compare-and-swap transitions, so a tick can run
again (or concurrently in another process) without repeating side effects.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.logger import poller_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db_models import DriverResponsePending, VotingTopic
from campus_transit.services.ledger import VoteLedger, voter_ids
from campus_transit.services.notifier import Notifier
from campus_transit.services.state_machine import TopicStateMachine
from campus_transit.services.threshold import ThresholdEvaluator, tally_votes

EXPIRED_REASON = "Voting period expired"


@dataclass
class TickReport:
    votes_deleted: int = 0
    topics_expired: List[int] = field(default_factory=list)
    topics_escalated: List[int] = field(default_factory=list)
    topics_transitioned: List[int] = field(default_factory=list)
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.votes_deleted or self.topics_expired or self.topics_escalated or self.topics_transitioned)


class Poller:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier_factory: Callable[[Session], Notifier],
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
        on_change: Optional[Callable[[TickReport], None]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.notifier_factory = notifier_factory
        self.clock = clock
        self.settings = settings or get_settings()
        self.on_change = on_change
        self._tick_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    # ---- one tick ----
    def run_once(self, db: Optional[Session] = None) -> TickReport:
        """Run one tick, on ``db`` if given, else on a fresh session."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Poll tick already running; skipped")
            return TickReport(skipped=True)
        try:
            if db is not None:
                report = self._tick(db)
            else:
                with self.session_factory() as session:
                    report = self._tick(session)
        finally:
            self._tick_lock.release()
        if report.changed:
            logger.info(
                f"Tick: deleted={report.votes_deleted} expired={report.topics_expired} "
                f"escalated={report.topics_escalated} transitioned={report.topics_transitioned}"
            )
            if self.on_change is not None:
                self.on_change(report)
        return report

    def _tick(self, db: Session) -> TickReport:
        report = TickReport()
        notifier = self.notifier_factory(db)
        evaluator = ThresholdEvaluator(db, notifier, self.clock, self.settings)

        sweep = VoteLedger(db, self.clock, self.settings).sweep_expired()
        report.votes_deleted = sweep.deleted
        for topic_id in sorted(sweep.topic_ids):
            if evaluator.evaluate(topic_id).transitioned:
                report.topics_transitioned.append(topic_id)

        report.topics_expired = self._expire_topics(db, notifier)
        report.topics_escalated = self._escalate_elapsed_windows(db, evaluator)

        active_ids = db.execute(
            select(VotingTopic.id).where(VotingTopic.status == "active").order_by(VotingTopic.id)
        ).scalars().all()
        for topic_id in active_ids:
            if topic_id in report.topics_transitioned:
                continue
            if evaluator.evaluate(topic_id).transitioned:
                report.topics_transitioned.append(topic_id)
        return report

    def _expire_topics(self, db: Session, notifier: Notifier) -> List[int]:
        now = self.clock()
        machine = TopicStateMachine(db, self.clock)
        stale = db.execute(
            select(VotingTopic)
            .where(VotingTopic.status.in_(("active", "processing")), VotingTopic.end_date < now)
            .order_by(VotingTopic.id)
        ).scalars().all()

        expired: List[int] = []
        for topic in stale:
            weighted = tally_votes(db, [topic], now, self.settings)[topic.id].weighted
            if not machine.try_transition(topic, "rejected", rejection_reason=EXPIRED_REASON):
                continue
            db.execute(delete(DriverResponsePending).where(DriverResponsePending.topic_id == topic.id))
            db.commit()
            notifier.topic_rejected(topic, voter_ids(db, topic.id), weighted)
            expired.append(topic.id)
        return expired

    def _escalate_elapsed_windows(self, db: Session, evaluator: ThresholdEvaluator) -> List[int]:
        now = self.clock()
        pending = db.execute(
            select(DriverResponsePending)
            .where(DriverResponsePending.expires_at <= now)
            .order_by(DriverResponsePending.id)
        ).scalars().all()

        escalated: List[int] = []
        for row in pending:
            topic = db.get(VotingTopic, row.topic_id)
            if topic is None or topic.status != "processing":
                # a driver accepted or the topic closed; the window is moot
                db.delete(row)
                db.commit()
                continue
            if evaluator.escalate(topic, reason="driver_response_timeout"):
                escalated.append(topic.id)
        return escalated

    # ---- background loop ----
    async def run_forever(self) -> None:
        interval = self.settings.poll_interval_seconds
        logger.info(f"Poller started (every {interval}s)")
        while True:
            try:
                await run_in_threadpool(self.run_once)
            except Exception as exc:
                logger.exception(f"Poll tick failed: {exc}")
            await asyncio.sleep(interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Poller stopped")


__all__ = ["TickReport", "Poller", "EXPIRED_REASON"]

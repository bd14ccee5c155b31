import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from campus_transit.core.settings import Settings
from campus_transit.db_models import Alert, DriverResponsePending, Notification, Vote, VotingTopic
from campus_transit.services.notifier import Notifier
from campus_transit.services.poller import EXPIRED_REASON, Poller, TickReport
from campus_transit.services.threshold import tally_votes
from campus_transit.services.topics import TopicService


@pytest.fixture
def poller(session_factory, clock, settings):
    return Poller(session_factory, lambda s: Notifier(s, webhook=None, clock=clock), clock=clock, settings=settings)


def _vote(db, clock, make_profile, topic, count, region="Hubli"):
    for _ in range(count):
        student = make_profile("student", region=region)
        db.add(Vote(topic_id=topic.id, student_id=student.id, option_id=topic.options[0].id, created_at=clock()))
    db.commit()


def _status(db, topic_id):
    db.expire_all()
    return db.get(VotingTopic, topic_id).status


def test_sweep_recomputes_totals_downward(db, clock, settings, poller, make_topic, make_profile):
    topic = make_topic(hours_open=48)
    _vote(db, clock, make_profile, topic, 10)
    clock.advance(minutes=40)
    _vote(db, clock, make_profile, topic, 5)
    assert tally_votes(db, [topic], clock(), settings)[topic.id].weighted == 15.0

    clock.advance(minutes=21)
    report = poller.run_once()

    assert report.votes_deleted == 10
    assert len(db.execute(select(Vote)).scalars().all()) == 5
    assert tally_votes(db, [topic], clock(), settings)[topic.id].weighted == 5.0


def test_second_tick_changes_nothing(db, clock, poller, make_topic, make_profile):
    topic = make_topic(hours_open=48)
    make_profile("driver")
    _vote(db, clock, make_profile, topic, 25)
    first = poller.run_once()
    assert first.topics_transitioned == [topic.id]
    notes_after_first = len(db.execute(select(Notification)).scalars().all())

    second = poller.run_once()
    assert not second.changed
    assert len(db.execute(select(Notification)).scalars().all()) == notes_after_first


def test_elapsed_driver_window_escalates(db, clock, poller, make_topic, make_profile):
    topic = make_topic(hours_open=48)
    make_profile("driver")
    coordinator = make_profile("coordinator", region=None)
    _vote(db, clock, make_profile, topic, 25)
    poller.run_once()
    assert _status(db, topic.id) == "processing"

    clock.advance(minutes=9)
    assert poller.run_once().topics_escalated == []

    clock.advance(minutes=1)
    report = poller.run_once()
    assert report.topics_escalated == [topic.id]
    assert _status(db, topic.id) == "pending_coordinator"
    assert db.execute(select(DriverResponsePending)).scalars().all() == []

    alerts = db.execute(select(Notification).where(Notification.type == "coordinator_alert")).scalars().all()
    assert [n.user_id for n in alerts] == [coordinator.id]
    assert alerts[0].meta["reason"] == "driver_response_timeout"

    assert not poller.run_once().changed


def test_window_of_settled_topic_is_dropped(db, clock, poller, make_topic):
    topic = make_topic(status="driver_assigned")
    db.add(
        DriverResponsePending(
            topic_id=topic.id,
            region=topic.region,
            title=topic.title,
            expires_at=clock() - timedelta(minutes=1),
            notified_count=1,
        )
    )
    db.commit()

    report = poller.run_once()
    assert report.topics_escalated == []
    assert db.execute(select(DriverResponsePending)).scalars().all() == []
    assert _status(db, topic.id) == "driver_assigned"


def test_topic_past_end_date_is_rejected(db, clock, poller, make_topic, make_profile):
    topic = make_topic(hours_open=0.5)
    _vote(db, clock, make_profile, topic, 3)
    clock.advance(minutes=31)

    report = poller.run_once()
    assert report.topics_expired == [topic.id]
    db.expire_all()
    stored = db.get(VotingTopic, topic.id)
    assert stored.status == "rejected"
    assert stored.rejection_reason == EXPIRED_REASON

    alerts = db.execute(select(Alert)).scalars().all()
    assert len(alerts) == 3
    assert {a.title for a in alerts} == {"Bus Request Rejected"}

    assert poller.run_once().topics_expired == []
    assert len(db.execute(select(Alert)).scalars().all()) == 3


def test_driver_assigned_topic_is_not_expired(db, clock, poller, make_topic):
    topic = make_topic(status="driver_assigned", hours_open=0.5)
    clock.advance(hours=1)
    assert poller.run_once().topics_expired == []
    assert _status(db, topic.id) == "driver_assigned"


@pytest.mark.parametrize("status", ["driver_assigned", "pending_coordinator"])
def test_topic_awaiting_decision_stays_listed_and_approvable(db, clock, settings, poller, make_topic, make_profile, status):
    driver = make_profile("driver")
    topic = make_topic(status=status, hours_open=1)
    topic.driver_id = driver.id
    db.commit()
    clock.advance(hours=2)
    poller.run_once()

    service = TopicService(db, Notifier(db, clock=clock), clock=clock, settings=settings)
    listing = service.list_topics(make_profile("coordinator", region=None).id)
    assert listing.active == []
    assert [(t.id, t.status) for t in listing.past] == [(topic.id, status)]

    service.approve(topic.id, departure_time="18:00")
    assert _status(db, topic.id) == "approved"


def test_tick_on_caller_session(db, clock, poller, make_topic, make_profile):
    topic = make_topic(hours_open=0.5)
    clock.advance(hours=1)
    report = poller.run_once(db)
    assert report.topics_expired == [topic.id]


def test_overlapping_tick_is_skipped(poller):
    poller._tick_lock.acquire()
    try:
        assert poller.run_once().skipped
    finally:
        poller._tick_lock.release()
    assert not poller.run_once().skipped


def test_on_change_fires_only_when_something_changed(session_factory, clock, settings, make_topic):
    seen = []
    poller = Poller(
        session_factory,
        lambda s: Notifier(s, clock=clock),
        clock=clock,
        settings=settings,
        on_change=seen.append,
    )
    poller.run_once()
    assert seen == []

    make_topic(hours_open=0.5)
    clock.advance(hours=1)
    poller.run_once()
    assert len(seen) == 1 and seen[0].topics_expired


def test_background_loop_survives_failing_tick(monkeypatch, session_factory, clock):
    poller = Poller(session_factory, lambda s: Notifier(s), clock=clock, settings=Settings(poll_interval_seconds=0))
    calls = []

    def fake_run_once(db=None):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return TickReport()

    monkeypatch.setattr(poller, "run_once", fake_run_once)

    async def scenario():
        poller.start()
        for _ in range(200):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

    asyncio.run(scenario())
    assert len(calls) >= 3
    assert poller._task is None

import os
from datetime import datetime, timedelta

# Background polling would race the tests; admin/poll drives ticks explicitly.
os.environ.setdefault("ENABLE_POLLER", "0")
os.environ.setdefault("LOG_FILE", os.devnull)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from campus_transit.core.clock import FrozenClock  # noqa: E402
from campus_transit.core.settings import Settings, get_settings  # noqa: E402
from campus_transit.db import Base, get_db, init_db  # noqa: E402
from campus_transit.db_models import Bus, Profile, Route, VotingOption, VotingTopic  # noqa: E402
from campus_transit.deps import get_clock, get_poller, get_topic_cache, get_webhook  # noqa: E402
from campus_transit.main import app  # noqa: E402
from campus_transit.security import create_access_token  # noqa: E402
from campus_transit.services.cache import TopicCache  # noqa: E402
from campus_transit.services.notifier import Notifier  # noqa: E402
from campus_transit.services.poller import Poller  # noqa: E402

START = datetime(2025, 3, 10, 9, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def notifier(db, clock):
    return Notifier(db, webhook=None, clock=clock)


@pytest.fixture
def make_profile(db):
    counter = {"n": 0}

    def _make(role="student", region="Hubli", name=None, telegram_chat_id=None):
        counter["n"] += 1
        profile = Profile(
            email=f"{role}{counter['n']}@campus.example",
            name=name or f"{role.title()} {counter['n']}",
            role=role,
            region=region,
            telegram_chat_id=telegram_chat_id,
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    return _make


@pytest.fixture
def make_bus(db):
    def _make(bus_number="KA-25-1001"):
        route = Route(name=f"Route {bus_number}", start_location="Campus", end_location="City Bus Stand")
        db.add(route)
        db.flush()
        bus = Bus(bus_number=bus_number, name="Shuttle", capacity=40, route_id=route.id)
        db.add(bus)
        db.commit()
        db.refresh(bus)
        return bus

    return _make


@pytest.fixture
def make_topic(db, clock, make_profile):
    def _make(region="Hubli", status="active", hours_open=24, created_by=None):
        creator = created_by or make_profile("student", region=region)
        now = clock()
        topic = VotingTopic(
            title="Additional Bus Request - KA-25-1001",
            description="Evening lab classes run late",
            created_by=creator.id,
            region=region,
            status=status,
            start_date=now - timedelta(hours=1),
            end_date=now + timedelta(hours=hours_open),
            version=0,
            created_at=now,
        )
        topic.options.append(VotingOption(option_text="Approve"))
        db.add(topic)
        db.commit()
        db.refresh(topic)
        return topic

    return _make


def _bearer(profile):
    token = create_access_token(profile.id, profile.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return _bearer


@pytest.fixture
def api(session_factory, clock, settings):
    """TestClient bound to the in-memory database, frozen clock, fresh cache and poller."""

    def _db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    cache = TopicCache(ttl_seconds=settings.topic_cache_seconds, clock=clock)
    poller = Poller(
        session_factory,
        lambda s: Notifier(s, webhook=None, clock=clock),
        clock=clock,
        settings=settings,
        on_change=lambda report: cache.invalidate(),
    )
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_topic_cache] = lambda: cache
    app.dependency_overrides[get_webhook] = lambda: None
    app.dependency_overrides[get_poller] = lambda: poller
    app.state.limiter.reset()
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

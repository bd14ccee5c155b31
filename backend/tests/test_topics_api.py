from datetime import timedelta

import pytest

from campus_transit.core.settings import Settings
from campus_transit.db_models import VotingTopic
from conftest import START


@pytest.fixture
def settings():
    # two same-region votes are enough to cross the threshold
    return Settings(vote_threshold=2)


def _window(hours=24):
    return {
        "start_date": (START - timedelta(hours=1)).isoformat(),
        "end_date": (START + timedelta(hours=hours)).isoformat(),
    }


def _request_topic(api, auth, student, bus, hours=24):
    r = api.post(
        "/topics/request",
        json={"bus_id": bus.id, "description": "Evening lab classes end at 7pm", **_window(hours)},
        headers=auth(student),
    )
    assert r.status_code == 201, r.text
    return r.json()["topic_id"]


def _listing(api, auth, user):
    r = api.get("/topics", headers=auth(user))
    assert r.status_code == 200
    return r.json()


def test_full_request_vote_accept_approve_flow(api, auth, clock, make_profile, make_bus):
    bus = make_bus()
    requester, second = make_profile("student"), make_profile("student")
    driver = make_profile("driver")
    coordinator = make_profile("coordinator", region=None)

    topic_id = _request_topic(api, auth, requester, bus)
    active = _listing(api, auth, requester)["active"]
    assert [t["id"] for t in active] == [topic_id]
    assert active[0]["title"] == "Additional Bus Request - KA-25-1001"
    assert active[0]["region"] == "Hubli"
    assert active[0]["has_voted"] is False

    r = api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(requester))
    assert r.status_code == 200
    assert r.json()["status"] == "active"
    assert r.json()["weighted_votes"] == 1.0

    view = _listing(api, auth, requester)["active"][0]
    assert view["has_voted"] is True
    assert view["votes"] == 1.0

    r = api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(second))
    assert r.json()["status"] == "processing"

    inbox = api.get("/notifications", headers=auth(driver)).json()
    assert [n["type"] for n in inbox["notifications"]] == ["driver_request"]
    assert inbox["notifications"][0]["metadata"]["topic_id"] == topic_id

    clock.advance(minutes=3)
    r = api.post(f"/topics/{topic_id}/accept", json={}, headers=auth(driver))
    assert r.status_code == 200
    assert r.json() == {"topic_id": topic_id, "status": "driver_assigned"}

    r = api.post(
        f"/topics/{topic_id}/approve",
        json={"departure_time": "19:15"},
        headers=auth(coordinator),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "approved"

    alerts = api.get("/notifications", headers=auth(second)).json()["alerts"]
    assert "Bus Request Approved!" in [a["title"] for a in alerts]

    listing = _listing(api, auth, requester)
    assert listing["active"] == []
    assert [t["status"] for t in listing["past"]] == ["approved"]
    assert listing["past"][0]["driver_id"] == driver.id


def test_vote_errors(api, auth, clock, make_profile, make_bus):
    bus = make_bus()
    student = make_profile("student")
    first = _request_topic(api, auth, student, bus)
    second = _request_topic(api, auth, make_profile("student"), bus)

    api.post(f"/topics/{first}/vote", json={}, headers=auth(student))

    r = api.post(f"/topics/{first}/vote", json={}, headers=auth(student))
    assert r.status_code == 409
    assert r.json()["error"] == "already_voted"

    clock.advance(minutes=5)
    r = api.post(f"/topics/{second}/vote", json={}, headers=auth(student))
    assert r.status_code == 429
    assert r.json() == {
        "error": "vote_cooldown",
        "detail": "You can vote again in 25 minutes",
        "retry_after_minutes": 25,
    }

    status = api.get("/topics/vote-status", headers=auth(student)).json()
    assert status == {"can_vote": False, "minutes_until_next_vote": 25}

    r = api.post("/topics/999/vote", json={}, headers=auth(student))
    assert r.status_code == 404
    assert r.json()["error"] == "topic_not_found"


def test_vote_after_window_closes(api, auth, clock, make_profile, make_bus):
    bus = make_bus()
    student = make_profile("student")
    topic_id = _request_topic(api, auth, student, bus, hours=1)
    clock.advance(hours=2)

    r = api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(student))
    assert r.status_code == 409
    assert r.json()["error"] == "voting_closed"


def test_request_validation(api, auth, make_profile, make_bus):
    student = make_profile("student")
    bus = make_bus()
    window = _window()
    reversed_window = {"start_date": window["end_date"], "end_date": window["start_date"]}

    r = api.post("/topics/request", json={"bus_id": bus.id, "reason": "x", **reversed_window}, headers=auth(student))
    assert r.status_code == 422

    r = api.post("/topics/request", json={"bus_id": bus.id, **window}, headers=auth(student))
    assert r.status_code == 422

    r = api.post("/topics/request", json={"bus_id": 404, "reason": "x", **window}, headers=auth(student))
    assert r.status_code == 400
    assert r.json()["error"] == "validation_failed"


def test_all_drivers_decline_then_coordinator_assigns(api, auth, make_profile, make_bus):
    bus = make_bus()
    students = [make_profile("student") for _ in range(2)]
    drivers = [make_profile("driver") for _ in range(2)]
    spare = make_profile("driver", region="Dharwad")
    coordinator = make_profile("coordinator", region=None)
    topic_id = _request_topic(api, auth, students[0], bus)
    for s in students:
        api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(s))

    r = api.post(f"/topics/{topic_id}/decline", json={}, headers=auth(drivers[0]))
    assert r.json()["status"] == "processing"
    r = api.post(f"/topics/{topic_id}/decline", json={}, headers=auth(drivers[0]))
    assert r.status_code == 403

    r = api.post(f"/topics/{topic_id}/decline", json={}, headers=auth(drivers[1]))
    assert r.json()["status"] == "pending_coordinator"

    inbox = api.get("/notifications", headers=auth(coordinator)).json()
    assert inbox["notifications"][0]["type"] == "coordinator_alert"
    assert inbox["unread"] == 1

    r = api.post(f"/topics/{topic_id}/approve", json={}, headers=auth(coordinator))
    assert r.status_code == 400
    assert r.json()["detail"] == "Please select a driver to assign"

    r = api.post(f"/topics/{topic_id}/assign", json={"driver_id": spare.id}, headers=auth(coordinator))
    assert r.json()["status"] == "driver_assigned"
    spare_inbox = api.get("/notifications", headers=auth(spare)).json()
    assert [n["type"] for n in spare_inbox["notifications"]] == ["driver_assignment"]

    r = api.post(f"/topics/{topic_id}/approve", json={"departure_time": "18:30"}, headers=auth(coordinator))
    assert r.json()["status"] == "approved"


def test_driver_not_asked_cannot_accept(api, auth, make_profile, make_bus):
    bus = make_bus()
    student = make_profile("student")
    outsider = make_profile("driver", region="Dharwad")
    topic_id = _request_topic(api, auth, student, bus)

    r = api.post(f"/topics/{topic_id}/accept", json={}, headers=auth(outsider))
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_reject_requires_reason_and_closes_topic(api, auth, make_profile, make_bus):
    bus = make_bus()
    student = make_profile("student")
    coordinator = make_profile("coordinator", region=None)
    topic_id = _request_topic(api, auth, student, bus)
    api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(student))

    r = api.post(f"/topics/{topic_id}/reject", json={"reason": "   "}, headers=auth(coordinator))
    assert r.status_code == 422

    r = api.post(f"/topics/{topic_id}/reject", json={"reason": "No spare buses this week"}, headers=auth(coordinator))
    assert r.json()["status"] == "rejected"

    past = _listing(api, auth, student)["past"]
    assert past[0]["rejection_reason"] == "No spare buses this week"
    alerts = api.get("/notifications", headers=auth(student)).json()["alerts"]
    assert alerts[0]["title"] == "Bus Request Rejected"

    r = api.post(f"/topics/{topic_id}/reject", json={"reason": "again"}, headers=auth(coordinator))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"


def test_cannot_approve_expired_request(api, auth, clock, make_profile, make_bus):
    bus = make_bus()
    coordinator = make_profile("coordinator", region=None)
    driver = make_profile("driver")
    topic_id = _request_topic(api, auth, make_profile("student"), bus, hours=1)
    clock.advance(hours=2)

    r = api.post(f"/topics/{topic_id}/approve", json={"driver_id": driver.id}, headers=auth(coordinator))
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot approve expired voting request"


def test_listing_is_cached_until_a_write(api, auth, clock, db, make_profile, make_bus, make_topic):
    bus = make_bus()
    student = make_profile("student")
    _request_topic(api, auth, student, bus)
    assert len(_listing(api, auth, student)["active"]) == 1

    # written behind the service's back, so the cached listing is served
    make_topic()
    assert len(_listing(api, auth, student)["active"]) == 1

    clock.advance(seconds=5)
    assert len(_listing(api, auth, student)["active"]) == 2


def test_vote_rate_limit(api, auth, make_profile):
    student = make_profile("student")
    for _ in range(10):
        assert api.post("/topics/999/vote", json={}, headers=auth(student)).status_code == 404
    r = api.post("/topics/999/vote", json={}, headers=auth(student))
    assert r.status_code == 429
    assert r.json()["error"] == "too_many_requests"


def test_admin_poll_expires_topics(api, auth, clock, make_profile, make_bus):
    bus = make_bus()
    admin = make_profile("admin", region=None)
    student = make_profile("student")
    topic_id = _request_topic(api, auth, student, bus, hours=1)
    api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(student))
    clock.advance(hours=2)

    r = api.post("/admin/poll", json={}, headers=auth(admin))
    assert r.status_code == 200
    body = r.json()
    assert body["topics_expired"] == [topic_id]
    assert body["votes_deleted"] == 1

    past = _listing(api, auth, student)["past"]
    assert past[0]["status"] == "rejected"
    assert past[0]["rejection_reason"] == "Voting period expired"


def test_vote_runs_a_maintenance_tick(api, auth, clock, db, make_profile, make_bus, make_topic):
    overdue = make_topic(hours_open=1)
    clock.advance(hours=2)
    bus = make_bus()
    student = make_profile("student")
    topic_id = _request_topic(api, auth, student, bus)

    r = api.post(f"/topics/{topic_id}/vote", json={}, headers=auth(student))
    assert r.status_code == 200

    db.expire_all()
    assert db.get(VotingTopic, overdue.id).status == "rejected"
    past = _listing(api, auth, student)["past"]
    assert [t["id"] for t in past] == [overdue.id]

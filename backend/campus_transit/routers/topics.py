from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status

from campus_transit.deps import get_poller, get_topic_service
from campus_transit.limits import VOTE_RATE_LIMIT, limiter
from campus_transit.models import (
    ApproveRequest,
    AssignDriverRequest,
    BusRequest,
    RejectRequest,
    TopicActionResponse,
    TopicListing,
    VoteRequest,
    VoteResponse,
    VoteStatus,
)
from campus_transit.security import User, get_current_user, require_role
from campus_transit.services.poller import Poller
from campus_transit.services.topics import TopicService

router = APIRouter(prefix="/topics", tags=["topics"])


def _action(topic) -> TopicActionResponse:
    return TopicActionResponse(topic_id=topic.id, status=topic.status)


@router.get("", response_model=TopicListing)
def list_topics(user: User = Depends(get_current_user), service: TopicService = Depends(get_topic_service)):
    return service.list_topics(user.id)


@router.get("/vote-status", response_model=VoteStatus)
def vote_status(user: User = Depends(require_role("student")), service: TopicService = Depends(get_topic_service)):
    minutes = service.ledger.minutes_until_next_vote(user.id)
    return VoteStatus(can_vote=minutes == 0, minutes_until_next_vote=minutes)


@router.post("/request", response_model=TopicActionResponse, status_code=status.HTTP_201_CREATED)
def request_bus(
    payload: BusRequest,
    user: User = Depends(require_role("student")),
    service: TopicService = Depends(get_topic_service),
):
    return _action(service.request_bus(user.id, payload))


@router.post("/{topic_id}/vote", response_model=VoteResponse)
@limiter.limit(VOTE_RATE_LIMIT)
def cast_vote(
    request: Request,
    topic_id: int,
    background_tasks: BackgroundTasks,
    payload: Optional[VoteRequest] = None,
    user: User = Depends(require_role("student")),
    service: TopicService = Depends(get_topic_service),
    poller: Poller = Depends(get_poller),
):
    option_id = payload.option_id if payload else None
    outcome = service.cast_vote(topic_id, user.id, option_id)
    # the voted topic is already evaluated; the rest of the tick runs after the response
    background_tasks.add_task(poller.run_once)
    return VoteResponse(**outcome)


# ---- driver actions ----
@router.post("/{topic_id}/accept", response_model=TopicActionResponse)
def accept_route(
    topic_id: int,
    user: User = Depends(require_role("driver")),
    service: TopicService = Depends(get_topic_service),
):
    return _action(service.driver_accept(user.id, topic_id))


@router.post("/{topic_id}/decline", response_model=TopicActionResponse)
def decline_route(
    topic_id: int,
    user: User = Depends(require_role("driver")),
    service: TopicService = Depends(get_topic_service),
):
    return _action(service.driver_decline(user.id, topic_id))


# ---- coordinator actions ----
@router.post("/{topic_id}/assign", response_model=TopicActionResponse)
def assign_driver(
    topic_id: int,
    payload: AssignDriverRequest,
    user: User = Depends(require_role("coordinator", "admin")),
    service: TopicService = Depends(get_topic_service),
):
    return _action(service.assign_driver(topic_id, payload.driver_id))


@router.post("/{topic_id}/approve", response_model=TopicActionResponse)
def approve_topic(
    topic_id: int,
    payload: ApproveRequest,
    user: User = Depends(require_role("coordinator", "admin")),
    service: TopicService = Depends(get_topic_service),
):
    topic = service.approve(
        topic_id,
        bus_id=payload.bus_id,
        driver_id=payload.driver_id,
        departure_time=payload.departure_time,
    )
    return _action(topic)


@router.post("/{topic_id}/reject", response_model=TopicActionResponse)
def reject_topic(
    topic_id: int,
    payload: RejectRequest,
    user: User = Depends(require_role("coordinator", "admin")),
    service: TopicService = Depends(get_topic_service),
):
    return _action(service.reject(topic_id, payload.reason))

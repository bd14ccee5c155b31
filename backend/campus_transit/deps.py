"""
FastAPI dependency providers.

Every collaborator of the workflow (clock, settings, cache, webhook) is
resolved here so tests can swap any of them with ``app.dependency_overrides``.
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db import SessionLocal, get_db
from campus_transit.services.cache import TopicCache
from campus_transit.services.notifier import Notifier, TelegramWebhook
from campus_transit.services.poller import Poller
from campus_transit.services.topics import TopicService


def get_clock() -> Clock:
    return utcnow


def get_webhook(request: Request) -> Optional[TelegramWebhook]:
    return getattr(request.app.state, "webhook", None)


def get_topic_cache(request: Request) -> Optional[TopicCache]:
    return getattr(request.app.state, "topic_cache", None)


def get_notifier(
    db: Session = Depends(get_db),
    webhook: Optional[TelegramWebhook] = Depends(get_webhook),
    clock: Clock = Depends(get_clock),
) -> Notifier:
    return Notifier(db, webhook=webhook, clock=clock)


def get_topic_service(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    cache: Optional[TopicCache] = Depends(get_topic_cache),
) -> TopicService:
    return TopicService(db, notifier, clock=clock, settings=settings, cache=cache)


def get_poller(
    request: Request,
    webhook: Optional[TelegramWebhook] = Depends(get_webhook),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    cache: Optional[TopicCache] = Depends(get_topic_cache),
) -> Poller:
    """The background poller when the app runs one, else a one-off instance."""
    poller = getattr(request.app.state, "poller", None)
    if poller is not None:
        return poller
    return Poller(
        SessionLocal,
        lambda db: Notifier(db, webhook=webhook, clock=clock),
        clock=clock,
        settings=settings,
        on_change=lambda report: cache.invalidate() if cache is not None else None,
    )

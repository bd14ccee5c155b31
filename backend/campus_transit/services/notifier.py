"""
Notification fan-out for the voting workflow.

Two independent channels:

* in-app rows (``notifications`` for drivers/coordinators, ``alerts`` for
  students), one row per recipient;
* an outbound Telegram-style webhook, retried a fixed number of times.

Neither channel is transactional with the topic status: a failed insert or a
failed webhook is logged and reported as a falsy return value, and the caller
keeps the transition it already committed.
"""

from __future__ import annotations

import html
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus_transit.core.clock import Clock, utcnow
from campus_transit.core.logger import notify_logger as logger
from campus_transit.core.settings import Settings, get_settings
from campus_transit.db_models import Alert, Notification, Profile, VotingTopic

WEBHOOK_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class TelegramWebhook:
    """POSTs ``{chat_id, text, parse_mode}`` to the bot ``sendMessage`` endpoint."""

    def __init__(
        self,
        api_base: str,
        token: Optional[str],
        chat_ids: Sequence[str] = (),
        retries: int = 3,
        retry_delay: float = 2.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.token = token
        self.chat_ids = list(chat_ids)
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None) -> "TelegramWebhook":
        settings = settings or get_settings()
        return cls(
            api_base=settings.telegram_api_base,
            token=settings.telegram_bot_token,
            chat_ids=settings.telegram_chat_ids,
            retries=settings.webhook_retries,
            retry_delay=settings.webhook_retry_delay_seconds,
            client=client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.token}/sendMessage"

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=WEBHOOK_TIMEOUT)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post_with_retry(self, chat_id: str, text: str, parse_mode: str) -> bool:
        body = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}
        for attempt in range(1, self.retries + 1):
            try:
                response = self._http().post(self.url, json=body)
                response.raise_for_status()
                return True
            except httpx.HTTPError as exc:
                logger.warning(f"Webhook attempt {attempt}/{self.retries} to chat {chat_id} failed: {exc}")
                if attempt < self.retries:
                    self._sleep(self.retry_delay)
        return False

    def send(self, text: str, extra_chat_ids: Iterable[str] = (), parse_mode: str = "HTML") -> bool:
        """Send ``text`` to every configured chat; True if at least one accepted it."""
        if not self.enabled:
            logger.info("Webhook disabled (no bot token configured); message skipped")
            return False
        targets = list(dict.fromkeys([*self.chat_ids, *[c for c in extra_chat_ids if c]]))
        if not targets:
            logger.info("Webhook has no chat ids to deliver to")
            return False
        results = [self._post_with_retry(chat_id, text, parse_mode) for chat_id in targets]
        if not any(results):
            logger.error(f"Webhook message failed for all {len(targets)} chats")
        return any(results)


def format_topic_message(event: str, topic: VotingTopic, weighted_votes: Optional[float] = None) -> str:
    title = html.escape(topic.title or "")
    description = html.escape(topic.description or "")
    region = html.escape(topic.region or "")
    votes = "" if weighted_votes is None else f"Final Votes: {weighted_votes:g}\n"
    if event == "threshold":
        return (
            "<b>URGENT: BUS REQUEST THRESHOLD REACHED</b>\n\n"
            f"Title: {title}\nDescription: {description}\nRegion: {region}\n"
            f"{votes}\nPlease check the driver dashboard to accept or decline."
        )
    if event == "escalated":
        return (
            "<b>DRIVER ASSIGNMENT NEEDED</b>\n\n"
            f"Title: {title}\nRegion: {region}\n\n"
            "No driver accepted this request. A coordinator must assign a driver."
        )
    if event == "driver_assigned":
        return f"<b>DRIVER ASSIGNED</b>\n\nTitle: {title}\nRegion: {region}\nDriver: {topic.driver_id}"
    if event == "approved":
        return (
            "<b>REQUEST APPROVED</b>\n\n"
            f"Title: {title}\nDescription: {description}\n{votes}Region: {region}\n"
            f"Bus: {topic.bus_id or 'Not assigned'}\n\nRequest has been approved and bus allocated."
        )
    if event == "rejected":
        reason = html.escape(topic.rejection_reason or "")
        return (
            "<b>REQUEST REJECTED</b>\n\n"
            f"Title: {title}\nDescription: {description}\n{votes}Region: {region}\n"
            f"Reason: {reason}"
        )
    raise ValueError(f"unknown topic event: {event}")


class Notifier:
    def __init__(self, db: Session, webhook: Optional[TelegramWebhook] = None, clock: Clock = utcnow) -> None:
        self.db = db
        self.webhook = webhook
        self.clock = clock

    # ---- in-app rows ----
    def notify_users(
        self,
        user_ids: Iterable[int],
        title: str,
        message: str,
        type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        now = self.clock()
        rows = [
            Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                meta=dict(metadata or {}),
                created_at=now,
            )
            for user_id in dict.fromkeys(user_ids)
        ]
        return self._insert(rows, "notification")

    def alert_users(
        self,
        user_ids: Iterable[int],
        title: str,
        message: str,
        severity: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
        target_role: str = "student",
    ) -> int:
        now = self.clock()
        rows = [
            Alert(
                user_id=user_id,
                target_role=target_role,
                title=title,
                message=message,
                severity=severity,
                meta=dict(metadata or {}),
                created_at=now,
            )
            for user_id in dict.fromkeys(user_ids)
        ]
        return self._insert(rows, "alert")

    def announce(
        self,
        title: str,
        message: str,
        target_role: str,
        severity: str = "info",
        expires_at: Optional[datetime] = None,
        author_id: Optional[int] = None,
    ) -> Optional[Alert]:
        """One shared alert row read by every profile with ``target_role``."""
        alert = Alert(
            user_id=None,
            target_role=target_role,
            title=title,
            message=message,
            severity=severity,
            meta={"action_type": "announcement", "author_id": author_id},
            expires_at=expires_at,
            created_at=self.clock(),
        )
        if not self._insert([alert], "announcement"):
            return None
        self.db.refresh(alert)
        logger.info(f"Announcement {alert.id} to {target_role}s ({severity})")
        if severity == "critical":
            self.push(f"<b>EMERGENCY: {html.escape(title)}</b>\n\n{html.escape(message)}")
        return alert

    def _insert(self, rows: List[Any], kind: str) -> int:
        if not rows:
            return 0
        try:
            self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to insert {len(rows)} {kind} rows: {exc}")
            return 0
        return len(rows)

    def push(self, text: str, extra_chat_ids: Iterable[str] = ()) -> bool:
        if self.webhook is None:
            return False
        try:
            return self.webhook.send(text, extra_chat_ids=extra_chat_ids)
        except Exception as exc:  # webhook must never break a committed transition
            logger.error(f"Webhook send raised: {exc}")
            return False

    # ---- workflow events ----
    def drivers_requested(self, topic: VotingTopic, drivers: Sequence[Profile], weighted_votes: float) -> int:
        count = self.notify_users(
            [d.id for d in drivers],
            title="High Demand Route Available",
            message=(
                f"{weighted_votes:g} weighted votes from {topic.region} requested a bus for "
                f"{topic.title}. Can you take this trip?"
            ),
            type="driver_request",
            metadata={
                "topic_id": topic.id,
                "action_type": "driver_assignment",
                "region": topic.region,
                "requires_response": True,
            },
        )
        self.push(
            format_topic_message("threshold", topic, weighted_votes),
            extra_chat_ids=[d.telegram_chat_id for d in drivers if d.telegram_chat_id],
        )
        logger.info(f"Notified {count} drivers for topic {topic.id}")
        return count

    def coordinators_needed(self, topic: VotingTopic, reason: str) -> int:
        coordinators = list(
            self.db.execute(select(Profile).where(Profile.role == "coordinator")).scalars()
        )
        count = self.notify_users(
            [c.id for c in coordinators],
            title="Driver Assignment Needed",
            message=f"Driver unavailable. Please assign a driver for high-demand route {topic.title} in {topic.region}",
            type="coordinator_alert",
            metadata={
                "topic_id": topic.id,
                "action_type": "driver_assignment_needed",
                "region": topic.region,
                "reason": reason,
                "urgency": "high",
            },
        )
        self.push(
            format_topic_message("escalated", topic),
            extra_chat_ids=[c.telegram_chat_id for c in coordinators if c.telegram_chat_id],
        )
        logger.info(f"Escalated topic {topic.id} to {count} coordinators ({reason})")
        return count

    def driver_assigned(self, topic: VotingTopic, driver: Profile, voter_ids: Sequence[int], accepted: bool) -> int:
        metadata = {"topic_id": topic.id, "action_type": "driver_assigned", "driver_id": driver.id}
        if not accepted:
            self.notify_users(
                [driver.id],
                title="Route Assigned",
                message=f"You have been assigned to the high-demand route {topic.title} in {topic.region}.",
                type="driver_assignment",
                metadata=metadata,
            )
        else:
            coordinators = self.db.execute(
                select(Profile.id).where(Profile.role == "coordinator")
            ).scalars()
            self.notify_users(
                coordinators,
                title="Driver Accepted Route",
                message=f"{driver.name} accepted the route {topic.title} in {topic.region}.",
                type="driver_accepted",
                metadata=metadata,
            )
        count = self.alert_users(
            voter_ids,
            title="Driver Assigned",
            message=f"A driver has been assigned for {topic.title}. Awaiting coordinator approval.",
            severity="success",
            metadata=metadata,
        )
        self.push(format_topic_message("driver_assigned", topic))
        return count

    def topic_approved(self, topic: VotingTopic, voter_ids: Sequence[int], weighted_votes: Optional[float] = None) -> int:
        departure = topic.departure_time or "the scheduled time"
        count = self.alert_users(
            voter_ids,
            title="Bus Request Approved!",
            message=f"Your request for {topic.title} has been approved! The bus will depart at {departure}.",
            severity="success",
            metadata={"topic_id": topic.id, "action_type": "bus_allocated"},
        )
        if topic.driver_id is not None:
            self.notify_users(
                [topic.driver_id],
                title="Trip Approved",
                message=f"The trip for {topic.title} is approved. Departure at {departure}.",
                type="trip_approved",
                metadata={"topic_id": topic.id, "action_type": "trip_approved"},
            )
        self.push(format_topic_message("approved", topic, weighted_votes))
        return count

    def topic_rejected(self, topic: VotingTopic, voter_ids: Sequence[int], weighted_votes: Optional[float] = None) -> int:
        count = self.alert_users(
            voter_ids,
            title="Bus Request Rejected",
            message=f"Your request for {topic.title} has been rejected. Reason: {topic.rejection_reason}",
            severity="error",
            metadata={"topic_id": topic.id, "action_type": "request_rejected"},
        )
        self.push(format_topic_message("rejected", topic, weighted_votes))
        return count


__all__ = ["TelegramWebhook", "Notifier", "format_topic_message"]

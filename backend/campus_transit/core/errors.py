"""
Domain errors raised by the voting workflow and the CRUD routers.

Each error carries the HTTP status it maps to and a short snake_case code;
``main.py`` renders them as ``{"error": code, "detail": message}``.
"""

from __future__ import annotations

from typing import Any, Dict


class TransitError(Exception):
    status_code = 400
    code = "transit_error"

    def __init__(self, message: str = "", **extra: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        payload.update(self.extra)
        return payload


class NotFound(TransitError):
    status_code = 404
    code = "not_found"


class TopicNotFound(NotFound):
    code = "topic_not_found"


class ValidationFailed(TransitError):
    status_code = 400
    code = "validation_failed"


class VotingClosed(TransitError):
    status_code = 409
    code = "voting_closed"


class DuplicateVote(TransitError):
    status_code = 409
    code = "already_voted"


class VoteCooldown(TransitError):
    status_code = 429
    code = "vote_cooldown"

    def __init__(self, minutes_remaining: int) -> None:
        super().__init__(
            f"You can vote again in {minutes_remaining} minutes",
            retry_after_minutes=minutes_remaining,
        )
        self.minutes_remaining = minutes_remaining


class InvalidTransition(TransitError):
    status_code = 409
    code = "invalid_transition"


class StaleTopic(TransitError):
    """Raised when a compare-and-swap on the topic row lost a race."""

    status_code = 409
    code = "stale_topic"


class Forbidden(TransitError):
    status_code = 403
    code = "forbidden"


__all__ = [
    "TransitError",
    "NotFound",
    "TopicNotFound",
    "ValidationFailed",
    "VotingClosed",
    "DuplicateVote",
    "VoteCooldown",
    "InvalidTransition",
    "StaleTopic",
    "Forbidden",
]

"""
Domain events that turn into notifications after the triggering operation
has succeeded.

Request handlers wrap the operation in ``notify_on_success``; the event is
only dispatched when the block exits cleanly, and a failure to dispatch is
logged without affecting the operation's result::

    async with notify_on_success(notifications, NotificationEvent(
        type=EventType.ELECTION_CREATED, election_id=eid, recipients=[creator],
    )):
        await elections.create(data)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum

from pydantic import BaseModel, Field

from tally.notifications import NotificationStore
from tally.schemas import (
    Notification,
    NotificationCategory,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ELECTION_CREATED = "ELECTION_CREATED"
    ELECTION_UPDATED = "ELECTION_UPDATED"
    ELECTION_ACTIVATED = "ELECTION_ACTIVATED"
    ELECTION_COMPLETED = "ELECTION_COMPLETED"
    ELECTION_CANCELLED = "ELECTION_CANCELLED"
    VOTER_REGISTERED = "VOTER_REGISTERED"
    VOTER_VERIFIED = "VOTER_VERIFIED"
    VOTER_ACTIVATED = "VOTER_ACTIVATED"
    VOTER_SUSPENDED = "VOTER_SUSPENDED"
    VOTER_DELETED = "VOTER_DELETED"
    VOTER_UPDATED = "VOTER_UPDATED"
    VOTER_EXPORTED = "VOTER_EXPORTED"
    BALLOT_CREATED = "BALLOT_CREATED"
    BALLOT_UPDATED = "BALLOT_UPDATED"
    BALLOT_PUBLISHED = "BALLOT_PUBLISHED"
    VOTE_CAST = "VOTE_CAST"
    VOTE_VERIFIED = "VOTE_VERIFIED"
    SECURITY_ALERT = "SECURITY_ALERT"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"


DEFAULT_MESSAGES = {
    EventType.ELECTION_CREATED: "New election has been created successfully",
    EventType.ELECTION_UPDATED: "Election has been updated successfully",
    EventType.ELECTION_ACTIVATED: "Election has been activated and is now live",
    EventType.ELECTION_COMPLETED: "Election has been completed successfully",
    EventType.VOTER_REGISTERED: "New voter has been registered",
    EventType.VOTER_VERIFIED: "Voter has been verified successfully",
    EventType.VOTER_ACTIVATED: "Voter has been activated and can now vote",
    EventType.VOTER_SUSPENDED: "Voter has been suspended",
    EventType.VOTER_DELETED: "Voter has been removed",
    EventType.VOTER_EXPORTED: "Voters have been exported for blockchain deployment",
}


class NotificationEvent(BaseModel):
    type: EventType
    recipients: list[str] = Field(default_factory=list)
    message: str | None = None
    election_id: str | None = None
    voter_id: str | None = None
    ballot_id: str | None = None
    user_id: str | None = None
    priority: NotificationPriority | None = None
    category: NotificationCategory | None = None


# ---------------------------------------------------------------------------
# Event -> notification mapping
# ---------------------------------------------------------------------------

_TYPE_BY_PREFIX = [
    ("ELECTION_", NotificationType.ELECTION),
    ("VOTER_", NotificationType.VOTER),
    ("BALLOT_", NotificationType.BALLOT),
    ("VOTE_", NotificationType.BALLOT),
    ("SECURITY_", NotificationType.SECURITY),
    ("SYSTEM_", NotificationType.SYSTEM),
]


def notification_type(event_type: EventType) -> NotificationType:
    for prefix, kind in _TYPE_BY_PREFIX:
        if event_type.value.startswith(prefix):
            return kind
    return NotificationType.SYSTEM


def default_category(event_type: EventType) -> NotificationCategory:
    name = event_type.value
    if any(w in name for w in ("CREATED", "VERIFIED", "ACTIVATED")):
        return NotificationCategory.SUCCESS
    if any(w in name for w in ("UPDATED", "PUBLISHED", "EXPORTED")):
        return NotificationCategory.INFO
    if any(w in name for w in ("SUSPENDED", "CANCELLED", "DELETED")):
        return NotificationCategory.WARNING
    if "ALERT" in name:
        return NotificationCategory.ERROR
    return NotificationCategory.INFO


def default_priority(event_type: EventType) -> NotificationPriority:
    name = event_type.value
    if "SECURITY_" in name or "ALERT" in name:
        return NotificationPriority.HIGH
    if "ACTIVATED" in name or "COMPLETED" in name:
        return NotificationPriority.MEDIUM
    if "CREATED" in name or "UPDATED" in name:
        return NotificationPriority.LOW
    return NotificationPriority.MEDIUM


def notification_title(event_type: EventType) -> str:
    """``ELECTION_CREATED`` -> ``Election created``."""
    entity, _, action = event_type.value.partition("_")
    action = action.split("_")[0].lower() or "updated"
    return f"{entity.capitalize()} {action}"


def action_url(event: NotificationEvent) -> str:
    if event.election_id:
        return f"/app/election/{event.election_id}"
    if event.voter_id:
        return f"/app/voter/{event.voter_id}"
    if event.ballot_id:
        return f"/app/ballot/{event.ballot_id}"
    if event.user_id:
        return "/app/settings"
    return "/app/dashboard"


def action_text(event_type: EventType) -> str:
    name = event_type.value
    if "ELECTION" in name:
        return "View Election"
    if "VOTER" in name:
        return "View Voter"
    if "BALLOT" in name:
        return "View Ballot"
    if "SECURITY" in name:
        return "Review Settings"
    return "View Details"


def build_payload(event: NotificationEvent) -> NotificationPayload:
    message = event.message or DEFAULT_MESSAGES.get(event.type) or notification_title(event.type)
    metadata = {"event_type": event.type.value}
    for key in ("election_id", "voter_id", "ballot_id", "user_id"):
        value = getattr(event, key)
        if value is not None:
            metadata[key] = value

    return NotificationPayload(
        type=notification_type(event.type),
        category=event.category or default_category(event.type),
        priority=event.priority or default_priority(event.type),
        title=notification_title(event.type),
        message=message,
        action_url=action_url(event),
        action_text=action_text(event.type),
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def dispatch(store: NotificationStore, event: NotificationEvent) -> list[Notification]:
    if not event.recipients:
        return []
    return await store.create_bulk(event.recipients, build_payload(event))


@asynccontextmanager
async def notify_on_success(store: NotificationStore, event: NotificationEvent):
    """Dispatch ``event`` after the wrapped block completes without raising."""
    yield event
    try:
        await dispatch(store, event)
    except Exception as e:
        logger.error(f"Sending {event.type.value} notification failed: {e}")

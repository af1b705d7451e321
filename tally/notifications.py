"""
Notification store and dispatcher.

Notifications are owned by their recipient: reads, mark-read and delete are
always scoped to one recipient. Anything may create notifications for anyone.

Delivery
--------
IN_APP notifications are delivered as soon as they are stored. EMAIL, PUSH
and SMS go through DeliveryChannels; a channel failure is logged, counted on
the document and never raised to the creator. A failed document is left
undelivered with ``scheduled_for`` set, so the next process_scheduled run
picks it up again, up to MAX_DELIVERY_ATTEMPTS sends. An UndeliverableError
(no address, no channel) is not retried. Each external send is preceded by
a claim on ``dispatching_at`` so overlapping dispatchers send it once.
Future-dated notifications wait for process_scheduled.
"""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from enum import Enum
from typing import Any, Callable

from tally.channels import DeliveryChannels
from tally.errors import BulkCreateError, NotificationNotFoundError, UndeliverableError
from tally.schemas import (
    DeliveryMethod,
    Election,
    Notification,
    NotificationCategory,
    NotificationFilters,
    NotificationPage,
    NotificationPayload,
    NotificationPriority,
    NotificationStats,
    NotificationType,
    Pagination,
    Voter,
    utcnow,
)
from tally.storage import NOTIFICATIONS, DocumentStore, new_id

logger = logging.getLogger(__name__)

# Deliveries per batch before yielding to the event loop.
DELIVERY_CHUNK_SIZE = 100

# Notifications per process_scheduled run.
SCHEDULED_BATCH_SIZE = 500

# Failed sends before a notification is no longer retried.
MAX_DELIVERY_ATTEMPTS = 5

# A claim older than this belongs to a dispatcher that died mid-send.
CLAIM_TIMEOUT = timedelta(minutes=10)


class SecurityAlert(str, Enum):
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


class NotificationStore:
    def __init__(
        self,
        store: DocumentStore,
        *,
        channels: DeliveryChannels | None = None,
        clock: Callable = utcnow,
        chunk_size: int = DELIVERY_CHUNK_SIZE,
        batch_size: int = SCHEDULED_BATCH_SIZE,
    ):
        self.store = store
        self.channels = channels or DeliveryChannels(store)
        self.clock = clock
        self.chunk_size = max(chunk_size, 1)
        self.batch_size = max(batch_size, 1)

    def _build(self, recipient: str, payload: NotificationPayload) -> Notification:
        now = self.clock()
        return Notification(
            _id=new_id(),
            recipient=recipient,
            **payload.model_dump(),
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _payload(payload: NotificationPayload | dict[str, Any]) -> NotificationPayload:
        if isinstance(payload, NotificationPayload):
            return payload
        return NotificationPayload.model_validate(payload)

    def _is_due(self, notification: Notification) -> bool:
        return notification.scheduled_for is None or notification.scheduled_for <= self.clock()

    # ── Creation ────────────────────────────────────────────────────────────

    async def create(self, recipient: str, payload: NotificationPayload | dict[str, Any]) -> Notification:
        """Store one notification; deliver it now unless it is future-dated."""
        notification = self._build(recipient, self._payload(payload))
        await self.store.insert_one(NOTIFICATIONS, notification.to_document())

        if self._is_due(notification):
            try:
                await self.deliver(notification)
            except Exception as e:
                logger.error(f"Delivering notification {notification.id} failed: {e}")
        return notification

    async def create_bulk(
        self, recipients: list[str], payload: NotificationPayload | dict[str, Any]
    ) -> list[Notification]:
        """Fan one payload out to every recipient with a single batch insert."""
        if not recipients:
            return []

        payload = self._payload(payload)
        notifications = [self._build(r, payload) for r in recipients]
        try:
            await self.store.insert_many(NOTIFICATIONS, [n.to_document() for n in notifications])
        except Exception as e:
            logger.error(f"Bulk notification insert for {len(recipients)} recipients failed: {e}")
            raise BulkCreateError(f"Failed to create bulk notifications: {e}") from e

        due = [n for n in notifications if self._is_due(n)]
        await self._deliver_in_chunks(due)
        return notifications

    async def _deliver_in_chunks(self, notifications: list[Notification]) -> int:
        delivered = 0
        for start in range(0, len(notifications), self.chunk_size):
            for notification in notifications[start:start + self.chunk_size]:
                try:
                    if await self.deliver(notification):
                        delivered += 1
                except Exception as e:
                    logger.error(f"Delivering notification {notification.id} failed: {e}")
            await asyncio.sleep(0)
        return delivered

    # ── Delivery ────────────────────────────────────────────────────────────

    def _unclaimed(self, now) -> dict[str, Any]:
        return {"$or": [
            {"dispatching_at": None},
            {"dispatching_at": {"$lt": now - CLAIM_TIMEOUT}},
        ]}

    async def _claim(self, notification: Notification) -> bool:
        """Take the notification for one external send; False if someone else has it."""
        now = self.clock()
        claimed = await self.store.update_one(
            NOTIFICATIONS,
            {"_id": notification.id, "delivered": False, **self._unclaimed(now)},
            {"$set": {"dispatching_at": now}},
        )
        if not claimed:
            logger.debug(f"Notification {notification.id} is delivered or being dispatched elsewhere")
            return False
        notification.dispatching_at = now
        return True

    async def deliver(self, notification: Notification) -> bool:
        """
        Dispatch by delivery method. Returns True once marked delivered.

        External sends are claimed first, so a notification reached by two
        dispatchers at once goes out once. Losing the claim returns False.
        """
        if notification.delivery_method != DeliveryMethod.IN_APP:
            if not await self._claim(notification):
                return False
            try:
                await self.channels.send(notification)
            except Exception as e:
                await self._record_failure(notification, e)
                return False

        now = self.clock()
        marked = await self.store.update_one(
            NOTIFICATIONS,
            {"_id": notification.id, "delivered": False},
            {
                "$set": {"delivered": True, "delivered_at": now, "updated_at": now},
                "$unset": {"last_delivery_error": "", "dispatching_at": ""},
                "$inc": {"delivery_attempts": 1},
            },
        )
        if not marked:
            return False
        notification.delivered = True
        notification.delivered_at = now
        notification.delivery_attempts += 1
        notification.last_delivery_error = None
        notification.dispatching_at = None
        return True

    async def _record_failure(self, notification: Notification, error: Exception) -> None:
        now = self.clock()
        message = str(error)
        logger.error(
            f"{notification.delivery_method} delivery of notification {notification.id} failed: {message}"
        )
        update: dict[str, Any] = {"last_delivery_error": message, "updated_at": now}
        if notification.scheduled_for is None:
            update["scheduled_for"] = now
            notification.scheduled_for = now

        attempts = notification.delivery_attempts + 1
        if isinstance(error, UndeliverableError):
            logger.warning(f"Notification {notification.id} cannot be delivered; not retrying")
            # Parked at the cap; process_scheduled skips it from now on.
            attempts = max(attempts, MAX_DELIVERY_ATTEMPTS)
        elif attempts >= MAX_DELIVERY_ATTEMPTS:
            logger.warning(f"Giving up on notification {notification.id} after {attempts} attempts")

        update["delivery_attempts"] = attempts
        await self.store.update_one(
            NOTIFICATIONS,
            {"_id": notification.id},
            {"$set": update, "$unset": {"dispatching_at": ""}},
        )
        notification.delivery_attempts = attempts
        notification.last_delivery_error = message
        notification.dispatching_at = None

    async def process_scheduled(self) -> int:
        """
        Deliver the next batch that is due and still undelivered.

        Notifications that used up their attempts, or are claimed by a live
        dispatcher, are left alone. Returns how many were attempted.
        """
        now = self.clock()
        docs = await self.store.find(
            NOTIFICATIONS,
            {
                "scheduled_for": {"$lte": now},
                "delivered": False,
                "delivery_attempts": {"$lt": MAX_DELIVERY_ATTEMPTS},
                **self._unclaimed(now),
            },
            sort=[("scheduled_for", 1)],
            limit=self.batch_size,
        )
        pending = [Notification.from_document(d) for d in docs]
        delivered = await self._deliver_in_chunks(pending)
        if pending:
            logger.info(f"Processed {len(pending)} scheduled notifications ({delivered} delivered)")
        return len(pending)

    # ── Recipient views ─────────────────────────────────────────────────────

    def _unexpired(self) -> dict[str, Any]:
        return {"$or": [{"expires_at": None}, {"expires_at": {"$gt": self.clock()}}]}

    async def get_unread_count(self, recipient: str) -> int:
        return await self.store.count(
            NOTIFICATIONS, {"recipient": recipient, "read": False, **self._unexpired()}
        )

    async def list(self, recipient: str, filters: NotificationFilters | None = None) -> NotificationPage:
        filters = filters or NotificationFilters()
        query: dict[str, Any] = {"recipient": recipient, **self._unexpired()}
        if filters.read is not None:
            query["read"] = filters.read
        if filters.type:
            query["type"] = filters.type.value
        if filters.category:
            query["category"] = filters.category.value
        if filters.priority:
            query["priority"] = filters.priority.value

        docs = await self.store.find(
            NOTIFICATIONS,
            query,
            sort=[("created_at", -1)],
            skip=(filters.page - 1) * filters.limit,
            limit=filters.limit,
        )
        total = await self.store.count(NOTIFICATIONS, query)
        return NotificationPage(
            notifications=[Notification.from_document(d) for d in docs],
            pagination=Pagination(
                page=filters.page,
                limit=filters.limit,
                total=total,
                pages=math.ceil(total / filters.limit),
            ),
        )

    async def get_stats(self, recipient: str) -> NotificationStats:
        async def breakdown(field: str) -> dict[str, int]:
            groups = await self.store.aggregate(NOTIFICATIONS, [
                {"$match": {"recipient": recipient}},
                {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            ])
            return {g["_id"]: g["count"] for g in groups if g["_id"] is not None}

        return NotificationStats(
            total=await self.store.count(NOTIFICATIONS, {"recipient": recipient}),
            unread=await self.get_unread_count(recipient),
            by_type=await breakdown("type"),
            by_category=await breakdown("category"),
            by_priority=await breakdown("priority"),
        )

    async def mark_read(self, recipient: str, notification_ids: list[str] | None = None) -> int:
        """Mark the recipient's notifications read; all of them when no ids are given."""
        query: dict[str, Any] = {"recipient": recipient, "read": False}
        if notification_ids:
            query["_id"] = {"$in": list(notification_ids)}
        now = self.clock()
        return await self.store.update_many(
            NOTIFICATIONS, query, {"$set": {"read": True, "read_at": now, "updated_at": now}}
        )

    async def delete(self, recipient: str, notification_id: str) -> None:
        deleted = await self.store.delete_one(
            NOTIFICATIONS, {"_id": notification_id, "recipient": recipient}
        )
        if not deleted:
            raise NotificationNotFoundError("Notification not found or access denied")

    # ── Maintenance ─────────────────────────────────────────────────────────

    async def cleanup_expired(self) -> int:
        """Hard-delete every notification past its expiry, read or not."""
        deleted = await self.store.delete_many(
            NOTIFICATIONS, {"expires_at": {"$lt": self.clock()}}
        )
        if deleted:
            logger.info(f"Deleted {deleted} expired notifications")
        return deleted

    # ── Common notices ──────────────────────────────────────────────────────

    async def create_security_notification(
        self, recipient: str, kind: SecurityAlert | str, message: str
    ) -> Notification:
        kind = SecurityAlert(kind)
        return await self.create(recipient, NotificationPayload(
            type=NotificationType.SECURITY,
            category=NotificationCategory.WARNING,
            priority=NotificationPriority.HIGH,
            title=f"Security Alert: {kind.value.replace('_', ' ')}",
            message=message,
            action_url="/app/settings",
            action_text="Review Settings",
            metadata={"alert": kind.value},
        ))

    async def create_election_notification(
        self, election: Election, action: str, recipients: list[str]
    ) -> list[Notification]:
        """Tell ``recipients`` that an election was created/updated/completed/..."""
        verb = action.lower()
        return await self.create_bulk(recipients, NotificationPayload(
            type=NotificationType.ELECTION,
            category=NotificationCategory.INFO,
            title=f"Election {verb}",
            message=f'Election "{election.title}" has been {verb}',
            action_url=f"/app/election/{election.id}",
            action_text="View Election",
            metadata={"election_id": election.id, "action": action.upper()},
        ))

    async def create_voter_notification(
        self, voter: Voter, action: str, recipients: list[str]
    ) -> list[Notification]:
        verb = action.lower()
        return await self.create_bulk(recipients, NotificationPayload(
            type=NotificationType.VOTER,
            category=NotificationCategory.SUCCESS,
            title=f"Voter {verb}",
            message=f"Voter {voter.name or voter.unique_id} has been {verb}",
            action_url=f"/app/voter/{voter.id}",
            action_text="View Voter",
            metadata={"voter_id": voter.id, "action": action.upper()},
        ))

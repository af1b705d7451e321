"""
External delivery channels for notifications that are not IN_APP.

    EMAIL  recipient address looked up in voters, then users; sent via aiosmtplib
    PUSH   JSON POST to PUSH_WEBHOOK_URL (log-only when unset)
    SMS    log-only; no gateway is wired up

Any failure is raised as ChannelError, or UndeliverableError when no retry
can succeed. The notification store decides what to do with it.
"""
import logging

import httpx

from tally import config
from tally.email_util import send_notification_email
from tally.errors import ChannelError, UndeliverableError
from tally.schemas import DeliveryMethod, Notification
from tally.storage import USERS, VOTERS, DocumentStore

logger = logging.getLogger(__name__)


class DeliveryChannels:
    def __init__(
        self,
        store: DocumentStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        push_url: str | None = None,
        email_sender=send_notification_email,
    ):
        self.store = store
        self.http_client = http_client
        self.push_url = config.PUSH_WEBHOOK_URL if push_url is None else push_url
        self.email_sender = email_sender

    async def send(self, notification: Notification) -> None:
        method = notification.delivery_method
        if method == DeliveryMethod.EMAIL:
            await self.send_email(notification)
        elif method == DeliveryMethod.PUSH:
            await self.send_push(notification)
        elif method == DeliveryMethod.SMS:
            await self.send_sms(notification)
        else:
            raise UndeliverableError(f"No external channel for delivery method {method}")

    async def resolve_email(self, recipient: str) -> str | None:
        for collection in (VOTERS, USERS):
            doc = await self.store.find_one(collection, {"_id": recipient}, projection={"email": 1})
            if doc and doc.get("email"):
                return doc["email"]
        return None

    async def send_email(self, notification: Notification) -> None:
        address = await self.resolve_email(notification.recipient)
        if not address:
            raise UndeliverableError(f"No email address for recipient {notification.recipient}")
        try:
            await self.email_sender(
                address,
                notification.title,
                notification.message,
                action_url=notification.action_url,
                action_text=notification.action_text,
            )
        except Exception as e:
            raise ChannelError(f"Email delivery failed: {e}") from e

    async def send_push(self, notification: Notification) -> None:
        if not self.push_url:
            logger.info(f"Push (log-only) to {notification.recipient}: {notification.title}")
            return

        body = {
            "recipient": notification.recipient,
            "title": notification.title,
            "message": notification.message,
            "action_url": notification.action_url,
            "priority": notification.priority,
            "notification_id": notification.id,
        }
        client = self.http_client or httpx.AsyncClient(timeout=10.0)
        try:
            resp = await client.post(self.push_url, json=body)
        except httpx.HTTPError as e:
            raise ChannelError(f"Push gateway unreachable: {e}") from e
        finally:
            if client is not self.http_client:
                await client.aclose()

        if resp.status_code >= 400:
            raise ChannelError(f"Push gateway returned {resp.status_code}")

    async def send_sms(self, notification: Notification) -> None:
        logger.info(f"SMS (log-only) to {notification.recipient}: {notification.title}")

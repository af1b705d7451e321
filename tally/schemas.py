"""
Pydantic schemas: stored documents, service inputs and HTTP payloads.

Organised by bounded context:
    1. Voter          voter records, creation, bulk import, statistics
    2. Election       the subset the background jobs read and write
    3. Notification   documents, payloads, list filters, statistics
    4. HTTP           voter login, mark-read, health, errors

Stored documents are keyed by ``_id``; the models expose it as ``id``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time; the default clock everywhere."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Document(BaseModel):
    """Base for anything persisted through a DocumentStore."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str = Field(alias="_id")

    @classmethod
    def from_document(cls, doc: dict[str, Any]):
        return cls.model_validate(doc)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")


# ══════════════════════════════════════════════════════════════════════════════
# 1. VOTER
# ══════════════════════════════════════════════════════════════════════════════

class VoterStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class EmailDeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class VoterCreate(BaseModel):
    election_id: str
    email: EmailStr
    unique_id: str = Field(min_length=1, max_length=100)
    name: str | None = Field(default=None, max_length=200)
    vote_weight: int = Field(default=1, ge=1, le=1000)
    status: VoterStatus = VoterStatus.PENDING
    verification_token: str | None = None
    verification_expires: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("unique_id", "name", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class Voter(Document):
    election_id: str
    email: str
    unique_id: str
    name: str | None = None
    status: VoterStatus = VoterStatus.PENDING
    stored_key: str
    key_hash: str | None = None
    blockchain_address: str | None = None
    vote_weight: int = 1
    has_voted: bool = False
    email_delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    email_sent_at: datetime | None = None
    last_email_error: str | None = None
    invite_count: int = 0
    last_invite_at: datetime | None = None
    verification_token: str | None = None
    verification_expires: datetime | None = None
    registered_at: datetime | None = None
    verified_at: datetime | None = None
    last_activity: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def public(self) -> VoterOut:
        """The voter without key material or verification token."""
        return VoterOut.model_validate(
            self.model_dump(exclude={"stored_key", "verification_token"})
        )


class VoterOut(BaseModel):
    id: str
    election_id: str
    email: str
    unique_id: str
    name: str | None = None
    status: VoterStatus
    vote_weight: int
    has_voted: bool
    email_delivery_status: EmailDeliveryStatus
    email_sent_at: datetime | None = None
    invite_count: int = 0
    registered_at: datetime | None = None
    verified_at: datetime | None = None
    last_activity: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class BulkImportRow(BaseModel):
    name: str | None = None
    email: str | None = None
    unique_id: str | None = None
    vote_weight: int = 1
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkImportError(BaseModel):
    index: int
    error: str


class BulkImportResult(BaseModel):
    success: int = 0
    failed: int = 0
    errors: list[BulkImportError] = Field(default_factory=list)
    # unique_id -> plaintext key for the rows that were created; hand these
    # to the invitation step, they are not recoverable later except by
    # decrypting the stored key.
    keys: dict[str, str] = Field(default_factory=dict)


class VoterStats(BaseModel):
    total: int
    verified: int
    by_status: dict[str, int]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# ══════════════════════════════════════════════════════════════════════════════
# 2. ELECTION
# ══════════════════════════════════════════════════════════════════════════════

class ElectionStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ElectionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    creator: str | None = None
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    status: ElectionStatus = ElectionStatus.DRAFT

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v):
        return as_utc(v)


class Election(Document):
    title: str
    description: str = ""
    creator: str | None = None
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    status: ElectionStatus = ElectionStatus.DRAFT
    created_at: datetime | None = None
    updated_at: datetime | None = None
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ══════════════════════════════════════════════════════════════════════════════
# 3. NOTIFICATION
# ══════════════════════════════════════════════════════════════════════════════

class NotificationType(str, Enum):
    SYSTEM = "SYSTEM"
    ELECTION = "ELECTION"
    VOTER = "VOTER"
    BALLOT = "BALLOT"
    SECURITY = "SECURITY"
    REMINDER = "REMINDER"


class NotificationCategory(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    DESTRUCTIVE = "DESTRUCTIVE"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class DeliveryMethod(str, Enum):
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    PUSH = "PUSH"
    SMS = "SMS"


class NotificationPayload(BaseModel):
    """Everything about a notification except who receives it."""

    type: NotificationType
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    title: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=1000)
    action_url: str | None = Field(default=None, max_length=500)
    action_text: str | None = Field(default=None, max_length=50)
    metadata: dict[str, Any] = Field(default_factory=dict)
    sender: str | None = None
    delivery_method: DeliveryMethod = DeliveryMethod.IN_APP
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def assume_utc(cls, v):
        return as_utc(v)


class Notification(Document):
    recipient: str
    sender: str | None = None
    type: NotificationType
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    title: str
    message: str
    description: str | None = None
    action_url: str | None = None
    action_text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None
    delivered: bool = False
    delivered_at: datetime | None = None
    delivery_method: DeliveryMethod = DeliveryMethod.IN_APP
    delivery_attempts: int = 0
    last_delivery_error: str | None = None
    dispatching_at: datetime | None = None
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NotificationFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    read: bool | None = None
    type: NotificationType | None = None
    category: NotificationCategory | None = None
    priority: NotificationPriority | None = None


class NotificationPage(BaseModel):
    notifications: list[Notification]
    pagination: Pagination


class NotificationStats(BaseModel):
    total: int
    unread: int
    by_type: dict[str, int]
    by_category: dict[str, int]
    by_priority: dict[str, int]


# ══════════════════════════════════════════════════════════════════════════════
# 4. HTTP
# ══════════════════════════════════════════════════════════════════════════════

class VoterLoginRequest(BaseModel):
    voter_id: str = Field(min_length=1)
    access_key: str = Field(min_length=1)


class VoterLoginResponse(BaseModel):
    token: str
    voter: VoterOut


class MarkReadRequest(BaseModel):
    notification_ids: list[str] | None = None


class MessageResponse(BaseModel):
    message: str


class UnreadCountResponse(BaseModel):
    unread: int


class HealthResponse(BaseModel):
    status: str
    service: str
    scheduler_running: bool | None = None


class ErrorResponse(BaseModel):
    error: str

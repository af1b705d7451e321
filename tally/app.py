"""
Tally Service: voter login and the voter's notification inbox.

Runs the background scheduler alongside the HTTP API:
    - Voter login with unique id + access key, HS256 voter tokens
    - Notification inbox for the signed-in voter (list, stats, mark read, delete)
    - Election activation, reminders and notification upkeep in the background

Services live on ``app.state`` so a test can install its own store.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from jose import JWTError, jwt

from tally import config
from tally.database import Database
from tally.elections import ElectionStore
from tally.errors import (
    AuthError,
    ConfigurationError,
    NotificationNotFoundError,
    VoterNotFoundError,
)
from tally.notifications import NotificationStore
from tally.scheduler import get_scheduler, reset_scheduler
from tally.schemas import (
    HealthResponse,
    MarkReadRequest,
    MessageResponse,
    NotificationCategory,
    NotificationFilters,
    NotificationPage,
    NotificationPriority,
    NotificationStats,
    NotificationType,
    UnreadCountResponse,
    Voter,
    VoterLoginRequest,
    VoterLoginResponse,
    VoterOut,
    VoterStatus,
    utcnow,
)
from tally.storage import DocumentStore, ensure_indexes
from tally.storage.postgres import PostgresStore
from tally.voters import VoterStore

logger = logging.getLogger(__name__)


def attach_services(application: FastAPI, store: DocumentStore, *, clock=utcnow, channels=None) -> None:
    """Build the stores over ``store`` and expose them on ``application.state``."""
    application.state.store = store
    application.state.voters = VoterStore(store, clock=clock)
    application.state.elections = ElectionStore(store, clock=clock)
    application.state.notifications = NotificationStore(store, channels=channels, clock=clock)


@asynccontextmanager
async def lifespan(application: FastAPI):
    # Refuse to start without the voter-key secret.
    config.require_voter_key_secret()

    await Database.get_pool()
    store = PostgresStore(Database)
    await ensure_indexes(store)
    attach_services(application, store)

    scheduler = get_scheduler(
        application.state.notifications, application.state.elections, application.state.voters
    )
    application.state.scheduler = scheduler
    scheduler.start()

    yield

    await scheduler.stop()
    reset_scheduler()
    await Database.close()


app = FastAPI(
    title="Tally Service",
    description="Voter credentials, notifications and election background jobs",
    lifespan=lifespan,
)


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_voter_store(request: Request) -> VoterStore:
    return request.app.state.voters


def get_notification_store(request: Request) -> NotificationStore:
    return request.app.state.notifications


def create_voter_token(voter: Voter) -> str:
    return jwt.encode(
        {
            "sub": voter.id,
            "voter_id": voter.unique_id,
            "election_id": voter.election_id,
            "scope": "voter",
            "exp": datetime.now(timezone.utc) + timedelta(days=config.VOTER_JWT_EXPIRE_DAYS),
        },
        config.VOTER_JWT_SECRET,
        algorithm=config.VOTER_JWT_ALGORITHM,
    )


async def current_voter(
    authorization: str | None = Header(default=None),
    voters: VoterStore = Depends(get_voter_store),
) -> Voter:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(
            authorization[7:], config.VOTER_JWT_SECRET, algorithms=[config.VOTER_JWT_ALGORITHM]
        )
    except JWTError as e:
        msg = "Token expired" if "expired" in str(e).lower() else "Unauthorized"
        raise HTTPException(status_code=401, detail=msg)

    if not payload.get("sub") or payload.get("scope") != "voter":
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        voter = await voters.get(payload["sub"])
    except VoterNotFoundError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if voter.status == VoterStatus.SUSPENDED:
        raise HTTPException(status_code=403, detail="Voter is suspended")
    return voter


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "healthy",
        "service": "tally",
        "scheduler_running": scheduler.running if scheduler else None,
    }


@app.post("/voter/login", response_model=VoterLoginResponse)
async def voter_login(data: VoterLoginRequest, voters: VoterStore = Depends(get_voter_store)):
    try:
        voter = await voters.verify_credential(data.voter_id, data.access_key)
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    except ConfigurationError as e:
        logger.error(f"Voter login unavailable: {e}")
        raise HTTPException(status_code=500, detail="Failed to login")
    return {"token": create_voter_token(voter), "voter": voter.public()}


@app.get("/voter/me", response_model=VoterOut)
async def voter_me(voter: Voter = Depends(current_voter)):
    return voter.public()


@app.get("/notifications", response_model=NotificationPage)
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    read: bool | None = None,
    type: NotificationType | None = None,
    category: NotificationCategory | None = None,
    priority: NotificationPriority | None = None,
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    filters = NotificationFilters(
        page=page, limit=limit, read=read, type=type, category=category, priority=priority
    )
    return await notifications.list(voter.id, filters)


@app.get("/notifications/stats", response_model=NotificationStats)
async def notification_stats(
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    return await notifications.get_stats(voter.id)


@app.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    return {"unread": await notifications.get_unread_count(voter.id)}


@app.post("/notifications/mark-read", response_model=MessageResponse)
async def mark_read(
    data: MarkReadRequest,
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    if not data.notification_ids:
        raise HTTPException(status_code=400, detail="notification_ids must be a non-empty list")
    await notifications.mark_read(voter.id, data.notification_ids)
    return {"message": "Notifications marked as read"}


@app.post("/notifications/mark-all-read", response_model=MessageResponse)
async def mark_all_read(
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    await notifications.mark_read(voter.id)
    return {"message": "All notifications marked as read"}


@app.delete("/notifications/{notification_id}", response_model=MessageResponse)
async def delete_notification(
    notification_id: str,
    voter: Voter = Depends(current_voter),
    notifications: NotificationStore = Depends(get_notification_store),
):
    try:
        await notifications.delete(voter.id, notification_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification deleted successfully"}

"""
Shared test fixtures.

- The voter-key secret in the environment (set before application imports)
- An in-memory document store with every index created
- A controllable clock shared by all stores
- A recording stand-in for the external delivery channels
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("VOTER_KEY_ENCRYPTION_KEY", "test-voter-key-secret")

from tally.elections import ElectionStore  # noqa: E402
from tally.errors import ChannelError  # noqa: E402
from tally.notifications import NotificationStore  # noqa: E402
from tally.scheduler import BackgroundScheduler  # noqa: E402
from tally.schemas import (  # noqa: E402
    ElectionCreate,
    ElectionStatus,
    NotificationCategory,
    NotificationPayload,
    NotificationType,
    VoterCreate,
    VoterStatus,
)
from tally.storage import ensure_indexes  # noqa: E402
from tally.storage.memory import MemoryStore  # noqa: E402
from tally.voters import VoterStore  # noqa: E402

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannels:
    """Records external deliveries; set ``fail`` to make every send raise."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, notification) -> None:
        if self.fail:
            raise ChannelError("gateway unavailable")
        self.sent.append(notification)


class RecordingMailer:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def __call__(self, *args, **kwargs):
        if self.fail:
            raise RuntimeError("SMTP down")
        self.calls.append((args, kwargs))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
async def store() -> MemoryStore:
    s = MemoryStore()
    await ensure_indexes(s)
    return s


@pytest.fixture()
def channels() -> RecordingChannels:
    return RecordingChannels()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def voters(store, clock, mailer) -> VoterStore:
    return VoterStore(store, clock=clock, email_sender=mailer)


@pytest.fixture()
def elections(store, clock) -> ElectionStore:
    return ElectionStore(store, clock=clock)


@pytest.fixture()
def notifications(store, clock, channels) -> NotificationStore:
    return NotificationStore(store, channels=channels, clock=clock)


@pytest.fixture()
def scheduler(notifications, elections, voters, clock) -> BackgroundScheduler:
    return BackgroundScheduler(notifications, elections, voters, clock=clock)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

async def _make_voter(
    voters: VoterStore,
    election_id: str = "election-1",
    unique_id: str = "V100",
    key: str = "AB23CD89XY",
    status: VoterStatus = VoterStatus.ACTIVE,
    **fields,
):
    data = VoterCreate(
        election_id=election_id,
        email=fields.pop("email", f"{unique_id.lower()}@example.com"),
        unique_id=unique_id,
        name=fields.pop("name", f"Voter {unique_id}"),
        status=status,
        **fields,
    )
    return await voters.create(data, key)


async def _make_election(
    elections: ElectionStore,
    start_time: datetime,
    end_time: datetime | None = None,
    status: ElectionStatus = ElectionStatus.SCHEDULED,
    title: str = "Board Election",
):
    return await elections.create(ElectionCreate(
        title=title,
        start_time=start_time,
        end_time=end_time or start_time + timedelta(days=2),
        status=status,
    ))


def _payload(**overrides) -> NotificationPayload:
    fields = {
        "type": NotificationType.SYSTEM,
        "category": NotificationCategory.INFO,
        "title": "Heads up",
        "message": "Something happened",
    }
    fields.update(overrides)
    return NotificationPayload(**fields)


@pytest.fixture()
def make_voter(voters):
    async def factory(**kwargs):
        return await _make_voter(voters, **kwargs)
    return factory


@pytest.fixture()
def make_election(elections):
    async def factory(start_time, **kwargs):
        return await _make_election(elections, start_time, **kwargs)
    return factory


@pytest.fixture()
def make_payload():
    return _payload

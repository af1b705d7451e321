"""
Election queries and the one status transition the background jobs own.

Only the election fields the scheduler needs live here; ballot and
candidate management are handled elsewhere.
"""
import logging
from datetime import datetime
from typing import Callable

from tally.errors import ElectionNotFoundError
from tally.schemas import Election, ElectionCreate, ElectionStatus, utcnow
from tally.storage import ELECTIONS, DocumentStore, new_id

logger = logging.getLogger(__name__)


class ElectionStore:
    def __init__(self, store: DocumentStore, *, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    async def create(self, data: ElectionCreate) -> Election:
        now = self.clock()
        election = Election(_id=new_id(), **data.model_dump(), created_at=now, updated_at=now)
        if election.status == ElectionStatus.SCHEDULED:
            election.scheduled_at = now
        await self.store.insert_one(ELECTIONS, election.to_document())
        logger.info(f"Election {election.id} created ({election.status})")
        return election

    async def get(self, election_id: str) -> Election:
        doc = await self.store.find_one(ELECTIONS, {"_id": election_id})
        if doc is None:
            raise ElectionNotFoundError(f"Election {election_id} not found")
        return Election.from_document(doc)

    async def schedule(self, election_id: str) -> Election:
        """DRAFT -> SCHEDULED."""
        now = self.clock()
        matched = await self.store.update_one(
            ELECTIONS,
            {"_id": election_id, "status": ElectionStatus.DRAFT.value},
            {"$set": {"status": ElectionStatus.SCHEDULED.value, "scheduled_at": now, "updated_at": now}},
        )
        election = await self.get(election_id)
        if not matched and election.status != ElectionStatus.SCHEDULED:
            raise ValueError(f"Election {election_id} cannot be scheduled from {election.status}")
        return election

    async def _find(self, query: dict, sort_field: str) -> list[Election]:
        docs = await self.store.find(ELECTIONS, query, sort=[(sort_field, 1)])
        return [Election.from_document(d) for d in docs]

    async def due_for_activation(self, now: datetime) -> list[Election]:
        return await self._find(
            {"status": ElectionStatus.SCHEDULED.value, "start_time": {"$lte": now}}, "start_time"
        )

    async def starting_between(self, start: datetime, end: datetime) -> list[Election]:
        return await self._find(
            {"status": ElectionStatus.SCHEDULED.value, "start_time": {"$gte": start, "$lte": end}},
            "start_time",
        )

    async def ending_between(self, start: datetime, end: datetime) -> list[Election]:
        return await self._find(
            {"status": ElectionStatus.ACTIVE.value, "end_time": {"$gte": start, "$lte": end}},
            "end_time",
        )

    async def activate(self, election_id: str, now: datetime) -> bool:
        """SCHEDULED -> ACTIVE. False if the election was no longer SCHEDULED."""
        matched = await self.store.update_one(
            ELECTIONS,
            {"_id": election_id, "status": ElectionStatus.SCHEDULED.value},
            {"$set": {"status": ElectionStatus.ACTIVE.value, "started_at": now, "updated_at": now}},
        )
        return bool(matched)

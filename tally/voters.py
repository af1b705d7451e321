"""
Voter record store: voter lifecycle and credentials on top of a DocumentStore.

A voter's access key exists in three forms: the plaintext handed out once,
``stored_key`` (encrypted at rest) and ``key_hash`` (the only form compared
at login). ``create`` always writes the hash and the encrypted key together.

Uniqueness of (election_id, email) and (election_id, unique_id) is enforced
by the store's unique indexes; nothing here checks before inserting.
"""
from __future__ import annotations

import hmac
import logging
import math
import re
from datetime import timedelta
from typing import Any, Callable

from pydantic import ValidationError

from tally import config
from tally.email_util import send_voter_key_email
from tally.errors import (
    AuthError,
    DecryptionError,
    DuplicateKeyError,
    DuplicateVoterError,
    InvalidStatusError,
    VoterNotFoundError,
)
from tally.schemas import (
    BulkImportError,
    BulkImportResult,
    BulkImportRow,
    EmailDeliveryStatus,
    Pagination,
    Voter,
    VoterCreate,
    VoterStats,
    VoterStatus,
    utcnow,
)
from tally.security import (
    decrypt_voter_key,
    encrypt_voter_key,
    generate_verification_token,
    generate_voter_key,
    hash_voter_key,
)
from tally.storage import VOTERS, DocumentStore, new_id

logger = logging.getLogger(__name__)

# Voters that can log in and receive election notifications.
ELIGIBLE_STATUSES = [VoterStatus.VERIFIED.value, VoterStatus.ACTIVE.value]

# Upper bound on voters sharing a unique_id across elections.
_MAX_LOGIN_CANDIDATES = 50


class VoterStore:
    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable = utcnow,
        secret_provider: Callable[[], str] = config.require_voter_key_secret,
        email_sender=send_voter_key_email,
    ):
        self.store = store
        self.clock = clock
        self.secret_provider = secret_provider
        self.email_sender = email_sender

    # ── Creation ────────────────────────────────────────────────────────────

    async def create(self, voter: VoterCreate, plaintext_key: str) -> Voter:
        """Persist a voter with its key hash and encrypted key in one insert."""
        secret = self.secret_provider()
        now = self.clock()
        record = Voter(
            _id=new_id(),
            **voter.model_dump(),
            stored_key=encrypt_voter_key(plaintext_key, secret),
            key_hash=hash_voter_key(plaintext_key),
            registered_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.insert_one(VOTERS, record.to_document())
        except DuplicateKeyError as e:
            raise DuplicateVoterError(
                "Voter with this email or unique ID already exists", index=e.index
            ) from e

        logger.info(f"Voter {record.id} created for election {record.election_id}")
        return record

    async def add_voter(self, election_id: str, data: dict[str, Any]) -> tuple[Voter, str]:
        """Mint a key and verification token, then create the voter.

        Returns the voter and the plaintext key; the key is not retrievable
        in plaintext afterwards except through reveal_key.
        """
        plaintext_key = generate_voter_key()
        voter = VoterCreate(
            **{**data, "election_id": election_id},
            verification_token=generate_verification_token(),
            verification_expires=self.clock() + timedelta(hours=config.VERIFICATION_TOKEN_HOURS),
        )
        created = await self.create(voter, plaintext_key)
        return created, plaintext_key

    async def bulk_import(self, election_id: str, rows: list) -> BulkImportResult:
        result = BulkImportResult()

        for index, raw in enumerate(rows):
            try:
                row = raw if isinstance(raw, BulkImportRow) else BulkImportRow.model_validate(raw)
            except ValidationError as e:
                result.failed += 1
                result.errors.append(BulkImportError(index=index, error=str(e)))
                continue

            if not (row.name and row.email and row.unique_id):
                result.failed += 1
                result.errors.append(BulkImportError(
                    index=index, error="Missing required fields: name, email, or unique_id"
                ))
                continue

            try:
                voter, plaintext_key = await self.add_voter(election_id, row.model_dump())
            except DuplicateVoterError:
                result.failed += 1
                result.errors.append(BulkImportError(index=index, error="Voter already exists"))
                continue
            except ValidationError as e:
                result.failed += 1
                result.errors.append(BulkImportError(index=index, error=str(e)))
                continue

            result.success += 1
            result.keys[voter.unique_id] = plaintext_key

        logger.info(
            f"Bulk import for election {election_id}: {result.success} created, {result.failed} failed"
        )
        return result

    # ── Login ───────────────────────────────────────────────────────────────

    async def verify_credential(self, unique_id: str, presented_key: str) -> Voter:
        """Authenticate a voter by unique id and access key.

        The id matches case-insensitively; the key matches regardless of case
        and spacing. Every failure raises the same AuthError.
        """
        uid = (unique_id or "").strip()
        if not uid or not (presented_key or "").strip():
            raise AuthError()

        candidates = await self.store.find(
            VOTERS,
            {"unique_id": {"$regex": f"^{re.escape(uid)}$", "$options": "i"}},
            sort=[("created_at", 1)],
            limit=_MAX_LOGIN_CANDIDATES,
        )
        presented_hash = hash_voter_key(presented_key)

        for doc in candidates:
            voter = Voter.from_document(doc)
            if voter.key_hash:
                if hmac.compare_digest(voter.key_hash, presented_hash):
                    return await self._touch(voter)
            elif await self._self_heal(voter, presented_hash):
                return await self._touch(voter)

        raise AuthError()

    async def _self_heal(self, voter: Voter, presented_hash: str) -> bool:
        """Derive a missing key hash from the stored key; persist it on a match."""
        try:
            recovered = decrypt_voter_key(voter.stored_key, self.secret_provider())
        except DecryptionError as e:
            logger.warning(f"Voter {voter.id} has an undecryptable stored key: {e}")
            return False

        recovered_hash = hash_voter_key(recovered)
        if not hmac.compare_digest(recovered_hash, presented_hash):
            return False

        await self.store.update_one(
            VOTERS,
            {"_id": voter.id, "key_hash": None},
            {"$set": {"key_hash": recovered_hash, "updated_at": self.clock()}},
        )
        voter.key_hash = recovered_hash
        logger.info(f"Backfilled key hash for voter {voter.id}")
        return True

    async def _touch(self, voter: Voter) -> Voter:
        now = self.clock()
        await self.store.update_one(VOTERS, {"_id": voter.id}, {"$set": {"last_activity": now}})
        voter.last_activity = now
        return voter

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, voter_id: str) -> Voter:
        doc = await self.store.find_one(VOTERS, {"_id": voter_id})
        if doc is None:
            raise VoterNotFoundError(f"Voter {voter_id} not found")
        return Voter.from_document(doc)

    async def list(
        self,
        election_id: str,
        *,
        status: VoterStatus | str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Voter], Pagination]:
        query: dict[str, Any] = {"election_id": election_id}
        if status:
            query["status"] = self._status(status).value
        if search:
            pattern = re.escape(search.strip())
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("name", "email", "unique_id")
            ]

        page, limit = max(page, 1), max(limit, 1)
        docs = await self.store.find(
            VOTERS, query, sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit
        )
        total = await self.store.count(VOTERS, query)
        pagination = Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))
        return [Voter.from_document(d) for d in docs], pagination

    async def stats(self, election_id: str) -> VoterStats:
        groups = await self.store.aggregate(VOTERS, [
            {"$match": {"election_id": election_id}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
        counts = {g["_id"]: g["count"] for g in groups}
        by_status = {s.value: counts.get(s.value, 0) for s in VoterStatus}
        return VoterStats(
            total=sum(counts.values()),
            verified=sum(by_status[s] for s in ELIGIBLE_STATUSES),
            by_status=by_status,
        )

    async def reveal_key(self, voter_id: str) -> str | None:
        """Plaintext key for administrative recovery, or None if undecryptable."""
        voter = await self.get(voter_id)
        try:
            return decrypt_voter_key(voter.stored_key, self.secret_provider())
        except DecryptionError as e:
            logger.warning(f"Cannot reveal key for voter {voter_id}: {e}")
            return None

    async def export_for_deployment(self, election_id: str) -> list[dict[str, Any]]:
        """Eligible voters in the shape the ballot contract is seeded with."""
        docs = await self.store.find(
            VOTERS,
            {"election_id": election_id, "status": {"$in": ELIGIBLE_STATUSES}},
            sort=[("created_at", 1)],
            projection={"unique_id": 1, "key_hash": 1, "vote_weight": 1, "name": 1, "email": 1},
        )
        return [
            {
                "voter_id": d["unique_id"],
                "key_hash": d.get("key_hash"),
                "vote_weight": d.get("vote_weight", 1),
                "name": d.get("name"),
                "email": d.get("email"),
            }
            for d in docs
        ]

    async def active_voter_ids(self, election_id: str, *, not_voted: bool = False) -> list[str]:
        query: dict[str, Any] = {"election_id": election_id, "status": VoterStatus.ACTIVE.value}
        if not_voted:
            query["has_voted"] = {"$ne": True}
        docs = await self.store.find(VOTERS, query, projection={"_id": 1})
        return [d["_id"] for d in docs]

    # ── Updates ─────────────────────────────────────────────────────────────

    @staticmethod
    def _status(status: VoterStatus | str) -> VoterStatus:
        try:
            return VoterStatus(status)
        except ValueError as e:
            raise InvalidStatusError(f"Invalid voter status: {status}") from e

    async def update_status(self, voter_id: str, status: VoterStatus | str) -> Voter:
        new_status = self._status(status)
        now = self.clock()

        matched = await self.store.update_one(
            VOTERS,
            {"_id": voter_id},
            {"$set": {"status": new_status.value, "last_activity": now, "updated_at": now}},
        )
        if not matched:
            raise VoterNotFoundError(f"Voter {voter_id} not found")

        if new_status == VoterStatus.VERIFIED:
            await self.store.update_one(
                VOTERS, {"_id": voter_id, "verified_at": None}, {"$set": {"verified_at": now}}
            )

        logger.info(f"Voter {voter_id} status set to {new_status.value}")
        return await self.get(voter_id)

    async def verify_by_token(self, token: str) -> Voter:
        now = self.clock()
        doc = await self.store.find_one(
            VOTERS, {"verification_token": token, "verification_expires": {"$gt": now}}
        )
        if doc is None:
            raise AuthError("Invalid or expired verification token")

        voter = Voter.from_document(doc)
        matched = await self.store.update_one(
            VOTERS,
            {"_id": voter.id, "verification_token": token},
            {
                "$set": {
                    "status": VoterStatus.VERIFIED.value,
                    "verified_at": voter.verified_at or now,
                    "last_activity": now,
                    "updated_at": now,
                },
                "$unset": {"verification_token": "", "verification_expires": ""},
            },
        )
        if not matched:
            raise AuthError("Invalid or expired verification token")
        return await self.get(voter.id)

    async def reissue_key(self, voter_id: str) -> tuple[Voter, str]:
        """Replace a voter's credential; the old key stops working immediately."""
        secret = self.secret_provider()
        plaintext_key = generate_voter_key()
        matched = await self.store.update_one(
            VOTERS,
            {"_id": voter_id},
            {"$set": {
                "stored_key": encrypt_voter_key(plaintext_key, secret),
                "key_hash": hash_voter_key(plaintext_key),
                "updated_at": self.clock(),
            }},
        )
        if not matched:
            raise VoterNotFoundError(f"Voter {voter_id} not found")
        logger.info(f"Reissued access key for voter {voter_id}")
        return await self.get(voter_id), plaintext_key

    async def mark_voted(self, voter_id: str) -> bool:
        """Flag the voter as having voted; False if already flagged or missing."""
        now = self.clock()
        matched = await self.store.update_one(
            VOTERS,
            {"_id": voter_id, "has_voted": {"$ne": True}},
            {"$set": {"has_voted": True, "last_activity": now, "updated_at": now}},
        )
        return bool(matched)

    async def delete(self, voter_id: str) -> None:
        deleted = await self.store.delete_one(VOTERS, {"_id": voter_id})
        if not deleted:
            raise VoterNotFoundError(f"Voter {voter_id} not found")
        logger.info(f"Voter {voter_id} deleted")

    # ── Invitations ─────────────────────────────────────────────────────────

    async def record_email_delivery(self, voter_id: str, ok: bool, error: str | None = None) -> None:
        now = self.clock()
        if ok:
            update = {
                "$set": {
                    "email_delivery_status": EmailDeliveryStatus.SENT.value,
                    "email_sent_at": now,
                    "last_invite_at": now,
                    "updated_at": now,
                },
                "$unset": {"last_email_error": ""},
                "$inc": {"invite_count": 1},
            }
        else:
            update = {
                "$set": {
                    "email_delivery_status": EmailDeliveryStatus.FAILED.value,
                    "last_email_error": error or "Unknown error",
                    "updated_at": now,
                },
            }
        await self.store.update_one(VOTERS, {"_id": voter_id}, update)

    async def send_invitation(self, voter: Voter, plaintext_key: str, election_title: str) -> bool:
        """Email the access key and record the outcome; never raises on send failure."""
        try:
            await self.email_sender(
                voter.email,
                plaintext_key,
                election_title,
                voter_name=voter.name,
                unique_id=voter.unique_id,
            )
        except Exception as e:
            logger.error(f"Invitation to voter {voter.id} failed: {e}")
            await self.record_email_delivery(voter.id, False, str(e))
            return False

        await self.record_email_delivery(voter.id, True)
        return True

"""
HTTP tests for the voter login and notification inbox routes.

Route tests skip the lifespan: each installs stores over the in-memory
backend with attach_services. TestLifespan runs it against a stand-in database.
"""
from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from tally.app import app, attach_services, create_voter_token, lifespan
from tally.scheduler import get_scheduler, reset_scheduler
from tally.schemas import NotificationType, VoterStatus
from tally.storage import VOTERS
from tally.storage.memory import MemoryStore


@pytest.fixture()
async def client(store, clock, channels):
    attach_services(app, store, clock=clock, channels=channels)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _auth(voter) -> dict:
    return {"Authorization": f"Bearer {create_voter_token(voter)}"}


class TestHealth:
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "service": "tally", "scheduler_running": None}


class TestVoterLogin:
    async def test_login_with_messy_input(self, client, make_voter) -> None:
        created = await make_voter(unique_id="V100", key="AB23CD89XY")

        resp = await client.post("/voter/login", json={"voter_id": "v100", "access_key": "ab23 cd89 xy"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["token"]
        assert data["voter"]["id"] == created.id
        assert data["voter"]["unique_id"] == "V100"
        assert "stored_key" not in data["voter"]
        assert "verification_token" not in data["voter"]

    async def test_wrong_key(self, client, make_voter) -> None:
        await make_voter(unique_id="V100", key="AB23CD89XY")

        resp = await client.post("/voter/login", json={"voter_id": "V100", "access_key": "WRONG23456"})

        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid credentials"

    async def test_missing_fields(self, client) -> None:
        resp = await client.post("/voter/login", json={"voter_id": "V100"})
        assert resp.status_code == 422

    async def test_missing_secret_during_self_heal(self, client, store, make_voter, monkeypatch) -> None:
        created = await make_voter(unique_id="V100", key="AB23CD89XY")
        await store.update_one(VOTERS, {"_id": created.id}, {"$unset": {"key_hash": ""}})
        monkeypatch.delenv("VOTER_KEY_ENCRYPTION_KEY")

        resp = await client.post("/voter/login", json={"voter_id": "V100", "access_key": "AB23CD89XY"})

        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to login"


class TestCurrentVoter:
    async def test_me(self, client, make_voter) -> None:
        created = await make_voter()
        resp = await client.get("/voter/me", headers=_auth(created))
        assert resp.status_code == 200
        assert resp.json()["email"] == "v100@example.com"

    async def test_requires_bearer_token(self, client) -> None:
        assert (await client.get("/voter/me")).status_code == 401
        resp = await client.get("/voter/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    async def test_suspended_voter_is_forbidden(self, client, voters, make_voter) -> None:
        created = await make_voter()
        await voters.update_status(created.id, VoterStatus.SUSPENDED)
        resp = await client.get("/voter/me", headers=_auth(created))
        assert resp.status_code == 403

    async def test_deleted_voter_is_unauthorized(self, client, voters, make_voter) -> None:
        created = await make_voter()
        headers = _auth(created)
        await voters.delete(created.id)
        assert (await client.get("/voter/me", headers=headers)).status_code == 401


class TestInbox:
    async def test_list_and_counts(self, client, notifications, make_voter, make_payload) -> None:
        voter = await make_voter()
        await notifications.create(voter.id, make_payload(title="one"))
        await notifications.create(voter.id, make_payload(title="two", type=NotificationType.ELECTION))
        await notifications.create("someone-else", make_payload(title="not mine"))
        headers = _auth(voter)

        resp = await client.get("/notifications", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["pagination"]["total"] == 2
        assert {n["title"] for n in body["notifications"]} == {"one", "two"}
        assert all("_id" in n for n in body["notifications"])

        resp = await client.get("/notifications", params={"type": "ELECTION"}, headers=headers)
        assert [n["title"] for n in resp.json()["notifications"]] == ["two"]

        resp = await client.get("/notifications/unread-count", headers=headers)
        assert resp.json() == {"unread": 2}

        stats = (await client.get("/notifications/stats", headers=headers)).json()
        assert stats["total"] == 2
        assert stats["by_type"] == {"SYSTEM": 1, "ELECTION": 1}

    async def test_mark_read(self, client, notifications, make_voter, make_payload) -> None:
        voter = await make_voter()
        first = await notifications.create(voter.id, make_payload())
        await notifications.create(voter.id, make_payload())
        headers = _auth(voter)

        resp = await client.post(
            "/notifications/mark-read", json={"notification_ids": [first.id]}, headers=headers
        )
        assert resp.status_code == 200
        assert (await client.get("/notifications/unread-count", headers=headers)).json()["unread"] == 1

        resp = await client.post("/notifications/mark-read", json={"notification_ids": []}, headers=headers)
        assert resp.status_code == 400

        resp = await client.post("/notifications/mark-all-read", headers=headers)
        assert resp.status_code == 200
        assert (await client.get("/notifications/unread-count", headers=headers)).json()["unread"] == 0

    async def test_delete_is_owner_only(self, client, notifications, make_voter, make_payload) -> None:
        voter = await make_voter()
        mine = await notifications.create(voter.id, make_payload())
        theirs = await notifications.create("someone-else", make_payload())
        headers = _auth(voter)

        resp = await client.delete(f"/notifications/{theirs.id}", headers=headers)
        assert resp.status_code == 404

        resp = await client.delete(f"/notifications/{mine.id}", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"message": "Notification deleted successfully"}

    async def test_inbox_requires_login(self, client) -> None:
        assert (await client.get("/notifications")).status_code == 401


class TestLifespan:
    async def test_each_lifespan_gets_a_fresh_scheduler(self, monkeypatch) -> None:
        class FakeDatabase:
            closed = 0

            @classmethod
            async def get_pool(cls):
                return None

            @classmethod
            async def close(cls):
                cls.closed += 1

        monkeypatch.setattr("tally.app.Database", FakeDatabase)
        monkeypatch.setattr("tally.app.PostgresStore", lambda database: MemoryStore())
        reset_scheduler()

        first_app, second_app = FastAPI(), FastAPI()
        async with lifespan(first_app):
            first = first_app.state.scheduler
            assert first.running
            assert get_scheduler() is first
        assert not first.running
        with pytest.raises(RuntimeError):
            get_scheduler()

        async with lifespan(second_app):
            second = second_app.state.scheduler
            assert second is not first
            assert second.notifications is second_app.state.notifications
        assert FakeDatabase.closed == 2

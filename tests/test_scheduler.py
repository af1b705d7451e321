"""Tests for the background scheduler and its jobs."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tally.errors import ElectionNotFoundError
from tally.scheduler import (
    ACTIVATION,
    CLEANUP,
    REMINDERS,
    SCHEDULED,
    BackgroundScheduler,
    end_reminder_message,
    get_scheduler,
    hours_until,
    reset_scheduler,
    start_reminder_message,
)
from tally.schemas import ElectionStatus, VoterStatus
from tally.storage import NOTIFICATIONS


class TestActivation:
    async def test_activates_once_and_notifies_active_voters(
        self, scheduler, elections, store, make_election, make_voter, clock
    ) -> None:
        election = await make_election(clock() - timedelta(minutes=1))
        a = await make_voter(election_id=election.id, unique_id="A")
        b = await make_voter(election_id=election.id, unique_id="B")
        await make_voter(election_id=election.id, unique_id="P", status=VoterStatus.PENDING)
        await make_voter(election_id=election.id, unique_id="S", status=VoterStatus.SUSPENDED)
        await make_voter(election_id="elsewhere", unique_id="X")

        assert await scheduler.run_activation() == 1

        activated = await elections.get(election.id)
        assert activated.status == ElectionStatus.ACTIVE
        assert activated.started_at == clock()
        docs = await store.find(NOTIFICATIONS, {})
        assert sorted(d["recipient"] for d in docs) == sorted([a.id, b.id])
        assert {d["title"] for d in docs} == {"Election Started!"}
        assert docs[0]["action_url"] == f"/vote/{election.id}"

        clock.advance(minutes=1)
        assert await scheduler.run_activation() == 0
        assert await store.count(NOTIFICATIONS, {}) == 2

    async def test_future_and_draft_elections_are_left_alone(
        self, scheduler, elections, make_election, clock
    ) -> None:
        future = await make_election(clock() + timedelta(minutes=5))
        draft = await make_election(clock() - timedelta(hours=1), status=ElectionStatus.DRAFT)

        assert await scheduler.run_activation() == 0
        assert (await elections.get(future.id)).status == ElectionStatus.SCHEDULED
        assert (await elections.get(draft.id)).status == ElectionStatus.DRAFT

    async def test_notice_failure_keeps_activation(
        self, scheduler, elections, notifications, make_election, make_voter, clock, monkeypatch
    ) -> None:
        election = await make_election(clock() - timedelta(minutes=1))
        await make_voter(election_id=election.id)

        async def broken(recipients, payload):
            raise RuntimeError("store down")

        monkeypatch.setattr(notifications, "create_bulk", broken)

        assert await scheduler.run_activation() == 1
        assert (await elections.get(election.id)).status == ElectionStatus.ACTIVE


class TestElectionTransitions:
    async def test_schedule_draft(self, elections, make_election, clock) -> None:
        draft = await make_election(clock() + timedelta(days=1), status=ElectionStatus.DRAFT)
        assert draft.scheduled_at is None

        scheduled = await elections.schedule(draft.id)

        assert scheduled.status == ElectionStatus.SCHEDULED
        assert scheduled.scheduled_at == clock()
        assert (await elections.schedule(draft.id)).status == ElectionStatus.SCHEDULED

    async def test_cannot_schedule_active(self, elections, make_election, clock) -> None:
        active = await make_election(clock(), status=ElectionStatus.ACTIVE)
        with pytest.raises(ValueError):
            await elections.schedule(active.id)

    async def test_unknown_election(self, elections) -> None:
        with pytest.raises(ElectionNotFoundError):
            await elections.get("missing")


class TestReminders:
    async def test_start_and_end_reminders(
        self, scheduler, voters, store, make_election, make_voter, clock
    ) -> None:
        upcoming = await make_election(clock() + timedelta(hours=3), title="Upcoming")
        ending = await make_election(
            clock() - timedelta(days=1),
            end_time=clock() + timedelta(minutes=30),
            status=ElectionStatus.ACTIVE,
            title="Closing",
        )
        await make_election(clock() + timedelta(hours=30), title="Later")

        starter = await make_voter(election_id=upcoming.id, unique_id="U1")
        waiting = await make_voter(election_id=ending.id, unique_id="E1")
        voted = await make_voter(election_id=ending.id, unique_id="E2")
        await voters.mark_voted(voted.id)

        assert await scheduler.run_reminders() == 2

        start_doc = await store.find_one(NOTIFICATIONS, {"recipient": starter.id})
        assert start_doc["title"] == "Election Reminder"
        assert start_doc["message"] == 'Election "Upcoming" starts in 3 hours!'
        assert start_doc["metadata"]["reminder_type"] == "START"

        end_doc = await store.find_one(NOTIFICATIONS, {"recipient": waiting.id})
        assert end_doc["title"] == "Election Ending Soon"
        assert end_doc["priority"] == "HIGH"
        assert end_doc["message"].startswith('Election "Closing" ends in less than 1 hour!')
        assert await store.count(NOTIFICATIONS, {"recipient": voted.id}) == 0

    async def test_no_elections_in_window(self, scheduler) -> None:
        assert await scheduler.run_reminders() == 0


class TestMessages:
    def test_hours_until_rounds_down(self, clock) -> None:
        now = clock()
        assert hours_until(now + timedelta(hours=5, minutes=59), now) == 5
        assert hours_until(now + timedelta(minutes=59), now) == 0

    @pytest.mark.parametrize("hours, tail", [
        (0, "starts in less than 1 hour!"),
        (5, "starts in 5 hours!"),
        (6, "starts tomorrow!"),
        (23, "starts tomorrow!"),
    ])
    def test_start_tiers(self, hours, tail) -> None:
        assert start_reminder_message("Board", hours) == f'Election "Board" {tail}'

    @pytest.mark.parametrize("hours, tail", [
        (0, "ends in less than 1 hour! Don't miss your chance to vote!"),
        (2, "ends in 2 hours! Vote now before it's too late!"),
        (12, "ends tomorrow! Make sure to cast your vote!"),
    ])
    def test_end_tiers(self, hours, tail) -> None:
        assert end_reminder_message("Board", hours) == f'Election "Board" {tail}'


class TestHousekeeping:
    async def test_cleanup_and_scheduled_jobs(self, scheduler, notifications, make_payload, clock) -> None:
        await notifications.create("alice", make_payload(expires_at=clock() + timedelta(minutes=1)))
        await notifications.create("alice", make_payload(scheduled_for=clock() + timedelta(minutes=1)))
        clock.advance(minutes=2)

        assert await scheduler.run_cleanup() == 1
        assert await scheduler.run_scheduled() == 1

    async def test_maintenance_notice(self, scheduler, clock) -> None:
        created = await scheduler.send_system_maintenance_notification(
            "Maintenance at 02:00 UTC", recipients=["a", "b"]
        )
        assert len(created) == 2
        assert created[0].title == "System Maintenance"
        assert await scheduler.send_system_maintenance_notification("Nobody told") == []

    async def test_bulk_system_notice(self, scheduler) -> None:
        created = await scheduler.send_bulk_system_notification("Welcome", "Hello all", ["a"])
        assert [n.recipient for n in created] == ["a"]

    async def test_bulk_system_notice_failure_returns_empty(self, scheduler, notifications, monkeypatch) -> None:
        async def broken(recipients, payload):
            raise RuntimeError("store down")

        monkeypatch.setattr(notifications, "create_bulk", broken)
        assert await scheduler.send_bulk_system_notification("Welcome", "Hello", ["a"]) == []


class TestRunner:
    async def test_failed_run_is_recorded(self, scheduler) -> None:
        async def boom() -> int:
            raise RuntimeError("exploded")

        run = await scheduler.run_job(CLEANUP, boom)

        assert run.ok is False
        assert run.error == "exploded"
        assert scheduler.get_status()["jobs"][CLEANUP]["last_run"]["error"] == "exploded"

    async def test_successful_run_records_count(self, scheduler) -> None:
        async def three() -> int:
            return 3

        run = await scheduler.run_job(REMINDERS, three)
        assert run.ok is True
        assert run.count == 3

    async def test_start_runs_jobs_and_stop_cancels(self, notifications, elections, voters, clock) -> None:
        fast = BackgroundScheduler(
            notifications, elections, voters, clock=clock,
            intervals={CLEANUP: 0.01, SCHEDULED: 0.01, REMINDERS: 0.01, ACTIVATION: 0.01},
        )
        fast.start()
        tasks = dict(fast._tasks)
        fast.start()
        assert fast._tasks == tasks

        await asyncio.sleep(0.1)
        assert fast.running
        assert set(fast.last_runs) == {CLEANUP, SCHEDULED, REMINDERS, ACTIVATION}
        assert all(run.ok for run in fast.last_runs.values())

        await fast.stop()
        assert not fast.running
        assert all(task.done() for task in tasks.values())
        status = fast.get_status()
        assert status["running"] is False
        assert status["jobs"][ACTIVATION]["interval"] == 0.01

    async def test_stop_without_start(self, scheduler) -> None:
        await scheduler.stop()
        assert not scheduler.running


class TestGlobalScheduler:
    async def test_get_scheduler_requires_services_first(self, notifications, elections, voters) -> None:
        reset_scheduler()
        try:
            with pytest.raises(RuntimeError):
                get_scheduler()
            created = get_scheduler(notifications, elections, voters)
            assert get_scheduler() is created
        finally:
            reset_scheduler()

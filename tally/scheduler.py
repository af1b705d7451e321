"""
Background scheduler: four periodic jobs on the running event loop.

    cleanup     every hour       delete expired notifications
    scheduled   every 5 minutes  deliver due / previously failed notifications
    reminders   every 6 hours    remind voters of elections starting or ending
                                 within the next 24 hours
    activation  every minute     SCHEDULED -> ACTIVE once start_time has passed,
                                 then tell the election's active voters

Each job is its own asyncio task that sleeps for its interval and then runs.
A run never raises out of its loop: the outcome is recorded as a TaskRun and
logged. Inside the sweeps every election is handled on its own, so one bad
election does not stop the rest.

Activation is at-least-once for the status change and best-effort for the
notice: the status is flipped with a compare-and-set first and voters are
notified afterwards, so a crash in between leaves the election ACTIVE with
no notice sent.
"""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from pydantic import BaseModel

from tally import config
from tally.elections import ElectionStore
from tally.notifications import NotificationStore
from tally.schemas import (
    Election,
    Notification,
    NotificationCategory,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    utcnow,
)
from tally.voters import VoterStore

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(hours=24)

CLEANUP = "cleanup"
SCHEDULED = "scheduled"
REMINDERS = "reminders"
ACTIVATION = "activation"

DEFAULT_INTERVALS = {
    CLEANUP: config.CLEANUP_INTERVAL,
    SCHEDULED: config.SCHEDULED_FLUSH_INTERVAL,
    REMINDERS: config.REMINDER_INTERVAL,
    ACTIVATION: config.ACTIVATION_INTERVAL,
}


class TaskRun(BaseModel):
    """Outcome of one job run."""

    name: str
    ok: bool
    count: int = 0
    error: str | None = None
    started_at: datetime
    finished_at: datetime


def hours_until(moment: datetime, now: datetime) -> int:
    """Whole hours from ``now`` until ``moment`` (rounded down)."""
    return math.floor((moment - now).total_seconds() / 3600)


def start_reminder_message(title: str, hours: int) -> str:
    if hours < 1:
        return f'Election "{title}" starts in less than 1 hour!'
    if hours < 6:
        return f'Election "{title}" starts in {hours} hours!'
    return f'Election "{title}" starts tomorrow!'


def end_reminder_message(title: str, hours: int) -> str:
    if hours < 1:
        return f"Election \"{title}\" ends in less than 1 hour! Don't miss your chance to vote!"
    if hours < 6:
        return f"Election \"{title}\" ends in {hours} hours! Vote now before it's too late!"
    return f'Election "{title}" ends tomorrow! Make sure to cast your vote!'


class BackgroundScheduler:
    def __init__(
        self,
        notifications: NotificationStore,
        elections: ElectionStore,
        voters: VoterStore,
        *,
        clock: Callable = utcnow,
        intervals: dict[str, float] | None = None,
    ):
        self.notifications = notifications
        self.elections = elections
        self.voters = voters
        self.clock = clock
        self.intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        self.last_runs: dict[str, TaskRun] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def _jobs(self) -> dict[str, Callable[[], Awaitable[int]]]:
        return {
            CLEANUP: self.run_cleanup,
            SCHEDULED: self.run_scheduled,
            REMINDERS: self.run_reminders,
            ACTIVATION: self.run_activation,
        }

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start all jobs on the running loop. Calling it again is a no-op."""
        if self._tasks:
            return
        for name, job in self._jobs().items():
            self._tasks[name] = asyncio.create_task(
                self._loop(name, self.intervals[name], job), name=f"tally-{name}"
            )
        logger.info("Background jobs started")

    async def stop(self) -> None:
        """Cancel every job and wait for them to finish; start() works again afterwards."""
        tasks, self._tasks = list(self._tasks.values()), {}
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background jobs stopped")

    async def _loop(self, name: str, interval: float, job: Callable[[], Awaitable[int]]) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.run_job(name, job)

    async def run_job(self, name: str, job: Callable[[], Awaitable[int]]) -> TaskRun:
        started = self.clock()
        try:
            count = await job()
            run = TaskRun(name=name, ok=True, count=count, started_at=started, finished_at=self.clock())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background job {name} failed: {e}")
            run = TaskRun(name=name, ok=False, error=str(e), started_at=started, finished_at=self.clock())
        self.last_runs[name] = run
        return run

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "jobs": {
                name: {
                    "interval": self.intervals[name],
                    "running": name in self._tasks,
                    "last_run": self.last_runs[name].model_dump() if name in self.last_runs else None,
                }
                for name in self._jobs()
            },
        }

    # ── Jobs ────────────────────────────────────────────────────────────────

    async def run_cleanup(self) -> int:
        return await self.notifications.cleanup_expired()

    async def run_scheduled(self) -> int:
        return await self.notifications.process_scheduled()

    async def run_reminders(self) -> int:
        """Send start/end reminders; returns the number of notifications created."""
        now = self.clock()
        horizon = now + REMINDER_WINDOW
        upcoming = await self.elections.starting_between(now, horizon)
        ending = await self.elections.ending_between(now, horizon)

        sent = 0
        for election in upcoming:
            try:
                sent += await self._remind_start(election, now)
            except Exception as e:
                logger.error(f"Start reminders for election {election.id} failed: {e}")
        for election in ending:
            try:
                sent += await self._remind_end(election, now)
            except Exception as e:
                logger.error(f"Ending reminders for election {election.id} failed: {e}")

        if upcoming or ending:
            logger.info(
                f"Sent reminders for {len(upcoming)} upcoming and {len(ending)} ending elections"
            )
        return sent

    async def _remind_start(self, election: Election, now: datetime) -> int:
        recipients = await self.voters.active_voter_ids(election.id)
        if not recipients:
            return 0
        created = await self.notifications.create_bulk(recipients, NotificationPayload(
            type=NotificationType.REMINDER,
            category=NotificationCategory.INFO,
            priority=NotificationPriority.MEDIUM,
            title="Election Reminder",
            message=start_reminder_message(election.title, hours_until(election.start_time, now)),
            action_url=f"/vote/{election.id}",
            action_text="Vote Now",
            metadata={"election_id": election.id, "reminder_type": "START"},
        ))
        return len(created)

    async def _remind_end(self, election: Election, now: datetime) -> int:
        recipients = await self.voters.active_voter_ids(election.id, not_voted=True)
        if not recipients:
            return 0
        created = await self.notifications.create_bulk(recipients, NotificationPayload(
            type=NotificationType.REMINDER,
            category=NotificationCategory.WARNING,
            priority=NotificationPriority.HIGH,
            title="Election Ending Soon",
            message=end_reminder_message(election.title, hours_until(election.end_time, now)),
            action_url=f"/vote/{election.id}",
            action_text="Vote Now",
            metadata={"election_id": election.id, "reminder_type": "END"},
        ))
        return len(created)

    async def run_activation(self) -> int:
        """Activate every SCHEDULED election whose start time has passed."""
        now = self.clock()
        due = await self.elections.due_for_activation(now)
        if due:
            logger.info(f"Found {len(due)} elections to activate")

        activated = 0
        for election in due:
            try:
                if not await self.elections.activate(election.id, now):
                    continue
                activated += 1
                logger.info(f'Election "{election.title}" ({election.id}) activated at {now.isoformat()}')
                await self._notify_activation(election)
            except Exception as e:
                logger.error(f"Activating election {election.id} failed: {e}")
        return activated

    async def _notify_activation(self, election: Election) -> None:
        recipients = await self.voters.active_voter_ids(election.id)
        if not recipients:
            return
        await self.notifications.create_bulk(recipients, NotificationPayload(
            type=NotificationType.ELECTION,
            category=NotificationCategory.SUCCESS,
            priority=NotificationPriority.HIGH,
            title="Election Started!",
            message=f'Election "{election.title}" is now active and you can vote!',
            action_url=f"/vote/{election.id}",
            action_text="Vote Now",
            metadata={"election_id": election.id, "notification_type": "ELECTION_ACTIVATED"},
        ))
        logger.info(f"Sent activation notifications to {len(recipients)} voters for election {election.id}")

    # ── Operator notices ────────────────────────────────────────────────────

    async def send_system_maintenance_notification(
        self,
        message: str,
        scheduled_for: datetime | None = None,
        recipients: list[str] | tuple = (),
    ) -> list[Notification]:
        if not recipients:
            logger.info("No recipients specified for system maintenance notification")
            return []
        try:
            created = await self.notifications.create_bulk(list(recipients), NotificationPayload(
                type=NotificationType.SYSTEM,
                category=NotificationCategory.INFO,
                priority=NotificationPriority.MEDIUM,
                title="System Maintenance",
                message=message,
                action_url="/app/dashboard",
                action_text="View Status",
                scheduled_for=scheduled_for,
                metadata={"maintenance_type": "SYSTEM", "scheduled": scheduled_for is not None},
            ))
        except Exception as e:
            logger.error(f"System maintenance notification failed: {e}")
            return []
        logger.info(f"System maintenance notification sent to {len(created)} users")
        return created

    async def send_bulk_system_notification(
        self,
        title: str,
        message: str,
        recipients: list[str],
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        category: NotificationCategory = NotificationCategory.INFO,
    ) -> list[Notification]:
        try:
            created = await self.notifications.create_bulk(recipients, NotificationPayload(
                type=NotificationType.SYSTEM,
                category=category,
                priority=priority,
                title=title,
                message=message,
                action_url="/app/dashboard",
                action_text="View Details",
            ))
        except Exception as e:
            logger.error(f"Bulk system notification failed: {e}")
            return []
        logger.info(f"Bulk system notification sent to {len(created)} users")
        return created


# Global instance
_scheduler: BackgroundScheduler | None = None


def get_scheduler(
    notifications: NotificationStore | None = None,
    elections: ElectionStore | None = None,
    voters: VoterStore | None = None,
    **kwargs,
) -> BackgroundScheduler:
    """Return the process-wide scheduler, creating it on first call."""
    global _scheduler
    if _scheduler is None:
        if notifications is None or elections is None or voters is None:
            raise RuntimeError("Background scheduler has not been created yet")
        _scheduler = BackgroundScheduler(notifications, elections, voters, **kwargs)
    return _scheduler


def reset_scheduler() -> None:
    """Forget the process-wide scheduler (it must already be stopped)."""
    global _scheduler
    _scheduler = None

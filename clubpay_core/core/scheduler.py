"""
Periodic Job Scheduler
======================

Cron-driven background jobs for the billing and subscription runs.

Each job runs in its own asyncio task: sleep until the next cron
occurrence, run the handler, log the outcome, repeat. A job never
overlaps with itself; different jobs may run concurrently.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)

JobHandler = Callable[[], Awaitable[Any]]


# =============================================================================
# CRON EXPRESSION PARSER
# =============================================================================


class CronExpression:
    """
    Parses and evaluates cron expressions.

    Supports standard 5-field cron syntax:
    minute hour day_of_month month day_of_week

    Special characters:
    - * : any value
    - , : value list separator
    - - : range of values
    - / : step values

    Day of week runs 0-6 with 0 = Sunday (7 is accepted as Sunday too).
    When both day of month and day of week are restricted, a date matches
    if either does, as in cron(8).

    Examples:
    - "0 6 * * *" : every day at 06:00
    - "0 3 1 * *" : first of month at 03:00
    - "*/15 * * * *" : every 15 minutes
    """

    def __init__(self, expression: str):
        self.expression = expression
        self._restricted: Set[str] = set()
        self._parts = self._parse(expression)

    def _parse(self, expression: str) -> Dict[str, Set[int]]:
        """Parse cron expression into parts"""
        parts = expression.split()

        if len(parts) != 5:
            raise ValueError(
                f"Invalid cron expression: {expression}. "
                "Expected 5 fields (minute hour day month weekday)"
            )

        parsed = {
            "minute": self._parse_field("minute", parts[0], 0, 59),
            "hour": self._parse_field("hour", parts[1], 0, 23),
            "day": self._parse_field("day", parts[2], 1, 31),
            "month": self._parse_field("month", parts[3], 1, 12),
            "weekday": self._parse_field("weekday", parts[4], 0, 7),
        }
        if 7 in parsed["weekday"]:
            parsed["weekday"] = (parsed["weekday"] - {7}) | {0}
        return parsed

    def _parse_field(
        self,
        name: str,
        field: str,
        min_val: int,
        max_val: int
    ) -> Set[int]:
        """Parse a single cron field"""
        values = set()

        for part in field.split(","):
            try:
                if part == "*":
                    values.update(range(min_val, max_val + 1))
                    continue
                if "/" in part:
                    base, step = part.split("/")
                    if int(step) < 1:
                        raise ValueError(part)
                    if base == "*":
                        start, end = min_val, max_val
                    elif "-" in base:
                        start, end = (int(v) for v in base.split("-"))
                    else:
                        start, end = int(base), max_val
                    values.update(range(start, end + 1, int(step)))
                elif "-" in part:
                    start, end = part.split("-")
                    values.update(range(int(start), int(end) + 1))
                else:
                    values.add(int(part))
            except ValueError:
                raise ValueError(f"Invalid {name} field in cron expression: {field!r}")
            if not part.startswith("*"):
                self._restricted.add(name)

        if not values or min(values) < min_val or max(values) > max_val:
            raise ValueError(f"Invalid {name} field in cron expression: {field!r}")
        return values

    def _matches_date(self, dt: datetime) -> bool:
        if dt.month not in self._parts["month"]:
            return False
        day_ok = dt.day in self._parts["day"]
        weekday_ok = (dt.weekday() + 1) % 7 in self._parts["weekday"]
        if "day" in self._restricted and "weekday" in self._restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches the cron expression"""
        return (
            dt.minute in self._parts["minute"] and
            dt.hour in self._parts["hour"] and
            self._matches_date(dt)
        )

    def next_occurrence(self, after: Optional[datetime] = None) -> datetime:
        """Find the next occurrence after the given datetime"""
        if after is None:
            after = datetime.utcnow()

        # Start from the next minute
        current = after.replace(second=0, microsecond=0) + timedelta(minutes=1)

        # Search up to 4 years ahead, a day at a time on non-matching dates
        limit = current + timedelta(days=366 * 4)
        while current < limit:
            if not self._matches_date(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if self.matches(current):
                return current
            current += timedelta(minutes=1)

        raise ValueError(f"No next occurrence found for {self.expression}")


# =============================================================================
# SCHEDULER
# =============================================================================


@dataclass
class ScheduledJob:
    """A recurring job."""

    name: str
    cron: CronExpression
    handler: JobHandler
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0


class JobScheduler:
    """
    Runs registered jobs on their cron schedules (UTC).

    Usage:
        scheduler = JobScheduler()
        scheduler.add_job("billing", "0 6 * * *", engine.run_billing)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._clock = clock
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return dict(self._jobs)

    def add_job(self, name: str, expression: str, handler: JobHandler) -> ScheduledJob:
        """Register a job. Raises ValueError on a bad cron expression."""
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = ScheduledJob(name=name, cron=CronExpression(expression), handler=handler)
        self._jobs[name] = job
        logger.info("job_registered", job=name, cron=expression)
        return job

    async def start(self) -> None:
        """Start one loop per job"""
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._job_loop(job), name=f"job-{job.name}"))
        logger.info("scheduler_started", jobs=len(self._jobs))

    async def stop(self) -> None:
        """Stop scheduling new runs and wait for any run in progress to finish."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        in_flight = list(self._in_flight.values())
        if in_flight:
            logger.info("scheduler_draining", jobs=sorted(self._in_flight))
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("scheduler_stopped")

    async def run_job(self, name: str) -> bool:
        """Run a job once now. Failures are logged, not raised."""
        job = self._jobs[name]
        job.last_run_at = self._clock()
        job.runs += 1
        logger.info("job_started", job=name)
        try:
            await job.handler()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.exception("job_failed", job=name)
            return False
        job.last_error = None
        logger.info("job_completed", job=name)
        return True

    async def _job_loop(self, job: ScheduledJob) -> None:
        while self._running:
            now = self._clock()
            job.next_run_at = job.cron.next_occurrence(now)
            delay = (job.next_run_at - now).total_seconds()
            logger.debug("job_waiting", job=job.name, next_run_at=job.next_run_at.isoformat())
            await asyncio.sleep(max(delay, 0))

            # Runs are shielded from stop(), which drains them instead
            run = asyncio.create_task(self.run_job(job.name), name=f"run-{job.name}")
            self._in_flight[job.name] = run
            run.add_done_callback(lambda _, name=job.name: self._in_flight.pop(name, None))
            await asyncio.shield(run)

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status"""
        return {
            "running": self._running,
            "jobs": {
                name: {
                    "cron": job.cron.expression,
                    "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                    "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
                    "runs": job.runs,
                    "failures": job.failures,
                    "last_error": job.last_error,
                }
                for name, job in self._jobs.items()
            },
        }

"""
Job Scheduler

Runs named async jobs as independent background loops.

- Each job runs on its own fixed interval, after an optional initial delay
- A job with no interval runs once (startup backfills)
- Every run is bounded by a per-run timeout so a hung sweep cannot starve
  the next tick
- A failing run is logged and counted; the loop carries on
- stop() signals the loops, lets in-flight runs finish within a grace
  period, then cancels whatever is left

Heartbeats (last run, last success, counts, last stats) are kept per job
for the health endpoint.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from keystock.core.config import settings
from keystock.core.utils import utcnow

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class ScheduledJob:
    name: str
    func: JobFunc
    interval_seconds: Optional[float] = None  # None = run once
    timeout_seconds: Optional[float] = None
    initial_delay_seconds: float = 0

    @property
    def is_one_shot(self) -> bool:
        return self.interval_seconds is None


def _new_heartbeat() -> Dict[str, Any]:
    return {
        "last_run": None,
        "last_success": None,
        "last_error": None,
        "runs": 0,
        "failures": 0,
        "running": False,
        "last_stats": None,
    }


class JobScheduler:
    """
    Call start() to begin background scheduling, stop() to shut down.
    """

    def __init__(self, jobs: Optional[List[ScheduledJob]] = None, shutdown_grace_seconds: Optional[float] = None):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._heartbeats: Dict[str, Dict[str, Any]] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self.shutdown_grace_seconds = (
            shutdown_grace_seconds
            if shutdown_grace_seconds is not None
            else settings.SCHEDULER_SHUTDOWN_GRACE_SECONDS
        )
        for job in jobs or []:
            self.add_job(job)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> List[str]:
        return list(self._jobs)

    def add_job(self, job: ScheduledJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Job {job.name} already registered")
        if self._running:
            raise RuntimeError("Cannot add jobs to a running scheduler")
        self._jobs[job.name] = job
        self._heartbeats[job.name] = _new_heartbeat()

    def heartbeats(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(beat) for name, beat in self._heartbeats.items()}

    async def start(self):
        """Start all registered jobs."""
        if self._running:
            logger.warning("[SCHEDULER] Job scheduler already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run_job_loop(job), name=f"job:{job.name}")
            for job in self._jobs.values()
        ]

        logger.info(f"[SCHEDULER] Started with {len(self._tasks)} jobs")
        for job in self._jobs.values():
            if job.is_one_shot:
                logger.info(f"[SCHEDULER]   - {job.name}: once, delay={job.initial_delay_seconds}s")
            else:
                logger.info(
                    f"[SCHEDULER]   - {job.name}: every {job.interval_seconds}s, delay={job.initial_delay_seconds}s"
                )

    async def stop(self):
        """Signal all loops to stop and wait for in-flight runs to finish."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
            for task in still_running:
                logger.warning(f"[SCHEDULER] {task.get_name()} did not finish within grace period, cancelling")
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        self._tasks = []
        logger.info("[SCHEDULER] Job scheduler stopped")

    async def wait_closed(self):
        """Wait until every loop has exited (one-shot jobs included)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_job_now(self, name: str) -> Optional[Dict[str, Any]]:
        """Manually trigger a job outside its schedule."""
        job = self._jobs.get(name)
        if job is None:
            raise ValueError(f"Unknown job: {name}. Available: {self.jobs}")
        return await self._run_once(job)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when stop was requested."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_job_loop(self, job: ScheduledJob):
        if job.initial_delay_seconds > 0:
            logger.info(f"[SCHEDULER] {job.name} will start after {job.initial_delay_seconds}s delay")
        if await self._sleep(job.initial_delay_seconds):
            return

        while self._running:
            await self._run_once(job)

            if job.is_one_shot:
                break

            logger.debug(f"[SCHEDULER] Next {job.name} run in {job.interval_seconds}s")
            if await self._sleep(job.interval_seconds):
                break

    async def _run_once(self, job: ScheduledJob) -> Optional[Dict[str, Any]]:
        beat = self._heartbeats[job.name]
        beat["last_run"] = utcnow().isoformat()
        beat["runs"] += 1
        beat["running"] = True

        try:
            logger.debug(f"[SCHEDULER] Running {job.name}...")
            if job.timeout_seconds:
                stats = await asyncio.wait_for(job.func(), timeout=job.timeout_seconds)
            else:
                stats = await job.func()
        except asyncio.TimeoutError:
            beat["failures"] += 1
            beat["last_error"] = f"timed out after {job.timeout_seconds}s"
            logger.error(f"[SCHEDULER] Job {job.name} timed out after {job.timeout_seconds}s")
            return None
        except Exception as e:
            beat["failures"] += 1
            beat["last_error"] = str(e)
            logger.error(f"[SCHEDULER] Job {job.name} failed: {e}", exc_info=True)
            return None
        finally:
            beat["running"] = False

        beat["last_success"] = utcnow().isoformat()
        beat["last_stats"] = stats
        logger.debug(f"[SCHEDULER] Job {job.name} completed")
        return stats

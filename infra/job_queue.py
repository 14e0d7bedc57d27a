"""
Single-worker job queue and cron scheduler.

Scheduled triggers never run a job directly: they enqueue its name, and one
worker thread drains the queue in FIFO order, so invest, rebalance and
trailing-stop cycles never overlap.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

_STOP = object()


def parse_cron(expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Build a CronTrigger from a 5-field crontab or a 6-field expression with
    leading seconds ("30 * * * * *").

    Raises:
        ValueError: If the expression is malformed
    """
    fields = expression.split()
    if len(fields) == 5:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    raise ValueError(f"Wrong number of fields in cron expression '{expression}': got {len(fields)}, expected 5 or 6")


class JobQueue:
    """
    FIFO queue with exactly one worker.

    Handler exceptions are logged and swallowed so the worker survives a
    failed cycle; the next submission runs normally.
    """

    def __init__(self, handlers: Dict[str, Callable[[], Any]], metrics=None):
        self._handlers = dict(handlers)
        self._metrics = metrics
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._accepting = True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._thread:
            return
        self._thread = threading.Thread(target=self._work, name="JobQueue", daemon=True)
        self._thread.start()
        logger.info(f"Job queue started with jobs: {', '.join(sorted(self._handlers))}")

    def submit(self, job: str) -> bool:
        if not self._accepting:
            logger.debug(f"Job queue closed, dropping {job}")
            return False
        if job not in self._handlers:
            logger.error(f"Unknown job '{job}'")
            return False
        self._queue.put(job)
        logger.debug(f"Queued {job} (pending={self._queue.qsize()})")
        return True

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs; queued jobs still run before the worker exits."""
        self._accepting = False
        self._queue.put(_STOP)
        if wait and self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def join(self) -> None:
        """Block until every queued job has finished."""
        self._queue.join()

    def run_now(self, job: str) -> None:
        """Run a job synchronously on the calling thread (CLI --once)."""
        self._run(job)

    def _work(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._run(item)
            finally:
                self._queue.task_done()

    def _run(self, job: str) -> None:
        handler = self._handlers[job]
        status = "ok"
        start = time.monotonic()
        logger.info(f"Running job {job}")
        try:
            handler()
        except Exception as exc:
            status = "error"
            logger.error(f"Job {job} failed: {exc}", exc_info=True)
        finally:
            duration = time.monotonic() - start
            if self._metrics is not None:
                self._metrics.observe_job(job, status, duration)
            logger.info(f"Job {job} finished ({status}) in {duration:.2f}s")


class CronScheduler:
    """APScheduler front-end whose triggers only enqueue job names."""

    def __init__(self, job_queue: JobQueue, schedules: Dict[str, str], timezone: str = "UTC"):
        self._job_queue = job_queue
        self._schedules = dict(schedules)
        self._timezone = timezone
        self.scheduler = BackgroundScheduler(timezone=timezone)

    def start(self) -> None:
        for job, expression in self._schedules.items():
            self.scheduler.add_job(
                self._job_queue.submit,
                parse_cron(expression, timezone=self._timezone),
                args=[job],
                id=job,
                name=job,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.info(f"Scheduled {job}: [{expression}]")
        self.scheduler.start()
        logger.info("Cron scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Cron scheduler stopped")


__all__ = ["CronScheduler", "JobQueue", "parse_cron"]

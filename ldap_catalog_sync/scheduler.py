"""
Recurring task scheduling for entity providers.

Providers hand the scheduler a TaskDefinition; the APScheduler-backed
implementation runs it on a background thread at a fixed interval.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskDefinition:
    """A recurring unit of work."""
    id: str
    frequency: timedelta
    timeout: timedelta
    fn: Callable[[], None]
    initial_delay: Optional[timedelta] = None


class TaskScheduler(ABC):
    """Something that can run a task over and over."""

    @abstractmethod
    def schedule_task(self, task: TaskDefinition) -> None:
        """Register a task; an existing task with the same id is replaced."""
        pass


class APSchedulerTaskScheduler(TaskScheduler):
    """
    Runs tasks with APScheduler's BackgroundScheduler.

    Runs of the same task never overlap (max_instances=1); missed runs are
    coalesced into one. The timeout is a watchdog: overruns are logged, the
    run itself is not interrupted.
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self.scheduler = scheduler or BackgroundScheduler()

    def schedule_task(self, task: TaskDefinition) -> None:
        if task.frequency <= timedelta(0):
            raise ValueError(f"Task {task.id} needs a positive frequency, got {task.frequency}")

        first_run = datetime.now().astimezone() + (task.initial_delay or timedelta(0))
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=task.frequency.total_seconds()),
            args=[task],
            id=task.id,
            name=task.id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=first_run,
        )
        logger.info(f"Scheduled task {task.id} every {task.frequency} "
                    f"(timeout {task.timeout}, first run at {first_run:%Y-%m-%d %H:%M:%S})")

    @staticmethod
    def _run(task: TaskDefinition):
        started = time.monotonic()
        try:
            task.fn()
        finally:
            elapsed = time.monotonic() - started
            if elapsed > task.timeout.total_seconds():
                logger.warning(f"Task {task.id} ran for {elapsed:.1f} seconds, "
                               f"exceeding its timeout of {task.timeout}")

    def task_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Task scheduler started")

    def shutdown(self, wait: bool = True):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Task scheduler stopped")

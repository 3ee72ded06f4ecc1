"""Cron-style scheduler for the pipeline's periodic tasks.

Schedules live in the store (``cron_jobs``) so that enable/disable and run
history survive restarts. Each task is ``idle``, ``due`` or ``running``; a
task that is still running when it comes due again is skipped, not queued.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from croniter import croniter

from matchflow.errors import CronJobNotFound
from matchflow.log import get_logger
from matchflow.models import CronJobConfig, to_ts, utcnow
from matchflow.store import Store

log = get_logger(__name__)

IDLE = "idle"
DUE = "due"
RUNNING = "running"


@dataclass
class ScheduledTask:
    name: str
    fn: Callable[[], Any]
    schedule: str


class Scheduler:
    def __init__(
        self,
        store: Store,
        *,
        tz: str = "UTC",
        max_concurrent: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tz = ZoneInfo(tz)
        self.clock = clock
        self.max_concurrent = max(1, max_concurrent)
        self._tasks: dict[str, ScheduledTask] = {}
        self._running: set[str] = set()
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    def _next_run(self, schedule: str, after: datetime) -> datetime:
        local = after.astimezone(self.tz)
        return croniter(schedule, local).get_next(datetime).astimezone(timezone.utc)

    def _task(self, name: str) -> ScheduledTask:
        task = self._tasks.get(name)
        if task is None:
            raise CronJobNotFound(name)
        return task

    def register(self, name: str, fn: Callable[[], Any], schedule: str, enabled: bool = True) -> CronJobConfig:
        """Register ``fn`` under ``name``. A stored enabled flag wins over ``enabled``."""
        if not isinstance(schedule, str) or not croniter.is_valid(schedule):
            raise ValueError(f"invalid cron expression {schedule!r}")
        now = self.clock()
        config = self.store.seed_cron_job(
            CronJobConfig(name=name, schedule=schedule, enabled=enabled, next_run=self._next_run(schedule, now))
        )
        if config.next_run is None:
            config.next_run = self._next_run(schedule, now)
            self.store.update_cron_run(name, next_run=config.next_run)
        self._tasks[name] = ScheduledTask(name=name, fn=fn, schedule=schedule)
        log.info("Registered task %s (%s, %s) next run %s",
                 name, schedule, "enabled" if config.enabled else "disabled", to_ts(config.next_run))
        return config

    # --- execution --------------------------------------------------------

    def _execute(self, task: ScheduledTask, started: datetime) -> bool:
        with self._lock:
            if task.name in self._running:
                log.info("Task %s is still running, skipping this run", task.name)
                return False
            self._running.add(task.name)
        self.store.update_cron_run(task.name, last_run=started)
        log.info("Running task %s", task.name)
        try:
            task.fn()
        except Exception:
            log.exception("Task %s failed", task.name)
        finally:
            with self._lock:
                self._running.discard(task.name)
        return True

    def tick(self, now: datetime | None = None, *, background: bool = False) -> list[str]:
        """Run every enabled task whose next_run has passed. Returns their names."""
        now = now or self.clock()
        started: list[str] = []
        for config in self.store.list_cron_jobs():
            task = self._tasks.get(config.name)
            if task is None or not config.enabled:
                continue
            if config.next_run is not None and now < config.next_run:
                continue
            self.store.update_cron_run(config.name, next_run=self._next_run(task.schedule, now))
            if self.is_running(config.name):
                log.info("Task %s is still running, skipping this run", config.name)
                continue
            if background:
                self._pool().submit(self._execute, task, now)
                started.append(config.name)
            elif self._execute(task, now):
                started.append(config.name)
        return started

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="cron")
        return self._executor

    def run_now(self, name: str) -> bool:
        """Run a task immediately. next_run is left alone; last_run is updated."""
        return self._execute(self._task(name), self.clock())

    def run_forever(self, stop_event: threading.Event, tick_seconds: float = 30.0) -> None:
        log.info("Scheduler loop started (%d task(s), tz=%s)", len(self._tasks), self.tz.key)
        while not stop_event.is_set():
            try:
                self.tick(background=True)
            except Exception:
                log.exception("Scheduler tick failed")
            stop_event.wait(tick_seconds)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        log.info("Scheduler loop stopped")

    # --- control ----------------------------------------------------------

    def set_enabled(self, name: str, enabled: bool) -> CronJobConfig:
        task = self._task(name)
        self.store.set_cron_enabled(name, enabled)
        if enabled:
            self.store.update_cron_run(name, next_run=self._next_run(task.schedule, self.clock()))
        log.info("Task %s %s", name, "enabled" if enabled else "disabled")
        return self.store.get_cron_job(name)

    def is_running(self, name: str) -> bool:
        with self._lock:
            return name in self._running

    def task_state(self, name: str, now: datetime | None = None) -> str:
        self._task(name)
        if self.is_running(name):
            return RUNNING
        config = self.store.get_cron_job(name)
        now = now or self.clock()
        if config and config.enabled and config.next_run is not None and now >= config.next_run:
            return DUE
        return IDLE

    def list_jobs(self) -> list[dict[str, Any]]:
        now = self.clock()
        out: list[dict[str, Any]] = []
        for config in self.store.list_cron_jobs():
            if config.name not in self._tasks:
                continue
            out.append({
                "name": config.name,
                "schedule": config.schedule,
                "enabled": config.enabled,
                "last_run": to_ts(config.last_run),
                "next_run": to_ts(config.next_run),
                "state": self.task_state(config.name, now),
            })
        return out

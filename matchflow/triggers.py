"""Trigger sources feeding the match evaluator.

Every producer (job published, resume activated, scheduled sweep) puts a
TriggerEvent on one ``TriggerBus``. ``TriggerConsumer`` threads take events
off the bus and hand them to the evaluator; an event whose embeddings are not
available yet goes back on the bus with a delay instead of being dropped.
"""
from __future__ import annotations

import heapq
import itertools
import queue
import threading
import time
from typing import Callable

from matchflow.errors import EmbeddingUnavailable, PermanentError
from matchflow.evaluator import MatchEvaluator
from matchflow.log import get_logger
from matchflow.models import JOB_PUBLISHED, RESUME_ACTIVATED, SWEEP, TRIGGER_KINDS, TriggerEvent
from matchflow.retry import backoff_delay

log = get_logger(__name__)

_POLL_SLICE = 0.25


class TriggerBus:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._ready: queue.Queue[TriggerEvent] = queue.Queue()
        self._deferred: list[tuple[float, int, TriggerEvent]] = []
        self._lock = threading.Lock()
        self._seq = itertools.count()

    def publish(self, event: TriggerEvent) -> None:
        if event.kind not in TRIGGER_KINDS:
            raise ValueError(f"unknown trigger kind {event.kind!r}")
        self._ready.put(event)
        log.debug("Published %s", event)

    def job_published(self, job_id: str) -> None:
        self.publish(TriggerEvent(kind=JOB_PUBLISHED, job_id=job_id))

    def resume_activated(self, resume_id: str) -> None:
        self.publish(TriggerEvent(kind=RESUME_ACTIVATED, resume_id=resume_id))

    def sweep(self) -> None:
        self.publish(TriggerEvent(kind=SWEEP))

    def defer(self, event: TriggerEvent, delay: float) -> None:
        """Re-deliver ``event`` after ``delay`` seconds."""
        with self._lock:
            heapq.heappush(self._deferred, (self.clock() + max(0.0, delay), next(self._seq), event))

    def _promote(self) -> None:
        now = self.clock()
        with self._lock:
            while self._deferred and self._deferred[0][0] <= now:
                _, _, event = heapq.heappop(self._deferred)
                self._ready.put(event)

    def get(self, timeout: float | None = None) -> TriggerEvent | None:
        """Next ready event, or None once ``timeout`` seconds pass (0 = don't wait)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._promote()
            try:
                return self._ready.get_nowait()
            except queue.Empty:
                pass
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(remaining, _POLL_SLICE)
            else:
                wait = _POLL_SLICE
            try:
                return self._ready.get(timeout=wait)
            except queue.Empty:
                continue

    def counts(self) -> dict[str, int]:
        with self._lock:
            deferred = len(self._deferred)
        return {"ready": self._ready.qsize(), "deferred": deferred}


class TriggerConsumer:
    # Consecutive EmbeddingUnavailable results before health reports degraded.
    DEGRADED_AFTER = 3

    def __init__(
        self,
        bus: TriggerBus,
        evaluator: MatchEvaluator,
        *,
        consumers: int = 1,
        retry_base: float = 30.0,
        retry_max: float = 900.0,
        max_attempts: int = 10,
        poll_timeout: float = 1.0,
    ) -> None:
        self.bus = bus
        self.evaluator = evaluator
        self.consumers = max(1, consumers)
        self.retry_base = retry_base
        self.retry_max = retry_max
        self.max_attempts = max(1, max_attempts)
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.processed = 0
        self.deferred = 0
        self.errors = 0
        self.consecutive_unavailable = 0

    def process(self, event: TriggerEvent) -> bool:
        """Run one event through the evaluator. True if it completed."""
        try:
            self.evaluator.handle(event)
        except EmbeddingUnavailable as exc:
            event.attempts += 1
            if event.attempts >= self.max_attempts:
                with self._lock:
                    self.errors += 1
                    self.consecutive_unavailable += 1
                log.error("Dropping %s after %d attempt(s): %s", event, event.attempts, exc)
                return False
            delay = backoff_delay(event.attempts - 1, base_delay=self.retry_base, max_delay=self.retry_max)
            self.bus.defer(event, delay)
            with self._lock:
                self.deferred += 1
                self.consecutive_unavailable += 1
            log.warning("Deferring %s (attempt %d) by %.0fs: %s", event.kind, event.attempts, delay, exc)
            return False
        except (PermanentError, ValueError) as exc:
            with self._lock:
                self.errors += 1
            log.error("Dropping %s: %s", event, exc)
            return False
        except Exception:
            with self._lock:
                self.errors += 1
            log.exception("Trigger %s failed", event)
            return False
        with self._lock:
            self.processed += 1
            self.consecutive_unavailable = 0
        return True

    def drain(self) -> int:
        """Process every event that is ready now; returns how many were taken."""
        taken = 0
        while True:
            event = self.bus.get(timeout=0)
            if event is None:
                return taken
            self.process(event)
            taken += 1

    def _loop(self) -> None:
        while not self._stop.is_set():
            event = self.bus.get(timeout=self.poll_timeout)
            if event is not None:
                self.process(event)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"trigger-{i}", daemon=True)
            for i in range(self.consumers)
        ]
        for t in self._threads:
            t.start()
        log.info("Started %d trigger consumer(s)", self.consumers)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        log.info("Trigger consumers stopped")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def degraded(self) -> bool:
        return self.consecutive_unavailable >= self.DEGRADED_AFTER

    def health(self) -> dict[str, object]:
        with self._lock:
            return {
                "processed": self.processed,
                "deferred": self.deferred,
                "errors": self.errors,
                "consecutive_unavailable": self.consecutive_unavailable,
                "degraded": self.consecutive_unavailable >= self.DEGRADED_AFTER,
                "queued": self.bus.counts(),
            }

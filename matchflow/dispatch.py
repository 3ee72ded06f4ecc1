"""Dispatch workers: claim notification jobs, render and deliver them."""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from matchflow.errors import PermanentError, TransientError
from matchflow.log import get_logger
from matchflow.models import DEAD_LETTERED, NotificationJob
from matchflow.notification_queue import NotificationQueue
from matchflow.templates import TemplateRenderer, parse_payload
from matchflow.transports import DeliveryTransport

log = get_logger(__name__)


@dataclass
class BatchResult:
    claimed: int = 0
    sent: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    errors: int = 0


class Dispatcher:
    def __init__(
        self,
        queue: NotificationQueue,
        renderer: TemplateRenderer,
        transport: DeliveryTransport,
        *,
        batch_size: int = 10,
    ) -> None:
        self.queue = queue
        self.renderer = renderer
        self.transport = transport
        self.batch_size = batch_size

    def deliver(self, job: NotificationJob) -> str | None:
        """Validate, render and send one job. Returns the provider message id."""
        payload = parse_payload(job.type, job.payload)
        message = self.renderer.render(job.template_name, payload)
        receipt = self.transport.send(payload.email, message, job_id=job.id)
        return receipt.external_id

    def _record_failure(
        self, worker_id: str, job: NotificationJob, exc: BaseException, permanent: bool, result: BatchResult
    ) -> None:
        updated = self.queue.fail(job.id, exc, permanent=permanent, worker_id=worker_id)
        if updated is None:
            return
        if updated.status == DEAD_LETTERED:
            result.dead_lettered += 1
        else:
            result.retrying += 1

    def process_batch(self, worker_id: str) -> BatchResult:
        result = BatchResult()
        jobs = self.queue.claim(worker_id, self.batch_size)
        result.claimed = len(jobs)
        for job in jobs:
            try:
                self._process_job(worker_id, job, result)
            except Exception:
                # Left in_flight; the visibility sweep hands it out again.
                log.exception("%s could not record the outcome of job %s", worker_id, job.id)
                result.errors += 1
        if result.claimed:
            log.info(
                "%s: %d claimed, %d sent, %d retrying, %d dead-lettered, %d error(s)",
                worker_id, result.claimed, result.sent, result.retrying, result.dead_lettered, result.errors,
            )
        return result

    def _process_job(self, worker_id: str, job: NotificationJob, result: BatchResult) -> None:
        try:
            external_id = self.deliver(job)
        except PermanentError as exc:
            log.error("Job %s (%s) failed permanently: %s", job.id, job.type, exc)
            self._record_failure(worker_id, job, exc, True, result)
            return
        except TransientError as exc:
            self._record_failure(worker_id, job, exc, False, result)
            return
        except Exception as exc:
            log.exception("Unexpected error delivering job %s", job.id)
            self._record_failure(worker_id, job, exc, False, result)
            return
        if self.queue.complete(job.id, external_id, worker_id=worker_id):
            result.sent += 1


class DispatchPool:
    """Fixed pool of worker loops, each polling the queue when idle."""

    def __init__(self, dispatcher: Dispatcher, *, workers: int = 5, poll_interval: float = 2.0) -> None:
        self.dispatcher = dispatcher
        self.workers = max(1, workers)
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._paused = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []

    def _worker(self, worker_id: str) -> None:
        log.debug("%s started", worker_id)
        while not self._stop.is_set():
            if self._paused.is_set():
                self._stop.wait(self.poll_interval)
                continue
            try:
                result = self.dispatcher.process_batch(worker_id)
            except Exception:
                log.exception("%s batch failed", worker_id)
                result = BatchResult()
            if result.claimed == 0:
                self._stop.wait(self.poll_interval)
        log.debug("%s stopped", worker_id)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="dispatch")
        self._futures = [
            self._executor.submit(self._worker, f"worker-{i}") for i in range(self.workers)
        ]
        log.info("Started %d dispatch worker(s)", self.workers)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._futures = []
        log.info("Dispatch workers stopped")

    def pause(self) -> None:
        self._paused.set()
        log.info("Dispatch paused")

    def resume(self) -> None:
        self._paused.clear()
        log.info("Dispatch resumed")

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    @property
    def running(self) -> bool:
        return any(not f.done() for f in self._futures)

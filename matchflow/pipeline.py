"""Wire store, queue, evaluator, triggers, dispatch and scheduler together."""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from matchflow.catalog import Catalog, InMemoryCatalog, YamlCatalog
from matchflow.config import REPORTS_DIR, get_env, load_settings
from matchflow.control import ControlSurface
from matchflow.dispatch import Dispatcher, DispatchPool
from matchflow.embeddings import EmbeddingProvider, get_embedding_provider
from matchflow.errors import DuplicateJob, MatchflowError
from matchflow.evaluator import MatchEvaluator
from matchflow.log import get_logger
from matchflow.models import (
    REMINDER,
    VERIFICATION,
    NotificationJob,
    utcnow,
)
from matchflow.notification_queue import NotificationQueue
from matchflow.scheduler import Scheduler
from matchflow.store import Store
from matchflow.templates import RenderedMessage, TemplateRenderer, md_to_html, parse_payload
from matchflow.transports import DeliveryTransport, get_transport
from matchflow.triggers import TriggerBus, TriggerConsumer

log = get_logger(__name__)


@dataclass
class Pipeline:
    settings: dict[str, Any]
    store: Store
    catalog: Catalog
    queue: NotificationQueue
    provider: EmbeddingProvider
    transport: DeliveryTransport
    renderer: TemplateRenderer
    evaluator: MatchEvaluator
    bus: TriggerBus
    consumer: TriggerConsumer
    dispatcher: Dispatcher
    pool: DispatchPool
    scheduler: Scheduler
    control: ControlSurface
    env_getter: Callable[[str], str] = get_env
    _stop: threading.Event = field(default_factory=threading.Event)
    _scheduler_thread: threading.Thread | None = None

    # --- producers --------------------------------------------------------

    def send_notification(
        self,
        type: str,
        recipient_id: str,
        payload: dict[str, Any],
        *,
        priority: str | None = None,
        dedup_key: str | None = None,
    ) -> NotificationJob | None:
        """Validate and enqueue a transactional message. None if it is a duplicate."""
        parse_payload(type, payload)
        if priority is None:
            priority = "urgent" if type == VERIFICATION else "normal"
        job = self.queue.new_job(type, recipient_id, payload, dedup_key=dedup_key, priority=priority)
        try:
            return self.queue.enqueue(job)
        except DuplicateJob as exc:
            log.debug("%s", exc)
            return None

    def send_bulk(self, items: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
        """Queue many notifications at low priority under one batch id.

        Each item has ``type``, ``recipient_id`` and ``payload`` keys and an
        optional ``dedup_key``. A malformed or duplicate item is counted and
        skipped without affecting the others. The batch id is stored in every
        queued payload as ``batch_id``.
        """
        batch_id = uuid.uuid4().hex
        summary = {"batch_id": batch_id, "total": 0, "queued": 0, "duplicates": 0, "invalid": 0}
        for item in items:
            summary["total"] += 1
            try:
                payload = dict(item["payload"], batch_id=batch_id)
                job = self.send_notification(
                    item["type"], item["recipient_id"], payload,
                    priority="low", dedup_key=item.get("dedup_key"),
                )
            except (KeyError, TypeError, ValueError) as exc:
                summary["invalid"] += 1
                log.warning("Batch %s item %d rejected: %s", batch_id, summary["total"], exc)
                continue
            if job is None:
                summary["duplicates"] += 1
            else:
                summary["queued"] += 1
        log.info(
            "Batch %s: %d queued, %d duplicate(s), %d invalid of %d",
            batch_id, summary["queued"], summary["duplicates"], summary["invalid"], summary["total"],
        )
        return summary

    # --- scheduled tasks --------------------------------------------------

    def task_match_sweep(self) -> None:
        self.bus.sweep()

    def task_visibility_sweep(self) -> int:
        return self.queue.reclaim_expired()

    def task_notification_cleanup(self) -> int:
        return self.queue.cleanup(int(self.settings["queue"]["retention_days"]))

    def task_weekly_reminders(self) -> int:
        days = int(self.settings["reminders"]["stale_profile_days"])
        year, week, _ = self.queue.clock().isocalendar()
        queued = 0
        for c in self.catalog.stale_candidates(days):
            payload = {
                "recipient_name": c.name,
                "email": c.email,
                "days_since_update": c.days_since_update,
                "profile_completion": c.profile_completion,
                "suggestions": c.suggestions,
            }
            job = self.send_notification(
                REMINDER, c.user_id, payload, priority="low",
                dedup_key=f"{REMINDER}:{c.user_id}:{year}-W{week:02d}",
            )
            if job is not None:
                queued += 1
        log.info("Queued %d profile reminder(s)", queued)
        return queued

    def task_daily_summary(self) -> None:
        path = self.control.write_daily_summary(REPORTS_DIR)
        to = self.env_getter("ADMIN_EMAIL")
        if not to:
            log.debug("ADMIN_EMAIL not set — summary only written to %s", path)
            return
        body = path.read_text(encoding="utf-8")
        today = self.queue.clock().strftime("%Y-%m-%d")
        message = RenderedMessage(
            subject=f"Match & Notify Summary – {today}",
            text=body,
            html=md_to_html(body),
        )
        try:
            self.transport.send(to, message, job_id=f"summary-{today}")
        except MatchflowError as exc:
            log.error("Daily summary email failed: %s", exc)

    def register_default_tasks(self) -> None:
        tasks: dict[str, Callable[[], Any]] = {
            "match_sweep": self.task_match_sweep,
            "visibility_sweep": self.task_visibility_sweep,
            "notification_cleanup": self.task_notification_cleanup,
            "weekly_reminders": self.task_weekly_reminders,
            "daily_summary": self.task_daily_summary,
        }
        for name, cfg in self.settings["scheduler"]["jobs"].items():
            fn = tasks.get(name)
            if fn is None:
                log.warning("No task named %s, ignoring its schedule", name)
                continue
            self.scheduler.register(name, fn, cfg["schedule"], bool(cfg.get("enabled", True)))

    # --- lifecycle --------------------------------------------------------

    def start(self, *, scheduler: bool = True) -> None:
        self._stop.clear()
        self.consumer.start()
        self.pool.start()
        if scheduler:
            self._scheduler_thread = threading.Thread(
                target=self.scheduler.run_forever,
                args=(self._stop, float(self.settings["scheduler"]["tick_seconds"])),
                name="scheduler",
                daemon=True,
            )
            self._scheduler_thread.start()
        log.info("Pipeline started")

    def stop(self) -> None:
        self._stop.set()
        if self._scheduler_thread is not None:
            self._scheduler_thread.join(timeout=30)
            self._scheduler_thread = None
        self.pool.stop()
        self.consumer.stop()
        self.store.close()
        log.info("Pipeline stopped")


def _default_catalog(settings: dict[str, Any], clock: Callable[[], datetime]) -> Catalog:
    path = settings["catalog"].get("path")
    if path:
        return YamlCatalog(path, clock=clock)
    log.warning("No catalog.path configured — starting with an empty catalog")
    return InMemoryCatalog(clock=clock)


def build_pipeline(
    settings: dict[str, Any] | None = None,
    catalog: Catalog | None = None,
    *,
    provider: EmbeddingProvider | None = None,
    transport: DeliveryTransport | None = None,
    renderer: TemplateRenderer | None = None,
    store: Store | None = None,
    clock: Callable[[], datetime] = utcnow,
    env_getter: Callable[[str], str] = get_env,
    register_tasks: bool = True,
) -> Pipeline:
    settings = settings or load_settings()
    store = (store or Store(settings["database"]["path"])).connect()
    catalog = catalog or _default_catalog(settings, clock)
    queue = NotificationQueue.from_settings(store, settings, clock)
    provider = provider or get_embedding_provider(settings, catalog, env_getter)
    transport = transport or get_transport(settings, env_getter)
    renderer = renderer or TemplateRenderer(
        portal_url=env_getter("FRONTEND_URL"),
        sender_name=settings["transport"].get("sender_name", "Job Portal"),
    )
    evaluator = MatchEvaluator.from_settings(settings, store, queue, provider, catalog, clock)

    t = settings["triggers"]
    bus = TriggerBus()
    consumer = TriggerConsumer(
        bus,
        evaluator,
        consumers=int(t["consumers"]),
        retry_base=float(t["retry_base_seconds"]),
        retry_max=float(t["retry_max_seconds"]),
        max_attempts=int(t["max_attempts"]),
    )

    d = settings["dispatch"]
    dispatcher = Dispatcher(queue, renderer, transport, batch_size=int(d["batch_size"]))
    pool = DispatchPool(dispatcher, workers=int(d["workers"]), poll_interval=float(d["poll_interval_seconds"]))

    scheduler = Scheduler(store, tz=settings["scheduler"]["timezone"], clock=clock)
    control = ControlSurface(queue, evaluator, scheduler, consumer=consumer, pool=pool, clock=clock)

    pipeline = Pipeline(
        settings=settings,
        store=store,
        catalog=catalog,
        queue=queue,
        provider=provider,
        transport=transport,
        renderer=renderer,
        evaluator=evaluator,
        bus=bus,
        consumer=consumer,
        dispatcher=dispatcher,
        pool=pool,
        scheduler=scheduler,
        control=control,
        env_getter=env_getter,
    )
    if register_tasks:
        pipeline.register_default_tasks()
    return pipeline

"""Controller - worker pool, deadlines and periodic resync around the dispatcher.

Keys flow from the event source (``notify`` / the events endpoint) and from
the periodic resync into the work queue. A bounded pool of workers pulls
keys, runs one reconcile attempt each under a deadline, publishes the
outcome and hands the requeue decision to the retry controller.

The only state shared between workers is the queue, the static dependency
table and the platform client (connection pool and token are lock-guarded).
"""
from __future__ import annotations

import asyncio
import logging
import time

from platform_operator.config import settings
from platform_operator.dependencies import DependencyResolver
from platform_operator.dispatcher import ReconcileDispatcher
from platform_operator.errors import StoreConflict, TimeoutError_
from platform_operator.logging_config import reconcile_key_var, set_reconcile_key
from platform_operator.metrics import (
    reconcile_duration,
    reconcile_total,
    requeues_total,
    update_resource_metrics,
)
from platform_operator.platform_client import PlatformClient
from platform_operator.retry import RetryController
from platform_operator.schemas import Outcome, ResourceKey
from platform_operator.state import DeploymentState, Kind
from platform_operator.status import StatusReporter
from platform_operator.store import ResourceStore
from platform_operator.utils.async_tasks import safe_create_task
from platform_operator.utils.supervisor import SupervisorGaveUp, supervised_task
from platform_operator.utils.timeouts import with_deadline
from platform_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)

RETRIGGER_HINT = "retrigger"


def _result_label(outcome: Outcome) -> str:
    if outcome.error_class is not None:
        return outcome.error_class.value
    if not outcome.evaluated:
        return "noop"
    return outcome.convergence_state.value


def _requeue_reason(outcome: Outcome) -> str:
    if outcome.error_class is not None:
        return outcome.error_class.value
    if outcome.blocking:
        return "blocked"
    return outcome.retry.value


class Controller:
    """Owns the work queue and the reconcile workers."""

    def __init__(
        self,
        store: ResourceStore | None = None,
        client=None,
        *,
        workers: int | None = None,
        retry: RetryController | None = None,
    ):
        self.store = store or ResourceStore()
        self.client = client or PlatformClient()
        self.resolver = DependencyResolver(self.store)
        self.dispatcher = ReconcileDispatcher(self.store, self.resolver, self.client)
        self.reporter = StatusReporter(self.store)
        self.retry = retry or RetryController()
        self.queue = WorkQueue()
        self.workers = workers or settings.workers
        self._tasks: list[asyncio.Task] = []
        self.failed_loops: list[str] = []

    @property
    def healthy(self) -> bool:
        return bool(self._tasks) and not self.failed_loops

    # --- event source ---

    def notify(self, kind: Kind | str, namespace: str, name: str, hint: str = "changed") -> ResourceKey:
        """Enqueue a key. Delivery is at-least-once and unordered; duplicates collapse."""
        key = ResourceKey(Kind(kind), namespace, name)
        if hint == RETRIGGER_HINT:
            self.retry.retrigger(key)
        self.queue.add(key)
        logger.debug(f"Event {hint} for {key}")
        return key

    def resync(self) -> int:
        """Enqueue every declared key. Returns the number enqueued."""
        resources = self.store.list()
        update_resource_metrics(resources)
        for resource in resources:
            self.queue.add(resource.key)
        logger.debug(f"Resync enqueued {len(resources)} resources")
        return len(resources)

    # --- one attempt ---

    async def process(self, key: ResourceKey) -> Outcome:
        """Run one attempt for ``key``, publish it and schedule the next one."""
        token = set_reconcile_key(str(key))
        started = time.monotonic()
        try:
            resource = self.store.get(key)
            generation = resource.generation if resource else 0
            previous_state = resource.status.deployment_state if resource else None
            retriggered = self.retry.take_retrigger(key)

            try:
                outcome = await with_deadline(
                    self.dispatcher.reconcile(key, retriggered=retriggered),
                    settings.reconcile_timeout,
                    f"reconcile {key}",
                )
            except TimeoutError_ as e:
                if resource is None:
                    raise
                outcome = self.dispatcher.outcome_for_error(resource, e)

            try:
                self.reporter.publish(key, outcome, generation)
            except StoreConflict:
                self.queue.add_after(key, 0)
                return outcome

            delay = self.retry.decide(key, outcome, generation)
            if delay is not None:
                self.queue.add_after(key, delay)
                requeues_total.labels(kind=key.kind.value, reason=_requeue_reason(outcome)).inc()

            if (
                outcome.deployment_state == DeploymentState.READY
                and previous_state != DeploymentState.READY
            ):
                for dependent in self.resolver.dependents_of(key):
                    self.queue.add(dependent)
            if outcome.remove_finalizer:
                self.retry.forget(key)

            reconcile_total.labels(kind=key.kind.value, result=_result_label(outcome)).inc()
            return outcome
        finally:
            reconcile_duration.labels(kind=key.kind.value).observe(time.monotonic() - started)
            reconcile_key_var.reset(token)

    # --- loops ---

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {index} stopping")
                return
            try:
                await self.process(key)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Worker {index} failed processing {key}")
                self.queue.add_after(key, settings.retry_backoff_base)
            finally:
                self.queue.done(key)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(settings.resync_interval)
            self.resync()

    def _spawn(self, coro_factory, name: str) -> asyncio.Task:
        task = safe_create_task(supervised_task(coro_factory, name), name=name)

        def _record_give_up(t: asyncio.Task) -> None:
            if not t.cancelled() and isinstance(t.exception(), SupervisorGaveUp):
                self.failed_loops.append(name)

        task.add_done_callback(_record_give_up)
        return task

    async def start(self) -> None:
        logger.info(f"Starting controller with {self.workers} workers")
        self.resync()
        for index in range(self.workers):
            self._tasks.append(
                self._spawn(lambda i=index: self._worker(i), name=f"reconcile_worker_{index}")
            )
        self._tasks.append(self._spawn(self._resync_loop, name="resync"))

    async def stop(self) -> None:
        logger.info("Stopping controller")
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.client.aclose()

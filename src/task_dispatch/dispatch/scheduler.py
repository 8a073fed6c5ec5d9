"""Dispatch scheduler: one scan at a time, whatever asked for it."""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from task_dispatch.dispatch.instructions import compose_instructions
from task_dispatch.dispatch.models import (
    EligibleTasks,
    SchedulerState,
    ScanSummary,
    ScanTrigger,
    Task,
)
from task_dispatch.dispatch.runner import AgentDispatcher
from task_dispatch.dispatch.store import TaskStoreClient

logger = logging.getLogger(__name__)

_RULE = "=" * 60


@dataclass(slots=True, frozen=True)
class ScanRequest:
    """An accepted request to scan."""

    trigger: ScanTrigger
    observed_at: float | None = None


class ScanRequestChannel:
    """Capacity-one hand-off between trigger sources and the scan loop.

    ``offer`` never blocks: when a request is already waiting the new one is
    dropped.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[ScanRequest] = queue.Queue(maxsize=1)

    def offer(self, request: ScanRequest) -> bool:
        try:
            self._queue.put_nowait(request)
        except queue.Full:
            return False
        return True

    def take(self, timeout: float | None = None) -> ScanRequest | None:
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class DispatchScheduler:
    """Serializes scans and drives claim → compose → dispatch per eligible task.

    Accepting a trigger is the ``IDLE → SCANNING`` transition, taken under a
    lock, so any trigger seen while a scan is pending or running is dropped.
    Marker signals additionally need a strictly newer timestamp than the last
    accepted one.
    """

    def __init__(
        self,
        *,
        store: TaskStoreClient,
        dispatcher: AgentDispatcher,
        assign_back_to: str,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.assign_back_to = assign_back_to
        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._last_signal_at = 0.0
        self._requests = ScanRequestChannel()
        self._stop_requested = threading.Event()
        self.last_summary: ScanSummary | None = None
        self.scans_completed = 0

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    def request_scan(self, trigger: ScanTrigger, *, observed_at: float | None = None) -> bool:
        """Ask for a scan; returns False when the request is dropped."""

        with self._lock:
            if observed_at is not None and observed_at <= self._last_signal_at:
                logger.debug(
                    "Ignoring %s signal at %.3f (last accepted %.3f)",
                    trigger.value,
                    observed_at,
                    self._last_signal_at,
                )
                return False
            if self._state is not SchedulerState.IDLE:
                logger.info("Scan already in progress, dropping %s trigger", trigger.value)
                return False
            if not self._requests.offer(ScanRequest(trigger=trigger, observed_at=observed_at)):
                logger.info("Scan already pending, dropping %s trigger", trigger.value)
                return False
            self._state = SchedulerState.SCANNING
            if observed_at is not None:
                self._last_signal_at = observed_at
        return True

    def run_pending(self, timeout: float | None = 0.0) -> ScanSummary | None:
        """Run the accepted scan request, if one arrives within ``timeout``."""

        request = self._requests.take(timeout)
        if request is None:
            return None
        summary = ScanSummary(trigger=request.trigger, started_at=datetime.now(tz=UTC))
        try:
            self._scan(summary)
        finally:
            summary.finished_at = datetime.now(tz=UTC)
            with self._lock:
                self._state = SchedulerState.IDLE
                self.last_summary = summary
                self.scans_completed += 1
        return summary

    def run_forever(self, *, poll_seconds: float = 0.2) -> None:
        """Serve scan requests until ``stop`` is called or SIGINT/SIGTERM arrives.

        A signal abandons the scan in progress; its remote calls are not drained.
        """

        try:
            with self._signal_handlers():
                while not self._stop_requested.is_set():
                    self.run_pending(timeout=poll_seconds)
        except KeyboardInterrupt:
            self.stop()
            logger.info("Interrupted, abandoning the current scan")
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop_requested.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def _scan(self, summary: ScanSummary) -> None:
        logger.info(_RULE)
        logger.info("Checking for tasks... (trigger=%s)", summary.trigger.value)
        logger.info(_RULE)

        listing = self._list_eligible()
        summary.found = len(listing.tasks)
        summary.excluded = len(listing.excluded)
        summary.store_error = listing.store_error

        if not listing.tasks:
            logger.info(
                "No tasks found assigned to %s with %s status.",
                self.store.agent_name,
                self.store.status_names.pending,
            )
            return

        logger.info("Found %d task(s) to process", len(listing.tasks))
        for task in listing.tasks:
            try:
                self._handle_task(task, summary)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception('Unexpected error while handling "%s"', task.title)

        logger.info(_RULE)
        logger.info(
            "Processing complete: claimed=%d dispatched=%d claim_lost=%d dispatch_failed=%d",
            summary.claimed,
            summary.dispatched,
            summary.claim_lost,
            summary.dispatch_failed,
        )
        logger.info(_RULE)

    def _list_eligible(self) -> EligibleTasks:
        try:
            return self.store.list_eligible()
        except Exception as error:  # noqa: BLE001
            logger.exception("Listing eligible tasks failed")
            return EligibleTasks(store_error=str(error) or error.__class__.__name__)

    def _handle_task(self, task: Task, summary: ScanSummary) -> None:
        logger.info('Processing: "%s"', task.title)
        logger.info("  Project: %s", task.project)
        logger.info("  Current Agent: %s", task.assignee)
        logger.info("  Current Status: %s", task.status_name)
        logger.info("  Will assign back to: %s", self.assign_back_to)

        if not self.store.claim(task):
            summary.claim_lost += 1
            logger.warning('Could not claim "%s", skipping', task.title)
            return
        summary.claimed += 1

        instructions = compose_instructions(task, assign_back_to=self.assign_back_to)
        outcome = self.dispatcher.dispatch(task, instructions)
        summary.outcomes.append(outcome)
        if outcome.ok:
            summary.dispatched += 1
            logger.info('Task "%s" handed off to agent', task.title)
        else:
            summary.dispatch_failed += 1

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, shutting down", name)
            self.stop()
            raise KeyboardInterrupt(name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

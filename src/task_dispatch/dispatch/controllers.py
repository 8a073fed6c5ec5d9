"""Controllers for harness CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from task_dispatch.config import Settings, trigger_file_from_env
from task_dispatch.dispatch.models import ModelSelector, ScanSummary, ScanTrigger, StatusNames
from task_dispatch.dispatch.runner import (
    AgentDispatcher,
    AgentRunner,
    AgentRunnerError,
    OpencodeClient,
)
from task_dispatch.dispatch.scheduler import DispatchScheduler
from task_dispatch.dispatch.store import NotionTaskStore, TaskStore, TaskStoreClient
from task_dispatch.dispatch.triggers import (
    MarkerFileWatcher,
    PeriodicTimer,
    TriggerSourceError,
    touch_marker,
)

logger = logging.getLogger(__name__)


class RunnerUnavailable(RuntimeError):
    """The agent runner did not answer the startup liveness probe."""


@dataclass(slots=True)
class HarnessRunCommand:
    """CLI input for the long-running harness."""

    skip_startup_scan: bool = False


@dataclass(slots=True)
class ScanOnceCommand:
    """CLI input for a single scan."""

    trigger: ScanTrigger = ScanTrigger.MANUAL


@dataclass(slots=True)
class TriggerCommand:
    """CLI input for waking a running harness."""

    trigger_file: Path | None = None


class HarnessCliController:
    """Wires settings, clients, scheduler and trigger sources for CLI commands."""

    def run(self, command: HarnessRunCommand) -> Iterator[str]:
        """Start the harness and serve scans until interrupted, yielding status lines."""

        settings = load_settings()
        with _clients(settings) as (store, runner):
            yield from _banner_lines(settings)
            _probe_runner(runner, settings)
            yield "Connected to OpenCode server"

            scheduler = build_scheduler(settings, store=store, runner=runner)
            trigger_file = settings.scheduler.trigger_file
            try:
                touch_marker(trigger_file)
                yield f"Trigger file ready: {trigger_file}"
            except TriggerSourceError as error:
                logger.warning("%s", error)

            timer = PeriodicTimer(
                interval_seconds=settings.check_interval_seconds,
                on_tick=lambda: scheduler.request_scan(ScanTrigger.TIMER),
            )
            watcher = MarkerFileWatcher(
                path=trigger_file,
                on_signal=lambda mtime: scheduler.request_scan(
                    ScanTrigger.MARKER,
                    observed_at=mtime,
                ),
                poll_seconds=settings.scheduler.trigger_poll_seconds,
            )
            yield f"Watching trigger file: {trigger_file}"
            yield f"  Tip: run 'touch {trigger_file}' to trigger an immediate check"
            yield (
                f"Scheduled to check every {settings.scheduler.check_interval_minutes:g} minutes"
            )

            watcher.start()
            timer.start()
            try:
                if not command.skip_startup_scan:
                    scheduler.request_scan(ScanTrigger.STARTUP)
                scheduler.run_forever()
            finally:
                timer.stop()
                watcher.stop()

        yield f"Harness stopped after {scheduler.scans_completed} scan(s)."

    def scan_once(self, command: ScanOnceCommand) -> list[str]:
        """Run exactly one scan and report its counters."""

        settings = load_settings()
        with _clients(settings) as (store, runner):
            _probe_runner(runner, settings)
            scheduler = build_scheduler(settings, store=store, runner=runner)
            scheduler.request_scan(command.trigger)
            summary = scheduler.run_pending()

        if summary is None:  # pragma: no cover - request on an idle scheduler is always accepted
            return ["Scan was not started."]
        return render_scan_summary(summary)

    def list_tasks(self) -> list[str]:
        """Show what the next scan would pick up, without claiming anything."""

        settings = load_settings()
        with _store(settings) as store:
            client = build_store_client(settings, store=store)
            listing = client.list_eligible()

        if listing.store_error:
            return [f"Task store unavailable: {listing.store_error}"]
        lines = [f"Eligible tasks: {len(listing.tasks)}"]
        lines.extend(
            f"  {task.task_id} | {task.title} | {task.project} -> {task.project_path} | {task.url}"
            for task in listing.tasks
        )
        if listing.excluded:
            lines.append(f"Excluded (no project mapping): {len(listing.excluded)}")
            lines.extend(
                f"  {task.task_id} | {task.title} | project={task.project or '-'}"
                for task in listing.excluded
            )
        return lines

    def trigger(self, command: TriggerCommand) -> list[str]:
        """Touch the marker file so a running harness scans now."""

        path = command.trigger_file or trigger_file_from_env()
        touch_marker(path)
        return [f"Trigger file touched: {path}"]

    def check_config(self) -> list[str]:
        """Validate configuration and show the effective values."""

        settings = load_settings()
        return [
            "Configuration OK",
            *_banner_lines(settings),
            f"Notion API: {settings.store.api_base_url} (version {settings.store.api_version})",
            "Status names: "
            f"pending={settings.store.pending_status!r} "
            f"active={settings.store.active_status!r} "
            f"done={settings.store.done_status!r}",
            f"Default reassign to: {settings.scheduler.default_reassign_to}",
            f"Trigger file: {settings.scheduler.trigger_file}",
        ]


def load_settings() -> Settings:
    """Read settings from the environment and fail fast on bad configuration."""

    settings = Settings.from_env()
    settings.validate()
    return settings


def build_store_client(settings: Settings, *, store: TaskStore) -> TaskStoreClient:
    return TaskStoreClient(
        store=store,
        agent_name=settings.scheduler.agent_name,
        project_mappings=settings.project_mappings,
        status_names=StatusNames(
            pending=settings.store.pending_status,
            active=settings.store.active_status,
            done=settings.store.done_status,
        ),
    )


def build_scheduler(
    settings: Settings,
    *,
    store: TaskStore,
    runner: AgentRunner,
) -> DispatchScheduler:
    return DispatchScheduler(
        store=build_store_client(settings, store=store),
        dispatcher=AgentDispatcher(
            runner=runner,
            model=ModelSelector(
                provider_id=settings.runner.model_provider,
                model_id=settings.runner.model_id,
            ),
        ),
        assign_back_to=settings.scheduler.default_reassign_to,
    )


def render_scan_summary(summary: ScanSummary) -> list[str]:
    lines = [
        "Scan summary: "
        f"trigger={summary.trigger.value} found={summary.found} excluded={summary.excluded} "
        f"claimed={summary.claimed} claim_lost={summary.claim_lost} "
        f"dispatched={summary.dispatched} dispatch_failed={summary.dispatch_failed} "
        f"errors={summary.errors}",
    ]
    if summary.store_error:
        lines.append(f"Task store error: {summary.store_error}")
    for outcome in summary.outcomes:
        if outcome.ok:
            lines.append(f"  {outcome.task_id}: session {outcome.session_id}")
        else:
            lines.append(
                f"  {outcome.task_id}: FAILED at {outcome.failed_stage} ({outcome.error}); "
                "task left active with no agent",
            )
    return lines


def _banner_lines(settings: Settings) -> list[str]:
    lines = [
        "OpenCode-Notion Agent Harness",
        f"Check interval: {settings.scheduler.check_interval_minutes:g} minutes",
        f"Notion Database: {settings.store.database_id}",
        f"OpenCode URL: {settings.runner.base_url}",
        f"Model: {settings.runner.model_provider}/{settings.runner.model_id}",
        f"Watching for Agent: {settings.scheduler.agent_name}",
        "Project Mappings:",
    ]
    lines.extend(
        f"  {project} -> {path}" for project, path in sorted(settings.project_mappings.items())
    )
    return lines


def _probe_runner(runner: AgentRunner, settings: Settings) -> None:
    try:
        runner.list_sessions()
    except AgentRunnerError as error:
        raise RunnerUnavailable(
            f"Could not connect to OpenCode server at {settings.runner.base_url}: {error}. "
            "Make sure OpenCode is running!",
        ) from error


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = NotionTaskStore(settings.store)
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _clients(settings: Settings) -> Iterator[tuple[TaskStore, AgentRunner]]:
    runner = OpencodeClient(settings.runner)
    try:
        with _store(settings) as store:
            yield store, runner
    finally:
        runner.close()

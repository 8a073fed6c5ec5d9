"""Shared test fixtures: in-memory task store and agent runner."""

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from task_dispatch.dispatch.models import ModelSelector, RawTaskRecord
from task_dispatch.dispatch.runner import AgentRunnerError
from task_dispatch.dispatch.store import ClaimLost, StoreUnavailable

AGENT = "OpenCode"
MAPPINGS = {"web": "/repo/web", "api": "/repo/api"}


def make_record(
    task_id: str,
    *,
    title: str | None = None,
    status: str = "Todo",
    assignee: str = AGENT,
    project: str = "web",
) -> RawTaskRecord:
    return RawTaskRecord(
        task_id=task_id,
        title=title or f"Task {task_id}",
        status_name=status,
        assignee=assignee,
        project=project,
        url=f"https://www.notion.so/{task_id}",
    )


class FakeTaskStore:
    """TaskStore over a dict; status reads and writes can be slowed down or failed."""

    def __init__(self) -> None:
        self.records: dict[str, RawTaskRecord] = {}
        self.statuses: dict[str, str] = {}
        self.updates: list[tuple[str, str]] = []
        self.query_error: Exception | None = None
        self.update_error_ids: set[str] = set()
        self.apply_filter = True
        self.query_delay = 0.0
        self.read_delay = 0.0
        self.query_calls = 0
        self.concurrent_queries = 0
        self.max_concurrent_queries = 0
        self._lock = threading.Lock()

    def add(self, *records: RawTaskRecord) -> None:
        for record in records:
            self.records[record.task_id] = record
            self.statuses[record.task_id] = record.status_name

    def query(self, *, status_equals: str, assignee_equals: str) -> list[RawTaskRecord]:
        with self._lock:
            self.query_calls += 1
            self.concurrent_queries += 1
            self.max_concurrent_queries = max(
                self.max_concurrent_queries,
                self.concurrent_queries,
            )
        try:
            if self.query_delay:
                time.sleep(self.query_delay)
            if self.query_error is not None:
                raise self.query_error
            records = [
                RawTaskRecord(
                    task_id=record.task_id,
                    title=record.title,
                    status_name=self.statuses[record.task_id],
                    assignee=record.assignee,
                    project=record.project,
                    url=record.url,
                )
                for record in self.records.values()
            ]
            if not self.apply_filter:
                return records
            return [
                record
                for record in records
                if record.status_name == status_equals and record.assignee == assignee_equals
            ]
        finally:
            with self._lock:
                self.concurrent_queries -= 1

    def read_status(self, task_id: str) -> str:
        status = self.statuses[task_id]
        if self.read_delay:
            time.sleep(self.read_delay)
        return status

    def update_status(self, task_id: str, new_status: str) -> None:
        if task_id in self.update_error_ids:
            raise StoreUnavailable(f"update of {task_id} refused")
        self.statuses[task_id] = new_status
        self.updates.append((task_id, new_status))

    def transition_status(self, task_id: str, *, expected: str, new: str) -> None:
        current = self.read_status(task_id)
        if current != expected:
            raise ClaimLost(task_id, current_status=current)
        self.update_status(task_id, new)


class FakeAgentRunner:
    """AgentRunner that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.submitted: dict[str, str] = {}
        self.fail_on: set[str] = set()
        self.delay = 0.0
        self.sessions = 0
        self._lock = threading.Lock()

    def create_session(self, title: str) -> str:
        self._record("create_session", title)
        with self._lock:
            self.sessions += 1
            return f"ses_{self.sessions}"

    def run_command(self, session_id: str, command: str) -> None:
        self._record("run_command", session_id)

    def submit_instructions(self, session_id: str, *, model: ModelSelector, text: str) -> None:
        self._record("submit_instructions", session_id)
        self.submitted[session_id] = text

    def list_sessions(self) -> list[dict[str, Any]]:
        self._record("list_sessions", "")
        return []

    def _record(self, name: str, arg: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if name in self.fail_on:
            raise AgentRunnerError(f"{name} failed")
        with self._lock:
            self.calls.append((name, arg))


@pytest.fixture()
def fake_store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture()
def fake_runner() -> FakeAgentRunner:
    return FakeAgentRunner()


@pytest.fixture()
def harness_env(monkeypatch, tmp_path):
    """Minimal valid environment for the CLI."""

    monkeypatch.setenv("NOTION_TOKEN", "secret_test")
    monkeypatch.setenv("NOTION_DATABASE_ID", "db-123")
    monkeypatch.setenv("PROJECT_MAPPINGS", '{"web": "/repo/web"}')
    monkeypatch.setenv("TRIGGER_FILE", str(tmp_path / ".trigger"))
    for name in (
        "OPENCODE_BASE_URL",
        "CHECK_INTERVAL_MINUTES",
        "OPENCODE_AGENT_NAME",
        "DEFAULT_REASSIGN_TO",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path

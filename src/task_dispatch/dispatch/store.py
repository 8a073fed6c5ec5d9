"""Task store access: Notion transport and the eligibility/claim client."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from task_dispatch.config import StoreSettings
from task_dispatch.dispatch.models import (
    EligibleTasks,
    RawTaskRecord,
    StatusNames,
    Task,
    TaskStatus,
)
from task_dispatch.http import build_client, describe_http_error

logger = logging.getLogger(__name__)

QUERY_PAGE_SIZE = 100
_TITLE_PROPERTY_NAMES = ("Name", "Title", "title")


class StoreUnavailable(RuntimeError):
    """The task store could not be reached or returned an unusable answer."""


class ClaimLost(RuntimeError):
    """Another actor moved the task out of the pending status first."""

    def __init__(self, task_id: str, *, current_status: str) -> None:
        super().__init__(f"Task {task_id} is no longer pending (status={current_status!r}).")
        self.task_id = task_id
        self.current_status = current_status


class TaskStore(Protocol):
    """Narrow interface the client needs from a task database."""

    def query(self, *, status_equals: str, assignee_equals: str) -> list[RawTaskRecord]:
        """Return records matching both predicates."""

    def read_status(self, task_id: str) -> str:
        """Return the current store-side status name of one task."""

    def update_status(self, task_id: str, new_status: str) -> None:
        """Write a new status name."""

    def transition_status(self, task_id: str, *, expected: str, new: str) -> None:
        """Write ``new`` only if the status is still ``expected``; else raise ClaimLost."""


class NotionTaskStore:
    """Notion REST API access for one database."""

    def __init__(
        self,
        settings: StoreSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = build_client(
            base_url=settings.api_base_url,
            timeout_seconds=settings.request_timeout_seconds,
            headers={
                "Authorization": f"Bearer {settings.token}",
                "Notion-Version": settings.api_version,
            },
            transport=transport,
        )
        self._data_source_id: str | None = None

    def query(self, *, status_equals: str, assignee_equals: str) -> list[RawTaskRecord]:
        data_source_id = self._resolve_data_source_id()
        body: dict[str, Any] = {
            "filter": {
                "and": [
                    {
                        "property": self.settings.status_property,
                        "select": {"equals": status_equals},
                    },
                    {
                        "property": self.settings.agent_property,
                        "select": {"equals": assignee_equals},
                    },
                ],
            },
            "page_size": QUERY_PAGE_SIZE,
        }

        records: list[RawTaskRecord] = []
        while True:
            payload = self._request("POST", f"/data_sources/{data_source_id}/query", json=body)
            results = payload.get("results")
            if not isinstance(results, list):
                raise StoreUnavailable("Notion query response has no results list.")
            records.extend(self._to_record(page) for page in results if isinstance(page, dict))

            next_cursor = payload.get("next_cursor")
            if not payload.get("has_more") or not next_cursor:
                return records
            body["start_cursor"] = next_cursor

    def read_status(self, task_id: str) -> str:
        page = self._request("GET", f"/pages/{task_id}")
        return _select_name(page.get("properties", {}), self.settings.status_property)

    def update_status(self, task_id: str, new_status: str) -> None:
        self._request(
            "PATCH",
            f"/pages/{task_id}",
            json={
                "properties": {
                    self.settings.status_property: {"select": {"name": new_status}},
                },
            },
        )

    def transition_status(self, task_id: str, *, expected: str, new: str) -> None:
        # Notion has no compare-and-set; callers serialize read and write.
        current = self.read_status(task_id)
        if current != expected:
            raise ClaimLost(task_id, current_status=current)
        self.update_status(task_id, new)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NotionTaskStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _resolve_data_source_id(self) -> str:
        if self._data_source_id is not None:
            return self._data_source_id
        database = self._request("GET", f"/databases/{self.settings.database_id}")
        data_sources = database.get("data_sources") or []
        first = data_sources[0] if data_sources else None
        if not isinstance(first, dict) or not first.get("id"):
            raise StoreUnavailable(
                f"Could not find a data source in Notion database {self.settings.database_id}.",
            )
        self._data_source_id = str(first["id"])
        return self._data_source_id

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as error:
            raise StoreUnavailable(
                f"Notion {method} {path} failed: {describe_http_error(error)}",
            ) from error
        except ValueError as error:
            raise StoreUnavailable(f"Notion {method} {path} returned invalid JSON.") from error
        if not isinstance(payload, dict):
            raise StoreUnavailable(f"Notion {method} {path} returned an unexpected payload.")
        return payload

    def _to_record(self, page: Mapping[str, Any]) -> RawTaskRecord:
        properties = page.get("properties") or {}
        if not isinstance(properties, dict):
            raise StoreUnavailable(
                f"Notion page {page.get('id', '?')} has malformed properties.",
            )
        return RawTaskRecord(
            task_id=str(page.get("id", "")),
            title=_title_text(properties),
            status_name=_select_name(properties, self.settings.status_property),
            assignee=_select_name(properties, self.settings.agent_property),
            project=_select_name(properties, self.settings.project_property, default=""),
            url=str(page.get("url", "")),
        )


class TaskStoreClient:
    """Eligibility listing and exactly-once claiming on top of a TaskStore."""

    def __init__(
        self,
        *,
        store: TaskStore,
        agent_name: str,
        project_mappings: Mapping[str, str],
        status_names: StatusNames | None = None,
    ) -> None:
        self.store = store
        self.agent_name = agent_name
        self.project_mappings = dict(project_mappings)
        self.status_names = status_names or StatusNames()
        self._claim_lock = threading.Lock()

    def list_eligible(self) -> EligibleTasks:
        """Pending tasks for our agent whose project resolves to a path.

        Store failures come back as an empty listing with ``store_error`` set.
        """

        try:
            records = self.store.query(
                status_equals=self.status_names.pending,
                assignee_equals=self.agent_name,
            )
        except StoreUnavailable as error:
            logger.error("Error querying task store: %s", error)
            return EligibleTasks(store_error=str(error))

        result = EligibleTasks()
        for record in records:
            task = self._to_task(record)
            if task.status is not TaskStatus.PENDING or task.assignee != self.agent_name:
                logger.debug(
                    "Ignoring task %r returned by store (status=%r, agent=%r)",
                    task.title,
                    task.status_name,
                    task.assignee,
                )
                continue
            if not task.is_actionable:
                logger.warning(
                    'Skipping task "%s" - no project mapping for "%s"',
                    task.title,
                    task.project,
                )
                result.excluded.append(task)
                continue
            result.tasks.append(task)
        return result

    def claim(self, task: Task) -> bool:
        """Move one task from pending to active; False if it was not ours to take."""

        with self._claim_lock:
            try:
                self.store.transition_status(
                    task.task_id,
                    expected=self.status_names.pending,
                    new=self.status_names.active,
                )
            except ClaimLost as error:
                logger.warning("Claim lost for %r: %s", task.title, error)
                return False
            except StoreUnavailable as error:
                logger.error(
                    "Could not mark %r as %r: %s",
                    task.title,
                    self.status_names.active,
                    error,
                )
                return False

        logger.info('Marked task "%s" as "%s"', task.title, self.status_names.active)
        return True

    def _to_task(self, record: RawTaskRecord) -> Task:
        return Task(
            task_id=record.task_id,
            title=record.title,
            status=self.status_names.resolve(record.status_name),
            status_name=record.status_name,
            assignee=record.assignee,
            project=record.project,
            project_path=self.project_mappings.get(record.project, ""),
            url=record.url,
        )


def _select_name(properties: Mapping[str, Any], name: str, *, default: str = "Unknown") -> str:
    prop = properties.get(name)
    if not isinstance(prop, dict):
        return default
    select = prop.get("select")
    if not isinstance(select, dict):
        return default
    return str(select.get("name") or default)


def _title_text(properties: Mapping[str, Any]) -> str:
    for name in _TITLE_PROPERTY_NAMES:
        prop = properties.get(name)
        if not isinstance(prop, dict):
            continue
        fragments = prop.get("title") or []
        text = "".join(
            str(fragment.get("plain_text", ""))
            for fragment in fragments
            if isinstance(fragment, dict)
        ).strip()
        if text:
            return text
    return "Untitled"

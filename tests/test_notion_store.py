from __future__ import annotations

import json

import allure
import httpx
import pytest

from task_dispatch.config import StoreSettings
from task_dispatch.dispatch.store import ClaimLost, NotionTaskStore, StoreUnavailable

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Notion Transport"),
]


def _page(page_id: str, *, title: str | None, status: str = "Todo", project: str = "web") -> dict:
    properties: dict = {
        "Status": {"type": "select", "select": {"name": status}},
        "Agent": {"type": "select", "select": {"name": "OpenCode"}},
        "Project": {"type": "select", "select": {"name": project}},
    }
    if title is not None:
        properties["Name"] = {
            "type": "title",
            "title": [{"plain_text": part} for part in title.split("|")],
        }
    return {
        "object": "page",
        "id": page_id,
        "url": f"https://www.notion.so/{page_id}",
        "properties": properties,
    }


class NotionStub:
    """Minimal Notion API behind httpx.MockTransport."""

    def __init__(self, pages: list[dict], *, page_size: int = 2) -> None:
        self.pages = {page["id"]: page for page in pages}
        self.order = [page["id"] for page in pages]
        self.page_size = page_size
        self.requests: list[httpx.Request] = []
        self.query_bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == "/v1/databases/db-1":
            return httpx.Response(200, json={"id": "db-1", "data_sources": [{"id": "ds-1"}]})
        if request.method == "POST" and path == "/v1/data_sources/ds-1/query":
            body = json.loads(request.content)
            self.query_bodies.append(body)
            start = int(body.get("start_cursor") or 0)
            chunk = self.order[start : start + self.page_size]
            has_more = start + self.page_size < len(self.order)
            return httpx.Response(
                200,
                json={
                    "results": [self.pages[page_id] for page_id in chunk],
                    "has_more": has_more,
                    "next_cursor": str(start + self.page_size) if has_more else None,
                },
            )
        if path.startswith("/v1/pages/"):
            page_id = path.rsplit("/", 1)[-1]
            if page_id not in self.pages:
                return httpx.Response(404, json={"message": "Could not find page"})
            if request.method == "PATCH":
                body = json.loads(request.content)
                self.pages[page_id]["properties"].update(body["properties"])
            return httpx.Response(200, json=self.pages[page_id])
        return httpx.Response(400, json={"message": f"unexpected {request.method} {path}"})


def _store(stub) -> NotionTaskStore:
    return NotionTaskStore(
        StoreSettings(token="secret_abc", database_id="db-1"),
        transport=httpx.MockTransport(stub),
    )


def test_query_sends_two_predicate_filter_and_follows_pagination() -> None:
    stub = NotionStub(
        [_page("p1", title="One"), _page("p2", title="Two"), _page("p3", title="Three")],
    )

    with _store(stub) as store:
        records = store.query(status_equals="Todo", assignee_equals="OpenCode")

    assert [record.task_id for record in records] == ["p1", "p2", "p3"]
    assert len(stub.query_bodies) == 2
    assert stub.query_bodies[0]["filter"] == {
        "and": [
            {"property": "Status", "select": {"equals": "Todo"}},
            {"property": "Agent", "select": {"equals": "OpenCode"}},
        ],
    }
    assert stub.query_bodies[1]["start_cursor"] == "2"
    first = stub.requests[0]
    assert first.headers["Authorization"] == "Bearer secret_abc"
    assert first.headers["Notion-Version"] == "2025-09-03"


def test_query_resolves_data_source_once() -> None:
    stub = NotionStub([_page("p1", title="One")])

    with _store(stub) as store:
        store.query(status_equals="Todo", assignee_equals="OpenCode")
        store.query(status_equals="Todo", assignee_equals="OpenCode")

    database_calls = [r for r in stub.requests if r.url.path == "/v1/databases/db-1"]
    assert len(database_calls) == 1


def test_record_fields_are_read_from_page_properties() -> None:
    stub = NotionStub(
        [_page("p1", title="Fix |login bug", project="api"), _page("p2", title=None)],
    )

    with _store(stub) as store:
        first, second = store.query(status_equals="Todo", assignee_equals="OpenCode")

    assert first.title == "Fix login bug"
    assert first.status_name == "Todo"
    assert first.assignee == "OpenCode"
    assert first.project == "api"
    assert first.url == "https://www.notion.so/p1"
    assert second.title == "Untitled"


def test_read_and_update_status() -> None:
    stub = NotionStub([_page("p1", title="One")])

    with _store(stub) as store:
        assert store.read_status("p1") == "Todo"
        store.update_status("p1", "In Progress")
        assert store.read_status("p1") == "In Progress"

    patch = next(r for r in stub.requests if r.method == "PATCH")
    assert json.loads(patch.content) == {
        "properties": {"Status": {"select": {"name": "In Progress"}}},
    }


def test_http_errors_become_store_unavailable() -> None:
    def _unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"code": "unauthorized"})

    with _store(_unauthorized) as store:
        with pytest.raises(StoreUnavailable, match="HTTP 401"):
            store.query(status_equals="Todo", assignee_equals="OpenCode")


def test_transport_errors_become_store_unavailable() -> None:
    def _down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _store(_down) as store:
        with pytest.raises(StoreUnavailable, match="connection refused"):
            store.update_status("p1", "In Progress")


def test_database_without_data_source_is_unavailable() -> None:
    def _no_sources(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "db-1", "data_sources": []})

    with _store(_no_sources) as store:
        with pytest.raises(StoreUnavailable, match="data source"):
            store.query(status_equals="Todo", assignee_equals="OpenCode")


def test_transition_status_patches_only_from_expected_status() -> None:
    stub = NotionStub([_page("p1", title="One"), _page("p2", title="Two", status="Done")])

    with _store(stub) as store:
        store.transition_status("p1", expected="Todo", new="In Progress")
        with pytest.raises(ClaimLost) as excinfo:
            store.transition_status("p2", expected="Todo", new="In Progress")

    assert excinfo.value.current_status == "Done"
    patches = [r for r in stub.requests if r.method == "PATCH"]
    assert [r.url.path for r in patches] == ["/v1/pages/p1"]
    assert stub.pages["p2"]["properties"]["Status"]["select"]["name"] == "Done"


def test_page_with_non_object_properties_is_unavailable() -> None:
    page = _page("p1", title="One")
    page["properties"] = [{"Status": "Todo"}]
    stub = NotionStub([page])

    with _store(stub) as store:
        with pytest.raises(StoreUnavailable, match="malformed properties"):
            store.query(status_equals="Todo", assignee_equals="OpenCode")

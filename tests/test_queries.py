"""
Unit tests for the dashboard queries and mutations.

Uses respx to mock the dashboard API, so no backend is required.
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio
import respx

from dashboard_sync.auth import MemoryTokenStore
from dashboard_sync.client import APIError, DashboardClient
from dashboard_sync.queries import (
    dependency_graph_query,
    escalations_query,
    project_escalations_query,
    project_query,
    project_stories_query,
    projects_query,
    submit_escalation_response_mutation,
    update_story_status_mutation,
)
from dashboard_sync.query import QueryClient
from dashboard_sync.types import Story

API_URL = "http://localhost:3000"

STORIES = [
    {"id": "story-1-1", "title": "Login form", "status": "ready", "epicNumber": 1, "storyNumber": 1},
    {"id": "story-1-2", "title": "Session", "status": "done", "epicNumber": 1, "storyNumber": 2},
]

ESCALATIONS = [
    {"id": "esc-1", "projectId": "project-1", "type": "decision", "title": "Pick a DB", "status": "pending"},
    {"id": "esc-2", "projectId": "project-1", "type": "approval", "title": "Merge PR", "status": "resolved"},
]


def envelope(data) -> dict:
    return {"success": True, "data": data, "timestamp": "2025-01-01T00:00:00Z"}


@pytest_asyncio.fixture
async def client():
    client = DashboardClient(token_store=MemoryTokenStore("tok"), query_client=QueryClient(retry=False))
    yield client
    await client.close()


# ============================================================
#  Projects
# ============================================================


@pytest.mark.asyncio
async def test_projects_query_unwraps_envelope(client: DashboardClient) -> None:
    with respx.mock:
        route = respx.get(f"{API_URL}/api/projects").mock(
            return_value=httpx.Response(200, json=envelope([{"id": "project-1", "name": "Demo"}]))
        )
        observer = projects_query(client)
        await observer.start()

        assert route.called
        assert route.calls.last.request.headers["Authorization"] == "Bearer tok"
        assert observer.is_success
        assert observer.data[0].name == "Demo"
        assert client.query_client.get_query_data(("projects",)) == observer.data
        observer.stop()


@pytest.mark.asyncio
async def test_project_query_disabled_without_id(client: DashboardClient) -> None:
    with respx.mock:
        observer = project_query(client, "")
        await observer.start()

        assert not observer.enabled
        assert not observer.is_loading
        assert observer.data is None
        assert len(respx.calls) == 0
        observer.stop()


@pytest.mark.asyncio
async def test_dependency_graph_query_disabled_without_project(client: DashboardClient) -> None:
    with respx.mock:
        async with dependency_graph_query(client, None) as observer:
            assert observer.is_pending
            assert not observer.is_fetching
        assert len(respx.calls) == 0


@pytest.mark.asyncio
async def test_failed_query_surfaces_api_error(client: DashboardClient) -> None:
    with respx.mock:
        respx.get(f"{API_URL}/api/projects/missing").mock(
            return_value=httpx.Response(
                404, json={"error": "NotFound", "message": "Project not found"}
            )
        )
        observer = project_query(client, "missing")
        await observer.start()

        assert observer.is_error
        assert isinstance(observer.error, APIError)
        assert observer.error.status_code == 404
        observer.stop()


# ============================================================
#  Stories: optimistic status update
# ============================================================


def seed_stories(client: DashboardClient) -> list[Story]:
    stories = [Story(**s) for s in STORIES]
    client.query_client.set_query_data(("project-stories", "project-1"), stories)
    return stories


@pytest.mark.asyncio
async def test_story_status_update_rolls_back_on_failure(client: DashboardClient) -> None:
    snapshot = seed_stories(client)
    key = ("project-stories", "project-1")
    seen_mid_flight = []

    def reject(request: httpx.Request) -> httpx.Response:
        seen_mid_flight.append(client.query_client.get_query_data(key)[0].status)
        return httpx.Response(500, json={"error": "InternalError", "message": "Database unavailable"})

    with respx.mock:
        route = respx.patch(f"{API_URL}/api/projects/project-1/stories/story-1-1/status").mock(
            side_effect=reject
        )
        mutation = update_story_status_mutation(client, "project-1")

        with pytest.raises(APIError) as exc_info:
            await mutation.mutate({"story_id": "story-1-1", "status": "review"})

    assert json.loads(route.calls.last.request.content) == {"status": "review"}
    assert seen_mid_flight == ["review"]
    assert exc_info.value.status_code == 500
    assert "Database unavailable" in str(exc_info.value)
    assert client.query_client.get_query_data(key) is snapshot
    assert client.query_client.get_query_data(key)[0].status == "ready"
    assert mutation.is_error


@pytest.mark.asyncio
async def test_story_status_update_success_keeps_write_and_refetches(client: DashboardClient) -> None:
    seed_stories(client)
    key = ("project-stories", "project-1")
    updated = [dict(STORIES[0], status="review"), STORIES[1]]

    with respx.mock:
        respx.patch(f"{API_URL}/api/projects/project-1/stories/story-1-1/status").mock(
            return_value=httpx.Response(204)
        )
        refetch = respx.get(f"{API_URL}/api/projects/project-1/stories").mock(
            return_value=httpx.Response(200, json=envelope(updated))
        )

        observer = project_stories_query(client, "project-1")
        await observer.start()
        assert not refetch.called

        mutation = update_story_status_mutation(client, "project-1")
        await mutation.mutate({"story_id": "story-1-1", "status": "review"})
        assert client.query_client.get_query_data(key)[0].status == "review"

        await client.query_client.wait_for_refetches()
        observer.stop()

    assert refetch.call_count == 1
    assert mutation.is_success
    assert [s.status for s in client.query_client.get_query_data(key)] == ["review", "done"]


@pytest.mark.asyncio
async def test_status_update_without_cached_list(client: DashboardClient) -> None:
    with respx.mock:
        respx.patch(f"{API_URL}/api/projects/project-1/stories/story-9/status").mock(
            return_value=httpx.Response(500, json={"message": "boom"})
        )
        mutation = update_story_status_mutation(client, "project-1")

        with pytest.raises(APIError):
            await mutation.mutate({"story_id": "story-9", "status": "done"})

    assert client.query_client.get_query_data(("project-stories", "project-1")) is None


# ============================================================
#  Escalations
# ============================================================


@pytest.mark.asyncio
async def test_escalations_query_filters_by_status(client: DashboardClient) -> None:
    with respx.mock:
        respx.get(f"{API_URL}/api/escalations").mock(
            return_value=httpx.Response(200, json=envelope(ESCALATIONS))
        )
        pending = escalations_query(client, "pending")
        everything = escalations_query(client)
        await pending.start()
        await everything.start()

        assert [e.id for e in pending.data] == ["esc-1"]
        assert len(everything.data) == 2
        assert pending.query_key == ("escalations", "pending")
        assert everything.query_key == ("escalations", None)
        pending.stop()
        everything.stop()


@pytest.mark.asyncio
async def test_project_escalations_query_passes_project_id(client: DashboardClient) -> None:
    with respx.mock:
        route = respx.get(f"{API_URL}/api/escalations").mock(
            return_value=httpx.Response(200, json=envelope(ESCALATIONS))
        )
        observer = project_escalations_query(client, "project-1")
        await observer.start()

        assert route.calls.last.request.url.params["projectId"] == "project-1"
        assert observer.query_key == ("escalations", "project", "project-1", None)
        observer.stop()


@pytest.mark.asyncio
async def test_submit_escalation_response(client: DashboardClient) -> None:
    client.query_client.set_query_data(("escalations", None), [])
    detail = dict(ESCALATIONS[0], status="resolved", response={"response": "Use Postgres"})

    with respx.mock:
        route = respx.post(f"{API_URL}/api/escalations/esc-1/respond").mock(
            return_value=httpx.Response(200, json=envelope(detail))
        )
        mutation = submit_escalation_response_mutation(client)
        result = await mutation.mutate({"id": "esc-1", "response": "Use Postgres"})

    assert route.called
    assert json.loads(route.calls.last.request.content) == {"response": "Use Postgres"}
    assert result.status == "resolved"
    assert client.query_client.get_query_data(("escalation", "esc-1")) is result
    assert client.query_client.get_query_state(("escalations", None)).is_invalidated

"""
Ready-made queries and mutations for the dashboard domains.

Each query function returns an unstarted :class:`QueryObserver` whose key
encodes every parameter that affects the result. Queries that need an id
are disabled while the id is empty, so no request is made for it.

Polling intervals complement WebSocket invalidation: they recover from
events missed while the socket was down.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from dashboard_sync.query import Mutation, QueryObserver
from dashboard_sync.types import EscalationDetail, RespondToEscalationRequest, Story

if TYPE_CHECKING:
    from dashboard_sync.client import DashboardClient

logger = logging.getLogger(__name__)

MINUTE = 60.0

PROJECTS_STALE_TIME = 5 * MINUTE
PROJECT_STALE_TIME = 2 * MINUTE
WORKFLOW_STATUS_STALE_TIME = 1 * MINUTE
SPRINT_STATUS_STALE_TIME = 2 * MINUTE
STORIES_STALE_TIME = 1 * MINUTE
STORIES_REFETCH_INTERVAL = 30.0
DEPENDENCY_GRAPH_STALE_TIME = 1 * MINUTE
DEPENDENCY_GRAPH_REFETCH_INTERVAL = 30.0
ESCALATIONS_STALE_TIME = 1 * MINUTE
ESCALATIONS_REFETCH_INTERVAL = 30.0
ESCALATION_STALE_TIME = 30.0


# ============================================================
#  Projects
# ============================================================


def projects_query(client: DashboardClient, *, retry: bool | int | None = None) -> QueryObserver:
    """All projects. No polling, WebSocket events keep it fresh."""
    return QueryObserver(
        client.query_client,
        ("projects",),
        client.projects.list,
        stale_time=PROJECTS_STALE_TIME,
        retry=retry,
    )


def project_query(
    client: DashboardClient, project_id: str, *, retry: bool | int | None = None
) -> QueryObserver:
    return QueryObserver(
        client.query_client,
        ("project", project_id),
        partial(client.projects.get, project_id),
        stale_time=PROJECT_STALE_TIME,
        enabled=bool(project_id),
        retry=retry,
    )


def workflow_status_query(
    client: DashboardClient, project_id: str, *, retry: bool | int | None = None
) -> QueryObserver:
    return QueryObserver(
        client.query_client,
        ("workflow-status", project_id),
        partial(client.projects.workflow_status, project_id),
        stale_time=WORKFLOW_STATUS_STALE_TIME,
        enabled=bool(project_id),
        retry=retry,
    )


def sprint_status_query(
    client: DashboardClient, project_id: str, *, retry: bool | int | None = None
) -> QueryObserver:
    return QueryObserver(
        client.query_client,
        ("sprint-status", project_id),
        partial(client.projects.sprint_status, project_id),
        stale_time=SPRINT_STATUS_STALE_TIME,
        enabled=bool(project_id),
        retry=retry,
    )


# ============================================================
#  Stories & dependency graph
# ============================================================


def project_stories_query(
    client: DashboardClient, project_id: str, *, retry: bool | int | None = None
) -> QueryObserver:
    return QueryObserver(
        client.query_client,
        ("project-stories", project_id),
        partial(client.stories.list, project_id),
        stale_time=STORIES_STALE_TIME,
        refetch_interval=STORIES_REFETCH_INTERVAL,
        enabled=bool(project_id),
        retry=retry,
    )


def dependency_graph_query(
    client: DashboardClient, project_id: str | None, *, retry: bool | int | None = None
) -> QueryObserver:
    async def fetch() -> Any:
        if not project_id:
            raise ValueError("Project ID is required")
        return await client.dependencies.graph(project_id)

    return QueryObserver(
        client.query_client,
        ("dependency-graph", project_id),
        fetch,
        stale_time=DEPENDENCY_GRAPH_STALE_TIME,
        refetch_interval=DEPENDENCY_GRAPH_REFETCH_INTERVAL,
        enabled=bool(project_id),
        retry=retry,
    )


def update_story_status_mutation(client: DashboardClient, project_id: str) -> Mutation:
    """Optimistically move a story to a new status.

    ``mutate({"story_id": ..., "status": ...})`` writes the new status into
    the cached story list before the request is sent and restores the
    previous list if the request fails. Updates to the same story are
    serialized.
    """
    query_client = client.query_client
    key = ("project-stories", project_id)

    async def mutation_fn(variables: dict[str, str]) -> None:
        await client.stories.update_status(project_id, variables["story_id"], variables["status"])

    async def on_mutate(variables: dict[str, str]) -> dict[str, Any]:
        # keep an in-flight refetch from overwriting the optimistic write
        await query_client.cancel_queries(key)

        previous: list[Story] | None = query_client.get_query_data(key)
        if previous is not None:
            query_client.set_query_data(
                key,
                [
                    story.model_copy(update={"status": variables["status"]})
                    if story.id == variables["story_id"]
                    else story
                    for story in previous
                ],
            )
        return {"previous_stories": previous}

    def on_error(error: Exception, variables: dict[str, str], context: dict[str, Any] | None) -> None:
        if context and context.get("previous_stories") is not None:
            query_client.set_query_data(key, context["previous_stories"])
        logger.warning(
            "Status update of story %s failed, reverted: %s", variables["story_id"], error
        )

    def on_success(data: Any, variables: dict[str, str], context: Any) -> None:
        query_client.invalidate_queries(key)

    return Mutation(
        query_client,
        mutation_fn,
        on_mutate=on_mutate,
        on_error=on_error,
        on_success=on_success,
        scope=lambda variables: ("story-status", project_id, variables["story_id"]),
    )


# ============================================================
#  Escalations
# ============================================================


def escalations_query(
    client: DashboardClient,
    status: str | None = None,
    *,
    retry: bool | int | None = None,
) -> QueryObserver:
    """All escalations, optionally filtered by status on the client."""

    async def fetch() -> Any:
        escalations = await client.escalations.list()
        if status:
            return [e for e in escalations if e.status == status]
        return escalations

    return QueryObserver(
        client.query_client,
        ("escalations", status),
        fetch,
        stale_time=ESCALATIONS_STALE_TIME,
        refetch_interval=ESCALATIONS_REFETCH_INTERVAL,
        retry=retry,
    )


def project_escalations_query(
    client: DashboardClient,
    project_id: str,
    status: str | None = None,
    *,
    retry: bool | int | None = None,
) -> QueryObserver:
    async def fetch() -> Any:
        escalations = await client.escalations.for_project(project_id)
        if status:
            return [e for e in escalations if e.status == status]
        return escalations

    return QueryObserver(
        client.query_client,
        ("escalations", "project", project_id, status),
        fetch,
        stale_time=ESCALATIONS_STALE_TIME,
        refetch_interval=ESCALATIONS_REFETCH_INTERVAL,
        enabled=bool(project_id),
        retry=retry,
    )


def escalation_query(
    client: DashboardClient, escalation_id: str, *, retry: bool | int | None = None
) -> QueryObserver:
    return QueryObserver(
        client.query_client,
        ("escalation", escalation_id),
        partial(client.escalations.get, escalation_id),
        stale_time=ESCALATION_STALE_TIME,
        enabled=bool(escalation_id),
        retry=retry,
    )


def submit_escalation_response_mutation(client: DashboardClient) -> Mutation:
    """``mutate({"id": ..., "response": ..., "decision": ..., "notes": ...})``."""
    query_client = client.query_client

    async def mutation_fn(variables: dict[str, Any]) -> EscalationDetail:
        request = RespondToEscalationRequest(
            response=variables["response"],
            decision=variables.get("decision"),
            notes=variables.get("notes"),
        )
        return await client.escalations.respond(variables["id"], request)

    def on_success(data: EscalationDetail, variables: dict[str, Any], context: Any) -> None:
        query_client.invalidate_queries(("escalations",))
        query_client.set_query_data(("escalation", variables["id"]), data)

    return Mutation(query_client, mutation_fn, on_success=on_success)

"""
Dashboard sync client for Python.

Keeps an in-process cache of orchestrator dashboard state (projects,
stories, workflow status, dependency graphs, escalations) in sync with
the server through WebSocket-driven invalidation and polling.

Example::

    from dashboard_sync import DashboardClient, SyncConfig, project_stories_query

    async with DashboardClient(SyncConfig()) as client:
        await client.watch_project("project-1")

        stories = project_stories_query(client, "project-1")
        async with stories:
            for story in stories.data:
                print(story.id, story.status)
"""

from dashboard_sync.auth import AuthSession, FileTokenStore, MemoryTokenStore, TokenStore
from dashboard_sync.bridges import (
    CacheInvalidationBridge,
    DependencyBridge,
    EscalationBridge,
    ProjectBridge,
    StoryBridge,
)
from dashboard_sync.client import APIError, DashboardClient
from dashboard_sync.connection import (
    ConnectionManager,
    ConnectionRegistry,
    connections,
    reconnect_delay_ms,
)
from dashboard_sync.events import EventBus
from dashboard_sync.queries import (
    dependency_graph_query,
    escalation_query,
    escalations_query,
    project_escalations_query,
    project_query,
    project_stories_query,
    projects_query,
    sprint_status_query,
    submit_escalation_response_mutation,
    update_story_status_mutation,
    workflow_status_query,
)
from dashboard_sync.query import Mutation, QueryClient, QueryObserver
from dashboard_sync.types import (
    ConnectionStatus,
    DependencyGraph,
    EscalationDetail,
    EscalationStatus,
    EventType,
    Project,
    ReconnectConfig,
    SprintStatus,
    Story,
    SyncConfig,
    WebSocketEvent,
    WorkflowStatus,
)

__all__ = [
    "DashboardClient",
    "APIError",
    "SyncConfig",
    "ReconnectConfig",
    "AuthSession",
    "TokenStore",
    "FileTokenStore",
    "MemoryTokenStore",
    "ConnectionManager",
    "ConnectionRegistry",
    "ConnectionStatus",
    "connections",
    "reconnect_delay_ms",
    "EventBus",
    "EventType",
    "WebSocketEvent",
    "CacheInvalidationBridge",
    "ProjectBridge",
    "StoryBridge",
    "DependencyBridge",
    "EscalationBridge",
    "QueryClient",
    "QueryObserver",
    "Mutation",
    "projects_query",
    "project_query",
    "workflow_status_query",
    "sprint_status_query",
    "project_stories_query",
    "dependency_graph_query",
    "update_story_status_mutation",
    "escalations_query",
    "project_escalations_query",
    "escalation_query",
    "submit_escalation_response_mutation",
    "Project",
    "Story",
    "SprintStatus",
    "WorkflowStatus",
    "DependencyGraph",
    "EscalationStatus",
    "EscalationDetail",
]

__version__ = "0.1.0"

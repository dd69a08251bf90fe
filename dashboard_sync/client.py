"""
Dashboard sync client: REST API access plus live cache synchronization.

Talks to the orchestrator dashboard backend using ``httpx`` for async HTTP
and ``websockets`` for the status-updates stream.

Usage::

    from dashboard_sync import DashboardClient, project_stories_query

    async with DashboardClient() as client:
        await client.watch_project("project-1")
        stories = project_stories_query(client, "project-1")
        await stories.start()
        print(stories.data)
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote as url_quote

import httpx
from pydantic import BaseModel

from dashboard_sync.auth import AuthSession, FileTokenStore, TokenStore
from dashboard_sync.bridges import (
    CacheInvalidationBridge,
    DependencyBridge,
    EscalationBridge,
    NotifyCallback,
    ProjectBridge,
    StoryBridge,
)
from dashboard_sync.connection import (
    ConnectFactory,
    ConnectionManager,
    ConnectionRegistry,
    connections,
)
from dashboard_sync.query import QueryClient
from dashboard_sync.types import (
    APIErrorBody,
    CreateProjectRequest,
    DependencyGraph,
    EscalationDetail,
    EscalationStatus,
    OrchestratorStatus,
    Project,
    RespondToEscalationRequest,
    SprintStatus,
    StartOrchestratorRequest,
    Story,
    StoryDetail,
    SyncConfig,
    UpdateProjectRequest,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


class APIError(httpx.HTTPStatusError):
    """An error response from the dashboard API.

    Carries the server's error code, message, details and request id. The
    exception message never includes the raw response body.
    """

    def __init__(
        self,
        message: str,
        *,
        request: httpx.Request,
        response: httpx.Response,
        body: APIErrorBody,
    ) -> None:
        super().__init__(message, request=request, response=response)
        self.status_code = response.status_code
        self.body = body
        self.error = body.error
        self.details = body.details
        self.request_id = body.request_id


def _unwrap(data: Any) -> Any:
    """Strip the ``{success, data, timestamp}`` envelope when present."""
    if isinstance(data, dict) and "data" in data and "success" in data:
        return data["data"]
    return data


def _body(model: BaseModel | None) -> dict[str, Any]:
    if model is None:
        return {}
    return model.model_dump(by_alias=True, exclude_none=True)


def _seg(value: str) -> str:
    return url_quote(value, safe="")


class _HttpClient:
    """Thin wrapper around httpx for dashboard API requests."""

    def __init__(
        self,
        api_url: str,
        token_store: TokenStore | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = api_url.rstrip("/")
        self._token_store = token_store
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request to the dashboard API.

        The bearer token is read from the token store on every call so a
        login or logout takes effect immediately. A ``401`` clears the
        stored token before the error is raised.
        """
        headers: dict[str, str] = {}
        token = self._token_store.get_token() if self._token_store else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = await self._client.request(
            method=method,
            url=path,
            json=body,
            headers=headers,
        )

        if response.status_code >= 400:
            try:
                err = APIErrorBody.model_validate(response.json())
            except ValueError:
                err = APIErrorBody(
                    error="UnknownError",
                    message=f"HTTP {response.status_code}: {response.reason_phrase}",
                )

            if response.status_code == 401 and self._token_store is not None:
                self._token_store.clear_token()
                logger.warning("Unauthorized response, cleared stored auth token")

            raise APIError(
                f"API request failed ({response.status_code}): {err.message}",
                request=response.request,
                response=response,
                body=err,
            )

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


# ============================================================
#  API managers
# ============================================================


class _ProjectsApi:
    """Project endpoints."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def list(self) -> list[Project]:
        data = await self._http.request("GET", "/api/projects")
        return [Project(**p) for p in _unwrap(data) or []]

    async def get(self, project_id: str) -> Project:
        data = await self._http.request("GET", f"/api/projects/{_seg(project_id)}")
        return Project(**_unwrap(data))

    async def create(self, request: CreateProjectRequest) -> Project:
        data = await self._http.request("POST", "/api/projects", _body(request))
        return Project(**_unwrap(data))

    async def update(self, project_id: str, request: UpdateProjectRequest) -> Project:
        data = await self._http.request(
            "PATCH", f"/api/projects/{_seg(project_id)}", _body(request)
        )
        return Project(**_unwrap(data))

    async def delete(self, project_id: str) -> None:
        await self._http.request("DELETE", f"/api/projects/{_seg(project_id)}")

    async def workflow_status(self, project_id: str) -> WorkflowStatus:
        data = await self._http.request(
            "GET", f"/api/projects/{_seg(project_id)}/workflow-status"
        )
        return WorkflowStatus(**_unwrap(data))

    async def sprint_status(self, project_id: str) -> SprintStatus:
        data = await self._http.request(
            "GET", f"/api/projects/{_seg(project_id)}/sprint-status"
        )
        return SprintStatus(**_unwrap(data))

    async def stories(self, project_id: str) -> list[Story]:
        data = await self._http.request("GET", f"/api/projects/{_seg(project_id)}/stories")
        return [Story(**s) for s in _unwrap(data) or []]

    async def story(self, project_id: str, story_id: str) -> StoryDetail:
        data = await self._http.request(
            "GET", f"/api/projects/{_seg(project_id)}/stories/{_seg(story_id)}"
        )
        return StoryDetail(**_unwrap(data))


class _StoriesApi:
    """Kanban story endpoints."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def list(self, project_id: str) -> list[Story]:
        data = await self._http.request("GET", f"/api/projects/{_seg(project_id)}/stories")
        return [Story(**s) for s in _unwrap(data) or []]

    async def update_status(self, project_id: str, story_id: str, status: str) -> None:
        """Move a story to ``status`` (manual drag-and-drop mode)."""
        await self._http.request(
            "PATCH",
            f"/api/projects/{_seg(project_id)}/stories/{_seg(story_id)}/status",
            {"status": status},
        )


class _DependenciesApi:
    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def graph(self, project_id: str) -> DependencyGraph:
        data = await self._http.request(
            "GET", f"/api/projects/{_seg(project_id)}/dependency-graph"
        )
        return DependencyGraph(**_unwrap(data))


class _EscalationsApi:
    """Escalation endpoints."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def list(self) -> list[EscalationStatus]:
        data = await self._http.request("GET", "/api/escalations")
        return [EscalationStatus(**e) for e in _unwrap(data) or []]

    async def for_project(self, project_id: str) -> list[EscalationStatus]:
        data = await self._http.request(
            "GET", f"/api/escalations?projectId={_seg(project_id)}"
        )
        return [EscalationStatus(**e) for e in _unwrap(data) or []]

    async def get(self, escalation_id: str) -> EscalationDetail:
        data = await self._http.request("GET", f"/api/escalations/{_seg(escalation_id)}")
        return EscalationDetail(**_unwrap(data))

    async def respond(
        self, escalation_id: str, request: RespondToEscalationRequest
    ) -> EscalationDetail:
        data = await self._http.request(
            "POST", f"/api/escalations/{_seg(escalation_id)}/respond", _body(request)
        )
        return EscalationDetail(**_unwrap(data))


class _OrchestratorsApi:
    """Orchestrator control endpoints."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def status(self, project_id: str) -> OrchestratorStatus:
        data = await self._http.request(
            "GET", f"/api/orchestrators/{_seg(project_id)}/status"
        )
        return OrchestratorStatus(**_unwrap(data))

    async def start(
        self, project_id: str, request: StartOrchestratorRequest | None = None
    ) -> None:
        await self._http.request(
            "POST", f"/api/orchestrators/{_seg(project_id)}/start", _body(request)
        )

    async def pause(self, project_id: str) -> None:
        await self._http.request("POST", f"/api/orchestrators/{_seg(project_id)}/pause", {})

    async def resume(self, project_id: str) -> None:
        await self._http.request("POST", f"/api/orchestrators/{_seg(project_id)}/resume", {})


# ============================================================
#  Main client
# ============================================================


class DashboardClient:
    """
    The main dashboard sync client.

    Owns the REST API managers, the query cache and the WebSocket bridges
    that keep the cache in sync with server-pushed events. Bridges share
    one connection per WebSocket URL through a :class:`ConnectionRegistry`.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        token_store: TokenStore | None = None,
        query_client: QueryClient | None = None,
        registry: ConnectionRegistry | None = None,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.token_store: TokenStore = token_store if token_store is not None else FileTokenStore()
        self.auth = AuthSession(self.token_store)
        self.query_client = query_client or QueryClient()

        self._http = _HttpClient(
            self.config.api_url, self.token_store, timeout=self.config.request_timeout
        )
        self._registry = registry if registry is not None else connections
        self._connect_factory = connect_factory

        # Sub-managers
        self.projects = _ProjectsApi(self._http)
        self.stories = _StoriesApi(self._http)
        self.dependencies = _DependenciesApi(self._http)
        self.escalations = _EscalationsApi(self._http)
        self.orchestrators = _OrchestratorsApi(self._http)

        # State
        self._held: list[ConnectionManager] = []
        self._bridges: list[CacheInvalidationBridge] = []

    # ---- Connections ----

    async def connection(self, project_id: str | None = None) -> ConnectionManager:
        """Acquire the shared status-updates connection.

        Pass ``project_id`` to ask the server to filter events; bridges
        filter on the client side either way.
        """
        reconnect = self.config.reconnect
        manager = await self._registry.acquire(
            self.config.ws_url,
            project_id=project_id,
            reconnect=reconnect.enabled,
            max_reconnect_attempts=reconnect.max_attempts,
            base_delay_ms=reconnect.base_delay_ms,
            max_delay_ms=reconnect.max_delay_ms,
            max_events=self.config.max_events,
            token_store=self.token_store,
            connect_factory=self._connect_factory,
        )
        self._held.append(manager)
        return manager

    # ---- Bridges ----

    async def project_bridge(self, project_id: str | None = None) -> ProjectBridge:
        return self._attach(ProjectBridge(self.query_client, await self.connection(), project_id))

    async def story_bridge(self, project_id: str) -> StoryBridge:
        return self._attach(StoryBridge(self.query_client, await self.connection(), project_id))

    async def dependency_bridge(self, project_id: str | None) -> DependencyBridge:
        return self._attach(
            DependencyBridge(self.query_client, await self.connection(), project_id)
        )

    async def escalation_bridge(
        self,
        project_id: str | None = None,
        on_notify: NotifyCallback | None = None,
    ) -> EscalationBridge:
        return self._attach(
            EscalationBridge(
                self.query_client, await self.connection(), project_id, on_notify=on_notify
            )
        )

    async def watch_project(
        self, project_id: str
    ) -> tuple[ProjectBridge, StoryBridge, DependencyBridge]:
        """Attach every project-scoped bridge for ``project_id``."""
        return (
            await self.project_bridge(project_id),
            await self.story_bridge(project_id),
            await self.dependency_bridge(project_id),
        )

    def _attach(self, bridge: Any) -> Any:
        bridge.attach()
        self._bridges.append(bridge)
        return bridge

    # ---- Lifecycle ----

    async def close(self) -> None:
        """Detach bridges, release connections and close the HTTP client."""
        for bridge in self._bridges:
            bridge.detach()
        self._bridges.clear()

        held, self._held = self._held, []
        for manager in held:
            await self._registry.release(manager)

        await self._http.close()
        logger.debug("Dashboard client closed")

    async def __aenter__(self) -> DashboardClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

"""
Pydantic models for the dashboard sync client.

Mirrors the dashboard API and WebSocket payloads with Pythonic
naming conventions (snake_case) and camelCase aliases on the wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================
#  Configuration
# ============================================================


class ReconnectConfig(BaseModel):
    """WebSocket reconnection settings."""

    enabled: bool = True
    max_attempts: int = 10
    base_delay_ms: int = 1000
    max_delay_ms: int = 16000


class SyncConfig(BaseSettings):
    """Configuration for connecting to the dashboard backend.

    Every field can be set from a ``DASHBOARD_``-prefixed environment
    variable (``DASHBOARD_API_URL``, ``DASHBOARD_WS_URL``,
    ``DASHBOARD_RECONNECT__MAX_ATTEMPTS`` ...). Empty variables are ignored.
    """

    api_url: str = "http://localhost:3000"
    ws_url: str = "ws://localhost:3002/ws/status-updates"
    request_timeout: float = 30.0
    # events kept in each connection's log; None keeps everything
    max_events: int | None = 1000
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_nested_delimiter="__",
        env_ignore_empty=True,
    )


# ============================================================
#  Connection
# ============================================================


class ConnectionStatus(str, Enum):
    """State of the status-updates WebSocket."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# ============================================================
#  Events
# ============================================================


WILDCARD = "*"


class EventType(str, Enum):
    """Event types pushed by the status-updates WebSocket."""

    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_PHASE_CHANGED = "project.phase.changed"
    STORY_STATUS_CHANGED = "story.status.changed"
    DEPENDENCY_CHANGED = "dependency.changed"
    ESCALATION_CREATED = "escalation.created"
    ESCALATION_RESPONDED = "escalation.responded"
    ORCHESTRATOR_STARTED = "orchestrator.started"
    ORCHESTRATOR_PAUSED = "orchestrator.paused"
    ORCHESTRATOR_RESUMED = "orchestrator.resumed"
    AGENT_STARTED = "agent.started"
    AGENT_COMPLETED = "agent.completed"
    PR_CREATED = "pr.created"
    PR_MERGED = "pr.merged"
    WORKFLOW_ERROR = "workflow.error"


class StoryStatusChangedData(BaseModel):
    """Payload of ``story.status.changed``."""

    story_id: str = Field(alias="storyId")
    status: str | None = None
    old_status: str | None = Field(None, alias="oldStatus")
    new_status: str | None = Field(None, alias="newStatus")
    epic_id: str | None = Field(None, alias="epicId")
    title: str | None = None

    model_config = {"populate_by_name": True}

    @property
    def current_status(self) -> str | None:
        return self.new_status or self.status


class DependencyChangedData(BaseModel):
    """Payload of ``dependency.changed``."""

    action: str | None = None
    edge: DependencyEdge | None = None


class ProjectPhaseChangedData(BaseModel):
    """Payload of ``project.phase.changed``."""

    id: str | None = None
    old_phase: str | None = Field(None, alias="oldPhase")
    new_phase: str | None = Field(None, alias="newPhase")

    model_config = {"populate_by_name": True}


class EscalationEventData(BaseModel):
    """Payload of ``escalation.created`` / ``escalation.responded``."""

    escalation_id: str | None = Field(None, alias="escalationId")
    id: str | None = None
    type: str | None = None
    priority: str | None = None
    message: str | None = None

    model_config = {"populate_by_name": True}


class AgentEventData(BaseModel):
    """Payload of ``agent.started`` / ``agent.completed``."""

    agent_id: str | None = Field(None, alias="agentId")
    agent_name: str | None = Field(None, alias="agentName")
    story_id: str | None = Field(None, alias="storyId")

    model_config = {"populate_by_name": True}


class PullRequestEventData(BaseModel):
    """Payload of ``pr.created`` / ``pr.merged``."""

    pr_number: int | None = Field(None, alias="prNumber")
    pr_url: str | None = Field(None, alias="prUrl")
    story_id: str | None = Field(None, alias="storyId")

    model_config = {"populate_by_name": True}


class WebSocketEvent(BaseModel):
    """An event delivered over the status-updates WebSocket.

    ``event_type`` discriminates the payload carried in ``data``; use
    :meth:`payload` to get it as the matching typed model. Unknown event
    types are kept as-is so newer servers do not break older clients.
    """

    event_type: str = Field(alias="eventType")
    project_id: str | None = Field(None, alias="projectId")
    data: Any = Field(default_factory=dict)
    timestamp: str | float | None = None

    model_config = {"populate_by_name": True}

    def payload(self) -> Any:
        """Return ``data`` parsed into the model registered for this event type.

        Falls back to the raw data when no model is registered or the data
        does not match it.
        """
        model = EVENT_PAYLOADS.get(self.event_type)
        if model is None or not isinstance(self.data, dict):
            return self.data
        try:
            return model.model_validate(self.data)
        except ValidationError:
            return self.data

    def data_field(self, name: str) -> Any:
        """Read a raw field from ``data`` (``None`` when absent)."""
        if isinstance(self.data, dict):
            return self.data.get(name)
        return None


# ============================================================
#  API envelope & errors
# ============================================================


class APIResponse(BaseModel):
    """``{success, data, timestamp}`` envelope returned by the REST API."""

    success: bool = True
    data: Any = None
    timestamp: str | None = None


class APIErrorBody(BaseModel):
    """Error body returned by the REST API."""

    error: str = "UnknownError"
    message: str = "Request failed"
    details: Any = None
    request_id: str | None = Field(None, alias="requestId")

    model_config = {"populate_by_name": True}


# ============================================================
#  Projects
# ============================================================


class ProjectConfig(BaseModel):
    """Per-project orchestrator settings."""

    workflow_path: str | None = Field(None, alias="workflowPath")
    auto_start: bool | None = Field(None, alias="autoStart")
    escalation_strategy: str | None = Field(None, alias="escalationStrategy")

    model_config = {"populate_by_name": True}


class Project(BaseModel):
    """A project managed by the orchestrator."""

    id: str
    name: str
    status: str = "active"
    phase: str = "analysis"
    created_at: str | None = Field(None, alias="createdAt")
    updated_at: str | None = Field(None, alias="updatedAt")
    repository: str | None = None
    config: ProjectConfig | None = None

    model_config = {"populate_by_name": True}


class CreateProjectRequest(BaseModel):
    name: str
    repository: str
    config: ProjectConfig | None = None


class UpdateProjectRequest(BaseModel):
    name: str | None = None
    status: str | None = None
    config: ProjectConfig | None = None


class PhaseProgress(BaseModel):
    phase: str
    progress: float = 0
    completed_tasks: int = Field(0, alias="completedTasks")
    total_tasks: int = Field(0, alias="totalTasks")

    model_config = {"populate_by_name": True}


class WorkflowStatus(BaseModel):
    """Workflow progress for a project."""

    project_id: str = Field(alias="projectId")
    current_phase: str = Field(alias="currentPhase")
    current_story: str | None = Field(None, alias="currentStory")
    phase_progress: list[PhaseProgress] = Field(default_factory=list, alias="phaseProgress")
    estimated_completion: str | None = Field(None, alias="estimatedCompletion")

    model_config = {"populate_by_name": True}


class SprintStatus(BaseModel):
    """Sprint status: story key -> status."""

    project_key: str = Field(alias="projectKey")
    current_epic: str = Field(alias="currentEpic")
    stories: dict[str, str] = Field(default_factory=dict)
    velocity: float | None = None

    model_config = {"populate_by_name": True}


# ============================================================
#  Stories
# ============================================================


class Epic(BaseModel):
    number: int
    title: str
    color: str | None = None


class StoryTask(BaseModel):
    id: str
    description: str
    completed: bool = False
    subtasks: list[StoryTask] | None = None


class Story(BaseModel):
    """A story as shown on the Kanban board."""

    id: str
    project_id: str | None = Field(None, alias="projectId")
    epic_number: int | None = Field(None, alias="epicNumber")
    story_number: int | None = Field(None, alias="storyNumber")
    title: str = ""
    status: str
    pr_url: str | None = Field(None, alias="prUrl")
    dependencies: list[str] | None = None
    epic: Epic | None = None
    description: str | None = None
    acceptance_criteria: list[str] | None = Field(None, alias="acceptanceCriteria")
    tasks: list[StoryTask] | None = None
    story_points: int | None = Field(None, alias="storyPoints")

    model_config = {"populate_by_name": True}


class StoryDetail(BaseModel):
    """Full story detail from the project API."""

    id: str
    key: str
    title: str
    status: str
    assigned_to: str | None = Field(None, alias="assignedTo")
    story_points: int | None = Field(None, alias="storyPoints")
    epic: str | None = None
    acceptance_criteria: list[str] | None = Field(None, alias="acceptanceCriteria")
    description: str = ""
    tasks: list[StoryTask] = Field(default_factory=list)
    dependencies: list[str] | None = None
    blocked_by: list[str] | None = Field(None, alias="blockedBy")

    model_config = {"populate_by_name": True}


# ============================================================
#  Dependency graph
# ============================================================


class DependencyNode(BaseModel):
    id: str
    story_id: str = Field(alias="storyId")
    epic_number: int = Field(alias="epicNumber")
    story_number: int = Field(alias="storyNumber")
    title: str
    status: str
    complexity: str = "medium"
    has_worktree: bool = Field(False, alias="hasWorktree")

    model_config = {"populate_by_name": True}


class DependencyEdge(BaseModel):
    source: str
    target: str
    type: str = "hard"
    is_blocking: bool = Field(False, alias="isBlocking")

    model_config = {"populate_by_name": True}


class DependencyGraph(BaseModel):
    """Stories and their dependency edges for one project."""

    nodes: list[DependencyNode] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list, alias="criticalPath")

    model_config = {"populate_by_name": True}


# ============================================================
#  Escalations
# ============================================================


class EscalationResponse(BaseModel):
    response: str
    decision: str | None = None
    notes: str | None = None


class RespondToEscalationRequest(EscalationResponse):
    pass


class EscalationStatus(BaseModel):
    """An escalation raised by a workflow."""

    id: str
    project_id: str = Field(alias="projectId")
    type: str
    severity: str = "medium"
    title: str
    description: str = ""
    context: Any = None
    status: str = "pending"
    created_at: str | None = Field(None, alias="createdAt")
    responded_at: str | None = Field(None, alias="respondedAt")

    model_config = {"populate_by_name": True}


class EscalationDetail(EscalationStatus):
    agent_id: str | None = Field(None, alias="agentId")
    workflow_step: str | None = Field(None, alias="workflowStep")
    options: list[str] | None = None
    response: EscalationResponse | None = None


# ============================================================
#  Orchestrators
# ============================================================


class OrchestratorStatus(BaseModel):
    running: bool
    active_projects: int = Field(0, alias="activeProjects")
    active_workflows: int = Field(0, alias="activeWorkflows")
    health: str = "healthy"
    uptime: float = 0

    model_config = {"populate_by_name": True}


class StartOrchestratorRequest(BaseModel):
    workflow_path: str | None = Field(None, alias="workflowPath")

    model_config = {"populate_by_name": True}


# ============================================================
#  Auth
# ============================================================


class User(BaseModel):
    id: str
    username: str
    email: str | None = None


EVENT_PAYLOADS: dict[str, type[BaseModel]] = {
    EventType.STORY_STATUS_CHANGED.value: StoryStatusChangedData,
    EventType.DEPENDENCY_CHANGED.value: DependencyChangedData,
    EventType.PROJECT_PHASE_CHANGED.value: ProjectPhaseChangedData,
    EventType.ESCALATION_CREATED.value: EscalationEventData,
    EventType.ESCALATION_RESPONDED.value: EscalationEventData,
    EventType.AGENT_STARTED.value: AgentEventData,
    EventType.AGENT_COMPLETED.value: AgentEventData,
    EventType.PR_CREATED.value: PullRequestEventData,
    EventType.PR_MERGED.value: PullRequestEventData,
}

DependencyChangedData.model_rebuild()

"""
Cache invalidation bridges.

A bridge watches the status-updates event stream and turns the events
relevant to its domain (projects, stories, dependency graphs, escalations)
into targeted :meth:`QueryClient.invalidate_queries` calls.

Each rule maps an event type to key templates; ``PROJECT`` in a template is
replaced by the bridge's project id (or the event's, for unbound bridges).
Bridges bound to a project discard events for any other project.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from dashboard_sync.connection import ConnectionManager
from dashboard_sync.query import QueryClient, QueryKey
from dashboard_sync.types import WILDCARD, EventType, WebSocketEvent

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[WebSocketEvent], Any]


class _ProjectPlaceholder:
    def __repr__(self) -> str:
        return "PROJECT"


PROJECT = _ProjectPlaceholder()

Rules = dict[str, tuple[tuple[Any, ...], ...]]


class CacheInvalidationBridge:
    """Base class: event filtering and rule-driven invalidation."""

    rules: Rules = {}
    requires_project = False

    def __init__(
        self,
        query_client: QueryClient,
        connection: ConnectionManager | None = None,
        project_id: str | None = None,
    ) -> None:
        self.query_client = query_client
        self.connection = connection
        self.project_id = project_id or None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> CacheInvalidationBridge:
        """Start receiving events from the connection."""
        if self.connection is None:
            raise ValueError(f"{type(self).__name__} has no connection to attach to")
        if self._unsubscribe is None:
            self._unsubscribe = self.connection.subscribe(WILDCARD, self.handle_event)
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> CacheInvalidationBridge:
        return self.attach()

    def __exit__(self, *exc_info: Any) -> None:
        self.detach()

    def is_relevant(self, event: WebSocketEvent) -> bool:
        if event.event_type not in self.rules:
            return False
        if self.requires_project and not self.project_id:
            return False
        if self.project_id is not None and event.project_id != self.project_id:
            return False
        return True

    def keys_for(self, event: WebSocketEvent) -> list[QueryKey]:
        project_id = self.project_id or event.project_id
        keys: list[QueryKey] = []
        for template in self.rules.get(event.event_type, ()):
            if PROJECT in template:
                if not project_id:
                    continue
                template = tuple(project_id if part is PROJECT else part for part in template)
            keys.append(template)
        return keys

    def handle_event(self, event: WebSocketEvent) -> list[QueryKey]:
        """Invalidate the keys ``event`` affects. Returns them."""
        if not self.is_relevant(event):
            return []
        keys = self.keys_for(event)
        for key in keys:
            self.query_client.invalidate_queries(key)
        if keys:
            logger.debug(
                "%s invalidated %d key(s) for %s",
                type(self).__name__,
                len(keys),
                event.event_type,
            )
        self.after_event(event)
        return keys

    def handle_events(self, events: Iterable[WebSocketEvent]) -> int:
        """Process a batch in order. Returns the number of invalidations."""
        return sum(len(self.handle_event(event)) for event in events)

    def after_event(self, event: WebSocketEvent) -> None:
        """Hook for side effects once a relevant event was handled."""


class ProjectBridge(CacheInvalidationBridge):
    """Project detail, project list, sprint and workflow status.

    Unbound (``project_id=None``) it follows every project.
    """

    rules: Rules = {
        EventType.PROJECT_PHASE_CHANGED.value: (
            ("project", PROJECT),
            ("projects",),
            ("workflow-status", PROJECT),
        ),
        EventType.PROJECT_CREATED.value: (("projects",), ("project", PROJECT)),
        EventType.PROJECT_UPDATED.value: (("projects",), ("project", PROJECT)),
        EventType.STORY_STATUS_CHANGED.value: (
            ("sprint-status", PROJECT),
            ("workflow-status", PROJECT),
        ),
        EventType.AGENT_STARTED.value: (("workflow-status", PROJECT),),
        EventType.AGENT_COMPLETED.value: (("workflow-status", PROJECT),),
        EventType.PR_CREATED.value: (("project", PROJECT), ("workflow-status", PROJECT)),
        EventType.PR_MERGED.value: (("project", PROJECT), ("workflow-status", PROJECT)),
        EventType.WORKFLOW_ERROR.value: (("project", PROJECT), ("workflow-status", PROJECT)),
        EventType.ORCHESTRATOR_STARTED.value: (("project", PROJECT),),
        EventType.ORCHESTRATOR_PAUSED.value: (("project", PROJECT),),
        EventType.ORCHESTRATOR_RESUMED.value: (("project", PROJECT),),
    }


class StoryBridge(CacheInvalidationBridge):
    """Kanban story list of one project."""

    requires_project = True
    rules: Rules = {
        EventType.STORY_STATUS_CHANGED.value: (("project-stories", PROJECT),),
    }


class DependencyBridge(CacheInvalidationBridge):
    """Dependency graph of one project. Does nothing without a project id."""

    requires_project = True
    rules: Rules = {
        EventType.STORY_STATUS_CHANGED.value: (("dependency-graph", PROJECT),),
        EventType.DEPENDENCY_CHANGED.value: (("dependency-graph", PROJECT),),
    }


class EscalationBridge(CacheInvalidationBridge):
    """Escalation lists and details.

    ``on_notify`` is called for every new escalation so the caller can
    surface it (the dashboard shows a toast).
    """

    rules: Rules = {
        EventType.ESCALATION_CREATED.value: (("escalations",),),
        EventType.ESCALATION_RESPONDED.value: (("escalations",),),
    }

    def __init__(
        self,
        query_client: QueryClient,
        connection: ConnectionManager | None = None,
        project_id: str | None = None,
        *,
        on_notify: NotifyCallback | None = None,
    ) -> None:
        super().__init__(query_client, connection, project_id)
        self.on_notify = on_notify

    def keys_for(self, event: WebSocketEvent) -> list[QueryKey]:
        keys = super().keys_for(event)
        if event.event_type == EventType.ESCALATION_RESPONDED.value:
            escalation_id = event.data_field("escalationId")
            if escalation_id:
                keys.append(("escalation", escalation_id))
        return keys

    def after_event(self, event: WebSocketEvent) -> None:
        if event.event_type != EventType.ESCALATION_CREATED.value or self.on_notify is None:
            return
        try:
            self.on_notify(event)
        except Exception:
            logger.exception("Escalation notification callback failed")

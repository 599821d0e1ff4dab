"""Execution lifecycle events and the in-process event bus."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from .models import AuditLogEntry, new_id, utcnow

if TYPE_CHECKING:
    from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventCategory(str, Enum):
    AGENT = "agent"
    WORKFLOW = "workflow"
    AUDIT = "audit"


class EventType(str, Enum):
    """Closed set of event kinds delivered on the bus."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"

    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"

    AUDIT_LOGGED = "audit_logged"

    @property
    def category(self) -> EventCategory:
        return _EVENT_CATEGORIES[self]


_EVENT_CATEGORIES: Dict[EventType, EventCategory] = {
    EventType.EXECUTION_STARTED: EventCategory.AGENT,
    EventType.EXECUTION_COMPLETED: EventCategory.AGENT,
    EventType.EXECUTION_FAILED: EventCategory.AGENT,
    EventType.APPROVAL_REQUIRED: EventCategory.AGENT,
    EventType.APPROVAL_GRANTED: EventCategory.AGENT,
    EventType.APPROVAL_REJECTED: EventCategory.AGENT,
    EventType.WORKFLOW_STARTED: EventCategory.WORKFLOW,
    EventType.WORKFLOW_COMPLETED: EventCategory.WORKFLOW,
    EventType.WORKFLOW_FAILED: EventCategory.WORKFLOW,
    EventType.STEP_STARTED: EventCategory.WORKFLOW,
    EventType.STEP_COMPLETED: EventCategory.WORKFLOW,
    EventType.STEP_FAILED: EventCategory.WORKFLOW,
    EventType.AUDIT_LOGGED: EventCategory.AUDIT,
}


class _BaseEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: new_id("event"))
    type: EventType
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_category(self):
        if self.type.category.value != self.category:
            raise ValueError(
                f"Event type {self.type.value} does not belong to category {self.category}"
            )
        return self


class AgentEvent(_BaseEvent):
    """Single-agent lifecycle and approval events."""

    category: Literal["agent"] = "agent"
    agent_id: str


class WorkflowEvent(_BaseEvent):
    """Workflow run and step lifecycle events."""

    category: Literal["workflow"] = "workflow"
    workflow_id: str


class AuditEvent(_BaseEvent):
    """Fan-out of a freshly appended audit entry."""

    category: Literal["audit"] = "audit"
    type: EventType = EventType.AUDIT_LOGGED
    entry: AuditLogEntry


Event = Annotated[Union[AgentEvent, WorkflowEvent, AuditEvent], Field(discriminator="category")]

EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)

EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


def parse_event(data: str | bytes) -> Event:
    """Deserialize an event from its JSON form."""
    return EVENT_ADAPTER.validate_json(data)


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: "EventBus", handler: EventHandler, types: Optional[frozenset]):
        self._bus = bus
        self.handler = handler
        self.types = types

    def accepts(self, event: Event) -> bool:
        return self.types is None or event.type in self.types

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Typed publish/subscribe channel for lifecycle events.

    Handlers may be plain callables or coroutine functions. A handler that
    raises is logged and does not prevent delivery to other handlers. When a
    transport is configured every event is also published on the topic
    ``<prefix>.<category>``.
    """

    def __init__(
        self,
        transport: Optional["BaseTransport"] = None,
        topic_prefix: str = "opscrew",
    ) -> None:
        self._subscriptions: List[Subscription] = []
        self._transport = transport
        self._topic_prefix = topic_prefix

    def subscribe(
        self, handler: EventHandler, types: Optional[Iterable[EventType]] = None
    ) -> Subscription:
        """Register ``handler`` for ``types`` (all events when omitted)."""
        subscription = Subscription(
            self, handler, frozenset(EventType(t) for t in types) if types else None
        )
        self._subscriptions.append(subscription)
        return subscription

    def subscribe_category(
        self, handler: EventHandler, category: EventCategory
    ) -> Subscription:
        types = [t for t, c in _EVENT_CATEGORIES.items() if c == category]
        return self.subscribe(handler, types)

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def topic_for(self, event: Event) -> str:
        return f"{self._topic_prefix}.{event.category}"

    async def publish(self, event: Event) -> None:
        """Deliver ``event`` to matching subscribers and the transport."""
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Event handler {subscription.handler!r} failed for {event.type.value}"
                )

        if self._transport is not None:
            try:
                await self._transport.publish(self.topic_for(event), event)
            except Exception as e:
                logger.error(
                    f"Failed to forward {event.type.value} event to transport: {e}"
                )

"""
Workflow events and their dispatcher.

Services build event objects while a mutation is in flight and hand them
to an EventDispatcher only after the transaction commits, so consumers
never observe a change that was rolled back.

Usage:
    dispatcher = EventDispatcher([NotificationService.handle_event])
    dispatcher.dispatch([TransitionCompleted(...)])
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

EXTENSION_KEY = "accountability.events"


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Event types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionCompleted:
    """A report or directive changed status."""
    document_type: str
    document_id: int
    old_status: str
    new_status: str
    actor_id: int
    comment: str | None = None
    occurred_at: datetime = field(default_factory=_now)

    event_type = "transition_completed"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data


@dataclass(frozen=True)
class ConfidentialityMarked:
    """An item received a new active marking. Carries no reason on purpose."""
    item_type: str
    item_id: int
    marked_by_id: int
    marker_committee_id: int
    occurred_at: datetime = field(default_factory=_now)

    event_type = "confidentiality_marked"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data


@dataclass(frozen=True)
class AccessGranted:
    """A user was given (or re-given) visibility of a marked item."""
    item_type: str
    item_id: int
    granted_to_user_id: int
    granted_by_id: int
    occurred_at: datetime = field(default_factory=_now)

    event_type = "access_granted"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════════════

class EventDispatcher:
    """Fans committed events out to an explicit list of subscribers.

    Delivery is fire-and-forget: a failing subscriber is logged and the
    remaining subscribers still run. Nothing is returned to the engine.
    """

    def __init__(self, subscribers: Iterable[Callable] = ()):
        self._subscribers = tuple(subscribers)

    @property
    def subscribers(self) -> tuple:
        return self._subscribers

    def dispatch(self, events) -> None:
        for event in events:
            for subscriber in self._subscribers:
                try:
                    subscriber(event)
                except Exception:
                    logger.exception(
                        "Event subscriber %s failed",
                        getattr(subscriber, "__qualname__", repr(subscriber)),
                        extra={"event_type": event.event_type},
                    )


def default_dispatcher() -> EventDispatcher:
    """Dispatcher wired with the in-app notification store and the forwarding graph."""
    from accountability.services.directive_workflow import DirectiveWorkflow
    from accountability.services.notification import NotificationService

    return EventDispatcher([
        NotificationService.handle_event,
        DirectiveWorkflow.on_transition_completed,
    ])


def resolve_dispatcher(dispatcher: EventDispatcher | None = None) -> EventDispatcher:
    """Return *dispatcher*, else the one installed on the current app."""
    if dispatcher is not None:
        return dispatcher
    if has_app_context():
        installed = current_app.extensions.get(EXTENSION_KEY)
        if installed is not None:
            return installed
    return EventDispatcher()

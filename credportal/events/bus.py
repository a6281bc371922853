from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Protocol

from credportal.events.contracts import build_event_envelope


EventHandler = Callable[[dict[str, Any]], None]


class Subscription:
    """Handle returned by ``subscribe``; ``unsubscribe`` is safe to call twice."""

    def __init__(self, detach: Callable[[], None]) -> None:
        self._detach: Callable[[], None] | None = detach

    @property
    def active(self) -> bool:
        return self._detach is not None

    def unsubscribe(self) -> None:
        detach, self._detach = self._detach, None
        if detach is not None:
            detach()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class EventBus(Protocol):
    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        ...

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        ...


class InMemoryEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        self._subscribers[event_type].append(handler)

        def _detach() -> None:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return Subscription(_detach)

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        # Copies so a handler may unsubscribe while being dispatched.
        for handler in list(self._subscribers.get(event_type, [])):
            handler(envelope)
        for handler in list(self._subscribers.get("*", [])):
            handler(envelope)


def build_event_bus() -> EventBus:
    return InMemoryEventBus()


def publish_event(
    bus: EventBus,
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None,
    payload: dict[str, Any],
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    envelope = build_event_envelope(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        payload=payload,
        reason=reason,
        correlation_id=correlation_id,
    )
    bus.publish(event_type, envelope)
    return envelope

"""Entity-scoped change notifications and the query cache built on them.

Every envelope published on the bus names the entity it changed. The change
feed fans it out to subscribers of that ``(entity_type, entity_id)`` pair and,
when the payload references an application, to that application's
subscribers as well. Cached views are dropped on change, never patched.
"""

from __future__ import annotations

from collections import defaultdict
from threading import RLock
from typing import Any, Callable

from credportal.events.bus import EventBus, EventHandler, Subscription

EntityKey = tuple[str, str]


class ChangeFeed:
    def __init__(self, bus: EventBus) -> None:
        self._lock = RLock()
        self._handlers: dict[EntityKey, list[EventHandler]] = defaultdict(list)
        self._bus_subscription = bus.subscribe("*", self._dispatch)

    def subscribe(self, entity_type: str, entity_id: str, handler: EventHandler) -> Subscription:
        key = (entity_type, entity_id)
        with self._lock:
            self._handlers[key].append(handler)

        def _detach() -> None:
            with self._lock:
                handlers = self._handlers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._handlers.pop(key, None)

        return Subscription(_detach)

    def watched(self) -> set[EntityKey]:
        with self._lock:
            return set(self._handlers)

    def close(self) -> None:
        self._bus_subscription.unsubscribe()
        with self._lock:
            self._handlers.clear()

    def _dispatch(self, envelope: dict[str, Any]) -> None:
        keys = [(str(envelope.get("entity_type")), str(envelope.get("entity_id")))]
        application_id = (envelope.get("payload") or {}).get("application_id")
        if application_id and keys[0] != ("application", str(application_id)):
            keys.append(("application", str(application_id)))

        for key in keys:
            with self._lock:
                handlers = list(self._handlers.get(key, []))
            for handler in handlers:
                handler(envelope)


class QueryCache:
    """Cache-scoped copies of entity views, keyed by entity id."""

    def __init__(self, feed: ChangeFeed) -> None:
        self._feed = feed
        self._lock = RLock()
        self._values: dict[EntityKey, dict[str, Any]] = {}
        self._subscriptions: dict[EntityKey, Subscription] = {}

    def get_or_load(self, entity_type: str, entity_id: str, view: str, loader: Callable[[], Any]) -> Any:
        key = (entity_type, entity_id)
        with self._lock:
            views = self._values.get(key)
            if views is not None and view in views:
                return views[view]

        value = loader()
        with self._lock:
            self._values.setdefault(key, {})[view] = value
            if key not in self._subscriptions:
                self._subscriptions[key] = self._feed.subscribe(
                    entity_type, entity_id, lambda _envelope, k=key: self.invalidate(*k)
                )
        return value

    def cached_views(self, entity_type: str, entity_id: str) -> set[str]:
        with self._lock:
            return set(self._values.get((entity_type, entity_id), {}))

    def invalidate(self, entity_type: str, entity_id: str) -> None:
        key = (entity_type, entity_id)
        with self._lock:
            self._values.pop(key, None)
            subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            subscription.unsubscribe()

    def clear(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._values.clear()
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.unsubscribe()

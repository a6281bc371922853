from __future__ import annotations

from typing import Any

from credportal.domain.models import AuditEvent, to_row
from credportal.events.bus import EventBus, Subscription
from credportal.infra.repositories import CredentialingRepository


class AuditService:
    """Writes one immutable audit row for every published event."""

    def __init__(self, repo: CredentialingRepository) -> None:
        self.repo = repo

    def attach(self, bus: EventBus) -> Subscription:
        return bus.subscribe("*", self.handle_event)

    def handle_event(self, envelope: dict[str, Any]) -> dict[str, Any]:
        event = AuditEvent(
            entity_type=envelope["entity_type"],
            entity_id=envelope["entity_id"],
            actor_id=envelope.get("actor_id"),
            event_type=envelope["event_type"],
            payload=dict(envelope.get("payload") or {}),
            reason=envelope.get("reason"),
            correlation_id=envelope.get("correlation_id"),
        )
        return self.repo.create_audit_event(to_row(event))

    def history(self, entity_type: str, entity_id: str, limit: int = 1000) -> list[dict[str, Any]]:
        return self.repo.list_audit_events(entity_type=entity_type, entity_id=entity_id, limit=limit)

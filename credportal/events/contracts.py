from __future__ import annotations

from typing import Any

EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    "application.created": {"candidate_id", "program_id"},
    "application.submitted": {"candidate_id", "from", "to"},
    "application.analysis_started": {"candidate_id", "from", "to", "analysis_cycle"},
    "application.resubmitted": {"candidate_id", "from", "to", "analysis_cycle"},
    "decision.recorded": {"decision_id", "candidate_id", "outcome", "from", "to"},
    "contract.generated": {"contract_number", "application_id"},
    "contract.dispatched": {"provider_document_id", "application_id"},
    "contract.dispatch_failed": {"error", "application_id"},
    "contract.viewed": {"application_id"},
    "contract.signed": {"signed_at", "application_id"},
    "contract.failed": {"reason", "application_id"},
    "contract.superseded": {"superseded_by", "application_id"},
    "provider.synced": {"application_id", "created"},
    "provider.status_changed": {"from", "to", "reason"},
    "sanction.applied": {"provider_id", "sanction_type"},
    "sanction.status_changed": {"provider_id", "from", "to"},
    "certificate.issued": {"provider_id", "number", "regularity"},
}

CORE_EVENTS = set(EVENT_REQUIRED_KEYS)

ENTITY_TYPES = {"application", "contract", "provider", "sanction", "certificate"}


def is_valid_event_type(event_type: str) -> bool:
    return event_type in CORE_EVENTS


def validate_event_payload(event_type: str, payload: dict[str, Any]) -> None:
    if not is_valid_event_type(event_type):
        raise ValueError(f"Unsupported event type: {event_type}")

    missing = [k for k in sorted(EVENT_REQUIRED_KEYS[event_type]) if k not in payload]
    if missing:
        raise ValueError(f"Event payload missing required keys for {event_type}: {missing}")


def build_event_envelope(
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None,
    payload: dict[str, Any],
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unsupported entity type: {entity_type}")
    validate_event_payload(event_type, payload)
    return {
        "event_type": event_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "actor_id": actor_id,
        "payload": payload,
        "reason": reason,
        "correlation_id": correlation_id,
    }

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from credportal.domain.states import (
    ApplicationStatus,
    ContractStatus,
    DecisionOutcome,
    ProviderStatus,
    Regularity,
    SanctionStatus,
    SanctionType,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid4())


def to_row(obj: Any) -> dict[str, Any]:
    """Flatten a model into a plain store row (enums become their values)."""
    row = asdict(obj)
    for key, value in row.items():
        if isinstance(value, Enum):
            row[key] = value.value
    return row


@dataclass
class Application:
    candidate_id: str
    program_id: str
    payload: dict[str, Any]
    id: str = field(default_factory=_new_id)
    status: ApplicationStatus = ApplicationStatus.DRAFT
    analysis_cycle: int = 0
    submitted_at: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class RejectedField:
    field_name: str
    section: str
    reason: str
    current_value: str | None = None
    expected_value: str | None = None


@dataclass
class RejectedDocument:
    document_id: str
    reason: str
    required_action: str
    document_type: str | None = None


@dataclass
class Decision:
    application_id: str
    analyst_id: str
    outcome: DecisionOutcome
    justification: str
    analysis_cycle: int
    rejected_fields: list[dict[str, Any]] = field(default_factory=list)
    rejected_documents: list[dict[str, Any]] = field(default_factory=list)
    correction_deadline: str | None = None
    id: str = field(default_factory=_new_id)
    decided_at: str = field(default_factory=utc_now)


@dataclass
class ContractTemplate:
    name: str
    html: str
    is_active: bool = True
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class Contract:
    application_id: str
    contract_number: str
    document_html: str
    template_id: str | None = None
    id: str = field(default_factory=_new_id)
    status: ContractStatus = ContractStatus.GENERATED
    provider_document_id: str | None = None
    signature_url: str | None = None
    supersedes: str | None = None
    superseded_by: str | None = None
    failure_reason: str | None = None
    signer: dict[str, Any] | None = None
    generated_at: str = field(default_factory=utc_now)
    dispatched_at: str | None = None
    viewed_at: str | None = None
    signed_at: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Provider:
    application_id: str
    name: str
    tax_id: str | None
    email: str | None
    id: str = field(default_factory=_new_id)
    status: ProviderStatus = ProviderStatus.ACTIVE
    status_reason: str | None = None
    suspension_start: str | None = None
    suspension_end: str | None = None
    deaccreditation_date: str | None = None
    notes: str = ""
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class ProviderStatusChange:
    provider_id: str
    previous_status: str
    new_status: str
    reason: str
    changed_by: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class Sanction:
    provider_id: str
    sanction_type: SanctionType
    reason: str
    applied_by: str
    start_date: str
    end_date: str | None = None
    amount: float | None = None
    id: str = field(default_factory=_new_id)
    status: SanctionStatus = SanctionStatus.ACTIVE
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Certificate:
    provider_id: str
    provider_name: str
    number: str
    verification_code: str
    verification_hash: str
    regularity: Regularity
    valid_from: str
    valid_until: str
    issued_by: str
    pending_items: list[str] = field(default_factory=list)
    active: bool = True
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class AuditEvent:
    entity_type: str
    entity_id: str
    actor_id: str | None
    event_type: str
    payload: dict[str, Any]
    reason: str | None = None
    correlation_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class Notification:
    user_id: str
    title: str
    message: str
    kind: str
    related_type: str
    related_id: str
    read: bool = False
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class WorkflowMessage:
    application_id: str
    sender_id: str
    sender_type: str
    content: str
    kind: str
    visible_to: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)

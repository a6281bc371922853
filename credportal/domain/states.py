from __future__ import annotations

from enum import Enum


class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_ANALYSIS = "under_analysis"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_CORRECTION = "pending_correction"


class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_CORRECTION = "pending_correction"

    def application_status(self) -> ApplicationStatus:
        return ApplicationStatus(self.value)


class RequiredAction(str, Enum):
    RESEND = "resend"
    COMPLEMENT = "complement"
    CORRECT = "correct"


class ContractStatus(str, Enum):
    GENERATED = "generated"
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class SanctionType(str, Enum):
    WARNING = "warning"
    SUSPENSION = "suspension"
    FINE = "fine"
    DEACCREDITATION = "deaccreditation"


class SanctionStatus(str, Enum):
    ACTIVE = "active"
    SERVED = "served"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class ProviderStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACCREDITED = "deaccredited"
    ON_LEAVE = "on_leave"
    INACTIVE = "inactive"


class Regularity(str, Enum):
    REGULAR = "regular"
    REGULAR_WITH_RESERVATIONS = "regular_with_reservations"
    IRREGULAR = "irregular"
    INACTIVE = "inactive"


APPLICATION_TRANSITIONS: dict[ApplicationStatus, set[ApplicationStatus]] = {
    ApplicationStatus.DRAFT: {ApplicationStatus.SUBMITTED},
    ApplicationStatus.SUBMITTED: {ApplicationStatus.UNDER_ANALYSIS},
    ApplicationStatus.UNDER_ANALYSIS: {
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.PENDING_CORRECTION,
    },
    ApplicationStatus.PENDING_CORRECTION: {ApplicationStatus.UNDER_ANALYSIS},
    ApplicationStatus.APPROVED: set(),
    ApplicationStatus.REJECTED: set(),
}

# Contracts are append-only: a regenerated contract supersedes the old row.
CONTRACT_TRANSITIONS: dict[ContractStatus, set[ContractStatus]] = {
    ContractStatus.GENERATED: {ContractStatus.PENDING_SIGNATURE, ContractStatus.SUPERSEDED},
    ContractStatus.PENDING_SIGNATURE: {
        ContractStatus.SIGNED,
        ContractStatus.FAILED,
        ContractStatus.SUPERSEDED,
    },
    ContractStatus.FAILED: {ContractStatus.SUPERSEDED},
    ContractStatus.SIGNED: set(),
    ContractStatus.SUPERSEDED: set(),
}

SANCTION_TRANSITIONS: dict[SanctionStatus, set[SanctionStatus]] = {
    SanctionStatus.ACTIVE: {SanctionStatus.SERVED, SanctionStatus.CANCELLED, SanctionStatus.SUSPENDED},
    SanctionStatus.SUSPENDED: {SanctionStatus.ACTIVE, SanctionStatus.CANCELLED},
    SanctionStatus.SERVED: set(),
    SanctionStatus.CANCELLED: set(),
}

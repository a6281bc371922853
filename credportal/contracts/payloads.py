from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from credportal.domain.states import (
    DecisionOutcome,
    ProviderStatus,
    RequiredAction,
    SanctionStatus,
    SanctionType,
)


class RejectedFieldPayload(BaseModel):
    field_name: str = Field(min_length=1)
    section: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    current_value: str | None = None
    expected_value: str | None = None


class RejectedDocumentPayload(BaseModel):
    document_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    required_action: RequiredAction
    document_type: str | None = None


class DecisionContract(BaseModel):
    outcome: DecisionOutcome
    justification: str
    rejected_fields: list[RejectedFieldPayload] = Field(default_factory=list)
    rejected_documents: list[RejectedDocumentPayload] = Field(default_factory=list)
    correction_deadline: date | None = None
    min_justification_length: int = Field(default=100, exclude=True)

    @model_validator(mode="after")
    def _validate_rules(self) -> "DecisionContract":
        text = (self.justification or "").strip()
        if len(text) < self.min_justification_length:
            raise ValueError(
                f"justification must have at least {self.min_justification_length} characters "
                f"(got {len(text)})"
            )
        if self.outcome == DecisionOutcome.PENDING_CORRECTION and self.correction_deadline is None:
            raise ValueError("correction_deadline is required when requesting correction")
        return self


class DecisionRequest(BaseModel):
    outcome: DecisionOutcome
    justification: str
    rejected_fields: list[RejectedFieldPayload] = Field(default_factory=list)
    rejected_documents: list[RejectedDocumentPayload] = Field(default_factory=list)
    correction_deadline: date | None = None


class GenerateContractRequest(BaseModel):
    template_id: str | None = None


class ReprocessContractsRequest(BaseModel):
    contract_ids: list[str] | None = None


class SignerPayload(BaseModel):
    name: str | None = None
    email: str | None = None
    tax_id: str | None = Field(default=None, alias="cpf")
    signed_at: str | None = None

    model_config = {"populate_by_name": True}


class ProviderDocumentPayload(BaseModel):
    id: str = Field(min_length=1)
    status: str | None = None

    model_config = {"extra": "allow"}


SignatureEventType = Literal["document.signed", "document.rejected", "document.expired", "document.viewed"]


class SignatureWebhookEvent(BaseModel):
    event: SignatureEventType
    document: ProviderDocumentPayload
    signer: SignerPayload | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ProviderStatusChangeContract(BaseModel):
    new_status: ProviderStatus
    justification: str
    start_date: date | None = None
    end_date: date | None = None
    effective_date: date | None = None
    detailed_reason: str | None = None
    min_justification_length: int = Field(default=100, exclude=True)

    @model_validator(mode="after")
    def _validate_rules(self) -> "ProviderStatusChangeContract":
        if len((self.justification or "").strip()) < self.min_justification_length:
            raise ValueError(f"justification must have at least {self.min_justification_length} characters")
        if self.new_status in {ProviderStatus.SUSPENDED, ProviderStatus.ON_LEAVE}:
            if not self.start_date or not self.end_date:
                raise ValueError("start_date and end_date are required for suspended/on_leave")
            if self.end_date < self.start_date:
                raise ValueError("end_date must not precede start_date")
        if self.new_status == ProviderStatus.DEACCREDITED and not self.effective_date:
            raise ValueError("effective_date is required for deaccreditation")
        return self


class ProviderStatusChangeRequest(BaseModel):
    new_status: ProviderStatus
    justification: str
    start_date: date | None = None
    end_date: date | None = None
    effective_date: date | None = None
    detailed_reason: str | None = None


class SanctionContract(BaseModel):
    sanction_type: SanctionType
    reason: str = Field(min_length=3)
    start_date: date
    end_date: date | None = None
    amount: float | None = None

    @model_validator(mode="after")
    def _validate_rules(self) -> "SanctionContract":
        if self.sanction_type == SanctionType.FINE and (self.amount is None or self.amount <= 0):
            raise ValueError("fine sanctions require a positive amount")
        if self.sanction_type == SanctionType.SUSPENSION and self.end_date is None:
            raise ValueError("suspension sanctions require an end_date")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class SanctionStatusRequest(BaseModel):
    status: SanctionStatus


class IssueCertificateRequest(BaseModel):
    force: bool = False


class TaxIdValidationRequest(BaseModel):
    id: str = Field(min_length=1)
    birthdate: date | None = None


class LicenseValidationRequest(BaseModel):
    id: str = Field(min_length=1)
    state: str = Field(min_length=2, max_length=2)


class IdValidationResult(BaseModel):
    valid: bool
    data: dict[str, Any] | None = None
    message: str | None = None


class GeocodeRequest(BaseModel):
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    force_refresh: bool = False

    @model_validator(mode="after")
    def _require_location(self) -> "GeocodeRequest":
        if not (self.address or self.city):
            raise ValueError("address or city is required")
        return self


class GeocodeResult(BaseModel):
    latitude: float
    longitude: float
    cached: bool
    provider: str = "nominatim"
    display_name: str | None = None


class BatchItemResult(BaseModel):
    entity_id: str
    success: bool
    status: str | None = None
    new_entity_id: str | None = None
    error: str | None = None


class BatchReport(BaseModel):
    items: list[BatchItemResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.success)

    def summary(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed"

    def as_response(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "summary": self.summary(),
            "items": [item.model_dump(mode="json") for item in self.items],
        }


def validation_messages(exc: ValidationError) -> list[str]:
    return [str(err.get("msg", "")).removeprefix("Value error, ") for err in exc.errors()]


class CreateApplicationRequest(BaseModel):
    program_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

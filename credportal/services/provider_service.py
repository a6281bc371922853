from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import ValidationError

from credportal.config import Settings, settings as default_settings
from credportal.contracts.payloads import ProviderStatusChangeContract, validation_messages
from credportal.domain.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from credportal.domain.models import Provider, ProviderStatusChange, to_row, utc_now
from credportal.domain.session import MANAGEMENT_ROLES, SYSTEM_SESSION, SessionContext, require_roles
from credportal.domain.states import ProviderStatus
from credportal.events.bus import EventBus, publish_event
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import get_logger
from credportal.services.contract_service import candidate_data

logger = get_logger("services.provider")

DATED_STATUSES = {ProviderStatus.SUSPENDED, ProviderStatus.ON_LEAVE}


class ProviderService:
    def __init__(
        self,
        repo: CredentialingRepository,
        bus: EventBus,
        config: Settings | None = None,
    ) -> None:
        self.repo = repo
        self.bus = bus
        self.min_justification_length = (config or default_settings).min_justification_length

    def get_provider(self, provider_id: str) -> dict[str, Any]:
        row = self.repo.get_provider(provider_id)
        if not row:
            raise NotFoundError("provider", provider_id)
        return row

    def sync_from_contract(self, contract: dict[str, Any]) -> dict[str, Any]:
        """Create or refresh the provider record once a contract is signed."""
        application_id = str(contract["application_id"])
        application = self.repo.get_application(application_id)
        if not application:
            raise NotFoundError("application", application_id)

        person = candidate_data(application)
        note = f"Contract {contract['contract_number']} signed at {contract.get('signed_at') or utc_now()}"
        existing = self.repo.find_provider_by_application(application_id)

        if existing:
            notes = existing.get("notes") or ""
            if note not in notes:
                notes = f"{notes}\n{note}".strip()
            row = self.repo.update_provider(
                existing["id"],
                {"name": person.get("name") or existing.get("name"), "email": person.get("email"), "notes": notes},
            )
            created = False
        else:
            provider = Provider(
                application_id=application_id,
                name=person.get("name") or "",
                tax_id=person.get("tax_id"),
                email=person.get("email"),
                notes=note,
            )
            row = self.repo.create_provider(to_row(provider))
            created = True

        publish_event(
            self.bus,
            event_type="provider.synced",
            entity_type="provider",
            entity_id=row["id"],
            actor_id=SYSTEM_SESSION.user_id,
            payload={"application_id": application_id, "created": created, "contract_id": contract["id"]},
        )
        logger.info("Provider synced from signed contract", extra={"provider_id": row["id"], "created": created})
        return row

    def change_status(
        self,
        provider_id: str,
        session: SessionContext,
        new_status: ProviderStatus | str,
        justification: str,
        start_date: date | None = None,
        end_date: date | None = None,
        effective_date: date | None = None,
        detailed_reason: str | None = None,
    ) -> dict[str, Any]:
        require_roles(session, MANAGEMENT_ROLES, "change provider status")
        try:
            change = ProviderStatusChangeContract(
                new_status=new_status,
                justification=justification or "",
                start_date=start_date,
                end_date=end_date,
                effective_date=effective_date,
                detailed_reason=detailed_reason,
                min_justification_length=self.min_justification_length,
            )
        except ValidationError as exc:
            messages = validation_messages(exc)
            raise ValidationFailedError("; ".join(messages), errors=messages) from exc

        provider = self.get_provider(provider_id)
        current = ProviderStatus(provider["status"])
        if current == change.new_status:
            raise InvalidStateError(f"Provider {provider_id} is already {current.value}", provider_id=provider_id)
        if current == ProviderStatus.DEACCREDITED and change.new_status == ProviderStatus.ACTIVE:
            # Re-entry needs a new application.
            raise InvalidTransitionError("provider", current.value, change.new_status.value)

        dated = change.new_status in DATED_STATUSES
        updates = {
            "status": change.new_status.value,
            "status_reason": change.justification.strip(),
            "suspension_start": change.start_date.isoformat() if dated else None,
            "suspension_end": change.end_date.isoformat() if dated else None,
        }
        if change.new_status == ProviderStatus.DEACCREDITED:
            updates["deaccreditation_date"] = change.effective_date.isoformat()

        metadata = {
            "start_date": change.start_date.isoformat() if change.start_date else None,
            "end_date": change.end_date.isoformat() if change.end_date else None,
            "effective_date": change.effective_date.isoformat() if change.effective_date else None,
            "detailed_reason": change.detailed_reason,
        }
        return self._write_status(provider, current, updates, change.justification.strip(), session, metadata)

    def mirror_status(
        self,
        provider_id: str,
        target: ProviderStatus,
        reason: str,
        session: SessionContext,
        updates: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Status write driven by sanctions; skips the manual-change rules."""
        provider = self.get_provider(provider_id)
        current = ProviderStatus(provider["status"])
        if current == target:
            return None
        if current == ProviderStatus.DEACCREDITED:
            logger.info("Deaccredited provider left untouched", extra={"provider_id": provider_id, "to": target.value})
            return None
        fields = {"status": target.value, "status_reason": reason, **(updates or {})}
        return self._write_status(provider, current, fields, reason, session, {"source": "sanction"})

    def _write_status(
        self,
        provider: dict[str, Any],
        current: ProviderStatus,
        updates: dict[str, Any],
        reason: str,
        session: SessionContext,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        provider_id = provider["id"]
        row = self.repo.update_provider(provider_id, updates, expected_status=current.value)
        if row is None:
            raise InvalidStateError(f"Provider {provider_id} changed concurrently", provider_id=provider_id)

        history = ProviderStatusChange(
            provider_id=provider_id,
            previous_status=current.value,
            new_status=updates["status"],
            reason=reason,
            changed_by=session.user_id,
            metadata=metadata,
        )
        self.repo.add_provider_status_change(to_row(history))
        publish_event(
            self.bus,
            event_type="provider.status_changed",
            entity_type="provider",
            entity_id=provider_id,
            actor_id=session.user_id,
            payload={
                "from": current.value,
                "to": updates["status"],
                "reason": reason,
                "application_id": provider.get("application_id"),
            },
            reason=reason,
            correlation_id=session.request_id,
        )
        logger.info(
            "Provider status changed",
            extra={"provider_id": provider_id, "from": current.value, "to": updates["status"]},
        )
        return row

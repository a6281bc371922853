from __future__ import annotations

from datetime import date
from typing import Any, Callable

from pydantic import ValidationError

from credportal.contracts.payloads import BatchItemResult, BatchReport, SanctionContract, validation_messages
from credportal.domain.errors import CredentialingError, InvalidStateError, NotFoundError, ValidationFailedError
from credportal.domain.models import Sanction, to_row
from credportal.domain.session import MANAGEMENT_ROLES, ROLE_SYSTEM, SessionContext, require_roles
from credportal.domain.state_machine import sanction_machine
from credportal.domain.states import ProviderStatus, SanctionStatus, SanctionType
from credportal.events.bus import EventBus, publish_event
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import get_logger
from credportal.services.provider_service import ProviderService

logger = get_logger("services.sanction")

SCHEDULER_ROLES = MANAGEMENT_ROLES | {ROLE_SYSTEM}


class SanctionService:
    def __init__(
        self,
        repo: CredentialingRepository,
        bus: EventBus,
        providers: ProviderService,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.repo = repo
        self.bus = bus
        self.providers = providers
        self.today = today

    def apply_sanction(
        self,
        provider_id: str,
        session: SessionContext,
        sanction_type: SanctionType | str,
        reason: str,
        start_date: date | str,
        end_date: date | str | None = None,
        amount: float | None = None,
    ) -> dict[str, Any]:
        require_roles(session, MANAGEMENT_ROLES, "apply sanctions")
        try:
            payload = SanctionContract(
                sanction_type=sanction_type,
                reason=reason or "",
                start_date=start_date,
                end_date=end_date,
                amount=amount,
            )
        except ValidationError as exc:
            messages = validation_messages(exc)
            raise ValidationFailedError("; ".join(messages), errors=messages) from exc

        provider = self.providers.get_provider(provider_id)
        if provider.get("status") == ProviderStatus.DEACCREDITED.value:
            raise InvalidStateError(f"Provider {provider_id} is deaccredited", provider_id=provider_id)

        sanction = Sanction(
            provider_id=provider_id,
            sanction_type=payload.sanction_type,
            reason=payload.reason.strip(),
            applied_by=session.user_id,
            start_date=payload.start_date.isoformat(),
            end_date=payload.end_date.isoformat() if payload.end_date else None,
            amount=payload.amount,
        )
        row = self.repo.create_sanction(to_row(sanction))
        publish_event(
            self.bus,
            event_type="sanction.applied",
            entity_type="sanction",
            entity_id=sanction.id,
            actor_id=session.user_id,
            payload={
                "provider_id": provider_id,
                "sanction_type": sanction.sanction_type.value,
                "start_date": sanction.start_date,
                "end_date": sanction.end_date,
                "amount": sanction.amount,
            },
            reason=sanction.reason,
            correlation_id=session.request_id,
        )
        logger.info(
            "Sanction applied",
            extra={"sanction_id": sanction.id, "provider_id": provider_id, "sanction_type": sanction.sanction_type.value},
        )

        if sanction.sanction_type == SanctionType.SUSPENSION:
            self.providers.mirror_status(
                provider_id,
                ProviderStatus.SUSPENDED,
                f"Suspension sanction: {sanction.reason}",
                session,
                {"suspension_start": sanction.start_date, "suspension_end": sanction.end_date},
            )
        elif sanction.sanction_type == SanctionType.DEACCREDITATION:
            self.providers.mirror_status(
                provider_id,
                ProviderStatus.DEACCREDITED,
                f"Deaccreditation sanction: {sanction.reason}",
                session,
                {"deaccreditation_date": sanction.start_date},
            )
        return row

    def change_sanction_status(
        self,
        sanction_id: str,
        target: SanctionStatus | str,
        session: SessionContext,
    ) -> dict[str, Any]:
        require_roles(session, MANAGEMENT_ROLES, "change sanction status")
        return self._set_status(sanction_id, SanctionStatus(target), session)

    def _set_status(self, sanction_id: str, target: SanctionStatus, session: SessionContext) -> dict[str, Any]:
        sanction = self.repo.get_sanction(sanction_id)
        if not sanction:
            raise NotFoundError("sanction", sanction_id)

        current = SanctionStatus(sanction["status"])
        sanction_machine.transition(current, target)
        row = self.repo.update_sanction(sanction_id, {"status": target.value}, expected_status=current.value)
        if row is None:
            raise InvalidStateError(f"Sanction {sanction_id} changed concurrently", sanction_id=sanction_id)

        provider_id = str(sanction["provider_id"])
        publish_event(
            self.bus,
            event_type="sanction.status_changed",
            entity_type="sanction",
            entity_id=sanction_id,
            actor_id=session.user_id,
            payload={"provider_id": provider_id, "from": current.value, "to": target.value},
            correlation_id=session.request_id,
        )

        if sanction.get("sanction_type") == SanctionType.SUSPENSION.value:
            self._sync_suspension(provider_id, row, session)
        return row

    def _sync_suspension(self, provider_id: str, sanction: dict[str, Any], session: SessionContext) -> None:
        active = self.repo.list_sanctions(provider_id, statuses=[SanctionStatus.ACTIVE.value])
        active_suspensions = [s for s in active if s.get("sanction_type") == SanctionType.SUSPENSION.value]
        if active_suspensions:
            latest = active_suspensions[0]
            self.providers.mirror_status(
                provider_id,
                ProviderStatus.SUSPENDED,
                f"Suspension sanction: {latest.get('reason')}",
                session,
                {"suspension_start": latest.get("start_date"), "suspension_end": latest.get("end_date")},
            )
            return

        provider = self.providers.get_provider(provider_id)
        if provider.get("status") == ProviderStatus.SUSPENDED.value:
            self.providers.mirror_status(
                provider_id,
                ProviderStatus.ACTIVE,
                f"Suspension {sanction['id']} ended ({sanction['status']})",
                session,
                {"suspension_start": None, "suspension_end": None},
            )

    def serve_expired_sanctions(self, session: SessionContext, today: date | None = None) -> BatchReport:
        require_roles(session, SCHEDULER_ROLES, "serve expired sanctions")
        cutoff = (today or self.today()).isoformat()
        expired = [
            s for s in self.repo.list_sanctions(statuses=[SanctionStatus.ACTIVE.value])
            if s.get("end_date") and str(s["end_date"]) < cutoff
        ]

        report = BatchReport()
        for sanction in expired:
            try:
                row = self._set_status(sanction["id"], SanctionStatus.SERVED, session)
                report.items.append(BatchItemResult(entity_id=sanction["id"], success=True, status=row["status"]))
            except CredentialingError as exc:
                logger.warning("Serving sanction failed", extra={"sanction_id": sanction["id"], "error": exc.message})
                report.items.append(BatchItemResult(entity_id=sanction["id"], success=False, error=exc.message))

        logger.info("Expired sanctions served", extra={"succeeded": report.succeeded, "failed": report.failed})
        return report

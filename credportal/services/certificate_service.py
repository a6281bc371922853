from __future__ import annotations

import hashlib
import secrets
from datetime import date, timedelta
from typing import Any, Callable

from credportal.domain.errors import InvalidStateError
from credportal.domain.models import Certificate, to_row
from credportal.domain.session import REVIEW_ROLES, SessionContext, require_roles
from credportal.domain.states import ProviderStatus, Regularity, SanctionStatus, SanctionType
from credportal.events.bus import EventBus, publish_event
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import get_logger
from credportal.services.provider_service import ProviderService

logger = get_logger("services.certificate")

VALIDITY_DAYS = {
    Regularity.REGULAR: 90,
    Regularity.REGULAR_WITH_RESERVATIONS: 60,
    Regularity.IRREGULAR: 30,
}
BLOCKING_SANCTIONS = {SanctionType.SUSPENSION.value, SanctionType.DEACCREDITATION.value}
CODE_BYTES = 6


def certificate_hash(provider_id: str, number: str, regularity: str, valid_from: str) -> str:
    raw = f"{provider_id}|{number}|{regularity}|{valid_from}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class CertificateService:
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

    def assess_regularity(self, provider: dict[str, Any]) -> tuple[Regularity, list[str]]:
        status = provider.get("status")
        if status in {ProviderStatus.DEACCREDITED.value, ProviderStatus.INACTIVE.value}:
            return Regularity.INACTIVE, [f"Provider is {status}"]

        pending: list[str] = []
        active = self.repo.list_sanctions(provider["id"], statuses=[SanctionStatus.ACTIVE.value])
        blocking = [s for s in active if s.get("sanction_type") in BLOCKING_SANCTIONS]
        if status == ProviderStatus.SUSPENDED.value or blocking:
            if status == ProviderStatus.SUSPENDED.value:
                pending.append("Provider is suspended")
            pending.extend(f"Active {s['sanction_type']}: {s.get('reason')}" for s in blocking)
            return Regularity.IRREGULAR, pending

        if status == ProviderStatus.ON_LEAVE.value:
            pending.append("Provider is on leave")
        pending.extend(f"Active {s['sanction_type']}: {s.get('reason')}" for s in active)
        if pending:
            return Regularity.REGULAR_WITH_RESERVATIONS, pending
        return Regularity.REGULAR, []

    def _mint_verification_code(self) -> str:
        for _ in range(10):
            code = secrets.token_hex(CODE_BYTES).upper()
            if self.repo.find_certificate_by_code(code) is None:
                return code
        raise InvalidStateError("Could not mint a unique verification code")

    def issue_certificate(self, provider_id: str, session: SessionContext, force: bool = False) -> dict[str, Any]:
        require_roles(session, REVIEW_ROLES, "issue certificates")
        provider = self.providers.get_provider(provider_id)
        regularity, pending = self.assess_regularity(provider)

        if regularity == Regularity.INACTIVE:
            raise InvalidStateError("Inactive registrations cannot receive a certificate", pending_items=pending)
        if regularity == Regularity.IRREGULAR and not force:
            raise InvalidStateError(
                "Provider is irregular; issuing requires force",
                pending_items=pending,
                can_force=True,
            )

        valid_from = self.today()
        number = f"CERT-{valid_from.year}-{self.repo.next_sequence(f'certificate-{valid_from.year}'):06d}"
        certificate = Certificate(
            provider_id=provider_id,
            provider_name=str(provider.get("name") or ""),
            number=number,
            verification_code=self._mint_verification_code(),
            verification_hash=certificate_hash(provider_id, number, regularity.value, valid_from.isoformat()),
            regularity=regularity,
            valid_from=valid_from.isoformat(),
            valid_until=(valid_from + timedelta(days=VALIDITY_DAYS[regularity])).isoformat(),
            issued_by=session.user_id,
            pending_items=pending,
        )
        row = self.repo.create_certificate(to_row(certificate))
        publish_event(
            self.bus,
            event_type="certificate.issued",
            entity_type="certificate",
            entity_id=certificate.id,
            actor_id=session.user_id,
            payload={
                "provider_id": provider_id,
                "number": number,
                "regularity": regularity.value,
                "forced": bool(force and regularity == Regularity.IRREGULAR),
            },
            correlation_id=session.request_id,
        )
        logger.info("Certificate issued", extra={"number": number, "regularity": regularity.value})
        return row

    def list_certificates(self, provider_id: str, session: SessionContext) -> list[dict[str, Any]]:
        require_roles(session, REVIEW_ROLES, "list certificates")
        self.providers.get_provider(provider_id)
        return self.repo.list_certificates(provider_id)

    def validate_certificate(self, code: str) -> dict[str, Any]:
        """Public lookup by verification code; no session required."""
        row = self.repo.find_certificate_by_code((code or "").strip().upper())
        if not row:
            return {"valid": False, "message": "Certificate not found"}

        expected = certificate_hash(row["provider_id"], row["number"], row["regularity"], str(row["valid_from"]))
        untampered = expected == row.get("verification_hash")
        expired = str(row["valid_until"]) < self.today().isoformat()
        return {
            "valid": bool(row.get("active")) and untampered and not expired,
            "expired": expired,
            "number": row["number"],
            "regularity": row["regularity"],
            "provider_name": row["provider_name"],
            "valid_from": row["valid_from"],
            "valid_until": row["valid_until"],
            "message": None if untampered else "Certificate data does not match its verification hash",
        }

from __future__ import annotations

from typing import Any

from credportal.domain.models import Notification, to_row
from credportal.domain.session import REVIEW_ROLES
from credportal.events.bus import EventBus, Subscription
from credportal.infra.repositories import CredentialingRepository

CANDIDATE_EVENTS = {
    "decision.recorded",
    "contract.dispatched",
    "contract.signed",
    "provider.status_changed",
    "sanction.applied",
    "certificate.issued",
}
ANALYST_EVENTS = {
    "application.submitted",
    "application.resubmitted",
    "contract.dispatch_failed",
    "contract.failed",
}


class NotificationService:
    def __init__(self, repo: CredentialingRepository) -> None:
        self.repo = repo

    def attach(self, bus: EventBus) -> list[Subscription]:
        return [bus.subscribe(event_type, self.handle_event) for event_type in sorted(CANDIDATE_EVENTS | ANALYST_EVENTS)]

    def handle_event(self, envelope: dict[str, Any]) -> list[dict[str, Any]]:
        event_type = envelope["event_type"]
        if event_type in CANDIDATE_EVENTS:
            recipients = [r for r in [self._candidate_for(envelope)] if r]
        elif event_type in ANALYST_EVENTS:
            recipients = self.repo.list_users_with_roles(REVIEW_ROLES)
        else:
            return []

        title, message, kind = self._build_message(event_type, envelope)
        rows = []
        for user_id in recipients:
            notification = Notification(
                user_id=user_id,
                title=title,
                message=message,
                kind=kind,
                related_type=envelope["entity_type"],
                related_id=envelope["entity_id"],
            )
            rows.append(self.repo.create_notification(to_row(notification)))
        return rows

    def _candidate_for(self, envelope: dict[str, Any]) -> str | None:
        payload = envelope.get("payload") or {}
        if payload.get("candidate_id"):
            return str(payload["candidate_id"])

        application_id = payload.get("application_id")
        if not application_id and envelope["entity_type"] in {"provider", "sanction", "certificate"}:
            provider_id = payload.get("provider_id") or envelope["entity_id"]
            provider = self.repo.get_provider(str(provider_id))
            application_id = (provider or {}).get("application_id")
        if not application_id:
            return None
        application = self.repo.get_application(str(application_id))
        return str(application["candidate_id"]) if application else None

    def _build_message(self, event_type: str, envelope: dict[str, Any]) -> tuple[str, str, str]:
        payload = envelope.get("payload") or {}

        if event_type == "decision.recorded":
            outcome = payload.get("outcome")
            if outcome == "approved":
                return "Application approved", "Your application was approved. A contract will be sent for signature.", "success"
            if outcome == "rejected":
                return "Application rejected", "Your application was rejected. See the analyst justification.", "error"
            deadline = payload.get("correction_deadline") or "-"
            return "Correction requested", f"Your application needs corrections until {deadline}.", "warning"
        if event_type == "application.submitted":
            return "New application", "A new application is waiting for analysis.", "info"
        if event_type == "application.resubmitted":
            return "Application resubmitted", "A corrected application is back for analysis.", "info"
        if event_type == "contract.dispatched":
            return "Contract ready to sign", "Your credentialing contract was sent for electronic signature.", "info"
        if event_type == "contract.signed":
            return "Contract signed", "Your contract was signed. Your credentialing is active.", "success"
        if event_type == "contract.dispatch_failed":
            return "Contract dispatch failed", f"Contract could not be sent for signature: {payload.get('error')}", "error"
        if event_type == "contract.failed":
            return "Contract signature failed", f"Contract signature failed: {payload.get('reason')}", "error"
        if event_type == "provider.status_changed":
            return "Credentialing status changed", f"Your status changed from {payload.get('from')} to {payload.get('to')}.", "warning"
        if event_type == "sanction.applied":
            return "Sanction applied", f"A {payload.get('sanction_type')} sanction was applied to your record.", "warning"
        if event_type == "certificate.issued":
            return "Certificate issued", f"Certificate {payload.get('number')} is available.", "success"

        return "Status update", f"Status changed: {event_type}.", "info"

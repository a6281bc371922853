from __future__ import annotations

from typing import Any

from credportal.domain.errors import (
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationFailedError,
)
from credportal.domain.models import Application, to_row, utc_now
from credportal.domain.session import REVIEW_ROLES, ROLE_CANDIDATE, SessionContext, require_roles
from credportal.domain.state_machine import application_machine, authorize_application_transition
from credportal.domain.states import ApplicationStatus
from credportal.events.bus import EventBus, publish_event
from credportal.events.subscriptions import QueryCache
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import get_logger

logger = get_logger("services.application")

DECISION_TARGETS = {
    ApplicationStatus.APPROVED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.PENDING_CORRECTION,
}


class ApplicationService:
    def __init__(
        self,
        repo: CredentialingRepository,
        bus: EventBus,
        cache: QueryCache | None = None,
    ) -> None:
        self.repo = repo
        self.bus = bus
        self.cache = cache

    def create_draft(self, session: SessionContext, program_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not session.has_any({ROLE_CANDIDATE}):
            raise NotAuthorizedError("Only candidates may open an application", user_id=session.user_id)
        app = Application(candidate_id=session.user_id, program_id=program_id, payload=dict(payload))
        row = self.repo.create_application(to_row(app))
        publish_event(
            self.bus,
            event_type="application.created",
            entity_type="application",
            entity_id=app.id,
            actor_id=session.user_id,
            payload={"candidate_id": app.candidate_id, "program_id": program_id},
            correlation_id=session.request_id,
        )
        return row

    def get_application(self, application_id: str) -> dict[str, Any]:
        def _load() -> dict[str, Any]:
            row = self.repo.get_application(application_id)
            if not row:
                raise NotFoundError("application", application_id)
            return row

        if self.cache is None:
            return _load()
        return dict(self.cache.get_or_load("application", application_id, "application", _load))

    def list_applications(self, session: SessionContext, status: str | None = None) -> list[dict[str, Any]]:
        require_roles(session, REVIEW_ROLES, "list applications")
        if status is not None:
            try:
                status = ApplicationStatus(status).value
            except ValueError as exc:
                raise ValidationFailedError(f"Unknown application status: {status}", field="status") from exc
        return self.repo.list_applications(status=status)

    def submit(self, application_id: str, session: SessionContext) -> dict[str, Any]:
        return self.transition(application_id, ApplicationStatus.SUBMITTED, session)

    def start_analysis(self, application_id: str, session: SessionContext) -> dict[str, Any]:
        return self.transition(application_id, ApplicationStatus.UNDER_ANALYSIS, session)

    def resubmit(self, application_id: str, session: SessionContext) -> dict[str, Any]:
        return self.transition(application_id, ApplicationStatus.UNDER_ANALYSIS, session)

    def transition(
        self,
        application_id: str,
        target: ApplicationStatus,
        session: SessionContext,
    ) -> dict[str, Any]:
        app = self.repo.get_application(application_id)
        if not app:
            raise NotFoundError("application", application_id)

        current = ApplicationStatus(app["status"])
        application_machine.transition(current, target)
        authorize_application_transition(session, str(app["candidate_id"]), current, target)
        if target in DECISION_TARGETS:
            raise ValidationFailedError(
                f"Moving to {target.value} requires a recorded decision with justification"
            )

        extra: dict[str, Any] = {}
        if target == ApplicationStatus.SUBMITTED:
            extra["submitted_at"] = utc_now()
        if target == ApplicationStatus.UNDER_ANALYSIS:
            extra["analysis_cycle"] = int(app.get("analysis_cycle") or 0) + 1

        row = self.repo.update_application_status(application_id, current.value, target.value, extra)
        if row is None:
            raise InvalidStateError(
                f"Application {application_id} changed concurrently; expected {current.value}",
                application_id=application_id,
            )

        if target == ApplicationStatus.SUBMITTED:
            event_type = "application.submitted"
        elif current == ApplicationStatus.PENDING_CORRECTION:
            event_type = "application.resubmitted"
        else:
            event_type = "application.analysis_started"

        payload: dict[str, Any] = {
            "candidate_id": app["candidate_id"],
            "from": current.value,
            "to": target.value,
        }
        if "analysis_cycle" in extra:
            payload["analysis_cycle"] = extra["analysis_cycle"]
        publish_event(
            self.bus,
            event_type=event_type,
            entity_type="application",
            entity_id=application_id,
            actor_id=session.user_id,
            payload=payload,
            correlation_id=session.request_id,
        )
        logger.info(
            "Application transitioned",
            extra={"application_id": application_id, "from": current.value, "to": target.value},
        )
        return row

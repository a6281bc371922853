"""Decision Recorder: the only path out of ``under_analysis``.

Checks run in a fixed order so callers get the most specific error:
authorization, payload validation, current status. Nothing is written
until all three pass, and the decision row and the application status are
then written in one store call.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable

from pydantic import ValidationError

from credportal.config import Settings, settings as default_settings
from credportal.contracts.payloads import DecisionContract, validation_messages
from credportal.domain.errors import (
    CredentialingError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from credportal.domain.models import Decision, WorkflowMessage, to_row
from credportal.domain.session import REVIEW_ROLES, SYSTEM_SESSION, SessionContext, require_roles
from credportal.domain.state_machine import application_machine
from credportal.domain.states import ApplicationStatus, DecisionOutcome
from credportal.events.bus import EventBus, publish_event
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import LogContext, get_logger
from credportal.services.contract_service import ContractLifecycleCoordinator

logger = get_logger("services.decision")

OUTCOME_LABELS = {
    DecisionOutcome.APPROVED: "Approved",
    DecisionOutcome.REJECTED: "Rejected",
    DecisionOutcome.PENDING_CORRECTION: "Correction requested",
}


class DecisionRecorder:
    def __init__(
        self,
        repo: CredentialingRepository,
        bus: EventBus,
        contracts: ContractLifecycleCoordinator | None = None,
        config: Settings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        cfg = config or default_settings
        self.repo = repo
        self.bus = bus
        self.contracts = contracts
        self.min_justification_length = cfg.min_justification_length
        self.auto_generate_contract = cfg.auto_generate_contract
        self.today = today

    def _validate(
        self,
        outcome: DecisionOutcome | str,
        justification: str,
        rejected_fields: list[dict[str, Any]] | None,
        rejected_documents: list[dict[str, Any]] | None,
        correction_deadline: date | str | None,
    ) -> DecisionContract:
        try:
            contract = DecisionContract(
                outcome=outcome,
                justification=justification or "",
                rejected_fields=rejected_fields or [],
                rejected_documents=rejected_documents or [],
                correction_deadline=correction_deadline,
                min_justification_length=self.min_justification_length,
            )
        except ValidationError as exc:
            messages = validation_messages(exc)
            raise ValidationFailedError("; ".join(messages), errors=messages) from exc

        if contract.correction_deadline is not None and contract.correction_deadline < self.today():
            raise ValidationFailedError("correction_deadline must not be in the past")
        return contract

    def record_decision(
        self,
        application_id: str,
        session: SessionContext,
        outcome: DecisionOutcome | str,
        justification: str,
        rejected_fields: list[dict[str, Any]] | None = None,
        rejected_documents: list[dict[str, Any]] | None = None,
        correction_deadline: date | str | None = None,
    ) -> dict[str, Any]:
        require_roles(session, REVIEW_ROLES, "record application decisions")
        payload = self._validate(outcome, justification, rejected_fields, rejected_documents, correction_deadline)

        app = self.repo.get_application(application_id)
        if not app:
            raise NotFoundError("application", application_id)
        if app.get("status") != ApplicationStatus.UNDER_ANALYSIS.value:
            raise InvalidStateError(
                f"Application {application_id} is {app.get('status')}; decisions need under_analysis",
                application_id=application_id,
                status=app.get("status"),
            )

        target = application_machine.transition(ApplicationStatus.UNDER_ANALYSIS, payload.outcome.application_status())
        decision = Decision(
            application_id=application_id,
            analyst_id=session.user_id,
            outcome=payload.outcome,
            justification=payload.justification.strip(),
            analysis_cycle=int(app.get("analysis_cycle") or 0),
            rejected_fields=[f.model_dump(mode="json") for f in payload.rejected_fields],
            rejected_documents=[d.model_dump(mode="json") for d in payload.rejected_documents],
            correction_deadline=payload.correction_deadline.isoformat() if payload.correction_deadline else None,
        )

        with LogContext.bind(actor_id=session.user_id, entity_id=application_id):
            written = self.repo.record_decision(
                application_id,
                ApplicationStatus.UNDER_ANALYSIS.value,
                target.value,
                to_row(decision),
            )
            if written is None:
                raise InvalidStateError(
                    f"Application {application_id} left under_analysis before the decision was written",
                    application_id=application_id,
                )
            decision_row, app_row = written

            self.repo.create_workflow_message(
                to_row(
                    WorkflowMessage(
                        application_id=application_id,
                        sender_id=session.user_id,
                        sender_type="analyst",
                        content=self._format_message(decision),
                        kind="decision",
                        visible_to=["candidate", "analyst"],
                        metadata={"decision_id": decision.id, "outcome": decision.outcome.value},
                    )
                )
            )
            publish_event(
                self.bus,
                event_type="decision.recorded",
                entity_type="application",
                entity_id=application_id,
                actor_id=session.user_id,
                payload={
                    "decision_id": decision.id,
                    "candidate_id": app["candidate_id"],
                    "outcome": decision.outcome.value,
                    "from": ApplicationStatus.UNDER_ANALYSIS.value,
                    "to": target.value,
                    "analysis_cycle": decision.analysis_cycle,
                    "correction_deadline": decision.correction_deadline,
                },
                reason=decision.justification,
                correlation_id=session.request_id,
            )
            logger.info(
                "Decision recorded",
                extra={"application_id": application_id, "outcome": decision.outcome.value, "to": target.value},
            )

            result: dict[str, Any] = {"decision": decision_row, "application": app_row}
            if decision.outcome == DecisionOutcome.APPROVED and self.auto_generate_contract and self.contracts:
                result.update(self._issue_contract(application_id, session))
            return result

    def _issue_contract(self, application_id: str, session: SessionContext) -> dict[str, Any]:
        # The approval stands whatever happens here.
        contract: dict[str, Any] | None = None
        try:
            contract = self.contracts.generate_contract(application_id, SYSTEM_SESSION)
            contract = self.contracts.dispatch_for_signature(contract["id"], SYSTEM_SESSION)
            return {"contract": contract}
        except CredentialingError as exc:
            logger.warning(
                "Automatic contract issuance failed",
                extra={"application_id": application_id, "error": exc.message, "error_code": exc.code},
            )
            self.repo.create_workflow_message(
                to_row(
                    WorkflowMessage(
                        application_id=application_id,
                        sender_id=SYSTEM_SESSION.user_id,
                        sender_type="system",
                        content=f"Automatic contract issuance failed: {exc.message}. Retry from the contract panel.",
                        kind="alert",
                        visible_to=["analyst"],
                        metadata={"error_code": exc.code, "requested_by": session.user_id},
                    )
                )
            )
            return {"contract": contract, "contract_error": exc.message}

    @staticmethod
    def _format_message(decision: Decision) -> str:
        lines = [f"Decision: {OUTCOME_LABELS[decision.outcome]}", "", decision.justification]
        if decision.rejected_fields:
            lines.append("")
            lines.append("Fields to review:")
            lines.extend(f"- {f['section']}/{f['field_name']}: {f['reason']}" for f in decision.rejected_fields)
        if decision.rejected_documents:
            lines.append("")
            lines.append("Documents to review:")
            lines.extend(f"- {d['document_id']} ({d['required_action']}): {d['reason']}" for d in decision.rejected_documents)
        if decision.correction_deadline:
            lines.append("")
            lines.append(f"Correction deadline: {decision.correction_deadline}")
        return "\n".join(lines)

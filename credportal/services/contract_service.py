"""Contract Lifecycle Coordinator.

One coordinator owns every contract status write: generation after an
approval, dispatch to the e-signature provider, webhook reconciliation,
regeneration and the stuck-contract batch. All writes are compare-and-set on
the contract's current status, so duplicate webhooks and concurrent
regenerations resolve to a single winner.
"""

from __future__ import annotations

import html
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol
from uuid import uuid4

from pydantic import ValidationError

from credportal.contracts.payloads import BatchItemResult, BatchReport, SignatureWebhookEvent
from credportal.domain.errors import (
    AlreadySupersededError,
    CredentialingError,
    InvalidStateError,
    NotFoundError,
    PermanentProviderError,
    ProviderUnavailableError,
    ValidationFailedError,
)
from credportal.domain.models import Contract, to_row, utc_now
from credportal.domain.session import CONTRACT_ROLES, SYSTEM_SESSION, SessionContext, require_roles
from credportal.domain.state_machine import contract_machine
from credportal.domain.states import ContractStatus, DecisionOutcome
from credportal.events.bus import EventBus, publish_event
from credportal.infra.repositories import CredentialingRepository
from credportal.logging_config import LogContext, get_logger

logger = get_logger("services.contract")

_PLACEHOLDER = re.compile(r"\{\{\s*([a-z_]+)\.([a-z0-9_.]+)\s*\}\}")

DEFAULT_TEMPLATE_HTML = """<!DOCTYPE html>
<html lang="pt-BR">
<head>
  <meta charset="UTF-8">
  <title>Credentialing Contract</title>
</head>
<body>
  <h1>CREDENTIALING CONTRACT</h1>
  <p><strong>Contract:</strong> {{contract.number}}</p>
  <p><strong>Program:</strong> {{program.name}}</p>
  <p><strong>Date:</strong> {{system.current_date}}</p>
  <h2>PARTIES</h2>
  <p><strong>CONTRACTED:</strong> {{candidate.name}}</p>
  <p><strong>Tax id:</strong> {{candidate.tax_id}}</p>
  <p><strong>E-mail:</strong> {{candidate.email}}</p>
  <h2>TERM</h2>
  <p>This contract is valid for 24 months from the signature date and may be renewed by agreement of the parties.</p>
  <p>{{system.current_date}}</p>
  <p>{{candidate.name}}</p>
</body>
</html>"""

SIGNATURE_FAILURE_REASONS = {
    "document.rejected": "Signature rejected by the signer",
    "document.expired": "Signature request expired",
}
REPROCESSABLE = {ContractStatus.GENERATED.value, ContractStatus.FAILED.value}
REGENERABLE = [
    ContractStatus.GENERATED.value,
    ContractStatus.PENDING_SIGNATURE.value,
    ContractStatus.FAILED.value,
]


class SignatureProvider(Protocol):
    def send_for_signature(
        self,
        *,
        contract_number: str,
        document_html: str,
        signer: dict[str, Any],
    ) -> dict[str, Any]:
        ...


class ProviderSync(Protocol):
    def sync_from_contract(self, contract: dict[str, Any]) -> dict[str, Any]:
        ...


def _resolve(data: Any, path: str) -> str:
    value = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return ""
        value = value.get(part)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def render_template(template_html: str, context: dict[str, Any]) -> str:
    """Substitute ``{{source.path}}`` placeholders; unknown sources stay untouched."""

    def _sub(match: re.Match[str]) -> str:
        source, path = match.group(1), match.group(2)
        if source not in context:
            return match.group(0)
        return html.escape(_resolve(context[source], path))

    return _PLACEHOLDER.sub(_sub, template_html)


def candidate_data(application: dict[str, Any]) -> dict[str, Any]:
    payload = application.get("payload") or {}
    personal = payload.get("personal_data") or payload
    return {
        "name": personal.get("name") or personal.get("full_name"),
        "tax_id": personal.get("tax_id") or personal.get("cpf"),
        "email": personal.get("email"),
        **{k: v for k, v in personal.items() if k not in {"name", "tax_id", "email"}},
    }


class ContractLifecycleCoordinator:
    def __init__(
        self,
        repo: CredentialingRepository,
        bus: EventBus,
        signature: SignatureProvider,
        providers: ProviderSync | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.bus = bus
        self.signature = signature
        self.providers = providers
        self.clock = clock

    # numbering / rendering

    def _mint_number(self) -> str:
        now = self.clock()
        year = datetime.fromtimestamp(now, tz=timezone.utc).year
        seed = int(now * 1000) % 1_000_000
        for bump in range(1000):
            number = f"CONT-{year}-{(seed + bump) % 1_000_000:06d}"
            if not self.repo.contract_number_exists(number):
                return number
        raise InvalidStateError("Could not mint a unique contract number")

    def _pick_template(self, template_id: str | None) -> dict[str, Any] | None:
        if template_id:
            template = self.repo.get_contract_template(template_id)
            if template:
                return template
            logger.warning("Contract template not found; using newest active", extra={"template_id": template_id})
        return self.repo.latest_active_template()

    def _render(self, application: dict[str, Any], number: str, template: dict[str, Any] | None) -> str:
        payload = application.get("payload") or {}
        context = {
            "candidate": candidate_data(application),
            "program": {"id": application.get("program_id"), **(payload.get("program") or {})},
            "contract": {"number": number},
            "system": {"current_date": datetime.now(timezone.utc).strftime("%d/%m/%Y")},
        }
        return render_template(template["html"] if template else DEFAULT_TEMPLATE_HTML, context)

    # generation

    def generate_contract(
        self,
        application_id: str,
        session: SessionContext,
        template_id: str | None = None,
    ) -> dict[str, Any]:
        require_roles(session, CONTRACT_ROLES, "generate contracts")
        return self._generate(application_id, session, template_id)

    def _generate(
        self,
        application_id: str,
        session: SessionContext,
        template_id: str | None,
        contract_id: str | None = None,
        supersedes: str | None = None,
    ) -> dict[str, Any]:
        application = self.repo.get_application(application_id)
        if not application:
            raise NotFoundError("application", application_id)

        latest = self.repo.latest_decision(application_id)
        if not latest or latest.get("outcome") != DecisionOutcome.APPROVED.value:
            raise InvalidStateError(
                f"Application {application_id} has no approved decision",
                application_id=application_id,
            )

        template = self._pick_template(template_id)
        number = self._mint_number()
        contract = Contract(
            application_id=application_id,
            contract_number=number,
            document_html=self._render(application, number, template),
            template_id=template["id"] if template else None,
            supersedes=supersedes,
        )
        if contract_id:
            contract.id = contract_id

        row = self.repo.create_contract(to_row(contract))
        if row is None:
            raise InvalidStateError(
                f"Application {application_id} already has an open contract",
                application_id=application_id,
            )

        publish_event(
            self.bus,
            event_type="contract.generated",
            entity_type="contract",
            entity_id=contract.id,
            actor_id=session.user_id,
            payload={
                "contract_number": number,
                "application_id": application_id,
                "template_id": contract.template_id,
                "supersedes": supersedes,
            },
            correlation_id=session.request_id,
        )
        logger.info(
            "Contract generated",
            extra={"contract_id": contract.id, "contract_number": number, "application_id": application_id},
        )
        return row

    # dispatch

    def dispatch_for_signature(self, contract_id: str, session: SessionContext) -> dict[str, Any]:
        require_roles(session, CONTRACT_ROLES, "dispatch contracts")
        contract = self._get(contract_id)
        if contract["status"] != ContractStatus.GENERATED.value:
            raise InvalidStateError(
                f"Contract {contract_id} is {contract['status']}; only generated contracts are dispatched",
                contract_id=contract_id,
            )
        application = self.repo.get_application(contract["application_id"]) or {}
        signer = candidate_data(application)

        with LogContext.bind(actor_id=session.user_id, entity_id=contract_id):
            try:
                sent = self.signature.send_for_signature(
                    contract_number=contract["contract_number"],
                    document_html=contract["document_html"],
                    signer=signer,
                )
            except ProviderUnavailableError as exc:
                publish_event(
                    self.bus,
                    event_type="contract.dispatch_failed",
                    entity_type="contract",
                    entity_id=contract_id,
                    actor_id=session.user_id,
                    payload={"error": exc.message, "application_id": contract["application_id"]},
                    correlation_id=session.request_id,
                )
                logger.warning("Contract dispatch failed; left as generated", extra={"error": exc.message})
                raise
            except PermanentProviderError as exc:
                return self._reject_dispatch(contract, session, str(exc))

            contract_machine.transition(ContractStatus.GENERATED, ContractStatus.PENDING_SIGNATURE)
            row = self.repo.update_contract(
                contract_id,
                {
                    "status": ContractStatus.PENDING_SIGNATURE.value,
                    "provider_document_id": sent["document_id"],
                    "signature_url": sent.get("signature_url"),
                    "dispatched_at": utc_now(),
                },
                [ContractStatus.GENERATED.value],
            )
            if row is None:
                raise InvalidStateError(f"Contract {contract_id} changed while being dispatched", contract_id=contract_id)

            publish_event(
                self.bus,
                event_type="contract.dispatched",
                entity_type="contract",
                entity_id=contract_id,
                actor_id=session.user_id,
                payload={"provider_document_id": sent["document_id"], "application_id": contract["application_id"]},
                correlation_id=session.request_id,
            )
            logger.info("Contract dispatched", extra={"provider_document_id": sent["document_id"]})
            return row

    def _reject_dispatch(self, contract: dict[str, Any], session: SessionContext, reason: str) -> dict[str, Any]:
        contract_id = contract["id"]
        pending = self.repo.update_contract(
            contract_id,
            {"status": ContractStatus.PENDING_SIGNATURE.value, "dispatched_at": utc_now()},
            [ContractStatus.GENERATED.value],
        )
        if pending is None:
            raise InvalidStateError(f"Contract {contract_id} changed while being dispatched", contract_id=contract_id)
        row = self._fail(pending, reason, session)
        logger.warning("Provider rejected contract dispatch", extra={"reason": reason})
        return row

    def _fail(self, contract: dict[str, Any], reason: str, session: SessionContext) -> dict[str, Any]:
        contract_machine.transition(ContractStatus(contract["status"]), ContractStatus.FAILED)
        row = self.repo.update_contract(
            contract["id"],
            {"status": ContractStatus.FAILED.value, "failure_reason": reason},
            [ContractStatus.PENDING_SIGNATURE.value],
        )
        if row is None:
            raise InvalidStateError(f"Contract {contract['id']} changed concurrently", contract_id=contract["id"])
        publish_event(
            self.bus,
            event_type="contract.failed",
            entity_type="contract",
            entity_id=contract["id"],
            actor_id=session.user_id,
            payload={"reason": reason, "application_id": contract["application_id"]},
            reason=reason,
            correlation_id=session.request_id,
        )
        return row

    # webhook reconciliation

    def handle_provider_event(self, payload: dict[str, Any] | SignatureWebhookEvent) -> dict[str, Any]:
        event = self._parse_event(payload)
        contract = self.repo.find_contract_by_provider_document(event.document.id)
        if not contract:
            raise NotFoundError("contract", event.document.id)
        return self.reconcile_signature_webhook(contract["id"], event)

    def reconcile_signature_webhook(
        self,
        contract_id: str,
        event: dict[str, Any] | SignatureWebhookEvent,
    ) -> dict[str, Any]:
        parsed = self._parse_event(event)
        contract = self._get(contract_id)
        status = contract["status"]

        with LogContext.bind(actor_id=SYSTEM_SESSION.user_id, entity_id=contract_id):
            if self._needs_provider_sync(contract, parsed.event):
                logger.info("Resuming provider sync for signed contract")
                self.providers.sync_from_contract(contract)
                return {"processed": True, "contract": contract, "event": parsed.event}

            if status != ContractStatus.PENDING_SIGNATURE.value:
                logger.info(
                    "Signature event ignored for contract status",
                    extra={"event_type": parsed.event, "status": status},
                )
                return {"processed": False, "contract": contract, "event": parsed.event}

            key = f"{parsed.document.id}:{parsed.event}"
            if not self.repo.mark_webhook_processed(key):
                logger.info("Duplicate signature event ignored", extra={"idempotency_key": key})
                return {"processed": False, "contract": contract, "event": parsed.event}

            try:
                if parsed.event == "document.signed":
                    row = self._mark_signed(contract, parsed)
                elif parsed.event == "document.viewed":
                    row = self._mark_viewed(contract)
                else:
                    row = self._fail(contract, SIGNATURE_FAILURE_REASONS[parsed.event], SYSTEM_SESSION)
            except Exception:
                current = self.repo.get_contract(contract_id) or contract
                if current["status"] == ContractStatus.PENDING_SIGNATURE.value and not (
                    parsed.event == "document.viewed" and current.get("viewed_at")
                ):
                    self.repo.release_webhook_key(key)
                    logger.warning("Signature event not applied; key released", extra={"idempotency_key": key})
                raise
            return {"processed": True, "contract": row, "event": parsed.event}

    def _needs_provider_sync(self, contract: dict[str, Any], event: str) -> bool:
        # A signed contract whose provider was never created resumes the sync on redelivery.
        return (
            event == "document.signed"
            and contract["status"] == ContractStatus.SIGNED.value
            and self.providers is not None
            and self.repo.find_provider_by_application(contract["application_id"]) is None
        )

    def _mark_signed(self, contract: dict[str, Any], event: SignatureWebhookEvent) -> dict[str, Any]:
        contract_machine.transition(ContractStatus.PENDING_SIGNATURE, ContractStatus.SIGNED)
        signer = event.signer.model_dump(mode="json") if event.signer else None
        signed_at = (event.signer.signed_at if event.signer else None) or utc_now()
        row = self.repo.update_contract(
            contract["id"],
            {"status": ContractStatus.SIGNED.value, "signed_at": signed_at, "signer": signer},
            [ContractStatus.PENDING_SIGNATURE.value],
        )
        if row is None:
            return self._get(contract["id"])

        publish_event(
            self.bus,
            event_type="contract.signed",
            entity_type="contract",
            entity_id=contract["id"],
            actor_id=SYSTEM_SESSION.user_id,
            payload={"signed_at": signed_at, "application_id": contract["application_id"]},
        )
        logger.info("Contract signed", extra={"contract_number": contract["contract_number"]})
        if self.providers is not None:
            self.providers.sync_from_contract(row)
        return row

    def _mark_viewed(self, contract: dict[str, Any]) -> dict[str, Any]:
        if contract.get("viewed_at"):
            return contract
        row = self.repo.update_contract(
            contract["id"],
            {"viewed_at": utc_now()},
            [ContractStatus.PENDING_SIGNATURE.value],
        )
        if row is None:
            return self._get(contract["id"])
        publish_event(
            self.bus,
            event_type="contract.viewed",
            entity_type="contract",
            entity_id=contract["id"],
            actor_id=SYSTEM_SESSION.user_id,
            payload={"application_id": contract["application_id"]},
        )
        return row

    # regeneration

    def regenerate_contract(
        self,
        old_contract_id: str,
        session: SessionContext,
        template_id: str | None = None,
    ) -> dict[str, Any]:
        """Supersede ``old_contract_id`` and issue a fresh contract.

        The new contract is returned still ``generated`` when the provider is
        unavailable; it can be dispatched later.
        """
        require_roles(session, CONTRACT_ROLES, "regenerate contracts")
        old = self._get(old_contract_id)
        self._check_regenerable(old)

        new_id = str(uuid4())
        superseded = self.repo.update_contract(
            old_contract_id,
            {"status": ContractStatus.SUPERSEDED.value, "superseded_by": new_id},
            REGENERABLE,
        )
        if superseded is None:
            self._check_regenerable(self._get(old_contract_id))
            raise InvalidStateError(f"Contract {old_contract_id} changed concurrently", contract_id=old_contract_id)

        try:
            new = self._generate(
                old["application_id"],
                session,
                template_id or old.get("template_id"),
                contract_id=new_id,
                supersedes=old_contract_id,
            )
        except Exception:
            self._restore_superseded(old, new_id)
            raise

        publish_event(
            self.bus,
            event_type="contract.superseded",
            entity_type="contract",
            entity_id=old_contract_id,
            actor_id=session.user_id,
            payload={"superseded_by": new_id, "application_id": old["application_id"]},
            correlation_id=session.request_id,
        )
        try:
            return self.dispatch_for_signature(new["id"], session)
        except ProviderUnavailableError:
            return self._get(new["id"])

    def _restore_superseded(self, old: dict[str, Any], new_id: str) -> None:
        restored = self.repo.update_contract(
            old["id"],
            {"status": old["status"], "superseded_by": None},
            [ContractStatus.SUPERSEDED.value],
        )
        if restored is None:
            logger.error("Could not restore contract after failed regeneration", extra={"contract_id": old["id"]})
            return
        logger.warning(
            "Regeneration failed; contract restored",
            extra={"contract_id": old["id"], "status": old["status"], "abandoned_id": new_id},
        )

    @staticmethod
    def _check_regenerable(contract: dict[str, Any]) -> None:
        status = contract["status"]
        if status == ContractStatus.SUPERSEDED.value:
            raise AlreadySupersededError(contract["id"], contract.get("superseded_by"))
        if status == ContractStatus.SIGNED.value:
            raise InvalidStateError(f"Contract {contract['id']} is signed and cannot be regenerated", contract_id=contract["id"])

    # batch

    def reprocess_stuck_contracts(
        self,
        session: SessionContext,
        contract_ids: Iterable[str] | None = None,
    ) -> BatchReport:
        require_roles(session, CONTRACT_ROLES, "reprocess contracts")
        if contract_ids is None:
            targets = [row["id"] for row in self.repo.list_contracts(statuses=REPROCESSABLE)]
        else:
            targets = list(contract_ids)

        report = BatchReport()
        for contract_id in targets:
            report.items.append(self._reprocess_one(contract_id, session))

        logger.info(
            "Stuck contract reprocessing finished",
            extra={"succeeded": report.succeeded, "failed": report.failed, "total": len(report.items)},
        )
        return report

    def _reprocess_one(self, contract_id: str, session: SessionContext) -> BatchItemResult:
        try:
            contract = self._get(contract_id)
            status = contract["status"]
            if status == ContractStatus.GENERATED.value:
                row = self.dispatch_for_signature(contract_id, session)
                new_id = None
            elif status == ContractStatus.FAILED.value:
                row = self.regenerate_contract(contract_id, session)
                new_id = row["id"]
            else:
                return BatchItemResult(entity_id=contract_id, success=False, status=status, error=f"Contract is {status}")
        except CredentialingError as exc:
            logger.warning("Contract reprocessing failed", extra={"contract_id": contract_id, "error": exc.message})
            return BatchItemResult(entity_id=contract_id, success=False, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error while reprocessing contract", extra={"contract_id": contract_id})
            return BatchItemResult(entity_id=contract_id, success=False, error=f"Unexpected error: {exc}")

        ok = row["status"] == ContractStatus.PENDING_SIGNATURE.value
        error = None
        if not ok:
            error = row.get("failure_reason") or f"Contract left {row['status']}"
        return BatchItemResult(entity_id=contract_id, success=ok, status=row["status"], new_entity_id=new_id, error=error)

    # helpers

    def _get(self, contract_id: str) -> dict[str, Any]:
        row = self.repo.get_contract(contract_id)
        if not row:
            raise NotFoundError("contract", contract_id)
        return row

    @staticmethod
    def _parse_event(event: dict[str, Any] | SignatureWebhookEvent) -> SignatureWebhookEvent:
        if isinstance(event, SignatureWebhookEvent):
            return event
        try:
            return SignatureWebhookEvent.model_validate(event)
        except ValidationError as exc:
            raise ValidationFailedError(f"Invalid signature webhook payload: {exc.error_count()} error(s)") from exc

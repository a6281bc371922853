"""
Shared fixtures for the credentialing workflow tests.

Every test runs against a fresh in-memory store and event bus. The
e-signature provider is replaced by ``FakeSignatureProvider`` whose ``mode``
switches between success, outage and permanent rejection.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Any

import pytest

from credportal.config import settings
from credportal.domain.errors import PermanentProviderError, ProviderUnavailableError
from credportal.domain.session import ROLE_ANALYST, ROLE_CANDIDATE, ROLE_MANAGER, SessionContext
from credportal.events.bus import InMemoryEventBus
from credportal.infra.repositories import InMemoryRepository
from credportal.logging_config import LogContext, reset_logging
from credportal.services.container import build_services

TODAY = date(2026, 3, 10)

JUSTIFICATION = (
    "All mandatory documents were checked against the program requirements, the license is active "
    "and the tax id matches the registry."
)

CANDIDATE_PAYLOAD = {
    "personal_data": {
        "name": "Ana Souza",
        "tax_id": "52998224725",
        "email": "ana@example.com",
    },
    "program": {"name": "Cardiology network"},
}

WEBHOOK_SECRET = "whsec-test"


class FakeSignatureProvider:
    def __init__(self) -> None:
        self.mode = "ok"
        self.sent: list[dict[str, Any]] = []

    def send_for_signature(self, *, contract_number: str, document_html: str, signer: dict[str, Any]) -> dict[str, Any]:
        self.sent.append({"contract_number": contract_number, "signer": signer})
        if self.mode == "unavailable":
            raise ProviderUnavailableError("Signature provider down")
        if self.mode == "reject":
            raise PermanentProviderError("Signer e-mail rejected", status_code=422)
        document_id = f"doc-{len(self.sent)}"
        return {
            "document_id": document_id,
            "signature_url": f"https://sign.example/{document_id}",
            "status": "pending_signature",
        }


def signed_event(document_id: str, signed_at: str = "2026-03-10T12:00:00+00:00") -> dict[str, Any]:
    return {
        "event": "document.signed",
        "document": {"id": document_id, "status": "signed"},
        "signer": {"name": "Ana Souza", "email": "ana@example.com", "cpf": "52998224725", "signed_at": signed_at},
    }


def provider_event(event: str, document_id: str) -> dict[str, Any]:
    return {"event": event, "document": {"id": document_id}}


@pytest.fixture(autouse=True)
def _clean_logging():
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def config():
    return replace(
        settings,
        auto_generate_contract=False,
        min_justification_length=100,
        signature_webhook_secret=WEBHOOK_SECRET,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
    )


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def signature():
    return FakeSignatureProvider()


@pytest.fixture
def services(config, repo, bus, signature):
    svc = build_services(config=config, repo=repo, bus=bus, signature=signature, today=lambda: TODAY)
    yield svc
    svc.close()


@pytest.fixture
def events(bus):
    """Every envelope published during the test, in order."""
    seen: list[dict[str, Any]] = []
    bus.subscribe("*", seen.append)
    return seen


def _session(repo: InMemoryRepository, user_id: str, role: str) -> SessionContext:
    repo.grant_role(user_id, role)
    return SessionContext.of(user_id, repo.list_user_roles(user_id))


@pytest.fixture
def candidate(repo):
    return _session(repo, "cand-1", ROLE_CANDIDATE)


@pytest.fixture
def analyst(repo):
    return _session(repo, "analyst-1", ROLE_ANALYST)


@pytest.fixture
def manager(repo):
    return _session(repo, "manager-1", ROLE_MANAGER)


@pytest.fixture
def make_application(services, candidate, analyst):
    """Factory for applications already sitting in ``under_analysis``."""

    def _make(payload: dict[str, Any] | None = None) -> dict[str, Any]:
        row = services.applications.create_draft(candidate, "program-1", payload or CANDIDATE_PAYLOAD)
        services.applications.submit(row["id"], candidate)
        return services.applications.start_analysis(row["id"], analyst)

    return _make


@pytest.fixture
def approved_application(services, repo, analyst, make_application):
    app = make_application()
    services.decisions.record_decision(app["id"], analyst, "approved", JUSTIFICATION)
    return repo.get_application(app["id"])


@pytest.fixture
def pending_contract(services, analyst, approved_application):
    contract = services.contracts.generate_contract(approved_application["id"], analyst)
    return services.contracts.dispatch_for_signature(contract["id"], analyst)


@pytest.fixture
def provider(services, repo, pending_contract):
    services.contracts.handle_provider_event(signed_event(pending_contract["provider_document_id"]))
    return repo.find_provider_by_application(pending_contract["application_id"])

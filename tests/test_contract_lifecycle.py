"""
Contract Lifecycle Coordinator tests.

Covers generation, dispatch outcomes, webhook reconciliation and
idempotency, regeneration and the stuck-contract batch.
"""

import re

import pytest

from conftest import JUSTIFICATION, provider_event, signed_event
from credportal.domain.errors import (
    AlreadySupersededError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ProviderUnavailableError,
    RepositoryError,
    ValidationFailedError,
)
from credportal.domain.models import ContractTemplate, to_row
from credportal.services.contract_service import ContractLifecycleCoordinator, render_template


def event_types(events, entity_id=None):
    return [e["event_type"] for e in events if entity_id is None or e["entity_id"] == entity_id]


def fail_once(monkeypatch, target, name, exc):
    """Make ``target.name`` raise ``exc`` on its first call only; returns the call log."""
    real = getattr(target, name)
    calls = []

    def _flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise exc
        return real(*args, **kwargs)

    monkeypatch.setattr(target, name, _flaky)
    return calls


class BrokenSignatureProvider:
    def send_for_signature(self, **_kwargs):
        raise KeyError("document_id")


class TestRendering:
    def test_placeholders_are_escaped(self):
        out = render_template("<p>{{candidate.name}}</p>", {"candidate": {"name": "<b>Ana</b>"}})
        assert out == "<p>&lt;b&gt;Ana&lt;/b&gt;</p>"

    def test_unknown_source_is_left_alone(self):
        assert render_template("{{clinic.name}}", {"candidate": {}}) == "{{clinic.name}}"

    def test_missing_value_renders_empty(self):
        assert render_template("[{{candidate.phone}}]", {"candidate": {}}) == "[]"

    def test_nested_and_list_values(self):
        context = {"candidate": {"specialties": ["cardiology", "pediatrics"], "address": {"city": "Recife"}}}
        out = render_template("{{candidate.specialties}} / {{candidate.address.city}}", context)
        assert out == "cardiology, pediatrics / Recife"


class TestGeneration:
    def test_generated_contract(self, services, analyst, approved_application, events):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)

        assert contract["status"] == "generated"
        assert re.fullmatch(r"CONT-\d{4}-\d{6}", contract["contract_number"])
        assert contract["signed_at"] is None
        assert contract["provider_document_id"] is None
        assert "Ana Souza" in contract["document_html"]
        assert "Cardiology network" in contract["document_html"]
        assert contract["contract_number"] in contract["document_html"]
        assert event_types(events)[-1] == "contract.generated"

    def test_needs_approved_decision(self, services, analyst, make_application):
        app = make_application()
        with pytest.raises(InvalidStateError):
            services.contracts.generate_contract(app["id"], analyst)

    def test_one_open_contract_per_application(self, services, repo, analyst, approved_application):
        services.contracts.generate_contract(approved_application["id"], analyst)
        with pytest.raises(InvalidStateError):
            services.contracts.generate_contract(approved_application["id"], analyst)
        assert len(repo.list_contracts(approved_application["id"])) == 1

    def test_candidate_cannot_generate(self, services, candidate, approved_application):
        with pytest.raises(NotAuthorizedError):
            services.contracts.generate_contract(approved_application["id"], candidate)

    def test_unknown_application(self, services, analyst):
        with pytest.raises(NotFoundError):
            services.contracts.generate_contract("missing", analyst)

    def test_active_template_is_used(self, services, repo, analyst, approved_application):
        template = repo.create_contract_template(
            to_row(ContractTemplate(name="Standard", html="<h1>{{contract.number}} for {{candidate.name}}</h1>"))
        )
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        assert contract["template_id"] == template["id"]
        assert contract["document_html"] == f"<h1>{contract['contract_number']} for Ana Souza</h1>"

    def test_unknown_template_falls_back(self, services, repo, analyst, approved_application):
        template = repo.create_contract_template(to_row(ContractTemplate(name="Standard", html="<p>{{candidate.email}}</p>")))
        contract = services.contracts.generate_contract(approved_application["id"], analyst, template_id="nope")
        assert contract["template_id"] == template["id"]
        assert contract["document_html"] == "<p>ana@example.com</p>"

    def test_numbers_do_not_collide(self, repo, bus, signature, analyst, make_application, services):
        frozen = ContractLifecycleCoordinator(repo, bus, signature, clock=lambda: 1_773_000_000.0)
        numbers = set()
        for _ in range(3):
            app = make_application()
            services.decisions.record_decision(app["id"], analyst, "approved", JUSTIFICATION)
            numbers.add(frozen.generate_contract(app["id"], analyst)["contract_number"])
        assert len(numbers) == 3


class TestDispatch:
    def test_success(self, services, analyst, approved_application, events):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        sent = services.contracts.dispatch_for_signature(contract["id"], analyst)

        assert sent["status"] == "pending_signature"
        assert sent["provider_document_id"] == "doc-1"
        assert sent["signature_url"] == "https://sign.example/doc-1"
        assert sent["dispatched_at"]
        assert sent["signed_at"] is None
        assert event_types(events)[-1] == "contract.dispatched"

    def test_signer_comes_from_the_application(self, services, signature, pending_contract):
        signer = signature.sent[0]["signer"]
        assert signer["name"] == "Ana Souza"
        assert signer["email"] == "ana@example.com"

    def test_outage_leaves_contract_generated(self, services, repo, signature, analyst, approved_application, events):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        signature.mode = "unavailable"
        with pytest.raises(ProviderUnavailableError):
            services.contracts.dispatch_for_signature(contract["id"], analyst)

        assert repo.get_contract(contract["id"])["status"] == "generated"
        assert event_types(events)[-1] == "contract.dispatch_failed"
        assert "Contract dispatch failed" in [n["title"] for n in repo.list_notifications("analyst-1")]

    def test_permanent_rejection_fails_contract(self, services, repo, signature, analyst, approved_application, events):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        signature.mode = "reject"
        row = services.contracts.dispatch_for_signature(contract["id"], analyst)

        assert row["status"] == "failed"
        assert row["failure_reason"] == "Signer e-mail rejected"
        assert row["signed_at"] is None
        assert event_types(events)[-1] == "contract.failed"

    def test_only_generated_contracts(self, services, analyst, pending_contract):
        with pytest.raises(InvalidStateError):
            services.contracts.dispatch_for_signature(pending_contract["id"], analyst)

    def test_unknown_contract(self, services, analyst):
        with pytest.raises(NotFoundError):
            services.contracts.dispatch_for_signature("missing", analyst)


class TestWebhooks:
    def test_signed(self, services, repo, pending_contract, events):
        result = services.contracts.handle_provider_event(signed_event("doc-1"))

        assert result["processed"] is True
        contract = result["contract"]
        assert contract["status"] == "signed"
        assert contract["signed_at"] == "2026-03-10T12:00:00+00:00"
        assert contract["signer"]["tax_id"] == "52998224725"

        provider = repo.find_provider_by_application(pending_contract["application_id"])
        assert provider["status"] == "active"
        assert provider["name"] == "Ana Souza"
        assert "provider.synced" in event_types(events)

    def test_duplicate_signed_event_is_a_no_op(self, services, pending_contract, events):
        services.contracts.handle_provider_event(signed_event("doc-1"))
        before = list(events)
        again = services.contracts.handle_provider_event(signed_event("doc-1"))

        assert again["processed"] is False
        assert again["contract"]["status"] == "signed"
        assert events == before

    def test_candidate_is_told_once(self, services, repo, pending_contract):
        services.contracts.handle_provider_event(signed_event("doc-1"))
        services.contracts.handle_provider_event(signed_event("doc-1"))
        titles = [n["title"] for n in repo.list_notifications("cand-1")]
        assert titles.count("Contract signed") == 1

    def test_viewed_once(self, services, repo, pending_contract, events):
        first = services.contracts.handle_provider_event(provider_event("document.viewed", "doc-1"))
        assert first["processed"] is True
        assert first["contract"]["status"] == "pending_signature"
        viewed_at = first["contract"]["viewed_at"]
        assert viewed_at

        second = services.contracts.handle_provider_event(provider_event("document.viewed", "doc-1"))
        assert second["processed"] is False
        assert repo.get_contract(pending_contract["id"])["viewed_at"] == viewed_at
        assert event_types(events).count("contract.viewed") == 1

    def test_viewed_then_signed(self, services, pending_contract):
        services.contracts.handle_provider_event(provider_event("document.viewed", "doc-1"))
        result = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert result["processed"] is True
        assert result["contract"]["status"] == "signed"

    @pytest.mark.parametrize(
        "event,reason",
        [
            ("document.rejected", "Signature rejected by the signer"),
            ("document.expired", "Signature request expired"),
        ],
    )
    def test_rejected_and_expired(self, services, pending_contract, event, reason):
        result = services.contracts.handle_provider_event(provider_event(event, "doc-1"))
        assert result["processed"] is True
        assert result["contract"]["status"] == "failed"
        assert result["contract"]["failure_reason"] == reason
        assert result["contract"]["signed_at"] is None

    def test_signed_after_failure_is_ignored(self, services, repo, pending_contract):
        services.contracts.handle_provider_event(provider_event("document.rejected", "doc-1"))
        late = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert late["processed"] is False
        assert repo.get_contract(pending_contract["id"])["status"] == "failed"
        assert repo.find_provider_by_application(pending_contract["application_id"]) is None

    def test_provider_sync_resumes_on_redelivery(self, services, repo, pending_contract, monkeypatch):
        fail_once(monkeypatch, repo, "create_provider", RepositoryError("store offline"))
        application_id = pending_contract["application_id"]

        with pytest.raises(RepositoryError):
            services.contracts.handle_provider_event(signed_event("doc-1"))
        assert repo.get_contract(pending_contract["id"])["status"] == "signed"
        assert repo.find_provider_by_application(application_id) is None

        again = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert again["processed"] is True
        assert repo.find_provider_by_application(application_id)["status"] == "active"

        third = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert third["processed"] is False

    def test_unapplied_event_can_be_redelivered(self, services, repo, pending_contract, monkeypatch):
        fail_once(monkeypatch, repo, "update_contract", RepositoryError("store offline"))

        with pytest.raises(RepositoryError):
            services.contracts.handle_provider_event(signed_event("doc-1"))
        assert repo.get_contract(pending_contract["id"])["status"] == "pending_signature"

        again = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert again["processed"] is True
        assert again["contract"]["status"] == "signed"
        assert repo.find_provider_by_application(pending_contract["application_id"]) is not None

    def test_unknown_document(self, services, pending_contract):
        with pytest.raises(NotFoundError):
            services.contracts.handle_provider_event(signed_event("doc-unknown"))

    def test_malformed_payload(self, services, pending_contract):
        with pytest.raises(ValidationFailedError):
            services.contracts.handle_provider_event({"event": "document.burned", "document": {"id": "doc-1"}})
        with pytest.raises(ValidationFailedError):
            services.contracts.handle_provider_event({"event": "document.signed"})


class TestRegeneration:
    def test_failed_contract_is_superseded(self, services, repo, signature, analyst, approved_application, events):
        old = services.contracts.generate_contract(approved_application["id"], analyst)
        signature.mode = "reject"
        services.contracts.dispatch_for_signature(old["id"], analyst)
        signature.mode = "ok"

        new = services.contracts.regenerate_contract(old["id"], analyst)
        old_row = repo.get_contract(old["id"])

        assert old_row["status"] == "superseded"
        assert old_row["superseded_by"] == new["id"]
        assert new["supersedes"] == old["id"]
        assert new["status"] == "pending_signature"
        assert new["contract_number"] != old["contract_number"]
        assert "contract.superseded" in event_types(events, old["id"])

    def test_pending_contract_can_be_replaced(self, services, repo, analyst, pending_contract):
        new = services.contracts.regenerate_contract(pending_contract["id"], analyst)
        assert repo.get_contract(pending_contract["id"])["status"] == "superseded"
        assert new["status"] == "pending_signature"

    def test_regenerating_twice(self, services, analyst, pending_contract):
        services.contracts.regenerate_contract(pending_contract["id"], analyst)
        with pytest.raises(AlreadySupersededError) as exc_info:
            services.contracts.regenerate_contract(pending_contract["id"], analyst)
        assert exc_info.value.superseded_by

    def test_signed_contract_stays(self, services, analyst, pending_contract):
        services.contracts.handle_provider_event(signed_event("doc-1"))
        with pytest.raises(InvalidStateError):
            services.contracts.regenerate_contract(pending_contract["id"], analyst)

    def test_outage_returns_generated_replacement(self, services, repo, signature, analyst, pending_contract):
        signature.mode = "unavailable"
        new = services.contracts.regenerate_contract(pending_contract["id"], analyst)
        assert new["status"] == "generated"
        assert repo.get_contract(pending_contract["id"])["status"] == "superseded"

    def test_failed_generation_restores_old_contract(self, services, repo, analyst, pending_contract, events, monkeypatch):
        fail_once(monkeypatch, repo, "create_contract", RepositoryError("store offline"))

        with pytest.raises(RepositoryError):
            services.contracts.regenerate_contract(pending_contract["id"], analyst)

        old = repo.get_contract(pending_contract["id"])
        assert old["status"] == "pending_signature"
        assert old["superseded_by"] is None
        assert "contract.superseded" not in event_types(events, pending_contract["id"])

        new = services.contracts.regenerate_contract(pending_contract["id"], analyst)
        assert repo.get_contract(pending_contract["id"])["superseded_by"] == new["id"]

    def test_old_document_webhook_is_ignored(self, services, repo, analyst, pending_contract):
        services.contracts.regenerate_contract(pending_contract["id"], analyst)
        result = services.contracts.handle_provider_event(signed_event("doc-1"))
        assert result["processed"] is False
        assert repo.get_contract(pending_contract["id"])["status"] == "superseded"


class TestReprocessing:
    def test_generated_and_failed_contracts(self, services, repo, signature, analyst, approved_application, make_application):
        stuck = services.contracts.generate_contract(approved_application["id"], analyst)
        signature.mode = "unavailable"
        with pytest.raises(ProviderUnavailableError):
            services.contracts.dispatch_for_signature(stuck["id"], analyst)

        other = make_application()
        services.decisions.record_decision(other["id"], analyst, "approved", JUSTIFICATION)
        failed = services.contracts.generate_contract(other["id"], analyst)
        signature.mode = "reject"
        services.contracts.dispatch_for_signature(failed["id"], analyst)

        signature.mode = "ok"
        report = services.contracts.reprocess_stuck_contracts(analyst)

        assert report.succeeded == 2
        assert report.failed == 0
        by_id = {item.entity_id: item for item in report.items}
        assert by_id[stuck["id"]].new_entity_id is None
        assert by_id[failed["id"]].new_entity_id
        assert repo.get_contract(failed["id"])["status"] == "superseded"

    def test_one_failure_does_not_stop_the_batch(self, services, analyst, approved_application):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        report = services.contracts.reprocess_stuck_contracts(analyst, ["missing", contract["id"]])

        assert [item.success for item in report.items] == [False, True]
        assert "not found" in report.items[0].error
        assert report.summary() == "1 succeeded, 1 failed"

    def test_provider_still_down(self, services, signature, analyst, approved_application):
        contract = services.contracts.generate_contract(approved_application["id"], analyst)
        signature.mode = "unavailable"
        report = services.contracts.reprocess_stuck_contracts(analyst, [contract["id"]])
        assert report.items[0].success is False
        assert report.items[0].error == "Signature provider down"

    def test_signed_contract_is_reported_not_touched(self, services, analyst, pending_contract):
        services.contracts.handle_provider_event(signed_event("doc-1"))
        report = services.contracts.reprocess_stuck_contracts(analyst, [pending_contract["id"]])
        assert report.items[0].success is False
        assert report.items[0].status == "signed"

    def test_unexpected_error_is_recorded_per_item(self, services, repo, bus, analyst, approved_application, make_application):
        other = make_application()
        services.decisions.record_decision(other["id"], analyst, "approved", JUSTIFICATION)
        first = services.contracts.generate_contract(approved_application["id"], analyst)
        second = services.contracts.generate_contract(other["id"], analyst)

        broken = ContractLifecycleCoordinator(repo, bus, BrokenSignatureProvider(), providers=services.providers)
        report = broken.reprocess_stuck_contracts(analyst, [first["id"], second["id"]])

        assert [item.entity_id for item in report.items] == [first["id"], second["id"]]
        assert report.failed == 2
        assert all(item.error.startswith("Unexpected error") for item in report.items)
        assert repo.get_contract(first["id"])["status"] == "generated"

    def test_candidate_cannot_reprocess(self, services, candidate):
        with pytest.raises(NotAuthorizedError):
            services.contracts.reprocess_stuck_contracts(candidate)

    def test_response_shape(self, services, analyst):
        report = services.contracts.reprocess_stuck_contracts(analyst, [])
        assert report.as_response() == {"succeeded": 0, "failed": 0, "summary": "0 succeeded, 0 failed", "items": []}


def test_signed_at_present_only_when_signed(services, repo, signature, analyst, approved_application, make_application):
    contract = services.contracts.generate_contract(approved_application["id"], analyst)
    services.contracts.dispatch_for_signature(contract["id"], analyst)
    services.contracts.handle_provider_event(signed_event("doc-1"))

    other = make_application()
    services.decisions.record_decision(other["id"], analyst, "approved", JUSTIFICATION)
    failed = services.contracts.generate_contract(other["id"], analyst)
    signature.mode = "reject"
    services.contracts.dispatch_for_signature(failed["id"], analyst)

    for row in repo.list_contracts():
        assert (row["signed_at"] is not None) == (row["status"] == "signed"), row["status"]

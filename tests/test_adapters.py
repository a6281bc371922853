"""
External adapters against a stubbed ``requests.Session``.

No test reaches the network: ``StubSession`` replays queued responses or
exceptions and records every call.
"""

from dataclasses import replace
from datetime import date

import pytest
import requests
from pydantic import ValidationError

from credportal.contracts.payloads import GeocodeRequest
from credportal.domain.errors import (
    NotFoundError,
    PermanentProviderError,
    ProviderUnavailableError,
    ValidationFailedError,
)
from credportal.infra.geocoding_adapter import GeocodingAdapter, address_hash, format_address
from credportal.infra.id_validators import GovernmentIdValidator, mask_tax_id, tax_id_checksum_ok
from credportal.infra.retry import RetryPolicy
from credportal.infra.signature_adapter import (
    SignatureProviderAdapter,
    compute_webhook_signature,
    verify_webhook_signature,
)

VALID_TAX_ID = "529.982.247-25"


class StubResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)
        self.content = b"x" if body is not None else b""

    def json(self):
        return self._body


class HtmlResponse(StubResponse):
    def __init__(self, status_code=200):
        super().__init__(status_code, "<html>maintenance</html>")

    def json(self):
        raise requests.JSONDecodeError("Expecting value", self._body, 0)


class StubSession:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, StubResponse):
            return reply
        status, body = reply
        return StubResponse(status, body)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


@pytest.fixture
def no_wait():
    return RetryPolicy(max_attempts=3, base_delay=0.0, sleep=lambda _s: None)


@pytest.fixture
def signature_config(config):
    return replace(
        config,
        signature_base_url="https://sign.test/v1",
        signature_api_key="key-1",
        signature_account_id="acc-1",
    )


@pytest.fixture
def registry_config(config):
    return replace(config, registry_base_url="https://registry.test/v2", registry_token="tok-1")


class TestSignatureAdapter:
    signer = {"name": "Ana Souza", "email": "ana@example.com", "tax_id": "52998224725"}

    def send(self, adapter):
        return adapter.send_for_signature(contract_number="CONT-2026-000001", document_html="<p/>", signer=self.signer)

    def test_upload_and_assignment(self, signature_config, no_wait):
        session = StubSession(
            (201, {"id": "doc-77", "status": "uploaded"}),
            (201, {"id": "asg-1", "signers": [{"signature_url": "https://sign.test/s/doc-77"}]}),
        )
        adapter = SignatureProviderAdapter(signature_config, session=session, retry_policy=no_wait)
        sent = self.send(adapter)

        assert sent == {"document_id": "doc-77", "signature_url": "https://sign.test/s/doc-77", "status": "uploaded"}
        (m1, url1, kw1), (m2, url2, kw2) = session.calls
        assert url1 == "https://sign.test/v1/accounts/acc-1/documents"
        assert kw1["headers"]["X-Api-Key"] == "key-1"
        assert kw1["json"]["signers"] == [{"name": "Ana Souza", "email": "ana@example.com", "cpf": "52998224725"}]
        assert url2 == "https://sign.test/v1/documents/doc-77/assignments"

    def test_transient_failure_is_retried(self, signature_config, no_wait):
        session = StubSession(
            (503, {"error": "busy"}),
            requests.Timeout("slow"),
            (201, {"id": "doc-1"}),
            (201, {"signers": []}),
        )
        adapter = SignatureProviderAdapter(signature_config, session=session, retry_policy=no_wait)
        sent = self.send(adapter)
        assert sent["document_id"] == "doc-1"
        assert sent["signature_url"] is None
        assert len(session.calls) == 4

    def test_outage_after_retries(self, signature_config, no_wait):
        session = StubSession(*[requests.ConnectionError("down")] * 3)
        adapter = SignatureProviderAdapter(signature_config, session=session, retry_policy=no_wait)
        with pytest.raises(ProviderUnavailableError):
            self.send(adapter)
        assert len(session.calls) == 3

    def test_rejection_is_permanent(self, signature_config, no_wait):
        session = StubSession((422, {"error": "invalid signer email"}))
        adapter = SignatureProviderAdapter(signature_config, session=session, retry_policy=no_wait)
        with pytest.raises(PermanentProviderError):
            self.send(adapter)
        assert len(session.calls) == 1

    def test_non_json_reply_is_transient(self, signature_config, no_wait):
        session = StubSession(HtmlResponse(), HtmlResponse(), HtmlResponse())
        adapter = SignatureProviderAdapter(signature_config, session=session, retry_policy=no_wait)
        with pytest.raises(ProviderUnavailableError):
            self.send(adapter)
        assert len(session.calls) == 3

    def test_missing_document_id(self, signature_config, no_wait):
        adapter = SignatureProviderAdapter(signature_config, session=StubSession((201, {})), retry_policy=no_wait)
        with pytest.raises(ProviderUnavailableError):
            self.send(adapter)

    def test_not_configured(self, config, no_wait):
        session = StubSession()
        adapter = SignatureProviderAdapter(replace(config, signature_api_key=""), session=session, retry_policy=no_wait)
        with pytest.raises(ProviderUnavailableError):
            self.send(adapter)
        assert session.calls == []


class TestWebhookSignature:
    body = b'{"event":"document.signed","document":{"id":"doc-1"}}'

    def test_matching_signature(self):
        assert verify_webhook_signature(self.body, compute_webhook_signature(self.body, "s3cret"), "s3cret")

    def test_header_case_and_padding(self):
        header = " " + compute_webhook_signature(self.body, "s3cret").upper() + " "
        assert verify_webhook_signature(self.body, header, "s3cret")

    def test_wrong_secret(self):
        assert not verify_webhook_signature(self.body, compute_webhook_signature(self.body, "other"), "s3cret")

    def test_tampered_body(self):
        signature = compute_webhook_signature(self.body, "s3cret")
        assert not verify_webhook_signature(self.body + b" ", signature, "s3cret")

    def test_missing_header(self):
        assert not verify_webhook_signature(self.body, None, "s3cret")


class TestTaxIdValidation:
    def validator(self, cfg, session, no_wait):
        return GovernmentIdValidator(cfg, session=session, retry_policy=no_wait, today=lambda: date(2026, 3, 10))

    def test_checksum(self):
        assert tax_id_checksum_ok("52998224725")
        assert not tax_id_checksum_ok("52998224724")
        assert not tax_id_checksum_ok("11111111111")

    def test_mask(self):
        assert mask_tax_id("52998224725") == "529***25"

    def test_registry_match(self, registry_config, no_wait):
        session = StubSession(
            (200, {"code": 200, "data": [{"nome": "ANA SOUZA", "cpf": "529.982.247-25", "data_nascimento": "01/02/1990", "situacao_cadastral": "REGULAR"}]})
        )
        validator = self.validator(registry_config, session, no_wait)
        result = validator.validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))

        assert result.valid is True
        assert result.data["name"] == "ANA SOUZA"
        assert result.data["birthdate"] == "1990-02-01"
        _, url, kwargs = session.calls[0]
        assert url == "https://registry.test/v2/receita-federal/cpf"
        assert kwargs["params"]["cpf"] == "52998224725"
        assert kwargs["params"]["token"] == "tok-1"

    def test_results_are_cached(self, registry_config, no_wait):
        session = StubSession((200, {"code": 200, "data": [{"nome": "ANA"}]}))
        validator = self.validator(registry_config, session, no_wait)
        validator.validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))
        validator.validate_tax_id("52998224725", date(1990, 2, 1))
        assert len(session.calls) == 1

    def test_bad_check_digits_skip_the_registry(self, registry_config, no_wait):
        session = StubSession()
        result = self.validator(registry_config, session, no_wait).validate_tax_id("52998224724", date(1990, 2, 1))
        assert result.valid is False
        assert session.calls == []

    def test_minors_are_refused(self, registry_config, no_wait):
        session = StubSession()
        result = self.validator(registry_config, session, no_wait).validate_tax_id(VALID_TAX_ID, date(2010, 1, 1))
        assert result.valid is False
        assert "at least 18" in result.message

    @pytest.mark.parametrize(
        "tax_id,birthdate",
        [("123", date(1990, 1, 1)), (VALID_TAX_ID, None), (VALID_TAX_ID, date(2027, 1, 1))],
    )
    def test_malformed_input(self, registry_config, no_wait, tax_id, birthdate):
        with pytest.raises(ValidationFailedError):
            self.validator(registry_config, StubSession(), no_wait).validate_tax_id(tax_id, birthdate)

    def test_birthdate_mismatch(self, registry_config, no_wait):
        session = StubSession((200, {"code": 608, "errors": ["Data de nascimento divergente"]}))
        result = self.validator(registry_config, session, no_wait).validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))
        assert result.valid is False
        assert result.message == "Birth date does not match the registry record"

    def test_not_found(self, registry_config, no_wait):
        session = StubSession((200, {"code": 612, "data": []}))
        result = self.validator(registry_config, session, no_wait).validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))
        assert result.valid is False
        assert result.message == "Tax id not found in registry"

    def test_registry_credentials_rejected(self, registry_config, no_wait):
        session = StubSession((200, {"code": 603}))
        with pytest.raises(ProviderUnavailableError):
            self.validator(registry_config, session, no_wait).validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))

    def test_missing_token(self, config, no_wait):
        validator = self.validator(replace(config, registry_token=""), StubSession(), no_wait)
        with pytest.raises(ProviderUnavailableError):
            validator.validate_tax_id(VALID_TAX_ID, date(1990, 2, 1))


class TestLicenseValidation:
    def test_active_license(self, registry_config, no_wait):
        session = StubSession(
            (200, {"code": 200, "data": [{"nome": "ANA SOUZA", "inscricao": "12345", "situacao": "Regular", "especialidade_lista": ["Cardiologia"]}]})
        )
        validator = GovernmentIdValidator(registry_config, session=session, retry_policy=no_wait)
        result = validator.validate_license("12.345", "sp")

        assert result.valid is True
        assert result.data["state"] == "SP"
        assert result.data["specialties"] == ["Cardiologia"]
        assert session.calls[0][2]["params"]["uf"] == "SP"

    def test_unknown_license(self, registry_config, no_wait):
        session = StubSession((200, {"code": 200, "data": []}))
        result = GovernmentIdValidator(registry_config, session=session, retry_policy=no_wait).validate_license("12345", "RJ")
        assert result.valid is False

    @pytest.mark.parametrize("number,state", [("123", "SP"), ("12345678901", "SP"), ("12345", "S1"), ("12345", "")])
    def test_malformed_input(self, registry_config, no_wait, number, state):
        validator = GovernmentIdValidator(registry_config, session=StubSession(), retry_policy=no_wait)
        with pytest.raises(ValidationFailedError):
            validator.validate_license(number, state)


class TestGeocoding:
    request = GeocodeRequest(address="Rua das Flores, 100", city="Recife", state="PE", postal_code="50000-000")

    def test_format_address(self):
        assert format_address(self.request) == "Rua das Flores, 100, Recife, PE, Brasil"

    def test_hash_ignores_case_and_spacing(self):
        other = GeocodeRequest(address="  rua das  flores, 100", city="RECIFE", state="pe", postal_code="50000000")
        assert address_hash(other) == address_hash(self.request)

    def test_request_needs_a_location(self):
        with pytest.raises(ValidationError):
            GeocodeRequest(state="PE")

    def test_lookup_then_cache(self, repo, config, no_wait):
        session = StubSession((200, [{"lat": "-8.05", "lon": "-34.9", "display_name": "Recife"}]))
        adapter = GeocodingAdapter(repo, config, session=session, retry_policy=no_wait)

        first = adapter.geocode(self.request)
        second = adapter.geocode(self.request)

        assert (first.latitude, first.longitude, first.cached) == (-8.05, -34.9, False)
        assert second.cached is True
        assert second.display_name == "Recife"
        assert len(session.calls) == 1
        assert session.calls[0][2]["headers"]["User-Agent"] == config.geocoding_user_agent
        assert repo.get_geocode(address_hash(self.request))["hit_count"] == 1

    def test_non_json_reply_is_transient(self, repo, config, no_wait):
        session = StubSession(HtmlResponse(), (200, [{"lat": "-8.05", "lon": "-34.9"}]))
        adapter = GeocodingAdapter(repo, config, session=session, retry_policy=no_wait)
        assert adapter.geocode(self.request).latitude == -8.05
        assert len(session.calls) == 2

    def test_force_refresh(self, repo, config, no_wait):
        session = StubSession(
            (200, [{"lat": "1", "lon": "2"}]),
            (200, [{"lat": "3", "lon": "4"}]),
        )
        adapter = GeocodingAdapter(repo, config, session=session, retry_policy=no_wait)
        adapter.geocode(self.request)
        refreshed = adapter.geocode(self.request.model_copy(update={"force_refresh": True}))
        assert (refreshed.latitude, refreshed.cached) == (3.0, False)
        assert len(session.calls) == 2

    def test_no_match(self, repo, config, no_wait):
        adapter = GeocodingAdapter(repo, config, session=StubSession((200, [])), retry_policy=no_wait)
        with pytest.raises(NotFoundError):
            adapter.geocode(self.request)

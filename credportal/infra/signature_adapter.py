from __future__ import annotations

import hashlib
import hmac
from typing import Any

import requests

from credportal.config import Settings, settings as default_settings
from credportal.domain.errors import ProviderUnavailableError, TransientProviderError
from credportal.infra.retry import RetryPolicy, raise_for_provider_status
from credportal.logging_config import get_logger

logger = get_logger("infra.signature")

SIGNATURE_HEADER = "X-Signature"


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, received: str | None, secret: str) -> bool:
    if not received:
        return False
    expected = compute_webhook_signature(raw_body, secret)
    return hmac.compare_digest(expected, received.strip().lower())


class SignatureProviderAdapter:
    """E-signature provider client.

    POST {base}/accounts/{account_id}/documents
        payload: {name, content_html, signers: [{name, email, cpf}]}
        response: {id, status, ...}
    POST {base}/documents/{document_id}/assignments
        payload: {method, signers}
        response: {id, signers: [{signature_url}], ...}
    """

    def __init__(
        self,
        config: Settings | None = None,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        cfg = config or default_settings
        self.base_url = cfg.signature_base_url
        self.api_key = cfg.signature_api_key
        self.account_id = cfg.signature_account_id
        self.timeout = cfg.request_timeout_seconds
        self.configured = cfg.signature_provider_configured()
        self.session = session or requests.Session()
        self.retry = retry_policy or RetryPolicy.from_settings(cfg)

    def _headers(self) -> dict[str, str]:
        return {"X-Api-Key": self.api_key, "Content-Type": "application/json"}

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            res = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"Signature provider unreachable: {exc}") from exc
        raise_for_provider_status(res, "Signature provider")
        try:
            data = res.json() if res.content else {}
        except ValueError as exc:
            raise TransientProviderError(f"Signature provider returned a non-JSON body: {exc}") from exc
        if not isinstance(data, dict):
            raise TransientProviderError("Signature provider returned a non-object body")
        return data

    def send_for_signature(
        self,
        *,
        contract_number: str,
        document_html: str,
        signer: dict[str, Any],
    ) -> dict[str, Any]:
        """Upload the document and open a signer assignment.

        Returns ``{"document_id", "signature_url", "status"}``. Raises
        ``ProviderUnavailableError`` after retries, ``PermanentProviderError``
        when the provider rejects the request.
        """
        if not self.configured:
            raise ProviderUnavailableError("Signature provider not configured")

        signers = [
            {
                "name": signer.get("name"),
                "email": signer.get("email"),
                "cpf": signer.get("tax_id"),
            }
        ]

        document = self.retry.call(
            "signature.create_document",
            lambda: self._post(
                f"/accounts/{self.account_id}/documents",
                {"name": f"Contrato {contract_number}", "content_html": document_html, "signers": signers},
            ),
        )
        document_id = str(document.get("id") or "")
        if not document_id:
            raise ProviderUnavailableError("Signature provider response missing document id")

        assignment = self.retry.call(
            "signature.create_assignment",
            lambda: self._post(f"/documents/{document_id}/assignments", {"method": "virtual", "signers": signers}),
        )
        signature_url = None
        assigned = assignment.get("signers") or []
        if assigned and isinstance(assigned[0], dict):
            signature_url = assigned[0].get("signature_url")

        logger.info(
            "Contract sent for signature",
            extra={"contract_number": contract_number, "provider_document_id": document_id},
        )
        return {
            "document_id": document_id,
            "signature_url": signature_url,
            "status": document.get("status") or "pending_signature",
        }

from __future__ import annotations

import re
from datetime import date
from threading import RLock
from typing import Any, Callable

import requests

from credportal.config import Settings, settings as default_settings
from credportal.contracts.payloads import IdValidationResult
from credportal.domain.errors import (
    ProviderUnavailableError,
    TransientProviderError,
    ValidationFailedError,
)
from credportal.infra.retry import RetryPolicy, raise_for_provider_status
from credportal.logging_config import get_logger

logger = get_logger("infra.id_validators")

MIN_AGE_YEARS = 18
REGISTRY_AUTH_CODES = {401, 403, 603}
REGISTRY_REJECTED_CODE = 608


def only_digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def tax_id_checksum_ok(digits: str) -> bool:
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    for size in (9, 10):
        total = sum(int(d) * w for d, w in zip(digits[:size], range(size + 1, 1, -1)))
        check = (total * 10) % 11 % 10
        if check != int(digits[size]):
            return False
    return True


def mask_tax_id(digits: str) -> str:
    return f"{digits[:3]}***{digits[9:]}" if len(digits) == 11 else "***"


def age_on(birthdate: date, today: date) -> int:
    years = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        years -= 1
    return years


def _br_date_to_iso(value: str | None) -> str | None:
    if value and "/" in value:
        day, month, year = value.split("/")
        return f"{year}-{month}-{day}"
    return value


class GovernmentIdValidator:
    """Tax id (CPF) and medical license (CRM) checks against the registry API.

    GET {base}/receita-federal/cpf?token&cpf&birthdate&timeout
    GET {base}/cfm/cadastro?token&inscricao&uf&timeout
    response: {code, code_message, data: [...], errors: [...]}
    """

    def __init__(
        self,
        config: Settings | None = None,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        cfg = config or default_settings
        self.base_url = cfg.registry_base_url
        self.token = cfg.registry_token
        self.timeout = cfg.bulk_timeout_seconds
        self.session = session or requests.Session()
        self.retry = retry_policy or RetryPolicy.from_settings(cfg)
        self.today = today
        self._cache: dict[tuple[str, ...], IdValidationResult] = {}
        self._lock = RLock()

    def _lookup(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.token:
            raise ProviderUnavailableError("Registry API token not configured")

        def _get() -> dict[str, Any]:
            try:
                res = self.session.get(
                    f"{self.base_url}{path}",
                    params={"token": self.token, "timeout": 600, **params},
                    timeout=self.timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                raise TransientProviderError(f"Registry unreachable: {exc}") from exc
            raise_for_provider_status(res, "Registry")
            try:
                body = res.json()
            except ValueError as exc:
                raise TransientProviderError(f"Registry returned a non-JSON body: {exc}") from exc
            return body if isinstance(body, dict) else {}

        body = self.retry.call(f"registry{path}", _get)
        if body.get("code") in REGISTRY_AUTH_CODES:
            logger.error("Registry rejected credentials", extra={"path": path, "registry_code": body.get("code")})
            raise ProviderUnavailableError("Registry validation temporarily unavailable")
        return body

    def _cached(self, key: tuple[str, ...], compute: Callable[[], IdValidationResult]) -> IdValidationResult:
        with self._lock:
            hit = self._cache.get(key)
        if hit is not None:
            return hit
        result = compute()
        with self._lock:
            self._cache[key] = result
        return result

    def validate_tax_id(self, tax_id: str, birthdate: date | None) -> IdValidationResult:
        digits = only_digits(tax_id)
        if len(digits) != 11:
            raise ValidationFailedError("Tax id must have 11 digits")
        if birthdate is None:
            raise ValidationFailedError("Birth date is required")
        today = self.today()
        if birthdate >= today:
            raise ValidationFailedError("Birth date must be in the past")
        if not tax_id_checksum_ok(digits):
            return IdValidationResult(valid=False, message="Tax id check digits do not match")
        age = age_on(birthdate, today)
        if age < MIN_AGE_YEARS:
            return IdValidationResult(
                valid=False,
                message=f"Candidate must be at least {MIN_AGE_YEARS} years old (got {age})",
            )

        def _compute() -> IdValidationResult:
            body = self._lookup("/receita-federal/cpf", {"cpf": digits, "birthdate": birthdate.isoformat()})
            code = body.get("code")
            if code == REGISTRY_REJECTED_CODE:
                errors = [str(e) for e in body.get("errors") or []]
                mismatch = any("nascimento" in e.lower() or "birthdate" in e.lower() for e in errors)
                message = (
                    "Birth date does not match the registry record"
                    if mismatch
                    else "Registry rejected the informed data"
                )
                return IdValidationResult(valid=False, message=message)
            rows = body.get("data") or []
            if code != 200 or not rows:
                return IdValidationResult(valid=False, message="Tax id not found in registry")
            row = rows[0]
            return IdValidationResult(
                valid=True,
                data={
                    "name": row.get("nome") or row.get("nome_civil") or row.get("nome_social"),
                    "tax_id": row.get("cpf"),
                    "birthdate": _br_date_to_iso(row.get("normalizado_data_nascimento") or row.get("data_nascimento")),
                    "registration_status": row.get("situacao_cadastral"),
                    "registered_at": row.get("data_inscricao"),
                },
                message="Tax id validated",
            )

        result = self._cached(("tax_id", digits, birthdate.isoformat()), _compute)
        logger.info("Tax id validated", extra={"tax_id": mask_tax_id(digits), "valid": result.valid})
        return result

    def validate_license(self, number: str, state: str) -> IdValidationResult:
        digits = only_digits(number)
        if not 4 <= len(digits) <= 10:
            raise ValidationFailedError("License number must have between 4 and 10 digits")
        uf = (state or "").strip().upper()
        if not re.fullmatch(r"[A-Z]{2}", uf):
            raise ValidationFailedError("State must be exactly 2 letters")

        def _compute() -> IdValidationResult:
            body = self._lookup("/cfm/cadastro", {"inscricao": digits, "uf": uf})
            rows = body.get("data") or []
            if body.get("code") != 200 or not rows:
                return IdValidationResult(valid=False, message="License not found or invalid")
            row = rows[0]
            return IdValidationResult(
                valid=True,
                data={
                    "name": row.get("nome"),
                    "license": row.get("inscricao"),
                    "state": uf,
                    "license_type": row.get("inscricao_tipo"),
                    "situation": row.get("situacao"),
                    "specialties": row.get("especialidade_lista") or [],
                    "graduation_year": row.get("ano_formatura"),
                    "institution": row.get("instituicao_graduacao"),
                },
            )

        return self._cached(("license", digits, uf), _compute)

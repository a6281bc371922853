from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from credportal.contracts.payloads import (
    CreateApplicationRequest,
    DecisionRequest,
    GenerateContractRequest,
    GeocodeRequest,
    IssueCertificateRequest,
    LicenseValidationRequest,
    ProviderStatusChangeRequest,
    ReprocessContractsRequest,
    SanctionContract,
    SanctionStatusRequest,
    TaxIdValidationRequest,
)
from credportal.domain.errors import CredentialingError
from credportal.domain.session import SessionContext
from credportal.infra.signature_adapter import SIGNATURE_HEADER, verify_webhook_signature
from credportal.logging_config import LogContext, configure_logging, get_logger
from credportal.services.container import Services, build_services

logger = get_logger("api")


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, "code": code})


def create_app(services: Services | None = None) -> FastAPI:
    svc = services or build_services()
    configure_logging(level=svc.config.log_level)

    app = FastAPI(title="Credentialing Workflow API", version="1.0.0")
    app.state.services = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(svc.config.cors_allow_origins) or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        with LogContext.bind(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CredentialingError)
    async def credentialing_error_handler(_request: Request, exc: CredentialingError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("Request failed", extra={"error": exc.message, "error_code": exc.code})
        return _error(exc.http_status, exc.message, exc.code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error", exc_info=exc)
        return _error(500, "Internal server error", "INTERNAL_ERROR")

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [str(err.get("msg", "")).removeprefix("Value error, ") for err in exc.errors()]
        return _error(400, "; ".join(messages) or "Invalid request", "VALIDATION_FAILED")

    def _ctx(
        x_user_id: str = Header(..., alias="X-User-ID"),
        x_request_id: str | None = Header(default=None, alias="X-Request-ID"),
    ) -> SessionContext:
        user_id = x_user_id.strip()
        return SessionContext.of(user_id, svc.repo.list_user_roles(user_id), request_id=x_request_id)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "success": True,
            "status": "ok",
            "environment": svc.config.app_env,
            "persistence": "supabase" if svc.using_supabase else "memory",
            "storage_message": svc.storage_message,
            "signature_provider_configured": svc.config.signature_provider_configured(),
        }

    @app.post("/applications")
    def create_application(payload: CreateApplicationRequest, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        row = svc.applications.create_draft(session, payload.program_id, payload.payload)
        return {"success": True, "application": row}

    @app.get("/applications")
    def list_applications(status: str | None = None, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        rows = svc.applications.list_applications(session, status=status)
        return {"success": True, "applications": rows, "count": len(rows)}

    @app.get("/applications/{application_id}")
    def get_application(application_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "application": svc.applications.get_application(application_id)}

    @app.post("/applications/{application_id}/submit")
    def submit_application(application_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "application": svc.applications.submit(application_id, session)}

    @app.post("/applications/{application_id}/start-analysis")
    def start_analysis(application_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "application": svc.applications.start_analysis(application_id, session)}

    @app.post("/applications/{application_id}/resubmit")
    def resubmit_application(application_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "application": svc.applications.resubmit(application_id, session)}

    @app.post("/applications/{application_id}/decision")
    def record_decision(
        application_id: str,
        payload: DecisionRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        result = svc.decisions.record_decision(
            application_id,
            session,
            outcome=payload.outcome,
            justification=payload.justification,
            rejected_fields=[f.model_dump() for f in payload.rejected_fields],
            rejected_documents=[d.model_dump() for d in payload.rejected_documents],
            correction_deadline=payload.correction_deadline,
        )
        return {"success": True, **result}

    @app.post("/applications/{application_id}/contracts")
    def generate_contract(
        application_id: str,
        payload: GenerateContractRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        row = svc.contracts.generate_contract(application_id, session, template_id=payload.template_id)
        return {"success": True, "contract": row}

    @app.post("/contracts/reprocess")
    def reprocess_contracts(payload: ReprocessContractsRequest, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        report = svc.contracts.reprocess_stuck_contracts(session, payload.contract_ids)
        return {"success": True, **report.as_response()}

    @app.post("/contracts/{contract_id}/dispatch")
    def dispatch_contract(contract_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "contract": svc.contracts.dispatch_for_signature(contract_id, session)}

    @app.post("/contracts/{contract_id}/regenerate")
    def regenerate_contract(
        contract_id: str,
        payload: GenerateContractRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        row = svc.contracts.regenerate_contract(contract_id, session, template_id=payload.template_id)
        return {"success": True, "contract": row}

    @app.post("/webhooks/signature")
    async def signature_webhook(request: Request) -> JSONResponse:
        raw = await request.body()
        secret = svc.config.signature_webhook_secret
        if not secret:
            logger.error("Signature webhook rejected: secret not configured")
            return _error(503, "Signature webhook secret not configured", "WEBHOOK_NOT_CONFIGURED")
        if not verify_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER), secret):
            logger.warning("Signature webhook rejected: bad HMAC")
            return _error(401, "Invalid webhook signature", "INVALID_SIGNATURE")

        try:
            body = json.loads(raw or b"{}")
        except json.JSONDecodeError:
            return _error(400, "Webhook body is not valid JSON", "VALIDATION_FAILED")
        if not isinstance(body, dict):
            return _error(400, "Webhook body must be a JSON object", "VALIDATION_FAILED")

        result = svc.contracts.handle_provider_event(body)
        return JSONResponse(
            content={
                "success": True,
                "processed": result["processed"],
                "event": result["event"],
                "contract_id": result["contract"]["id"],
                "status": result["contract"]["status"],
            }
        )

    @app.post("/providers/{provider_id}/status")
    def change_provider_status(
        provider_id: str,
        payload: ProviderStatusChangeRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        row = svc.providers.change_status(
            provider_id,
            session,
            new_status=payload.new_status,
            justification=payload.justification,
            start_date=payload.start_date,
            end_date=payload.end_date,
            effective_date=payload.effective_date,
            detailed_reason=payload.detailed_reason,
        )
        return {"success": True, "provider": row}

    @app.post("/providers/{provider_id}/sanctions")
    def apply_sanction(
        provider_id: str,
        payload: SanctionContract,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        row = svc.sanctions.apply_sanction(
            provider_id,
            session,
            sanction_type=payload.sanction_type,
            reason=payload.reason,
            start_date=payload.start_date,
            end_date=payload.end_date,
            amount=payload.amount,
        )
        return {"success": True, "sanction": row}

    @app.post("/sanctions/serve-expired")
    def serve_expired_sanctions(session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, **svc.sanctions.serve_expired_sanctions(session).as_response()}

    @app.post("/sanctions/{sanction_id}/status")
    def change_sanction_status(
        sanction_id: str,
        payload: SanctionStatusRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        return {"success": True, "sanction": svc.sanctions.change_sanction_status(sanction_id, payload.status, session)}

    @app.post("/providers/{provider_id}/certificates")
    def issue_certificate(
        provider_id: str,
        payload: IssueCertificateRequest,
        session: SessionContext = Depends(_ctx),
    ) -> dict[str, Any]:
        return {"success": True, "certificate": svc.certificates.issue_certificate(provider_id, session, payload.force)}

    @app.get("/providers/{provider_id}/certificates")
    def list_certificates(provider_id: str, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, "certificates": svc.certificates.list_certificates(provider_id, session)}

    @app.get("/certificates/verify/{code}")
    def verify_certificate(code: str) -> dict[str, Any]:
        return {"success": True, **svc.certificates.validate_certificate(code)}

    @app.post("/validations/tax-id")
    def validate_tax_id(payload: TaxIdValidationRequest, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        result = svc.validators.validate_tax_id(payload.id, payload.birthdate)
        return {"success": True, **result.model_dump()}

    @app.post("/validations/license")
    def validate_license(payload: LicenseValidationRequest, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        result = svc.validators.validate_license(payload.id, payload.state)
        return {"success": True, **result.model_dump()}

    @app.post("/geocode")
    def geocode(payload: GeocodeRequest, session: SessionContext = Depends(_ctx)) -> dict[str, Any]:
        return {"success": True, **svc.geocoding.geocode(payload).model_dump()}

    logger.info("API ready", extra={"persistence": "supabase" if svc.using_supabase else "memory"})
    return app


app = create_app()

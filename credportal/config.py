from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_config_value(*keys: str, default: str = "") -> str:
    for key in keys:
        value = os.getenv(key, "").strip()
        if value:
            return value
    return default


def _get_bool(*keys: str, default: bool) -> bool:
    raw = _get_config_value(*keys).lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def _pick_supabase_key() -> str:
    return (
        _get_config_value("SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE_KEY")
        or _get_config_value("SUPABASE_KEY")
        or _get_config_value("SUPABASE_ANON_KEY")
    )


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    supabase_url: str
    supabase_key: str
    signature_base_url: str
    signature_api_key: str
    signature_account_id: str
    signature_webhook_secret: str
    registry_base_url: str
    registry_token: str
    geocoding_base_url: str
    geocoding_user_agent: str
    auto_generate_contract: bool
    request_timeout_seconds: float
    bulk_timeout_seconds: float
    retry_max_attempts: int
    retry_base_delay_seconds: float
    min_justification_length: int
    cors_allow_origins: tuple[str, ...]

    def supabase_url_valid(self) -> bool:
        # Must be project URL, not postgres DSN.
        return bool(re.match(r"^https://[a-z0-9-]+\.supabase\.co$", self.supabase_url))

    def supabase_key_present(self) -> bool:
        return bool(self.supabase_key)

    def signature_provider_configured(self) -> bool:
        return bool(self.signature_base_url and self.signature_api_key and self.signature_account_id)


def load_settings() -> Settings:
    origins = _get_config_value("CORS_ALLOW_ORIGINS", default="*")
    return Settings(
        app_env=_get_config_value("APP_ENV", default="dev"),
        log_level=_get_config_value("LOG_LEVEL", default="INFO").upper(),
        supabase_url=_get_config_value("SUPABASE_URL").rstrip("/"),
        supabase_key=_pick_supabase_key(),
        signature_base_url=_get_config_value(
            "SIGNATURE_API_BASE_URL",
            "ASSINAFY_API_URL",
            default="https://api.assinafy.com.br/v1",
        ).rstrip("/"),
        signature_api_key=_get_config_value("SIGNATURE_API_KEY", "ASSINAFY_API_KEY"),
        signature_account_id=_get_config_value("SIGNATURE_ACCOUNT_ID", "ASSINAFY_ACCOUNT_ID"),
        signature_webhook_secret=_get_config_value("SIGNATURE_WEBHOOK_SECRET", "ASSINAFY_WEBHOOK_SECRET"),
        registry_base_url=_get_config_value(
            "REGISTRY_API_BASE_URL",
            default="https://api.infosimples.com/api/v2/consultas",
        ).rstrip("/"),
        registry_token=_get_config_value("REGISTRY_API_TOKEN", "INFOSIMPLES_API_TOKEN"),
        geocoding_base_url=_get_config_value(
            "GEOCODING_BASE_URL",
            default="https://nominatim.openstreetmap.org",
        ).rstrip("/"),
        geocoding_user_agent=_get_config_value("GEOCODING_USER_AGENT", default="credportal/1.0"),
        auto_generate_contract=_get_bool("AUTO_GENERATE_CONTRACT", "AUTO_GERAR_CONTRATO", default=True),
        request_timeout_seconds=float(_get_config_value("REQUEST_TIMEOUT_SECONDS", default="30") or 30),
        bulk_timeout_seconds=float(_get_config_value("BULK_TIMEOUT_SECONDS", default="120") or 120),
        retry_max_attempts=int(_get_config_value("RETRY_MAX_ATTEMPTS", default="3") or 3),
        retry_base_delay_seconds=float(_get_config_value("RETRY_BASE_DELAY_SECONDS", default="1.0") or 1.0),
        min_justification_length=int(_get_config_value("MIN_JUSTIFICATION_LENGTH", default="100") or 100),
        cors_allow_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
    )


settings = load_settings()

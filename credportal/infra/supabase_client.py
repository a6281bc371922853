from __future__ import annotations

from typing import Any

from supabase import create_client

from credportal.config import Settings, settings as default_settings
from credportal.logging_config import get_logger

logger = get_logger("infra.supabase")


def get_supabase_client(config: Settings | None = None) -> tuple[Any | None, str | None]:
    cfg = config or default_settings
    if not cfg.supabase_url or not cfg.supabase_key:
        return None, "SUPABASE_URL or SUPABASE_KEY missing"

    if not cfg.supabase_url_valid():
        return None, "SUPABASE_URL invalid (must look like https://<project-ref>.supabase.co)"

    try:
        return create_client(cfg.supabase_url, cfg.supabase_key), None
    except Exception as exc:  # pragma: no cover
        logger.warning("Supabase client init failed", extra={"error": str(exc)})
        return None, f"Supabase init failed: {exc}"

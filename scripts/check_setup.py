#!/usr/bin/env python3
from __future__ import annotations

import json
import sys
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credportal.config import load_settings


def probe(url: str, headers: dict[str, str] | None = None, params: dict[str, str] | None = None) -> tuple[int | None, str]:
    try:
        res = requests.get(url, headers=headers or {}, params=params, timeout=20)
        return res.status_code, res.text[:200]
    except requests.RequestException as exc:
        return None, str(exc)


def main() -> None:
    cfg = load_settings()
    key = cfg.supabase_key

    print("== ENV VALIDATION ==")
    print(json.dumps({
        "SUPABASE_URL_VALID": cfg.supabase_url_valid(),
        "SUPABASE_KEY_PRESENT": cfg.supabase_key_present(),
        "SUPABASE_KEY_TYPE": (
            "service" if key.startswith("sb_secret_") else "publishable" if key.startswith("sb_publishable_") else "jwt_or_unknown"
        ),
        "SIGNATURE_PROVIDER_CONFIGURED": cfg.signature_provider_configured(),
        "SIGNATURE_WEBHOOK_SECRET_PRESENT": bool(cfg.signature_webhook_secret),
        "REGISTRY_TOKEN_PRESENT": bool(cfg.registry_token),
        "AUTO_GENERATE_CONTRACT": cfg.auto_generate_contract,
    }, indent=2))

    print("\n== CONNECTIVITY CHECKS ==")
    if cfg.supabase_url_valid() and key:
        status, detail = probe(
            f"{cfg.supabase_url}/rest/v1/applications",
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
            params={"select": "id", "limit": "1"},
        )
        print(f"supabase_applications: status={status}")
        if status is None or status >= 400:
            print(f"  detail={detail}")
            print("  note=404 means the credentialing tables are missing; 401 means the key lacks access.")
    else:
        print("supabase_applications: skipped (fix SUPABASE_URL/SUPABASE_KEY)")

    if cfg.signature_provider_configured():
        status, detail = probe(
            f"{cfg.signature_base_url}/accounts/{cfg.signature_account_id}",
            headers={"X-Api-Key": cfg.signature_api_key},
        )
        print(f"signature_provider_account: status={status}")
        if status is None or status >= 400:
            print(f"  detail={detail}")
    else:
        print("signature_provider_account: skipped (no SIGNATURE_API_KEY/SIGNATURE_ACCOUNT_ID)")

    status, detail = probe(
        f"{cfg.geocoding_base_url}/status",
        headers={"User-Agent": cfg.geocoding_user_agent},
        params={"format": "json"},
    )
    print(f"geocoding_status: status={status}")
    if status is None or status >= 400:
        print(f"  detail={detail}")


if __name__ == "__main__":
    main()

from __future__ import annotations

import hashlib
import re
from typing import Any

import requests

from credportal.config import Settings, settings as default_settings
from credportal.contracts.payloads import GeocodeRequest, GeocodeResult
from credportal.domain.errors import NotFoundError, TransientProviderError
from credportal.domain.models import utc_now
from credportal.infra.repositories import CredentialingRepository
from credportal.infra.retry import RetryPolicy, raise_for_provider_status
from credportal.logging_config import get_logger

logger = get_logger("infra.geocoding")

COUNTRY_NAME = "Brasil"


def format_address(req: GeocodeRequest) -> str:
    parts = [req.address, req.city, req.state, COUNTRY_NAME]
    return ", ".join(p.strip() for p in parts if p and p.strip())


def address_hash(req: GeocodeRequest) -> str:
    normalized = "|".join(
        re.sub(r"\s+", " ", (part or "").strip().lower())
        for part in (req.address, req.city, req.state, re.sub(r"\D", "", req.postal_code or ""))
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class GeocodingAdapter:
    """Nominatim search with a store-backed cache keyed by address hash."""

    def __init__(
        self,
        repo: CredentialingRepository,
        config: Settings | None = None,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        cfg = config or default_settings
        self.repo = repo
        self.base_url = cfg.geocoding_base_url
        self.user_agent = cfg.geocoding_user_agent
        self.timeout = cfg.request_timeout_seconds
        self.session = session or requests.Session()
        self.retry = retry_policy or RetryPolicy.from_settings(cfg)

    def _search(self, query: str) -> list[dict[str, Any]]:
        try:
            res = self.session.get(
                f"{self.base_url}/search",
                params={"q": query, "format": "json", "limit": 1, "countrycodes": "br"},
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"Geocoding provider unreachable: {exc}") from exc
        raise_for_provider_status(res, "Geocoding provider")
        try:
            body = res.json()
        except ValueError as exc:
            raise TransientProviderError(f"Geocoding provider returned a non-JSON body: {exc}") from exc
        return body if isinstance(body, list) else []

    def geocode(self, req: GeocodeRequest) -> GeocodeResult:
        key = address_hash(req)
        if not req.force_refresh:
            cached = self.repo.get_geocode(key)
            if cached:
                self.repo.put_geocode(key, {**cached, "hit_count": int(cached.get("hit_count") or 0) + 1})
                return GeocodeResult(
                    latitude=float(cached["latitude"]),
                    longitude=float(cached["longitude"]),
                    cached=True,
                    provider=str(cached.get("provider") or "nominatim"),
                    display_name=cached.get("display_name"),
                )

        query = format_address(req)
        results = self.retry.call("geocoding.search", lambda: self._search(query))
        if not results:
            raise NotFoundError("address", query)

        location = results[0]
        result = GeocodeResult(
            latitude=float(location["lat"]),
            longitude=float(location["lon"]),
            cached=False,
            display_name=location.get("display_name"),
        )
        self.repo.put_geocode(
            key,
            {
                "address_text": query,
                "latitude": result.latitude,
                "longitude": result.longitude,
                "provider": result.provider,
                "display_name": result.display_name,
                "hit_count": 0,
                "updated_at": utc_now(),
            },
        )
        logger.info("Address geocoded", extra={"address_hash": key[:12], "cached": False})
        return result

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from credportal.config import Settings, settings as default_settings
from credportal.events.bus import EventBus, Subscription, build_event_bus
from credportal.events.subscriptions import ChangeFeed, QueryCache
from credportal.infra.geocoding_adapter import GeocodingAdapter
from credportal.infra.id_validators import GovernmentIdValidator
from credportal.infra.repositories import CredentialingRepository, build_repository
from credportal.infra.signature_adapter import SignatureProviderAdapter
from credportal.logging_config import get_logger
from credportal.services.application_service import ApplicationService
from credportal.services.audit_service import AuditService
from credportal.services.certificate_service import CertificateService
from credportal.services.contract_service import ContractLifecycleCoordinator, SignatureProvider
from credportal.services.decision_service import DecisionRecorder
from credportal.services.notification_service import NotificationService
from credportal.services.provider_service import ProviderService
from credportal.services.sanction_service import SanctionService

logger = get_logger("services.container")


@dataclass
class Services:
    config: Settings
    repo: CredentialingRepository
    bus: EventBus
    feed: ChangeFeed
    cache: QueryCache
    applications: ApplicationService
    decisions: DecisionRecorder
    contracts: ContractLifecycleCoordinator
    providers: ProviderService
    sanctions: SanctionService
    certificates: CertificateService
    audit: AuditService
    notifications: NotificationService
    validators: GovernmentIdValidator
    geocoding: GeocodingAdapter
    using_supabase: bool = False
    storage_message: str | None = None
    subscriptions: list[Subscription] = field(default_factory=list)

    def close(self) -> None:
        for sub in self.subscriptions:
            sub.unsubscribe()
        self.cache.clear()
        self.feed.close()


def build_services(
    *,
    config: Settings | None = None,
    repo: CredentialingRepository | None = None,
    bus: EventBus | None = None,
    signature: SignatureProvider | None = None,
    validators: GovernmentIdValidator | None = None,
    geocoding: GeocodingAdapter | None = None,
    today: Callable[[], date] = date.today,
    clock: Callable[[], float] = time.time,
) -> Services:
    cfg = config or default_settings
    using_supabase = False
    message = None
    if repo is None:
        repo, using_supabase, message = build_repository(cfg)
        if message:
            logger.warning(message)

    bus = bus or build_event_bus()
    feed = ChangeFeed(bus)
    cache = QueryCache(feed)

    audit = AuditService(repo)
    notifications = NotificationService(repo)
    subscriptions = [audit.attach(bus), *notifications.attach(bus)]

    providers = ProviderService(repo, bus, cfg)
    contracts = ContractLifecycleCoordinator(
        repo,
        bus,
        signature or SignatureProviderAdapter(cfg),
        providers=providers,
        clock=clock,
    )
    return Services(
        config=cfg,
        repo=repo,
        bus=bus,
        feed=feed,
        cache=cache,
        applications=ApplicationService(repo, bus, cache),
        decisions=DecisionRecorder(repo, bus, contracts, cfg, today=today),
        contracts=contracts,
        providers=providers,
        sanctions=SanctionService(repo, bus, providers, today=today),
        certificates=CertificateService(repo, bus, providers, today=today),
        audit=audit,
        notifications=notifications,
        validators=validators or GovernmentIdValidator(cfg),
        geocoding=geocoding or GeocodingAdapter(repo, cfg),
        using_supabase=using_supabase,
        storage_message=message,
        subscriptions=subscriptions,
    )

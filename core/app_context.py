from dataclasses import dataclass
from typing import Dict, Optional

from core.cache.store import RateDedupStore, RedisStore
from core.clock import Clock, SystemClock
from core.config_loader import AppConfig
from notification.analytics import FilteringAnalytics
from notification.broadcaster import RealtimeBroadcaster
from notification.channels import PushProvider, PushProviderFactory
from notification.dispatcher import DeliveryDispatcher, PlatformBackoff
from notification.filtering import NotificationFilteringService
from notification.interfaces import NullRealtimeTransport, RealtimeTransport
from notification.presence import PresenceManager
from notification.repositories import (
    BlacklistRepository,
    DeviceTokenRepository,
    EngagementRepository,
    PreferenceRepository,
    SenderReputationRepository,
    StoreFollowerDirectory,
)
from notification.scheduler import NotificationScheduler
from notification.service import NotificationService
from notification.templates import TemplateRegistry
from notification.tracker import DeliveryTracker


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    This eliminates duplicate wiring code between the web process and the
    worker and provides a single source of truth for service instantiation.
    Every component gets its collaborators here; none reach for globals.
    """
    config: AppConfig
    store: RateDedupStore
    clock: Clock
    preferences: PreferenceRepository
    tokens: DeviceTokenRepository
    templates: TemplateRegistry
    dispatcher: DeliveryDispatcher
    broadcaster: RealtimeBroadcaster
    presence: PresenceManager
    tracker: DeliveryTracker
    analytics: FilteringAnalytics
    filtering: NotificationFilteringService
    scheduler: NotificationScheduler
    notification_service: NotificationService

    @classmethod
    def build(
        cls,
        config: AppConfig,
        transport: Optional[RealtimeTransport] = None,
        store: Optional[RateDedupStore] = None,
        clock: Optional[Clock] = None
    ) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration
            transport: Live connection transport (the web process passes its
                WebSocket manager; the worker has none)
            store: Shared store; a RedisStore from config when omitted
            clock: Time source; the system clock when omitted

        Returns:
            Fully wired AppContext instance
        """
        store = store or cls._build_store(config)
        clock = clock or SystemClock()
        transport = transport or NullRealtimeTransport()

        preferences = PreferenceRepository(store)
        tokens = DeviceTokenRepository(store)
        templates = TemplateRegistry(
            templates_file=config.templates.file,
            default_locale=config.templates.default_locale,
            cache_size=config.templates.cache_size
        )
        dispatcher = cls._build_dispatcher(config, store, tokens, clock)

        broadcaster = RealtimeBroadcaster(store, transport, config.realtime.dedup_ttl_seconds)
        presence = PresenceManager(
            store,
            broadcaster=broadcaster,
            followers=StoreFollowerDirectory(store),
            ttl_seconds=config.realtime.presence_ttl_seconds,
            clock=clock
        )

        tracker = DeliveryTracker(store)
        analytics = FilteringAnalytics(store, clock)
        filtering = NotificationFilteringService(
            store,
            config.filtering,
            batch_window_seconds=config.scheduler.batch_window_seconds,
            clock=clock,
            preferences=preferences,
            engagement=EngagementRepository(store),
            reputation=SenderReputationRepository(
                store,
                default=config.filtering.spam.default_reputation,
                ttl_seconds=config.filtering.spam.reputation_ttl_seconds
            ),
            blacklist=BlacklistRepository(store),
            analytics=analytics
        )
        scheduler = NotificationScheduler(
            store,
            config.scheduler,
            renderer=templates,
            dispatcher=dispatcher,
            tokens=tokens,
            preferences=preferences,
            tracker=tracker,
            broadcaster=broadcaster,
            clock=clock
        )
        notification_service = NotificationService(filtering, scheduler, tracker, clock)

        return cls(
            config=config,
            store=store,
            clock=clock,
            preferences=preferences,
            tokens=tokens,
            templates=templates,
            dispatcher=dispatcher,
            broadcaster=broadcaster,
            presence=presence,
            tracker=tracker,
            analytics=analytics,
            filtering=filtering,
            scheduler=scheduler,
            notification_service=notification_service
        )

    @staticmethod
    def _build_store(config: AppConfig) -> RedisStore:
        """Build the Redis-backed store from configuration."""
        return RedisStore(
            redis_url=config.redis.url,
            password=config.redis.password,
            socket_timeout=config.redis.socket_timeout_seconds
        )

    @staticmethod
    def _build_dispatcher(
        config: AppConfig,
        store: RateDedupStore,
        tokens: DeviceTokenRepository,
        clock: Clock
    ) -> DeliveryDispatcher:
        """Build one push provider per configured platform behind a dispatcher."""
        dispatcher_config = config.dispatcher
        providers: Dict[str, PushProvider] = {
            platform: PushProviderFactory.create(platform, provider_config, dispatcher_config.dry_run)
            for platform, provider_config in dispatcher_config.providers.items()
        }
        return DeliveryDispatcher(
            providers,
            PlatformBackoff(store, clock),
            tokens=tokens,
            max_workers=dispatcher_config.max_workers,
            send_timeout_seconds=dispatcher_config.send_timeout_seconds
        )

    def close(self) -> None:
        """Stop background work and release the dispatcher's thread pool."""
        self.scheduler.stop()
        self.dispatcher.close()

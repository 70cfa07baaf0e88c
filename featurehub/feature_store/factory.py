"""Assemble the feature store components from settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from featurehub.cache import RedisFastTier
from featurehub.db.engine import create_session_factory, create_sync_engine
from featurehub.event_bus import LoggingNotifier, Notifier, RedisNotifier, RedisStreamBroker, StreamBroker
from featurehub.settings import Settings, get_settings

from .compiler import SpecCompiler
from .compute import FeatureComputer
from .config import FeatureStoreConfig, StreamProcessorConfig
from .history import HistorySource, SqlHistorySource
from .materialization import MaterializationCoordinator
from .online import FeatureCache
from .registry import FeatureRegistry
from .stream import OnlineStreamProcessor


@dataclass
class FeatureStore:
    """The wired core components sharing one engine and notifier."""

    engine: Engine
    session_factory: sessionmaker
    registry: FeatureRegistry
    coordinator: MaterializationCoordinator
    cache: FeatureCache
    notifier: Notifier
    settings: Settings

    def stream_processor(
        self,
        broker: Optional[StreamBroker] = None,
        history: Optional[HistorySource] = None,
        consumer_name: Optional[str] = None,
    ) -> OnlineStreamProcessor:
        """A new stream worker; each worker gets its own consumer name."""
        return OnlineStreamProcessor(
            broker=broker or RedisStreamBroker(redis_url=self.settings.redis_url),
            coordinator=self.coordinator,
            cache=self.cache,
            computer=FeatureComputer(history or SqlHistorySource.from_settings(self.session_factory, self.settings)),
            config=StreamProcessorConfig.from_settings(self.settings, consumer_name=consumer_name),
            notifier=self.notifier,
        )


def build_feature_store(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    redis_client: Any = None,
    notifier: Optional[Notifier] = None,
) -> FeatureStore:
    settings = settings or get_settings()
    engine = engine or create_sync_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    config = FeatureStoreConfig.from_settings(settings)

    fast_tier = None
    if settings.fast_tier_enabled:
        fast_tier = RedisFastTier(client=redis_client, redis_url=settings.redis_url)
    if notifier is None:
        notifier = (
            RedisNotifier(redis_client, settings.notification_channel, redis_url=settings.redis_url)
            if settings.fast_tier_enabled
            else LoggingNotifier()
        )

    compiler = SpecCompiler()
    registry = FeatureRegistry(session_factory, compiler=compiler, notifier=notifier, config=config)
    coordinator = MaterializationCoordinator(
        session_factory, registry, compiler=compiler, notifier=notifier, config=config
    )
    cache = FeatureCache(session_factory, registry, coordinator, fast_tier=fast_tier, config=config)
    return FeatureStore(
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        coordinator=coordinator,
        cache=cache,
        notifier=notifier,
        settings=settings,
    )

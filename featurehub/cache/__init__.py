"""Redis caching package for FeatureHub."""

from featurehub.cache.redis_client import FastTierEntry, RedisFastTier

__all__ = ["FastTierEntry", "RedisFastTier"]

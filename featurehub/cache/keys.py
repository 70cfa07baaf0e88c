"""Redis key naming conventions for FeatureHub.

All keys are namespaced with 'featurehub:' prefix.
"""

# Online feature vector hash (TTL: feature set cache_ttl, default 1hr)
FEATURE_VECTOR = "featurehub:feature:{tenant}:{feature_set_id}:{entity_id}"

# All vectors of one feature set, for invalidation scans
FEATURE_SET_PATTERN = "featurehub:feature:{tenant}:{feature_set_id}:*"


def feature_vector_key(tenant: str, feature_set_id: str, entity_id: str) -> str:
    return FEATURE_VECTOR.format(tenant=tenant, feature_set_id=feature_set_id, entity_id=entity_id)

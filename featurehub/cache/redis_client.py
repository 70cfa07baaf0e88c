"""Redis fast tier for online feature vectors.

Each vector lives in a hash keyed by (tenant, feature set, entity) with a
per-key TTL, so an expired vector simply disappears from this tier.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from featurehub.cache.keys import FEATURE_SET_PATTERN, feature_vector_key
from featurehub.errors import BrokerError

logger = logging.getLogger(__name__)


@dataclass
class FastTierEntry:
    """A feature vector read back from the fast tier."""

    vector: Dict[str, Any]
    computed_at: Optional[str] = None
    feature_version: Optional[int] = None
    event_id: Optional[str] = None


class RedisFastTier:
    """Redis hash store for feature vectors with TTL-based expiration."""

    def __init__(self, client: Any = None, redis_url: Optional[str] = None):
        self._client = client
        self._redis_url = redis_url

    # --- Connection Management ---

    def get_client(self):
        """Get or create the sync Redis client."""
        if self._client is None:
            try:
                import redis
                from featurehub.settings import get_settings
                url = self._redis_url or get_settings().redis_url
                self._client = redis.from_url(url, decode_responses=True)
                self._client.ping()
            except Exception as e:
                logger.warning("Redis connection failed: %s", e)
                self._client = None
                raise BrokerError(f"Redis connection failed: {e}") from e
        return self._client

    # --- Vector Operations ---

    def get_vector(self, tenant: str, feature_set_id: str, entity_id: str) -> Optional[FastTierEntry]:
        """Return the cached vector, or None when absent or expired."""
        key = feature_vector_key(tenant, feature_set_id, entity_id)
        try:
            data = self.get_client().hgetall(key)
        except BrokerError:
            raise
        except Exception as e:
            raise BrokerError(f"Fast tier read failed for {key}: {e}") from e
        if not data or "vector" not in data:
            return None
        version = data.get("feature_set_version")
        return FastTierEntry(
            vector=json.loads(data["vector"]),
            computed_at=data.get("computed_at"),
            feature_version=int(version) if version not in (None, "") else None,
            event_id=data.get("event_id") or None,
        )

    def set_vector(
        self,
        tenant: str,
        feature_set_id: str,
        entity_id: str,
        vector: Dict[str, Any],
        computed_at: str,
        feature_version: int,
        ttl_seconds: int,
        event_id: Optional[str] = None,
    ) -> None:
        """Replace the whole hash and set its TTL in one MULTI/EXEC transaction."""
        key = feature_vector_key(tenant, feature_set_id, entity_id)
        mapping = {
            "vector": json.dumps(vector, default=str),
            "computed_at": computed_at,
            "feature_set_version": str(feature_version),
            "event_id": event_id or "",
        }
        try:
            pipe = self.get_client().pipeline(transaction=True)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, int(ttl_seconds))
            pipe.execute()
        except BrokerError:
            raise
        except Exception as e:
            raise BrokerError(f"Fast tier write failed for {key}: {e}") from e

    # --- Cache Invalidation ---

    def delete(self, tenant: str, feature_set_id: str, entity_id: Optional[str] = None) -> int:
        """Delete one vector, or every vector of the feature set. Returns count deleted."""
        try:
            client = self.get_client()
            if entity_id is not None:
                return int(client.delete(feature_vector_key(tenant, feature_set_id, entity_id)))
            pattern = FEATURE_SET_PATTERN.format(tenant=tenant, feature_set_id=feature_set_id)
            count = 0
            for key in client.scan_iter(match=pattern):
                count += int(client.delete(key))
            return count
        except BrokerError:
            raise
        except Exception as e:
            raise BrokerError(f"Fast tier delete failed: {e}") from e

    def close(self) -> None:
        """Close the connection."""
        if self._client is not None:
            self._client.close()
            self._client = None

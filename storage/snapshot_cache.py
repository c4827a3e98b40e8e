"""Snapshot cache writer."""
import logging
from typing import Any, Dict, Optional

from processor.models import Snapshot
from storage.cache_store import DynamoDBCacheStore

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


class SnapshotCache:
    """Stores one full snapshot per window key."""

    def __init__(self, store: DynamoDBCacheStore):
        self.store = store

    def write(self, key: str, snapshot: Snapshot,
              ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Dict[str, Any]:
        """
        Overwrite the snapshot stored under ``key``.

        Returns:
            The serialized payload that was written

        Raises:
            CacheError: If the cache rejects the write
        """
        payload = snapshot.to_dict()
        self.store.put_json(key, payload, ttl_seconds=ttl_seconds)
        logger.info(
            f"Cached snapshot {key} with {snapshot.total_events} events "
            f"(ttl {ttl_seconds}s)"
        )
        return payload

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached payload, or None on a miss."""
        return self.store.get_json(key)

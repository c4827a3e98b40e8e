"""Best-effort geo index of event locations."""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from processor.errors import CacheError, GeoWriteFailed
from processor.models import GeoWriteResult
from storage.cache_store import DynamoDBCacheStore

logger = logging.getLogger(__name__)

# Same limits Redis GEOADD enforces (EPSG:900913 projection bounds)
MAX_LONGITUDE = 180.0
MAX_LATITUDE = 85.05112878
EARTH_RADIUS_KM = 6372.7976


def haversine_km(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (math.sin(d_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class GeoIndexWriter:
    """Writes and queries per-window geo indexes."""

    def __init__(self, store: DynamoDBCacheStore, ttl_seconds: Optional[int] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def write(self, index_name: str,
              points: Iterable[Tuple[str, float, float]]) -> GeoWriteResult:
        """
        Upsert every (identifier, longitude, latitude) point.

        Each point is written on its own; a failure is logged and recorded
        and the remaining points are still attempted. Members already in
        the index that were not written by this batch are then removed, so
        the index matches the latest batch.

        Args:
            index_name: Geo index key for the window
            points: Identifier, longitude, latitude triples

        Returns:
            GeoWriteResult listing written, failed and removed identifiers
        """
        result = GeoWriteResult()
        for identifier, longitude, latitude in points:
            try:
                self._write_point(index_name, identifier, longitude, latitude)
            except GeoWriteFailed as e:
                logger.error(f"Error storing geo data: {e}")
                result.failed[identifier] = e.reason
                continue
            result.written.append(identifier)

        self._remove_stale(index_name, result)

        logger.info(
            f"Geo index {index_name}: {len(result.written)} written, "
            f"{len(result.failed)} failed, {len(result.removed)} removed"
        )
        return result

    def _remove_stale(self, index_name: str, result: GeoWriteResult) -> None:
        try:
            written = set(result.written)
            stale = sorted(
                entry['member'] for entry in self.store.query_members(index_name)
                if entry['member'] not in written
            )
            if stale:
                self.store.delete_members(index_name, stale)
        except CacheError as e:
            logger.error(f"Error removing stale geo members from {index_name}: {e}")
            return
        result.removed.extend(stale)

    def _write_point(self, index_name: str, identifier: str,
                     longitude: float, latitude: float) -> None:
        if abs(longitude) > MAX_LONGITUDE or abs(latitude) > MAX_LATITUDE:
            raise GeoWriteFailed(
                identifier,
                f"coordinates out of range: {longitude},{latitude}"
            )
        try:
            self.store.put_member(
                index_name, identifier, longitude, latitude,
                ttl_seconds=self.ttl_seconds
            )
        except CacheError as e:
            raise GeoWriteFailed(identifier, str(e)) from e

    def members(self, index_name: str) -> Dict[str, Tuple[float, float]]:
        """Return identifier -> (longitude, latitude) for an index."""
        return {
            entry['member']: (entry['longitude'], entry['latitude'])
            for entry in self.store.query_members(index_name)
        }

    def search(self, index_name: str, longitude: float, latitude: float,
               radius_km: float) -> List[Dict[str, Any]]:
        """
        Find members within ``radius_km`` of a point, nearest first.

        Raises:
            CacheError: If the index cannot be read
        """
        hits = []
        for member, (lon, lat) in self.members(index_name).items():
            distance = haversine_km(longitude, latitude, lon, lat)
            if distance <= radius_km:
                hits.append({
                    'id': member,
                    'longitude': lon,
                    'latitude': lat,
                    'distance_km': round(distance, 4),
                })
        hits.sort(key=lambda hit: hit['distance_km'])
        return hits

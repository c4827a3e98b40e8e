"""DynamoDB-backed key/value cache used for snapshots, geo entries and status."""
import gzip
import json
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import Binary
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import CacheError, CacheRejected, CacheUnavailable
from storage.connections import ConnectionProvider

logger = logging.getLogger(__name__)

# Error codes DynamoDB returns when a table or account is saturated
THROTTLING_ERROR_CODES = frozenset({
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'LimitExceededException',
})

# Error codes that fail the same way however often the request is repeated
REJECTED_ERROR_CODES = frozenset({
    'ValidationException',
    'ResourceNotFoundException',
    'AccessDeniedException',
    'UnrecognizedClientException',
    'SerializationException',
})

VALUE_SORT_KEY = 'value'
CHUNK_PREFIX = 'chunk#'

# Compressed payloads above this are split across chunk items; stays under the
# 400 KB item limit even when binary size is counted as base64
CHUNK_BYTES = 256 * 1024


def translate_error(operation: str, key: str, error: Exception) -> CacheError:
    """
    Map a boto error onto the cache error hierarchy.

    Request errors DynamoDB will never accept become CacheRejected;
    everything else is CacheUnavailable, with throttling flagged as high load.
    """
    message = f"Cache {operation} failed for {key}: {error}"
    code = ''
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
    if code in REJECTED_ERROR_CODES:
        return CacheRejected(message)
    return CacheUnavailable(message, high_load=code in THROTTLING_ERROR_CODES)


def _expiry(ttl_seconds: Optional[int]) -> Optional[int]:
    if ttl_seconds is None:
        return None
    return int(time.time()) + ttl_seconds


def _raw_bytes(payload: Any) -> bytes:
    if isinstance(payload, Binary):
        return payload.value
    return bytes(payload)


class DynamoDBCacheStore:
    """
    Single-table key/value cache.

    Items are addressed by ``pk`` (the cache key) and ``sk``. Plain values
    live under ``sk = 'value'`` as gzip-compressed JSON. A value too large
    for one item is split into ``chunk#<version>#<n>`` items and the
    ``value`` item becomes a manifest naming the version and chunk count.
    Geo index entries use the member identifier as ``sk`` so re-adding a
    member replaces it. Expiry uses the table's ``ttl`` attribute.
    """

    def __init__(self, provider: ConnectionProvider, chunk_bytes: int = CHUNK_BYTES):
        self.provider = provider
        self.chunk_bytes = chunk_bytes

    @property
    def table(self):
        return self.provider.table()

    def put_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """
        Store a JSON-serializable value, replacing any previous one.

        Raises:
            CacheUnavailable: If the write fails and may succeed later
            CacheRejected: If DynamoDB refuses the request outright
        """
        data = gzip.compress(json.dumps(value).encode('utf-8'))
        expires = _expiry(ttl_seconds)
        item = {'pk': key, 'sk': VALUE_SORT_KEY}
        if expires is not None:
            item['ttl'] = expires

        try:
            if len(data) <= self.chunk_bytes:
                item['payload'] = Binary(data)
                self.table.put_item(Item=item)
                keep = None
            else:
                keep = uuid.uuid4().hex
                count = self._put_chunks(key, keep, data, expires)
                item.update({'version': keep, 'chunks': count})
                self.table.put_item(Item=item)
                logger.info(
                    f"Stored {key} as {count} chunks",
                    extra={'cache_key': key, 'chunks': count, 'size_bytes': len(data)}
                )
            self._prune_chunks(key, keep)
        except (ClientError, BotoCoreError) as e:
            raise translate_error('write', key, e) from e

    def get_json(self, key: str) -> Optional[Any]:
        """
        Fetch a value, or None if it is missing or past its TTL.

        Raises:
            CacheError: If the read fails
        """
        try:
            response = self.table.get_item(
                Key={'pk': key, 'sk': VALUE_SORT_KEY}, ConsistentRead=True
            )
            item = response.get('Item')
            if not item or self._expired(item):
                return None
            if 'version' in item:
                data = self._read_chunks(key, item['version'], int(item['chunks']))
                if data is None:
                    return None
            else:
                data = item.get('payload')
        except (ClientError, BotoCoreError) as e:
            raise translate_error('read', key, e) from e

        try:
            if isinstance(data, str):
                return json.loads(data)
            return json.loads(gzip.decompress(_raw_bytes(data)).decode('utf-8'))
        except (TypeError, ValueError, OSError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    def _put_chunks(self, key: str, version: str, data: bytes,
                    expires: Optional[int]) -> int:
        parts = [data[i:i + self.chunk_bytes] for i in range(0, len(data), self.chunk_bytes)]
        with self.table.batch_writer() as batch:
            for index, part in enumerate(parts):
                chunk = {
                    'pk': key,
                    'sk': f"{CHUNK_PREFIX}{version}#{index:05d}",
                    'payload': Binary(part),
                }
                if expires is not None:
                    chunk['ttl'] = expires
                batch.put_item(Item=chunk)
        return len(parts)

    def _read_chunks(self, key: str, version: str, expected: int) -> Optional[bytes]:
        items = self._query_all(
            Key('pk').eq(key) & Key('sk').begins_with(f"{CHUNK_PREFIX}{version}#"),
            ConsistentRead=True
        )
        if len(items) != expected:
            logger.warning(
                f"Cache entry {key} has {len(items)} of {expected} chunks"
            )
            return None
        items.sort(key=lambda chunk: chunk['sk'])
        return b''.join(_raw_bytes(chunk['payload']) for chunk in items)

    def _prune_chunks(self, key: str, keep: Optional[str]) -> None:
        """Delete chunk items left behind by earlier versions of ``key``."""
        current = f"{CHUNK_PREFIX}{keep}#" if keep else None
        stale = [
            item['sk']
            for item in self._query_all(
                Key('pk').eq(key) & Key('sk').begins_with(CHUNK_PREFIX),
                ProjectionExpression='pk, sk'
            )
            if not (current and item['sk'].startswith(current))
        ]
        if stale:
            self._delete_sort_keys(key, stale)

    def put_member(self, key: str, member: str, longitude: float, latitude: float,
                   ttl_seconds: Optional[int] = None) -> None:
        """Upsert one geo member under ``key``."""
        item = {
            'pk': key,
            'sk': member,
            'longitude': Decimal(str(longitude)),
            'latitude': Decimal(str(latitude)),
        }
        expires = _expiry(ttl_seconds)
        if expires is not None:
            item['ttl'] = expires

        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise translate_error('write', f"{key}/{member}", e) from e

    def delete_members(self, key: str, members: Iterable[str]) -> None:
        """Remove geo members from ``key`` in batches."""
        try:
            self._delete_sort_keys(key, members)
        except (ClientError, BotoCoreError) as e:
            raise translate_error('delete', key, e) from e

    def query_members(self, key: str) -> List[Dict[str, Any]]:
        """
        Return all unexpired geo members under ``key``.

        Returns:
            List of dicts with member, longitude and latitude
        """
        try:
            items = self._query_all(Key('pk').eq(key))
        except (ClientError, BotoCoreError) as e:
            raise translate_error('query', key, e) from e

        return [
            {
                'member': item['sk'],
                'longitude': float(item['longitude']),
                'latitude': float(item['latitude']),
            }
            for item in items
            if item.get('sk') != VALUE_SORT_KEY
            and not item['sk'].startswith(CHUNK_PREFIX)
            and not self._expired(item)
        ]

    def _query_all(self, condition, **kwargs) -> List[Dict[str, Any]]:
        response = self.table.query(KeyConditionExpression=condition, **kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                KeyConditionExpression=condition,
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **kwargs
            )
            items.extend(response.get('Items', []))
        return items

    def _delete_sort_keys(self, key: str, sort_keys: Iterable[str]) -> None:
        with self.table.batch_writer() as batch:
            for sort_key in sort_keys:
                batch.delete_item(Key={'pk': key, 'sk': sort_key})

    @staticmethod
    def _expired(item: Dict[str, Any]) -> bool:
        # DynamoDB deletes expired items lazily, so check on read
        ttl = item.get('ttl')
        return ttl is not None and int(ttl) <= int(time.time())

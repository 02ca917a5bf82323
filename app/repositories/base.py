"""Repository base class used by all concrete repositories."""
import json
import logging
from typing import Any, Callable

from redis.exceptions import WatchError

from squadroll import ConflictError

# Returned by an update callback to leave the stored value alone
UNCHANGED = object()


class BaseRepository:
    """Provides JSON-backed persistence in Redis with a fixed TTL.

    Every write (``_save`` or a committed ``_update``) resets the key's
    expiry to :attr:`ttl` seconds from now.

    ``_update`` is an optimistic read-modify-write: the key is ``WATCH``-ed,
    the callback computes the new value and the write is committed in a
    ``MULTI`` block.  If another writer touched the key in between, the
    whole cycle is repeated, up to :attr:`MAX_RETRIES` times.
    """

    DEFAULT_TTL = 2 * 60 * 60
    MAX_RETRIES = 5

    def __init__(self, redis_client, ttl: int = DEFAULT_TTL) -> None:
        self._redis = redis_client
        self.ttl = ttl
        self._log = logging.getLogger(f'squadroll.repository.{type(self).__name__}')

    def _decode(self, key: str, raw: Any, default: Any = None) -> Any:
        if raw is None:
            return default
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            self._log.warning("Could not decode %s: %s", key, exc)
            return default

    def _load(self, key: str, default: Any = None) -> Any:
        """Load JSON stored at *key*, returning *default* on missing/corrupt data."""
        return self._decode(key, self._redis.get(key), default)

    def _save(self, key: str, data: Any) -> None:
        self._redis.set(key, json.dumps(data), ex=self.ttl)

    def _delete(self, *keys: str) -> None:
        if keys:
            self._redis.delete(*keys)

    def _update(self, key: str, mutate: Callable[[Any], Any]) -> Any:
        """Apply *mutate* to the value at *key* atomically.

        Args:
            key:    Redis key holding a JSON document.
            mutate: Called with the decoded value (``None`` if absent).  It
                    returns the new value, ``None`` to delete the key, or
                    :data:`UNCHANGED` to skip the write.  It may be called
                    more than once and must not have side effects.

        Returns:
            The value now stored (``None`` if absent or deleted).

        Raises:
            ConflictError: The key kept changing for every retry.
        """
        for attempt in range(1, self.MAX_RETRIES + 1):
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    current = self._decode(key, pipe.get(key))
                    new = mutate(current)
                    if new is UNCHANGED:
                        pipe.unwatch()
                        return current
                    pipe.multi()
                    if new is None:
                        pipe.delete(key)
                    else:
                        pipe.set(key, json.dumps(new), ex=self.ttl)
                    pipe.execute()
                    return new
                except WatchError:
                    self._log.info("Concurrent write on %s, retrying (%d/%d)",
                                   key, attempt, self.MAX_RETRIES)
        raise ConflictError(f'Too many concurrent updates to {key}')

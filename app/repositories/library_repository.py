"""Repository for per-member libraries and the memoized common games."""
import json
from typing import List, Optional

from redis.exceptions import WatchError

from multiuser import Game, OwnedGame
from .base import BaseRepository


class LibraryRepository(BaseRepository):
    """Persists game lists scoped to a party.

    Keys::

        games:{code}:{identity}  -> [{"appId", "name"}, ...]
        common:{code}            -> [{"appId", "name", "genres"}, ...]
        common:{code}:gen        -> counter bumped by every invalidation

    A resolve reads the generation first and stores its result only if no
    invalidation happened in the meantime.
    """

    GAMES_KEY = 'games:{code}:{identity}'
    COMMON_KEY = 'common:{code}'
    GENERATION_KEY = 'common:{code}:gen'

    def store_games(self, code: str, identity: str, games: List[OwnedGame]) -> None:
        self._save(self.GAMES_KEY.format(code=code, identity=identity),
                   [g.to_dict() for g in games])

    def get_games(self, code: str, identity: str) -> Optional[List[OwnedGame]]:
        """Return the stored library, or ``None`` if it was never loaded."""
        data = self._load(self.GAMES_KEY.format(code=code, identity=identity))
        if data is None:
            return None
        return OwnedGame.list_from_dicts(data)

    def delete_games(self, code: str, identity: str) -> None:
        self._delete(self.GAMES_KEY.format(code=code, identity=identity))

    def common_generation(self, code: str) -> int:
        return int(self._redis.get(self.GENERATION_KEY.format(code=code)) or 0)

    def store_common_games(self, code: str, games: List[Game],
                           generation: Optional[int] = None) -> bool:
        """Memoize *games*; with *generation*, only if still current.

        Returns:
            True if the entry was written.
        """
        key = self.COMMON_KEY.format(code=code)
        payload = [g.to_dict() for g in games]
        if generation is None:
            self._save(key, payload)
            return True

        gen_key = self.GENERATION_KEY.format(code=code)
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(gen_key)
                if int(pipe.get(gen_key) or 0) != generation:
                    pipe.unwatch()
                    self._log.info("Common games for %s changed during resolve, not cached", code)
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(payload), ex=self.ttl)
                pipe.execute()
                return True
            except WatchError:
                self._log.info("Common games for %s invalidated during store, not cached", code)
                return False

    def get_common_games(self, code: str) -> Optional[List[Game]]:
        data = self._load(self.COMMON_KEY.format(code=code))
        if data is None:
            return None
        return [Game.from_dict(item) for item in data]

    def invalidate_common_games(self, code: str) -> None:
        gen_key = self.GENERATION_KEY.format(code=code)
        with self._redis.pipeline() as pipe:
            pipe.delete(self.COMMON_KEY.format(code=code))
            pipe.incr(gen_key)
            pipe.expire(gen_key, self.ttl)
            pipe.execute()

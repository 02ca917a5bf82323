"""Repository for party records (``party:{code}`` -> JSON party)."""
import json
from typing import Callable, Iterable, Optional

from multiuser import Member, Party
from .base import BaseRepository, UNCHANGED


class PartyRepository(BaseRepository):
    """Stores one JSON document per party.

    Schema::

        {
          "code": "AB12C3",
          "hostIdentity": "7656...",
          "members": [{"identity", "displayName", "avatarUrl",
                       "gamesLoaded", "genreVotes"?}, ...],
          "createdAt": 1700000000000
        }

    Mutations return the party as stored after the write, or ``None`` when
    the party does not exist (or was just deleted).
    """

    KEY = 'party:{code}'

    def _key(self, code: str) -> str:
        return self.KEY.format(code=code)

    def create(self, code: str, host: Member) -> Optional[Party]:
        """Create a party hosted by *host*; ``None`` if *code* is taken."""
        party = Party(code, host.identity, [host])
        created = self._redis.set(self._key(code), json.dumps(party.to_dict()),
                                  ex=self.ttl, nx=True)
        if not created:
            return None
        self._log.info("Party %s created by %s", code, host.identity)
        return party

    def get(self, code: str) -> Optional[Party]:
        data = self._load(self._key(code))
        return Party.from_dict(data) if data else None

    def delete(self, code: str) -> None:
        self._delete(self._key(code))

    def join(self, code: str, member: Member) -> Optional[Party]:
        """Add *member*; joining twice leaves the party untouched."""
        return self._mutate(code, lambda party: party.add_member(member))

    def leave(self, code: str, identity: str) -> Optional[Party]:
        """Remove *identity*; the party is deleted once nobody is left."""
        removed = []

        def change(party: Party) -> bool:
            removed[:] = [party.remove_member(identity)]
            return removed[0]

        party = self._mutate(code, change)
        if party is None and removed and removed[0]:
            self._log.info("Party %s closed", code)
        return party

    def set_games_loaded(self, code: str, identity: str) -> Optional[Party]:
        def change(party: Party) -> bool:
            member = party.find_member(identity)
            if member is None:
                return False
            member.games_loaded = True
            return True
        return self._mutate(code, change)

    def set_genre_votes(self, code: str, identity: str,
                        genres: Iterable[str]) -> Optional[Party]:
        votes = set(genres)

        def change(party: Party) -> bool:
            member = party.find_member(identity)
            if member is None:
                return False
            member.genre_votes = set(votes)
            return True
        return self._mutate(code, change)

    def _mutate(self, code: str, change: Callable[[Party], bool]) -> Optional[Party]:
        """Run *change* on a fresh copy of the party inside a transaction.

        *change* returns False when there is nothing to write.
        """
        def apply(data):
            if data is None:
                return UNCHANGED
            party = Party.from_dict(data)
            if not change(party):
                return UNCHANGED
            if party.is_empty:
                return None
            return party.to_dict()

        data = self._update(self._key(code), apply)
        return Party.from_dict(data) if data else None

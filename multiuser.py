#!/usr/bin/env python3
"""
Multi-User Party Module
Party/member records, the common-library resolver that finds multiplayer
games every member owns, and the genre vote helpers used to narrow the roll.
"""

import logging
import random
import time
from typing import Dict, Iterable, List, Optional, Set

import squadroll

logger = logging.getLogger('squadroll.multiuser')


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

def game_sort_key(name: str):
    """Locale-style ordering: case-insensitive first, case breaks ties."""
    return (name.casefold(), name)


class OwnedGame:
    """One entry of a member's library as stored per party."""

    def __init__(self, app_id: int, name: str):
        self.app_id = int(app_id)
        self.name = name

    def to_dict(self) -> Dict:
        return {'appId': self.app_id, 'name': self.name}

    @classmethod
    def from_dict(cls, data: Dict) -> 'OwnedGame':
        return cls(data['appId'], data.get('name', ''))

    @classmethod
    def list_from_dicts(cls, items: Iterable[Dict]) -> List['OwnedGame']:
        return [cls.from_dict(item) for item in items]

    def __eq__(self, other) -> bool:
        if not isinstance(other, OwnedGame):
            return NotImplemented
        return (self.app_id, self.name) == (other.app_id, other.name)

    def __repr__(self) -> str:
        return f"OwnedGame({self.app_id!r}, {self.name!r})"


class Game(OwnedGame):
    """A common game annotated with its genres."""

    def __init__(self, app_id: int, name: str, genres: Optional[Iterable[str]] = None):
        super().__init__(app_id, name)
        self.genres: Set[str] = set(genres or ())

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['genres'] = sorted(self.genres)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Game':
        return cls(data['appId'], data.get('name', ''), data.get('genres') or [])

    def __eq__(self, other) -> bool:
        if not isinstance(other, Game):
            return NotImplemented
        return (self.app_id, self.name, self.genres) == (other.app_id, other.name, other.genres)

    def __repr__(self) -> str:
        return f"Game({self.app_id!r}, {self.name!r}, {sorted(self.genres)!r})"


# ---------------------------------------------------------------------------
# Party records
# ---------------------------------------------------------------------------

class Member:
    """One authenticated participant of a party."""

    def __init__(self, identity: str, display_name: str = '', avatar_url: str = '',
                 games_loaded: bool = False, genre_votes: Optional[Iterable[str]] = None):
        self.identity = identity
        self.display_name = display_name
        self.avatar_url = avatar_url
        self.games_loaded = games_loaded
        self.genre_votes: Optional[Set[str]] = set(genre_votes) if genre_votes is not None else None

    def to_dict(self) -> Dict:
        data = {
            'identity': self.identity,
            'displayName': self.display_name,
            'avatarUrl': self.avatar_url,
            'gamesLoaded': self.games_loaded,
        }
        if self.genre_votes is not None:
            data['genreVotes'] = sorted(self.genre_votes)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Member':
        return cls(
            identity=str(data['identity']),
            display_name=data.get('displayName', ''),
            avatar_url=data.get('avatarUrl', ''),
            games_loaded=bool(data.get('gamesLoaded', False)),
            genre_votes=data.get('genreVotes'),
        )


class Party:
    """A short-lived group identified by a six-character code.

    The member list keeps join order; the first member after a host leaves
    becomes the new host.
    """

    def __init__(self, code: str, host_identity: str, members: Optional[List[Member]] = None,
                 created_at: Optional[int] = None):
        self.code = code
        self.host_identity = host_identity
        self.members: List[Member] = list(members or [])
        self.created_at = created_at if created_at is not None else int(time.time() * 1000)

    def find_member(self, identity: str) -> Optional[Member]:
        for member in self.members:
            if member.identity == identity:
                return member
        return None

    def has_member(self, identity: str) -> bool:
        return self.find_member(identity) is not None

    def add_member(self, member: Member) -> bool:
        """Append *member*; returns False if that identity is already in."""
        if self.has_member(member.identity):
            return False
        self.members.append(member)
        return True

    def remove_member(self, identity: str) -> bool:
        """Drop *identity*, handing the host role on if needed.

        Returns:
            True if the member was present.
        """
        before = len(self.members)
        self.members = [m for m in self.members if m.identity != identity]
        if len(self.members) == before:
            return False
        if self.host_identity == identity and self.members:
            self.host_identity = self.members[0].identity
        return True

    @property
    def is_empty(self) -> bool:
        return not self.members

    @property
    def loaded_count(self) -> int:
        return sum(1 for m in self.members if m.games_loaded)

    @property
    def all_loaded(self) -> bool:
        return bool(self.members) and all(m.games_loaded for m in self.members)

    def to_dict(self) -> Dict:
        return {
            'code': self.code,
            'hostIdentity': self.host_identity,
            'members': [m.to_dict() for m in self.members],
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Party':
        return cls(
            code=data['code'],
            host_identity=data['hostIdentity'],
            members=[Member.from_dict(m) for m in data.get('members', [])],
            created_at=data.get('createdAt'),
        )


# ---------------------------------------------------------------------------
# Common-library resolution
# ---------------------------------------------------------------------------

class CommonLibraryResolver:
    """Finds the multiplayer games every member owns.

    Metadata lookups go out one at a time with *delay* seconds between them
    to stay under the store's rate limit.  When a lookup fails or the store
    does not know the app, the game is kept with no genres if
    *include_on_metadata_failure* is set, and dropped otherwise.
    """

    def __init__(self, client: squadroll.GamePlatformClient, delay: float = 0.2,
                 include_on_metadata_failure: bool = True):
        self.client = client
        self.delay = delay
        self.include_on_metadata_failure = include_on_metadata_failure

    def common_owned(self, libraries: List[List[OwnedGame]]) -> List[OwnedGame]:
        """Games (by app id) present in every library, in first-library order."""
        if not libraries:
            return []

        other_ids = [{g.app_id for g in library} for library in libraries[1:]]
        seen: Set[int] = set()
        common: List[OwnedGame] = []
        for game in libraries[0]:
            if game.app_id in seen:
                continue
            seen.add(game.app_id)
            if all(game.app_id in ids for ids in other_ids):
                common.append(game)
        return common

    def resolve(self, libraries: List[List[OwnedGame]]) -> List[Game]:
        """Return the name-sorted common multiplayer games of *libraries*.

        Args:
            libraries: One owned-game list per party member, in member order.

        Returns:
            List of :class:`Game` with genres attached.
        """
        candidates = self.common_owned(libraries)
        logger.info("Found %d common games, checking for multiplayer...", len(candidates))

        pause = self.delay if self.client.rate_limited else 0
        games: List[Game] = []
        for index, candidate in enumerate(candidates):
            if index and pause > 0:
                time.sleep(pause)
            try:
                metadata = self.client.get_game_metadata(candidate.app_id)
            except squadroll.CatalogUnavailable as e:
                logger.warning("Metadata lookup failed for %s: %s", candidate.app_id, e)
                metadata = None

            if metadata is None:
                if self.include_on_metadata_failure:
                    games.append(Game(candidate.app_id, candidate.name))
            elif metadata.is_multiplayer:
                games.append(Game(candidate.app_id, candidate.name, metadata.genres))

        logger.info("%d of %d common games are multiplayer", len(games), len(candidates))
        games.sort(key=lambda g: game_sort_key(g.name))
        return games


# ---------------------------------------------------------------------------
# Genre votes
# ---------------------------------------------------------------------------

def aggregate_votes(party: Party) -> Set[str]:
    """Union of every member's genre votes."""
    genres: Set[str] = set()
    for member in party.members:
        if member.genre_votes:
            genres.update(member.genre_votes)
    return genres


def filter_by_genres(games: List[Game], selected_genres: Iterable[str]) -> List[Game]:
    """Keep games matching any selected genre, plus games with no genre data.

    An empty selection means no filter.
    """
    selected = set(selected_genres or ())
    if not selected:
        return games
    return [g for g in games if not g.genres or g.genres & selected]


def extract_all_genres(games: List[Game]) -> List[str]:
    """Sorted set of genres across *games*, used as the vote options."""
    genres: Set[str] = set()
    for game in games:
        genres.update(game.genres)
    return sorted(genres)


def pick_random_game(games: List[Game]) -> Optional[Game]:
    if not games:
        return None
    return random.choice(games)

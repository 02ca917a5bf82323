"""Business logic for the party lifecycle: create, join, load, vote, roll."""
import logging
from typing import Dict, List, Optional

import multiuser
import squadroll
from multiuser import Game, Member, OwnedGame, Party


class PartyService:
    """Coordinates the party store, the per-member libraries and the resolver.

    Membership is checked here: loading a library or voting requires the
    caller to be in the party, and a party that is gone is reported as
    :class:`squadroll.NotFoundError`.
    """

    CREATE_ATTEMPTS = 5

    def __init__(self, party_repo, library_repo,
                 client: squadroll.GamePlatformClient,
                 resolver: multiuser.CommonLibraryResolver) -> None:
        """
        Args:
            party_repo:   :class:`~app.repositories.PartyRepository`.
            library_repo: :class:`~app.repositories.LibraryRepository`.
            client:       Catalog client used to fetch owned games.
            resolver:     Computes the common multiplayer games.
        """
        self._parties = party_repo
        self._libraries = library_repo
        self._client = client
        self._resolver = resolver
        self._log = logging.getLogger(f'squadroll.service.{type(self).__name__}')

    @staticmethod
    def _member_for(session) -> Member:
        return Member(session.identity, session.display_name, session.avatar_url)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def create_party(self, session) -> Party:
        """Create a party hosted by *session*, retrying on a code collision."""
        host = self._member_for(session)
        for _ in range(self.CREATE_ATTEMPTS):
            party = self._parties.create(squadroll.generate_join_code(), host)
            if party is not None:
                return party
        raise squadroll.ConflictError('Could not allocate a party code')

    def get_party(self, code: str) -> Party:
        party = self._parties.get(squadroll.require_join_code(code))
        if party is None:
            raise squadroll.NotFoundError('Party not found')
        return party

    def join_party(self, code: str, session) -> Party:
        code = squadroll.require_join_code(code)
        existing = self._parties.get(code)
        if existing is None:
            raise squadroll.NotFoundError('Party not found')
        if existing.has_member(session.identity):
            return existing

        party = self._parties.join(code, self._member_for(session))
        if party is None:
            raise squadroll.NotFoundError('Party not found')
        self._libraries.invalidate_common_games(code)
        self._log.info("%s joined party %s", session.identity, code)
        return party

    def leave_party(self, code: str, identity: str) -> Optional[Party]:
        """Remove *identity*; returns the remaining party or ``None`` if closed."""
        code = squadroll.require_join_code(code)
        party = self._parties.get(code)
        if party is None or not party.has_member(identity):
            return party

        remaining = self._parties.leave(code, identity)
        self._libraries.delete_games(code, identity)
        self._libraries.invalidate_common_games(code)
        self._log.info("%s left party %s", identity, code)
        return remaining

    def _require_member(self, code: str, identity: str) -> Party:
        party = self.get_party(code)
        if not party.has_member(identity):
            raise squadroll.NotFoundError('Not a member of this party')
        return party

    # ------------------------------------------------------------------
    # Libraries and votes
    # ------------------------------------------------------------------

    def load_games(self, code: str, identity: str) -> int:
        """Fetch *identity*'s library into the party.

        Returns:
            Number of games owned.
        """
        code = squadroll.require_join_code(code)
        self._require_member(code, identity)

        games = OwnedGame.list_from_dicts(self._client.list_owned_games(identity))
        self._libraries.store_games(code, identity, games)
        self._libraries.invalidate_common_games(code)
        if self._parties.set_games_loaded(code, identity) is None:
            raise squadroll.NotFoundError('Party not found')
        return len(games)

    def cast_genre_votes(self, code: str, identity: str, genres) -> List[Dict]:
        """Replace *identity*'s genre votes; returns every member's votes."""
        code = squadroll.require_join_code(code)
        if not isinstance(genres, list) or not all(isinstance(g, str) for g in genres):
            raise squadroll.ValidationError('Genres must be an array')
        self._require_member(code, identity)

        party = self._parties.set_genre_votes(code, identity, genres)
        if party is None:
            raise squadroll.NotFoundError('Party not found')
        return self._votes(party)

    @staticmethod
    def _votes(party: Party) -> List[Dict]:
        return [
            {
                'identity': m.identity,
                'displayName': m.display_name,
                'genreVotes': sorted(m.genre_votes or ()),
            }
            for m in party.members
        ]

    # ------------------------------------------------------------------
    # Common games
    # ------------------------------------------------------------------

    def _common(self, party: Party) -> Optional[List[Game]]:
        """Common games of *party*, or ``None`` while a library is missing.

        A result computed while the party changed is returned to this caller
        but not memoized.
        """
        cached = self._libraries.get_common_games(party.code)
        if cached is not None:
            return cached

        generation = self._libraries.common_generation(party.code)
        libraries = []
        for member in party.members:
            games = self._libraries.get_games(party.code, member.identity)
            if games is None:
                return None
            libraries.append(games)

        common = self._resolver.resolve(libraries)
        self._libraries.store_common_games(party.code, common, generation=generation)
        return common

    def common_games(self, code: str, filtered: bool = False) -> Dict:
        """Common multiplayer games of the party, optionally vote-filtered.

        Returns ``{'ready': False, 'loaded', 'total'}`` until every member
        has a loaded library.
        """
        party = self.get_party(code)
        common = self._common(party) if party.all_loaded else None
        if common is None:
            loaded = sum(
                1 for m in party.members
                if m.games_loaded and self._libraries.get_games(party.code, m.identity) is not None
            )
            return {'ready': False, 'loaded': loaded, 'total': len(party.members)}

        votes = multiuser.aggregate_votes(party)
        matching = multiuser.filter_by_genres(common, votes)
        shown = matching if filtered else common
        return {
            'ready': True,
            'commonGames': [g.to_dict() for g in shown],
            'count': len(shown),
            'totalCount': len(common),
            'filteredCount': len(matching),
            'availableGenres': multiuser.extract_all_genres(common),
            'selectedGenres': sorted(votes),
            'votes': self._votes(party),
        }

    def roll(self, code: str) -> Game:
        """Pick a random game from the vote-filtered common games."""
        result = self.common_games(code, filtered=True)
        if not result['ready']:
            raise squadroll.ValidationError('Not every member has loaded their games')
        games = [Game.from_dict(g) for g in result['commonGames']]
        game = multiuser.pick_random_game(games)
        if game is None:
            raise squadroll.NotFoundError('No games match the selected genres')
        return game

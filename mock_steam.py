"""
Mock Steam catalog for local development and tests.

Three predefined users share a handful of games and each own a few extra
titles, so a party of any two or three of them has a non-trivial common
library.  Every mock game is multiplayer.
"""

import random
from typing import Dict, List, Optional

from squadroll import GameMetadata, GamePlatformClient

# Games ALL three users own
COMMON_GAMES = [
    {"appid": 730,     "name": "Counter-Strike 2",       "genres": ["Action", "Free to Play"]},
    {"appid": 1174180, "name": "Red Dead Redemption 2",  "genres": ["Action", "Adventure"]},
    {"appid": 1086940, "name": "Baldur's Gate 3",        "genres": ["RPG", "Strategy"]},
    {"appid": 271590,  "name": "Grand Theft Auto V",     "genres": ["Action", "Adventure"]},
    {"appid": 570,     "name": "Dota 2",                 "genres": ["Action", "Free to Play", "Strategy"]},
]

USER1_GAMES = [
    {"appid": 1245620, "name": "ELDEN RING",             "genres": ["Action", "RPG"]},
    {"appid": 1599340, "name": "Lethal Company",         "genres": ["Action", "Adventure", "Indie"]},
    {"appid": 1091500, "name": "Cyberpunk 2077",         "genres": ["Action", "RPG"]},
    {"appid": 440,     "name": "Team Fortress 2",        "genres": ["Action", "Free to Play"]},
    {"appid": 381210,  "name": "Dead by Daylight",       "genres": ["Action", "Adventure", "Indie"]},
]

USER2_GAMES = [
    {"appid": 1938090, "name": "Call of Duty",           "genres": ["Action"]},
    {"appid": 252490,  "name": "Rust",                   "genres": ["Action", "Adventure", "Indie", "Simulation"]},
    {"appid": 1091500, "name": "Cyberpunk 2077",         "genres": ["Action", "RPG"]},
    {"appid": 1245620, "name": "ELDEN RING",             "genres": ["Action", "RPG"]},
    {"appid": 1599340, "name": "Lethal Company",         "genres": ["Action", "Adventure", "Indie"]},
]

USER3_GAMES = [
    {"appid": 1091500, "name": "Cyberpunk 2077",         "genres": ["Action", "RPG"]},
    {"appid": 381210,  "name": "Dead by Daylight",       "genres": ["Action", "Adventure", "Indie"]},
    {"appid": 252490,  "name": "Rust",                   "genres": ["Action", "Adventure", "Indie", "Simulation"]},
    {"appid": 440,     "name": "Team Fortress 2",        "genres": ["Action", "Free to Play"]},
]

MOCK_USERS = [
    {
        'steamid': '76561198000000001',
        'personaname': 'GamerPro99',
        'avatarfull': 'https://avatars.steamstatic.com/mock_user_1_full.jpg',
        'games': COMMON_GAMES + USER1_GAMES,
    },
    {
        'steamid': '76561198000000002',
        'personaname': 'SteamMaster',
        'avatarfull': 'https://avatars.steamstatic.com/mock_user_2_full.jpg',
        'games': COMMON_GAMES + USER2_GAMES,
    },
    {
        'steamid': '76561198000000003',
        'personaname': 'GameWizard',
        'avatarfull': 'https://avatars.steamstatic.com/mock_user_3_full.jpg',
        'games': COMMON_GAMES + USER3_GAMES,
    },
]

_ALL_GAMES = {g['appid']: g for g in COMMON_GAMES + USER1_GAMES + USER2_GAMES + USER3_GAMES}


def get_mock_user(steam_id: str) -> Dict:
    """Return the mock user with *steam_id*, falling back to the first one."""
    for user in MOCK_USERS:
        if user['steamid'] == steam_id:
            return user
    return MOCK_USERS[0]


def get_random_mock_user() -> Dict:
    return random.choice(MOCK_USERS)


class MockSteamClient(GamePlatformClient):
    """Serves :data:`MOCK_USERS` instead of calling Steam."""

    rate_limited = False

    def list_owned_games(self, identity: str) -> List[Dict]:
        user = get_mock_user(identity)
        return [{'appId': g['appid'], 'name': g['name']} for g in user['games']]

    def get_game_metadata(self, app_id: int) -> Optional[GameMetadata]:
        game = _ALL_GAMES.get(int(app_id))
        if game is None:
            return None
        return GameMetadata(is_multiplayer=True, genres=set(game['genres']))

    def get_player_summary(self, identity: str) -> Optional[Dict]:
        user = get_mock_user(identity)
        return {
            'steamid': user['steamid'],
            'personaname': user['personaname'],
            'avatarfull': user['avatarfull'],
        }

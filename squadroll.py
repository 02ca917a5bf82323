#!/usr/bin/env python3
"""
SquadRoll - find the multiplayer Steam games a whole party owns and roll one.

Core module: logging, configuration, the error taxonomy, input validators and
the Steam catalog client.  Run it directly for a command-line lookup of the
common multiplayer games of a few Steam accounts.
"""

import argparse
import json
import logging
import os
import re
import secrets
import sys
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

import requests
from colorama import init, Fore, Style
from dotenv import load_dotenv

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root SquadRoll logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('squadroll')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


# Module-level logger used throughout squadroll.py
logger = setup_logging()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SquadRollError(Exception):
    """Base class for failures scoped to a single request."""

    status_code = 500

    def __init__(self, message: str = '', status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code


class ValidationError(SquadRollError):
    """Malformed input such as a bad join code or a missing field."""
    status_code = 400


class Unauthenticated(SquadRollError):
    status_code = 401


class NotFoundError(SquadRollError):
    """Party, member or profile is absent."""
    status_code = 404


class ConflictError(SquadRollError):
    """A party record kept changing underneath a write."""
    status_code = 409


class UpstreamUnavailable(SquadRollError):
    """Steam (catalog or identity provider) failed or answered badly."""
    status_code = 502


class CatalogUnavailable(UpstreamUnavailable):
    pass


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

JOIN_CODE_LENGTH = 6
JOIN_CODE_ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789'
_JOIN_CODE_RE = re.compile(r'^[A-Z0-9]{6}$')
_CLAIMED_ID_RE = re.compile(r'/openid/id/(\d+)')

_PLACEHOLDER_VALUES = {'DEMO_MODE', 'DEMO_ID', 'DEMO_KEY', 'YOUR_STEAM_API_KEY_HERE',
                       'YOUR_SECRET_KEY_HERE'}


def is_placeholder_value(value: str) -> bool:
    """Check if a value is a placeholder/demo sentinel that should not be used for real API calls."""
    if not value or not isinstance(value, str):
        return True
    return value.startswith('YOUR_') or value in _PLACEHOLDER_VALUES


def normalize_join_code(code: Optional[str]) -> str:
    """Upper-case and trim a user-typed party code."""
    if not code or not isinstance(code, str):
        return ''
    return code.strip().upper()


def is_valid_join_code(code: Optional[str]) -> bool:
    """Return True if *code* is six letters/digits once case-normalized.

    >>> is_valid_join_code('ab12c3')
    True
    >>> is_valid_join_code('ab12c')
    False
    """
    return bool(_JOIN_CODE_RE.match(normalize_join_code(code)))


def require_join_code(code: Optional[str]) -> str:
    """Return the normalized join code or raise :class:`ValidationError`."""
    normalized = normalize_join_code(code)
    if not normalized:
        raise ValidationError('Party code required')
    if not _JOIN_CODE_RE.match(normalized):
        raise ValidationError('Invalid party code')
    return normalized


def generate_join_code() -> str:
    """Generate a random six-character party code."""
    return ''.join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def is_valid_steam_id(steam_id: str) -> bool:
    """Validate Steam ID format (64-bit SteamID)

    Args:
        steam_id: Steam ID to validate

    Returns:
        True if valid 64-bit Steam ID format, False otherwise
    """
    if not steam_id or not isinstance(steam_id, str):
        return False

    # Steam 64-bit IDs are 17-digit numbers starting with 7656119
    if not steam_id.isdigit():
        return False

    if len(steam_id) != 17:
        return False

    if not steam_id.startswith('7656119'):
        return False

    return True


def extract_steam_id_from_claimed_id(claimed_id: Optional[str]) -> Optional[str]:
    """Pull the numeric Steam ID out of an OpenID ``claimed_id`` URL."""
    if not claimed_id:
        return None
    match = _CLAIMED_ID_RE.search(claimed_id)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict = {
    'steam_api_key': '',
    'redis_url': 'redis://localhost:6379/0',
    'secret_key': '',
    'app_url': 'http://localhost:5000',
    'debug': False,
    'use_mock_steam': False,
    'metadata_delay': 0.2,
    'include_on_metadata_failure': True,
    'openid_verify': True,
    'request_timeout': 10,
    'log_level': 'INFO',
}


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


# env var -> (config key, converter)
_ENV_OVERRIDES = {
    'STEAM_API_KEY': ('steam_api_key', str),
    'REDIS_URL': ('redis_url', str),
    'SECRET_KEY': ('secret_key', str),
    'APP_URL': ('app_url', str),
    'APP_DEBUG': ('debug', parse_bool),
    'USE_MOCK_STEAM': ('use_mock_steam', parse_bool),
    'METADATA_DELAY': ('metadata_delay', float),
    'INCLUDE_ON_METADATA_FAILURE': ('include_on_metadata_failure', parse_bool),
    'OPENID_VERIFY': ('openid_verify', parse_bool),
    'REQUEST_TIMEOUT': ('request_timeout', float),
    'SQUADROLL_LOG_LEVEL': ('log_level', str),
}


def load_config(config_path: str = 'config.json') -> Dict:
    """Build the runtime configuration.

    Values are layered: built-in defaults, then ``config.json`` (if present),
    then environment variables (a ``.env`` file is loaded first).  Environment
    variables always win.

    Mock Steam data is used when ``USE_MOCK_STEAM`` is set, or when running
    in debug mode without a usable Steam API key.

    Args:
        config_path: Optional JSON config file.

    Returns:
        Configuration dict with every key of :data:`DEFAULT_CONFIG`.
    """
    load_dotenv()
    config = dict(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
            if isinstance(file_config, dict):
                config.update(file_config)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read config file %s: %s", config_path, e)

    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == '':
            continue
        try:
            config[key] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", env_name, raw)

    if is_placeholder_value(config.get('steam_api_key', '')):
        config['steam_api_key'] = ''
        if config.get('debug'):
            config['use_mock_steam'] = True

    if is_placeholder_value(config.get('secret_key', '')):
        logger.warning("SECRET_KEY not set; sessions will not survive a restart")
        config['secret_key'] = secrets.token_hex(32)

    return config


# ---------------------------------------------------------------------------
# Steam catalog
# ---------------------------------------------------------------------------

# Steam store category ids that mean some form of multiplayer
MULTIPLAYER_CATEGORIES = {
    1,   # Multi-player
    9,   # Co-op
    20,  # MMO
    27,  # Cross-Platform Multiplayer
    36,  # Online PvP
    37,  # Shared/Split Screen PvP
    38,  # Online Co-op
    39,  # Shared/Split Screen Co-op
    47,  # LAN PvP
    48,  # LAN Co-op
    49,  # PvP
}

# Store genre description -> genre offered for voting
GENRE_MAP = {
    'Action': 'Action',
    'Adventure': 'Adventure',
    'Casual': 'Casual',
    'Indie': 'Indie',
    'Massively Multiplayer': 'MMO',
    'Racing': 'Racing',
    'RPG': 'RPG',
    'Simulation': 'Simulation',
    'Sports': 'Sports',
    'Strategy': 'Strategy',
    'Free to Play': 'Free to Play',
    'Early Access': 'Early Access',
    'Violent': 'Action',
    'Gore': 'Action',
}


def normalize_genres(descriptions: List[str]) -> List[str]:
    """Map store genre descriptions to voting genres, dropping duplicates."""
    genres: List[str] = []
    for description in descriptions:
        if not description:
            continue
        genre = GENRE_MAP.get(description, description)
        if genre not in genres:
            genres.append(genre)
    return genres


class GameMetadata:
    """Multiplayer flag and genre set for one app."""

    def __init__(self, is_multiplayer: bool, genres: Optional[Set[str]] = None):
        self.is_multiplayer = is_multiplayer
        self.genres: Set[str] = set(genres or ())

    def __eq__(self, other) -> bool:
        if not isinstance(other, GameMetadata):
            return NotImplemented
        return self.is_multiplayer == other.is_multiplayer and self.genres == other.genres

    def __repr__(self) -> str:
        return f"GameMetadata(is_multiplayer={self.is_multiplayer!r}, genres={sorted(self.genres)!r})"


class GamePlatformClient(ABC):
    """Abstract base class for game catalog clients"""

    #: Pause between metadata lookups is only needed against a real API
    rate_limited = True

    def __init__(self):
        self.session = requests.Session()

    @abstractmethod
    def list_owned_games(self, identity: str) -> List[Dict]:
        """
        Get the games owned by a user.
        Returns list of ``{'appId': int, 'name': str}`` dicts.
        Raises CatalogUnavailable when the catalog cannot answer.
        """

    @abstractmethod
    def get_game_metadata(self, app_id: int) -> Optional[GameMetadata]:
        """
        Get multiplayer/genre information for one app.
        Returns None when the catalog does not know the app.
        """

    @abstractmethod
    def get_player_summary(self, identity: str) -> Optional[Dict]:
        """Return ``personaname``/``avatarfull`` for a user, or None."""


class SteamAPIClient(GamePlatformClient):
    """Client for the Steam Web API and the Steam Store API"""

    BASE_URL = "https://api.steampowered.com"
    STORE_URL = "https://store.steampowered.com"

    def __init__(self, api_key: str, timeout: float = 10):
        super().__init__()
        self.api_key = api_key
        self.timeout = timeout
        self._log = logging.getLogger('squadroll.steam')

    def list_owned_games(self, identity: str) -> List[Dict]:
        """Get list of games owned by a Steam user"""
        url = f"{self.BASE_URL}/IPlayerService/GetOwnedGames/v1/"
        params = {
            'key': self.api_key,
            'steamid': identity,
            'include_appinfo': 1,
            'include_played_free_games': 1,
            'format': 'json'
        }

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            self._log.error("Error fetching owned games for %s: %s", identity, e)
            raise CatalogUnavailable('Failed to fetch owned games') from e

        games = (data.get('response') or {}).get('games') or []
        owned = []
        for game in games:
            app_id = game.get('appid')
            if app_id is None:
                continue
            owned.append({'appId': int(app_id), 'name': game.get('name', f'App {app_id}')})
        self._log.info("Found %d owned games for %s", len(owned), identity)
        return owned

    def get_game_metadata(self, app_id: int) -> Optional[GameMetadata]:
        """Get multiplayer flag and genres from the store page data"""
        try:
            app_id_int = int(app_id)
        except (ValueError, TypeError):
            return None

        url = f"{self.STORE_URL}/api/appdetails"
        params = {'appids': app_id_int}
        headers = {'Accept-Language': 'en-US,en;q=0.9'}

        try:
            response = self.session.get(url, params=params, headers=headers,
                                        timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            self._log.warning("Could not fetch details for app %s: %s", app_id, e)
            raise CatalogUnavailable(f'Store details unavailable for app {app_id}') from e

        entry = (data or {}).get(str(app_id_int)) or {}
        if not entry.get('success') or not entry.get('data'):
            return None

        details = entry['data']
        category_ids = {c.get('id') for c in details.get('categories') or []}
        genres = normalize_genres([g.get('description', '') for g in details.get('genres') or []])
        return GameMetadata(
            is_multiplayer=bool(category_ids & MULTIPLAYER_CATEGORIES),
            genres=set(genres),
        )

    def get_player_summary(self, identity: str) -> Optional[Dict]:
        """Return basic profile info (``personaname``, ``avatarfull``) for a Steam ID."""
        url = f"{self.BASE_URL}/ISteamUser/GetPlayerSummaries/v2/"
        params = {
            'key': self.api_key,
            'steamids': identity,
            'format': 'json',
        }
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            self._log.error("Player summary fetch failed for %s: %s", identity, e)
            raise UpstreamUnavailable('Failed to fetch Steam profile') from e
        players = data.get('response', {}).get('players', [])
        return players[0] if players else None


def build_catalog_client(config: Dict) -> GamePlatformClient:
    """Return the mock catalog or a real Steam client depending on *config*."""
    if config.get('use_mock_steam'):
        from mock_steam import MockSteamClient
        logger.info("Using mock Steam API data")
        return MockSteamClient()
    return SteamAPIClient(config.get('steam_api_key', ''),
                          timeout=config.get('request_timeout', 10))


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='SquadRoll - common multiplayer games for a group of Steam accounts',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  squadroll common 76561198000000001 76561198000000002
  squadroll common --mock --genre Action,RPG 76561198000000001 76561198000000003
  squadroll common --roll 76561198000000001 76561198000000002
        """
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    parser.add_argument('--log-level', default=None,
                        help='Log level (DEBUG, INFO, WARNING, ...)')
    sub = parser.add_subparsers(dest='command')

    common = sub.add_parser('common', help='List multiplayer games everyone owns')
    common.add_argument('steam_ids', nargs='+', help='17-digit Steam IDs')
    common.add_argument('--mock', action='store_true', help='Use mock Steam data')
    common.add_argument('--genre', type=str,
                        help='Only show games in these genre(s), comma-separated')
    common.add_argument('--roll', action='store_true',
                        help='Pick one game at random instead of listing them')

    args = parser.parse_args(argv)
    if args.command != 'common':
        parser.print_help()
        return 1

    config = load_config(args.config)
    setup_logging(args.log_level or config.get('log_level', 'WARNING'))
    if args.mock:
        config['use_mock_steam'] = True
    if not config.get('use_mock_steam') and not config.get('steam_api_key'):
        print(f"{Fore.RED}Error: set STEAM_API_KEY or pass --mock")
        return 1

    invalid = [s for s in args.steam_ids if not is_valid_steam_id(s)]
    if invalid and not config.get('use_mock_steam'):
        print(f"{Fore.RED}Error: Invalid Steam ID(s): {', '.join(invalid)}")
        print(f"{Fore.YELLOW}Steam IDs should be 17-digit numbers starting with 7656119")
        return 1

    import multiuser

    client = build_catalog_client(config)
    resolver = multiuser.CommonLibraryResolver(
        client,
        delay=config.get('metadata_delay', 0.2),
        include_on_metadata_failure=config.get('include_on_metadata_failure', True),
    )

    libraries = []
    for steam_id in args.steam_ids:
        print(f"{Fore.CYAN}Fetching library for {steam_id}...")
        try:
            libraries.append(multiuser.OwnedGame.list_from_dicts(client.list_owned_games(steam_id)))
        except CatalogUnavailable as e:
            print(f"{Fore.RED}Error: {e.message}")
            return 2

    games = resolver.resolve(libraries)
    if args.genre:
        selected = {g.strip() for g in args.genre.split(',') if g.strip()}
        games = multiuser.filter_by_genres(games, selected)

    if not games:
        print(f"{Fore.YELLOW}No common multiplayer games found.")
        return 0

    if args.roll:
        game = multiuser.pick_random_game(games)
        print(f"\n{Fore.GREEN}{Style.BRIGHT}🎲 {game.name}{Style.RESET_ALL}")
        print(f"{Fore.CYAN}https://store.steampowered.com/app/{game.app_id}/")
        return 0

    print(f"\n{Fore.GREEN}{len(games)} common multiplayer game(s):")
    for game in games:
        genres = ', '.join(sorted(game.genres)) or 'no genre data'
        print(f"  {Style.BRIGHT}{game.name}{Style.RESET_ALL} {Fore.CYAN}({genres})")
    return 0


if __name__ == '__main__':
    sys.exit(main())

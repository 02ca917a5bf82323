"""Services package: expose all concrete services from one import."""
from .party_service import PartyService
from .session_service import LoginError, SessionService, SteamSession

__all__ = [
    'PartyService',
    'SessionService',
    'SteamSession',
    'LoginError',
]

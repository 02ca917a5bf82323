"""Repository package: expose all concrete repositories from one import."""
from .party_repository import PartyRepository
from .library_repository import LibraryRepository

__all__ = [
    'PartyRepository',
    'LibraryRepository',
]

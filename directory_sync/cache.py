"""
Time-limited object cache for directory and registry objects.

The whole cache expires at once: it is populated in bulk from a remote listing
and considered stale ``validity`` minutes later. Individual objects fetched on a
miss are added with ``put`` by the caller (cache-aside).
"""

import time
import logging
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from directory_sync.models import normalize_address

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_VALIDITY_MINUTES = 30


class ObjectCache(Generic[T]):
    """
    Key/value store with a cache-wide expiration.

    Keys are derived from each object by ``key_func`` and compared
    case-insensitively.
    """

    def __init__(self, key_func: Callable[[T], str], validity_minutes: int = DEFAULT_VALIDITY_MINUTES,
                 name: str = 'objects', clock: Callable[[], float] = time.time):
        self.name = name
        self._key_func = key_func
        self._clock = clock
        self._items: Dict[str, T] = {}
        self._populated_at: Optional[float] = None
        self.validity_minutes = validity_minutes

    def get(self, key: str) -> Optional[T]:
        return self._items.get(normalize_address(key))

    def put(self, item: T) -> None:
        if item is None:
            return
        self._items[normalize_address(self._key_func(item))] = item

    def remove(self, key: str) -> None:
        self._items.pop(normalize_address(key), None)

    def seed(self, items: Iterable[T]) -> None:
        """Replace the entire cache contents with ``items`` in one step."""
        seeded = {}
        for item in items:
            seeded[normalize_address(self._key_func(item))] = item

        self._items = seeded
        self._populated_at = self._clock()
        logger.debug(f"Seeded {self.name} cache with {len(seeded)} entries")

    def reseed(self, fetch: Callable[[], List[T]]) -> bool:
        """
        Seed the cache from a remote listing.

        If the listing fails the previous contents are kept untouched.

        Returns:
            True if the cache was replaced
        """
        try:
            items = fetch()
        except Exception as e:
            logger.error(f"Failed to populate the {self.name} cache, keeping previous contents: {e}")
            return False

        self.seed(items)
        return True

    def clear(self) -> None:
        """Drop every entry and mark the cache expired."""
        self._items = {}
        self._populated_at = None

    def set_validity(self, minutes: int) -> None:
        self.validity_minutes = minutes

    @property
    def expiration(self) -> Optional[float]:
        if self._populated_at is None:
            return None
        return self._populated_at + self.validity_minutes * 60

    def is_expired(self) -> bool:
        expiration = self.expiration
        return expiration is None or expiration < self._clock()

    def keys(self) -> List[str]:
        return list(self._items.keys())

    def values(self) -> List[T]:
        return list(self._items.values())

    def __len__(self):
        return len(self._items)

    def __contains__(self, key):
        return normalize_address(key) in self._items

"""
Per-consumer synchronization state.

One ``ConsumerContext`` exists per consumer identity. The incremental
dispatcher and the reconciliation engine of that consumer share it: the object
caches, the address formatter and the flag that keeps incremental processing
away while a full sync runs. Scope resolvers are per cycle and owned by the
dispatcher or the engine that asked for them.
"""

import logging
import threading
from contextlib import contextmanager

from directory_sync.address import AddressFormatter
from directory_sync.cache import ObjectCache
from directory_sync.config import ConsumerConfig
from directory_sync.directory.service import DirectoryService
from directory_sync.resolver import SyncAttributeResolver
from directory_sync.source.base import SourceRegistry

logger = logging.getLogger(__name__)

SOURCE_CACHE_VALIDITY_MINUTES = 5


class FullSyncInProgress(Exception):
    """Raised when a full sync is requested while one is already running for the consumer."""
    pass


class ConsumerContext:
    """Caches and mutual exclusion for one consumer."""

    def __init__(self, config: ConsumerConfig, directory: DirectoryService, registry: SourceRegistry):
        self.name = config.name
        self.config = config
        self.directory = directory
        self.registry = registry

        self.addresses = AddressFormatter(
            config.domain,
            config.group_identifier_expression,
            config.subject_identifier_expression,
        )

        self.directory_groups = ObjectCache(lambda group: group.email,
                                            config.group_cache_validity_minutes, 'directory groups')
        self.directory_users = ObjectCache(lambda user: user.primary_email,
                                           config.user_cache_validity_minutes, 'directory users')
        self.source_groups = ObjectCache(lambda group: group.name,
                                         SOURCE_CACHE_VALIDITY_MINUTES, 'source groups')
        self.source_subjects = ObjectCache(lambda subject: subject.cache_key,
                                           SOURCE_CACHE_VALIDITY_MINUTES, 'source subjects')

        self._lock = threading.Lock()
        self._full_sync_running = False

    @property
    def full_sync_running(self) -> bool:
        with self._lock:
            return self._full_sync_running

    @contextmanager
    def full_sync_guard(self):
        """
        Hold the full-sync flag for the duration of the block.

        Raises:
            FullSyncInProgress: If another full sync already holds it
        """
        with self._lock:
            if self._full_sync_running:
                raise FullSyncInProgress(f"A full sync is already running for consumer {self.name}")
            self._full_sync_running = True

        logger.debug(f"Full sync flag set for {self.name}")
        try:
            yield self
        finally:
            with self._lock:
                self._full_sync_running = False
            logger.debug(f"Full sync flag cleared for {self.name}")

    def new_resolver(self, fully_populate: bool = False) -> SyncAttributeResolver:
        """A freshly primed scope resolver for one processing cycle."""
        resolver = SyncAttributeResolver(self.registry, self.config.sync_attribute_name)
        resolver.prime(fully_populate)
        return resolver

    def clear_caches(self):
        for cache in (self.directory_groups, self.directory_users, self.source_groups, self.source_subjects):
            cache.clear()
        logger.debug(f"Cleared all caches for {self.name}")

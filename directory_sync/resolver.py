"""
Sync scope resolution.

A group is provisioned when it carries the consumer's sync-marker attribute or
when one of its ancestor stems does. Decisions are memoized by object name for
the duration of one processing cycle.
"""

import logging
from typing import Dict, List, Optional, Set

from directory_sync.models import AttributeDefName, SourceGroup, SourceStem
from directory_sync.source.base import OWNER_GROUP, OWNER_STEM, SourceRegistry

logger = logging.getLogger(__name__)

ATTRIBUTE_CONFIG_STEM = 'etc:attribute'
PROVISIONER_STEM = ATTRIBUTE_CONFIG_STEM + ':googleProvisioner'
SYNC_ATTRIBUTE_PREFIX = PROVISIONER_STEM + ':syncToGoogle'

ROOT_STEM_NAME = ''


def default_sync_attribute_name(consumer_name: str) -> str:
    return SYNC_ATTRIBUTE_PREFIX + consumer_name


def parent_stem_name(name: str) -> str:
    """Name of the stem containing ``name`` (the root stem is the empty name)."""
    return name.rsplit(':', 1)[0] if ':' in name else ROOT_STEM_NAME


class SyncAttributeResolver:
    """
    Decides whether source groups and stems are in sync scope.

    The ancestry walk is iterative and every stem visited on a walk receives the
    walk's decision, so each stem is resolved against the registry at most once
    per cycle.
    """

    def __init__(self, registry: SourceRegistry, attribute_name: str):
        self._registry = registry
        self.attribute_name = attribute_name
        self._decisions: Dict[str, bool] = {}
        self._groups: Set[str] = set()
        self._group_objects: Dict[str, SourceGroup] = {}
        self._attribute: Optional[AttributeDefName] = None
        self._attribute_loaded = False

    @property
    def attribute(self) -> Optional[AttributeDefName]:
        if not self._attribute_loaded:
            logger.debug(f"Looking for sync attribute: {self.attribute_name}")
            self._attribute = self._registry.find_attribute_def_name(self.attribute_name)
            self._attribute_loaded = True

            if self._attribute is None:
                logger.warning(f"Sync attribute {self.attribute_name} not found; nothing is in sync scope")

        return self._attribute

    def is_sync_attribute(self, attribute_id: Optional[str] = None, attribute_name: Optional[str] = None) -> bool:
        """Check whether an attribute reference (by uuid or name) is this consumer's sync marker."""
        attribute = self.attribute
        if attribute is None:
            return False

        if attribute_id and attribute.uuid and attribute_id.lower() == attribute.uuid.lower():
            return True

        return bool(attribute_name) and attribute_name == attribute.name

    def prime(self, fully_populate: bool = False) -> None:
        """
        Record every direct assignment of the sync attribute up front.

        Args:
            fully_populate: Also record every group below an assigned stem, so the
                complete scope is known without further lookups
        """
        if self.attribute is None:
            return

        for stem_name in self._registry.owners_with_attribute(OWNER_STEM, self.attribute_name):
            self._decisions[stem_name] = True

            if fully_populate:
                for group in self._registry.child_groups(stem_name):
                    self._group_objects[group.name] = group
                    self._record_group(group.name, True)

        for group_name in self._registry.owners_with_attribute(OWNER_GROUP, self.attribute_name):
            self._record_group(group_name, True)

        logger.debug(f"Primed sync decisions: {len(self._decisions)} objects, "
                     f"{len(self.in_scope_group_names())} groups in scope")

    def should_sync_group(self, group: SourceGroup) -> bool:
        self._group_objects.setdefault(group.name, group)
        if group.name in self._decisions:
            return self._decisions[group.name]

        if self._has_assignment(group.name, OWNER_GROUP):
            result = True
        else:
            parent_name = group.parent_name if group.parent_name is not None else parent_stem_name(group.name)
            result = self._should_sync_stem_name(parent_name)

        self._record_group(group.name, result)
        return result

    def should_sync_group_name(self, group_name: str) -> bool:
        """Decide scope for a group that may no longer exist in the registry."""
        if group_name in self._decisions:
            return self._decisions[group_name]

        result = self._should_sync_stem_name(parent_stem_name(group_name))
        self._record_group(group_name, result)
        return result

    def should_sync_stem(self, stem: SourceStem) -> bool:
        if stem.name in self._decisions:
            return self._decisions[stem.name]
        return self._walk(stem)

    def forget(self, name: str, subtree: bool = False) -> None:
        """Drop memoized decisions for ``name`` (and everything below it)."""
        self._decisions.pop(name, None)
        self._groups.discard(name)
        self._group_objects.pop(name, None)

        if subtree:
            prefix = name + ':'
            for key in [key for key in self._decisions if key.startswith(prefix)]:
                del self._decisions[key]
                self._groups.discard(key)
                self._group_objects.pop(key, None)

    def in_scope_group_names(self) -> List[str]:
        return sorted(name for name in self._groups if self._decisions.get(name))

    def known_group(self, name: str) -> Optional[SourceGroup]:
        """Registry group object seen during this cycle, if any."""
        return self._group_objects.get(name)

    def _should_sync_stem_name(self, stem_name: str) -> bool:
        if stem_name in self._decisions:
            return self._decisions[stem_name]

        stem = self._registry.find_stem(stem_name)
        if stem is None:
            logger.warning(f"Stem {stem_name!r} not found in the registry; treating as not in sync scope")
            self._decisions[stem_name] = False
            return False

        return self._walk(stem)

    def _walk(self, stem: SourceStem) -> bool:
        chain = []
        visited = set()
        current = stem
        result = False

        while current is not None:
            name = current.name

            if name in self._decisions:
                result = self._decisions[name]
                break

            if name in visited:
                logger.warning(f"Cycle detected in stem hierarchy at {name!r}; treating as not in sync scope")
                break

            visited.add(name)
            chain.append(name)

            if self._has_assignment(name, OWNER_STEM):
                result = True
                break

            if current.is_root:
                break

            parent_name = current.parent_name
            if parent_name in self._decisions:
                result = self._decisions[parent_name]
                break

            current = self._registry.find_stem(parent_name)
            if current is None:
                logger.warning(f"Parent stem {parent_name!r} of {name!r} not found; treating as not in sync scope")

        for name in chain:
            self._decisions[name] = result

        return result

    def _has_assignment(self, owner_name: str, owner_type: str) -> bool:
        if self.attribute is None:
            return False
        return len(self._registry.attribute_assignments(owner_name, owner_type, self.attribute_name)) > 0

    def _record_group(self, group_name: str, result: bool) -> None:
        self._decisions[group_name] = result
        self._groups.add(group_name)

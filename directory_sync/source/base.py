"""
Source registry interface.

This module defines the abstract base class that source registry adapters must
implement. The sync engine only ever talks to the registry through this
interface.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from directory_sync.models import AttributeDefName, SourceGroup, SourceStem, SourceSubject

OWNER_GROUP = 'group'
OWNER_STEM = 'stem'


class SourceRegistryError(Exception):
    """Base exception for source registry errors."""
    pass


class SourceRegistry(ABC):
    """Read-only query interface into the authoritative group registry."""

    @abstractmethod
    def find_group(self, name: str) -> Optional[SourceGroup]:
        """Find a group by its full name, or None."""
        pass

    @abstractmethod
    def find_group_by_uuid(self, uuid: str) -> Optional[SourceGroup]:
        """Find a group by its uuid, or None."""
        pass

    @abstractmethod
    def find_stem(self, name: str) -> Optional[SourceStem]:
        """Find a stem by its full name, or None."""
        pass

    @abstractmethod
    def find_stem_by_uuid(self, uuid: str) -> Optional[SourceStem]:
        """Find a stem by its uuid, or None."""
        pass

    @abstractmethod
    def find_subject(self, subject_id: str, source_id: str) -> Optional[SourceSubject]:
        """Find a subject by id within a subject source, or None."""
        pass

    @abstractmethod
    def child_groups(self, stem_name: str) -> List[SourceGroup]:
        """List every group in the subtree below a stem."""
        pass

    @abstractmethod
    def effective_members(self, group_name: str) -> List[SourceSubject]:
        """List the subjects that are members of a group, directly or indirectly."""
        pass

    @abstractmethod
    def attribute_assignments(self, owner_name: str, owner_type: str, attribute_name: str) -> List[str]:
        """
        List assignments of an attribute on one owner.

        Args:
            owner_name: Name of the owning group or stem
            owner_type: OWNER_GROUP or OWNER_STEM
            attribute_name: Full name of the attribute definition name

        Returns:
            Assignment ids (empty if the owner carries no assignment)
        """
        pass

    @abstractmethod
    def owners_with_attribute(self, owner_type: str, attribute_name: str) -> List[str]:
        """List names of every group or stem carrying a direct assignment of the attribute."""
        pass

    @abstractmethod
    def find_attribute_def_name(self, name: str) -> Optional[AttributeDefName]:
        """Find an attribute definition name, or None."""
        pass

    def close(self):
        """Release any held connections."""
        pass

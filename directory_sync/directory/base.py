"""
Target directory API interface.

This module defines the abstract base class that target directory integrations
must implement. Every method performs exactly one remote request and returns the
decoded JSON document; retries, paging and typing are handled by
``DirectoryService`` on top of it.

Implementations signal errors by raising the remote error taxonomy from
``directory_sync.retry`` (``NotFoundError``, ``RateLimitedError`` and so on).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class DirectoryAPIBase(ABC):
    """Abstract page-level interface to a target directory."""

    name = 'directory'

    # Groups

    @abstractmethod
    def list_groups(self, page_token: Optional[str] = None, user_key: Optional[str] = None) -> Dict[str, Any]:
        """
        List one page of groups.

        Args:
            page_token: Token of the page to fetch (None for the first page)
            user_key: Restrict the listing to groups this member belongs to

        Returns:
            Page document with ``groups`` and an optional ``nextPageToken``
        """
        pass

    @abstractmethod
    def get_group(self, group_key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def insert_group(self, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_group(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a group, addressed by its current (possibly old) address."""
        pass

    @abstractmethod
    def delete_group(self, group_key: str) -> Dict[str, Any]:
        pass

    # Users

    @abstractmethod
    def list_users(self, page_token: Optional[str] = None) -> Dict[str, Any]:
        """List one page of users (``users`` plus optional ``nextPageToken``)."""
        pass

    @abstractmethod
    def get_user(self, user_key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def insert_user(self, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete_user(self, user_key: str) -> Dict[str, Any]:
        pass

    # Members

    @abstractmethod
    def list_members(self, group_key: str, page_token: Optional[str] = None) -> Dict[str, Any]:
        """List one page of a group's members (``members`` plus optional ``nextPageToken``)."""
        pass

    @abstractmethod
    def insert_member(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete_member(self, group_key: str, member_key: str) -> Dict[str, Any]:
        pass

    # Group settings

    @abstractmethod
    def get_group_settings(self, group_key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_group_settings(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    def close(self):
        """Release any held connections."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

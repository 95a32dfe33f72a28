"""
Typed directory operations.

Wraps a ``DirectoryAPIBase`` so that every call goes through the retrying
executor and results come back as model objects instead of JSON documents.
"""

import logging
import functools
from typing import List, Optional

from directory_sync.directory.base import DirectoryAPIBase
from directory_sync.models import DirectoryGroup, DirectoryMember, DirectoryUser, GroupSettings
from directory_sync.retry import ProtocolError, RemoteExecutor

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409


class DirectoryService:
    """Directory operations with retry, paging and not-found handling."""

    def __init__(self, api: DirectoryAPIBase, executor: RemoteExecutor):
        self.api = api
        self.executor = executor

    # Groups

    def retrieve_all_groups(self) -> List[DirectoryGroup]:
        logger.debug(f"Retrieving all groups from {self.api.name}")
        items = self.executor.execute_paged(self.api.list_groups, 'groups', "list groups")
        return [DirectoryGroup.from_dict(item) for item in items]

    def retrieve_group(self, group_key: str) -> Optional[DirectoryGroup]:
        logger.debug(f"Retrieving group {group_key}")
        data = self.executor.execute(functools.partial(self.api.get_group, group_key), f"get group {group_key}")
        return DirectoryGroup.from_dict(data) if data is not None else None

    def add_group(self, group: DirectoryGroup) -> DirectoryGroup:
        logger.debug(f"Adding group {group.email}")
        data = self.executor.execute(functools.partial(self.api.insert_group, group.to_dict()),
                                     f"insert group {group.email}")
        return DirectoryGroup.from_dict(data) if data else group

    def update_group(self, group_key: str, group: DirectoryGroup) -> DirectoryGroup:
        """Update a group addressed by ``group_key``, which may differ from ``group.email`` on a rename."""
        logger.debug(f"Updating group {group_key}")
        data = self.executor.execute(functools.partial(self.api.update_group, group_key, group.to_dict()),
                                     f"update group {group_key}")
        return DirectoryGroup.from_dict(data) if data else group

    def remove_group(self, group_key: str) -> None:
        logger.debug(f"Removing group {group_key}")
        self.executor.execute(functools.partial(self.api.delete_group, group_key), f"delete group {group_key}")

    def retrieve_user_groups(self, user_key: str) -> List[DirectoryGroup]:
        logger.debug(f"Retrieving groups of {user_key}")
        fetch_page = functools.partial(self._list_user_groups_page, user_key)
        items = self.executor.execute_paged(fetch_page, 'groups', f"list groups of {user_key}")
        return [DirectoryGroup.from_dict(item) for item in items]

    def _list_user_groups_page(self, user_key, page_token):
        return self.api.list_groups(page_token, user_key=user_key)

    # Users

    def retrieve_all_users(self) -> List[DirectoryUser]:
        logger.debug(f"Retrieving all users from {self.api.name}")
        items = self.executor.execute_paged(self.api.list_users, 'users', "list users")
        return [DirectoryUser.from_dict(item) for item in items]

    def retrieve_user(self, user_key: str) -> Optional[DirectoryUser]:
        logger.debug(f"Retrieving user {user_key}")
        data = self.executor.execute(functools.partial(self.api.get_user, user_key), f"get user {user_key}")
        return DirectoryUser.from_dict(data) if data is not None else None

    def add_user(self, user: DirectoryUser) -> DirectoryUser:
        logger.debug(f"Adding user {user.primary_email}")
        data = self.executor.execute(functools.partial(self.api.insert_user, user.to_dict()),
                                     f"insert user {user.primary_email}")
        return DirectoryUser.from_dict(data) if data else user

    def remove_user(self, user_key: str) -> None:
        logger.debug(f"Removing user {user_key}")
        self.executor.execute(functools.partial(self.api.delete_user, user_key), f"delete user {user_key}")

    # Members

    def retrieve_group_members(self, group_key: str) -> List[DirectoryMember]:
        logger.debug(f"Retrieving members of {group_key}")
        fetch_page = functools.partial(self._list_members_page, group_key)
        items = self.executor.execute_paged(fetch_page, 'members', f"list members of {group_key}")
        return [DirectoryMember.from_dict(item) for item in items]

    def _list_members_page(self, group_key, page_token):
        return self.api.list_members(group_key, page_token)

    def add_group_member(self, group_key: str, member: DirectoryMember) -> Optional[DirectoryMember]:
        """
        Add a member to a group.

        Returns:
            The created member, or None if it was already a member
        """
        logger.debug(f"Adding {member.email} to {group_key}")
        try:
            data = self.executor.execute(functools.partial(self.api.insert_member, group_key, member.to_dict()),
                                         f"insert member {member.email} into {group_key}")
        except ProtocolError as e:
            if e.status_code == HTTP_CONFLICT:
                logger.debug(f"{member.email} is already a member of {group_key}")
                return None
            raise

        return DirectoryMember.from_dict(data) if data else member

    def remove_group_member(self, group_key: str, member_key: str) -> None:
        logger.debug(f"Removing {member_key} from {group_key}")
        self.executor.execute(functools.partial(self.api.delete_member, group_key, member_key),
                              f"delete member {member_key} from {group_key}")

    # Group settings

    def retrieve_group_settings(self, group_key: str) -> Optional[GroupSettings]:
        logger.debug(f"Retrieving settings of {group_key}")
        data = self.executor.execute(functools.partial(self.api.get_group_settings, group_key),
                                     f"get group settings {group_key}")
        if data is None:
            return None

        settings = GroupSettings.from_dict(data)
        if not settings.email:
            settings.email = group_key
        return settings

    def update_group_settings(self, group_key: str, settings: GroupSettings) -> GroupSettings:
        logger.debug(f"Updating settings of {group_key} (archiveOnly={settings.archive_only})")
        data = self.executor.execute(functools.partial(self.api.update_group_settings, group_key, settings.to_dict()),
                                     f"update group settings {group_key}")
        return GroupSettings.from_dict(data) if data else settings

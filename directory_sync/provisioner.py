"""
Provisioning operations shared by incremental and full synchronization.

The fetch helpers are cache-aside: a cache miss is fetched from the remote
system and stored. The mutating helpers keep the directory caches in step with
the changes they issue.
"""

import logging
import secrets
from typing import List, Optional

from directory_sync.context import ConsumerContext
from directory_sync.models import (
    ROLE_MEMBER, DirectoryGroup, DirectoryMember, DirectoryUser, SourceGroup, SourceSubject, normalize_address
)

logger = logging.getLogger(__name__)

POLICY_ARCHIVE = 'archive'
POLICY_DELETE = 'delete'
POLICY_IGNORE = 'ignore'


def generate_password() -> str:
    return secrets.token_urlsafe(24)


class Provisioner:
    """Cache-aware directory mutations for one consumer."""

    def __init__(self, context: ConsumerContext):
        self.context = context
        self.config = context.config
        self.directory = context.directory
        self.registry = context.registry
        self.addresses = context.addresses

    # Cache-aside lookups

    def fetch_directory_group(self, address: str) -> Optional[DirectoryGroup]:
        group = self.context.directory_groups.get(address)
        if group is None:
            group = self.directory.retrieve_group(address)
            if group is not None:
                self.context.directory_groups.put(group)
        return group

    def fetch_directory_user(self, address: str) -> Optional[DirectoryUser]:
        user = self.context.directory_users.get(address)
        if user is None:
            user = self.directory.retrieve_user(address)
            if user is not None:
                self.context.directory_users.put(user)
        return user

    def fetch_source_group(self, group_name: str) -> Optional[SourceGroup]:
        group = self.context.source_groups.get(group_name)
        if group is None:
            group = self.registry.find_group(group_name)
            if group is not None:
                self.context.source_groups.put(group)
        return group

    def fetch_source_subject(self, subject_id: str, source_id: str) -> Optional[SourceSubject]:
        subject = self.context.source_subjects.get(f"{source_id}__{subject_id}")
        if subject is None:
            subject = self.registry.find_subject(subject_id, source_id)
            if subject is not None:
                self.context.source_subjects.put(subject)
        return subject

    def populate_group_cache(self, force: bool = False) -> bool:
        """Reseed the directory group cache when it has expired (or always, with ``force``)."""
        if force or self.context.directory_groups.is_expired():
            logger.debug(f"Populating the directory group cache for {self.context.name}")
            return self.context.directory_groups.reseed(self.directory.retrieve_all_groups)
        return False

    def populate_user_cache(self, force: bool = False) -> bool:
        """Reseed the directory user cache when it has expired (or always, with ``force``)."""
        if force or self.context.directory_users.is_expired():
            logger.debug(f"Populating the directory user cache for {self.context.name}")
            return self.context.directory_users.reseed(self.directory.retrieve_all_users)
        return False

    # Users

    def subject_address(self, subject: SourceSubject) -> str:
        """The directory address of a subject: its email attribute when set, else the formatted address."""
        email = subject.attribute(self.config.subject_email_field) if self.config.subject_email_field else None
        return normalize_address(email) if email else self.addresses.qualify_subject_address(subject.id)

    def create_user(self, subject: SourceSubject) -> Optional[DirectoryUser]:
        """
        Create a directory user for a person subject.

        Returns:
            The created user, or None when user provisioning is disabled
        """
        if not self.config.provision_users:
            return None

        full_name = subject.name or subject.id

        if self.config.simple_subject_naming:
            parts = full_name.split()
            given_name, family_name = (parts[0], parts[-1]) if parts else (subject.id, subject.id)
        else:
            given_name = subject.attribute(self.config.subject_given_name_field) or ''
            family_name = subject.attribute(self.config.subject_surname_field) or ''
            if not given_name or not family_name:
                logger.warning(f"Subject {subject.id} has no {self.config.subject_given_name_field}/"
                               f"{self.config.subject_surname_field}; using its name instead")
                parts = full_name.split() or [subject.id]
                given_name = given_name or parts[0]
                family_name = family_name or parts[-1]

        user = DirectoryUser(
            primary_email=self.subject_address(subject),
            given_name=given_name,
            family_name=family_name,
            full_name=full_name,
            include_in_global_address_list=self.config.include_user_in_global_address_list,
            password=generate_password(),
        )

        logger.info(f"Creating directory user {user.primary_email} for subject {subject.id}")
        created = self.directory.add_user(user)
        created.password = None
        self.context.directory_users.put(created)
        return created

    def resolve_user(self, subject: SourceSubject) -> Optional[DirectoryUser]:
        """Find the directory user of a subject, creating it when provisioning is enabled."""
        address = self.subject_address(subject)
        user = self.fetch_directory_user(address)
        if user is not None:
            return user

        if not self.config.provision_users:
            logger.warning(f"User {address} for subject {subject.id} does not exist in the directory "
                           f"and user provisioning is disabled")
            return None

        return self.create_user(subject)

    def deprovision_user_if_orphaned(self, user_address: str) -> bool:
        """
        Delete a directory user that no longer belongs to any directory group.

        Returns:
            True if the user was deleted
        """
        if not self.config.deprovision_users:
            return False

        remaining = self.directory.retrieve_user_groups(user_address)
        if remaining:
            logger.debug(f"User {user_address} is still a member of {len(remaining)} groups")
            return False

        logger.info(f"Deprovisioning user {user_address}: no remaining group memberships")
        self.directory.remove_user(user_address)
        self.context.directory_users.remove(user_address)
        return True

    # Members

    def create_member(self, group_address: str, user: DirectoryUser, role: str = ROLE_MEMBER) -> bool:
        """
        Add a user to a directory group.

        Returns:
            True if a membership was created (False if it already existed)
        """
        member = DirectoryMember(email=user.primary_email, role=role)
        logger.info(f"Adding {user.primary_email} to {group_address} as {role}")
        return self.directory.add_group_member(group_address, member) is not None

    def remove_member(self, group_address: str, member_address: str) -> None:
        logger.info(f"Removing {member_address} from {group_address}")
        self.directory.remove_group_member(group_address, member_address)

    def person_members(self, source_group: SourceGroup) -> List[SourceSubject]:
        """Effective members of a source group that are people."""
        members = []
        for subject in self.registry.effective_members(source_group.name):
            if not subject.is_person:
                logger.debug(f"Skipping non-person member {subject.id} ({subject.subject_type}) "
                             f"of {source_group.name}")
                continue
            self.context.source_subjects.put(subject)
            members.append(subject)
        return members

    # Groups

    def group_address(self, source_group: SourceGroup) -> str:
        return self.addresses.qualify_group_address(source_group.name)

    def create_group(self, source_group: SourceGroup) -> DirectoryGroup:
        """Insert the directory group for a source group."""
        group = DirectoryGroup(
            email=self.group_address(source_group),
            name=source_group.display_name,
            description=source_group.description,
        )

        logger.info(f"Creating directory group {group.email} for {source_group.name}")
        created = self.directory.add_group(group)
        self.context.directory_groups.put(created)

        if not self.config.include_group_in_global_address_list:
            settings = self.directory.retrieve_group_settings(created.email)
            if settings is not None:
                settings.raw['includeInGlobalAddressList'] = 'false'
                self.directory.update_group_settings(created.email, settings)

        return created

    def seed_members(self, group_address: str, source_group: SourceGroup) -> int:
        """
        Add every person member of a source group to its directory group.

        Returns:
            Number of memberships created
        """
        added = 0
        for subject in self.person_members(source_group):
            user = self.resolve_user(subject)
            if user is not None and self.create_member(group_address, user):
                added += 1
        return added

    def unarchive_group(self, group_address: str) -> bool:
        settings = self.directory.retrieve_group_settings(group_address)
        if settings is None or not settings.archive_only:
            return False

        logger.info(f"Un-archiving directory group {group_address}")
        settings.archive_only = False
        self.directory.update_group_settings(group_address, settings)
        return True

    def create_group_if_necessary(self, source_group: SourceGroup) -> DirectoryGroup:
        """
        Make sure the directory group for a source group exists and is active.

        A missing group is created and seeded with the source group's person
        members. An existing archived group is un-archived.
        """
        address = self.group_address(source_group)
        group = self.fetch_directory_group(address)

        if group is None:
            group = self.create_group(source_group)
            self.seed_members(group.email, source_group)
        else:
            self.unarchive_group(address)

        return group

    def update_group(self, group_key: str, group: DirectoryGroup) -> DirectoryGroup:
        """Issue a group update keyed by ``group_key`` and refresh the cache."""
        updated = self.directory.update_group(group_key, group)
        self.context.directory_groups.remove(group_key)
        self.context.directory_groups.put(updated)
        return updated

    def delete_group_by_address(self, group_address: str) -> str:
        """
        Apply the deleted-group policy to a directory group.

        Returns:
            The policy applied: 'archive', 'delete' or 'ignore'
        """
        policy = (self.config.handle_deleted_group or POLICY_IGNORE).lower()

        if policy == POLICY_ARCHIVE:
            settings = self.directory.retrieve_group_settings(group_address)
            if settings is None:
                logger.warning(f"Cannot archive {group_address}: group settings not found")
                return POLICY_IGNORE
            if settings.archive_only:
                logger.debug(f"Directory group {group_address} is already archived")
                return policy
            logger.info(f"Archiving directory group {group_address}")
            settings.archive_only = True
            self.directory.update_group_settings(group_address, settings)

        elif policy == POLICY_DELETE:
            logger.info(f"Deleting directory group {group_address}")
            self.directory.remove_group(group_address)
            self.context.directory_groups.remove(group_address)

        else:
            logger.info(f"Ignoring removal of directory group {group_address}")
            policy = POLICY_IGNORE

        return policy

    def delete_group_by_name(self, group_name: str) -> str:
        policy = self.delete_group_by_address(self.addresses.qualify_group_address(group_name))

        self.context.source_groups.remove(group_name)

        return policy

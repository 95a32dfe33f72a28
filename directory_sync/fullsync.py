"""
Full reconciliation between the group registry and the target directory.

The engine computes the set of in-scope registry groups and the set of
directory groups, both keyed by normalized directory address, and repairs the
differences: extra directory groups get the deleted-group policy, missing ones
are created and seeded, matched ones have their name, description and
membership brought back in line.
"""

import time
import logging
import dataclasses
from typing import Set

from directory_sync.context import ConsumerContext
from directory_sync.models import ComparableItem, DirectoryGroup, FullSyncReport, SourceGroup
from directory_sync.provisioner import Provisioner
from directory_sync.resolver import SyncAttributeResolver
from directory_sync.retry import RemoteError
from directory_sync.source.base import SourceRegistryError

logger = logging.getLogger(__name__)

ITEM_ERRORS = (RemoteError, SourceRegistryError)


class ReconciliationEngine:
    """Runs full syncs for one consumer."""

    def __init__(self, context: ConsumerContext, provisioner: Provisioner = None):
        self.context = context
        self.provisioner = provisioner or Provisioner(context)
        self.directory = context.directory
        self.planned_users: Set[str] = set()

    def run_full_sync(self, dry_run: bool = False) -> FullSyncReport:
        """
        Reconcile every in-scope group of the consumer.

        Args:
            dry_run: Make every comparison and log every decision, but issue no
                mutating call

        Returns:
            Report of the differences found and the repairs made (or planned)

        Raises:
            FullSyncInProgress: If a full sync is already running for this consumer
        """
        with self.context.full_sync_guard():
            started = time.time()
            report = FullSyncReport(consumer_name=self.context.name, dry_run=dry_run)

            logger.info(f"Consumer {self.context.name} full sync - starting{' (dry run)' if dry_run else ''}")

            self.context.clear_caches()
            self.planned_users = set()
            resolver = self.context.new_resolver(fully_populate=True)

            source_items = self._source_items(resolver)
            target_items = self._target_items()

            extra = sorted(target_items - source_items)
            missing = sorted(source_items - target_items)
            targets_by_address = {item.address: item.source for item in target_items}
            matched = [item for item in sorted(source_items) if item in target_items]

            report.extra_groups = [item.address for item in extra]
            report.missing_groups = [item.address for item in missing]
            report.matched_groups = [item.address for item in matched]

            logger.info(f"Consumer {self.context.name} full sync - {len(source_items)} registry groups, "
                        f"{len(target_items)} directory groups: {len(extra)} extra, "
                        f"{len(missing)} missing, {len(matched)} matched")

            for item in extra:
                self._handle_extra_group(item, report)

            for item in missing:
                self._handle_missing_group(item, report)

            for item in matched:
                self._handle_matched_group(item.source, targets_by_address[item.address], report)

            report.runtime_seconds = time.time() - started
            self._log_sync_summary(report)
            return report

    def _source_items(self, resolver: SyncAttributeResolver) -> Set[ComparableItem]:
        items = set()

        for group_name in resolver.in_scope_group_names():
            group = resolver.known_group(group_name) or self.provisioner.fetch_source_group(group_name)
            if group is None:
                logger.warning(f"In-scope group {group_name} not found in the registry")
                continue

            self.context.source_groups.put(group)
            items.add(ComparableItem(self.provisioner.group_address(group), group))

        return items

    def _target_items(self) -> Set[ComparableItem]:
        groups = self.directory.retrieve_all_groups()
        self.context.directory_groups.seed(groups)
        return {ComparableItem(group.email, group) for group in groups}

    def _record_error(self, report: FullSyncReport, message: str, error: Exception):
        logger.error(f"Consumer {self.context.name} full sync - {message}: {error}")
        report.errors.append(f"{message}: {error}")

    # Groups

    def _handle_extra_group(self, item: ComparableItem, report: FullSyncReport):
        policy = self.context.config.handle_deleted_group
        logger.info(f"Consumer {self.context.name} full sync - extra directory group: {item} (policy: {policy})")

        if policy == 'archive':
            report.groups_archived += 1
        elif policy == 'delete':
            report.groups_deleted += 1

        if report.dry_run:
            return

        try:
            self.provisioner.delete_group_by_address(item.address)
        except ITEM_ERRORS as e:
            self._record_error(report, f"error removing extra group {item}", e)

    def _handle_missing_group(self, item: ComparableItem, report: FullSyncReport):
        source_group: SourceGroup = item.source
        logger.info(f"Consumer {self.context.name} full sync - missing directory group: "
                    f"{source_group.name} ({item})")
        report.groups_created += 1

        try:
            if not report.dry_run:
                self.provisioner.create_group(source_group)
            members = self.provisioner.person_members(source_group)
        except ITEM_ERRORS as e:
            self._record_error(report, f"error adding missing group {item}", e)
            return

        for subject in members:
            member = ComparableItem(self.provisioner.subject_address(subject), subject)
            try:
                self._add_missing_member(member, item.address, report)
            except ITEM_ERRORS as e:
                self._record_error(report, f"error adding member {member} to {item}", e)

    def _handle_matched_group(self, source_group: SourceGroup, target: DirectoryGroup, report: FullSyncReport):
        address = target.email
        logger.info(f"Consumer {self.context.name} full sync - matched group: {source_group.name} ({address})")

        try:
            if (target.description or '') != (source_group.description or '') or \
                    (target.name or '') != (source_group.display_name or ''):
                logger.info(f"Consumer {self.context.name} full sync - updating name/description of {address}")
                report.groups_updated += 1

                if not report.dry_run:
                    updated = dataclasses.replace(target, name=source_group.display_name,
                                                  description=source_group.description)
                    self.provisioner.update_group(address, updated)
        except ITEM_ERRORS as e:
            self._record_error(report, f"error updating matched group {address}", e)

        try:
            self._reconcile_members(source_group, address, report)
        except ITEM_ERRORS as e:
            self._record_error(report, f"error reconciling membership of {address}", e)

    # Members

    def _reconcile_members(self, source_group: SourceGroup, address: str, report: FullSyncReport):
        source_members = {
            ComparableItem(self.provisioner.subject_address(subject), subject)
            for subject in self.provisioner.person_members(source_group)
        }
        target_members = {
            ComparableItem(member.email, member)
            for member in self.directory.retrieve_group_members(address)
        }

        for member in sorted(target_members - source_members):
            logger.info(f"Consumer {self.context.name} full sync - extra member {member} in {address}")
            report.members_removed += 1
            if report.dry_run:
                continue
            try:
                self.provisioner.remove_member(address, member.address)
            except ITEM_ERRORS as e:
                self._record_error(report, f"error removing member {member} from {address}", e)

        for member in sorted(source_members - target_members):
            logger.info(f"Consumer {self.context.name} full sync - missing member {member} in {address}")
            try:
                self._add_missing_member(member, address, report)
            except ITEM_ERRORS as e:
                self._record_error(report, f"error adding member {member} to {address}", e)

    def _add_missing_member(self, member: ComparableItem, address: str, report: FullSyncReport):
        user = self.provisioner.fetch_directory_user(member.address)

        if user is None and member.address not in self.planned_users:
            if not self.context.config.provision_users:
                logger.warning(f"Consumer {self.context.name} full sync - user {member} does not exist "
                               f"and user provisioning is disabled")
                return

            logger.info(f"Consumer {self.context.name} full sync - creating missing user {member}")
            report.users_created += 1
            if report.dry_run:
                # Later groups see the user as created
                self.planned_users.add(member.address)
            else:
                user = self.provisioner.create_user(member.source)

        report.members_added += 1
        if not report.dry_run:
            self.provisioner.create_member(address, user)

    def _log_sync_summary(self, report: FullSyncReport):
        """Log final synchronization statistics."""
        runtime_str = f"{report.runtime_seconds:.2f} seconds"
        if report.runtime_seconds > 60:
            minutes = int(report.runtime_seconds // 60)
            seconds = report.runtime_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info(f"=== Full Sync Summary ({report.consumer_name}{', dry run' if report.dry_run else ''}) ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Extra groups: {len(report.extra_groups)}")
        logger.info(f"Missing groups: {len(report.missing_groups)}")
        logger.info(f"Matched groups: {len(report.matched_groups)}")
        logger.info(f"Groups created: {report.groups_created}")
        logger.info(f"Groups updated: {report.groups_updated}")
        logger.info(f"Groups archived: {report.groups_archived}")
        logger.info(f"Groups deleted: {report.groups_deleted}")
        logger.info(f"Members added: {report.members_added}")
        logger.info(f"Members removed: {report.members_removed}")
        logger.info(f"Users created: {report.users_created}")
        logger.info(f"Total errors: {report.error_count}")

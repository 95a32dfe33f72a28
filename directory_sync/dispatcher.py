"""
Incremental change event processing.

The dispatcher applies an ordered batch of registry change events to the target
directory. Each supported (category, action) pair maps to one handler; every
other event is skipped. The returned sequence number is the checkpoint the
caller persists for the next batch.
"""

import time
import logging
from typing import Callable, Dict, Iterable, Optional, Tuple

from directory_sync.context import ConsumerContext
from directory_sync.models import BatchMetadata, ChangeEvent
from directory_sync.provisioner import Provisioner
from directory_sync.resolver import SyncAttributeResolver
from directory_sync.retry import RemoteError
from directory_sync.source.base import OWNER_GROUP, OWNER_STEM, SourceRegistryError

logger = logging.getLogger(__name__)

STATE_IDLE = 'idle'
STATE_PROCESSING = 'processing-batch'
STATE_ABORTED = 'aborted'

GROUP_ADD = ('group', 'addGroup')
GROUP_UPDATE = ('group', 'updateGroup')
GROUP_DELETE = ('group', 'deleteGroup')
MEMBERSHIP_ADD = ('membership', 'addMembership')
MEMBERSHIP_DELETE = ('membership', 'deleteMembership')
ATTRIBUTE_ASSIGN_ADD = ('attributeAssign', 'addAttributeAssign')
ATTRIBUTE_ASSIGN_DELETE = ('attributeAssign', 'deleteAttributeAssign')
STEM_DELETE = ('stem', 'deleteStem')

SUPPORTED_EVENT_TYPES = frozenset([
    GROUP_ADD, GROUP_UPDATE, GROUP_DELETE,
    MEMBERSHIP_ADD, MEMBERSHIP_DELETE,
    ATTRIBUTE_ASSIGN_ADD, ATTRIBUTE_ASSIGN_DELETE,
    STEM_DELETE,
])


class DispatchError(Exception):
    """Raised when a batch cannot be dispatched at all."""
    pass


class ChangeEventDispatcher:
    """Applies change event batches for one consumer."""

    def __init__(self, context: ConsumerContext, provisioner: Optional[Provisioner] = None):
        self.context = context
        self.provisioner = provisioner or Provisioner(context)
        self.state = STATE_IDLE
        self.resolver: Optional[SyncAttributeResolver] = None

        self.handlers: Dict[Tuple[str, str], Callable[[ChangeEvent], None]] = {
            GROUP_ADD: self.handle_group_add,
            GROUP_UPDATE: self.handle_group_update,
            GROUP_DELETE: self.handle_group_delete,
            MEMBERSHIP_ADD: self.handle_membership_add,
            MEMBERSHIP_DELETE: self.handle_membership_delete,
            ATTRIBUTE_ASSIGN_ADD: self.handle_attribute_assign_add,
            ATTRIBUTE_ASSIGN_DELETE: self.handle_attribute_assign_delete,
            STEM_DELETE: self.handle_stem_delete,
        }
        self._validate_handlers()

    def _validate_handlers(self):
        missing = SUPPORTED_EVENT_TYPES - set(self.handlers)
        unsupported = set(self.handlers) - SUPPORTED_EVENT_TYPES
        not_callable = [key for key, handler in self.handlers.items() if not callable(handler)]

        if missing or unsupported or not_callable:
            raise DispatchError(f"Invalid dispatch table (missing: {sorted(missing)}, "
                                f"unsupported: {sorted(unsupported)}, not callable: {sorted(not_callable)})")

    @property
    def addresses(self):
        return self.context.addresses

    def process_batch(self, events: Iterable[ChangeEvent], metadata: Optional[BatchMetadata] = None) -> int:
        """
        Apply a batch of change events in sequence order.

        Args:
            events: Change events of the batch (any order)
            metadata: Bookkeeping receiving every per-event problem

        Returns:
            Sequence number of the last event that should not be replayed

        Raises:
            DispatchError: If the batch is empty
        """
        ordered = sorted(events, key=lambda event: event.sequence_number)
        if not ordered:
            raise DispatchError(f"Consumer {self.context.name} - unable to process any records: empty batch")

        if metadata is None:
            metadata = BatchMetadata(consumer_name=self.context.name)

        name = self.context.name
        first_sequence = ordered[0].sequence_number

        if self.context.full_sync_running:
            self.state = STATE_ABORTED
            logger.info(f"Consumer {name} - full sync is running, returning sequence number {first_sequence - 1}")
            return first_sequence - 1

        self.state = STATE_PROCESSING
        try:
            self.resolver = self.context.new_resolver(fully_populate=False)
            self.provisioner.populate_group_cache()
            self.provisioner.populate_user_cache()
        except (RemoteError, SourceRegistryError) as e:
            logger.error(f"Consumer {name} - failed to start processing at sequence {first_sequence}: {e}")
            self.resolver = None
            self.state = STATE_IDLE
            return first_sequence - 1

        logger.debug(f"Consumer {name} - processing {len(ordered)} change events "
                     f"({first_sequence}..{ordered[-1].sequence_number})")

        sequence_number = first_sequence - 1
        context_id = None
        context_started = time.monotonic()

        try:
            for event in ordered:
                if self.context.full_sync_running:
                    self.state = STATE_ABORTED
                    logger.info(f"Consumer {name} - full sync is running, returning sequence number "
                                f"{event.sequence_number - 1}")
                    return event.sequence_number - 1

                if context_id is None:
                    context_id = event.context_id
                elif event.context_id != context_id:
                    logger.debug(f"Consumer {name} - processed change context {context_id} "
                                 f"in {time.monotonic() - context_started:.3f}s")
                    context_id = event.context_id
                    context_started = time.monotonic()

                sequence_number = event.sequence_number
                try:
                    self.process_event(event)
                except Exception as e:
                    message = f"Consumer {name} - an error occurred processing sequence number {sequence_number}"
                    logger.error(f"{message}: {e}", exc_info=True)
                    metadata.register_problem(e, message, sequence_number)

                    if self.context.config.retry_on_error:
                        sequence_number -= 1
                        break

            logger.debug(f"Consumer {name} - processed change context {context_id} "
                         f"in {time.monotonic() - context_started:.3f}s")
        finally:
            self.resolver = None
            if self.state != STATE_ABORTED:
                self.state = STATE_IDLE

        logger.debug(f"Consumer {name} - finished processing change events, last sequence number {sequence_number}")
        return sequence_number

    def process_event(self, event: ChangeEvent) -> bool:
        """
        Apply one event through the dispatch table.

        Returns:
            True if a handler ran, False if the event type is not handled
        """
        handler = self.handlers.get(event.key)
        if handler is None:
            logger.debug(f"Consumer {self.context.name} - change event {event.describe()} "
                         f"unsupported category and action")
            return False

        logger.info(f"Consumer {self.context.name} - change event {event.describe_deep()}")
        started = time.monotonic()

        handler(event)

        logger.info(f"Consumer {self.context.name} - change event {event.describe()} finished processing "
                    f"in {time.monotonic() - started:.3f}s")
        return True

    # Group events

    def handle_group_add(self, event: ChangeEvent):
        group_name = event.value('name')
        group = self.provisioner.fetch_source_group(group_name)
        if group is None:
            logger.warning(f"Group {group_name} from {event.describe()} not found in the registry, skipping")
            return

        if not self.resolver.should_sync_group(group):
            logger.debug(f"Group {group_name} is not in sync scope")
            return

        self.provisioner.create_group_if_necessary(group)

    def handle_group_delete(self, event: ChangeEvent):
        group_name = event.value('name')

        if not self.resolver.should_sync_group_name(group_name):
            logger.debug(f"Deleted group {group_name} was not in sync scope")
            self.resolver.forget(group_name)
            return

        self.provisioner.delete_group_by_name(group_name)
        self.resolver.forget(group_name)

    def handle_group_update(self, event: ChangeEvent):
        group_name = event.value('name')
        property_changed = (event.value('propertyChanged') or '').strip()
        old_value = event.value('propertyOldValue')
        new_value = event.value('propertyNewValue')

        group = self.provisioner.fetch_source_group(group_name)
        if group is None:
            logger.warning(f"Group {group_name} from {event.describe()} not found in the registry, skipping")
            return

        if not self.resolver.should_sync_group(group):
            logger.debug(f"Group {group_name} is not in sync scope")
            return

        if property_changed.lower() == 'name':
            self._rename_group(group, old_value, new_value)
            return

        address = self.addresses.qualify_group_address(group_name)
        target = self.provisioner.fetch_directory_group(address)
        if target is None:
            logger.info(f"Directory group {address} for updated group {group_name} is missing, creating it")
            self.provisioner.create_group_if_necessary(group)
            return

        if property_changed.lower() == 'displayextension':
            target.name = new_value or ''
        elif property_changed.lower() == 'description':
            target.description = new_value or ''
        else:
            logger.warning(f"Consumer {self.context.name} - change event {event.describe()} "
                           f"unmapped group property updated: {property_changed}")
            return

        self.provisioner.update_group(address, target)

    def _rename_group(self, group, old_name: str, new_name: str):
        old_address = self.addresses.qualify_group_address(old_name)
        new_address = self.addresses.qualify_group_address(new_name)

        target = self.provisioner.fetch_directory_group(old_address)
        if target is None:
            logger.info(f"Directory group {old_address} for renamed group {new_name} is missing, creating it")
            self.provisioner.create_group_if_necessary(group)
            self.resolver.forget(old_name)
            return

        logger.info(f"Renaming directory group {old_address} to {new_address}")
        self.context.directory_groups.remove(old_address)

        target.email = new_address
        if old_address not in target.aliases:
            target.aliases.append(old_address)

        self.provisioner.update_group(old_address, target)

        self.resolver.forget(old_name)
        self.resolver.forget(new_name)

    # Membership events

    def _membership_in_scope(self, group_name: str, require_group: bool) -> bool:
        group = self.provisioner.fetch_source_group(group_name)
        if group is None:
            if require_group:
                logger.warning(f"Group {group_name} not found in the registry, skipping")
                return False
            return self.resolver.should_sync_group_name(group_name)

        return self.resolver.should_sync_group(group)

    def handle_membership_add(self, event: ChangeEvent):
        group_name = event.value('groupName')
        if not self._membership_in_scope(group_name, require_group=True):
            return

        subject_id = event.value('subjectId')
        source_id = event.value('sourceId')
        subject = self.provisioner.fetch_source_subject(subject_id, source_id)
        if subject is None:
            logger.warning(f"Subject {subject_id} ({source_id}) from {event.describe()} not found, skipping")
            return

        group_address = self.addresses.qualify_group_address(group_name)
        if self.provisioner.fetch_directory_group(group_address) is None:
            self.provisioner.create_group_if_necessary(self.provisioner.fetch_source_group(group_name))

        # Indirect members of nested groups raise their own events
        if not subject.is_person:
            logger.debug(f"Ignoring non-person subject {subject_id} ({subject.subject_type})")
            return

        user = self.provisioner.resolve_user(subject)
        if user is None:
            return

        self.provisioner.create_member(group_address, user)

    def handle_membership_delete(self, event: ChangeEvent):
        group_name = event.value('groupName')
        if not self._membership_in_scope(group_name, require_group=False):
            return

        subject_id = event.value('subjectId')
        source_id = event.value('sourceId')
        subject = self.provisioner.fetch_source_subject(subject_id, source_id)
        if subject is None:
            logger.warning(f"Subject {subject_id} ({source_id}) from {event.describe()} not found, skipping")
            return

        if not subject.is_person:
            logger.debug(f"Ignoring non-person subject {subject_id} ({subject.subject_type})")
            return

        group_address = self.addresses.qualify_group_address(group_name)
        member_address = self.provisioner.subject_address(subject)

        self.provisioner.remove_member(group_address, member_address)
        self.provisioner.deprovision_user_if_orphaned(member_address)

    # Attribute assignment events

    def _affected_groups(self, event: ChangeEvent):
        """Owner name and groups affected by a sync marker (un)assignment."""
        assign_type = event.value('assignType')
        owner_id = event.value('ownerId1')
        registry = self.context.registry

        if assign_type == OWNER_GROUP:
            group = registry.find_group_by_uuid(owner_id)
            if group is None:
                logger.warning(f"Group {owner_id} from {event.describe()} not found in the registry, skipping")
                return None, []
            return group.name, [group]

        if assign_type == OWNER_STEM:
            stem = registry.find_stem_by_uuid(owner_id)
            if stem is None:
                logger.warning(f"Stem {owner_id} from {event.describe()} not found in the registry, skipping")
                return None, []
            return stem.name, registry.child_groups(stem.name)

        logger.debug(f"Ignoring sync attribute assignment on owner type {assign_type}")
        return None, []

    def _is_sync_marker(self, event: ChangeEvent) -> bool:
        return self.resolver.is_sync_attribute(event.value('attributeDefNameId'),
                                               event.value('attributeDefNameName'))

    def handle_attribute_assign_add(self, event: ChangeEvent):
        if not self._is_sync_marker(event):
            logger.debug(f"{event.describe()} is not for the sync attribute")
            return

        owner_name, groups = self._affected_groups(event)
        if owner_name is None:
            return

        self.resolver.forget(owner_name, subtree=True)

        for group in groups:
            try:
                self.provisioner.create_group_if_necessary(group)
            except (RemoteError, SourceRegistryError) as e:
                logger.error(f"Consumer {self.context.name} - change event {event.describe()} "
                             f"error provisioning group {group.name}, continuing: {e}")

    def handle_attribute_assign_delete(self, event: ChangeEvent):
        if not self._is_sync_marker(event):
            logger.debug(f"{event.describe()} is not for the sync attribute")
            return

        owner_name, groups = self._affected_groups(event)
        if owner_name is None:
            return

        self.resolver.forget(owner_name, subtree=True)

        for group in groups:
            try:
                if self.resolver.should_sync_group(group):
                    logger.debug(f"Group {group.name} is still in sync scope")
                    continue
                self.provisioner.delete_group_by_name(group.name)
                self.resolver.forget(group.name)
            except (RemoteError, SourceRegistryError) as e:
                logger.error(f"Consumer {self.context.name} - change event {event.describe()} "
                             f"error removing group {group.name}, continuing: {e}")

    # Stem events

    def handle_stem_delete(self, event: ChangeEvent):
        stem_name = event.value('name')
        self.resolver.forget(stem_name)
        logger.debug(f"Forgot sync decision for deleted stem {stem_name}")

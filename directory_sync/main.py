"""
Application entry point for Directory Sync.

``SyncApplication`` wires configuration, logging, the source registry and one
``ConsumerContext`` per consumer, and exposes full synchronization and change
event processing. ``main`` is the ``directory-sync`` command line.
"""

import sys
import json
import logging
import argparse
from typing import Any, Dict, Iterable, List, Optional

from directory_sync.config import ConfigurationError, consumer_config, load_config
from directory_sync.context import ConsumerContext
from directory_sync.directory.google import GoogleDirectoryAPI
from directory_sync.directory.service import DirectoryService
from directory_sync.dispatcher import ChangeEventDispatcher
from directory_sync.fullsync import ReconciliationEngine
from directory_sync.logging_setup import setup_logging
from directory_sync.models import BatchMetadata, ChangeEvent, FullSyncReport
from directory_sync.notifications import (
    send_batch_problem_report,
    send_failure_notification,
    send_full_sync_summary
)
from directory_sync.retry import DEFAULT_MAX_ATTEMPTS, RemoteExecutor
from directory_sync.source.grouper_ws import GrouperWsRegistry
from directory_sync.source.ldap_subjects import LdapSubjectSource

logger = logging.getLogger(__name__)


class SyncApplication:
    """
    Process-wide owner of the consumer contexts.

    Contexts are built on first use and cached by consumer name, so incremental
    processing and full syncs of one consumer share caches and the full-sync flag.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration (skips loading and logging setup)
        """
        self.config_path = config_path
        self.config = config
        self.contexts: Dict[str, ConsumerContext] = {}
        self.dispatchers: Dict[str, ChangeEventDispatcher] = {}
        self.registry = None
        self._apis: List[GoogleDirectoryAPI] = []

    def load(self) -> Dict[str, Any]:
        """Load the configuration and set up logging, once."""
        if self.config is None:
            self.config = load_config(self.config_path)
            setup_logging(self.config.get('logging', {}))
        return self.config

    @property
    def notification_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def _executor(self) -> RemoteExecutor:
        error_config = self.config.get('error_handling', {})
        return RemoteExecutor(max_attempts=error_config.get('max_attempts', DEFAULT_MAX_ATTEMPTS))

    def _get_registry(self) -> GrouperWsRegistry:
        if self.registry is None:
            subject_source = None
            if self.config.get('subject_ldap'):
                subject_source = LdapSubjectSource(self.config['subject_ldap'])
            self.registry = GrouperWsRegistry(self.config['grouper'], self._executor(), subject_source)
        return self.registry

    def context_for(self, consumer_name: str) -> ConsumerContext:
        """
        Get (building it on first use) the context of a consumer.

        Raises:
            ConfigurationError: If the consumer is not configured
        """
        context = self.contexts.get(consumer_name)
        if context is not None:
            return context

        self.load()
        settings = consumer_config(self.config, consumer_name)

        api = GoogleDirectoryAPI(dict(settings.settings, name=consumer_name))
        self._apis.append(api)

        context = ConsumerContext(settings, DirectoryService(api, self._executor()), self._get_registry())
        self.contexts[consumer_name] = context
        logger.info(f"Initialized consumer {consumer_name} for domain {settings.domain}")
        return context

    def full_sync(self, consumer_name: str, dry_run: bool = False) -> FullSyncReport:
        """
        Run a full sync of one consumer and send its summary.

        Raises:
            ConfigurationError: If the consumer is not configured
            FullSyncInProgress: If a full sync of the consumer is already running
        """
        context = self.context_for(consumer_name)
        report = ReconciliationEngine(context).run_full_sync(dry_run=dry_run)
        send_full_sync_summary(report.as_stats(), self.notification_config)
        return report

    def process_events(self, consumer_name: str, events: Iterable[ChangeEvent]) -> int:
        """
        Apply a batch of change events for one consumer.

        Returns:
            Sequence number of the last event that should not be replayed
        """
        context = self.context_for(consumer_name)

        dispatcher = self.dispatchers.get(consumer_name)
        if dispatcher is None:
            dispatcher = ChangeEventDispatcher(context)
            self.dispatchers[consumer_name] = dispatcher

        metadata = BatchMetadata(consumer_name=consumer_name)
        last_processed = dispatcher.process_batch(events, metadata)

        if metadata.had_problem:
            logger.warning(f"Consumer {consumer_name} - {len(metadata.problems)} problems in batch, "
                           f"last processed sequence number {last_processed}")
            send_batch_problem_report(consumer_name, metadata.problems, last_processed, self.notification_config)

        return last_processed

    def close(self):
        """Release remote connections."""
        for api in self._apis:
            api.close()
        self._apis.clear()

        if self.registry is not None:
            self.registry.close()
            self.registry = None


def load_events(events_path: str) -> List[ChangeEvent]:
    """Read a JSON list of change events."""
    with open(events_path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"Events file {events_path} must contain a JSON list")

    return [ChangeEvent.from_dict(item) for item in data]


def run_full_sync(app: SyncApplication, consumer_name: str, dry_run: bool) -> int:
    try:
        app.full_sync(consumer_name, dry_run=dry_run)
    except Exception as e:
        logger.error(f"Full sync of {consumer_name} failed: {e}", exc_info=True)
        send_failure_notification("Full Sync Failed", str(e), app.notification_config,
                                  {'Consumer': consumer_name, 'Dry Run': dry_run})
    return 0


def run_process(app: SyncApplication, consumer_name: str, events_path: str) -> int:
    try:
        events = load_events(events_path)
        last_processed = app.process_events(consumer_name, events)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except Exception as e:
        logger.error(f"Processing events from {events_path} failed: {e}", exc_info=True)
        send_failure_notification("Change Event Processing Failed", str(e), app.notification_config,
                                  {'Consumer': consumer_name, 'Events File': events_path})
        return 1

    print(last_processed)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='directory-sync', description='Directory Sync Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')

    subparsers = parser.add_subparsers(dest='command', required=True)

    fullsync_parser = subparsers.add_parser('fullsync', help='Reconcile every in-scope group of a consumer')
    fullsync_parser.add_argument('consumer', help='Consumer name')
    fullsync_parser.add_argument('--dry-run', action='store_true',
                                 help='Log every decision without changing the directory')

    process_parser = subparsers.add_parser('process', help='Apply a JSON file of change events')
    process_parser.add_argument('consumer', help='Consumer name')
    process_parser.add_argument('events_file', help='Path to a JSON list of change events')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    app = SyncApplication(config_path=args.config)
    try:
        if args.command == 'fullsync':
            return run_full_sync(app, args.consumer, args.dry_run)
        return run_process(app, args.consumer, args.events_file)
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Unit tests for sync scope resolution.
"""

import os
import sys
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.models import SourceStem
from directory_sync.resolver import SyncAttributeResolver, default_sync_attribute_name, parent_stem_name
from directory_sync.source.base import OWNER_GROUP, OWNER_STEM

from fakes import SYNC_ATTRIBUTE, SYNC_ATTRIBUTE_UUID, FakeRegistry


class TestHelpers(unittest.TestCase):

    def test_default_sync_attribute_name(self):
        self.assertEqual(default_sync_attribute_name('acme'),
                         'etc:attribute:googleProvisioner:syncToGoogleacme')

    def test_parent_stem_name(self):
        self.assertEqual(parent_stem_name('a:b:c'), 'a:b')
        self.assertEqual(parent_stem_name('a'), '')


class TestSyncAttributeResolver(unittest.TestCase):
    """Test cases for SyncAttributeResolver."""

    def setUp(self):
        self.registry = FakeRegistry()
        self.registry.add_group('courses:math:algebra')
        self.registry.add_group('courses:art:drawing')
        self.registry.add_group('staff:hr')
        self.resolver = SyncAttributeResolver(self.registry, SYNC_ATTRIBUTE)

    def test_group_with_direct_assignment(self):
        self.registry.assign(OWNER_GROUP, 'staff:hr')
        self.assertTrue(self.resolver.should_sync_group(self.registry.groups['staff:hr']))

    def test_group_inherits_from_ancestor_stem(self):
        self.registry.assign(OWNER_STEM, 'courses')
        self.assertTrue(self.resolver.should_sync_group(self.registry.groups['courses:math:algebra']))
        self.assertFalse(self.resolver.should_sync_group(self.registry.groups['staff:hr']))

    def test_group_without_marker_is_out_of_scope(self):
        self.assertFalse(self.resolver.should_sync_group(self.registry.groups['courses:math:algebra']))

    def test_walk_memoizes_every_visited_stem(self):
        self.registry.assign(OWNER_STEM, 'courses')
        self.resolver.should_sync_group(self.registry.groups['courses:math:algebra'])
        lookups = self.registry.calls['find_stem']

        # Sibling below an already resolved stem needs no further stem lookups
        self.assertTrue(self.resolver.should_sync_group(self.registry.groups['courses:art:drawing']))
        self.assertTrue(self.resolver.should_sync_stem(self.registry.stems['courses:math']))
        self.assertEqual(self.registry.calls['find_stem'], lookups + 1)

    def test_missing_attribute_means_nothing_in_scope(self):
        registry = FakeRegistry(attribute_exists=False)
        registry.add_group('a:b')
        registry.assign(OWNER_GROUP, 'a:b')
        resolver = SyncAttributeResolver(registry, SYNC_ATTRIBUTE)

        with self.assertLogs('directory_sync.resolver', level='WARNING'):
            self.assertFalse(resolver.should_sync_group(registry.groups['a:b']))
        self.assertFalse(resolver.is_sync_attribute(SYNC_ATTRIBUTE_UUID))

    def test_is_sync_attribute(self):
        self.assertTrue(self.resolver.is_sync_attribute(SYNC_ATTRIBUTE_UUID.upper()))
        self.assertTrue(self.resolver.is_sync_attribute(None, SYNC_ATTRIBUTE))
        self.assertFalse(self.resolver.is_sync_attribute('other-uuid', 'other:attribute'))

    def test_deleted_group_decided_by_name(self):
        self.registry.assign(OWNER_STEM, 'courses')
        self.assertTrue(self.resolver.should_sync_group_name('courses:gone'))
        self.assertFalse(self.resolver.should_sync_group_name('staff:gone'))

    def test_missing_stem_is_out_of_scope(self):
        with self.assertLogs('directory_sync.resolver', level='WARNING'):
            self.assertFalse(self.resolver.should_sync_group_name('nowhere:gone'))

    def test_stem_cycle_terminates(self):
        looped = {
            'x': SourceStem(name='x', parent_name='y'),
            'y': SourceStem(name='y', parent_name='x'),
        }
        with patch.object(self.registry, 'find_stem', side_effect=lambda name: looped.get(name)):
            with self.assertLogs('directory_sync.resolver', level='WARNING'):
                self.assertFalse(self.resolver.should_sync_stem(looped['x']))

    def test_prime_records_direct_assignments(self):
        self.registry.assign(OWNER_STEM, 'courses')
        self.registry.assign(OWNER_GROUP, 'staff:hr')
        self.resolver.prime()

        self.assertEqual(self.resolver.in_scope_group_names(), ['staff:hr'])
        self.assertEqual(self.registry.calls['child_groups'], 0)

    def test_prime_fully_populated(self):
        self.registry.assign(OWNER_STEM, 'courses')
        self.registry.assign(OWNER_GROUP, 'staff:hr')
        self.resolver.prime(fully_populate=True)

        self.assertEqual(self.resolver.in_scope_group_names(),
                         ['courses:art:drawing', 'courses:math:algebra', 'staff:hr'])
        self.assertEqual(self.resolver.known_group('courses:art:drawing').name, 'courses:art:drawing')

    def test_forget_drops_decision(self):
        group = self.registry.groups['staff:hr']
        self.assertFalse(self.resolver.should_sync_group(group))

        self.registry.assign(OWNER_GROUP, 'staff:hr')
        self.assertFalse(self.resolver.should_sync_group(group))

        self.resolver.forget('staff:hr')
        self.assertTrue(self.resolver.should_sync_group(group))

    def test_forget_subtree(self):
        self.assertFalse(self.resolver.should_sync_group(self.registry.groups['courses:math:algebra']))
        self.registry.assign(OWNER_STEM, 'courses')

        self.resolver.forget('courses', subtree=True)
        self.assertTrue(self.resolver.should_sync_group(self.registry.groups['courses:math:algebra']))
        self.assertIsNotNone(self.resolver.known_group('courses:math:algebra'))

        self.resolver.forget('courses', subtree=True)
        self.assertIsNone(self.resolver.known_group('courses:math:algebra'))


if __name__ == '__main__':
    unittest.main()

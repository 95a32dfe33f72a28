#!/usr/bin/env python3
"""
Unit tests for the time-limited object cache.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.cache import ObjectCache
from directory_sync.models import DirectoryGroup


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += minutes * 60


class TestObjectCache(unittest.TestCase):
    """Test cases for ObjectCache."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ObjectCache(lambda group: group.email, validity_minutes=30, name='groups', clock=self.clock)

    def test_new_cache_is_expired_and_empty(self):
        self.assertTrue(self.cache.is_expired())
        self.assertIsNone(self.cache.expiration)
        self.assertEqual(len(self.cache), 0)

    def test_put_and_get_are_case_insensitive(self):
        group = DirectoryGroup(email='Sales@Example.edu')
        self.cache.put(group)

        self.assertIs(self.cache.get('sales@example.edu'), group)
        self.assertIs(self.cache.get('  SALES@EXAMPLE.EDU '), group)
        self.assertIn('sales@EXAMPLE.edu', self.cache)

    def test_put_none_is_ignored(self):
        self.cache.put(None)
        self.assertEqual(len(self.cache), 0)

    def test_remove(self):
        self.cache.put(DirectoryGroup(email='sales@example.edu'))
        self.cache.remove('SALES@example.edu')
        self.assertIsNone(self.cache.get('sales@example.edu'))

        # Removing a missing key is a no-op
        self.cache.remove('missing@example.edu')

    def test_seed_replaces_contents_and_sets_expiration(self):
        self.cache.put(DirectoryGroup(email='old@example.edu'))
        self.cache.seed([DirectoryGroup(email='a@example.edu'), DirectoryGroup(email='b@example.edu')])

        self.assertEqual(sorted(self.cache.keys()), ['a@example.edu', 'b@example.edu'])
        self.assertEqual(self.cache.expiration, 1000.0 + 30 * 60)
        self.assertFalse(self.cache.is_expired())

    def test_expires_after_validity(self):
        self.cache.seed([])
        self.clock.advance(29)
        self.assertFalse(self.cache.is_expired())

        self.clock.advance(2)
        self.assertTrue(self.cache.is_expired())

    def test_set_validity_changes_expiration(self):
        self.cache.seed([])
        self.cache.set_validity(5)
        self.clock.advance(6)
        self.assertTrue(self.cache.is_expired())

    def test_reseed_failure_keeps_previous_contents(self):
        group = DirectoryGroup(email='kept@example.edu')
        self.cache.seed([group])

        fetch = Mock(side_effect=RuntimeError("listing failed"))
        self.assertFalse(self.cache.reseed(fetch))
        self.assertIs(self.cache.get('kept@example.edu'), group)

    def test_reseed_success(self):
        fetch = Mock(return_value=[DirectoryGroup(email='new@example.edu')])
        self.assertTrue(self.cache.reseed(fetch))
        fetch.assert_called_once_with()
        self.assertEqual(self.cache.keys(), ['new@example.edu'])

    def test_clear_marks_expired(self):
        self.cache.seed([DirectoryGroup(email='a@example.edu')])
        self.cache.clear()

        self.assertEqual(len(self.cache), 0)
        self.assertTrue(self.cache.is_expired())

    def test_values(self):
        groups = [DirectoryGroup(email='a@example.edu'), DirectoryGroup(email='b@example.edu')]
        self.cache.seed(groups)
        self.assertCountEqual(self.cache.values(), groups)


if __name__ == '__main__':
    unittest.main()

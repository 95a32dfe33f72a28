#!/usr/bin/env python3
"""
Unit tests for directory address formatting.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.address import AddressFormatter


class TestAddressFormatter(unittest.TestCase):
    """Test cases for AddressFormatter."""

    def test_default_group_expression_uses_path(self):
        formatter = AddressFormatter('example.edu')
        self.assertEqual(formatter.qualify_group_address('courses:Math:Algebra'),
                         'courses-math-algebra@example.edu')

    def test_default_subject_expression(self):
        formatter = AddressFormatter('example.edu')
        self.assertEqual(formatter.qualify_subject_address('JDoe'), 'jdoe@example.edu')

    def test_group_extension_expression(self):
        formatter = AddressFormatter('example.edu', group_expression='grp-${groupExtension}')
        self.assertEqual(formatter.qualify_group_address('a:b:Sales Team'), 'grp-sales-team@example.edu')

    def test_group_name_expression(self):
        formatter = AddressFormatter('example.edu', group_expression='${groupName}')
        self.assertEqual(formatter.qualify_group_address('a:b'), 'a:b@example.edu')

    def test_expression_with_full_address_is_kept(self):
        formatter = AddressFormatter('example.edu', subject_expression='${subjectId}@Other.org')
        self.assertEqual(formatter.qualify_subject_address('jdoe'), 'jdoe@other.org')

    def test_domain_is_normalized(self):
        formatter = AddressFormatter(' @Example.EDU ')
        self.assertEqual(formatter.qualify_subject_address('x'), 'x@example.edu')

    def test_unknown_placeholder_is_left_alone(self):
        formatter = AddressFormatter('example.edu', group_expression='${unknown}-${groupExtension}')
        self.assertEqual(formatter.qualify_group_address('a:b'), '${unknown}-b@example.edu')


if __name__ == '__main__':
    unittest.main()

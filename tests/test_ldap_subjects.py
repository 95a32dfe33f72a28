#!/usr/bin/env python3
"""
Unit tests for the LDAP subject attribute source.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

from ldap3.core.exceptions import LDAPSocketOpenError

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.models import GROUP, SourceSubject
from directory_sync.source.ldap_subjects import LDAPConnectionError, LDAPQueryError, LdapSubjectSource


def ldap_entry(**attributes):
    entry = Mock(spec=list(attributes))
    for name, value in attributes.items():
        setattr(entry, name, Mock(value=value))
    return entry


class TestLdapSubjectSource(unittest.TestCase):
    """Test cases for LdapSubjectSource."""

    def setUp(self):
        self.config = {
            'server_url': 'ldap://ldap.example.edu:389',
            'bind_dn': 'cn=reader,dc=example,dc=edu',
            'bind_password': 'secret',
            'user_base_dn': 'ou=people,dc=example,dc=edu',
            'attributes': ['givenName', 'sn', 'mail'],
            'max_retries': 2,
            'retry_wait_seconds': 0,
        }

        server_patcher = patch('directory_sync.source.ldap_subjects.Server')
        connection_patcher = patch('directory_sync.source.ldap_subjects.Connection')
        self.server_class = server_patcher.start()
        self.connection_class = connection_patcher.start()
        self.addCleanup(server_patcher.stop)
        self.addCleanup(connection_patcher.stop)

        self.connection = self.connection_class.return_value
        self.connection.open.return_value = True
        self.connection.bind.return_value = True

    def test_connect(self):
        source = LdapSubjectSource(self.config)
        self.assertTrue(source.connect())

        self.assertFalse(self.server_class.call_args.kwargs['use_ssl'])
        self.assertIsNone(self.server_class.call_args.kwargs['tls'])
        self.connection.bind.assert_called_once_with()

    def test_ldaps_url_enables_ssl(self):
        self.config['server_url'] = 'ldaps://ldap.example.edu:636'
        source = LdapSubjectSource(self.config)
        source.connect()

        self.assertTrue(self.server_class.call_args.kwargs['use_ssl'])
        self.assertIsNotNone(self.server_class.call_args.kwargs['tls'])

    @patch('directory_sync.source.ldap_subjects.time.sleep')
    def test_connect_retries_then_fails(self, sleep):
        self.connection.open.side_effect = LDAPSocketOpenError("refused")
        source = LdapSubjectSource(self.config)

        with self.assertRaises(LDAPConnectionError):
            source.connect()

        self.assertEqual(self.connection.open.call_count, 2)
        self.assertEqual(sleep.call_count, 1)

    def test_bind_failure(self):
        self.connection.bind.return_value = False
        source = LdapSubjectSource(dict(self.config, max_retries=1))

        with self.assertRaises(LDAPConnectionError):
            source.connect()

    def test_lookup_escapes_filter(self):
        self.connection.search.return_value = True
        self.connection.entries = [ldap_entry(givenName='Jane', sn='Doe', mail=['jane@example.edu'])]
        source = LdapSubjectSource(self.config)

        attributes = source.lookup('j*doe')

        self.assertEqual(attributes, {'givenName': 'Jane', 'sn': 'Doe', 'mail': 'jane@example.edu'})
        self.assertEqual(self.connection.search.call_args.kwargs['search_filter'], '(uid=j\\2adoe)')

    def test_lookup_not_found(self):
        self.connection.search.return_value = False
        self.connection.entries = []
        self.assertEqual(LdapSubjectSource(self.config).lookup('ghost'), {})

    def test_lookup_failure(self):
        self.connection.search.side_effect = LDAPSocketOpenError("connection lost")
        source = LdapSubjectSource(self.config)

        with self.assertRaises(LDAPQueryError):
            source.lookup('jdoe')
        self.assertIsNone(source.connection)

    def test_enrich_keeps_registry_attributes(self):
        self.connection.search.return_value = True
        self.connection.entries = [ldap_entry(givenName='Janet', sn='Doe', mail=None)]
        subject = SourceSubject(id='jdoe', source_id='ldap', attributes={'givenName': 'Jane'})

        LdapSubjectSource(self.config).enrich(subject)

        self.assertEqual(subject.attributes, {'givenName': 'Jane', 'sn': 'Doe'})

    def test_enrich_skips_non_person(self):
        subject = SourceSubject(id='g', subject_type=GROUP)
        LdapSubjectSource(self.config).enrich(subject)
        self.connection_class.assert_not_called()

    def test_context_manager_disconnects(self):
        with LdapSubjectSource(self.config) as source:
            source.connect()
        self.connection.unbind.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()

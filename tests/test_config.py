#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, validation, environment variable overrides, defaults and
the per-consumer settings view.
"""

import os
import sys
import copy
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import ConfigLoader, ConfigurationError, ConsumerConfig, consumer_config, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'grouper': {
                'base_url': 'https://grouper.example.edu/grouper-ws/servicesRest',
                'auth': {
                    'method': 'basic',
                    'username': 'wsuser',
                    'password': 'wspass'
                }
            },
            'subject_ldap': {
                'server_url': 'ldaps://ldap.example.edu:636',
                'bind_dn': 'cn=reader,dc=example,dc=edu',
                'bind_password': 'ldappass',
                'user_base_dn': 'ou=people,dc=example,dc=edu'
            },
            'consumers': {
                'acme': {
                    'domain': 'acme.example.edu',
                    'service_account_key_path': '/etc/directory-sync/acme.json',
                    'service_account_email': 'sync@acme.iam.example.com',
                    'impersonation_user': 'admin@acme.example.edu'
                }
            },
            'notifications': {
                'smtp_server': 'smtp.example.edu',
                'smtp_password': 'smtppass',
                'email_to': ['ops@example.edu']
            }
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def load(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        return ConfigLoader(self.create_test_config(config_data)).load()

    def test_valid_config(self):
        """Test loading a valid configuration."""
        with patch.dict(os.environ, {}, clear=True):
            config = self.load(self.valid_config)

        self.assertEqual(config['grouper']['version'], 'v2_4_000')
        self.assertTrue(config['grouper']['verify_ssl'])
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['logging']['retention_days'], 7)
        self.assertEqual(config['error_handling']['max_attempts'], 7)
        self.assertFalse(config['notifications']['email_on_success'])
        self.assertEqual(config['subject_ldap']['subject_filter'], '(uid={subject_id})')

    def test_consumer_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = self.load(self.valid_config)

        consumer = config['consumers']['acme']
        self.assertEqual(consumer['group_identifier_expression'], '${groupPath}')
        self.assertEqual(consumer['user_cache_validity_minutes'], 30)
        self.assertEqual(consumer['group_cache_validity_minutes'], 30)
        self.assertFalse(consumer['provision_users'])
        self.assertFalse(consumer['deprovision_users'])
        self.assertFalse(consumer['retry_on_error'])
        self.assertEqual(consumer['handle_deleted_group'], 'ignore')
        self.assertTrue(consumer['include_user_in_global_address_list'])
        self.assertTrue(consumer['include_group_in_global_address_list'])
        self.assertEqual(consumer['subject_given_name_field'], 'givenName')
        self.assertEqual(consumer['subject_surname_field'], 'sn')
        self.assertTrue(consumer['simple_subject_naming'])
        self.assertEqual(consumer['sync_attribute_name'], 'etc:attribute:googleProvisioner:syncToGoogleacme')

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("grouper: [unterminated\n")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_validation_collects_every_error(self):
        config_data = copy.deepcopy(self.valid_config)
        del config_data['grouper']['base_url']
        del config_data['subject_ldap']['user_base_dn']
        config_data['consumers']['acme']['handle_deleted_group'] = 'shred'
        config_data['consumers']['acme']['user_cache_validity_minutes'] = 0
        del config_data['consumers']['acme']['domain']

        with self.assertRaises(ConfigurationError) as ctx:
            self.load(config_data)

        message = str(ctx.exception)
        self.assertIn('base_url', message)
        self.assertIn('user_base_dn', message)
        self.assertIn('handle_deleted_group', message)
        self.assertIn('user_cache_validity_minutes', message)
        self.assertIn('consumers.acme.domain', message)

    def test_missing_consumers(self):
        config_data = copy.deepcopy(self.valid_config)
        config_data['consumers'] = {}

        with self.assertRaises(ConfigurationError) as ctx:
            self.load(config_data)
        self.assertIn('consumer', str(ctx.exception))

    def test_invalid_max_attempts(self):
        config_data = copy.deepcopy(self.valid_config)
        config_data['error_handling'] = {'max_attempts': 0}

        with self.assertRaises(ConfigurationError):
            self.load(config_data)

    def test_env_var_overrides(self):
        """Test environment variable overrides for sensitive data."""
        env = {
            'GROUPER_WS_PASSWORD': 'env_ws_pass',
            'LDAP_BIND_PASSWORD': 'env_ldap_pass',
            'SMTP_PASSWORD': 'env_smtp_pass',
            'ACME_SERVICE_ACCOUNT_KEY_PATH': '/run/secrets/acme.p12',
        }
        with patch.dict(os.environ, env, clear=True):
            config = self.load(self.valid_config)

        self.assertEqual(config['grouper']['auth']['password'], 'env_ws_pass')
        self.assertEqual(config['subject_ldap']['bind_password'], 'env_ldap_pass')
        self.assertEqual(config['notifications']['smtp_password'], 'env_smtp_pass')
        self.assertEqual(config['consumers']['acme']['service_account_key_path'], '/run/secrets/acme.p12')

    def test_env_override_skips_missing_section(self):
        config_data = copy.deepcopy(self.valid_config)
        del config_data['subject_ldap']

        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env_ldap_pass'}, clear=True):
            config = self.load(config_data)

        self.assertNotIn('subject_ldap', config)

    def test_config_path_from_environment(self):
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}, clear=True):
            config = load_config()
        self.assertIn('acme', config['consumers'])


class TestConsumerConfig(unittest.TestCase):
    """Test cases for the per-consumer settings view."""

    def test_from_dict_keeps_known_fields(self):
        settings = ConsumerConfig.from_dict('acme', {
            'domain': 'acme.example.edu',
            'service_account_key_path': 'key.json',
            'provision_users': True,
            'directory_base_url': 'https://directory.test/v1',
        })

        self.assertEqual(settings.name, 'acme')
        self.assertTrue(settings.provision_users)
        self.assertEqual(settings.handle_deleted_group, 'ignore')
        self.assertEqual(settings.sync_attribute_name, 'etc:attribute:googleProvisioner:syncToGoogleacme')
        self.assertEqual(settings.settings['directory_base_url'], 'https://directory.test/v1')

    def test_explicit_sync_attribute_name(self):
        settings = ConsumerConfig.from_dict('acme', {
            'domain': 'acme.example.edu',
            'service_account_key_path': 'key.json',
            'sync_attribute_name': 'etc:custom:marker',
        })
        self.assertEqual(settings.sync_attribute_name, 'etc:custom:marker')

    def test_unknown_consumer(self):
        config = {'consumers': {'acme': {'domain': 'a', 'service_account_key_path': 'k'}}}

        with self.assertRaises(ConfigurationError) as ctx:
            consumer_config(config, 'other')
        self.assertIn('acme', str(ctx.exception))

        self.assertEqual(consumer_config(config, 'acme').domain, 'a')


if __name__ == '__main__':
    unittest.main()

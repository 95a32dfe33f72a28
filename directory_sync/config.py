"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. Each consumer (one target directory identity) has
its own namespace under ``consumers``.
"""

import os
import copy
import yaml
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from directory_sync.resolver import default_sync_attribute_name

logger = logging.getLogger(__name__)

HANDLE_DELETED_GROUP_CHOICES = ('archive', 'delete', 'ignore')

CONSUMER_DEFAULTS = {
    'impersonation_user': None,
    'group_identifier_expression': '${groupPath}',
    'subject_identifier_expression': '${subjectId}',
    'user_cache_validity_minutes': 30,
    'group_cache_validity_minutes': 30,
    'provision_users': False,
    'deprovision_users': False,
    'retry_on_error': False,
    'handle_deleted_group': 'ignore',
    'include_user_in_global_address_list': True,
    'include_group_in_global_address_list': True,
    'subject_given_name_field': 'givenName',
    'subject_surname_field': 'sn',
    'subject_email_field': 'email',
    'simple_subject_naming': True,
}


class ConfigurationError(Exception):
    """The configuration file is missing, unreadable or invalid."""
    pass


@dataclass
class ConsumerConfig:
    """Settings of one consumer, with defaults applied."""

    name: str
    domain: str
    service_account_key_path: str
    service_account_email: Optional[str] = None
    impersonation_user: Optional[str] = None
    group_identifier_expression: str = CONSUMER_DEFAULTS['group_identifier_expression']
    subject_identifier_expression: str = CONSUMER_DEFAULTS['subject_identifier_expression']
    user_cache_validity_minutes: int = 30
    group_cache_validity_minutes: int = 30
    provision_users: bool = False
    deprovision_users: bool = False
    retry_on_error: bool = False
    handle_deleted_group: str = 'ignore'
    include_user_in_global_address_list: bool = True
    include_group_in_global_address_list: bool = True
    subject_given_name_field: str = 'givenName'
    subject_surname_field: str = 'sn'
    subject_email_field: Optional[str] = 'email'
    simple_subject_naming: bool = True
    sync_attribute_name: str = ''
    settings: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.sync_attribute_name:
            self.sync_attribute_name = default_sync_attribute_name(self.name)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'ConsumerConfig':
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data and key not in ('name', 'settings')}
        return cls(name=name, settings=dict(data), **known)



SECTION_DEFAULTS = {
    'grouper': {
        'version': 'v2_4_000',
        'verify_ssl': True,
        'timeout': 30,
        'subject_attribute_names': [],
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
    },
    'error_handling': {
        'max_attempts': 7,
    },
    'notifications': {
        'enable_email': True,
        'email_on_failure': True,
        'email_on_success': False,
        'smtp_port': 587,
        'smtp_tls': True,
    },
}

SUBJECT_LDAP_DEFAULTS = {
    'subject_filter': '(uid={subject_id})',
    'attributes': ['cn', 'givenName', 'sn', 'mail'],
}


class ConfigLoader:
    """Reads, validates and completes the Directory Sync configuration file."""

    # Secrets that may be supplied through the environment instead of the file
    ENV_OVERRIDES = {
        'grouper.auth.password': 'GROUPER_WS_PASSWORD',
        'subject_ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: YAML file to read; defaults to $CONFIG_PATH, then config.yaml
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        """
        Read the file, apply environment overrides, validate, then fill in defaults.

        Returns:
            The complete configuration

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {self.config_path}: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")
        self.config = data

        self._apply_env_overrides()

        errors = (self._grouper_errors() + self._subject_ldap_errors()
                  + self._consumer_errors() + self._error_handling_errors())
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

        self._apply_defaults()

        logger.info(f"Loaded configuration from {self.config_path} "
                    f"({len(self.config['consumers'])} consumers)")
        return self.config

    # Environment

    def _apply_env_overrides(self):
        for dotted_key, env_var in self.ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            section = dotted_key.split('.', 1)[0]
            if not value or section not in self.config:
                continue

            target = self.config
            *parents, leaf = dotted_key.split('.')
            for key in parents:
                if not isinstance(target.get(key), dict):
                    target[key] = {}
                target = target[key]
            target[leaf] = value
            logger.debug(f"{env_var} overrides {dotted_key}")

        consumers = self.config.get('consumers')
        if isinstance(consumers, dict):
            for name, consumer in consumers.items():
                env_var = f"{name.upper()}_SERVICE_ACCOUNT_KEY_PATH"
                key_path = os.getenv(env_var)
                if key_path and isinstance(consumer, dict):
                    consumer['service_account_key_path'] = key_path
                    logger.debug(f"{env_var} overrides consumers.{name}.service_account_key_path")

    # Validation

    def _grouper_errors(self) -> List[str]:
        errors = []
        grouper = self.config.get('grouper') or {}
        if not grouper.get('base_url'):
            errors.append("Missing required grouper field: base_url")
        auth = grouper.get('auth') or {}
        if auth and not auth.get('method'):
            errors.append("Missing auth method for grouper")
        return errors

    def _subject_ldap_errors(self) -> List[str]:
        if 'subject_ldap' not in self.config:
            return []
        ldap_config = self.config.get('subject_ldap') or {}
        return [f"Missing required subject_ldap field: {name}"
                for name in ('server_url', 'user_base_dn') if not ldap_config.get(name)]

    def _consumer_errors(self) -> List[str]:
        consumers = self.config.get('consumers')
        if not consumers or not isinstance(consumers, dict):
            return ["At least one consumer must be configured under 'consumers'"]

        errors = []
        for name, consumer in consumers.items():
            prefix = f"consumers.{name}"
            if not isinstance(consumer, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            errors.extend(f"Missing required field {prefix}.{field_name}"
                          for field_name in ('domain', 'service_account_key_path')
                          if not consumer.get(field_name))

            policy = consumer.get('handle_deleted_group')
            if policy is not None and policy not in HANDLE_DELETED_GROUP_CHOICES:
                errors.append(f"Invalid {prefix}.handle_deleted_group '{policy}' "
                              f"(expected one of: {', '.join(HANDLE_DELETED_GROUP_CHOICES)})")

            for field_name in ('user_cache_validity_minutes', 'group_cache_validity_minutes'):
                if not _is_positive_int(consumer.get(field_name, 1)):
                    errors.append(f"{prefix}.{field_name} must be a positive integer")
        return errors

    def _error_handling_errors(self) -> List[str]:
        max_attempts = (self.config.get('error_handling') or {}).get('max_attempts', 1)
        if not _is_positive_int(max_attempts):
            return ["error_handling.max_attempts must be a positive integer"]
        return []

    # Defaults

    def _apply_defaults(self):
        for section, defaults in SECTION_DEFAULTS.items():
            values = self.config.get(section) or {}
            self.config[section] = values
            for key, value in defaults.items():
                values.setdefault(key, copy.deepcopy(value))

        if self.config.get('subject_ldap'):
            for key, value in SUBJECT_LDAP_DEFAULTS.items():
                self.config['subject_ldap'].setdefault(key, copy.deepcopy(value))

        for name, consumer in self.config['consumers'].items():
            for key, value in CONSUMER_DEFAULTS.items():
                consumer.setdefault(key, value)
            consumer.setdefault('sync_attribute_name', default_sync_attribute_name(name))


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load, validate and complete the configuration file."""
    return ConfigLoader(config_path).load()


def consumer_config(config: Dict[str, Any], consumer_name: str) -> ConsumerConfig:
    """
    Get the settings of one consumer.

    Raises:
        ConfigurationError: If the consumer is not configured
    """
    consumers = config.get('consumers') or {}
    if consumer_name not in consumers:
        raise ConfigurationError(f"Unknown consumer '{consumer_name}' "
                                 f"(configured: {', '.join(sorted(consumers)) or 'none'})")
    return ConsumerConfig.from_dict(consumer_name, consumers[consumer_name])

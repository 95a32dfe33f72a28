"""
LDAP subject attribute source.

The registry web services only return the attributes a subject source exposes.
When user provisioning needs names or mail addresses that live in the
institutional directory, this module looks the subject up in LDAP and merges
the configured attributes into the subject.
"""

import logging
import ssl
import time
from typing import Any, Dict, Optional

from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from directory_sync.models import SourceSubject
from directory_sync.source.base import SourceRegistryError

logger = logging.getLogger(__name__)

DEFAULT_ATTRIBUTES = ['cn', 'givenName', 'sn', 'mail']


class LDAPConnectionError(SourceRegistryError):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(SourceRegistryError):
    """Raised when LDAP query fails."""
    pass


class LdapSubjectSource:
    """
    Looks up subject attributes in an LDAP directory.

    The connection is opened on first use and kept for subsequent lookups.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the subject source.

        Args:
            config: ``subject_ldap`` configuration (server_url, bind_dn, bind_password,
                user_base_dn, subject_filter, attributes, TLS settings)
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.user_base_dn = config['user_base_dn']
        self.subject_filter = config.get('subject_filter', '(uid={subject_id})')
        self.attributes = config.get('attributes', DEFAULT_ATTRIBUTES)

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.max_retries = config.get('max_retries', 3)
        self.retry_wait = config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish connection to the LDAP server with retry logic.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(self.max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Connected to subject LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{self.max_retries} failed: {e}")
                self._discard_connection()
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_wait)

        error_msg = f"Failed to connect to LDAP after {self.max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled for subject LDAP")

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        return Tls(**tls_config)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error unbinding LDAP connection: {e}")
            self.connection = None
        self._connected = False

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            self._discard_connection()
            logger.debug("Subject LDAP connection closed")

    def lookup(self, subject_id: str) -> Dict[str, str]:
        """
        Fetch the configured attributes of one subject.

        Args:
            subject_id: Subject identifier substituted into ``subject_filter``

        Returns:
            Attribute name to value (empty if the subject is not in LDAP)

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            self.connect()

        search_filter = self.subject_filter.format(subject_id=escape_filter_chars(subject_id))
        logger.debug(f"Searching subject LDAP with filter: {search_filter}")

        try:
            success = self.connection.search(
                search_base=self.user_base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=self.attributes,
                size_limit=1
            )
        except LDAPException as e:
            self._discard_connection()
            raise LDAPQueryError(f"LDAP query failed for subject {subject_id}: {e}")

        if not success or not self.connection.entries:
            logger.debug(f"Subject {subject_id} not found in LDAP")
            return {}

        entry = self.connection.entries[0]
        attributes = {}
        for name in self.attributes:
            if hasattr(entry, name):
                value = getattr(entry, name).value
                if isinstance(value, list):
                    value = value[0] if value else None
                if value:
                    attributes[name] = str(value)

        return attributes

    def enrich(self, subject: SourceSubject) -> SourceSubject:
        """Merge LDAP attributes into a subject; registry attributes take precedence."""
        if not subject.is_person:
            return subject

        ldap_attributes = self.lookup(subject.id)
        for name, value in ldap_attributes.items():
            subject.attributes.setdefault(name, value)

        return subject

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

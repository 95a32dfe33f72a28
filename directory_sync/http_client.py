"""
JSON over HTTP client shared by the remote adapters.

Handles connection reuse per host, SSL context setup, authentication headers and
translation of error responses into the remote error taxonomy used by the
executor.
"""

import json
import ssl
import base64
import logging
import http.client
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlencode, urlparse
from http.client import HTTPConnection, HTTPSConnection

from directory_sync.retry import (
    NotFoundError, ProtocolError, RateLimitedError, RemoteError,
    ServiceUnavailableError, TransportError
)

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded')
BACKEND_ERROR_REASONS = ('backendError',)


def error_reason(payload: Any) -> Optional[str]:
    """Extract the first error reason from a JSON error document."""
    if not isinstance(payload, dict):
        return None

    error = payload.get('error')
    if not isinstance(error, dict):
        return None

    errors = error.get('errors') or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get('reason')

    return error.get('status')


def classify_error(status: int, reason: str, payload: Any, target: str) -> RemoteError:
    """
    Translate an HTTP error response into a remote error.

    Args:
        status: HTTP status code
        reason: HTTP reason phrase
        payload: Parsed response body (or None)
        target: Description of the request for the message

    Returns:
        Exception instance to raise
    """
    detail = error_reason(payload)
    message = f"HTTP {status} {reason} for {target}"
    if detail:
        message += f" ({detail})"

    if status == 404:
        return NotFoundError(message, status, detail)

    if status == 429 or (status == 403 and detail in RATE_LIMIT_REASONS):
        return RateLimitedError(message, status, detail)

    if status == 503 or detail in BACKEND_ERROR_REASONS:
        return ServiceUnavailableError(message, status, detail)

    return ProtocolError(message, status, detail)


class JsonHttpClient:
    """
    Minimal JSON REST client on top of ``http.client``.

    Authentication is either static (basic or bearer, from the ``auth`` config)
    or delegated to a token provider exposing ``headers()`` and ``invalidate()``.
    """

    def __init__(self, config: Dict[str, Any], token_provider: Optional[Any] = None):
        """
        Initialize the client.

        Args:
            config: Client configuration (base_url, auth, verify_ssl, ca_cert_file, timeout)
            token_provider: Optional object supplying Authorization headers
        """
        self.config = config
        self.name = config.get('name', 'remote')
        self.base_url = config['base_url'].rstrip('/')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.token_provider = token_provider

        self.connections: Dict[str, Union[HTTPConnection, HTTPSConnection]] = {}
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication(config.get('auth') or {})

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            self.ssl_context.load_verify_locations(cafile=ca_cert_file)
            logger.info(f"Loaded CA certificates for {self.name}: {ca_cert_file}")

    def _setup_authentication(self, auth_config: Dict[str, Any]):
        """Set up static authentication headers based on configuration."""
        auth_method = auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = auth_config.get('username')
            password = auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _get_connection(self, parsed_url) -> Union[HTTPConnection, HTTPSConnection]:
        """Get or create the HTTP connection for a host."""
        host = parsed_url.netloc
        connection = self.connections.get(host)
        if connection:
            return connection

        if parsed_url.scheme == 'https':
            connection = HTTPSConnection(host, context=self.ssl_context, timeout=self.timeout)
        else:
            connection = HTTPConnection(host, timeout=self.timeout)

        self.connections[host] = connection
        return connection

    def _drop_connection(self, host: str):
        connection = self.connections.pop(host, None)
        if connection:
            try:
                connection.close()
            except OSError as e:
                logger.debug(f"Error closing connection to {host}: {e}")

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        headers.update(self.auth_headers)
        if self.token_provider is not None:
            headers.update(self.token_provider.headers())
        return headers

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None, base_url: Optional[str] = None) -> Dict[str, Any]:
        """
        Make an HTTP request and decode the JSON response.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: Endpoint path relative to the base URL
            body: JSON request body
            params: Query string parameters (None values are dropped)
            base_url: Alternate base URL for APIs served from another host

        Returns:
            Parsed response document ({} for empty responses)

        Raises:
            RemoteError: Classified error response or transport failure
        """
        url = (base_url or self.base_url).rstrip('/') + '/' + path.lstrip('/')
        if params:
            query = urlencode({k: v for k, v in params.items() if v is not None})
            if query:
                url += '?' + query

        parsed_url = urlparse(url)
        request_path = parsed_url.path + ('?' + parsed_url.query if parsed_url.query else '')
        target = f"{method} {parsed_url.netloc}{parsed_url.path}"

        request_body = None
        if body is not None:
            request_body = json.dumps(body)

        max_auth_retries = 1 if self.token_provider is not None else 0
        for auth_attempt in range(max_auth_retries + 1):
            request_headers = self._headers()
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'

            try:
                conn = self._get_connection(parsed_url)

                logger.debug(f"Making {target}")
                conn.request(method, request_path, request_body, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8')

            except (ConnectionError, OSError, http.client.HTTPException) as e:
                self._drop_connection(parsed_url.netloc)
                raise TransportError(f"Connection error to {self.name} for {target}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            payload = None
            if response_data:
                try:
                    payload = json.loads(response_data)
                except json.JSONDecodeError as e:
                    if response.status < 400:
                        raise ProtocolError(f"Invalid JSON response from {self.name} for {target}: {e}",
                                            response.status)

            if response.status == 401 and auth_attempt < max_auth_retries:
                logger.info(f"401 received from {self.name}, refreshing access token")
                self.token_provider.invalidate()
                continue

            if response.status >= 400:
                raise classify_error(response.status, response.reason, payload, target)

            return payload if payload is not None else {}

        raise ProtocolError(f"Authentication failed for {self.name} for {target}", 401)

    def close(self):
        """Close every open connection."""
        for host in list(self.connections):
            self._drop_connection(host)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

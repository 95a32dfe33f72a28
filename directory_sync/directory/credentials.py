"""
Service account credentials for the target directory.

Access tokens are obtained with the OAuth2 JWT bearer grant: a short-lived
assertion signed with the service account's RSA private key is exchanged for an
access token at the token endpoint. The assertion names an impersonation user
(``sub``) when domain-wide delegation is used.

Keys are read either from a PKCS12 bundle (``.p12``) or from a JSON key file
containing a PEM ``private_key``.
"""

import json
import time
import base64
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse
from http.client import HTTPConnection, HTTPSConnection

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from directory_sync.retry import ProtocolError

logger = logging.getLogger(__name__)

TOKEN_URI = 'https://oauth2.googleapis.com/token'
JWT_BEARER_GRANT = 'urn:ietf:params:oauth:grant-type:jwt-bearer'
P12_DEFAULT_PASSWORD = 'notasecret'

ASSERTION_LIFETIME = 3600
EXPIRY_BUFFER = 60


class CredentialsError(ProtocolError):
    """Raised when a service account key cannot be loaded or a token cannot be obtained."""
    pass


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def load_private_key(key_path: str, password: Optional[str] = None):
    """
    Load a service account private key.

    Args:
        key_path: Path to a ``.p12`` bundle or a JSON key file
        password: PKCS12 password (defaults to the conventional ``notasecret``)

    Returns:
        Tuple of (RSA private key, client email from the key file or None)

    Raises:
        CredentialsError: If the file cannot be read or holds no RSA key
    """
    try:
        with open(key_path, 'rb') as f:
            key_data = f.read()
    except OSError as e:
        raise CredentialsError(f"Cannot read service account key {key_path}: {e}")

    client_email = None

    try:
        if key_path.lower().endswith('.json'):
            key_info = json.loads(key_data.decode('utf-8'))
            client_email = key_info.get('client_email')
            private_key = serialization.load_pem_private_key(
                key_info['private_key'].encode('utf-8'), password=None
            )
        else:
            private_key, _, _ = pkcs12.load_key_and_certificates(
                key_data, (password or P12_DEFAULT_PASSWORD).encode()
            )
    except (ValueError, KeyError, TypeError) as e:
        raise CredentialsError(f"Invalid service account key {key_path}: {e}")

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise CredentialsError(f"Service account key {key_path} does not contain an RSA private key")

    logger.debug(f"Loaded service account key from {key_path}")
    return private_key, client_email


class ServiceAccountCredentials:
    """
    Issues and caches access tokens for a service account.

    Exposes ``headers()`` and ``invalidate()`` so it can be used as the token
    provider of a ``JsonHttpClient``.
    """

    def __init__(self, service_account_email: Optional[str], private_key, scopes: List[str],
                 impersonation_user: Optional[str] = None, token_uri: str = TOKEN_URI,
                 timeout: int = 30):
        self.service_account_email = service_account_email
        self.private_key = private_key
        self.scopes = list(scopes)
        self.impersonation_user = impersonation_user
        self.token_uri = token_uri
        self.timeout = timeout

        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_key_file(cls, key_path: str, scopes: List[str], service_account_email: Optional[str] = None,
                      impersonation_user: Optional[str] = None, password: Optional[str] = None,
                      **kwargs) -> 'ServiceAccountCredentials':
        private_key, client_email = load_private_key(key_path, password)

        email = service_account_email or client_email
        if not email:
            raise CredentialsError(f"No service account email configured or found in {key_path}")

        return cls(email, private_key, scopes, impersonation_user=impersonation_user, **kwargs)

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Build the signed RS256 JWT assertion for the token request."""
        issued_at = int(now if now is not None else time.time())

        header = {'alg': 'RS256', 'typ': 'JWT'}
        claims = {
            'iss': self.service_account_email,
            'scope': ' '.join(self.scopes),
            'aud': self.token_uri,
            'iat': issued_at,
            'exp': issued_at + ASSERTION_LIFETIME,
        }
        if self.impersonation_user:
            claims['sub'] = self.impersonation_user

        signing_input = '.'.join([
            _b64url(json.dumps(header, separators=(',', ':')).encode('utf-8')),
            _b64url(json.dumps(claims, separators=(',', ':')).encode('utf-8')),
        ])
        signature = self.private_key.sign(signing_input.encode('ascii'), padding.PKCS1v15(), hashes.SHA256())

        return f"{signing_input}.{_b64url(signature)}"

    def _request_token(self, assertion: str) -> Dict[str, Any]:
        """POST the assertion to the token endpoint and return the decoded response."""
        parsed = urlparse(self.token_uri)

        if parsed.scheme == 'https':
            conn = HTTPSConnection(parsed.netloc, timeout=self.timeout)
        else:
            conn = HTTPConnection(parsed.netloc, timeout=self.timeout)

        body = urlencode({'grant_type': JWT_BEARER_GRANT, 'assertion': assertion})
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            conn.request('POST', parsed.path or '/', body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except OSError as e:
            raise CredentialsError(f"Token request to {self.token_uri} failed: {e}")
        finally:
            conn.close()

        if response.status != 200:
            raise CredentialsError(f"Token request failed: {response.status} {response.reason}")

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise CredentialsError(f"Invalid JSON in token response: {e}")

    def refresh(self) -> str:
        """Obtain a new access token."""
        logger.debug(f"Requesting access token for {self.service_account_email}"
                     + (f" impersonating {self.impersonation_user}" if self.impersonation_user else ""))

        token_response = self._request_token(self.build_assertion())

        access_token = token_response.get('access_token')
        if not access_token:
            raise CredentialsError("Token response missing access_token")

        expires_in = int(token_response.get('expires_in', ASSERTION_LIFETIME))
        self._access_token = access_token
        self._token_expires_at = time.time() + expires_in - EXPIRY_BUFFER

        logger.info(f"Obtained access token for {self.service_account_email}")
        return access_token

    @property
    def token_valid(self) -> bool:
        return self._access_token is not None and time.time() < self._token_expires_at

    def headers(self) -> Dict[str, str]:
        if not self.token_valid:
            self.refresh()
        return {'Authorization': f"Bearer {self._access_token}"}

    def invalidate(self):
        """Forget the cached token so the next request obtains a new one."""
        self._access_token = None
        self._token_expires_at = 0.0

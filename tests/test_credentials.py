#!/usr/bin/env python3
"""
Unit tests for service account credentials.

Keys are generated on the fly with cryptography, so assertions can be verified
against the matching public key.
"""

import os
import sys
import json
import base64
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch
from urllib.parse import parse_qs

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.directory.credentials import (
    JWT_BEARER_GRANT, TOKEN_URI, CredentialsError, ServiceAccountCredentials, load_private_key
)
from directory_sync.retry import ProtocolError

SCOPES = ['https://www.googleapis.com/auth/admin.directory.group']


def b64url_decode(value):
    return base64.urlsafe_b64decode(value + '=' * (-len(value) % 4))


class CredentialsTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='credentials_test_')
        self.addCleanup(shutil.rmtree, self.temp_dir)

    def write_json_key(self, private_key=None, client_email='sync@project.iam.example.com'):
        pem = (private_key or self.private_key).private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption()
        ).decode('ascii')
        path = os.path.join(self.temp_dir, 'key.json')
        with open(path, 'w') as f:
            json.dump({'type': 'service_account', 'client_email': client_email, 'private_key': pem}, f)
        return path

    def write_p12_key(self, password=b'notasecret'):
        data = pkcs12.serialize_key_and_certificates(
            b'privatekey', self.private_key, None, None,
            serialization.BestAvailableEncryption(password)
        )
        path = os.path.join(self.temp_dir, 'key.p12')
        with open(path, 'wb') as f:
            f.write(data)
        return path


class TestLoadPrivateKey(CredentialsTestCase):

    def test_json_key(self):
        key, client_email = load_private_key(self.write_json_key())
        self.assertIsInstance(key, rsa.RSAPrivateKey)
        self.assertEqual(client_email, 'sync@project.iam.example.com')

    def test_p12_key_with_default_password(self):
        key, client_email = load_private_key(self.write_p12_key())
        self.assertIsInstance(key, rsa.RSAPrivateKey)
        self.assertIsNone(client_email)

    def test_p12_key_with_wrong_password(self):
        path = self.write_p12_key(password=b'other')
        with self.assertRaises(CredentialsError):
            load_private_key(path)

    def test_missing_file(self):
        with self.assertRaises(CredentialsError):
            load_private_key(os.path.join(self.temp_dir, 'missing.json'))

    def test_json_without_private_key(self):
        path = os.path.join(self.temp_dir, 'broken.json')
        with open(path, 'w') as f:
            json.dump({'client_email': 'x@example.com'}, f)

        with self.assertRaises(CredentialsError):
            load_private_key(path)

    def test_non_rsa_key_rejected(self):
        path = self.write_json_key(private_key=ec.generate_private_key(ec.SECP256R1()))
        with self.assertRaises(CredentialsError):
            load_private_key(path)

    def test_credentials_error_is_protocol_error(self):
        self.assertTrue(issubclass(CredentialsError, ProtocolError))


class TestServiceAccountCredentials(CredentialsTestCase):

    def credentials(self, **kwargs):
        return ServiceAccountCredentials.from_key_file(self.write_json_key(), SCOPES, **kwargs)

    def test_assertion_claims_and_signature(self):
        credentials = self.credentials(impersonation_user='admin@example.edu')
        assertion = credentials.build_assertion(now=1700000000)

        header, claims, signature = assertion.split('.')
        self.assertEqual(json.loads(b64url_decode(header)), {'alg': 'RS256', 'typ': 'JWT'})
        self.assertEqual(json.loads(b64url_decode(claims)), {
            'iss': 'sync@project.iam.example.com',
            'scope': SCOPES[0],
            'aud': TOKEN_URI,
            'iat': 1700000000,
            'exp': 1700003600,
            'sub': 'admin@example.edu',
        })

        # Raises InvalidSignature on mismatch
        self.private_key.public_key().verify(
            b64url_decode(signature), f"{header}.{claims}".encode('ascii'), padding.PKCS1v15(), hashes.SHA256()
        )

    def test_no_subject_without_impersonation(self):
        claims = self.credentials().build_assertion(now=0).split('.')[1]
        self.assertNotIn('sub', json.loads(b64url_decode(claims)))

    def test_configured_email_wins(self):
        credentials = self.credentials(service_account_email='other@project.iam.example.com')
        self.assertEqual(credentials.service_account_email, 'other@project.iam.example.com')

    def test_p12_key_requires_configured_email(self):
        with self.assertRaises(CredentialsError):
            ServiceAccountCredentials.from_key_file(self.write_p12_key(), SCOPES)

    @patch('directory_sync.directory.credentials.HTTPSConnection')
    def test_token_is_requested_and_cached(self, connection_class):
        response = Mock(status=200, reason='OK')
        response.read.return_value = json.dumps({'access_token': 'tok-1', 'expires_in': 3600}).encode()
        connection_class.return_value.getresponse.return_value = response

        credentials = self.credentials()
        self.assertEqual(credentials.headers(), {'Authorization': 'Bearer tok-1'})
        self.assertEqual(credentials.headers(), {'Authorization': 'Bearer tok-1'})
        self.assertTrue(credentials.token_valid)

        connection = connection_class.return_value
        self.assertEqual(connection.request.call_count, 1)
        method, path, body, headers = connection.request.call_args.args
        self.assertEqual((method, path), ('POST', '/token'))
        form = parse_qs(body)
        self.assertEqual(form['grant_type'], [JWT_BEARER_GRANT])
        self.assertEqual(form['assertion'][0].count('.'), 2)

        credentials.invalidate()
        self.assertFalse(credentials.token_valid)
        credentials.headers()
        self.assertEqual(connection.request.call_count, 2)

    @patch('directory_sync.directory.credentials.HTTPSConnection')
    def test_token_request_rejected(self, connection_class):
        response = Mock(status=400, reason='Bad Request')
        response.read.return_value = b'{"error": "invalid_grant"}'
        connection_class.return_value.getresponse.return_value = response

        with self.assertRaises(CredentialsError):
            self.credentials().refresh()

    @patch('directory_sync.directory.credentials.HTTPSConnection')
    def test_token_request_transport_failure(self, connection_class):
        connection_class.return_value.request.side_effect = OSError("unreachable")

        with self.assertRaises(CredentialsError):
            self.credentials().refresh()


if __name__ == '__main__':
    unittest.main()

"""
Admin SDK style REST directory.

Implements ``DirectoryAPIBase`` against the directory API
(``admin/directory/v1``) and the groups settings API, authenticated with a
service account.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from directory_sync.directory.base import DirectoryAPIBase
from directory_sync.directory.credentials import ServiceAccountCredentials
from directory_sync.http_client import JsonHttpClient

logger = logging.getLogger(__name__)

DIRECTORY_BASE_URL = 'https://admin.googleapis.com/admin/directory/v1'
GROUP_SETTINGS_BASE_URL = 'https://www.googleapis.com/groups/v1/groups'

SCOPES = [
    'https://www.googleapis.com/auth/admin.directory.user',
    'https://www.googleapis.com/auth/admin.directory.group',
    'https://www.googleapis.com/auth/apps.groups.settings',
]

DEFAULT_CUSTOMER = 'my_customer'
PAGE_SIZE = 200


def _key(value: str) -> str:
    return quote(value, safe='@')


class GoogleDirectoryAPI(DirectoryAPIBase):
    """Directory API client for one service account and domain."""

    def __init__(self, config: Dict[str, Any], credentials: Optional[ServiceAccountCredentials] = None):
        """
        Initialize the directory client.

        Args:
            config: Consumer configuration (service_account_email, service_account_key_path,
                impersonation_user, domain, optional directory_base_url / group_settings_base_url)
            credentials: Pre-built credentials, loaded from the key file when omitted
        """
        self.config = config
        self.name = config.get('name', 'directory')
        self.domain = config.get('domain')
        self.customer = config.get('customer', DEFAULT_CUSTOMER)
        self.group_settings_base_url = config.get('group_settings_base_url', GROUP_SETTINGS_BASE_URL)

        if credentials is None:
            credentials = ServiceAccountCredentials.from_key_file(
                config['service_account_key_path'],
                SCOPES,
                service_account_email=config.get('service_account_email'),
                impersonation_user=config.get('impersonation_user'),
            )
        self.credentials = credentials

        self.client = JsonHttpClient({
            'name': self.name,
            'base_url': config.get('directory_base_url', DIRECTORY_BASE_URL),
            'verify_ssl': config.get('verify_ssl', True),
            'timeout': config.get('timeout', 30),
        }, token_provider=credentials)

        logger.debug(f"Directory client {self.name} initialized for domain {self.domain}")

    def list_groups(self, page_token: Optional[str] = None, user_key: Optional[str] = None) -> Dict[str, Any]:
        params = {'maxResults': PAGE_SIZE, 'pageToken': page_token}
        if user_key:
            params['userKey'] = user_key
        else:
            params['customer'] = self.customer
        return self.client.request('GET', 'groups', params=params)

    def get_group(self, group_key: str) -> Dict[str, Any]:
        return self.client.request('GET', f"groups/{_key(group_key)}")

    def insert_group(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.request('POST', 'groups', body=body)

    def update_group(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.request('PUT', f"groups/{_key(group_key)}", body=body)

    def delete_group(self, group_key: str) -> Dict[str, Any]:
        return self.client.request('DELETE', f"groups/{_key(group_key)}")

    def list_users(self, page_token: Optional[str] = None) -> Dict[str, Any]:
        params = {'customer': self.customer, 'maxResults': PAGE_SIZE, 'pageToken': page_token}
        return self.client.request('GET', 'users', params=params)

    def get_user(self, user_key: str) -> Dict[str, Any]:
        return self.client.request('GET', f"users/{_key(user_key)}")

    def insert_user(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.request('POST', 'users', body=body)

    def delete_user(self, user_key: str) -> Dict[str, Any]:
        return self.client.request('DELETE', f"users/{_key(user_key)}")

    def list_members(self, group_key: str, page_token: Optional[str] = None) -> Dict[str, Any]:
        params = {'maxResults': PAGE_SIZE, 'pageToken': page_token}
        return self.client.request('GET', f"groups/{_key(group_key)}/members", params=params)

    def insert_member(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.request('POST', f"groups/{_key(group_key)}/members", body=body)

    def delete_member(self, group_key: str, member_key: str) -> Dict[str, Any]:
        return self.client.request('DELETE', f"groups/{_key(group_key)}/members/{_key(member_key)}")

    def get_group_settings(self, group_key: str) -> Dict[str, Any]:
        return self.client.request('GET', _key(group_key), params={'alt': 'json'},
                                   base_url=self.group_settings_base_url)

    def update_group_settings(self, group_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.request('PUT', _key(group_key), body=body, params={'alt': 'json'},
                                   base_url=self.group_settings_base_url)

    def close(self):
        self.client.close()

"""
Grouper Web Services source registry.

Implements ``SourceRegistry`` with the JSON/REST flavour of the Grouper web
services. Every request is a POST of a ``WsRest...Request`` document and every
response wraps its payload in a ``Ws...Results`` document carrying
``resultMetadata``.
"""

import logging
import functools
from typing import Any, Dict, List, Optional

from directory_sync.http_client import JsonHttpClient
from directory_sync.models import (
    GROUP, PERSON, AttributeDefName, SourceGroup, SourceStem, SourceSubject
)
from directory_sync.resolver import ROOT_STEM_NAME, parent_stem_name
from directory_sync.retry import RemoteExecutor
from directory_sync.source.base import OWNER_GROUP, OWNER_STEM, SourceRegistry, SourceRegistryError

logger = logging.getLogger(__name__)

DEFAULT_WS_VERSION = 'v2_4_000'

GROUP_SOURCE_IDS = ('g:gsa',)
INTERNAL_SOURCE_IDS = ('g:isa',)

NOT_FOUND_RESULT_CODES = ('GROUP_NOT_FOUND', 'STEM_NOT_FOUND', 'SUBJECT_NOT_FOUND', 'INVALID_QUERY')


def _is_true(value: Any) -> bool:
    return str(value).upper() in ('T', 'TRUE')


class GrouperWsRegistry(SourceRegistry):
    """Read-only registry queries over Grouper WS."""

    def __init__(self, config: Dict[str, Any], executor: RemoteExecutor, subject_attribute_source=None):
        """
        Initialize the registry client.

        Args:
            config: ``grouper`` configuration (base_url, version, auth, verify_ssl,
                subject_attribute_names)
            executor: Executor used for every web service call
            subject_attribute_source: Optional LDAP source merged into person subjects
        """
        self.config = config
        self.executor = executor
        self.subject_attribute_source = subject_attribute_source
        self.subject_attribute_names = list(config.get('subject_attribute_names') or [])

        version = config.get('version', DEFAULT_WS_VERSION)
        self.client = JsonHttpClient({
            'name': 'grouper',
            'base_url': config['base_url'].rstrip('/') + '/' + version,
            'auth': config.get('auth') or {},
            'verify_ssl': config.get('verify_ssl', True),
            'ca_cert_file': config.get('ca_cert_file'),
            'timeout': config.get('timeout', 30),
        })

    def _call(self, endpoint: str, request_name: str, body: Dict[str, Any], results_name: str) -> Dict[str, Any]:
        """
        Issue one web service request and unwrap its results document.

        Returns:
            The results document ({} when the endpoint answered not found)

        Raises:
            SourceRegistryError: If the service reports an unsuccessful result
        """
        response = self.executor.execute(
            functools.partial(self.client.request, 'POST', endpoint, {request_name: body}),
            f"grouper {request_name}"
        )
        if response is None:
            return {}

        results = response.get(results_name) or {}
        metadata = results.get('resultMetadata') or {}

        if metadata and not _is_true(metadata.get('success', 'T')):
            result_code = metadata.get('resultCode')
            if result_code in NOT_FOUND_RESULT_CODES:
                logger.debug(f"{request_name} returned {result_code}")
                return {}
            raise SourceRegistryError(f"{request_name} failed: {result_code} "
                                      f"{metadata.get('resultMessage', '')}".strip())

        return results

    # Groups and stems

    def _to_group(self, data: Dict[str, Any]) -> SourceGroup:
        name = data.get('name', '')
        return SourceGroup(
            name=name,
            display_name=data.get('displayExtension') or data.get('extension') or '',
            description=data.get('description') or '',
            parent_name=parent_stem_name(name),
            uuid=data.get('uuid'),
        )

    def _to_stem(self, data: Dict[str, Any]) -> SourceStem:
        name = data.get('name', '')
        return SourceStem(
            name=name,
            display_name=data.get('displayExtension') or data.get('extension') or '',
            description=data.get('description') or '',
            parent_name=parent_stem_name(name),
            uuid=data.get('uuid'),
        )

    def _find_groups(self, query_filter: Dict[str, Any]) -> List[SourceGroup]:
        results = self._call('groups', 'WsRestFindGroupsRequest', {'wsQueryFilter': query_filter},
                             'WsFindGroupsResults')
        return [self._to_group(data) for data in results.get('groupResults') or []]

    def _find_stems(self, query_filter: Dict[str, Any]) -> List[SourceStem]:
        results = self._call('stems', 'WsRestFindStemsRequest', {'wsStemQueryFilter': query_filter},
                             'WsFindStemsResults')
        return [self._to_stem(data) for data in results.get('stemResults') or []]

    def find_group(self, name: str) -> Optional[SourceGroup]:
        groups = self._find_groups({'queryFilterType': 'FIND_BY_GROUP_NAME_EXACT', 'groupName': name})
        return groups[0] if groups else None

    def find_group_by_uuid(self, uuid: str) -> Optional[SourceGroup]:
        groups = self._find_groups({'queryFilterType': 'FIND_BY_GROUP_UUID', 'groupUuid': uuid})
        return groups[0] if groups else None

    def find_stem(self, name: str) -> Optional[SourceStem]:
        if name == ROOT_STEM_NAME:
            return SourceStem(name=ROOT_STEM_NAME, display_name='Root', parent_name=None)

        stems = self._find_stems({'stemQueryFilterType': 'FIND_BY_STEM_NAME', 'stemName': name})
        return stems[0] if stems else None

    def find_stem_by_uuid(self, uuid: str) -> Optional[SourceStem]:
        stems = self._find_stems({'stemQueryFilterType': 'FIND_BY_STEM_UUID', 'stemUuid': uuid})
        return stems[0] if stems else None

    def child_groups(self, stem_name: str) -> List[SourceGroup]:
        return self._find_groups({
            'queryFilterType': 'FIND_BY_STEM_NAME',
            'stemName': stem_name or ':',
            'stemNameScope': 'ALL_IN_SUBTREE',
        })

    # Subjects

    def _subject_type(self, source_id: str) -> str:
        if source_id in GROUP_SOURCE_IDS:
            return GROUP
        if source_id in INTERNAL_SOURCE_IDS:
            return 'application'
        return PERSON

    def _to_subject(self, data: Dict[str, Any], attribute_names: List[str]) -> SourceSubject:
        values = data.get('attributeValues') or []
        attributes = {name: value for name, value in zip(attribute_names, values) if value}

        subject = SourceSubject(
            id=data.get('id', ''),
            source_id=data.get('sourceId', ''),
            name=data.get('name') or '',
            subject_type=self._subject_type(data.get('sourceId', '')),
            attributes=attributes,
        )

        if self.subject_attribute_source is not None and subject.is_person:
            try:
                self.subject_attribute_source.enrich(subject)
            except SourceRegistryError as e:
                logger.warning(f"Could not load LDAP attributes for subject {subject.id}: {e}")

        return subject

    def find_subject(self, subject_id: str, source_id: str) -> Optional[SourceSubject]:
        body = {
            'wsSubjectLookups': [{'subjectId': subject_id, 'subjectSourceId': source_id}],
            'includeSubjectDetail': 'T',
        }
        if self.subject_attribute_names:
            body['subjectAttributeNames'] = self.subject_attribute_names

        results = self._call('subjects', 'WsRestGetSubjectsRequest', body, 'WsGetSubjectsResults')
        attribute_names = results.get('subjectAttributeNames') or []

        for data in results.get('wsSubjects') or []:
            if data.get('resultCode', 'SUCCESS') == 'SUCCESS' and _is_true(data.get('success', 'T')):
                return self._to_subject(data, attribute_names)

        return None

    def effective_members(self, group_name: str) -> List[SourceSubject]:
        body = {
            'wsGroupLookups': [{'groupName': group_name}],
            'memberFilter': 'All',
            'includeSubjectDetail': 'T',
        }
        if self.subject_attribute_names:
            body['subjectAttributeNames'] = self.subject_attribute_names

        results = self._call('groups', 'WsRestGetMembersRequest', body, 'WsGetMembersResults')
        attribute_names = results.get('subjectAttributeNames') or []

        members = []
        for group_result in results.get('results') or []:
            for data in group_result.get('wsSubjects') or []:
                members.append(self._to_subject(data, attribute_names))

        logger.debug(f"Group {group_name} has {len(members)} members in the registry")
        return members

    # Attributes

    def attribute_assignments(self, owner_name: str, owner_type: str, attribute_name: str) -> List[str]:
        body = {
            'attributeAssignType': owner_type,
            'wsAttributeDefNameLookups': [{'name': attribute_name}],
        }
        if owner_type == OWNER_GROUP:
            body['wsOwnerGroupLookups'] = [{'groupName': owner_name}]
        elif owner_type == OWNER_STEM:
            body['wsOwnerStemLookups'] = [{'stemName': owner_name or ':'}]
        else:
            raise ValueError(f"Unsupported owner type: {owner_type}")

        results = self._call('attributeAssignments', 'WsRestGetAttributeAssignmentsRequest', body,
                             'WsGetAttributeAssignmentsResults')
        return [assign.get('id') for assign in results.get('wsAttributeAssigns') or []]

    def owners_with_attribute(self, owner_type: str, attribute_name: str) -> List[str]:
        body = {
            'attributeAssignType': owner_type,
            'wsAttributeDefNameLookups': [{'name': attribute_name}],
        }
        results = self._call('attributeAssignments', 'WsRestGetAttributeAssignmentsRequest', body,
                             'WsGetAttributeAssignmentsResults')

        owner_key = 'ownerGroupName' if owner_type == OWNER_GROUP else 'ownerStemName'
        names = []
        for assign in results.get('wsAttributeAssigns') or []:
            name = assign.get(owner_key)
            if name is not None and name not in names:
                names.append(name)
        return names

    def find_attribute_def_name(self, name: str) -> Optional[AttributeDefName]:
        body = {'wsAttributeDefNameLookups': [{'name': name}]}
        results = self._call('attributeDefNames', 'WsRestFindAttributeDefNamesRequest', body,
                             'WsFindAttributeDefNamesResults')

        for data in results.get('attributeDefNameResults') or []:
            if data.get('name') == name:
                return AttributeDefName(uuid=data.get('uuid', ''), name=name)

        return None

    def close(self):
        self.client.close()
        if self.subject_attribute_source is not None:
            self.subject_attribute_source.disconnect()

"""
Address formatting for directory groups and users.

Group and subject identifier expressions are ``string.Template`` patterns. The
following placeholders are available:

* ``${groupName}``: full registry name, e.g. ``courses:math:algebra``
* ``${groupPath}``: registry name with ``:`` replaced by ``-``
* ``${groupExtension}``: last segment of the registry name
* ``${subjectId}``: subject identifier

The result is lower-cased, spaces become ``-``, and the configured domain is
appended when the expression does not produce a full address.
"""

import logging
from string import Template

logger = logging.getLogger(__name__)

DEFAULT_GROUP_EXPRESSION = '${groupPath}'
DEFAULT_SUBJECT_EXPRESSION = '${subjectId}'


class AddressFormatter:
    """Builds qualified directory addresses from registry names and subject ids."""

    def __init__(self, domain: str, group_expression: str = DEFAULT_GROUP_EXPRESSION,
                 subject_expression: str = DEFAULT_SUBJECT_EXPRESSION):
        self.domain = domain.strip().lstrip('@').lower()
        self.group_template = Template(group_expression)
        self.subject_template = Template(subject_expression)

    def qualify_group_address(self, group_name: str) -> str:
        local_part = self.group_template.safe_substitute(
            groupName=group_name,
            groupPath=group_name.replace(':', '-'),
            groupExtension=group_name.rsplit(':', 1)[-1],
        )
        return self._qualify(local_part)

    def qualify_subject_address(self, subject_id: str) -> str:
        return self._qualify(self.subject_template.safe_substitute(subjectId=subject_id))

    def _qualify(self, local_part: str) -> str:
        address = local_part.strip().replace(' ', '-').lower()
        if '@' in address:
            return address
        return f"{address}@{self.domain}"

"""
Microsoft Active Directory dialect.

AD exposes the DN as distinguishedName and the stable identifier as a binary
objectGUID in little-endian GUID layout.
"""

import uuid
import logging
from typing import List

from ldap_catalog_sync.vendors.base import LdapVendor

logger = logging.getLogger(__name__)


class ActiveDirectoryVendor(LdapVendor):
    """Active Directory and AD LDS."""

    name = 'activedirectory'
    dn_attribute_name = 'distinguishedName'
    uuid_attribute_name = 'objectGUID'

    @classmethod
    def matches(cls, root_dse):
        # Only AD domain controllers advertise a forest functional level
        return bool(root_dse.get('forestFunctionality'))

    def decode_string_attribute(self, entry, attribute_name: str) -> List[str]:
        if attribute_name != self.uuid_attribute_name:
            return super().decode_string_attribute(entry, attribute_name)

        decoded = []
        for raw in entry.get_raw(attribute_name):
            if len(raw) == 16:
                decoded.append(str(uuid.UUID(bytes_le=raw)))
            else:
                # Already formatted by the server schema, e.g. "{...}"
                decoded.append(raw.decode('utf-8', errors='replace').strip('{}').lower())
        if not decoded:
            logger.debug(f"No {attribute_name} on {entry.dn}")
        return decoded

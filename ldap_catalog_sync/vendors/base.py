"""
Base LDAP vendor interface.

Directory servers disagree on which attributes carry an entry's DN and its
stable UUID, and on how those are encoded. Each vendor module describes one
such dialect so the org reader can stay server agnostic.
"""

import logging
from abc import ABC
from typing import Dict, List, Any

logger = logging.getLogger(__name__)


class LdapVendor(ABC):
    """
    Abstract base class for LDAP server dialects.

    Subclasses set the attribute names and may override decoding for
    attributes that are not plain strings on the wire.
    """

    name = 'generic'
    dn_attribute_name = 'entryDN'
    uuid_attribute_name = 'entryUUID'

    @classmethod
    def matches(cls, root_dse: Dict[str, List[Any]]) -> bool:
        """
        Tell whether a server's root DSE belongs to this vendor.

        Args:
            root_dse: Root DSE attributes, as lists of values

        Returns:
            True if this dialect should be used for the server
        """
        return False

    def decode_string_attribute(self, entry, attribute_name: str) -> List[str]:
        """
        Read an attribute of a search entry as a list of strings.

        The DN attribute falls back to the entry's own DN, since many servers
        only return operational attributes when asked for them explicitly.

        Args:
            entry: SearchEntry returned by the LDAP client
            attribute_name: Attribute to read

        Returns:
            The attribute values, empty if absent
        """
        values = entry.get(attribute_name)
        if not values and attribute_name == self.dn_attribute_name:
            return [entry.dn]
        return values

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

"""
Default dialect for standards-following servers such as OpenLDAP and 389-ds.
"""

from ldap_catalog_sync.vendors.base import LdapVendor


class DefaultLdapVendor(LdapVendor):
    """RFC 4530 / RFC 5020 operational attributes."""

    name = 'default'
    dn_attribute_name = 'entryDN'
    uuid_attribute_name = 'entryUUID'

    @classmethod
    def matches(cls, root_dse):
        return True

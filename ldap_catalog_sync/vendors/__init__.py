"""
LDAP server dialects.
"""

from typing import Dict, List, Any

from ldap_catalog_sync.vendors.base import LdapVendor
from ldap_catalog_sync.vendors.active_directory import ActiveDirectoryVendor
from ldap_catalog_sync.vendors.default import DefaultLdapVendor

# Checked in order; the default dialect matches everything
VENDORS = [ActiveDirectoryVendor, DefaultLdapVendor]


def detect_vendor(root_dse: Dict[str, List[Any]]) -> LdapVendor:
    """Pick the dialect for a server from its root DSE attributes."""
    for vendor_class in VENDORS:
        if vendor_class.matches(root_dse):
            return vendor_class()
    return DefaultLdapVendor()


__all__ = ['LdapVendor', 'ActiveDirectoryVendor', 'DefaultLdapVendor', 'VENDORS', 'detect_vendor']

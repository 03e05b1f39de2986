"""
LDAP Catalog Sync - Periodically publish LDAP users and groups as catalog entities.

This package reads organizational data out of LDAP directories and pushes it
into a software catalog as a full-set replace mutation per provider instance.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"

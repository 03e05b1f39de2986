"""
Catalog entity shapes and well-known annotation keys.

Entities are plain dictionaries in the catalog's descriptor layout:
apiVersion, kind, metadata (name, annotations, ...) and spec.
"""

import re
from typing import Dict, Any

ENTITY_API_VERSION = 'catalog/v1alpha1'

LDAP_DN_ANNOTATION = 'ldap-dn'
LDAP_RDN_ANNOTATION = 'ldap-rdn'
LDAP_UUID_ANNOTATION = 'ldap-uuid'

LOCATION_ANNOTATION = 'location'
ORIGIN_LOCATION_ANNOTATION = 'origin-location'

DEFAULT_NAMESPACE = 'default'

_INVALID_NAME_CHARS = re.compile(r'[^A-Za-z0-9_.-]')


def normalize_entity_name(value: str) -> str:
    """Replace characters that are not allowed in entity names with '_'."""
    return _INVALID_NAME_CHARS.sub('_', value.strip())


def entity_ref(entity: Dict[str, Any]) -> str:
    """Build the "kind:namespace/name" reference that identifies an entity."""
    metadata = entity.get('metadata') or {}
    kind = str(entity.get('kind', '')).lower()
    namespace = metadata.get('namespace') or DEFAULT_NAMESPACE
    return f"{kind}:{namespace}/{metadata.get('name', '')}"


def set_path(target: Dict[str, Any], path: str, value: Any):
    """Set a value inside nested dictionaries using dot notation."""
    keys = path.split('.')
    current = target
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value

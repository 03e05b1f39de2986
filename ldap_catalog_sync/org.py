"""
Reading an organization (users and groups) out of LDAP.

Entries are turned into catalog entities by transformer functions with the
signature ``(vendor, config, entry) -> Optional[dict]``. Returning None drops
the entry. Group membership and group hierarchy are then resolved from the
memberOf / member attributes remembered while reading.
"""

import copy
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple, Any

from ldap_catalog_sync.config import UserConfig, GroupConfig
from ldap_catalog_sync.model import (
    ENTITY_API_VERSION,
    LDAP_DN_ANNOTATION,
    LDAP_RDN_ANNOTATION,
    LDAP_UUID_ANNOTATION,
    normalize_entity_name,
    set_path,
)
from ldap_catalog_sync.vendors import LdapVendor

logger = logging.getLogger(__name__)

Entity = Dict[str, Any]
UserTransformer = Callable[[LdapVendor, UserConfig, Any], Optional[Entity]]
GroupTransformer = Callable[[LdapVendor, GroupConfig, Any], Optional[Entity]]


def _first(vendor: LdapVendor, entry, attribute: Optional[str]) -> Optional[str]:
    if not attribute:
        return None
    values = vendor.decode_string_attribute(entry, attribute)
    return values[0] if values else None


def _all(vendor: LdapVendor, entry, attribute: Optional[str]) -> List[str]:
    if not attribute:
        return []
    return vendor.decode_string_attribute(entry, attribute)


def _apply_common(entity: Entity, vendor: LdapVendor, config, entry) -> Optional[Entity]:
    for path, value in config.set.items():
        set_path(entity, path, copy.deepcopy(value))

    mapping = config.map
    metadata = entity['metadata']
    annotations = metadata.setdefault('annotations', {})
    profile = entity['spec'].setdefault('profile', {})

    name = _first(vendor, entry, mapping.get('name'))
    if name:
        metadata['name'] = normalize_entity_name(name)

    description = _first(vendor, entry, mapping.get('description'))
    if description:
        metadata['description'] = description

    for annotation, attribute in ((LDAP_RDN_ANNOTATION, mapping.get('rdn')),
                                  (LDAP_UUID_ANNOTATION, vendor.uuid_attribute_name),
                                  (LDAP_DN_ANNOTATION, vendor.dn_attribute_name)):
        value = _first(vendor, entry, attribute)
        if value:
            annotations[annotation] = value

    for field_name, attribute in (('displayName', mapping.get('display_name')),
                                  ('email', mapping.get('email')),
                                  ('picture', mapping.get('picture'))):
        value = _first(vendor, entry, attribute)
        if value:
            profile[field_name] = value

    if not metadata.get('name'):
        logger.debug(f"Skipping {entry.dn}: no value for name attribute {mapping.get('name')}")
        return None
    return entity


def default_user_transformer(vendor: LdapVendor, config: UserConfig, entry) -> Optional[Entity]:
    """Map an LDAP person entry onto a User entity."""
    entity = {
        'apiVersion': ENTITY_API_VERSION,
        'kind': 'User',
        'metadata': {'name': '', 'annotations': {}},
        'spec': {'profile': {}, 'memberOf': []},
    }
    return _apply_common(entity, vendor, config, entry)


def default_group_transformer(vendor: LdapVendor, config: GroupConfig, entry) -> Optional[Entity]:
    """Map an LDAP group entry onto a Group entity."""
    entity = {
        'apiVersion': ENTITY_API_VERSION,
        'kind': 'Group',
        'metadata': {'name': '', 'annotations': {}},
        'spec': {'type': 'unknown', 'profile': {}, 'children': []},
    }
    group_type = _first(vendor, entry, config.map.get('type'))
    if group_type:
        entity['spec']['type'] = group_type
    return _apply_common(entity, vendor, config, entry)


def normalize_dn(dn: str) -> str:
    """Lower-case a DN and drop the whitespace around its RDN separators."""
    return ','.join(part.strip() for part in dn.split(',')).lower()


def _entity_key(entity: Entity, vendor: LdapVendor, entry) -> str:
    dn = (entity['metadata'].get('annotations') or {}).get(LDAP_DN_ANNOTATION) \
        or _first(vendor, entry, vendor.dn_attribute_name) or entry.dn
    return normalize_dn(dn)


def read_ldap_org(client, user_config: UserConfig, group_config: GroupConfig,
                  user_transformer: Optional[UserTransformer] = None,
                  group_transformer: Optional[GroupTransformer] = None,
                  logger: Optional[logging.Logger] = None) -> Tuple[List[Entity], List[Entity]]:
    """
    Read all users and groups of an organization.

    Args:
        client: Connected LdapClient
        user_config: Where and how to search for users
        group_config: Where and how to search for groups
        user_transformer: Entry to User entity function
        group_transformer: Entry to Group entity function
        logger: Logger to report through

    Returns:
        Tuple of (users, groups) with membership relations filled in
    """
    log = logger or logging.getLogger(__name__)
    user_transformer = user_transformer or default_user_transformer
    group_transformer = group_transformer or default_group_transformer

    vendor = client.get_vendor()

    users: Dict[str, Entity] = {}
    user_uuids: Dict[str, str] = {}
    user_member_of: Dict[str, List[str]] = {}
    for entry in client.search(user_config.dn, user_config.options):
        entity = user_transformer(vendor, user_config, entry)
        if not entity:
            continue
        key = _entity_key(entity, vendor, entry)
        users[key] = entity
        uuid = (entity['metadata'].get('annotations') or {}).get(LDAP_UUID_ANNOTATION)
        if uuid:
            user_uuids[uuid.lower()] = key
        user_member_of[key] = _all(vendor, entry, user_config.map.get('member_of'))

    groups: Dict[str, Entity] = {}
    group_uuids: Dict[str, str] = {}
    group_member_of: Dict[str, List[str]] = {}
    group_members: Dict[str, List[str]] = {}
    for entry in client.search(group_config.dn, group_config.options):
        entity = group_transformer(vendor, group_config, entry)
        if not entity:
            continue
        key = _entity_key(entity, vendor, entry)
        groups[key] = entity
        uuid = (entity['metadata'].get('annotations') or {}).get(LDAP_UUID_ANNOTATION)
        if uuid:
            group_uuids[uuid.lower()] = key
        group_member_of[key] = _all(vendor, entry, group_config.map.get('member_of'))
        group_members[key] = _all(vendor, entry, group_config.map.get('members'))

    log.debug(f"Resolving relations for {len(users)} users and {len(groups)} groups")
    resolve_relations(users, groups, user_member_of, group_member_of, group_members,
                      user_uuids=user_uuids, group_uuids=group_uuids)

    return list(users.values()), list(groups.values())


def resolve_relations(users: Dict[str, Entity], groups: Dict[str, Entity],
                      user_member_of: Dict[str, List[str]],
                      group_member_of: Dict[str, List[str]],
                      group_members: Dict[str, List[str]],
                      user_uuids: Optional[Dict[str, str]] = None,
                      group_uuids: Optional[Dict[str, str]] = None):
    """
    Fill in memberOf / members / parent / children on the given entities.

    All dictionaries are keyed by normalized DN. References may be DNs or
    vendor UUIDs; references to entries that were not read are ignored.
    Entities are updated in place.
    """
    user_uuids = user_uuids or {}
    group_uuids = group_uuids or {}

    def find(ref: str, by_dn: Dict[str, Entity], by_uuid: Dict[str, str]) -> Optional[str]:
        key = normalize_dn(ref)
        if key in by_dn:
            return key
        return by_uuid.get(ref.strip('{}').lower())

    member_of: Dict[str, Set[str]] = {key: set() for key in users}
    members: Dict[str, Set[str]] = {key: set() for key in groups}
    children: Dict[str, Set[str]] = {key: set() for key in groups}
    parents: Dict[str, Set[str]] = {key: set() for key in groups}

    def add_membership(user_key: str, group_key: str):
        member_of[user_key].add(group_key)
        members[group_key].add(user_key)

    def add_hierarchy(parent_key: str, child_key: str):
        if parent_key == child_key:
            return
        children[parent_key].add(child_key)
        parents[child_key].add(parent_key)

    for user_key, refs in user_member_of.items():
        for ref in refs:
            group_key = find(ref, groups, group_uuids)
            if group_key:
                add_membership(user_key, group_key)

    for group_key, refs in group_member_of.items():
        for ref in refs:
            parent_key = find(ref, groups, group_uuids)
            if parent_key:
                add_hierarchy(parent_key, group_key)

    for group_key, refs in group_members.items():
        for ref in refs:
            child_key = find(ref, groups, group_uuids)
            if child_key:
                add_hierarchy(group_key, child_key)
                continue
            user_key = find(ref, users, user_uuids)
            if user_key:
                add_membership(user_key, group_key)

    def names(keys: Set[str], entities: Dict[str, Entity]) -> List[str]:
        return sorted({entities[key]['metadata']['name'] for key in keys})

    for user_key, entity in users.items():
        entity.setdefault('spec', {})['memberOf'] = names(member_of[user_key], groups)

    for group_key, entity in groups.items():
        spec = entity.setdefault('spec', {})
        spec['children'] = names(children[group_key], groups)
        spec['members'] = names(members[group_key], users)
        parent_names = names(parents[group_key], groups)
        if parent_names:
            if len(parent_names) > 1:
                logger.warning(f"Group {entity['metadata']['name']} has several parents "
                               f"{parent_names}, using {parent_names[0]}")
            spec['parent'] = parent_names[0]

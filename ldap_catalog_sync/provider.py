"""
Entity provider that publishes LDAP users and groups to the catalog.

A provider is built once at startup, optionally scheduled, connected to the
catalog by its host, and from then on runs complete read cycles: read every
user and group, tag them with their location, and replace the provider's
whole entity set in the catalog with a single "full" mutation.
"""

import copy
import re
import time
import logging
from enum import Enum
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from ldap_catalog_sync.catalog import EntityProviderConnection
from ldap_catalog_sync.config import ConfigurationError, LdapProviderConfig, get_nested_value, read_ldap_config
from ldap_catalog_sync.ldap_client import LdapClient
from ldap_catalog_sync.logging_setup import scoped_logger
from ldap_catalog_sync.model import LDAP_DN_ANNOTATION, LOCATION_ANNOTATION, ORIGIN_LOCATION_ANNOTATION
from ldap_catalog_sync.org import GroupTransformer, UserTransformer, read_ldap_org
from ldap_catalog_sync.scheduler import TaskDefinition, TaskScheduler


CONFIG_KEY = 'ldap'
LEGACY_CONFIG_KEY = 'catalog.processors.ldap_org'

# Characters left alone when percent-encoding a URI component
URI_COMPONENT_SAFE = "!~*'()"


class ProviderError(Exception):
    """Base exception for entity provider errors."""
    pass


class ProviderUsageError(ProviderError):
    """The provider was driven in an order it does not support."""
    pass


class ProviderNotInitializedError(ProviderUsageError):
    """A read was requested before the provider was connected."""
    pass


class ProviderState(Enum):
    CONSTRUCTED = 'constructed'
    SCHEDULED = 'scheduled'
    CONNECTED = 'connected'


class LdapOrgEntityProvider:
    """
    Reads user and group entries out of an LDAP service and provides them as
    User and Group entities for the catalog.

    Either call read() at a cadence of your choosing after connect(), or use
    with_schedule() before connecting and let the scheduler do it.
    """

    @classmethod
    def from_config(cls, root_config: Dict[str, Any], id: str, target: str, logger: logging.Logger,
                    user_transformer: Optional[UserTransformer] = None,
                    group_transformer: Optional[GroupTransformer] = None) -> 'LdapOrgEntityProvider':
        """
        Create a provider for one of the configured LDAP targets.

        Args:
            root_config: The whole application configuration
            id: A unique, stable identifier for this provider, e.g. "production"
            target: Must exactly match the "target" of one "ldap.providers" entry
            logger: Parent logger; the provider logs through a child scoped to the target
            user_transformer: Turns a user entry into an entity
            group_transformer: Turns a group entry into an entity

        Raises:
            ConfigurationError: If there is no LDAP configuration or no entry for target
        """
        section = get_nested_value(root_config, CONFIG_KEY)
        if section is None:
            section = get_nested_value(root_config, LEGACY_CONFIG_KEY)
            if section is not None:
                logger.warning(f'The "{LEGACY_CONFIG_KEY}" configuration is deprecated, '
                               f'please move it to "{CONFIG_KEY}.providers"')
        if section is None:
            raise ConfigurationError('There is no LDAP configuration. Please add it as "ldap.providers".')

        provider = next((p for p in read_ldap_config(section) if p.target == target), None)
        if provider is None:
            raise ConfigurationError(
                f'There is no LDAP configuration that matches {target}. '
                f'Please add a configuration entry for it under "ldap.providers".'
            )

        return cls(
            id=id,
            provider=provider,
            logger=scoped_logger(logger, target),
            user_transformer=user_transformer,
            group_transformer=group_transformer,
        )

    def __init__(self, id: str, provider: LdapProviderConfig, logger: logging.Logger,
                 user_transformer: Optional[UserTransformer] = None,
                 group_transformer: Optional[GroupTransformer] = None):
        self.id = id
        self.provider = provider
        self.logger = logger
        self.user_transformer = user_transformer
        self.group_transformer = group_transformer

        self.state = ProviderState.CONSTRUCTED
        self.connection: Optional[EntityProviderConnection] = None
        self._schedule_fn: Optional[Callable[[], None]] = None

    def get_provider_name(self) -> str:
        return f"LdapOrgEntityProvider:{self.id}"

    @property
    def location_key(self) -> str:
        return f"ldap-org-provider:{self.id}"

    def connect(self, connection: EntityProviderConnection):
        """
        Attach the catalog connection and start the schedule, if any.

        The schedule is only registered here so that no task fires before
        there is somewhere to send mutations.
        """
        if self.state is ProviderState.CONNECTED:
            raise ProviderUsageError('You can only connect once')

        self.connection = connection
        self.state = ProviderState.CONNECTED
        if self._schedule_fn:
            self._schedule_fn()

    def with_schedule(self, scheduler: TaskScheduler, frequency: timedelta, timeout: timedelta,
                      initial_delay: Optional[timedelta] = None) -> 'LdapOrgEntityProvider':
        """
        Arrange for read() to run at a regular cadence.

        The task is handed to the scheduler when connect() is called, not
        before.

        Returns:
            This instance
        """
        if self._schedule_fn is not None:
            raise ProviderUsageError('You can only schedule once')
        if self.state is ProviderState.CONNECTED:
            raise ProviderUsageError('You can only schedule before connecting')

        def run_scheduled():
            try:
                self.read()
            except Exception as e:
                self.logger.error(f"Scheduled LDAP read failed: {e}", exc_info=True)

        def schedule():
            scheduler.schedule_task(TaskDefinition(
                id=self.get_task_id(),
                frequency=frequency,
                timeout=timeout,
                initial_delay=initial_delay,
                fn=run_scheduled,
            ))

        self._schedule_fn = schedule
        self.state = ProviderState.SCHEDULED
        return self

    def read(self):
        """
        Run one complete ingestion cycle.

        Errors are raised to the caller; only scheduled runs swallow them.

        Raises:
            ProviderNotInitializedError: If connect() has not been called
        """
        if self.connection is None:
            raise ProviderNotInitializedError('Not initialized')

        progress = ProgressTracker(self.logger)

        # New client for every cycle
        client = LdapClient.create(
            self.logger,
            self.provider.target,
            self.provider.bind,
            self.provider.tls,
        )
        try:
            users, groups = read_ldap_org(
                client,
                self.provider.users,
                self.provider.groups,
                user_transformer=self.user_transformer,
                group_transformer=self.group_transformer,
                logger=self.logger,
            )
        finally:
            client.disconnect()

        progress.mark_read_complete(users, groups)

        self.connection.apply_mutation({
            'type': 'full',
            'locationKey': self.location_key,
            'entities': [
                {'locationKey': self.location_key, 'entity': with_locations(self.id, entity)}
                for entity in users + groups
            ],
        })

        progress.mark_commit_complete()

    def get_task_id(self) -> str:
        return task_id_for(self.get_provider_name())


class ProgressTracker:
    """Times the read and commit phases of a cycle and logs them."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.summary = ''
        self.timestamp = time.monotonic()
        self.logger.info('Reading LDAP users and groups')

    def _lap(self) -> str:
        now = time.monotonic()
        elapsed = now - self.timestamp
        self.timestamp = now
        return f"{elapsed:.1f}"

    def mark_read_complete(self, users: List[Any], groups: List[Any]):
        self.summary = f"{len(users)} LDAP users and {len(groups)} LDAP groups"
        self.logger.info(f"Read {self.summary} in {self._lap()} seconds. Committing...")

    def mark_commit_complete(self):
        self.logger.info(f"Committed {self.summary} in {self._lap()} seconds.")


def task_id_for(provider_name: str) -> str:
    """
    Scheduler task id for a provider: "refresh_<name>" lower-cased, with
    anything outside [a-z0-9] replaced by "_".
    """
    return re.sub(r'[^a-z0-9]', '_', f"refresh_{provider_name}".lower())


def location_for(provider_id: str, entity: Dict[str, Any]) -> str:
    metadata = entity.get('metadata') or {}
    dn = (metadata.get('annotations') or {}).get(LDAP_DN_ANNOTATION) or metadata.get('name', '')
    return f"ldap://{provider_id}/{quote(dn, safe=URI_COMPONENT_SAFE)}"


def with_locations(provider_id: str, entity: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of entity whose location annotations point at its DN.

    Other annotations are kept as they are.
    """
    location = location_for(provider_id, entity)
    tagged = copy.deepcopy(entity)
    metadata = tagged.setdefault('metadata', {})
    annotations = dict(metadata.get('annotations') or {})
    annotations[LOCATION_ANNOTATION] = location
    annotations[ORIGIN_LOCATION_ANNOTATION] = location
    metadata['annotations'] = annotations
    return tagged

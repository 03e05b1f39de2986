"""
Connections to the catalog that receives entity mutations.

A mutation of type "full" carries the complete set of entities for the
location keys it covers. The catalog replaces whatever it held for those
keys, so entities that disappeared from LDAP are retired on the next cycle.
A top-level "locationKey" names a key that is covered even when the
mutation has no items for it, which is how an empty read clears a provider.
"""

import os
import json
import ssl
import time
import base64
import logging
import tempfile
from abc import ABC, abstractmethod
from http.client import HTTPSConnection, HTTPConnection
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, quote

import yaml

from ldap_catalog_sync.model import entity_ref

logger = logging.getLogger(__name__)

MUTATION_TYPES = ('full',)


class CatalogError(Exception):
    """Raised when a mutation cannot be applied."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CatalogUnavailableError(CatalogError):
    """Transient catalog failure that is worth retrying."""
    pass


def is_transient_status(status_code: Optional[int]) -> bool:
    """429 and 5xx responses are worth another attempt."""
    return status_code is not None and (status_code == 429 or 500 <= status_code < 600)


def _group_by_location(mutation: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    if mutation.get('locationKey'):
        grouped[mutation['locationKey']] = []
    for item in mutation.get('entities') or []:
        grouped.setdefault(item['locationKey'], []).append(item['entity'])
    return grouped


class EntityProviderConnection(ABC):
    """
    Where an entity provider sends its mutations.

    Subclasses implement _apply_full; validation of the mutation envelope is
    shared.
    """

    def apply_mutation(self, mutation: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a mutation.

        Args:
            mutation: {'type': 'full', 'locationKey': ...,
                       'entities': [{'locationKey': ..., 'entity': ...}]}
                The top-level locationKey is optional; when given, that key
                is replaced even if no item mentions it.

        Returns:
            Implementation specific summary of what changed

        Raises:
            CatalogError: If the mutation is malformed or cannot be applied
        """
        mutation_type = mutation.get('type')
        if mutation_type not in MUTATION_TYPES:
            raise CatalogError(f"Unsupported mutation type: {mutation_type!r}")
        location_key = mutation.get('locationKey')
        if location_key is not None and (not isinstance(location_key, str) or not location_key):
            raise CatalogError(f"Malformed mutation location key: {location_key!r}")
        for item in mutation.get('entities') or []:
            if not item.get('locationKey') or not isinstance(item.get('entity'), dict):
                raise CatalogError(f"Malformed mutation item: {item!r}")
        return self._apply_full(mutation)

    @abstractmethod
    def _apply_full(self, mutation: Dict[str, Any]) -> Dict[str, Any]:
        pass

    def close(self):
        """Release any resources held by the connection."""
        pass


class InMemoryCatalog(EntityProviderConnection):
    """Keeps entities in a dictionary; used for dry runs and tests."""

    def __init__(self):
        self.locations: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.mutations: List[Dict[str, Any]] = []

    def _apply_full(self, mutation):
        self.mutations.append(mutation)
        summary = {}
        for location_key, entities in _group_by_location(mutation).items():
            previous = self.locations.get(location_key, {})
            current = {entity_ref(entity): entity for entity in entities}
            added = len(current.keys() - previous.keys())
            removed = len(previous.keys() - current.keys())
            self.locations[location_key] = current
            summary[location_key] = {'added': added, 'removed': removed, 'total': len(current)}
            logger.info(f"{location_key}: {len(current)} entities ({added} added, {removed} removed)")
        return summary

    def entities(self, location_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entities currently held, optionally for a single location key."""
        if location_key is not None:
            return list(self.locations.get(location_key, {}).values())
        return [e for entities in self.locations.values() for e in entities.values()]


class FileCatalogConnection(EntityProviderConnection):
    """
    Writes each location key's entities as a multi-document YAML file.

    Files are replaced atomically so readers never see half a set.
    """

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path_for(self, location_key: str) -> str:
        safe_name = quote(location_key, safe='') + '.yaml'
        return os.path.join(self.directory, safe_name)

    def _apply_full(self, mutation):
        summary = {}
        for location_key, entities in _group_by_location(mutation).items():
            path = self.path_for(location_key)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    yaml.safe_dump_all(entities, f, sort_keys=False, allow_unicode=True)
                os.replace(tmp_path, path)
            except OSError as e:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise CatalogError(f"Failed to write {path}: {e}")
            summary[location_key] = {'total': len(entities), 'path': path}
            logger.info(f"Wrote {len(entities)} entities for {location_key} to {path}")
        return summary


class CatalogAPIConnection(EntityProviderConnection):
    """
    Sends mutations to a catalog REST API.

    Each location key is posted to <base_url>/locations/<key>/mutations as
    JSON. Connection errors, 429 and 5xx responses are retried.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize catalog API client.

        Args:
            config: The "catalog" configuration section
        """
        self.config = config
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.max_retries = config.get('max_retries', 3)
        self.retry_wait = config.get('retry_wait_seconds', 5)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for catalog {self.host}")
            return

        self.ssl_context = ssl.create_default_context()
        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
            except (OSError, ssl.SSLError) as e:
                raise CatalogError(f"Failed to load CA certificates {ca_cert_file}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
            else:
                logger.error("Basic auth configured for catalog but missing username or password")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
            else:
                logger.error("Token auth configured for catalog but missing token")

        elif auth_method:
            logger.warning(f"Unknown catalog authentication method '{auth_method}'")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the catalog API.

        Raises:
            CatalogUnavailableError: On connection errors and retryable statuses
            CatalogError: On any other failure
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            self.close()
            raise CatalogUnavailableError(f"Connection error to catalog {self.host}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status >= 400:
            message = f"HTTP {response.status}: {response.reason}"
            if is_transient_status(response.status):
                raise CatalogUnavailableError(message, status_code=response.status)
            raise CatalogError(message, status_code=response.status)

        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise CatalogError(f"Invalid JSON response from catalog: {e}")

    def post_mutation(self, location_key: str, entities: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Replace the entities of one location key, retrying transient failures.

        Raises:
            CatalogError: When the catalog rejects the mutation or stays
                unavailable for every attempt
        """
        path = f"locations/{quote(location_key, safe='')}/mutations"
        body = {'type': 'full', 'entities': entities}
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return self.request('POST', path, body)
            except CatalogUnavailableError as e:
                if attempt == attempts:
                    raise CatalogError(
                        f"Catalog mutation for {location_key} failed after {attempts} attempts: {e}",
                        status_code=e.status_code
                    ) from e
                logger.warning(f"Catalog mutation failed on attempt {attempt}/{attempts}: {e}. "
                               f"Retrying in {self.retry_wait}s")
                time.sleep(self.retry_wait)

    def _apply_full(self, mutation):
        summary = {}
        for location_key, entities in _group_by_location(mutation).items():
            summary[location_key] = self.post_mutation(location_key, entities)
            logger.info(f"Posted {len(entities)} entities for {location_key} to {self.host}")
        return summary

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing catalog connection: {e}")
            finally:
                self.connection = None


def create_catalog_connection(config: Dict[str, Any]) -> EntityProviderConnection:
    """
    Build the catalog connection described by the "catalog" config section.

    Args:
        config: Catalog configuration ('type' is memory, file or api)
    """
    catalog_type = config.get('type', 'memory')
    if catalog_type == 'api':
        return CatalogAPIConnection(config)
    if catalog_type == 'file':
        return FileCatalogConnection(config['directory'])
    if catalog_type == 'memory':
        return InMemoryCatalog()
    raise CatalogError(f"Unknown catalog type: {catalog_type}")

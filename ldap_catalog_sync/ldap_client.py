"""
LDAP client for connecting to and querying LDAP directories.

This module provides functionality to bind to LDAP servers, run searches and
detect which server dialect is on the other end.
"""

import ssl
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, BASE, LEVEL, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError

from ldap_catalog_sync.config import BindConfig, TlsConfig, SearchOptions
from ldap_catalog_sync.vendors import LdapVendor, detect_vendor

logger = logging.getLogger(__name__)

SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'sub': SUBTREE,
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


@dataclass
class SearchEntry:
    """
    A single entry returned by a search.

    Attribute names are matched case-insensitively, as LDAP does.
    """
    dn: str
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    raw_attributes: Dict[str, List[bytes]] = field(default_factory=dict)

    def get(self, name: str) -> List[str]:
        return _lookup(self.attributes, name)

    def get_raw(self, name: str) -> List[bytes]:
        return _lookup(self.raw_attributes, name)


def _lookup(mapping: Dict[str, list], name: str) -> list:
    if name in mapping:
        return list(mapping[name])
    lowered = name.lower()
    for key, values in mapping.items():
        if key.lower() == lowered:
            return list(values)
    return []


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _as_string(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def to_search_entry(item: Dict[str, Any]) -> SearchEntry:
    """Convert an ldap3 response item into a SearchEntry."""
    attributes = {
        name: [_as_string(v) for v in _as_list(values)]
        for name, values in (item.get('attributes') or {}).items()
    }
    raw_attributes = {
        name: [v if isinstance(v, bytes) else _as_string(v).encode('utf-8') for v in _as_list(values)]
        for name, values in (item.get('raw_attributes') or {}).items()
    }
    return SearchEntry(dn=str(item.get('dn', '')), attributes=attributes, raw_attributes=raw_attributes)


class LdapClient:
    """
    LDAP client for reading entries out of a single directory server.

    Instances are cheap; the entity provider creates a fresh one for every
    read cycle and disconnects it afterwards.
    """

    def __init__(self, target: str, bind: Optional[BindConfig] = None,
                 tls: Optional[TlsConfig] = None, logger: Optional[logging.Logger] = None,
                 max_retries: int = 3, retry_wait: float = 5,
                 connection_timeout: int = 10, receive_timeout: int = 10):
        """
        Initialize LDAP client.

        Args:
            target: LDAP URL, e.g. ldaps://ds.example.net
            bind: Credentials, anonymous when the DN is empty
            tls: Certificate verification settings
            logger: Logger to report through (module logger by default)
            max_retries: Connection attempts before giving up
            retry_wait: Seconds to wait between connection attempts
        """
        self.target = target
        self.bind = bind or BindConfig()
        self.tls = tls or TlsConfig()
        self.logger = logger or logging.getLogger(__name__)

        self.use_ssl = target.lower().startswith('ldaps://')
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self.connection_timeout = connection_timeout
        self.receive_timeout = receive_timeout

        self.server = None
        self.connection = None
        self._connected = False

    @classmethod
    def create(cls, logger: logging.Logger, target: str, bind: Optional[BindConfig] = None,
               tls: Optional[TlsConfig] = None, **kwargs) -> 'LdapClient':
        """
        Create a client and bind it to the server.

        Raises:
            LDAPConnectionError: If the server cannot be reached or bind fails
        """
        client = cls(target, bind, tls, logger=logger, **kwargs)
        client.connect()
        return client

    def connect(self) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.target,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(self.max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind.dn or None,
                    password=self.bind.secret or None,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                self.connection.open()
                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                self.logger.debug(f"Connected and bound to LDAP server {self.target}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                self.logger.warning(f"LDAP connection attempt {attempt + 1}/{self.max_retries} failed: {e}")
                self._drop_connection()
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_wait)
            except Exception as e:
                last_exception = e
                self.logger.error(f"Unexpected error during LDAP connection: {e}")
                self._drop_connection()
                break

        error_msg = f"Failed to connect to LDAP {self.target} after {self.max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAPS connections.

        Returns:
            Tls configuration object or None for plain LDAP
        """
        if not self.use_ssl:
            return None

        tls_config = {}
        if self.tls.reject_unauthorized:
            tls_config['validate'] = ssl.CERT_REQUIRED
        else:
            tls_config['validate'] = ssl.CERT_NONE
            self.logger.warning("SSL certificate verification disabled")

        if self.tls.ca_cert_file:
            tls_config['ca_certs_file'] = self.tls.ca_cert_file

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                self.logger.debug(f"Ignoring unbind failure: {e}")
            self.connection = None

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                self.logger.debug("LDAP connection closed")
            except Exception as e:
                self.logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, dn: str, options: SearchOptions) -> List[SearchEntry]:
        """
        Run a search and return every matching entry.

        Args:
            dn: Search base
            options: Scope, filter, attributes and paging

        Returns:
            The matching entries

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        scope = SCOPES.get(options.scope)
        if scope is None:
            raise LDAPQueryError(f"Invalid search scope: {options.scope}")

        self.logger.debug(f"Searching {dn} with filter {options.filter} (scope={options.scope}, paged={options.paged})")

        try:
            if options.paged:
                response = self.connection.extend.standard.paged_search(
                    search_base=dn,
                    search_filter=options.filter,
                    search_scope=scope,
                    attributes=list(options.attributes),
                    paged_size=options.page_size,
                    generator=False
                )
            else:
                # search() reports True whenever entries came back, even on a partial result
                self.connection.search(
                    search_base=dn,
                    search_filter=options.filter,
                    search_scope=scope,
                    attributes=list(options.attributes)
                )
                response = self.connection.response
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search of {dn} failed: {e}")

        result = self.connection.result or {}
        if result.get('result', 0) != 0:
            raise LDAPQueryError(
                f"Search of {dn} failed with result {result.get('result')} ({result.get('description', 'unknown')})"
            )

        entries = [to_search_entry(item) for item in (response or []) if item.get('type') == 'searchResEntry']
        self.logger.debug(f"Retrieved {len(entries)} entries from {dn}")
        return entries

    def get_root_dse(self) -> Dict[str, List[Any]]:
        """Root DSE attributes as read when the server was contacted."""
        if not self.server or not self.server.info:
            return {}
        return dict(getattr(self.server.info, 'other', None) or {})

    def get_vendor(self) -> LdapVendor:
        """Work out which server dialect this client talks to."""
        vendor = detect_vendor(self.get_root_dse())
        self.logger.debug(f"Detected LDAP vendor {vendor.name} for {self.target}")
        return vendor

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

"""
Configuration loading and management for LDAP Catalog Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and resolves the typed LDAP provider settings used by
the entity providers.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Search scopes accepted in the "options.scope" field
SEARCH_SCOPES = ('base', 'one', 'sub')

DEFAULT_USER_MAP = {
    'rdn': 'uid',
    'name': 'uid',
    'description': 'description',
    'display_name': 'cn',
    'email': 'mail',
    'picture': None,
    'member_of': 'memberOf',
}

DEFAULT_GROUP_MAP = {
    'rdn': 'cn',
    'name': 'cn',
    'description': 'description',
    'type': 'groupType',
    'display_name': 'cn',
    'email': None,
    'picture': None,
    'member_of': 'memberOf',
    'members': 'member',
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class BindConfig:
    dn: str = ''
    secret: str = ''


@dataclass(frozen=True)
class TlsConfig:
    reject_unauthorized: bool = True
    ca_cert_file: Optional[str] = None


@dataclass(frozen=True)
class SearchOptions:
    """How a single search is performed against the directory."""
    scope: str = 'one'
    filter: str = '(objectClass=*)'
    attributes: Tuple[str, ...] = ('*', '+')
    paged: bool = False
    page_size: int = 500


@dataclass(frozen=True)
class UserConfig:
    dn: str
    options: SearchOptions = field(default_factory=SearchOptions)
    set: Dict[str, Any] = field(default_factory=dict)
    map: Dict[str, Optional[str]] = field(default_factory=lambda: dict(DEFAULT_USER_MAP))


@dataclass(frozen=True)
class GroupConfig:
    dn: str
    options: SearchOptions = field(default_factory=SearchOptions)
    set: Dict[str, Any] = field(default_factory=dict)
    map: Dict[str, Optional[str]] = field(default_factory=lambda: dict(DEFAULT_GROUP_MAP))


@dataclass(frozen=True)
class LdapProviderConfig:
    """Everything needed to read one LDAP target."""
    target: str
    bind: BindConfig
    users: UserConfig
    groups: GroupConfig
    tls: TlsConfig = field(default_factory=TlsConfig)
    id: Optional[str] = None


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'catalog.auth.token': 'CATALOG_TOKEN',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        # Shared bind secret for providers that do not carry their own
        bind_secret = os.getenv('LDAP_BIND_SECRET')
        if bind_secret:
            for provider in _provider_entries(self.config):
                bind = provider.setdefault('bind', {})
                if not bind.get('secret'):
                    bind['secret'] = bind_secret
                    logger.debug(f"Applied LDAP_BIND_SECRET for {provider.get('target')}")

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        section = get_nested_value(self.config, 'ldap')
        if section is None:
            section = get_nested_value(self.config, 'catalog.processors.ldap_org')
        if section is None:
            errors.append('Missing "ldap.providers" section')
        else:
            providers = section.get('providers') if isinstance(section, dict) else None
            if not providers:
                errors.append('At least one LDAP provider must be configured under "ldap.providers"')
            else:
                for i, provider in enumerate(providers):
                    errors.extend(_provider_errors(provider, f"ldap.providers[{i}]"))
                errors.extend(_duplicate_target_errors(providers, "ldap.providers"))

        catalog_type = (self.config.get('catalog') or {}).get('type', 'memory')
        if catalog_type not in ('memory', 'file', 'api'):
            errors.append(f"Unknown catalog type: {catalog_type}")
        elif catalog_type == 'api' and not self.config['catalog'].get('base_url'):
            errors.append("Missing catalog.base_url for api catalog")
        elif catalog_type == 'file' and not self.config['catalog'].get('directory'):
            errors.append("Missing catalog.directory for file catalog")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        schedule_defaults = {
            'frequency': {'minutes': 60},
            'timeout': {'minutes': 15},
            'initial_delay': {'seconds': 15},
        }
        schedule_config = self.config.setdefault('schedule', {})
        for key, value in schedule_defaults.items():
            schedule_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        catalog_config = self.config.setdefault('catalog', {})
        catalog_config.setdefault('type', 'memory')
        catalog_config.setdefault('verify_ssl', True)


def _provider_entries(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    section = get_nested_value(config, 'ldap') or get_nested_value(config, 'catalog.processors.ldap_org') or {}
    providers = section.get('providers') if isinstance(section, dict) else None
    return [p for p in (providers or []) if isinstance(p, dict)]


def _provider_errors(provider: Any, prefix: str) -> List[str]:
    if not isinstance(provider, dict):
        return [f"{prefix} must be a mapping"]

    errors = []
    if not provider.get('target'):
        errors.append(f"Missing required field {prefix}.target")
    for kind in ('users', 'groups'):
        if not (provider.get(kind) or {}).get('dn'):
            errors.append(f"Missing required field {prefix}.{kind}.dn")
        scope = ((provider.get(kind) or {}).get('options') or {}).get('scope', 'one')
        if scope not in SEARCH_SCOPES:
            errors.append(f"Invalid search scope '{scope}' for {prefix}.{kind}")
    return errors


def _duplicate_target_errors(providers: List[Any], prefix: str) -> List[str]:
    seen = {}
    errors = []
    for i, provider in enumerate(providers):
        target = provider.get('target') if isinstance(provider, dict) else None
        if not target:
            continue
        if target in seen:
            errors.append(f"{prefix}[{i}].target duplicates {prefix}[{seen[target]}].target ({target})")
        else:
            seen[target] = i
    return errors


def get_nested_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """Get a nested configuration value using dot notation."""
    current = config
    for key in key_path.split('.'):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def set_nested_value(config: Dict, key_path: str, value: Any):
    """Set a nested configuration value using dot notation."""
    keys = key_path.split('.')
    current = config
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _read_options(raw: Optional[Dict[str, Any]]) -> SearchOptions:
    raw = raw or {}
    defaults = SearchOptions()
    attributes = raw.get('attributes', defaults.attributes)
    if isinstance(attributes, str):
        attributes = [attributes]
    return SearchOptions(
        scope=raw.get('scope', defaults.scope),
        filter=raw.get('filter', defaults.filter),
        attributes=tuple(attributes),
        paged=bool(raw.get('paged', defaults.paged)),
        page_size=int(raw.get('page_size', defaults.page_size)),
    )


def read_ldap_config(section: Dict[str, Any]) -> List[LdapProviderConfig]:
    """
    Parse the "providers" list of an LDAP configuration section.

    Args:
        section: The mapping found under the "ldap" key (or its legacy alias)

    Returns:
        One LdapProviderConfig per configured provider

    Raises:
        ConfigurationError: If a provider entry is incomplete or two entries
            share a target
    """
    providers = section.get('providers') or []
    duplicates = _duplicate_target_errors(providers, "providers")
    if duplicates:
        raise ConfigurationError("Invalid LDAP provider configuration:\n" + "\n".join(f"  - {error}" for error in duplicates))
    result = []

    for i, raw in enumerate(providers):
        errors = _provider_errors(raw, f"providers[{i}]")
        if errors:
            raise ConfigurationError("Invalid LDAP provider configuration:\n" + "\n".join(f"  - {error}" for error in errors))

        bind = raw.get('bind') or {}
        tls = raw.get('tls') or {}
        users = raw['users']
        groups = raw['groups']

        result.append(LdapProviderConfig(
            id=raw.get('id'),
            target=raw['target'],
            bind=BindConfig(dn=bind.get('dn', ''), secret=bind.get('secret', '')),
            tls=TlsConfig(
                reject_unauthorized=tls.get('reject_unauthorized', True),
                ca_cert_file=tls.get('ca_cert_file'),
            ),
            users=UserConfig(
                dn=users['dn'],
                options=_read_options(users.get('options')),
                set=dict(users.get('set') or {}),
                map={**DEFAULT_USER_MAP, **(users.get('map') or {})},
            ),
            groups=GroupConfig(
                dn=groups['dn'],
                options=_read_options(groups.get('options')),
                set=dict(groups.get('set') or {}),
                map={**DEFAULT_GROUP_MAP, **(groups.get('map') or {})},
            ),
        ))

    return result


def parse_duration(value: Any, name: str = 'duration') -> Optional[timedelta]:
    """
    Convert a duration mapping such as {'minutes': 5} into a timedelta.

    Plain numbers are read as seconds. None stays None.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, dict):
        try:
            return timedelta(**value)
        except TypeError as e:
            raise ConfigurationError(f"Invalid {name} {value!r}: {e}")
    raise ConfigurationError(f"Invalid {name} {value!r}: expected a mapping or number of seconds")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()

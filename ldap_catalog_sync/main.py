"""
Command line entry point for LDAP Catalog Sync.

Builds one entity provider per configured LDAP target, connects them to the
catalog, and either runs a single read cycle or keeps them on a schedule
until the process is told to stop.
"""

import sys
import json
import signal
import logging
import threading
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_catalog_sync.catalog import CatalogError, EntityProviderConnection, InMemoryCatalog, create_catalog_connection
from ldap_catalog_sync.config import ConfigurationError, get_nested_value, load_config, parse_duration
from ldap_catalog_sync.ldap_client import LdapClient, LDAPConnectionError
from ldap_catalog_sync.logging_setup import setup_logging
from ldap_catalog_sync.provider import CONFIG_KEY, LEGACY_CONFIG_KEY, LdapOrgEntityProvider
from ldap_catalog_sync.scheduler import APSchedulerTaskScheduler

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Wires configuration, providers, catalog and scheduler together.
    """

    def __init__(self, config_path: Optional[str] = None, target: Optional[str] = None,
                 dry_run: bool = False):
        """
        Initialize sync runner.

        Args:
            config_path: Path to configuration file
            target: Only handle the provider with this LDAP target
            dry_run: Keep mutations in memory instead of sending them to the catalog
        """
        self.config_path = config_path
        self.target = target
        self.dry_run = dry_run

        self.config = None
        self.catalog: Optional[EntityProviderConnection] = None
        self.scheduler: Optional[APSchedulerTaskScheduler] = None
        self.providers: List[LdapOrgEntityProvider] = []
        self._stop = threading.Event()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _provider_entries(self) -> List[Dict[str, Any]]:
        section = get_nested_value(self.config, CONFIG_KEY)
        if section is None:
            section = get_nested_value(self.config, LEGACY_CONFIG_KEY) or {}
        entries = section.get('providers') or []
        if self.target:
            entries = [entry for entry in entries if entry.get('target') == self.target]
            if not entries:
                raise ConfigurationError(f"No LDAP provider configured for target {self.target}")
        return entries

    def _create_providers(self):
        """Build one provider per configured LDAP target."""
        self.providers = []
        for i, entry in enumerate(self._provider_entries()):
            provider_id = entry.get('id') or f"provider-{i}"
            self.providers.append(LdapOrgEntityProvider.from_config(
                self.config,
                id=provider_id,
                target=entry['target'],
                logger=logger,
            ))
        logger.info(f"Created {len(self.providers)} LDAP entity provider(s)")

    def _create_catalog(self):
        if self.dry_run:
            logger.info("Dry run: mutations are kept in memory")
            self.catalog = InMemoryCatalog()
        else:
            self.catalog = create_catalog_connection(self.config.get('catalog') or {})

    def _setup(self):
        self._load_configuration()
        setup_logging(self.config.get('logging', {}))
        self._create_catalog()
        self._create_providers()

    def run_once(self) -> int:
        """
        Run a single read cycle for every provider.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._setup()
            for provider in self.providers:
                provider.connect(self.catalog)
                provider.read()
            logger.info("Sync completed successfully")
            return 0
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def run_scheduled(self) -> int:
        """
        Schedule every provider and block until stopped.

        Returns:
            Exit code (0 on clean shutdown)
        """
        try:
            self._setup()
            schedule = self.config.get('schedule', {})
            frequency = parse_duration(schedule.get('frequency'), 'schedule.frequency')
            timeout = parse_duration(schedule.get('timeout'), 'schedule.timeout')
            initial_delay = parse_duration(schedule.get('initial_delay'), 'schedule.initial_delay')
            if frequency is None or timeout is None:
                raise ConfigurationError("schedule.frequency and schedule.timeout are required")

            self.scheduler = APSchedulerTaskScheduler()
            for provider in self.providers:
                provider.with_schedule(
                    scheduler=self.scheduler,
                    frequency=frequency,
                    timeout=timeout,
                    initial_delay=initial_delay,
                ).connect(self.catalog)

            self.scheduler.start()
            self._install_signal_handlers()
            logger.info(f"Running {len(self.providers)} provider(s) every {frequency}")
            self._stop.wait()
            return 0
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def stop(self):
        self._stop.set()

    def _install_signal_handlers(self):
        def handle(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        signal.signal(signal.SIGINT, handle)
        signal.signal(signal.SIGTERM, handle)

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            self._create_providers()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        ldap_checks = {}
        for provider in self.providers:
            config = provider.provider
            try:
                client = LdapClient(config.target, config.bind, config.tls, max_retries=1, retry_wait=1)
                client.connect()
                vendor = client.get_vendor()
                client.disconnect()
                ldap_checks[config.target] = {
                    'status': 'pass',
                    'message': f'LDAP bind successful ({vendor.name})'
                }
            except Exception as e:
                ldap_checks[config.target] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'
        health_status['checks']['ldap'] = ldap_checks

        try:
            create_catalog_connection(self.config.get('catalog') or {}).close()
            health_status['checks']['catalog'] = {'status': 'pass', 'message': 'Catalog configuration valid'}
        except (CatalogError, OSError, KeyError) as e:
            health_status['checks']['catalog'] = {'status': 'fail', 'message': f'Catalog configuration invalid: {e}'}
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self.catalog:
            self.catalog.close()


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Publish LDAP users and groups to the catalog')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--target', '-t', help='Only sync the provider with this LDAP target')
    parser.add_argument('--once', action='store_true',
                        help='Run a single sync cycle and exit')
    parser.add_argument('--dry-run', action='store_true',
                        help='Keep mutations in memory instead of sending them to the catalog')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args(argv)

    runner = SyncRunner(config_path=args.config, target=args.target, dry_run=args.dry_run)

    if args.health_check:
        health_status = runner.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.once:
        sys.exit(runner.run_once())

    sys.exit(runner.run_scheduled())


if __name__ == "__main__":
    main()

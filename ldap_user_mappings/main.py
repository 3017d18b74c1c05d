"""
Command line host for LDAP User Mappings.

Wires configuration, settings store, field catalog and directory client
together for administering the mapping and running attribute resolution.
"""

import sys
import json
import sqlite3
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

import yaml

from ldap_user_mappings.config import load_config, ConfigurationError
from ldap_user_mappings.catalog import StaticFieldCatalog, SQLFieldCatalog, FieldCatalogError
from ldap_user_mappings.settings_store import YamlSettingsStore, SettingsStoreError
from ldap_user_mappings.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_user_mappings.logging_setup import setup_logging
from ldap_user_mappings.mappings import LDAPUserMappings, AttributeResolutionError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_RESOLUTION_ERROR = 4
EXIT_UNEXPECTED_ERROR = 5


class MappingApp:
    """
    Host application for the mapping adapter.

    Each command loads configuration, builds the collaborators and returns an
    exit code.
    """

    def __init__(self, config_path: Optional[str] = None, out=None):
        self.config_path = config_path
        self.config = None
        self.out = out or sys.stdout
        self._catalog_connection = None

    def _load_configuration(self):
        self.config = load_config(self.config_path)
        setup_logging(self.config.get('logging', {}))

    def _create_field_catalog(self):
        catalog_config = self.config['field_catalog']
        if catalog_config.get('database'):
            database = catalog_config['database']
            try:
                # mode=rw refuses to create a missing database
                self._catalog_connection = sqlite3.connect(f"file:{database}?mode=rw", uri=True)
            except sqlite3.Error as e:
                raise FieldCatalogError(f"Cannot open field catalog database {database}: {e}")
            return SQLFieldCatalog(
                self._catalog_connection,
                table=catalog_config.get('table', 'usermeta'),
                column=catalog_config.get('column', 'meta_key')
            )
        return StaticFieldCatalog(catalog_config.get('fields', []))

    def _create_mappings(self) -> LDAPUserMappings:
        settings_store = YamlSettingsStore(self.config['settings_store']['path'])
        return LDAPUserMappings.from_config(
            self.config.get('mappings', {}),
            settings_store,
            self._create_field_catalog()
        )

    def _create_ldap_client(self) -> LDAPClient:
        if not self.config.get('ldap'):
            raise ConfigurationError("An ldap section is required for this command")
        return LDAPClient(self.config['ldap'])

    def _run(self, command) -> int:
        try:
            self._load_configuration()
            return command()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._report(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._report(f"LDAP connection error: {e}")
            return EXIT_LDAP_ERROR
        except AttributeResolutionError as e:
            logger.error(f"Attribute resolution error: {e}")
            self._report(f"Attribute resolution error: {e}")
            return EXIT_RESOLUTION_ERROR
        except (LDAPQueryError, SettingsStoreError, FieldCatalogError) as e:
            logger.error(f"Error: {e}")
            self._report(f"Error: {e}")
            return EXIT_UNEXPECTED_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._report(f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _report(self, message: str):
        print(message, file=sys.stderr)

    def show(self) -> int:
        """Print the current mapping configuration."""
        def command():
            mappings = self._create_mappings()
            config = mappings.load_mapping()
            data = {name: mapping.to_dict() for name, mapping in config.items()}
            yaml.safe_dump(data, self.out, default_flow_style=False, sort_keys=False)
            return EXIT_OK
        return self._run(command)

    def apply(self, form_path: str) -> int:
        """Apply form input from a YAML file and save the mapping."""
        def command():
            try:
                with open(form_path, 'r') as f:
                    form_input = yaml.safe_load(f)
            except FileNotFoundError:
                raise ConfigurationError(f"Form input file not found: {form_path}")
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in form input file: {e}")

            mappings = self._create_mappings()
            config = mappings.apply_submitted_mapping(mappings.load_mapping(), form_input or {})
            mappings.persist(config)
            configured = sum(1 for mapping in config.values() if mapping.ldap_attr)
            print(f"Saved mapping: {configured} of {len(config)} fields mapped", file=self.out)
            return EXIT_OK
        return self._run(command)

    def resolve(self, username: str) -> int:
        """Resolve mapped attributes for a directory user and print them as JSON."""
        def command():
            mappings = self._create_mappings()
            config = mappings.load_mapping()
            with self._create_ldap_client() as client:
                client.connect()
                base_dn, base_results = client.find_user(username)
                if not base_results:
                    logger.warning(f"User {username} not found under {base_dn}")
                userdata = mappings.resolve_attributes(client, base_dn, base_results, config)
            json.dump(userdata, self.out, indent=2, sort_keys=True)
            print(file=self.out)
            return EXIT_OK
        return self._run(command)

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, settings store, field catalog and LDAP connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def fail(check, message):
            health_status['checks'][check] = {'status': 'fail', 'message': message}
            health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            fail('configuration', f'Configuration error: {e}')
            return health_status

        try:
            mappings = self._create_mappings()
            config = mappings.load_mapping()
            health_status['checks']['mappings'] = {
                'status': 'pass',
                'message': f'{len(config)} field mappings loaded'
            }
        except (SettingsStoreError, FieldCatalogError, sqlite3.Error) as e:
            fail('mappings', f'Mapping load failed: {e}')
        finally:
            self._cleanup()

        if self.config.get('ldap'):
            try:
                with LDAPClient(self.config['ldap']) as client:
                    client.connect()
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            except LDAPConnectionError as e:
                fail('ldap', f'LDAP connection failed: {e}')
        else:
            health_status['checks']['ldap'] = {
                'status': 'skip',
                'message': 'LDAP not configured'
            }

        return health_status

    def _cleanup(self):
        if self._catalog_connection is not None:
            self._catalog_connection.close()
            self._catalog_connection = None


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='LDAP User Mappings administration')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('show', help='Print the current field mappings')
    apply_parser = subparsers.add_parser('apply', help='Apply form input and save the field mappings')
    apply_parser.add_argument('form', help='YAML file of form field names and values')
    resolve_parser = subparsers.add_parser('resolve', help='Resolve mapped attributes for a user')
    resolve_parser.add_argument('username', help='Login name of the directory user')
    subparsers.add_parser('health-check', help='Check configuration and connectivity')

    args = parser.parse_args()
    app = MappingApp(config_path=args.config)

    if args.command == 'show':
        sys.exit(app.show())
    elif args.command == 'apply':
        sys.exit(app.apply(args.form))
    elif args.command == 'resolve':
        sys.exit(app.resolve(args.username))
    else:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)


if __name__ == "__main__":
    main()

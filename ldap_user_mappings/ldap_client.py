"""
LDAP client for connecting to and searching LDAP directories.

This module provides the directory capability used for attribute resolution:
connection handling over ldap3 and a small search result wrapper.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Tuple, Mapping

from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class DirectorySearchResult:
    """
    Entries returned by a directory search.

    Each entry is a mapping of attribute name to a list of values. Attribute
    names are matched case-insensitively.
    """

    def __init__(self, entries: Optional[List[Dict[str, Any]]] = None):
        self.entries = []
        for entry in entries or []:
            self.entries.append({str(name).lower(): values for name, values in entry.items()})

    @classmethod
    def coerce(cls, results) -> 'DirectorySearchResult':
        """
        Wrap raw search results.

        Args:
            results: A DirectorySearchResult, a list of attribute dicts, or ldap3 entries

        Returns:
            DirectorySearchResult instance
        """
        if isinstance(results, cls):
            return results
        if not results:
            return cls()
        if isinstance(results, Mapping):
            return cls([results])

        entries = []
        for entry in results:
            if hasattr(entry, 'entry_attributes_as_dict'):
                attributes = dict(entry.entry_attributes_as_dict)
                attributes.setdefault('dn', [str(entry.entry_dn)])
                entries.append(attributes)
            elif isinstance(entry, Mapping):
                entries.append(entry)
        return cls(entries)

    @property
    def dn(self) -> Optional[str]:
        """DN of the first entry, if known."""
        return self.first_value('dn')

    def first_value(self, attr_name: str) -> Optional[str]:
        """
        Get the first value of an attribute in the first entry.

        Returns:
            The value as a string, or None if the attribute is not present
        """
        if not self.entries or not attr_name:
            return None

        values = self.entries[0].get(attr_name.strip().lower())
        if values is None:
            return None
        if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
            values = [values]
        if not values or values[0] is None:
            return None

        value = values[0]
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)

    def __len__(self):
        return len(self.entries)

    def __bool__(self):
        return bool(self.entries)


class LDAPClient:
    """
    LDAP client for searching LDAP directories.

    Supports LDAPS and StartTLS. Connections are attempted once; callers decide
    how to handle a failure.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.login_attribute = config.get('login_attribute', 'uid')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Establish and bind a connection to the LDAP server.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the connection or bind fails
        """
        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            if not self.connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")

        except (LDAPConnectionError, LDAPException) as e:
            self._discard_connection()
            raise LDAPConnectionError(f"Failed to connect to LDAP server {self.server_url}: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error discarding failed connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, base_dn: str, search_filter: str,
               attributes: Optional[List[str]] = None) -> DirectorySearchResult:
        """
        Search a subtree of the directory.

        Args:
            base_dn: Search base
            search_filter: LDAP filter, with or without enclosing parentheses
            attributes: Attributes to return (all user attributes if None)

        Returns:
            DirectorySearchResult with the matching entries

        Raises:
            LDAPQueryError: If not connected or the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        if not search_filter.startswith('('):
            search_filter = f"({search_filter})"

        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")
        try:
            success = self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes or ALL_ATTRIBUTES
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search failed: {e}")

        if not success:
            result = self.connection.result or {}
            # noSuchObject and empty result sets are not failures
            if result.get('result') in (0, 32):
                return DirectorySearchResult()
            raise LDAPQueryError(f"Search failed: {result}")

        results = DirectorySearchResult.coerce(self.connection.entries)
        logger.debug(f"Search returned {len(results)} entries")
        return results

    def find_user(self, username: str) -> Tuple[str, DirectorySearchResult]:
        """
        Run the base search for a user by login name.

        Args:
            username: Value of the login attribute

        Returns:
            Tuple of (search base DN, search results)
        """
        search_filter = f"(&{self.user_filter}({self.login_attribute}={escape_filter_chars(username)}))"
        base_dn = self.user_base_dn or self._get_domain_base()
        return base_dn, self.search(base_dn, search_filter)

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if self.bind_dn and 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine search base DN")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

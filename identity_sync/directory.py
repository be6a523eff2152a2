"""
Directory client for connecting to and querying LDAP directories.

This module defines the directory capability the reconciliation engine relies
on (connect, search, authenticate, disconnect) and an implementation of it
over ldap3.
"""

import logging
import ssl
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, BASE, SUBTREE, NONE, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from identity_sync.retry import retry_call, is_retryable_error, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

# Simple paged results control (RFC 2696)
PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Attributes kept as lists when flattening a raw record
MULTI_VALUED_ATTRIBUTES = {'memberOf'}


class DirectoryConnectionError(Exception):
    """Raised when the directory is unreachable or rejects the service bind."""
    pass


class DirectorySearchError(Exception):
    """Raised when a directory search fails."""
    pass


class DirectoryCapability(ABC):
    """
    Contract the sync engine requires from an identity directory.

    Raw records are plain dictionaries holding a ``dn`` key plus the
    requested attributes.
    """

    @abstractmethod
    def connect(self) -> bool:
        """Open and bind the session. Raises DirectoryConnectionError."""

    @abstractmethod
    def search_all(self, base: str, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        """Return every entry matching the filter. Raises DirectorySearchError."""

    @abstractmethod
    def authenticate(self, principal: str, secret: str) -> Optional[Dict[str, Any]]:
        """Verify credentials and return the principal's raw record, or None."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the session. Must be safe to call repeatedly."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class DirectoryClient(DirectoryCapability):
    """
    LDAP directory client.

    Supports LDAPS and StartTLS, connect retries and paged searches.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory client with configuration.

        Args:
            config: Directory configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')
        self.domain = config.get('domain')
        self.id_attribute = config.get('external_id_attribute', 'sAMAccountName')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Establish and bind the service connection, retrying transient failures.

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        try:
            self.server = self._create_server()
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create directory server: {e}")

        try:
            self.connection = retry_call(
                self._open_and_bind,
                max_attempts=max(1, self.max_retries),
                delay=self.retry_wait,
                exceptions=(LDAPSocketOpenError, ConnectionError, TimeoutError),
                on_retry=create_retry_callback("Directory connection")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to directory after {e.attempts} attempts: {e.last_exception}"
            )
        except (LDAPException, DirectoryConnectionError) as e:
            raise DirectoryConnectionError(f"Failed to connect to directory: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to directory server {self.server_url}")
        return True

    def _create_server(self) -> Server:
        return Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=self._create_tls_config(),
            get_info=NONE,
            connect_timeout=self.connection_timeout
        )

    def _open_and_bind(self) -> Connection:
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            connection.open()

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
            return connection
        except LDAPSocketOpenError as e:
            self._safe_unbind(connection)
            if is_retryable_error(e):
                raise
            raise DirectoryConnectionError(str(e))
        except Exception:
            self._safe_unbind(connection)
            raise

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the connection.

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

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    @staticmethod
    def _safe_unbind(connection):
        try:
            connection.unbind()
        except Exception as e:
            logger.debug(f"Ignoring error while unbinding: {e}")

    def disconnect(self):
        """Close the directory connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("Directory connection closed")
            except Exception as e:
                logger.warning(f"Error closing directory connection: {e}")
        self._connected = False
        self.connection = None

    def search_all(self, base: str, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        """
        Retrieve every entry matching the filter, following paged results.

        Args:
            base: Search base DN
            search_filter: LDAP filter string
            attributes: Attributes to return

        Returns:
            List of raw records

        Raises:
            DirectorySearchError: If the search fails
        """
        if not self._connected:
            raise DirectorySearchError("Not connected to directory server")

        logger.debug(f"Searching with filter: {search_filter} in base: {base}")

        records = []
        cookie = None
        page_count = 0

        try:
            while True:
                success = self.connection.search(
                    search_base=base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                result_code = self.connection.result.get('result', 0)
                if not success and result_code != 0:
                    raise DirectorySearchError(f"Search failed: {self.connection.result}")

                page_count += 1
                page = [self._flatten_entry(entry) for entry in self.connection.entries]
                records.extend(page)
                logger.debug(f"Page {page_count}: Retrieved {len(page)} entries")

                cookie = self._next_page_cookie()
                if not cookie:
                    break
        except LDAPException as e:
            raise DirectorySearchError(f"Directory search failed: {e}")

        logger.info(f"Retrieved {len(records)} directory entries across {page_count} pages")
        return records

    def _next_page_cookie(self) -> Optional[bytes]:
        controls = self.connection.result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return paged.get('value', {}).get('cookie') or None

    @staticmethod
    def _flatten_entry(entry) -> Dict[str, Any]:
        """Convert an ldap3 entry into a raw record dictionary."""
        record = {'dn': str(entry.entry_dn)}
        for name, values in entry.entry_attributes_as_dict.items():
            if name in MULTI_VALUED_ATTRIBUTES:
                record[name] = list(values)
            else:
                record[name] = values[0] if values else None
        return record

    def authenticate(self, principal: str, secret: str) -> Optional[Dict[str, Any]]:
        """
        Verify a user's credentials with a dedicated bind.

        Args:
            principal: Account name, UPN or DN
            secret: Password

        Returns:
            The principal's raw record, or None when authentication fails
        """
        if not principal or not secret:
            # An empty password would succeed as an unauthenticated bind
            return None

        bind_user = principal
        if self.domain and '@' not in principal and '=' not in principal:
            bind_user = f"{principal}@{self.domain}"

        try:
            server = self.server or self._create_server()
            connection = Connection(
                server,
                user=bind_user,
                password=secret,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )
        except Exception as e:
            logger.warning(f"Could not prepare authentication bind: {e}")
            return None

        try:
            connection.open()
            if self.start_tls and not self.use_ssl:
                connection.start_tls()
            if not connection.bind():
                logger.debug(f"Authentication bind rejected for {principal}")
                return None

            if '=' in principal:
                # A DN names the entry directly
                search_base, search_filter, search_scope = principal, '(objectClass=*)', BASE
            else:
                account = principal.split('@')[0]
                search_base = self.base_dn
                search_filter = f"({self.id_attribute}={escape_filter_chars(account)})"
                search_scope = SUBTREE
            connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=search_scope,
                attributes=self.config.get('attributes', ['*']),
                size_limit=1
            )
            if not connection.entries:
                return None
            return self._flatten_entry(connection.entries[0])
        except LDAPException as e:
            logger.warning(f"Authentication against directory failed: {e}")
            return None
        finally:
            self._safe_unbind(connection)

    def get_connection_stats(self) -> Dict[str, Any]:
        """Connection information for health reporting."""
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'base_dn': self.base_dn,
            'page_size': self.page_size
        }

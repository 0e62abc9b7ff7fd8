"""
Directory session for binding to, querying and modifying the directory.

A session is opened per logical operation and discarded on failure; there is
no pooling and no automatic reconnection. Every ldap3 failure is classified
into the typed errors of ``directory_sync.errors``.
"""

import logging
import ssl
from collections import namedtuple
from typing import Dict, List, Any, Optional, Iterator

from ldap3 import Server, Connection, Tls, ALL, ALL_ATTRIBUTES, BASE, LEVEL, SUBTREE
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPOperationResult,
    LDAPResponseTimeoutError,
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSSLConfigurationError,
    LDAPStartTLSError,
)

from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import (
    DirectoryError,
    DirectoryConnectionError,
    DirectoryTimeoutError,
    error_for_code,
    error_from_result,
)
from directory_sync.identity import format_bind_identity, sanitize_attributes, split_dn
from directory_sync.retry import MaxRetriesExceeded, retry_call, create_retry_callback, retry_settings

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

SCOPES = {'base': BASE, 'one': LEVEL, 'sub': SUBTREE}

# Result codes that still carry usable entries
_SEARCH_OK_CODES = (0, 4)

Entry = namedtuple('Entry', ['dn', 'attributes'])


def classify_exception(exc: Exception, operation: str) -> DirectoryError:
    """Map an ldap3 exception onto the engine's error taxonomy."""
    if isinstance(exc, DirectoryError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, (LDAPResponseTimeoutError, LDAPSocketReceiveError)):
        return DirectoryTimeoutError(message, operation=operation)
    if isinstance(exc, LDAPSocketOpenError):
        if 'timed out' in message.lower():
            return DirectoryTimeoutError(message, operation=operation)
        return DirectoryConnectionError(message, operation=operation)
    if isinstance(exc, (LDAPStartTLSError, LDAPSSLConfigurationError, LDAPCommunicationError)):
        return DirectoryConnectionError(message, operation=operation)
    if isinstance(exc, LDAPBindError):
        return error_for_code(49, message, operation)
    if isinstance(exc, LDAPOperationResult):
        return error_for_code(getattr(exc, 'result', None), message, operation)
    if isinstance(exc, LDAPException):
        return DirectoryError(message, operation=operation)
    if isinstance(exc, TimeoutError):
        return DirectoryTimeoutError(message, operation=operation)
    if isinstance(exc, OSError):
        return DirectoryConnectionError(message, operation=operation)
    return DirectoryError(message, operation=operation)


def first_value(value: Any) -> Any:
    """Collapse a possibly multi-valued attribute to its first value."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class DirectorySession:
    """
    One bound connection to the directory.

    Usage:
        with DirectorySession(config).open() as session:
            session.bind()
            for entry in session.search(base, '(objectClass=user)'):
                ...
    """

    def __init__(self, config: DirectoryConnectionConfig):
        """
        Initialize a session with connection configuration.

        Args:
            config: Directory connection configuration; the session only reads it
        """
        self.config = config
        self.server = None
        self.connection = None
        self.bound = False

    def __repr__(self):
        return (f"DirectorySession({self.config.server}:{self.config.effective_port}, "
                f"secure={self.config.is_secure}, bound={self.bound})")

    def open(self) -> 'DirectorySession':
        """
        Create the server object and open the transport.

        Raises:
            DirectoryConnectionError: If the server cannot be reached or TLS fails
            DirectoryTimeoutError: If the connect timeout expires
        """
        operation = f"open {self.config.server}:{self.config.effective_port}"
        try:
            self.server = Server(
                self.config.server,
                port=self.config.effective_port,
                use_ssl=self.config.is_secure,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.config.connect_timeout
            )
            self.connection = Connection(
                self.server,
                auto_bind=False,
                raise_exceptions=False,
                receive_timeout=self.config.operation_timeout
            )
            # open() returns nothing; failures raise or leave the connection closed
            self.connection.open()
            if self.connection.closed:
                raise DirectoryConnectionError("Transport did not open", operation=operation)
        except Exception as e:
            self._discard()
            raise classify_exception(e, operation)

        logger.debug(f"Opened directory transport to {self.config.server}:{self.config.effective_port} "
                     f"(secure: {self.config.is_secure})")
        return self

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for secure transport.

        Certificate validation is relaxed unless ``verify_ssl`` is set, because
        domain controllers commonly present self-issued certificates.
        """
        if not self.config.is_secure:
            return None

        tls_config = {}
        if self.config.verify_ssl:
            tls_config['validate'] = ssl.CERT_REQUIRED
            if self.config.ca_cert_file:
                tls_config['ca_certs_file'] = self.config.ca_cert_file
                logger.debug(f"Using CA certificate file: {self.config.ca_cert_file}")
        else:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"Certificate validation disabled for {self.config.server}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def bind(self, identity: Optional[str] = None, secret: Optional[str] = None) -> None:
        """
        Authenticate the session.

        Args:
            identity: Bind identity; defaults to the configured bind account
            secret: Bind secret; defaults to the configured secret

        Raises:
            AuthenticationError: If the directory rejects the credentials
        """
        connection = self._require_open()
        identity = format_bind_identity(self.config, identity or self.config.bind_account)
        secret = self.config.bind_secret if secret is None else secret
        operation = f"bind as {identity}"

        try:
            connection.user = identity
            connection.password = secret
            if not connection.bind():
                raise error_from_result(connection.result, operation)
        except Exception as e:
            raise classify_exception(e, operation)

        self.bound = True
        logger.info(f"Bound to {self.config.server} as {identity}")

    def search(self, base: str, search_filter: str, scope: str = 'sub',
               attributes: Optional[List[str]] = None, size_limit: int = 0) -> Iterator[Entry]:
        """
        Search the directory, paging through results lazily.

        The returned generator is finite and cannot be restarted. Errors are
        raised when iteration starts.

        Args:
            base: Search base DN
            search_filter: LDAP filter string
            scope: 'base', 'one' or 'sub'
            attributes: Attributes to return (all user attributes if None)
            size_limit: Maximum number of entries (0 for no limit)

        Yields:
            Entry(dn, attributes) tuples
        """
        connection = self._require_bound()
        operation = f"search {base}"
        search_scope = SCOPES.get(scope, scope)
        paged_size = None if search_scope == BASE else self.config.page_size
        cookie = None
        returned = 0

        logger.debug(f"Searching base={base} filter={search_filter} scope={scope}")

        while True:
            try:
                connection.search(
                    search_base=base,
                    search_filter=search_filter,
                    search_scope=search_scope,
                    attributes=attributes or [ALL_ATTRIBUTES],
                    size_limit=size_limit,
                    time_limit=self.config.operation_timeout,
                    paged_size=paged_size,
                    paged_cookie=cookie
                )
            except Exception as e:
                raise classify_exception(e, operation)

            result = connection.result or {}
            if result.get('result') not in _SEARCH_OK_CODES:
                raise error_from_result(result, operation)

            response = connection.response or []
            for item in response:
                if item.get('type') != 'searchResEntry':
                    continue
                yield Entry(item['dn'], dict(item.get('attributes') or {}))
                returned += 1
                if size_limit and returned >= size_limit:
                    return

            cookie = (result.get('controls') or {}).get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

    def add(self, dn: str, object_class: List[str], attributes: Dict[str, Any]) -> None:
        """Create an entry."""
        connection = self._require_bound()
        operation = f"add {dn}"
        logger.debug(f"Adding {dn} with {sanitize_attributes(attributes)}")
        try:
            success = connection.add(dn, object_class, attributes)
        except Exception as e:
            raise classify_exception(e, operation)
        if not success:
            raise error_from_result(connection.result, operation)
        logger.info(f"Created entry {dn}")

    def modify(self, dn: str, changes: Dict[str, List[tuple]]) -> None:
        """
        Modify an entry.

        Args:
            dn: Entry to modify
            changes: ldap3 change map, e.g. ``{'member': [(MODIFY_ADD, [user_dn])]}``
        """
        connection = self._require_bound()
        operation = f"modify {dn}"
        logger.debug(f"Modifying {dn}: {sanitize_attributes(changes)}")
        try:
            success = connection.modify(dn, changes)
        except Exception as e:
            raise classify_exception(e, operation)
        if not success:
            raise error_from_result(connection.result, operation)

    def move(self, dn: str, new_superior: str) -> str:
        """
        Move an entry under a new parent, keeping its relative name.

        Returns:
            The entry's new distinguished name
        """
        connection = self._require_bound()
        operation = f"move {dn}"
        relative_name, _ = split_dn(dn)
        try:
            success = connection.modify_dn(dn, relative_name, new_superior=new_superior)
        except Exception as e:
            raise classify_exception(e, operation)
        if not success:
            raise error_from_result(connection.result, operation)
        new_dn = f"{relative_name},{new_superior}"
        logger.info(f"Moved {dn} to {new_dn}")
        return new_dn

    def read_root_dse(self) -> Dict[str, Any]:
        """Return a few root DSE attributes for diagnostics."""
        entries = list(self.search('', '(objectClass=*)', 'base',
                                   ['defaultNamingContext', 'dnsHostName', 'namingContexts'],
                                   size_limit=1))
        return entries[0].attributes if entries else {}

    def close(self) -> None:
        """Unbind and drop the connection; safe to call more than once."""
        if self.connection is not None:
            try:
                self.connection.unbind()
                logger.debug("Directory session closed")
            except Exception as e:
                logger.warning(f"Error closing directory session: {e}")
        self._discard()

    def _discard(self):
        self.connection = None
        self.server = None
        self.bound = False

    def _require_open(self) -> Connection:
        if self.connection is None:
            raise DirectoryConnectionError("Directory session is not open")
        return self.connection

    def _require_bound(self) -> Connection:
        connection = self._require_open()
        if not self.bound:
            raise DirectoryConnectionError("Directory session is not bound")
        return connection

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_session(config: DirectoryConnectionConfig, error_handling: Optional[Dict[str, Any]] = None,
                 session_factory=DirectorySession) -> DirectorySession:
    """
    Open and bind a fresh session, retrying only on timeouts.

    Each attempt builds a brand new session; a session that timed out is
    discarded, never reused.

    Raises:
        DirectoryTimeoutError: The last timeout, once attempts are exhausted
        DirectoryError: Any other failure, on the first occurrence
    """
    def attempt():
        session = session_factory(config)
        try:
            session.open()
            session.bind()
        except Exception:
            session.close()
            raise
        return session

    try:
        return retry_call(
            attempt,
            retry_on=(DirectoryTimeoutError,),
            on_retry=create_retry_callback(f"Directory bind to {config.server}"),
            **retry_settings(error_handling)
        )
    except MaxRetriesExceeded as e:
        logger.error(f"Giving up on {config.server} after {e.attempts} attempts")
        raise e.last_exception


def check_connection(config: DirectoryConnectionConfig) -> Dict[str, Any]:
    """
    Open, bind and read the root DSE without raising.

    Returns:
        Dictionary with 'success' and either 'root_dse' or 'error' and 'code'
    """
    session = DirectorySession(config)
    try:
        session.open()
        session.bind()
        return {'success': True, 'root_dse': session.read_root_dse()}
    except DirectoryError as e:
        logger.warning(f"Directory connection test failed: {e}")
        return {'success': False, 'error': str(e), 'code': e.code}
    finally:
        session.close()

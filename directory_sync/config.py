"""
Configuration loading and management for the directory sync engine.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. It also provides the directory connection settings
object injected into every directory operation, and a store for the connection
settings that never echoes the bind secret back in plaintext.
"""

import os
import threading
import yaml
import logging
from dataclasses import dataclass, asdict, fields
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SECRET_MASK = '••••••••'

PLAIN_PORT = 389
SECURE_PORT = 636


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass
class DirectoryConnectionConfig:
    """Connection and layout settings for the directory service."""

    server: str
    base_dn: str
    bind_account: str
    bind_secret: str = ''
    protocol: str = 'ldap'
    port: Optional[int] = None
    domain: str = ''
    auth_format: str = 'principal'
    bind_container: str = 'CN=Users'
    working_ou: str = ''
    baseline_group: str = 'VPN-USERS'
    connect_timeout: int = 10
    operation_timeout: int = 30
    page_size: int = 200
    verify_ssl: bool = False
    ca_cert_file: Optional[str] = None
    phone_country_code: str = '62'
    move_on_department_change: bool = False

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'DirectoryConnectionConfig':
        """Build the config from a ``directory`` section, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        try:
            return cls(**{key: value for key, value in values.items() if key in known})
        except TypeError as e:
            raise ConfigurationError(f"Invalid directory configuration: {e}")

    @property
    def is_secure(self) -> bool:
        return self.protocol.lower() == 'ldaps'

    @property
    def effective_port(self) -> int:
        if self.port:
            return int(self.port)
        return SECURE_PORT if self.is_secure else PLAIN_PORT

    @property
    def principal_domain(self) -> str:
        """Configured domain, or the DC components of the base DN joined with dots."""
        if self.domain:
            return self.domain
        parts = [part.strip() for part in self.base_dn.split(',')]
        return '.'.join(part[3:] for part in parts if part.upper().startswith('DC='))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __repr__(self):
        return (f"DirectoryConnectionConfig(server={self.server!r}, protocol={self.protocol!r}, "
                f"port={self.effective_port}, base_dn={self.base_dn!r}, "
                f"bind_account={self.bind_account!r}, auth_format={self.auth_format!r})")


class ConfigLoader:
    """
    Reads the YAML configuration file and turns it into a validated dict.

    The path comes from the argument, else ``CONFIG_PATH``, else
    ``config.yaml``. Secrets may be supplied through the environment instead
    of the file.
    """

    # dotted config key -> environment variable
    ENV_OVERRIDES = {
        'directory.bind_secret': 'LDAP_BIND_PASSWORD',
        'hris.records_file': 'HRIS_RECORDS_FILE',
    }

    SECTION_DEFAULTS = {
        'sync': {
            'performed_by': 'system',
        },
        'schedule': {
            'state_file': 'schedule.yaml',
            'check_interval_seconds': 60,
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
        },
        'error_handling': {
            'max_retries': 2,
            'retry_wait_seconds': 2,
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Read, override, validate and complete the configuration.

        Raises:
            ConfigurationError: If the file is missing, is not a YAML mapping,
                or fails validation
        """
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
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

        logger.info(f"Loaded configuration from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        for dotted_key, env_var in self.ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            section, _, key = dotted_key.partition('.')
            if not isinstance(self.config.get(section), dict):
                self.config[section] = {}
            self.config[section][key] = value
            logger.debug(f"{dotted_key} taken from ${env_var}")

    def _validate(self):
        """Collect every problem before failing, so one run reports them all."""
        problems = []

        directory = self.config.get('directory') or {}
        problems.extend(f"Missing required directory field: {name}"
                        for name in ('server', 'base_dn', 'bind_account', 'bind_secret')
                        if not directory.get(name))

        protocol = str(directory.get('protocol', 'ldap')).lower()
        if protocol not in ('ldap', 'ldaps'):
            problems.append(f"Unsupported directory protocol: {protocol}")

        auth_format = str(directory.get('auth_format', 'principal')).lower()
        if auth_format not in ('principal', 'dn'):
            problems.append(f"Unsupported auth_format: {auth_format}")

        if not (self.config.get('hris') or {}).get('records_file'):
            problems.append("Missing required hris field: records_file")

        if problems:
            raise ConfigurationError("Configuration validation failed:\n"
                                     + "\n".join(f"  - {problem}" for problem in problems))

    def _apply_defaults(self):
        directory = self.config.setdefault('directory', {})
        directory['protocol'] = str(directory.get('protocol', 'ldap')).lower()
        directory['auth_format'] = str(directory.get('auth_format', 'principal')).lower()

        for section, defaults in self.SECTION_DEFAULTS.items():
            values = self.config.get(section)
            if not isinstance(values, dict):
                values = self.config[section] = {}
            for key, value in defaults.items():
                values.setdefault(key, value)


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


class DirectoryConfigStore:
    """
    Owns persistence of the ``directory`` section of the YAML config file.

    Reads return the bind secret masked; writing the mask back keeps the secret
    that is already stored.
    """

    SECRET_FIELDS = ('bind_secret',)

    def __init__(self, config_path: str):
        self.config_path = config_path
        self._lock = threading.Lock()

    def _read_document(self) -> Dict[str, Any]:
        if not os.path.exists(self.config_path):
            return {}
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

    def read(self) -> Dict[str, Any]:
        """Return the directory settings with secrets replaced by the mask."""
        with self._lock:
            directory = dict(self._read_document().get('directory') or {})
        for field in self.SECRET_FIELDS:
            if directory.get(field):
                directory[field] = SECRET_MASK
        return directory

    def write(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the directory settings and return the masked result.

        A secret equal to the mask (or omitted) preserves the stored secret.
        """
        with self._lock:
            document = self._read_document()
            stored = document.get('directory') or {}
            updated = dict(values)
            for field in self.SECRET_FIELDS:
                if updated.get(field) in (None, SECRET_MASK):
                    if stored.get(field):
                        updated[field] = stored[field]
                    else:
                        updated.pop(field, None)
            document['directory'] = updated
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            logger.info(f"Directory settings written to {self.config_path}")
        return self.read()

    def load_connection_config(self) -> DirectoryConnectionConfig:
        """Return the unmasked settings as the injected connection config."""
        with self._lock:
            directory = self._read_document().get('directory') or {}
        if not directory:
            raise ConfigurationError(f"No directory settings in {self.config_path}")
        return DirectoryConnectionConfig.from_dict(directory)

"""
Bind identity formatting and secret encoding for the directory.

Active Directory accepts either a user principal name (``account@domain``) or a
distinguished name when binding, and requires passwords written to
``unicodePwd`` to be quoted and UTF-16LE encoded.
"""

import logging
import string
from typing import Dict, Any, Tuple

from ldap3.utils.conv import escape_filter_chars
from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import escape_rdn, parse_dn

from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import ValidationError

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 7

# Attributes whose values must never reach a log line
SECRET_ATTRIBUTES = ('unicodePwd', 'userPassword', 'password', 'bind_secret')

_DN_PREFIX = 'CN='


def looks_like_dn(name: str) -> bool:
    return name.upper().startswith(_DN_PREFIX)


def format_bind_identity(config: DirectoryConnectionConfig, raw_account_name: str) -> str:
    """
    Convert a human-entered account name into the identity used for bind.

    Args:
        config: Directory connection configuration
        raw_account_name: Account name as typed (``svc``, ``svc@corp.local``,
            ``CORP\\svc`` or a full DN)

    Returns:
        A distinguished name or a principal name, depending on ``auth_format``
    """
    name = (raw_account_name or '').strip()
    if not name:
        raise ValidationError("Bind account name is empty")

    if looks_like_dn(name):
        return name

    if config.auth_format == 'dn':
        user_part = name.split('@', 1)[0]
        if '\\' in user_part:
            user_part = user_part.split('\\', 1)[1]
        container = (config.bind_container or '').strip().strip(',')
        parent = f"{container},{config.base_dn}" if container else config.base_dn
        return f"CN={escape_rdn(user_part)},{parent}"

    if '@' in name or '\\' in name:
        return name
    return f"{name}@{config.principal_domain}"


def encode_secret(plain_secret: str) -> bytes:
    """
    Encode a password for the ``unicodePwd`` attribute.

    Raises:
        ValidationError: If the secret is empty or shorter than the directory minimum
    """
    if not plain_secret:
        raise ValidationError("Password is required")
    if len(plain_secret) < MIN_SECRET_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_SECRET_LENGTH} characters")
    return f'"{plain_secret}"'.encode('utf-16-le')


def split_dn(dn: str) -> Tuple[str, str]:
    """
    Split a DN into its relative name and parent path.

    ``OU=Sales,OU=Staff,DC=corp,DC=local`` -> ``('OU=Sales', 'OU=Staff,DC=corp,DC=local')``
    """
    try:
        components = parse_dn(dn, strip=True)
    except LDAPInvalidDnError as e:
        raise ValidationError(f"Invalid distinguished name '{dn}': {e}")
    if not components:
        raise ValidationError("Distinguished name is empty")

    rdn_parts = []
    index = 0
    for index, (attr_type, attr_value, separator) in enumerate(components):
        rdn_parts.append(f"{attr_type}={attr_value}")
        if separator != '+':
            break
    parent = ','.join(f"{attr_type}={attr_value}" for attr_type, attr_value, _ in components[index + 1:])
    return '+'.join(rdn_parts), parent


def rdn_attribute(dn: str) -> str:
    """Attribute type of the relative name, upper-cased (``OU``, ``CN``, ``DC``)."""
    relative_name, _ = split_dn(dn)
    return relative_name.split('=', 1)[0].strip().upper()


def unescape_rdn_value(value: str) -> str:
    """
    Attribute value for an escaped RDN value: ``R&D\\, Ops`` becomes ``R&D, Ops``.

    Handles both backslash-escaped characters and ``\\XX`` hex pairs, which may
    together encode one multi-byte UTF-8 character.
    """
    raw = bytearray()
    index = 0
    while index < len(value):
        char = value[index]
        if char != '\\' or index + 1 == len(value):
            raw.extend(char.encode('utf-8'))
            index += 1
            continue
        pair = value[index + 1:index + 3]
        if len(pair) == 2 and all(c in string.hexdigits for c in pair):
            raw.append(int(pair, 16))
            index += 3
        else:
            raw.extend(value[index + 1].encode('utf-8'))
            index += 2
    return raw.decode('utf-8', errors='replace')


def rdn_value(dn: str) -> str:
    """Unescaped value of the relative name, ready to store as an attribute."""
    relative_name, _ = split_dn(dn)
    return unescape_rdn_value(relative_name.split('=', 1)[1])


def escape_filter_value(value: str) -> str:
    """Escape a value placed inside an LDAP search filter."""
    return escape_filter_chars(str(value))


def sanitize_attributes(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of an attribute map that is safe to log."""
    secret_names = {name.lower() for name in SECRET_ATTRIBUTES}
    return {
        key: ('****' if key.lower() in secret_names else value)
        for key, value in attributes.items()
    }

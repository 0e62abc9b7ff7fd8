"""
Error taxonomy for the directory sync engine.

Every protocol-level failure is classified at the session boundary into one of
the typed errors below. The numeric LDAP result code always travels with the
error, even when it is not in the lookup table.
"""

import re
from typing import Dict, Optional, Tuple

from directory_sync.retry import RetryableError


# Numeric LDAP result code -> (category, human text)
RESULT_CODES: Dict[int, Tuple[str, str]] = {
    0: ('success', 'success'),
    1: ('other', 'operations error'),
    2: ('other', 'protocol error'),
    3: ('timeout', 'time limit exceeded'),
    4: ('other', 'size limit exceeded'),
    7: ('auth', 'authentication method not supported'),
    8: ('auth', 'stronger authentication required'),
    10: ('other', 'referral'),
    11: ('other', 'administrative limit exceeded'),
    16: ('other', 'no such attribute'),
    17: ('other', 'undefined attribute type'),
    19: ('other', 'constraint violation'),
    20: ('already_exists', 'attribute or value exists'),
    21: ('other', 'invalid attribute syntax'),
    32: ('not_found', 'no such object'),
    34: ('other', 'invalid DN syntax'),
    48: ('auth', 'inappropriate authentication'),
    49: ('auth', 'invalid credentials'),
    50: ('access', 'insufficient access rights'),
    51: ('unavailable', 'server busy'),
    52: ('unavailable', 'server unavailable'),
    53: ('other', 'server unwilling to perform'),
    64: ('other', 'naming violation'),
    65: ('other', 'object class violation'),
    68: ('already_exists', 'entry already exists'),
    80: ('other', 'other'),
}

# Active Directory puts a sub-code in the diagnostic message of a failed bind
AD_BIND_SUBCODES: Dict[str, str] = {
    '525': 'user not found',
    '52e': 'invalid credentials',
    '530': 'not permitted to logon at this time',
    '531': 'not permitted to logon at this workstation',
    '532': 'password expired',
    '533': 'account disabled',
    '701': 'account expired',
    '773': 'user must reset password',
    '775': 'account locked out',
}

_AD_SUBCODE_PATTERN = re.compile(r'data ([0-9a-f]{3})', re.IGNORECASE)


def interpret_code(code: Optional[int], message: str = '') -> str:
    """Return the human reading of a result code, refined by AD sub-codes."""
    if code is None:
        return 'unknown error'
    category, text = RESULT_CODES.get(code, ('other', f'unmapped result code {code}'))
    if category == 'auth' and message:
        match = _AD_SUBCODE_PATTERN.search(message)
        if match and match.group(1).lower() in AD_BIND_SUBCODES:
            text = f"{text} ({AD_BIND_SUBCODES[match.group(1).lower()]})"
    return text


class DirectorySyncError(Exception):
    """Base exception for the directory sync engine."""
    pass


class DirectoryError(DirectorySyncError):
    """A failure reported by, or while talking to, the directory."""

    def __init__(self, message: str, code: Optional[int] = None,
                 interpretation: Optional[str] = None, operation: Optional[str] = None):
        self.code = code
        self.interpretation = interpretation or interpret_code(code, message)
        self.operation = operation
        detail = message
        if code is not None:
            detail = f"{message} [code {code}: {self.interpretation}]"
        if operation:
            detail = f"{operation}: {detail}"
        super().__init__(detail)


class DirectoryConnectionError(DirectoryError):
    """Cannot reach the directory or negotiate transport with it."""
    pass


class AuthenticationError(DirectoryError):
    """The directory rejected the bind."""
    pass


class NotFoundError(DirectoryError):
    """Object, group or container is absent."""
    pass


class GroupNotFoundError(NotFoundError):
    """A security group could not be located in any candidate base."""

    def __init__(self, group_name: str, searched_bases=None):
        self.group_name = group_name
        self.searched_bases = list(searched_bases or [])
        super().__init__(f"Group '{group_name}' not found in {len(self.searched_bases)} search bases",
                         code=32)


class AlreadyExistsError(DirectoryError):
    """Entry or membership is already present."""
    pass


class DirectoryTimeoutError(DirectoryError, RetryableError):
    """A directory call exceeded its connect or operation timeout."""
    pass


class ValidationError(DirectorySyncError):
    """Malformed input that must never be sent to the directory."""
    pass


class GroupMembershipError(DirectorySyncError):
    """Adding a member to a located group failed."""

    def __init__(self, group_name: str, cause: Exception):
        self.group_name = group_name
        self.cause = cause
        super().__init__(f"Failed to add member to group '{group_name}': {cause}")


class ProvisioningError(DirectorySyncError):
    """Existence check or entry creation failed for one account."""

    def __init__(self, username: str, cause: Exception):
        self.username = username
        self.cause = cause
        super().__init__(f"Provisioning failed for '{username}': {cause}")


class SyncInProgressError(DirectorySyncError):
    """Another sync pass currently holds the run guard."""
    pass


_CATEGORY_CLASSES = {
    'auth': AuthenticationError,
    'not_found': NotFoundError,
    'already_exists': AlreadyExistsError,
    'timeout': DirectoryTimeoutError,
    'unavailable': DirectoryConnectionError,
}


def error_for_code(code: Optional[int], message: str, operation: Optional[str] = None) -> DirectoryError:
    """Build the typed error matching a numeric result code."""
    category = RESULT_CODES.get(code, ('other', ''))[0] if code is not None else 'other'
    error_class = _CATEGORY_CLASSES.get(category, DirectoryError)
    return error_class(message, code=code, operation=operation)


def error_from_result(result: Optional[Dict], operation: Optional[str] = None) -> DirectoryError:
    """Classify an ldap3 result dictionary."""
    result = result or {}
    code = result.get('result')
    message = result.get('message') or result.get('description') or 'directory operation failed'
    return error_for_code(code, message, operation)

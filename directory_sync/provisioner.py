"""
Account provisioning: create-or-skip a user entry, then reconcile memberships.

Existence check and entry creation failures are fatal for the account and
raised as ProvisioningError; timeouts keep their retryable type. Group
membership failures are soft: they are recorded on the outcome and
provisioning carries on.
"""

import logging
from typing import Callable, Dict, Any, List, Optional, Tuple

from ldap3.utils.dn import escape_rdn

from directory_sync.audit import AuditEvent, emit_event
from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import (
    DirectoryError,
    DirectorySyncError,
    DirectoryTimeoutError,
    GroupMembershipError,
    GroupNotFoundError,
    ProvisioningError,
    ValidationError,
)
from directory_sync.identity import encode_secret, escape_filter_value
from directory_sync.ldap_client import open_session
from directory_sync.models import AccountSpec, ProvisioningOutcome
from directory_sync.resolver import add_member_to_group, ensure_container_exists

logger = logging.getLogger(__name__)

USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'user']

# userAccountControl: NORMAL_ACCOUNT, enabled
ENABLED_ACCOUNT = 512


def is_valid_email(value: str) -> bool:
    return bool(value) and '@' in value


def is_present(value: str) -> bool:
    return bool(value and str(value).strip())


# Directory attribute -> (AccountSpec field, predicate that must hold before it is set)
OPTIONAL_ATTRIBUTES: List[Tuple[str, str, Callable[[str], bool]]] = [
    ('mail', 'email', is_valid_email),
    ('givenName', 'first_name', is_present),
    ('sn', 'last_name', is_present),
    ('title', 'title', is_present),
    ('department', 'department', is_present),
    ('company', 'company', is_present),
    ('physicalDeliveryOfficeName', 'office', is_present),
    ('employeeID', 'employee_id', is_present),
]


def validate_account_spec(spec: AccountSpec) -> None:
    missing = [name for name in ('username', 'password', 'display_name') if not getattr(spec, name)]
    if missing:
        raise ValidationError(f"Missing required account fields: {', '.join(missing)}")


def build_user_attributes(spec: AccountSpec, config: DirectoryConnectionConfig) -> Dict[str, Any]:
    """
    Build the attribute set for a new user entry.

    Optional attributes are only included when their predicate holds.
    """
    attributes = {
        'cn': spec.display_name,
        'sAMAccountName': spec.username,
        'displayName': spec.display_name,
        'userPrincipalName': f"{spec.username}@{config.principal_domain}",
        'userAccountControl': ENABLED_ACCOUNT,
    }
    for attribute, spec_field, predicate in OPTIONAL_ATTRIBUTES:
        value = getattr(spec, spec_field)
        if predicate(value):
            attributes[attribute] = str(value).strip()
        elif value:
            logger.debug(f"Skipping {attribute} for {spec.username}: value failed validation")
    return attributes


def default_users_container(config: DirectoryConnectionConfig) -> str:
    return f"CN=Users,{config.base_dn}"


def find_account(session, username: str, config: DirectoryConnectionConfig) -> Optional[str]:
    """Return the DN of the account with the given short name, if any."""
    search_filter = f"(&(objectClass=user)(sAMAccountName={escape_filter_value(username)}))"
    for entry in session.search(config.base_dn, search_filter, 'sub', ['distinguishedName'], size_limit=1):
        return entry.dn
    return None


def _create_account(session, spec: AccountSpec, config: DirectoryConnectionConfig) -> Tuple[str, str]:
    encoded_secret = encode_secret(spec.password)
    container = spec.container_dn or config.working_ou or default_users_container(config)
    try:
        ensure_container_exists(session, container, config)
    except DirectoryTimeoutError:
        raise
    except DirectorySyncError as e:
        fallback = default_users_container(config)
        logger.warning(f"Could not ensure container {container} ({e}); falling back to {fallback}")
        container = fallback

    dn = f"CN={escape_rdn(spec.display_name)},{container}"
    attributes = build_user_attributes(spec, config)
    attributes['unicodePwd'] = encoded_secret
    session.add(dn, USER_OBJECT_CLASSES, attributes)
    return dn, container


def provision_account(session, spec: AccountSpec, config: DirectoryConnectionConfig) -> ProvisioningOutcome:
    """
    Create the account if missing, then apply group memberships.

    The session is closed before returning.

    Args:
        session: Bound directory session
        spec: Desired account
        config: Directory connection configuration

    Returns:
        ProvisioningOutcome; ``account_created`` is False when the account
        already existed and only memberships were reconciled

    Raises:
        ValidationError: If the account spec is incomplete or the password is too short
        ProvisioningError: If the existence check or entry creation fails
        DirectoryTimeoutError: If either of those timed out; raised unwrapped
    """
    try:
        validate_account_spec(spec)

        try:
            existing_dn = find_account(session, spec.username, config)
        except DirectoryTimeoutError:
            raise
        except DirectoryError as e:
            raise ProvisioningError(spec.username, e)

        if existing_dn:
            logger.info(f"Account {spec.username} already exists at {existing_dn}; reconciling memberships")
            outcome = ProvisioningOutcome(account_created=False, distinguished_name=existing_dn)
        else:
            try:
                dn, container = _create_account(session, spec, config)
            except DirectoryTimeoutError:
                raise
            except DirectoryError as e:
                raise ProvisioningError(spec.username, e)
            logger.info(f"Created account {spec.username} at {dn}")
            outcome = ProvisioningOutcome(account_created=True, distinguished_name=dn, container_dn=container)

        apply_group_memberships(session, outcome, requested_groups(spec, config), config)
        return outcome
    finally:
        session.close()


def requested_groups(spec: AccountSpec, config: DirectoryConnectionConfig) -> List[str]:
    """Role-specific groups plus the mandatory baseline group, without duplicates."""
    groups = []
    for group in list(spec.groups) + [config.baseline_group]:
        if group and group.lower() not in [g.lower() for g in groups]:
            groups.append(group)
    return groups


def apply_group_memberships(session, outcome: ProvisioningOutcome, groups: List[str],
                            config: DirectoryConnectionConfig) -> None:
    """Add the account to every group, collecting failures on the outcome."""
    for group in groups:
        try:
            add_member_to_group(session, outcome.distinguished_name, group, config)
            outcome.groups_applied.append(group)
        except (GroupNotFoundError, GroupMembershipError) as e:
            logger.warning(f"Membership in {group} not applied for {outcome.distinguished_name}: {e}")
            outcome.group_failures[group] = str(e)
        except DirectoryError as e:
            logger.warning(f"Group lookup for {group} failed: {e}")
            outcome.group_failures[group] = str(e)


def outcome_message(spec: AccountSpec, outcome: ProvisioningOutcome) -> str:
    if outcome.account_created:
        message = f"Account {spec.username} created at {outcome.distinguished_name}"
    else:
        message = f"Account {spec.username} already existed at {outcome.distinguished_name}; memberships reconciled"
    if outcome.groups_applied:
        message += f"; groups applied: {', '.join(outcome.groups_applied)}"
    if outcome.group_failures:
        message += f"; groups failed: {', '.join(outcome.group_failures)}"
    return message


def provision_employee_account(config: DirectoryConnectionConfig, spec: AccountSpec,
                               audit_sink=None, performed_by: str = 'system',
                               error_handling: Optional[Dict[str, Any]] = None,
                               session_factory=None) -> ProvisioningOutcome:
    """
    Open a dedicated session, provision the account and emit an audit event.

    Raises:
        ValidationError, ProvisioningError, DirectoryError: On fatal failures,
            after the failure has been reported to the audit sink
    """
    validate_account_spec(spec)
    encode_secret(spec.password)

    try:
        kwargs = {'session_factory': session_factory} if session_factory else {}
        session = open_session(config, error_handling, **kwargs)
        outcome = provision_account(session, spec, config)
    except Exception as e:
        emit_event(audit_sink, AuditEvent.now(
            employee_id=spec.employee_id or spec.username,
            action_type='AD_ACCOUNT_PROVISION',
            status='failure',
            message=f"Provisioning {spec.username} failed: {e}",
            performed_by=performed_by
        ))
        raise

    emit_event(audit_sink, AuditEvent.now(
        employee_id=spec.employee_id or spec.username,
        action_type='AD_ACCOUNT_CREATED' if outcome.account_created else 'AD_ACCOUNT_RECONCILED',
        status='success' if outcome.fully_applied else 'partial',
        message=outcome_message(spec, outcome),
        performed_by=performed_by
    ))
    return outcome

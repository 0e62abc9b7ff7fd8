"""
Locating and creating containers and groups in the directory tree.

Organizational units are verified and, when missing, created parent-first.
Security groups are looked up across an ordered list of candidate bases.
"""

import logging
from typing import List

from ldap3 import MODIFY_ADD

from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import (
    AlreadyExistsError,
    DirectoryError,
    GroupMembershipError,
    GroupNotFoundError,
    NotFoundError,
)
from directory_sync.identity import escape_filter_value, rdn_attribute, rdn_value, split_dn

logger = logging.getLogger(__name__)

ORGANIZATIONAL_UNIT_CLASSES = ['top', 'organizationalUnit']


def is_container_path(dn: str) -> bool:
    """True if the DN names an organizational unit."""
    return bool(dn) and rdn_attribute(dn) == 'OU'


def ensure_container_exists(session, container_dn: str, config: DirectoryConnectionConfig) -> bool:
    """
    Verify an organizational unit exists, creating it and any missing parents.

    Calling this twice on the same path is idempotent: the second call finds
    the container and issues no create.

    Args:
        session: Bound directory session
        container_dn: DN of the organizational unit
        config: Directory connection configuration

    Returns:
        True if the container was created, False if it already existed

    Raises:
        NotFoundError: If the missing container is not an organizational unit
        DirectoryError: Any other search or creation failure
    """
    try:
        for _ in session.search(container_dn, '(objectClass=*)', 'base', ['distinguishedName'], size_limit=1):
            logger.debug(f"Container exists: {container_dn}")
            return False
    except NotFoundError:
        pass
    logger.info(f"Container missing: {container_dn}")

    if not is_container_path(container_dn):
        raise NotFoundError(f"Cannot create non-OU container {container_dn}",
                            code=32, operation='create container')

    _, parent_dn = split_dn(container_dn)
    if is_container_path(parent_dn):
        ensure_container_exists(session, parent_dn, config)

    try:
        session.add(container_dn, ORGANIZATIONAL_UNIT_CLASSES, {'ou': rdn_value(container_dn)})
    except AlreadyExistsError:
        # created concurrently by another actor
        logger.info(f"Container appeared during creation: {container_dn}")
        return False
    logger.info(f"Created organizational unit {container_dn}")
    return True


def group_search_bases(config: DirectoryConnectionConfig) -> List[str]:
    """Candidate bases for group lookup, in the order they are tried."""
    bases = []
    if config.working_ou:
        bases.append(config.working_ou)
    bases.extend([
        config.base_dn,
        f"CN=Users,{config.base_dn}",
        f"CN=Builtin,{config.base_dn}",
    ])
    return bases


def find_group(session, group_name: str, config: DirectoryConnectionConfig) -> str:
    """
    Locate a group by name.

    Returns:
        The group's distinguished name

    Raises:
        GroupNotFoundError: If no candidate base contains the group
    """
    search_filter = f"(&(objectClass=group)(cn={escape_filter_value(group_name)}))"
    searched = []
    for base in group_search_bases(config):
        searched.append(base)
        try:
            for entry in session.search(base, search_filter, 'sub', ['distinguishedName'], size_limit=1):
                logger.debug(f"Found group {group_name} at {entry.dn} (base {base})")
                return entry.dn
        except NotFoundError:
            logger.debug(f"Search base {base} does not exist")
    logger.warning(f"Group {group_name} not found in any of {len(searched)} search bases")
    raise GroupNotFoundError(group_name, searched)


def add_member_to_group(session, member_dn: str, group_name: str, config: DirectoryConnectionConfig) -> str:
    """
    Add a member to a group, treating an existing membership as success.

    Returns:
        The group's distinguished name

    Raises:
        GroupNotFoundError: If the group cannot be located
        GroupMembershipError: If the membership modification fails
    """
    group_dn = find_group(session, group_name, config)
    try:
        session.modify(group_dn, {'member': [(MODIFY_ADD, [member_dn])]})
        logger.info(f"Added {member_dn} to group {group_name}")
    except AlreadyExistsError:
        logger.info(f"{member_dn} is already a member of {group_name}")
    except DirectoryError as e:
        raise GroupMembershipError(group_name, e)
    return group_dn

#!/usr/bin/env python3
"""
Unit tests for container creation and group lookup against the fake directory.
"""

import os
import sys
import unittest

from ldap3.utils.dn import escape_rdn

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fake_directory import BASE_DN, FakeDirectory

from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import (
    DirectoryError,
    GroupMembershipError,
    GroupNotFoundError,
    NotFoundError,
)
from directory_sync.resolver import (
    add_member_to_group,
    ensure_container_exists,
    find_group,
    group_search_bases,
)

WORKING_OU = f"OU=Staff,{BASE_DN}"
USER_DN = f"CN=Jane Doe,CN=Users,{BASE_DN}"


def make_config(**overrides):
    values = {
        'server': 'dc01.corp.local',
        'base_dn': BASE_DN,
        'bind_account': 'svc-sync',
        'bind_secret': 'Secret#2024',
        'working_ou': WORKING_OU,
    }
    values.update(overrides)
    return DirectoryConnectionConfig.from_dict(values)


class ResolverTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.config = make_config()
        self.session = self.directory.session_factory(self.config)
        self.session.open()
        self.session.bind()


class TestEnsureContainerExists(ResolverTestCase):

    def test_creates_missing_parents_first(self):
        target = f"OU=Jakarta,OU=Branches,{BASE_DN}"

        created = ensure_container_exists(self.session, target, self.config)

        self.assertTrue(created)
        self.assertEqual(self.directory.mutations, [
            ('add', f"OU=Branches,{BASE_DN}"),
            ('add', target),
        ])
        self.assertEqual(self.directory.get(target)['ou'], 'Jakarta')

    def test_special_characters_stored_unescaped(self):
        for department in ('R&D, Ops', 'C++ Team'):
            with self.subTest(department=department):
                target = f"OU={escape_rdn(department)},{BASE_DN}"

                self.assertTrue(ensure_container_exists(self.session, target, self.config))

                self.assertEqual(self.directory.get(target)['ou'], department)
                self.assertFalse(ensure_container_exists(self.session, target, self.config))

    def test_second_call_issues_no_create(self):
        target = f"OU=Jakarta,OU=Branches,{BASE_DN}"
        ensure_container_exists(self.session, target, self.config)
        mutations_after_first = self.directory.mutation_count

        created = ensure_container_exists(self.session, target, self.config)

        self.assertFalse(created)
        self.assertEqual(self.directory.mutation_count, mutations_after_first)

    def test_existing_container_untouched(self):
        self.directory.add_ou(WORKING_OU)
        self.assertFalse(ensure_container_exists(self.session, WORKING_OU, self.config))
        self.assertEqual(self.directory.mutation_count, 0)

    def test_non_ou_container_not_created(self):
        with self.assertRaises(NotFoundError):
            ensure_container_exists(self.session, f"CN=Special,{BASE_DN}", self.config)
        self.assertEqual(self.directory.mutation_count, 0)

    def test_concurrent_creation_treated_as_existing(self):
        from directory_sync.errors import AlreadyExistsError
        target = f"OU=Race,{BASE_DN}"
        self.directory.fail('add', target, AlreadyExistsError('entry already exists', code=68))

        self.assertFalse(ensure_container_exists(self.session, target, self.config))


class TestFindGroup(ResolverTestCase):

    def test_candidate_bases_in_order(self):
        self.assertEqual(group_search_bases(self.config), [
            WORKING_OU,
            BASE_DN,
            f"CN=Users,{BASE_DN}",
            f"CN=Builtin,{BASE_DN}",
        ])

    def test_without_working_ou(self):
        self.assertEqual(group_search_bases(make_config(working_ou=''))[0], BASE_DN)

    def test_found_under_domain_root_when_working_ou_missing(self):
        group_dn = f"CN=VPN-USERS,OU=Groups,{BASE_DN}"
        self.directory.add_ou(f"OU=Groups,{BASE_DN}")
        self.directory.add_group(group_dn)

        self.assertEqual(find_group(self.session, 'vpn-users', self.config), group_dn)

    def test_exhausted_bases_reported_in_order(self):
        self.directory.add_ou(WORKING_OU)

        with self.assertRaises(GroupNotFoundError) as context:
            find_group(self.session, 'Nonexistent', self.config)

        self.assertEqual(context.exception.searched_bases, group_search_bases(self.config))

    def test_search_failure_other_than_missing_base_propagates(self):
        self.directory.add_ou(WORKING_OU)
        self.directory.fail('search', WORKING_OU, DirectoryError('busy', code=51))
        with self.assertRaises(DirectoryError):
            find_group(self.session, 'VPN-USERS', self.config)


class TestAddMemberToGroup(ResolverTestCase):

    def setUp(self):
        super().setUp()
        self.group_dn = f"CN=VPN-USERS,CN=Users,{BASE_DN}"
        self.directory.add_group(self.group_dn)
        self.directory.add_user(USER_DN, 'MTI000101', 'Jane Doe')

    def test_adds_member(self):
        self.assertEqual(add_member_to_group(self.session, USER_DN, 'VPN-USERS', self.config), self.group_dn)
        self.assertEqual(self.directory.get(self.group_dn)['member'], [USER_DN])

    def test_existing_membership_is_success(self):
        add_member_to_group(self.session, USER_DN, 'VPN-USERS', self.config)

        add_member_to_group(self.session, USER_DN, 'VPN-USERS', self.config)

        self.assertEqual(self.directory.get(self.group_dn)['member'], [USER_DN])

    def test_modify_failure_wrapped(self):
        self.directory.fail('modify', self.group_dn, DirectoryError('insufficient access', code=50))
        with self.assertRaises(GroupMembershipError) as context:
            add_member_to_group(self.session, USER_DN, 'VPN-USERS', self.config)
        self.assertEqual(context.exception.group_name, 'VPN-USERS')


if __name__ == '__main__':
    unittest.main()

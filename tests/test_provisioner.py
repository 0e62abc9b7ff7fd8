#!/usr/bin/env python3
"""
Unit tests for account provisioning against the fake directory.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fake_directory import BASE_DN, FakeDirectory

from directory_sync.audit import MemoryAuditSink
from directory_sync.config import DirectoryConnectionConfig
from directory_sync.errors import (
    AuthenticationError,
    DirectoryError,
    DirectoryTimeoutError,
    ProvisioningError,
    ValidationError,
)
from directory_sync.models import AccountSpec
from directory_sync.provisioner import (
    build_user_attributes,
    provision_account,
    provision_employee_account,
    requested_groups,
)

WORKING_OU = f"OU=Staff,{BASE_DN}"
VPN_GROUP = f"CN=VPN-USERS,CN=Users,{BASE_DN}"
ACL_GROUP = f"CN=ACL-FINANCE,OU=Groups,{BASE_DN}"


def make_config(**overrides):
    values = {
        'server': 'dc01.corp.local',
        'base_dn': BASE_DN,
        'domain': 'corp.local',
        'bind_account': 'svc-sync',
        'bind_secret': 'Secret#2024',
        'working_ou': WORKING_OU,
    }
    values.update(overrides)
    return DirectoryConnectionConfig.from_dict(values)


def make_spec(**overrides):
    values = dict(
        username='jdoe',
        password='Welcome#2024',
        display_name='Jane Doe',
        first_name='Jane',
        last_name='Doe',
        email='jane.doe@corp.local',
        department='Finance',
        employee_id='MTI000101',
        groups=['ACL-FINANCE'],
    )
    values.update(overrides)
    return AccountSpec(**values)


class ProvisionerTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.directory.add_ou(f"OU=Groups,{BASE_DN}")
        self.directory.add_group(VPN_GROUP)
        self.directory.add_group(ACL_GROUP)
        self.directory.mutations.clear()
        self.config = make_config()

    def open_session(self):
        session = self.directory.session_factory(self.config)
        session.open()
        session.bind()
        return session


class TestProvisionAccount(ProvisionerTestCase):

    def test_creates_account_in_working_ou(self):
        outcome = provision_account(self.open_session(), make_spec(), self.config)

        expected_dn = f"CN=Jane Doe,{WORKING_OU}"
        self.assertTrue(outcome.account_created)
        self.assertEqual(outcome.distinguished_name, expected_dn)
        self.assertEqual(outcome.container_dn, WORKING_OU)
        self.assertTrue(self.directory.exists(WORKING_OU))

        entry = self.directory.get(expected_dn)
        self.assertEqual(entry['objectClass'], ['top', 'person', 'organizationalPerson', 'user'])
        self.assertEqual(entry['userPrincipalName'], 'jdoe@corp.local')
        self.assertEqual(entry['unicodePwd'], '"Welcome#2024"'.encode('utf-16-le'))
        self.assertEqual(outcome.groups_applied, ['ACL-FINANCE', 'VPN-USERS'])
        self.assertIn(expected_dn, self.directory.get(VPN_GROUP)['member'])
        self.assertIn(expected_dn, self.directory.get(ACL_GROUP)['member'])

    def test_second_run_creates_nothing(self):
        provision_account(self.open_session(), make_spec(), self.config)
        mutations_after_first = self.directory.mutation_count

        outcome = provision_account(self.open_session(), make_spec(), self.config)

        self.assertFalse(outcome.account_created)
        self.assertEqual(outcome.groups_applied, ['ACL-FINANCE', 'VPN-USERS'])
        self.assertEqual(self.directory.mutation_count, mutations_after_first)

    def test_missing_group_is_soft_failure(self):
        outcome = provision_account(self.open_session(), make_spec(groups=['ACL-MISSING']), self.config)

        self.assertTrue(outcome.account_created)
        self.assertEqual(outcome.groups_applied, ['VPN-USERS'])
        self.assertIn('ACL-MISSING', outcome.group_failures)
        self.assertFalse(outcome.fully_applied)

    def test_non_ou_container_falls_back_to_users(self):
        spec = make_spec(container_dn=f"CN=Special,{BASE_DN}")

        outcome = provision_account(self.open_session(), spec, self.config)

        self.assertEqual(outcome.container_dn, f"CN=Users,{BASE_DN}")
        self.assertEqual(outcome.distinguished_name, f"CN=Jane Doe,CN=Users,{BASE_DN}")

    def test_short_password_rejected_before_any_write(self):
        with self.assertRaises(ValidationError):
            provision_account(self.open_session(), make_spec(password='abc'), self.config)
        self.assertEqual(self.directory.mutation_count, 0)

    def test_create_failure_is_fatal(self):
        self.directory.add_ou(WORKING_OU)
        self.directory.fail('add', f"CN=Jane Doe,{WORKING_OU}", DirectoryError('unwilling', code=53))

        with self.assertRaises(ProvisioningError) as context:
            provision_account(self.open_session(), make_spec(), self.config)
        self.assertEqual(context.exception.username, 'jdoe')

    def test_timeouts_keep_their_type(self):
        self.directory.add_ou(WORKING_OU)
        cases = [
            ('search', BASE_DN),
            ('add', f"CN=Jane Doe,{WORKING_OU}"),
        ]
        for operation, dn in cases:
            with self.subTest(operation=operation):
                self.directory.fail(operation, dn, DirectoryTimeoutError('time limit exceeded', code=3))
                session = self.open_session()

                with self.assertRaises(DirectoryTimeoutError):
                    provision_account(session, make_spec(), self.config)
                self.assertTrue(session.closed)
        self.assertFalse(self.directory.exists(f"CN=Jane Doe,{WORKING_OU}"))

    def test_session_closed_afterwards(self):
        session = self.open_session()
        provision_account(session, make_spec(), self.config)
        self.assertTrue(session.closed)


class TestAttributes(unittest.TestCase):

    def test_invalid_email_skipped(self):
        attributes = build_user_attributes(make_spec(email='not-an-email', company=''), make_config())
        self.assertNotIn('mail', attributes)
        self.assertNotIn('company', attributes)
        self.assertEqual(attributes['givenName'], 'Jane')
        self.assertEqual(attributes['userAccountControl'], 512)

    def test_baseline_group_not_duplicated(self):
        groups = requested_groups(make_spec(groups=['vpn-users', 'ACL-FINANCE']), make_config())
        self.assertEqual(groups, ['vpn-users', 'ACL-FINANCE'])


class TestProvisionEmployeeAccount(ProvisionerTestCase):

    def test_emits_created_event(self):
        sink = MemoryAuditSink()

        provision_employee_account(self.config, make_spec(), audit_sink=sink, performed_by='hr-admin',
                                   session_factory=self.directory.session_factory)

        self.assertEqual(len(sink.events), 1)
        event = sink.events[0]
        self.assertEqual(event.action_type, 'AD_ACCOUNT_CREATED')
        self.assertEqual(event.status, 'success')
        self.assertEqual(event.performed_by, 'hr-admin')
        self.assertNotIn('Welcome#2024', event.message)

    def test_existing_account_reconciled_message(self):
        provision_employee_account(self.config, make_spec(), session_factory=self.directory.session_factory)
        sink = MemoryAuditSink()

        provision_employee_account(self.config, make_spec(), audit_sink=sink,
                                   session_factory=self.directory.session_factory)

        self.assertEqual(sink.events[0].action_type, 'AD_ACCOUNT_RECONCILED')
        self.assertIn('already existed', sink.events[0].message)

    def test_bind_failure_reported_and_raised(self):
        self.directory.open_error = AuthenticationError('rejected', code=49)
        sink = MemoryAuditSink()

        with self.assertRaises(AuthenticationError):
            provision_employee_account(self.config, make_spec(), audit_sink=sink,
                                       session_factory=self.directory.session_factory)

        self.assertEqual(sink.events[0].status, 'failure')

    def test_failing_sink_does_not_break_provisioning(self):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError('sink down')

        outcome = provision_employee_account(self.config, make_spec(), audit_sink=BrokenSink(),
                                             session_factory=self.directory.session_factory)
        self.assertTrue(outcome.account_created)


if __name__ == '__main__':
    unittest.main()

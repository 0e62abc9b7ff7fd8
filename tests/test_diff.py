#!/usr/bin/env python3
"""
Unit tests for field normalisation and diff computation.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.diff import (
    compute_field_diff,
    is_valid_employee_id,
    is_valid_phone_number,
    standardize_phone_number,
)
from directory_sync.models import DirectoryAttributes, FieldChange, HrRecord

MANAGER_DN = 'CN=Sari Wijaya,OU=Staff,DC=corp,DC=local'


def make_current(**overrides):
    values = dict(
        employee_id='E1',
        distinguished_name='CN=Budi Santoso,OU=Staff,DC=corp,DC=local',
        department='IT',
        title='Developer',
    )
    values.update(overrides)
    return DirectoryAttributes(**values)


class TestComputeFieldDiff(unittest.TestCase):

    def test_department_change_only(self):
        record = HrRecord(employee_id='E1', department='ICT', title='Developer')

        diff = compute_field_diff(record, make_current())

        self.assertEqual(diff, {'department': FieldChange(current='IT', proposed='ICT')})

    def test_identical_record_gives_empty_diff(self):
        record = HrRecord(employee_id='E1', department='IT', title='Developer', mobile_number='081234567890')
        current = make_current(mobile='6281234567890', manager=MANAGER_DN)

        self.assertEqual(compute_field_diff(record, current, MANAGER_DN), {})

    def test_surrounding_whitespace_ignored(self):
        record = HrRecord(employee_id='E1', department=' IT ', title='Developer')
        self.assertEqual(compute_field_diff(record, make_current(title='Developer  ')), {})

    def test_empty_hr_value_never_clears_directory(self):
        record = HrRecord(employee_id='E1', department='', title='')
        self.assertEqual(compute_field_diff(record, make_current()), {})

    def test_manager_dn_proposed_when_resolved(self):
        record = HrRecord(employee_id='E1', department='IT', title='Developer', manager_name='Sari Wijaya')

        diff = compute_field_diff(record, make_current(), MANAGER_DN)

        self.assertEqual(diff['manager'].proposed, MANAGER_DN)
        self.assertEqual(diff['manager'].current, '')

    def test_unresolved_manager_produces_no_diff(self):
        record = HrRecord(employee_id='E1', department='IT', title='Developer', manager_name='Unknown Person')
        self.assertNotIn('manager', compute_field_diff(record, make_current(), None))

    def test_mobile_standardized(self):
        record = HrRecord(employee_id='E1', department='IT', title='Developer', mobile_number='0812-3456-7890')

        diff = compute_field_diff(record, make_current(mobile='081234567890'))

        self.assertEqual(diff['mobile'], FieldChange(current='081234567890', proposed='6281234567890'))

    def test_invalid_mobile_ignored(self):
        record = HrRecord(employee_id='E1', department='IT', title='Developer', mobile_number='12345')
        self.assertEqual(compute_field_diff(record, make_current()), {})


class TestPhoneNumbers(unittest.TestCase):

    def test_valid_numbers(self):
        self.assertTrue(is_valid_phone_number('081234567890'))
        self.assertTrue(is_valid_phone_number('+62 812 3456 7890'))
        self.assertFalse(is_valid_phone_number('0812'))
        self.assertFalse(is_valid_phone_number('4412345678901'))
        self.assertFalse(is_valid_phone_number(''))

    def test_standardize(self):
        self.assertEqual(standardize_phone_number('0812-3456-7890'), '6281234567890')
        self.assertEqual(standardize_phone_number('+62 812 3456 7890'), '6281234567890')
        self.assertEqual(standardize_phone_number('0612345678', country_code='31'), '31612345678')


class TestEmployeeIds(unittest.TestCase):

    def test_patterns(self):
        self.assertTrue(is_valid_employee_id('MTI000101'))
        self.assertTrue(is_valid_employee_id('104233'))
        self.assertFalse(is_valid_employee_id(''))
        self.assertFalse(is_valid_employee_id('not an id'))


if __name__ == '__main__':
    unittest.main()

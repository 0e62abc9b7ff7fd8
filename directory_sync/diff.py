"""
Field normalisation and diff computation between HR and directory state.
"""

import logging
import re
from typing import Optional

from directory_sync.models import DirectoryAttributes, FieldChange, FieldDiff, HrRecord

logger = logging.getLogger(__name__)

# Directory attributes compared on every pass
TRACKED_ATTRIBUTES = ('department', 'title', 'manager', 'mobile')

EMPLOYEE_ID_PATTERN = re.compile(r'^[A-Za-z]{0,4}\d{4,10}$')


def normalize(value: Optional[str]) -> str:
    return '' if value is None else str(value).strip()


def is_valid_employee_id(value: Optional[str]) -> bool:
    return bool(value) and bool(EMPLOYEE_ID_PATTERN.match(value.strip()))


def is_valid_phone_number(number: Optional[str], country_code: str = '62') -> bool:
    """10 to 15 digits, starting with a trunk prefix 0 or the country code."""
    if not number:
        return False
    cleaned = re.sub(r'[^\d+]', '', str(number))
    digits = cleaned.lstrip('+')
    if not 10 <= len(digits) <= 15:
        return False
    return digits.startswith('0') or digits.startswith(country_code)


def standardize_phone_number(number: str, country_code: str = '62') -> str:
    """``0812-3456-7890`` -> ``6281234567890``"""
    digits = re.sub(r'\D', '', str(number))
    if digits.startswith(country_code):
        return digits
    return country_code + digits.lstrip('0')


def proposed_values(record: HrRecord, manager_dn: Optional[str], country_code: str = '62') -> dict:
    """
    Directory values the HR record asks for, keyed by attribute.

    Attributes the HR record cannot vouch for (invalid phone, unresolved
    manager) map to an empty string.
    """
    mobile = ''
    if is_valid_phone_number(record.mobile_number, country_code):
        mobile = standardize_phone_number(record.mobile_number, country_code)
    elif record.mobile_number:
        logger.debug(f"Ignoring invalid mobile number for {record.employee_id}")

    return {
        'department': normalize(record.department),
        'title': normalize(record.title),
        'manager': normalize(manager_dn),
        'mobile': mobile,
    }


def compute_field_diff(record: HrRecord, current: DirectoryAttributes,
                       manager_dn: Optional[str] = None, country_code: str = '62') -> FieldDiff:
    """
    Compare the tracked fields of an HR record with the directory entry.

    A field is present in the result only when the proposed value is non-empty
    and differs from the current one, so the result can be written as-is.
    """
    diff: FieldDiff = {}
    for attribute, proposed in proposed_values(record, manager_dn, country_code).items():
        if not proposed:
            continue
        current_value = normalize(current.value_of(attribute))
        if proposed != current_value:
            diff[attribute] = FieldChange(current=current_value, proposed=proposed)
            logger.debug(f"[DIFF] {attribute} mismatch for {record.employee_id}: "
                         f"HR='{proposed}' directory='{current_value}'")
    return diff

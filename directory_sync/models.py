"""
Records exchanged between the HR source, the diff engine and the provisioner.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any


class SyncMode(Enum):
    TEST = 'test'
    MANUAL = 'manual'
    FULL = 'full'

    @property
    def mutates(self) -> bool:
        return self is not SyncMode.TEST


class SyncAction(Enum):
    SKIPPED = 'Skipped'
    WOULD_UPDATE = 'WouldUpdate'
    UPDATED = 'Updated'
    FAILED = 'Failed'


@dataclass(frozen=True)
class HrRecord:
    """Authoritative snapshot of one employee from the HR system."""

    employee_id: str
    display_name: str = ''
    department: str = ''
    title: str = ''
    manager_name: str = ''
    mobile_number: str = ''
    supervisor_id: str = ''

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'HrRecord':
        def text(key):
            value = values.get(key)
            return '' if value is None else str(value).strip()

        return cls(
            employee_id=text('employee_id'),
            display_name=text('display_name'),
            department=text('department'),
            title=text('title'),
            manager_name=text('manager_name'),
            mobile_number=text('mobile_number'),
            supervisor_id=text('supervisor_id'),
        )


@dataclass(frozen=True)
class DirectoryAttributes:
    """Observed state of a directory user entry during one sync pass."""

    employee_id: str
    distinguished_name: str
    account_name: str = ''
    display_name: str = ''
    department: str = ''
    title: str = ''
    manager: str = ''
    mobile: str = ''

    def value_of(self, attribute: str) -> str:
        return getattr(self, attribute, '') or ''


@dataclass(frozen=True)
class FieldChange:
    current: str
    proposed: str


# Directory attribute name -> change; only differing fields are present
FieldDiff = Dict[str, FieldChange]


@dataclass
class SyncResult:
    """Outcome for one employee in one sync pass."""

    employee_id: str
    display_name: str
    diff: FieldDiff = field(default_factory=dict)
    action: SyncAction = SyncAction.SKIPPED
    error: Optional[str] = None
    distinguished_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'employeeId': self.employee_id,
            'displayName': self.display_name,
            'distinguishedName': self.distinguished_name,
            'diff': {name: {'current': change.current, 'proposed': change.proposed}
                     for name, change in self.diff.items()},
            'action': self.action.value,
            'error': self.error,
        }


@dataclass
class AccountSpec:
    """Desired account for a new hire."""

    username: str
    password: str
    display_name: str
    first_name: str = ''
    last_name: str = ''
    email: str = ''
    title: str = ''
    department: str = ''
    company: str = ''
    office: str = ''
    employee_id: str = ''
    container_dn: str = ''
    groups: List[str] = field(default_factory=list)

    def __repr__(self):
        return (f"AccountSpec(username={self.username!r}, display_name={self.display_name!r}, "
                f"container_dn={self.container_dn!r}, groups={self.groups!r})")


@dataclass
class ProvisioningOutcome:
    account_created: bool
    distinguished_name: str
    groups_applied: List[str] = field(default_factory=list)
    group_failures: Dict[str, str] = field(default_factory=dict)
    container_dn: Optional[str] = None

    @property
    def fully_applied(self) -> bool:
        return not self.group_failures

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

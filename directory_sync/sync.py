"""
HR to directory synchronization.

Fetches HR records, reads the matching directory entry for each, computes the
field diff and, outside test mode, writes it back. Employees are processed one
after another over a single session; one employee's failure becomes a Failed
result and the pass carries on.
"""

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional

from ldap3 import MODIFY_REPLACE
from ldap3.utils.dn import escape_rdn

from directory_sync.audit import AuditEvent, emit_event
from directory_sync.config import DirectoryConnectionConfig
from directory_sync.diff import compute_field_diff, is_valid_employee_id
from directory_sync.errors import (
    DirectoryConnectionError,
    DirectoryError,
    DirectoryTimeoutError,
    SyncInProgressError,
    ValidationError,
)
from directory_sync.hr_source import HrRecordSource
from directory_sync.identity import escape_filter_value, split_dn
from directory_sync.ldap_client import DirectorySession, first_value, open_session
from directory_sync.models import (
    DirectoryAttributes,
    FieldDiff,
    HrRecord,
    SyncAction,
    SyncMode,
    SyncResult,
)
from directory_sync.resolver import ensure_container_exists

logger = logging.getLogger(__name__)

USER_ATTRIBUTES = [
    'sAMAccountName', 'displayName', 'employeeID', 'department',
    'title', 'manager', 'mobile', 'distinguishedName'
]

NO_DIRECTORY_MATCH = 'no directory match'


def summarize_results(results: Iterable[SyncResult]) -> Dict[str, int]:
    counts = Counter(result.action.value for result in results)
    return {action.value: counts.get(action.value, 0) for action in SyncAction}


class SyncOrchestrator:
    """
    Runs sync passes in test, manual or full mode.

    At most one pass runs at a time: every entry point, and the scheduler,
    shares ``run_lock``.
    """

    def __init__(self, config: DirectoryConnectionConfig, hr_source: HrRecordSource,
                 audit_sink=None, error_handling: Optional[Dict[str, Any]] = None,
                 session_factory=DirectorySession, run_lock=None, performed_by: str = 'system'):
        """
        Args:
            config: Directory connection configuration
            hr_source: Source of authoritative HR records
            audit_sink: Receiver for audit events (optional)
            error_handling: ``error_handling`` config section for session retries
            session_factory: Callable building a session from the config
            run_lock: Lock shared with the scheduler; a new one if None
            performed_by: Actor recorded on audit events
        """
        self.config = config
        self.hr_source = hr_source
        self.audit_sink = audit_sink
        self.error_handling = error_handling or {}
        self.session_factory = session_factory
        self.run_lock = run_lock or threading.Lock()
        self.performed_by = performed_by

        self._cancel_requested = threading.Event()
        self._session = None
        self._open_error = None
        self.last_run_stats: Dict[str, Any] = {}

    # Trigger surface

    def test(self) -> List[SyncResult]:
        """Dry run over all records; never mutates the directory."""
        return self.run_sync(SyncMode.TEST)

    def manual(self, employee_ids: List[str]) -> List[SyncResult]:
        """Apply changes for the selected employees only."""
        if not employee_ids or not isinstance(employee_ids, (list, tuple, set)):
            raise ValidationError("employee_ids must be a non-empty list")
        return self.run_sync(SyncMode.MANUAL, list(employee_ids))

    def full(self) -> List[SyncResult]:
        """Apply changes for all records."""
        return self.run_sync(SyncMode.FULL)

    def cancel(self) -> None:
        """Stop the running pass before its next employee."""
        self._cancel_requested.set()

    @property
    def running(self) -> bool:
        return self.run_lock.locked()

    def run_sync(self, mode: SyncMode, employee_ids: Optional[List[str]] = None,
                 blocking: bool = False) -> List[SyncResult]:
        """
        Run one sync pass.

        Raises:
            SyncInProgressError: If another pass holds the run guard and
                ``blocking`` is False
        """
        if not self.run_lock.acquire(blocking=blocking):
            raise SyncInProgressError("A sync pass is already running")
        try:
            return self._run_pass(mode, employee_ids)
        finally:
            self.run_lock.release()

    # Pass

    def _run_pass(self, mode: SyncMode, employee_ids: Optional[List[str]]) -> List[SyncResult]:
        self._cancel_requested.clear()
        self._open_error = None
        start_time = datetime.now()
        logger.info(f"Starting {mode.value} sync")

        if mode is SyncMode.MANUAL:
            records = self.hr_source.fetch_records(employee_ids or [])
        else:
            records = self.hr_source.fetch_all_records()
        logger.info(f"Fetched {len(records)} HR records")

        results: List[SyncResult] = []
        cancelled = False
        try:
            for record in records:
                if self._cancel_requested.is_set():
                    logger.warning(f"Sync cancelled after {len(results)} of {len(records)} records")
                    cancelled = True
                    break
                results.append(self._sync_record(record, mode))
        except KeyboardInterrupt:
            logger.warning(f"Sync interrupted after {len(results)} of {len(records)} records")
            cancelled = True
        finally:
            self._close_session()

        end_time = datetime.now()
        self.last_run_stats = {
            'mode': mode.value,
            'start_time': start_time,
            'end_time': end_time,
            'runtime_seconds': (end_time - start_time).total_seconds(),
            'records': len(records),
            'cancelled': cancelled,
            'actions': summarize_results(results),
        }
        self._log_sync_summary()
        return results

    def _sync_record(self, record: HrRecord, mode: SyncMode) -> SyncResult:
        result = SyncResult(employee_id=record.employee_id, display_name=record.display_name)
        try:
            session = self._get_session()
            current = self.fetch_directory_attributes(session, record.employee_id)
            if current is None:
                logger.warning(f"No directory match for {record.employee_id} ({record.display_name})")
                result.action = SyncAction.FAILED
                result.error = NO_DIRECTORY_MATCH
                return result

            result.display_name = current.display_name or record.display_name
            result.distinguished_name = current.distinguished_name

            manager_dn = self.resolve_manager_dn(session, record)
            result.diff = compute_field_diff(record, current, manager_dn, self.config.phone_country_code)

            if not result.diff:
                result.action = SyncAction.SKIPPED
                return result
            if not mode.mutates:
                result.action = SyncAction.WOULD_UPDATE
                return result

            result.distinguished_name = self._apply_diff(session, current, result.diff)
            result.action = SyncAction.UPDATED
            logger.info(f"Updated {record.employee_id}: {', '.join(result.diff)}")
            self._audit(record, 'success', f"Updated {', '.join(result.diff)} on {result.distinguished_name}")

        except Exception as e:
            if isinstance(e, (DirectoryConnectionError, DirectoryTimeoutError)):
                self._discard_session()
            logger.error(f"Error processing {record.employee_id}: {e}")
            result.action = SyncAction.FAILED
            result.error = str(e)
            if mode.mutates:
                self._audit(record, 'failure', f"Sync failed: {e}")

        return result

    def _apply_diff(self, session, current: DirectoryAttributes, diff: FieldDiff) -> str:
        """Write the diff as replace-modifications; returns the entry's DN afterwards."""
        changes = {attribute: [(MODIFY_REPLACE, [change.proposed])] for attribute, change in diff.items()}
        session.modify(current.distinguished_name, changes)

        dn = current.distinguished_name
        if 'department' in diff and self.config.move_on_department_change:
            dn = self._move_to_department(session, dn, diff['department'].proposed)
        return dn

    def _move_to_department(self, session, dn: str, department: str) -> str:
        parent = self.config.working_ou or self.config.base_dn
        target = f"OU={escape_rdn(department)},{parent}"
        _, current_parent = split_dn(dn)
        if current_parent.lower() == target.lower():
            return dn
        ensure_container_exists(session, target, self.config)
        return session.move(dn, target)

    # Directory reads

    def fetch_directory_attributes(self, session, employee_id: str) -> Optional[DirectoryAttributes]:
        """Read the tracked attributes of the user entry with this employee id."""
        search_filter = f"(&(objectClass=user)(employeeID={escape_filter_value(employee_id)}))"
        for entry in session.search(self.config.base_dn, search_filter, 'sub', USER_ATTRIBUTES, size_limit=1):
            return self._to_directory_attributes(entry, employee_id)
        return None

    @staticmethod
    def _to_directory_attributes(entry, employee_id: str = '') -> DirectoryAttributes:
        attrs = entry.attributes

        def text(name):
            value = first_value(attrs.get(name))
            return '' if value is None else str(value).strip()

        return DirectoryAttributes(
            employee_id=text('employeeID') or employee_id,
            distinguished_name=entry.dn,
            account_name=text('sAMAccountName'),
            display_name=text('displayName'),
            department=text('department'),
            title=text('title'),
            manager=text('manager'),
            mobile=text('mobile'),
        )

    def resolve_manager_dn(self, session, record: HrRecord) -> Optional[str]:
        """
        DN of the employee's manager, from the supervisor id or else the
        manager's display name. Ambiguous or missing matches give None.
        """
        if is_valid_employee_id(record.supervisor_id):
            search_filter = f"(&(objectClass=user)(employeeID={escape_filter_value(record.supervisor_id)}))"
        elif record.manager_name:
            search_filter = f"(&(objectClass=user)(displayName={escape_filter_value(record.manager_name)}))"
        else:
            return None

        matches = [entry.dn for entry in
                   session.search(self.config.base_dn, search_filter, 'sub', ['distinguishedName'], size_limit=2)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(f"Manager of {record.employee_id} is ambiguous; leaving manager unchanged")
        else:
            logger.debug(f"Manager of {record.employee_id} not found in directory")
        return None

    def query_directory_users(self) -> List[Dict[str, Any]]:
        """List tracked attributes of every user entry under the base DN."""
        session = self._open_session()
        try:
            users = []
            for entry in session.search(self.config.base_dn, '(&(objectClass=user)(objectCategory=person))',
                                        'sub', USER_ATTRIBUTES):
                attrs = self._to_directory_attributes(entry)
                users.append({
                    'sAMAccountName': attrs.account_name,
                    'displayName': attrs.display_name,
                    'employeeID': attrs.employee_id,
                    'department': attrs.department,
                    'title': attrs.title,
                    'manager': attrs.manager,
                    'mobile': attrs.mobile,
                    'dn': attrs.distinguished_name,
                })
            logger.info(f"Found {len(users)} directory users under {self.config.base_dn}")
            return users
        finally:
            session.close()

    # Session handling

    def _open_session(self):
        return open_session(self.config, self.error_handling, session_factory=self.session_factory)

    def _get_session(self):
        if self._session is not None:
            return self._session
        if self._open_error is not None:
            # a failed open stays failed for the rest of the pass
            raise self._open_error
        try:
            self._session = self._open_session()
        except DirectoryError as e:
            self._open_error = e
            raise
        return self._session

    def _discard_session(self):
        if self._session is not None:
            logger.info("Discarding directory session after transport failure")
        self._close_session()

    def _close_session(self):
        session, self._session = self._session, None
        if session is not None:
            session.close()

    # Reporting

    def _audit(self, record: HrRecord, status: str, message: str):
        emit_event(self.audit_sink, AuditEvent.now(
            employee_id=record.employee_id,
            action_type='HRIS_SYNC_UPDATE',
            status=status,
            message=message,
            performed_by=self.performed_by
        ))

    def _log_sync_summary(self):
        stats = self.last_run_stats
        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Mode: {stats['mode']}")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"HR records: {stats['records']}")
        for action, count in stats['actions'].items():
            logger.info(f"{action}: {count}")
        if stats['cancelled']:
            logger.warning("Pass was cancelled before all records were processed")

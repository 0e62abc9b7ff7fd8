"""
CSV export of sync results.

Each row carries the current and proposed value of every tracked field; the
columns of fields that did not change are left blank.
"""

import csv
import io
from typing import Iterable, List

from directory_sync.diff import TRACKED_ATTRIBUTES
from directory_sync.models import SyncResult

BASE_COLUMNS = ['employee_id', 'display_name', 'action', 'error', 'distinguished_name']


def csv_columns() -> List[str]:
    columns = list(BASE_COLUMNS)
    for attribute in TRACKED_ATTRIBUTES:
        columns.extend([f"current_{attribute}", f"proposed_{attribute}"])
    return columns


def result_row(result: SyncResult) -> dict:
    row = {
        'employee_id': result.employee_id,
        'display_name': result.display_name,
        'action': result.action.value,
        'error': result.error or '',
        'distinguished_name': result.distinguished_name or '',
    }
    for attribute in TRACKED_ATTRIBUTES:
        change = result.diff.get(attribute)
        row[f"current_{attribute}"] = change.current if change else ''
        row[f"proposed_{attribute}"] = change.proposed if change else ''
    return row


def results_to_csv(results: Iterable[SyncResult]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=csv_columns(), lineterminator='\n')
    writer.writeheader()
    for result in results:
        writer.writerow(result_row(result))
    return buffer.getvalue()


def write_csv_report(results: Iterable[SyncResult], path: str) -> None:
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(results_to_csv(results))

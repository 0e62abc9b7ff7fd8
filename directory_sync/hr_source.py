"""
Boundary to the HR system that owns the authoritative employee records.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

import yaml

from directory_sync.errors import DirectorySyncError
from directory_sync.models import HrRecord

logger = logging.getLogger(__name__)


class HrSourceError(DirectorySyncError):
    """Raised when HR records cannot be fetched."""
    pass


class HrRecordSource(ABC):
    """Read-only access to HR records."""

    @abstractmethod
    def fetch_all_records(self) -> List[HrRecord]:
        pass

    def fetch_records(self, employee_ids: Iterable[str]) -> List[HrRecord]:
        """Records for the given employee ids; unknown ids are ignored."""
        wanted = set(employee_ids)
        return [record for record in self.fetch_all_records() if record.employee_id in wanted]


class InMemoryHrRecordSource(HrRecordSource):

    def __init__(self, records: Iterable[HrRecord]):
        self.records = list(records)

    def fetch_all_records(self) -> List[HrRecord]:
        return list(self.records)


class YamlHrRecordSource(HrRecordSource):
    """
    Reads records from a YAML export of the HR database.

    The file holds either a list of records or a mapping with a ``records``
    list; each record uses the HrRecord field names. Records without an
    employee id are skipped.
    """

    def __init__(self, path: str):
        self.path = path

    def fetch_all_records(self) -> List[HrRecord]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = yaml.safe_load(f) or []
        except FileNotFoundError:
            raise HrSourceError(f"HR records file not found: {self.path}")
        except yaml.YAMLError as e:
            raise HrSourceError(f"Invalid YAML in HR records file: {e}")

        rows = document.get('records', []) if isinstance(document, dict) else document
        if not isinstance(rows, list):
            raise HrSourceError(f"HR records file must contain a list of records: {self.path}")

        records = []
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                logger.warning(f"Skipping HR row {index}: not a mapping")
                continue
            record = HrRecord.from_dict(row)
            if not record.employee_id:
                logger.warning(f"Skipping HR row {index}: missing employee_id")
                continue
            records.append(record)

        logger.info(f"Loaded {len(records)} HR records from {self.path}")
        return records

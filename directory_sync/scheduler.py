"""
Scheduled full syncs.

ScheduleStore persists ``{enabled, frequency, last_run, next_run}`` in a small
YAML file. SyncScheduler polls it on a short interval from an APScheduler
background job and runs a full sync when the next run is due.
"""

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dateutil.relativedelta import relativedelta, SU

from directory_sync.config import ConfigurationError
from directory_sync.errors import SyncInProgressError

logger = logging.getLogger(__name__)

FREQUENCIES = ('daily', 'weekly', 'monthly')
DEFAULT_FREQUENCY = 'daily'

TICK_JOB_ID = 'directory-sync-tick'


def _midnight(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def compute_next_run(frequency: str, from_time: datetime) -> datetime:
    """
    Next scheduled run strictly after ``from_time``.

    daily: next midnight. weekly: next Sunday midnight. monthly: midnight on
    the first of the next month. Unknown frequencies behave as daily.
    """
    frequency = (frequency or '').lower()
    if frequency == 'weekly':
        return _midnight(from_time + timedelta(days=1)) + relativedelta(weekday=SU)
    if frequency == 'monthly':
        return _midnight(from_time) + relativedelta(months=+1, day=1)
    if frequency != 'daily':
        logger.warning(f"Unknown schedule frequency '{frequency}', using daily")
    return _midnight(from_time + timedelta(days=1))


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(f"Ignoring unparseable schedule timestamp: {value!r}")
        return None


@dataclass
class ScheduleState:
    enabled: bool = False
    frequency: str = DEFAULT_FREQUENCY
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'ScheduleState':
        return cls(
            enabled=bool(values.get('enabled', False)),
            frequency=str(values.get('frequency') or DEFAULT_FREQUENCY),
            last_run=_parse_timestamp(values.get('last_run')),
            next_run=_parse_timestamp(values.get('next_run')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'frequency': self.frequency,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'next_run': self.next_run.isoformat() if self.next_run else None,
        }


def is_due(state: ScheduleState, now: datetime) -> bool:
    return state.enabled and state.next_run is not None and now >= state.next_run


class ScheduleStore:
    """
    Single owner of the persisted schedule state.

    The file is created with defaults on first access. Reads and writes are
    serialised by a lock.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> ScheduleState:
        if not os.path.exists(self.path):
            state = ScheduleState()
            self._save(state)
            logger.info(f"Created schedule state file {self.path}")
            return state
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                values = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in schedule file {self.path}: {e}")
        if not isinstance(values, dict):
            raise ConfigurationError(f"Schedule file must contain a mapping: {self.path}")
        return ScheduleState.from_dict(values)

    def _save(self, state: ScheduleState) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(state.to_dict(), f, default_flow_style=False, sort_keys=False)

    def get(self) -> ScheduleState:
        with self._lock:
            return self._load()

    def update_schedule(self, enabled: Optional[bool] = None, frequency: Optional[str] = None,
                        now: Optional[datetime] = None) -> ScheduleState:
        """
        Change ``enabled`` and/or ``frequency`` and recompute ``next_run``.

        Disabling the schedule clears ``next_run``. An unknown frequency is
        stored as given and scheduled as daily.
        """
        if frequency is not None and frequency.lower() not in FREQUENCIES:
            logger.warning(f"Unknown schedule frequency '{frequency}' will run daily")

        with self._lock:
            state = self._load()
            if enabled is not None:
                state.enabled = bool(enabled)
            if frequency is not None:
                state.frequency = frequency.lower()
            state.next_run = compute_next_run(state.frequency, now or datetime.now()) if state.enabled else None
            self._save(state)

        logger.info(f"Schedule updated: enabled={state.enabled}, frequency={state.frequency}, "
                    f"next_run={state.next_run}")
        return state

    def record_run(self, ran_at: datetime) -> ScheduleState:
        """Persist ``last_run`` and the following ``next_run``."""
        with self._lock:
            state = self._load()
            state.last_run = ran_at
            state.next_run = compute_next_run(state.frequency, ran_at) if state.enabled else None
            self._save(state)
        return state

    def ensure_next_run(self, now: datetime) -> ScheduleState:
        """Fill in ``next_run`` for an enabled schedule that has none."""
        with self._lock:
            state = self._load()
            if state.enabled and state.next_run is None:
                state.next_run = compute_next_run(state.frequency, now)
                self._save(state)
        return state


class SyncScheduler:
    """
    Periodic due-check that triggers full syncs.

    A tick that fires while any sync pass is running is dropped, not queued.
    """

    def __init__(self, orchestrator, store: ScheduleStore, interval_seconds: int = 60):
        self.orchestrator = orchestrator
        self.store = store
        self.interval_seconds = interval_seconds
        self._scheduler = None

    def tick(self, now: Optional[datetime] = None) -> bool:
        """
        Run a full sync if one is due.

        Returns:
            True if a sync pass ran (successfully or not)
        """
        now = now or datetime.now()
        state = self.store.ensure_next_run(now)
        if not is_due(state, now):
            return False

        logger.info(f"Scheduled {state.frequency} sync due (next_run={state.next_run})")
        try:
            results = self.orchestrator.full()
        except SyncInProgressError:
            logger.info("Sync pass already running; ignoring scheduler tick")
            return False
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}", exc_info=True)
        else:
            failed = sum(1 for result in results if result.action.value == 'Failed')
            logger.info(f"Scheduled sync processed {len(results)} records ({failed} failed)")

        state = self.store.record_run(now)
        logger.info(f"Next scheduled sync at {state.next_run}")
        return True

    def _safe_tick(self):
        try:
            self.tick()
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._safe_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=TICK_JOB_ID,
            name='Directory sync due-check',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        logger.info(f"Scheduler started (check every {self.interval_seconds}s)")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self.orchestrator.cancel()
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Start the background job and block until interrupted."""
        stop_event = stop_event or threading.Event()
        self.start()
        try:
            while not stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; stopping scheduler")
        finally:
            self.shutdown()

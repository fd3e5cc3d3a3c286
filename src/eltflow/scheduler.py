"""
Interval scheduler for eltflow runs.

The scheduler turns cadence fire times into slots, each a scheduled RunRecord,
and dispatches at most one run at a time. Triggers that arrive while a run is
active stay ``pending`` in a FIFO queue and start, in order, as soon as the
active run finishes.
"""

import logging
import sqlite3
import threading
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from eltflow.cadence import Cadence, ensure_utc
from eltflow.exceptions import ConfigError, RunNotFoundError
from eltflow.models import RunRecord, RunStatus, TriggerKind
from eltflow.resilience import RetryConfig
from eltflow.state import StateDatabase

# A job executes one run: it receives the record to fill in and the event that cancels it
Job = Callable[[RunRecord, threading.Event], RunRecord]
Clock = Callable[[], datetime]


def _parse_start_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value) if value else None
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    try:
        return ensure_utc(datetime.fromisoformat(str(value)))
    except ValueError as e:
        raise ConfigError(f'Invalid start_date "{value}": {e}') from e


@dataclass
class SchedulerConfig:
    """Configuration for the scheduler, read from the ``schedule:`` project section."""

    interval: Union[str, timedelta] = '@daily'
    catchup: bool = False
    max_concurrent_models: int = 1
    start_date: Optional[datetime] = None  # Defaults to the time the scheduler is created
    poll_interval_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        if self.max_concurrent_models < 1:
            raise ConfigError(f'max_concurrent_models must be >= 1, got {self.max_concurrent_models}')
        if self.poll_interval_seconds <= 0:
            raise ConfigError(f'poll_interval_seconds must be > 0, got {self.poll_interval_seconds}')
        self.start_date = _parse_start_date(self.start_date)
        # Fail on a bad or never-firing cadence at load time rather than on the first tick
        anchor = self.start_date or datetime.now(UTC)
        Cadence.parse(self.interval, anchor=anchor).next_after(anchor)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SchedulerConfig':
        """Build a config from a mapping, rejecting unknown keys.

        Raises:
            ConfigError: If a key is unknown or a value is invalid
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f'Unknown schedule option(s): {", ".join(unknown)}')

        retry = data.pop('retry', None) or {}
        try:
            retry_config = RetryConfig(**retry)
        except (TypeError, ValueError) as e:
            raise ConfigError(f'Invalid retry configuration: {e}') from e

        try:
            return cls(**data, retry=retry_config)
        except (TypeError, ValueError) as e:
            raise ConfigError(f'Invalid schedule configuration: {e}') from e


class Scheduler:
    """
    Creates one slot per cadence interval and runs them one at a time.

    Example:
        >>> scheduler = Scheduler(SchedulerConfig(interval='@daily'), job)
        >>> record = scheduler.trigger_now()
        >>> scheduler.wait(record.run_id)
        >>> scheduler.get_run_status(record.run_id)
        <RunStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        config: SchedulerConfig,
        job: Job,
        state_db: Optional[StateDatabase] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.job = job
        self.state_db = state_db
        self._clock = clock or (lambda: datetime.now(UTC))
        self.start_date = ensure_utc(config.start_date or self._clock())
        self.cadence = Cadence.parse(config.interval, anchor=self.start_date)
        self.logger = logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._runs: Dict[str, RunRecord] = {}
        self._slots: Dict[datetime, str] = {}
        self._pending: Deque[str] = deque()
        self._active: Optional[str] = None
        self._cancel_events: Dict[str, threading.Event] = {}
        self._finished: Dict[str, threading.Event] = {}
        self._last_slot: Optional[datetime] = None

        self._stop_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None

    # Triggers

    def tick(self, now: Optional[datetime] = None) -> List[RunRecord]:
        """Create the slots that are due at ``now`` and dispatch if idle.

        Returns:
            The scheduled RunRecords created by this tick
        """
        now = ensure_utc(now or self._clock())
        created = []
        with self._lock:
            for slot in self._due_slots(now):
                record = self._create_slot(slot, now)
                if record is not None:
                    created.append(record)
            self._dispatch()
        return created

    def trigger_now(self) -> RunRecord:
        """Create an ad-hoc manual run outside the cadence; it obeys non-overlap."""
        with self._lock:
            record = RunRecord(trigger=TriggerKind.MANUAL, triggered_at=ensure_utc(self._clock()))
            self._enqueue(record)
            self.logger.info(f'Manual run {record.run_id} triggered')
            self._dispatch()
            return record

    def _due_slots(self, now: datetime) -> List[datetime]:
        if now < self.start_date:
            return []

        if self._last_slot is None:
            if self.config.catchup:
                slots = list(self.cadence.fire_times(self.start_date, now))
            else:
                latest = self.cadence.latest_at_or_before(now)
                slots = [latest] if latest is not None and latest >= self.start_date else []
        else:
            slots = list(self.cadence.fire_times(self._last_slot + timedelta(microseconds=1), now))
            if len(slots) > 1 and not self.config.catchup:
                self.logger.info(f'Catch-up disabled: skipping {len(slots) - 1} missed slot(s) before {slots[-1]}')
                slots = slots[-1:]

        if slots:
            self._last_slot = slots[-1]
        return slots

    def _create_slot(self, slot: datetime, now: datetime) -> Optional[RunRecord]:
        if slot in self._slots:
            return None
        if self.state_db is not None:
            existing = self.state_db.get_run_for_slot(slot)
            if existing is not None:
                self.logger.debug(f'Slot {slot.isoformat()} already has run {existing.run_id}')
                self._slots[slot] = existing.run_id
                return None

        record = RunRecord(trigger=TriggerKind.SCHEDULED, logical_date=slot, triggered_at=now)
        self._slots[slot] = record.run_id
        self._enqueue(record)
        self.logger.info(f'Slot {slot.isoformat()} created as run {record.run_id}')
        return record

    def _enqueue(self, record: RunRecord) -> None:
        self._runs[record.run_id] = record
        self._cancel_events[record.run_id] = threading.Event()
        self._finished[record.run_id] = threading.Event()
        self._pending.append(record.run_id)
        self._persist(record)
        if self._active is not None:
            self.logger.info(
                f'OverlapDeferred: run {record.run_id} stays pending while run {self._active} is running '
                f'({len(self._pending)} queued)'
            )

    # Dispatch

    def _dispatch(self) -> None:
        """Start the oldest pending run if nothing is running. Caller holds the lock."""
        if self._active is not None or not self._pending:
            return

        run_id = self._pending.popleft()
        record = self._runs[run_id]
        record.status = RunStatus.RUNNING
        record.started_at = ensure_utc(self._clock())
        self._active = run_id
        self._persist(record)

        thread = threading.Thread(target=self._execute, args=(record,), name=f'eltflow-run-{run_id}', daemon=True)
        thread.start()

    def _execute(self, record: RunRecord) -> None:
        cancel_event = self._cancel_events[record.run_id]
        label = record.logical_date.isoformat() if record.logical_date else 'manual'
        self.logger.info(f'Starting run {record.run_id} ({label})')
        try:
            self.job(record, cancel_event)
        except Exception as e:
            # A failed slot must never block later slots
            self.logger.error(f'Run {record.run_id} raised: {e}', exc_info=True)
            record.status = RunStatus.FAILED
            record.error = str(e)
        finally:
            with self._lock:
                if not record.status.is_terminal:
                    record.status = RunStatus.FAILED
                    record.error = record.error or 'Run ended without a final status'
                record.completed_at = record.completed_at or ensure_utc(self._clock())
                self._persist(record)
                self._active = None
                self._finished[record.run_id].set()
                self.logger.info(f'Run {record.run_id} finished with status {record.status.value}')
                self._dispatch()

    def _persist(self, record: RunRecord) -> None:
        if self.state_db is None:
            return
        try:
            self.state_db.save_run(record)
        except sqlite3.Error as e:
            self.logger.error(f'Failed to persist run {record.run_id}: {e}')

    # Queries

    def _get(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None and self.state_db is not None:
            record = self.state_db.get_run(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def get_run(self, run_id: str) -> RunRecord:
        return self._get(run_id)

    def get_run_status(self, run_id: str) -> RunStatus:
        """Current status of a run.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        return self._get(run_id).status

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        """Most recent runs first, across this process and the state store."""
        with self._lock:
            runs = {run_id: record for run_id, record in self._runs.items()}
        if self.state_db is not None:
            for record in self.state_db.list_runs(limit=limit):
                runs.setdefault(record.run_id, record)
        ordered = sorted(runs.values(), key=lambda r: r.triggered_at, reverse=True)
        return ordered[:limit]

    @property
    def active_run(self) -> Optional[RunRecord]:
        with self._lock:
            return self._runs[self._active] if self._active else None

    @property
    def pending_runs(self) -> List[RunRecord]:
        with self._lock:
            return [self._runs[run_id] for run_id in self._pending]

    # Control

    def cancel(self, run_id: str) -> None:
        """Cancel a run. A pending run is failed immediately; a running one is signalled."""
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(run_id)
            record = self._runs[run_id]
            if run_id in self._pending:
                self._pending.remove(run_id)
                record.status = RunStatus.FAILED
                record.error = 'Run cancelled'
                record.completed_at = ensure_utc(self._clock())
                self._persist(record)
                self._finished[run_id].set()
                self.logger.info(f'Pending run {run_id} cancelled')
            elif run_id == self._active:
                self._cancel_events[run_id].set()
                self.logger.info(f'Cancellation requested for run {run_id}')

    def wait(self, run_id: str, timeout: Optional[float] = None) -> RunRecord:
        """Block until a run is terminal or ``timeout`` seconds pass, then return it."""
        with self._lock:
            finished = self._finished.get(run_id)
        if finished is None:
            return self._get(run_id)
        finished.wait(timeout)
        return self._get(run_id)

    def start(self) -> None:
        """Tick every ``poll_interval_seconds`` on a background thread."""
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._loop, name='eltflow-scheduler', daemon=True)
        self._loop_thread.start()
        self.logger.info(f'Scheduler started ({self.cadence.expression}, catchup={self.config.catchup})')

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
                next_fire = self.cadence.next_after(ensure_utc(self._clock()))
                self.logger.debug(f'Next slot at {next_fire.isoformat()}')
            except Exception as e:
                # A failed tick must not stop later slots
                self.logger.error(f'Scheduler tick failed: {e}', exc_info=True)
            self._stop_event.wait(self.config.poll_interval_seconds)

    def stop(self, cancel_active: bool = False, timeout: Optional[float] = None) -> None:
        """Stop ticking. Optionally cancel the active run as well."""
        self._stop_event.set()
        if cancel_active:
            active = self.active_run
            if active is not None:
                self.cancel(active.run_id)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout)
            self._loop_thread = None
        self.logger.info('Scheduler stopped')

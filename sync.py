"""
Sync Controller
Walks every settlement month from a start date through the current month,
one worker session at a time, replacing each month in the synced partition
with what the session reported. Progress, completion and cancellation are
pushed to an observer as events.
"""

import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import date
from enum import Enum
from typing import Callable, Deque, List, Optional

from errors import (AlreadySyncing, NoWorkToDo, ObserverUnreachable, SessionOpenFailed,
                    SessionTimeout, SettlementError, StoreUnavailable, StoreWriteError,
                    ValidationError)
from models import Partition
from sessions import SYNC_TIMEOUT_DURATION, SessionHandle, SessionManager, SessionReport
from validator import format_month, normalize_period_key, unit_to_period_key

log = logging.getLogger('settlement')

DEFAULT_START_YEAR = 2011
DEFAULT_START_MONTH = 1

SYNC_FAILURE_DELAY = float(os.getenv('SYNC_FAILURE_DELAY', '0.5'))
OBSERVER_STALE_TIMEOUT = float(os.getenv('OBSERVER_STALE_TIMEOUT', '120'))


class SyncState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETING = 'completing'
    CANCELLING = 'cancelling'
    FAILING_UNIT = 'failing_unit'


def build_sync_queue(from_year: int, from_month: int, today: Optional[date] = None) -> List[str]:
    """Every 'YYYYMM' from (from_year, from_month) through today's month, ascending."""
    today = today or date.today()
    try:
        year, month = int(from_year), int(from_month)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid start date: {from_year!r}/{from_month!r}')
    if not 1 <= month <= 12:
        raise ValidationError(f'Invalid start month: {from_month!r}')

    queue = []
    while (year, month) <= (today.year, today.month):
        queue.append(f'{year:04d}{month:02d}')
        month += 1
        if month > 12:
            month = 1
            year += 1
    return queue


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------

class SyncObserver:
    """Receives controller events. The base class discards them."""

    def notify(self, event: dict):
        log.debug("Sync event (no observer): %s", event.get('type'))

    def touch(self):
        """Mark the observer as alive (called when a run starts)."""


class CallbackObserver(SyncObserver):
    def __init__(self, callback: Callable[[dict], None]):
        self.callback = callback

    def notify(self, event: dict):
        self.callback(event)


class PollingObserver(SyncObserver):
    """Buffers events until the UI polls for them.

    An observer that has not polled for stale_timeout seconds is treated as
    gone: notify raises ObserverUnreachable and the run cancels itself.
    """

    def __init__(self, stale_timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.stale_timeout = OBSERVER_STALE_TIMEOUT if stale_timeout is None else stale_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Deque[dict] = deque()
        self._last_poll = clock()

    def touch(self):
        with self._lock:
            self._last_poll = self._clock()

    def notify(self, event: dict):
        with self._lock:
            age = self._clock() - self._last_poll
            if age > self.stale_timeout:
                raise ObserverUnreachable(f'Observer has not polled for {age:.0f}s')
            self._events.append(event)

    def drain(self) -> List[dict]:
        with self._lock:
            self._last_poll = self._clock()
            events = list(self._events)
            self._events.clear()
        return events


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class SyncController:
    """One sync run at a time over a RecordStore and a SessionManager.

    The run executes on a daemon thread. Shared run state is guarded by
    _lock; store writes happen under _write_lock so cancel() can wait for an
    in-flight write before returning. Each run gets its own cancel event, so
    a cancelled run that is still winding down can never touch a later run.
    """

    def __init__(self, store, sessions: SessionManager, observer: Optional[SyncObserver] = None,
                 timeout: Optional[float] = None, failure_delay: Optional[float] = None,
                 today: Optional[Callable[[], date]] = None):
        self.store = store
        self.sessions = sessions
        self.observer = observer or SyncObserver()
        self.timeout = SYNC_TIMEOUT_DURATION if timeout is None else timeout
        self.failure_delay = SYNC_FAILURE_DELAY if failure_delay is None else failure_delay
        self._today = today or date.today

        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._state = SyncState.IDLE
        self._run_id = 0
        self._cancel_event: Optional[threading.Event] = None
        self._queue: Deque[str] = deque()
        self._current_unit: Optional[str] = None
        self._active: Optional[SessionHandle] = None
        self._pending: Optional[Future] = None
        self._failed: List[str] = []
        self._last_result: Optional[dict] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state != SyncState.IDLE

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def start(self, from_year: Optional[int] = None, from_month: Optional[int] = None) -> dict:
        """Queue every month from the start date through today and begin the run.

        Raises AlreadySyncing while a run is active and NoWorkToDo when the
        range is empty (start date in the future); both leave the state alone.
        """
        from_year = from_year or DEFAULT_START_YEAR
        from_month = from_month or DEFAULT_START_MONTH

        with self._lock:
            if self._state != SyncState.IDLE:
                raise AlreadySyncing('A sync is already in progress')
            queue = build_sync_queue(from_year, from_month, self._today())
            if not queue:
                log.warning("Sync requested from %s/%s: nothing to do", from_year, from_month)
                raise NoWorkToDo(f'No months to sync from {from_year}-{int(from_month):02d}')

            self._run_id += 1
            run_id = self._run_id
            cancel_event = threading.Event()
            self._cancel_event = cancel_event
            self._queue = deque(queue)
            self._failed = []
            self._current_unit = None
            self._last_result = None
            self._state = SyncState.RUNNING
            self.observer.touch()

            t = threading.Thread(target=self._run, args=(run_id, cancel_event),
                                 name=f'sync-run-{run_id}', daemon=True)
            self._thread = t
            t.start()

        log.info("Sync run %d started: %d month(s), %s to %s",
                 run_id, len(queue), format_month(queue[0]), format_month(queue[-1]))
        return {
            'status': 'started',
            'months': len(queue),
            'from': format_month(queue[0]),
            'to': format_month(queue[-1]),
        }

    def cancel(self) -> dict:
        """Stop the active run. Nothing from it is written or reported after this returns."""
        with self._lock:
            if self._state == SyncState.IDLE or self._cancel_event is None:
                return {'status': 'not_syncing'}
            cancel_event = self._cancel_event
        self._stop_run(cancel_event, notify=True)
        return {'status': 'cancelled'}

    def submit_report(self, session_id: str, settlement_month: Optional[str], items,
                      error: Optional[str] = None) -> bool:
        """Hand a session's report to the waiting run.

        Only the currently active session is listened to; anything else is
        discarded and its session closed. Returns True when accepted.
        """
        if error is None and not isinstance(items, list):
            error = 'parse failed'

        with self._lock:
            active, slot = self._active, self._pending
            accepted = (
                active is not None and slot is not None and not slot.done()
                and session_id == active.session_id
                and self._cancel_event is not None and not self._cancel_event.is_set()
            )
            if accepted:
                self._check_report_month(active, settlement_month)
                slot.set_result(SessionReport(session_id, settlement_month, items, error))

        if accepted:
            log.info("Report received for %s (%s)", format_month(active.unit),
                     f'{len(items)} item(s)' if error is None else error)
            return True

        log.warning("Discarding report from inactive session %s (%s)",
                    (session_id or '?')[:8], settlement_month)
        if session_id:
            self.sessions.close_session(session_id)
        return False

    def status(self) -> dict:
        with self._lock:
            return {
                'state': self._state.value,
                'syncing': self._state != SyncState.IDLE,
                'currentMonth': format_month(self._current_unit) if self._current_unit else None,
                'remaining': len(self._queue),
                'failedMonths': list(self._failed),
                'lastResult': self._last_result,
            }

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the run thread. Returns True when no run thread is still alive."""
        t = self._thread
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    # -----------------------------------------------------------------------
    # Run loop
    # -----------------------------------------------------------------------

    def _run(self, run_id: int, cancel_event: threading.Event):
        try:
            while True:
                with self._lock:
                    if cancel_event.is_set():
                        return
                    if not self._queue:
                        break
                    unit = self._queue.popleft()
                    self._current_unit = unit

                error = self._process_unit(unit, cancel_event)
                if error and not cancel_event.is_set():
                    self._fail_unit(unit, error, cancel_event)

            self._finish(run_id, cancel_event)
        except ObserverUnreachable as e:
            log.warning("Sync run %d: %s; cancelling", run_id, e)
            self._stop_run(cancel_event, notify=False)
        except Exception as e:
            log.error("Sync run %d crashed: %s", run_id, e, exc_info=True)
            self._stop_run(cancel_event, notify=False, outcome='error')
            self._notify_quietly({'type': 'syncError', 'message': f'Sync failed: {e}'})

    def _process_unit(self, unit: str, cancel_event: threading.Event) -> Optional[str]:
        """Fetch and persist one month. Returns a failure reason, or None."""
        month = format_month(unit)
        self._emit(cancel_event, {'type': 'progressUpdate', 'month': month})

        slot: Future = Future()
        with self._lock:
            if cancel_event.is_set():
                return None
            try:
                handle = self.sessions.open(unit, self._on_session_report)
            except SessionOpenFailed as e:
                log.error("Could not open session for %s: %s", month, e)
                return 'session open failed'
            self._active = handle
            self._pending = slot

        try:
            try:
                report = self._await_report(slot, month)
            except SessionTimeout as e:
                log.warning("%s", e)
                return 'timeout'
            except CancelledError:
                return None

            if not report.ok:
                log.warning("Session for %s reported failure: %s", month, report.error)
                return report.error or 'parse failed'

            with self._write_lock:
                if cancel_event.is_set():
                    log.info("Discarding %s report: sync cancelled", month)
                    return None
                try:
                    result = self.store.replace_period(Partition.SYNCED, unit_to_period_key(unit), report.items)
                except (StoreWriteError, StoreUnavailable) as e:
                    log.error("Could not save %s: %s", month, e)
                    return 'store write failed'
            log.info("Saved %s: %d record(s)", month, result['saved_count'])
            return None
        finally:
            with self._lock:
                if self._active is handle:
                    self._active = None
                    self._pending = None
            self.sessions.close(handle)

    def _await_report(self, slot: Future, month: str) -> SessionReport:
        try:
            return slot.result(timeout=self.timeout)
        except FuturesTimeout:
            raise SessionTimeout(f'No report for {month} within {self.timeout:.1f}s')

    def _on_session_report(self, report: SessionReport):
        self.submit_report(report.session_id, report.settlement_month, report.items, error=report.error)

    def _fail_unit(self, unit: str, reason: str, cancel_event: threading.Event):
        month = format_month(unit)
        with self._lock:
            if cancel_event.is_set():
                return
            self._failed.append(month)
            self._state = SyncState.FAILING_UNIT
        self._emit(cancel_event, {'type': 'progressUpdate', 'month': month, 'error': reason})
        cancel_event.wait(self.failure_delay)
        with self._lock:
            if not cancel_event.is_set():
                self._state = SyncState.RUNNING

    def _finish(self, run_id: int, cancel_event: threading.Event):
        with self._lock:
            if cancel_event.is_set():
                return
            self._state = SyncState.COMPLETING
            self._current_unit = None
            failed = list(self._failed)

        try:
            total = self.store.sum_amount(Partition.SYNCED)
        except SettlementError as e:
            log.error("Sync run %d: could not compute total: %s", run_id, e)
            with self._lock:
                if cancel_event.is_set():
                    return
                self._last_result = {'status': 'error', 'failedMonths': failed}
                self._state = SyncState.IDLE
                self._notify_quietly({'type': 'syncError', 'message': 'Could not compute the final total'})
            return

        with self._lock:
            if cancel_event.is_set():
                return
            self._last_result = {'status': 'complete', 'totalSum': total, 'failedMonths': failed}
            self._state = SyncState.IDLE
            self._notify_quietly({'type': 'syncComplete', 'totalSum': total, 'failedMonths': failed})
        log.info("Sync run %d complete: total %s, %d failed month(s)%s", run_id, total, len(failed),
                 f" ({', '.join(failed)})" if failed else '')

    def _stop_run(self, cancel_event: threading.Event, notify: bool, outcome: str = 'cancelled'):
        with self._lock:
            if self._cancel_event is not cancel_event or cancel_event.is_set():
                return
            self._state = SyncState.CANCELLING
            cancel_event.set()
            self._queue.clear()
            slot, handle = self._pending, self._active
            self._pending = None
            self._active = None
            if slot is not None:
                slot.cancel()

        if handle is not None:
            self.sessions.close(handle)
        # an in-flight write finishes before we report the run as stopped
        with self._write_lock:
            pass

        with self._lock:
            self._state = SyncState.IDLE
            self._current_unit = None
            self._last_result = {'status': outcome, 'failedMonths': list(self._failed)}
        log.info("Sync stopped (%s)", outcome)
        if notify:
            self._notify_quietly({'type': 'syncCancelled', 'message': 'Sync cancelled'})

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    def _emit(self, cancel_event: threading.Event, event: dict):
        """Deliver a run event unless the run was cancelled. Raises ObserverUnreachable."""
        with self._lock:
            if cancel_event.is_set():
                return
            self.observer.notify(event)

    def _notify_quietly(self, event: dict):
        try:
            self.observer.notify(event)
        except ObserverUnreachable as e:
            log.warning("Could not deliver %s: %s", event.get('type'), e)

    def _check_report_month(self, handle: SessionHandle, settlement_month: Optional[str]):
        if not settlement_month:
            return
        try:
            reported = normalize_period_key(settlement_month)
        except ValidationError:
            reported = settlement_month
        expected = unit_to_period_key(handle.unit)
        if reported != expected:
            log.warning("Session for %s reported month %s; storing under %s",
                        expected, settlement_month, expected)

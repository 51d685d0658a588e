"""
Worker Sessions
One short-lived fetch context per settlement month. A session is opened for
a YYYYMM unit, reports parsed settlement items (or a failure) exactly once,
and is closed by its owner whatever the outcome.
"""

import io
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pandas as pd
import requests

from errors import SessionOpenFailed
from mapper import TOTAL_ROW_MARKERS
from validator import unit_to_period_key

log = logging.getLogger('settlement')

SYNC_TIMEOUT_DURATION = float(os.getenv('SYNC_TIMEOUT_SECONDS', '30'))

# Settlement table columns on the portal's monthly page
TITLE_COLUMN = 1
AMOUNT_COLUMN = 6
MIN_TABLE_COLUMNS = 7


@dataclass
class SessionHandle:
    """An open fetch context for one unit."""
    session_id: str
    unit: str                       # 'YYYYMM'
    url: str
    opened_at: float = field(default_factory=time.monotonic)
    closed: bool = False

    def to_dict(self) -> dict:
        return {
            'sessionId': self.session_id,
            'unit': self.unit,
            'settlementMonth': unit_to_period_key(self.unit),
            'url': self.url,
        }


@dataclass
class SessionReport:
    """What a session sends back: parsed items, or an error."""
    session_id: str
    settlement_month: Optional[str]     # 'YYYY.MM'
    items: Optional[list]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and isinstance(self.items, list)


ReportCallback = Callable[[SessionReport], None]


# ---------------------------------------------------------------------------
# Base manager
# ---------------------------------------------------------------------------

class SessionManager:
    """Opens and closes worker sessions, at most one at a time.

    Subclasses implement _launch (start the fetch) and _release (tear it
    down). Reports must be delivered asynchronously, never from inside
    open(), so the caller has registered the handle before a report lands.
    """

    def __init__(self, url_template: Optional[str] = None):
        if url_template is None:
            url_template = os.getenv('SETTLEMENT_SOURCE_URL', '')
        self.url_template = url_template
        self._lock = threading.Lock()
        self._active: Optional[SessionHandle] = None

    @property
    def active(self) -> Optional[SessionHandle]:
        return self._active

    def build_url(self, unit: str) -> str:
        if not self.url_template:
            raise SessionOpenFailed('SETTLEMENT_SOURCE_URL not set')
        return self.url_template.format(unit=unit)

    def open(self, unit: str, on_report: ReportCallback) -> SessionHandle:
        with self._lock:
            if self._active is not None:
                raise RuntimeError(f'Session {self._active.session_id} ({self._active.unit}) is still open')
            handle = SessionHandle(session_id=uuid.uuid4().hex, unit=unit, url=self.build_url(unit))
            try:
                self._launch(handle, on_report)
            except SessionOpenFailed:
                raise
            except Exception as e:
                raise SessionOpenFailed(f'Could not open session for {unit}: {e}') from e
            self._active = handle
        log.info("Opened session %s for %s", handle.session_id[:8], unit)
        return handle

    def close(self, handle: Optional[SessionHandle]):
        """Release a session. Closing twice, or a context that is already gone, is a no-op."""
        if handle is None:
            return
        with self._lock:
            if handle.closed:
                return
            handle.closed = True
            if self._active is handle:
                self._active = None
        try:
            self._release(handle)
        except Exception as e:
            log.warning("Could not release session %s: %s", handle.session_id[:8], e)
        log.debug("Closed session %s (%s)", handle.session_id[:8], handle.unit)

    def close_session(self, session_id: str):
        """Close a session known only by id (e.g. one whose report was discarded)."""
        active = self._active
        if active is not None and active.session_id == session_id:
            self.close(active)
        else:
            log.debug("close_session: %s is not open", (session_id or '')[:8])

    def _launch(self, handle: SessionHandle, on_report: ReportCallback):
        raise NotImplementedError

    def _release(self, handle: SessionHandle):
        pass


# ---------------------------------------------------------------------------
# HTTP sessions
# ---------------------------------------------------------------------------

def _amount_from_cell(value) -> Optional[int]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    digits = re.sub(r'[^0-9]', '', str(value))
    return int(digits) if digits else None


def parse_settlement_table(html: str) -> List[dict]:
    """Parse the monthly settlement page into [{title, amount}] items.

    Uses the first table with at least seven columns. A page without such a
    table is a month without settlements and yields an empty list.
    """
    try:
        tables = pd.read_html(io.StringIO(html))
    except ValueError:
        return []

    for df in tables:
        if df.shape[1] < MIN_TABLE_COLUMNS:
            continue
        items = []
        for row in df.itertuples(index=False):
            raw_title = row[TITLE_COLUMN]
            if raw_title is None or (isinstance(raw_title, float) and pd.isna(raw_title)):
                continue
            title = str(raw_title).strip()
            if not title or title in TOTAL_ROW_MARKERS:
                continue
            amount = _amount_from_cell(row[AMOUNT_COLUMN])
            if amount is None:
                log.warning("No amount for %r; row skipped", title)
                continue
            items.append({'title': title, 'amount': amount})
        log.info("Parsed %d settlement item(s) from table", len(items))
        return items
    return []


class HttpSessionManager(SessionManager):
    """Fetches the monthly page over HTTP on a worker thread."""

    def __init__(self, url_template: Optional[str] = None,
                 parser: Callable[[str], List[dict]] = parse_settlement_table,
                 request_timeout: Optional[float] = None, cookie: Optional[str] = None):
        super().__init__(url_template)
        self.parser = parser
        self.request_timeout = request_timeout or SYNC_TIMEOUT_DURATION
        self._http = requests.Session()
        self._http.headers['User-Agent'] = 'SettlementSync/1.0'
        if cookie is None:
            cookie = os.getenv('SETTLEMENT_SOURCE_COOKIE', '')
        if cookie:
            self._http.headers['Cookie'] = cookie

    def _launch(self, handle: SessionHandle, on_report: ReportCallback):
        t = threading.Thread(target=self._fetch, args=(handle, on_report),
                             name=f'session-{handle.unit}', daemon=True)
        t.start()

    def _fetch(self, handle: SessionHandle, on_report: ReportCallback):
        settlement_month = unit_to_period_key(handle.unit)
        try:
            resp = self._http.get(handle.url, timeout=self.request_timeout)
            resp.raise_for_status()
            report = SessionReport(handle.session_id, settlement_month, self.parser(resp.text))
        except requests.RequestException as e:
            log.warning("Fetch failed for %s: %s", handle.unit, e)
            report = SessionReport(handle.session_id, settlement_month, None, error='fetch failed')
        except Exception as e:
            log.warning("Could not parse page for %s: %s", handle.unit, e, exc_info=True)
            report = SessionReport(handle.session_id, settlement_month, None, error='parse failed')

        if handle.closed:
            log.debug("Session %s closed before it reported; result dropped", handle.session_id[:8])
            return
        on_report(report)


# ---------------------------------------------------------------------------
# Externally driven sessions
# ---------------------------------------------------------------------------

class ExternalSessionManager(SessionManager):
    """Sessions fulfilled by an out-of-process scraper (e.g. a browser extension).

    open() only publishes the pending session; the scraper polls pending()
    and posts parsedMonthlyData with the session id back to the API.
    """

    def __init__(self, url_template: Optional[str] = None):
        super().__init__(url_template)

    def _launch(self, handle: SessionHandle, on_report: ReportCallback):
        log.info("Waiting for external scraper: %s", handle.url)

    def pending(self) -> Optional[dict]:
        handle = self._active
        return handle.to_dict() if handle is not None and not handle.closed else None


def build_session_manager(mode: Optional[str] = None) -> SessionManager:
    """Session manager for SYNC_SESSION_MODE ('http' or 'external')."""
    mode = (mode or os.getenv('SYNC_SESSION_MODE', 'http')).strip().lower()
    if mode == 'external':
        return ExternalSessionManager()
    if mode != 'http':
        log.warning("Unknown SYNC_SESSION_MODE %r, using http", mode)
    return HttpSessionManager()

"""
Record Validation & Coverage Checks
Validates settlement items before persistence, normalises settlement-month
keys, and flags months that have no stored records.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from errors import ValidationError
from models import SettlementRecord

log = logging.getLogger('settlement')

# 'YYYY.MM', 'YYYY-MM', 'YYYY/MM', 'YYYYMM' (month may be a single digit when separated)
_PERIOD_RE = re.compile(r'^(\d{4})(?:[.\-/](\d{1,2})|(\d{2}))$')

# Source-locale keys accepted alongside the English wire names
TITLE_KEYS = ('title', '작품명')
AMOUNT_KEYS = ('amount', '정산금액')
PERIOD_KEYS = ('periodKey', 'period_key', '정산월')


# ---------------------------------------------------------------------------
# Period keys
# ---------------------------------------------------------------------------

def normalize_period_key(value) -> str:
    """Return the canonical 'YYYY.MM' key for a settlement month.

    Raises ValidationError for anything that is not a real calendar month.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f'Invalid settlement month: {value!r}')
    text = str(value).strip()
    m = _PERIOD_RE.match(text)
    if not m:
        raise ValidationError(f'Invalid settlement month: {value!r}')
    year = int(m.group(1))
    month = int(m.group(2) or m.group(3))
    if not 1 <= month <= 12:
        raise ValidationError(f'Invalid settlement month: {value!r}')
    return f'{year:04d}.{month:02d}'


def unit_to_period_key(unit: str) -> str:
    """'202401' -> '2024.01'"""
    return normalize_period_key(unit)


def period_key_to_unit(period_key: str) -> str:
    """'2024.01' -> '202401'"""
    return normalize_period_key(period_key).replace('.', '')


def format_month(value) -> str:
    """Any accepted month spelling -> 'YYYY-MM' (the display/progress form)."""
    return normalize_period_key(value).replace('.', '-')


# ---------------------------------------------------------------------------
# Record validation
# ---------------------------------------------------------------------------

def _first_present(item: dict, keys) -> object:
    for k in keys:
        if k in item and item[k] is not None:
            return item[k]
    return None


def is_valid_amount(amount) -> bool:
    """True for finite int/float values (bools are rejected)."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    return math.isfinite(amount)


def validate_record(item, period_key: Optional[str] = None) -> SettlementRecord:
    """Turn a wire item (or an existing record) into a validated SettlementRecord.

    period_key, when given, overrides whatever month the item carries.
    Raises ValidationError; never returns a partially normalised record.
    """
    if isinstance(item, SettlementRecord):
        raw_title, raw_amount, raw_period = item.title, item.amount, item.period_key
    elif isinstance(item, dict):
        raw_title = _first_present(item, TITLE_KEYS)
        raw_amount = _first_present(item, AMOUNT_KEYS)
        raw_period = _first_present(item, PERIOD_KEYS)
    else:
        raise ValidationError(f'Unsupported record type: {type(item).__name__}')

    title = str(raw_title).strip() if raw_title is not None else ''
    if not title:
        raise ValidationError('Record has no title')

    if not is_valid_amount(raw_amount):
        raise ValidationError(f'Invalid amount for {title!r}: {raw_amount!r}')
    amount = int(raw_amount) if float(raw_amount).is_integer() else float(raw_amount)

    key = normalize_period_key(period_key if period_key is not None else raw_period)
    return SettlementRecord(period_key=key, title=title, amount=amount)


def validate_records(items: Iterable, period_key: Optional[str] = None) -> List[SettlementRecord]:
    """Validate a batch, dropping (and logging) bad items instead of failing the batch."""
    valid = []
    for idx, item in enumerate(items or []):
        try:
            valid.append(validate_record(item, period_key=period_key))
        except ValidationError as e:
            log.warning("Skipping record %d%s: %s", idx,
                        f' ({period_key})' if period_key else '', e)
    return valid


# ---------------------------------------------------------------------------
# Coverage: months without stored records
# ---------------------------------------------------------------------------

@dataclass
class ValidationIssue:
    """A single coverage issue."""
    check: str              # Check name (e.g. 'period_gaps')
    severity: str           # 'error' or 'warning'
    message: str            # Human-readable description
    affected_periods: List[str] = field(default_factory=list)
    count: int = 0

    def to_dict(self) -> dict:
        return {
            'check': self.check,
            'severity': self.severity,
            'message': self.message,
            'affectedPeriods': self.affected_periods,
            'count': self.count,
        }


def check_period_gaps(period_keys: Iterable[str], expected_start: Optional[str] = None,
                      expected_end: Optional[str] = None, label: str = '') -> List[ValidationIssue]:
    """Find months with no records between the first and last stored month
    (or the expected range, when given).
    """
    issues = []
    actual = set()
    for pk in period_keys or []:
        try:
            actual.add(normalize_period_key(pk))
        except ValidationError:
            log.warning("Ignoring malformed stored period key %r", pk)

    if not actual and not (expected_start and expected_end):
        return issues

    start = normalize_period_key(expected_start) if expected_start else min(actual)
    end = normalize_period_key(expected_end) if expected_end else max(actual)

    y, m = int(start[:4]), int(start[5:])
    end_y, end_m = int(end[:4]), int(end[5:])

    expected = []
    while y * 100 + m <= end_y * 100 + end_m:
        expected.append(f'{y:04d}.{m:02d}')
        m += 1
        if m > 12:
            m = 1
            y += 1

    missing = [pk for pk in expected if pk not in actual]
    if missing:
        missing_strs = [pk.replace('.', '-') for pk in missing[:12]]
        suffix = f' ... and {len(missing) - 12} more' if len(missing) > 12 else ''
        prefix = f'{label}: ' if label else ''
        issues.append(ValidationIssue(
            check='period_gaps',
            severity='warning',
            message=f'{prefix}{len(missing)} missing month(s): {", ".join(missing_strs)}{suffix}',
            affected_periods=[pk.replace('.', '-') for pk in missing],
            count=len(missing),
        ))

    return issues

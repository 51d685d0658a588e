"""
Settlement Sheet Mapper
Finds the header row of a publisher settlement sheet by fuzzy header text,
maps its columns to the canonical fields, and extracts typed data rows.
"""

import csv
import io
import logging
import os
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import pandas as pd

log = logging.getLogger('settlement')

# Canonical schema fields, in header-match precedence order
CANONICAL_FIELDS = [
    'author', 'title', 'publisher', 'sales_month',
    'gross_revenue', 'net_revenue', 'settlement_amount',
]

NUMERIC_FIELDS = ('gross_revenue', 'net_revenue', 'settlement_amount')

# Each entry is (canonical field, substrings matched against the trimmed,
# lowercased header cell). Entries are tried in order: a cell whose text
# matches several fields goes to the earliest one.
HEADER_SYNONYMS = [
    ('author', ['작가명', '작가', '필명', '저자명', '저자', 'author', 'writer', 'pen name']),
    ('title', ['작품명', '작품', '컨텐츠', '제목', '상품명', 'title', 'product name']),
    ('publisher', ['출판사', 'publisher']),
    ('sales_month', ['판매월', '월', '판매출', 'sales month', 'month']),
    ('gross_revenue', ['총매출', '총매출액', '총판매', '총매술', 'gross']),
    ('net_revenue', ['순매출', '순매출액', 'net sales', 'net revenue']),
    ('settlement_amount', ['정산액', '정산', '지급액', '정산금', '금액', 'settlement', 'payout', 'amount']),
]

# First-cell markers of footer/summary rows interleaved with data
TOTAL_ROW_MARKERS = ('실지급액', '합계')

# Spreadsheet day 0 (1900 date system, with the Lotus leap-year bug folded in)
EXCEL_EPOCH = datetime(1899, 12, 30)

_MONTH_RE = re.compile(r'^\d{4}-\d{2}$')

RawGrid = List[List[Any]]


# ---------------------------------------------------------------------------
# Header detection
# ---------------------------------------------------------------------------

def _cell_text(cell) -> str:
    if cell is None:
        return ''
    if isinstance(cell, float) and pd.isna(cell):
        return ''
    return str(cell).strip()


def match_header_cell(text: str) -> Optional[str]:
    """Return the canonical field for one header cell, or None."""
    low = text.strip().lower()
    if not low:
        return None
    for field, synonyms in HEADER_SYNONYMS:
        if any(s in low for s in synonyms):
            return field
    return None


def map_header_row(row: List[Any]) -> Dict[int, str]:
    """Map column index -> canonical field for one candidate header row."""
    mapping = {}
    for idx, cell in enumerate(row or []):
        field = match_header_cell(_cell_text(cell))
        if field:
            mapping[idx] = field
    return mapping


def find_header_row(rows: RawGrid):
    """Return (row_index, mapping) of the first row covering all canonical fields."""
    for idx, row in enumerate(rows or []):
        if not row:
            continue
        mapping = map_header_row(row)
        if set(CANONICAL_FIELDS).issubset(mapping.values()):
            return idx, mapping
    return -1, None


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------

def coerce_sales_month(value) -> str:
    """Normalise a sales-month cell to 'YYYY-MM' where possible.

    Numeric cells > 1 are spreadsheet date serials. Otherwise digits are
    extracted and six digits become 'YYYY-MM'; anything else is returned
    trimmed, unchanged.
    """
    if isinstance(value, (datetime, date)):
        return f'{value.year:04d}-{value.month:02d}'
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 1:
        try:
            d = EXCEL_EPOCH + timedelta(days=float(value))
            return f'{d.year:04d}-{d.month:02d}'
        except (OverflowError, ValueError):
            return str(value)
    text = _cell_text(value)
    digits = re.sub(r'\D', '', text)
    if len(digits) == 6:
        return f'{digits[:4]}-{digits[4:]}'
    return text


def parse_amount(value) -> Optional[Union[int, float]]:
    """Parse a revenue cell. Returns None when nothing numeric is left."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        cleaned = re.sub(r'[^0-9.\-]', '', _cell_text(value))
        try:
            num = float(cleaned)
        except ValueError:
            return None
    if pd.isna(num) or num in (float('inf'), float('-inf')):
        return None
    return int(num) if num.is_integer() else num


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _is_blank_row(row) -> bool:
    return not row or all(_cell_text(c) == '' for c in row)


def extract_table_data(rows: RawGrid, strict: bool = False) -> List[dict]:
    """Extract canonical records from a raw sheet grid.

    The first row whose headers cover every canonical field is the header.
    Data is read until a blank row or a row of different width; total rows
    are skipped, as is any row with a blank mapped value. strict additionally
    requires a 'YYYY-MM' sales month and parseable revenue figures.
    """
    if not rows:
        return []

    header_idx, mapping = find_header_row(rows)
    if header_idx == -1:
        log.warning("No header row covering %s found; sheet skipped", ', '.join(CANONICAL_FIELDS))
        return []

    # First column wins when two columns map to the same field
    field_cols = {}
    for col_idx in sorted(mapping):
        field_cols.setdefault(mapping[col_idx], col_idx)

    header_len = len(rows[header_idx])
    log.debug("Header row %d, mapping %s", header_idx, field_cols)

    data = []
    for i in range(header_idx + 1, len(rows)):
        row = rows[i]
        if _is_blank_row(row):
            break
        if len(row) != header_len:
            break
        if _cell_text(row[0]) in TOTAL_ROW_MARKERS:
            continue

        record = _build_record(row, field_cols, strict, i)
        if record is not None:
            data.append(record)

    log.info("Extracted %d data row(s)%s", len(data), ' (strict)' if strict else '')
    return data


def _build_record(row, field_cols: Dict[str, int], strict: bool, row_idx: int) -> Optional[dict]:
    record = {}
    for field in CANONICAL_FIELDS:
        col = field_cols[field]
        raw = row[col] if col < len(row) else None
        if _cell_text(raw) == '':
            log.warning("Row %d skipped: blank %s", row_idx + 1, field)
            return None

        if field == 'sales_month':
            value = coerce_sales_month(raw)
            if strict and not _MONTH_RE.match(value):
                log.warning("Row %d skipped: sales month %r is not YYYY-MM", row_idx + 1, value)
                return None
        elif field in NUMERIC_FIELDS:
            value = parse_amount(raw)
            if value is None:
                if strict:
                    log.warning("Row %d skipped: %s %r is not a number", row_idx + 1, field, raw)
                    return None
                value = 0
        else:
            value = _cell_text(raw)
        record[field] = value
    return record


def to_settlement_items(rows: List[dict]) -> List[dict]:
    """Extracted rows -> {title, amount} items ready for the record store."""
    return [{'title': r['title'], 'amount': r['settlement_amount']} for r in rows]


# ---------------------------------------------------------------------------
# Reading files into raw grids
# ---------------------------------------------------------------------------

def _sniff_csv_encoding(raw: bytes) -> str:
    """Pick the first encoding that decodes the whole payload."""
    for enc in ('utf-8-sig', 'utf-8'):
        try:
            raw.decode(enc)
            return enc
        except (UnicodeDecodeError, UnicodeError):
            continue
    # latin-1 never fails (all bytes 0-255 are valid), so use it as fallback
    return 'latin-1'


def _normalize_cell(value):
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, str) and value.strip() == '':
        return None
    return value


def read_grid(source: Union[str, bytes], filename: Optional[str] = None,
              sheet: Union[int, str] = 0) -> RawGrid:
    """Read the first sheet (or a CSV) into a raw grid with None for blank cells."""
    filename = filename or (source if isinstance(source, str) else '')
    ext = os.path.splitext(filename)[1].lower()

    if isinstance(source, str):
        with open(source, 'rb') as f:
            payload = f.read()
    else:
        payload = source

    if ext == '.csv':
        text = payload.decode(_sniff_csv_encoding(payload))
        return [[_normalize_cell(c) for c in row] for row in csv.reader(io.StringIO(text))]

    df = pd.read_excel(io.BytesIO(payload), sheet_name=sheet, header=None, dtype=object)
    return [[_normalize_cell(v) for v in row] for row in df.values.tolist()]


def extract_file(source: Union[str, bytes], filename: Optional[str] = None,
                 strict: bool = False) -> List[dict]:
    """read_grid + extract_table_data for one spreadsheet."""
    rows = read_grid(source, filename)
    return extract_table_data(rows, strict=strict)

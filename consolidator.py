"""
Settlement Consolidator
Aggregates extracted settlement rows per publisher and per title, and writes
a consolidated workbook (AggregatedData + Summary) from a folder of
publisher spreadsheets.
"""

import argparse
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

import pandas as pd

from mapper import CANONICAL_FIELDS, extract_file

log = logging.getLogger('settlement')

UNSPECIFIED_PUBLISHER = 'unspecified'
TOTAL_LABEL = '합계'

SPREADSHEET_EXTS = ('.xlsx', '.xls', '.csv')

# Column labels of the exported workbook (source-locale headers, so an
# exported sheet can be fed back through the extractor)
EXPORT_HEADERS = {
    'author': '작가명',
    'title': '작품명',
    'publisher': '출판사',
    'sales_month': '판매월',
    'gross_revenue': '총매출',
    'net_revenue': '순매출',
    'settlement_amount': '정산액',
}

SUMMARY_HEADERS = {
    'publisher': '출판사',
    'count': '건수',
    'gross_revenue': '총매출',
    'net_revenue': '순매출',
    'settlement_amount': '정산액',
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class PublisherSummary:
    """Totals for one publisher."""
    publisher: str
    count: int = 0
    gross_revenue: float = 0
    net_revenue: float = 0
    settlement_amount: float = 0

    def to_dict(self) -> dict:
        return {
            'publisher': self.publisher,
            'count': self.count,
            'grossRevenue': self.gross_revenue,
            'netRevenue': self.net_revenue,
            'settlementAmount': self.settlement_amount,
        }


@dataclass
class TitleSum:
    title: str
    settlement_amount: float = 0

    def to_dict(self) -> dict:
        return {'title': self.title, 'settlementAmount': self.settlement_amount}


@dataclass
class TotalSum:
    settlement_amount: float = 0

    def to_dict(self) -> dict:
        return {'settlementAmount': self.settlement_amount}


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _parse_num(val) -> float:
    """Lenient number parse: strips everything but digits, '.' and '-'. Unparsable -> 0."""
    if isinstance(val, bool):
        return 0
    if isinstance(val, (int, float)):
        return 0 if pd.isna(val) else val
    cleaned = re.sub(r'[^0-9.\-]', '', str(val if val is not None else ''))
    try:
        return float(cleaned)
    except ValueError:
        return 0


def compute_summary(records: Iterable[dict]) -> List[PublisherSummary]:
    """Group rows by publisher, counting rows and summing the three revenue fields.

    Publishers appear in order of first occurrence.
    """
    summary: Dict[str, PublisherSummary] = {}
    for row in records:
        publisher = str(row.get('publisher') or '').strip() or UNSPECIFIED_PUBLISHER
        if publisher not in summary:
            summary[publisher] = PublisherSummary(publisher=publisher)
        entry = summary[publisher]
        entry.count += 1
        entry.gross_revenue += _parse_num(row.get('gross_revenue'))
        entry.net_revenue += _parse_num(row.get('net_revenue'))
        entry.settlement_amount += _parse_num(row.get('settlement_amount'))
    return list(summary.values())


def summary_totals(summaries: List[PublisherSummary]) -> PublisherSummary:
    """Grand-total row across all publishers."""
    total = PublisherSummary(publisher=TOTAL_LABEL)
    for s in summaries:
        total.count += s.count
        total.gross_revenue += s.gross_revenue
        total.net_revenue += s.net_revenue
        total.settlement_amount += s.settlement_amount
    return total


def rank_title_sums(sums: Dict[str, float]) -> List[TitleSum]:
    """Title -> amount mapping as TitleSum list, largest first."""
    ranked = sorted(sums.items(), key=lambda kv: (-kv[1], kv[0]))
    return [TitleSum(title=t, settlement_amount=a) for t, a in ranked]


def total_sum(sums: Dict[str, float]) -> TotalSum:
    return TotalSum(settlement_amount=sum(sums.values()))


# ---------------------------------------------------------------------------
# Folder consolidation
# ---------------------------------------------------------------------------

def list_spreadsheets(directory: str) -> List[str]:
    if not os.path.isdir(directory):
        return []
    return sorted(
        os.path.join(directory, f) for f in os.listdir(directory)
        if f.lower().endswith(SPREADSHEET_EXTS) and not f.startswith('~$')
    )


def aggregate_files(paths: List[str]) -> Tuple[List[dict], List[dict]]:
    """Extract every spreadsheet. Returns (rows, file_inventory).

    A file that cannot be read is logged and recorded as skipped.
    """
    rows: List[dict] = []
    inventory: List[dict] = []
    for path in paths:
        filename = os.path.basename(path)
        log.info("Processing %s", path)
        try:
            data = extract_file(path, filename)
        except Exception as e:
            log.error("Failed to process %s: %s", filename, e)
            inventory.append({'filename': filename, 'rows': 0, 'status': 'skipped', 'error': str(e)})
            continue
        rows.extend(data)
        inventory.append({'filename': filename, 'rows': len(data),
                          'status': 'ok' if data else 'empty'})
    log.info("Aggregated %d data row(s) from %d file(s)", len(rows), len(paths))
    return rows, inventory


def build_aggregated_frames(rows: List[dict]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """(AggregatedData, Summary) DataFrames with export column labels."""
    detail = pd.DataFrame(rows, columns=CANONICAL_FIELDS).rename(columns=EXPORT_HEADERS)

    summaries = compute_summary(rows)
    summary_rows = [
        {
            'publisher': s.publisher, 'count': s.count, 'gross_revenue': s.gross_revenue,
            'net_revenue': s.net_revenue, 'settlement_amount': s.settlement_amount,
        }
        for s in summaries
    ]
    totals = summary_totals(summaries)
    summary_rows.append({
        'publisher': totals.publisher, 'count': totals.count, 'gross_revenue': totals.gross_revenue,
        'net_revenue': totals.net_revenue, 'settlement_amount': totals.settlement_amount,
    })
    summary = pd.DataFrame(summary_rows, columns=list(SUMMARY_HEADERS)).rename(columns=SUMMARY_HEADERS)
    return detail, summary


def write_aggregated_workbook(rows: List[dict], output_path: str) -> str:
    """Write AggregatedData and Summary sheets. Returns output_path."""
    log.info("Writing aggregated workbook to: %s", output_path)
    detail, summary = build_aggregated_frames(rows)
    out_dir = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(out_dir, exist_ok=True)
    with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
        detail.to_excel(writer, sheet_name='AggregatedData', index=False)
        summary.to_excel(writer, sheet_name='Summary', index=False)
    return output_path


def print_summary(rows: List[dict]):
    summaries = compute_summary(rows)
    print(f"\n  {'Publisher':<24} {'Rows':>6} {'Gross':>14} {'Net':>14} {'Settlement':>14}")
    print('  ' + '-' * 76)
    for s in summaries + [summary_totals(summaries)]:
        print(f"  {s.publisher:<24} {s.count:>6} {s.gross_revenue:>14,.0f} "
              f"{s.net_revenue:>14,.0f} {s.settlement_amount:>14,.0f}")


def main(argv=None):
    parser = argparse.ArgumentParser(description='Consolidate publisher settlement spreadsheets.')
    parser.add_argument('--input-dir', default='downloads', help='Folder of .xlsx/.xls/.csv settlement files')
    parser.add_argument('--output', default='aggregated.xlsx', help='Path for the consolidated workbook')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    paths = list_spreadsheets(args.input_dir)
    if not paths:
        print(f"  ERROR: No spreadsheets found in {args.input_dir}")
        return 1

    print(f"\n  [1/2] Extracting {len(paths)} file(s)...")
    rows, inventory = aggregate_files(paths)
    for fi in inventory:
        print(f"    {fi['filename']}: {fi['rows']} row(s) [{fi['status']}]")

    print("\n  [2/2] Writing consolidated workbook...")
    write_aggregated_workbook(rows, args.output)
    print_summary(rows)
    print(f"\n  OUTPUT: {args.output}\n")
    return 0


if __name__ == '__main__':
    sys.exit(main())

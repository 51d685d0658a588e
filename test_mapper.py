"""
Tests for the settlement sheet mapper:
  - fuzzy header mapping and precedence
  - data row extraction (blank/width stop, total rows, blank fields)
  - sales-month and amount coercion, strict variant
  - reading xlsx / csv into raw grids
"""

import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(__file__))

import openpyxl
from mapper import (coerce_sales_month, extract_file, extract_table_data, find_header_row,
                    map_header_row, match_header_cell, parse_amount, read_grid,
                    to_settlement_items)

KO_HEADER = ['작가', '작품', '출판사', '월', '총매출', '순매출', '정산액']
EN_HEADER = ['Author', 'Title', 'Publisher', 'Sales Month', 'Gross', 'Net Revenue', 'Settlement']


def _make_workbook(path, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = 'Sheet1'
    for row in rows:
        ws.append(row)
    wb.save(path)
    wb.close()


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

class TestHeaderMapping:

    def test_korean_header_maps_all_fields(self):
        mapping = map_header_row(KO_HEADER)
        assert mapping == {
            0: 'author', 1: 'title', 2: 'publisher', 3: 'sales_month',
            4: 'gross_revenue', 5: 'net_revenue', 6: 'settlement_amount',
        }

    def test_english_header_is_case_insensitive(self):
        mapping = map_header_row([h.upper() for h in EN_HEADER])
        assert sorted(mapping.values()) == sorted([
            'author', 'title', 'publisher', 'sales_month',
            'gross_revenue', 'net_revenue', 'settlement_amount',
        ])

    def test_earlier_field_wins_on_ambiguous_cell(self):
        # '정산월' contains both a sales-month and a settlement synonym
        assert match_header_cell('정산월') == 'sales_month'

    def test_unmatched_and_blank_cells_are_absent(self):
        mapping = map_header_row(['비고', None, '', '작품명'])
        assert mapping == {3: 'title'}

    def test_header_found_below_preamble(self):
        rows = [['2024년 정산서'], [], KO_HEADER, ['김', '소설A', 'P사', '2024-01', 1, 1, 1]]
        idx, mapping = find_header_row(rows)
        assert idx == 2
        assert len(mapping) == 7

    def test_partial_header_is_not_a_header(self):
        idx, mapping = find_header_row([['작가', '작품', '출판사']])
        assert idx == -1
        assert mapping is None


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class TestExtractTableData:

    def test_single_row_then_blank(self):
        rows = [
            KO_HEADER,
            ['김', '소설A', 'P사', '2024-01', '1000', '900', '100'],
            ['', '', '', '', '', '', ''],
        ]
        assert extract_table_data(rows) == [{
            'author': '김', 'title': '소설A', 'publisher': 'P사', 'sales_month': '2024-01',
            'gross_revenue': 1000, 'net_revenue': 900, 'settlement_amount': 100,
        }]

    def test_stops_at_blank_row(self):
        rows = [
            KO_HEADER,
            ['김', '소설A', 'P사', '2024-01', 1000, 900, 100],
            [None] * 7,
            ['이', '소설B', 'Q사', '2024-01', 500, 400, 50],
        ]
        data = extract_table_data(rows)
        assert [r['title'] for r in data] == ['소설A']

    def test_stops_at_width_mismatch(self):
        rows = [
            KO_HEADER,
            ['김', '소설A', 'P사', '2024-01', 1000, 900, 100],
            ['메모', '다음 페이지 참조'],
            ['이', '소설B', 'Q사', '2024-01', 500, 400, 50],
        ]
        assert len(extract_table_data(rows)) == 1

    def test_total_rows_are_skipped_not_terminal(self):
        rows = [
            KO_HEADER,
            ['김', '소설A', 'P사', '2024-01', 1000, 900, 100],
            ['합계', None, None, None, 1000, 900, 100],
            ['실지급액', None, None, None, None, None, 97],
            ['이', '소설B', 'Q사', '2024-01', 500, 400, 50],
        ]
        data = extract_table_data(rows)
        assert [r['title'] for r in data] == ['소설A', '소설B']

    def test_row_with_blank_field_is_dropped(self):
        rows = [
            KO_HEADER,
            ['김', '', 'P사', '2024-01', 1000, 900, 100],
            ['이', '소설B', 'Q사', '2024-01', 500, 400, 50],
        ]
        data = extract_table_data(rows)
        assert [r['title'] for r in data] == ['소설B']

    def test_no_header_returns_empty(self):
        assert extract_table_data([['a', 'b'], [1, 2]]) == []
        assert extract_table_data([]) == []

    def test_first_mapped_column_wins_for_duplicate_field(self):
        header = KO_HEADER + ['지급액']
        rows = [header, ['김', '소설A', 'P사', '2024-01', 1000, 900, 100, 999]]
        assert extract_table_data(rows)[0]['settlement_amount'] == 100

    def test_lenient_revenue_unparsable_becomes_zero(self):
        rows = [KO_HEADER, ['김', '소설A', 'P사', '2024-01', 'n/a', '900', '1,200원']]
        record = extract_table_data(rows)[0]
        assert record['gross_revenue'] == 0
        assert record['settlement_amount'] == 1200

    def test_strict_drops_bad_month_and_revenue(self):
        rows = [
            KO_HEADER,
            ['김', '소설A', 'P사', 'January', 1000, 900, 100],
            ['이', '소설B', 'Q사', '2024-01', 'n/a', 400, 50],
            ['박', '소설C', 'R사', '202401', 700, 600, 60],
        ]
        assert len(extract_table_data(rows)) == 3
        strict = extract_table_data(rows, strict=True)
        assert [r['title'] for r in strict] == ['소설C']
        assert strict[0]['sales_month'] == '2024-01'

    def test_to_settlement_items(self):
        rows = [KO_HEADER, ['김', '소설A', 'P사', '2024-01', 1000, 900, 100]]
        assert to_settlement_items(extract_table_data(rows)) == [{'title': '소설A', 'amount': 100}]


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

class TestCoercion:

    def test_date_serial(self):
        assert coerce_sales_month(45292) == '2024-01'

    def test_six_digits(self):
        assert coerce_sales_month('2024.03') == '2024-03'
        assert coerce_sales_month(' 202403 ') == '2024-03'

    def test_datetime_cell(self):
        assert coerce_sales_month(datetime(2023, 11, 1)) == '2023-11'

    def test_passthrough(self):
        assert coerce_sales_month(' 1분기 ') == '1분기'

    def test_parse_amount(self):
        assert parse_amount('1,234원') == 1234
        assert parse_amount('12.5') == 12.5
        assert parse_amount(300) == 300
        assert parse_amount('없음') is None
        assert parse_amount(float('nan')) is None
        assert parse_amount(True) is None


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

class TestReadFiles:

    def test_xlsx_file(self, tmp_path):
        path = str(tmp_path / 'p.xlsx')
        _make_workbook(path, [
            ['정산서'],
            KO_HEADER,
            ['김', '소설A', 'P사', '2024-01', 1000, 900, 100],
            ['이', '소설B', 'Q사', '2024-01', 2000, 1800, 200],
            ['합계', None, None, None, 3000, 2700, 300],
        ])
        data = extract_file(path)
        assert [(r['title'], r['settlement_amount']) for r in data] == [('소설A', 100), ('소설B', 200)]

    def test_xlsx_bytes_blank_cells_are_none(self, tmp_path):
        path = str(tmp_path / 'p.xlsx')
        _make_workbook(path, [['a', None, 'c']])
        with open(path, 'rb') as f:
            grid = read_grid(f.read(), 'upload.xlsx')
        assert grid == [['a', None, 'c']]

    def test_csv_bytes(self):
        text = ','.join(KO_HEADER) + '\n김,소설A,P사,2024-01,"1,000",900,100\n'
        data = extract_file(text.encode('utf-8-sig'), 'p.csv')
        assert data[0]['gross_revenue'] == 1000
        assert data[0]['author'] == '김'

    def test_unreadable_workbook_raises(self, tmp_path):
        path = tmp_path / 'broken.xlsx'
        path.write_bytes(b'not a workbook')
        with pytest.raises(Exception):
            extract_file(str(path))

"""
Tests for the Flask message API:
  - message dispatch and the error envelope
  - manual upload (JSON items and spreadsheet files)
  - a full sync driven through an external scraper session
"""

import io
import os
import sqlite3
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(__file__))

import openpyxl
from sessions import ExternalSessionManager

HEADER = ['작가명', '작품명', '출판사', '판매월', '총매출', '순매출', '정산액']


@pytest.fixture
def app_module(tmp_path):
    import app as app_module
    app_module.init_services(db_path=str(tmp_path / 'api.db'),
                             session_manager=ExternalSessionManager('fake://portal/{unit}'),
                             timeout=2, failure_delay=0.01)
    app_module.app.config['TESTING'] = True
    yield app_module
    app_module._controller.cancel()
    app_module._controller.wait(5)


@pytest.fixture
def client(app_module):
    with app_module.app.test_client() as c:
        yield c


def _msg(client, type_, **payload):
    r = client.post('/api/messages', json={'type': type_, **payload})
    return r.status_code, r.get_json()


def _workbook_bytes(rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    wb.close()
    return buf.getvalue()


class TestMessages:

    def test_unknown_type(self, client):
        code, data = _msg(client, 'openTab')
        assert code == 400
        assert data['status'] == 'error'

    def test_manual_save_and_status(self, client):
        code, data = _msg(client, 'saveManualUploadData', settlementMonth='2024.02',
                          dataToSave=[{'title': 'A', 'amount': 10}, {'title': 'B', 'amount': 'x'}])
        assert code == 200
        assert data == {'status': 'success', 'savedCount': 1, 'deletedCount': 0}

        code, data = _msg(client, 'getUploadDbStatus')
        assert data == {'status': 'success', 'recordCount': 1, 'totalSum': 10, 'sums': {'A': 10}}

        code, data = _msg(client, 'getManualUploadData')
        assert data['data'] == [{'periodKey': '2024.02', 'title': 'A', 'amount': 10}]

        code, data = _msg(client, 'getSyncDbStatus')
        assert data['recordCount'] == 0

    def test_manual_save_rejects_bad_month(self, client):
        code, data = _msg(client, 'saveManualUploadData', settlementMonth='2024.13', dataToSave=[])
        assert code == 400
        assert 'settlement month' in data['message']

    def test_read_messages(self, client):
        _msg(client, 'saveManualUploadData', settlementMonth='2024.01',
             dataToSave=[{'title': 'A', 'amount': 5}, {'title': 'B', 'amount': 8}])
        _msg(client, 'saveManualUploadData', settlementMonth='2024.03',
             dataToSave=[{'title': 'A', 'amount': 1}])

        assert _msg(client, 'getTotalSum', partition='manual')[1]['totalSum'] == 14
        assert _msg(client, 'getRecordCount', partition='manual')[1]['count'] == 3
        ranked = _msg(client, 'getSumByTitle', partition='manual')[1]['ranked']
        assert [t['title'] for t in ranked] == ['B', 'A']
        sums = _msg(client, 'getExternalMonthlySum', year=2024, partition='manual')[1]['sums']
        assert sums == {'2024-01': 13, '2024-03': 1}
        issues = _msg(client, 'getPeriodGaps', partition='manual')[1]['issues']
        assert issues[0]['affectedPeriods'] == ['2024-02']

    def test_bad_year_and_partition(self, client):
        assert _msg(client, 'getExternalMonthlySum', year='soon')[0] == 400
        assert _msg(client, 'getTotalSum', partition='archive')[0] == 400

    def test_store_unavailable(self, app_module, client, tmp_path):
        app_module.init_services(db_path=str(tmp_path / 'missing' / 'api.db'),
                                 session_manager=ExternalSessionManager('fake://portal/{unit}'))
        code, data = _msg(client, 'getTotalSum')
        assert code == 503
        assert data['status'] == 'error'

    def test_failed_read_is_store_unavailable(self, app_module, client):
        _msg(client, 'saveManualUploadData', settlementMonth='2024.01',
             dataToSave=[{'title': 'A', 'amount': 1}])
        conn = sqlite3.connect(app_module._store.db_path)
        conn.execute('DROP TABLE manual_settlements')
        conn.commit()
        conn.close()

        code, data = _msg(client, 'getUploadDbStatus')
        assert code == 503
        assert data['status'] == 'error'


class TestUpload:

    def test_upload_replaces_manual_month(self, client):
        payload = _workbook_bytes([
            HEADER,
            ['김', '소설A', 'P사', '2024-03', 1000, 900, 100],
            ['이', '소설B', 'Q사', '2024-03', 2000, 1800, 200],
            ['박', '소설C', 'Q사', '3월', 10, 9, 1],
        ])
        r = client.post('/api/upload', data={
            'year': '2024', 'month': '3',
            'files': [(io.BytesIO(payload), 'p.xlsx'), (io.BytesIO(b'hello'), 'notes.txt')],
        }, content_type='multipart/form-data')

        data = r.get_json()
        assert r.status_code == 200
        assert data['periodKey'] == '2024.03'
        assert data['savedCount'] == 2
        assert [s['publisher'] for s in data['summary']] == ['P사', 'Q사']
        assert data['totals']['settlementAmount'] == 300
        assert data['skippedFiles'][0]['filename'] == 'notes.txt'

        assert _msg(client, 'getTotalSum', partition='manual')[1]['totalSum'] == 300

    def test_upload_without_files(self, client):
        r = client.post('/api/upload', data={'year': '2024', 'month': '3'},
                        content_type='multipart/form-data')
        assert r.status_code == 400

    def test_upload_without_data_rows(self, client):
        payload = _workbook_bytes([['no', 'header', 'here']])
        r = client.post('/api/upload', data={'year': '2024', 'month': '3',
                                             'files': [(io.BytesIO(payload), 'p.xlsx')]},
                        content_type='multipart/form-data')
        assert r.status_code == 400
        assert r.get_json()['skippedFiles'][0]['reason'] == 'no data rows found'


class TestSyncFlow:

    def test_full_sync_through_external_session(self, app_module, client):
        today = date.today()
        code, data = _msg(client, 'startFullSync', startDate={'year': today.year, 'month': today.month})
        assert code == 200
        assert data['status'] == 'started'

        assert _msg(client, 'startFullSync', startDate={'year': today.year, 'month': today.month})[0] == 409

        pending = None
        for _ in range(500):
            pending = client.get('/api/sync/session').get_json()['session']
            if pending:
                break
        assert pending is not None

        code, data = _msg(client, 'parsedMonthlyData', sessionId=pending['sessionId'],
                          data={'settlementMonth': pending['settlementMonth'],
                                'novelData': [{'title': '소설A', 'amount': 300}]})
        assert data == {'status': 'accepted'}
        assert app_module._controller.wait(5)

        events = client.get('/api/sync/events').get_json()['events']
        assert events[-1] == {'type': 'syncComplete', 'totalSum': 300, 'failedMonths': []}
        assert _msg(client, 'getSyncStatus')[1]['syncing'] is False
        assert _msg(client, 'loadData')[1]['data'][0]['title'] == '소설A'

        status = client.get('/api/status').get_json()
        assert status['synced'] == {'recordCount': 1, 'totalSum': 300}
        assert status['sessionMode'] == 'external'

    def test_report_without_session_is_discarded(self, client):
        code, data = _msg(client, 'parsedMonthlyData',
                          data={'settlementMonth': '2024.01', 'novelData': []})
        assert data == {'status': 'discarded'}

    def test_future_start_and_idle_cancel(self, client):
        code, data = _msg(client, 'startFullSync', startDate={'year': 2999, 'month': 1})
        assert code == 400
        assert data['status'] == 'error'
        assert _msg(client, 'cancelSync')[1] == {'status': 'not_syncing'}

    def test_start_date_must_be_an_object(self, app_module, client):
        code, data = _msg(client, 'startFullSync', startDate='2024-01')
        assert code == 400
        assert data['status'] == 'error'
        assert app_module._controller.is_syncing is False

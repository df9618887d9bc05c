import io

import pytest
from PIL import Image

from app import create_app
from config import TestingConfig, validate_config
from photoqr.modules import get_module_info
from photoqr.modules.errors import EncodingError, ExternalServiceError
from photoqr.modules.qr_generator import QREncoder, QROptions


def _photo_with_code(code_value):
    code = QREncoder().render(code_value, QROptions(size=240, error_correction='M', margin=4))
    canvas = Image.new('RGB', (600, 400), 'white')
    canvas.paste(code, (40, 40))
    buffer = io.BytesIO()
    canvas.save(buffer, format='PNG')
    return buffer.getvalue()


@pytest.fixture
def app():
    application = create_app('testing')
    yield application
    application.extensions['photoqr'].db.close_all_connections()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions['photoqr']


@pytest.fixture
def event(services):
    db = services.db
    event_id = db.create_event('Graduation 2025', photographer_name='Ana Pereyra')
    students = [db.create_student(event_id, 'Maria Lopez'), db.create_student(event_id, 'Juan Perez')]
    return event_id, students


def test_generate_subject_qr(client, event):
    _, students = event
    response = client.post(f"/api/qr/subjects/{students[0]}", json={'options': {'size': 256}})

    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['portal_url'].startswith('http://portal.test/f/')
    assert data['data_url'].startswith('data:image/png;base64,')
    assert data['cached'] is False


def test_generate_subject_qr_errors(client, event, services, monkeypatch):
    _, students = event
    assert client.post('/api/qr/subjects/missing', json={}).status_code == 404

    response = client.post(f"/api/qr/subjects/{students[0]}", json={'options': {'size': 2}})
    assert response.status_code == 400
    assert response.get_json()['errors']

    async def overflow(*args, **kwargs):
        raise EncodingError('too long')

    monkeypatch.setattr(services.qr_service, 'generate_qr_for_subject', overflow)
    assert client.post(f"/api/qr/subjects/{students[0]}", json={}).status_code == 422


def test_print_qr_and_token_validation(client, event, services):
    _, students = event
    png = client.get(f"/api/qr/subjects/{students[0]}/print")
    assert png.status_code == 200
    assert png.mimetype == 'image/png'

    token = client.post(f"/api/qr/subjects/{students[0]}", json={}).get_json()['data']['token']
    assert client.get(f"/api/qr/tokens/{token}").get_json()['data'] == {'valid': True}

    rotated = client.post(f"/api/qr/subjects/{students[0]}/rotate")
    assert rotated.status_code == 200
    assert client.get(f"/api/qr/tokens/{token}").get_json()['data'] == {'valid': False}


def test_external_failures_map_to_502(client, services, monkeypatch):
    async def unavailable(token):
        raise ExternalServiceError('database unavailable')

    monkeypatch.setattr(services.qr_service, 'validate_qr_url', unavailable)
    assert client.get('/api/qr/tokens/' + 'a' * 30).status_code == 502


def test_batch_generate_returns_mixed_results(client, event):
    event_id, students = event
    response = client.post('/api/qr/batch/generate', json={
        'event_id': event_id,
        'students': [{'id': students[0]}, {'id': 'missing'}],
    })

    assert response.status_code == 200
    report = response.get_json()['data']
    assert report['success_count'] == 1
    assert report['failure_count'] == 1
    assert report['batch_id'].startswith('batch_generate_')


def test_batch_generate_rejects_malformed_request(client, event):
    event_id, _ = event
    response = client.post('/api/qr/batch/generate', json={'event_id': event_id, 'students': 'nope'})
    assert response.status_code == 400
    assert client.post('/api/qr/batch/generate', json={'students': []}).status_code == 400


def test_identification_validation_and_event_endpoints(client, event):
    event_id, students = event
    issued = client.post('/api/qr/batch/identification', json={
        'event_id': event_id,
        'students': [{'id': student_id} for student_id in students],
    }).get_json()['data']
    code_values = [result['data']['code_value'] for result in issued['results']]

    single = client.post('/api/qr/validate', json={'code_value': code_values[0], 'event_id': event_id})
    assert single.get_json()['data']['valid'] is True
    assert single.get_json()['data']['student']['student_id'] == students[0]

    batch = client.post('/api/qr/batch/validate', json={
        'event_id': event_id, 'qr_codes': code_values + ['nonsense']
    }).get_json()['data']
    assert (batch['success_count'], batch['failure_count']) == (2, 1)

    stats = client.get(f"/api/events/{event_id}/qr/stats").get_json()['data']
    assert stats['active_student_codes'] == 2

    csv_export = client.get(f"/api/events/{event_id}/qr/export?format=csv")
    assert csv_export.mimetype == 'text/csv'
    assert csv_export.get_data(as_text=True).startswith('QR Code ID,Code Value,Student Name,Created At')

    assert client.get(f"/api/events/{event_id}/qr/export?format=xml").status_code == 400

    sheet = client.get(f"/api/events/{event_id}/qr/print-sheet")
    assert sheet.mimetype == 'application/pdf'
    assert sheet.data.startswith(b'%PDF')


def test_import_endpoint(client, event):
    event_id, _ = event
    response = client.post(f"/api/events/{event_id}/qr/import", json={'rows': [{'code_value': 'EXT-1'}]})
    assert response.get_json()['data']['success_count'] == 1
    assert client.post('/api/events/missing/qr/import', json={'rows': []}).status_code == 404


def test_detect_endpoints(client, event):
    event_id, students = event
    issued = client.post('/api/qr/batch/identification', json={
        'event_id': event_id, 'students': [{'id': students[0]}]
    }).get_json()['data']['results'][0]['data']
    image_bytes = _photo_with_code(issued['code_value'])

    response = client.post('/api/qr/detect', data={
        'image': (io.BytesIO(image_bytes), 'class.png'),
        'event_id': event_id,
    }, content_type='multipart/form-data')
    assert response.status_code == 200
    detections = response.get_json()['data']['detections']
    assert [d['student_id'] for d in detections] == [students[0]]

    bad = client.post('/api/qr/detect', data={'image': (io.BytesIO(b'junk'), 'junk.png')},
                      content_type='multipart/form-data')
    assert bad.status_code == 400

    assert client.post('/api/qr/detect', data={}, content_type='multipart/form-data').status_code == 400


def test_cache_endpoints(client, event):
    _, students = event
    client.post(f"/api/qr/subjects/{students[0]}", json={})
    client.post(f"/api/qr/subjects/{students[0]}", json={})

    stats = client.get('/api/qr/cache/stats').get_json()['data']
    assert stats['size'] == 1
    assert stats['hits'] == 1

    cleared = client.post('/api/qr/cache/clear').get_json()['data']
    assert cleared == {'cleared': 1}


def test_order_paid_with_automation_disabled(client, event):
    event_id, _ = event
    response = client.post('/api/orders/paid', json={
        'order_id': 'o-1', 'order_source': 'orders', 'event_id': event_id, 'total_value': 100
    })
    assert response.status_code == 200
    assert response.get_json()['data']['status'] == 'disabled'

    assert client.post('/api/orders/paid', json={'order_id': 'o-2'}).status_code == 400


def test_validate_config_reports_problems():
    class BrokenConfig(TestingConfig):
        QR_DEFAULT_ERROR_CORRECTION = 'Z'
        WHATSAPP_AUTOMATION_ENABLED = True
        WHATSAPP_TOKEN = None
        WHATSAPP_PHONE_NUMBER_ID = None

    errors = validate_config(BrokenConfig)
    assert len(errors) == 3
    assert validate_config(TestingConfig) == []


def test_module_registry_lists_services():
    modules = get_module_info()
    assert {'qr_service', 'batch_processor', 'qr_detection', 'notification_system'} <= set(modules)

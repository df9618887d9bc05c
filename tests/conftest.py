import io
from types import SimpleNamespace

import pytest
from PIL import Image

from photoqr.modules.database_manager import DatabaseManager
from photoqr.modules.token_service import TokenService
from photoqr.modules.qr_generator import QREncoder, QROptions
from photoqr.modules.qr_cache import QRCache
from photoqr.modules.qr_service import QRService

PORTAL_BASE_URL = 'http://portal.test'


class FakeClock:
    """Manually advanced time source for the cache."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    manager = DatabaseManager(':memory:')
    yield manager
    manager.close_all_connections()


@pytest.fixture
def seeded(db):
    event_id = db.create_event(
        'Spring Portraits 2025',
        school='Northside Primary',
        event_date='2025-09-12',
        photographer_name='Ana Pereyra',
        photographer_email='ana@example.com',
        photographer_phone='11 5555-0000'
    )
    other_event_id = db.create_event('Autumn Portraits 2025', school='Southside Primary')
    course_id = db.create_course(event_id, '3rd Grade A')
    students = [
        db.create_student(event_id, 'Maria Lopez', course_id=course_id, metadata={'seat': 4}),
        db.create_student(event_id, 'Juan Perez', course_id=course_id),
        db.create_student(event_id, 'Sofia Diaz', course_id=course_id),
    ]
    outsider = db.create_student(other_event_id, 'Lucas Gomez')
    return SimpleNamespace(
        event_id=event_id,
        other_event_id=other_event_id,
        course_id=course_id,
        students=students,
        outsider=outsider
    )


@pytest.fixture
def token_service(db):
    return TokenService(db, PORTAL_BASE_URL)


@pytest.fixture
def encoder():
    return QREncoder()


@pytest.fixture
def cache(clock):
    return QRCache(default_ttl=60, sweep_interval=1, clock=clock)


@pytest.fixture
def qr_service(db, token_service, encoder, cache):
    return QRService(db, token_service, encoder, cache)


def render_on_canvas(encoder, contents, canvas_size=(800, 600), qr_size=240, positions=None):
    """Paste rendered codes on a white canvas and return PNG bytes."""
    canvas = Image.new('RGB', canvas_size, 'white')
    positions = positions or [(40, 40)]
    for content, position in zip(contents, positions):
        code = encoder.render(content, QROptions(size=qr_size, error_correction='M', margin=4))
        canvas.paste(code, position)
    buffer = io.BytesIO()
    canvas.save(buffer, format='PNG')
    return buffer.getvalue()


@pytest.fixture
def canvas_factory(encoder):
    def _factory(contents, **kwargs):
        return render_on_canvas(encoder, contents, **kwargs)
    return _factory

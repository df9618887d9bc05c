import asyncio
import io

import pytest
from PIL import Image

from photoqr.modules.qr_detection import (
    QRDetectionPipeline, QRDecoder, OpenCVDecoder, ImagePreprocessor, Position,
    estimate_confidence, region_box, unrotate_point, map_position
)
from photoqr.modules.qr_generator import QROptions
from photoqr.modules.errors import ImageDecodeError, NotFoundError


class ExplodingDecoder(QRDecoder):
    name = 'exploding'

    def attempt_decode(self, image):
        raise RuntimeError('decoder crashed')


class MissingDecoder(QRDecoder):
    name = 'missing'

    @property
    def available(self):
        return False

    def attempt_decode(self, image):
        raise AssertionError('must not be called')


@pytest.fixture
def pipeline(qr_service):
    return QRDetectionPipeline(qr_service)


@pytest.fixture
def fast_pipeline(qr_service):
    return QRDetectionPipeline(qr_service, decoders=[OpenCVDecoder()], rotations=(0,))


def _issue(qr_service, seeded, index=0):
    return asyncio.run(qr_service.generate_student_identification_qr(seeded.event_id, seeded.students[index]))


def test_confidence_heuristic():
    assert estimate_confidence('short', False) == 0.7
    assert estimate_confidence('short', True) == 0.9
    assert estimate_confidence('x' * 21, False) == 0.8
    assert estimate_confidence('x' * 21, True) == 1.0


def test_quadrants_overlap_and_cover_the_frame():
    width, height = 1000, 800
    boxes = {name: region_box(name, width, height)
             for name in ('top_left', 'top_right', 'bottom_left', 'bottom_right')}

    assert region_box('full', width, height) == (0, 0, width, height)
    assert boxes['top_left'][2] > boxes['top_right'][0]
    assert boxes['top_left'][3] > boxes['bottom_left'][1]
    assert boxes['bottom_right'][2:] == (width, height)


@pytest.mark.parametrize('rotation', [0, 90, 180, 270])
def test_unrotate_point_inverts_pil_rotation(rotation):
    width, height = 100, 50
    image = Image.new('L', (width, height), 0)
    image.putpixel((10, 20), 255)

    rotated = image.rotate(rotation, expand=True)
    marked = [(x, y) for x in range(rotated.width) for y in range(rotated.height)
              if rotated.getpixel((x, y)) == 255]
    assert len(marked) == 1

    x, y = unrotate_point(marked[0][0] + 0.5, marked[0][1] + 0.5, rotation, width, height)
    assert (int(x), int(y)) == (10, 20)


def test_map_position_applies_region_offset_and_scale():
    position = map_position(Position(10, 20, 30, 40), 0, (100, 200, 400, 500), 2.0)
    assert position == Position(220, 440, 60, 80)
    assert map_position(None, 90, (0, 0, 10, 10), 1.0) is None


def test_preprocessor_bounds_size_and_builds_variants():
    preprocessor = ImagePreprocessor(max_width=400, max_height=300)
    buffer = io.BytesIO()
    Image.new('RGB', (1600, 900), 'white').save(buffer, format='JPEG')

    variants, scale, original_size = preprocessor.prepare(buffer.getvalue())

    assert original_size == (1600, 900)
    assert scale == 4.0
    assert [name for name, _ in variants] == ['base', 'contrast', 'grayscale']
    assert variants[0][1].size == (400, 225)
    assert variants[2][1].mode == 'L'


def test_preprocessor_rejects_non_images():
    with pytest.raises(ImageDecodeError):
        ImagePreprocessor().load(b'definitely not an image')
    with pytest.raises(ImageDecodeError):
        ImagePreprocessor().load(b'')


def test_opencv_decoder_reads_rendered_code(encoder):
    img = encoder.render('hello pipeline', QROptions(size=300, margin=4))
    detections = OpenCVDecoder().attempt_decode(img)
    assert [d.text for d in detections] == ['hello pipeline']
    assert detections[0].position is not None


def test_round_trip_detects_issued_student_code(pipeline, qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    image_bytes = canvas_factory([issued.code_value], positions=[(250, 150)])

    detections = asyncio.run(pipeline.detect(image_bytes, seeded.event_id))

    assert len(detections) == 1
    detection = detections[0]
    assert detection.student_id == seeded.students[0]
    assert detection.code_id == issued.code_id
    assert detection.confidence == 1.0
    assert 200 <= detection.position.x <= 300
    assert 100 <= detection.position.y <= 200


def test_code_visible_in_overlapping_regions_is_reported_once(fast_pipeline, qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    # Inside the top-left quadrant, so both the full frame and the quadrant see it
    image_bytes = canvas_factory([issued.code_value], positions=[(40, 40)])

    detections = asyncio.run(fast_pipeline.detect(image_bytes))

    assert len(detections) == 1
    assert detections[0].student_id == seeded.students[0]


def test_several_students_in_one_photo(fast_pipeline, qr_service, seeded, canvas_factory):
    first = _issue(qr_service, seeded, 0)
    second = _issue(qr_service, seeded, 1)
    image_bytes = canvas_factory([first.code_value, second.code_value], qr_size=200,
                                 canvas_size=(1000, 600), positions=[(40, 40), (700, 40)])

    detections = asyncio.run(fast_pipeline.detect(image_bytes, seeded.event_id))

    assert {d.student_id for d in detections} == set(seeded.students[:2])
    confidences = [d.confidence for d in detections]
    assert confidences == sorted(confidences, reverse=True)


def test_unregistered_codes_are_discarded(fast_pipeline, seeded, canvas_factory):
    image_bytes = canvas_factory(['https://example.com/not-a-student'])
    assert asyncio.run(fast_pipeline.detect(image_bytes)) == []


def test_rotated_photo_is_detected(qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    image = Image.open(io.BytesIO(canvas_factory([issued.code_value], positions=[(250, 150)])))
    buffer = io.BytesIO()
    image.rotate(90, expand=True).save(buffer, format='PNG')

    pipeline = QRDetectionPipeline(qr_service, decoders=[OpenCVDecoder()])
    detections = asyncio.run(pipeline.detect(buffer.getvalue(), seeded.event_id))

    assert [d.student_id for d in detections] == [seeded.students[0]]


def test_failing_decoder_does_not_stop_detection(qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    pipeline = QRDetectionPipeline(qr_service, decoders=[ExplodingDecoder(), OpenCVDecoder()], rotations=(0,))

    detections = asyncio.run(pipeline.detect(canvas_factory([issued.code_value])))

    assert len(detections) == 1
    assert detections[0].decoder == 'opencv'


def test_unavailable_decoder_is_skipped(qr_service):
    pipeline = QRDetectionPipeline(qr_service, decoders=[MissingDecoder(), OpenCVDecoder()])
    assert [decoder.name for decoder in pipeline.decoders] == ['opencv']


def test_detect_rejects_undecodable_input(fast_pipeline):
    with pytest.raises(ImageDecodeError):
        asyncio.run(fast_pipeline.detect(b'\x00\x01garbage'))


def test_batch_detect_reports_each_file(fast_pipeline, qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    images = [
        ('class_a.png', canvas_factory([issued.code_value])),
        ('broken.jpg', b'not an image'),
        ('empty_wall.png', canvas_factory([])),
    ]

    results = asyncio.run(fast_pipeline.batch_detect(images, seeded.event_id))

    assert [r['filename'] for r in results] == ['class_a.png', 'broken.jpg', 'empty_wall.png']
    assert results[0]['error'] is None
    assert results[0]['detections'][0]['student_id'] == seeded.students[0]
    assert results[1]['error']
    assert results[1]['detections'] == []
    assert results[2] == {'filename': 'empty_wall.png', 'detections': [], 'error': None}


def test_detect_and_tag_photo_is_idempotent(db, fast_pipeline, qr_service, seeded, canvas_factory):
    issued = _issue(qr_service, seeded)
    photo_id = db.create_photo('IMG_0042.jpg', seeded.event_id)
    image_bytes = canvas_factory([issued.code_value])

    first = asyncio.run(fast_pipeline.detect_and_tag_photo(photo_id, image_bytes))
    asyncio.run(fast_pipeline.detect_and_tag_photo(photo_id, image_bytes))

    assert first['code_id'] == issued.code_id
    assert first['tagged_students'] == [seeded.students[0]]

    photo = db.execute_query("SELECT code_id FROM photos WHERE id = ?", (photo_id,), fetch_all=False)
    links = db.execute_query("SELECT student_id, confidence FROM photo_students WHERE photo_id = ?", (photo_id,))
    assert photo['code_id'] == issued.code_id
    assert [link['student_id'] for link in links] == [seeded.students[0]]


def test_detect_and_tag_unknown_photo(fast_pipeline, canvas_factory):
    with pytest.raises(NotFoundError):
        asyncio.run(fast_pipeline.detect_and_tag_photo('missing-photo', canvas_factory([])))

import base64
import io

import pytest
from PIL import Image

from photoqr.modules.qr_generator import QREncoder, QROptions, PrintSheetEntry, PRINT_PIXEL_SIZE
from photoqr.modules.qr_detection import OpenCVDecoder
from photoqr.modules.errors import EncodingError, ValidationError


def test_render_has_requested_size(encoder):
    img = encoder.render('http://portal.test/f/abc', QROptions(size=256))
    assert img.size == (256, 256)
    assert img.mode == 'RGB'


def test_render_is_deterministic(encoder):
    options = QROptions(size=200, error_correction='Q')
    assert encoder.to_png_bytes('same content', options) == encoder.to_png_bytes('same content', options)


def test_data_url_contains_png(encoder):
    data_url = encoder.to_data_url('hello')
    assert data_url.startswith('data:image/png;base64,')
    png = base64.b64decode(data_url.split(',', 1)[1])
    assert Image.open(io.BytesIO(png)).size == (200, 200)


def test_content_over_capacity_raises_encoding_error(encoder):
    with pytest.raises(EncodingError):
        encoder.render('x' * 3000, QROptions(error_correction='H'))


def test_empty_content_raises_encoding_error(encoder):
    with pytest.raises(EncodingError):
        encoder.render('')


def test_print_profile():
    options = QROptions.for_print()
    assert options.error_correction == 'H'
    assert options.size == PRINT_PIXEL_SIZE == 150


def test_options_from_dict_accepts_aliases():
    options = QROptions.from_dict({
        'size': 300,
        'errorCorrectionLevel': 'Q',
        'color': {'dark': '#112233', 'light': '#FFFFEE'},
    })
    assert options.size == 300
    assert options.error_correction == 'Q'
    assert options.dark_color == '#112233'
    assert options.light_color == '#FFFFEE'


def test_options_from_dict_reports_every_bad_field():
    with pytest.raises(ValidationError) as excinfo:
        QROptions.from_dict({'size': 5, 'error_correction': 'X', 'shape': 'round'})
    assert len(excinfo.value.messages) == 3


def test_options_from_dict_uses_defaults():
    defaults = QROptions(size=320, margin=3)
    options = QROptions.from_dict({'error_correction': 'L'}, defaults=defaults)
    assert options.size == 320
    assert options.margin == 3
    assert options.error_correction == 'L'


def test_print_sheet_pdf(encoder):
    png = encoder.to_png_bytes('LKSTUDENT_abcdefghijklmnopqrstuv', QROptions.for_print())
    entries = [PrintSheetEntry(png_bytes=png, title=f"Student {i}", subtitle='3rd Grade A') for i in range(14)]
    pdf = encoder.create_print_sheet_pdf(entries)
    assert pdf.startswith(b'%PDF')


def test_print_sheet_pdf_without_entries(encoder):
    assert encoder.create_print_sheet_pdf([]).startswith(b'%PDF')


def test_qr_config_recommendations():
    config = QREncoder.get_qr_config()
    assert config['print_recommendations'] == {'dpi': 300, 'size_inches': 0.5, 'pixel_size': 150}
    assert [level['level'] for level in config['error_levels']] == ['L', 'M', 'Q', 'H']


def _decode(img):
    # Extra white border so the decoder sees a clean quiet zone
    framed = Image.new('RGB', (img.width + 80, img.height + 80), 'white')
    framed.paste(img, (40, 40))
    return [detection.text for detection in OpenCVDecoder().attempt_decode(framed)]


@pytest.mark.parametrize('content', [
    'http://portal.test/f/' + 'A1b2C3d4E5f6G7h8I9j0Kl',
    'LKSTUDENT_' + 'A1b2C3d4E5f6G7h8I9j0Kl',
])
def test_smallest_allowed_size_still_decodes(encoder, content):
    options = QROptions(size=21, margin=4)
    minimum = encoder.minimum_size(content, options)
    options.size = minimum

    img = encoder.render(content, options)

    assert img.size == (minimum, minimum)
    assert _decode(img) == [content]


def test_size_below_minimum_raises(encoder):
    content = 'http://portal.test/f/' + 'A1b2C3d4E5f6G7h8I9j0Kl'
    minimum = encoder.minimum_size(content, QROptions(margin=4))

    with pytest.raises(EncodingError) as excinfo:
        encoder.render(content, QROptions(size=minimum - 1, margin=4))
    assert f"minimum size is {minimum}" in str(excinfo.value)

    with pytest.raises(EncodingError):
        encoder.render(content, QROptions(size=40))


def test_uneven_size_is_padded_not_resampled(encoder):
    content = 'LKSTUDENT_' + 'A1b2C3d4E5f6G7h8I9j0Kl'
    img = encoder.render(content, QROptions(size=203, margin=4))

    assert img.size == (203, 203)
    assert img.getpixel((0, 0)) == (255, 255, 255)
    assert _decode(img) == [content]

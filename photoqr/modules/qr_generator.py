"""
QR Code Generator Module - School Photo QR Pipeline

This module renders QR codes for the pipeline. It turns a payload (a portal URL
or a student code value) into a PNG image at a fixed pixel size and error
correction level, and lays out printable sheets of labelled codes.

Features:
- Screen and print rendering profiles
- PNG bytes and data URL output
- Multi-page PDF sheets for printing
"""

import io
import base64
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image
from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader

from photoqr.modules.errors import EncodingError, ValidationError

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,  # ~7%
    'M': qrcode.constants.ERROR_CORRECT_M,  # ~15%
    'Q': qrcode.constants.ERROR_CORRECT_Q,  # ~25%
    'H': qrcode.constants.ERROR_CORRECT_H,  # ~30%
}

PRINT_DPI = 300
PRINT_SIZE_INCHES = 0.5
PRINT_PIXEL_SIZE = 150

MIN_SIZE = 21
MAX_SIZE = 4096
# Scanners need at least 2 pixels per module
MIN_MODULE_PIXELS = 2


@dataclass
class QROptions:
    """Rendering options for a single code."""
    size: int = 200
    error_correction: str = 'M'
    margin: int = 2
    dark_color: str = '#000000'
    light_color: str = '#FFFFFF'

    @classmethod
    def for_print(cls) -> 'QROptions':
        """Profile for stickers: higher error correction, 300 DPI at half an inch."""
        return cls(size=PRINT_PIXEL_SIZE, error_correction='H', margin=1)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], defaults: Optional['QROptions'] = None) -> 'QROptions':
        """
        Build options from request data, validating every field.

        Raises:
            ValidationError: One message per bad field
        """
        base = asdict(defaults or cls())
        if not data:
            return cls(**base)

        errors = []
        aliases = {'errorCorrectionLevel': 'error_correction', 'error_correction_level': 'error_correction'}
        normalized = {aliases.get(key, key): value for key, value in data.items()}

        color = normalized.pop('color', None)
        if isinstance(color, dict):
            if 'dark' in color:
                normalized['dark_color'] = color['dark']
            if 'light' in color:
                normalized['light_color'] = color['light']

        for key, value in normalized.items():
            if key not in base:
                errors.append(f"Unknown option: {key}")
                continue
            base[key] = value

        if not isinstance(base['size'], int) or not MIN_SIZE <= base['size'] <= MAX_SIZE:
            errors.append(f"size must be an integer between {MIN_SIZE} and {MAX_SIZE}")
        if base['error_correction'] not in ERROR_CORRECTION_LEVELS:
            errors.append("error_correction must be one of L, M, Q, H")
        if not isinstance(base['margin'], int) or not 0 <= base['margin'] <= 20:
            errors.append("margin must be an integer between 0 and 20")
        for key in ('dark_color', 'light_color'):
            if not isinstance(base[key], str) or not base[key]:
                errors.append(f"{key} must be a color string")

        if errors:
            raise ValidationError(errors)
        return cls(**base)

    def fingerprint(self) -> str:
        return f"{self.size}:{self.error_correction}:{self.margin}:{self.dark_color}:{self.light_color}"


@dataclass
class PrintSheetEntry:
    """One labelled code on a printed sheet."""
    png_bytes: bytes
    title: str
    subtitle: str = ''


class QREncoder:
    """
    Renders QR codes with the qrcode library.
    Rendering has no hidden state: the same content and options always give
    the same image.
    """

    def __init__(self, default_options: Optional[QROptions] = None):
        self.logger = logging.getLogger(__name__)
        self.default_options = default_options or QROptions()

    def render(self, content: str, options: Optional[QROptions] = None) -> Image.Image:
        """
        Render content into a square RGB image of ``options.size`` pixels.
        Modules are drawn at a whole number of pixels and the code is centered
        on the light color, so the image is never resampled.

        Raises:
            EncodingError: Content exceeds the capacity at this error correction,
                or the size is too small to draw each module with 2 pixels
        """
        options = options or self.default_options
        qr = self._make_code(content, options)

        total_modules = qr.modules_count + 2 * options.margin
        box_size = options.size // total_modules
        if box_size < MIN_MODULE_PIXELS:
            raise EncodingError(
                f"Size {options.size} is too small for this content; "
                f"minimum size is {MIN_MODULE_PIXELS * total_modules}"
            )
        qr.box_size = box_size

        img = qr.make_image(fill_color=options.dark_color, back_color=options.light_color)
        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        buffer.seek(0)
        rendered = Image.open(buffer).convert('RGB')

        if rendered.size == (options.size, options.size):
            return rendered
        padded = Image.new('RGB', (options.size, options.size), options.light_color)
        offset = (options.size - rendered.size[0]) // 2
        padded.paste(rendered, (offset, offset))
        return padded

    def minimum_size(self, content: str, options: Optional[QROptions] = None) -> int:
        """Smallest image size that renders content readably with these options."""
        options = options or self.default_options
        qr = self._make_code(content, options)
        return MIN_MODULE_PIXELS * (qr.modules_count + 2 * options.margin)

    @staticmethod
    def _make_code(content: str, options: QROptions) -> qrcode.QRCode:
        if not content:
            raise EncodingError('Cannot encode empty content')

        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECTION_LEVELS[options.error_correction],
            box_size=1,
            border=options.margin
        )
        qr.add_data(content)
        try:
            qr.make(fit=True)
        except DataOverflowError as e:
            raise EncodingError(
                f"Content of {len(content)} characters does not fit a QR code "
                f"at error correction {options.error_correction}"
            ) from e

        return qr

    def to_png_bytes(self, content: str, options: Optional[QROptions] = None) -> bytes:
        """Render content as PNG bytes."""
        img = self.render(content, options)
        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return buffer.getvalue()

    def to_data_url(self, content: str, options: Optional[QROptions] = None) -> str:
        """Render content as a PNG data URL."""
        png = self.to_png_bytes(content, options)
        return 'data:image/png;base64,' + base64.b64encode(png).decode('ascii')

    def create_print_sheet_pdf(self, entries: List[PrintSheetEntry],
                               columns: int = 3, rows: int = 4) -> bytes:
        """
        Create a PDF with a grid of labelled QR codes for printing.

        Args:
            entries (List[PrintSheetEntry]): Codes to print, in order
            columns (int): Codes per row
            rows (int): Rows per page

        Returns:
            bytes: PDF document
        """
        buffer = io.BytesIO()
        c = canvas.Canvas(buffer, pagesize=A4)
        width, height = A4

        per_page = columns * rows
        cell_width = width / columns
        cell_height = height / rows
        qr_side = min(cell_width, cell_height) * 0.6

        for i, entry in enumerate(entries):
            if i > 0 and i % per_page == 0:
                c.showPage()

            row = (i % per_page) // columns
            col = (i % per_page) % columns

            x = col * cell_width + (cell_width - qr_side) / 2
            y = height - (row + 1) * cell_height + (cell_height - qr_side) / 2 + 12

            c.drawImage(ImageReader(io.BytesIO(entry.png_bytes)), x, y, width=qr_side, height=qr_side)

            c.setFont('Helvetica-Bold', 9)
            c.drawCentredString(col * cell_width + cell_width / 2, y - 12, entry.title[:40])
            if entry.subtitle:
                c.setFont('Helvetica', 7)
                c.drawCentredString(col * cell_width + cell_width / 2, y - 22, entry.subtitle[:50])

        if not entries:
            c.setFont('Helvetica', 12)
            c.drawCentredString(width / 2, height / 2, 'No QR codes to print')

        c.save()
        self.logger.info(f"Print sheet generated with {len(entries)} QR code(s)")
        return buffer.getvalue()

    @staticmethod
    def get_qr_config() -> Dict[str, Any]:
        """Rendering recommendations shown to administrators."""
        return {
            'recommended_sizes': [150, 200, 300, 400],
            'error_levels': [
                {'level': 'L', 'description': '~7% - digital use'},
                {'level': 'M', 'description': '~15% - default for screens'},
                {'level': 'Q', 'description': '~25% - noisy environments'},
                {'level': 'H', 'description': '~30% - printed stickers'},
            ],
            'print_recommendations': {
                'dpi': PRINT_DPI,
                'size_inches': PRINT_SIZE_INCHES,
                'pixel_size': PRINT_PIXEL_SIZE,
            },
        }

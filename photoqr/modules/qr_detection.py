"""
QR Detection Module - School Photo QR Pipeline

This module finds student identification stickers in uploaded photos.
A photo is normalized and turned into several variants; each variant is
scanned in several regions and rotations by every available decoder. Decoded
strings are deduplicated, checked against the registered codes and ranked.

Features:
- Pluggable decoders (ZBar for speed, OpenCV for robustness)
- Contrast and grayscale variants, quadrant regions, four rotations
- Positions reported in original image coordinates
- Batch detection and photo auto-tagging
"""

import io
import time
import asyncio
import secrets
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from photoqr.modules.batch_processor import process_batch
from photoqr.modules.database_manager import new_id
from photoqr.modules.qr_service import QRService
from photoqr.modules.errors import ImageDecodeError, NotFoundError

# pyzbar needs the zbar shared library, which is not always installed
try:
    from pyzbar.pyzbar import decode as zbar_decode, ZBarSymbol
    _HAS_PYZBAR = True
except Exception:
    _HAS_PYZBAR = False

logger = logging.getLogger(__name__)

MAX_WIDTH = 1920
MAX_HEIGHT = 1080
DETECTION_BATCH_SIZE = 5

DEFAULT_REGIONS = ('full', 'top_left', 'top_right', 'bottom_left', 'bottom_right')
DEFAULT_ROTATIONS = (0, 90, 180, 270)

# Quadrants overlap so a sticker on a dividing line is whole in at least one of them
REGION_OVERLAP = 0.1

BASE_CONFIDENCE = 0.7
POSITION_BONUS = 0.2
LENGTH_BONUS = 0.1
LENGTH_BONUS_THRESHOLD = 20


@dataclass
class Position:
    """Axis-aligned bounding box in pixels."""
    x: int
    y: int
    width: int
    height: int


@dataclass
class RawDetection:
    """A string returned by one decoder on one image."""
    text: str
    position: Optional[Position] = None
    decoder: str = ''


@dataclass
class Candidate:
    text: str
    confidence: float
    position: Optional[Position]
    decoder: str
    variant: str
    region: str
    rotation: int


@dataclass
class Detection:
    """A decoded string matched to a registered student."""
    code_value: str
    student_id: str
    event_id: str
    code_id: Optional[str]
    course_id: Optional[str]
    type: str
    confidence: float
    position: Optional[Position]
    decoder: str
    variant: str
    region: str
    rotation: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def estimate_confidence(text: str, has_position: bool) -> float:
    """Score a decoded string: positioned and longer payloads rank higher."""
    confidence = BASE_CONFIDENCE
    if has_position:
        confidence += POSITION_BONUS
    if len(text) > LENGTH_BONUS_THRESHOLD:
        confidence += LENGTH_BONUS
    return min(1.0, round(confidence, 4))


class QRDecoder:
    """
    Decoder strategy. Subclasses return every QR string found in an image.
    """
    name = 'decoder'

    @property
    def available(self) -> bool:
        return True

    def attempt_decode(self, image: Image.Image) -> List[RawDetection]:
        raise NotImplementedError


class ZBarDecoder(QRDecoder):
    """Fast decoder backed by the zbar library."""
    name = 'zbar'

    @property
    def available(self) -> bool:
        return _HAS_PYZBAR

    def attempt_decode(self, image: Image.Image) -> List[RawDetection]:
        detections = []
        for result in zbar_decode(image, symbols=[ZBarSymbol.QRCODE]):
            text = result.data.decode('utf-8', errors='replace')
            if not text:
                continue
            rect = result.rect
            position = Position(rect.left, rect.top, rect.width, rect.height) if rect.width and rect.height else None
            detections.append(RawDetection(text=text, position=position, decoder=self.name))
        return detections


class OpenCVDecoder(QRDecoder):
    """Slower decoder based on cv2.QRCodeDetector; finds several codes per image."""
    name = 'opencv'

    def __init__(self):
        self.detector = cv2.QRCodeDetector()

    @staticmethod
    def _to_array(image: Image.Image) -> np.ndarray:
        if image.mode == 'L':
            return np.ascontiguousarray(np.array(image))
        return cv2.cvtColor(np.array(image.convert('RGB')), cv2.COLOR_RGB2BGR)

    @staticmethod
    def _box(points) -> Optional[Position]:
        if points is None:
            return None
        pts = np.asarray(points).reshape(-1, 2)
        if pts.size == 0:
            return None
        x_min, y_min = pts.min(axis=0)
        x_max, y_max = pts.max(axis=0)
        return Position(int(round(x_min)), int(round(y_min)),
                        int(round(x_max - x_min)), int(round(y_max - y_min)))

    def attempt_decode(self, image: Image.Image) -> List[RawDetection]:
        array = self._to_array(image)
        detections = []

        ok, texts, points, _ = self.detector.detectAndDecodeMulti(array)
        if ok and texts is not None:
            for i, text in enumerate(texts):
                if text:
                    box = self._box(points[i]) if points is not None else None
                    detections.append(RawDetection(text=text, position=box, decoder=self.name))

        if not detections:
            text, points, _ = self.detector.detectAndDecode(array)
            if text:
                detections.append(RawDetection(text=text, position=self._box(points), decoder=self.name))
        return detections


def default_decoders() -> List[QRDecoder]:
    return [ZBarDecoder(), OpenCVDecoder()]


class ImagePreprocessor:
    """
    Loads photos and produces the image variants scanned by the pipeline.
    """

    def __init__(self, max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT,
                 enhance_contrast: bool = True):
        self.max_width = max_width
        self.max_height = max_height
        self.enhance_contrast = enhance_contrast

    def load(self, image_bytes: bytes) -> Image.Image:
        """
        Decode image bytes into an RGB image with EXIF orientation applied.

        Raises:
            ImageDecodeError: Bytes are not a readable image
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image data")
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
            image = ImageOps.exif_transpose(image)
            return image.convert('RGB')
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ImageDecodeError(f"Cannot decode image: {e}") from e

    def resize(self, image: Image.Image) -> Tuple[Image.Image, float]:
        """
        Fit the image within the size bounds, keeping its aspect ratio.

        Returns:
            tuple: (image, scale) where scale converts resized coordinates back
                   to original ones
        """
        width, height = image.size
        ratio = min(self.max_width / width, self.max_height / height, 1.0)
        if ratio >= 1.0:
            return image, 1.0
        new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
        resized = image.resize(new_size, Image.Resampling.LANCZOS)
        return resized, width / new_size[0]

    def variants(self, image: Image.Image) -> List[Tuple[str, Image.Image]]:
        result = [('base', image)]
        if self.enhance_contrast:
            contrast = ImageOps.autocontrast(image).filter(ImageFilter.SHARPEN)
            result.append(('contrast', contrast))
        result.append(('grayscale', ImageOps.equalize(image.convert('L'))))
        return result

    def prepare(self, image_bytes: bytes) -> Tuple[List[Tuple[str, Image.Image]], float, Tuple[int, int]]:
        """Load, resize and build variants in one step."""
        original = self.load(image_bytes)
        resized, scale = self.resize(original)
        return self.variants(resized), scale, original.size


def region_box(region: str, width: int, height: int) -> Tuple[int, int, int, int]:
    """Crop box (left, top, right, bottom) of a named region."""
    if region == 'full':
        return 0, 0, width, height

    half_w = int(width * (0.5 + REGION_OVERLAP / 2))
    half_h = int(height * (0.5 + REGION_OVERLAP / 2))
    boxes = {
        'top_left': (0, 0, half_w, half_h),
        'top_right': (width - half_w, 0, width, half_h),
        'bottom_left': (0, height - half_h, half_w, height),
        'bottom_right': (width - half_w, height - half_h, width, height),
    }
    if region not in boxes:
        raise ValueError(f"Unknown region: {region}")
    return boxes[region]


def unrotate_point(x: float, y: float, rotation: int, width: int, height: int) -> Tuple[float, float]:
    """
    Map a point of a counterclockwise-rotated image back to the unrotated one.

    Args:
        width, height: Size of the unrotated image
    """
    if rotation == 90:
        return width - y, x
    if rotation == 180:
        return width - x, height - y
    if rotation == 270:
        return y, height - x
    return x, y


def map_position(position: Optional[Position], rotation: int, box: Tuple[int, int, int, int],
                 scale: float) -> Optional[Position]:
    """Convert a position found in a rotated region crop into original image coordinates."""
    if position is None:
        return None
    left, top, right, bottom = box
    crop_w, crop_h = right - left, bottom - top

    corners = [
        unrotate_point(position.x, position.y, rotation, crop_w, crop_h),
        unrotate_point(position.x + position.width, position.y + position.height, rotation, crop_w, crop_h),
    ]
    xs = [c[0] for c in corners]
    ys = [c[1] for c in corners]

    return Position(
        x=int(round((min(xs) + left) * scale)),
        y=int(round((min(ys) + top) * scale)),
        width=int(round((max(xs) - min(xs)) * scale)),
        height=int(round((max(ys) - min(ys)) * scale))
    )


class QRDetectionPipeline:
    """
    Multi-strategy QR detection for photos.
    """

    def __init__(self, qr_service: QRService, decoders: Optional[Sequence[QRDecoder]] = None,
                 preprocessor: Optional[ImagePreprocessor] = None,
                 regions: Iterable[str] = DEFAULT_REGIONS,
                 rotations: Iterable[int] = DEFAULT_ROTATIONS,
                 batch_size: int = DETECTION_BATCH_SIZE):
        self.qr_service = qr_service
        self.db = qr_service.db
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.regions = tuple(regions)
        self.rotations = tuple(rotations)
        self.batch_size = batch_size
        self.logger = logging.getLogger(__name__)

        self.decoders = []
        for decoder in (decoders if decoders is not None else default_decoders()):
            if decoder.available:
                self.decoders.append(decoder)
            else:
                self.logger.warning(f"QR decoder '{decoder.name}' unavailable, skipping it")

    def _scan(self, variants, scale: float, request_id: str) -> Dict[str, Candidate]:
        """Run every variant, region, rotation and decoder; keep the best hit per string."""
        best: Dict[str, Candidate] = {}
        attempts = 0
        failures = 0

        for variant_name, variant in variants:
            width, height = variant.size
            for region in self.regions:
                box = region_box(region, width, height)
                crop = variant if region == 'full' else variant.crop(box)
                for rotation in self.rotations:
                    rotated = crop if rotation == 0 else crop.rotate(rotation, expand=True)
                    for decoder in self.decoders:
                        attempts += 1
                        try:
                            raw_detections = decoder.attempt_decode(rotated)
                        except Exception as e:
                            failures += 1
                            self.logger.debug(f"[{request_id}] {decoder.name} failed on "
                                              f"{variant_name}/{region}/{rotation}: {str(e)}")
                            continue

                        for raw in raw_detections:
                            position = map_position(raw.position, rotation, box, scale)
                            candidate = Candidate(
                                text=raw.text,
                                confidence=estimate_confidence(raw.text, position is not None),
                                position=position,
                                decoder=decoder.name,
                                variant=variant_name,
                                region=region,
                                rotation=rotation
                            )
                            current = best.get(raw.text)
                            if current is None or candidate.confidence > current.confidence:
                                best[raw.text] = candidate

        self.logger.debug(f"[{request_id}] {attempts} decode attempt(s), {failures} failed, "
                          f"{len(best)} unique string(s)")
        return best

    async def detect(self, image_bytes: bytes, event_id: Optional[str] = None,
                     request_id: Optional[str] = None) -> List[Detection]:
        """
        Detect registered student codes in a photo.

        Args:
            image_bytes (bytes): Encoded image
            event_id (str): Only accept codes of this event

        Returns:
            List[Detection]: Validated detections, highest confidence first

        Raises:
            ImageDecodeError: The bytes are not a readable image
        """
        request_id = request_id or f"detect_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        start_time = time.monotonic()

        variants, scale, original_size = await asyncio.to_thread(self.preprocessor.prepare, image_bytes)
        candidates = await asyncio.to_thread(self._scan, variants, scale, request_id)

        detections = []
        for text, candidate in candidates.items():
            data = await self.qr_service.validate_student_qr_code(text, event_id)
            if data is None:
                self.logger.debug(f"[{request_id}] Unregistered QR string discarded: {text[:20]}***")
                continue
            detections.append(Detection(
                code_value=data.code_value,
                student_id=data.student_id,
                event_id=data.event_id,
                code_id=data.id,
                course_id=data.course_id,
                type=data.type,
                confidence=candidate.confidence,
                position=candidate.position,
                decoder=candidate.decoder,
                variant=candidate.variant,
                region=candidate.region,
                rotation=candidate.rotation,
                metadata=data.metadata
            ))

        detections.sort(key=lambda d: d.confidence, reverse=True)

        elapsed = int((time.monotonic() - start_time) * 1000)
        self.logger.info(f"[{request_id}] Detection on {original_size[0]}x{original_size[1]} image: "
                         f"{len(candidates)} decoded, {len(detections)} validated in {elapsed}ms")
        return detections

    async def batch_detect(self, images: Sequence[Tuple[str, bytes]],
                           event_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Run detection over many images in sub-batches.

        Args:
            images: (filename, bytes) pairs

        Returns:
            list: One ``{filename, detections, error}`` entry per image, in order
        """
        async def _detect(item):
            filename, image_bytes = item
            return await self.detect(image_bytes, event_id, request_id=f"detect_{filename}")

        report = await process_batch(
            images, _detect,
            batch_size=self.batch_size,
            kind='detect',
            key=lambda item: item[0]
        )

        return [
            {
                'filename': images[result.index][0],
                'detections': [d.to_dict() for d in result.data] if result.success else [],
                'error': result.error,
            }
            for result in report.results
        ]

    async def detect_and_tag_photo(self, photo_id: str, image_bytes: bytes,
                                   event_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Detect codes in a stored photo and link the photo to the students found.
        Re-running on the same photo does not duplicate links.

        Raises:
            NotFoundError: Unknown photo
        """
        photo = await self.db.fetch_one("SELECT id, event_id FROM photos WHERE id = ?", (photo_id,))
        if not photo:
            raise NotFoundError(f"Photo not found: {photo_id}")

        event_id = event_id or photo['event_id']
        detections = await self.detect(image_bytes, event_id, request_id=f"tag_{photo_id[:8]}")

        primary = next((d for d in detections if d.code_id), None)
        tagged = list(dict.fromkeys(d.student_id for d in detections))
        confidence = {}
        for detection in detections:
            confidence.setdefault(detection.student_id, detection.confidence)

        def _tag(conn):
            cursor = conn.cursor()
            if primary is not None:
                cursor.execute("UPDATE photos SET code_id = ? WHERE id = ?", (primary.code_id, photo_id))
            for student_id in tagged:
                cursor.execute(
                    """INSERT INTO photo_students (id, photo_id, student_id, confidence)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(photo_id, student_id)
                       DO UPDATE SET confidence = MAX(confidence, excluded.confidence)""",
                    (new_id(), photo_id, student_id, confidence[student_id])
                )

        if detections:
            await self.db.run_in_transaction(_tag)

        self.logger.info(f"Photo {photo_id} tagged with {len(tagged)} student(s)")
        return {
            'photo_id': photo_id,
            'code_id': primary.code_id if primary else None,
            'tagged_students': tagged,
            'detections': [d.to_dict() for d in detections],
        }

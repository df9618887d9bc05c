"""
QR Service Module - School Photo QR Pipeline

This module ties tokens, rendering, caching and the codes table together.
It produces the family portal QR for a subject, issues student identification
codes that photographers print as stickers, and checks decoded strings against
the registered codes.

Code value formats:
- LKSTUDENT_<token>: current format, resolved through the codes table
- STUDENT:<student id>:<name>:<event id>: legacy format, resolved by student id
  and accepted only when the embedded name matches the stored one
"""

import re
import asyncio
import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from photoqr.modules.database_manager import DatabaseManager, new_id, encode_json, decode_json
from photoqr.modules.token_service import TokenService, mask_token
from photoqr.modules.qr_generator import QREncoder, QROptions, PrintSheetEntry
from photoqr.modules.qr_cache import QRCache
from photoqr.modules.errors import NotFoundError, ExternalServiceError

STUDENT_CODE_PREFIX = 'LKSTUDENT_'
LEGACY_CODE_PREFIX = 'STUDENT:'

TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_-]{16,}$')
LEGACY_PATTERN = re.compile(
    r'^STUDENT:([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}):([^:]+)'
    r':([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$',
    re.IGNORECASE
)

QR_TYPE_STUDENT = 'student_identification'
QR_TYPE_LEGACY = 'legacy_student'


@dataclass
class QRResult:
    """Family portal QR for one subject."""
    data_url: str
    token: str
    portal_url: str
    subject_name: str
    cached: bool = False


@dataclass
class StudentQR:
    """Newly issued student identification code."""
    code_id: str
    code_value: str
    token: str
    data_url: str
    student_id: str


@dataclass
class ParsedCode:
    """Structural parse of a decoded string."""
    kind: str
    token: Optional[str] = None
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    event_id: Optional[str] = None


@dataclass
class StudentQRData:
    """A decoded code matched to a registered student."""
    id: Optional[str]
    event_id: str
    course_id: Optional[str]
    student_id: str
    code_value: str
    token: Optional[str]
    type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize_name(name: Optional[str]) -> str:
    """Casefold a person name without accents, treating underscores as spaces."""
    if not name:
        return ''
    decomposed = unicodedata.normalize('NFKD', name.replace('_', ' '))
    text = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return ' '.join(text.split()).casefold()


def parse_code_value(code_value: Optional[str]) -> Optional[ParsedCode]:
    """
    Recognize a decoded string as a student code.

    Returns:
        ParsedCode or None when the string is not a student code
    """
    if not code_value:
        return None
    value = code_value.strip()

    if value.startswith(STUDENT_CODE_PREFIX):
        token = value[len(STUDENT_CODE_PREFIX):]
        if TOKEN_PATTERN.match(token):
            return ParsedCode(kind=QR_TYPE_STUDENT, token=token)
        return None

    match = LEGACY_PATTERN.match(value)
    if match:
        student_id, student_name, event_id = match.groups()
        return ParsedCode(
            kind=QR_TYPE_LEGACY,
            student_id=student_id.lower(),
            student_name=student_name,
            event_id=event_id.lower()
        )
    return None


class QRService:
    """
    QR lifecycle operations for subjects and student identification codes.
    """

    def __init__(self, database_manager: DatabaseManager, token_service: TokenService,
                 encoder: QREncoder, cache: QRCache, cache_ttl: Optional[float] = None):
        self.db = database_manager
        self.tokens = token_service
        self.encoder = encoder
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.logger = logging.getLogger(__name__)
        self.tokens.add_rotation_listener(self._drop_cached_renders)

    def _drop_cached_renders(self, subject_id: str) -> None:
        dropped = self.cache.invalidate_prefix(f"{subject_id}|")
        self.logger.info(f"Subject {subject_id} token replaced, {dropped} cached QR(s) dropped")

    def _entry_ttl(self, expires_at: datetime) -> float:
        # A cached render must not outlive its token
        ttl = self.cache.default_ttl if self.cache_ttl is None else self.cache_ttl
        remaining = (expires_at - datetime.now()).total_seconds()
        return max(0.0, min(ttl, remaining))

    def _resolve_options(self, options: Union[QROptions, Dict[str, Any], None]) -> QROptions:
        if isinstance(options, QROptions):
            return options
        return QROptions.from_dict(options, defaults=self.encoder.default_options)

    @staticmethod
    def _cache_key(subject_id: str, options: QROptions) -> str:
        return f"{subject_id}|{options.fingerprint()}"

    async def generate_qr_for_subject(self, subject_id: str, subject_name: Optional[str] = None,
                                      options: Union[QROptions, Dict[str, Any], None] = None) -> QRResult:
        """
        Render the family portal QR for a subject.

        Raises:
            NotFoundError: Unknown subject
            EncodingError: Portal URL does not fit the requested code
            ValidationError: Bad rendering options
        """
        qr_options = self._resolve_options(options)
        key = self._cache_key(subject_id, qr_options)

        cached = self.cache.get(key)
        if cached:
            return QRResult(
                data_url=cached.data_url,
                token=cached.token,
                portal_url=cached.portal_url,
                subject_name=cached.subject_name,
                cached=True
            )

        try:
            record = await self.tokens.get_or_create_token(subject_id)
            if subject_name is None:
                student = await self.db.fetch_one("SELECT name FROM students WHERE id = ?", (subject_id,))
                subject_name = student['name'] if student else ''

            portal_url = self.tokens.generate_portal_url(record.token)
            data_url = await asyncio.to_thread(self.encoder.to_data_url, portal_url, qr_options)
        except Exception as e:
            self.logger.error(f"QR generation failed for subject {subject_id}: {str(e)}")
            raise

        self.cache.set(key, {
            'data_url': data_url,
            'token': record.token,
            'portal_url': portal_url,
            'subject_name': subject_name,
        }, ttl=self._entry_ttl(record.expires_at))

        self.logger.info(f"QR generated for subject {subject_id} (size {qr_options.size}, "
                         f"ecc {qr_options.error_correction}, token {mask_token(record.token)})")

        return QRResult(
            data_url=data_url,
            token=record.token,
            portal_url=portal_url,
            subject_name=subject_name
        )

    async def generate_qr_for_print(self, subject_id: str, subject_name: Optional[str] = None) -> bytes:
        """
        Render the family portal QR as PNG bytes with the print profile.

        Raises:
            NotFoundError: Unknown subject
        """
        record = await self.tokens.get_or_create_token(subject_id)
        portal_url = self.tokens.generate_portal_url(record.token)
        png = await asyncio.to_thread(self.encoder.to_png_bytes, portal_url, QROptions.for_print())
        self.logger.info(f"Print QR generated for subject {subject_id} ({len(png)} bytes)")
        return png

    async def rotate_subject_token(self, subject_id: str) -> str:
        """Issue a fresh portal token; cached renders are dropped by the rotation listener."""
        record = await self.tokens.get_or_create_token(subject_id, rotate=True)
        return record.token

    async def validate_qr_url(self, token: str) -> bool:
        """
        Check that the token behind a portal URL still grants access.

        Raises:
            ExternalServiceError: Token store unavailable
        """
        validation = await self.tokens.validate_token(token)
        return validation.valid

    async def generate_student_identification_qr(self, event_id: str, student_id: str,
                                                 course_id: Optional[str] = None,
                                                 options: Union[QROptions, Dict[str, Any], None] = None) -> StudentQR:
        """
        Issue a new identification code for a student.
        Previous codes of the student stay in the table unpublished.

        Raises:
            NotFoundError: Student missing or registered in another event
        """
        qr_options = self._resolve_options(options)

        student = await self.db.fetch_one(
            "SELECT id, event_id, course_id, name, metadata FROM students WHERE id = ?",
            (student_id,)
        )
        if not student or student['event_id'] != event_id:
            raise NotFoundError(f"Student {student_id} not found in event {event_id}")

        token = self.tokens.generate_secure_token()
        code_value = f"{STUDENT_CODE_PREFIX}{token}"
        code_id = new_id()
        course_id = course_id or student['course_id']

        metadata = decode_json(student['metadata'])
        metadata.update({
            'qr_token': token,
            'qr_code_value': code_value,
            'qr_type': QR_TYPE_STUDENT,
        })

        def _store(conn):
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE codes SET is_published = 0 WHERE student_id = ? AND is_published = 1",
                (student_id,)
            )
            retired = cursor.rowcount
            cursor.execute(
                """INSERT INTO codes (id, event_id, course_id, student_id, code_value, token, title, is_published)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1)""",
                (code_id, event_id, course_id, student_id, code_value, token,
                 f"QR Identification - {student['name']}")
            )
            cursor.execute(
                """UPDATE students SET qr_code = ?, metadata = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (code_id, encode_json(metadata), student_id)
            )
            return retired

        try:
            retired = await self.db.run_in_transaction(_store)
        except Exception as e:
            raise ExternalServiceError(f"Failed to store student QR code: {e}") from e

        data_url = await asyncio.to_thread(self.encoder.to_data_url, code_value, qr_options)

        self.logger.info(f"Student identification QR issued: event {event_id}, "
                         f"student {student_id[:8]}***, code {code_id}, {retired} previous code(s) retired")

        return StudentQR(
            code_id=code_id,
            code_value=code_value,
            token=token,
            data_url=data_url,
            student_id=student_id
        )

    async def validate_student_qr_code(self, code_value: str,
                                       event_id: Optional[str] = None) -> Optional[StudentQRData]:
        """
        Match a decoded string to a registered student.

        Args:
            code_value (str): Decoded QR payload
            event_id (str): Only accept codes of this event

        Returns:
            StudentQRData or None when the string is not a valid student code
        """
        try:
            parsed = parse_code_value(code_value)
            if parsed is None:
                return None
            if parsed.kind == QR_TYPE_LEGACY:
                return await self._validate_legacy_code(code_value.strip(), parsed, event_id)
            return await self._validate_current_code(parsed, event_id)

        except Exception as e:
            self.logger.error(f"Failed to validate student QR code {str(code_value)[:20]}***: {str(e)}")
            return None

    async def _validate_current_code(self, parsed: ParsedCode,
                                     event_id: Optional[str]) -> Optional[StudentQRData]:
        query = """SELECT id, event_id, course_id, student_id, code_value, token, title, created_at
                   FROM codes WHERE token = ? AND is_published = 1"""
        params = [parsed.token]
        if event_id:
            query += " AND event_id = ?"
            params.append(event_id)

        code = await self.db.fetch_one(query, tuple(params))
        if not code:
            return None

        student = None
        if code['student_id']:
            student = await self.db.fetch_one(
                "SELECT id, name, metadata FROM students WHERE id = ?", (code['student_id'],)
            )
        if not student:
            student = await self.db.fetch_one(
                "SELECT id, name, metadata FROM students WHERE qr_code = ?", (code['id'],)
            )
        if not student:
            return None

        return StudentQRData(
            id=code['id'],
            event_id=code['event_id'],
            course_id=code['course_id'],
            student_id=student['id'],
            code_value=code['code_value'],
            token=code['token'],
            type=QR_TYPE_STUDENT,
            metadata={
                'title': code['title'],
                'student_name': student['name'],
                'created_at': code['created_at'],
                **decode_json(student['metadata']),
            }
        )

    async def _validate_legacy_code(self, code_value: str, parsed: ParsedCode,
                                    event_id: Optional[str]) -> Optional[StudentQRData]:
        if event_id and parsed.event_id != event_id.lower():
            return None

        student = await self.db.fetch_one(
            "SELECT id, event_id, course_id, name, qr_code, metadata FROM students WHERE lower(id) = ?",
            (parsed.student_id,)
        )
        source = 'students'
        if not student:
            # Older rows only exist in the subjects table
            student = await self.db.fetch_one(
                """SELECT id, event_id, NULL AS course_id, name, NULL AS qr_code, metadata
                   FROM subjects WHERE lower(id) = ?""",
                (parsed.student_id,)
            )
            source = 'subjects'
        if not student:
            return None

        if str(student['event_id']).lower() != parsed.event_id:
            return None

        if normalize_name(student['name']) != normalize_name(parsed.student_name):
            self.logger.warning(f"Legacy QR name mismatch for student {parsed.student_id[:8]}***")
            return None

        return StudentQRData(
            id=student['qr_code'],
            event_id=student['event_id'],
            course_id=student['course_id'],
            student_id=student['id'],
            code_value=code_value,
            token=None,
            type=QR_TYPE_LEGACY,
            metadata={
                'student_name': student['name'],
                'source': source,
                **decode_json(student['metadata']),
            }
        )

    async def get_event_student_qr_codes(self, event_id: str) -> List[StudentQRData]:
        """List the published student identification codes of an event."""
        rows = await self.db.fetch_all(
            """SELECT c.id, c.event_id, c.course_id, c.code_value, c.token, c.title, c.created_at,
                      s.id AS student_id, s.name AS student_name, s.metadata AS student_metadata
               FROM codes c JOIN students s ON s.id = c.student_id
               WHERE c.event_id = ? AND c.is_published = 1 AND c.code_value LIKE ?
               ORDER BY c.created_at DESC""",
            (event_id, f"{STUDENT_CODE_PREFIX}%")
        )
        return [
            StudentQRData(
                id=row['id'],
                event_id=row['event_id'],
                course_id=row['course_id'],
                student_id=row['student_id'],
                code_value=row['code_value'],
                token=row['token'],
                type=QR_TYPE_STUDENT,
                metadata={
                    'title': row['title'],
                    'student_name': row['student_name'],
                    'created_at': row['created_at'],
                    **decode_json(row['student_metadata']),
                }
            )
            for row in rows
        ]

    async def get_qr_code_stats(self, event_id: str) -> Dict[str, int]:
        """Count codes, students with and without codes, and codes seen in photos."""
        codes = await self.db.fetch_all(
            "SELECT id, is_published FROM codes WHERE event_id = ? AND code_value LIKE ?",
            (event_id, f"{STUDENT_CODE_PREFIX}%")
        )
        students = await self.db.fetch_all(
            "SELECT id, qr_code FROM students WHERE event_id = ?", (event_id,)
        )
        detected = await self.db.fetch_one(
            "SELECT COUNT(DISTINCT code_id) AS total FROM photos WHERE event_id = ? AND code_id IS NOT NULL",
            (event_id,)
        )

        with_codes = len([s for s in students if s['qr_code']])
        return {
            'total_student_codes': len(codes),
            'active_student_codes': len([c for c in codes if c['is_published']]),
            'detected_student_codes': detected['total'] if detected else 0,
            'students_with_codes': with_codes,
            'students_without_codes': len(students) - with_codes,
        }

    async def generate_event_print_sheet(self, event_id: str) -> bytes:
        """
        Build a printable PDF with the primary identification code of every
        student of an event.

        Raises:
            NotFoundError: Unknown event
        """
        event = await self.db.fetch_one("SELECT id, name FROM events WHERE id = ?", (event_id,))
        if not event:
            raise NotFoundError(f"Event not found: {event_id}")

        rows = await self.db.fetch_all(
            """SELECT s.name, c.code_value, co.name AS course_name
               FROM students s
               JOIN codes c ON c.id = s.qr_code AND c.is_published = 1
               LEFT JOIN courses co ON co.id = s.course_id
               WHERE s.event_id = ?
               ORDER BY co.name, s.name""",
            (event_id,)
        )

        def _build():
            print_options = QROptions.for_print()
            entries = [
                PrintSheetEntry(
                    png_bytes=self.encoder.to_png_bytes(row['code_value'], print_options),
                    title=row['name'],
                    subtitle=row['course_name'] or event['name']
                )
                for row in rows
            ]
            return self.encoder.create_print_sheet_pdf(entries)

        pdf = await asyncio.to_thread(_build)
        self.logger.info(f"Print sheet for event {event_id}: {len(rows)} code(s), "
                         f"generated {datetime.now().isoformat(timespec='seconds')}")
        return pdf

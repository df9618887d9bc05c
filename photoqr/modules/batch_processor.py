"""
Batch Processor Module - School Photo QR Pipeline

This module fans QR work out across many students or code strings. Items run
in fixed-size sub-batches; all items of a sub-batch run concurrently, gated by
an optional semaphore, and the next sub-batch starts only when the current one
has settled. A failing item is recorded in the report and never stops its
siblings.

Features:
- Generic process_batch orchestrator with per-item success/failure reports
- Batch family QR generation and student identification QR issuing
- Batch validation of decoded code strings
- Event QR export (JSON or CSV) and QR import
"""

import json
import time
import asyncio
import secrets
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import pandas as pd

from photoqr.modules.database_manager import new_id
from photoqr.modules.qr_service import QRService
from photoqr.modules.qr_generator import QROptions
from photoqr.modules.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_BATCH_SIZE = 10
DEFAULT_VALIDATION_BATCH_SIZE = 20
NOT_STARTED_ERROR = 'not started: batch timeout'

EXPORT_COLUMNS = ['QR Code ID', 'Code Value', 'Student Name', 'Created At']


@dataclass
class BatchItemResult:
    """Outcome of one work item."""
    index: int
    success: bool
    key: Optional[str] = None
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchReport:
    """Per-invocation report. Results are in input order."""
    batch_id: str
    kind: str
    total_requested: int
    success_count: int
    failure_count: int
    results: List[BatchItemResult] = field(default_factory=list)
    processing_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': self.batch_id,
            'kind': self.kind,
            'total_requested': self.total_requested,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'processing_time_ms': self.processing_time_ms,
            'results': [result.to_dict() for result in self.results],
        }


def generate_batch_id(kind: str = 'batch') -> str:
    return f"batch_{kind}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _error_message(error: Exception) -> str:
    return str(error) or error.__class__.__name__


async def process_batch(items: Sequence[Any], handler: Callable[[Any], Awaitable[Any]], *,
                        batch_size: int = DEFAULT_GENERATION_BATCH_SIZE,
                        concurrency_limit: Optional[int] = None,
                        kind: str = 'batch',
                        key: Optional[Callable[[Any], Optional[str]]] = None,
                        timeout: Optional[float] = None) -> BatchReport:
    """
    Run handler over every item with bounded concurrency.

    Args:
        items: Work items
        handler: Coroutine function applied to each item
        batch_size (int): Items per sub-batch
        concurrency_limit (int): Maximum handlers in flight, None for batch_size
        kind (str): Label used in the batch id and logs
        key: Optional function giving a readable label for an item
        timeout (float): Seconds after which no new sub-batch starts

    Returns:
        BatchReport: One result per item, in input order

    Raises:
        ValidationError: Malformed arguments, raised before any work starts
    """
    errors = []
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        errors.append("items must be a list")
    if not callable(handler):
        errors.append("handler must be callable")
    if not isinstance(batch_size, int) or batch_size < 1:
        errors.append("batch_size must be a positive integer")
    if concurrency_limit is not None and (not isinstance(concurrency_limit, int) or concurrency_limit < 1):
        errors.append("concurrency_limit must be a positive integer")
    if timeout is not None and timeout <= 0:
        errors.append("timeout must be positive")
    if errors:
        raise ValidationError(errors)

    batch_id = generate_batch_id(kind)
    start_time = time.monotonic()
    total = len(items)
    results: List[Optional[BatchItemResult]] = [None] * total
    semaphore = asyncio.Semaphore(concurrency_limit) if concurrency_limit else None
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None

    logger.info(f"[{batch_id}] Starting {kind}: {total} item(s), batch size {batch_size}, "
                f"concurrency {concurrency_limit or batch_size}")

    def _label(index: int) -> Optional[str]:
        if key is None:
            return None
        try:
            return key(items[index])
        except Exception:
            return None

    async def _run(index: int) -> None:
        try:
            if semaphore is not None:
                async with semaphore:
                    data = await handler(items[index])
            else:
                data = await handler(items[index])
            results[index] = BatchItemResult(index=index, success=True, key=_label(index), data=data)
        except Exception as e:
            results[index] = BatchItemResult(index=index, success=False, key=_label(index),
                                             error=_error_message(e))
            logger.warning(f"[{batch_id}] Item {index} failed: {_error_message(e)}")

    for start in range(0, total, batch_size):
        if deadline is not None and loop.time() >= deadline:
            for index in range(start, total):
                results[index] = BatchItemResult(index=index, success=False, key=_label(index),
                                                 error=NOT_STARTED_ERROR)
            logger.warning(f"[{batch_id}] Timeout reached, {total - start} item(s) not started")
            break

        end = min(start + batch_size, total)
        await asyncio.gather(*(_run(index) for index in range(start, end)))
        logger.debug(f"[{batch_id}] Sub-batch {start // batch_size + 1} done ({end}/{total})")

    success_count = len([r for r in results if r.success])
    report = BatchReport(
        batch_id=batch_id,
        kind=kind,
        total_requested=total,
        success_count=success_count,
        failure_count=total - success_count,
        results=results,
        processing_time_ms=int((time.monotonic() - start_time) * 1000)
    )

    logger.info(f"[{batch_id}] Finished {kind}: {report.success_count} succeeded, "
                f"{report.failure_count} failed in {report.processing_time_ms}ms")
    return report


def _require_students(students) -> None:
    if isinstance(students, (str, bytes)) or not isinstance(students, Sequence):
        raise ValidationError("students must be a list")
    errors = []
    for i, student in enumerate(students):
        if not isinstance(student, dict) or not student.get('id'):
            errors.append(f"students[{i}] must be an object with an id")
    if errors:
        raise ValidationError(errors)


class BatchProcessor:
    """
    Batch QR operations for an event, built on process_batch.
    """

    def __init__(self, qr_service: QRService,
                 generation_batch_size: int = DEFAULT_GENERATION_BATCH_SIZE,
                 validation_batch_size: int = DEFAULT_VALIDATION_BATCH_SIZE,
                 concurrency_limit: Optional[int] = None,
                 timeout: Optional[float] = None):
        self.qr_service = qr_service
        self.db = qr_service.db
        self.generation_batch_size = generation_batch_size
        self.validation_batch_size = validation_batch_size
        self.concurrency_limit = concurrency_limit
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def _require_event_student(self, event_id: str, student_id: str) -> Dict[str, Any]:
        student = await self.db.fetch_one(
            "SELECT id, name, event_id FROM students WHERE id = ?", (student_id,)
        )
        if not student or student['event_id'] != event_id:
            raise NotFoundError(f"Student {student_id} not found in event {event_id}")
        return student

    async def generate_batch_qr_codes(self, event_id: str, students: List[Dict[str, Any]],
                                      options: Optional[Dict[str, Any]] = None) -> BatchReport:
        """
        Render family portal QR codes for many students.

        Args:
            event_id (str): Event the students belong to
            students (list): Objects with ``id`` and optional ``name``
            options (dict): Rendering options shared by every code
        """
        _require_students(students)
        qr_options = options if isinstance(options, QROptions) else QROptions.from_dict(
            options, defaults=self.qr_service.encoder.default_options
        )

        async def _generate(student):
            record = await self._require_event_student(event_id, student['id'])
            result = await self.qr_service.generate_qr_for_subject(
                student['id'], student.get('name') or record['name'], qr_options
            )
            return {
                'subject_id': student['id'],
                'subject_name': result.subject_name,
                'token': result.token,
                'portal_url': result.portal_url,
                'data_url': result.data_url,
                'cached': result.cached,
            }

        return await process_batch(
            students, _generate,
            batch_size=self.generation_batch_size,
            concurrency_limit=self.concurrency_limit,
            kind='generate',
            key=lambda student: student['id'],
            timeout=self.timeout
        )

    async def generate_batch_student_identification(self, event_id: str, students: List[Dict[str, Any]],
                                                    options: Optional[Dict[str, Any]] = None) -> BatchReport:
        """Issue identification codes for many students of an event."""
        _require_students(students)
        qr_options = options if isinstance(options, QROptions) else QROptions.from_dict(
            options, defaults=self.qr_service.encoder.default_options
        )

        async def _issue(student):
            issued = await self.qr_service.generate_student_identification_qr(
                event_id, student['id'], student.get('course_id'), qr_options
            )
            return {
                'student_id': issued.student_id,
                'code_id': issued.code_id,
                'code_value': issued.code_value,
                'token': issued.token,
                'data_url': issued.data_url,
            }

        return await process_batch(
            students, _issue,
            batch_size=self.generation_batch_size,
            concurrency_limit=self.concurrency_limit,
            kind='identification',
            key=lambda student: student['id'],
            timeout=self.timeout
        )

    async def validate_batch_qr_codes(self, event_id: Optional[str], qr_codes: List[str],
                                      validate_against_event: bool = True) -> BatchReport:
        """
        Validate many decoded code strings.

        Args:
            event_id (str): Event scope
            qr_codes (list): Decoded strings
            validate_against_event (bool): Reject codes of other events
        """
        if isinstance(qr_codes, (str, bytes)) or not isinstance(qr_codes, Sequence):
            raise ValidationError("qr_codes must be a list")
        if validate_against_event and not event_id:
            raise ValidationError("event_id is required to validate against an event")

        scope = event_id if validate_against_event else None

        async def _validate(code_value):
            if not isinstance(code_value, str) or not code_value.strip():
                raise ValidationError("QR code must be a non-empty string")
            data = await self.qr_service.validate_student_qr_code(code_value, scope)
            if data is None:
                raise ValidationError("Invalid or unregistered QR code")
            return asdict(data)

        return await process_batch(
            qr_codes, _validate,
            batch_size=self.validation_batch_size,
            concurrency_limit=self.concurrency_limit,
            kind='validate',
            key=lambda code: str(code)[:40],
            timeout=self.timeout
        )

    async def export_event_qr_codes(self, event_id: str, fmt: str = 'json') -> str:
        """
        Export the published student codes of an event.

        Args:
            event_id (str): Event to export
            fmt (str): 'json' or 'csv'

        Returns:
            str: Serialized export
        """
        if fmt not in ('json', 'csv'):
            raise ValidationError(f"Unsupported export format: {fmt}")

        codes = await self.qr_service.get_event_student_qr_codes(event_id)
        rows = [
            {
                'id': code.id,
                'code_value': code.code_value,
                'student_id': code.student_id,
                'student_name': code.metadata.get('student_name') or 'Unknown',
                'course_id': code.course_id,
                'title': code.metadata.get('title'),
                'created_at': code.metadata.get('created_at'),
            }
            for code in codes
        ]

        self.logger.info(f"Exporting {len(rows)} QR code(s) for event {event_id} as {fmt}")

        if fmt == 'csv':
            df = pd.DataFrame(
                [[row['id'], row['code_value'], row['student_name'], row['created_at']] for row in rows],
                columns=EXPORT_COLUMNS
            )
            return df.to_csv(index=False)

        return json.dumps({
            'event_id': event_id,
            'exported_at': datetime.now().isoformat(),
            'count': len(rows),
            'codes': rows,
        }, indent=2, default=str)

    async def import_qr_codes(self, event_id: str, rows: List[Dict[str, Any]]) -> BatchReport:
        """
        Register externally produced code values for an event.

        Each row takes ``code_value`` and optionally ``title``, ``is_published``
        and ``student_id``; a student id makes the imported code that student's
        primary code.
        """
        if isinstance(rows, (str, bytes)) or not isinstance(rows, Sequence):
            raise ValidationError("rows must be a list")
        bad = [f"rows[{i}] must be an object" for i, row in enumerate(rows) if not isinstance(row, dict)]
        if bad:
            raise ValidationError(bad)

        event = await self.db.fetch_one("SELECT id FROM events WHERE id = ?", (event_id,))
        if not event:
            raise NotFoundError(f"Event not found: {event_id}")

        async def _import(row):
            code_value = row.get('code_value')
            if not isinstance(code_value, str) or not code_value.strip():
                raise ValidationError("code_value is required")
            code_value = code_value.strip()

            student_id = row.get('student_id')
            if student_id:
                await self._require_event_student(event_id, student_id)

            duplicate = await self.db.fetch_one("SELECT id FROM codes WHERE code_value = ?", (code_value,))
            if duplicate:
                raise ValidationError(f"Code value already registered: {code_value[:40]}")

            code_id = new_id()
            token = code_value.split('_', 1)[1] if code_value.startswith('LKSTUDENT_') else None
            is_published = row.get('is_published') is not False

            def _store(conn):
                cursor = conn.cursor()
                cursor.execute(
                    """INSERT INTO codes (id, event_id, student_id, code_value, token, title, is_published)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (code_id, event_id, student_id, code_value, token,
                     row.get('title') or f"Imported QR - {code_value[:40]}", 1 if is_published else 0)
                )
                if student_id and is_published:
                    cursor.execute(
                        "UPDATE codes SET is_published = 0 WHERE student_id = ? AND id != ?",
                        (student_id, code_id)
                    )
                    cursor.execute(
                        "UPDATE students SET qr_code = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        (code_id, student_id)
                    )

            await self.db.run_in_transaction(_store)
            return {'code_id': code_id, 'code_value': code_value, 'message': 'Successfully imported'}

        return await process_batch(
            rows, _import,
            batch_size=self.validation_batch_size,
            concurrency_limit=self.concurrency_limit,
            kind='import',
            key=lambda row: str(row.get('code_value'))[:40],
            timeout=self.timeout
        )

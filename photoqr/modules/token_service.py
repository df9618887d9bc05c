"""
Token Service Module - School Photo QR Pipeline

Mints and validates the portal access tokens printed into family QR codes.
A student holds at most one active token at a time; asking for a token twice
returns the same one until it is rotated or expires.
"""

import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from photoqr.modules.database_manager import DatabaseManager, new_id
from photoqr.modules.errors import NotFoundError, ValidationError, ExternalServiceError

MIN_TOKEN_BYTES = 16
# token_urlsafe(16) yields 22 characters
MIN_TOKEN_LENGTH = 22
MAX_UNIQUENESS_ATTEMPTS = 10


@dataclass
class TokenRecord:
    """Active portal token for one subject."""
    id: str
    token: str
    subject_id: str
    event_id: Optional[str]
    expires_at: datetime
    is_active: bool
    created: bool = False


@dataclass
class TokenValidation:
    """Outcome of a token lookup."""
    valid: bool
    subject_id: Optional[str] = None
    event_id: Optional[str] = None
    reason: Optional[str] = None
    remaining_days: Optional[int] = None


def mask_token(token: Optional[str]) -> str:
    """Shorten a token for log output."""
    if not token:
        return '<empty>'
    if len(token) <= 8:
        return '***'
    return f"{token[:4]}***{token[-4:]}"


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class TokenService:
    """
    Issues, validates and rotates subject access tokens.
    """

    def __init__(self, database_manager: DatabaseManager, base_url: str = 'http://localhost:3000',
                 expiry_days: int = 30, token_bytes: int = MIN_TOKEN_BYTES):
        self.db = database_manager
        self.base_url = base_url.rstrip('/')
        self.expiry_days = expiry_days
        self.token_bytes = token_bytes
        self._rotation_listeners: List[Callable[[str], None]] = []
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def generate_secure_token(num_bytes: int = MIN_TOKEN_BYTES) -> str:
        """
        Generate a random URL-safe token.

        Args:
            num_bytes (int): Number of random bytes, at least 16

        Returns:
            str: base64url text without padding
        """
        if num_bytes < MIN_TOKEN_BYTES:
            raise ValidationError(f"Token must use at least {MIN_TOKEN_BYTES} random bytes")
        return secrets.token_urlsafe(num_bytes)

    def generate_portal_url(self, token: str) -> str:
        """Build the family portal URL for a token."""
        return f"{self.base_url}/f/{token}"

    def add_rotation_listener(self, listener: Callable[[str], None]) -> None:
        """Register ``listener(subject_id)``, called after a subject's token is replaced."""
        self._rotation_listeners.append(listener)

    def _notify_rotation(self, subject_id: str) -> None:
        for listener in self._rotation_listeners:
            listener(subject_id)

    async def get_or_create_token(self, subject_id: str, rotate: bool = False) -> TokenRecord:
        """
        Return the subject's active token, minting one if needed.

        The lookup, deactivation and insert run in one transaction, so
        concurrent callers for the same subject get the same token.

        Args:
            subject_id (str): Student id
            rotate (bool): Deactivate existing tokens and mint a new one

        Returns:
            TokenRecord: Active token

        Raises:
            NotFoundError: The subject does not exist
        """
        record, deactivated = await self.db.run_in_transaction(self._get_or_create_locked, subject_id, rotate)

        if record.created:
            self.logger.info(
                f"Token issued for subject {subject_id}: {mask_token(record.token)} "
                f"(expires {record.expires_at.date().isoformat()}, {deactivated} deactivated)"
            )
            if deactivated:
                self._notify_rotation(subject_id)
        return record

    def _get_or_create_locked(self, conn, subject_id: str, rotate: bool):
        student = conn.execute(
            "SELECT id, event_id FROM students WHERE id = ?", (subject_id,)
        ).fetchone()
        if not student:
            raise NotFoundError(f"Subject not found: {subject_id}")

        now = datetime.now()
        if not rotate:
            row = conn.execute(
                """SELECT id, token, subject_id, event_id, expires_at, is_active
                   FROM access_tokens
                   WHERE subject_id = ? AND is_active = 1 AND expires_at > ?
                   ORDER BY created_at DESC LIMIT 1""",
                (subject_id, now.isoformat())
            ).fetchone()
            if row:
                return TokenRecord(
                    id=row['id'],
                    token=row['token'],
                    subject_id=row['subject_id'],
                    event_id=row['event_id'],
                    expires_at=_parse_timestamp(row['expires_at']),
                    is_active=bool(row['is_active'])
                ), 0

        # Expired tokens are still flagged active until replaced
        deactivated = conn.execute(
            "UPDATE access_tokens SET is_active = 0 WHERE subject_id = ? AND is_active = 1",
            (subject_id,)
        ).rowcount

        token = self._generate_unique_token(conn)
        expires_at = now + timedelta(days=self.expiry_days)
        token_id = new_id()
        conn.execute(
            """INSERT INTO access_tokens (id, token, subject_id, event_id, expires_at, is_active)
               VALUES (?, ?, ?, ?, ?, 1)""",
            (token_id, token, subject_id, student['event_id'], expires_at.isoformat())
        )

        return TokenRecord(
            id=token_id,
            token=token,
            subject_id=subject_id,
            event_id=student['event_id'],
            expires_at=expires_at,
            is_active=True,
            created=True
        ), deactivated

    async def validate_token(self, token: str) -> TokenValidation:
        """
        Check a portal token.

        Returns:
            TokenValidation: valid flag with subject data, or the failure reason
        """
        if not token or len(token) < MIN_TOKEN_LENGTH:
            self.logger.warning(f"Token validation failed (invalid-format): {mask_token(token)}")
            return TokenValidation(valid=False, reason='invalid-format')

        try:
            row = await self.db.fetch_one(
                """SELECT id, subject_id, event_id, expires_at, is_active
                   FROM access_tokens WHERE token = ?""",
                (token,)
            )
        except Exception as e:
            raise ExternalServiceError(f"Token lookup failed: {e}") from e

        if not row:
            self.logger.warning(f"Token validation failed (not-found): {mask_token(token)}")
            return TokenValidation(valid=False, reason='not-found')

        if not row['is_active']:
            return TokenValidation(valid=False, subject_id=row['subject_id'], reason='inactive')

        expires_at = _parse_timestamp(row['expires_at'])
        now = datetime.now()
        if expires_at <= now:
            return TokenValidation(valid=False, subject_id=row['subject_id'], reason='expired')

        await self.db.execute(
            """UPDATE access_tokens
               SET usage_count = usage_count + 1, last_used_at = ?
               WHERE id = ?""",
            (now.isoformat(), row['id'])
        )

        remaining = expires_at - now
        remaining_days = remaining.days + (1 if remaining.seconds or remaining.microseconds else 0)

        return TokenValidation(
            valid=True,
            subject_id=row['subject_id'],
            event_id=row['event_id'],
            remaining_days=remaining_days
        )

    async def rotate_token(self, token: str) -> TokenRecord:
        """
        Replace a valid token with a new one for the same subject.

        Raises:
            NotFoundError: The token is unknown, inactive or expired
        """
        validation = await self.validate_token(token)
        if not validation.valid:
            raise NotFoundError(f"Cannot rotate token {mask_token(token)}: {validation.reason}")

        record = await self.get_or_create_token(validation.subject_id, rotate=True)
        self.logger.info(f"Token rotated for subject {validation.subject_id}: "
                         f"{mask_token(token)} -> {mask_token(record.token)}")
        return record

    async def get_expiring_tokens(self, days_before_expiry: int = 7) -> List[Dict[str, Any]]:
        """List active tokens that expire within the given number of days."""
        cutoff = datetime.now() + timedelta(days=days_before_expiry)
        rows = await self.db.fetch_all(
            """SELECT t.id, t.token, t.subject_id, t.expires_at, s.name
               FROM access_tokens t JOIN students s ON s.id = t.subject_id
               WHERE t.is_active = 1 AND t.expires_at <= ?
               ORDER BY t.expires_at""",
            (cutoff.isoformat(),)
        )
        now = datetime.now()
        for row in rows:
            row['days_remaining'] = max(0, (_parse_timestamp(row['expires_at']) - now).days)
        return rows

    async def rotate_expiring_tokens(self, days_before_expiry: int = 7) -> Dict[str, Any]:
        """Rotate every token close to expiry, collecting per-token failures."""
        tokens = await self.get_expiring_tokens(days_before_expiry)
        rotated = 0
        errors = []

        for row in tokens:
            try:
                await self.get_or_create_token(row['subject_id'], rotate=True)
                rotated += 1
            except Exception as e:
                errors.append({'token_id': row['id'], 'error': str(e)})

        self.logger.info(f"Expiring token rotation: {rotated}/{len(tokens)} rotated, {len(errors)} failed")
        return {'rotated': rotated, 'failed': len(errors), 'errors': errors}

    def _generate_unique_token(self, conn) -> str:
        for _ in range(MAX_UNIQUENESS_ATTEMPTS):
            token = self.generate_secure_token(self.token_bytes)
            duplicate = conn.execute(
                "SELECT id FROM access_tokens WHERE token = ?", (token,)
            ).fetchone()
            if not duplicate:
                return token
        raise ExternalServiceError('Failed to generate a unique token after multiple attempts')

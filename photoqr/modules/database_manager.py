"""
Database Manager Module - School Photo QR Pipeline

This module handles all database operations for the QR pipeline.
It owns the SQLite connection, creates the schema, and exposes query helpers
to the services. Blocking calls are also offered as coroutines that run in a
worker thread, so every database round trip is a suspension point for the
asyncio code built on top of it.

Tables:
- events, courses: context for codes and photos
- students: canonical subject store (carries the QR metadata mirror)
- subjects: legacy subject rows, read only
- access_tokens: portal tokens bound to a student
- codes: persisted QR records
- photos, photo_students: auto-tagging results
- whatsapp_notifications, whatsapp_notification_attempts: delivery bookkeeping
"""

import sqlite3
import logging
import asyncio
import threading
import json
import os
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional


def new_id() -> str:
    """Generate a primary key for a new row."""
    return str(uuid.uuid4())


def encode_json(value: Any) -> Optional[str]:
    """Serialize a JSON column value."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def decode_json(value: Optional[str], default: Any = None) -> Any:
    """Deserialize a JSON column value, tolerating empty or broken text."""
    if not value:
        return {} if default is None else default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return {} if default is None else default


class DatabaseManager:
    """
    Database access for the QR pipeline.
    Handles connection management, schema creation and data manipulation with
    transaction support. One connection is shared by all threads and guarded by
    a lock, which also makes ':memory:' databases usable from worker threads.
    """

    def __init__(self, db_path):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file or ':memory:'
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

        if self.db_path != ':memory:':
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0
        )
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ':memory:':
            self._connection.execute("PRAGMA journal_mode = WAL")

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for the shared connection.
        Holds the lock for the duration of the block and rolls back on error.

        Yields:
            sqlite3.Connection: Database connection object
        """
        with self._lock:
            try:
                yield self._connection
            except Exception as e:
                self._connection.rollback()
                self.logger.error(f"Database operation failed: {str(e)}")
                raise

    def initialize_database(self):
        """
        Create all tables and indexes used by the pipeline.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS events (
                        id TEXT PRIMARY KEY,
                        name VARCHAR(200) NOT NULL,
                        school VARCHAR(200),
                        event_date DATE,
                        photographer_name VARCHAR(100),
                        photographer_email VARCHAR(100),
                        photographer_phone VARCHAR(30),
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS courses (
                        id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        name VARCHAR(100) NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (event_id) REFERENCES events(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS students (
                        id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        course_id TEXT,
                        name VARCHAR(150) NOT NULL,
                        qr_code TEXT,
                        metadata TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (event_id) REFERENCES events(id),
                        FOREIGN KEY (course_id) REFERENCES courses(id)
                    )
                """)

                # Rows written by the older non-relational linkage
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS subjects (
                        id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        name VARCHAR(150) NOT NULL,
                        metadata TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS access_tokens (
                        id TEXT PRIMARY KEY,
                        token VARCHAR(255) UNIQUE NOT NULL,
                        subject_id TEXT NOT NULL,
                        event_id TEXT,
                        type VARCHAR(30) DEFAULT 'student_access',
                        expires_at TIMESTAMP NOT NULL,
                        is_active BOOLEAN DEFAULT 1,
                        usage_count INTEGER DEFAULT 0,
                        last_used_at TIMESTAMP,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (subject_id) REFERENCES students(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS codes (
                        id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        course_id TEXT,
                        student_id TEXT,
                        code_value VARCHAR(255) UNIQUE NOT NULL,
                        token VARCHAR(255),
                        title VARCHAR(200),
                        is_published BOOLEAN DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (event_id) REFERENCES events(id),
                        FOREIGN KEY (student_id) REFERENCES students(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS photos (
                        id TEXT PRIMARY KEY,
                        event_id TEXT,
                        filename VARCHAR(255) NOT NULL,
                        code_id TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (code_id) REFERENCES codes(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS photo_students (
                        id TEXT PRIMARY KEY,
                        photo_id TEXT NOT NULL,
                        student_id TEXT NOT NULL,
                        confidence REAL,
                        tagged_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (photo_id) REFERENCES photos(id),
                        FOREIGN KEY (student_id) REFERENCES students(id),
                        UNIQUE(photo_id, student_id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS whatsapp_notifications (
                        id TEXT PRIMARY KEY,
                        order_id VARCHAR(100) NOT NULL,
                        order_source VARCHAR(30) NOT NULL,
                        event_id TEXT,
                        photographer_phone VARCHAR(30),
                        photographer_name VARCHAR(100),
                        photographer_email VARCHAR(100),
                        status VARCHAR(20) DEFAULT 'pending',
                        message_body TEXT,
                        message_payload TEXT,
                        attempt_count INTEGER DEFAULT 0,
                        last_error TEXT,
                        last_attempt_at TIMESTAMP,
                        next_retry_at TIMESTAMP,
                        provider_message_id VARCHAR(100),
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS whatsapp_notification_attempts (
                        id TEXT PRIMARY KEY,
                        notification_id TEXT NOT NULL,
                        attempt_number INTEGER NOT NULL,
                        status VARCHAR(20) NOT NULL,
                        request_payload TEXT,
                        response_payload TEXT,
                        error_message TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (notification_id) REFERENCES whatsapp_notifications(id)
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_students_event ON students(event_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_tokens_subject ON access_tokens(subject_id)")
                cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_tokens_one_active "
                               "ON access_tokens(subject_id) WHERE is_active = 1")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_codes_token ON codes(token)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_codes_event ON codes(event_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_photos_event ON photos(event_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_order ON whatsapp_notifications(order_id, order_source)")

                conn.commit()
                self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Returns:
            int: Last inserted row ID for INSERT, affected rows otherwise
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                conn.commit()

                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    # Coroutine wrappers used by the async services

    async def fetch_all(self, query, params=None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.execute_query, query, params, True)

    async def fetch_one(self, query, params=None) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.execute_query, query, params, False)

    async def execute(self, query, params=None) -> int:
        return await asyncio.to_thread(self.execute_update, query, params)

    async def run_in_transaction(self, func, *args):
        """Run ``func(connection, *args)`` inside a transaction on a worker thread."""
        def _run():
            with self.transaction() as conn:
                return func(conn, *args)
        return await asyncio.to_thread(_run)

    # Seeding helpers for events, courses, students and photos

    def create_event(self, name, school=None, event_date=None, photographer_name=None,
                     photographer_email=None, photographer_phone=None, event_id=None) -> str:
        event_id = event_id or new_id()
        self.execute_update(
            """INSERT INTO events (id, name, school, event_date, photographer_name,
                                   photographer_email, photographer_phone)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (event_id, name, school, event_date, photographer_name,
             photographer_email, photographer_phone)
        )
        return event_id

    def create_course(self, event_id, name, course_id=None) -> str:
        course_id = course_id or new_id()
        self.execute_update(
            "INSERT INTO courses (id, event_id, name) VALUES (?, ?, ?)",
            (course_id, event_id, name)
        )
        return course_id

    def create_student(self, event_id, name, course_id=None, metadata=None, student_id=None) -> str:
        student_id = student_id or new_id()
        self.execute_update(
            """INSERT INTO students (id, event_id, course_id, name, metadata)
               VALUES (?, ?, ?, ?, ?)""",
            (student_id, event_id, course_id, name, encode_json(metadata or {}))
        )
        return student_id

    def create_legacy_subject(self, event_id, name, metadata=None, subject_id=None) -> str:
        subject_id = subject_id or new_id()
        self.execute_update(
            "INSERT INTO subjects (id, event_id, name, metadata) VALUES (?, ?, ?, ?)",
            (subject_id, event_id, name, encode_json(metadata or {}))
        )
        return subject_id

    def create_photo(self, filename, event_id=None, photo_id=None) -> str:
        photo_id = photo_id or new_id()
        self.execute_update(
            "INSERT INTO photos (id, event_id, filename) VALUES (?, ?, ?)",
            (photo_id, event_id, filename)
        )
        return photo_id

    def close_all_connections(self):
        """Close the shared connection."""
        try:
            with self._lock:
                self._connection.close()
        except Exception as e:
            self.logger.error(f"Error closing connections: {str(e)}")

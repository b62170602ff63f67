"""SQLite persistence for exercise completion state."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from .errors import PersistenceFailure
from .models import CompletionRecord

SCHEMA_VERSION = 1


class CompletionStore:
    """Durable record of completed (course, exercise) pairs."""

    def __init__(self, db_path: Path | str) -> None:
        """Open the database and apply pending migrations."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        try:
            self._conn = sqlite3.connect(target)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not open completion store at {target}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        if target != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise PersistenceFailure(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create the exercise progress table."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS exercise_progress (
                    course_slug TEXT NOT NULL,
                    exercise_path TEXT NOT NULL,
                    completed INTEGER NOT NULL DEFAULT 0,
                    completed_at TEXT,
                    PRIMARY KEY (course_slug, exercise_path)
                )
                """)

    def mark_completed(self, course_slug: str, exercise_path: str) -> None:
        """Insert or update the record as completed now."""
        now = datetime.now(UTC).isoformat()
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO exercise_progress (course_slug, exercise_path, completed, completed_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(course_slug, exercise_path) DO UPDATE SET
                        completed = 1,
                        completed_at = excluded.completed_at
                    """,
                    (course_slug, exercise_path, now),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not mark {course_slug}/{exercise_path} completed: {exc}") from exc

    def is_completed(self, course_slug: str, exercise_path: str) -> bool:
        """Return whether an exercise is currently marked completed."""
        record = self.get_record(course_slug, exercise_path)
        return record is not None and record.completed

    def clear_completed(self, course_slug: str, exercise_path: str) -> None:
        """Reset completion for an exercise, keeping the row."""
        try:
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE exercise_progress
                    SET completed = 0, completed_at = NULL
                    WHERE course_slug = ? AND exercise_path = ?
                    """,
                    (course_slug, exercise_path),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not clear {course_slug}/{exercise_path}: {exc}") from exc

    def get_record(self, course_slug: str, exercise_path: str) -> CompletionRecord | None:
        """Return the stored record for one exercise."""
        try:
            row = self._conn.execute(
                """
                SELECT course_slug, exercise_path, completed, completed_at
                FROM exercise_progress
                WHERE course_slug = ? AND exercise_path = ?
                """,
                (course_slug, exercise_path),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not read {course_slug}/{exercise_path}: {exc}") from exc
        if row is None:
            return None
        return CompletionRecord(
            course_slug=str(row["course_slug"]),
            exercise_path=str(row["exercise_path"]),
            completed=bool(row["completed"]),
            completed_at=str(row["completed_at"]) if row["completed_at"] is not None else None,
        )

    def completed_paths(self, course_slug: str) -> set[str]:
        """Return exercise paths marked completed for a course."""
        try:
            rows = self._conn.execute(
                "SELECT exercise_path FROM exercise_progress WHERE course_slug = ? AND completed = 1",
                (course_slug,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not list completions for {course_slug}: {exc}") from exc
        return {str(row["exercise_path"]) for row in rows}

    def count_records(self, course_slug: str, exercise_path: str) -> int:
        """Return how many rows exist for one key."""
        row = self._conn.execute(
            "SELECT COUNT(*) FROM exercise_progress WHERE course_slug = ? AND exercise_path = ?",
            (course_slug, exercise_path),
        ).fetchone()
        return int(row[0])

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass

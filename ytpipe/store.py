"""
Optional SQLite mirror of job metadata.

Rows mirror status, progress, error, title and format so that status queries
can still be answered after a restart. The store is never used to resume a
pipeline.
"""

import asyncio
import sqlite3
import time
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .jobs import STATUS_FAILED, TERMINAL_STATUSES

INTERRUPTED_ERROR = 'Interrupted by service restart'


class JobStore:
    """
    Persists job snapshots to a SQLite file.

    Writes are applied in submission order by a single writer task so a late
    progress update can never overwrite a newer status.
    """
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        self._queue: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(
                'CREATE TABLE IF NOT EXISTS jobs ('
                'id TEXT PRIMARY KEY, status TEXT, progress REAL, error TEXT, '
                'title TEXT, format TEXT, updated_at REAL)'
            )
            conn.commit()
        finally:
            conn.close()

    async def open(self):
        """Creates the table if needed and starts the writer task."""
        await asyncio.to_thread(self._ensure_table)
        if self._writer is None:
            self._writer = asyncio.create_task(self._writer_loop(), name='job-store-writer')
        self.logger.info(f"Job store ready at {self.db_path}")

    async def close(self):
        """Applies pending writes and stops the writer task."""
        if self._writer is None:
            return
        await self.flush()
        self._writer.cancel()
        await asyncio.gather(self._writer, return_exceptions=True)
        self._writer = None

    async def flush(self):
        """Waits until every queued write has been applied."""
        if self._writer is not None:
            await self._queue.join()

    def save(self, snapshot: Dict[str, Any]):
        """Queues an insert-or-replace of a job snapshot."""
        self._queue.put_nowait(('save', dict(snapshot)))

    def delete(self, job_id: str):
        """Queues removal of a job's row."""
        self._queue.put_nowait(('delete', job_id))

    async def _writer_loop(self):
        handlers = {'save': self._write_snapshot, 'delete': self._delete_row}
        while True:
            operation, value = await self._queue.get()
            try:
                await asyncio.to_thread(handlers[operation], value)
            except sqlite3.Error as e:
                self.logger.error(f"Job store {operation} failed: {e}")
            finally:
                self._queue.task_done()

    def _write_snapshot(self, snapshot: Dict[str, Any]):
        conn = self._connect()
        try:
            conn.execute(
                'INSERT OR REPLACE INTO jobs (id, status, progress, error, title, format, updated_at) '
                'VALUES (?, ?, ?, ?, ?, ?, ?)',
                (snapshot['jobId'], snapshot['status'], snapshot['progress'], snapshot['error'],
                 snapshot['title'], snapshot['format'], time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def _delete_row(self, job_id: str):
        conn = self._connect()
        try:
            conn.execute('DELETE FROM jobs WHERE id = ?', (job_id,))
            conn.commit()
        finally:
            conn.close()

    def _read_row(self, job_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute('SELECT * FROM jobs WHERE id = ?', (job_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return {
            'jobId': row['id'],
            'status': row['status'],
            'progress': row['progress'],
            'error': row['error'],
            'title': row['title'],
            'format': row['format'],
        }

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Returns the stored snapshot for a job, or None."""
        await self.flush()
        return await asyncio.to_thread(self._read_row, job_id)

    def _fail_unfinished(self) -> int:
        placeholders = ', '.join('?' for _ in TERMINAL_STATUSES)
        conn = self._connect()
        try:
            cursor = conn.execute(
                f'UPDATE jobs SET status = ?, error = COALESCE(error, ?), updated_at = ? '
                f'WHERE status NOT IN ({placeholders})',
                (STATUS_FAILED, INTERRUPTED_ERROR, time.time(), *sorted(TERMINAL_STATUSES)),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def mark_interrupted(self) -> int:
        """Marks jobs left unfinished by a previous run as failed. Returns the row count."""
        count = await asyncio.to_thread(self._fail_unfinished)
        if count:
            self.logger.warning(f"Marked {count} job(s) from a previous run as failed.")
        return count

    def _delete_older_than(self, cutoff: float) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute('DELETE FROM jobs WHERE updated_at < ?', (cutoff,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def prune(self, older_than_seconds: float) -> int:
        """Deletes rows not updated within the last `older_than_seconds`."""
        count = await asyncio.to_thread(self._delete_older_than, time.time() - older_than_seconds)
        if count:
            self.logger.info(f"Pruned {count} stale job record(s).")
        return count

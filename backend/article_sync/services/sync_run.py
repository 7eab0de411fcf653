"""
Sync Run - in-memory summary of one orchestrator execution

Counts per outcome, a bounded list of human-readable errors, the state the
run ended in and its timestamps. Returned to the caller, never persisted.
"""
import threading
from datetime import datetime
from typing import Dict, List, Optional

from ..utils.timeutil import isoformat, utcnow


class SyncRun:
    """Result of SyncOrchestrator.sync().

    Example:
        >>> run = SyncRun('gh_123', max_errors=100)
        >>> run.record_created()
        >>> run.add_error('article 1:0 failed to persist', item_id='1:0')
        >>> run.to_dict()['created']
        1
    """

    STATE_IDLE = 'idle'
    STATE_ACQUIRING_LOCK = 'acquiring-lock'
    STATE_LISTING = 'listing'
    STATE_PROCESSING = 'processing'
    STATE_RELEASING_LOCK = 'releasing-lock'
    STATE_DONE = 'done'
    STATE_LOCK_BUSY = 'lock-busy'
    STATE_FAILED = 'failed'

    MAX_MESSAGE_LENGTH = 500

    def __init__(self, source_id: str, max_errors: int = 100, bypass_lock: bool = False):
        self.source_id = source_id
        self.max_errors = max_errors
        self.bypass_lock = bypass_lock

        self.success = False
        self.skipped_locked = False
        self.message = ''
        self.state = self.STATE_IDLE

        self.processed = 0
        self.created = 0
        self.updated = 0
        self.skipped = 0
        self.failed = 0
        self.media_failed = 0

        self.errors: List[str] = []
        self.errors_dropped = 0

        self.started_at: datetime = utcnow()
        self.finished_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def add_error(self, message: str, item_id: Optional[str] = None) -> None:
        """Append an error line; beyond max_errors lines are only counted"""
        text = f'[{item_id}] {message}' if item_id else message
        with self._lock:
            if len(self.errors) < self.max_errors:
                self.errors.append(text[:self.MAX_MESSAGE_LENGTH])
            else:
                self.errors_dropped += 1

    def record_created(self) -> None:
        with self._lock:
            self.processed += 1
            self.created += 1

    def record_updated(self) -> None:
        with self._lock:
            self.processed += 1
            self.updated += 1

    def record_skipped(self) -> None:
        with self._lock:
            self.processed += 1
            self.skipped += 1

    def record_failed(self) -> None:
        with self._lock:
            self.processed += 1
            self.failed += 1

    def record_media_failures(self, count: int) -> None:
        with self._lock:
            self.media_failed += count

    def finish(self, success: bool, message: str = '', state: Optional[str] = None) -> 'SyncRun':
        self.success = success
        self.message = message or self.message
        self.state = state or (self.STATE_DONE if success else self.STATE_FAILED)
        self.finished_at = utcnow()
        return self

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.finished_at:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def summary_line(self) -> str:
        return (
            f'processed {self.processed}: created {self.created}, updated {self.updated}, '
            f'skipped {self.skipped}, failed {self.failed}'
        )

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                'source_id': self.source_id,
                'success': self.success,
                'skipped_locked': self.skipped_locked,
                'bypass_lock': self.bypass_lock,
                'state': self.state,
                'message': self.message,
                'processed': self.processed,
                'created': self.created,
                'updated': self.updated,
                'skipped': self.skipped,
                'failed': self.failed,
                'media_failed': self.media_failed,
                'errors': list(self.errors),
                'errors_dropped': self.errors_dropped,
                'started_at': isoformat(self.started_at),
                'finished_at': isoformat(self.finished_at),
                'duration_seconds': self.duration_seconds,
            }

    def __repr__(self):
        return f'<SyncRun {self.source_id} {self.state} {self.summary_line()}>'

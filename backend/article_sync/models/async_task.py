"""
Background task model
"""
import uuid

from ..extensions import db
from ..utils.timeutil import utcnow, isoformat


class AsyncTask(db.Model):
    """Queued unit of background work (e.g. one content sync run)"""
    __tablename__ = 'async_tasks'

    __table_args__ = (
        db.Index('ix_async_tasks_queue_status', 'queue_name', 'status'),
    )

    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_RETRYING = 'retrying'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CANCELLED = 'cancelled'

    # Statuses a worker may pick up
    RUNNABLE_STATUSES = (STATUS_PENDING, STATUS_RETRYING)
    FINISHED_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
    # Statuses an operator may put back on the queue
    RETRYABLE_BY_OPERATOR = (STATUS_FAILED, STATUS_CANCELLED)

    TYPE_CONTENT_SYNC = 'content_sync'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = db.Column(db.String(50), nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=5)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    result = db.Column(db.JSON)
    error_message = db.Column(db.Text)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    queue_name = db.Column(db.String(64), nullable=False, default='default')

    # Earliest time a (re)try may run; pushed forward by retry backoff
    available_at = db.Column(db.DateTime, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    expires_at = db.Column(db.DateTime)

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def is_finished(self) -> bool:
        return self.status in self.FINISHED_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'priority': self.priority,
            'status': self.status,
            'queue_name': self.queue_name,
            'payload': self.payload,
            'result': self.result,
            'error_message': self.error_message,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'available_at': isoformat(self.available_at),
            'created_at': isoformat(self.created_at),
            'started_at': isoformat(self.started_at),
            'completed_at': isoformat(self.completed_at),
            'expires_at': isoformat(self.expires_at),
        }

    def __repr__(self):
        return f'<AsyncTask {self.type} {self.id} {self.status}>'

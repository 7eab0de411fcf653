"""
Task Queue - database-backed background execution with retry/backoff

Tasks live in the async_tasks table. A worker claims runnable tasks with a
conditional status update (pending/retrying -> running), so two workers
polling the same queue never run the same task. A handler exception moves
the task to ``retrying`` with an exponential backoff on ``available_at``
until ``max_retries`` is used up, then to ``failed``.

Queue routing:
    priority >= 8  -> high_priority
    priority <= 3  -> low_priority
    otherwise      -> by task type (content_sync -> content_sync, else default)
"""
import random
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from ..errors import RetryableTaskError, TaskError
from ..extensions import db
from ..models import AsyncTask
from ..utils.logger import get_logger
from ..utils.timeutil import utcnow
from ..utils.validators import parse_date

logger = get_logger('task_queue')

DEFAULT_QUEUE = 'default'
HIGH_PRIORITY_QUEUE = 'high_priority'
LOW_PRIORITY_QUEUE = 'low_priority'

TYPE_QUEUES = {
    AsyncTask.TYPE_CONTENT_SYNC: 'content_sync',
}

MAX_ERROR_MESSAGE_LENGTH = 1000


def route_queue(task_type: str, priority: int) -> str:
    if priority >= 8:
        return HIGH_PRIORITY_QUEUE
    if priority <= 3:
        return LOW_PRIORITY_QUEUE
    return TYPE_QUEUES.get(task_type, DEFAULT_QUEUE)


class RetryPolicy:
    """Exponential backoff between attempts.

    delay(n) = min(base_delay * factor ** (n - 1), max_delay), with +-jitter.

    Example:
        >>> policy = RetryPolicy(base_delay=30, max_delay=1800)
        >>> policy.delay_for(1), policy.delay_for(3)
    """

    def __init__(self, base_delay: float = 30.0, max_delay: float = 1800.0,
                 backoff_factor: float = 2.0, jitter: float = 0.2):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait before retry number ``retry_count`` (1-based)"""
        delay = min(self.base_delay * self.backoff_factor ** max(retry_count - 1, 0), self.max_delay)
        if self.jitter and delay:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(delay, 0.0)


class TaskQueue:
    """Enqueue, claim, run and monitor background tasks.

    Example:
        >>> queue = TaskQueue(handlers={'content_sync': handler})
        >>> queue.enqueue('content_sync', {'source_id': 'gh_123'}, priority=5)
        >>> queue.process_queue('content_sync')
        {'processed': 1, 'failed': 0, 'retried': 0, 'errors': []}
        >>> queue.get_queue_health('content_sync')['status']
        'healthy'
    """

    def __init__(
        self,
        session=None,
        handlers: Optional[Dict[str, Callable[[Dict], Optional[Dict]]]] = None,
        clock: Callable = utcnow,
        batch_size: int = 10,
        task_timeout: int = 300,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self._session = session
        self._handlers: Dict[str, Callable] = dict(handlers or {})
        self._clock = clock
        self.batch_size = batch_size
        self.task_timeout = task_timeout
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def register_handler(self, task_type: str, handler: Callable[[Dict], Optional[Dict]]) -> None:
        self._handlers[task_type] = handler

    # ==================== Producer side ====================

    def enqueue(
        self,
        task_type: str,
        payload: Optional[Dict] = None,
        priority: int = 5,
        queue_name: Optional[str] = None,
        max_retries: int = 3,
        expires_at=None
    ) -> AsyncTask:
        """Persist a new pending task and return it"""
        now = self._clock()
        task = AsyncTask(
            type=task_type,
            payload=payload or {},
            priority=priority,
            status=AsyncTask.STATUS_PENDING,
            queue_name=queue_name or route_queue(task_type, priority),
            max_retries=max_retries,
            retry_count=0,
            available_at=now,
            created_at=now,
            expires_at=expires_at,
        )
        try:
            self.session.add(task)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        logger.info(f"[TaskQueue] Enqueued {task_type} task {task.id} on {task.queue_name} (priority={priority})")
        return task

    def enqueue_content_sync(self, source_id: str, force_update: bool = False, bypass_lock: bool = False,
                             max_articles: int = 0, begin_date: Optional[str] = None,
                             end_date: Optional[str] = None, priority: int = 5) -> AsyncTask:
        payload = {
            'source_id': source_id,
            'force_update': force_update,
            'bypass_lock': bypass_lock,
            'max_articles': max_articles,
        }
        if begin_date:
            payload['begin_date'] = begin_date
        if end_date:
            payload['end_date'] = end_date
        return self.enqueue(AsyncTask.TYPE_CONTENT_SYNC, payload, priority=priority)

    def get_task(self, task_id: str) -> Optional[AsyncTask]:
        return self.session.get(AsyncTask, task_id)

    # ==================== Consumer side ====================

    def dequeue(self, queue_name: Optional[str] = None, limit: Optional[int] = None) -> List[AsyncTask]:
        """Claim up to ``limit`` runnable tasks, highest priority then oldest first"""
        now = self._clock()
        limit = limit or self.batch_size

        try:
            query = self.session.query(AsyncTask).filter(
                AsyncTask.status.in_(AsyncTask.RUNNABLE_STATUSES),
                or_(AsyncTask.available_at.is_(None), AsyncTask.available_at <= now),
                or_(AsyncTask.expires_at.is_(None), AsyncTask.expires_at > now),
            )
            if queue_name:
                query = query.filter(AsyncTask.queue_name == queue_name)
            candidates = query.order_by(AsyncTask.priority.desc(), AsyncTask.created_at.asc()).limit(limit).all()
            candidate_ids = [(task.id, task.status) for task in candidates]
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Failed to read queue {queue_name}: {e}")
            return []

        claimed = []
        for task_id, status in candidate_ids:
            try:
                updated = self.session.query(AsyncTask).filter(
                    AsyncTask.id == task_id,
                    AsyncTask.status == status
                ).update(
                    {'status': AsyncTask.STATUS_RUNNING, 'started_at': now},
                    synchronize_session=False
                )
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"[TaskQueue] Failed to claim task {task_id}: {e}")
                continue

            if updated == 1:
                claimed.append(self.session.get(AsyncTask, task_id))

        if claimed:
            logger.info(f"[TaskQueue] Claimed {len(claimed)} tasks from {queue_name or 'all queues'}")
        return claimed

    def process_queue(self, queue_name: Optional[str] = None, limit: Optional[int] = None) -> Dict:
        """Claim a batch and run each task through its handler"""
        results = {'processed': 0, 'failed': 0, 'retried': 0, 'errors': []}

        for task in self.dequeue(queue_name, limit):
            task_id = task.id
            started = time.monotonic()
            try:
                handler = self._handlers.get(task.type)
                if handler is None:
                    raise TaskError(f'No handler registered for task type {task.type}')
                outcome = handler(dict(task.payload or {}))
            except Exception as e:
                logger.warning(f"[TaskQueue] Task {task_id} ({task.type}) failed: {e}")
                results[self._record_failure(task_id, e)] += 1
                results['errors'].append({'task_id': task_id, 'error': str(e)})
                continue

            duration_ms = int((time.monotonic() - started) * 1000)
            self._record_success(task_id, outcome, duration_ms)
            results['processed'] += 1

        if results['processed'] or results['failed'] or results['retried']:
            logger.info(
                f"[TaskQueue] Processed {queue_name or 'all queues'}: processed={results['processed']}, "
                f"retried={results['retried']}, failed={results['failed']}"
            )
        return results

    def _record_success(self, task_id: str, outcome, duration_ms: int) -> None:
        try:
            task = self.session.get(AsyncTask, task_id)
            task.status = AsyncTask.STATUS_COMPLETED
            task.completed_at = self._clock()
            task.error_message = None
            task.result = {'duration_ms': duration_ms, 'output': outcome}
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Could not mark task {task_id} completed: {e}")

    def _record_failure(self, task_id: str, error: Exception) -> str:
        """Move a failed task to retrying or failed; returns the results key"""
        # Handlers may leave the session in a failed transaction
        self.session.rollback()
        retryable = not isinstance(error, TaskError) or isinstance(error, RetryableTaskError)
        now = self._clock()

        try:
            task = self.session.get(AsyncTask, task_id)
            task.error_message = str(error)[:MAX_ERROR_MESSAGE_LENGTH]
            if retryable and task.can_retry():
                task.retry_count += 1
                delay = self.retry_policy.delay_for(task.retry_count)
                task.status = AsyncTask.STATUS_RETRYING
                task.available_at = now + timedelta(seconds=delay)
                task.started_at = None
                outcome = 'retried'
                logger.info(f"[TaskQueue] Task {task_id} retry {task.retry_count}/{task.max_retries} in {delay:.1f}s")
            else:
                task.status = AsyncTask.STATUS_FAILED
                task.completed_at = now
                outcome = 'failed'
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Could not record failure of task {task_id}: {e}")
            return 'failed'
        return outcome

    # ==================== Operator actions ====================

    def retry_task(self, task_id: str) -> bool:
        """Put a failed or cancelled task back on its queue with a fresh retry budget.

        Returns:
            False if the task does not exist or is not failed/cancelled
        """
        now = self._clock()
        try:
            updated = self.session.query(AsyncTask).filter(
                AsyncTask.id == task_id,
                AsyncTask.status.in_(AsyncTask.RETRYABLE_BY_OPERATOR)
            ).update(self._requeue_values(now), synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Failed to retry task {task_id}: {e}")
            return False

        if updated:
            logger.info(f"[TaskQueue] Task {task_id} requeued by operator")
        return updated == 1

    def retry_failed_tasks(self, queue_name: Optional[str] = None) -> int:
        """Requeue every failed task (of one queue, or all); returns how many"""
        now = self._clock()
        try:
            query = self.session.query(AsyncTask).filter(AsyncTask.status == AsyncTask.STATUS_FAILED)
            if queue_name:
                query = query.filter(AsyncTask.queue_name == queue_name)
            retried = query.update(self._requeue_values(now), synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Failed to retry failed tasks of {queue_name or 'all queues'}: {e}")
            return 0

        if retried:
            logger.info(f"[TaskQueue] Requeued {retried} failed tasks from {queue_name or 'all queues'}")
        return retried

    def cancel_task(self, task_id: str, reason: str = 'Cancelled by operator') -> bool:
        """Cancel a task that has not started yet.

        Running tasks cannot be interrupted; they finish and record their own
        outcome.

        Returns:
            False if the task does not exist or is not pending/retrying
        """
        now = self._clock()
        try:
            updated = self.session.query(AsyncTask).filter(
                AsyncTask.id == task_id,
                AsyncTask.status.in_(AsyncTask.RUNNABLE_STATUSES)
            ).update(
                {'status': AsyncTask.STATUS_CANCELLED, 'completed_at': now,
                 'error_message': reason[:MAX_ERROR_MESSAGE_LENGTH]},
                synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Failed to cancel task {task_id}: {e}")
            return False

        if updated:
            logger.info(f"[TaskQueue] Task {task_id} cancelled: {reason}")
        return updated == 1

    @staticmethod
    def _requeue_values(now) -> Dict:
        # expires_at is cleared too, otherwise a task cancelled for expiry is cancelled again
        return {
            'status': AsyncTask.STATUS_PENDING,
            'retry_count': 0,
            'available_at': now,
            'started_at': None,
            'completed_at': None,
            'expires_at': None,
            'error_message': None,
        }

    # ==================== Maintenance ====================

    def cleanup_expired_tasks(self) -> int:
        """Cancel waiting tasks whose expires_at has passed"""
        now = self._clock()
        try:
            cancelled = self.session.query(AsyncTask).filter(
                AsyncTask.status.in_(AsyncTask.RUNNABLE_STATUSES),
                AsyncTask.expires_at.isnot(None),
                AsyncTask.expires_at <= now
            ).update(
                {'status': AsyncTask.STATUS_CANCELLED, 'completed_at': now, 'error_message': 'Task expired'},
                synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Expired task cleanup failed: {e}")
            return 0

        if cancelled:
            logger.info(f"[TaskQueue] Cancelled {cancelled} expired tasks")
        return cancelled

    def recover_stale_tasks(self, timeout_seconds: Optional[int] = None) -> int:
        """Requeue (or fail) tasks stuck in ``running`` longer than the timeout.

        A worker that died mid-task leaves its task running forever; this
        hands it back to the queue while retries remain.
        """
        timeout_seconds = timeout_seconds or self.task_timeout
        now = self._clock()
        cutoff = now - timedelta(seconds=timeout_seconds)

        try:
            stale = self.session.query(AsyncTask).filter(
                AsyncTask.status == AsyncTask.STATUS_RUNNING,
                or_(AsyncTask.started_at.is_(None), AsyncTask.started_at < cutoff)
            ).all()

            for task in stale:
                logger.warning(f"[StaleTaskCleanup] Task {task.id} ({task.type}) running since {task.started_at}")
                task.error_message = 'Task timed out (worker stopped responding)'
                if task.can_retry():
                    task.retry_count += 1
                    task.status = AsyncTask.STATUS_RETRYING
                    task.available_at = now
                    task.started_at = None
                else:
                    task.status = AsyncTask.STATUS_FAILED
                    task.completed_at = now

            if stale:
                self.session.commit()
                logger.info(f"[StaleTaskCleanup] Recovered {len(stale)} stale tasks")
            return len(stale)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[StaleTaskCleanup] Recovery failed: {e}")
            return 0

    def get_queue_health(self, queue_name: Optional[str] = None) -> Dict:
        """Counts per status plus a healthy/warning/critical verdict"""
        now = self._clock()
        try:
            query = self.session.query(AsyncTask.status, func.count(AsyncTask.id))
            if queue_name:
                query = query.filter(AsyncTask.queue_name == queue_name)
            counts = dict(query.group_by(AsyncTask.status).all())

            long_running_query = self.session.query(func.count(AsyncTask.id)).filter(
                AsyncTask.status == AsyncTask.STATUS_RUNNING,
                AsyncTask.started_at < now - timedelta(seconds=self.task_timeout)
            )
            if queue_name:
                long_running_query = long_running_query.filter(AsyncTask.queue_name == queue_name)
            long_running = long_running_query.scalar() or 0
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[TaskQueue] Health check of {queue_name} failed: {e}")
            return {'queue_name': queue_name, 'status': 'error', 'error': str(e)}

        total = sum(counts.values())
        failed = counts.get(AsyncTask.STATUS_FAILED, 0)

        status = 'healthy'
        if failed > total * 0.1 or long_running > 0:
            status = 'warning'
        if failed > total * 0.3:
            status = 'critical'

        return {
            'queue_name': queue_name,
            'status': status,
            'pending': counts.get(AsyncTask.STATUS_PENDING, 0),
            'retrying': counts.get(AsyncTask.STATUS_RETRYING, 0),
            'running': counts.get(AsyncTask.STATUS_RUNNING, 0),
            'failed': failed,
            'completed': counts.get(AsyncTask.STATUS_COMPLETED, 0),
            'cancelled': counts.get(AsyncTask.STATUS_CANCELLED, 0),
            'total': total,
            'long_running': long_running,
        }


def make_content_sync_handler(orchestrator) -> Callable[[Dict], Dict]:
    """Task handler that runs one orchestrator sync from a task payload"""

    def handle(payload: Dict) -> Dict:
        source_id = payload.get('source_id')
        if not source_id:
            raise TaskError('content_sync task has no source_id')

        try:
            begin_date = parse_date(payload.get('begin_date'))
            end_date = parse_date(payload.get('end_date'))
        except ValueError as e:
            raise TaskError(str(e)) from e

        run = orchestrator.sync(
            source_id,
            force_update=bool(payload.get('force_update')),
            bypass_lock=bool(payload.get('bypass_lock')),
            max_articles=int(payload.get('max_articles') or 0),
            begin_date=begin_date,
            end_date=end_date,
        )
        if run.skipped_locked:
            raise RetryableTaskError(f'Source {source_id} is being synced by another worker')
        if not run.success:
            raise RetryableTaskError(run.message or f'Sync of {source_id} failed')
        return run.to_dict()

    return handle

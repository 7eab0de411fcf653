"""
Source account API

Read endpoints report sync state; triggering a sync only enqueues a task,
the run itself happens in a queue worker (`flask queue process`).
"""
from flask import Blueprint, current_app, request

from ..extensions import db
from ..middleware import require_admin
from ..models import SourceAccount
from ..services.factory import build_sync_orchestrator, build_task_queue
from ..utils.logger import get_logger
from ..utils.responses import ApiResponse
from ..utils.validators import parse_date, validate_priority, validate_source_id

sources_bp = Blueprint('sources', __name__)
logger = get_logger('api.sources')


@sources_bp.route('/sources', methods=['GET'])
def list_sources():
    """List source accounts (secrets are never returned)"""
    sources = SourceAccount.query.order_by(SourceAccount.id).all()
    return ApiResponse.success([source.to_dict() for source in sources])


@sources_bp.route('/sources/<source_id>/sync-status', methods=['GET'])
def get_sync_status(source_id):
    """Whether a sync of the source is running and when it last finished"""
    valid, error = validate_source_id(source_id)
    if not valid:
        return ApiResponse.validation_error(error)

    status = build_sync_orchestrator(current_app.config).sync_status(source_id)
    if status is None:
        return ApiResponse.not_found(f'source {source_id} not found')
    return ApiResponse.success(status)


@sources_bp.route('/sources/<source_id>/sync', methods=['POST'])
@require_admin
def trigger_sync(source_id):
    """
    Enqueue a content sync of one source.

    JSON body (all optional):
    - force_update: re-process existing articles
    - bypass_lock: skip the per-source lock
    - max_articles: stop after this many articles
    - begin_date / end_date: YYYY-MM-DD
    - priority: 1-10 (default 5)
    """
    valid, error = validate_source_id(source_id)
    if not valid:
        return ApiResponse.validation_error(error)

    if db.session.get(SourceAccount, source_id) is None:
        return ApiResponse.not_found(f'source {source_id} not found')

    data = request.get_json(silent=True) or {}

    valid, error, priority = validate_priority(data.get('priority'))
    if not valid:
        return ApiResponse.validation_error(error)

    try:
        begin_date = parse_date(data.get('begin_date'))
        end_date = parse_date(data.get('end_date'))
    except ValueError:
        return ApiResponse.validation_error('dates must use the YYYY-MM-DD format')

    try:
        max_articles = int(data.get('max_articles') or 0)
    except (TypeError, ValueError):
        return ApiResponse.validation_error('max_articles must be an integer')
    if max_articles < 0:
        return ApiResponse.validation_error('max_articles must not be negative')

    task = build_task_queue(current_app.config).enqueue_content_sync(
        source_id,
        force_update=bool(data.get('force_update')),
        bypass_lock=bool(data.get('bypass_lock')),
        max_articles=max_articles,
        begin_date=begin_date.isoformat() if begin_date else None,
        end_date=end_date.isoformat() if end_date else None,
        priority=priority,
    )
    logger.info(f"Sync of {source_id} enqueued as task {task.id}")
    return ApiResponse.accepted(task.to_dict(), 'Sync task enqueued')

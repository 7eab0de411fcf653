"""
Task queue API
"""
from flask import Blueprint, current_app

from ..services.factory import build_task_queue
from ..utils.responses import ApiResponse

queues_bp = Blueprint('queues', __name__)


@queues_bp.route('/queues/<queue_name>/health', methods=['GET'])
def get_queue_health(queue_name):
    """Pending/running/failed counts and a healthy/warning/critical status"""
    health = build_task_queue(current_app.config).get_queue_health(queue_name)
    if health.get('status') == 'error':
        return ApiResponse.server_error(health.get('error', 'queue health unavailable'))
    return ApiResponse.success(health)


@queues_bp.route('/tasks/<task_id>', methods=['GET'])
def get_task(task_id):
    task = build_task_queue(current_app.config).get_task(task_id)
    if task is None:
        return ApiResponse.not_found(f'task {task_id} not found')
    return ApiResponse.success(task.to_dict())

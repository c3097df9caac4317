"""
构建任务路由
"""

from flask import Blueprint, g, jsonify, request
from minibuild import get_services
from minibuild.services.auth_service import login_required
import logging

logger = logging.getLogger(__name__)

build_bp = Blueprint('build', __name__)


@build_bp.route('/api/tasks', methods=['POST'])
@login_required
def api_create_task():
    """创建构建任务API"""
    data = request.get_json(silent=True) or {}
    task = get_services().tasks.create_task(data, user=g.current_user)
    logger.info(f"创建构建任务: task_id={task.id}, app_id={task.app_id}, user={g.current_user.username}")
    return jsonify({
        'success': True,
        'message': '构建任务已创建',
        'data': task.to_dict(include_log=False)
    }), 201


@build_bp.route('/api/tasks', methods=['GET'])
@login_required
def api_get_tasks():
    """获取任务列表API"""
    result = get_services().tasks.list_tasks(
        user=g.current_user,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
        status=request.args.get('status'),
        app_id=request.args.get('app_id', type=int),
        build_type=request.args.get('type'),
        search=request.args.get('search'),
    )
    result['data'] = [task.to_dict(include_log=False) for task in result['data']]
    return jsonify({'success': True, **result})


@build_bp.route('/api/tasks/statistics', methods=['GET'])
@login_required
def api_get_statistics():
    """构建统计API"""
    stats = get_services().tasks.get_statistics(
        user=g.current_user,
        app_id=request.args.get('app_id', type=int),
    )
    return jsonify({'success': True, 'data': stats})


@build_bp.route('/api/tasks/queue-status', methods=['GET'])
@login_required
def api_get_queue_status():
    """队列状态API"""
    return jsonify({'success': True, 'data': get_services().tasks.get_queue_status()})


@build_bp.route('/api/tasks/<task_id>', methods=['GET'])
@login_required
def api_get_task(task_id):
    """获取任务详情API"""
    task = get_services().tasks.get_task(task_id, user=g.current_user)
    return jsonify({'success': True, 'data': task.to_dict()})


@build_bp.route('/api/tasks/<task_id>/logs', methods=['GET'])
@login_required
def api_get_task_logs(task_id):
    """获取任务日志API"""
    task = get_services().tasks.get_task(task_id, user=g.current_user)
    return jsonify({
        'success': True,
        'data': {
            'task_id': task.id,
            'status': task.status,
            'progress': task.progress,
            'build_log': task.build_log or ''
        }
    })


@build_bp.route('/api/tasks/<task_id>/cancel', methods=['POST'])
@login_required
def api_cancel_task(task_id):
    """取消任务API"""
    task = get_services().tasks.cancel_task(task_id, user=g.current_user)
    return jsonify({
        'success': True,
        'message': '任务已取消',
        'data': task.to_dict(include_log=False)
    })


@build_bp.route('/api/tasks/<task_id>/retry', methods=['POST'])
@login_required
def api_retry_task(task_id):
    """重试任务API"""
    task = get_services().tasks.retry_task(task_id, user=g.current_user)
    return jsonify({
        'success': True,
        'message': '任务已重新提交',
        'data': task.to_dict(include_log=False)
    })

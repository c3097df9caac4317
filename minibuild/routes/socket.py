"""
构建进度推送通道（Socket.IO，命名空间 /build）
"""

from flask import request
from flask_socketio import disconnect, emit, join_room, leave_room
from minibuild import db, get_services
from minibuild.errors import Unauthorized
from minibuild.models.build_task import BuildTask
from minibuild.models.user import User
from minibuild.services.auth_service import AuthService
from minibuild.services.broadcaster import NAMESPACE, task_room, user_room
import logging

logger = logging.getLogger(__name__)


def _handshake_token(auth):
    if isinstance(auth, dict) and auth.get('token'):
        return auth['token']
    return request.args.get('token')


def register_socket_handlers(socketio):
    """注册推送通道事件处理"""

    @socketio.on('connect', namespace=NAMESPACE)
    def handle_connect(auth=None):
        try:
            user = AuthService.get_user_from_token(_handshake_token(auth))
        except Unauthorized as e:
            logger.warning(f"推送通道认证失败: sid={request.sid}, error={e.message}")
            return False

        get_services().broadcaster.register_client(request.sid, user.id)
        join_room(user_room(user.id))
        emit('connected', {
            'message': '连接成功',
            'userId': user.id,
            'username': user.username,
        })

    @socketio.on('disconnect', namespace=NAMESPACE)
    def handle_disconnect(*args):
        get_services().broadcaster.unregister_client(request.sid)

    def _current_user():
        user_id = get_services().broadcaster.get_client_user(request.sid)
        if user_id is None:
            emit('error', {'message': '未认证'})
            disconnect()
            return None
        return db.session.get(User, user_id)

    @socketio.on('subscribe-task', namespace=NAMESPACE)
    def handle_subscribe_task(data):
        user = _current_user()
        if user is None:
            return
        task_id = (data or {}).get('taskId')
        if not task_id:
            emit('error', {'message': '缺少 taskId'})
            return

        task = db.session.get(BuildTask, task_id)
        if task and not user.is_admin and task.user_id != user.id:
            emit('error', {'message': '无权订阅该任务', 'taskId': task_id})
            return

        join_room(task_room(task_id))
        logger.info(f"订阅任务: user_id={user.id}, task_id={task_id}")
        emit('subscribed', {'taskId': task_id, 'message': '订阅成功'})

    @socketio.on('unsubscribe-task', namespace=NAMESPACE)
    def handle_unsubscribe_task(data):
        user = _current_user()
        if user is None:
            return
        task_id = (data or {}).get('taskId')
        if not task_id:
            emit('error', {'message': '缺少 taskId'})
            return

        leave_room(task_room(task_id))
        emit('unsubscribed', {'taskId': task_id, 'message': '取消订阅成功'})

"""构建进度推送（Socket.IO）"""
import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

NAMESPACE = '/build'


def task_room(task_id):
    return f'task:{task_id}'


def user_room(user_id):
    return f'user:{user_id}'


def _timestamp():
    return datetime.now(timezone.utc).isoformat()


class ProgressBroadcaster:
    """向订阅了任务的客户端推送构建日志与状态

    推送失败只记录日志，不影响构建流程。
    """

    def __init__(self, socketio):
        self.socketio = socketio
        self._clients = {}  # sid -> user_id
        self._lock = threading.Lock()

    # ==================== 连接管理 ====================

    def register_client(self, sid, user_id):
        with self._lock:
            self._clients[sid] = user_id
        logger.info(f"客户端已连接: sid={sid}, user_id={user_id}")

    def unregister_client(self, sid):
        with self._lock:
            user_id = self._clients.pop(sid, None)
        if user_id is not None:
            logger.info(f"客户端已断开: sid={sid}, user_id={user_id}")
        return user_id

    def get_client_user(self, sid):
        with self._lock:
            return self._clients.get(sid)

    def get_online_user_count(self):
        with self._lock:
            return len(set(self._clients.values()))

    def get_online_users(self):
        with self._lock:
            return sorted(set(self._clients.values()))

    # ==================== 推送 ====================

    def _emit(self, event, data, room=None):
        try:
            self.socketio.emit(event, data, to=room, namespace=NAMESPACE)
        except Exception as e:
            logger.warning(f"推送消息失败: event={event}, room={room}, error={e}")

    def send_build_log(self, task_id, log, level='info'):
        self._emit('build-log', {
            'taskId': task_id,
            'log': log,
            'level': level,
            'timestamp': _timestamp(),
        }, room=task_room(task_id))

    def send_build_status(self, task_id, status, **data):
        payload = {'taskId': task_id, 'status': status}
        payload.update({key: value for key, value in data.items() if value is not None})
        payload['timestamp'] = _timestamp()
        self._emit('build-status', payload, room=task_room(task_id))

    def send_to_user(self, user_id, event, data):
        self._emit(event, data, room=user_room(user_id))

    def broadcast(self, event, data):
        self._emit(event, data)

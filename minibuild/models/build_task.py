"""构建任务模型"""
import uuid
from datetime import datetime
from minibuild import db


class TaskStatus:
    """任务状态"""
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'

    ALL = (PENDING, RUNNING, SUCCESS, FAILED, CANCELLED)
    ACTIVE = (PENDING, RUNNING)
    TERMINAL = (SUCCESS, FAILED, CANCELLED)


class BuildType:
    """构建类型"""
    UPLOAD = 'UPLOAD'
    PREVIEW = 'PREVIEW'

    ALL = (UPLOAD, PREVIEW)


class TriggerType:
    """触发方式"""
    MANUAL = 'MANUAL'
    WEBHOOK = 'WEBHOOK'
    SCHEDULED = 'SCHEDULED'

    ALL = (MANUAL, WEBHOOK, SCHEDULED)


# 合法的状态迁移，FAILED -> PENDING 仅用于用户重试
STATUS_TRANSITIONS = {
    TaskStatus.PENDING: (TaskStatus.RUNNING, TaskStatus.CANCELLED),
    TaskStatus.RUNNING: (TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED),
    TaskStatus.FAILED: (TaskStatus.PENDING,),
    TaskStatus.SUCCESS: (),
    TaskStatus.CANCELLED: (),
}


def _generate_task_id():
    return str(uuid.uuid4())


class BuildTask(db.Model):
    """构建任务模型"""
    __tablename__ = 'build_tasks'

    # 基础信息
    id = db.Column(db.String(36), primary_key=True, default=_generate_task_id)
    app_id = db.Column(db.Integer, db.ForeignKey('miniprograms.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    # 构建参数
    type = db.Column(db.String(20), nullable=False, comment='UPLOAD/PREVIEW')
    priority = db.Column(db.Integer, default=2, comment='优先级: 1最高, 3最低')
    branch = db.Column(db.String(100), nullable=False, comment='入队时确定的分支')
    commit_id = db.Column(db.String(40), comment='构建的commit')
    version = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text)
    operator = db.Column(db.String(100), comment='操作人')
    trigger_type = db.Column(db.String(20), default=TriggerType.MANUAL, comment='MANUAL/WEBHOOK/SCHEDULED')

    # 任务状态
    status = db.Column(db.String(20), default=TaskStatus.PENDING, index=True)
    progress = db.Column(db.Integer, default=0, comment='进度 0-100')
    build_log = db.Column(db.Text, default='', comment='构建日志（只追加）')
    error_message = db.Column(db.Text)
    result = db.Column(db.JSON, comment='构建结果: 包大小/预览二维码')
    retry_count = db.Column(db.Integer, default=0, comment='用户重试次数')

    # 时间戳
    create_time = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    start_time = db.Column(db.DateTime)
    end_time = db.Column(db.DateTime)
    duration = db.Column(db.Integer, comment='耗时（秒），仅在成功/失败时写入')
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    miniprogram = db.relationship('Miniprogram', backref=db.backref('build_tasks', lazy='dynamic'))

    @property
    def is_active(self):
        return self.status in TaskStatus.ACTIVE

    def to_dict(self, include_log=True):
        """转换为字典"""
        data = {
            'id': self.id,
            'app_id': self.app_id,
            'app_name': self.miniprogram.name if self.miniprogram else None,
            'user_id': self.user_id,
            'type': self.type,
            'priority': self.priority,
            'branch': self.branch,
            'commit_id': self.commit_id,
            'version': self.version,
            'description': self.description,
            'operator': self.operator,
            'trigger_type': self.trigger_type,
            'status': self.status,
            'progress': self.progress or 0,
            'error_message': self.error_message,
            'result': self.result,
            'retry_count': self.retry_count or 0,
            'create_time': self.create_time.isoformat() if self.create_time else None,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration': self.duration,
        }
        if include_log:
            data['build_log'] = self.build_log or ''
        return data

    def __repr__(self):
        return f'<BuildTask {self.id} {self.status}>'

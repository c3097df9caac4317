"""构建任务记录存储

所有写操作都是单条带条件的 UPDATE/DELETE 语句，
状态迁移的合法性由 WHERE 条件保证，并发下不会出现覆盖写。
"""
import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from minibuild import db
from minibuild.errors import TaskNotFound
from minibuild.models.build_task import BuildTask, STATUS_TRANSITIONS, TaskStatus
from minibuild.signals import build_finished

logger = logging.getLogger(__name__)


def _sources_for(to_status):
    """可以迁移到目标状态的源状态"""
    return tuple(source for source, targets in STATUS_TRANSITIONS.items() if to_status in targets)


class TaskStore:
    """构建任务持久化与状态迁移"""

    def __init__(self, broadcaster=None):
        self.broadcaster = broadcaster

    # ==================== 查询 ====================

    def get(self, task_id):
        return db.session.get(BuildTask, task_id, populate_existing=True)

    def get_or_raise(self, task_id):
        task = self.get(task_id)
        if not task:
            raise TaskNotFound(f'构建任务不存在: {task_id}')
        return task

    def get_status(self, task_id):
        return db.session.execute(
            select(BuildTask.status).where(BuildTask.id == task_id)
        ).scalar_one_or_none()

    def find_active(self, app_id, build_type):
        """查找同一小程序、同一类型的进行中任务"""
        return BuildTask.query.filter(
            BuildTask.app_id == app_id,
            BuildTask.type == build_type,
            BuildTask.status.in_(TaskStatus.ACTIVE)
        ).first()

    def ids_by_status(self, status):
        rows = db.session.execute(
            select(BuildTask.id, BuildTask.priority)
            .where(BuildTask.status == status)
            .order_by(BuildTask.priority, BuildTask.create_time)
        ).all()
        return [(row.id, row.priority) for row in rows]

    def list_tasks(self, page=1, limit=20, status=None, app_id=None, user_id=None,
                   build_type=None, search=None):
        """分页查询任务列表，按创建时间倒序"""
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), 100)

        query = BuildTask.query
        if status:
            query = query.filter(BuildTask.status == status)
        if app_id:
            query = query.filter(BuildTask.app_id == app_id)
        if user_id:
            query = query.filter(BuildTask.user_id == user_id)
        if build_type:
            query = query.filter(BuildTask.type == build_type)
        if search:
            pattern = f'%{search}%'
            query = query.filter(or_(
                BuildTask.id.like(pattern),
                BuildTask.version.like(pattern),
                BuildTask.description.like(pattern),
                BuildTask.operator.like(pattern),
                BuildTask.branch.like(pattern),
            ))

        total = query.count()
        tasks = query.order_by(BuildTask.create_time.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        total_pages = math.ceil(total / limit) if total else 0

        return {
            'data': tasks,
            'total': total,
            'page': page,
            'limit': limit,
            'total_pages': total_pages,
            'has_next': page < total_pages,
            'has_prev': page > 1,
        }

    def statistics(self, user_id=None, app_id=None):
        query = db.session.query(BuildTask.status, func.count(BuildTask.id))
        if user_id:
            query = query.filter(BuildTask.user_id == user_id)
        if app_id:
            query = query.filter(BuildTask.app_id == app_id)
        counts = dict(query.group_by(BuildTask.status).all())

        stats = {status.lower(): counts.get(status, 0) for status in TaskStatus.ALL}
        total = sum(stats.values())
        stats['total'] = total
        stats['success_rate'] = round(stats['success'] / total * 100) if total else 0
        return stats

    # ==================== 写操作 ====================

    def create(self, **fields):
        fields.setdefault('status', TaskStatus.PENDING)
        fields.setdefault('progress', 0)
        fields.setdefault('build_log', '')
        task = BuildTask(**fields)
        db.session.add(task)
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info(f"创建构建任务: task_id={task.id}, app_id={task.app_id}, type={task.type}")
        return task

    def _execute(self, stmt):
        try:
            result = db.session.execute(stmt.execution_options(synchronize_session=False))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return result.rowcount

    def _update(self, task_id, values, *conditions):
        stmt = update(BuildTask).where(BuildTask.id == task_id, *conditions).values(**values)
        return self._execute(stmt) > 0

    def transition(self, task_id, to_status, from_statuses=None, **fields):
        """带条件的状态迁移

        RUNNING 写入开始时间（已有则保留），SUCCESS/FAILED 写入结束时间和耗时，
        当前状态不在 from_statuses 中时不做任何修改。

        Returns:
            bool: 是否迁移成功
        """
        from_statuses = tuple(from_statuses or _sources_for(to_status))
        now = datetime.utcnow()
        values = dict(fields, status=to_status)

        if to_status == TaskStatus.RUNNING:
            values['start_time'] = func.coalesce(BuildTask.start_time, now)
        elif to_status in (TaskStatus.SUCCESS, TaskStatus.FAILED):
            start_time = db.session.execute(
                select(BuildTask.start_time).where(BuildTask.id == task_id)
            ).scalar_one_or_none()
            if start_time is None:
                start_time = now
                values['start_time'] = now
            values['end_time'] = now
            values['duration'] = int((now - start_time).total_seconds())

        if not self._update(task_id, values, BuildTask.status.in_(from_statuses)):
            logger.info(f"状态迁移未生效: task_id={task_id}, to={to_status}, 期望源状态={from_statuses}")
            return False

        logger.info(f"任务状态更新: task_id={task_id}, status={to_status}")
        if self.broadcaster:
            self.broadcaster.send_build_status(
                task_id, to_status,
                progress=fields.get('progress'),
                message=fields.get('error_message'),
                result=fields.get('result'),
            )
        if to_status in (TaskStatus.SUCCESS, TaskStatus.FAILED):
            build_finished.send(
                self,
                task_id=task_id,
                success=to_status == TaskStatus.SUCCESS,
                details={
                    'result': fields.get('result'),
                    'error_message': fields.get('error_message'),
                    'duration': values['duration'],
                },
            )
        return True

    def update_progress(self, task_id, progress, message=None):
        """更新进度，只增不减且仅对运行中的任务生效"""
        progress = max(0, min(100, int(progress)))
        updated = self._update(
            task_id, {'progress': progress},
            BuildTask.status == TaskStatus.RUNNING,
            BuildTask.progress <= progress,
        )
        if updated and self.broadcaster:
            self.broadcaster.send_build_status(
                task_id, TaskStatus.RUNNING, progress=progress, message=message
            )
        return updated

    def append_log(self, task_id, message, level='info'):
        """追加一行日志并推送"""
        line = f'[{datetime.now().isoformat(timespec="seconds")}] {message}'
        self._update(task_id, {
            'build_log': func.coalesce(BuildTask.build_log, '') + f'{line}\n'
        })
        if self.broadcaster:
            self.broadcaster.send_build_log(task_id, line, level)
        return line

    def set_commit_id(self, task_id, commit_id):
        """记录实际检出的 commit，覆盖入队时携带的值"""
        return self._update(task_id, {'commit_id': commit_id})

    def reset_for_retry(self, task_id, max_retries):
        """失败任务重置为待执行，重试次数 +1"""
        return self._update(task_id, {
            'status': TaskStatus.PENDING,
            'retry_count': BuildTask.retry_count + 1,
            'progress': 0,
            'start_time': None,
            'end_time': None,
            'duration': None,
            'error_message': None,
            'result': None,
        }, BuildTask.status == TaskStatus.FAILED, BuildTask.retry_count < max_retries)

    def delete_expired(self, days):
        """删除超过保留期的已结束任务，进行中的任务不受影响"""
        cutoff = datetime.utcnow() - timedelta(days=days)
        stmt = delete(BuildTask).where(
            BuildTask.status.in_(TaskStatus.TERMINAL),
            BuildTask.create_time < cutoff,
        )
        count = self._execute(stmt)
        logger.info(f"清理过期任务: {count} 条（{days}天前）")
        return count

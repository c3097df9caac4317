"""构建任务管理服务"""
import logging

from minibuild.errors import (
    DuplicateActiveTask, InvalidState, RetryLimitExceeded, Unauthorized, ValidationError
)
from minibuild.models.build_task import BuildType, TaskStatus, TriggerType
from minibuild.services.miniprogram_service import MiniprogramService

logger = logging.getLogger(__name__)


class BuildTaskService:
    """构建任务的创建、取消、重试与查询"""

    def __init__(self, store, queue, fetcher, credentials, max_retries=3, retention_days=30):
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.credentials = credentials
        self.max_retries = max_retries
        self.retention_days = retention_days

    @staticmethod
    def _check_task_access(task, user):
        if user is None or user.is_admin or task.user_id == user.id:
            return
        raise Unauthorized('无权访问该构建任务')

    def _check_source(self, miniprogram):
        """入队前校验仓库地址与凭证，错误的输入不进入队列

        Raises:
            ValidationError: 未配置仓库地址
            InvalidUrl: 仓库地址格式不支持
            CredentialNotFound / InvalidCredentials / DecryptionFailure: 凭证不可用
        """
        config = miniprogram.config
        if not config or not config.git_url:
            raise ValidationError('小程序未配置Git仓库地址')
        self.fetcher.validate_url(config.git_url)
        if config.git_credential_id:
            self.credentials.resolve(config.git_credential_id, miniprogram.user_id)

    def create_task(self, data, user=None):
        """创建构建任务并入队

        Args:
            data: {
                'app_id': 1,
                'type': 'UPLOAD'|'PREVIEW',
                'branch': 'master',       # 为空时使用小程序配置的分支
                'version': '1.0.1',
                'description': '...',
                'operator': 'alice',
                'priority': 2,            # 1-3
                'trigger_type': 'MANUAL',
                'commit_id': 'abc123'
            }
            user: 当前用户，为 None 时表示系统内部调用（如 Webhook）

        Returns:
            BuildTask: 创建的任务
        """
        miniprogram = MiniprogramService.get_or_raise(data.get('app_id'))
        MiniprogramService.check_access(miniprogram, user)

        build_type = data.get('type')
        if build_type not in BuildType.ALL:
            raise ValidationError(f'不支持的构建类型: {build_type}')

        try:
            priority = int(data.get('priority') or 2)
        except (TypeError, ValueError):
            raise ValidationError('优先级必须是整数') from None
        if priority not in (1, 2, 3):
            raise ValidationError('优先级取值范围为 1-3')

        trigger_type = data.get('trigger_type') or TriggerType.MANUAL
        if trigger_type not in TriggerType.ALL:
            raise ValidationError(f'不支持的触发方式: {trigger_type}')

        version = data.get('version') or miniprogram.version
        if not version:
            raise ValidationError('版本号不能为空')

        branch = data.get('branch') or (miniprogram.config.git_branch if miniprogram.config else None) or 'master'
        self._check_source(miniprogram)

        with self.queue.admission_lock:
            self.queue.check_capacity()
            if self.store.find_active(miniprogram.id, build_type):
                raise DuplicateActiveTask(f'小程序 {miniprogram.name} 已有进行中的 {build_type} 任务')

            task = self.store.create(
                app_id=miniprogram.id,
                user_id=user.id if user else miniprogram.user_id,
                type=build_type,
                priority=priority,
                branch=branch,
                commit_id=data.get('commit_id'),
                version=version,
                description=data.get('description'),
                operator=data.get('operator') or (user.nickname or user.username if user else None),
                trigger_type=trigger_type,
            )
            self.queue.submit(task.id, priority=priority)

        self.store.append_log(task.id, f'任务已创建，等待执行（分支: {branch}，版本: {version}）')
        return task

    def get_task(self, task_id, user=None):
        task = self.store.get_or_raise(task_id)
        self._check_task_access(task, user)
        return task

    def cancel_task(self, task_id, user=None):
        """取消任务：等待中的任务直接出队，运行中的任务在当前步骤结束后停止"""
        task = self.get_task(task_id, user)
        if not task.is_active:
            raise InvalidState(f'任务已结束，无法取消: {task.status}')

        self.queue.cancel(task_id)
        if not self.store.transition(task_id, TaskStatus.CANCELLED, from_statuses=TaskStatus.ACTIVE):
            raise InvalidState(f'任务已结束，无法取消: {self.store.get_status(task_id)}')

        self.store.append_log(task_id, '任务已取消', level='warn')
        logger.info(f"任务已取消: task_id={task_id}")
        return self.store.get(task_id)

    def retry_task(self, task_id, user=None):
        """重试失败的任务，重新入队且只投递一次"""
        task = self.get_task(task_id, user)
        if task.status != TaskStatus.FAILED:
            raise InvalidState(f'只能重试失败的任务，当前状态: {task.status}')
        if (task.retry_count or 0) >= self.max_retries:
            raise RetryLimitExceeded(f'重试次数已达上限（{self.max_retries}次）')
        self._check_source(MiniprogramService.get_or_raise(task.app_id))

        with self.queue.admission_lock:
            self.queue.check_capacity()
            if self.store.find_active(task.app_id, task.type):
                raise DuplicateActiveTask('该小程序已有相同类型的构建任务在进行中')
            if not self.store.reset_for_retry(task_id, self.max_retries):
                raise InvalidState('任务状态已变化，无法重试')
            self.queue.submit(task_id, priority=task.priority, attempts=1)

        task = self.store.get(task_id)
        self.store.append_log(task_id, f'任务重试（第 {task.retry_count} 次）')
        logger.info(f"任务已重新入队: task_id={task_id}, retry_count={task.retry_count}")
        return task

    def list_tasks(self, user=None, **filters):
        if user is not None and not user.is_admin:
            filters['user_id'] = user.id
        return self.store.list_tasks(**filters)

    def get_statistics(self, user=None, app_id=None):
        user_id = user.id if user is not None and not user.is_admin else None
        return self.store.statistics(user_id=user_id, app_id=app_id)

    def get_queue_status(self):
        return self.queue.status()

    def cleanup_expired_tasks(self, days=None):
        return self.store.delete_expired(days or self.retention_days)

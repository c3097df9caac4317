"""构建流水线"""
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import OperationalError

from minibuild import db
from minibuild.errors import (
    AppNotFound, BuildStageError, MinibuildError, PrivateKeyMissing
)
from minibuild.models.build_task import BuildType, TaskStatus
from minibuild.models.miniprogram import Miniprogram, ProjectType, QrcodeFormat
from minibuild.services.packaging_service import (
    PREVIEW_SETTINGS, UPLOAD_SETTINGS, PackagingProject, merge_settings
)
from minibuild.services.shell import run_command

logger = logging.getLogger(__name__)


# 构建步骤定义，progress 为进入该步骤时的进度
BUILD_STEPS = [
    {'order': 0, 'name': 'prepare_workspace', 'description': '准备工作目录', 'progress': 10},
    {'order': 1, 'name': 'fetch_source', 'description': '拉取代码', 'progress': 20},
    {'order': 2, 'name': 'install_dependencies', 'description': '安装依赖', 'progress': 40},
    {'order': 3, 'name': 'pack_npm', 'description': '构建npm', 'progress': 50},
    {'order': 4, 'name': 'build_project', 'description': '编译项目', 'progress': 60},
    {'order': 5, 'name': 'publish', 'description': '上传/预览', 'progress': 80},
]

# 上传/预览阶段的进度区间
PUBLISH_PROGRESS_RANGE = (80, 95)

# lock 文件 -> 安装命令
PACKAGE_MANAGERS = [
    ('yarn.lock', ['yarn', 'install']),
    ('pnpm-lock.yaml', ['pnpm', 'install']),
]
DEFAULT_INSTALL_COMMAND = ['npm', 'install']


def is_transient(error):
    """瞬时错误（网络、数据库连接）可由队列按退避策略重新投递"""
    if isinstance(error, MinibuildError):
        return error.transient
    return isinstance(error, OperationalError)


def error_message(error):
    if isinstance(error, MinibuildError):
        return error.message
    return str(error) or type(error).__name__


@dataclass
class BuildContext:
    """单次构建的输入快照（入队后不再读取最新的小程序配置）"""
    task_id: str
    app_id: int
    owner_id: int
    appid: str
    build_type: str
    branch: str
    version: str
    description: str
    private_key_path: Optional[str]
    config: dict = field(default_factory=dict)
    workspace: Optional[str] = None
    source_dir: Optional[str] = None


class BuildExecutor:
    """构建任务执行器

    按 BUILD_STEPS 顺序执行各步骤，步骤之间检查取消标记；
    无论成功失败都会清理工作目录。
    """

    def __init__(self, task_id, store, credentials, fetcher, packaging, settings):
        self.task_id = task_id
        self.store = store
        self.credentials = credentials
        self.fetcher = fetcher
        self.packaging = packaging
        self.settings = settings
        self.context = None
        self.result = None

    def _log(self, message, level='info'):
        self.store.append_log(self.task_id, message, level)

    def run(self, final_attempt=True):
        """执行构建

        Args:
            final_attempt: 是否为最后一次投递；非最后一次时瞬时错误不标记失败

        Returns:
            dict: 构建结果；任务已取消或已结束时返回 None
        """
        if not self.store.transition(self.task_id, TaskStatus.RUNNING, from_statuses=TaskStatus.ACTIVE):
            logger.info(f"任务无需执行: task_id={self.task_id}, status={self.store.get_status(self.task_id)}")
            return None

        logger.info(f"开始执行构建: task_id={self.task_id}")
        self._log('开始构建任务')

        error = None
        cancelled = False
        try:
            self.context = self._load_context()
            for step in BUILD_STEPS:
                if self._is_cancelled():
                    cancelled = True
                    break
                self._execute_step(step)
        except Exception as e:
            error = e
        finally:
            self._cleanup_workspace()

        if error is not None:
            self._handle_failure(error, final_attempt)
            raise error

        if cancelled:
            self._log('任务已取消，停止后续步骤', level='warn')
            logger.info(f"构建已取消: task_id={self.task_id}")
            return None

        if self.store.transition(self.task_id, TaskStatus.SUCCESS, from_statuses=(TaskStatus.RUNNING,),
                                 progress=100, result=self.result):
            self._log('构建完成')
            logger.info(f"构建成功: task_id={self.task_id}")
        return self.result

    def _load_context(self):
        task = self.store.get_or_raise(self.task_id)
        miniprogram = db.session.get(Miniprogram, task.app_id)
        if not miniprogram:
            raise AppNotFound(f'小程序不存在: {task.app_id}')
        if not miniprogram.config:
            raise BuildStageError('小程序未配置构建信息')

        return BuildContext(
            task_id=task.id,
            app_id=miniprogram.id,
            owner_id=miniprogram.user_id,
            appid=miniprogram.appid,
            build_type=task.type,
            branch=task.branch,
            version=task.version,
            description=task.description or f'{task.type} {task.version}',
            private_key_path=miniprogram.private_key_path,
            config=miniprogram.config.to_dict(),
        )

    def _is_cancelled(self):
        return self.store.get_status(self.task_id) == TaskStatus.CANCELLED

    def _execute_step(self, step):
        """执行单个步骤"""
        description = step['description']
        self._log(f"[{step['order'] + 1}/{len(BUILD_STEPS)}] {description}")
        self.store.update_progress(self.task_id, step['progress'], description)

        handler = getattr(self, f"_step_{step['order']}_{step['name']}")
        try:
            skipped = handler()
        except Exception as e:
            logger.error(f"步骤执行失败: task_id={self.task_id}, step={step['name']}, error={error_message(e)}")
            self._log(f'{description}失败: {error_message(e)}', level='error')
            raise

        if skipped:
            self._log(f'跳过{description}: {skipped}')
        else:
            self._log(f'{description}完成')

    def _handle_failure(self, error, final_attempt):
        message = error_message(error)
        if is_transient(error) and not final_attempt:
            self._log(f'构建遇到可重试错误: {message}', level='warn')
            return

        if not isinstance(error, MinibuildError):
            logger.error(f"构建异常: task_id={self.task_id}, error={error}", exc_info=error)
        if self.store.transition(self.task_id, TaskStatus.FAILED, from_statuses=(TaskStatus.RUNNING,),
                                 error_message=message):
            self._log(f'构建失败: {message}', level='error')

    def _cleanup_workspace(self):
        workspace = self.context.workspace if self.context else None
        if not workspace or not os.path.exists(workspace):
            return
        try:
            shutil.rmtree(workspace)
            self._log('已清理工作目录')
        except OSError as e:
            logger.error(f"清理工作目录失败: {workspace}, error={e}")
            self._log(f'清理工作目录失败: {e}', level='warn')

    # ==================== 辅助方法 ====================

    @property
    def _miniprogram_dir(self):
        output_dir = self.context.config.get('output_dir')
        if output_dir:
            return os.path.join(self.context.source_dir, output_dir)
        return self.context.source_dir

    def _packaging_project(self):
        key_path = self.context.private_key_path
        if not key_path or not os.path.isfile(key_path):
            raise PrivateKeyMissing(f'私钥文件不存在: {key_path or "未配置"}')
        if not os.access(key_path, os.R_OK):
            raise PrivateKeyMissing(f'私钥文件不可读: {key_path}')

        project_path = self._miniprogram_dir
        if not os.path.isdir(project_path):
            raise BuildStageError(f'小程序目录不存在: {project_path}')

        return PackagingProject(
            appid=self.context.appid,
            project_path=project_path,
            private_key_path=key_path,
        )

    def _run(self, command, timeout, shell=False):
        try:
            result = run_command(
                command,
                cwd=self.context.source_dir,
                timeout=timeout,
                on_line=self._log,
                shell=shell,
            )
        except FileNotFoundError as e:
            raise BuildStageError(f'命令不存在: {e.filename}') from None
        return result

    def _report_publish_progress(self, percent):
        low, high = PUBLISH_PROGRESS_RANGE
        self.store.update_progress(self.task_id, low + (high - low) * percent // 100)

    # ==================== 步骤实现 ====================

    def _step_0_prepare_workspace(self):
        """步骤0: 创建独立的工作目录"""
        workspace = os.path.join(self.settings['workspace'], self.task_id)
        if os.path.exists(workspace):
            shutil.rmtree(workspace)
        os.makedirs(workspace)
        self.context.workspace = workspace
        self.context.source_dir = os.path.join(workspace, 'source')

    def _step_1_fetch_source(self):
        """步骤1: 浅克隆入队时指定的分支"""
        git_url = self.context.config.get('git_url')
        if not git_url:
            raise BuildStageError('未配置Git仓库地址')

        credential = None
        credential_id = self.context.config.get('git_credential_id')
        if credential_id:
            credential = self.credentials.resolve(credential_id, self.context.owner_id)

        commit_id = self.fetcher.clone_branch(
            git_url, self.context.branch, credential, self.context.source_dir
        )
        self.store.set_commit_id(self.task_id, commit_id)
        self._log(f'检出 {self.context.branch}@{commit_id[:8]}')

    def _step_2_install_dependencies(self):
        """步骤2: 按 lock 文件选择包管理器安装依赖"""
        source_dir = self.context.source_dir
        if not os.path.exists(os.path.join(source_dir, 'package.json')):
            return '未找到 package.json'

        command = DEFAULT_INSTALL_COMMAND
        for lock_file, candidate in PACKAGE_MANAGERS:
            if os.path.exists(os.path.join(source_dir, lock_file)):
                command = candidate
                break

        self._log(f"执行: {' '.join(command)}")
        result = self._run(command, timeout=self.settings['install_timeout'])
        if not result.ok:
            raise BuildStageError(f'依赖安装失败:\n{result.tail()}')

    def _step_3_pack_npm(self):
        """步骤3: 原生项目构建 npm"""
        config = self.context.config
        if config.get('project_type') != ProjectType.NATIVE or not config.get('pack_npm'):
            return '未开启npm构建'

        warnings = self.packaging.pack_npm(self._packaging_project())
        for warning in warnings:
            self._log(
                f"[{warning.get('code')}] {warning.get('js_path')}:{warning.get('start_line')} "
                f"{warning.get('msg')}",
                level='warn',
            )

    def _step_4_build_project(self):
        """步骤4: 执行配置的构建命令"""
        config = self.context.config
        build_command = (config.get('build_command') or '').strip()
        if config.get('project_type') == ProjectType.NATIVE:
            return '原生项目无需编译'
        if not build_command:
            return '未配置构建命令'

        self._log(f'执行: {build_command}')
        result = self._run(build_command, timeout=self.settings['build_timeout'], shell=True)
        if not result.ok:
            raise BuildStageError(f'项目构建失败:\n{result.tail()}')

    def _step_5_publish(self):
        """步骤5: 上传代码或生成预览二维码"""
        project = self._packaging_project()
        config = self.context.config

        if self.context.build_type == BuildType.UPLOAD:
            info = self.packaging.upload(
                project,
                self.context.version,
                self.context.description,
                merge_settings(UPLOAD_SETTINGS, config.get('upload_config')),
                on_progress=self._report_publish_progress,
            )
            self.result = {'package_size': info.get('package_size', [])}
            self._log(f'上传成功: 版本 {self.context.version}')
            return None

        use_base64 = config.get('qrcode_format') == QrcodeFormat.BASE64
        qrcode_dest = os.path.join(
            self.context.workspace, 'preview.txt' if use_base64 else 'preview.jpg'
        )
        info = self.packaging.preview(
            project,
            self.context.description,
            merge_settings(PREVIEW_SETTINGS, config.get('preview_config')),
            'base64' if use_base64 else 'image',
            qrcode_dest,
            on_progress=self._report_publish_progress,
        )
        if not os.path.exists(qrcode_dest):
            raise BuildStageError('未生成预览二维码')

        self.result = {'package_size': info.get('package_size', [])}
        if use_base64:
            with open(qrcode_dest, 'r', encoding='utf-8') as f:
                self.result['qrcode_base64'] = f.read().strip()
        else:
            # 工作目录会被清理，二维码需要转存
            preview_dir = self.settings['preview_dir']
            os.makedirs(preview_dir, exist_ok=True)
            qrcode_path = os.path.join(preview_dir, f'{self.task_id}.jpg')
            shutil.copyfile(qrcode_dest, qrcode_path)
            self.result['qrcode_url'] = qrcode_path
        self._log('预览二维码已生成')
        return None

import logging

import click
from flask import Flask, current_app, jsonify
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def get_services():
    """当前应用的服务集合"""
    return current_app.extensions['minibuild']


def create_app(config_object='config.Config'):
    """应用工厂函数"""
    app = Flask(__name__)

    # 加载配置
    app.config.from_object(config_object)
    app.json.ensure_ascii = False  # 支持中文

    # 初始化数据库与推送通道
    db.init_app(app)
    socketio.init_app(app, async_mode='threading', cors_allowed_origins='*')

    from minibuild import models  # noqa: F401  注册模型
    app.extensions['minibuild'] = _build_services(app)

    # 注册路由
    from minibuild.routes.build import build_bp
    from minibuild.routes.git import git_bp
    from minibuild.routes.webhook import webhook_bp
    from minibuild.routes.socket import register_socket_handlers
    app.register_blueprint(build_bp)
    app.register_blueprint(git_bp)
    app.register_blueprint(webhook_bp)
    register_socket_handlers(socketio)

    _register_error_handlers(app)
    _register_commands(app)

    # 创建数据库表
    with app.app_context():
        db.create_all()

        # 恢复未完成的任务
        _recover_tasks(app)

    if app.config['BUILD_QUEUE_AUTOSTART']:
        app.extensions['minibuild'].queue.start()

    return app


def _build_services(app):
    from minibuild.services import ServiceRegistry
    from minibuild.services.broadcaster import ProgressBroadcaster
    from minibuild.services.build_queue import BuildQueue
    from minibuild.services.build_task_service import BuildTaskService
    from minibuild.services.credential_service import CredentialResolver
    from minibuild.services.encryption_service import EncryptionService
    from minibuild.services.git_service import RepositoryFetcher
    from minibuild.services.packaging_service import MiniprogramCiAdapter
    from minibuild.services.task_store import TaskStore
    from minibuild.services.webhook_service import WebhookService

    config = app.config
    encryption = EncryptionService(config['ENCRYPTION_KEY'])
    broadcaster = ProgressBroadcaster(socketio)
    store = TaskStore(broadcaster)
    queue = BuildQueue(
        app,
        store=store,
        max_size=config['BUILD_QUEUE_SIZE'],
        concurrency=config['MAX_CONCURRENT_BUILDS'],
        default_attempts=config['BUILD_JOB_ATTEMPTS'],
        backoff=config['BUILD_RETRY_BACKOFF'],
    )
    credentials = CredentialResolver(encryption)
    fetcher = RepositoryFetcher(clone_timeout=config['CLONE_TIMEOUT'])
    tasks = BuildTaskService(
        store, queue, fetcher, credentials,
        max_retries=config['MAX_TASK_RETRIES'],
        retention_days=config['TASK_RETENTION_DAYS'],
    )

    services = ServiceRegistry(
        encryption=encryption,
        credentials=credentials,
        fetcher=fetcher,
        packaging=MiniprogramCiAdapter(config['MINIPROGRAM_CI_BIN'], timeout=config['BUILD_TIMEOUT']),
        broadcaster=broadcaster,
        store=store,
        queue=queue,
        tasks=tasks,
        webhooks=WebhookService(tasks),
        build_settings={
            'workspace': config['BUILD_WORKSPACE'],
            'preview_dir': config['PREVIEW_DIR'],
            'install_timeout': config['INSTALL_TIMEOUT'],
            'build_timeout': config['BUILD_TIMEOUT'],
        },
    )
    queue.executor_factory = services.create_executor
    return services


def _register_error_handlers(app):
    from minibuild.errors import MinibuildError

    @app.errorhandler(MinibuildError)
    def handle_minibuild_error(error):
        if error.status_code >= 500:
            logger.error(f"请求处理失败: {error.code} {error.message}")
        return jsonify(error.to_dict()), error.status_code


def _register_commands(app):

    @app.cli.command('cleanup-tasks')
    @click.option('--days', type=int, default=None, help='保留天数，默认使用 TASK_RETENTION_DAYS')
    def cleanup_tasks(days):
        """删除超过保留期的已结束构建任务"""
        count = get_services().tasks.cleanup_expired_tasks(days)
        click.echo(f'已清理 {count} 个过期任务')


def _recover_tasks(app):
    """恢复未完成的任务（应用重启后）"""
    try:
        app.extensions['minibuild'].queue.recover()
    except Exception as e:
        logger.exception(f"恢复任务时出错: {e}")

import os
from dotenv import load_dotenv

# 加载 .env 文件
load_dotenv()


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, '') else default


def _env_float(name, default):
    value = os.getenv(name)
    return float(value) if value not in (None, '') else default


def _env_bool(name, default):
    value = os.getenv(name)
    if value in (None, ''):
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """应用配置类"""
    # 数据库配置
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'mysql+pymysql://root@localhost:3306/minibuild'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # 安全配置
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    JWT_SECRET = os.getenv('JWT_SECRET') or SECRET_KEY
    JWT_EXPIRES_HOURS = _env_int('JWT_EXPIRES_HOURS', 168)

    # 凭证加密密钥（base64 编码的 32 字节密钥，或任意口令）
    ENCRYPTION_KEY = os.getenv('ENCRYPTION_KEY', 'default-encryption-key-change-in-production')

    # 构建配置
    BUILD_WORKSPACE = os.getenv('BUILD_WORKSPACE', '/tmp/build')
    PREVIEW_DIR = os.getenv('PREVIEW_DIR', './uploads/previews')
    CLONE_TIMEOUT = _env_int('CLONE_TIMEOUT', 300)  # 秒
    INSTALL_TIMEOUT = _env_int('INSTALL_TIMEOUT', 600)
    BUILD_TIMEOUT = _env_int('BUILD_TIMEOUT', 1800)
    MINIPROGRAM_CI_BIN = os.getenv('MINIPROGRAM_CI_BIN', 'miniprogram-ci')

    # 队列配置
    MAX_CONCURRENT_BUILDS = _env_int('MAX_CONCURRENT_BUILDS', 3)
    BUILD_QUEUE_SIZE = _env_int('BUILD_QUEUE_SIZE', 200)
    BUILD_JOB_ATTEMPTS = _env_int('BUILD_JOB_ATTEMPTS', 3)
    BUILD_RETRY_BACKOFF = _env_float('BUILD_RETRY_BACKOFF', 2)  # 秒，指数退避基数
    BUILD_QUEUE_AUTOSTART = _env_bool('BUILD_QUEUE_AUTOSTART', True)
    MAX_TASK_RETRIES = _env_int('MAX_TASK_RETRIES', 3)
    TASK_RETENTION_DAYS = _env_int('TASK_RETENTION_DAYS', 30)

    # Webhook 地址前缀
    APP_URL = os.getenv('APP_URL', 'http://localhost:5000')

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

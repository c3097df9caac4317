"""小程序配置服务"""
import logging
import re

from minibuild import db
from minibuild.errors import AppNotFound, Unauthorized
from minibuild.models.miniprogram import Miniprogram

logger = logging.getLogger(__name__)

_VERSION_PATTERN = re.compile(r'^(\d+)\.(\d+)\.(\d+)$')


class MiniprogramService:

    @staticmethod
    def get(app_id):
        try:
            app_id = int(app_id)
        except (TypeError, ValueError):
            return None
        return db.session.get(Miniprogram, app_id)

    @staticmethod
    def get_or_raise(app_id):
        miniprogram = MiniprogramService.get(app_id)
        if not miniprogram:
            raise AppNotFound(f'小程序不存在: {app_id}')
        return miniprogram

    @staticmethod
    def check_access(miniprogram, user):
        """所有者或管理员才能操作"""
        if user is None or user.is_admin or miniprogram.user_id == user.id:
            return
        raise Unauthorized('无权操作该小程序')

    @staticmethod
    def next_version(miniprogram):
        """计算本次构建使用的版本号，开启自动版本时递增补丁号（x.y.z -> x.y.z+1），不写库"""
        current = miniprogram.version or '1.0.0'
        if not miniprogram.config or not miniprogram.config.auto_version:
            return current

        match = _VERSION_PATTERN.match(current)
        if not match:
            logger.warning(f"版本号格式无法自动递增: app_id={miniprogram.id}, version={current}")
            return current

        major, minor, patch = match.groups()
        return f'{major}.{minor}.{int(patch) + 1}'

    @staticmethod
    def save_version(miniprogram, version):
        if miniprogram.version == version:
            return
        current = miniprogram.version
        miniprogram.version = version
        db.session.commit()
        logger.info(f"版本号自动递增: app_id={miniprogram.id}, {current} -> {version}")

    @staticmethod
    def auto_increment_version(app_id):
        """递增并保存版本号，返回本次使用的版本号"""
        miniprogram = MiniprogramService.get_or_raise(app_id)
        version = MiniprogramService.next_version(miniprogram)
        MiniprogramService.save_version(miniprogram, version)
        return version

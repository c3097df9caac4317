"""小程序打包上传服务

构建流水线只依赖 PackagingService 的三个方法，
默认实现 MiniprogramCiAdapter 通过 miniprogram-ci 命令行完成上传/预览。
"""
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import List

from minibuild.errors import BuildStageError
from minibuild.services.shell import run_command

logger = logging.getLogger(__name__)

# 默认编译设置
UPLOAD_SETTINGS = {
    'es6': True,
    'es7': True,
    'minify': True,
    'codeProtect': False,
    'autoPrefixWXSS': True,
}

PREVIEW_SETTINGS = {
    'es6': True,
    'es7': True,
    'minify': False,
    'codeProtect': False,
    'autoPrefixWXSS': True,
}

# 编译设置 -> 命令行参数
SETTING_FLAGS = {
    'es6': '--enable-es6',
    'es7': '--enable-es7',
    'minify': '--enable-minify',
    'minifyJS': '--enable-minifyJS',
    'minifyWXML': '--enable-minifyWXML',
    'minifyWXSS': '--enable-minifyWXSS',
    'codeProtect': '--enable-code-protect',
    'autoPrefixWXSS': '--enable-autoprefixwxss',
}

_PROGRESS_PATTERN = re.compile(r'(\d{1,3})%')
_WARNING_LOCATION = re.compile(r'(?P<path>[\w./@-]+\.js):(?P<line>\d+)')


@dataclass
class PackagingProject:
    """待打包的小程序项目"""
    appid: str
    project_path: str
    private_key_path: str
    type: str = 'miniProgram'
    ignores: List[str] = field(default_factory=lambda: ['node_modules/**/*'])


def merge_settings(defaults, overrides):
    settings = dict(defaults)
    settings.update(overrides or {})
    return settings


class PackagingService:
    """打包服务接口"""

    def upload(self, project, version, description, settings, on_progress=None, robot=1):
        """上传代码

        Returns:
            dict: {'package_size': [{'name', 'size'}]}
        """
        raise NotImplementedError

    def preview(self, project, description, settings, qrcode_format, qrcode_dest,
                on_progress=None, robot=1):
        """生成预览二维码，写入 qrcode_dest

        Returns:
            dict: {'qrcode_path': str, 'package_size': [...]}
        """
        raise NotImplementedError

    def pack_npm(self, project):
        """构建 npm 包

        Returns:
            list: 警告列表 [{'code', 'msg', 'js_path', 'start_line'}]
        """
        raise NotImplementedError


class MiniprogramCiAdapter(PackagingService):
    """miniprogram-ci 命令行适配器"""

    def __init__(self, binary='miniprogram-ci', timeout=1800):
        self.binary = binary
        self.timeout = timeout

    def _base_args(self, action, project):
        return [
            self.binary, action,
            '--pp', project.project_path,
            '--pkp', project.private_key_path,
            '--appid', project.appid,
        ]

    @staticmethod
    def _setting_args(settings):
        args = []
        for key, flag in SETTING_FLAGS.items():
            if key in settings:
                args.extend([flag, 'true' if settings[key] else 'false'])
        return args

    def _run(self, args, on_progress=None, on_line=None):
        def _handle_line(line):
            if on_line:
                on_line(line)
            match = _PROGRESS_PATTERN.search(line)
            if match and on_progress:
                on_progress(min(int(match.group(1)), 100))

        try:
            result = run_command(args, cwd=None, timeout=self.timeout, on_line=_handle_line)
        except FileNotFoundError:
            raise BuildStageError(f'未找到打包工具: {self.binary}') from None

        if not result.ok:
            raise BuildStageError(f'{args[1]} 执行失败:\n{result.tail()}')
        return result

    @staticmethod
    def _read_info(info_path):
        if not os.path.exists(info_path):
            return {}
        with open(info_path, 'r', encoding='utf-8') as f:
            try:
                return json.load(f)
            except ValueError:
                logger.warning(f"无法解析打包结果: {info_path}")
                return {}

    def upload(self, project, version, description, settings, on_progress=None, robot=1):
        with tempfile.TemporaryDirectory(prefix='mp-ci-') as tmp:
            info_path = os.path.join(tmp, 'upload-info.json')
            args = self._base_args('upload', project) + [
                '--uv', version,
                '--ud', description or '',
                '-r', str(robot),
                '--info-output', info_path,
            ] + self._setting_args(settings)
            self._run(args, on_progress=on_progress)
            info = self._read_info(info_path)
        return {'package_size': info.get('subPackageInfo', [])}

    def preview(self, project, description, settings, qrcode_format, qrcode_dest,
                on_progress=None, robot=1):
        with tempfile.TemporaryDirectory(prefix='mp-ci-') as tmp:
            info_path = os.path.join(tmp, 'preview-info.json')
            args = self._base_args('preview', project) + [
                '--ud', description or '',
                '-r', str(robot),
                '--qrcode-format', qrcode_format,
                '--qrcode-output-dest', qrcode_dest,
                '--info-output', info_path,
            ] + self._setting_args(settings)
            self._run(args, on_progress=on_progress)
            info = self._read_info(info_path)
        return {
            'qrcode_path': qrcode_dest,
            'package_size': info.get('subPackageInfo', []),
        }

    def pack_npm(self, project):
        warnings = []

        def _collect(line):
            if 'warn' not in line.lower():
                return
            location = _WARNING_LOCATION.search(line)
            warnings.append({
                'code': 'PACK_NPM_WARNING',
                'msg': line.strip(),
                'js_path': location.group('path') if location else '',
                'start_line': int(location.group('line')) if location else 0,
            })

        args = self._base_args('pack-npm', project)
        self._run(args, on_line=_collect)
        return warnings

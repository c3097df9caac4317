"""Git仓库拉取服务"""
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from git import Repo, GitCommandError
from git.cmd import Git

from minibuild.errors import (
    AuthenticationFailed, InvalidUrl, NetworkError, RepositoryNotFound, StageTimeout
)
from minibuild.models.git_credential import AuthType

logger = logging.getLogger(__name__)

_CREDENTIAL_IN_URL = re.compile(r'(https?://)[^/@\s]+@')


def mask_credentials(text):
    """隐藏URL中的用户名/密码/Token"""
    if not text:
        return text
    return _CREDENTIAL_IN_URL.sub(r'\1***@', str(text))


@dataclass
class GitTransport:
    """单次Git操作使用的远程地址与环境变量"""
    url: str
    env: dict = field(default_factory=dict)
    key_file: Optional[str] = None


class RepositoryFetcher:
    """仓库拉取与分支查询

    认证信息只存在于单次操作返回的 GitTransport 中，
    SSH 私钥写入临时目录，操作结束后立即删除。
    """

    URL_PATTERN = re.compile(r'^(https?://|git@|ssh://)')

    # stderr 关键字 -> 错误类型
    AUTH_ERROR_MARKERS = (
        'authentication failed',
        'could not read username',
        'could not read password',
        'invalid username or password',
        'permission denied (publickey',
        'http basic: access denied',
        'the requested url returned error: 401',
        'the requested url returned error: 403',
    )
    NOT_FOUND_MARKERS = (
        'not found',
        'does not exist',
        'could not find remote branch',
        "couldn't find remote ref",
        'does not appear to be a git repository',
    )
    TIMEOUT_MARKER = 'did not complete in'

    def __init__(self, clone_timeout=300):
        self.clone_timeout = clone_timeout

    def validate_url(self, repository_url):
        if not repository_url or not self.URL_PATTERN.match(repository_url):
            raise InvalidUrl(f'无效的Git仓库地址: {mask_credentials(repository_url)}')

    @staticmethod
    def _is_gitlab(hostname):
        return bool(hostname) and 'gitlab' in hostname.lower()

    def _authenticated_url(self, repository_url, credential):
        """把 HTTPS 用户名密码或 Token 写入URL的用户信息部分"""
        if credential is None or not repository_url.startswith(('http://', 'https://')):
            return repository_url

        parts = urlsplit(repository_url)
        host = parts.hostname or ''
        if parts.port:
            host = f'{host}:{parts.port}'

        if credential.auth_type == AuthType.HTTPS:
            userinfo = f"{quote(credential.username, safe='')}:{quote(credential.password, safe='')}"
        elif credential.auth_type == AuthType.TOKEN:
            if self._is_gitlab(parts.hostname):
                userinfo = f"oauth2:{quote(credential.token, safe='')}"
            else:
                userinfo = f"{quote(credential.token, safe='')}:x-oauth-basic"
        else:
            return repository_url

        return urlunsplit((parts.scheme, f'{userinfo}@{host}', parts.path, parts.query, parts.fragment))

    @contextmanager
    def transport(self, repository_url, credential=None):
        """准备一次Git操作的认证环境，退出时清理临时文件"""
        scratch_dir = tempfile.mkdtemp(prefix='git-auth-')
        try:
            env = os.environ.copy()
            # 禁止交互式输入用户名密码，避免进程挂起
            env['GIT_TERMINAL_PROMPT'] = '0'
            key_file = None

            if credential is not None and credential.auth_type == AuthType.SSH:
                key_file = os.path.join(scratch_dir, 'id_key')
                fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, 'w') as f:
                    key = credential.ssh_key
                    f.write(key if key.endswith('\n') else key + '\n')
                env['GIT_SSH_COMMAND'] = (
                    f'ssh -i {key_file} -o StrictHostKeyChecking=no -o IdentitiesOnly=yes'
                )

            yield GitTransport(
                url=self._authenticated_url(repository_url, credential),
                env=env,
                key_file=key_file,
            )
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

    def classify_error(self, error):
        """把 GitCommandError 转换为业务异常"""
        detail = mask_credentials(f'{error.stderr or ""} {error.stdout or ""}'.strip() or str(error))
        lowered = detail.lower()

        if self.TIMEOUT_MARKER in lowered:
            return StageTimeout(f'Git操作超时（{self.clone_timeout}秒）')
        if any(marker in lowered for marker in self.AUTH_ERROR_MARKERS):
            return AuthenticationFailed(f'Git认证失败: {detail}')
        if any(marker in lowered for marker in self.NOT_FOUND_MARKERS):
            return RepositoryNotFound(f'仓库或分支不存在: {detail}')
        return NetworkError(f'Git操作失败: {detail}')

    def clone_branch(self, repository_url, branch, credential, target_dir):
        """浅克隆指定分支

        Args:
            repository_url: 仓库地址
            branch: 分支名（入队时确定，不读取当前配置）
            credential: CredentialView 或 None
            target_dir: 目标目录，已存在时先删除

        Returns:
            str: 检出的 commit hash
        """
        self.validate_url(repository_url)

        if os.path.exists(target_dir):
            shutil.rmtree(target_dir)
        parent_dir = os.path.dirname(os.path.abspath(target_dir))
        os.makedirs(parent_dir, exist_ok=True)

        logger.info(f"克隆仓库: {mask_credentials(repository_url)}，分支: {branch}")
        with self.transport(repository_url, credential) as transport:
            try:
                Git(parent_dir).clone(
                    '--depth', '1', '--single-branch', '--branch', branch,
                    '--', transport.url, target_dir,
                    env=transport.env,
                    kill_after_timeout=self.clone_timeout,
                )
            except GitCommandError as e:
                raise self.classify_error(e) from None

        repo = Repo(target_dir)
        # 不在 .git/config 中保留认证信息
        repo.remotes.origin.set_url(repository_url)
        commit_id = repo.head.commit.hexsha
        logger.info(f"克隆完成: commit={commit_id[:8]}")
        return commit_id

    def list_branches(self, repository_url, credential=None):
        """列出远程分支

        Returns:
            dict: {'branches': [{'name', 'commit'}], 'default_branch': str}
        """
        self.validate_url(repository_url)

        with self.transport(repository_url, credential) as transport:
            try:
                output = Git().ls_remote(
                    '--symref', transport.url,
                    env=transport.env,
                    kill_after_timeout=self.clone_timeout,
                )
            except GitCommandError as e:
                raise self.classify_error(e) from None

        branches = []
        default_branch = None
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith('ref: '):
                target, _, name = line[len('ref: '):].partition('\t')
                if name == 'HEAD' and target.startswith('refs/heads/'):
                    default_branch = target[len('refs/heads/'):]
                continue
            sha, _, ref = line.partition('\t')
            if ref.startswith('refs/heads/'):
                branches.append({'name': ref[len('refs/heads/'):], 'commit': sha})

        if not branches:
            raise RepositoryNotFound('仓库不存在或没有任何分支')

        return {
            'branches': branches,
            'default_branch': default_branch or 'main',
        }

"""Webhook 事件解析与自动构建"""
import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from minibuild import db
from minibuild.errors import (
    CredentialNotFound, DecryptionFailure, DuplicateActiveTask, InvalidCredentials, InvalidUrl,
    QueueFull, SignatureInvalid, ValidationError, WebhookNotFound
)
from minibuild.models.build_task import BuildType, TriggerType
from minibuild.models.webhook import Webhook
from minibuild.services.miniprogram_service import MiniprogramService

logger = logging.getLogger(__name__)

# 各平台事件头
EVENT_HEADERS = {
    'github': 'X-GitHub-Event',
    'gitlab': 'X-Gitlab-Event',
    'gitee': 'X-Gitee-Event',
}
GENERIC_EVENT_HEADER = 'X-Event-Type'
PROVIDER_HEADER = 'X-Git-Provider'

# 平台事件名 -> 统一事件名
EVENT_TYPE_ALIASES = {
    'push': 'push',
    'Push Hook': 'push',
    'pull_request': 'pull_request',
    'merge_request': 'pull_request',
    'Merge Request Hook': 'pull_request',
}

# 入队被拒绝时按"未触发"返回
REJECTED_ERRORS = (
    QueueFull, DuplicateActiveTask, ValidationError, InvalidUrl,
    CredentialNotFound, InvalidCredentials, DecryptionFailure,
)


@dataclass
class CommitInfo:
    id: str
    message: str = ''
    author_name: str = ''
    author_email: str = ''
    timestamp: Optional[str] = None
    url: Optional[str] = None


@dataclass
class PullRequestInfo:
    id: int
    number: int
    title: str
    state: str
    merged: bool
    head_ref: str
    base_ref: str
    user_login: Optional[str] = None


@dataclass
class GitEvent:
    """统一的 Git 事件"""
    event_type: str
    provider: str
    repository: dict
    branch: str
    commits: List[CommitInfo] = field(default_factory=list)
    pusher: Optional[dict] = None
    pull_request: Optional[PullRequestInfo] = None

    @property
    def latest_commit(self):
        return self.commits[-1] if self.commits else None

    def to_dict(self):
        return asdict(self)


def _strip_ref(ref):
    ref = ref or ''
    return ref[len('refs/heads/'):] if ref.startswith('refs/heads/') else ref


def _parse_commits(commits):
    return [
        CommitInfo(
            id=commit['id'],
            message=commit.get('message', ''),
            author_name=(commit.get('author') or {}).get('name', ''),
            author_email=(commit.get('author') or {}).get('email', ''),
            timestamp=commit.get('timestamp'),
            url=commit.get('url'),
        )
        for commit in commits
    ]


def _parse_github(event_type, payload, provider='github'):
    repository = payload['repository']
    repo = {
        'name': repository['name'],
        'url': repository.get('html_url') or repository.get('url'),
        'default_branch': repository.get('default_branch'),
    }
    if event_type == 'push':
        pusher = payload.get('pusher') or {}
        return GitEvent(
            event_type='push',
            provider=provider,
            repository=repo,
            branch=_strip_ref(payload['ref']),
            commits=_parse_commits(payload.get('commits') or []),
            pusher={'name': pusher.get('name'), 'email': pusher.get('email')},
        )
    if event_type == 'pull_request':
        pr = payload['pull_request']
        return GitEvent(
            event_type='pull_request',
            provider=provider,
            repository=repo,
            branch=pr['head']['ref'],
            pull_request=PullRequestInfo(
                id=pr['id'],
                number=pr['number'],
                title=pr.get('title', ''),
                state=pr.get('state', ''),
                merged=bool(pr.get('merged')),
                head_ref=pr['head']['ref'],
                base_ref=pr['base']['ref'],
                user_login=(pr.get('user') or {}).get('login'),
            ),
        )
    return None


def _parse_gitlab(event_type, payload, provider='gitlab'):
    project = payload['project']
    repo = {
        'name': project['name'],
        'url': project.get('web_url'),
        'default_branch': project.get('default_branch'),
    }
    if event_type == 'push':
        return GitEvent(
            event_type='push',
            provider=provider,
            repository=repo,
            branch=_strip_ref(payload['ref']),
            commits=_parse_commits(payload.get('commits') or []),
            pusher={'name': payload.get('user_name'), 'email': payload.get('user_email')},
        )
    if event_type == 'pull_request':
        attrs = payload['object_attributes']
        return GitEvent(
            event_type='pull_request',
            provider=provider,
            repository=repo,
            branch=attrs['source_branch'],
            pull_request=PullRequestInfo(
                id=attrs['id'],
                number=attrs['iid'],
                title=attrs.get('title', ''),
                state=attrs.get('state', ''),
                merged=attrs.get('state') == 'merged',
                head_ref=attrs['source_branch'],
                base_ref=attrs['target_branch'],
                user_login=(payload.get('user') or {}).get('username'),
            ),
        )
    return None


def _parse_gitee(event_type, payload, provider='gitee'):
    # Gitee 的推送/合并请求负载结构与 GitHub 一致
    return _parse_github(event_type, payload, provider=provider)


def _parse_generic(event_type, payload, provider='generic'):
    if not payload.get('repository') or 'commits' not in payload:
        return None
    repository = payload['repository']
    commits = payload['commits'] if isinstance(payload['commits'], list) else []
    return GitEvent(
        event_type=event_type,
        provider=provider,
        repository={
            'name': repository.get('name') or 'unknown',
            'url': repository.get('url') or repository.get('html_url') or '',
            'default_branch': repository.get('default_branch') or 'main',
        },
        branch=_strip_ref(payload.get('ref')) or 'main',
        commits=_parse_commits(commits),
        pusher=payload.get('pusher') or payload.get('user'),
    )


EVENT_PARSERS = {
    'github': _parse_github,
    'gitlab': _parse_gitlab,
    'gitee': _parse_gitee,
    'generic': _parse_generic,
}


def normalize_event_headers(headers, provider=None):
    """从请求头提取统一的 (event_type, provider)"""
    provider = (provider or headers.get(PROVIDER_HEADER) or '').lower() or None
    if provider is None:
        for name, header in EVENT_HEADERS.items():
            if headers.get(header):
                provider = name
                break
    raw_event = headers.get(EVENT_HEADERS.get(provider, ''), '') or headers.get(GENERIC_EVENT_HEADER, '')
    return EVENT_TYPE_ALIASES.get(raw_event, raw_event), provider or 'generic'


def translate_event(provider, event_type, payload):
    """解析平台负载，无法识别时返回 None"""
    parser = EVENT_PARSERS.get(provider, _parse_generic)
    try:
        return parser(event_type, payload or {})
    except (KeyError, TypeError, AttributeError) as e:
        logger.warning(f"解析 {provider} 事件失败: event={event_type}, error={e!r}")
        return None


def _safe_equal(actual, expected):
    return hmac.compare_digest(actual.encode('utf-8'), expected.encode('utf-8'))


def verify_signature(secret, raw_body, headers):
    """校验 Webhook 签名，失败时抛出 SignatureInvalid

    - GitHub/Gitee(签名模式): X-Hub-Signature-256 = sha256=HMAC(secret, body)
    - GitLab: X-Gitlab-Token 与密钥一致
    - Gitee: X-Gitee-Token 为密码，或配合 X-Gitee-Timestamp 的签名
    """
    github_signature = headers.get('X-Hub-Signature-256')
    if github_signature:
        expected = 'sha256=' + hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
        if _safe_equal(github_signature, expected):
            return
        raise SignatureInvalid()

    gitlab_token = headers.get('X-Gitlab-Token')
    if gitlab_token:
        if _safe_equal(gitlab_token, secret):
            return
        raise SignatureInvalid()

    gitee_token = headers.get('X-Gitee-Token')
    if gitee_token:
        timestamp = headers.get('X-Gitee-Timestamp')
        if timestamp:
            digest = hmac.new(secret.encode('utf-8'), f'{timestamp}\n{secret}'.encode('utf-8'),
                              hashlib.sha256).digest()
            expected = base64.b64encode(digest).decode('ascii')
        else:
            expected = secret
        if _safe_equal(gitee_token, expected):
            return
        raise SignatureInvalid()

    raise SignatureInvalid('缺少Webhook签名')


def should_trigger_build(event, miniprogram):
    """判断事件是否触发构建

    Returns:
        tuple: (是否触发, 原因)
    """
    config = miniprogram.config
    if not config:
        return False, '小程序未配置构建信息'
    if not config.auto_build:
        return False, '未开启自动构建'

    configured_branch = config.git_branch or 'master'
    if event.branch != configured_branch:
        return False, f'分支不匹配，配置分支: {configured_branch}，事件分支: {event.branch}'

    if event.event_type == 'push':
        return True, '推送事件触发构建'
    if event.event_type == 'pull_request':
        if event.pull_request and event.pull_request.merged:
            return True, '合并请求已合并，触发构建'
        return False, '合并请求未合并，不触发构建'
    return False, f'不支持的事件类型: {event.event_type}'


def validate_webhook_config(webhook, event_type):
    checks = {
        'webhook_active': webhook.is_active,
        'event_supported': webhook.subscribes(event_type),
        'url_valid': bool(webhook.url),
        'has_valid_events': bool(webhook.events),
    }
    reasons = {
        'webhook_active': 'Webhook 状态不是 ACTIVE',
        'event_supported': f'Webhook 不监听 {event_type} 事件',
        'url_valid': 'Webhook URL 无效',
        'has_valid_events': 'Webhook 未配置监听事件',
    }
    failed = [name for name, passed in checks.items() if not passed]
    return {
        'is_valid': not failed,
        'reason': ', '.join(reasons[name] for name in failed) if failed else '配置验证通过',
        'checks': checks,
    }


class WebhookService:
    """Webhook 事件处理"""

    def __init__(self, task_service):
        self.task_service = task_service

    def handle_git_event(self, app_id, provider, event_type, payload, raw_body, headers):
        """处理 Git 平台推送的事件

        Returns:
            dict: {'triggered': bool, 'message': str, 'task_id': str}
        """
        miniprogram = MiniprogramService.get_or_raise(app_id)

        webhooks = Webhook.query.filter_by(app_id=miniprogram.id, status='ACTIVE').all()
        if not webhooks:
            return {'triggered': False, 'message': '未配置可用的Webhook'}

        webhook = next((item for item in webhooks if item.subscribes(event_type)), None)
        if webhook is None:
            return {'triggered': False, 'message': f'Webhook未订阅 {event_type} 事件'}

        if webhook.secret:
            verify_signature(webhook.secret, raw_body, headers)

        event = translate_event(provider, event_type, payload)
        if event is None:
            logger.info(f"忽略无法识别的事件: app_id={app_id}, provider={provider}, event={event_type}")
            return {'triggered': False, 'message': '无法识别的事件'}

        webhook.last_trigger = datetime.utcnow()
        db.session.commit()

        should, reason = should_trigger_build(event, miniprogram)
        logger.info(f"Webhook事件: app_id={app_id}, event={event.event_type}, branch={event.branch}, "
                    f"触发={should}, 原因={reason}")
        if not should:
            return {'triggered': False, 'message': reason}

        try:
            task = self._create_build(miniprogram, event)
        except REJECTED_ERRORS as e:
            logger.warning(f"Webhook触发构建被拒绝: app_id={app_id}, reason={e.message}")
            return {'triggered': False, 'message': e.message}

        return {'triggered': True, 'task_id': task.id, 'message': reason}

    def _create_build(self, miniprogram, event):
        commit = event.latest_commit
        if commit:
            description = commit.message.strip() or f'Webhook触发: {event.event_type}'
            operator = commit.author_name
        elif event.pull_request:
            description = f'合并请求 #{event.pull_request.number}: {event.pull_request.title}'
            operator = event.pull_request.user_login
        else:
            description = f'Webhook触发: {event.event_type}'
            operator = None
        if not operator and event.pusher:
            operator = event.pusher.get('name')

        version = MiniprogramService.next_version(miniprogram)
        task = self.task_service.create_task({
            'app_id': miniprogram.id,
            'type': BuildType.PREVIEW,
            'branch': event.branch,
            'commit_id': commit.id if commit else None,
            'version': version,
            'description': description[:500],
            'operator': operator or 'webhook',
            'trigger_type': TriggerType.WEBHOOK,
        })
        # 入队成功后才保存递增的版本号
        MiniprogramService.save_version(miniprogram, version)
        return task

    @staticmethod
    def generate_webhook_config(app_id, user, base_url):
        """生成 Webhook 密钥与各平台回调地址"""
        miniprogram = MiniprogramService.get_or_raise(app_id)
        MiniprogramService.check_access(miniprogram, user)

        base_url = base_url.rstrip('/')
        return {
            'url': f'{base_url}/webhooks/events/{app_id}',
            'secret': secrets.token_hex(32),
            'github_url': f'{base_url}/webhooks/github/{app_id}',
            'gitlab_url': f'{base_url}/webhooks/gitlab/{app_id}',
            'gitee_url': f'{base_url}/webhooks/gitee/{app_id}',
        }

    @staticmethod
    def test_webhook(webhook_id, user):
        """用模拟的推送事件检查配置，不会创建构建任务"""
        webhook = db.session.get(Webhook, webhook_id)
        if not webhook:
            raise WebhookNotFound(f'Webhook不存在: {webhook_id}')
        miniprogram = MiniprogramService.get_or_raise(webhook.app_id)
        MiniprogramService.check_access(miniprogram, user)

        config = miniprogram.config
        branch = (config.git_branch if config else None) or 'main'
        repo_url = (config.git_url if config else None) or 'https://github.com/test/test-repo'
        commit_id = f'test-commit-{int(datetime.utcnow().timestamp())}'
        event = GitEvent(
            event_type='push',
            provider='test',
            repository={'name': miniprogram.name, 'url': repo_url, 'default_branch': branch},
            branch=branch,
            commits=[CommitInfo(
                id=commit_id,
                message='Test commit for webhook validation',
                author_name='Webhook Test',
                author_email='webhook-test@example.com',
                timestamp=datetime.utcnow().isoformat(),
                url=f'{repo_url}/commit/{commit_id}',
            )],
            pusher={'name': 'Webhook Test', 'email': 'webhook-test@example.com'},
        )

        validation = validate_webhook_config(webhook, event.event_type)
        if not validation['is_valid']:
            return {
                'success': False,
                'message': f"Webhook 配置验证失败: {validation['reason']}",
                'validation': validation,
            }

        should, reason = should_trigger_build(event, miniprogram)
        webhook.last_trigger = datetime.utcnow()
        db.session.commit()
        logger.info(f"测试Webhook: id={webhook_id}, 触发={should}, 原因={reason}")
        return {
            'success': True,
            'message': 'Webhook 测试成功',
            'validation': validation,
            'trigger': {'should_trigger': should, 'reason': reason},
            'event': event.to_dict(),
        }

"""Git凭证解析服务"""
import logging
from dataclasses import dataclass
from typing import Optional

from minibuild import db
from minibuild.errors import CredentialNotFound, InvalidCredentials, MinibuildError
from minibuild.models.git_credential import AuthType, GitCredential

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ('password', 'token', 'ssh_key')

# 各认证方式必填字段
REQUIRED_FIELDS = {
    AuthType.HTTPS: ('username', 'password'),
    AuthType.SSH: ('ssh_key',),
    AuthType.TOKEN: ('token',),
}


@dataclass
class CredentialView:
    """解密后的凭证，仅在单次Git操作内使用，不做持久化"""
    auth_type: str
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    ssh_key: Optional[str] = None

    def __repr__(self):
        return f'CredentialView(auth_type={self.auth_type!r}, username={self.username!r})'


class CredentialResolver:
    """根据凭证ID与所属用户解析出可用的认证信息"""

    def __init__(self, encryption):
        self.encryption = encryption

    def _load(self, credential_id, owner_id):
        credential = GitCredential.query.filter_by(id=credential_id, user_id=owner_id).first()
        if not credential:
            raise CredentialNotFound(f'Git凭证不存在: {credential_id}')
        return credential

    def _decrypt_all(self, credential):
        """尝试解密全部敏感字段，尽早发现损坏的数据"""
        stored = {field: getattr(credential, field) for field in SENSITIVE_FIELDS}
        return self.encryption.decrypt_sensitive_fields(stored, SENSITIVE_FIELDS)

    def resolve(self, credential_id, owner_id):
        """解析凭证

        Returns:
            CredentialView: 解密后的凭证

        Raises:
            CredentialNotFound: 凭证不存在或不属于该用户
            DecryptionFailure: 存储的密文无法解密
            InvalidCredentials: 当前认证方式缺少必填字段
        """
        credential = self._load(credential_id, owner_id)
        secrets = self._decrypt_all(credential)

        view = CredentialView(
            auth_type=credential.auth_type,
            username=credential.username,
            password=secrets['password'],
            token=secrets['token'],
            ssh_key=secrets['ssh_key'],
        )

        required = REQUIRED_FIELDS.get(view.auth_type)
        if required is None:
            raise InvalidCredentials(f'不支持的认证方式: {view.auth_type}')
        missing = [field for field in required if not getattr(view, field)]
        if missing:
            raise InvalidCredentials(f"{view.auth_type} 认证缺少字段: {', '.join(missing)}")

        return view

    def validate(self, credential_id, owner_id):
        """校验凭证是否可用，不抛出异常

        Returns:
            dict: {'is_valid': bool, 'error': str}
        """
        try:
            self.resolve(credential_id, owner_id)
            return {'is_valid': True}
        except MinibuildError as e:
            logger.warning(f"凭证校验失败: credential_id={credential_id}, error={e.message}")
            return {'is_valid': False, 'error': e.message}

    def create_credential(self, owner_id, name, auth_type, username=None, password=None,
                          token=None, ssh_key=None, description=None):
        """创建凭证，敏感字段加密后存储"""
        if auth_type not in AuthType.ALL:
            raise InvalidCredentials(f'不支持的认证方式: {auth_type}')

        fields = self.encryption.encrypt_sensitive_fields(
            {'password': password, 'token': token, 'ssh_key': ssh_key},
            SENSITIVE_FIELDS,
        )
        credential = GitCredential(
            user_id=owner_id,
            name=name,
            auth_type=auth_type,
            username=username,
            description=description,
            **fields,
        )
        db.session.add(credential)
        db.session.commit()
        logger.info(f"创建Git凭证: id={credential.id}, type={auth_type}")
        return credential

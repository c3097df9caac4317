"""JWT 认证"""
import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, g, request
from jose import JWTError, jwt

from minibuild import db
from minibuild.errors import Unauthorized
from minibuild.models.user import User

logger = logging.getLogger(__name__)

ALGORITHM = 'HS256'


class AuthService:

    @staticmethod
    def create_access_token(user_id, expires_hours=None):
        hours = expires_hours or current_app.config['JWT_EXPIRES_HOURS']
        payload = {
            'sub': str(user_id),
            'exp': datetime.now(timezone.utc) + timedelta(hours=hours),
            'type': 'access',
        }
        return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm=ALGORITHM)

    @staticmethod
    def decode_access_token(token):
        try:
            payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=[ALGORITHM])
        except JWTError as e:
            raise Unauthorized(f'无效的访问令牌: {e}') from None
        if payload.get('type') != 'access' or not payload.get('sub'):
            raise Unauthorized('无效的访问令牌')
        return payload

    @staticmethod
    def get_user_from_token(token):
        """解析令牌并返回有效用户"""
        if not token:
            raise Unauthorized('缺少访问令牌')
        payload = AuthService.decode_access_token(token)
        try:
            user_id = int(payload['sub'])
        except (TypeError, ValueError):
            raise Unauthorized('无效的访问令牌') from None
        user = db.session.get(User, user_id)
        if not user or user.status != 'ACTIVE':
            raise Unauthorized('用户不存在或已被禁用')
        return user

    @staticmethod
    def bearer_token():
        header = request.headers.get('Authorization', '')
        if header.startswith('Bearer '):
            return header[len('Bearer '):].strip()
        return None


def login_required(view):
    """要求请求携带有效的 Bearer Token，用户写入 g.current_user"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        g.current_user = AuthService.get_user_from_token(AuthService.bearer_token())
        return view(*args, **kwargs)
    return wrapper

"""Git凭证模型"""
from datetime import datetime
from minibuild import db


class AuthType:
    HTTPS = 'HTTPS'
    SSH = 'SSH'
    TOKEN = 'TOKEN'

    ALL = (HTTPS, SSH, TOKEN)


class GitCredential(db.Model):
    """Git凭证（敏感字段加密存储）"""
    __tablename__ = 'git_credentials'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    auth_type = db.Column(db.String(20), nullable=False, comment='HTTPS/SSH/TOKEN')
    username = db.Column(db.String(100))
    password = db.Column(db.Text, comment='加密存储')
    token = db.Column(db.Text, comment='加密存储')
    ssh_key = db.Column(db.Text, comment='加密存储')
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default='ACTIVE')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        """转换为字典（敏感字段不返回）"""
        return {
            'id': self.id,
            'name': self.name,
            'auth_type': self.auth_type,
            'username': self.username,
            'has_password': bool(self.password),
            'has_token': bool(self.token),
            'has_ssh_key': bool(self.ssh_key),
            'description': self.description,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<GitCredential {self.name}>'

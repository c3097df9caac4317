"""Webhook配置模型"""
from datetime import datetime
from minibuild import db


class Webhook(db.Model):
    """Webhook配置"""
    __tablename__ = 'webhooks'

    id = db.Column(db.Integer, primary_key=True)
    app_id = db.Column(db.Integer, db.ForeignKey('miniprograms.id'), nullable=False, index=True)
    url = db.Column(db.String(500), comment='回调地址')
    secret = db.Column(db.String(255), comment='签名密钥')
    events = db.Column(db.JSON, comment="订阅事件，如 ['push', 'pull_request']")
    status = db.Column(db.String(20), default='ACTIVE', comment='ACTIVE/INACTIVE')
    last_trigger = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    miniprogram = db.relationship('Miniprogram', backref=db.backref('webhooks', lazy='dynamic'))

    @property
    def is_active(self):
        return self.status == 'ACTIVE'

    def subscribes(self, event_type):
        return event_type in (self.events or [])

    def to_dict(self):
        """转换为字典"""
        return {
            'id': self.id,
            'app_id': self.app_id,
            'url': self.url,
            'has_secret': bool(self.secret),
            'events': self.events or [],
            'status': self.status,
            'last_trigger': self.last_trigger.isoformat() if self.last_trigger else None,
        }

"""小程序及其构建配置模型"""
from datetime import datetime
from minibuild import db


class ProjectType:
    NATIVE = 'NATIVE'
    TARO = 'TARO'
    UNIAPP = 'UNIAPP'
    OTHER = 'OTHER'

    ALL = (NATIVE, TARO, UNIAPP, OTHER)


class QrcodeFormat:
    IMAGE = 'IMAGE'
    BASE64 = 'BASE64'


class Miniprogram(db.Model):
    """小程序模型"""
    __tablename__ = 'miniprograms'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, comment='小程序名称')
    appid = db.Column(db.String(50), nullable=False, comment='微信小程序AppID')
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    version = db.Column(db.String(50), default='1.0.0', comment='当前版本号')
    private_key_path = db.Column(db.String(500), comment='上传私钥文件路径')
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    config = db.relationship('MiniprogramConfig', backref='miniprogram', uselist=False,
                             cascade='all, delete-orphan')
    owner = db.relationship('User', backref='miniprograms')

    def to_dict(self):
        """转换为字典"""
        return {
            'id': self.id,
            'name': self.name,
            'appid': self.appid,
            'user_id': self.user_id,
            'version': self.version,
            'has_private_key': bool(self.private_key_path),
            'description': self.description,
            'config': self.config.to_dict() if self.config else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Miniprogram {self.name}>'


class MiniprogramConfig(db.Model):
    """小程序构建配置"""
    __tablename__ = 'miniprogram_configs'

    id = db.Column(db.Integer, primary_key=True)
    miniprogram_id = db.Column(db.Integer, db.ForeignKey('miniprograms.id'), nullable=False, unique=True)

    # 仓库配置
    git_url = db.Column(db.String(500), comment='Git仓库地址')
    git_branch = db.Column(db.String(100), default='master', comment='构建分支')
    git_credential_id = db.Column(db.Integer, db.ForeignKey('git_credentials.id'), comment='Git凭证')

    # 构建配置
    project_type = db.Column(db.String(20), default=ProjectType.NATIVE, comment='NATIVE/TARO/UNIAPP/OTHER')
    build_command = db.Column(db.String(500), comment='构建命令，为空则跳过')
    output_dir = db.Column(db.String(255), comment='构建产物目录，为空则使用仓库根目录')
    pack_npm = db.Column(db.Boolean, default=False, comment='原生项目是否构建npm')
    upload_config = db.Column(db.JSON, comment='上传编译设置覆盖')
    preview_config = db.Column(db.JSON, comment='预览编译设置覆盖')
    qrcode_format = db.Column(db.String(20), default=QrcodeFormat.IMAGE, comment='IMAGE/BASE64')

    # 自动化
    auto_build = db.Column(db.Boolean, default=False, comment='Webhook自动构建')
    auto_version = db.Column(db.Boolean, default=False, comment='自动递增版本号')

    def to_dict(self):
        """转换为字典"""
        return {
            'git_url': self.git_url,
            'git_branch': self.git_branch,
            'git_credential_id': self.git_credential_id,
            'project_type': self.project_type,
            'build_command': self.build_command,
            'output_dir': self.output_dir,
            'pack_npm': bool(self.pack_npm),
            'upload_config': self.upload_config or {},
            'preview_config': self.preview_config or {},
            'qrcode_format': self.qrcode_format,
            'auto_build': bool(self.auto_build),
            'auto_version': bool(self.auto_version),
        }

from minibuild.models.user import User
from minibuild.models.git_credential import GitCredential, AuthType
from minibuild.models.miniprogram import Miniprogram, MiniprogramConfig, ProjectType, QrcodeFormat
from minibuild.models.build_task import BuildTask, TaskStatus, BuildType, TriggerType
from minibuild.models.webhook import Webhook

__all__ = [
    'User', 'GitCredential', 'AuthType', 'Miniprogram', 'MiniprogramConfig',
    'ProjectType', 'QrcodeFormat', 'BuildTask', 'TaskStatus', 'BuildType',
    'TriggerType', 'Webhook'
]

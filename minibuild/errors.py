"""业务异常定义

所有业务异常都继承自 MinibuildError，携带错误码与 HTTP 状态码，
由应用的全局错误处理器统一转换为 JSON 响应。
"""


class MinibuildError(Exception):
    """业务异常基类"""
    status_code = 400
    code = 'ERROR'
    default_message = '请求处理失败'
    # 可重试的瞬时错误（队列层按退避策略重新投递）
    transient = False

    def __init__(self, message=None, code=None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self):
        return {
            'success': False,
            'code': self.code,
            'message': self.message
        }


class ValidationError(MinibuildError):
    code = 'VALIDATION_ERROR'
    default_message = '参数校验失败'


# ==================== 调用方错误 ====================

class AppNotFound(MinibuildError):
    status_code = 404
    code = 'APP_NOT_FOUND'
    default_message = '小程序不存在'


class TaskNotFound(MinibuildError):
    status_code = 404
    code = 'TASK_NOT_FOUND'
    default_message = '构建任务不存在'


class Unauthorized(MinibuildError):
    status_code = 401
    code = 'UNAUTHORIZED'
    default_message = '无权访问'


class QueueFull(MinibuildError):
    status_code = 503
    code = 'QUEUE_FULL'
    default_message = '构建队列已满，请稍后再试'


class DuplicateActiveTask(MinibuildError):
    status_code = 409
    code = 'DUPLICATE_ACTIVE_TASK'
    default_message = '该小程序已有相同类型的构建任务在进行中'


class InvalidState(MinibuildError):
    status_code = 409
    code = 'INVALID_STATE'
    default_message = '任务当前状态不允许该操作'


class RetryLimitExceeded(InvalidState):
    code = 'RETRY_LIMIT_EXCEEDED'
    default_message = '重试次数已达上限'


# ==================== 凭证错误 ====================

class CredentialNotFound(MinibuildError):
    status_code = 404
    code = 'CREDENTIAL_NOT_FOUND'
    default_message = 'Git凭证不存在'


class InvalidCredentials(MinibuildError):
    code = 'INVALID_CREDENTIALS'
    default_message = 'Git凭证信息不完整'


class DecryptionFailure(MinibuildError):
    status_code = 500
    code = 'DECRYPTION_FAILURE'
    default_message = '凭证解密失败，数据可能已损坏'


# ==================== Git 错误 ====================

class GitOperationError(MinibuildError):
    status_code = 502
    code = 'GIT_OPERATION_ERROR'
    default_message = 'Git操作失败'


class InvalidUrl(GitOperationError):
    status_code = 400
    code = 'INVALID_URL'
    default_message = '无效的Git仓库地址'


class AuthenticationFailed(GitOperationError):
    code = 'AUTHENTICATION_FAILED'
    default_message = 'Git认证失败，请检查凭证'


class RepositoryNotFound(GitOperationError):
    code = 'REPOSITORY_NOT_FOUND'
    default_message = '仓库或分支不存在'


class NetworkError(GitOperationError):
    code = 'NETWORK_ERROR'
    default_message = '网络错误，无法连接到Git仓库'
    transient = True


# ==================== 构建错误 ====================

class BuildStageError(MinibuildError):
    status_code = 500
    code = 'BUILD_STAGE_ERROR'
    default_message = '构建阶段执行失败'


class PrivateKeyMissing(BuildStageError):
    code = 'PRIVATE_KEY_MISSING'
    default_message = '私钥文件不存在'


class StageTimeout(BuildStageError):
    code = 'STAGE_TIMEOUT'
    default_message = '构建阶段执行超时'


# ==================== Webhook 错误 ====================

class SignatureInvalid(MinibuildError):
    status_code = 401
    code = 'SIGNATURE_INVALID'
    default_message = 'Webhook签名验证失败'


class WebhookNotFound(MinibuildError):
    status_code = 404
    code = 'WEBHOOK_NOT_FOUND'
    default_message = 'Webhook不存在'

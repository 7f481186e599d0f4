"""统一业务异常模型与对话错误分类。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话控制器或 API 层做统一捕获与用户提示。

ErrorKind / GenerationCause 是会话层面对用户可见的错误分类，
与异常类型解耦：异常描述“哪里出错”，分类描述“用户看到什么”。
"""

from enum import Enum


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。本项目不做自动重试，由用户重新提交。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class PersistenceError(BusinessError):
    """会话存储读写失败。"""


class ErrorKind(str, Enum):
    """一次提交可能的失败类型。"""

    EMPTY_INPUT = "EmptyInput"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PERSISTENCE_FAILED = "PersistenceFailed"
    GENERATION_FAILED = "GenerationFailed"
    EMPTY_GENERATION = "EmptyGeneration"


class GenerationCause(str, Enum):
    """GenerationFailed 的细分原因。"""

    AUTH_CONFIG = "AuthConfig"
    RATE_LIMITED = "RateLimited"
    MODEL_UNAVAILABLE = "ModelUnavailable"
    UNKNOWN = "Unknown"


# 写入 error 消息时展示给用户的默认文案
ERROR_SUMMARIES = {
    ErrorKind.QUOTA_EXCEEDED: "Please sign in to continue chatting.",
    ErrorKind.PERSISTENCE_FAILED: "Failed to save the answer. Please try again.",
    ErrorKind.EMPTY_GENERATION: "Empty response received from AI model.",
    ErrorKind.GENERATION_FAILED: "An unexpected error occurred while generating content.",
}

CAUSE_SUMMARIES = {
    GenerationCause.AUTH_CONFIG: "Authentication error: Invalid API key.",
    GenerationCause.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    GenerationCause.MODEL_UNAVAILABLE: "Model error: Please try again later.",
    GenerationCause.UNKNOWN: "An unexpected error occurred while generating content.",
}

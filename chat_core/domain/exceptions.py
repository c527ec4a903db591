"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

LLMError 一族对应 Provider 调用过程中的错误分类；
其余为应用层错误（参数校验、会话/消息不存在、存储失败）。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 request_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


# ---- Provider 调用错误 ----


class LLMError(BusinessError):
    """Provider 调用错误基类。"""


class NetworkError(LLMError):
    """网络层错误，例如连接失败、超时、流读取中断。调用方可重试。"""

    def __init__(self, message: str, code: str = "NETWORK_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)


class ApiError(LLMError):
    """第三方 API 返回非 2xx 时抛出，code 为 HTTP 状态码文本。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)

    def __str__(self) -> str:
        return f"API error ({self.code}): {self.message}"


class RateLimitError(LLMError):
    """Provider 限流（HTTP 429），携带建议的重试等待秒数。"""

    def __init__(self, retry_after_seconds: int = 60, message: Optional[str] = None, **extra):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            code="RATE_LIMIT",
            message=message or f"Rate limited, retry after {retry_after_seconds} seconds",
            http_status=429,
            **extra,
        )


class AuthenticationError(LLMError):
    """认证失败（HTTP 401）。"""

    def __init__(self, message: str = "Authentication failed", **extra):
        super().__init__(code="AUTH_ERROR", message=message, http_status=401, **extra)


class InvalidRequestError(LLMError):
    """请求本身不合法（例如消息列表为空）。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="INVALID_REQUEST", message=message, http_status=400, **extra)


class ContextLengthExceededError(LLMError):
    """上下文超出模型窗口。预留，当前没有代码路径抛出。"""

    def __init__(self, used: int, max: int, **extra):
        self.used = used
        self.max = max
        super().__init__(
            code="CONTEXT_LENGTH_EXCEEDED",
            message=f"Context length exceeded: {used} > {max}",
            http_status=400,
            **extra,
        )


class ModelNotFoundError(LLMError):
    def __init__(self, model: str, **extra):
        super().__init__(code="MODEL_NOT_FOUND", message=f"Model not found: {model}", http_status=404, **extra)


class RequestCancelledError(LLMError):
    """请求被调用方取消。"""

    def __init__(self, request_id: str = "", **extra):
        super().__init__(code="CANCELLED", message="Request cancelled", http_status=499, request_id=request_id, **extra)


class ProviderNotAvailableError(LLMError):
    """注册表中找不到对应 Provider。"""

    def __init__(self, provider_id: str, **extra):
        super().__init__(
            code="PROVIDER_NOT_AVAILABLE",
            message=f"Provider not available: {provider_id}",
            http_status=503,
            **extra,
        )


class UnknownLLMError(LLMError):
    def __init__(self, message: str, **extra):
        super().__init__(code="UNKNOWN", message=message, http_status=500, **extra)


# ---- 应用层错误 ----


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    def __init__(self, message: str, code: str = "VALIDATION_FAILED", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)

    def __str__(self) -> str:
        return f"Validation failed: {self.message}"


class SessionNotFoundError(BusinessError):
    def __init__(self, session_id: str, **extra):
        self.session_id = session_id
        super().__init__(code="SESSION_NOT_FOUND", message=f"Session not found: {session_id}", http_status=404, **extra)


class MessageNotFoundError(BusinessError):
    def __init__(self, message_id: str, **extra):
        self.message_id = message_id
        super().__init__(code="MESSAGE_NOT_FOUND", message=f"Message not found: {message_id}", http_status=404, **extra)


class StorageError(BusinessError):
    """持久化失败（读写、序列化）。"""

    def __init__(self, message: str, code: str = "STORE_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=500, **extra)


class ConflictError(BusinessError):
    def __init__(self, message: str, **extra):
        super().__init__(code="CONFLICT", message=message, http_status=409, **extra)

"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或客户端做统一捕获与用户提示。
"""


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


class ValidationError(BusinessError):
    """参数或配置校验失败，不产生任何副作用。"""


class PersistenceError(BusinessError):
    """消息存储不可用或读写失败。"""

    def __init__(self, code: str, message: str, http_status: int = 500, **extra):
        super().__init__(code, message, http_status, **extra)


class ProviderError(BusinessError):
    """模型调用失败（网络、超时、厂商返回错误等）。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code, message, http_status, **extra)


class ApiError(ProviderError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ProviderError):
    """Provider 限流错误。本项目不做重试，直接按失败处理。"""


class NetworkError(BusinessError):
    """客户端请求或读取响应流失败（非用户主动取消）。"""


class StreamCancelled(Exception):
    """用户主动停止当前对话流。

    不继承 BusinessError：取消是预期行为，不应触发错误提示。
    """

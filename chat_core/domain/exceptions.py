"""统一业务异常模型。

Provider 客户端、凭证管理器与存储层抛出的错误都继承自 BusinessError；
编排器是唯一把它们转换为 ``on_error(message)`` 回调的地方。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、trace_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """传输层错误：连接失败、超时、读取中断等。"""


class ApiError(BusinessError):
    """Provider 返回非 2xx 状态码。"""


class AuthorizationError(ApiError):
    """401/403：凭证无效或已过期。"""


class RateLimitError(ApiError):
    """429：Provider 限流。对会话凭证类 Provider 同样触发凭证刷新。"""


class CredentialUnavailableError(BusinessError):
    """无法获取会话凭证，对调用方来说是硬错误，不在内部重试。"""


class EmptyStreamError(BusinessError):
    """流已结束但没有产出任何文本。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（例如缺少 API Key）。"""


class StoreError(BusinessError):
    """本地持久化读写失败。"""


def error_for_status(status_code: int, body: str, provider: str) -> ApiError:
    """把 HTTP 状态码映射为异常实例。"""

    snippet = (body or "")[:400]
    if status_code == 429:
        return RateLimitError(
            code="RATE_LIMIT",
            message=f"{provider} rate limit (HTTP 429)",
            http_status=429,
            provider=provider,
            body=snippet,
        )
    if status_code in (401, 403):
        return AuthorizationError(
            code="UNAUTHORIZED",
            message=f"{provider} rejected credentials (HTTP {status_code})",
            http_status=status_code,
            provider=provider,
            body=snippet,
        )
    message = f"{provider} request failed: HTTP {status_code}"
    if snippet:
        message = f"{message} | body: {snippet}"
    return ApiError(code="API_ERROR", message=message, http_status=status_code, provider=provider)

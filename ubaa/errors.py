"""
核心层的异常体系。

每个异常类都带有一个稳定的 ``code`` 字符串，调用方 (路由层) 可以据此区分失败类型，
而不必依赖异常消息文本。
"""
from typing import Any, Optional


class UbaaError(Exception):
    """所有核心异常的基类"""

    code = "internal_error"
    default_message = "内部错误"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(UbaaError):
    """上游明确拒绝了用户名/密码 (或验证码)，message 为上游的提示文本"""

    code = "invalid_credentials"
    default_message = "用户名或密码错误"


class CaptchaRequiredError(UbaaError):
    """
    需要验证码。这不是硬失败，而是一个控制流信号。

    参数:
        captcha: 验证码描述 (CaptchaInfo)。
        execution (str): 重试时必须原样提交的 execution 口令。
    """

    code = "captcha_required"
    default_message = "需要输入验证码"

    def __init__(self, captcha: Any, execution: str, message: Optional[str] = None):
        super().__init__(message)
        self.captcha = captcha
        self.execution = execution


class UpstreamUnavailableError(UbaaError):
    """网络错误、超时或上游返回非 200"""

    code = "upstream_unavailable"
    default_message = "上游服务暂不可用"


class ProtocolError(UbaaError):
    """上游页面/响应的结构与解析器预期不符"""

    code = "protocol_error"
    default_message = "上游响应格式异常"

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = truncate(body)

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status})"


class TooManyRedirectsError(ProtocolError):
    code = "too_many_redirects"
    default_message = "重定向次数过多"


class UnauthenticatedError(UbaaError):
    code = "unauthenticated"
    default_message = "未登录"


class SessionExpiredError(UnauthenticatedError):
    code = "session_expired"
    default_message = "会话已过期，请重新登录"


def truncate(text: Optional[str], limit: int = 200) -> str:
    """日志/异常中只保留响应体的前 limit 个字符"""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."

"""
博雅课程 (BYKC) 的异常体系，以及上游错误文案到异常类型的转换表。
"""
import logging
from typing import Optional, Type

from ..errors import ProtocolError, SessionExpiredError, UbaaError, truncate

logger = logging.getLogger(__name__)


class BykcError(UbaaError):
    code = "bykc_error"
    default_message = "博雅系统操作失败"


class BykcUpstreamError(BykcError):
    """
    博雅接口返回了失败结果 (HTTP 非 200，或业务 status 非 "0")。

    errmsg 保留上游的原始错误文案。
    """

    code = "bykc_upstream_error"
    default_message = "博雅系统返回错误"

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        body: str = "",
        errmsg: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = truncate(body)
        self.errmsg = errmsg


class BykcSelectError(BykcUpstreamError):
    code = "bykc_select_error"
    default_message = "退选失败"


class BykcAlreadySelectedError(BykcSelectError):
    code = "bykc_already_selected"
    default_message = "已报名过该课程，请不要重复报名"


class BykcCourseFullError(BykcSelectError):
    code = "bykc_course_full"
    default_message = "报名失败，该课程人数已满"


class BykcCourseNotSelectableError(BykcSelectError):
    code = "bykc_course_not_selectable"
    default_message = "选课失败，该课程不可选择"


class BykcSessionExpiredError(BykcError, SessionExpiredError):
    code = "bykc_session_expired"
    default_message = "您的会话已失效,请重新登录后再试"


class BykcDecodeError(BykcError, ProtocolError):
    """响应无法解密或解析"""

    code = "bykc_decode_error"
    default_message = "博雅响应解密失败"

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, body: str = ""):
        ProtocolError.__init__(self, message, status=status, body=body)


# 上游错误文案 -> 异常类型，按顺序匹配
ERROR_PATTERNS = (
    (("重复报名", "已报名"), BykcAlreadySelectedError),
    (("人数已满",), BykcCourseFullError),
    (("不可选择",), BykcCourseNotSelectableError),
    (("会话已失效", "未登录"), BykcSessionExpiredError),
    (("退选失败",), BykcSelectError),
)


def classify_error(errmsg: Optional[str], default: Type[BykcError] = BykcUpstreamError) -> BykcError:
    """
    把博雅上游的错误文案转换为具体的异常。

    上游措辞变化时只会退化为 default 类型，不会抛出新的异常；
    未识别的文案会记录一条警告日志，便于发现措辞变化。
    """
    text = errmsg or ""
    for keywords, error_cls in ERROR_PATTERNS:
        if any(keyword in text for keyword in keywords):
            if issubclass(error_cls, BykcUpstreamError):
                return error_cls(text, errmsg=text)
            return error_cls(text)

    logger.warning(f"未识别的博雅错误信息: {text!r}")
    if issubclass(default, BykcUpstreamError):
        return default(text or None, errmsg=text)
    return default(text or None)

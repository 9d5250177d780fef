"""
博雅课程 (bykc.buaa.edu.cn) 协议层客户端。

负责"二次登录"获取 auth_token、请求加密、响应解密，以及各接口的原始解析。
"""
import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import ValidationError

from ..cas import token_from_location
from ..config import Settings, settings as default_settings
from ..cookies import now_ms
from ..errors import UbaaError
from ..session import Session, SessionManager
from ..transport import send
from ..vpn import to_vpn_url
from . import crypto
from .errors import (
    BykcDecodeError,
    BykcSelectError,
    BykcSessionExpiredError,
    BykcUpstreamError,
    classify_error,
)
from .models import (
    AllConfig,
    ApiResponse,
    ChosenCourse,
    ChosenCoursePayload,
    Course,
    CourseActionResult,
    CoursePage,
    SignResult,
    StatisticsData,
    UserProfile,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGN_IN = 1
SIGN_OUT = 2


def _is_json_object(text: str) -> bool:
    if not text.lstrip().startswith("{"):
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


class BykcClient:
    """
    一个用户的博雅协议客户端。

    参数:
        username (str): 关联的用户名，会话从 SessionManager 中获取
        sessions (SessionManager): 注入的会话管理器
        settings (Settings): 配置

    auth_token 只由本实例的 login() 写入；它的有效期是一个 10 分钟的启发式窗口，
    上游从未给出真实过期时间。
    """

    BASE_URL = "https://bykc.buaa.edu.cn"
    CAS_LOGIN_URL = f"{BASE_URL}/sscv/cas/login"
    SECONDARY_LOGIN_URL = f"{BASE_URL}/cas-login?token="
    API_URL = f"{BASE_URL}/sscv"
    REFERER = f"{BASE_URL}/system/course-select"

    def __init__(self, username: str, sessions: SessionManager, settings: Optional[Settings] = None):
        self.username = username
        self.sessions = sessions
        self.settings = settings or default_settings
        self.token: Optional[str] = None
        self._logged_in_at: Optional[int] = None
        self._session: Optional[Session] = None

    def _url(self, url: str) -> str:
        return to_vpn_url(url, self.settings.use_vpn)

    def _token_fresh(self, session: Session) -> bool:
        if self._logged_in_at is None or session is not self._session:
            return False
        return now_ms() - self._logged_in_at < self.settings.bykc_token_ttl_minutes * 60 * 1000

    def forget_token(self):
        self.token = None
        self._logged_in_at = None

    async def login(self, force_refresh: bool = False) -> bool:
        """
        执行博雅系统的"二次登录"以获取 auth_token。

        访问博雅的 CAS 入口，跟随 SSO 重定向，从最终 URL (或某一跳的 Location) 中捕获 token。
        找不到 token 时尽力访问备用入口，依赖 Cookie 中已有的会话继续。

        参数:
            force_refresh (bool): 忽略缓存的令牌，强制重新登录

        返回:
            bool: True 表示可以继续调用接口
        """
        session = await self.sessions.require(self.username)
        if not force_refresh and self._token_fresh(session):
            return True

        logger.info(f"--- [博雅] 为用户 {self.username} 获取 auth_token ---")
        self.forget_token()
        response = await send(session.client, "GET", self._url(self.CAS_LOGIN_URL))

        token = response.url.params.get("token")
        if not token:
            for hop in [*response.history, response]:
                location = hop.headers.get("location")
                if location and "token=" in location:
                    token = token_from_location(hop.url, location)
                    if token:
                        break

        if token:
            self.token = token
            logger.info("博雅 auth_token 获取成功")
        else:
            logger.warning("重定向中没有 token，尝试备用入口")
            try:
                await send(session.client, "GET", self._url(self.SECONDARY_LOGIN_URL))
            except UbaaError as e:
                logger.warning(f"访问博雅备用入口失败: {e}")

        self._session = session
        self._logged_in_at = now_ms()
        return True

    async def call(self, api_name: str, payload: Dict[str, Any]) -> str:
        """
        调用一个加密接口，返回解密后的 JSON 文本。

        参数:
            api_name (str): 接口名，如 "getUserProfile"
            payload (dict): 请求体

        异常:
            BykcUpstreamError: HTTP 状态码非 200
            BykcDecodeError: 响应无法解密
            BykcSessionExpiredError: 上游提示会话已失效 (缓存的令牌会被丢弃)
        """
        session = await self.sessions.require(self.username)
        request_json = json.dumps(payload, ensure_ascii=False, separators=(',', ':'))
        envelope = crypto.encrypt_request(request_json)
        logger.debug(f"[博雅] 调用 {api_name}: {request_json}")

        headers = {
            "Content-Type": "application/json;charset=utf-8",
            "Accept": "application/json",
            "Referer": self._url(self.REFERER),
            "Origin": self._url(self.BASE_URL),
            "ak": envelope.ak,
            "sk": envelope.sk,
            "ts": envelope.ts,
        }
        if self.token:
            headers["auth_token"] = self.token
            headers["authtoken"] = self.token

        response = await send(
            session.client,
            "POST",
            self._url(f"{self.API_URL}/{api_name}"),
            content=envelope.encrypted_data.encode("ascii"),
            headers=headers,
        )
        body = response.text
        if response.status_code != 200:
            logger.error(f"博雅接口 {api_name} 返回 HTTP {response.status_code}: {body[:200]}")
            raise BykcUpstreamError(
                f"博雅接口返回 HTTP {response.status_code}",
                status=response.status_code,
                body=body,
            )

        plaintext = self._decode(body, envelope.aes_key)
        if "会话已失效" in plaintext or "未登录" in plaintext:
            self.forget_token()
            raise BykcSessionExpiredError()
        return plaintext

    @staticmethod
    def _decode(body: str, aes_key: bytes) -> str:
        """
        响应体可能是一个 JSON 字符串字面量，先去掉引号再解密。
        上游的错误页有时直接返回明文 JSON 对象，这种情况原样返回。
        """
        text = body.strip()
        if text.startswith('"'):
            try:
                text = json.loads(text)
            except ValueError as e:
                raise BykcDecodeError("博雅响应不是合法的 JSON 字符串", body=body) from e
        try:
            return crypto.decrypt_response(text, aes_key)
        except BykcDecodeError:
            if not _is_json_object(text):
                raise
            logger.warning("博雅响应未加密，按明文处理")
            return text

    def _parse(self, raw: str, data_type: Type[T], api_name: str, require_data: bool = True) -> ApiResponse[T]:
        try:
            response = ApiResponse[data_type].model_validate_json(raw)
        except ValidationError as e:
            raise BykcDecodeError(f"博雅接口 {api_name} 响应格式异常", body=raw) from e
        if not response.is_success:
            raise classify_error(response.errmsg)
        if require_data and response.data is None:
            raise BykcUpstreamError(f"博雅接口 {api_name} 未返回数据", body=raw, errmsg=response.errmsg)
        return response

    # ------------------------------------------------------------------
    # 接口封装
    # ------------------------------------------------------------------
    async def get_user_profile(self) -> UserProfile:
        raw = await self.call("getUserProfile", {})
        return self._parse(raw, UserProfile, "getUserProfile").data

    async def query_courses(self, page_number: int, page_size: int) -> CoursePage:
        """分页查询本学期课程"""
        raw = await self.call(
            "queryStudentSemesterCourseByPage",
            {"pageNumber": page_number, "pageSize": page_size},
        )
        return self._parse(raw, CoursePage, "queryStudentSemesterCourseByPage").data

    async def query_course_by_id(self, course_id: int) -> Course:
        raw = await self.call("queryCourseById", {"id": course_id})
        return self._parse(raw, Course, "queryCourseById").data

    async def chose_course(self, course_id: int) -> ApiResponse[CourseActionResult]:
        """选课；人数已满、重复报名等失败会被转换为对应的异常"""
        raw = await self.call("choseCourse", {"courseId": course_id})
        return self._parse(raw, CourseActionResult, "choseCourse", require_data=False)

    async def del_chosen_course(self, chosen_id: int) -> ApiResponse[CourseActionResult]:
        raw = await self.call("delChosenCourse", {"id": chosen_id})
        try:
            return self._parse(raw, CourseActionResult, "delChosenCourse", require_data=False)
        except BykcUpstreamError as e:
            if type(e) is BykcUpstreamError:
                raise BykcSelectError(e.errmsg or None, errmsg=e.errmsg) from e
            raise

    async def get_all_config(self) -> AllConfig:
        raw = await self.call("getAllConfig", {})
        return self._parse(raw, AllConfig, "getAllConfig").data

    async def query_chosen_courses(self, start_date: str, end_date: str) -> List[ChosenCourse]:
        raw = await self.call("queryChosenCourse", {"startDate": start_date, "endDate": end_date})
        return self._parse(raw, ChosenCoursePayload, "queryChosenCourse").data.course_list

    async def sign_course(self, course_id: int, lat: float, lng: float, sign_type: int) -> ApiResponse[SignResult]:
        """提交签到 (sign_type=1) 或签退 (sign_type=2)"""
        raw = await self.call(
            "signCourseByUser",
            {"courseId": course_id, "signLat": lat, "signLng": lng, "signType": sign_type},
        )
        return self._parse(raw, SignResult, "signCourseByUser", require_data=False)

    async def query_statistics(self) -> StatisticsData:
        raw = await self.call("queryStatisticByUserId", {})
        return self._parse(raw, StatisticsData, "queryStatisticByUserId").data

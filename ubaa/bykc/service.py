"""
博雅课程业务服务。

在协议客户端之上实现：
1. 按用户缓存博雅客户端，自动维护二次登录。
2. 课程状态计算 (可选、已满、结束、过期等)。
3. 选课与退选。
4. 签到/签退，在签到点半径内随机生成坐标。
5. 修读统计的汇总。
"""
import datetime
import json
import logging
import math
import random
from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..config import Settings, settings as default_settings
from ..errors import UbaaError
from ..session import SessionManager
from .client import SIGN_IN, SIGN_OUT, BykcClient
from .errors import BykcDecodeError, BykcError, classify_error
from .models import (
    ApiResponse,
    CategoryStatistics,
    ChosenCourseView,
    Course,
    CourseActionResult,
    CourseListPage,
    CourseStatus,
    CourseView,
    SignConfig,
    SignResult,
    StatisticsSummary,
    UserProfile,
)

logger = logging.getLogger(__name__)

BEIJING_TZ = timezone(timedelta(hours=8))
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
EARTH_RADIUS_M = 6_371_000.0


def beijing_now() -> datetime.datetime:
    """上游时间均为北京时间且不带时区，这里返回同样不带时区的北京时间"""
    return datetime.datetime.now(BEIJING_TZ).replace(tzinfo=None)


def parse_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.strptime(value, DATE_FORMAT)


def course_status(course: Course, now: Optional[datetime.datetime] = None) -> CourseStatus:
    """根据课程时间配置计算课程状态；时间格式异常时视为可选"""
    now = now or beijing_now()
    try:
        start = parse_time(course.course_start_date)
        select_start = parse_time(course.course_select_start_date)
        select_end = parse_time(course.course_select_end_date)
    except ValueError:
        return CourseStatus.AVAILABLE

    if start is not None and now > start:
        return CourseStatus.EXPIRED
    if course.selected:
        return CourseStatus.SELECTED
    if select_start is not None and now < select_start:
        return CourseStatus.PREVIEW
    if select_end is not None and now > select_end:
        return CourseStatus.ENDED
    if course.course_current_count is not None and course.course_current_count >= course.course_max_count:
        return CourseStatus.FULL
    return CourseStatus.AVAILABLE


def parse_sign_config(raw: Optional[str]) -> Optional[SignConfig]:
    if not raw or not raw.strip():
        return None
    try:
        return SignConfig.model_validate_json(raw)
    except ValueError:
        logger.warning(f"无法解析签到配置: {raw[:200]}")
        return None


def _in_window(start: Optional[str], end: Optional[str], now: datetime.datetime) -> bool:
    try:
        s, e = parse_time(start), parse_time(end)
    except ValueError:
        return False
    return s is not None and e is not None and s < now < e


def can_sign(config: Optional[SignConfig], now: Optional[datetime.datetime] = None) -> bool:
    if config is None:
        return False
    return _in_window(config.sign_start_date, config.sign_end_date, now or beijing_now())


def can_sign_out(config: Optional[SignConfig], now: Optional[datetime.datetime] = None) -> bool:
    if config is None:
        return False
    return _in_window(config.sign_out_start_date, config.sign_out_end_date, now or beijing_now())


def destination_point(lat: float, lng: float, distance: float, bearing: float) -> Tuple[float, float]:
    """从 (lat, lng) 沿方位角 bearing (弧度) 前进 distance 米后的球面坐标"""
    r = distance / EARTH_RADIUS_M
    lat_r = math.radians(lat)
    lng_r = math.radians(lng)
    dest_lat = math.asin(math.sin(lat_r) * math.cos(r) + math.cos(lat_r) * math.sin(r) * math.cos(bearing))
    dest_lng = lng_r + math.atan2(
        math.sin(bearing) * math.sin(r) * math.cos(lat_r),
        math.cos(r) - math.sin(lat_r) * math.sin(dest_lat),
    )
    return math.degrees(dest_lat), math.degrees(dest_lng)


def random_sign_location(
    config: Optional[SignConfig],
    fallback_lat: Optional[float] = None,
    fallback_lng: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[float, float]:
    """
    在随机一个签到点的半径内均匀地随机取点。

    上游没有给出签到范围时使用调用方提供的坐标，两者都没有则抛出 BykcError。
    """
    rng = rng or random.Random()
    points = config.sign_point_list if config is not None else []
    if points:
        point = rng.choice(points)
        if point.radius > 0:
            # sqrt 保证在圆内均匀分布
            distance = point.radius * math.sqrt(rng.random())
            bearing = rng.random() * 2 * math.pi
            return destination_point(point.lat, point.lng, distance, bearing)
    if fallback_lat is not None and fallback_lng is not None:
        return fallback_lat, fallback_lng
    raise BykcError("未提供签到坐标且后端未返回签到范围")


class BykcService:
    """
    博雅课程服务，按用户名缓存 BykcClient。

    参数:
        sessions (SessionManager): 注入的会话管理器
        settings (Settings): 配置
    """

    def __init__(self, sessions: SessionManager, settings: Optional[Settings] = None):
        self.sessions = sessions
        self.settings = settings or default_settings
        self._clients: Dict[str, BykcClient] = {}
        sessions.add_removal_hook(self.forget)

    def client_for(self, username: str) -> BykcClient:
        client = self._clients.get(username)
        if client is None:
            client = self._clients[username] = BykcClient(username, self.sessions, self.settings)
            logger.debug(f"为用户 {username} 创建博雅客户端")
        return client

    def forget(self, username: str):
        """丢弃用户的博雅客户端；核心会话被注销或过期时自动调用"""
        self._clients.pop(username, None)

    async def _ready(self, username: str) -> BykcClient:
        client = self.client_for(username)
        await client.login()
        return client

    async def login(self, username: str) -> bool:
        """确保用户已在博雅系统中完成登录，失败返回 False"""
        try:
            return await self.client_for(username).login()
        except UbaaError as e:
            logger.error(f"用户 {username} 博雅登录失败: {e}")
            return False

    async def call(self, username: str, api_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        以原始 JSON 的形式调用任意博雅接口。

        返回:
            dict: 解密后的响应；业务 status 非 "0" 时按错误文案抛出对应的异常
        """
        client = await self._ready(username)
        raw = await client.call(api_name, payload)
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise BykcDecodeError(f"博雅接口 {api_name} 返回的不是 JSON", body=raw) from e
        if isinstance(data, dict) and "status" in data and str(data["status"]) != "0":
            raise classify_error(data.get("errmsg"))
        return data

    async def get_user_profile(self, username: str) -> UserProfile:
        client = await self._ready(username)
        return await client.get_user_profile()

    async def get_courses(
        self,
        username: str,
        page_number: int = 1,
        page_size: int = 20,
        include_finished: bool = False,
    ) -> CourseListPage:
        """
        查询课程列表并计算每门课程的状态。

        参数:
            include_finished (bool): 为 False 时过滤掉已过期和已结束的课程
        """
        client = await self._ready(username)
        page = await client.query_courses(page_number, page_size)
        now = beijing_now()

        views: List[CourseView] = []
        for course in page.content:
            status = course_status(course, now)
            if not include_finished and status in (CourseStatus.EXPIRED, CourseStatus.ENDED):
                continue
            views.append(self._course_view(course, status))
        return CourseListPage(
            courses=views,
            total_elements=page.total_elements,
            total_pages=page.total_pages,
            page_number=page_number,
            page_size=page_size,
        )

    async def get_course_detail(self, username: str, course_id: int) -> CourseView:
        client = await self._ready(username)
        course = await client.query_course_by_id(course_id)
        view = self._course_view(course, course_status(course))
        view.sign_config = parse_sign_config(course.course_sign_config)
        return view

    async def select_course(self, username: str, course_id: int) -> ApiResponse[CourseActionResult]:
        client = await self._ready(username)
        result = await client.chose_course(course_id)
        logger.info(f"用户 {username} 选课成功: {course_id}")
        return result

    async def deselect_course(self, username: str, chosen_id: int) -> ApiResponse[CourseActionResult]:
        client = await self._ready(username)
        result = await client.del_chosen_course(chosen_id)
        logger.info(f"用户 {username} 退选成功: {chosen_id}")
        return result

    async def get_chosen_courses(self, username: str) -> List[ChosenCourseView]:
        """当前学期已选课程，附带签到配置与签到/签退窗口状态"""
        client = await self._ready(username)
        config = await client.get_all_config()
        semester = config.semester[0] if config.semester else None
        if semester is None or not semester.semester_start_date or not semester.semester_end_date:
            raise BykcError("无法获取当前学期信息")

        chosen = await client.query_chosen_courses(semester.semester_start_date, semester.semester_end_date)
        now = beijing_now()
        views = []
        for item in chosen:
            sign_config = parse_sign_config(item.course_info.course_sign_config if item.course_info else None)
            views.append(
                ChosenCourseView(
                    chosen=item,
                    sign_config=sign_config,
                    can_sign=can_sign(sign_config, now),
                    can_sign_out=can_sign_out(sign_config, now),
                )
            )
        return views

    async def sign_in(
        self,
        username: str,
        course_id: int,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> ApiResponse[SignResult]:
        return await self._sign(username, course_id, lat, lng, SIGN_IN)

    async def sign_out(
        self,
        username: str,
        course_id: int,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> ApiResponse[SignResult]:
        return await self._sign(username, course_id, lat, lng, SIGN_OUT)

    async def _sign(self, username, course_id, lat, lng, sign_type) -> ApiResponse[SignResult]:
        client = await self._ready(username)
        course = await client.query_course_by_id(course_id)
        sign_config = parse_sign_config(course.course_sign_config)

        if sign_type == SIGN_IN and not can_sign(sign_config):
            raise BykcError("当前不在签到时间窗口")
        if sign_type == SIGN_OUT and not can_sign_out(sign_config):
            raise BykcError("当前不在签退时间窗口")

        final_lat, final_lng = random_sign_location(sign_config, lat, lng)
        action = "签到" if sign_type == SIGN_IN else "签退"
        logger.info(f"用户 {username} 课程 {course_id} {action}，坐标 ({final_lat:.6f}, {final_lng:.6f})")
        return await client.sign_course(course_id, final_lat, final_lng, sign_type)

    async def get_statistics(self, username: str) -> StatisticsSummary:
        """汇总修读统计；上游的分类键形如 "<id>|<名称>"，只保留名称部分"""
        client = await self._ready(username)
        data = await client.query_statistics()
        categories = []
        for category_key, sub_map in data.statistical.items():
            category = category_key.split("|", 1)[-1]
            for sub_key, stats in sub_map.items():
                categories.append(
                    CategoryStatistics(
                        category=category,
                        sub_category=sub_key.split("|", 1)[-1],
                        required=stats.assessment_count,
                        passed=stats.complete_assessment_count,
                        satisfied=stats.complete_assessment_count >= stats.assessment_count,
                    )
                )
        return StatisticsSummary(valid_count=data.valid_count, categories=categories)

    @staticmethod
    def _course_view(course: Course, status: CourseStatus) -> CourseView:
        return CourseView(
            course=course,
            status=status,
            category=course.course_new_kind1.kind_name if course.course_new_kind1 else None,
            sub_category=course.course_new_kind2.kind_name if course.course_new_kind2 else None,
        )

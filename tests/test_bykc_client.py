"""
博雅客户端与服务层的测试。

模拟服务器无法解开 RSA 加密的 ak，因此把随机 AES 密钥固定下来，
服务器用同一个密钥解密请求、加密响应。
"""
import base64
import datetime
import json
import math
import random

import httpx
import pytest

from conftest import open_session
from ubaa.bykc import BykcClient, BykcService, crypto
from ubaa.bykc.errors import (
    BykcCourseFullError,
    BykcDecodeError,
    BykcError,
    BykcSelectError,
    BykcSessionExpiredError,
    BykcUpstreamError,
)
from ubaa.bykc.models import Course, CourseStatus, SignConfig, SignPoint
from ubaa.bykc.service import EARTH_RADIUS_M, course_status, random_sign_location
from ubaa.errors import UnauthenticatedError

USER = "21371234"
KEY = b"ABCDEFGHJKMNPQRS"
BYKC = "https://bykc.buaa.edu.cn"
CAS_LOGIN = f"{BYKC}/sscv/cas/login"


class FakeBykc:
    """按接口名返回预设的 JSON，并记录解密后的请求体"""

    def __init__(self, upstream):
        self.responses = {}
        self.calls = []
        upstream.route("GET", CAS_LOGIN, status_code=302, headers={"Location": f"{BYKC}/system/home?token=bk-token"})
        upstream.route("GET", f"{BYKC}/system/home", text="<html>home</html>")
        for api in (
            "getUserProfile",
            "queryStudentSemesterCourseByPage",
            "queryCourseById",
            "choseCourse",
            "delChosenCourse",
            "getAllConfig",
            "queryChosenCourse",
            "signCourseByUser",
            "queryStatisticByUserId",
        ):
            upstream.route("POST", f"{BYKC}/sscv/{api}", self._handler(api))

    def _handler(self, api):
        def handle(request):
            payload = json.loads(crypto.decrypt_response(request.content.decode("ascii"), KEY))
            self.calls.append((api, payload, request.headers))
            body = self.responses[api]
            if isinstance(body, httpx.Response):
                return body
            return httpx.Response(200, text=encrypt(body))
        return handle

    def reply(self, api, data=None, status="0", errmsg="请求成功"):
        self.responses[api] = {"status": status, "errmsg": errmsg, "data": data}


def encrypt(body) -> str:
    plaintext = json.dumps(body, ensure_ascii=False).encode("utf-8")
    return base64.b64encode(crypto.aes_encrypt(plaintext, KEY)).decode("ascii")


def course(course_id=1, **fields):
    data = {"id": course_id, "courseName": f"课程{course_id}", "courseMaxCount": 5, "courseCurrentCount": 1}
    data.update(fields)
    return data


@pytest.fixture
def fixed_key(monkeypatch):
    monkeypatch.setattr(crypto, "generate_aes_key", lambda: KEY)


@pytest.fixture
def bykc(upstream, fixed_key):
    return FakeBykc(upstream)


@pytest.fixture
def service(sessions, test_settings):
    return BykcService(sessions, test_settings)


# ----------------------------------------------------------------------
# 协议客户端
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_login_captures_token_and_caches_it(sessions, test_settings, upstream, bykc):
    await open_session(sessions, USER)
    client = BykcClient(USER, sessions, test_settings)

    assert await client.login()
    assert client.token == "bk-token"
    assert await client.login()
    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 1

    await client.login(force_refresh=True)
    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 2


@pytest.mark.asyncio
async def test_cached_token_expires_after_ttl(sessions, test_settings, upstream, bykc):
    await open_session(sessions, USER)
    client = BykcClient(USER, sessions, test_settings)
    await client.login()

    client._logged_in_at -= test_settings.bykc_token_ttl_minutes * 60 * 1000 + 1000
    await client.login()

    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 2
    assert client.token == "bk-token"


@pytest.mark.asyncio
async def test_relogin_invalidates_cached_token(sessions, test_settings, upstream, bykc):
    await open_session(sessions, USER)
    client = BykcClient(USER, sessions, test_settings)
    await client.login()

    await open_session(sessions, USER)
    await client.login()

    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 2


@pytest.mark.asyncio
async def test_login_requires_core_session(sessions, test_settings, bykc):
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(UnauthenticatedError):
        await client.login()


@pytest.mark.asyncio
async def test_call_sends_encrypted_payload_and_headers(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("queryStudentSemesterCourseByPage", {"content": [course()], "totalElements": 1, "totalPages": 1})
    client = BykcClient(USER, sessions, test_settings)
    await client.login()

    page = await client.query_courses(1, 20)

    assert page.total_elements == 1
    assert page.content[0].course_name == "课程1"
    [(api, payload, headers)] = bykc.calls
    assert payload == {"pageNumber": 1, "pageSize": 20}
    assert headers["auth_token"] == "bk-token"
    assert headers["authtoken"] == "bk-token"
    assert headers["ts"].isdigit()
    assert "ak" in headers and "sk" in headers


@pytest.mark.asyncio
async def test_quoted_response_body_is_decrypted(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    body = {"status": "0", "errmsg": "", "data": {"id": 7, "employeeId": USER, "realName": "张三"}}
    bykc.responses["getUserProfile"] = httpx.Response(200, text=json.dumps(encrypt(body)))
    client = BykcClient(USER, sessions, test_settings)

    profile = await client.get_user_profile()

    assert profile.real_name == "张三"
    assert profile.employee_id == USER


@pytest.mark.asyncio
async def test_http_error_is_upstream_error(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.responses["getUserProfile"] = httpx.Response(502, text="Bad Gateway")
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(BykcUpstreamError) as info:
        await client.get_user_profile()
    assert info.value.status == 502
    assert info.value.body == "Bad Gateway"


@pytest.mark.asyncio
async def test_garbage_response_is_decode_error(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.responses["getUserProfile"] = httpx.Response(200, text="<html>error</html>")
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(BykcDecodeError):
        await client.get_user_profile()


@pytest.mark.asyncio
async def test_session_expired_message_drops_token(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("getUserProfile", status="1", errmsg="您的会话已失效,请重新登录后再试")
    client = BykcClient(USER, sessions, test_settings)
    await client.login()

    with pytest.raises(BykcSessionExpiredError):
        await client.get_user_profile()
    assert client.token is None


@pytest.mark.asyncio
async def test_select_full_course(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("choseCourse", status="1", errmsg="报名失败，该课程人数已满")
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(BykcCourseFullError) as info:
        await client.chose_course(42)
    assert info.value.errmsg == "报名失败，该课程人数已满"
    assert bykc.calls[0][1] == {"courseId": 42}


@pytest.mark.asyncio
async def test_select_success_without_data(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("choseCourse", data={"courseCurrentCount": 3}, errmsg="选课成功")
    client = BykcClient(USER, sessions, test_settings)

    result = await client.chose_course(42)

    assert result.is_success
    assert result.data.course_current_count == 3


@pytest.mark.asyncio
async def test_deselect_unknown_failure_is_select_error(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("delChosenCourse", status="1", errmsg="系统繁忙")
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(BykcSelectError) as info:
        await client.del_chosen_course(9)
    assert info.value.errmsg == "系统繁忙"


@pytest.mark.asyncio
async def test_unknown_business_error_keeps_errmsg(sessions, test_settings, bykc):
    await open_session(sessions, USER)
    bykc.reply("getAllConfig", status="500", errmsg="系统繁忙")
    client = BykcClient(USER, sessions, test_settings)

    with pytest.raises(BykcUpstreamError) as info:
        await client.get_all_config()
    assert type(info.value) is BykcUpstreamError
    assert info.value.errmsg == "系统繁忙"


# ----------------------------------------------------------------------
# 服务层
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_service_login_without_session_returns_false(service, bykc):
    assert await service.login(USER) is False


@pytest.mark.asyncio
async def test_service_raw_call(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.reply("getUserProfile", {"id": 7, "employeeId": USER, "realName": "张三"})

    data = await service.call(USER, "getUserProfile", {})

    assert data["data"]["realName"] == "张三"


@pytest.mark.asyncio
async def test_service_raw_call_plaintext_error(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.responses["getUserProfile"] = httpx.Response(200, json={"status": "1", "errmsg": "系统异常"})

    with pytest.raises(BykcUpstreamError) as info:
        await service.call(USER, "getUserProfile", {})
    assert info.value.errmsg == "系统异常"


@pytest.mark.asyncio
async def test_get_courses_computes_status_and_hides_finished(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.reply(
        "queryStudentSemesterCourseByPage",
        {
            "content": [
                course(1, courseStartDate="2000-01-01 00:00:00"),
                course(2, courseStartDate="2999-01-01 00:00:00", courseSelectStartDate="2999-01-01 00:00:00"),
                course(
                    3,
                    courseStartDate="2999-01-01 00:00:00",
                    courseSelectEndDate="2000-01-02 00:00:00",
                ),
                course(
                    4,
                    courseStartDate="2999-01-01 00:00:00",
                    courseSelectStartDate="2000-01-01 00:00:00",
                    courseSelectEndDate="2999-01-01 00:00:00",
                    courseCurrentCount=5,
                ),
                course(
                    5,
                    courseStartDate="2999-01-01 00:00:00",
                    courseNewKind1={"id": 1, "kindName": "博雅课程"},
                    courseNewKind2={"id": 11, "kindName": "德育"},
                ),
            ],
            "totalElements": 5,
            "totalPages": 1,
        },
    )

    page = await service.get_courses(USER)

    assert [(v.course.id, v.status) for v in page.courses] == [
        (2, CourseStatus.PREVIEW),
        (4, CourseStatus.FULL),
        (5, CourseStatus.AVAILABLE),
    ]
    assert page.courses[2].category == "博雅课程"
    assert page.courses[2].sub_category == "德育"
    assert page.total_elements == 5

    everything = await service.get_courses(USER, include_finished=True)
    assert [v.status for v in everything.courses][:3] == [
        CourseStatus.EXPIRED,
        CourseStatus.PREVIEW,
        CourseStatus.ENDED,
    ]


@pytest.mark.asyncio
async def test_get_statistics_strips_key_prefixes(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.reply(
        "queryStatisticByUserId",
        {
            "validCount": 3,
            "statistical": {
                "1|博雅课程": {
                    "11|德育": {"assessmentCount": 2, "completeAssessmentCount": 1},
                    "12|美育": {"assessmentCount": 1, "completeAssessmentCount": 1},
                }
            },
        },
    )

    summary = await service.get_statistics(USER)

    assert summary.valid_count == 3
    by_name = {c.sub_category: c for c in summary.categories}
    assert by_name["德育"].category == "博雅课程"
    assert not by_name["德育"].satisfied
    assert by_name["美育"].satisfied


@pytest.mark.asyncio
async def test_get_chosen_courses_uses_current_semester(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.reply(
        "getAllConfig",
        {"semester": [{"id": 1, "semesterStartDate": "2026-09-01 00:00:00", "semesterEndDate": "2027-01-20 00:00:00"}]},
    )
    sign_config = json.dumps({"signStartDate": "2000-01-01 00:00:00", "signEndDate": "2999-01-01 00:00:00"})
    bykc.reply(
        "queryChosenCourse",
        {"courseList": [{"id": 99, "courseInfo": course(1, courseSignConfig=sign_config), "pass": 1}]},
    )

    [view] = await service.get_chosen_courses(USER)

    assert view.chosen.id == 99
    assert view.chosen.passed == 1
    assert view.can_sign
    assert not view.can_sign_out
    assert bykc.calls[-1][1] == {"startDate": "2026-09-01 00:00:00", "endDate": "2027-01-20 00:00:00"}


@pytest.mark.asyncio
async def test_get_chosen_courses_without_semester(sessions, service, bykc):
    await open_session(sessions, USER)
    bykc.reply("getAllConfig", {"semester": []})

    with pytest.raises(BykcError):
        await service.get_chosen_courses(USER)


@pytest.mark.asyncio
async def test_sign_in_outside_window_is_rejected(sessions, service, bykc):
    await open_session(sessions, USER)
    sign_config = json.dumps({"signStartDate": "2000-01-01 00:00:00", "signEndDate": "2000-01-01 01:00:00"})
    bykc.reply("queryCourseById", course(1, courseSignConfig=sign_config))

    with pytest.raises(BykcError):
        await service.sign_in(USER, 1)
    assert [api for api, _, _ in bykc.calls] == ["queryCourseById"]


@pytest.mark.asyncio
async def test_sign_in_inside_window_uses_sign_point(sessions, service, bykc):
    await open_session(sessions, USER)
    sign_config = json.dumps(
        {
            "signStartDate": "2000-01-01 00:00:00",
            "signEndDate": "2999-01-01 00:00:00",
            "signPointList": [{"lat": 39.98, "lng": 116.35, "radius": 50}],
        }
    )
    bykc.reply("queryCourseById", course(1, courseSignConfig=sign_config))
    bykc.reply("signCourseByUser", errmsg="签到成功")

    result = await service.sign_in(USER, 1)

    assert result.is_success
    api, payload, _ = bykc.calls[-1]
    assert api == "signCourseByUser"
    assert payload["courseId"] == 1
    assert payload["signType"] == 1
    assert distance(39.98, 116.35, payload["signLat"], payload["signLng"]) <= 50.5


@pytest.mark.asyncio
async def test_course_detail_select_and_deselect(sessions, service, bykc):
    await open_session(sessions, USER)
    sign_config = json.dumps({"signPointList": [{"lat": 39.98, "lng": 116.35, "radius": 30}]})
    bykc.reply("queryCourseById", course(8, courseStartDate="2999-01-01 00:00:00", courseSignConfig=sign_config))
    bykc.reply("choseCourse", {"courseCurrentCount": 2}, errmsg="选课成功")
    bykc.reply("delChosenCourse", {"courseCurrentCount": 1}, errmsg="退选成功")

    detail = await service.get_course_detail(USER, 8)
    selected = await service.select_course(USER, 8)
    deselected = await service.deselect_course(USER, 77)

    assert detail.status == CourseStatus.AVAILABLE
    assert detail.sign_config.sign_point_list[0].radius == 30
    assert selected.data.course_current_count == 2
    assert deselected.data.course_current_count == 1
    assert [(api, payload) for api, payload, _ in bykc.calls] == [
        ("queryCourseById", {"id": 8}),
        ("choseCourse", {"courseId": 8}),
        ("delChosenCourse", {"id": 77}),
    ]


@pytest.mark.asyncio
async def test_service_caches_client_until_forgotten(sessions, service, upstream, bykc):
    await open_session(sessions, USER)

    assert await service.login(USER)
    assert await service.login(USER)
    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 1

    service.forget(USER)
    assert await service.login(USER)
    assert len(upstream.requests_to("GET", CAS_LOGIN)) == 2


@pytest.mark.asyncio
async def test_service_forgets_client_when_session_ends(sessions, service, bykc):
    await open_session(sessions, USER)
    assert await service.login(USER)
    assert USER in service._clients

    await sessions.invalidate(USER)

    assert service._clients == {}


# ----------------------------------------------------------------------
# 纯函数
# ----------------------------------------------------------------------
NOW = datetime.datetime(2026, 10, 18, 12, 0, 0)


def test_course_status_precedence():
    assert course_status(Course(id=1, course_name="c", selected=True), NOW) == CourseStatus.SELECTED
    expired = Course(id=1, course_name="c", selected=True, course_start_date="2026-10-18 11:00:00")
    assert course_status(expired, NOW) == CourseStatus.EXPIRED
    full = Course(id=1, course_name="c", course_max_count=3, course_current_count=3)
    assert course_status(full, NOW) == CourseStatus.FULL
    assert course_status(Course(id=1, course_name="c", course_max_count=3), NOW) == CourseStatus.AVAILABLE


def test_course_status_with_bad_dates_is_available():
    bad = Course(id=1, course_name="c", course_start_date="明天")

    assert course_status(bad, NOW) == CourseStatus.AVAILABLE


def distance(lat1, lng1, lat2, lng2):
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp, dl = p2 - p1, math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def test_random_sign_location_stays_inside_radius():
    config = SignConfig(sign_point_list=[SignPoint(lat=39.98, lng=116.35, radius=100)])
    rng = random.Random(7)

    for _ in range(200):
        lat, lng = random_sign_location(config, rng=rng)
        assert distance(39.98, 116.35, lat, lng) <= 100.5


def test_random_sign_location_fallbacks():
    assert random_sign_location(SignConfig(), 1.0, 2.0) == (1.0, 2.0)
    with pytest.raises(BykcError):
        random_sign_location(None)

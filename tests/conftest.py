"""
测试公共夹具。

所有上游 (SSO、UC、博雅) 都由 FakeUpstream 模拟，通过 SessionManager 的
transport_factory 注入 httpx.MockTransport，测试过程不访问网络。
"""
import json
import urllib.parse
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from ubaa.config import Settings
from ubaa.session import SessionManager, UserIdentity

Handler = Callable[[httpx.Request], httpx.Response]

LOGIN_URL = "https://sso.buaa.edu.cn/login"
CAPTCHA_URL = "https://sso.buaa.edu.cn/captcha"
LOGOUT_URL = "https://sso.buaa.edu.cn/logout"
UC_LOGIN_URL = "https://uc.buaa.edu.cn/api/login"
UC_STATUS_URL = "https://uc.buaa.edu.cn/api/uc/status"


class FakeUpstream:
    """按 (方法, host, path) 路由请求，并记录收到的每个请求"""

    def __init__(self):
        self.routes: Dict[Tuple[str, str, str], Handler] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, url: str, handler: Optional[Handler] = None, **response_kwargs):
        """注册路由；不传 handler 时每次请求都按 response_kwargs 构造一个新的响应"""
        parsed = httpx.URL(url)
        if handler is None:
            status = response_kwargs.pop("status_code", 200)
            handler = lambda request: httpx.Response(status, **response_kwargs)  # noqa: E731
        self.routes[(method.upper(), parsed.host, parsed.path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.host, request.url.path))
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def requests_to(self, method: str, url: str) -> List[httpx.Request]:
        parsed = httpx.URL(url)
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.host == parsed.host and r.url.path == parsed.path
        ]


def form_of(request: httpx.Request) -> Dict[str, str]:
    """解析 application/x-www-form-urlencoded 请求体"""
    pairs = urllib.parse.parse_qsl(request.content.decode("utf-8"), keep_blank_values=True)
    return dict(pairs)


def login_page(execution: str = "e1s1", captcha: Optional[Tuple[str, str]] = None, tip: Optional[str] = None) -> str:
    """一个仿照 sso.buaa.edu.cn 的登录页"""
    captcha_input = '<input type="text" name="captcha" value="">' if captcha else ""
    captcha_script = (
        f"<script>var config = {{}}; config.captcha = {{type: '{captcha[0]}', id: '{captcha[1]}'}};</script>"
        if captcha else ""
    )
    tip_html = f'<div class="tip-text">{tip}</div>' if tip else ""
    return f"""<!DOCTYPE html>
<html><head><title>统一身份认证</title></head>
<body>
{tip_html}
<form id="fm1" action="/login" method="post">
  <input type="text" name="username" value="">
  <input type="password" name="password" value="">
  {captcha_input}
  <input type="hidden" name="execution" value="{execution}">
  <input type="hidden" name="_eventId" value="submit">
  <input type="hidden" name="type" value="username_password">
  <input type="checkbox" name="rememberMe" checked>
  <input type="submit" name="submitBtn" value="登录">
</form>
{captcha_script}
</body></html>"""


def install_cas(
    upstream: FakeUpstream,
    page: Optional[str] = None,
    token: str = "abc123",
    name: str = "张三",
    school_id: str = "21371234",
):
    """注册一套登录成功的 SSO + UC 路由"""
    upstream.route(
        "GET", LOGIN_URL,
        text=page or login_page(),
        headers={"Set-Cookie": "SESSION=sso-session; Path=/; HttpOnly"},
    )
    upstream.route(
        "POST", LOGIN_URL,
        status_code=302,
        headers=[
            ("Location", f"https://uc.buaa.edu.cn/callback?token={token}"),
            ("Set-Cookie", "CASTGC=TGT-1; Path=/; Secure; HttpOnly"),
        ],
    )
    upstream.route("GET", UC_LOGIN_URL, text="ok")
    upstream.route(
        "GET", UC_STATUS_URL,
        json={"code": 0, "data": {"name": name, "schoolid": school_id}},
    )
    upstream.route("GET", LOGOUT_URL, text="logged out")


def json_body(data) -> str:
    return json.dumps(data, ensure_ascii=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ubaa.db")


@pytest.fixture
def test_settings(db_path):
    return Settings(database_path=db_path, session_ttl_minutes=30)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def sessions(test_settings, upstream):
    manager = SessionManager(test_settings, transport_factory=upstream.transport)
    yield manager
    await manager.close()


async def open_session(manager: SessionManager, username: str = "21371234", name: str = "张三"):
    """跳过 CAS，直接提交一个已认证的会话"""
    candidate = manager.prepare_candidate(username)
    return await manager.commit(candidate, UserIdentity(name=name, school_id=username), token="tok")

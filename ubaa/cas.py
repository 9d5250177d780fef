"""
北航统一身份认证 (sso.buaa.edu.cn) 的 CAS 登录流程。

流程:
    1. 获取登录页
    2. 提取 execution 动态口令
    3. 检测验证码配置 (可选)
    4. 根据登录表单重建提交参数
    5. 禁止自动重定向提交凭证
    6. 逐跳检查 Location，直到拿到 token= 参数 (最多 10 跳)
    7. 失败时从页面中解析错误提示
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from bs4 import BeautifulSoup
from lxml import etree

from .errors import (
    InvalidCredentialsError,
    ProtocolError,
    TooManyRedirectsError,
    UbaaError,
    UpstreamUnavailableError,
    truncate,
)
from .transport import send

logger = logging.getLogger(__name__)

EXECUTION_XPATH = r'//input[@name="execution"]/@value'
CAPTCHA_PATTERN = re.compile(
    r"""config\.captcha\s*=\s*\{\s*type:\s*['"]([^'"]+)['"],\s*id:\s*['"]([^'"]+)['"]"""
)
TIP_TEXT_PATTERN = re.compile(r'<div class="tip-text">([^<]+)</div>', re.IGNORECASE)
ERROR_SELECTORS = (
    "div.alert.alert-danger#errorDiv p",
    "div.alert.alert-danger#errorDiv",
    "div.errors",
    "p.errors",
    "span.errors",
    ".tip-text",
)
CAPTCHA_FIELDS = ("captcha", "captchaResponse")


@dataclass
class CaptchaInfo:
    """验证码描述；base64_image 为 data URI，获取失败时为 None"""
    id: str
    type: str
    image_url: str
    base64_image: Optional[str] = None


@dataclass
class LoginPage:
    url: str
    html: str
    execution: str
    captcha: Optional[CaptchaInfo] = None


# ----------------------------------------------------------------------
# 页面解析 (纯函数)
# ----------------------------------------------------------------------
def extract_execution(html: str) -> Optional[str]:
    """从 CAS 登录页 HTML 中提取 'execution' 动态口令"""
    if not html or not html.strip():
        return None
    tree = etree.HTML(html)
    if tree is None:
        return None
    values = tree.xpath(EXECUTION_XPATH)
    if not values or not values[0].strip():
        return None
    return values[0]


def extract_tip_text(html: str) -> Optional[str]:
    match = TIP_TEXT_PATTERN.search(html or "")
    if not match:
        return None
    return match.group(1).strip() or None


def find_login_error(html: str) -> Optional[str]:
    """
    从登录响应中解析错误提示。

    优先使用 tip-text 文案，其次依次尝试几个常见的错误容器选择器。
    """
    if not html or not html.strip():
        return None
    tip = extract_tip_text(html)
    if tip:
        return tip
    soup = BeautifulSoup(html, "lxml")
    for selector in ERROR_SELECTORS:
        text = " ".join(el.get_text(" ", strip=True) for el in soup.select(selector)).strip()
        if text:
            return text
    return None


def detect_captcha(html: str, captcha_url: str) -> Optional[CaptchaInfo]:
    """检测页面脚本中的 config.captcha = {type: '...', id: '...'} 配置"""
    match = CAPTCHA_PATTERN.search(html or "")
    if not match:
        return None
    captcha_type, captcha_id = match.group(1), match.group(2)
    logger.debug(f"检测到验证码: type={captcha_type}, id={captcha_id}")
    return CaptchaInfo(id=captcha_id, type=captcha_type, image_url=f"{captcha_url}?captchaId={captcha_id}")


def build_login_form(html: str, username: str, password: str, captcha: Optional[str] = None) -> Dict[str, str]:
    """
    根据登录页表单重建完整的提交参数。

    保留门户注入的隐藏字段、已勾选的复选框和非空的其他输入框，
    用传入的凭证覆盖 username/password，把验证码填入表单声明的验证码字段，
    并确保存在 _eventId=submit。页面中找不到表单时退回到固定参数。

    返回:
        Dict[str, str]: 表单参数
    """
    soup = BeautifulSoup(html or "", "lxml")
    form = soup.select_one("form#fm1") or soup.select_one("form[action]")

    if form is None:
        params = {
            "username": username,
            "password": password,
            "submit": "登录",
            "type": "username_password",
            "execution": extract_execution(html) or "",
            "_eventId": "submit",
        }
        if captcha:
            params["captcha"] = captcha
        return params

    params: Dict[str, str] = {}
    declared = set()
    for field in form.select("input[name]"):
        name = field.get("name", "").strip()
        if not name:
            continue
        declared.add(name)
        if name in ("username", "password"):
            continue
        field_type = (field.get("type") or "text").strip().lower()
        value = field.get("value") or ""
        if field_type in ("submit", "button", "image"):
            continue
        if field_type in ("checkbox", "radio"):
            if field.has_attr("checked"):
                params[name] = value or "on"
        elif field_type == "hidden":
            params[name] = value
        elif value.strip():
            params[name] = value

    params["username"] = username
    params["password"] = password
    params["submit"] = "登录"

    if captcha:
        targets = [name for name in CAPTCHA_FIELDS if name in declared] or ["captcha"]
        for name in targets:
            params[name] = captcha

    if "_eventId" not in declared:
        params["_eventId"] = "submit"
    return params


def token_from_location(base: httpx.URL, location: str) -> Optional[str]:
    """重定向地址中的 token= 查询参数"""
    try:
        target = base.join(location)
    except httpx.InvalidURL:
        return None
    return target.params.get("token") or None


def next_hop(base: httpx.URL, location: str) -> httpx.URL:
    """解析重定向目标；Location 无法解析时视为上游协议错误"""
    try:
        return base.join(location)
    except httpx.InvalidURL as e:
        raise ProtocolError(f"无法解析的重定向地址: {location}") from e


# ----------------------------------------------------------------------
# 登录流程
# ----------------------------------------------------------------------
class CasClient:
    """
    在一个会话 (或候选会话) 的客户端上驱动 CAS 登录握手。

    参数:
        client (httpx.AsyncClient): 会话独占的客户端，Cookie 由其传输层持久化。
    """

    LOGIN_URL = "https://sso.buaa.edu.cn/login"
    CAPTCHA_URL = "https://sso.buaa.edu.cn/captcha"
    LOGOUT_URL = "https://sso.buaa.edu.cn/logout"
    MAX_REDIRECTS = 10

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch_login_page(self) -> LoginPage:
        """获取登录页并解析 execution 与验证码 (步骤 1~3)"""
        logger.info("--- [步骤 1] 获取 CAS 登录页 ---")
        response = await send(self.client, "GET", self.LOGIN_URL)
        if response.status_code != 200:
            logger.error(f"登录页加载失败，状态码: {response.status_code}")
            raise UpstreamUnavailableError(f"登录页加载失败 (HTTP {response.status_code})")
        html = response.text

        logger.info("--- [步骤 2] 提取 execution 动态口令 ---")
        execution = extract_execution(html)
        if not execution:
            tip = extract_tip_text(html)
            if tip:
                logger.warning(f"登录页直接给出了错误提示: {tip}")
                raise InvalidCredentialsError(tip)
            logger.error(f"未能从登录页提取 execution，页面片段: {truncate(html)}")
            raise ProtocolError("未能定位 execution 动态口令", status=response.status_code, body=html)
        logger.debug(f"execution: {execution[:10]}...")

        logger.info("--- [步骤 3] 检测验证码 ---")
        captcha = detect_captcha(html, self.CAPTCHA_URL)
        if captcha is not None:
            logger.info(f"登录页要求验证码 (type={captcha.type})")
        return LoginPage(url=str(response.url), html=html, execution=execution, captcha=captcha)

    async def submit(self, form: Dict[str, str]) -> str:
        """
        提交登录表单并逐跳跟随重定向 (步骤 5~7)。

        参数:
            form (Dict[str, str]): build_login_form() 生成的参数

        返回:
            str: 重定向链中 token= 参数的值
        """
        logger.info("--- [步骤 4] 提交登录凭证 ---")
        response = await send(self.client, "POST", self.LOGIN_URL, data=form, follow_redirects=False)
        logger.debug(f"登录表单提交完成，状态码: {response.status_code}")

        logger.info("--- [步骤 5] 跟随重定向 ---")
        hops = 0
        while response.is_redirect:
            location = response.headers["location"]
            token = token_from_location(response.url, location)
            if token:
                logger.info(f"在第 {hops} 跳拿到认证 token")
                return token
            if hops >= self.MAX_REDIRECTS:
                logger.error(f"重定向超过 {self.MAX_REDIRECTS} 跳，最后地址: {location}")
                raise TooManyRedirectsError(status=response.status_code)
            target = next_hop(response.url, location)
            logger.debug(f"跟随重定向: {target}")
            response = await send(self.client, "GET", target, follow_redirects=False)
            hops += 1

        body = response.text
        error = find_login_error(body)
        if error:
            logger.warning(f"登录被拒绝: {error}")
            raise InvalidCredentialsError(error)
        if response.status_code == 401:
            raise InvalidCredentialsError("账号或密码错误")
        logger.error(f"登录响应中既没有 token 也没有错误提示，状态码: {response.status_code}, 内容: {truncate(body)}")
        raise ProtocolError("登录未返回认证 token", status=response.status_code, body=body)

    async def fetch_captcha_image(self, captcha_id: str) -> Optional[bytes]:
        """用当前会话的 Cookie 获取验证码图片；失败返回 None"""
        try:
            response = await send(self.client, "GET", self.CAPTCHA_URL, params={"captchaId": captcha_id})
        except UbaaError as e:
            logger.warning(f"获取验证码图片失败: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"获取验证码图片失败，状态码: {response.status_code}")
            return None
        return response.content

    async def logout(self):
        """调用 SSO 注销接口；失败只记录日志"""
        try:
            response = await send(self.client, "GET", self.LOGOUT_URL)
            logger.debug(f"SSO 注销响应状态码: {response.status_code}")
        except UbaaError as e:
            logger.warning(f"调用 SSO 注销接口失败: {e}")

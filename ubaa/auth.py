"""
面向调用方 (路由层) 的认证服务：预加载、登录、刷新验证码、查询状态、注销。
"""
import base64
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .cas import CaptchaInfo, CasClient, LoginPage, build_login_form
from .config import Settings, settings as default_settings
from .errors import (
    CaptchaRequiredError,
    InvalidCredentialsError,
    ProtocolError,
    UbaaError,
    truncate,
)
from .session import Candidate, Session, SessionManager, UserIdentity
from .transport import send
from .vpn import to_vpn_url

logger = logging.getLogger(__name__)


@dataclass
class LoginPreload:
    already_authenticated: bool
    identity: Optional[UserIdentity] = None
    captcha_required: bool = False
    captcha: Optional[CaptchaInfo] = None
    execution: Optional[str] = None


@dataclass
class LoginResult:
    token: str
    identity: UserIdentity


@dataclass
class CaptchaChallenge:
    captcha: Optional[CaptchaInfo]
    execution: str


@dataclass
class SessionStatus:
    username: str
    identity: UserIdentity
    authenticated_at: int
    last_activity: int


class AuthService:
    """
    北航统一身份认证服务。

    参数:
        sessions (SessionManager): 注入的会话管理器
        settings (Settings): 配置

    使用方法:
        auth = AuthService(SessionManager())
        try:
            result = await auth.login("学号", "密码")
        except CaptchaRequiredError as e:
            # 展示 e.captcha，之后带上同一个 e.execution 重新调用 login()
            ...
    """

    # 用户中心 (UC) 相关 URL
    UC_LOGIN_URL = "https://uc.buaa.edu.cn/api/login?target=https%3A%2F%2Fuc.buaa.edu.cn%2F%23%2Fuser%2Flogin"
    UC_STATUS_URL = "https://uc.buaa.edu.cn/api/uc/status"
    UC_REFERER = "https://uc.buaa.edu.cn/#/user/login"
    # 本研教务系统 (BYXT)
    BYXT_INDEX_URL = "https://byxt.buaa.edu.cn/jwapp/sys/homeapp/index.do"
    BYXT_USER_INFO_URL = "https://byxt.buaa.edu.cn/jwapp/sys/homeapp/api/home/getUserInfo.do"

    XHR_ACCEPT = "application/json, text/javascript, */*; q=0.01"

    def __init__(self, sessions: SessionManager, settings: Optional[Settings] = None):
        self.sessions = sessions
        self.settings = settings or default_settings

    async def preload_login(self, username: str) -> LoginPreload:
        """
        预加载登录状态。

        已有可用会话时直接返回身份 (静默登录)；否则抓取登录页，
        暂存候选会话，并告知调用方是否需要验证码。
        """
        identity = await self._reuse_session(username)
        if identity is not None:
            return LoginPreload(already_authenticated=True, identity=identity)

        candidate = await self._claim_or_prepare(username)
        page = await self._load_page(candidate)
        await self.sessions.stash_candidate(candidate)
        return LoginPreload(
            already_authenticated=False,
            captcha_required=page.captcha is not None,
            captcha=page.captcha,
            execution=page.execution,
        )

    async def login(
        self,
        username: str,
        password: str,
        captcha: Optional[str] = None,
        execution: Optional[str] = None,
    ) -> LoginResult:
        """
        执行完整的登录流程。

        参数:
            username (str): 学号
            password (str): 密码
            captcha (str): 验证码答案 (可选)
            execution (str): 预加载或上一次 CaptchaRequiredError 给出的 execution (可选)

        返回:
            LoginResult: 认证 token 与用户身份

        异常:
            CaptchaRequiredError: 需要验证码，候选会话已暂存，请带上同一个 execution 重试
            InvalidCredentialsError / UpstreamUnavailableError / ProtocolError
        """
        logger.info(f"开始为用户 {username} 登录")
        candidate = await self.sessions.claim_candidate(username)

        if candidate is None and not (captcha and execution):
            session = await self.sessions.get(username)
            if session is not None:
                identity = await self._try_verify(session)
                if identity is not None:
                    logger.info(f"复用用户 {username} 的现有会话")
                    return LoginResult(token=session.token or "", identity=identity)
                await self.sessions.invalidate(username)

        if candidate is None:
            candidate = self.sessions.prepare_candidate(username)

        try:
            cas = CasClient(candidate.client)
            page = candidate.login_page
            candidate.login_page = None
            if page is None:
                page = await cas.fetch_login_page()

            if page.captcha is not None and not captcha:
                logger.info(f"用户 {username} 需要输入验证码")
                await self._attach_captcha_image(cas, page.captcha)
                candidate.login_page = page
                await self.sessions.stash_candidate(candidate)
                raise CaptchaRequiredError(page.captcha, page.execution)

            form = build_login_form(page.html, username, password, captcha)
            if execution:
                if execution != page.execution:
                    logger.warning(f"提交的 execution 与登录页不一致: {execution[:10]}... != {page.execution[:10]}...")
                form["execution"] = execution

            token = await cas.submit(form)
            identity = await self._establish_identity(candidate.client)
            await self._initialize_byxt(candidate.client)
            await self.sessions.commit(candidate, identity, token)
        except CaptchaRequiredError:
            raise
        except Exception:
            await self.sessions.discard(candidate)
            raise

        logger.info(f"--- 用户 {username} ({identity.name}) 认证成功 ---")
        return LoginResult(token=token, identity=identity)

    async def refresh_captcha(self, username: str) -> CaptchaChallenge:
        """只重新执行步骤 1~3，获取新的验证码与 execution，不触碰凭证与现有会话"""
        candidate = await self._claim_or_prepare(username)
        page = await self._load_page(candidate)
        await self.sessions.stash_candidate(candidate)
        return CaptchaChallenge(captcha=page.captcha, execution=page.execution)

    async def get_status(self, username: str) -> SessionStatus:
        session = await self.sessions.require(username)
        return SessionStatus(
            username=username,
            identity=session.identity,
            authenticated_at=session.authenticated_at,
            last_activity=session.last_activity,
        )

    async def logout(self, username: str):
        """调用 SSO 注销接口并销毁本地会话"""
        pending = await self.sessions.claim_candidate(username)
        if pending is not None:
            await self.sessions.discard(pending)

        session = await self.sessions.get(username)
        if session is None:
            logger.warning(f"用户 {username} 没有活动会话")
            return
        await CasClient(session.client).logout()
        await self.sessions.invalidate(username)

    # ------------------------------------------------------------------
    # 内部步骤
    # ------------------------------------------------------------------
    async def _claim_or_prepare(self, username: str) -> Candidate:
        candidate = await self.sessions.claim_candidate(username)
        if candidate is None:
            candidate = self.sessions.prepare_candidate(username)
        return candidate

    async def _load_page(self, candidate: Candidate) -> LoginPage:
        """在候选会话上抓取登录页；出错时丢弃候选会话"""
        cas = CasClient(candidate.client)
        try:
            page = await cas.fetch_login_page()
            if page.captcha is not None:
                await self._attach_captcha_image(cas, page.captcha)
        except Exception:
            await self.sessions.discard(candidate)
            raise
        candidate.login_page = page
        return page

    async def _attach_captcha_image(self, cas: CasClient, captcha: CaptchaInfo):
        """用同一会话的 Cookie 获取验证码图片，调用方无需再单独请求"""
        image = await cas.fetch_captcha_image(captcha.id)
        if image is not None:
            captcha.base64_image = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")

    async def _reuse_session(self, username: str) -> Optional[UserIdentity]:
        session = await self.sessions.get(username)
        if session is None:
            return None
        identity = await self._try_verify(session)
        if identity is None:
            logger.info(f"用户 {username} 的缓存会话已失效，需要重新认证")
            await self.sessions.invalidate(username)
        return identity

    async def _try_verify(self, session: Session) -> Optional[UserIdentity]:
        try:
            return await self._verify_session(session.client)
        except UbaaError as e:
            logger.info(f"会话校验失败: {e}")
            return None

    async def _establish_identity(self, client: httpx.AsyncClient) -> UserIdentity:
        """触发 UC 服务登录并读取用户身份"""
        logger.info("--- [步骤 6] 触发用户中心登录并校验身份 ---")
        await send(client, "GET", to_vpn_url(self.UC_LOGIN_URL, self.settings.use_vpn))
        identity = await self._verify_session(client)
        if identity is None:
            raise ProtocolError("用户中心未返回登录状态")
        return identity

    async def _verify_session(self, client: httpx.AsyncClient) -> Optional[UserIdentity]:
        """
        访问 UC 状态接口校验会话。

        返回:
            UserIdentity；接口返回非 JSON (通常是被重定向到了登录页) 时返回 None
        """
        response = await send(
            client,
            "GET",
            to_vpn_url(self.UC_STATUS_URL, self.settings.use_vpn),
            headers={
                "Accept": self.XHR_ACCEPT,
                "X-Requested-With": "XMLHttpRequest",
                "Referer": self.UC_REFERER,
            },
        )
        body = response.text
        logger.debug(f"状态接口响应: {response.status_code} {truncate(body)}")
        if response.status_code != 200:
            raise ProtocolError("状态接口返回异常", status=response.status_code, body=body)

        if not body.lstrip().startswith(("{", "[")):
            logger.warning("状态接口返回了非 JSON 内容，可能被重定向到了登录页")
            return None
        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError("状态接口返回的 JSON 无法解析", status=response.status_code, body=body) from e

        code = payload.get("code") if isinstance(payload, dict) else None
        if code == 0:
            data = payload.get("data") or {}
            return UserIdentity(name=data.get("name") or "", school_id=data.get("schoolid") or "")
        if code == 10600:
            raise InvalidCredentialsError("登录失败：账号或密码错误")
        raise ProtocolError(f"登录失败：状态接口返回 code={code}", status=response.status_code, body=body)

    async def _initialize_byxt(self, client: httpx.AsyncClient):
        """
        (可选) 访问本研教务首页，借助 SSO 重定向建立 BYXT 会话。
        失败不影响登录结果。
        """
        index_url = to_vpn_url(self.BYXT_INDEX_URL, self.settings.use_vpn)
        try:
            response = await send(client, "GET", index_url)
            if response.status_code != 200:
                logger.warning(f"BYXT 首页返回异常状态码: {response.status_code}")
                return
            api_response = await send(
                client,
                "GET",
                to_vpn_url(self.BYXT_USER_INFO_URL, self.settings.use_vpn),
                headers={"Accept": self.XHR_ACCEPT, "X-Requested-With": "XMLHttpRequest", "Referer": index_url},
            )
        except UbaaError as e:
            logger.warning(f"初始化 BYXT 会话失败: {e}")
            return

        if api_response.status_code == 200 and '"code":"0"' in api_response.text:
            logger.info("BYXT 会话初始化成功")
        else:
            logger.warning(f"BYXT 接口校验返回异常: {api_response.status_code} {truncate(api_response.text)}")

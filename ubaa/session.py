"""
每用户会话管理。

一个 Session = 一个独占的 httpx.AsyncClient + 一个独占的 CookieStore 实例。
登录过程中先创建 Candidate (候选会话)，认证成功后再原子地提交为正式 Session。
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .config import Settings, settings as default_settings
from .cookies import CookieStore, now_ms
from .errors import SessionExpiredError, UnauthenticatedError
from .session_store import SessionStore
from .transport import CookieStoreTransport, null_cookie_jar

logger = logging.getLogger(__name__)

# 上游系统会校验这些请求头
DEFAULT_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/58.0.3029.110 Safari/537.3',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7',
    'Accept-Language': 'zh-CN,zh;q=0.9',
}

TransportFactory = Callable[[], httpx.AsyncBaseTransport]
RemovalHook = Callable[[str], None]


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class UserIdentity:
    """上游 (UC 用户中心) 返回的用户身份"""
    name: str
    school_id: str


@dataclass
class Candidate:
    """
    登录过程中的候选会话。

    owner 是 Cookie 行的临时归属键 ("<用户名>#<随机串>")，
    保证候选会话的 Cookie 不会和同一用户的现有会话混在一起。
    login_page 保存最近一次抓取的登录页，验证码往返时需要复用同一个 execution。
    """
    username: str
    owner: str
    client: httpx.AsyncClient
    cookie_store: CookieStore
    transport: CookieStoreTransport
    created_at: int
    login_page: Optional[Any] = None
    committed: bool = False


@dataclass
class Session:
    username: str
    client: httpx.AsyncClient
    cookie_store: CookieStore
    transport: CookieStoreTransport
    identity: UserIdentity
    authenticated_at: int
    last_activity: int
    token: Optional[str] = None
    closed: bool = field(default=False, repr=False)

    def is_expired(self, ttl_ms: int, now: Optional[int] = None) -> bool:
        now = now if now is not None else now_ms()
        return now - self.last_activity > ttl_ms

    def mark_active(self, now: Optional[int] = None):
        self.last_activity = now if now is not None else now_ms()


class SessionManager:
    """
    会话注册表。显式构造并注入到需要会话的组件中，不使用全局单例。

    参数:
        settings (Settings): 配置，默认使用模块级 settings。
        cookie_db_path (str): Cookie 与会话元数据所在的 SQLite 文件，默认 settings.database_path。
        session_store (SessionStore): 会话元数据存储，默认基于 cookie_db_path 创建。
        transport_factory: 返回底层传输层的工厂函数，测试中用来注入 httpx.MockTransport。

    同一用户名的提交、注销、过期清理都在该用户名的 asyncio.Lock 内完成；
    不同用户之间没有任何共享锁。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cookie_db_path: Optional[str] = None,
        session_store: Optional[SessionStore] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.settings = settings or default_settings
        self.cookie_db_path = cookie_db_path or self.settings.database_path
        self.session_store = session_store or SessionStore(self.cookie_db_path)
        self._transport_factory = transport_factory or self._default_transport
        self._sessions: Dict[str, Session] = {}
        self._pending: Dict[str, Candidate] = {}
        self._locks: Dict[str, _UserLock] = {}
        self._removal_hooks: List[RemovalHook] = []

    @property
    def ttl_ms(self) -> int:
        return self.settings.session_ttl_minutes * 60 * 1000

    def add_removal_hook(self, hook: RemovalHook):
        """注册会话移除 (注销或过期) 时的回调，参数为用户名"""
        self._removal_hooks.append(hook)

    def _notify_removed(self, username: str):
        for hook in self._removal_hooks:
            hook(username)

    @asynccontextmanager
    async def _user_lock(self, username: str):
        """
        获取用户名对应的锁。

        持有或等待该锁的协程数归零后锁条目被删除，
        因此只查询过一次的用户名不会永久占用内存。
        """
        entry = self._locks.get(username)
        if entry is None:
            entry = self._locks[username] = _UserLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[username]

    # ------------------------------------------------------------------
    # HTTP 客户端
    # ------------------------------------------------------------------
    def _default_transport(self) -> httpx.AsyncBaseTransport:
        return httpx.AsyncHTTPTransport(verify=self.settings.verify_ssl, proxy=self.settings.proxy)

    def _build_client(self, store: CookieStore, owner: str) -> Tuple[httpx.AsyncClient, CookieStoreTransport]:
        """创建一个绑定到 store 的客户端，客户端自身的 cookie jar 被禁用"""
        transport = CookieStoreTransport(
            store, owner, self._transport_factory(), timeout=self.settings.request_timeout
        )
        timeout = httpx.Timeout(
            self.settings.request_timeout,
            connect=self.settings.connect_timeout,
            read=self.settings.socket_timeout,
            write=self.settings.socket_timeout,
        )
        client = httpx.AsyncClient(
            transport=transport,
            headers=DEFAULT_HEADERS,
            cookies=null_cookie_jar(),
            timeout=timeout,
            follow_redirects=True,
            trust_env=False,
        )
        return client, transport

    # ------------------------------------------------------------------
    # 候选会话
    # ------------------------------------------------------------------
    def prepare_candidate(self, username: str) -> Candidate:
        """
        为一次登录尝试分配全新的客户端和空的 Cookie 空间。

        认证失败时调用方负责通过 discard() 释放。
        """
        owner = f"{username}#{uuid.uuid4().hex}"
        store = CookieStore(self.cookie_db_path)
        client, transport = self._build_client(store, owner)
        logger.debug(f"为用户 {username} 创建候选会话 {owner}")
        return Candidate(
            username=username,
            owner=owner,
            client=client,
            cookie_store=store,
            transport=transport,
            created_at=now_ms(),
        )

    async def stash_candidate(self, candidate: Candidate):
        """暂存候选会话，等待验证码往返；同一用户之前暂存的候选会话被丢弃"""
        async with self._user_lock(candidate.username):
            previous = self._pending.get(candidate.username)
            self._pending[candidate.username] = candidate
        if previous is not None and previous is not candidate:
            await self.discard(previous)

    async def claim_candidate(self, username: str) -> Optional[Candidate]:
        async with self._user_lock(username):
            return self._pending.pop(username, None)

    async def discard(self, candidate: Candidate):
        """关闭候选会话的客户端并删除其临时 Cookie；已提交的候选会话不做任何处理"""
        if candidate.committed:
            return
        await candidate.client.aclose()
        candidate.cookie_store.clear(candidate.owner)
        candidate.cookie_store.close()
        logger.debug(f"已丢弃候选会话 {candidate.owner}")

    # ------------------------------------------------------------------
    # 正式会话
    # ------------------------------------------------------------------
    async def commit(self, candidate: Candidate, identity: UserIdentity, token: Optional[str] = None) -> Session:
        """
        把候选会话原子地提升为正式会话。

        同一用户名的旧会话会被替换并关闭其客户端。
        两个并发的 commit 会被串行化，后提交者胜出，先提交者的客户端被关闭。
        """
        username = candidate.username
        async with self._user_lock(username):
            store = candidate.cookie_store
            store.clear(username)
            store.migrate(candidate.owner, username)
            candidate.transport.owner = username
            candidate.committed = True

            now = now_ms()
            session = Session(
                username=username,
                client=candidate.client,
                cookie_store=store,
                transport=candidate.transport,
                identity=identity,
                authenticated_at=now,
                last_activity=now,
                token=token,
            )
            previous = self._sessions.get(username)
            self._sessions[username] = session
            if self._pending.get(username) is candidate:
                del self._pending[username]
            self.session_store.save(username, identity.name, identity.school_id, now, now)

            if previous is not None:
                await self._close(previous)
        logger.info(f"用户 {username} 的会话已建立")
        return session

    async def _close(self, session: Session):
        if session.closed:
            return
        session.closed = True
        await session.client.aclose()
        session.cookie_store.close()

    def _restore(self, username: str, now: int) -> Tuple[Optional[Session], bool]:
        """根据持久化的元数据重建会话 (进程重启后)"""
        record = self.session_store.load(username)
        if record is None:
            return None, False
        if now - record.last_activity > self.ttl_ms:
            self.session_store.delete(username)
            logger.info(f"用户 {username} 的持久化会话已过期，已清理")
            return None, True

        store = CookieStore(self.cookie_db_path)
        client, transport = self._build_client(store, username)
        session = Session(
            username=username,
            client=client,
            cookie_store=store,
            transport=transport,
            identity=UserIdentity(name=record.name or "", school_id=record.school_id or ""),
            authenticated_at=record.authenticated_at,
            last_activity=record.last_activity,
        )
        self._sessions[username] = session
        logger.info(f"已从持久化记录恢复用户 {username} 的会话")
        return session, False

    async def _remove(self, username: str):
        """在用户锁内调用：移除并关闭会话，删除持久化数据并通知回调"""
        session = self._sessions.pop(username, None)
        self.session_store.delete(username)
        if session is not None:
            await self._close(session)
        self._notify_removed(username)

    async def _lookup(self, username: str) -> Tuple[Optional[Session], bool]:
        """返回 (会话, 是否因过期被移除)"""
        async with self._user_lock(username):
            now = now_ms()
            session = self._sessions.get(username)
            if session is None:
                session, expired = self._restore(username, now)
                if session is None:
                    return None, expired

            if session.is_expired(self.ttl_ms, now):
                await self._remove(username)
                logger.info(f"用户 {username} 的会话已过期")
                return None, True

            session.mark_active(now)
            self.session_store.update_last_activity(username, now)
            return session, False

    async def get(self, username: str) -> Optional[Session]:
        session, _ = await self._lookup(username)
        return session

    async def require(self, username: str) -> Session:
        session, expired = await self._lookup(username)
        if session is None:
            if expired:
                raise SessionExpiredError()
            raise UnauthenticatedError()
        return session

    async def invalidate(self, username: str):
        """移除并关闭会话，同时删除其元数据与 Cookie"""
        async with self._user_lock(username):
            await self._remove(username)
        logger.info(f"用户 {username} 的会话已注销")

    async def sweep_expired(self) -> int:
        """清理所有过期会话与过期的候选会话，返回清理的会话数"""
        removed = 0
        now = now_ms()
        for username in list(self._sessions):
            async with self._user_lock(username):
                session = self._sessions.get(username)
                if session is None or not session.is_expired(self.ttl_ms, now):
                    continue
                await self._remove(username)
                removed += 1

        stale: List[Candidate] = []
        for username in list(self._pending):
            async with self._user_lock(username):
                candidate = self._pending.get(username)
                if candidate is not None and now - candidate.created_at > self.ttl_ms:
                    stale.append(self._pending.pop(username))
        for candidate in stale:
            await self.discard(candidate)

        if removed or stale:
            logger.info(f"清理了 {removed} 个过期会话，{len(stale)} 个过期候选会话")
        return removed

    async def run_sweeper(self, interval: Optional[float] = None):
        """后台定时清理，作为独立任务运行: asyncio.create_task(manager.run_sweeper())"""
        interval = interval or self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"定时清理会话失败: {e}", exc_info=True)

    def active_usernames(self) -> List[str]:
        return list(self._sessions)

    async def close(self):
        """关闭全部会话与候选会话 (不删除持久化数据)"""
        for username in list(self._pending):
            candidate = self._pending.pop(username)
            await self.discard(candidate)
        for username in list(self._sessions):
            session = self._sessions.pop(username)
            await self._close(session)
        self.session_store.close()

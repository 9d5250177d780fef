"""
把 CookieStore 接入 httpx 的传输层。

httpx 在发送请求时会把客户端自带的 cookie jar 复制一份使用，无法直接替换为数据库存储；
因此在传输层拦截：发送前从 CookieStore 读取 Cookie 头，收到响应后把 Set-Cookie 写回。
httpx 自动跟随的每一跳重定向同样会经过这里。
"""
import asyncio
import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy, parse_ns_headers
from typing import Optional

import httpx

from .cookies import CookieRecord, CookieStore, now_ms
from .errors import TooManyRedirectsError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


def parse_set_cookie(header: str, now: Optional[int] = None) -> Optional[CookieRecord]:
    """
    解析一条 Set-Cookie 头。

    返回:
        CookieRecord，无法解析时返回 None。
    """
    parsed = parse_ns_headers([header])
    if not parsed or not parsed[0]:
        return None
    pairs = parsed[0]
    name, value = pairs[0]
    if not name:
        return None

    record = CookieRecord(name=name, value=value or "", created_at=now or now_ms())
    for key, attr in pairs[1:]:
        lc = key.lower()
        if lc == "domain" and attr:
            record.domain = attr
        elif lc == "path" and attr:
            record.path = attr
        elif lc == "expires" and attr is not None:
            # parse_ns_headers 已把日期转换为 epoch 秒
            record.expires_at = int(attr) * 1000
        elif lc == "max-age" and attr is not None:
            try:
                record.max_age = max(0, int(attr))
            except ValueError:
                logger.debug(f"忽略无法解析的 Max-Age: {attr}")
        elif lc == "secure":
            record.secure = True
        elif lc == "httponly":
            record.http_only = True
    return record


def null_cookie_jar() -> CookieJar:
    """拒绝一切 Cookie 的 jar，让 httpx 客户端自身不保存任何 Cookie"""
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


class DeadlineStream(httpx.AsyncByteStream):
    """响应体流，读取时受整次请求的截止时间约束"""

    def __init__(self, stream: httpx.AsyncByteStream, request: httpx.Request, deadline: float):
        self._stream = stream
        self._request = request
        self._deadline = deadline

    async def __aiter__(self):
        loop = asyncio.get_running_loop()
        chunks = self._stream.__aiter__()
        while True:
            remaining = self._deadline - loop.time()
            if remaining <= 0:
                raise httpx.ReadTimeout("读取响应超过请求时限", request=self._request)
            try:
                chunk = await asyncio.wait_for(chunks.__anext__(), remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise httpx.ReadTimeout("读取响应超过请求时限", request=self._request) from e
            yield chunk

    async def aclose(self) -> None:
        await self._stream.aclose()


class CookieStoreTransport(httpx.AsyncBaseTransport):
    """
    带持久化 Cookie 的传输层包装。

    参数:
        store (CookieStore): 会话独占的 Cookie 存储。
        owner (str): Cookie 行的归属键；候选会话提交后会被改写为用户名。
        inner: 实际发送请求的传输层，测试中可替换为 httpx.MockTransport。
        timeout (float): 单次请求 (含读取响应体) 的总时限，秒；None 表示不限。
            httpx 的超时只约束每一次读写，上游逐字节慢速返回时不会触发。
    """

    def __init__(
        self,
        store: CookieStore,
        owner: str,
        inner: httpx.AsyncBaseTransport,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.owner = owner
        self.timeout = timeout
        self._inner = inner

    async def _send(self, request: httpx.Request) -> httpx.Response:
        if self.timeout is None:
            return await self._inner.handle_async_request(request)

        deadline = asyncio.get_running_loop().time() + self.timeout
        try:
            response = await asyncio.wait_for(self._inner.handle_async_request(request), self.timeout)
        except asyncio.TimeoutError as e:
            raise httpx.ReadTimeout("等待响应超过请求时限", request=request) from e
        response.stream = DeadlineStream(response.stream, request, deadline)
        return response

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        cookies = self.store.get(self.owner, request.url)
        if cookies:
            request.headers["Cookie"] = "; ".join(f"{c.name}={c.value}" for c in cookies)

        response = await self._send(request)

        for header in response.headers.get_list("set-cookie"):
            record = parse_set_cookie(header)
            if record is None:
                continue
            self.store.put(self.owner, record, request.url)
        return response

    async def aclose(self) -> None:
        await self._inner.aclose()


async def send(client: httpx.AsyncClient, method: str, url, **kwargs) -> httpx.Response:
    """
    发送请求，并把 httpx 的网络层异常转换为核心异常。

    超时与连接错误 -> UpstreamUnavailableError；
    httpx 自动跟随重定向超限 -> TooManyRedirectsError。
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.error(f"请求超时: {method} {url}")
        raise UpstreamUnavailableError(f"请求超时: {url}") from e
    except httpx.TooManyRedirects as e:
        raise TooManyRedirectsError(f"重定向次数过多: {url}") from e
    except httpx.TransportError as e:
        logger.error(f"网络错误: {method} {url} ({e})")
        raise UpstreamUnavailableError(f"网络错误: {e}") from e

"""
基于 SQLite 的持久化 Cookie 存储。

每一行 Cookie 归属于一个 owner (通常为用户名，登录过程中为候选会话的临时键)，
由 (owner, name, domain, path) 唯一确定。过期的 Cookie 在读取时被惰性删除。
"""
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

URLTypes = Union[str, httpx.URL]

_UPSERT_SQL = """
    INSERT INTO cookies(username, name, value, domain, path, expires_at, secure, http_only, max_age, created_at)
    VALUES(?,?,?,?,?,?,?,?,?,?)
    ON CONFLICT(username, name, domain, path) DO UPDATE SET
        value=excluded.value,
        expires_at=excluded.expires_at,
        secure=excluded.secure,
        http_only=excluded.http_only,
        max_age=excluded.max_age,
        created_at=excluded.created_at
"""

_MIGRATE_SQL = """
    INSERT INTO cookies(username, name, value, domain, path, expires_at, secure, http_only, max_age, created_at)
    SELECT ?, name, value, domain, path, expires_at, secure, http_only, max_age, created_at
    FROM cookies WHERE username=?
    ON CONFLICT(username, name, domain, path) DO UPDATE SET
        value=excluded.value,
        expires_at=excluded.expires_at,
        secure=excluded.secure,
        http_only=excluded.http_only,
        max_age=excluded.max_age,
        created_at=excluded.created_at
"""


def now_ms() -> int:
    """当前时间 (epoch 毫秒)"""
    return int(time.time() * 1000)


@dataclass
class CookieRecord:
    """
    一条 Cookie 记录。

    expires_at 与 created_at 均为 epoch 毫秒；max_age 单位为秒，-1 表示未设置。
    domain/path 为空时，写入存储时分别以请求的 host 与 path 补齐。
    """
    name: str
    value: str
    domain: str = ""
    path: str = ""
    expires_at: Optional[int] = None
    secure: bool = False
    http_only: bool = False
    max_age: int = -1
    created_at: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        if self.expires_at is not None and self.expires_at <= now:
            return True
        if self.max_age >= 0 and self.created_at is not None:
            return self.created_at + self.max_age * 1000 <= now
        return False


def domain_matches(host: str, domain: str) -> bool:
    """host 与 domain 相同，或为其子域名 (大小写不敏感)"""
    clean_domain = domain.lstrip(".").lower()
    clean_host = host.lower()
    return clean_host == clean_domain or clean_host.endswith("." + clean_domain)


def path_matches(request_path: str, cookie_path: str) -> bool:
    """前缀匹配：cookie path 补齐结尾的 '/' 后作为前缀比较"""
    request_path = request_path or "/"
    base = cookie_path.rstrip("/")
    return request_path == base or request_path.startswith(base + "/")


class CookieStore:
    """
    一个会话独占的 Cookie 存储实例。

    参数:
        db_path (str): SQLite 数据库文件路径，多个实例可以共享同一个文件。

    每个实例持有一个连接和一把互斥锁，所有读写均在锁内进行，
    保证"先写后读"的顺序能观察到自己的写入。
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self._ensure_schema()

    def _ensure_schema(self):
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cookies (
                    username TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    domain TEXT NOT NULL,
                    path TEXT NOT NULL,
                    expires_at INTEGER,
                    secure INTEGER NOT NULL DEFAULT 0,
                    http_only INTEGER NOT NULL DEFAULT 0,
                    max_age INTEGER NOT NULL DEFAULT -1,
                    created_at INTEGER NOT NULL,
                    PRIMARY KEY(username, name, domain, path)
                )
                """
            )
            self._conn.commit()

    def put(self, username: str, cookie: CookieRecord, url: URLTypes, now: Optional[int] = None) -> bool:
        """
        写入 (或覆盖) 一条 Cookie。

        Domain 属性必须与响应的 host 相同或为其父域名，否则丢弃并返回 False。
        """
        url = httpx.URL(url)
        if cookie.domain and not domain_matches(url.host, cookie.domain):
            logger.warning(f"丢弃跨域 Cookie: {cookie.name} (domain={cookie.domain}, host={url.host})")
            return False
        domain = (cookie.domain or url.host).lstrip(".").lower()
        path = cookie.path or url.path or "/"
        created_at = cookie.created_at if cookie.created_at is not None else (now or now_ms())

        with self._lock:
            self._conn.execute(
                _UPSERT_SQL,
                (
                    username,
                    cookie.name,
                    cookie.value,
                    domain,
                    path,
                    cookie.expires_at,
                    int(cookie.secure),
                    int(cookie.http_only),
                    cookie.max_age,
                    created_at,
                ),
            )
            self._conn.commit()
        return True

    def get(self, username: str, url: URLTypes, now: Optional[int] = None) -> List[CookieRecord]:
        """
        返回适用于该请求 URL 的全部未过期 Cookie。

        扫描过程中遇到的过期记录会被顺带删除。
        """
        url = httpx.URL(url)
        now = now if now is not None else now_ms()
        is_https = url.scheme == "https"
        results: List[CookieRecord] = []
        expired = []

        with self._lock:
            rows = self._conn.execute(
                "SELECT name, value, domain, path, expires_at, secure, http_only, max_age, created_at "
                "FROM cookies WHERE username=?",
                (username,),
            ).fetchall()
            for name, value, domain, path, expires_at, secure, http_only, max_age, created_at in rows:
                record = CookieRecord(
                    name=name,
                    value=value,
                    domain=domain,
                    path=path,
                    expires_at=expires_at,
                    secure=bool(secure),
                    http_only=bool(http_only),
                    max_age=max_age,
                    created_at=created_at,
                )
                if record.is_expired(now):
                    expired.append((username, name, domain, path))
                    continue
                if not domain_matches(url.host, domain):
                    continue
                if not path_matches(url.path, path):
                    continue
                if record.secure and not is_https:
                    continue
                results.append(record)

            if expired:
                self._conn.executemany(
                    "DELETE FROM cookies WHERE username=? AND name=? AND domain=? AND path=?",
                    expired,
                )
                self._conn.commit()
                logger.debug(f"清理了 {len(expired)} 条过期 Cookie")
        return results

    def clear(self, username: str):
        """删除该 owner 名下的全部 Cookie"""
        with self._lock:
            self._conn.execute("DELETE FROM cookies WHERE username=?", (username,))
            self._conn.commit()

    def migrate(self, old_username: str, new_username: str):
        """把 old 名下的 Cookie 整体迁移 (upsert) 到 new 名下，并删除 old 的记录"""
        if old_username == new_username:
            return
        with self._lock:
            self._conn.execute(_MIGRATE_SQL, (new_username, old_username))
            self._conn.execute("DELETE FROM cookies WHERE username=?", (old_username,))
            self._conn.commit()

    def count(self, username: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM cookies WHERE username=?", (username,)
            ).fetchone()
        return row[0]

    def close(self):
        with self._lock:
            self._conn.close()

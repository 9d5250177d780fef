import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .cookies import CookieStore

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    """持久化的会话元数据 (时间均为 epoch 毫秒)"""
    username: str
    name: str
    school_id: str
    authenticated_at: int
    last_activity: int


class SessionStore:
    """
    会话元数据表 (sessions)。

    只保存身份信息与时间戳，用于进程重启后恢复会话；
    HTTP 客户端本身仍需在内存中基于持久化的 Cookie 重建。
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self._cookies = CookieStore(db_path)
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    username TEXT PRIMARY KEY,
                    name TEXT,
                    schoolid TEXT,
                    authenticated_at INTEGER NOT NULL,
                    last_activity INTEGER NOT NULL
                )
                """
            )
            self._conn.commit()

    def save(self, username: str, name: str, school_id: str, authenticated_at: int, last_activity: int):
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sessions(username, name, schoolid, authenticated_at, last_activity)
                VALUES(?,?,?,?,?)
                ON CONFLICT(username) DO UPDATE SET
                    name=excluded.name,
                    schoolid=excluded.schoolid,
                    authenticated_at=excluded.authenticated_at,
                    last_activity=excluded.last_activity
                """,
                (username, name, school_id, authenticated_at, last_activity),
            )
            self._conn.commit()

    def update_last_activity(self, username: str, last_activity: int):
        with self._lock:
            self._conn.execute(
                "UPDATE sessions SET last_activity=? WHERE username=?",
                (last_activity, username),
            )
            self._conn.commit()

    def load(self, username: str) -> Optional[SessionRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT username, name, schoolid, authenticated_at, last_activity "
                "FROM sessions WHERE username=?",
                (username,),
            ).fetchone()
        if row is None:
            return None
        return SessionRecord(*row)

    def usernames(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute("SELECT username FROM sessions").fetchall()
        return [row[0] for row in rows]

    def delete(self, username: str):
        """删除会话记录，同时删除该用户的全部 Cookie"""
        with self._lock:
            self._conn.execute("DELETE FROM sessions WHERE username=?", (username,))
            self._conn.commit()
        self._cookies.clear(username)

    def delete_all(self):
        with self._lock:
            self._conn.execute("DELETE FROM sessions")
            self._conn.commit()
        logger.info("已清空全部会话记录")

    def close(self):
        with self._lock:
            self._conn.close()
        self._cookies.close()

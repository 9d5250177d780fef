"""
SessionManager 的测试：原子提交、并发提交、过期清理与进程重启后的恢复。
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import open_session
from ubaa.cookies import CookieRecord, CookieStore, now_ms
from ubaa.errors import SessionExpiredError, UnauthenticatedError
from ubaa.session import SessionManager, UserIdentity
from ubaa.session_store import SessionStore

USER = "21371234"
SSO = "https://sso.buaa.edu.cn/login"


@pytest.mark.asyncio
async def test_commit_makes_session_visible(sessions):
    session = await open_session(sessions, USER)

    assert await sessions.get(USER) is session
    assert session.identity == UserIdentity(name="张三", school_id=USER)
    assert session.authenticated_at <= session.last_activity
    assert sessions.active_usernames() == [USER]
    assert sessions.session_store.load(USER).name == "张三"


@pytest.mark.asyncio
async def test_concurrent_commits_leave_one_live_client(sessions):
    first = sessions.prepare_candidate(USER)
    second = sessions.prepare_candidate(USER)
    identity = UserIdentity(name="张三", school_id=USER)

    await asyncio.gather(sessions.commit(first, identity), sessions.commit(second, identity))

    live = await sessions.get(USER)
    assert live.client in (first.client, second.client)
    assert not live.client.is_closed
    closed = [c for c in (first.client, second.client) if c.is_closed]
    assert len(closed) == 1


@pytest.mark.asyncio
async def test_commit_replaces_and_closes_previous_session(sessions):
    old = await open_session(sessions, USER)
    new = await open_session(sessions, USER)

    assert await sessions.get(USER) is new
    assert old.client.is_closed
    assert old.closed


@pytest.mark.asyncio
async def test_commit_moves_candidate_cookies_to_username(sessions, db_path):
    candidate = sessions.prepare_candidate(USER)
    candidate.cookie_store.put(candidate.owner, CookieRecord("CASTGC", "TGT-1", path="/"), SSO)

    await sessions.commit(candidate, UserIdentity(name="张三", school_id=USER))

    assert candidate.transport.owner == USER
    store = CookieStore(db_path)
    try:
        assert store.count(candidate.owner) == 0
        assert [c.name for c in store.get(USER, SSO)] == ["CASTGC"]
    finally:
        store.close()


@pytest.mark.asyncio
async def test_candidate_cookies_do_not_leak_into_live_session(sessions, db_path):
    await open_session(sessions, USER)
    candidate = sessions.prepare_candidate(USER)
    candidate.cookie_store.put(candidate.owner, CookieRecord("SESSION", "pending", path="/"), SSO)

    store = CookieStore(db_path)
    try:
        assert store.get(USER, SSO) == []
    finally:
        store.close()
    await sessions.discard(candidate)


@pytest.mark.asyncio
async def test_discard_closes_client_and_drops_cookies(sessions, db_path):
    candidate = sessions.prepare_candidate(USER)
    candidate.cookie_store.put(candidate.owner, CookieRecord("SESSION", "x", path="/"), SSO)

    await sessions.discard(candidate)

    assert candidate.client.is_closed
    store = CookieStore(db_path)
    try:
        assert store.count(candidate.owner) == 0
    finally:
        store.close()


@pytest.mark.asyncio
async def test_expired_session_is_removed_and_closed_once(sessions):
    session = await open_session(sessions, USER)
    session.last_activity = now_ms() - sessions.ttl_ms - 1000
    session.client.aclose = AsyncMock()

    assert await sessions.get(USER) is None
    assert await sessions.get(USER) is None
    session.client.aclose.assert_awaited_once()
    assert sessions.session_store.load(USER) is None


@pytest.mark.asyncio
async def test_require_distinguishes_expired_from_unknown(sessions):
    with pytest.raises(UnauthenticatedError) as info:
        await sessions.require("nobody")
    assert not isinstance(info.value, SessionExpiredError)

    session = await open_session(sessions, USER)
    session.last_activity = now_ms() - sessions.ttl_ms - 1000
    with pytest.raises(SessionExpiredError):
        await sessions.require(USER)


@pytest.mark.asyncio
async def test_get_refreshes_last_activity(sessions):
    session = await open_session(sessions, USER)
    session.last_activity = now_ms() - 60_000

    await sessions.get(USER)

    assert now_ms() - session.last_activity < 60_000
    assert sessions.session_store.load(USER).last_activity == session.last_activity


@pytest.mark.asyncio
async def test_sweep_expired_only_removes_stale_sessions(sessions):
    stale = await open_session(sessions, "stale")
    await open_session(sessions, "fresh")
    stale.last_activity = now_ms() - sessions.ttl_ms - 1000

    assert await sessions.sweep_expired() == 1
    assert stale.client.is_closed
    assert sessions.active_usernames() == ["fresh"]


@pytest.mark.asyncio
async def test_sweep_discards_stale_pending_candidates(sessions):
    candidate = sessions.prepare_candidate(USER)
    await sessions.stash_candidate(candidate)
    candidate.created_at = now_ms() - sessions.ttl_ms - 1000

    await sessions.sweep_expired()

    assert candidate.client.is_closed
    assert await sessions.claim_candidate(USER) is None


@pytest.mark.asyncio
async def test_stash_replaces_previous_candidate(sessions):
    first = sessions.prepare_candidate(USER)
    second = sessions.prepare_candidate(USER)

    await sessions.stash_candidate(first)
    await sessions.stash_candidate(second)

    assert first.client.is_closed
    assert await sessions.claim_candidate(USER) is second
    await sessions.discard(second)


@pytest.mark.asyncio
async def test_invalidate_removes_metadata_and_cookies(sessions, db_path):
    session = await open_session(sessions, USER)
    session.cookie_store.put(USER, CookieRecord("CASTGC", "TGT-1", path="/"), SSO)

    await sessions.invalidate(USER)

    assert session.client.is_closed
    assert sessions.session_store.load(USER) is None
    store = CookieStore(db_path)
    try:
        assert store.count(USER) == 0
    finally:
        store.close()
    with pytest.raises(UnauthenticatedError):
        await sessions.require(USER)


@pytest.mark.asyncio
async def test_user_locks_are_released_after_use(sessions):
    assert await sessions.get("nobody") is None
    await open_session(sessions, USER)
    await sessions.get(USER)
    await sessions.invalidate(USER)

    assert sessions._locks == {}


@pytest.mark.asyncio
async def test_removal_hooks_fire_on_logout_and_expiry(sessions):
    removed = []
    sessions.add_removal_hook(removed.append)

    await open_session(sessions, USER)
    await sessions.invalidate(USER)
    stale = await open_session(sessions, "stale")
    stale.last_activity = now_ms() - sessions.ttl_ms - 1000
    await sessions.sweep_expired()

    assert removed == [USER, "stale"]


@pytest.mark.asyncio
async def test_session_restored_after_restart(test_settings, upstream, db_path):
    first = SessionManager(test_settings, transport_factory=upstream.transport)
    session = await open_session(first, USER)
    session.cookie_store.put(USER, CookieRecord("CASTGC", "TGT-1", path="/"), SSO)
    await first.close()

    second = SessionManager(test_settings, transport_factory=upstream.transport)
    try:
        restored = await second.get(USER)
        assert restored is not None
        assert restored.identity == UserIdentity(name="张三", school_id=USER)
        assert [c.name for c in restored.cookie_store.get(USER, SSO)] == ["CASTGC"]
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_expired_record_not_restored(test_settings, upstream):
    first = SessionManager(test_settings, transport_factory=upstream.transport)
    session = await open_session(first, USER)
    first.session_store.update_last_activity(USER, now_ms() - first.ttl_ms - 1000)
    # 模拟进程重启：内存中的会话消失，只剩持久化记录
    first._sessions.pop(USER)
    await first._close(session)

    with pytest.raises(SessionExpiredError):
        await first.require(USER)
    assert first.session_store.load(USER) is None
    await first.close()


def test_session_store_round_trip(db_path):
    store = SessionStore(db_path)
    try:
        store.save(USER, "张三", USER, 1000, 2000)
        store.save("other", "李四", "other", 1000, 1000)
        store.update_last_activity(USER, 3000)

        record = store.load(USER)
        assert (record.name, record.school_id, record.authenticated_at, record.last_activity) == (
            "张三", USER, 1000, 3000,
        )
        assert sorted(store.usernames()) == [USER, "other"]

        store.delete_all()
        assert store.usernames() == []
        assert store.load(USER) is None
    finally:
        store.close()

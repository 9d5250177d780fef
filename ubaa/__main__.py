"""
命令行入口：登录统一身份认证，然后查看博雅课程。

用法: python -m ubaa -u <学号> -p <密码> [--courses 10]
"""
import argparse
import asyncio
import io
import logging
import sys

from .auth import AuthService
from .bykc import BykcService
from .config import settings
from .errors import CaptchaRequiredError, UbaaError
from .session import SessionManager

logger = logging.getLogger(__name__)


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8'),
    )
    # 将 httpx 的日志级别调高，避免过多的 DEBUG 输出
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def login_interactive(auth: AuthService, username: str, password: str):
    """登录；遇到验证码时在终端提示输入，并用同一个 execution 重试"""
    preload = await auth.preload_login(username)
    if preload.already_authenticated:
        logger.info(f"已有有效会话: {preload.identity.name}")
        return preload.identity

    captcha = None
    execution = preload.execution
    while True:
        try:
            result = await auth.login(username, password, captcha=captcha, execution=execution)
            return result.identity
        except CaptchaRequiredError as e:
            print(f"需要验证码，请在浏览器中打开: {e.captcha.image_url}")
            captcha = input("验证码: ").strip()
            execution = e.execution


async def run(username: str, password: str, course_count: int):
    sessions = SessionManager(settings)
    auth = AuthService(sessions, settings)
    bykc = BykcService(sessions, settings)
    try:
        identity = await login_interactive(auth, username, password)
        logger.info(f"--- 登录成功: {identity.name} ({identity.school_id}) ---")

        if not await bykc.login(username):
            logger.error("博雅系统登录失败")
            return

        profile = await bykc.get_user_profile(username)
        college = profile.college.college_name if profile.college else "-"
        logger.info(f"博雅用户: {profile.real_name} / {college}")

        page = await bykc.get_courses(username, 1, course_count)
        logger.info(f"共 {page.total_elements} 门课程，本页可见 {len(page.courses)} 门:")
        for view in page.courses:
            course = view.course
            logger.info(
                f"  [{view.status.value}] {course.id} {course.course_name} "
                f"({course.course_current_count or 0}/{course.course_max_count}) {course.course_start_date or ''}"
            )
        await auth.logout(username)
    finally:
        await sessions.close()


def main():
    parser = argparse.ArgumentParser(description="北航统一身份认证 + 博雅课程命令行工具")
    parser.add_argument("-u", "--username", required=True, help="学号")
    parser.add_argument("-p", "--password", required=True, help="密码")
    parser.add_argument("--courses", type=int, default=10, help="显示的课程数量 (默认 10)")
    parser.add_argument("--log-level", default=settings.log_level, help="日志级别 (默认读取 UBAA_LOG_LEVEL)")
    args = parser.parse_args()

    setup_logging(args.log_level)
    try:
        asyncio.run(run(args.username, args.password, args.courses))
    except KeyboardInterrupt:
        logger.info("\n--- 用户手动中断程序 ---")
    except UbaaError as e:
        logger.error(f"[{e.code}] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

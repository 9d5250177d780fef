from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """运行配置，从环境变量 (前缀 UBAA_) 或 .env 文件读取。"""

    model_config = SettingsConfigDict(
        env_prefix="UBAA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 持久化 ──────────────────────────────────────────────
    database_path: str = "data/ubaa.db"

    # ── 会话 ────────────────────────────────────────────────
    session_ttl_minutes: int = 30
    sweep_interval_seconds: int = 300
    bykc_token_ttl_minutes: int = 10

    # ── HTTP ────────────────────────────────────────────────
    connect_timeout: float = 10.0
    request_timeout: float = 30.0
    socket_timeout: float = 30.0
    verify_ssl: bool = True
    proxy: Optional[str] = None
    use_vpn: bool = False

    # ── 日志 ────────────────────────────────────────────────
    log_level: str = "INFO"


settings = Settings()

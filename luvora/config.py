from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    app_name: str = "Luvora Messaging"
    debug: bool = False
    log_level: str = "INFO"

    # API
    api_prefix: str = "/api"

    # ── Connection pool ceilings ─────────────────────────────
    # A WhatsApp Web session is a headless browser (~150MB RAM each),
    # token bots are a single socket.
    max_telegram_connections: int = 500
    max_whatsapp_connections: int = 100  # Set via MAX_WHATSAPP_CONNECTIONS env var
    max_discord_connections: int = 500

    # ── Health ───────────────────────────────────────────────
    error_grace_seconds: float = 60.0  # Errored handles older than this become issues
    pool_high_watermark: float = 0.9  # Utilization that raises a capacity issue

    # ── Telegram ─────────────────────────────────────────────
    telegram_api_base: str = "https://api.telegram.org"
    telegram_bot_token: Optional[str] = None  # Default bot for stateless delivery
    telegram_parse_mode: Optional[str] = "Markdown"
    telegram_rate_limit: int = 30  # messages per window
    telegram_rate_window_ms: int = 1000

    # ── WhatsApp (WhatsApp Web session) ──────────────────────
    whatsapp_session_root: str = ".whatsapp-sessions"  # One browser profile per user
    whatsapp_headless: bool = True
    whatsapp_poll_interval_seconds: float = 2.0  # Pairing watcher cadence
    whatsapp_pairing_timeout_seconds: float = 300.0  # Setup flow gives up after this
    whatsapp_send_timeout_ms: int = 45000
    whatsapp_rate_limit: int = 1
    whatsapp_rate_window_ms: int = 1000

    # ── Discord ──────────────────────────────────────────────
    discord_rate_limit: int = 5
    discord_rate_window_ms: int = 5000

    # ── Delivery ─────────────────────────────────────────────
    http_timeout_seconds: float = 30.0

    # ── Startup ──────────────────────────────────────────────
    init_retry_attempts: int = 5  # Boot attempts against the config store before giving up
    init_retry_base_delay_seconds: float = 2.0  # Doubles after each failed attempt

    # ── Config store (PocketBase) ────────────────────────────
    pocketbase_url: Optional[str] = None  # Set via POCKETBASE_URL env var
    pocketbase_admin_email: str = ""
    pocketbase_admin_password: str = ""
    pocketbase_auth_path: str = "/api/collections/_superusers/auth-with-password"
    messaging_collection: str = "messaging_channels"
    encryption_key: Optional[str] = None  # 64 hex chars; stored bot tokens are read as plaintext without it

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

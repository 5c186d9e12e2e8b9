# linkgrab/config.py
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8443
    public_url: str | None = None  # e.g. "https://grab.example.com", used for the webhook URL

    # Telegram
    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    owner_telegram_id: int | None = None  # Receives ON/OFF notices, relayed logs and owner commands
    telegram_mode: Literal["polling", "webhook"] = "polling"
    telegram_webhook_path: str = "/bot"
    telegram_webhook_secret: str | None = None  # X-Telegram-Bot-Api-Secret-Token

    # ID cache (Telegram file_id per canonical link)
    cache_dir: Path = Path("cache")
    cache_filename: str = "tg_id_cache.json"
    cache_flush_interval_seconds: int = 0  # 0 = flush only on shutdown

    # Extraction tool
    ytdlp_binary: str = "yt-dlp"
    max_filesize_bytes: int = 1 << 30  # 1 GiB, checked against metadata before download
    buffered_download_limit_bytes: int = 1 << 30  # cutoff when the size isn't known up front
    download_chunk_size: int = 64 * 1024
    max_concurrent_acquisitions: int = 4  # 0 = unlimited
    metadata_dump_enabled: bool = False  # dev only: raw -J output written to cache_dir/<id>.json

    # Website
    static_dir: Path = Path("dist")

    # Owner log relay
    owner_log_level: str = "WARNING"
    owner_log_buffer_size: int = 100

    # Monitoring
    metrics_token: str | None = None

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / self.cache_filename

    @property
    def bot_enabled(self) -> bool:
        return bool(self.telegram_bot_token)

    @property
    def webhook_url(self) -> str | None:
        if not self.public_url:
            return None
        return self.public_url.rstrip("/") + self.telegram_webhook_path

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("telegram_bot_token", self.telegram_bot_token),
            ("owner_telegram_id", self.owner_telegram_id),
        ]
        if self.telegram_mode == "webhook":
            required_fields.append(("public_url", self.public_url))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.bot_enabled:
        warnings.append("telegram_bot_token is not set: only the website download routes will work.")
    elif s.owner_telegram_id is None:
        warnings.append("owner_telegram_id is not set: owner commands and log relay are disabled.")

    if s.telegram_mode == "webhook":
        if not s.public_url:
            warnings.append("telegram_mode=webhook but public_url is not set (webhook cannot be registered).")
        if not s.telegram_webhook_secret:
            warnings.append("telegram_mode=webhook without telegram_webhook_secret (anyone can post updates).")

    if s.buffered_download_limit_bytes > s.max_filesize_bytes:
        warnings.append(
            "buffered_download_limit_bytes exceeds max_filesize_bytes: "
            "unknown-size downloads may hold more memory than the size ceiling."
        )

    if s.max_concurrent_acquisitions == 0:
        warnings.append("max_concurrent_acquisitions=0: yt-dlp processes are not capped.")

    if s.cache_flush_interval_seconds == 0:
        warnings.append("cache_flush_interval_seconds=0: cached ids since startup are lost on a crash.")

    if s.is_production and s.metadata_dump_enabled:
        warnings.append("prod: metadata_dump_enabled is ignored outside dev.")

    if s.is_production and not s.metrics_token:
        warnings.append("prod: metrics_token is not set (/metrics is disabled).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()

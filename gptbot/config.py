from dataclasses import dataclass
import os
from dotenv import load_dotenv

load_dotenv()

RESET_POLICIES = ("rolling", "calendar")


def _parse_reset_policy(raw: str) -> str:
    value = raw.strip().lower()
    if value not in RESET_POLICIES:
        raise ValueError(f"RESET_POLICY must be one of {RESET_POLICIES}, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    bot_token: str = os.getenv("BOT_TOKEN", "")

    # OpenRouter (OpenAI-совместимый API)
    openrouter_api_key: str = os.getenv("OPENROUTER_API_KEY", "")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    openrouter_app_title: str = os.getenv("OPENROUTER_APP_TITLE", "Telegram GPT Bot")
    free_model: str = os.getenv("FREE_MODEL", "openai/gpt-4o-mini")
    premium_model: str = os.getenv("PREMIUM_MODEL", "openai/gpt-4o")
    free_max_tokens: int = int(os.getenv("FREE_MAX_TOKENS", "2000"))
    premium_max_tokens: int = int(os.getenv("PREMIUM_MAX_TOKENS", "4000"))
    temperature: float = float(os.getenv("TEMPERATURE", "0.7"))

    # лимиты
    free_daily_limit: int = int(os.getenv("FREE_DAILY_LIMIT", "10"))
    premium_daily_limit: int = int(os.getenv("PREMIUM_DAILY_LIMIT", "100"))
    # rolling = 24 часа от последнего сброса, calendar = полночь в TZ
    reset_policy: str = _parse_reset_policy(os.getenv("RESET_POLICY", "rolling"))
    tz: str = os.getenv("TZ", "Europe/Moscow")

    # контекст и стриминг
    max_context_messages: int = int(os.getenv("MAX_CONTEXT_MESSAGES", "8"))
    stream_chunk_size: int = int(os.getenv("STREAM_CHUNK_SIZE", "100"))
    stream_timeout: float = float(os.getenv("STREAM_TIMEOUT", "55"))

    # подписка (Telegram Stars)
    premium_days: int = int(os.getenv("PREMIUM_DAYS", "30"))
    premium_price_stars: int = int(os.getenv("PREMIUM_PRICE_STARS", "1"))
    support_contact: str = os.getenv("SUPPORT_CONTACT", "support@example.com")

    # вложения
    max_file_size: int = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))
    max_document_chars: int = int(os.getenv("MAX_DOCUMENT_CHARS", "12000"))
    premium_only_attachments: bool = os.getenv("PREMIUM_ONLY_ATTACHMENTS", "1") == "1"

    use_fake_db: bool = os.getenv("USE_FAKE_DB", "1") == "1"

    # Postgres
    pg_host: str = os.getenv("PG_HOST", "localhost")
    pg_port: int = int(os.getenv("PG_PORT", "5432"))
    pg_user: str = os.getenv("PG_USER", "postgres")
    pg_password: str = os.getenv("PG_PASSWORD", "")
    pg_database: str = os.getenv("PG_DATABASE", "postgres")
    pg_sslmode: str = os.getenv("PG_SSLMODE", "disable")

    @property
    def pg_dsn(self) -> str:
        return (
            f"postgresql://{self.pg_user}:{self.pg_password}"
            f"@{self.pg_host}:{self.pg_port}/{self.pg_database}"
            f"?sslmode={self.pg_sslmode}"
        )

    def daily_limit(self, tier: str) -> int:
        return self.premium_daily_limit if tier == "premium" else self.free_daily_limit

settings = Settings()

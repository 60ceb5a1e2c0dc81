from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: app/core/config.py -> app/core -> app -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"

# An OpenAI key only counts as valid with this prefix (no stray whitespace etc.)
OPENAI_KEY_PREFIX = "sk-"


class Settings(BaseSettings):
    openai_api_key: str = ""
    # Several keys, comma separated. Empty means OPENAI_API_KEY is used. On auth/rate errors the next key is tried.
    openai_api_keys: str = ""
    openai_model: str = "gpt-4o"
    database_url: str = "sqlite:///./macromini.db"
    # CORS: comma separated origin list; in production e.g. https://app.example.com
    cors_origins: str = "*"
    # Max requests per minute per IP on /analyze
    rate_limit_per_minute: int = 30
    # Stripe: checkout creates the subscription, the webhook grants/revokes Pro
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id_pro_monthly: str = ""
    frontend_url: str = "http://127.0.0.1:3000"  # checkout success/cancel redirects
    # Free tier quota: analyses per rolling period
    free_tier_limit: int = 10
    analyses_period_days: int = 30
    environment: str = "development"

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator(
        "openai_api_key",
        "openai_api_keys",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_price_id_pro_monthly",
        mode="before",
    )
    @classmethod
    def strip_secret(cls, v: str | None) -> str:
        """Cuts copy/paste whitespace around keys."""
        return (v or "").strip()


settings = Settings()


def get_openai_keys() -> list[str]:
    """
    Valid OpenAI keys (starting with sk-, no whitespace).
    OPENAI_API_KEYS as a comma separated list if set; otherwise OPENAI_API_KEY alone.
    """
    keys_raw = (settings.openai_api_keys or "").strip()
    if keys_raw:
        keys = [k.strip() for k in keys_raw.split(",") if k.strip() and k.strip().startswith(OPENAI_KEY_PREFIX)]
        if keys:
            return keys
    single = (settings.openai_api_key or "").strip()
    if single and single.startswith(OPENAI_KEY_PREFIX):
        return [single]
    return []


def is_openai_configured() -> bool:
    return len(get_openai_keys()) > 0


def is_stripe_configured() -> bool:
    """Checkout needs the secret key and a price; the webhook needs its signing secret."""
    return bool(settings.stripe_secret_key and settings.stripe_price_id_pro_monthly)

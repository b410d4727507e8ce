import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env (if present) so os.getenv() below picks them up
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    # Server
    port: int = 3001
    env: str = "development"
    log_level: str = "INFO"
    version: str = "1.2.0"
    default_lang: str = "pt"

    # Upstream
    base_url: str = "https://sapi.dramaboxdb.com"
    webfic_url: str = "https://www.webfic.com"
    stream_url: str = "https://regexd.com/base.php"
    sign_secret: str = "dramabox"

    # Request settings (seconds)
    request_timeout: float = 30.0
    token_timeout: float = 15.0

    # Retry settings
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0

    # Token lifetime (seconds)
    token_lifetime: int = 24 * 60 * 60
    token_safety_margin: int = 5 * 60

    # Cache TTLs (seconds)
    ttl_token: int = 3600
    ttl_drama_list: int = 300
    ttl_drama_detail: int = 600
    ttl_chapters: int = 600
    ttl_categories: int = 1800
    ttl_search: int = 180
    cache_maxsize: int = 4096

    # Chapter pager heuristics (tuned against the live upstream)
    window_size: int = 5
    throttle_max_items: int = 2
    end_of_book_margin: int = 5
    starvation_limit: int = 3
    window_pause: float = 0.8
    starvation_pause: float = 4.0
    paywall_pause: float = 1.5
    recovery_pause: float = 2.0

    # Rate limits (requests per minute per client IP)
    rate_limit_api: int = 100
    rate_limit_download: int = 5
    # Reverse proxies in front of the service that append to X-Forwarded-For
    trusted_proxies: int = 0
    shutdown_timeout: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            port=_env_int("PORT", cls.port),
            env=os.getenv("APP_ENV", cls.env),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            default_lang=os.getenv("DRAMABOX_DEFAULT_LANG", cls.default_lang),
            base_url=os.getenv("DRAMABOX_BASE_URL", cls.base_url),
            webfic_url=os.getenv("DRAMABOX_WEBFIC_URL", cls.webfic_url),
            stream_url=os.getenv("DRAMABOX_STREAM_URL", cls.stream_url),
            sign_secret=os.getenv("DRAMABOX_SIGN_SECRET", cls.sign_secret),
            request_timeout=_env_float("REQUEST_TIMEOUT", cls.request_timeout),
            token_timeout=_env_float("TOKEN_TIMEOUT", cls.token_timeout),
            max_retries=_env_int("MAX_RETRIES", cls.max_retries),
            throttle_max_items=_env_int("PAGER_THROTTLE_MAX_ITEMS", cls.throttle_max_items),
            end_of_book_margin=_env_int("PAGER_END_OF_BOOK_MARGIN", cls.end_of_book_margin),
            rate_limit_api=_env_int("RATE_LIMIT_API", cls.rate_limit_api),
            rate_limit_download=_env_int("RATE_LIMIT_DOWNLOAD", cls.rate_limit_download),
            trusted_proxies=_env_int("TRUSTED_PROXIES", cls.trusted_proxies),
        )

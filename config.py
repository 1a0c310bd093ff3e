import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        secret_key: str,
        token_ttl_secs: int,
        bcrypt_rounds: int,
        cache_backend: str,
        analytics_ttl_secs: int,
        categories_ttl_secs: int,
        analytics_window_months: int,
        rate_limit_requests: int,
        rate_limit_window_secs: int,
        cache_purge_interval_mins: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.secret_key = secret_key
        self.token_ttl_secs = token_ttl_secs
        self.bcrypt_rounds = bcrypt_rounds
        self.cache_backend = cache_backend
        self.analytics_ttl_secs = analytics_ttl_secs
        self.categories_ttl_secs = categories_ttl_secs
        self.analytics_window_months = analytics_window_months
        self.rate_limit_requests = rate_limit_requests
        self.rate_limit_window_secs = rate_limit_window_secs
        self.cache_purge_interval_mins = cache_purge_interval_mins
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f0c9a5d2b7e41c8a6d4e9f1b2c3d4e5f60718293a4b5c6d7e8f90a1b2c3d4e5",
    )
    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        token_ttl_secs=int(os.getenv("FINANCE_TOKEN_TTL_SECS", "86400")),
        bcrypt_rounds=int(os.getenv("FINANCE_BCRYPT_ROUNDS", "12")),
        cache_backend=os.getenv("FINANCE_CACHE_BACKEND", "memory").lower(),
        analytics_ttl_secs=int(os.getenv("FINANCE_ANALYTICS_TTL_SECS", "900")),
        categories_ttl_secs=int(os.getenv("FINANCE_CATEGORIES_TTL_SECS", "3600")),
        analytics_window_months=int(os.getenv("FINANCE_ANALYTICS_WINDOW_MONTHS", "12")),
        rate_limit_requests=int(os.getenv("FINANCE_RATE_LIMIT_REQUESTS", "200")),
        rate_limit_window_secs=int(os.getenv("FINANCE_RATE_LIMIT_WINDOW_SECS", "900")),
        cache_purge_interval_mins=int(
            os.getenv("FINANCE_CACHE_PURGE_INTERVAL_MINS", "60")
        ),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
    )

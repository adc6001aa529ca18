import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_secs: int,
        debug: bool,
        log_level: str,
        auto_create_schema: bool,
        seed_categories: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_secs = token_max_age_secs
        self.debug = debug
        self.log_level = log_level
        self.auto_create_schema = auto_create_schema
        self.seed_categories = seed_categories


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledger.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Madrid")
    secret_key = os.getenv(
        "LEDGER_SECRET_KEY",
        "5f0c2b7e91d84a6f3c1e8a9d7b2f4e6a0c3d5b7f9e1a2c4d6e8f0a1b3c5d7e9f",
    )
    token_max_age_secs = int(os.getenv("LEDGER_TOKEN_MAX_AGE_SECS", str(7 * 24 * 3600)))
    debug = _env_flag("LEDGER_DEBUG", "0")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    auto_create_schema = _env_flag("LEDGER_AUTO_CREATE_SCHEMA", "1")
    seed_categories = _env_flag("LEDGER_SEED_CATEGORIES", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_secs=token_max_age_secs,
        debug=debug,
        log_level=log_level,
        auto_create_schema=auto_create_schema,
        seed_categories=seed_categories,
    )

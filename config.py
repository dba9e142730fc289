import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_hours: int,
        default_page_size: int,
        max_page_size: int,
        slug_max_attempts: int,
        log_level: str,
        admin_email: Optional[str] = None,
        admin_password: Optional[str] = None,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.slug_max_attempts = slug_max_attempts
        self.log_level = log_level
        self.admin_email = admin_email
        self.admin_password = admin_password


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYBOOK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("MONEYBOOK_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'moneybook.db'}"
    session_secret = os.getenv(
        "MONEYBOOK_SESSION_SECRET",
        "3f0c9a51d7e24b7c8e15a2d96b4c0f17e8a9d3b2c4f6a1e07d5b8c9e2f4a6b1d",
    )
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_hours=int(os.getenv("MONEYBOOK_SESSION_MAX_AGE_HOURS", "24")),
        default_page_size=int(os.getenv("MONEYBOOK_DEFAULT_PAGE_SIZE", "5")),
        max_page_size=int(os.getenv("MONEYBOOK_MAX_PAGE_SIZE", "100")),
        slug_max_attempts=int(os.getenv("MONEYBOOK_SLUG_MAX_ATTEMPTS", "5")),
        log_level=os.getenv("MONEYBOOK_LOG_LEVEL", "INFO").upper(),
        admin_email=os.getenv("MONEYBOOK_ADMIN_EMAIL"),
        admin_password=os.getenv("MONEYBOOK_ADMIN_PASSWORD"),
    )

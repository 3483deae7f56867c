"""Runtime configuration.

All settings come from environment variables. A ``.env`` file at the repo
root is loaded first if present, so local development does not need exported
variables.

Usage:
    from core.config import get_settings

    settings = get_settings()
    settings.db_path
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.errors import ConfigError

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Process-wide settings for jobs, workers and the API."""

    # Fulfillment platform API
    fp_api_base_url: str = "https://api.fulfillment.example.com/v1"
    fp_api_token: Optional[str] = None
    fp_min_request_interval: float = 0.25
    fp_max_retries: int = 5
    fp_retry_base_delay: float = 1.0
    fp_retry_max_delay: float = 60.0
    fp_retry_multiplier: float = 2.0

    # Fetcher
    fetch_concurrency: int = 4
    fetch_page_size: int = 250
    fetch_max_pages: int = 20

    # Backing store
    db_path: Path = field(default_factory=lambda: REPO_ROOT / "billing.db")
    store_page_size: int = 1000
    artifacts_dir: Path = field(default_factory=lambda: REPO_ROOT / "artifacts")

    # Invoicing
    invoice_number_prefix: str = "JP"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Temporal
    temporal_address: str = "localhost:7233"
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_task_queue: str = "billing-default"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        return cls(
            fp_api_base_url=os.getenv("FP_API_BASE_URL", cls.fp_api_base_url),
            fp_api_token=os.getenv("FP_API_TOKEN"),
            fp_min_request_interval=_env_float("FP_MIN_REQUEST_INTERVAL", cls.fp_min_request_interval),
            fp_max_retries=_env_int("FP_MAX_RETRIES", cls.fp_max_retries),
            fp_retry_base_delay=_env_float("FP_RETRY_BASE_DELAY", cls.fp_retry_base_delay),
            fp_retry_max_delay=_env_float("FP_RETRY_MAX_DELAY", cls.fp_retry_max_delay),
            fp_retry_multiplier=_env_float("FP_RETRY_MULTIPLIER", cls.fp_retry_multiplier),
            fetch_concurrency=_env_int("FETCH_CONCURRENCY", cls.fetch_concurrency),
            fetch_page_size=_env_int("FETCH_PAGE_SIZE", cls.fetch_page_size),
            fetch_max_pages=_env_int("FETCH_MAX_PAGES", cls.fetch_max_pages),
            db_path=Path(os.getenv("BILLING_DB_PATH", str(REPO_ROOT / "billing.db"))),
            store_page_size=_env_int("STORE_PAGE_SIZE", cls.store_page_size),
            artifacts_dir=Path(os.getenv("ARTIFACTS_DIR", str(REPO_ROOT / "artifacts"))),
            invoice_number_prefix=os.getenv("INVOICE_NUMBER_PREFIX", cls.invoice_number_prefix),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("LOG_JSON", cls.log_json),
            temporal_address=os.getenv("TEMPORAL_ADDRESS", cls.temporal_address),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", cls.temporal_namespace),
            temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
            temporal_task_queue=os.getenv("TEMPORAL_TASK_QUEUE", cls.temporal_task_queue),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the cached process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests change the environment between cases)."""
    global _settings
    _settings = None

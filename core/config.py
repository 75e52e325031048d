"""Runtime configuration.

All settings come from environment variables, with a repo-root .env file
loaded first when present. Settings objects are built once per process and
passed explicitly to the executor and clients; nothing here is mutated per
company or per job.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.db import DEFAULT_DB_PATH
from core.errors import ConfigurationError
from core.mapping.engine import MappingOptions

env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


QBO_PRODUCTION_BASE = "https://quickbooks.api.intuit.com"
QBO_SANDBOX_BASE = "https://sandbox-quickbooks.api.intuit.com"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class DevposSettings:
    """DevPos (source) connection settings."""
    token_url: str = "https://online.devpos.al/connect/token"
    api_base: str = "https://online.devpos.al/api/v3"
    auth_basic: str = "Zmlza2FsaXppbWlfc3BhOg=="
    timeout_seconds: int = 45

    @classmethod
    def from_env(cls) -> "DevposSettings":
        defaults = cls()
        return cls(
            token_url=os.getenv("DEVPOS_TOKEN_URL", defaults.token_url),
            api_base=os.getenv("DEVPOS_API_BASE", defaults.api_base).rstrip("/"),
            auth_basic=os.getenv("DEVPOS_AUTH_BASIC", defaults.auth_basic),
            timeout_seconds=_env_int("DEVPOS_TIMEOUT_SECONDS", defaults.timeout_seconds),
        )


@dataclass
class QuickBooksSettings:
    """QuickBooks Online (target) connection settings."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    environment: str = "production"
    api_base: Optional[str] = None
    token_url: str = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    minor_version: int = 65
    timeout_seconds: int = 30

    @property
    def base_url(self) -> str:
        """REST host, honouring an explicit override before the environment."""
        if self.api_base:
            return self.api_base.rstrip("/")
        if self.environment == "sandbox":
            return QBO_SANDBOX_BASE
        return QBO_PRODUCTION_BASE

    @classmethod
    def from_env(cls) -> "QuickBooksSettings":
        defaults = cls()
        return cls(
            client_id=os.getenv("QBO_CLIENT_ID"),
            client_secret=os.getenv("QBO_CLIENT_SECRET"),
            environment=os.getenv("QBO_ENV", defaults.environment).lower(),
            api_base=os.getenv("QBO_API_BASE"),
            token_url=os.getenv("QBO_TOKEN_URL", defaults.token_url),
            minor_version=_env_int("QBO_MINOR_VERSION", defaults.minor_version),
            timeout_seconds=_env_int("QBO_TIMEOUT_SECONDS", defaults.timeout_seconds),
        )


@dataclass
class SyncSettings:
    """Everything one sync process needs, grouped by concern."""
    devpos: DevposSettings = field(default_factory=DevposSettings)
    quickbooks: QuickBooksSettings = field(default_factory=QuickBooksSettings)
    mapping: MappingOptions = field(default_factory=MappingOptions)
    encryption_key: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH
    token_refresh_window_minutes: int = 10
    job_timeout_minutes: int = 30
    worker_poll_seconds: int = 5
    worker_max_concurrent: int = 4
    watchdog_interval_minutes: int = 5
    schedule_interval_minutes: int = 0

    @classmethod
    def from_env(cls) -> "SyncSettings":
        db_path = os.getenv("SYNC_DB_PATH")
        return cls(
            devpos=DevposSettings.from_env(),
            quickbooks=QuickBooksSettings.from_env(),
            mapping=MappingOptions(
                eic_custom_field_id=os.getenv("QBO_CF_EIC_DEF_ID") or None,
                item_id=os.getenv("QBO_DEFAULT_ITEM_ID", "1"),
                item_name=os.getenv("QBO_DEFAULT_ITEM_NAME", "Services"),
                expense_account_id=os.getenv("QBO_DEFAULT_EXPENSE_ACCOUNT", "1"),
                home_currency=os.getenv("HOME_CURRENCY", "ALL").upper(),
            ),
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            token_refresh_window_minutes=_env_int("TOKEN_REFRESH_WINDOW_MINUTES", 10),
            job_timeout_minutes=_env_int("JOB_TIMEOUT_MINUTES", 30),
            worker_poll_seconds=_env_int("WORKER_POLL_SECONDS", 5),
            worker_max_concurrent=_env_int("WORKER_MAX_CONCURRENT", 4),
            watchdog_interval_minutes=_env_int("WATCHDOG_INTERVAL_MINUTES", 5),
            schedule_interval_minutes=_env_int("SCHEDULE_INTERVAL_MINUTES", 0),
        )

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_RETENTION_HOURS = 26.0
MIN_RETENTION_HOURS = 0.1
MAX_RETENTION_HOURS = 168.0
# Discord only accepts these auto-archive durations.
THREAD_ARCHIVE_DURATIONS = (60, 1440, 4320, 10080)


def _load_dotenv(path: str = ".env") -> None:
    candidates = [Path(path)]
    resolved = Path(__file__).resolve()
    for parent in resolved.parents:
        candidates.append(parent / ".env")
    seen: set[Path] = set()
    for env_path in candidates:
        if env_path in seen or not env_path.exists():
            continue
        seen.add(env_path)
        for raw in env_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            os.environ.setdefault(key, value)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float, lower: float | None = None, upper: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value != value:  # NaN
        return default
    if lower is not None and value < lower:
        return default
    if upper is not None and value > upper:
        return default
    return value



def _env_choice(name: str, default: int, allowed: tuple[int, ...]) -> int:
    value = _env_int(name, default)
    return value if value in allowed else default

@dataclass
class Settings:
    app_name: str = "TradersMind Bot"
    environment: str = "development"
    log_level: str = "INFO"

    discord_bot_token: str = ""
    discord_application_id: str = ""
    discord_api_url: str = "https://discord.com/api/v10"

    alpha_vantage_api_key: str = ""
    alpha_vantage_api_url: str = "https://www.alphavantage.co/query"
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"

    chart_render_url: str = "https://quickchart.io/chart"
    chart_timeout_seconds: int = 30

    message_retention_hours: float = DEFAULT_RETENTION_HOURS
    retention_safety_margin_hours: float = 4.0
    cleanup_interval_minutes: int = 60
    orphan_sweep_every: int = 6
    orphan_activity_window_hours: float = 2.0
    thread_archive_minutes: int = 60
    cache_sweep_interval_minutes: int = 60
    stats_log_interval_minutes: int = 120
    max_tickers_per_message: int = 25
    cleanup_enabled: bool = True

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.message_retention_hours)

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(hours=self.retention_safety_margin_hours)

    @property
    def orphan_activity_window(self) -> timedelta:
        return timedelta(hours=self.orphan_activity_window_hours)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _validate_settings(settings: Settings) -> None:
    if settings.environment.lower() == "production":
        required = {
            "DISCORD_BOT_TOKEN": settings.discord_bot_token,
            "DISCORD_APPLICATION_ID": settings.discord_application_id,
        }
        missing = [key for key, value in required.items() if not str(value or "").strip()]
        if missing:
            raise RuntimeError(f"Missing required production environment variables: {', '.join(sorted(missing))}")

    urls = {
        "DISCORD_API_URL": settings.discord_api_url,
        "CHART_RENDER_URL": settings.chart_render_url,
        "YAHOO_CHART_URL": settings.yahoo_chart_url,
        "ALPHA_VANTAGE_API_URL": settings.alpha_vantage_api_url,
    }
    invalid = [name for name, url in urls.items() if not _is_http_url(url)]
    if invalid:
        raise RuntimeError(f"Invalid URL settings: {', '.join(sorted(invalid))}")


def load_settings() -> Settings:
    settings = Settings(
        app_name=_env("APP_NAME", "TradersMind Bot"),
        environment=_env("ENVIRONMENT", "development"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        discord_bot_token=_env("DISCORD_BOT_TOKEN"),
        discord_application_id=_env("DISCORD_APPLICATION_ID"),
        discord_api_url=_env("DISCORD_API_URL", "https://discord.com/api/v10"),
        alpha_vantage_api_key=_env("ALPHA_VANTAGE_API_KEY"),
        alpha_vantage_api_url=_env("ALPHA_VANTAGE_API_URL", "https://www.alphavantage.co/query"),
        yahoo_chart_url=_env("YAHOO_CHART_URL", "https://query1.finance.yahoo.com/v8/finance/chart"),
        chart_render_url=_env("CHART_RENDER_URL", "https://quickchart.io/chart"),
        chart_timeout_seconds=_env_int("CHART_TIMEOUT_SECONDS", 30),
        message_retention_hours=_env_float(
            "MESSAGE_RETENTION_HOURS",
            DEFAULT_RETENTION_HOURS,
            lower=MIN_RETENTION_HOURS,
            upper=MAX_RETENTION_HOURS,
        ),
        retention_safety_margin_hours=_env_float("RETENTION_SAFETY_MARGIN_HOURS", 4.0, lower=0.0),
        cleanup_interval_minutes=_env_int("CLEANUP_INTERVAL_MINUTES", 60),
        orphan_sweep_every=_env_int("ORPHAN_SWEEP_EVERY", 6),
        orphan_activity_window_hours=_env_float("ORPHAN_ACTIVITY_WINDOW_HOURS", 2.0, lower=0.0),
        thread_archive_minutes=_env_choice("THREAD_ARCHIVE_MINUTES", 60, THREAD_ARCHIVE_DURATIONS),
        cache_sweep_interval_minutes=_env_int("CACHE_SWEEP_INTERVAL_MINUTES", 60),
        stats_log_interval_minutes=_env_int("STATS_LOG_INTERVAL_MINUTES", 120),
        max_tickers_per_message=min(25, _env_int("MAX_TICKERS_PER_MESSAGE", 25)),
        cleanup_enabled=_env_bool("CLEANUP_ENABLED", True),
    )
    _validate_settings(settings)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    _load_dotenv()
    return load_settings()

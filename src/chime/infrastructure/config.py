"""Configuration constants, .env parsing, and retry/planning settings."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Does NOT load into os.environ; callers decide what to do with values.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


_ENV_KEYS = [
    "TZ",
    "PLANNING_CRON",
    "DELIVERY_TIMEOUT",
    "MAX_DELIVERY_ATTEMPTS",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_DELAY",
    "RETRY_WINDOW",
    "PLAN_CACHE_TTL",
    "PLAN_RETENTION_DAYS",
    "CANCEL_PENDING_ON_PAUSE",
]
_env_config = read_env_file(_ENV_KEYS)


def _setting(key: str, default: str) -> str:
    return os.environ.get(key) or _env_config.get(key, default)


# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
STORE_DIR: Path = (PROJECT_ROOT / "store").resolve()

PLANNING_CRON: str = _setting("PLANNING_CRON", "5 0 * * *")
PLANNING_POLL_INTERVAL: float = 60.0  # seconds
DISPATCH_POLL_INTERVAL: float = 60.0
PLANNING_LEASE_TTL: int = 300

DELIVERY_TIMEOUT: float = float(_setting("DELIVERY_TIMEOUT", "10"))
MAX_DELIVERY_ATTEMPTS: int = max(1, int(_setting("MAX_DELIVERY_ATTEMPTS", "4")))
RETRY_BASE_DELAY: float = float(_setting("RETRY_BASE_DELAY", "30"))
RETRY_MAX_DELAY: float = float(_setting("RETRY_MAX_DELAY", "600"))
RETRY_WINDOW: float = float(_setting("RETRY_WINDOW", "3600"))

PLAN_CACHE_TTL: float = float(_setting("PLAN_CACHE_TTL", "3600"))
PLAN_RETENTION_DAYS: int = int(_setting("PLAN_RETENTION_DAYS", "30"))

# Whether pausing/expiring a task cancels its already-emitted pending entries for today.
CANCEL_PENDING_ON_PAUSE: bool = _setting("CANCEL_PENDING_ON_PAUSE", "false").lower() == "true"


def _resolve_timezone() -> str:
    tz = _setting("TZ", "")
    if not tz:
        tz_file = Path("/etc/timezone")
        try:
            if tz_file.exists():
                tz = tz_file.read_text().strip()
        except OSError:
            tz = ""

    if not tz:
        return "UTC"

    try:
        ZoneInfo(tz)
        return tz
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"


TIMEZONE: str = _resolve_timezone()


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime."""
    return datetime.now(ZoneInfo(TIMEZONE)).replace(tzinfo=None)


class RetryPolicy:
    """Bounded exponential backoff for failed deliveries."""

    def __init__(
        self,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
        window: float = RETRY_WINDOW,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.window = window

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * 2 ** max(attempt - 1, 0), self.max_delay)

    def allows_retry(self, attempts: int, elapsed_s: float) -> bool:
        """Whether another attempt fits in the budget after `attempts` failures."""
        if attempts >= self.max_attempts:
            return False
        return elapsed_s + self.delay_for(attempts) <= self.window

"""Runtime settings, read from environment variables."""

from collections.abc import Mapping
from dataclasses import dataclass
import math
import os

from dossier import constants
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)


def _number(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default

    try:
        value = float(raw)
    except ValueError:
        log.warning(f"Ignoring non-numeric {key}={raw!r}; using {default}")
        return default

    if not math.isfinite(value) or value < 0:
        log.warning(f"Ignoring out-of-range {key}={raw!r}; using {default}")
        return default

    return value


@dataclass(frozen=True)
class Settings:
    """Everything a dossier process needs to know about its environment."""

    # Where the progress store and queue backend live
    db_path: str = constants.DEFAULT_DB_PATH
    log_level: str = "WARNING"

    # Companies House quota: any two of the three determine the policy
    ch_window_ms: float = constants.CH_RATE_LIMIT_WINDOW_MS
    ch_max_per_window: int = constants.CH_RATE_LIMIT_MAX_PER_WINDOW
    ch_min_interval_ms: float | None = None
    ch_api_base: str = constants.CH_API_BASE
    ch_api_key: str = ""

    queue_cache_size: int = constants.QUEUE_CACHE_SIZE
    poll_seconds: float = constants.POLL_INTERVAL_SECONDS
    stall_seconds: float = constants.STALL_TIMEOUT_SECONDS
    owner_concurrency: int = 2

    @property
    def ch_min_interval_seconds(self) -> float:
        """Minimum gap between Companies House grants; defaults to window / max."""

        if self.ch_min_interval_ms is not None:
            return self.ch_min_interval_ms / 1000
        return math.ceil(self.ch_window_ms / max(1, self.ch_max_per_window)) / 1000

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the environment (or an explicit mapping, for tests)."""

        env = os.environ if env is None else env

        min_interval = env.get("CH_RATE_LIMIT_MIN_INTERVAL_MS")
        return cls(
            db_path=env.get("DOSSIER_DB_PATH") or constants.DEFAULT_DB_PATH,
            log_level=(env.get("DOSSIER_LOG_LEVEL") or "WARNING").upper(),
            ch_window_ms=_number(env, "CH_RATE_LIMIT_WINDOW_MS", constants.CH_RATE_LIMIT_WINDOW_MS),
            ch_max_per_window=max(
                1, int(_number(env, "CH_RATE_LIMIT_MAX_PER_WINDOW", constants.CH_RATE_LIMIT_MAX_PER_WINDOW))
            ),
            ch_min_interval_ms=(
                _number(env, "CH_RATE_LIMIT_MIN_INTERVAL_MS", 0.0) if min_interval not in (None, "") else None
            ),
            ch_api_base=env.get("CH_API_BASE") or constants.CH_API_BASE,
            ch_api_key=env.get("CH_API_KEY", ""),
            queue_cache_size=max(1, int(_number(env, "DOSSIER_QUEUE_CACHE_SIZE", constants.QUEUE_CACHE_SIZE))),
            poll_seconds=_number(env, "DOSSIER_POLL_SECONDS", constants.POLL_INTERVAL_SECONDS),
            stall_seconds=_number(env, "DOSSIER_STALL_SECONDS", constants.STALL_TIMEOUT_SECONDS),
            owner_concurrency=max(1, int(_number(env, "OWNER_WORKER_CONCURRENCY", 2))),
        )

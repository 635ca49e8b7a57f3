# healthtracker/config.py
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_API_BASE = "https://www.swisslifelb.com/med"
DATA_DIR_NAME = "healthtracker_data"


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _default_data_dir(env: Mapping[str, str]) -> Path:
    p = env.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d
    return Path(__file__).resolve().parent.parent / DATA_DIR_NAME


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    api_base: str = DEFAULT_API_BASE
    timeout_s: float = 15.0
    check_interval_s: float = 30.0
    log_lines: int = 800
    data_dir: Path = Path(DATA_DIR_NAME)

    @property
    def log_path(self) -> Path:
        return self.data_dir / "app.log"

    @property
    def reminder_state_path(self) -> Path:
        """Request codes of the alarms currently handed to the platform."""
        return self.data_dir / "scheduled_reminders.json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        data_dir = env.get("HEALTHTRACKER_DATA_DIR")
        return cls(
            api_base=(env.get("HEALTHTRACKER_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
            timeout_s=_number(env, "HEALTHTRACKER_TIMEOUT", 15.0, float),
            check_interval_s=_number(env, "HEALTHTRACKER_CHECK_INTERVAL", 30.0, float),
            log_lines=_number(env, "HEALTHTRACKER_LOG_LINES", 800, int),
            data_dir=Path(data_dir) if data_dir else _default_data_dir(env),
        )

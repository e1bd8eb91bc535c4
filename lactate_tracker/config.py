from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from .env import get_env, get_flag, parse_flag
from .models import LactateProtocol

try:  # pragma: no cover - Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib  # type: ignore

DEFAULT_GUEST_COOKIE_DAYS = 30


@dataclass(frozen=True)
class AppConfig:
    protocol: LactateProtocol = field(default_factory=LactateProtocol)
    guest_mode: bool = False
    guest_cookie_days: int = DEFAULT_GUEST_COOKIE_DAYS


def _config_path() -> Path | None:
    """Resolve the TOML configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    default_path = Path("config/lactate_tracker.toml")
    if default_path.exists():
        return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce_protocol(raw: Mapping[str, Any] | None) -> LactateProtocol:
    base = LactateProtocol()
    if not raw:
        return base
    try:
        return LactateProtocol(
            warmup_seconds=int(raw.get("warmup_seconds", base.warmup_seconds)),
            stage_seconds=int(raw.get("stage_seconds", base.stage_seconds)),
            num_stages=int(raw.get("num_stages", base.num_stages)),
            sample_offset_seconds=int(raw.get("sample_offset_seconds", base.sample_offset_seconds)),
            sample_window_seconds=int(raw.get("sample_window_seconds", base.sample_window_seconds)),
        )
    except (TypeError, ValueError):
        return base


def _coerce_days(raw: Any) -> int:
    try:
        days = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_GUEST_COOKIE_DAYS
    return days if days > 0 else DEFAULT_GUEST_COOKIE_DAYS


def _build_config(raw: Mapping[str, Any]) -> AppConfig:
    protocol_section = raw.get("protocol")
    protocol = _coerce_protocol(protocol_section if isinstance(protocol_section, Mapping) else None)
    guest_mode = parse_flag(raw.get("guest_mode", False)) or get_flag("DISABLE_AUTH")
    return AppConfig(
        protocol=protocol,
        guest_mode=guest_mode,
        guest_cookie_days=_coerce_days(raw.get("guest_cookie_days", DEFAULT_GUEST_COOKIE_DAYS)),
    )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    if not path:
        return _build_config({})
    data = _load_toml(path)
    return _build_config(data)


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    config = get_config()
    return {
        "protocol": config.protocol.to_dict(),
        "guest_mode": config.guest_mode,
        "guest_cookie_days": config.guest_cookie_days,
        "source": str(_config_path() or "defaults"),
    }

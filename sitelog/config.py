from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml


class ConfigError(RuntimeError):
    pass


TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path(".sitelog")
    storage: str = "google_sheets"
    spreadsheet_id: str = ""
    utc_offset_hours: int = 8
    holiday_country: str = "TW"
    # JS weekday numbering (0 = Sunday) to match what browser clients send.
    non_working_weekdays: tuple[int, ...] = (0, 6)
    lock_timeout_seconds: float = 30.0
    lock_file: Path | None = None
    session_ttl_seconds: int = 12 * 3600
    expose_stack: bool = True
    reject_malformed_body: bool = True
    google_client_id: str = ""
    bootstrap_admin_account: str = "admin"
    bootstrap_admin_password: str = "ChangeMe123!"
    bootstrap_admin_email: str = "admin@example.com"
    allowed_hosts: tuple[str, ...] = ("localhost", "127.0.0.1")
    notifier: str = "stdout"
    webhook_url: str = ""
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    mail_from: str = ""

    @property
    def tbm_dir(self) -> Path:
        return self.data_dir / "tbm"


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in TRUTHY:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_int(key: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _as_float(key: str, value: Any) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _as_weekdays(key: str, value: Any) -> tuple[int, ...]:
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",") if p.strip()]
    elif isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        raise ConfigError(f"{key} must be a list of weekday numbers.")
    out: list[int] = []
    for part in parts:
        day = _as_int(key, part)
        if not 0 <= day <= 6:
            raise ConfigError(f"{key} values must be between 0 (Sunday) and 6 (Saturday).")
        if day not in out:
            out.append(day)
    return tuple(sorted(out))


def _as_hosts(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        parts = [str(p).strip() for p in value]
    else:
        parts = [p.strip() for p in str(value or "").split(",")]
    out = tuple(p for p in parts if p and p != "*")
    return out or ("localhost", "127.0.0.1")


def _resolve_dir(raw: Any, base: Path) -> Path:
    p = Path(str(raw))
    if not p.is_absolute():
        p = (base / p).resolve()
    return p


_CONVERTERS = {
    "storage": lambda k, v: str(v).strip().lower(),
    "spreadsheet_id": lambda k, v: str(v).strip(),
    "utc_offset_hours": _as_int,
    "holiday_country": lambda k, v: str(v).strip().upper(),
    "non_working_weekdays": _as_weekdays,
    "lock_timeout_seconds": _as_float,
    "session_ttl_seconds": _as_int,
    "expose_stack": _as_bool,
    "reject_malformed_body": _as_bool,
    "google_client_id": lambda k, v: str(v).strip(),
    "bootstrap_admin_account": lambda k, v: str(v).strip(),
    "bootstrap_admin_password": lambda k, v: str(v),
    "bootstrap_admin_email": lambda k, v: str(v).strip().lower(),
    "allowed_hosts": lambda k, v: _as_hosts(v),
    "notifier": lambda k, v: str(v).strip().lower(),
    "webhook_url": lambda k, v: str(v).strip(),
    "smtp_host": lambda k, v: str(v).strip(),
    "smtp_port": _as_int,
    "smtp_user": lambda k, v: str(v).strip(),
    "smtp_password": lambda k, v: str(v),
    "mail_from": lambda k, v: str(v).strip(),
}


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping (YAML dict).")
    return raw


def _env_values() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in list(_CONVERTERS) + ["data_dir", "lock_file"]:
        env_key = f"SITELOG_{key.upper()}"
        raw = os.getenv(env_key)
        if raw is not None and raw.strip() != "":
            out[key] = raw
    sheet_id = (os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID", "") or "").strip()
    if sheet_id and "spreadsheet_id" not in out:
        out["spreadsheet_id"] = sheet_id
    return out


def load_settings(config_path: Path | None = None) -> Settings:
    """Build settings from defaults, an optional YAML file and SITELOG_* env vars."""
    values: dict[str, Any] = {}
    base = Path.cwd()

    if config_path is None:
        env_path = (os.getenv("SITELOG_CONFIG", "") or "").strip()
        config_path = Path(env_path) if env_path else None
    if config_path is not None:
        values.update(_load_yaml(config_path))
        base = config_path.parent.resolve()

    values.update(_env_values())

    known: dict[str, Any] = {}
    unknown: list[str] = []
    for key, value in values.items():
        if key in _CONVERTERS:
            known[key] = _CONVERTERS[key](key, value)
        elif key == "data_dir":
            known[key] = _resolve_dir(value, base)
        elif key == "lock_file":
            known[key] = _resolve_dir(value, base) if str(value).strip() else None
        else:
            unknown.append(str(key))
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

    if "data_dir" not in known:
        known["data_dir"] = _resolve_dir(".sitelog", base)

    settings = Settings(**known)
    if settings.storage not in {"memory", "inmemory", "google_sheets"}:
        raise ConfigError(f"storage must be 'memory' or 'google_sheets', got {settings.storage!r}")
    if settings.notifier not in {"stdout", "webhook", "smtp"}:
        raise ConfigError(f"notifier must be 'stdout', 'webhook' or 'smtp', got {settings.notifier!r}")
    if settings.lock_timeout_seconds <= 0:
        raise ConfigError("lock_timeout_seconds must be positive.")
    if not -12 <= settings.utc_offset_hours <= 14:
        raise ConfigError("utc_offset_hours is out of range.")
    return settings


def with_overrides(settings: Settings, **changes: Any) -> Settings:
    return replace(settings, **changes)

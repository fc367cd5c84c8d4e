from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

APP_NAME = "modelvault"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_UPDATE_CHECK_INTERVAL_S = 300.0  # 5 minutes
REPOSITORY_KINDS = ("filesystem", "http")


@dataclass(frozen=True)
class Config:
    repository_kind: str = "filesystem"
    repository_root: str | None = None  # directory path or base URL
    cache_root: str | None = None  # defaults to the per-user cache dir
    workspace_root: str | None = None
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    update_check_interval_s: float = DEFAULT_UPDATE_CHECK_INTERVAL_S
    log_level: int | None = None  # 0 silent, 1 INFO, 2+ DEBUG
    log_file: str | None = None

    def resolved_cache_root(self) -> Path:
        if self.cache_root:
            return Path(self.cache_root).expanduser()
        return default_cache_root()


def default_cache_root() -> Path:
    return user_cache_path(APP_NAME) / "models"


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("MODELVAULT_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold a token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]

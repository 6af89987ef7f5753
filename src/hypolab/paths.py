"""Where hypolab keeps its database, config file and log.

Each root honours its XDG variable and otherwise sits under the home
directory: sessions in ~/.local/share/hypolab, config in ~/.config/hypolab,
logs in ~/.cache/hypolab.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "hypolab"


def _xdg_home(env_var: str, default: str) -> Path:
    base = os.environ.get(env_var)
    return (Path(base) if base else Path.home() / default) / APP_NAME


@dataclass(frozen=True)
class XDGPaths:
    data_home: Path
    config_home: Path
    cache_home: Path

    @classmethod
    def detect(cls) -> "XDGPaths":
        return cls(
            data_home=_xdg_home("XDG_DATA_HOME", ".local/share"),
            config_home=_xdg_home("XDG_CONFIG_HOME", ".config"),
            cache_home=_xdg_home("XDG_CACHE_HOME", ".cache"),
        )

    def ensure_dirs(self) -> None:
        for directory in (self.data_home, self.config_home, self.cache_home):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        return self.data_home / "sessions.db"

    @property
    def log_path(self) -> Path:
        return self.cache_home / "hypolab.log"

    @property
    def config_file(self) -> Path:
        return self.config_home / "config.toml"


paths = XDGPaths.detect()

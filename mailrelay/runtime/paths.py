from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_log_dir

from .context import RuntimeContext

CONFIG_FILENAME = "config.json"
AUDIT_DB_FILENAME = "audit.sqlite3"


@dataclass(frozen=True)
class AppPaths:
    config_dir: Path   # key/value settings record
    data_dir: Path     # audit log database
    logs_dir: Path     # process logs

    def ensure(self) -> "AppPaths":
        for d in (self.config_dir, self.data_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)
        return self

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def audit_db(self) -> Path:
        return self.data_dir / AUDIT_DB_FILENAME


def resolve_paths(ctx: RuntimeContext) -> AppPaths:
    """
    Per-user directories from platformdirs, nested under ``profiles/<name>``
    for non-default profiles. ``root_override`` (``MAILRELAY_HOME``) puts
    everything under one directory instead; logs are shared across profiles.
    """
    profile_suffix = "" if ctx.profile == "default" else f"profiles/{ctx.profile}"

    if ctx.root_override:
        base = ctx.root_override
        return AppPaths(
            config_dir=base / "config" / profile_suffix,
            data_dir=base / "data" / profile_suffix,
            logs_dir=base / "logs",
        )

    config_base = Path(user_config_dir(ctx.app_name, appauthor=False))
    data_base = Path(user_data_dir(ctx.app_name, appauthor=False))
    logs_base = Path(user_log_dir(ctx.app_name, appauthor=False))

    return AppPaths(
        config_dir=config_base / profile_suffix,
        data_dir=data_base / profile_suffix,
        logs_dir=logs_base,
    )

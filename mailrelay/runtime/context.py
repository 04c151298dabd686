from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from mailrelay.common.config import APP_NAME

PROFILE_ENV = "MAILRELAY_PROFILE"
HOME_ENV = "MAILRELAY_HOME"


@dataclass(frozen=True)
class RuntimeContext:
    app_name: str = APP_NAME
    profile: str = "default"
    root_override: Path | None = None


def get_runtime_context(app_name: str = APP_NAME) -> RuntimeContext:
    """Build the runtime context from ``MAILRELAY_PROFILE`` / ``MAILRELAY_HOME``."""
    profile = os.environ.get(PROFILE_ENV, "").strip() or "default"
    root = os.environ.get(HOME_ENV, "").strip()
    return RuntimeContext(
        app_name=app_name,
        profile=profile,
        root_override=Path(root).expanduser() if root else None,
    )

"""Bridge settings resolved from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "RN_DEBUG_BRIDGE_"

DEFAULT_PACKAGER_ADDRESS = "localhost"
DEFAULT_PACKAGER_PORT = 8081
DEFAULT_STORAGE_PATH = Path.home() / ".rn-debug-bridge" / "sources"


@dataclass(frozen=True)
class BridgeSettings:
    """Defaults for an attach session; every field can be overridden via RN_DEBUG_BRIDGE_*."""

    packager_address: str = DEFAULT_PACKAGER_ADDRESS
    packager_port: int = DEFAULT_PACKAGER_PORT
    storage_path: Path = field(default_factory=lambda: DEFAULT_STORAGE_PATH)
    node_path: str = "node"
    inspect_port: int = 0
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeSettings:
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            value = env.get(f"{ENV_PREFIX}{name}")
            return value if value else None

        port = _get("PACKAGER_PORT")
        inspect_port = _get("INSPECT_PORT")
        storage = _get("STORAGE_PATH")
        try:
            return cls(
                packager_address=_get("PACKAGER_ADDRESS") or DEFAULT_PACKAGER_ADDRESS,
                packager_port=int(port) if port else DEFAULT_PACKAGER_PORT,
                storage_path=Path(storage).expanduser() if storage else DEFAULT_STORAGE_PATH,
                node_path=_get("NODE_PATH") or "node",
                inspect_port=int(inspect_port) if inspect_port else 0,
                log_level=(_get("LOG_LEVEL") or "info").lower(),
            )
        except ValueError as exc:
            raise ValueError(f"Invalid {ENV_PREFIX}* setting: {exc}") from None

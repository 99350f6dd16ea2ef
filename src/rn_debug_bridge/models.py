"""Pydantic models for attach arguments and plain records shared across the bridge."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

WireMessage = dict[str, Any]


class AttachRequest(BaseModel):
    address: str = "localhost"
    port: int = Field(default=8081, ge=1, le=65535)
    storage_path: Path
    bundle_suffix: str = ""
    node_path: str = "node"
    inspect_port: int = Field(default=0, ge=0, le=65535)

    @property
    def packager_host(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class CachedScript:
    """The bundle last written to local storage and the ETag it was served with."""

    source_url: str
    local_path: Path
    etag: str | None


@dataclass(frozen=True)
class WorkerOutput:
    """A line of debuggee output, tagged with the stream it came from."""

    category: str  # stdout | stderr | console
    text: str

from __future__ import annotations

"""Parse IPC process configuration files.

The configuration is a YAML mapping, for example:

    address: 16
    dif: normal.DIF
    process_name: ipcp-a
    process_instance: "1"
    listen: tcp://127.0.0.1:32766
    sync_url: ws://127.0.0.1:8765/dft
    auto_confirm: true
    transition_timeout: 10
    static_entries:
      - key: {process_name: rina.apps.echo}
        address: 17
        version: 1
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from ipcdir.manager import DEFAULT_TRANSITION_TIMEOUT
from ipcdir.naming import InvalidKeyError
from ipcdir.store import DEFAULT_STRIPES, UINT64_MAX, DirectoryEntry

DEFAULT_LISTEN_URI = "tcp://127.0.0.1:0"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class IPCProcessConfig:
    """Settings of one IPC process and its directory."""

    address: int = 0
    dif: str = ""
    process_name: str = ""
    process_instance: str = ""
    listen: str = DEFAULT_LISTEN_URI
    sync_url: Optional[str] = None
    auto_confirm: bool = True
    transition_timeout: float = DEFAULT_TRANSITION_TIMEOUT
    stripes: int = DEFAULT_STRIPES
    log_level: str = "INFO"
    static_entries: list[DirectoryEntry] = field(default_factory=list)


def parse_config(data: Any, source: str = "<config>") -> IPCProcessConfig:
    """Validate a decoded YAML mapping.

    Raises ValueError on any malformed value.
    """
    if not isinstance(data, dict):
        raise ValueError(f"{source}: configuration is not a YAML mapping")

    address = data.get("address")
    if isinstance(address, bool) or not isinstance(address, int) or not 0 <= address <= UINT64_MAX:
        raise ValueError(f"{source}: address must be an unsigned 64-bit integer, got {address!r}")

    sync_url = data.get("sync_url") or None
    if sync_url is not None and not str(sync_url).startswith(("ws://", "wss://")):
        raise ValueError(f"{source}: sync_url must be a ws:// or wss:// URL, got {sync_url!r}")

    try:
        transition_timeout = float(data.get("transition_timeout", DEFAULT_TRANSITION_TIMEOUT))
        stripes = int(data.get("stripes", DEFAULT_STRIPES))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{source}: {exc}") from exc
    if transition_timeout <= 0:
        raise ValueError(f"{source}: transition_timeout must be positive")
    if stripes < 1:
        raise ValueError(f"{source}: stripes must be >= 1")

    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"{source}: unknown log_level {log_level!r}")

    raw_entries = data.get("static_entries") or []
    if not isinstance(raw_entries, list):
        raise ValueError(f"{source}: static_entries must be a list")
    static_entries = []
    for i, raw in enumerate(raw_entries):
        try:
            static_entries.append(DirectoryEntry.from_dict(raw))
        except InvalidKeyError as exc:
            raise ValueError(f"{source}: static_entries[{i}]: {exc}") from exc

    return IPCProcessConfig(
        address=address,
        dif=str(data.get("dif", "")),
        process_name=str(data.get("process_name", "")),
        process_instance=str(data.get("process_instance", "")),
        listen=str(data.get("listen", DEFAULT_LISTEN_URI)),
        sync_url=sync_url,
        auto_confirm=bool(data.get("auto_confirm", True)),
        transition_timeout=transition_timeout,
        stripes=stripes,
        log_level=log_level,
        static_entries=static_entries,
    )


def load_config(path: str | Path) -> IPCProcessConfig:
    """Read and parse a YAML configuration file.

    Raises FileNotFoundError if the file doesn't exist.
    Raises ValueError if the content is invalid.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML: {exc}") from exc

    return parse_config(data, source=str(path))

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
import re

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigError

DEFAULT_CONFIG = Path("/etc/for/main.conf")
DEFAULT_ADDR = ":8080"
DEFAULT_PLAYBOOK_DIR = Path("./playbooks")
DEFAULT_DATA_DIR = Path("/etc/for")
DEFAULT_SERVER = "localhost:8080"
DEFAULT_INTERVAL = "30m"
DEFAULT_DEBOUNCE = 2.0

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass
class ServerSettings:
    addr: str = DEFAULT_ADDR
    playbook_dir: Path = DEFAULT_PLAYBOOK_DIR
    data_dir: Path = DEFAULT_DATA_DIR
    debounce: float = DEFAULT_DEBOUNCE


@dataclass
class AgentSettings:
    server: str = DEFAULT_SERVER
    interval: str = DEFAULT_INTERVAL
    customer: Optional[str] = None
    environment: Optional[str] = None
    dry_run: bool = False
    hostname: Optional[str] = None


@dataclass
class ForitConfig:
    server: ServerSettings = field(default_factory=ServerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)


def load_config(path: Path) -> ForitConfig:
    if not path.exists():
        return ForitConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    server = data.get("server", {})
    agent = data.get("agent", {})
    return ForitConfig(
        server=ServerSettings(
            addr=str(server.get("addr", DEFAULT_ADDR)),
            playbook_dir=Path(server.get("playbook_dir", DEFAULT_PLAYBOOK_DIR)),
            data_dir=Path(server.get("data_dir", DEFAULT_DATA_DIR)),
            debounce=float(server.get("debounce", DEFAULT_DEBOUNCE)),
        ),
        agent=AgentSettings(
            server=str(agent.get("server", DEFAULT_SERVER)),
            interval=str(agent.get("interval", DEFAULT_INTERVAL)),
            customer=_optional_str(agent.get("customer")),
            environment=_optional_str(agent.get("environment")),
            dry_run=bool(agent.get("dry_run", False)),
            hostname=_optional_str(agent.get("hostname")),
        ),
    )


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value else None


def parse_duration(value: str) -> float:
    """Parse ``30m``, ``1h30m``, ``90s``, ``250ms`` or bare seconds into seconds."""

    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_RE.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            raise ConfigError(f"invalid duration {value!r}") from None
    if seconds <= 0:
        raise ConfigError(f"duration must be positive: {value!r}")
    return seconds


def parse_addr(addr: str) -> tuple[str, int]:
    """Split a listen address such as ``:8080`` or ``127.0.0.1:9000``."""

    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"invalid listen address {addr!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional
import json
import logging
import os

from .errors import FilesystemError
from .locks import ReadWriteLock
from .types import InventoryEntry

logger = logging.getLogger(__name__)

INVENTORY_FILENAME = "inventory.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_host_port(remote_addr: str) -> str:
    """Return the host part of ``host:port`` or ``[v6]:port``, else the input."""

    if remote_addr.startswith("["):
        end = remote_addr.find("]")
        if end != -1 and remote_addr[end + 1 : end + 2] == ":" and remote_addr[end + 2 :].isdigit():
            return remote_addr[1:end]
        return remote_addr
    host, sep, port = remote_addr.rpartition(":")
    if sep and host and ":" not in host and port.isdigit():
        return host
    return remote_addr


class InventoryStore:
    """Passive registry of every host that has contacted the server."""

    def __init__(self, data_dir: Path, *, clock: Callable[[], datetime] = _utcnow):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / INVENTORY_FILENAME
        self._clock = clock
        self._lock = ReadWriteLock()
        try:
            self.data_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(f"cannot create data directory {self.data_dir}: {exc}") from exc
        self._entries: dict[str, InventoryEntry] = self._load()

    def update(self, hostname: str, remote_addr: str, environment: Optional[str] = None) -> InventoryEntry:
        ip = split_host_port(remote_addr)
        with self._lock.write():
            now = self._clock()
            entry = self._entries.get(hostname)
            if entry is None:
                entry = InventoryEntry(hostname=hostname, ip=ip, first_seen=now, last_seen=now)
                logger.info("Registered new host %s from %s", hostname, ip)
            else:
                entry.ip = ip
                entry.last_seen = now
            if environment:
                entry.environment = environment
            self._entries[hostname] = entry
            self._write()
        return entry

    def snapshot(self) -> list[InventoryEntry]:
        with self._lock.read():
            entries = list(self._entries.values())
        return [
            InventoryEntry(e.hostname, e.ip, e.first_seen, e.last_seen, e.environment)
            for e in sorted(entries, key=lambda e: e.hostname)
        ]

    def get(self, hostname: str) -> Optional[InventoryEntry]:
        with self._lock.read():
            return self._entries.get(hostname)

    def _write(self) -> None:
        data = {name: entry.to_dict() for name, entry in sorted(self._entries.items())}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2))
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise FilesystemError(f"cannot write inventory {self.path}: {exc}") from exc

    def _load(self) -> dict[str, InventoryEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise FilesystemError(f"cannot load inventory {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise FilesystemError(f"inventory {self.path} must contain a JSON object")
        entries: dict[str, InventoryEntry] = {}
        for hostname, payload in raw.items():
            try:
                entries[hostname] = InventoryEntry.from_dict(hostname, payload)
            except (KeyError, TypeError, ValueError) as exc:
                raise FilesystemError(f"inventory {self.path}: bad entry for {hostname}: {exc}") from exc
        logger.debug("Loaded %d inventory entries from %s", len(entries), self.path)
        return entries

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import re

from .predicates import HostPredicate

_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})?$")


@dataclass
class Task:
    name: str
    command: str
    when: str = ""
    env: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Wire form with a stable field order and sorted ``env`` keys."""

        data: dict[str, Any] = {"name": self.name, "command": self.command}
        if self.when:
            data["when"] = self.when
        if self.description:
            data["description"] = self.description
        if self.env:
            data["env"] = _sorted_mapping(self.env)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        env: dict[str, Any] = {}
        for key in ("variables", "env"):
            raw = data.get(key) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"task {key} must be a mapping")
            env.update({str(k): _env_value(v) for k, v in raw.items()})
        return cls(
            name=str(data["name"]),
            command=str(data["command"]),
            when=str(data.get("when") or ""),
            env=env,
            description=str(data.get("description") or ""),
        )


@dataclass
class Playbook:
    name: str
    hosts: list[str]
    customer: str
    environment: str
    tasks: list[Task]
    description: str = ""
    source: str = ""
    predicates: list[HostPredicate] = field(default_factory=list, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.predicates:
            self.predicates = [HostPredicate.compile(pattern) for pattern in self.hosts]

    @property
    def bucket(self) -> tuple[str, str]:
        return (self.customer, self.environment)

    def applies_to(self, hostname: str) -> bool:
        return any(predicate.matches(hostname) for predicate in self.predicates)


@dataclass
class InventoryEntry:
    hostname: str
    ip: str
    first_seen: datetime
    last_seen: datetime
    environment: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hostname": self.hostname,
            "ip": self.ip,
            "last_seen": self.last_seen.isoformat(),
            "first_seen": self.first_seen.isoformat(),
        }
        if self.environment:
            data["environment"] = self.environment
        return data

    @classmethod
    def from_dict(cls, hostname: str, data: dict[str, Any]) -> "InventoryEntry":
        return cls(
            hostname=str(data.get("hostname") or hostname),
            ip=str(data.get("ip", "")),
            first_seen=_parse_timestamp(data["first_seen"]),
            last_seen=_parse_timestamp(data["last_seen"]),
            environment=data.get("environment") or None,
        )


@dataclass
class TaskResult:
    name: str
    changed: bool = False
    failed: bool = False
    skip_reason: str = ""
    output: str = ""
    duration: int = 0
    error: str = ""

    @property
    def skipped(self) -> bool:
        return bool(self.skip_reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "changed": self.changed,
            "failed": self.failed,
            "skip_reason": self.skip_reason,
            "output": self.output,
            "duration": self.duration,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        return cls(
            name=str(data["name"]),
            changed=bool(data.get("changed", False)),
            failed=bool(data.get("failed", False)),
            skip_reason=str(data.get("skip_reason") or ""),
            output=str(data.get("output") or ""),
            duration=int(data.get("duration") or 0),
            error=str(data.get("error") or ""),
        )


def _parse_timestamp(value: str) -> datetime:
    """Parse RFC 3339 timestamps, including Go's ``Z`` suffix and nanoseconds."""

    match = _TIMESTAMP_RE.match(str(value).strip())
    if match is None:
        return datetime.fromisoformat(str(value))
    base, fraction, zone = match.groups()
    if fraction:
        fraction = "." + fraction[1:7].ljust(6, "0")
    if zone in ("Z", "z"):
        zone = "+00:00"
    return datetime.fromisoformat(f"{base}{fraction or ''}{zone or ''}")


def _env_value(value: Any) -> Any:
    # Secret references stay mappings until the agent resolves them.
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _sorted_mapping(value: dict[str, Any]) -> dict[str, Any]:
    return {
        key: _sorted_mapping(value[key]) if isinstance(value[key], dict) else value[key]
        for key in sorted(value)
    }

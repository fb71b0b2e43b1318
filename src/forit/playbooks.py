from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError, PredicateError
from .types import Playbook, Task

PLAYBOOK_SUFFIX = ".yml"


class PlaybookLoader:
    """Parses one playbook YAML file into a :class:`Playbook`."""

    def load(self, path: Path, root: Optional[Path] = None) -> Playbook:
        path = Path(path)
        source = self.source_name(path, root)
        try:
            text = path.read_text()
        except OSError as exc:
            raise ConfigError(f"{source}: {exc}") from None
        return self.parse_text(text, source)

    def parse_text(self, text: str, source: str = "<string>") -> Playbook:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            location = f"{mark.line + 1}:{mark.column + 1}" if mark is not None else "?"
            problem = getattr(exc, "problem", None) or str(exc)
            raise ConfigError(f"{source}:{location} {problem}") from None

        if not isinstance(data, dict):
            raise ConfigError(f"{source}: playbook must be a mapping")
        try:
            return self._parse_playbook(data, source)
        except (PredicateError, ValueError) as exc:
            raise ConfigError(f"{source}: {exc}") from None

    @staticmethod
    def source_name(path: Path, root: Optional[Path]) -> str:
        if root is None:
            return path.name
        try:
            return path.relative_to(root).as_posix()
        except ValueError:
            return path.as_posix()

    def _parse_playbook(self, data: dict[str, Any], source: str) -> Playbook:
        customer = self._required_str(data, "customer")
        environment = self._required_str(data, "environment")
        hosts = self._parse_hosts(data.get("hosts"))
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise ValueError("tasks must be a list")
        tasks = [self._parse_task(raw, index) for index, raw in enumerate(raw_tasks, start=1)]
        return Playbook(
            name=str(data.get("name") or Path(source).stem),
            description=str(data.get("description") or ""),
            hosts=hosts,
            customer=customer,
            environment=environment,
            tasks=tasks,
            source=source,
        )

    @staticmethod
    def _required_str(data: dict[str, Any], key: str) -> str:
        value = data.get(key)
        if value is None or str(value).strip() == "":
            raise ValueError(f"missing required field '{key}'")
        return str(value)

    @staticmethod
    def _parse_hosts(value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not value or not isinstance(value, list):
            raise ValueError("hosts must be a non-empty list of patterns")
        return [str(pattern) for pattern in value]

    @staticmethod
    def _parse_task(raw: Any, index: int) -> Task:
        if not isinstance(raw, dict):
            raise ValueError(f"task {index} must be a mapping")
        for key in ("name", "command"):
            if not raw.get(key) or not isinstance(raw[key], str):
                raise ValueError(f"task {index} is missing a {key}")
        task = Task.from_dict(raw)
        for name, value in task.env.items():
            if isinstance(value, dict) and not value.get("aws_secret"):
                raise ValueError(f"task {index} env {name} must be a string or an aws_secret reference")
        return task

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence
import logging
import os
import re
import subprocess

from .errors import ExecutionError

logger = logging.getLogger(__name__)

SAFE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DPKG_OPTIONS = '-o Dpkg::Options::="--force-confdef" -o Dpkg::Options::="--force-confold"'

_YES_FLAG_RE = re.compile(r"(?:^|\s)(?:-y|--yes|--assume-yes)(?:\s|$)")


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


def rewrite_command(command: str) -> tuple[str, dict[str, str]]:
    """Make interactive package managers safe to run unattended.

    Detection is by substring only. Returns the possibly rewritten command and
    any environment variables the rewrite requires.
    """

    extra_env: dict[str, str] = {}
    if "apt-get" in command or "apt " in command:
        extra_env["DEBIAN_FRONTEND"] = "noninteractive"
        extra_env["DEBIAN_PRIORITY"] = "critical"
        if not _has_yes_flag(command):
            if "apt-get " in command:
                command = command.replace("apt-get ", "apt-get -y ", 1)
            elif "apt " in command:
                command = command.replace("apt ", "apt -y ", 1)
        if "install" in command and "Dpkg::Options" not in command:
            command = f"{command} {DPKG_OPTIONS}"
    elif "yum " in command or "dnf " in command:
        if not _has_yes_flag(command):
            tool = "yum " if "yum " in command else "dnf "
            command = command.replace(tool, f"{tool}-y ", 1)
    return command, extra_env


def _has_yes_flag(command: str) -> bool:
    return _YES_FLAG_RE.search(command) is not None


class ShellExecutor:
    """Runs task commands through the system shell on the local host."""

    def __init__(self, *, windows: Optional[bool] = None):
        self.windows = os.name == "nt" if windows is None else windows

    def shell_command(self, command: str) -> list[str]:
        if self.windows:
            return ["cmd.exe", "/C", command]
        return ["/bin/sh", "-c", command]

    def build_env(self, env: Optional[Mapping[str, str]], extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        exec_env = os.environ.copy()
        if env:
            exec_env.update({str(k): str(v) for k, v in env.items()})
        if not self.windows:
            # Root-only sbin directories are missing from many service PATHs.
            exec_env["PATH"] = SAFE_PATH
        if extra:
            exec_env.update(extra)
        return exec_env

    def run(self, command: Sequence[str], *, env: Optional[dict[str, str]] = None) -> CommandResult:
        cmd_list = list(command)
        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            check=False,
            env=env,
            stdin=subprocess.DEVNULL,
        )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def execute(self, command: str, env: Optional[Mapping[str, str]] = None) -> str:
        """Run ``command`` and return its trimmed stdout.

        Raises :class:`ExecutionError` when the shell cannot be started or the
        command exits non-zero; the error's ``output`` holds stderr, or stdout
        when stderr is empty.
        """

        rewritten, extra_env = rewrite_command(command)
        if rewritten != command:
            logger.debug("rewrote command %r -> %r", command, rewritten)
        argv = self.shell_command(rewritten)
        try:
            result = self.run(argv, env=self.build_env(env, extra_env))
        except OSError as exc:
            raise ExecutionError(f"failed to start {argv[0]}: {exc}") from exc

        stdout = result.stdout.strip()
        if result.returncode == 0:
            return stdout
        stderr = result.stderr.strip()
        output = stderr or stdout
        combined = "\n".join(text for text in (stderr, stdout) if text)
        message = f"command failed with exit code {result.returncode}"
        if combined:
            message = f"{message}: {combined}"
        raise ExecutionError(message, output=output, returncode=result.returncode)

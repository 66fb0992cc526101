"""
Container lifecycle helpers.

Docker Compose verbs for the Vault service plus the identity queries used to
prove that a restart or stop/start actually happened before readiness is
polled.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Hashable, List, Optional

from .utils import CmdError, run, succeeds


class IdentityChange(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"


class IdentityUnchanged(CmdError):
    """A lifecycle operation did not replace the instance it targeted."""


class IdentityChanged(CmdError):
    """A different instance came back where the same one was expected."""


class DeploymentStateComparator:
    """Compares opaque identity tokens taken before and after an operation."""

    @staticmethod
    def compare(before_identity: Hashable, after_identity: Hashable) -> IdentityChange:
        if before_identity == after_identity:
            return IdentityChange.UNCHANGED
        return IdentityChange.CHANGED

    def require_changed(self, before: Hashable, after: Hashable, what: str) -> None:
        if self.compare(before, after) is IdentityChange.UNCHANGED:
            raise IdentityUnchanged(f"{what} did not change ({before!r}); the operation had no effect")

    def require_unchanged(self, before: Hashable, after: Hashable, what: str) -> None:
        if self.compare(before, after) is IdentityChange.CHANGED:
            raise IdentityChanged(f"{what} changed from {before!r} to {after!r}")


class ComposeProject:
    """Thin wrapper over ``docker compose`` for one project directory."""

    def __init__(self, project_dir: Path, compose_file: Optional[Path] = None) -> None:
        self.project_dir = project_dir
        self.compose_file = compose_file

    def _compose(self, args: List[str], echo: bool = True) -> str:
        cmd = ["docker", "compose"]
        if self.compose_file is not None:
            cmd.extend(["-f", str(self.compose_file)])
        return run([*cmd, *args], cwd=str(self.project_dir), echo=echo)

    def up(self) -> None:
        self._compose(["up", "-d"])

    def restart(self, service: str) -> None:
        self._compose(["restart", service])

    def stop(self) -> None:
        self._compose(["stop"])

    def start(self) -> None:
        self._compose(["start"])

    def down(self, volumes: bool = False) -> None:
        self._compose(["down", "-v"] if volumes else ["down"])

    def services(self) -> List[str]:
        out = self._compose(["ps", "--services"], echo=False)
        return [s for s in out.splitlines() if s.strip()]

    def logs(self, service: str) -> str:
        try:
            return self._compose(["logs", "--no-color", service], echo=False)
        except CmdError as e:
            return f"Error fetching logs: {e}"


def docker_running() -> bool:
    return succeeds(["docker", "info"])


def compose_available() -> bool:
    return succeeds(["docker", "compose", "version"])


def container_started_at(container: str) -> str:
    """Start time of a container; changes on every restart of the same container."""
    return run(
        ["docker", "inspect", container, "--format", "{{.State.StartedAt}}"],
        cwd=None,
        echo=False,
    ).strip()


def running_container_id(container: str) -> str:
    """ID of the running container with exactly this name; empty when none is running."""
    out = run(
        ["docker", "ps", "--filter", f"name={container}", "--format", "{{.ID}} {{.Names}}"],
        cwd=None,
        echo=False,
    )
    for line in out.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == container:
            return parts[0]
    return ""


def exited_container_ids(container: str) -> List[str]:
    out = run(
        [
            "docker",
            "ps",
            "-a",
            "--filter",
            f"name={container}",
            "--filter",
            "status=exited",
            "--format",
            "{{.ID}} {{.Names}}",
        ],
        cwd=None,
        echo=False,
    )
    return [
        parts[0]
        for parts in (line.split() for line in out.splitlines())
        if len(parts) == 2 and parts[1] == container
    ]


def container_exists(container: str) -> bool:
    out = run(
        ["docker", "ps", "-a", "--filter", f"name={container}", "--format", "{{.Names}}"],
        cwd=None,
        echo=False,
    )
    return container in out.split()


def container_is_running(container: str) -> bool:
    out = run(
        ["docker", "ps", "--filter", f"name={container}", "--format", "{{.Names}}"],
        cwd=None,
        echo=False,
    )
    return container in out.split()


def remove_container(container: str) -> None:
    run(["docker", "rm", "-f", container], cwd=None)


def list_volumes(name_filter: str) -> List[str]:
    out = run(
        ["docker", "volume", "ls", "--filter", f"name={name_filter}", "--format", "{{.Name}}"],
        cwd=None,
        echo=False,
    )
    return [line for line in out.splitlines() if line.strip()]

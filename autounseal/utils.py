from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional


class CmdError(Exception):
    pass


_COLORS = {
    "INFO": "\033[0;34m",
    "PASS": "\033[0;32m",
    "WARN": "\033[1;33m",
    "FAIL": "\033[0;31m",
}
_RESET = "\033[0m"


def _tag(level: str, stream) -> str:
    if getattr(stream, "isatty", lambda: False)():
        return f"{_COLORS[level]}[{level}]{_RESET}"
    return f"[{level}]"


def info(msg: str) -> None:
    print(f"{_tag('INFO', sys.stdout)} {msg}", flush=True)


def success(msg: str) -> None:
    print(f"{_tag('PASS', sys.stdout)} {msg}", flush=True)


def warning(msg: str) -> None:
    print(f"{_tag('WARN', sys.stdout)} {msg}", flush=True)


def failure(msg: str) -> None:
    print(f"{_tag('FAIL', sys.stderr)} {msg}", file=sys.stderr, flush=True)


def banner(title: str) -> None:
    print("")
    print("=" * 40)
    print(title)
    print("=" * 40)
    print("")


def run(
    cmd: List[str],
    cwd: Optional[str],
    timeout: Optional[float] = None,
    echo: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """Execute a command, stream both pipes, and return ONLY stdout text.

    Important: Some callers JSON-parse the return; never mix stderr into it.
    A ``timeout`` (seconds) kills the child and raises CmdError. ``env``
    replaces the child environment when given.
    """
    import threading

    if echo:
        print(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise CmdError(f"Command not found: {cmd[0]}") from e

    stdout_buf: list[str] = []

    def pump(pipe, tag: str) -> None:
        try:
            for line in iter(pipe.readline, ""):
                if not line:
                    continue
                line = line.rstrip()
                if echo:
                    print(line, flush=True)
                if tag == "stdout":
                    stdout_buf.append(line)
        finally:
            try:
                pipe.close()
            except Exception:
                pass

    t_out = threading.Thread(target=pump, args=(proc.stdout, "stdout"), daemon=True)
    t_err = threading.Thread(target=pump, args=(proc.stderr, "stderr"), daemon=True)
    t_out.start()
    t_err.start()
    try:
        rc = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        proc.wait()
        raise CmdError(
            f"Command timed out after {timeout:.0f}s: {' '.join(cmd)}"
        ) from e
    t_out.join()
    t_err.join()

    out_text = "\n".join(stdout_buf).strip()
    if rc != 0:
        raise CmdError(f"Command failed ({rc}): {' '.join(cmd)}\nSTDOUT:\n{out_text}")
    return out_text


def succeeds(cmd: List[str], cwd: Optional[str] = None) -> bool:
    """Run quietly and report whether the command exited 0."""
    try:
        run(cmd, cwd=cwd, echo=False)
    except CmdError:
        return False
    return True


def _resolve_az_exe() -> str:
    # On Windows the CLI ships as az.cmd, which Popen does not resolve by itself
    if os.name == "nt":
        return shutil.which("az.cmd") or "az.cmd"
    return shutil.which("az") or "az"


def az_query(args: List[str]) -> str:
    """Run a read-only az query; empty string when the resource is absent."""
    try:
        return run([_resolve_az_exe(), *args], cwd=None, echo=False).strip()
    except CmdError:
        return ""


def cdktf(
    project_dir: Path,
    args: List[str],
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> str:
    return run(["cdktf", *args], cwd=str(project_dir), timeout=timeout, env=env)


def remove_path(p: Path) -> bool:
    """Delete a file or directory tree; True when something was removed."""
    if p.is_dir():
        shutil.rmtree(p)
        return True
    if p.exists():
        p.unlink()
        return True
    return False

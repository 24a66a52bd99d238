"""Utility functions for crc-machine."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, List, Optional

from crc_machine.constants import _LOG_VERBOSE
from crc_machine.exceptions import ManagerError

# Active log scope, see machine_logging().
_log_state: dict = {"file": None, "debug": False}


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured console output and an optional log file."""
    sink: Optional[IO[str]] = _log_state["file"]
    if sink is not None:
        stamp = time.strftime("%Y-%m-%dT%H:%M:%S")
        sink.write(f"{stamp} [{level}] {message}\n")
        sink.flush()
    if level == "DEBUG" and not (_LOG_VERBOSE or _log_state["debug"]):
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


@contextmanager
def machine_logging(log_path: Optional[Path], debug: bool = False) -> Iterator[None]:
    """Scope a command's logging: tee every message to log_path, show DEBUG on console if debug.

    The previous scope is restored and the file closed on every exit path.
    """
    previous = dict(_log_state)
    handle: Optional[IO[str]] = None
    if log_path is not None:
        try:
            ensure_directory(log_path.parent)
            handle = open(log_path, "a", encoding="utf-8")
        except OSError as exc:
            raise ManagerError(f"Cannot open log file {log_path}: {exc}") from exc
    _log_state["file"] = handle if handle is not None else previous["file"]
    _log_state["debug"] = debug or previous["debug"]
    try:
        yield
    finally:
        _log_state.update(previous)
        if handle is not None:
            handle.close()


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def copy_file_contents(source: Path, destination: Path, mode: int = 0o644) -> None:
    """Copy a file's bytes to destination (creating parents) and set its permissions."""
    if not source.exists():
        raise ManagerError(f"{source} does not exist")
    ensure_directory(destination.parent)
    shutil.copyfile(source, destination)
    os.chmod(destination, mode)


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def tee_command(content: str, target: str) -> str:
    """Build a command writing content to target through sudo tee."""
    return f"cat <<'EOF' | sudo tee {target} > /dev/null\n{content}\nEOF"


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result

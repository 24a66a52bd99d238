"""Configuration loading and environment variable parsing for crc-machine."""

from __future__ import annotations

import ipaddress
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from crc_machine.constants import (
    CRC_HOME,
    DEFAULT_CPUS,
    DEFAULT_DRIVER,
    DEFAULT_MEMORY,
    NAME_RE,
    SETTLE_DELAY_SEC,
    USER_CONFIG_NAME,
)
from crc_machine.exceptions import ManagerError
from crc_machine.models import RetryPolicy, Settings, StartConfig
from crc_machine.utils import get_env, log, parse_float_env, parse_int_env

# Keys accepted in the user config file, mapped to their value type.
USER_CONFIG_KEYS: Dict[str, type] = {
    "bundle": str,
    "cpus": int,
    "memory": int,
    "nameserver": str,
    "pull-secret-file": str,
}


def _retry_policy(prefix: str, attempts: int, interval: float) -> RetryPolicy:
    return RetryPolicy(
        attempts=parse_int_env(f"{prefix}_ATTEMPTS", str(attempts)),
        interval=parse_float_env(f"{prefix}_INTERVAL", str(interval)),
    )


def parse_env() -> Settings:
    home = Path(get_env("CRC_HOME") or CRC_HOME).expanduser()
    driver = (get_env("CRC_DRIVER", DEFAULT_DRIVER) or DEFAULT_DRIVER).strip().lower()
    return Settings(
        home_dir=home,
        machines_dir=home / "machines",
        cache_dir=home / "cache",
        log_file=home / "crc.log",
        driver=driver,
        ssh_retry=_retry_policy("CRC_SSH_RETRY", 60, 1.0),
        host_ip_retry=_retry_policy("CRC_HOST_IP_RETRY", 30, 2.0),
        proxy_retry=_retry_policy("CRC_PROXY_RETRY", 60, 2.0),
        client_ca_retry=_retry_policy("CRC_CLIENT_CA_RETRY", 90, 2.0),
        csr_retry=_retry_policy("CRC_CSR_RETRY", 60, 5.0),
        settle_delay=parse_float_env("CRC_SETTLE_DELAY", str(SETTLE_DELAY_SEC)),
    )


def load_user_config(path: Path) -> Dict[str, Any]:
    """Read start defaults from the YAML config file; a missing file yields {}."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ManagerError(f"Cannot read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManagerError(f"Config file {path} must contain a mapping")
    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = USER_CONFIG_KEYS.get(key)
        if expected is None:
            log("WARN", f"Ignoring unknown config key '{key}' in {path}")
            continue
        try:
            values[key] = expected(value)
        except (TypeError, ValueError):
            raise ManagerError(f"Config key '{key}' in {path} must be of type {expected.__name__}")
    return values


def user_config_path(settings: Settings) -> Path:
    return settings.home_dir / USER_CONFIG_NAME


def load_pull_secret(path: Path) -> str:
    """Return the pull secret text; it must be JSON with an 'auths' object."""
    try:
        content = path.read_text().strip()
    except OSError as exc:
        raise ManagerError(f"Cannot read pull secret {path}: {exc}") from exc
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ManagerError(f"Pull secret {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("auths"), dict):
        raise ManagerError(f"Pull secret {path} must contain an 'auths' object")
    return content


def pull_secret_provider(path: Optional[Path]) -> Callable[[], str]:
    """Defer reading the pull secret until a new instance actually needs it."""

    def _provider() -> str:
        if path is None:
            raise ManagerError("No pull secret file given (use --pull-secret-file or CRC_PULL_SECRET_FILE)")
        return load_pull_secret(path)

    return _provider


def parse_start_config(
    name: str,
    bundle_path: Optional[str],
    cpus: Optional[int] = None,
    memory: Optional[int] = None,
    nameserver: Optional[str] = None,
    pull_secret_file: Optional[str] = None,
    debug: bool = False,
    defaults: Optional[Dict[str, Any]] = None,
) -> StartConfig:
    defaults = defaults or {}
    if not NAME_RE.match(name):
        raise ManagerError(f"Invalid machine name '{name}'")

    bundle = bundle_path or defaults.get("bundle")
    if not bundle:
        raise ManagerError("A bundle is required (use --bundle or set 'bundle' in the config file)")
    bundle = Path(bundle).expanduser()
    if not bundle.exists():
        raise ManagerError(f"Bundle {bundle} does not exist")

    cpus = cpus if cpus is not None else int(defaults.get("cpus", DEFAULT_CPUS))
    if cpus < DEFAULT_CPUS:
        raise ManagerError(f"cpus must be >= {DEFAULT_CPUS} (got {cpus})")
    memory = memory if memory is not None else int(defaults.get("memory", DEFAULT_MEMORY))
    if memory < DEFAULT_MEMORY:
        raise ManagerError(f"memory must be >= {DEFAULT_MEMORY} MiB (got {memory})")

    nameserver = nameserver or defaults.get("nameserver") or None
    if nameserver:
        try:
            ipaddress.ip_address(nameserver)
        except ValueError:
            raise ManagerError(f"Nameserver '{nameserver}' is not a valid IP address")

    secret = pull_secret_file or get_env("CRC_PULL_SECRET_FILE") or defaults.get("pull-secret-file")
    secret_path = Path(secret).expanduser() if secret else None

    return StartConfig(
        name=name,
        bundle_path=bundle,
        cpus=cpus,
        memory=memory,
        pull_secret_provider=pull_secret_provider(secret_path),
        nameserver=nameserver,
        debug=debug,
    )

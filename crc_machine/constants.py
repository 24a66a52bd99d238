"""Global constants and path configuration for crc-machine."""

from __future__ import annotations

import os
import re
from pathlib import Path

# CRC_HOME provides a single root for all persistent data: machine records,
# the extracted bundle cache and the command log.
CRC_HOME = Path(os.environ.get("CRC_HOME") or Path.home() / ".crc")
MACHINES_DIR = CRC_HOME / "machines"
CACHE_DIR = CRC_HOME / "cache"
LOG_FILE_PATH = CRC_HOME / "crc.log"
MACHINE_RECORD_NAME = "config.yaml"
USER_CONFIG_NAME = "crc.yaml"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
LIBVIRT_NETWORK = "crc"
DEFAULT_DRIVER = "libvirt"

DEFAULT_NAME = "crc"
DEFAULT_CPUS = 4
DEFAULT_MEMORY = 9216

DEFAULT_WEB_CONSOLE_URL = "https://console-openshift-console.apps-crc.testing"
DEFAULT_API_URL = "https://api.crc.testing:6443"

SSH_USER = "core"
SSH_PORT = 22
PRIVATE_KEY_NAME = "id_rsa"
AUTHORIZED_KEYS_PATH = "/home/core/.ssh/authorized_keys"
VM_KUBECONFIG_PATH = "/opt/kubeconfig"

BUNDLE_EXTENSION = ".crcbundle"
BUNDLE_INFO_FILE = "crc-bundle-info.json"
# Bundles ship with certificates valid for 30 days after build
BUNDLE_CERT_LIFETIME_DAYS = 30

SETTLE_DELAY_SEC = 180

TRUTHY = {"1", "true", "yes", "on"}
NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY


def machine_dir(name: str, machines_dir: Path = MACHINES_DIR) -> Path:
    return machines_dir / name


def private_key_path(name: str, machines_dir: Path = MACHINES_DIR) -> Path:
    return machine_dir(name, machines_dir) / PRIVATE_KEY_NAME


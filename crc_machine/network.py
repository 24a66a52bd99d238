"""Host-side networking checks and VM resolver configuration."""

from __future__ import annotations

import ipaddress
import socket
from typing import List

from crc_machine.bundle import BundleMetadata
from crc_machine.exceptions import ManagerError
from crc_machine.ssh import SSHRunner
from crc_machine.utils import log, tee_command

RESOLV_CONF = "/etc/resolv.conf"


def determine_host_ip(instance_ip: str) -> str:
    """Return the host address the VM reaches us on: the local end of a route to instance_ip."""
    try:
        target = ipaddress.ip_address(instance_ip)
    except ValueError as exc:
        raise ManagerError(f"Invalid instance IP '{instance_ip}'") from exc
    family = socket.AF_INET6 if target.version == 6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        # UDP connect only selects a route, nothing is sent.
        sock.connect((instance_ip, 53))
        host_ip = sock.getsockname()[0]
    except OSError as exc:
        raise ManagerError(f"Unable to find host IP for {instance_ip}: {exc}") from exc
    finally:
        sock.close()
    if not host_ip or ipaddress.ip_address(host_ip).is_unspecified:
        raise ManagerError(f"Unable to find host IP for {instance_ip}")
    return host_ip


def check_local_dns_reachable_from_host(bundle: BundleMetadata, instance_ip: str) -> None:
    """The API and apps hostnames must resolve to the VM from the host."""
    for hostname in (bundle.get_api_hostname(), bundle.get_app_hostname("foo")):
        try:
            resolved = socket.gethostbyname(hostname)
        except OSError as exc:
            raise ManagerError(f"Failed to resolve {hostname} from host: {exc}") from exc
        if resolved != instance_ip:
            raise ManagerError(f"{hostname} resolves to {resolved} instead of {instance_ip}")
        log("DEBUG", f"{hostname} resolves to {resolved}")


def get_configured_nameservers(runner: SSHRunner) -> List[str]:
    output = runner.run(f"cat {RESOLV_CONF}")
    nameservers = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "nameserver":
            nameservers.append(fields[1])
    return nameservers


def has_nameservers_configured(runner: SSHRunner, nameservers: List[str]) -> bool:
    configured = get_configured_nameservers(runner)
    return all(ns in configured for ns in nameservers)


def add_nameservers_to_instance(runner: SSHRunner, nameservers: List[str]) -> None:
    """Put nameservers ahead of whatever the VM resolver already uses."""
    current = runner.run(f"cat {RESOLV_CONF}").splitlines()
    lines = [f"nameserver {ns}" for ns in nameservers]
    for line in current:
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "nameserver" and fields[1] in nameservers:
            continue
        lines.append(line)
    runner.run(tee_command("\n".join(lines), RESOLV_CONF))

"""In-VM DNS: the dnsmasq resolver serving the cluster domains."""

from __future__ import annotations

from dataclasses import dataclass

from crc_machine.bundle import BundleMetadata
from crc_machine.network import add_nameservers_to_instance, has_nameservers_configured
from crc_machine.services import SystemdCommander
from crc_machine.ssh import SSHRunner
from crc_machine.utils import log, tee_command

DNSMASQ_CONF = "/etc/dnsmasq.d/crc-dnsmasq.conf"
PUBLIC_DNS_QUERY = "quay.io"
LOCAL_NAMESERVER = "127.0.0.1"


@dataclass
class ServicePostStartConfig:
    name: str
    driver_name: str
    runner: SSHRunner
    ip: str
    host_ip: str
    bundle: BundleMetadata


def render_dnsmasq_config(cfg: ServicePostStartConfig) -> str:
    cluster = cfg.bundle.cluster_info
    domain = f"{cluster.cluster_name}.{cluster.base_domain}"
    lines = [
        "user=root",
        "port=53",
        "bind-interfaces",
        "expand-hosts",
        "log-queries",
        f"local=/{domain}/",
        f"domain={domain}",
        f"address=/{cluster.apps_domain}/{cfg.ip}",
        f"address=/api.{domain}/{cfg.ip}",
        f"address=/api-int.{domain}/{cfg.ip}",
        f"address=/host.{domain}/{cfg.host_ip}",
    ]
    for node in cfg.bundle.nodes:
        if node.hostname:
            lines.append(f"address=/{node.hostname}.{domain}/{node.internal_ip or cfg.ip}")
    return "\n".join(lines)


def run_post_start(cfg: ServicePostStartConfig) -> None:
    log("DEBUG", f"Configuring dnsmasq for {cfg.name} ({cfg.driver_name})")
    cfg.runner.run(tee_command(render_dnsmasq_config(cfg), DNSMASQ_CONF))
    SystemdCommander(cfg.runner).restart("dnsmasq")
    if not has_nameservers_configured(cfg.runner, [LOCAL_NAMESERVER]):
        add_nameservers_to_instance(cfg.runner, [LOCAL_NAMESERVER])


def check_local_dns_reachable(cfg: ServicePostStartConfig) -> str:
    hostname = cfg.bundle.get_app_hostname("foo")
    return cfg.runner.run(f"host -R 3 {hostname}")


def check_public_dns_reachable(cfg: ServicePostStartConfig) -> str:
    return cfg.runner.run(f"host -R 3 {PUBLIC_DNS_QUERY}")

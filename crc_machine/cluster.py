"""Cluster operations performed with oc and openssl inside the VM."""

from __future__ import annotations

import base64
import json
import shlex
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from crc_machine.constants import VM_KUBECONFIG_PATH
from crc_machine.exceptions import CertificateCheckError, ManagerError, RetriableError
from crc_machine.models import CertExpiryState, OperatorsStatus, Settings
from crc_machine.proxy import ProxyConfig
from crc_machine.retry import retry_with_policy
from crc_machine.services import SystemdCommander
from crc_machine.ssh import SSHRunner
from crc_machine.utils import log, tee_command

KUBELET_CERTS = (
    "/var/lib/kubelet/pki/kubelet-client-current.pem",
    "/var/lib/kubelet/pki/kubelet-server-current.pem",
)
KUBELET_PULL_SECRET_PATH = "/var/lib/kubelet/config.json"
PROXY_DROPIN_NAME = "10-default-env.conf"


def _json(output: str, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise ManagerError(f"Cannot parse {what}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManagerError(f"Unexpected {what} payload")
    return data


def _condition(operator: Dict[str, Any], kind: str) -> bool:
    for condition in (operator.get("status") or {}).get("conditions") or []:
        if condition.get("type") == kind:
            return condition.get("status") == "True"
    return False


def aggregate_operators_status(items: List[Dict[str, Any]]) -> OperatorsStatus:
    """Fold per-operator conditions: available only if every operator is."""
    status = OperatorsStatus(available=True)
    for operator in items:
        name = (operator.get("metadata") or {}).get("name", "?")
        if not _condition(operator, "Available"):
            log("DEBUG", f"{name} operator not available")
            status.available = False
        if _condition(operator, "Degraded"):
            log("DEBUG", f"{name} operator is degraded")
            status.degraded = True
        if _condition(operator, "Progressing"):
            log("DEBUG", f"{name} operator is still progressing")
            status.progressing = True
    return status


def proxy_dropin(proxy: ProxyConfig) -> str:
    lines = ["[Service]"]
    for key, value in proxy.as_environment().items():
        lines.append(f'Environment="{key}={value}"')
    return "\n".join(lines)


class ClusterClient:
    """Runs oc against the admin kubeconfig stored in the VM."""

    def __init__(self, runner: SSHRunner, settings: Settings) -> None:
        self.runner = runner
        self.settings = settings
        self.commander = SystemdCommander(runner)

    def oc(self, *args: str, private: bool = False) -> str:
        command = " ".join(["oc", "--context", "admin", "--cluster", "crc", "--kubeconfig", VM_KUBECONFIG_PATH, *args])
        if private:
            return self.runner.run_private(command)
        return self.runner.run(command)

    # Certificates

    def check_certs_validity(self) -> CertExpiryState:
        """Return EXPIRED if any kubelet certificate is past its end date, VALID otherwise.

        Raises CertificateCheckError when the certificates cannot be read.
        """
        now = datetime.now(timezone.utc)
        for cert in KUBELET_CERTS:
            command = (
                f'date --date="$(sudo openssl x509 -in {cert} -noout -enddate | cut -d= -f 2)" '
                "--iso-8601=seconds"
            )
            try:
                output = self.runner.run(command).strip()
                expiry = datetime.fromisoformat(output)
            except (ManagerError, ValueError) as exc:
                raise CertificateCheckError(f"Cannot read expiry date of {cert}: {exc}") from exc
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            if expiry <= now:
                log("DEBUG", f"Certificate {cert} expired on {expiry.isoformat()}")
                return CertExpiryState.EXPIRED
        return CertExpiryState.VALID

    def regenerate_certificates(self) -> None:
        """Start kubelet and approve its CSRs until fresh certificates are in place."""
        self.commander.start("kubelet")

        def _renewed() -> None:
            self.approve_pending_csrs()
            try:
                state = self.check_certs_validity()
            except CertificateCheckError as exc:
                raise RetriableError(exc) from exc
            if state is not CertExpiryState.VALID:
                raise RetriableError(message="kubelet certificates not renewed yet")

        retry_with_policy(self.settings.csr_retry, _renewed)

    def _pending_csr_names(self) -> List[str]:
        data = _json(self.oc("get", "csr", "-ojson"), "certificate signing requests")
        names = []
        for item in data.get("items") or []:
            if not item.get("status"):
                names.append((item.get("metadata") or {}).get("name", ""))
        return [name for name in names if name]

    def approve_pending_csrs(self) -> int:
        names = self._pending_csr_names()
        for name in names:
            self.oc("adm", "certificate", "approve", name)
        return len(names)

    def approve_node_csr(self) -> None:
        count = self.approve_pending_csrs()
        log("DEBUG", f"Approved {count} pending certificate signing requests")

    # Cluster identity

    def add_pull_secret(self, pull_secret: str) -> None:
        encoded = base64.b64encode(pull_secret.encode("utf-8")).decode("ascii")
        patch = json.dumps({"data": {".dockerconfigjson": encoded}})
        self.oc(
            "patch", "secret", "pull-secret", "-p", shlex.quote(patch),
            "-n", "openshift-config", "--type", "merge",
            private=True,
        )
        self.runner.run_private(tee_command(pull_secret, KUBELET_PULL_SECRET_PATH))

    def update_cluster_id(self) -> str:
        cluster_id = str(uuid.uuid4())
        patch = json.dumps({"spec": {"clusterID": cluster_id}})
        self.oc("patch", "clusterversion", "version", "-p", shlex.quote(patch), "--type", "merge")
        return cluster_id

    def get_operators_status(self) -> OperatorsStatus:
        data = _json(self.oc("get", "co", "-ojson"), "cluster operators")
        items = data.get("items") or []
        if not items:
            raise ManagerError("No cluster operators found")
        return aggregate_operators_status(items)

    # Proxy

    def add_proxy_config_to_cluster(self, proxy: ProxyConfig) -> None:
        spec = {
            "httpProxy": proxy.http_proxy,
            "httpsProxy": proxy.https_proxy,
            "noProxy": proxy.get_no_proxy_string(),
        }
        patch = json.dumps({"spec": spec})
        self.oc("patch", "proxy", "cluster", "-p", shlex.quote(patch), "--type", "merge", private=True)

    def add_proxy_to_kubelet_and_crio(self, proxy: ProxyConfig) -> None:
        content = proxy_dropin(proxy)
        for unit in ("crio", "kubelet"):
            directory = f"/etc/systemd/system/{unit}.service.d"
            self.runner.run(f"sudo mkdir -p {directory}")
            self.runner.run_private(tee_command(content, f"{directory}/{PROXY_DROPIN_NAME}"))

    def check_proxy_settings_for_operator(self, proxy: ProxyConfig, deployment: str, namespace: str) -> bool:
        data = _json(
            self.oc("get", "deployment", deployment, "-n", namespace, "-ojson", private=True),
            f"deployment {namespace}/{deployment}",
        )
        containers = ((((data.get("spec") or {}).get("template") or {}).get("spec") or {}).get("containers")) or []
        for container in containers:
            for env in container.get("env") or []:
                name = env.get("name")
                value = env.get("value")
                if name == "HTTP_PROXY" and proxy.http_proxy and value == proxy.http_proxy:
                    return True
                if name == "HTTPS_PROXY" and proxy.https_proxy and value == proxy.https_proxy:
                    return True
        return False

    # API server

    def wait_for_request_header_client_ca_file(self) -> None:
        def _lookup() -> None:
            try:
                output = self.oc(
                    "get", "configmaps/extension-apiserver-authentication",
                    "-ojsonpath='{.data.requestheader-client-ca-file}'",
                    "-n", "kube-system",
                )
            except ManagerError as exc:
                raise RetriableError(exc) from exc
            if output.count("BEGIN CERTIFICATE") < 2:
                raise RetriableError(message="client-ca request header not updated yet")

        retry_with_policy(self.settings.client_ca_retry, _lookup)

    def delete_openshift_apiserver_pods(self) -> None:
        self.oc("delete", "pod", "-l", "apiserver=true", "--ignore-not-found", "-n", "openshift-apiserver")

    # Disk

    def get_root_partition_usage(self) -> Tuple[int, int]:
        """Return (size, used) in bytes of the VM root filesystem."""
        output = self.runner.run("df -B1 --output=size,used,target /sysroot | tail -1")
        fields = output.split()
        if len(fields) < 2:
            raise ManagerError(f"Unexpected df output: {output.strip()!r}")
        try:
            return int(fields[0]), int(fields[1])
        except ValueError as exc:
            raise ManagerError(f"Unexpected df output: {output.strip()!r}") from exc

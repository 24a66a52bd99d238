"""Start workflow: bring an instance from absent or stopped to a configured, running cluster.

Start is an ordered list of steps run by a small interpreter. Each step
reads and updates a shared StartContext and either returns None (continue),
returns a StartResult (finish early) or raises StageError with the label
reported to the user. Nothing is rolled back on failure; running Start
again is the recovery path.
"""

from __future__ import annotations

import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from crc_machine.bundle import BundleMetadata, BundleResolver, get_bundle_name_or_fail
from crc_machine.cluster import ClusterClient
from crc_machine.constants import (
    AUTHORIZED_KEYS_PATH,
    BUNDLE_CERT_LIFETIME_DAYS,
    DEFAULT_API_URL,
    DEFAULT_WEB_CONSOLE_URL,
    VM_KUBECONFIG_PATH,
    machine_dir,
    private_key_path,
)
from crc_machine.dns import (
    ServicePostStartConfig,
    check_local_dns_reachable,
    check_public_dns_reachable,
    run_post_start,
)
from crc_machine.exceptions import (
    BundleMismatchError,
    CertificateCheckError,
    ManagerError,
    RetriableError,
    SSHCommandError,
    StageError,
)
from crc_machine.models import CertExpiryState, ClusterConfig, MachineConfig, Settings, StartConfig, StartResult, VMState
from crc_machine.network import (
    add_nameservers_to_instance,
    check_local_dns_reachable_from_host,
    determine_host_ip,
    has_nameservers_configured,
)
from crc_machine.proxy import ProxyConfig, resolve_proxy_config
from crc_machine.retry import retry_with_policy
from crc_machine.services import SystemdCommander
from crc_machine.ssh import SSHRunner, generate_ssh_key
from crc_machine.store import Instance, InstanceStore
from crc_machine.utils import copy_file_contents, log, tee_command

RunnerFactory = Callable[..., SSHRunner]
ClusterFactory = Callable[[SSHRunner, Settings], ClusterClient]
CommanderFactory = Callable[[SSHRunner], SystemdCommander]

MARKETPLACE_DEPLOYMENT = "redhat-operators"
MARKETPLACE_NAMESPACE = "openshift-marketplace"


@contextmanager
def stage(label: str) -> Iterator[None]:
    """Report any failure inside the block as StageError(label)."""
    try:
        yield
    except StageError:
        raise
    except Exception as exc:
        raise StageError(label, exc) from exc


def get_cluster_config(bundle: BundleMetadata) -> ClusterConfig:
    try:
        password = bundle.get_kubeadmin_password()
    except ManagerError as exc:
        raise ManagerError(f"Error reading kubeadmin password from bundle {exc}") from exc
    return ClusterConfig(
        kubeconfig=bundle.get_kubeconfig_path(),
        kubeadmin_password=password,
        web_console_url=DEFAULT_WEB_CONSOLE_URL,
        cluster_api=DEFAULT_API_URL,
        proxy_config=resolve_proxy_config(bundle.cluster_info.base_domain),
    )


def _version_suffix(bundle: BundleMetadata) -> str:
    version = bundle.get_openshift_version()
    return f" for OpenShift {version}" if version else ""


def _describe_delay(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"


@dataclass
class StartContext:
    config: StartConfig
    exists: bool = False
    instance: Optional[Instance] = None
    bundle: Optional[BundleMetadata] = None
    cluster_config: Optional[ClusterConfig] = None
    private_key_path: Optional[Path] = None
    pull_secret: str = ""
    vm_state: VMState = VMState.NONE
    runner: Optional[SSHRunner] = None
    cluster: Optional[ClusterClient] = None
    commander: Optional[SystemdCommander] = None
    needs_certs_renewal: bool = False
    instance_ip: str = ""
    host_ip: str = ""
    proxy: Optional[ProxyConfig] = None
    kubelet_started: bool = False
    stack: ExitStack = field(default_factory=ExitStack)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def bundle_name(self) -> str:
        return self.config.bundle_path.name


@dataclass
class Step:
    name: str
    run: Callable[[StartContext], Optional[StartResult]]
    when: Callable[[StartContext], bool] = lambda ctx: True


class StartWorkflow:
    """Runs the ordered Start steps against one store and settings object."""

    def __init__(
        self,
        settings: Settings,
        store: InstanceStore,
        bundles: BundleResolver,
        runner_factory: RunnerFactory = SSHRunner,
        cluster_factory: ClusterFactory = ClusterClient,
        commander_factory: CommanderFactory = SystemdCommander,
    ) -> None:
        self.settings = settings
        self.store = store
        self.bundles = bundles
        self.runner_factory = runner_factory
        self.cluster_factory = cluster_factory
        self.commander_factory = commander_factory
        self.steps: List[Step] = [
            Step("resolve-instance", self.resolve_instance),
            Step("cluster-config", self.build_cluster_config),
            Step("reload", self.reload_instance),
            Step("wait-for-ssh", self.wait_for_ssh),
            Step("check-certs", self.check_certs),
            Step("nameserver", self.add_nameserver, when=lambda ctx: bool(ctx.config.nameserver)),
            Step("host-ip", self.find_host_ip),
            Step("proxy", self.apply_proxy),
            Step("dns", self.configure_dns),
            Step("provision", self.provision_new_instance, when=lambda ctx: not ctx.exists),
            Step("renew-certs", self.renew_certificates, when=lambda ctx: ctx.needs_certs_renewal),
            Step("start-kubelet", self.start_kubelet),
            Step("configure-cluster", self.configure_cluster, when=lambda ctx: not ctx.exists),
            Step("kubelet-check", self.check_kubelet),
            Step("settle", self.settle),
            Step("approve-csr", self.approve_node_csr),
            Step("proxy-propagation", self.wait_for_proxy_propagation, when=lambda ctx: bool(ctx.proxy and ctx.proxy.enabled)),
            Step("result", self.finish),
        ]

    def run(self, config: StartConfig) -> StartResult:
        ctx = StartContext(config=config)
        with ctx.stack:
            try:
                for step in self.steps:
                    if not step.when(ctx):
                        log("DEBUG", f"Skipping step {step.name}")
                        continue
                    log("DEBUG", f"Running step {step.name}")
                    result = step.run(ctx)
                    if result is not None:
                        return result
            finally:
                if ctx.runner is not None:
                    ctx.runner.close()
        raise ManagerError("Start finished without a result")  # pragma: no cover

    # 1. Instance

    def resolve_instance(self, ctx: StartContext) -> Optional[StartResult]:
        with stage("Cannot check if machine exists"):
            ctx.exists = self.store.exists(ctx.name)
        if ctx.exists:
            return self._resume_existing(ctx)
        self._create_new(ctx)
        return None

    def _create_new(self, ctx: StartContext) -> None:
        with stage("Failed to get pull secret"):
            ctx.pull_secret = ctx.config.pull_secret_provider()
        with stage("Error getting bundle metadata"):
            bundle = self.bundles.resolve(ctx.config.bundle_path)
        ctx.bundle = bundle

        disk_path = bundle.get_disk_image_path()
        log("INFO", f"Checking size of the disk image {disk_path} ...")
        with stage(f"Invalid bundle disk image '{disk_path}'"):
            bundle.check_disk_image_size()

        log("INFO", f"Creating CodeReady Containers VM{_version_suffix(bundle)}...")
        machine_config = MachineConfig(
            name=ctx.name,
            bundle_name=ctx.bundle_name,
            vm_driver=self.settings.driver,
            cpus=ctx.config.cpus,
            memory=ctx.config.memory,
            disk_path=disk_path,
            kernel=bundle.get_kernel_path(),
            initramfs=bundle.get_initramfs_path(),
            kernel_cmdline=bundle.get_kernel_cmdline(),
            ssh_key_path=bundle.get_ssh_key_path(),
        )
        with stage("Error creating machine"):
            ctx.instance = self.store.create(machine_config, self.settings.driver)
        ctx.private_key_path = bundle.get_ssh_key_path()

    def _resume_existing(self, ctx: StartContext) -> Optional[StartResult]:
        with stage("Error loading machine"):
            instance = self.store.load(ctx.name)
        ctx.instance = instance
        with stage("Error loading bundle metadata"):
            existing = get_bundle_name_or_fail(instance.driver.get_bundle_name())
            ctx.bundle = self.bundles.get_cached(existing)
        if existing != ctx.bundle_name:
            log("DEBUG", f"Bundle '{ctx.bundle_name}' was requested, but the existing VM is using '{existing}'")
            with stage("Invalid bundle"):
                raise BundleMismatchError(ctx.bundle_name, existing)
        with stage("Error getting the machine state"):
            state = instance.driver.get_state()
        if state.is_running:
            log("INFO", f"A CodeReady Containers VM{_version_suffix(ctx.bundle)} is already running")
            return StartResult(name=ctx.name, success=True, status=str(state))

        log("INFO", f"Starting CodeReady Containers VM{_version_suffix(ctx.bundle)}...")
        with stage("Error starting stopped VM"):
            instance.driver.start()
        with stage("Error saving state for VM"):
            self.store.save(instance)
        ctx.private_key_path = private_key_path(ctx.name, self.settings.machines_dir)
        return None

    def build_cluster_config(self, ctx: StartContext) -> None:
        assert ctx.bundle is not None
        with stage("Cannot create cluster configuration"):
            ctx.cluster_config = get_cluster_config(ctx.bundle)

    def reload_instance(self, ctx: StartContext) -> None:
        with stage(f"Error loading {ctx.name} vm"):
            ctx.instance = self.store.load(ctx.name)
        with stage("Error getting the state"):
            ctx.vm_state = ctx.instance.driver.get_state()
        ctx.runner = self.runner_factory(ctx.instance.driver, ctx.private_key_path)
        ctx.cluster = self.cluster_factory(ctx.runner, self.settings)
        ctx.commander = self.commander_factory(ctx.runner)

    # 2. Reachability

    def wait_for_ssh(self, ctx: StartContext) -> None:
        assert ctx.runner is not None
        runner = ctx.runner
        log("DEBUG", "Waiting until ssh is available")

        def _connect() -> None:
            try:
                runner.run("exit 0")
            except ManagerError as exc:
                raise RetriableError(exc) from exc

        with stage("Failed to connect to the CRC VM with SSH -- host might be unreachable"):
            retry_with_policy(self.settings.ssh_retry, _connect)
        log("INFO", "CodeReady Containers VM is running")

    def check_certs(self, ctx: StartContext) -> None:
        assert ctx.cluster is not None
        log("INFO", "Verifying validity of the cluster certificates ...")
        with stage("Failed to check certificate validity"):
            try:
                state = ctx.cluster.check_certs_validity()
            except CertificateCheckError as exc:
                if exc.state is not CertExpiryState.EXPIRED:
                    raise
                state = CertExpiryState.EXPIRED
        ctx.needs_certs_renewal = state is CertExpiryState.EXPIRED

    def add_nameserver(self, ctx: StartContext) -> None:
        assert ctx.runner is not None and ctx.config.nameserver
        nameserver = ctx.config.nameserver
        with stage("Failed to add nameserver to the VM"):
            if not has_nameservers_configured(ctx.runner, [nameserver]):
                log("INFO", f"Adding {nameserver} as nameserver to the instance ...")
                add_nameservers_to_instance(ctx.runner, [nameserver])

    def find_host_ip(self, ctx: StartContext) -> None:
        assert ctx.instance is not None
        with stage("Error getting the IP"):
            ctx.instance_ip = ctx.instance.driver.get_ip()

        def _determine() -> str:
            try:
                return determine_host_ip(ctx.instance_ip)
            except ManagerError as exc:
                log("DEBUG", f"Error finding host IP ({exc}) - retrying")
                raise RetriableError(exc) from exc

        with stage("Error determining host IP"):
            ctx.host_ip = retry_with_policy(self.settings.host_ip_retry, _determine)

    def apply_proxy(self, ctx: StartContext) -> None:
        assert ctx.bundle is not None
        with stage("Error getting proxy configuration"):
            ctx.proxy = resolve_proxy_config(ctx.bundle.cluster_info.base_domain)
        ctx.stack.enter_context(ctx.proxy.applied())

    def configure_dns(self, ctx: StartContext) -> None:
        assert ctx.instance is not None and ctx.runner is not None and ctx.bundle is not None
        post_start = ServicePostStartConfig(
            name=ctx.name,
            driver_name=ctx.instance.driver_name,
            runner=ctx.runner,
            ip=ctx.instance_ip,
            host_ip=ctx.host_ip,
            bundle=ctx.bundle,
        )
        with stage("Error running post start"):
            run_post_start(post_start)

        try:
            check_local_dns_reachable(post_start)
        except SSHCommandError as exc:
            raise StageError(f"Failed internal DNS query: {exc.output}", exc) from exc
        except ManagerError as exc:
            raise StageError("Failed internal DNS query", exc) from exc
        log("INFO", "Check internal and public DNS query ...")

        try:
            check_public_dns_reachable(post_start)
        except ManagerError as exc:
            output = exc.output if isinstance(exc, SSHCommandError) else ""
            log("WARN", f"Failed public DNS query from the cluster: {exc} : {output}")

        log("INFO", "Check DNS query from host ...")
        with stage("Failed to query DNS from host"):
            check_local_dns_reachable_from_host(ctx.bundle, ctx.instance_ip)

    # 3. First boot

    def provision_new_instance(self, ctx: StartContext) -> None:
        assert ctx.runner is not None and ctx.bundle is not None
        runner = ctx.runner
        key_path = private_key_path(ctx.name, self.settings.machines_dir)

        log("INFO", "Generating new SSH key")
        with stage("Error updating public key"):
            public_key = generate_ssh_key(key_path)
            runner.run(f"echo '{public_key}' > {AUTHORIZED_KEYS_PATH}")
            runner.set_private_key_path(key_path)
            ctx.private_key_path = key_path

        log("INFO", "Copying kubeconfig file to instance dir ...")
        kubeconfig = machine_dir(ctx.name, self.settings.machines_dir) / "kubeconfig"
        with stage("Error copying kubeconfig file"):
            copy_file_contents(ctx.bundle.get_kubeconfig_path(), kubeconfig, 0o644)
        with stage("Error copying kubeconfig file in VM"):
            runner.run_private(tee_command(kubeconfig.read_text(), VM_KUBECONFIG_PATH))

    def renew_certificates(self, ctx: StartContext) -> None:
        assert ctx.cluster is not None and ctx.bundle is not None
        log("INFO", "Cluster TLS certificates have expired, renewing them... [will take up to 5 minutes]")
        try:
            ctx.cluster.regenerate_certificates()
        except Exception as exc:
            log("DEBUG", f"Failed to renew TLS certificates: {exc}")
            self._log_bundle_age(ctx.bundle)
            raise StageError(
                "Failed to renew TLS certificates: please check if a newer CodeReady Containers release is available",
                exc,
            ) from exc

    @staticmethod
    def _log_bundle_age(bundle: BundleMetadata) -> None:
        try:
            build_time = bundle.get_bundle_build_time()
        except ManagerError:
            return
        if build_time.tzinfo is None:
            build_time = build_time.replace(tzinfo=timezone.utc)
        age_days = (datetime.now(timezone.utc) - build_time).days
        if age_days >= BUNDLE_CERT_LIFETIME_DAYS:
            log("DEBUG", f"Bundle has been generated {age_days} days ago")

    # 4. Cluster

    def start_kubelet(self, ctx: StartContext) -> None:
        assert ctx.commander is not None
        log("INFO", "Starting OpenShift kubelet service")
        with stage("Error starting kubelet"):
            ctx.commander.start("kubelet")

    def configure_cluster(self, ctx: StartContext) -> None:
        log("INFO", "Configuring cluster for first start")
        with stage("Error Setting cluster config"):
            self._configure_proxy(ctx)
            assert ctx.cluster is not None
            log("INFO", "Adding user's pull secret ...")
            try:
                ctx.cluster.add_pull_secret(ctx.pull_secret)
            except ManagerError as exc:
                raise ManagerError(f"Failed to update user pull secret or cluster ID: {exc}") from exc
            log("INFO", "Updating cluster ID ...")
            try:
                ctx.cluster.update_cluster_id()
            except ManagerError as exc:
                raise ManagerError(f"Failed to update cluster ID: {exc}") from exc

    def _configure_proxy(self, ctx: StartContext) -> None:
        proxy = ctx.proxy
        if proxy is None or not proxy.enabled:
            return
        assert ctx.cluster is not None and ctx.commander is not None
        error: Optional[BaseException] = None
        try:
            log("INFO", "Adding proxy configuration to the cluster ...")
            proxy.add_no_proxy(ctx.instance_ip)
            ctx.cluster.add_proxy_config_to_cluster(proxy)
            log("INFO", "Adding proxy configuration to kubelet and crio service ...")
            ctx.cluster.add_proxy_to_kubelet_and_crio(proxy)
        except ManagerError as exc:
            error = exc
        finally:
            # The services pick up the drop-ins only on restart, attempted even after a failed push.
            for unit in ("crio", "kubelet"):
                try:
                    ctx.commander.restart(unit)
                except ManagerError as exc:
                    error = exc
        if error is not None:
            raise ManagerError(f"Failed to configure proxy for cluster: {error}") from error

    def check_kubelet(self, ctx: StartContext) -> None:
        assert ctx.commander is not None and ctx.cluster is not None
        with stage("kubelet service is not running"):
            ctx.kubelet_started = ctx.commander.is_active("kubelet")
        if not ctx.kubelet_started:
            return
        # openshift-apiserver only trusts the regenerated aggregator CA after a restart.
        log("DEBUG", "Waiting for update of client-ca request header ...")
        with stage("Failed to wait for the client-ca request header update"):
            ctx.cluster.wait_for_request_header_client_ca_file()
        with stage("Cannot delete OpenShift API Server pods"):
            ctx.cluster.delete_openshift_apiserver_pods()
        log("INFO", f"Starting OpenShift cluster ... [waiting {_describe_delay(self.settings.settle_delay)}]")

    def settle(self, ctx: StartContext) -> None:
        time.sleep(self.settings.settle_delay)

    def approve_node_csr(self, ctx: StartContext) -> None:
        assert ctx.cluster is not None
        with stage("Error approving the node csr"):
            ctx.cluster.approve_node_csr()

    def wait_for_proxy_propagation(self, ctx: StartContext) -> None:
        assert ctx.cluster is not None and ctx.proxy is not None
        cluster = ctx.cluster
        proxy = ctx.proxy
        log("INFO", "Waiting for the proxy configuration to be applied ...")

        def _check() -> None:
            try:
                applied = cluster.check_proxy_settings_for_operator(proxy, MARKETPLACE_DEPLOYMENT, MARKETPLACE_NAMESPACE)
            except ManagerError as exc:
                log("DEBUG", f"Error getting proxy setting for openshift-marketplace operator {exc}")
                raise RetriableError(exc) from exc
            if not applied:
                log("DEBUG", "Proxy changes for cluster in progress")
                raise RetriableError(message="proxy changes for cluster in progress")

        try:
            retry_with_policy(self.settings.proxy_retry, _check)
        except ManagerError:
            log("DEBUG", "Failed to propagate proxy settings to cluster")

    def finish(self, ctx: StartContext) -> StartResult:
        assert ctx.cluster_config is not None
        cluster_config = ctx.cluster_config
        log("INFO", "")
        log("INFO", "To access the cluster, first set up your environment by following 'crc oc-env' instructions")
        log("INFO", f"Then you can access it by running 'oc login -u developer -p developer {cluster_config.cluster_api}'")
        log(
            "INFO",
            f"To login as an admin, run 'oc login -u kubeadmin -p {cluster_config.kubeadmin_password} "
            f"{cluster_config.cluster_api}'",
        )
        log("INFO", "")
        log("INFO", "You can now run 'crc console' and use these credentials to access the OpenShift web console")
        return StartResult(
            name=ctx.name,
            success=True,
            kubelet_started=ctx.kubelet_started,
            cluster_config=cluster_config,
            status=str(ctx.vm_state),
        )

"""Lifecycle entry points: start, stop, power off, delete and inspect an instance."""

from __future__ import annotations

from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from crc_machine.bundle import BundleMetadata, BundleResolver, get_bundle_name_or_fail
from crc_machine.cluster import ClusterClient
from crc_machine.constants import private_key_path
from crc_machine.exceptions import ManagerError, StageError
from crc_machine.models import (
    ClusterStatusResult,
    ConsoleResult,
    DeleteResult,
    IPResult,
    PowerOffResult,
    Settings,
    StartConfig,
    StartResult,
    StopResult,
    VMState,
)
from crc_machine.poststart import (
    ClusterFactory,
    CommanderFactory,
    RunnerFactory,
    StartWorkflow,
    get_cluster_config,
    stage,
)
from crc_machine.proxy import ProxyConfig, resolve_proxy_config
from crc_machine.services import SystemdCommander
from crc_machine.ssh import SSHRunner
from crc_machine.store import Instance, InstanceStore
from crc_machine.utils import log, machine_logging

StoreFactory = Callable[[Settings], InstanceStore]


def _default_store(settings: Settings) -> InstanceStore:
    return InstanceStore(settings.machines_dir)


class MachineManager:
    """Owns the collaborators behind every lifecycle entry point.

    Each call opens a logging scope and an instance store, and releases both
    before returning, whatever the outcome.
    """

    def __init__(
        self,
        settings: Settings,
        store_factory: StoreFactory = _default_store,
        bundles: Optional[BundleResolver] = None,
        runner_factory: RunnerFactory = SSHRunner,
        cluster_factory: ClusterFactory = ClusterClient,
        commander_factory: CommanderFactory = SystemdCommander,
    ) -> None:
        self.settings = settings
        self.store_factory = store_factory
        self.bundles = bundles or BundleResolver(settings.cache_dir)
        self.runner_factory = runner_factory
        self.cluster_factory = cluster_factory
        self.commander_factory = commander_factory

    @contextmanager
    def _session(self, debug: bool = False) -> Iterator[InstanceStore]:
        with ExitStack() as stack:
            stack.enter_context(machine_logging(self.settings.log_file, debug))
            store = self.store_factory(self.settings)
            stack.callback(store.close)
            yield store

    def _bundle_for(self, instance: Instance) -> BundleMetadata:
        name = get_bundle_name_or_fail(instance.driver.get_bundle_name())
        return self.bundles.get_cached(name)

    def _ssh_key_for(self, instance: Instance) -> Optional[Path]:
        """The key Start installed in the VM, else the bundle key the VM was created with."""
        generated = private_key_path(instance.name, self.settings.machines_dir)
        if generated.exists():
            return generated
        return instance.driver.get_ssh_key_path()

    def exists(self, name: str) -> bool:
        with self._session() as store:
            try:
                return store.exists(name)
            except ManagerError as exc:
                raise ManagerError(f"Error checking if the host exists: {exc}") from exc

    def start(self, config: StartConfig) -> StartResult:
        with self._session(config.debug) as store:
            workflow = StartWorkflow(
                self.settings,
                store,
                self.bundles,
                runner_factory=self.runner_factory,
                cluster_factory=self.cluster_factory,
                commander_factory=self.commander_factory,
            )
            try:
                return workflow.run(config)
            except StageError as exc:
                log("DEBUG", f"Start failed at '{exc.stage}': {exc.cause}")
                return StartResult(name=config.name, error=str(exc))

    def stop(self, name: str, debug: bool = False) -> StopResult:
        with self._session(debug) as store:
            try:
                with stage("Cannot load machine"):
                    instance = store.load(name)
                try:
                    state = instance.driver.get_state()
                except ManagerError as exc:
                    log("DEBUG", f"Cannot read state before stopping: {exc}")
                    state = VMState.NONE
                with stage("Cannot stop machine"):
                    instance.driver.stop()
            except StageError as exc:
                return StopResult(name=name, error=str(exc))
            return StopResult(name=name, success=True, state=state)

    def power_off(self, name: str) -> PowerOffResult:
        with self._session() as store:
            try:
                with stage("Cannot load machine"):
                    instance = store.load(name)
                with stage("Cannot kill machine"):
                    instance.driver.kill()
            except StageError as exc:
                return PowerOffResult(name=name, error=str(exc))
            return PowerOffResult(name=name, success=True)

    def delete(self, name: str) -> DeleteResult:
        with self._session() as store:
            try:
                with stage("Cannot load machine"):
                    instance = store.load(name)
                with stage("Driver cannot remove machine"):
                    instance.driver.remove()
                with stage("Cannot remove machine"):
                    store.remove(name)
            except StageError as exc:
                return DeleteResult(name=name, error=str(exc))
            return DeleteResult(name=name, success=True)

    def ip(self, name: str, debug: bool = False) -> IPResult:
        with self._session(debug) as store:
            try:
                with stage("Cannot load machine"):
                    instance = store.load(name)
                with stage("Cannot get IP"):
                    address = instance.driver.get_ip()
            except StageError as exc:
                return IPResult(name=name, error=str(exc))
            return IPResult(name=name, success=True, ip=address)

    def status(self, name: str) -> ClusterStatusResult:
        with self._session() as store:
            try:
                return self._status(store, name)
            except StageError as exc:
                return ClusterStatusResult(name=name, error=str(exc))

    def _status(self, store: InstanceStore, name: str) -> ClusterStatusResult:
        with stage("Cannot check if machine exists"):
            store.exists(name)
        with stage("Cannot load machine"):
            instance = store.load(name)
        with stage("Cannot get machine state"):
            vm_state = instance.driver.get_state()

        openshift_status = "Stopped"
        disk_size = disk_use = 0
        if vm_state.is_running:
            with stage("Error loading bundle metadata"):
                bundle = self._bundle_for(instance)
            with stage("Error getting proxy configuration"):
                proxy = resolve_proxy_config(bundle.cluster_info.base_domain)
            runner = self.runner_factory(instance.driver, self._ssh_key_for(instance))
            try:
                with proxy.applied():
                    cluster = self.cluster_factory(runner, self.settings)
                    openshift_status = self._openshift_status(cluster, bundle)
                    with stage("Cannot get root partition usage"):
                        disk_size, disk_use = cluster.get_root_partition_usage()
            finally:
                runner.close()

        return ClusterStatusResult(
            name=name,
            success=True,
            crc_status=str(vm_state),
            openshift_status=openshift_status,
            disk_use=disk_use,
            disk_size=disk_size,
        )

    @staticmethod
    def _openshift_status(cluster: ClusterClient, bundle: BundleMetadata) -> str:
        try:
            operators = cluster.get_operators_status()
        except Exception as exc:
            log("DEBUG", f"Cannot get cluster operators status: {exc}")
            return "Not Reachable"
        if operators.available:
            return f"Running (v{bundle.get_openshift_version() or '4.x'})"
        if operators.degraded:
            return "Degraded"
        if operators.progressing:
            return "Starting"
        return "Stopped"

    def get_proxy_config(self, name: str) -> ProxyConfig:
        """Proxy settings the cluster would use. The VM need not be running."""
        with self._session() as store:
            instance = store.load(name)
            try:
                bundle = self._bundle_for(instance)
            except ManagerError as exc:
                raise ManagerError(f"Error loading bundle metadata: {exc}") from exc
            try:
                cluster_config = get_cluster_config(bundle)
            except ManagerError as exc:
                raise ManagerError(f"Error loading cluster configuration: {exc}") from exc
            return cluster_config.proxy_config

    def get_console_url(self, name: str) -> ConsoleResult:
        with self._session() as store:
            try:
                with stage("Cannot load machine"):
                    instance = store.load(name)
                with stage("Error getting the state for host"):
                    vm_state = instance.driver.get_state()
                with stage("Error loading bundle metadata"):
                    bundle = self._bundle_for(instance)
                with stage("Error loading cluster configuration"):
                    cluster_config = get_cluster_config(bundle)
            except StageError as exc:
                return ConsoleResult(error=str(exc))
            return ConsoleResult(success=True, cluster_config=cluster_config, state=vm_state)

"""Bundle metadata: the packaged VM image, boot assets and cluster facts."""

from __future__ import annotations

import json
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from crc_machine.constants import BUNDLE_EXTENSION, BUNDLE_INFO_FILE
from crc_machine.exceptions import ManagerError
from crc_machine.utils import ensure_directory, log


@dataclass
class BuildInfo:
    build_time: str = ""
    openshift_installer_version: str = ""
    snc_version: str = ""


@dataclass
class ClusterInfo:
    openshift_version: str = ""
    cluster_name: str = "crc"
    base_domain: str = "testing"
    apps_domain: str = "apps-crc.testing"
    ssh_private_key_file: str = ""
    kubeconfig: str = ""
    kubeadmin_password_file: str = ""


@dataclass
class Node:
    kind: List[str]
    hostname: str
    disk_image: str
    kernel: str = ""
    initramfs: str = ""
    kernel_cmdline: str = ""
    internal_ip: str = ""


@dataclass
class DiskImage:
    name: str
    format: str
    size: int
    sha256sum: str = ""


@dataclass
class BundleMetadata:
    name: str
    cache_dir: Path
    version: str = ""
    type: str = ""
    build_info: BuildInfo = field(default_factory=BuildInfo)
    cluster_info: ClusterInfo = field(default_factory=ClusterInfo)
    nodes: List[Node] = field(default_factory=list)
    disk_images: List[DiskImage] = field(default_factory=list)
    driver_name: str = ""

    @classmethod
    def from_dict(cls, name: str, cache_dir: Path, data: Dict[str, Any]) -> "BundleMetadata":
        build = data.get("buildInfo") or {}
        cluster = data.get("clusterInfo") or {}
        nodes = [
            Node(
                kind=list(node.get("kind") or []),
                hostname=node.get("hostname", ""),
                disk_image=node.get("diskImage", ""),
                kernel=node.get("kernel", ""),
                initramfs=node.get("initramfs", ""),
                kernel_cmdline=node.get("kernelCmdLine", ""),
                internal_ip=node.get("internalIP", ""),
            )
            for node in data.get("nodes") or []
        ]
        disks = []
        for disk in (data.get("storage") or {}).get("diskImages") or []:
            try:
                size = int(disk.get("size", 0))
            except (TypeError, ValueError):
                raise ManagerError(f"Invalid size for disk image '{disk.get('name')}' in bundle {name}")
            disks.append(
                DiskImage(
                    name=disk.get("name", ""),
                    format=disk.get("format", ""),
                    size=size,
                    sha256sum=disk.get("sha256sum", ""),
                )
            )
        if not nodes:
            raise ManagerError(f"Bundle {name} does not describe any node")
        return cls(
            name=name,
            cache_dir=cache_dir,
            version=data.get("version", ""),
            type=data.get("type", ""),
            build_info=BuildInfo(
                build_time=build.get("buildTime", ""),
                openshift_installer_version=build.get("openshiftInstallerVersion", ""),
                snc_version=build.get("sncVersion", ""),
            ),
            cluster_info=ClusterInfo(
                openshift_version=cluster.get("openshiftVersion", ""),
                cluster_name=cluster.get("clusterName", "crc"),
                base_domain=cluster.get("baseDomain", "testing"),
                apps_domain=cluster.get("appsDomain", "apps-crc.testing"),
                ssh_private_key_file=cluster.get("sshPrivateKeyFile", ""),
                kubeconfig=cluster.get("kubeConfig", ""),
                kubeadmin_password_file=cluster.get("kubeadminPasswordFile", ""),
            ),
            nodes=nodes,
            disk_images=disks,
            driver_name=(data.get("driverInfo") or {}).get("name", ""),
        )

    @classmethod
    def load(cls, name: str, cache_dir: Path) -> "BundleMetadata":
        info_path = cache_dir / BUNDLE_INFO_FILE
        if not info_path.exists():
            raise ManagerError(f"Bundle metadata missing: {info_path}")
        try:
            data = json.loads(info_path.read_text())
        except json.JSONDecodeError as exc:
            raise ManagerError(f"Cannot parse {info_path}: {exc}") from exc
        return cls.from_dict(name, cache_dir, data)

    def _resolve(self, relative: str) -> Path:
        return self.cache_dir / relative

    def get_openshift_version(self) -> str:
        return self.cluster_info.openshift_version

    def get_api_hostname(self) -> str:
        return f"api.{self.cluster_info.cluster_name}.{self.cluster_info.base_domain}"

    def get_app_hostname(self, app: str) -> str:
        return f"{app}.{self.cluster_info.apps_domain}"

    def get_kubeconfig_path(self) -> Path:
        return self._resolve(self.cluster_info.kubeconfig)

    def get_ssh_key_path(self) -> Path:
        return self._resolve(self.cluster_info.ssh_private_key_file)

    def get_disk_image_path(self) -> Path:
        if not self.disk_images:
            return self._resolve(self.nodes[0].disk_image)
        return self._resolve(self.disk_images[0].name)

    def get_kernel_path(self) -> Path:
        return self._resolve(self.nodes[0].kernel)

    def get_initramfs_path(self) -> Path:
        return self._resolve(self.nodes[0].initramfs)

    def get_kernel_cmdline(self) -> str:
        return self.nodes[0].kernel_cmdline

    def get_kubeadmin_password(self) -> str:
        path = self._resolve(self.cluster_info.kubeadmin_password_file)
        try:
            return path.read_text().strip()
        except OSError as exc:
            raise ManagerError(f"Error reading kubeadmin password from bundle: {exc}") from exc

    def get_bundle_build_time(self) -> datetime:
        raw = self.build_info.build_time.strip()
        if not raw:
            raise ManagerError(f"Bundle {self.name} has no build time")
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ManagerError(f"Invalid bundle build time '{raw}'") from exc

    def check_disk_image_size(self) -> None:
        """Compare the extracted disk image size with the size recorded in the metadata."""
        disk_path = self.get_disk_image_path()
        if not disk_path.exists():
            raise ManagerError(f"Disk image {disk_path} does not exist")
        if not self.disk_images:
            return
        expected = self.disk_images[0].size
        actual = disk_path.stat().st_size
        if expected and actual != expected:
            raise ManagerError(f"Invalid bundle disk image '{disk_path}', size {actual} != {expected}")


def bundle_stem(bundle_name: str) -> str:
    if bundle_name.endswith(BUNDLE_EXTENSION):
        return bundle_name[: -len(BUNDLE_EXTENSION)]
    return bundle_name


def _safe_members(tar: tarfile.TarFile, destination: Path) -> List[tarfile.TarInfo]:
    root = destination.resolve()
    members = []
    for member in tar.getmembers():
        target = (destination / member.name).resolve()
        if root != target and root not in target.parents:
            raise ManagerError(f"Refusing to extract '{member.name}' outside {destination}")
        if member.issym() or member.islnk():
            log("DEBUG", f"Skipping link {member.name} in bundle")
            continue
        members.append(member)
    return members


class BundleResolver:
    """Looks up bundles in the cache, extracting them on first use."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def cached_dir(self, bundle_name: str) -> Path:
        return self.cache_dir / bundle_stem(bundle_name)

    def get_cached(self, bundle_name: str) -> BundleMetadata:
        return BundleMetadata.load(bundle_name, self.cached_dir(bundle_name))

    def extract(self, bundle_path: Path) -> BundleMetadata:
        if not bundle_path.exists():
            raise ManagerError(f"Bundle {bundle_path} does not exist")
        bundle_name = bundle_path.name
        ensure_directory(self.cache_dir)
        staging = self.cache_dir / f".{bundle_stem(bundle_name)}.extracting"
        if staging.exists():
            shutil.rmtree(staging)
        ensure_directory(staging)
        try:
            with tarfile.open(bundle_path, "r:*") as tar:
                tar.extractall(staging, members=_safe_members(tar, staging))
        except (tarfile.TarError, OSError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ManagerError(f"Cannot extract bundle {bundle_path}: {exc}") from exc

        info_files = sorted(staging.rglob(BUNDLE_INFO_FILE))
        if not info_files:
            shutil.rmtree(staging, ignore_errors=True)
            raise ManagerError(f"{bundle_path} is not a valid bundle: {BUNDLE_INFO_FILE} not found")
        target = self.cached_dir(bundle_name)
        if target.exists():
            shutil.rmtree(target)
        info_files[0].parent.rename(target)
        shutil.rmtree(staging, ignore_errors=True)
        return BundleMetadata.load(bundle_name, target)

    def resolve(self, bundle_path: Path) -> BundleMetadata:
        """Return cached metadata for bundle_path, extracting the bundle when not cached."""
        bundle_name = bundle_path.name
        try:
            metadata = self.get_cached(bundle_name)
        except ManagerError:
            metadata = None
        if metadata is not None:
            log("INFO", f"Loading bundle: {bundle_name} ...")
            return metadata
        log("INFO", f"Extracting bundle: {bundle_name} ...")
        return self.extract(bundle_path)


def get_bundle_name_or_fail(name: Optional[str]) -> str:
    if not name:
        raise ManagerError(
            "Error getting bundle name from CodeReady Containers instance, "
            "make sure you ran 'crc setup' and are using the latest bundle"
        )
    return name

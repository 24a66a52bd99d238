"""CLI entry points for crc-machine."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from crc_machine.config import load_user_config, parse_env, parse_start_config, user_config_path
from crc_machine.constants import DEFAULT_NAME
from crc_machine.exceptions import ManagerError
from crc_machine.machine import MachineManager
from crc_machine.models import Settings, StartResult
from crc_machine.utils import log


def print_startup_banner(result: StartResult) -> None:
    """Print a visually distinct access-info banner after the cluster starts."""
    lines: List[str] = [f"  Instance: {result.name} ({result.status or 'Running'})"]
    config = result.cluster_config
    if config is not None:
        lines.append(f"  API:      {config.cluster_api}")
        lines.append(f"  Console:  {config.web_console_url}")
        lines.append("  Login:    oc login -u developer -p developer")
        lines.append(f"  Admin:    oc login -u kubeadmin -p {config.kubeadmin_password}")
    if not result.kubelet_started and config is not None:
        lines.append("  Warning:  kubelet is not running yet")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def _human_size(value: int) -> str:
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TiB"


def confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    try:
        answer = input(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def cmd_start(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    defaults = load_user_config(user_config_path(settings))
    config = parse_start_config(
        name=args.name,
        bundle_path=args.bundle,
        cpus=args.cpus,
        memory=args.memory,
        nameserver=args.nameserver,
        pull_secret_file=args.pull_secret_file,
        debug=args.debug,
        defaults=defaults,
    )
    result = manager.start(config)
    if not result.success:
        log("ERROR", result.error or "Start failed")
        return 1
    if result.cluster_config is None:
        log("INFO", f"{result.name} is already {result.status or 'running'}")
        return 0
    print_startup_banner(result)
    return 0


def cmd_stop(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    result = manager.stop(args.name, debug=args.debug)
    if not result.success:
        log("ERROR", result.error or "Stop failed")
        return 1
    log("SUCCESS", f"Stopped the instance (was {result.state})")
    return 0


def cmd_poweroff(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    result = manager.power_off(args.name)
    if not result.success:
        log("ERROR", result.error or "Power off failed")
        return 1
    log("SUCCESS", "Powered off the instance")
    return 0


def cmd_delete(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    if not args.force and not confirm(f"Do you want to delete the instance '{args.name}'?"):
        log("WARN", "Aborted (use --force to delete without confirmation)")
        return 1
    result = manager.delete(args.name)
    if not result.success:
        log("ERROR", result.error or "Delete failed")
        return 1
    log("SUCCESS", "Deleted the instance")
    return 0


def cmd_status(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    result = manager.status(args.name)
    if not result.success:
        log("ERROR", result.error or "Status failed")
        return 1
    print(f"CRC VM:          {result.crc_status}")
    print(f"OpenShift:       {result.openshift_status}")
    if result.disk_size:
        usage = 100.0 * result.disk_use / result.disk_size
        print(f"Disk Usage:      {_human_size(result.disk_use)} of {_human_size(result.disk_size)} ({usage:.0f}%)")
    return 0


def cmd_ip(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    result = manager.ip(args.name, debug=args.debug)
    if not result.success:
        log("ERROR", result.error or "Cannot get IP")
        return 1
    print(result.ip)
    return 0


def cmd_console(manager: MachineManager, settings: Settings, args: argparse.Namespace) -> int:
    result = manager.get_console_url(args.name)
    if not result.success or result.cluster_config is None:
        log("ERROR", result.error or "Cannot get console URL")
        return 1
    config = result.cluster_config
    if args.credentials:
        print(f"To login as a regular user, run 'oc login -u developer -p developer {config.cluster_api}'.")
        print(f"To login as an admin, run 'oc login -u kubeadmin -p {config.kubeadmin_password} {config.cluster_api}'")
        return 0
    print(config.web_console_url)
    if not args.url and not result.state.is_running:
        log("WARN", f"The instance is {result.state}; the console is not reachable until it is started")
    return 0


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "poweroff": cmd_poweroff,
    "kill": cmd_poweroff,
    "delete": cmd_delete,
    "status": cmd_status,
    "ip": cmd_ip,
    "console": cmd_console,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crc-machine", description="OpenShift single-node VM lifecycle manager")
    parser.add_argument("--debug", action="store_true", help="Show debug output on the console")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    def add(name: str, help_text: str, aliases: Optional[List[str]] = None) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text, aliases=aliases or [])
        cmd.add_argument("--name", default=DEFAULT_NAME, help=f"Instance name (default: {DEFAULT_NAME})")
        return cmd

    start = add("start", "Create or start the instance and configure the cluster")
    start.add_argument("--bundle", "-b", help="Path to the .crcbundle to use")
    start.add_argument("--cpus", "-c", type=int, default=None, help="Number of vCPUs (>= 4)")
    start.add_argument("--memory", "-m", type=int, default=None, help="Memory in MiB (>= 9216)")
    start.add_argument("--nameserver", "-n", default=None, help="Extra nameserver to use in the VM")
    start.add_argument("--pull-secret-file", "-p", default=None, help="File containing the image pull secret")
    add("stop", "Gracefully stop the instance")
    add("poweroff", "Power off the instance immediately", aliases=["kill"])
    delete = add("delete", "Remove the instance and its record")
    delete.add_argument("--force", "-f", action="store_true", help="Delete without asking for confirmation")
    add("status", "Show instance and cluster status")
    add("ip", "Print the instance IP address")
    console = add("console", "Show the web console URL")
    console.add_argument("--credentials", action="store_true", help="Print login commands instead of the URL")
    console.add_argument("--url", action="store_true", help="Print only the URL")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    manager = MachineManager(settings)
    handler = COMMANDS[args.command]
    try:
        return handler(manager, settings, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it with the contents of the crc log file")
        import traceback

        traceback.print_exc()
        return 1

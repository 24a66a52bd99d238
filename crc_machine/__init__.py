"""crc-machine package."""

__all__ = [
    "bundle",
    "cli",
    "cluster",
    "config",
    "constants",
    "dns",
    "driver",
    "exceptions",
    "libvirt_driver",
    "machine",
    "models",
    "network",
    "poststart",
    "proxy",
    "retry",
    "services",
    "ssh",
    "store",
    "utils",
]

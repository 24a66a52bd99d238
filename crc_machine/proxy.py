"""Proxy policy: effective HTTP(S)/no-proxy settings for the host and the cluster."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Optional
from urllib.parse import urlparse

from crc_machine.exceptions import ManagerError
from crc_machine.utils import log

DEFAULT_NO_PROXY = ("127.0.0.1", "localhost")
_ENV_KEYS = ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY")


def _lookup(environ: Mapping[str, str], key: str) -> str:
    return (environ.get(key) or environ.get(key.lower()) or "").strip()


def validate_proxy_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ManagerError(f"Proxy URL '{url}' is not valid: expected http://host[:port]")


class ProxyConfig:
    def __init__(
        self,
        http_proxy: str = "",
        https_proxy: str = "",
        no_proxy: Optional[List[str]] = None,
    ) -> None:
        self.http_proxy = http_proxy
        self.https_proxy = https_proxy
        self.no_proxy: List[str] = list(DEFAULT_NO_PROXY) if no_proxy is None else list(no_proxy)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        env = os.environ if environ is None else environ
        http_proxy = _lookup(env, "HTTP_PROXY")
        https_proxy = _lookup(env, "HTTPS_PROXY")
        for url in (http_proxy, https_proxy):
            if url:
                validate_proxy_url(url)
        no_proxy = list(DEFAULT_NO_PROXY)
        for entry in _lookup(env, "NO_PROXY").split(","):
            entry = entry.strip()
            if entry:
                no_proxy.append(entry)
        return cls(http_proxy=http_proxy, https_proxy=https_proxy, no_proxy=no_proxy)

    @property
    def enabled(self) -> bool:
        return bool(self.http_proxy or self.https_proxy)

    def add_no_proxy(self, entry: str) -> None:
        self.no_proxy.append(entry)

    def get_no_proxy_string(self) -> str:
        return ",".join(self.no_proxy)

    def as_environment(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        if self.http_proxy:
            env["HTTP_PROXY"] = self.http_proxy
        if self.https_proxy:
            env["HTTPS_PROXY"] = self.https_proxy
        if self.no_proxy:
            env["NO_PROXY"] = self.get_no_proxy_string()
        return env

    @contextmanager
    def applied(self) -> Iterator["ProxyConfig"]:
        """Push the proxy settings into os.environ, restoring the previous values on exit."""
        keys = [k for key in _ENV_KEYS for k in (key, key.lower())]
        saved = {key: os.environ.get(key) for key in keys}
        if self.enabled:
            for key, value in self.as_environment().items():
                os.environ[key] = value
                os.environ[key.lower()] = value
        try:
            yield self
        finally:
            for key, value in saved.items():
                if value is None:
                    os.environ.pop(key, None)
                else:
                    os.environ[key] = value

    def __repr__(self) -> str:
        return (
            f"ProxyConfig(http_proxy={_redact(self.http_proxy)!r}, "
            f"https_proxy={_redact(self.https_proxy)!r}, no_proxy={self.get_no_proxy_string()!r})"
        )


def _redact(url: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":********@")
    return url


def resolve_proxy_config(base_domain: str) -> ProxyConfig:
    """Read the ambient proxy settings; exempt the cluster domain when a proxy is set."""
    proxy = ProxyConfig.from_environment()
    if proxy.enabled:
        proxy.add_no_proxy(f".{base_domain}")
        log("DEBUG", f"Using proxy configuration: {proxy!r}")
    return proxy

"""Readiness probes with exponential backoff."""

import re
import socket
import time
from typing import Callable, Tuple, Optional

import requests
from loguru import logger

from models.stack_config import ReadinessProbe, ServiceDefinition
from models.stack_status import ProbeResult
from services.compose_service import ComposeService


class ReadinessTimeout(Exception):
    """服务在超时前未就绪."""

    def __init__(self, service: str, attempts: int, detail: str, waited: float):
        self.service = service
        self.attempts = attempts
        self.detail = detail
        self.waited = waited
        super().__init__(
            f"{service} not ready after {waited:.0f}s ({attempts} attempts): {detail}"
        )


class Probe:
    """探测基类，check()返回 (ready, detail)."""

    def __init__(self, service: str, config: ReadinessProbe):
        self.service = service
        self.config = config

    def check(self) -> Tuple[bool, str]:
        raise NotImplementedError


class LogMarkerProbe(Probe):
    """
    在容器日志里找就绪标记

    MySQL prints "ready for connections" twice: first for the temporary
    server used during initialization (``port: 0``), then for the real
    one. The exclude pattern drops the first.

    Docker keeps the log across restarts, so only lines written since the
    container's current start are searched.
    """

    def __init__(self, service: str, config: ReadinessProbe, compose: ComposeService):
        super().__init__(service, config)
        self.compose = compose
        self._marker = re.compile(config.marker)
        self._exclude = re.compile(config.exclude) if config.exclude else None

    def check(self) -> Tuple[bool, str]:
        running, started = self.compose.started_at(self.service)
        if not running:
            return False, started or "container not running"

        ok, output = self.compose.logs(self.service, since=started)
        if not ok:
            return False, output.strip() or "logs unavailable"

        for line in output.splitlines():
            if self._exclude and self._exclude.search(line):
                continue
            if self._marker.search(line):
                return True, line.strip()
        return False, f"marker '{self.config.marker}' not seen yet"


class ContainerStateProbe(Probe):
    """容器运行中，且有healthcheck时为healthy."""

    def __init__(self, service: str, config: ReadinessProbe, compose: ComposeService,
                 profiles: Tuple[str, ...] = ()):
        super().__init__(service, config)
        self.compose = compose
        self.profiles = profiles

    def check(self) -> Tuple[bool, str]:
        status = self.compose.get_status(self.profiles).get(self.service)
        if status.is_healthy():
            return True, f"{self.service} is {status.state.value}"

        detail = status.state.value
        if status.health:
            detail += f" ({status.health})"
        if status.exit_code not in (None, 0):
            detail += f", exit code {status.exit_code}"
        return False, detail


class TcpProbe(Probe):
    """TCP端口可连接."""

    def check(self) -> Tuple[bool, str]:
        host = self.config.host or "127.0.0.1"
        try:
            with socket.create_connection((host, self.config.port), timeout=3):
                return True, f"connected to {host}:{self.config.port}"
        except OSError as e:
            return False, f"{host}:{self.config.port} {e}"


class HttpProbe(Probe):
    """HTTP状态码符合预期."""

    def __init__(self, service: str, config: ReadinessProbe, verify: bool = False):
        super().__init__(service, config)
        # self-signed certificates are expected on first boot
        self.verify = verify

    @property
    def url(self) -> str:
        host = self.config.host or "127.0.0.1"
        return f"{self.config.scheme}://{host}:{self.config.port}{self.config.path}"

    def check(self) -> Tuple[bool, str]:
        try:
            response = requests.get(self.url, timeout=5, verify=self.verify, allow_redirects=False)
        except requests.RequestException as e:
            return False, f"{self.url}: {e}"
        if response.status_code in self.config.expected_status:
            return True, f"{self.url} -> {response.status_code}"
        return False, f"{self.url} -> {response.status_code}, expected {self.config.expected_status}"


def build_probe(service: ServiceDefinition, compose: ComposeService) -> Optional[Probe]:
    """按服务的就绪约定创建探测器."""
    config = service.readiness
    if config is None:
        return None
    if config.kind == "log_marker":
        return LogMarkerProbe(service.name, config, compose)
    if config.kind == "container_state":
        profiles = (service.profile,) if service.profile else ()
        return ContainerStateProbe(service.name, config, compose, profiles)
    if config.kind == "tcp":
        return TcpProbe(service.name, config)
    return HttpProbe(service.name, config)


def wait_until_ready(probe: Probe,
                     sleep: Callable[[float], None] = time.sleep,
                     monotonic: Callable[[], float] = time.monotonic) -> ProbeResult:
    """
    重复探测直到就绪

    The delay starts at ``interval_seconds`` and grows by ``backoff_factor``
    up to ``max_interval_seconds``. The last sleep is cut short so the
    total never overshoots ``timeout_seconds``.

    Raises:
        ReadinessTimeout: 超时仍未就绪
    """
    config = probe.config
    started = monotonic()
    interval = config.interval_seconds
    attempts = 0

    while True:
        attempts += 1
        ready, detail = probe.check()
        if ready:
            logger.info(f"{probe.service} ready after {attempts} attempt(s): {detail}")
            return ProbeResult(service=probe.service, ready=True, detail=detail, attempts=attempts)

        elapsed = monotonic() - started
        remaining = config.timeout_seconds - elapsed
        if remaining <= 0:
            logger.error(f"{probe.service} readiness timeout: {detail}")
            raise ReadinessTimeout(probe.service, attempts, detail, elapsed)

        delay = min(interval, config.max_interval_seconds, remaining)
        logger.debug(f"{probe.service} not ready ({detail}), retrying in {delay:.1f}s")
        sleep(delay)
        interval = min(interval * config.backoff_factor, config.max_interval_seconds)

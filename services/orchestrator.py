"""Ordered startup of the stack, gated on readiness probes."""

import time
from typing import Callable, List, Optional, Set, Tuple
from loguru import logger

from models.stack_config import StackDefinition, ServiceDefinition, ServiceRole
from models.stack_status import ProbeResult
from services.compose_service import ComposeService
from services.readiness import build_probe, wait_until_ready, ReadinessTimeout, Probe


class StartupError(Exception):
    """某个阶段的服务未能启动或未就绪."""

    def __init__(self, service: str, stage: Optional[int], message: str):
        self.service = service
        self.stage = stage
        self.message = message
        where = f"stage {stage}" if stage is not None else "on demand"
        super().__init__(f"{service} failed ({where}): {message}")


class StartupOrchestrator:
    """
    启动编排

    职责：
    1. 按启动计划分阶段 up，每阶段之前等待上一阶段就绪
    2. 按需启动/停止可选服务（phpMyAdmin）
    3. 依赖晚于依赖方就绪时重启依赖方

    A failure raises StartupError and leaves what already runs running.
    """

    def __init__(self, stack: StackDefinition, compose: ComposeService,
                 probe_factory: Callable[[ServiceDefinition, ComposeService], Optional[Probe]] = build_probe,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        self.stack = stack
        self.compose = compose
        self._probe_factory = probe_factory
        self._sleep = sleep
        self._monotonic = monotonic
        self._ready: Set[str] = set()

    @staticmethod
    def _profiles(services: List[ServiceDefinition]) -> List[str]:
        profiles = []
        for service in services:
            if service.profile and service.profile not in profiles:
                profiles.append(service.profile)
        return profiles

    def wait_ready(self, name: str, stage: Optional[int] = None) -> ProbeResult:
        """
        等待服务就绪

        Raises:
            StartupError: 探测超时
        """
        service = self.stack.get(name)
        probe = self._probe_factory(service, self.compose)
        if probe is None:
            self._ready.add(name)
            return ProbeResult(service=name, ready=True, detail="no readiness probe", attempts=0)

        logger.info(f"Waiting for {name} ({probe.config.kind})")
        try:
            result = wait_until_ready(probe, sleep=self._sleep, monotonic=self._monotonic)
        except ReadinessTimeout as e:
            raise StartupError(name, stage, str(e)) from e

        self._ready.add(name)
        return result

    def start(self, include_optional: bool = False) -> List[ProbeResult]:
        """
        按阶段启动

        The default plan brings up the database alone, waits for its ready
        marker, then starts the application and the proxy together and
        verifies both.

        Raises:
            StackDefinitionError: 依赖图无效
            StartupError: 启动失败或就绪超时
        """
        plan = self.stack.startup_plan(include_optional=include_optional)
        results: List[ProbeResult] = []

        for stage in plan:
            for dependency in stage.waits_for:
                if dependency not in self._ready:
                    results.append(self.wait_ready(dependency, stage.index))

            members = [self.stack.get(name) for name in stage.services]
            logger.info(f"Stage {stage.index}: starting {', '.join(stage.services)}")
            ok, message = self.compose.up(stage.services, self._profiles(members))
            if not ok:
                raise StartupError(", ".join(stage.services), stage.index, message)

            for name in stage.services:
                results.append(self.wait_ready(name, stage.index))

        logger.info("All services are up")
        return results

    def start_optional(self, name: str) -> ProbeResult:
        """
        启动可选服务（不随 start 启动的服务）

        Raises:
            ValueError: 不是可选服务
            StartupError: 依赖未就绪或启动失败
        """
        service = self.stack.get(name)
        if not service.optional:
            raise ValueError(f"{name} is not an optional service")

        for dependency in service.dependency_names():
            if dependency not in self._ready:
                self.wait_ready(dependency)

        ok, message = self.compose.up([name], self._profiles([service]))
        if not ok:
            raise StartupError(name, None, message)
        return self.wait_ready(name)

    def stop_optional(self, name: str) -> Tuple[bool, str]:
        """停止并删除可选服务."""
        service = self.stack.get(name)
        if not service.optional:
            return False, f"{name} is not an optional service"

        profiles = self._profiles([service])
        ok, message = self.compose.stop([name], profiles)
        if not ok:
            return False, message
        ok, message = self.compose.rm([name], profiles)
        if not ok:
            return False, message

        self._ready.discard(name)
        return True, f"{name} stopped and removed"

    def recover(self, name: Optional[str] = None) -> List[str]:
        """
        依赖就绪后重启依赖方

        Covers the application having started before the database finished
        initializing. ``name`` defaults to the database service.

        Returns:
            被重启的服务

        Raises:
            StartupError: 依赖未就绪或重启失败
        """
        if name is None:
            database = self.stack.by_role(ServiceRole.DATABASE)
            if database is None:
                raise StartupError("database", None, "stack has no database service")
            name = database.name

        self.wait_ready(name)

        running = set(self.compose.get_status(self._profiles(self.stack.services)).running_services())
        restarted = []
        for dependent in self.stack.dependents_of(name, ready_only=True):
            if dependent.name not in running:
                logger.debug(f"{dependent.name} is not running, skipping")
                continue
            ok, message = self.compose.restart([dependent.name], self._profiles([dependent]))
            if not ok:
                raise StartupError(dependent.name, None, message)
            self._ready.discard(dependent.name)
            self.wait_ready(dependent.name)
            restarted.append(dependent.name)

        if not restarted:
            logger.info(f"Nothing to recover, no running service depends on {name}")
        return restarted

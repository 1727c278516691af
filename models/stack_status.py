"""Container status models built from `compose ps`."""

from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime


class ServiceState(str, Enum):
    """容器状态."""
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    CREATED = "created"
    PAUSED = "paused"
    MISSING = "missing"
    UNKNOWN = "unknown"


class ServiceStatus(BaseModel):
    """One row of compose ps output."""

    service: str = Field(..., description="服务名")
    container_name: Optional[str] = Field(default=None, description="容器名")
    state: ServiceState = Field(default=ServiceState.UNKNOWN, description="容器状态")
    health: Optional[str] = Field(default=None, description="健康检查状态")
    exit_code: Optional[int] = Field(default=None, description="退出码")
    ports: str = Field(default="", description="端口映射")

    @classmethod
    def from_ps_row(cls, row: Dict[str, Any]) -> "ServiceStatus":
        """
        从compose ps --format json的一行构建

        Compose v2 uses capitalized keys (Service, State, Health, ExitCode,
        Publishers); older releases used Name/State with free-form text.
        """
        raw_state = str(row.get("State") or "").lower()
        state = ServiceState.UNKNOWN
        for candidate in ServiceState:
            if raw_state.startswith(candidate.value):
                state = candidate
                break
        if raw_state.startswith("up"):
            state = ServiceState.RUNNING

        health = row.get("Health") or None
        exit_code = row.get("ExitCode")
        ports = row.get("Ports") or ""
        if not ports and isinstance(row.get("Publishers"), list):
            published = []
            for pub in row["Publishers"]:
                if pub.get("PublishedPort"):
                    published.append(f"{pub.get('PublishedPort')}->{pub.get('TargetPort')}/{pub.get('Protocol', 'tcp')}")
            ports = ", ".join(published)

        return cls(
            service=row.get("Service") or row.get("Name") or "",
            container_name=row.get("Name"),
            state=state,
            health=health,
            exit_code=int(exit_code) if exit_code not in (None, "") else None,
            ports=ports,
        )

    def is_running(self) -> bool:
        return self.state == ServiceState.RUNNING

    def is_healthy(self) -> bool:
        """Running, and healthy when the container has a healthcheck."""
        if not self.is_running():
            return False
        return self.health in (None, "", "healthy")


class ProbeResult(BaseModel):
    """就绪探测结果."""

    service: str = Field(..., description="服务名")
    ready: bool = Field(default=False, description="是否就绪")
    detail: str = Field(default="", description="探测详情")
    attempts: int = Field(default=1, description="尝试次数")
    checked_at: datetime = Field(default_factory=datetime.now, description="探测时间")


class StackStatus(BaseModel):
    """整个部署的状态."""

    services: List[ServiceStatus] = Field(default_factory=list)
    last_check_time: datetime = Field(default_factory=datetime.now, description="最后检查时间")

    def get(self, service: str) -> ServiceStatus:
        for status in self.services:
            if status.service == service:
                return status
        return ServiceStatus(service=service, state=ServiceState.MISSING)

    def running_services(self) -> List[str]:
        return [s.service for s in self.services if s.is_running()]

    def summary(self) -> str:
        if not self.services:
            return "no containers"
        lines = []
        for status in self.services:
            health = f" ({status.health})" if status.health else ""
            lines.append(f"{status.service:<12} {status.state.value}{health} {status.ports}".rstrip())
        return "\n".join(lines)

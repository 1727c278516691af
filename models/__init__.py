"""Data models for easyWP."""

from .stack_config import (
    StackEnvironment, ProxySettings, ReadinessProbe, ServiceDefinition,
    StackDefinition, DeploymentBundle, StackDefinitionError
)
from .route_table import RouteTable, LocationRule, RouteDecision
from .upload_policy import UploadPolicy, UploadVerdict
from .stack_status import StackStatus, ServiceStatus, ProbeResult

__all__ = [
    "StackEnvironment",
    "ProxySettings",
    "ReadinessProbe",
    "ServiceDefinition",
    "StackDefinition",
    "DeploymentBundle",
    "StackDefinitionError",
    "RouteTable",
    "LocationRule",
    "RouteDecision",
    "UploadPolicy",
    "UploadVerdict",
    "StackStatus",
    "ServiceStatus",
    "ProbeResult"
]

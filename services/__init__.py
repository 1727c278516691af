"""Service layer for easyWP."""

from .config_generator import ConfigGenerator
from .config_parser import ConfigParser
from .compose_service import ComposeService
from .orchestrator import StartupOrchestrator, StartupError
from .route_matcher import RouteMatcher, DocumentRootView
from .bundle_validator import validate_bundle, ValidationIssue
from .smoke_check import SmokeChecker, SmokeReport

__all__ = [
    "ConfigGenerator",
    "ConfigParser",
    "ComposeService",
    "StartupOrchestrator",
    "StartupError",
    "RouteMatcher",
    "DocumentRootView",
    "validate_bundle",
    "ValidationIssue",
    "SmokeChecker",
    "SmokeReport"
]

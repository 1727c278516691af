"""Compose descriptor for the stack definition."""

from typing import Dict, Any

import yaml

from models.stack_config import StackDefinition, ServiceDefinition


def build_service(service: ServiceDefinition, network: str, expose_debug_ports: bool) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"image": service.image}
    if service.container_name:
        entry["container_name"] = service.container_name
    if service.profile:
        entry["profiles"] = [service.profile]
    if service.command:
        entry["command"] = service.command
    entry["restart"] = service.restart

    if service.depends_on:
        entry["depends_on"] = {
            edge.service: {"condition": edge.condition} for edge in service.depends_on
        }

    ports = list(service.ports)
    if expose_debug_ports:
        ports.extend(service.debug_ports)
    if ports:
        entry["ports"] = ports

    if service.environment:
        entry["environment"] = dict(service.environment)
    if service.volumes:
        entry["volumes"] = list(service.volumes)
    if service.healthcheck:
        entry["healthcheck"] = dict(service.healthcheck)

    entry["networks"] = [network]
    return entry


def build_compose(stack: StackDefinition) -> Dict[str, Any]:
    """
    Build the compose document as plain data.

    Dependency edges keep their conditions so ``docker compose up`` on its
    own honours the same ordering the orchestrator enforces.
    """
    # validates the graph before anything is written
    stack.topological_order()

    services = {
        service.name: build_service(service, stack.network, stack.expose_debug_ports)
        for service in stack.services
    }
    return {
        "services": services,
        "networks": {stack.network: {"name": stack.network, "driver": "bridge"}},
    }


def dump_compose(stack: StackDefinition) -> str:
    header = "# Generated by easyWP. Values in ${...} come from .env\n"
    body = yaml.safe_dump(build_compose(stack), sort_keys=False, default_flow_style=False, width=120)
    return header + body

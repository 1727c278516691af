#!/usr/bin/env python3
"""测试服务依赖图、启动计划和代理设置校验"""

import sys

import pytest
from pydantic import ValidationError

from models.stack_config import (
    StackDefinition, ServiceDefinition, ServiceRole, DependencyEdge, ReadinessProbe,
    ProxySettings, StackEnvironment, StackDefinitionError, DeploymentBundle
)


def service(name, *deps, healthy=False, **kwargs):
    condition = "service_healthy" if healthy else "service_started"
    return ServiceDefinition(
        name=name, image=f"{name}:latest", role=kwargs.pop("role", ServiceRole.APPLICATION),
        depends_on=[DependencyEdge(service=d, condition=condition) for d in deps],
        **kwargs
    )


def test_default_plan_database_first():
    stack = StackDefinition.wordpress_default()
    plan = stack.startup_plan()

    assert [stage.services for stage in plan] == [["database"], ["wordpress", "nginx"]]
    assert plan[0].waits_for == []
    assert plan[1].waits_for == ["database"]


def test_plan_with_optional_admin():
    plan = StackDefinition.wordpress_default(include_admin=True).startup_plan(include_optional=True)
    assert plan[1].services == ["wordpress", "nginx", "phpmyadmin"]


def test_admin_is_opt_in():
    stack = StackDefinition.wordpress_default(include_admin=True)
    admin = stack.by_role(ServiceRole.ADMIN)
    assert admin.optional and admin.profile == "admin"
    assert "phpmyadmin" not in sum((s.services for s in stack.startup_plan()), [])


def test_topological_order_keeps_declaration_order():
    stack = StackDefinition(services=[
        service("proxy", "app"),
        service("app", "db", healthy=True),
        service("db", role=ServiceRole.DATABASE),
    ])
    assert stack.topological_order() == ["db", "app", "proxy"]


def test_cycle_detected():
    stack = StackDefinition(services=[service("a", "b"), service("b", "c"), service("c", "a")])
    with pytest.raises(StackDefinitionError, match="cycle"):
        stack.topological_order()


def test_unknown_dependency():
    stack = StackDefinition(services=[service("a", "ghost")])
    with pytest.raises(StackDefinitionError, match="unknown service ghost"):
        stack.startup_plan()


def test_duplicate_names_rejected():
    with pytest.raises(ValidationError):
        StackDefinition(services=[service("a"), service("a")])


def test_required_service_cannot_depend_on_optional():
    stack = StackDefinition(services=[
        service("db", role=ServiceRole.DATABASE, optional=True, profile="extra"),
        service("app", "db", healthy=True),
    ])
    with pytest.raises(StackDefinitionError, match="not part of the plan"):
        stack.startup_plan()


def test_three_level_chain():
    stack = StackDefinition(services=[
        service("db", role=ServiceRole.DATABASE),
        service("cache", "db", healthy=True),
        service("app", "cache", healthy=True),
        service("proxy", "app"),
    ])
    plan = stack.startup_plan()
    assert [s.services for s in plan] == [["db"], ["cache"], ["app", "proxy"]]
    assert plan[2].waits_for == ["cache"]


def test_dependents_of():
    stack = StackDefinition.wordpress_default(include_admin=True)
    assert [s.name for s in stack.dependents_of("database")] == ["wordpress", "phpmyadmin"]
    assert [s.name for s in stack.dependents_of("wordpress")] == []
    assert [s.name for s in stack.dependents_of("wordpress", ready_only=False)] == ["nginx"]


def test_optional_service_needs_profile():
    with pytest.raises(ValidationError):
        ServiceDefinition(name="pma", image="phpmyadmin", role=ServiceRole.ADMIN, optional=True)


def test_probe_contract_validation():
    with pytest.raises(ValidationError):
        ReadinessProbe(kind="log_marker")
    with pytest.raises(ValidationError):
        ReadinessProbe(kind="tcp")
    with pytest.raises(ValidationError):
        ReadinessProbe(kind="log_marker", marker="(unclosed")
    assert ReadinessProbe(kind="tcp", port=3306).interval_seconds == 2.0


def test_database_probe_ignores_init_server():
    database = StackDefinition.wordpress_default().get("database")
    assert database.readiness.marker == "ready for connections"
    assert database.readiness.exclude


def test_proxy_server_name():
    with pytest.raises(ValidationError):
        ProxySettings(server_name="FQDN_OR_IP")
    with pytest.raises(ValidationError):
        ProxySettings(server_name="bad name!")
    assert ProxySettings(server_name="").server_name == "localhost"
    assert ProxySettings(server_name="203.0.113.7").fastcgi_pass == "wordpress:9000"


def test_custom_db_host_renames_database_service():
    env = StackEnvironment(wordpress_db_host="mysql:3307")
    bundle = DeploymentBundle.create(env=env, expose_debug_ports=True)
    database = bundle.stack.by_role(ServiceRole.DATABASE)
    assert database.name == "mysql"
    assert database.debug_ports == ["3307:3307"]
    assert "--port=3307" in database.command
    assert "-P 3307" in database.healthcheck["test"][1]
    assert bundle.stack.by_role(ServiceRole.ADMIN).environment["PMA_PORT"] == "3307"
    assert bundle.stack.get("wordpress").dependency_names() == ["mysql"]


def test_unknown_service_lookup():
    with pytest.raises(StackDefinitionError):
        StackDefinition.wordpress_default().get("redis")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

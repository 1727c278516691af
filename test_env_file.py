#!/usr/bin/env python3
"""测试.env读取与校验，以及部署设置存储"""

import sys

import pytest

from models.stack_config import StackEnvironment
from services.config_generator import ConfigGenerator
from services.env_file import load_env_file, validate_env, read_stack_environment
from utils.config_registry import ConfigRegistry


def write_env(tmp_path, env=None):
    path = tmp_path / ".env"
    path.write_text(ConfigGenerator().generate_env_file(env or StackEnvironment()), encoding="utf-8")
    return path


def test_generated_env_is_valid(tmp_path):
    path = write_env(tmp_path)
    mapping = load_env_file(path)
    assert validate_env(mapping) == []

    env = read_stack_environment(path)
    assert env == StackEnvironment()
    assert env.db_host_parts() == ("database", 3306)


def test_missing_key_reported(tmp_path):
    mapping = StackEnvironment().to_env_mapping()
    del mapping["MYSQL_ROOT_PASSWORD"]
    mapping["NGINX_LOGS"] = "  "
    problems = validate_env(mapping)
    assert "MYSQL_ROOT_PASSWORD is missing" in problems
    assert "NGINX_LOGS is empty" in problems


def test_mismatched_mysql_user_reported():
    mapping = StackEnvironment().to_env_mapping()
    mapping["MYSQL_USER"] = "someone_else"
    problems = validate_env(mapping)
    assert any("MYSQL_USER" in p for p in problems), problems


def test_root_user_rejected():
    mapping = StackEnvironment().to_env_mapping()
    mapping["WORDPRESS_DB_USER"] = mapping["MYSQL_USER"] = "root"
    problems = validate_env(mapping)
    assert any("root" in p for p in problems), problems


@pytest.mark.parametrize("host", ["database", ":3306", "database:db", "database:70000"])
def test_bad_db_host_rejected(host):
    mapping = StackEnvironment().to_env_mapping()
    mapping["WORDPRESS_DB_HOST"] = host
    assert any("WORDPRESS_DB_HOST" in p or "port" in p for p in validate_env(mapping))


def test_read_stack_environment_raises(tmp_path):
    path = tmp_path / ".env"
    path.write_text("WORDPRESS_DB_HOST=database:3306\n", encoding="utf-8")
    with pytest.raises(ValueError, match="missing"):
        read_stack_environment(path)


def test_interpolated_references(tmp_path):
    path = tmp_path / ".env"
    lines = [f"{k}={v}" for k, v in StackEnvironment().to_env_mapping().items() if not k.startswith("MYSQL_")]
    lines += [
        "MYSQL_LOCAL_HOME=./dbdata",
        "MYSQL_DATABASE=${WORDPRESS_DB_NAME}",
        "MYSQL_USER=${WORDPRESS_DB_USER}",
        "MYSQL_PASSWORD=${WORDPRESS_DB_PASSWORD}",
        "MYSQL_ROOT_PASSWORD=rootpw",
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    env = read_stack_environment(path)
    assert env.mysql_password == env.wordpress_db_password


def test_registry_defaults_and_persistence(tmp_path):
    registry = ConfigRegistry(tmp_path)
    assert registry.get_proxy_endpoint() == ("localhost", 80, 443)
    assert registry.ready_timeout() == 180.0
    assert registry.ready_timeout(30) == 30.0

    registry.record_init("example.com", 8080, 8443, True, False, "100m")
    reloaded = ConfigRegistry(tmp_path)
    assert reloaded.get_proxy_endpoint() == ("example.com", 8080, 8443)
    assert reloaded.get(ConfigRegistry.KEY_WITH_ADMIN) is True
    assert reloaded.all()[ConfigRegistry.KEY_CLIENT_MAX_BODY] == "100m"
    assert "init_time" in reloaded.all()


def test_registry_ignores_corrupt_file(tmp_path):
    (tmp_path / ConfigRegistry.SETTINGS_FILE).write_text("{not json", encoding="utf-8")
    registry = ConfigRegistry(tmp_path)
    assert registry.get(ConfigRegistry.KEY_SERVER_NAME) == "localhost"
    assert registry.set(ConfigRegistry.KEY_SERVER_NAME, "example.com")
    assert registry.get(ConfigRegistry.KEY_SERVER_NAME) == "example.com"


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

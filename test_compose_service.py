#!/usr/bin/env python3
"""测试compose命令封装（不启动真实容器）"""

import json
import subprocess
import sys

import pytest

import services.compose_service as compose_module
from models.stack_status import ServiceState
from services.compose_service import ComposeService, parse_ps_output


class Recorder:
    def __init__(self, returncode=0, stdout="", stderr="", raises=None):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(args, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def recorder(monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(compose_module.subprocess, "run", rec)
    return rec


def make_service(tmp_path):
    return ComposeService(tmp_path, command=["docker", "compose"])


def test_up_with_profile(recorder, tmp_path):
    ok, message = make_service(tmp_path).up(["phpmyadmin"], ["admin"])
    assert ok
    args, kwargs = recorder.calls[0]
    assert args[:2] == ["docker", "compose"]
    assert args[args.index("-f") + 1] == str(tmp_path / "docker-compose.yml")
    assert args[args.index("--profile") + 1] == "admin"
    assert args[-3:] == ["up", "-d", "phpmyadmin"]
    assert args.index("--profile") < args.index("up")
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["timeout"] == compose_module.COMPOSE_UP_TIMEOUT


def test_commands(recorder, tmp_path):
    service = make_service(tmp_path)
    service.pull()
    service.restart(["wordpress"])
    service.stop(["phpmyadmin"])
    service.rm(["phpmyadmin"])
    service.logs("database", tail=50)
    service.validate_config()

    tails = [call[0][call[0].index(str(tmp_path)) + 1:] for call in recorder.calls]
    assert tails == [
        ["pull"],
        ["restart", "wordpress"],
        ["stop", "phpmyadmin"],
        ["rm", "-f", "phpmyadmin"],
        ["logs", "--no-color", "--no-log-prefix", "--tail", "50", "database"],
        ["config", "-q"],
    ]


def test_logs_since(recorder, tmp_path):
    make_service(tmp_path).logs("wordpress", since="2024-05-01T10:05:00.5Z")
    args = recorder.calls[0][0]
    assert args[-3:] == ["--since", "2024-05-01T10:05:00.5Z", "wordpress"]


class ScriptedRun:
    def __init__(self, outputs):
        self.calls = []
        self.outputs = list(outputs)

    def __call__(self, args, **kwargs):
        self.calls.append(args)
        returncode, stdout = self.outputs.pop(0)
        return subprocess.CompletedProcess(args, returncode, stdout, "")


def test_started_at(monkeypatch, tmp_path):
    run = ScriptedRun([(0, "3f2a9c\n"), (0, "true 2024-05-01T10:05:00.123456789Z\n")])
    monkeypatch.setattr(compose_module.subprocess, "run", run)

    assert make_service(tmp_path).started_at("database") == (True, "2024-05-01T10:05:00.123456789Z")
    assert run.calls[0][-4:] == ["ps", "--all", "-q", "database"]
    assert run.calls[1][:2] == ["docker", "inspect"]
    assert run.calls[1][-1] == "3f2a9c"


def test_started_at_stopped_or_missing(monkeypatch, tmp_path):
    run = ScriptedRun([(0, "3f2a9c\n"), (0, "false 2024-05-01T10:05:00Z\n"), (0, "")])
    monkeypatch.setattr(compose_module.subprocess, "run", run)
    service = make_service(tmp_path)

    assert service.started_at("database") == (False, "database is not running")
    assert service.started_at("database") == (False, "database has no container")


def test_failure_returns_stderr(monkeypatch, tmp_path):
    monkeypatch.setattr(compose_module.subprocess, "run", Recorder(returncode=1, stderr="no such service: pma\n"))
    ok, message = make_service(tmp_path).up(["pma"])
    assert not ok
    assert message == "no such service: pma"


def test_timeout(monkeypatch, tmp_path):
    rec = Recorder(raises=subprocess.TimeoutExpired(["docker"], 300))
    monkeypatch.setattr(compose_module.subprocess, "run", rec)
    ok, message = make_service(tmp_path).up(["database"])
    assert not ok
    assert "timeout" in message


def test_concurrent_operation_rejected(recorder, tmp_path):
    service = make_service(tmp_path)
    service._operation_lock.acquire()
    try:
        ok, message = service.stop()
    finally:
        service._operation_lock.release()
    assert (ok, message) == (False, "Another operation is in progress")
    assert recorder.calls == []
    # lock is free again afterwards
    assert service.stop()[0]


def test_not_installed(monkeypatch, tmp_path):
    monkeypatch.setattr(compose_module.shutil, "which", lambda name: None)
    service = ComposeService(tmp_path)
    assert service.command is None
    assert not service.is_available()
    assert service.up(["database"]) == (False, "docker compose is not available")


def test_detect_plugin(monkeypatch, tmp_path):
    monkeypatch.setattr(compose_module.shutil, "which", lambda name: "/usr/bin/docker" if name == "docker" else None)
    monkeypatch.setattr(compose_module.subprocess, "run", Recorder(stdout="Docker Compose version v2.27.0"))
    assert ComposeService(tmp_path).command == ["docker", "compose"]


def test_detect_standalone(monkeypatch, tmp_path):
    monkeypatch.setattr(
        compose_module.shutil, "which",
        lambda name: "/usr/local/bin/docker-compose" if name == "docker-compose" else None
    )
    assert ComposeService(tmp_path).command == ["/usr/local/bin/docker-compose"]


def test_parse_ps_ndjson():
    rows = [
        {"Service": "database", "Name": "mysql", "State": "running", "Health": "healthy", "ExitCode": 0,
         "Publishers": [{"PublishedPort": 0, "TargetPort": 3306, "Protocol": "tcp"}]},
        {"Service": "nginx", "Name": "nginx", "State": "running", "Health": "", "ExitCode": 0,
         "Publishers": [{"PublishedPort": 443, "TargetPort": 443, "Protocol": "tcp"}]},
        {"Service": "wordpress", "Name": "wordpress", "State": "exited", "Health": "", "ExitCode": 255},
    ]
    status = parse_ps_output("\n".join(json.dumps(r) for r in rows) + "\n")

    assert status.get("database").is_healthy()
    assert status.get("nginx").ports == "443->443/tcp"
    assert status.get("wordpress").state == ServiceState.EXITED
    assert status.get("wordpress").exit_code == 255
    assert status.running_services() == ["database", "nginx"]
    assert status.get("phpmyadmin").state == ServiceState.MISSING


def test_parse_ps_array_and_legacy_state():
    output = json.dumps([{"Name": "mysql", "Service": "database", "State": "Up 2 minutes (healthy)"}])
    status = parse_ps_output(output)
    assert status.get("database").is_running()
    assert parse_ps_output("").services == []


def test_get_status_survives_garbage(monkeypatch, tmp_path):
    monkeypatch.setattr(compose_module.subprocess, "run", Recorder(stdout="not json"))
    assert make_service(tmp_path).get_status().services == []


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

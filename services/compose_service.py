"""Container orchestration engine wrapper (docker compose)."""

import json
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Optional, Tuple, List, Sequence
from loguru import logger

from models.stack_status import StackStatus, ServiceStatus


# 命令超时（秒）
COMPOSE_PULL_TIMEOUT = 900
COMPOSE_UP_TIMEOUT = 300
COMPOSE_STOP_TIMEOUT = 120
COMPOSE_LOGS_TIMEOUT = 30
COMPOSE_DEFAULT_TIMEOUT = 60
COMPOSE_VERSION_CHECK_TIMEOUT = 10


def parse_ps_output(output: str) -> StackStatus:
    """
    解析 ``compose ps --format json`` 输出

    Compose releases before 2.21 print one JSON array; later ones print
    one JSON object per line.
    """
    text = output.strip()
    if not text:
        return StackStatus()

    rows = []
    if text.startswith("["):
        rows = json.loads(text)
    else:
        for line in text.splitlines():
            line = line.strip()
            if line:
                rows.append(json.loads(line))

    return StackStatus(services=[ServiceStatus.from_ps_row(row) for row in rows])


class ComposeService:
    """
    Compose命令封装

    职责：
    1. 探测 docker compose / docker-compose
    2. 拉取镜像、启动、停止、重启、删除服务
    3. 查询容器状态和日志
    4. 校验compose文件
    """

    def __init__(self, project_dir: Path, compose_file: str = "docker-compose.yml",
                 command: Optional[List[str]] = None):
        """
        Args:
            project_dir: 部署目录（.env和compose文件所在目录）
            compose_file: compose文件名
            command: compose命令前缀，None则自动探测
        """
        self._project_dir = Path(project_dir)
        self._compose_file = compose_file
        self._command = command
        self._operation_lock = threading.Lock()  # 操作锁，防止并发操作

        if self._command is None:
            self._command = self._detect_command()

        logger.info(f"ComposeService initialized: command={self._command}, project={self._project_dir}")

    @property
    def command(self) -> Optional[List[str]]:
        return self._command

    @property
    def project_dir(self) -> Path:
        return self._project_dir

    def _detect_command(self) -> Optional[List[str]]:
        """优先使用 docker compose 插件，其次独立的 docker-compose."""
        if shutil.which("docker"):
            try:
                result = subprocess.run(
                    ["docker", "compose", "version"],
                    capture_output=True,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                    timeout=COMPOSE_VERSION_CHECK_TIMEOUT
                )
                if result.returncode == 0:
                    logger.info(f"Detected compose plugin: {result.stdout.strip()}")
                    return ["docker", "compose"]
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.debug(f"docker compose plugin check failed: {e}")

        standalone = shutil.which("docker-compose")
        if standalone:
            logger.info(f"Detected standalone compose: {standalone}")
            return [standalone]

        logger.info("Compose not found")
        return None

    def _base_args(self, profiles: Sequence[str] = ()) -> List[str]:
        args = list(self._command or [])
        args += ["-f", str(self._project_dir / self._compose_file),
                 "--project-directory", str(self._project_dir)]
        for profile in profiles:
            args += ["--profile", profile]
        return args

    def _execute(self, args: List[str], timeout: int, profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        """
        执行一条compose命令

        Returns:
            (success, stdout或错误信息)
        """
        if not self._command:
            return False, "docker compose is not available"
        return self._run(self._base_args(profiles) + args, timeout, f"compose {args[0]}")

    def _run(self, full_args: List[str], timeout: int, label: str) -> Tuple[bool, str]:
        # 使用操作锁防止并发操作
        if not self._operation_lock.acquire(blocking=False):
            return False, "Another operation is in progress"

        try:
            logger.debug(f"Running: {' '.join(full_args)}")
            result = subprocess.run(
                full_args,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(self._project_dir),
                timeout=timeout
            )

            if result.returncode == 0:
                return True, result.stdout

            error_output = (result.stderr or result.stdout or "").strip() or "Unknown error"
            logger.error(f"{label} failed: {error_output}")
            return False, error_output

        except subprocess.TimeoutExpired:
            logger.error(f"{label} timeout")
            return False, f"{label} timeout ({timeout}s)"
        except OSError as e:
            logger.error(f"{label} error: {e}")
            return False, str(e)
        finally:
            self._operation_lock.release()

    def is_available(self) -> bool:
        """检查compose是否可用."""
        if not self._command:
            return False
        try:
            result = subprocess.run(
                self._command + ["version"],
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=COMPOSE_VERSION_CHECK_TIMEOUT
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to check compose version: {e}")
            return False

    def validate_config(self) -> Tuple[bool, str]:
        """compose config -q（同时检查.env插值）."""
        ok, output = self._execute(["config", "-q"], COMPOSE_DEFAULT_TIMEOUT)
        if ok:
            return True, "Compose file is valid"
        return False, output

    def pull(self, services: Sequence[str] = (), profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        ok, output = self._execute(["pull"] + list(services), COMPOSE_PULL_TIMEOUT, profiles)
        if ok:
            logger.info(f"Pulled images: {', '.join(services) or 'all'}")
            return True, "Images pulled"
        return False, output

    def up(self, services: Sequence[str], profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        """
        后台启动服务

        Args:
            services: 服务名
            profiles: 需要启用的profile（可选服务所在）
        """
        ok, output = self._execute(["up", "-d"] + list(services), COMPOSE_UP_TIMEOUT, profiles)
        if ok:
            logger.info(f"Started: {', '.join(services) or 'all'}")
            return True, f"Started {', '.join(services) or 'all services'}"
        return False, output

    def restart(self, services: Sequence[str], profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        ok, output = self._execute(["restart"] + list(services), COMPOSE_STOP_TIMEOUT, profiles)
        if ok:
            logger.info(f"Restarted: {', '.join(services) or 'all'}")
            return True, f"Restarted {', '.join(services) or 'all services'}"
        return False, output

    def stop(self, services: Sequence[str] = (), profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        ok, output = self._execute(["stop"] + list(services), COMPOSE_STOP_TIMEOUT, profiles)
        if ok:
            logger.info(f"Stopped: {', '.join(services) or 'all'}")
            return True, f"Stopped {', '.join(services) or 'all services'}"
        return False, output

    def rm(self, services: Sequence[str] = (), profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        """删除已停止的容器（rm -f）."""
        ok, output = self._execute(["rm", "-f"] + list(services), COMPOSE_STOP_TIMEOUT, profiles)
        if ok:
            logger.info(f"Removed: {', '.join(services) or 'all stopped containers'}")
            return True, f"Removed {', '.join(services) or 'stopped containers'}"
        return False, output

    def logs(self, service: str, tail: Optional[int] = None, since: Optional[str] = None) -> Tuple[bool, str]:
        """
        容器日志

        Args:
            tail: 只取最后N行
            since: RFC3339时间，只取此后的日志
        """
        args = ["logs", "--no-color", "--no-log-prefix"]
        if tail:
            args += ["--tail", str(tail)]
        if since:
            args += ["--since", since]
        args.append(service)
        return self._execute(args, COMPOSE_LOGS_TIMEOUT)

    def _docker_binary(self) -> Optional[str]:
        if self._command and Path(self._command[0]).name == "docker":
            return self._command[0]
        return shutil.which("docker")

    def started_at(self, service: str, profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        """
        容器本次启动的时间

        ``restart`` and a recreating ``up`` both reset State.StartedAt, so
        logs since this time belong to the current run only.

        Returns:
            (running, RFC3339时间或原因)
        """
        ok, output = self._execute(["ps", "--all", "-q", service], COMPOSE_DEFAULT_TIMEOUT, profiles)
        if not ok:
            return False, output.strip()
        container_ids = output.split()
        if not container_ids:
            return False, f"{service} has no container"

        docker = self._docker_binary()
        if not docker:
            return False, "docker CLI is not available"
        ok, output = self._run(
            [docker, "inspect", "--format", "{{.State.Running}} {{.State.StartedAt}}", container_ids[0]],
            COMPOSE_DEFAULT_TIMEOUT,
            "docker inspect"
        )
        if not ok:
            return False, output.strip()

        running, _, started = output.strip().partition(" ")
        if running != "true":
            return False, f"{service} is not running"
        return True, started.strip()

    def ps(self, profiles: Sequence[str] = ()) -> Tuple[bool, str]:
        """compose ps 原始JSON输出."""
        return self._execute(["ps", "--all", "--format", "json"], COMPOSE_DEFAULT_TIMEOUT, profiles)

    def get_status(self, profiles: Sequence[str] = ()) -> StackStatus:
        """获取全部容器状态，查询失败时返回空状态."""
        ok, output = self.ps(profiles)
        if not ok:
            logger.warning(f"compose ps failed: {output}")
            return StackStatus()
        try:
            return parse_ps_output(output)
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Unparseable compose ps output: {e}")
            return StackStatus()

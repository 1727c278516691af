"""Per-bundle settings store (.easywp.json)."""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any
from loguru import logger


class ConfigRegistry:
    """
    Bundle settings kept next to the generated files.

    Stores the deployment choices made at ``init`` time so that later
    commands (up, smoke, route) reuse them without repeating flags.
    """

    SETTINGS_FILE = ".easywp.json"

    # 配置键名
    KEY_SERVER_NAME = "server_name"
    KEY_HTTPS_PORT = "https_port"
    KEY_HTTP_PORT = "http_port"
    KEY_WITH_ADMIN = "with_admin"
    KEY_DEBUG_PORTS = "expose_debug_ports"
    KEY_READY_TIMEOUT = "ready_timeout"
    KEY_CLIENT_MAX_BODY = "client_max_body_size"
    KEY_INIT_TIME = "init_time"

    DEFAULTS: Dict[str, Any] = {
        KEY_SERVER_NAME: "localhost",
        KEY_HTTPS_PORT: 443,
        KEY_HTTP_PORT: 80,
        KEY_WITH_ADMIN: False,
        KEY_DEBUG_PORTS: False,
        KEY_READY_TIMEOUT: 180.0,
        KEY_CLIENT_MAX_BODY: "75m",
    }

    def __init__(self, bundle_dir: Path):
        self.bundle_dir = Path(bundle_dir)
        self.path = self.bundle_dir / self.SETTINGS_FILE

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Settings file is not valid JSON: {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Settings file must hold a JSON object: {self.path}")
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值。

        Falls back to the built-in default for known keys.
        """
        data = self._load()
        if key in data:
            return data[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> bool:
        """设置配置值。"""
        return self.update({key: value})

    def update(self, values: Dict[str, Any]) -> bool:
        data = self._load()
        data.update(values)
        try:
            self.bundle_dir.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write settings {self.path}: {e}")
            return False
        return True

    def all(self) -> Dict[str, Any]:
        merged = dict(self.DEFAULTS)
        merged.update(self._load())
        return merged

    def get_proxy_endpoint(self) -> tuple[str, int, int]:
        """
        获取代理入口配置。

        Returns:
            (server_name, http_port, https_port)
        """
        return (
            str(self.get(self.KEY_SERVER_NAME)),
            int(self.get(self.KEY_HTTP_PORT)),
            int(self.get(self.KEY_HTTPS_PORT)),
        )

    def record_init(self, server_name: str, http_port: int, https_port: int,
                    with_admin: bool, expose_debug_ports: bool,
                    client_max_body_size: str) -> bool:
        return self.update({
            self.KEY_SERVER_NAME: server_name,
            self.KEY_HTTP_PORT: http_port,
            self.KEY_HTTPS_PORT: https_port,
            self.KEY_WITH_ADMIN: with_admin,
            self.KEY_DEBUG_PORTS: expose_debug_ports,
            self.KEY_CLIENT_MAX_BODY: client_max_body_size,
            self.KEY_INIT_TIME: datetime.now().isoformat(timespec="seconds"),
        })

    def ready_timeout(self, override: Optional[float] = None) -> float:
        if override is not None:
            return float(override)
        return float(self.get(self.KEY_READY_TIMEOUT))

"""Deployment bundle generator: nginx site, uploads.ini, .env and compose file."""

import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from loguru import logger

from models.stack_config import DeploymentBundle, ProxySettings, StackEnvironment, ENV_UNQUOTABLE_CHARS
from models.route_table import RouteTable
from models.upload_policy import UploadPolicy
from services.compose_builder import dump_compose
from utils.encoding_utils import read_file_robust, write_file_robust
from utils.size_units import parse_size, format_size

APP_VERSION = "v1.0"
GENERATOR_NAME = f"easyWP {APP_VERSION}"

ENV_SAFE_VALUE = re.compile(r"^[A-Za-z0-9_./:@!%+,=-]*$")

# 相对于部署目录的文件布局
LAYOUT_DIRS = ["wordpress", "dbdata", "logs/nginx", "ssl", "nginx", "config", "backups"]
ENV_FILE = ".env"
COMPOSE_FILE = "docker-compose.yml"


class ConfigGenerator:
    """
    部署配置生成器

    核心职责：
    1. 基于Jinja2模板生成Nginx站点配置和PHP上传配置
    2. 注入性能基线和安全加固
    3. 生成.env和docker-compose.yml
    4. 写出完整目录布局，覆盖前先备份
    """

    def __init__(self, template_dir: Optional[str] = None):
        """初始化配置生成器."""
        if template_dir is None:
            template_dir = str(Path(__file__).parent.parent / "templates")

        self.template_dir = Path(template_dir)
        if not self.template_dir.is_dir():
            raise FileNotFoundError(f"Template directory not found: {self.template_dir}")

        self.jinja_env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined
        )

        self._register_filters()

        logger.debug(f"ConfigGenerator initialized with template dir: {template_dir}")

    def _register_filters(self):
        """注册Jinja2自定义过滤器."""

        def nginx_bool(value: bool) -> str:
            """将Python布尔值转换为Nginx的on/off."""
            return "on" if value else "off"

        def nginx_size(value: str) -> str:
            """格式化Nginx大小单位，纯数字按字节处理."""
            if value in (None, ""):
                return "10m"
            return format_size(parse_size(value), style="nginx")

        def nginx_time(value: str) -> str:
            """验证并格式化Nginx时间单位."""
            if not value:
                return "65s"

            valid_units = ['ms', 's', 'm', 'h', 'd', 'w']
            match = str(value).strip()

            if any(match.endswith(unit) for unit in valid_units):
                return match

            try:
                int(match)
                return f"{match}s"
            except ValueError:
                return "65s"

        def env_quote(value: str) -> str:
            """Single-quote .env values that dotenv or compose would otherwise reinterpret."""
            text = str(value)
            if ENV_SAFE_VALUE.match(text):
                return text
            # 单引号内compose不做转义，只能原样写入
            if any(char in text for char in ENV_UNQUOTABLE_CHARS):
                raise ValueError(f"Cannot quote .env value containing {ENV_UNQUOTABLE_CHARS}")
            return f"'{text}'"

        self.jinja_env.filters["nginx_bool"] = nginx_bool
        self.jinja_env.filters["nginx_size"] = nginx_size
        self.jinja_env.filters["nginx_time"] = nginx_time
        self.jinja_env.filters["env_quote"] = env_quote

    def _metadata(self) -> Dict[str, Any]:
        return {
            "generator": GENERATOR_NAME,
            "generated_time": datetime.now().strftime("%Y-%m-%d"),
        }

    def generate_nginx_config(self, proxy: ProxySettings, route_table: Optional[RouteTable] = None,
                              upload_policy: Optional[UploadPolicy] = None) -> str:
        """
        生成Nginx站点配置（明文重定向server + HTTPS server）

        Args:
            proxy: 代理设置
            route_table: 路由表，默认使用标准WordPress路由表
            upload_policy: 用于推导fastcgi_read_timeout
        """
        route_table = route_table or proxy.to_route_table()
        upload_policy = upload_policy or UploadPolicy()

        context = self._metadata()
        context.update({
            "server_name": proxy.server_name,
            "https_base_url": route_table.https_base_url(),
            "document_root": route_table.document_root,
            "index_files": route_table.index_files,
            "client_max_body_size": proxy.client_max_body_size,
            "ssl_certificate": proxy.ssl_certificate_path,
            "ssl_certificate_key": proxy.ssl_certificate_key_path,
            "access_log": proxy.access_log,
            "error_log": proxy.error_log,
            "rules": route_table.rules,
            # nginx must wait at least as long as PHP is allowed to run
            "fastcgi_read_timeout": max(60, upload_policy.max_execution_time),
            "performance_baseline": self._get_performance_baseline(),
            "common_security": self._get_common_security_settings(),
            "https_security": self._get_https_security_hardening(),
        })

        template = self.jinja_env.get_template("wordpress_site.conf.j2")
        config_content = template.render(**context)
        logger.info(f"Generated nginx config for {proxy.server_name}")
        return config_content

    def generate_upload_ini(self, policy: UploadPolicy) -> str:
        context = self._metadata()
        context["policy_ini"] = policy.to_ini()
        return self.jinja_env.get_template("uploads.ini.j2").render(**context)

    def generate_env_file(self, env: StackEnvironment) -> str:
        context = self._metadata()
        context["env"] = env.to_env_mapping()
        return self.jinja_env.get_template("env.j2").render(**context)

    def _get_performance_baseline(self) -> Dict[str, Any]:
        """性能基线."""
        return {
            "keepalive_timeout": "65s",
            "gzip_enabled": True,
            "gzip_comp_level": 6,
            "gzip_types": [
                "text/plain",
                "text/css",
                "text/xml",
                "text/javascript",
                "application/javascript",
                "application/json",
                "application/xml+rss",
                "image/svg+xml"
            ],
            "gzip_vary": True,
            "sendfile_enabled": True,
        }

    def _get_common_security_settings(self) -> Dict[str, Any]:
        """通用安全设置."""
        return {
            "server_tokens": "off",
            "security_headers": {
                "X-Frame-Options": "SAMEORIGIN",
                "X-Content-Type-Options": "nosniff",
                "Referrer-Policy": "strict-origin-when-cross-origin"
            }
        }

    def _get_https_security_hardening(self) -> Dict[str, Any]:
        """HTTPS安全加固."""
        return {
            "ssl_protocols": ["TLSv1.2", "TLSv1.3"],
            "ssl_prefer_server_ciphers": "on",
            "ssl_session_cache": "shared:SSL:10m",
            "ssl_session_timeout": "10m",
            "hsts_enabled": True,
            "hsts_max_age": "31536000",
            "http2_enabled": True,
        }

    def render_bundle(self, bundle: DeploymentBundle) -> Dict[str, str]:
        """
        渲染全部文件

        Returns:
            相对路径 -> 文件内容
        """
        env = bundle.env
        return {
            ENV_FILE: self.generate_env_file(env),
            COMPOSE_FILE: dump_compose(bundle.stack),
            env.nginx_conf: self.generate_nginx_config(bundle.proxy, upload_policy=bundle.upload_policy),
            env.wordpress_uploads_config: self.generate_upload_ini(bundle.upload_policy),
        }

    def create_layout(self, target_dir: Path, env: StackEnvironment) -> List[Path]:
        """创建部署目录布局."""
        dirs = [target_dir / name for name in LAYOUT_DIRS]
        for host_path in (env.wordpress_local_home, env.mysql_local_home,
                          env.nginx_logs, env.nginx_ssl_certs):
            dirs.append(target_dir / host_path)

        created = []
        for directory in dirs:
            if not directory.exists():
                directory.mkdir(parents=True, exist_ok=True)
                created.append(directory)
        return created

    def write_bundle(self, target_dir: Path, bundle: DeploymentBundle, overwrite: bool = False) -> Dict[str, Path]:
        """
        写出部署目录

        Args:
            target_dir: 部署目录
            bundle: 配置
            overwrite: 是否覆盖已有文件（覆盖前备份到 backups/）

        Raises:
            FileExistsError: 文件已存在且未允许覆盖
        """
        target_dir = Path(target_dir)
        rendered = self.render_bundle(bundle)

        existing = [rel for rel in rendered if (target_dir / rel).exists()]
        if existing and not overwrite:
            raise FileExistsError(
                f"Refusing to overwrite existing files: {', '.join(sorted(existing))}"
            )

        self.create_layout(target_dir, bundle.env)

        written: Dict[str, Path] = {}
        for rel_path, content in rendered.items():
            path = (target_dir / rel_path).resolve()
            if path.exists():
                self.backup_existing_config(path, target_dir / "backups")
            if not write_file_robust(path, content):
                raise OSError(f"Failed to write {path}")
            written[rel_path] = path
            logger.info(f"Wrote {path}")

        return written

    def backup_existing_config(self, config_path: Path, backup_dir: Optional[Path] = None) -> Optional[Path]:
        """
        备份现有配置文件

        Args:
            config_path: 配置文件路径
            backup_dir: 备份目录，默认是配置文件旁边的 backups/

        Returns:
            备份文件路径
        """
        if not config_path.exists():
            return None

        backup_dir = backup_dir or (config_path.parent / "backups")
        backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_name = f"{config_path.name.lstrip('.')}_{timestamp}.bak"
        backup_path = backup_dir / backup_name

        content = read_file_robust(config_path)
        backup_path.write_text(content, encoding="utf-8")

        logger.info(f"Backup created: {backup_path}")

        return backup_path

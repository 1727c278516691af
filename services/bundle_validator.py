"""Static checks of a generated deployment bundle."""

from pathlib import Path
from typing import List, Literal, Optional, Dict, Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from models.route_table import RoutePolicy, LocationModifier, HIDDEN_FILE_PATTERN
from models.stack_config import ENV_KEYS
from models.upload_policy import UploadPolicy
from services.config_generator import ENV_FILE, COMPOSE_FILE
from services.config_parser import ConfigParser, ParsedSiteConfig
from services.env_file import load_env_file, validate_env
from utils.encoding_utils import read_file_robust
from utils.size_units import parse_size


class ValidationIssue(BaseModel):
    """一条检查结果."""

    severity: Literal["error", "warning"] = Field(default="error")
    code: str = Field(..., description="检查项标识")
    message: str = Field(..., description="说明")

    def __str__(self) -> str:
        return f"[{self.severity}] {self.code}: {self.message}"


def has_errors(issues: List[ValidationIssue]) -> bool:
    return any(issue.severity == "error" for issue in issues)


class BundleValidator:
    """
    部署目录检查器

    Everything is checked from the files on disk, no container is started.
    """

    def __init__(self, bundle_dir: Path):
        self.bundle_dir = Path(bundle_dir)
        self.parser = ConfigParser()
        self.issues: List[ValidationIssue] = []
        self.env: Dict[str, Optional[str]] = {}
        self.fastcgi_host: Optional[str] = None

    def error(self, code: str, message: str):
        self.issues.append(ValidationIssue(severity="error", code=code, message=message))

    def warning(self, code: str, message: str):
        self.issues.append(ValidationIssue(severity="warning", code=code, message=message))

    def _env_path(self, key: str, default: str) -> Path:
        value = self.env.get(key) or default
        return (self.bundle_dir / value).resolve()

    def validate(self) -> List[ValidationIssue]:
        self.issues = []
        self.fastcgi_host = None
        self.check_env()

        parsed = self.check_nginx()
        self.check_compose(parsed)
        self.check_uploads(parsed)
        self.check_layout(parsed)

        logger.info(
            f"Bundle check {self.bundle_dir}: "
            f"{sum(1 for i in self.issues if i.severity == 'error')} errors, "
            f"{sum(1 for i in self.issues if i.severity == 'warning')} warnings"
        )
        return self.issues

    def check_env(self):
        env_path = self.bundle_dir / ENV_FILE
        if not env_path.exists():
            self.error("env.missing", f"{ENV_FILE} not found in {self.bundle_dir}")
            return

        self.env = load_env_file(env_path)
        for problem in validate_env(self.env):
            self.error("env.invalid", problem)

        unknown = sorted(key for key in self.env if key not in ENV_KEYS)
        if unknown:
            self.warning("env.unknown", f"Unused keys: {', '.join(unknown)}")

    def check_nginx(self) -> Optional[ParsedSiteConfig]:
        conf_path = self._env_path("NGINX_CONF", "./nginx/default.conf")
        if not conf_path.exists():
            self.error("nginx.missing", f"Site config not found: {conf_path}")
            return None

        try:
            parsed = self.parser.parse_file(conf_path)
        except ValueError as e:
            self.error("nginx.syntax", f"{conf_path}: {e}")
            return None
        for placeholder in parsed.placeholders:
            self.error("nginx.placeholder", f"Placeholder {placeholder} was not replaced")

        self._check_redirect(parsed)
        if parsed.route_table is None:
            self.error("nginx.https", "No server block listens with ssl")
            return parsed

        self._check_routes(parsed)
        return parsed

    def _check_redirect(self, parsed: ParsedSiteConfig):
        if parsed.plaintext is None:
            self.error("redirect.missing", "No plaintext server block")
            return
        target = parsed.redirect_target or ""
        if not target.startswith("https://"):
            self.error("redirect.https", f"Plaintext listener does not redirect to HTTPS: {target or 'none'}")
        elif not target.endswith("$request_uri"):
            self.error("redirect.request_uri", f"Redirect drops path and query: {target}")

    def _check_routes(self, parsed: ParsedSiteConfig):
        table = parsed.route_table

        php_rules = table.find(RoutePolicy.FASTCGI)
        if not php_rules:
            self.error("php.missing", "No location forwards to FastCGI")
        for rule in php_rules:
            app_host, _, app_port = (rule.fastcgi_pass or "").rpartition(":")
            self.fastcgi_host = self.fastcgi_host or app_host
            if app_port != "9000":
                self.error("php.port", f"PHP is forwarded to {rule.fastcgi_pass}, expected port 9000")
            if not rule.split_path_info:
                self.error("php.split_path_info", f"{rule.header()} has no fastcgi_split_path_info")
            if not self.parser.fastcgi_param(parsed, "PATH_INFO"):
                self.error("php.path_info", f"{rule.header()} does not pass PATH_INFO")

        static_rules = [r for r in table.regex_rules() if r.policy == RoutePolicy.SERVE_FILE]
        if not any(rule.expires for rule in static_rules):
            self.error("static.expires", "No static asset location sets expires")

        regexes = table.regex_rules()
        deny_positions = [
            i for i, rule in enumerate(regexes)
            if rule.policy == RoutePolicy.DENY and HIDDEN_FILE_PATTERN in rule.pattern
        ]
        if not deny_positions:
            self.error("ht.missing", "No location denies .ht files")
        elif deny_positions[0] != 0:
            shadowing = regexes[0].header()
            self.error("ht.order", f"'{shadowing}' is matched before the .ht denial")

        fallback = [
            rule for rule in table.rules
            if rule.modifier == LocationModifier.PREFIX and rule.pattern == "/"
        ]
        if not fallback or not fallback[0].try_files or not fallback[0].try_files[-1].startswith("/index.php"):
            self.error("fallback.index", "location / does not fall back to /index.php")

    def check_compose(self, parsed: Optional[ParsedSiteConfig]) -> Optional[Dict[str, Any]]:
        compose_path = self.bundle_dir / COMPOSE_FILE
        if not compose_path.exists():
            self.error("compose.missing", f"{COMPOSE_FILE} not found")
            return None
        try:
            document = yaml.safe_load(read_file_robust(compose_path)) or {}
        except yaml.YAMLError as e:
            self.error("compose.yaml", f"Invalid YAML: {e}")
            return None

        services = document.get("services") or {}
        db_host = (self.env.get("WORDPRESS_DB_HOST") or "database:3306").rpartition(":")[0]
        app_host = self.fastcgi_host or "wordpress"

        if db_host not in services:
            self.error("compose.database", f"WORDPRESS_DB_HOST points at {db_host}, which is not a service")
        if app_host not in services:
            self.error("compose.application", f"PHP is forwarded to {app_host}, which is not a service")

        if app_host in services and db_host in services:
            condition = self._dependency_condition(services[app_host], db_host)
            if condition != "service_healthy":
                self.error(
                    "compose.order",
                    f"{app_host} must depend on {db_host} with condition service_healthy (got {condition})"
                )

        for name, entry in services.items():
            image = str(entry.get("image", ""))
            if image.startswith("nginx") and app_host in services:
                if self._dependency_condition(entry, app_host) is None:
                    self.error("compose.order", f"{name} must depend on {app_host}")
            if "phpmyadmin" in image and not entry.get("profiles"):
                self.error("compose.admin_profile", f"{name} must sit in a profile so it is opt-in")
        return document

    @staticmethod
    def _dependency_condition(entry: Dict[str, Any], dependency: str) -> Optional[str]:
        depends_on = entry.get("depends_on") or {}
        if isinstance(depends_on, list):
            return "service_started" if dependency in depends_on else None
        if dependency not in depends_on:
            return None
        return (depends_on[dependency] or {}).get("condition", "service_started")

    def check_uploads(self, parsed: Optional[ParsedSiteConfig]):
        ini_path = self._env_path("WORDPRESS_UPLOADS_CONFIG", "./config/uploads.ini")
        if not ini_path.exists():
            self.error("uploads.missing", f"PHP upload config not found: {ini_path}")
            return
        try:
            policy = UploadPolicy.from_ini(read_file_robust(ini_path))
        except (ValidationError, ValueError) as e:
            self.error("uploads.invalid", str(e))
            return

        proxy_limit = None
        if parsed is not None and parsed.client_max_body_size:
            try:
                proxy_limit = parse_size(parsed.client_max_body_size)
            except ValueError:
                self.error("uploads.proxy_limit", f"Bad client_max_body_size {parsed.client_max_body_size}")
        for warning in policy.consistency_warnings(proxy_limit):
            self.warning("uploads.limits", warning)

    def check_layout(self, parsed: Optional[ParsedSiteConfig]):
        for key, default in (("WORDPRESS_LOCAL_HOME", "./wordpress"),
                             ("MYSQL_LOCAL_HOME", "./dbdata"),
                             ("NGINX_LOGS", "./logs/nginx")):
            path = self._env_path(key, default)
            if not path.is_dir():
                self.error("layout.missing", f"{key} directory does not exist: {path}")

        ssl_dir = self._env_path("NGINX_SSL_CERTS", "./ssl")
        if not ssl_dir.is_dir():
            self.error("ssl.missing", f"Certificate directory does not exist: {ssl_dir}")
            return
        if parsed is None:
            return
        for container_path in (parsed.ssl_certificate, parsed.ssl_certificate_key):
            if not container_path:
                self.error("ssl.directive", "ssl_certificate or ssl_certificate_key is missing")
                continue
            name = container_path.rsplit("/", 1)[-1]
            if not (ssl_dir / name).is_file():
                self.error("ssl.missing", f"{name} not found in {ssl_dir}")


def validate_bundle(bundle_dir: Path) -> List[ValidationIssue]:
    """检查部署目录，返回问题列表."""
    return BundleValidator(bundle_dir).validate()

"""Deployment models: environment file, proxy settings and the service graph."""

import re
from enum import Enum
from typing import Optional, Dict, Any, List, Literal, Tuple, Union
from pydantic import BaseModel, Field, validator

from models.route_table import RouteTable
from models.upload_policy import UploadPolicy
from utils.size_units import parse_size


class StackDefinitionError(ValueError):
    """服务依赖图无效（未知依赖或循环依赖）."""


# .env键名 -> StackEnvironment字段
ENV_KEYS: Dict[str, str] = {
    "WORDPRESS_LOCAL_HOME": "wordpress_local_home",
    "WORDPRESS_UPLOADS_CONFIG": "wordpress_uploads_config",
    "WORDPRESS_DB_HOST": "wordpress_db_host",
    "WORDPRESS_DB_NAME": "wordpress_db_name",
    "WORDPRESS_DB_USER": "wordpress_db_user",
    "WORDPRESS_DB_PASSWORD": "wordpress_db_password",
    "MYSQL_LOCAL_HOME": "mysql_local_home",
    "MYSQL_DATABASE": "mysql_database",
    "MYSQL_USER": "mysql_user",
    "MYSQL_PASSWORD": "mysql_password",
    "MYSQL_ROOT_PASSWORD": "mysql_root_password",
    "NGINX_CONF": "nginx_conf",
    "NGINX_SSL_CERTS": "nginx_ssl_certs",
    "NGINX_LOGS": "nginx_logs",
}

# 单引号.env值中无法原样表示的字符
ENV_UNQUOTABLE_CHARS = ("'", "\\")

PLACEHOLDER_SERVER_NAME = "FQDN_OR_IP"
PLACEHOLDER_HTTPS_PORT = "HTTPS_PORT"

SERVER_NAME_PATTERN = re.compile(
    r'^(?:[a-zA-Z0-9_](?:[a-zA-Z0-9\-_]{0,61}[a-zA-Z0-9])?\.)*'
    r'[a-zA-Z0-9_](?:[a-zA-Z0-9\-_]{0,61}[a-zA-Z0-9])?$'
)
IPV4_PATTERN = re.compile(r'^\d+\.\d+\.\d+\.\d+$')


class StackEnvironment(BaseModel):
    """
    Environment variable set consumed by the orchestration engine.

    Read once at ``up`` and injected into the containers. Editing it only
    takes effect after the affected services are recreated.
    """

    # 宿主机路径
    wordpress_local_home: str = Field(default="./wordpress", description="WordPress文件目录")
    wordpress_uploads_config: str = Field(default="./config/uploads.ini", description="PHP上传配置文件")

    # 应用数据库连接
    wordpress_db_host: str = Field(default="database:3306", description="数据库地址 host:port")
    wordpress_db_name: str = Field(default="wordpress", min_length=1)
    wordpress_db_user: str = Field(default="wordpress", min_length=1)
    wordpress_db_password: str = Field(default="password123!", min_length=1)

    # 数据库初始化
    mysql_local_home: str = Field(default="./dbdata", description="MySQL数据目录")
    mysql_database: str = Field(default="wordpress", min_length=1)
    mysql_user: str = Field(default="wordpress", min_length=1)
    mysql_password: str = Field(default="password123!", min_length=1)
    mysql_root_password: str = Field(default="rootpassword123!", min_length=1)

    # Nginx
    nginx_conf: str = Field(default="./nginx/default.conf", description="Nginx站点配置")
    nginx_ssl_certs: str = Field(default="./ssl", description="证书目录")
    nginx_logs: str = Field(default="./logs/nginx", description="Nginx日志目录")

    class Config:
        extra = "forbid"

    @validator("wordpress_db_host")
    def validate_db_host(cls, v: str) -> str:
        """必须是 host:port 形式."""
        host, sep, port = v.rpartition(":")
        if not sep or not host:
            raise ValueError(f"WORDPRESS_DB_HOST must be host:port, got {v!r}")
        if not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValueError(f"Invalid database port in WORDPRESS_DB_HOST: {v!r}")
        return v

    @validator("wordpress_db_name", "wordpress_db_user", "wordpress_db_password", "mysql_root_password")
    def validate_quotable(cls, v: str) -> str:
        """.env里单引号值：compose原样读取，python-dotenv会解析反斜杠转义."""
        for char in ENV_UNQUOTABLE_CHARS:
            if char in v:
                raise ValueError(f"Value must not contain {char!r}, it cannot be quoted the same way for compose")
        return v

    @validator("mysql_database", always=True)
    def validate_mysql_database(cls, v: str, values: Dict[str, Any]) -> str:
        expected = values.get("wordpress_db_name")
        if expected is not None and v != expected:
            raise ValueError(f"MYSQL_DATABASE ({v}) must equal WORDPRESS_DB_NAME ({expected})")
        return v

    @validator("mysql_user", always=True)
    def validate_mysql_user(cls, v: str, values: Dict[str, Any]) -> str:
        expected = values.get("wordpress_db_user")
        if expected is not None and v != expected:
            raise ValueError(f"MYSQL_USER ({v}) must equal WORDPRESS_DB_USER ({expected})")
        if v == "root":
            raise ValueError("MYSQL_USER must not be root, the root account is created separately")
        return v

    @validator("mysql_password", always=True)
    def validate_mysql_password(cls, v: str, values: Dict[str, Any]) -> str:
        expected = values.get("wordpress_db_password")
        if expected is not None and v != expected:
            raise ValueError("MYSQL_PASSWORD must equal WORDPRESS_DB_PASSWORD")
        return v

    def db_host_parts(self) -> Tuple[str, int]:
        host, _, port = self.wordpress_db_host.rpartition(":")
        return host, int(port)

    @classmethod
    def from_env_mapping(cls, mapping: Dict[str, Optional[str]]) -> "StackEnvironment":
        """从.env键值构建，忽略未知键."""
        values = {}
        for env_key, field_name in ENV_KEYS.items():
            value = mapping.get(env_key)
            if value is not None:
                values[field_name] = value
        return cls(**values)

    def to_env_mapping(self) -> Dict[str, str]:
        return {env_key: getattr(self, field_name) for env_key, field_name in ENV_KEYS.items()}


class ProxySettings(BaseModel):
    """反向代理设置（default.conf中需要替换的部分）."""

    server_name: str = Field(default="localhost", description="服务器名称")
    http_port: int = Field(default=80, ge=1, le=65535, description="宿主机HTTP端口")
    https_port: int = Field(default=443, ge=1, le=65535, description="宿主机HTTPS端口")
    document_root: str = Field(default="/var/www/html", description="容器内网站根目录")
    fastcgi_host: str = Field(default="wordpress", description="应用服务主机名")
    fastcgi_port: int = Field(default=9000, ge=1, le=65535, description="FastCGI端口")
    ssl_dir: str = Field(default="/etc/ssl", description="容器内证书目录")
    ssl_certificate: str = Field(default="fullchain.pem", description="证书文件名")
    ssl_certificate_key: str = Field(default="privkey.pem", description="私钥文件名")
    client_max_body_size: str = Field(default="75m", description="请求体上限")
    access_log: str = Field(default="/var/log/nginx/wordpress.access.log")
    error_log: str = Field(default="/var/log/nginx/wordpress.error.log")

    class Config:
        validate_assignment = True
        extra = "forbid"

    @validator("server_name")
    def validate_server_name(cls, v: str) -> str:
        """验证服务器名称."""
        if not v:
            return "localhost"
        if v == PLACEHOLDER_SERVER_NAME:
            raise ValueError(f"Server name placeholder {PLACEHOLDER_SERVER_NAME} must be replaced")
        if not SERVER_NAME_PATTERN.match(v) and not IPV4_PATTERN.match(v):
            raise ValueError(f"Invalid server name: {v}")
        return v

    @validator("client_max_body_size")
    def validate_body_size(cls, v: str) -> str:
        """nginx大小写法，纯数字为字节."""
        parse_size(v)
        return str(v).strip()

    @property
    def fastcgi_pass(self) -> str:
        return f"{self.fastcgi_host}:{self.fastcgi_port}"

    @property
    def ssl_certificate_path(self) -> str:
        return f"{self.ssl_dir.rstrip('/')}/{self.ssl_certificate}"

    @property
    def ssl_certificate_key_path(self) -> str:
        return f"{self.ssl_dir.rstrip('/')}/{self.ssl_certificate_key}"

    def to_route_table(self) -> RouteTable:
        return RouteTable.wordpress_default(
            server_name=self.server_name,
            https_port=self.https_port,
            http_port=self.http_port,
            document_root=self.document_root,
            fastcgi_pass=self.fastcgi_pass,
        )


class ReadinessProbe(BaseModel):
    """
    Health-check contract for one service.

    Replaces "watch the logs until it looks ready" with a probe that is
    retried with exponential backoff until ``timeout_seconds``.
    """

    kind: Literal["log_marker", "container_state", "tcp", "http"] = Field(..., description="探测方式")
    marker: Optional[str] = Field(default=None, description="日志就绪标记（正则）")
    exclude: Optional[str] = Field(default=None, description="忽略匹配此正则的日志行")
    host: Optional[str] = Field(default=None, description="TCP/HTTP主机")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="TCP/HTTP端口")
    path: str = Field(default="/", description="HTTP路径")
    scheme: Literal["http", "https"] = Field(default="http")
    expected_status: List[int] = Field(default_factory=lambda: [200])
    interval_seconds: float = Field(default=2.0, gt=0, description="首次重试间隔")
    backoff_factor: float = Field(default=1.5, ge=1.0, description="退避系数")
    max_interval_seconds: float = Field(default=10.0, gt=0, description="最大重试间隔")
    timeout_seconds: float = Field(default=180.0, gt=0, description="总超时")

    @validator("marker", always=True)
    def validate_marker(cls, v: Optional[str], values: Dict[str, Any]) -> Optional[str]:
        if values.get("kind") == "log_marker" and not v:
            raise ValueError("log_marker probe requires a marker")
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid marker regex {v!r}: {e}")
        return v

    @validator("port", always=True)
    def validate_port(cls, v: Optional[int], values: Dict[str, Any]) -> Optional[int]:
        if values.get("kind") in ("tcp", "http") and not v:
            raise ValueError("tcp/http probe requires a port")
        return v


class DependencyEdge(BaseModel):
    """依赖边，条件与compose depends_on一致."""

    service: str = Field(..., min_length=1)
    condition: Literal["service_started", "service_healthy"] = Field(default="service_started")

    @property
    def requires_ready(self) -> bool:
        return self.condition == "service_healthy"


class ServiceRole(str, Enum):
    """服务角色."""
    DATABASE = "database"
    APPLICATION = "application"
    PROXY = "proxy"
    ADMIN = "admin"


class ServiceDefinition(BaseModel):
    """一个容器服务."""

    name: str = Field(..., min_length=1, description="服务名（同时是网络内主机名）")
    image: str = Field(..., min_length=1, description="镜像")
    role: ServiceRole = Field(..., description="角色")
    optional: bool = Field(default=False, description="默认不启动")
    profile: Optional[str] = Field(default=None, description="compose profile")
    container_name: Optional[str] = Field(default=None)
    restart: str = Field(default="unless-stopped")
    command: Optional[Union[str, List[str]]] = Field(default=None)
    ports: List[str] = Field(default_factory=list, description="对外端口")
    debug_ports: List[str] = Field(default_factory=list, description="仅调试时暴露的端口")
    volumes: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    depends_on: List[DependencyEdge] = Field(default_factory=list)
    healthcheck: Optional[Dict[str, Any]] = Field(default=None, description="compose healthcheck")
    readiness: Optional[ReadinessProbe] = Field(default=None, description="就绪探测")

    @validator("profile", always=True)
    def validate_profile(cls, v: Optional[str], values: Dict[str, Any]) -> Optional[str]:
        if values.get("optional") and not v:
            raise ValueError("Optional services must be placed in a compose profile")
        return v

    def dependency_names(self) -> List[str]:
        return [edge.service for edge in self.depends_on]


class StartupStage(BaseModel):
    """启动计划中的一个阶段."""

    index: int
    services: List[str] = Field(default_factory=list, description="本阶段一起启动的服务（已按依赖排序）")
    waits_for: List[str] = Field(default_factory=list, description="本阶段启动前必须就绪的服务")


class StackDefinition(BaseModel):
    """服务依赖图."""

    services: List[ServiceDefinition] = Field(default_factory=list)
    network: str = Field(default="wordpress", description="compose网络名")
    expose_debug_ports: bool = Field(default=False, description="暴露3306/9000用于调试")

    @validator("services")
    def validate_unique_names(cls, v: List[ServiceDefinition]) -> List[ServiceDefinition]:
        names = [service.name for service in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate service names: {', '.join(duplicates)}")
        return v

    def names(self) -> List[str]:
        return [service.name for service in self.services]

    def get(self, name: str) -> ServiceDefinition:
        for service in self.services:
            if service.name == name:
                return service
        raise StackDefinitionError(f"Unknown service: {name}")

    def by_role(self, role: ServiceRole) -> Optional[ServiceDefinition]:
        for service in self.services:
            if service.role == role:
                return service
        return None

    def dependents_of(self, name: str, ready_only: bool = True) -> List[ServiceDefinition]:
        """Services with a dependency edge on ``name``."""
        result = []
        for service in self.services:
            for edge in service.depends_on:
                if edge.service == name and (edge.requires_ready or not ready_only):
                    result.append(service)
                    break
        return result

    def topological_order(self) -> List[str]:
        """
        依赖优先的服务顺序

        Ties keep declaration order. Raises StackDefinitionError on unknown
        dependencies or cycles.
        """
        known = set(self.names())
        for service in self.services:
            for dep in service.dependency_names():
                if dep not in known:
                    raise StackDefinitionError(f"Service {service.name} depends on unknown service {dep}")
                if dep == service.name:
                    raise StackDefinitionError(f"Service {service.name} depends on itself")

        order: List[str] = []
        state: Dict[str, str] = {}

        def visit(name: str, trail: List[str]):
            if state.get(name) == "done":
                return
            if state.get(name) == "visiting":
                cycle = " -> ".join(trail[trail.index(name):] + [name])
                raise StackDefinitionError(f"Dependency cycle: {cycle}")
            state[name] = "visiting"
            for dep in self.get(name).dependency_names():
                visit(dep, trail + [name])
            state[name] = "done"
            order.append(name)

        for name in self.names():
            visit(name, [])
        return order

    def startup_plan(self, include_optional: bool = False) -> List[StartupStage]:
        """
        计算启动阶段

        A ``service_healthy`` edge pushes the dependent into a later stage,
        gated on the dependency's readiness probe. A ``service_started``
        edge only orders services inside the same stage, so the application
        and the proxy come up together once the database is ready.
        """
        order = self.topological_order()
        selected = [name for name in order if include_optional or not self.get(name).optional]
        selected_set = set(selected)

        level: Dict[str, int] = {}
        waits: Dict[str, List[str]] = {}
        for name in selected:
            service = self.get(name)
            current = 0
            gated = []
            for edge in service.depends_on:
                if edge.service not in selected_set:
                    raise StackDefinitionError(
                        f"Service {name} depends on {edge.service}, which is not part of the plan"
                    )
                if edge.requires_ready:
                    current = max(current, level[edge.service] + 1)
                    gated.append(edge.service)
                else:
                    current = max(current, level[edge.service])
            level[name] = current
            waits[name] = gated

        stages: List[StartupStage] = []
        for index in range(max(level.values(), default=-1) + 1):
            members = [name for name in selected if level[name] == index]
            gated = []
            for name in members:
                for dep in waits[name]:
                    if dep not in gated:
                        gated.append(dep)
            stages.append(StartupStage(index=index, services=members, waits_for=gated))
        return stages

    @classmethod
    def wordpress_default(cls, env: Optional[StackEnvironment] = None,
                          proxy: Optional[ProxySettings] = None,
                          include_admin: bool = True,
                          expose_debug_ports: bool = False,
                          ready_timeout: float = 180.0) -> "StackDefinition":
        """数据库、PHP-FPM、Nginx，以及可选的phpMyAdmin."""
        env = env or StackEnvironment()
        proxy = proxy or ProxySettings()
        db_host, db_port = env.db_host_parts()

        database = ServiceDefinition(
            name=db_host,
            image="mysql:8.0",
            role=ServiceRole.DATABASE,
            container_name="mysql",
            # mysqld listens on the port WordPress connects to
            command=["--default-authentication-plugin=mysql_native_password", f"--port={db_port}"],
            debug_ports=[f"{db_port}:{db_port}"],
            volumes=["${MYSQL_LOCAL_HOME}:/var/lib/mysql"],
            environment={
                "MYSQL_DATABASE": "${MYSQL_DATABASE}",
                "MYSQL_USER": "${MYSQL_USER}",
                "MYSQL_PASSWORD": "${MYSQL_PASSWORD}",
                "MYSQL_ROOT_PASSWORD": "${MYSQL_ROOT_PASSWORD}",
            },
            # TCP ping fails while the networkless init server is up
            healthcheck={
                "test": ["CMD-SHELL",
                         f"mysqladmin ping -h 127.0.0.1 -P {db_port} -u root --password=$$MYSQL_ROOT_PASSWORD --silent"],
                "interval": "5s",
                "timeout": "5s",
                "retries": 30,
                "start_period": "30s",
            },
            readiness=ReadinessProbe(
                kind="log_marker",
                marker=r"ready for connections",
                exclude=r"port: 0\b",
                timeout_seconds=ready_timeout,
            ),
        )

        application = ServiceDefinition(
            name=proxy.fastcgi_host,
            image="wordpress:php8.2-fpm",
            role=ServiceRole.APPLICATION,
            container_name="wordpress",
            depends_on=[DependencyEdge(service=database.name, condition="service_healthy")],
            debug_ports=[f"{proxy.fastcgi_port}:9000"],
            volumes=[
                "${WORDPRESS_LOCAL_HOME}:/var/www/html",
                "${WORDPRESS_UPLOADS_CONFIG}:/usr/local/etc/php/conf.d/uploads.ini",
            ],
            environment={
                "WORDPRESS_DB_HOST": "${WORDPRESS_DB_HOST}",
                "WORDPRESS_DB_NAME": "${WORDPRESS_DB_NAME}",
                "WORDPRESS_DB_USER": "${WORDPRESS_DB_USER}",
                "WORDPRESS_DB_PASSWORD": "${WORDPRESS_DB_PASSWORD}",
            },
            readiness=ReadinessProbe(
                kind="log_marker",
                marker=r"ready to handle connections",
                timeout_seconds=ready_timeout,
            ),
        )

        reverse_proxy = ServiceDefinition(
            name="nginx",
            image="nginx:stable",
            role=ServiceRole.PROXY,
            container_name="nginx",
            depends_on=[DependencyEdge(service=application.name, condition="service_started")],
            ports=[f"{proxy.http_port}:80", f"{proxy.https_port}:443"],
            volumes=[
                "${WORDPRESS_LOCAL_HOME}:/var/www/html",
                "${NGINX_CONF}:/etc/nginx/conf.d/default.conf",
                f"${{NGINX_SSL_CERTS}}:{proxy.ssl_dir}",
                "${NGINX_LOGS}:/var/log/nginx",
            ],
            readiness=ReadinessProbe(kind="container_state", timeout_seconds=min(ready_timeout, 60.0)),
        )

        services = [database, application, reverse_proxy]

        if include_admin:
            services.append(ServiceDefinition(
                name="phpmyadmin",
                image="phpmyadmin:latest",
                role=ServiceRole.ADMIN,
                optional=True,
                profile="admin",
                container_name="phpmyadmin",
                depends_on=[DependencyEdge(service=database.name, condition="service_healthy")],
                ports=["8080:80"],
                environment={
                    "PMA_HOST": database.name,
                    "PMA_PORT": str(db_port),
                    "MYSQL_ROOT_PASSWORD": "${MYSQL_ROOT_PASSWORD}",
                },
                readiness=ReadinessProbe(kind="container_state", timeout_seconds=min(ready_timeout, 60.0)),
            ))

        return cls(services=services, expose_debug_ports=expose_debug_ports)


class DeploymentBundle(BaseModel):
    """一次生成的全部配置."""

    env: StackEnvironment = Field(default_factory=StackEnvironment)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    upload_policy: UploadPolicy = Field(default_factory=UploadPolicy)
    stack: StackDefinition = Field(default_factory=StackDefinition.wordpress_default)

    @classmethod
    def create(cls, server_name: str = "localhost", http_port: int = 80, https_port: int = 443,
               include_admin: bool = True, expose_debug_ports: bool = False,
               env: Optional[StackEnvironment] = None,
               upload_policy: Optional[UploadPolicy] = None,
               client_max_body_size: str = "75m",
               ready_timeout: float = 180.0) -> "DeploymentBundle":
        env = env or StackEnvironment()
        proxy = ProxySettings(
            server_name=server_name, http_port=http_port, https_port=https_port,
            client_max_body_size=client_max_body_size,
        )
        stack = StackDefinition.wordpress_default(
            env=env, proxy=proxy, include_admin=include_admin,
            expose_debug_ports=expose_debug_ports, ready_timeout=ready_timeout,
        )
        return cls(env=env, proxy=proxy, upload_policy=upload_policy or UploadPolicy(), stack=stack)

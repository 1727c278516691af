"""Reverse-proxy route table: ordered nginx location rules."""

import re
from enum import Enum
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, validator


class LocationModifier(str, Enum):
    """nginx location修饰符."""
    EXACT = "="
    PREFIX = ""
    PREFERENTIAL_PREFIX = "^~"
    REGEX = "~"
    REGEX_CASELESS = "~*"


class RoutePolicy(str, Enum):
    """请求处理策略."""
    SERVE_FILE = "serve_file"
    TRY_FILES = "try_files"
    FASTCGI = "fastcgi"
    DENY = "deny"
    REDIRECT = "redirect"


# Values nginx emits for "expires max"
EXPIRES_MAX_HEADERS = {
    "Expires": "Thu, 31 Dec 2037 23:55:55 GMT",
    "Cache-Control": "max-age=315360000",
}

STATIC_ASSET_EXTENSIONS = ["css", "gif", "ico", "jpeg", "jpg", "js", "png", "svg", "webp", "woff", "woff2"]
PHP_LOCATION_PATTERN = r"[^/]\.php(/|$)"
PHP_SPLIT_PATH_INFO = r"^(.+?\.php)(/.*)$"
HIDDEN_FILE_PATTERN = r"/\.ht"


class LocationRule(BaseModel):
    """单个location块."""

    modifier: LocationModifier = Field(default=LocationModifier.PREFIX, description="匹配修饰符")
    pattern: str = Field(..., min_length=1, description="匹配模式")
    policy: RoutePolicy = Field(..., description="处理策略")

    access_log: bool = Field(default=True, description="记录访问日志")
    log_not_found: bool = Field(default=True, description="记录404")
    allow_all: bool = Field(default=False, description="allow all")
    expires: Optional[str] = Field(default=None, description="expires指令值")
    try_files: List[str] = Field(default_factory=list, description="try_files候选")
    fastcgi_pass: Optional[str] = Field(default=None, description="FastCGI后端地址")
    fastcgi_index: Optional[str] = Field(default=None, description="fastcgi_index")
    split_path_info: Optional[str] = Field(default=None, description="fastcgi_split_path_info正则")
    redirect_target: Optional[str] = Field(default=None, description="重定向目标")
    redirect_code: int = Field(default=301, description="重定向状态码")

    class Config:
        validate_assignment = True

    @validator("pattern")
    def validate_pattern(cls, v: str, values: Dict) -> str:
        """正则location必须能编译."""
        modifier = values.get("modifier")
        if modifier in (LocationModifier.REGEX, LocationModifier.REGEX_CASELESS):
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid location regex {v!r}: {e}")
        elif not v.startswith("/"):
            raise ValueError(f"Location prefix must start with '/': {v}")
        return v

    @validator("fastcgi_pass", always=True)
    def validate_fastcgi_pass(cls, v: Optional[str], values: Dict) -> Optional[str]:
        if values.get("policy") == RoutePolicy.FASTCGI and not v:
            raise ValueError("FastCGI rule requires fastcgi_pass")
        return v

    @property
    def is_regex(self) -> bool:
        return self.modifier in (LocationModifier.REGEX, LocationModifier.REGEX_CASELESS)

    @property
    def is_prefix(self) -> bool:
        return self.modifier in (LocationModifier.PREFIX, LocationModifier.PREFERENTIAL_PREFIX)

    def matches(self, path: str) -> bool:
        """Whether this location matches a normalized request path."""
        if self.modifier == LocationModifier.EXACT:
            return path == self.pattern
        if self.is_prefix:
            return path.startswith(self.pattern)
        flags = re.IGNORECASE if self.modifier == LocationModifier.REGEX_CASELESS else 0
        return re.search(self.pattern, path, flags) is not None

    def header(self) -> str:
        """location行（不含花括号）."""
        modifier = self.modifier.value if isinstance(self.modifier, LocationModifier) else self.modifier
        if modifier:
            return f"location {modifier} {self.pattern}"
        return f"location {self.pattern}"

    def response_headers(self) -> Dict[str, str]:
        if self.expires == "max":
            return dict(EXPIRES_MAX_HEADERS)
        return {}


class RouteTable(BaseModel):
    """HTTPS server块的路由表，按声明顺序保存."""

    server_name: str = Field(default="localhost", description="服务器名称")
    http_port: int = Field(default=80, ge=1, le=65535, description="明文监听端口")
    https_port: int = Field(default=443, ge=1, le=65535, description="HTTPS监听端口")
    document_root: str = Field(default="/var/www/html", description="容器内网站根目录")
    index_files: List[str] = Field(default_factory=lambda: ["index.php", "index.html", "index.htm"])
    rules: List[LocationRule] = Field(default_factory=list, description="location规则")

    def https_base_url(self) -> str:
        """Redirect base, the port is omitted when it is the default 443."""
        if self.https_port == 443:
            return f"https://{self.server_name}"
        return f"https://{self.server_name}:{self.https_port}"

    def regex_rules(self) -> List[LocationRule]:
        return [rule for rule in self.rules if rule.is_regex]

    def find(self, policy: RoutePolicy) -> List[LocationRule]:
        return [rule for rule in self.rules if rule.policy == policy]

    @classmethod
    def wordpress_default(cls, server_name: str = "localhost", https_port: int = 443,
                          http_port: int = 80, document_root: str = "/var/www/html",
                          fastcgi_pass: str = "wordpress:9000") -> "RouteTable":
        """
        标准WordPress路由表

        Order: exact static files, hidden-file denial, static assets, PHP,
        then the front-controller fallback. The denial sits ahead of the
        other regexes so a path like /.ht.php or /.htx.css is still denied.
        """
        extensions = "|".join(STATIC_ASSET_EXTENSIONS)
        rules = [
            LocationRule(
                modifier=LocationModifier.EXACT, pattern="/favicon.ico",
                policy=RoutePolicy.SERVE_FILE, access_log=False, log_not_found=False
            ),
            LocationRule(
                modifier=LocationModifier.EXACT, pattern="/robots.txt",
                policy=RoutePolicy.SERVE_FILE, access_log=False, log_not_found=False,
                allow_all=True
            ),
            LocationRule(
                modifier=LocationModifier.REGEX, pattern=HIDDEN_FILE_PATTERN,
                policy=RoutePolicy.DENY
            ),
            LocationRule(
                modifier=LocationModifier.REGEX_CASELESS, pattern=rf"\.({extensions})$",
                policy=RoutePolicy.SERVE_FILE, expires="max", log_not_found=False
            ),
            LocationRule(
                modifier=LocationModifier.REGEX, pattern=PHP_LOCATION_PATTERN,
                policy=RoutePolicy.FASTCGI, fastcgi_pass=fastcgi_pass,
                fastcgi_index="index.php", split_path_info=PHP_SPLIT_PATH_INFO
            ),
            LocationRule(
                modifier=LocationModifier.PREFIX, pattern="/",
                policy=RoutePolicy.TRY_FILES,
                try_files=["$uri", "$uri/", "/index.php$is_args$args"]
            ),
        ]
        return cls(
            server_name=server_name, http_port=http_port, https_port=https_port,
            document_root=document_root, rules=rules
        )


class RouteDecision(BaseModel):
    """一次请求的路由结果."""

    policy: RoutePolicy = Field(..., description="生效策略")
    status_code: int = Field(default=200, description="响应状态码")
    rule: Optional[LocationRule] = Field(default=None, description="命中的location")
    headers: Dict[str, str] = Field(default_factory=dict, description="附加响应头")
    location: Optional[str] = Field(default=None, description="重定向地址")
    served_file: Optional[str] = Field(default=None, description="直接返回的文件")
    fastcgi_pass: Optional[str] = Field(default=None, description="FastCGI后端")
    fastcgi_params: Dict[str, str] = Field(default_factory=dict, description="FastCGI参数")
    internal_redirect: Optional[str] = Field(default=None, description="内部重定向URI")
    log_suppressed: bool = Field(default=False, description="是否关闭访问日志")

    def describe(self) -> str:
        """单行描述，用于CLI输出."""
        parts = [f"{self.status_code} {self.policy.value if isinstance(self.policy, RoutePolicy) else self.policy}"]
        if self.rule is not None:
            parts.append(f"via '{self.rule.header()}'")
        if self.location:
            parts.append(f"-> {self.location}")
        if self.internal_redirect:
            parts.append(f"(internal {self.internal_redirect})")
        if self.served_file:
            parts.append(f"file={self.served_file}")
        if self.fastcgi_pass:
            parts.append(f"fastcgi={self.fastcgi_pass}")
        return " ".join(parts)

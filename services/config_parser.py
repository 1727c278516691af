"""Nginx site configuration parser."""

import re
from pathlib import Path
from typing import List, Dict, Optional, Tuple
from loguru import logger
from pydantic import BaseModel, Field

from models.route_table import RouteTable, LocationRule, LocationModifier, RoutePolicy
from models.stack_config import PLACEHOLDER_SERVER_NAME, PLACEHOLDER_HTTPS_PORT
from utils.encoding_utils import read_file_robust


class ParsedServer(BaseModel):
    """一个server块."""

    listen: List[str] = Field(default_factory=list)
    server_name: str = Field(default="")
    directives: Dict[str, List[str]] = Field(default_factory=dict, description="server级指令")
    locations: List[LocationRule] = Field(default_factory=list)
    fastcgi_params: Dict[str, Dict[str, str]] = Field(
        default_factory=dict, description="location header -> fastcgi_param"
    )

    @property
    def is_ssl(self) -> bool:
        return any("ssl" in value.split() for value in self.listen)

    def first(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.directives.get(name)
        return values[0] if values else default


class ParsedSiteConfig(BaseModel):
    """default.conf的解析结果."""

    servers: List[ParsedServer] = Field(default_factory=list)
    plaintext: Optional[ParsedServer] = None
    secure: Optional[ParsedServer] = None
    redirect_target: Optional[str] = Field(default=None, description="明文server的重定向目标")
    route_table: Optional[RouteTable] = None
    client_max_body_size: Optional[str] = None
    ssl_certificate: Optional[str] = None
    ssl_certificate_key: Optional[str] = None
    placeholders: List[str] = Field(default_factory=list, description="未替换的占位符")


class ConfigParser:
    """Nginx配置文件解析器."""

    def __init__(self):
        """初始化配置解析器."""
        self.directive_pattern = re.compile(
            r'(\w+)\s+((?:"[^"]*"|\'[^\']*\'|[^;{}"\'])+);',
            re.MULTILINE | re.DOTALL
        )
        self.location_header_pattern = re.compile(
            r'^location\s+(?:(=|\^~|~\*|~)\s*)?(.+)$',
            re.DOTALL
        )
        self.comment_pattern = re.compile(r'(^|\s)#[^\n]*')
        self.https_target_pattern = re.compile(r'https://([^/:\s]+)(?::(\w+))?')

    def parse_file(self, config_path: Path) -> ParsedSiteConfig:
        """
        解析站点配置文件

        Raises:
            FileNotFoundError: 文件不存在
        """
        content = read_file_robust(Path(config_path))
        logger.debug(f"Parsing site config: {config_path} (size: {len(content)} bytes)")
        return self.parse_config_content(content)

    def strip_comments(self, content: str) -> str:
        return self.comment_pattern.sub(r"\1", content)

    @staticmethod
    def _skip_quoted(text: str, start: int) -> int:
        """返回引号字符串结束后的位置."""
        quote = text[start]
        i = start + 1
        while i < len(text):
            if text[i] == "\\":
                i += 2
                continue
            if text[i] == quote:
                return i + 1
            i += 1
        raise ValueError(f"Unterminated quoted string at offset {start}")

    def split_blocks(self, text: str) -> Tuple[List[Tuple[str, str]], str]:
        """
        按花括号深度拆分一层配置

        Walks ``text`` at depth 0. Quoted strings and ``#`` comments are
        skipped, so braces inside them (regex quantifiers, header values)
        do not count.

        Returns:
            ([(block header, block body), ...], the simple directives left over)

        Raises:
            ValueError: 花括号或引号不匹配
        """
        blocks: List[Tuple[str, str]] = []
        leftover: List[str] = []
        statement_start = 0
        depth = 0
        body_start = 0
        header = ""
        i = 0
        while i < len(text):
            ch = text[i]
            if ch in "\"'":
                i = self._skip_quoted(text, i)
                continue
            if ch == "#" and (i == 0 or text[i - 1].isspace()):
                newline = text.find("\n", i)
                i = len(text) if newline == -1 else newline
                continue

            if ch == "{":
                if depth == 0:
                    header = " ".join(text[statement_start:i].split())
                    body_start = i + 1
                depth += 1
            elif ch == "}":
                if depth == 0:
                    raise ValueError(f"Unexpected '}}' at offset {i}")
                depth -= 1
                if depth == 0:
                    blocks.append((header, text[body_start:i]))
                    statement_start = i + 1
            elif ch == ";" and depth == 0:
                leftover.append(text[statement_start:i + 1])
                statement_start = i + 1
            i += 1

        if depth:
            raise ValueError(f"Unclosed block '{header}'")
        leftover.append(text[statement_start:])
        return blocks, "\n".join(leftover)

    def _directives(self, text: str) -> Dict[str, List[str]]:
        directives: Dict[str, List[str]] = {}
        for match in self.directive_pattern.finditer(text):
            directives.setdefault(match.group(1), []).append(" ".join(match.group(2).split()))
        return directives

    def _server_bodies(self, text: str) -> List[str]:
        """server块内容；整份nginx.conf时进入http块."""
        blocks, _ = self.split_blocks(text)
        bodies = []
        for header, body in blocks:
            if header == "server":
                bodies.append(body)
            elif header == "http":
                bodies.extend(self._server_bodies(body))
        return bodies

    def parse_config_content(self, content: str) -> ParsedSiteConfig:
        """
        解析配置内容

        The first server block listening with ssl becomes the route table.
        The first plaintext block is taken as the redirect listener.

        Raises:
            ValueError: 花括号或引号不匹配
        """
        result = ParsedSiteConfig()
        result.placeholders = [
            token for token in (PLACEHOLDER_SERVER_NAME, PLACEHOLDER_HTTPS_PORT) if token in content
        ]

        stripped = self.strip_comments(content)
        for i, body in enumerate(self._server_bodies(stripped)):
            try:
                result.servers.append(self._parse_server_block(body))
            except ValueError as e:
                logger.warning(f"Failed to parse server block {i}: {e}")

        for server in result.servers:
            if server.is_ssl and result.secure is None:
                result.secure = server
            elif not server.is_ssl and result.plaintext is None:
                result.plaintext = server

        if result.plaintext is not None:
            result.redirect_target = self._find_redirect(result.plaintext)

        if result.secure is not None:
            secure = result.secure
            result.client_max_body_size = secure.first("client_max_body_size")
            result.ssl_certificate = secure.first("ssl_certificate")
            result.ssl_certificate_key = secure.first("ssl_certificate_key")
            result.route_table = self._build_route_table(secure, result.redirect_target)

        logger.debug(
            f"Parsed {len(result.servers)} server blocks, "
            f"{len(result.route_table.rules) if result.route_table else 0} locations"
        )
        return result

    def _parse_server_block(self, inner: str) -> ParsedServer:
        server = ParsedServer()
        blocks, top_level = self.split_blocks(inner)
        for header, body in blocks:
            match = self.location_header_pattern.match(header)
            if not match:
                logger.debug(f"Skipping block '{header}'")
                continue
            modifier, pattern = match.group(1) or "", match.group(2).strip()
            if len(pattern) > 1 and pattern[0] == pattern[-1] and pattern[0] in "\"'":
                pattern = pattern[1:-1]
            rule, params = self._parse_location(modifier, pattern, body)
            server.locations.append(rule)
            if params:
                server.fastcgi_params[rule.header()] = params

        # 去掉location后剩下的是server级指令
        server.directives = self._directives(top_level)
        server.listen = server.directives.get("listen", [])
        server.server_name = server.first("server_name", "") or ""
        return server

    def _parse_location(self, modifier: str, pattern: str, body: str):
        # 嵌套的location/if块不参与本location的指令
        _, own_text = self.split_blocks(body)
        directives = self._directives(own_text)

        def first(name: str) -> Optional[str]:
            values = directives.get(name)
            return values[0] if values else None

        fastcgi_params = {}
        for value in directives.get("fastcgi_param", []):
            name, _, param_value = value.partition(" ")
            fastcgi_params[name] = param_value.strip()

        redirect_target = None
        redirect_code = 301
        if first("return"):
            code, _, target = first("return").partition(" ")
            if code.isdigit() and code.startswith("30"):
                redirect_code = int(code)
                redirect_target = target.strip() or None
        elif first("rewrite"):
            parts = first("rewrite").split()
            if len(parts) >= 2:
                redirect_target = parts[1].rstrip("?")
                redirect_code = 301 if parts[-1] == "permanent" else 302

        deny = first("deny")
        if deny == "all":
            policy = RoutePolicy.DENY
        elif first("fastcgi_pass"):
            policy = RoutePolicy.FASTCGI
        elif redirect_target:
            policy = RoutePolicy.REDIRECT
        elif first("try_files"):
            policy = RoutePolicy.TRY_FILES
        else:
            policy = RoutePolicy.SERVE_FILE

        try_files = first("try_files")
        rule = LocationRule(
            modifier=LocationModifier(modifier),
            pattern=pattern,
            policy=policy,
            access_log=first("access_log") != "off",
            log_not_found=first("log_not_found") != "off",
            allow_all=first("allow") == "all",
            expires=first("expires"),
            try_files=try_files.split() if try_files and policy == RoutePolicy.TRY_FILES else [],
            fastcgi_pass=first("fastcgi_pass"),
            fastcgi_index=first("fastcgi_index"),
            split_path_info=first("fastcgi_split_path_info"),
            redirect_target=redirect_target,
            redirect_code=redirect_code,
        )
        return rule, fastcgi_params

    def _find_redirect(self, server: ParsedServer) -> Optional[str]:
        """明文server的重定向目标（server级return或location /内）."""
        server_return = server.first("return")
        if server_return:
            code, _, target = server_return.partition(" ")
            if code.startswith("30"):
                return target.strip()
        for rule in server.locations:
            if rule.policy == RoutePolicy.REDIRECT and rule.pattern == "/":
                return rule.redirect_target
        return None

    def _build_route_table(self, server: ParsedServer, redirect_target: Optional[str]) -> RouteTable:
        https_port = 443
        server_name = server.server_name or "localhost"
        if redirect_target:
            match = self.https_target_pattern.match(redirect_target)
            if match and match.group(2) and match.group(2).isdigit():
                https_port = int(match.group(2))

        index = server.first("index")
        table = RouteTable(
            server_name=server_name.split()[0],
            https_port=https_port,
            document_root=(server.first("root") or "/var/www/html").strip('"'),
            rules=server.locations,
        )
        if index:
            table.index_files = index.split()
        return table

    def fastcgi_param(self, parsed: ParsedSiteConfig, name: str) -> Optional[str]:
        """PHP location里的fastcgi_param值."""
        if parsed.secure is None:
            return None
        for rule in parsed.secure.locations:
            if rule.policy == RoutePolicy.FASTCGI:
                return parsed.secure.fastcgi_params.get(rule.header(), {}).get(name)
        return None

"""Offline nginx location selection for the reverse-proxy route table."""

import posixpath
import re
from pathlib import Path
from typing import Optional, List
from urllib.parse import unquote
from loguru import logger

from models.route_table import RouteTable, LocationRule, RouteDecision, RoutePolicy, LocationModifier


# nginx gives up after 10 internal redirects
MAX_INTERNAL_REDIRECTS = 10


class DocumentRootView:
    """
    宿主机上的网站根目录视图

    The proxy and the application share one volume, so the host copy is
    what both containers see under the document root.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else None

    def _resolve(self, uri: str) -> Optional[Path]:
        if self.root is None:
            return None
        candidate = (self.root / uri.lstrip("/")).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            return None
        return candidate

    def is_file(self, uri: str) -> bool:
        path = self._resolve(uri)
        return path is not None and path.is_file()

    def is_dir(self, uri: str) -> bool:
        path = self._resolve(uri)
        return path is not None and path.is_dir()


class RouteMatcher:
    """
    按nginx规则为请求选择location并给出处理结果

    Selection follows nginx: an exact match wins outright; otherwise the
    longest prefix is remembered (``^~`` stops the search there); then
    regex locations are tried in declaration order and the first match
    wins; failing that, the remembered prefix is used.
    """

    def __init__(self, route_table: RouteTable, document_root: Optional[DocumentRootView] = None):
        self.route_table = route_table
        self.docroot = document_root or DocumentRootView()

    @staticmethod
    def normalize_path(path: str) -> str:
        """解码并规范化URI路径（合并斜杠、处理 . 和 ..）."""
        if not path:
            return "/"
        decoded = unquote(path)
        if not decoded.startswith("/"):
            decoded = "/" + decoded
        normalized = posixpath.normpath(decoded)
        # normpath keeps a leading '//' and drops the trailing slash
        normalized = re.sub(r"/{2,}", "/", normalized)
        if decoded.endswith("/") and normalized != "/":
            normalized += "/"
        return normalized

    def select_location(self, path: str) -> Optional[LocationRule]:
        rules = self.route_table.rules

        for rule in rules:
            if rule.modifier == LocationModifier.EXACT and rule.matches(path):
                return rule

        best_prefix: Optional[LocationRule] = None
        for rule in rules:
            if rule.is_prefix and rule.matches(path):
                if best_prefix is None or len(rule.pattern) > len(best_prefix.pattern):
                    best_prefix = rule

        if best_prefix is not None and best_prefix.modifier == LocationModifier.PREFERENTIAL_PREFIX:
            return best_prefix

        for rule in rules:
            if rule.is_regex and rule.matches(path):
                return rule

        return best_prefix

    def redirect_to_https(self, path: str, query: str = "") -> RouteDecision:
        """
        明文监听器的处理：一律301到HTTPS

        $request_uri is forwarded untouched, so both the raw path and the
        query string survive the redirect.
        """
        request_uri = path or "/"
        if query:
            request_uri = f"{request_uri}?{query}"
        return RouteDecision(
            policy=RoutePolicy.REDIRECT,
            status_code=301,
            location=f"{self.route_table.https_base_url()}{request_uri}",
        )

    def resolve(self, method: str, path: str, query: str = "", https: bool = True) -> RouteDecision:
        """
        解析一次请求

        Args:
            method: HTTP方法
            path: 原始请求路径
            query: 查询字符串（不含 ?）
            https: 是否来自HTTPS监听器
        """
        if not https:
            return self.redirect_to_https(path, query)

        uri = self.normalize_path(path)
        seen: List[str] = []
        decision = self._resolve_uri(method.upper(), uri, query, seen)
        logger.debug(f"{method} {path} -> {decision.describe()}")
        return decision

    def _resolve_uri(self, method: str, uri: str, query: str, seen: List[str]) -> RouteDecision:
        if len(seen) >= MAX_INTERNAL_REDIRECTS:
            logger.warning(f"Internal redirect loop: {' -> '.join(seen)}")
            return RouteDecision(policy=RoutePolicy.TRY_FILES, status_code=500)
        seen.append(uri)

        rule = self.select_location(uri)
        if rule is None:
            return self._serve_static(None, uri)

        if rule.policy == RoutePolicy.DENY:
            return RouteDecision(policy=RoutePolicy.DENY, status_code=403, rule=rule)
        if rule.policy == RoutePolicy.REDIRECT:
            target = (rule.redirect_target or "").replace("$request_uri", uri + (f"?{query}" if query else ""))
            return RouteDecision(
                policy=RoutePolicy.REDIRECT, status_code=rule.redirect_code, rule=rule, location=target
            )
        if rule.policy == RoutePolicy.FASTCGI:
            return self._forward_fastcgi(rule, method, uri, query)
        if rule.policy == RoutePolicy.TRY_FILES:
            return self._try_files(rule, method, uri, query, seen)
        return self._serve_static(rule, uri)

    def _serve_static(self, rule: Optional[LocationRule], uri: str) -> RouteDecision:
        suppressed = rule is not None and not rule.access_log
        if self.docroot.is_file(uri):
            headers = rule.response_headers() if rule is not None else {}
            return RouteDecision(
                policy=RoutePolicy.SERVE_FILE, status_code=200, rule=rule,
                headers=headers, served_file=uri, log_suppressed=suppressed
            )
        # expires only applies to successful responses
        return RouteDecision(
            policy=RoutePolicy.SERVE_FILE, status_code=404, rule=rule, log_suppressed=suppressed
        )

    def split_path_info(self, rule: LocationRule, uri: str) -> tuple[str, str]:
        """fastcgi_split_path_info: 拆分脚本名和PATH_INFO."""
        if rule.split_path_info:
            match = re.match(rule.split_path_info, uri)
            if match:
                return match.group(1), match.group(2)
        script_name = uri
        if script_name.endswith("/") and rule.fastcgi_index:
            script_name += rule.fastcgi_index
        return script_name, ""

    def _forward_fastcgi(self, rule: LocationRule, method: str, uri: str, query: str) -> RouteDecision:
        script_name, path_info = self.split_path_info(rule, uri)

        # try_files $fastcgi_script_name =404
        if not self.docroot.is_file(script_name) and self.docroot.root is not None:
            return RouteDecision(policy=RoutePolicy.FASTCGI, status_code=404, rule=rule)

        document_root = self.route_table.document_root.rstrip("/")
        params = {
            "SCRIPT_FILENAME": f"{document_root}{script_name}",
            "SCRIPT_NAME": script_name,
            "PATH_INFO": path_info,
            "DOCUMENT_ROOT": document_root,
            "REQUEST_METHOD": method,
            "QUERY_STRING": query,
            "REQUEST_URI": uri + (f"?{query}" if query else ""),
            "HTTPS": "on",
        }
        return RouteDecision(
            policy=RoutePolicy.FASTCGI, status_code=200, rule=rule,
            fastcgi_pass=rule.fastcgi_pass, fastcgi_params=params
        )

    def _try_files(self, rule: LocationRule, method: str, uri: str, query: str,
                   seen: List[str]) -> RouteDecision:
        candidates = rule.try_files or ["$uri"]
        for candidate in candidates[:-1]:
            if candidate == "$uri":
                if self.docroot.is_file(uri):
                    return self._serve_static(rule, uri)
            elif candidate == "$uri/":
                if self.docroot.is_dir(uri):
                    return self._directory(rule, method, uri, query, seen)
            else:
                expanded = candidate.replace("$uri", uri)
                if self.docroot.is_file(expanded):
                    return self._serve_static(rule, expanded)

        fallback = candidates[-1]
        if fallback.startswith("="):
            return RouteDecision(policy=RoutePolicy.TRY_FILES, status_code=int(fallback[1:]), rule=rule)

        target = fallback.replace("$uri", uri)
        target = target.replace("$is_args", "?" if query else "").replace("$args", query)
        target_path, _, target_query = target.partition("?")
        decision = self._resolve_uri(method, target_path, target_query, seen)
        decision.internal_redirect = target
        return decision

    def _directory(self, rule: LocationRule, method: str, uri: str, query: str,
                   seen: List[str]) -> RouteDecision:
        if not uri.endswith("/"):
            location = f"{self.route_table.https_base_url()}{uri}/"
            if query:
                location += f"?{query}"
            return RouteDecision(policy=RoutePolicy.REDIRECT, status_code=301, rule=rule, location=location)

        for index in self.route_table.index_files:
            index_uri = uri + index
            if self.docroot.is_file(index_uri):
                # index triggers an internal redirect, so .php goes to FastCGI
                decision = self._resolve_uri(method, index_uri, query, seen)
                decision.internal_redirect = index_uri
                return decision

        # autoindex is off
        return RouteDecision(policy=RoutePolicy.TRY_FILES, status_code=403, rule=rule)

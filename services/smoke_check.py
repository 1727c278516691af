"""HTTP smoke checks against a running stack."""

from typing import List, Optional, Dict

import requests
from loguru import logger
from pydantic import BaseModel, Field

from models.route_table import EXPIRES_MAX_HEADERS


DB_CONNECTION_ERROR = "Error establishing a database connection"
INSTALL_PATH = "/wp-admin/install.php"
STATIC_ASSET_PATH = "/wp-includes/css/dashicons.min.css"
HIDDEN_FILE_PATH = "/.htaccess"
UPLOAD_PATH = "/wp-admin/async-upload.php"


class SmokeCheckResult(BaseModel):
    name: str
    passed: bool = False
    detail: str = ""


class SmokeReport(BaseModel):
    """冒烟测试结果."""

    base_url: str
    results: List[SmokeCheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.results) and all(result.passed for result in self.results)

    def failures(self) -> List[SmokeCheckResult]:
        return [result for result in self.results if not result.passed]

    def summary(self) -> str:
        lines = []
        for result in self.results:
            mark = "PASS" if result.passed else "FAIL"
            lines.append(f"{mark} {result.name}: {result.detail}")
        return "\n".join(lines)


class SmokeChecker:
    """
    对运行中的部署做HTTP检查

    Args:
        server_name: 站点域名或IP
        http_port / https_port: 宿主机端口
        address: 实际连接的地址，默认等于server_name（Host头仍为server_name）
        verify: 是否校验证书，自签名证书时为False
    """

    def __init__(self, server_name: str, http_port: int = 80, https_port: int = 443,
                 address: Optional[str] = None, verify: bool = False, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.server_name = server_name
        self.http_port = http_port
        self.https_port = https_port
        self.address = address or server_name
        self.verify = verify
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def _with_port(scheme: str, host: str, port: int) -> str:
        default = 80 if scheme == "http" else 443
        if port == default:
            return f"{scheme}://{host}"
        return f"{scheme}://{host}:{port}"

    @property
    def public_https_base(self) -> str:
        return self._with_port("https", self.server_name, self.https_port)

    def _url(self, scheme: str, path: str) -> str:
        port = self.http_port if scheme == "http" else self.https_port
        return self._with_port(scheme, self.address, port) + path

    def _headers(self) -> Dict[str, str]:
        if self.address == self.server_name:
            return {}
        return {"Host": self.server_name}

    def _request(self, method: str, scheme: str, path: str, **kwargs) -> requests.Response:
        headers = self._headers()
        headers.update(kwargs.pop("headers", {}))
        return self.session.request(
            method, self._url(scheme, path), headers=headers, timeout=self.timeout,
            verify=self.verify, allow_redirects=False, **kwargs
        )

    def _run(self, name: str, check) -> SmokeCheckResult:
        try:
            passed, detail = check()
        except requests.RequestException as e:
            passed, detail = False, f"request failed: {e}"
        result = SmokeCheckResult(name=name, passed=passed, detail=detail)
        log = logger.info if passed else logger.error
        log(f"smoke {name}: {'ok' if passed else 'FAILED'} ({detail})")
        return result

    def check_redirect(self, path: str = "/smoke/check", query: str = "probe=1"):
        response = self._request("GET", "http", f"{path}?{query}")
        expected = f"{self.public_https_base}{path}?{query}"
        location = response.headers.get("Location", "")
        if response.status_code != 301:
            return False, f"expected 301, got {response.status_code}"
        if location != expected:
            return False, f"Location {location!r}, expected {expected!r}"
        return True, f"301 -> {location}"

    def check_install_page(self):
        response = self._request("GET", "https", INSTALL_PATH)
        if response.status_code != 200:
            return False, f"{INSTALL_PATH} returned {response.status_code}"
        if DB_CONNECTION_ERROR in response.text:
            return False, "WordPress cannot reach the database"
        return True, f"{INSTALL_PATH} returned 200"

    def check_hidden_files(self):
        statuses = {}
        for method in ("GET", "POST", "HEAD"):
            statuses[method] = self._request(method, "https", HIDDEN_FILE_PATH).status_code
        wrong = {m: s for m, s in statuses.items() if s != 403}
        if wrong:
            return False, f"{HIDDEN_FILE_PATH} not denied: {wrong}"
        return True, f"{HIDDEN_FILE_PATH} denied for {', '.join(statuses)}"

    def check_static_cache(self):
        response = self._request("GET", "https", STATIC_ASSET_PATH)
        if response.status_code != 200:
            return False, f"{STATIC_ASSET_PATH} returned {response.status_code}"
        missing = [
            name for name, value in EXPIRES_MAX_HEADERS.items()
            if value not in response.headers.get(name, "")
        ]
        if missing:
            return False, f"missing far-future cache headers: {', '.join(missing)}"
        return True, "far-future cache headers present"

    def check_upload_limit(self, proxy_limit: int):
        body = b"0" * (proxy_limit + 1)
        response = self._request(
            "POST", "https", UPLOAD_PATH, data=body,
            headers={"Content-Type": "application/octet-stream"}
        )
        if response.status_code != 413:
            return False, f"oversized body returned {response.status_code}, expected 413"
        return True, "oversized body rejected with 413"

    def run(self, upload_limit: Optional[int] = None) -> SmokeReport:
        """
        执行全部检查

        Args:
            upload_limit: nginx client_max_body_size（字节），给出时检查超限上传被413拒绝
        """
        report = SmokeReport(base_url=self.public_https_base)
        report.results.append(self._run("redirect", self.check_redirect))
        report.results.append(self._run("install", self.check_install_page))
        report.results.append(self._run("hidden_files", self.check_hidden_files))
        report.results.append(self._run("static_cache", self.check_static_cache))
        if upload_limit:
            report.results.append(self._run("upload_limit", lambda: self.check_upload_limit(upload_limit)))
        return report

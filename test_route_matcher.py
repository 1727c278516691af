#!/usr/bin/env python3
"""测试反向代理路由表的location选择和请求处理"""

import sys
from pathlib import Path

import pytest

from models.route_table import (
    RouteTable, LocationRule, LocationModifier, RoutePolicy, EXPIRES_MAX_HEADERS
)
from services.route_matcher import RouteMatcher, DocumentRootView


def make_docroot(root: Path) -> Path:
    """最小的WordPress目录结构"""
    files = [
        "index.php",
        "wp-login.php",
        "wp-admin/index.php",
        "wp-admin/install.php",
        "wp-includes/css/dashicons.min.css",
        "wp-content/uploads/2024/01/photo.JPG",
        "favicon.ico",
        ".htaccess",
    ]
    for rel in files:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("x", encoding="utf-8")
    (root / "wp-content" / "empty").mkdir(parents=True)
    return root


@pytest.fixture
def matcher(tmp_path):
    table = RouteTable.wordpress_default(server_name="example.com")
    return RouteMatcher(table, DocumentRootView(make_docroot(tmp_path)))


def test_plaintext_redirects_every_method(matcher):
    for method in ("GET", "POST", "HEAD", "DELETE"):
        decision = matcher.resolve(method, "/blog/post/", "a=1&b=2", https=False)
        assert decision.status_code == 301
        assert decision.location == "https://example.com/blog/post/?a=1&b=2", decision.location


def test_plaintext_redirect_keeps_custom_https_port(tmp_path):
    table = RouteTable.wordpress_default(server_name="10.0.0.5", https_port=8443)
    decision = RouteMatcher(table).resolve("GET", "/wp-admin/", https=False)
    assert decision.location == "https://10.0.0.5:8443/wp-admin/"


def test_hidden_files_denied_for_all_methods(matcher):
    paths = ["/.htaccess", "/wp-content/.htpasswd", "/.ht.php", "/.htx.css"]
    for path in paths:
        for method in ("GET", "POST", "HEAD"):
            decision = matcher.resolve(method, path)
            assert decision.status_code == 403, f"{method} {path} -> {decision.describe()}"
            assert decision.policy == RoutePolicy.DENY


def test_static_asset_gets_far_future_headers(matcher):
    decision = matcher.resolve("GET", "/wp-includes/css/dashicons.min.css")
    assert decision.status_code == 200
    assert decision.headers == EXPIRES_MAX_HEADERS
    assert decision.served_file == "/wp-includes/css/dashicons.min.css"


def test_static_asset_match_is_case_insensitive(matcher):
    decision = matcher.resolve("GET", "/wp-content/uploads/2024/01/photo.JPG")
    assert decision.status_code == 200
    assert decision.headers["Cache-Control"] == "max-age=315360000"


def test_missing_static_asset_is_404_without_cache_headers(matcher):
    decision = matcher.resolve("GET", "/wp-content/missing.png")
    assert decision.status_code == 404
    assert decision.headers == {}


def test_exact_favicon_wins_over_static_regex(matcher):
    decision = matcher.resolve("GET", "/favicon.ico")
    assert decision.status_code == 200
    assert decision.rule.modifier == LocationModifier.EXACT
    # exact rule has no expires
    assert decision.headers == {}
    assert decision.log_suppressed


def test_missing_robots_is_quiet_404(matcher):
    decision = matcher.resolve("GET", "/robots.txt")
    assert decision.status_code == 404
    assert decision.rule.pattern == "/robots.txt"
    assert decision.log_suppressed


def test_php_forwarded_to_application(matcher):
    decision = matcher.resolve("GET", "/wp-admin/install.php", "step=1")
    assert decision.policy == RoutePolicy.FASTCGI
    assert decision.status_code == 200
    assert decision.fastcgi_pass == "wordpress:9000"
    params = decision.fastcgi_params
    assert params["SCRIPT_FILENAME"] == "/var/www/html/wp-admin/install.php"
    assert params["SCRIPT_NAME"] == "/wp-admin/install.php"
    assert params["QUERY_STRING"] == "step=1"
    assert params["REQUEST_METHOD"] == "GET"
    assert params["PATH_INFO"] == ""


def test_php_path_info_is_split(matcher):
    decision = matcher.resolve("POST", "/index.php/wp-json/wp/v2/posts")
    assert decision.policy == RoutePolicy.FASTCGI
    assert decision.fastcgi_params["SCRIPT_NAME"] == "/index.php"
    assert decision.fastcgi_params["SCRIPT_FILENAME"] == "/var/www/html/index.php"
    assert decision.fastcgi_params["PATH_INFO"] == "/wp-json/wp/v2/posts"
    assert decision.fastcgi_params["REQUEST_METHOD"] == "POST"


def test_missing_php_script_is_404(matcher):
    decision = matcher.resolve("GET", "/no-such-script.php")
    assert decision.status_code == 404
    assert decision.policy == RoutePolicy.FASTCGI
    assert decision.fastcgi_params == {}


def test_permalink_falls_back_to_front_controller(matcher):
    decision = matcher.resolve("GET", "/2024/01/hello-world/", "replytocom=5")
    assert decision.policy == RoutePolicy.FASTCGI
    assert decision.internal_redirect == "/index.php?replytocom=5"
    assert decision.fastcgi_params["SCRIPT_NAME"] == "/index.php"
    assert decision.fastcgi_params["QUERY_STRING"] == "replytocom=5"


def test_directory_without_slash_redirects(matcher):
    decision = matcher.resolve("GET", "/wp-admin", "x=1")
    assert decision.status_code == 301
    assert decision.location == "https://example.com/wp-admin/?x=1"


def test_directory_index_goes_through_fastcgi(matcher):
    decision = matcher.resolve("GET", "/wp-admin/")
    assert decision.policy == RoutePolicy.FASTCGI
    assert decision.fastcgi_params["SCRIPT_NAME"] == "/wp-admin/index.php"
    assert decision.internal_redirect == "/wp-admin/index.php"


def test_directory_without_index_is_forbidden(matcher):
    decision = matcher.resolve("GET", "/wp-content/empty/")
    assert decision.status_code == 403


def test_preferential_prefix_stops_regex_search():
    table = RouteTable.wordpress_default()
    table.rules.insert(0, LocationRule(
        modifier=LocationModifier.PREFERENTIAL_PREFIX, pattern="/static/",
        policy=RoutePolicy.SERVE_FILE
    ))
    rule = RouteMatcher(table).select_location("/static/app.php")
    assert rule.modifier == LocationModifier.PREFERENTIAL_PREFIX


def test_longest_prefix_is_used_when_no_regex_matches():
    table = RouteTable.wordpress_default()
    table.rules.append(LocationRule(
        modifier=LocationModifier.PREFIX, pattern="/wp-content/",
        policy=RoutePolicy.SERVE_FILE
    ))
    matcher = RouteMatcher(table)
    assert matcher.select_location("/wp-content/readme").pattern == "/wp-content/"
    # a regex still beats a plain prefix
    assert matcher.select_location("/wp-content/x.php").policy == RoutePolicy.FASTCGI


def test_normalize_path():
    assert RouteMatcher.normalize_path("") == "/"
    assert RouteMatcher.normalize_path("/a/../b//c/") == "/b/c/"
    assert RouteMatcher.normalize_path("/%2Ehtaccess") == "/.htaccess"
    assert RouteMatcher.normalize_path("/../../etc/passwd") == "/etc/passwd"


def test_encoded_hidden_file_still_denied(matcher):
    decision = matcher.resolve("GET", "/%2Ehtaccess")
    assert decision.status_code == 403


def test_without_docroot_php_is_forwarded_blind():
    matcher = RouteMatcher(RouteTable.wordpress_default())
    decision = matcher.resolve("GET", "/wp-login.php")
    assert decision.status_code == 200
    assert decision.fastcgi_pass == "wordpress:9000"


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

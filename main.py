#!/usr/bin/env python3
"""
easyWP - WordPress deployment bundle tool
Main entry point
"""

import argparse
import sys
from pathlib import Path
from typing import Optional, List

from loguru import logger

from models.stack_config import (
    DeploymentBundle, StackEnvironment, StackDefinition, ProxySettings,
    StackDefinitionError, ServiceRole
)
from models.upload_policy import UploadPolicy
from services.bundle_validator import validate_bundle, has_errors
from services.certificates import generate_self_signed
from services.compose_service import ComposeService
from services.config_generator import ConfigGenerator, ENV_FILE, APP_VERSION
from services.config_parser import ConfigParser
from services.env_file import read_stack_environment, load_env_file
from services.orchestrator import StartupOrchestrator, StartupError
from services.route_matcher import RouteMatcher, DocumentRootView
from services.smoke_check import SmokeChecker
from utils.config_registry import ConfigRegistry
from utils.encoding_utils import read_file_robust
from utils.logger import init_logger
from utils.size_units import parse_size


def load_stack(bundle_dir: Path, registry: ConfigRegistry,
               ready_timeout: Optional[float] = None) -> StackDefinition:
    """从.env和已保存的设置重建服务依赖图."""
    env = read_stack_environment(bundle_dir / ENV_FILE)
    server_name, http_port, https_port = registry.get_proxy_endpoint()
    proxy = ProxySettings(server_name=server_name, http_port=http_port, https_port=https_port)
    return StackDefinition.wordpress_default(
        env=env,
        proxy=proxy,
        include_admin=bool(registry.get(ConfigRegistry.KEY_WITH_ADMIN)),
        expose_debug_ports=bool(registry.get(ConfigRegistry.KEY_DEBUG_PORTS)),
        ready_timeout=registry.ready_timeout(ready_timeout),
    )


def bundle_path(bundle_dir: Path, key: str, default: str) -> Path:
    env = load_env_file(bundle_dir / ENV_FILE) if (bundle_dir / ENV_FILE).exists() else {}
    return bundle_dir / (env.get(key) or default)


def stack_profiles(stack: StackDefinition) -> List[str]:
    return sorted({service.profile for service in stack.services if service.profile})


def cmd_init(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    env_values = {}
    if args.db_name:
        env_values.update(wordpress_db_name=args.db_name, mysql_database=args.db_name)
    if args.db_user:
        env_values.update(wordpress_db_user=args.db_user, mysql_user=args.db_user)
    if args.db_password:
        env_values.update(wordpress_db_password=args.db_password, mysql_password=args.db_password)
    if args.db_root_password:
        env_values["mysql_root_password"] = args.db_root_password

    policy = UploadPolicy(
        upload_max_filesize=args.upload_max,
        post_max_size=args.post_max or args.upload_max,
        memory_limit=args.memory_limit,
        max_execution_time=args.max_execution_time,
    )

    bundle = DeploymentBundle.create(
        server_name=args.server_name,
        http_port=args.http_port,
        https_port=args.https_port,
        include_admin=args.with_admin,
        expose_debug_ports=args.debug_ports,
        env=StackEnvironment(**env_values),
        upload_policy=policy,
        client_max_body_size=args.client_max_body_size,
    )

    for warning in policy.consistency_warnings(parse_size(args.client_max_body_size)):
        logger.warning(warning)

    written = ConfigGenerator().write_bundle(bundle_dir, bundle, overwrite=args.force)
    registry.record_init(
        args.server_name, args.http_port, args.https_port,
        args.with_admin, args.debug_ports, args.client_max_body_size,
    )
    for rel_path in written:
        print(f"wrote {rel_path}")

    if args.self_signed:
        ok, message = generate_self_signed(
            bundle_dir / bundle.env.nginx_ssl_certs, args.server_name,
            bundle.proxy.ssl_certificate, bundle.proxy.ssl_certificate_key,
            overwrite=args.force,
        )
        print(message)
        if not ok:
            return 1
    return 0


def cmd_check(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    issues = validate_bundle(bundle_dir)
    for issue in issues:
        print(issue)
    if not issues:
        print("bundle OK")
    return 1 if has_errors(issues) else 0


def cmd_route(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    conf_path = bundle_path(bundle_dir, "NGINX_CONF", "./nginx/default.conf")
    parsed = ConfigParser().parse_file(conf_path)
    if parsed.route_table is None:
        logger.error(f"No HTTPS server block in {conf_path}")
        return 1

    docroot = None
    if not args.no_docroot:
        docroot = DocumentRootView(bundle_path(bundle_dir, "WORDPRESS_LOCAL_HOME", "./wordpress"))
    matcher = RouteMatcher(parsed.route_table, docroot)

    path, _, query = args.path.partition("?")
    decision = matcher.resolve(args.method, path, query, https=not args.plaintext)
    print(decision.describe())
    for name, value in decision.headers.items():
        print(f"  {name}: {value}")
    for name, value in decision.fastcgi_params.items():
        print(f"  fastcgi_param {name} {value}")
    return 0


def cmd_upload_check(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    ini_path = bundle_path(bundle_dir, "WORDPRESS_UPLOADS_CONFIG", "./config/uploads.ini")
    policy = UploadPolicy.from_ini(read_file_robust(ini_path))

    conf_path = bundle_path(bundle_dir, "NGINX_CONF", "./nginx/default.conf")
    proxy_limit = None
    if conf_path.exists():
        parsed = ConfigParser().parse_file(conf_path)
        if parsed.client_max_body_size:
            proxy_limit = parse_size(parsed.client_max_body_size)

    file_size = parse_size(args.size)
    request_size = parse_size(args.request_size) if args.request_size else None
    verdict = policy.check_upload(file_size, request_size, proxy_limit)
    if verdict.accepted:
        print(f"accepted ({file_size} bytes)")
        return 0
    print(f"rejected by {verdict.rejected_by}: {verdict.limit_name} "
          f"({verdict.limit_bytes} bytes), HTTP {verdict.status_code}")
    return 1


def _compose(bundle_dir: Path) -> ComposeService:
    compose = ComposeService(bundle_dir)
    if compose.command is None:
        raise OSError("docker compose is not installed")
    return compose


def _print_result(ok: bool, message: str) -> int:
    print(message.strip())
    return 0 if ok else 1


def cmd_pull(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry)
    return _print_result(*_compose(bundle_dir).pull(profiles=stack_profiles(stack)))


def cmd_up(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry, args.timeout)
    orchestrator = StartupOrchestrator(stack, _compose(bundle_dir))
    for result in orchestrator.start(include_optional=args.with_admin):
        print(f"{result.service}: ready ({result.detail})")
    return 0


def cmd_ps(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry)
    print(_compose(bundle_dir).get_status(stack_profiles(stack)).summary())
    return 0


def cmd_logs(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    return _print_result(*_compose(bundle_dir).logs(args.service, args.tail))


def cmd_restart(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry)
    return _print_result(*_compose(bundle_dir).restart(args.services, stack_profiles(stack)))


def cmd_stop(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry)
    return _print_result(*_compose(bundle_dir).stop(args.services, stack_profiles(stack)))


def cmd_rm(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry)
    return _print_result(*_compose(bundle_dir).rm(args.services, stack_profiles(stack)))


def cmd_admin(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry, args.timeout)
    admin = stack.by_role(ServiceRole.ADMIN)
    if admin is None:
        logger.error("The bundle was generated without the admin service (init --with-admin)")
        return 1

    orchestrator = StartupOrchestrator(stack, _compose(bundle_dir))
    if args.action == "up":
        result = orchestrator.start_optional(admin.name)
        print(f"{admin.name}: ready ({result.detail})")
        return 0
    return _print_result(*orchestrator.stop_optional(admin.name))


def cmd_recover(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    stack = load_stack(bundle_dir, registry, args.timeout)
    restarted = StartupOrchestrator(stack, _compose(bundle_dir)).recover(args.service)
    print(f"restarted: {', '.join(restarted)}" if restarted else "nothing to restart")
    return 0


def cmd_smoke(args, bundle_dir: Path, registry: ConfigRegistry) -> int:
    server_name, http_port, https_port = registry.get_proxy_endpoint()
    checker = SmokeChecker(
        server_name, http_port, https_port,
        address=args.address, verify=args.verify,
    )
    upload_limit = None
    if args.upload:
        upload_limit = parse_size(registry.get(ConfigRegistry.KEY_CLIENT_MAX_BODY))
    report = checker.run(upload_limit=upload_limit)
    print(report.summary())
    return 0 if report.passed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="easywp",
        description="WordPress deployment bundle: Nginx, PHP-FPM, MySQL and optional phpMyAdmin"
    )
    parser.add_argument("--version", action="version", version=f"easyWP {APP_VERSION}")
    parser.add_argument("-d", "--dir", default=".", help="Bundle directory (default: current directory)")
    parser.add_argument("--log-dir", default=None, help="Log directory (default: <dir>/logs/easywp)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Generate the bundle")
    p.add_argument("--server-name", required=True, help="FQDN or IP address of the site")
    p.add_argument("--http-port", type=int, default=80, help="Host HTTP port")
    p.add_argument("--https-port", type=int, default=443, help="Host HTTPS port")
    p.add_argument("--with-admin", action="store_true", help="Add phpMyAdmin (opt-in profile)")
    p.add_argument("--debug-ports", action="store_true", help="Publish database and FastCGI ports")
    p.add_argument("--client-max-body-size", default="75m", help="Nginx request body limit")
    p.add_argument("--upload-max", default="64M", help="PHP upload_max_filesize")
    p.add_argument("--post-max", default=None, help="PHP post_max_size (default: --upload-max)")
    p.add_argument("--memory-limit", default="256M", help="PHP memory_limit")
    p.add_argument("--max-execution-time", type=int, default=600, help="PHP max_execution_time")
    p.add_argument("--db-name", default=None)
    p.add_argument("--db-user", default=None)
    p.add_argument("--db-password", default=None)
    p.add_argument("--db-root-password", default=None)
    p.add_argument("--self-signed", action="store_true", help="Generate a self-signed certificate")
    p.add_argument("--force", action="store_true", help="Overwrite existing files (backups are kept)")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("check", help="Check the bundle files")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("route", help="Show how the proxy handles a request")
    p.add_argument("method", help="HTTP method")
    p.add_argument("path", help="Request path, may include ?query")
    p.add_argument("--plaintext", action="store_true", help="Request arrives on the HTTP listener")
    p.add_argument("--no-docroot", action="store_true", help="Do not look at the WordPress files on disk")
    p.set_defaults(func=cmd_route)

    p = sub.add_parser("upload-check", help="Check whether an upload would be accepted")
    p.add_argument("size", help="File size, e.g. 20M")
    p.add_argument("--request-size", default=None, help="Whole request body size")
    p.set_defaults(func=cmd_upload_check)

    p = sub.add_parser("pull", help="Pull images")
    p.set_defaults(func=cmd_pull)

    p = sub.add_parser("up", help="Start the stack in order")
    p.add_argument("--with-admin", action="store_true", help="Also start phpMyAdmin")
    p.add_argument("--timeout", type=float, default=None, help="Readiness timeout in seconds")
    p.set_defaults(func=cmd_up)

    p = sub.add_parser("ps", help="Show container status")
    p.set_defaults(func=cmd_ps)

    p = sub.add_parser("logs", help="Show service logs")
    p.add_argument("service")
    p.add_argument("--tail", type=int, default=200)
    p.set_defaults(func=cmd_logs)

    for name, func, help_text in (("restart", cmd_restart, "Restart services"),
                                  ("stop", cmd_stop, "Stop services"),
                                  ("rm", cmd_rm, "Remove stopped containers")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("services", nargs="*", help="Service names (default: all)")
        p.set_defaults(func=func)

    p = sub.add_parser("admin", help="Start or stop phpMyAdmin")
    p.add_argument("action", choices=["up", "down"])
    p.add_argument("--timeout", type=float, default=None, help="Readiness timeout in seconds")
    p.set_defaults(func=cmd_admin)

    p = sub.add_parser("recover", help="Restart services that started before their dependency was ready")
    p.add_argument("service", nargs="?", default=None, help="Dependency to wait for (default: database)")
    p.add_argument("--timeout", type=float, default=None, help="Readiness timeout in seconds")
    p.set_defaults(func=cmd_recover)

    p = sub.add_parser("smoke", help="HTTP smoke checks against the running stack")
    p.add_argument("--address", default=None, help="Connect here instead of the server name")
    p.add_argument("--verify", action="store_true", help="Verify the TLS certificate")
    p.add_argument("--upload", action="store_true", help="Also check that oversized uploads get 413")
    p.set_defaults(func=cmd_smoke)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主函数."""
    parser = build_parser()
    args = parser.parse_args(argv)

    bundle_dir = Path(args.dir).resolve()
    log_dir = args.log_dir or str(bundle_dir / "logs" / "easywp")
    init_logger(log_dir, verbose=args.verbose)
    logger.debug(f"easyWP {APP_VERSION} {args.command} in {bundle_dir}")

    registry = ConfigRegistry(bundle_dir)
    try:
        return args.func(args, bundle_dir, registry)
    except (StartupError, StackDefinitionError) as e:
        logger.error(str(e))
        return 1
    except (ValueError, FileNotFoundError, FileExistsError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())

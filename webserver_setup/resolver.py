# ABOUTME: Turns raw operator answers into a validated, internally consistent DeploymentSpec
# ABOUTME: Derives proxy need, port, document root, commands and process settings in one place

import os
import posixpath
import re
import logging
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Type

from webserver_setup import commands
from webserver_setup.errors import ValidationError
from webserver_setup.models import (
    AppConfig, AppKind, Command, Database, DeploymentSpec, FrontendMode, GitSource,
    PackageManager, ProcessManager, ProcessSettings, RawAnswers, SslMode, SslSettings,
    WebServer,
)
from webserver_setup.utils import validate_domain, validate_email, validate_env_var, validate_git_url

logger = logging.getLogger(__name__)

# First entry is the default mode
LEGAL_FRONTEND_MODES: Dict[AppKind, Tuple[FrontendMode, ...]] = {
    AppKind.NEXTJS: (FrontendMode.SSR, FrontendMode.STATIC, FrontendMode.STANDALONE),
    AppKind.NUXTJS: (FrontendMode.SSR, FrontendMode.STATIC, FrontendMode.SPA),
    AppKind.REACT: (FrontendMode.SPA,),
    AppKind.VUE: (FrontendMode.SPA,),
    AppKind.ANGULAR: (FrontendMode.SPA,),
    AppKind.SVELTE: (FrontendMode.SSR, FrontendMode.STATIC, FrontendMode.SPA),
}

ALWAYS_PROXIED = frozenset({AppKind.NODEJS, AppKind.PYTHON, AppKind.PROXY})
PROXIED_MODES = frozenset({FrontendMode.SSR, FrontendMode.STANDALONE})

BUILD_TOOLS: Dict[AppKind, Tuple[str, ...]] = {
    AppKind.REACT: ("vite", "cra"),
    AppKind.VUE: ("vite", "cli"),
}

# Static output directory relative to app root
STATIC_OUTPUT_DIRS: Dict[Tuple[AppKind, FrontendMode], str] = {
    (AppKind.NEXTJS, FrontendMode.STATIC): "out",
    (AppKind.NUXTJS, FrontendMode.STATIC): "dist",
    (AppKind.NUXTJS, FrontendMode.SPA): ".output/public",
    (AppKind.VUE, FrontendMode.SPA): "dist",
    (AppKind.SVELTE, FrontendMode.STATIC): "build",
    (AppKind.SVELTE, FrontendMode.SPA): "build",
}

# Server bundle directory for proxied frontends, checked after the build
SERVER_OUTPUT_DIRS: Dict[Tuple[AppKind, FrontendMode], str] = {
    (AppKind.NEXTJS, FrontendMode.SSR): ".next",
    (AppKind.NEXTJS, FrontendMode.STANDALONE): ".next/standalone",
    (AppKind.NUXTJS, FrontendMode.SSR): ".output",
    (AppKind.SVELTE, FrontendMode.SSR): "build",
}

# pm2 (exec_mode, instances); anything not listed runs as a single fork
PM2_SCALING: Dict[Tuple[AppKind, FrontendMode], Tuple[str, str]] = {
    (AppKind.NODEJS, FrontendMode.NONE): ("cluster", "max"),
    (AppKind.NUXTJS, FrontendMode.SSR): ("cluster", "max"),
    (AppKind.SVELTE, FrontendMode.SSR): ("cluster", "max"),
}

NODE_VERSIONS = ("18", "20", "22")
DEFAULT_PYTHON_PORT = 8000
DEFAULT_PORT = 3000

APP_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
PHP_VERSION_PATTERN = re.compile(r'^\d+\.\d+$')
SUBDOMAIN_LABEL_PATTERN = re.compile(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?$')


def default_path_readable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.R_OK)


def _parse_enum(enum_cls: Type[Enum], value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field, f"'{value}' is not one of: {allowed}")


def needs_reverse_proxy(kind: AppKind, mode: FrontendMode) -> bool:
    """Whether traffic must be proxied to a long-running local process"""
    if kind in ALWAYS_PROXIED:
        return True
    return kind.is_frontend and mode in PROXIED_MODES


def is_root_domain(domain: str) -> bool:
    """Exactly one dot means a registrable root domain.

    Multi-part public suffixes such as ``example.co.uk`` are classified as
    subdomains; there is no public suffix list lookup.
    """
    return domain.count(".") == 1


def resolve_frontend_mode(kind: AppKind, requested: Optional[str]) -> FrontendMode:
    if not kind.is_frontend:
        if requested and _parse_enum(FrontendMode, requested, "frontend_mode") is not FrontendMode.NONE:
            raise ValidationError("frontend_mode", f"{kind.value} applications have no frontend mode")
        return FrontendMode.NONE

    legal = LEGAL_FRONTEND_MODES[kind]
    if not requested:
        return legal[0]
    mode = _parse_enum(FrontendMode, requested, "frontend_mode")
    if mode not in legal:
        allowed = ", ".join(m.value for m in legal)
        raise ValidationError("frontend_mode", f"{kind.value} supports only: {allowed}")
    return mode


def resolve_domain(raw_domain: str) -> str:
    domain = (raw_domain or "").strip().lower().rstrip(".")
    if not domain:
        raise ValidationError("domain", "Domain is required")
    if not validate_domain(domain):
        raise ValidationError("domain", f"'{raw_domain}' is not a valid domain name")
    return domain


def resolve_aliases(domain: str, include_www: bool, extra_subdomains) -> Tuple[str, ...]:
    """Ordered, de-duplicated aliases; only root domains may carry any"""
    extras = [str(sub).strip().lower() for sub in (extra_subdomains or []) if str(sub).strip()]

    if not is_root_domain(domain):
        if extras:
            raise ValidationError("extra_subdomains", f"{domain} is a subdomain and cannot have aliases")
        return ()

    candidates = []
    if include_www:
        candidates.append(f"www.{domain}")
    for sub in extras:
        if sub.endswith(f".{domain}"):
            alias = sub
        elif SUBDOMAIN_LABEL_PATTERN.match(sub):
            alias = f"{sub}.{domain}"
        else:
            raise ValidationError("extra_subdomains", f"'{sub}' is not a valid subdomain label")
        if not validate_domain(alias):
            raise ValidationError("extra_subdomains", f"'{alias}' is not a valid domain name")
        candidates.append(alias)

    aliases = []
    for alias in candidates:
        if alias != domain and alias not in aliases:
            aliases.append(alias)
    return tuple(aliases)


def resolve_app_root(raw_root: Optional[str], domain: str, config: AppConfig) -> str:
    root = (raw_root or "").strip() or posixpath.join(config.web_root, domain)
    if not root.startswith("/"):
        raise ValidationError("app_root", f"'{root}' must be an absolute path")
    root = posixpath.normpath(root)
    if root == "/":
        raise ValidationError("app_root", "The filesystem root cannot be an application directory")
    return root.rstrip("/")


def resolve_port(kind: AppKind, raw_port) -> int:
    if raw_port in (None, ""):
        return DEFAULT_PYTHON_PORT if kind is AppKind.PYTHON else DEFAULT_PORT
    try:
        port = int(raw_port)
    except (TypeError, ValueError):
        raise ValidationError("port", f"'{raw_port}' is not a number")
    if not 1 <= port <= 65535:
        raise ValidationError("port", f"{port} is outside 1-65535")
    return port


def resolve_doc_root(kind: AppKind, mode: FrontendMode, app_root: str, build_tool: str,
                     angular_project: str, php_doc_root: str) -> str:
    if kind is AppKind.STATIC:
        return app_root
    if kind is AppKind.PHP:
        relative = (php_doc_root or "").strip().strip("/")
        return posixpath.join(app_root, relative) if relative else app_root
    if kind is AppKind.REACT:
        return posixpath.join(app_root, "build" if build_tool == "cra" else "dist")
    if kind is AppKind.ANGULAR:
        return posixpath.join(app_root, "dist", angular_project, "browser")
    relative = STATIC_OUTPUT_DIRS.get((kind, mode))
    if relative is None:
        raise ValidationError("frontend_mode", f"{kind.value} in {mode.value} mode has no static output")
    return posixpath.join(app_root, relative)


def resolve_ssl(raw: RawAnswers, domain: str, config: AppConfig,
                path_readable: Callable[[str], bool]) -> SslSettings:
    mode = _parse_enum(SslMode, raw.ssl_mode or "none", "ssl_mode")

    if mode is SslMode.NONE:
        return SslSettings()

    if mode is SslMode.LETSENCRYPT:
        email = (raw.ssl_email or "").strip()
        if not validate_email(email):
            raise ValidationError("ssl_email", f"'{email}' is not a valid email address")
        live_dir = posixpath.join(config.letsencrypt_live_dir, domain)
        return SslSettings(mode=mode, email=email,
                           cert_path=posixpath.join(live_dir, "fullchain.pem"),
                           key_path=posixpath.join(live_dir, "privkey.pem"))

    if mode is SslMode.SELF_SIGNED:
        cert_dir = posixpath.join(config.ssl_dir, domain)
        return SslSettings(mode=mode,
                           cert_path=posixpath.join(cert_dir, "fullchain.pem"),
                           key_path=posixpath.join(cert_dir, "privkey.pem"))

    cert_path = (raw.ssl_cert_path or "").strip()
    key_path = (raw.ssl_key_path or "").strip()
    if not cert_path or not path_readable(cert_path):
        raise ValidationError("ssl_cert_path", f"Certificate '{cert_path}' does not exist or is not readable")
    if not key_path or not path_readable(key_path):
        raise ValidationError("ssl_key_path", f"Private key '{key_path}' does not exist or is not readable")
    return SslSettings(mode=mode, cert_path=cert_path, key_path=key_path)


def default_start_command(kind: AppKind, mode: FrontendMode, manager: PackageManager,
                          port: Optional[int]) -> Optional[Command]:
    if kind is AppKind.PYTHON:
        return commands.python_start_command(port)
    return commands.framework_start_command(kind, mode, manager)


def process_environment(kind: AppKind, mode: FrontendMode, port: int,
                        app_root: str) -> Tuple[Tuple[str, str], ...]:
    if kind is AppKind.PYTHON:
        return (("PATH", f"{app_root}/venv/bin:/usr/bin"), ("PORT", str(port)))

    env = [("NODE_ENV", "production"), ("PORT", str(port))]
    if kind is AppKind.NEXTJS and mode is FrontendMode.STANDALONE:
        env.append(("HOSTNAME", "127.0.0.1"))
    elif kind is AppKind.NUXTJS:
        env.extend([("HOST", "127.0.0.1"), ("NITRO_PORT", str(port)), ("NITRO_HOST", "127.0.0.1")])
    elif kind is AppKind.SVELTE:
        env.append(("HOST", "127.0.0.1"))
    return tuple(env)


def resolve_process(raw: RawAnswers, kind: AppKind, mode: FrontendMode, manager: PackageManager,
                    domain: str, app_root: str, port: Optional[int]) -> ProcessSettings:
    """Pick the supervisor and its start command, or none when nothing runs"""
    requested = raw.process_manager
    custom = (raw.start_command or "").strip()

    start: Optional[Command] = None
    if port is not None and kind is not AppKind.PROXY:
        if custom:
            try:
                start = Command.parse(custom)
            except ValueError as e:
                raise ValidationError("start_command", str(e))
        else:
            start = default_start_command(kind, mode, manager, port)

    applicable = start is not None

    if requested in (None, ""):
        pm = ProcessManager.PM2 if applicable else ProcessManager.NONE
    else:
        pm = _parse_enum(ProcessManager, requested, "process_manager")
        if pm is not ProcessManager.NONE and not applicable:
            raise ValidationError(
                "process_manager",
                f"{kind.value} ({mode.value}) has no long-running process to supervise",
            )

    if pm is ProcessManager.NONE:
        return ProcessSettings()

    app_name = (raw.app_name or "").strip() or domain
    if not APP_NAME_PATTERN.match(app_name):
        raise ValidationError("app_name", f"'{app_name}' may contain only letters, digits, dots, dashes and underscores")

    working_dir = app_root
    if kind is AppKind.NEXTJS and mode is FrontendMode.STANDALONE:
        working_dir = posixpath.join(app_root, ".next", "standalone")

    exec_mode, instances = PM2_SCALING.get((kind, mode), ("fork", "1"))

    return ProcessSettings(
        manager=pm,
        app_name=app_name,
        service_name=app_name.replace(".", "-"),
        start_command=start,
        working_dir=working_dir,
        exec_mode=exec_mode,
        instances=instances,
        environment=process_environment(kind, mode, port, app_root),
    )


def resolve_install_commands(kind: AppKind, manager: PackageManager) -> Tuple[Command, ...]:
    if kind is AppKind.PYTHON:
        return commands.PYTHON_INSTALL_COMMANDS
    if kind.is_node_based:
        return commands.install_commands(manager, production=kind is AppKind.NODEJS)
    return ()


def check_invariants(spec: DeploymentSpec) -> None:
    """Re-check the cross-field rules every renderer relies on"""
    if spec.needs_proxy != (spec.port is not None):
        raise ValidationError("port", "A port is set exactly when traffic is proxied")
    if spec.needs_proxy == (spec.doc_root is not None):
        raise ValidationError("doc_root", "A document root is set exactly when traffic is served from disk")
    if spec.process.enabled and not (spec.needs_proxy and spec.process.start_command):
        raise ValidationError("process_manager", "A supervised process needs a proxied port and a start command")
    if spec.domain in spec.aliases or len(set(spec.aliases)) != len(spec.aliases):
        raise ValidationError("extra_subdomains", "Aliases must be unique and differ from the domain")
    if any(name != name.lower() for name in spec.server_names):
        raise ValidationError("domain", "Domain names must be lowercase")


def resolve(raw: RawAnswers, config: Optional[AppConfig] = None,
            path_readable: Callable[[str], bool] = default_path_readable) -> DeploymentSpec:
    """Build the DeploymentSpec for a run

    Raises:
        ValidationError: on the first invalid answer, before anything touches the host.
    """
    config = config or AppConfig()

    web_server = _parse_enum(WebServer, raw.web_server, "web_server")
    kind = _parse_enum(AppKind, raw.app_kind, "app_kind")
    mode = resolve_frontend_mode(kind, raw.frontend_mode)
    manager = _parse_enum(PackageManager, raw.package_manager or "npm", "package_manager")

    domain = resolve_domain(raw.domain)
    aliases = resolve_aliases(domain, raw.include_www, raw.extra_subdomains)
    app_root = resolve_app_root(raw.app_root, domain, config)

    node_version = str(raw.node_version or config.default_node_version)
    if kind.is_node_based and node_version not in NODE_VERSIONS:
        raise ValidationError("node_version", f"Node.js {node_version} is not one of {', '.join(NODE_VERSIONS)}")

    build_tool = ""
    if kind in BUILD_TOOLS:
        build_tool = (raw.build_tool or BUILD_TOOLS[kind][0]).strip().lower()
        if build_tool not in BUILD_TOOLS[kind]:
            raise ValidationError("build_tool", f"{kind.value} builds with one of: {', '.join(BUILD_TOOLS[kind])}")

    angular_project = (raw.angular_project or "app").strip()
    if kind is AppKind.ANGULAR and not APP_NAME_PATTERN.match(angular_project):
        raise ValidationError("angular_project", f"'{angular_project}' is not a valid project name")

    needs_proxy = needs_reverse_proxy(kind, mode)
    port = resolve_port(kind, raw.port) if needs_proxy else None
    doc_root = None
    if not needs_proxy:
        doc_root = resolve_doc_root(kind, mode, app_root, build_tool, angular_project, raw.php_doc_root)

    if doc_root is not None and kind.is_frontend:
        build_output = doc_root
    elif (kind, mode) in SERVER_OUTPUT_DIRS:
        build_output = posixpath.join(app_root, SERVER_OUTPUT_DIRS[(kind, mode)])
    else:
        build_output = None

    git = None
    if raw.git_repo:
        repo_url = raw.git_repo.strip()
        if not validate_git_url(repo_url):
            raise ValidationError("git_repo", f"'{repo_url}' must start with http://, https:// or git@")
        git = GitSource(repo_url=repo_url, branch=(raw.git_branch or "main").strip())

    php_version = ""
    if kind is AppKind.PHP:
        php_version = str(raw.php_version or config.php_version).strip()
        if not PHP_VERSION_PATTERN.match(php_version):
            raise ValidationError("php_version", f"'{php_version}' is not a MAJOR.MINOR version")

    env_vars = tuple(entry.strip() for entry in (raw.env_vars or []) if entry.strip())
    for entry in env_vars:
        if not validate_env_var(entry):
            raise ValidationError("env_vars", f"'{entry}' is not KEY=value")

    ssl = resolve_ssl(raw, domain, config, path_readable)
    process = resolve_process(raw, kind, mode, manager, domain, app_root, port)
    database = _parse_enum(Database, raw.database or "none", "database")

    spec = DeploymentSpec(
        web_server=web_server,
        app_kind=kind,
        frontend_mode=mode,
        package_manager=manager,
        domain=domain,
        aliases=aliases,
        app_root=app_root,
        needs_proxy=needs_proxy,
        port=port,
        doc_root=doc_root,
        build_output=build_output,
        git=git,
        ssl=ssl,
        process=process,
        build_command=commands.build_command(kind, mode, manager),
        install_commands=resolve_install_commands(kind, manager),
        database=database,
        firewall_enabled=bool(raw.firewall_enabled),
        node_version=node_version,
        build_tool=build_tool,
        php_version=php_version,
        install_php_extensions=bool(raw.install_php_extensions),
        api_url=(raw.api_url or "").strip(),
        env_vars=env_vars,
        ssh_port=config.ssh_port,
    )
    check_invariants(spec)
    logger.info(f"Resolved {spec.app_kind.value} deployment for {spec.domain} on {spec.web_server.value}")
    return spec

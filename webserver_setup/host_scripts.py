# ABOUTME: Operational helper scripts (update, restart, logs, status) placed in the app root
# ABOUTME: Assembled from fragment tables keyed by application kind and process manager

import posixpath
from shlex import quote
from typing import Callable, Dict, List

from webserver_setup.models import (
    AppConfig, AppKind, ArtifactKind, DeploymentSpec, FrontendMode, ProcessManager, SslMode,
)
from webserver_setup.supervisor_config import pm2_command

SCRIPT_NAMES: Dict[ArtifactKind, str] = {
    ArtifactKind.SCRIPT_UPDATE: "update.sh",
    ArtifactKind.SCRIPT_RESTART: "restart.sh",
    ArtifactKind.SCRIPT_LOGS: "logs.sh",
    ArtifactKind.SCRIPT_STATUS: "status.sh",
}

SHEBANG = "#!/bin/bash"


def script_path(spec: DeploymentSpec, kind: ArtifactKind) -> str:
    return posixpath.join(spec.app_root, SCRIPT_NAMES[kind])


def _install_line(spec: DeploymentSpec) -> str:
    return " || ".join(str(command) for command in spec.install_commands)


def _no_dependencies(spec: DeploymentSpec) -> List[str]:
    return ["# Nothing to install for this application kind"]


def _node_backend_dependencies(spec: DeploymentSpec) -> List[str]:
    lines = [
        "# Update Node.js dependencies",
        _install_line(spec),
    ]
    if spec.build_command:
        lines.extend([
            "if grep -q '\"build\"' package.json; then",
            f"    {spec.build_command}",
            "fi",
        ])
    return lines


def _python_dependencies(spec: DeploymentSpec) -> List[str]:
    return [
        "# Update Python dependencies",
        "venv/bin/pip install -r requirements.txt",
    ]


def _php_dependencies(spec: DeploymentSpec) -> List[str]:
    return [
        "# Update Composer dependencies when the project uses Composer",
        "if [ -f composer.json ] && command -v composer >/dev/null 2>&1; then",
        "    composer install --no-dev --optimize-autoloader",
        "fi",
    ]


def _frontend_dependencies(spec: DeploymentSpec) -> List[str]:
    lines = [
        "# Update frontend dependencies and rebuild",
        "export NODE_ENV=production",
        _install_line(spec),
        f'echo "Building {spec.app_kind.value} application..."',
        str(spec.build_command),
    ]
    if spec.app_kind is AppKind.NEXTJS and spec.frontend_mode is FrontendMode.STANDALONE:
        lines.extend(standalone_asset_lines())
    return lines


def standalone_asset_lines() -> List[str]:
    """Next.js standalone bundles do not include static assets"""
    return [
        "mkdir -p .next/standalone/.next",
        "cp -r .next/static .next/standalone/.next/",
        "if [ -d public ]; then",
        "    cp -r public .next/standalone/",
        "fi",
    ]


DEPENDENCY_FRAGMENTS: Dict[AppKind, Callable[[DeploymentSpec], List[str]]] = {
    AppKind.NODEJS: _node_backend_dependencies,
    AppKind.PYTHON: _python_dependencies,
    AppKind.PHP: _php_dependencies,
    AppKind.NEXTJS: _frontend_dependencies,
    AppKind.NUXTJS: _frontend_dependencies,
    AppKind.REACT: _frontend_dependencies,
    AppKind.VUE: _frontend_dependencies,
    AppKind.ANGULAR: _frontend_dependencies,
    AppKind.SVELTE: _frontend_dependencies,
    AppKind.STATIC: _no_dependencies,
    AppKind.PROXY: _no_dependencies,
}


def _pm2(config: AppConfig) -> str:
    return " ".join(quote(part) for part in pm2_command(config))


RESTART_FRAGMENTS: Dict[ProcessManager, Callable[[DeploymentSpec, AppConfig], List[str]]] = {
    ProcessManager.PM2: lambda spec, config: [f"{_pm2(config)} restart {quote(spec.process.app_name)}"],
    ProcessManager.SYSTEMD: lambda spec, config: [f"sudo systemctl restart {quote(spec.process.service_name)}"],
    ProcessManager.NONE: lambda spec, config: [],
}

LOG_FRAGMENTS: Dict[ProcessManager, Callable[[DeploymentSpec, AppConfig], List[str]]] = {
    ProcessManager.PM2: lambda spec, config: [
        f"{_pm2(config)} logs {quote(spec.process.app_name)} --lines 50 --nostream"
    ],
    ProcessManager.SYSTEMD: lambda spec, config: [
        f"sudo journalctl -u {quote(spec.process.service_name)} -n 50 --no-pager"
    ],
    ProcessManager.NONE: lambda spec, config: ['echo "No supervised application process"'],
}

STATUS_FRAGMENTS: Dict[ProcessManager, Callable[[DeploymentSpec, AppConfig], List[str]]] = {
    ProcessManager.PM2: lambda spec, config: [
        'echo ""',
        'echo "PM2 Application:"',
        f"{_pm2(config)} status {quote(spec.process.app_name)}",
    ],
    ProcessManager.SYSTEMD: lambda spec, config: [
        'echo ""',
        'echo "Application Service:"',
        f"systemctl status {quote(spec.process.service_name)} --no-pager | head -10",
    ],
    ProcessManager.NONE: lambda spec, config: [],
}


def _script(lines: List[str]) -> str:
    return "\n".join(lines) + "\n"


def render_update_script(spec: DeploymentSpec, config: AppConfig) -> str:
    branch = spec.git.branch if spec.git else "main"
    lines = [
        SHEBANG,
        "set -e",
        f'echo "Updating {spec.domain}..."',
        f"cd {quote(spec.app_root)}",
        "",
        "# Pull latest code",
        "if [ -d .git ]; then",
        f"    git pull origin {quote(branch)}",
        "fi",
        "",
    ]
    lines.extend(DEPENDENCY_FRAGMENTS[spec.app_kind](spec))
    lines.append("")
    lines.extend(RESTART_FRAGMENTS[spec.process.manager](spec, config))
    lines.append('echo "Update complete!"')
    return _script(lines)


def render_restart_script(spec: DeploymentSpec, config: AppConfig) -> str:
    lines = [SHEBANG, 'echo "Restarting services..."']
    lines.extend(RESTART_FRAGMENTS[spec.process.manager](spec, config))
    lines.append(f"sudo systemctl reload {spec.web_server.service_name}")
    lines.append('echo "Services restarted"')
    return _script(lines)


def render_logs_script(spec: DeploymentSpec, config: AppConfig) -> str:
    log_dir = f"/var/log/{spec.web_server.service_name}"
    lines = [SHEBANG, 'echo "=== Application Logs ==="']
    lines.extend(LOG_FRAGMENTS[spec.process.manager](spec, config))
    lines.extend([
        'echo ""',
        'echo "=== Web Server Error Logs ==="',
        f"sudo tail -50 {log_dir}/{spec.domain}_error.log 2>/dev/null || sudo tail -50 {log_dir}/error.log",
    ])
    return _script(lines)


def render_status_script(spec: DeploymentSpec, config: AppConfig) -> str:
    service = spec.web_server.service_name
    lines = [
        SHEBANG,
        f'echo "=== {spec.domain} Status ==="',
        'echo ""',
        f'echo "Web Server ({service}):"',
        f"systemctl status {service} --no-pager | head -5",
    ]
    lines.extend(STATUS_FRAGMENTS[spec.process.manager](spec, config))
    if spec.ssl.mode is SslMode.LETSENCRYPT:
        lines.extend([
            'echo ""',
            'echo "SSL Certificate:"',
            f'sudo certbot certificates 2>/dev/null | grep -A3 "{spec.domain}" '
            "|| echo \"No Let's Encrypt certificate found\"",
        ])
    return _script(lines)


SCRIPT_RENDERERS: Dict[ArtifactKind, Callable[[DeploymentSpec, AppConfig], str]] = {
    ArtifactKind.SCRIPT_UPDATE: render_update_script,
    ArtifactKind.SCRIPT_RESTART: render_restart_script,
    ArtifactKind.SCRIPT_LOGS: render_logs_script,
    ArtifactKind.SCRIPT_STATUS: render_status_script,
}

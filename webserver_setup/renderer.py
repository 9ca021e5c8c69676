# ABOUTME: Renders a DeploymentSpec into host artifacts with their paths and permissions
# ABOUTME: Dispatches per artifact kind and web server; also renders firewall rules and env files

import posixpath
from typing import Dict, List

from webserver_setup import apache_config, host_scripts, nginx_config, supervisor_config
from webserver_setup.errors import RenderError
from webserver_setup.models import (
    AppConfig, AppKind, Artifact, ArtifactKind, DeploymentSpec, HELPER_SCRIPT_KINDS,
    ProcessManager, WebServer,
)

ENV_FILE_NAMES: Dict[AppKind, str] = {
    AppKind.NODEJS: ".env.local",
    AppKind.NEXTJS: ".env.production",
    AppKind.NUXTJS: ".env",
    AppKind.REACT: ".env.production",
    AppKind.VUE: ".env.production",
    AppKind.ANGULAR: ".env.production",
    AppKind.SVELTE: ".env.production",
}

# Variables each framework exposes to client code at build time
API_URL_VARIABLES: Dict[AppKind, tuple] = {
    AppKind.NODEJS: (),
    AppKind.NEXTJS: ("NEXT_PUBLIC_API_URL",),
    AppKind.NUXTJS: ("NUXT_PUBLIC_API_URL",),
    AppKind.REACT: ("VITE_API_URL", "REACT_APP_API_URL"),
    AppKind.VUE: ("VITE_API_URL", "VUE_APP_API_URL"),
    AppKind.ANGULAR: ("API_URL",),
    AppKind.SVELTE: ("VITE_API_URL", "PUBLIC_API_URL"),
}

VHOST_MODULES = {
    WebServer.NGINX: nginx_config,
    WebServer.APACHE: apache_config,
}


def vhost_path(spec: DeploymentSpec, config: AppConfig) -> str:
    return VHOST_MODULES[spec.web_server].vhost_path(spec, config)


def env_file_path(spec: DeploymentSpec) -> str:
    try:
        return posixpath.join(spec.app_root, ENV_FILE_NAMES[spec.app_kind])
    except KeyError:
        raise RenderError(f"{spec.app_kind.value} applications have no generated env file")


def firewall_rules_path(spec: DeploymentSpec, config: AppConfig) -> str:
    return posixpath.join(config.firewall_rules_dir, f"{spec.domain}.ufw.rules")


def firewall_rules(spec: DeploymentSpec) -> List[str]:
    """ufw arguments, one rule per entry, in the order they are applied"""
    ssh_rule = "allow ssh" if spec.ssh_port == 22 else f"allow {spec.ssh_port}/tcp"
    return [
        "default deny incoming",
        "default allow outgoing",
        ssh_rule,
        f"allow '{spec.web_server.firewall_profile}'",
    ]


def render_firewall(spec: DeploymentSpec) -> str:
    lines = [f"# ufw rules for {spec.domain}, managed by webserver-setup"]
    lines.extend(firewall_rules(spec))
    return "\n".join(lines) + "\n"


def render_env_file(spec: DeploymentSpec) -> str:
    lines = ["# Production environment", "NODE_ENV=production"]
    if spec.port is not None:
        lines.append(f"PORT={spec.port}")
    if spec.api_url:
        lines.extend(f"{name}={spec.api_url}" for name in API_URL_VARIABLES.get(spec.app_kind, ()))
    if spec.env_vars:
        lines.extend(["", "# Custom environment variables"])
        lines.extend(spec.env_vars)
    return "\n".join(lines) + "\n"


def planned_kinds(spec: DeploymentSpec) -> List[ArtifactKind]:
    """Artifact kinds a run produces, in activation order"""
    kinds = []
    if spec.app_kind in ENV_FILE_NAMES:
        kinds.append(ArtifactKind.ENV_FILE)
    if spec.process.enabled:
        kinds.append(ArtifactKind.SUPERVISOR)
    kinds.append(ArtifactKind.HTTP_VHOST)
    if spec.firewall_enabled:
        kinds.append(ArtifactKind.FIREWALL)
    if spec.ssl.enabled:
        kinds.append(ArtifactKind.SSL_VHOST)
    kinds.extend(HELPER_SCRIPT_KINDS)
    return kinds


def render(spec: DeploymentSpec, kind: ArtifactKind, config: AppConfig) -> Artifact:
    """Render one artifact; the same spec always yields byte-identical content

    Raises:
        RenderError: when the deployment has nothing to render for ``kind``.
    """
    vhosts = VHOST_MODULES[spec.web_server]

    if kind is ArtifactKind.HTTP_VHOST:
        return Artifact(kind, vhosts.vhost_path(spec, config), vhosts.render_http_vhost(spec))

    if kind is ArtifactKind.SSL_VHOST:
        if not spec.ssl.enabled:
            raise RenderError(f"SSL is disabled for {spec.domain}")
        return Artifact(kind, vhosts.vhost_path(spec, config), vhosts.render_ssl_vhost(spec))

    if kind is ArtifactKind.SUPERVISOR:
        return Artifact(
            kind,
            supervisor_config.supervisor_path(spec, config),
            supervisor_config.render_supervisor(spec, config),
            service_owned=spec.process.manager is ProcessManager.PM2,
        )

    if kind is ArtifactKind.FIREWALL:
        return Artifact(kind, firewall_rules_path(spec, config), render_firewall(spec), mode=0o600)

    if kind is ArtifactKind.ENV_FILE:
        return Artifact(kind, env_file_path(spec), render_env_file(spec), mode=0o640,
                        service_owned=True, create_only=True)

    if kind in host_scripts.SCRIPT_RENDERERS:
        return Artifact(kind, host_scripts.script_path(spec, kind),
                        host_scripts.SCRIPT_RENDERERS[kind](spec, config),
                        mode=0o755, service_owned=True)

    raise RenderError(f"Unknown artifact kind: {kind}")


def render_all(spec: DeploymentSpec, config: AppConfig) -> List[Artifact]:
    return [render(spec, kind, config) for kind in planned_kinds(spec)]

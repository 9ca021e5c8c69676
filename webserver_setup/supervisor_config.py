# ABOUTME: Process supervisor descriptors: pm2 ecosystem files and systemd service units
# ABOUTME: Both read the start command, port and environment from the resolved spec

import json
import posixpath
import shlex
from typing import List, Tuple

from webserver_setup.errors import RenderError
from webserver_setup.models import AppConfig, AppKind, DeploymentSpec, ProcessManager

ECOSYSTEM_FILE = "ecosystem.config.js"

# Tools installed by NodeSource and npm's global prefix
NODE_TOOLS = ("node", "npm", "npx", "pnpm", "yarn", "bun")


def ecosystem_path(spec: DeploymentSpec) -> str:
    return posixpath.join(spec.app_root, ECOSYSTEM_FILE)


def pm2_command(config: AppConfig) -> List[str]:
    """pm2 run as the service account against its own process list"""
    return ["sudo", "-u", config.service_user, "env", f"PM2_HOME={config.pm2_home}/.pm2", "pm2"]


def unit_path(spec: DeploymentSpec, config: AppConfig) -> str:
    return posixpath.join(config.systemd_unit_dir, f"{spec.process.service_name}.service")


def supervisor_path(spec: DeploymentSpec, config: AppConfig) -> str:
    if spec.process.manager is ProcessManager.PM2:
        return ecosystem_path(spec)
    if spec.process.manager is ProcessManager.SYSTEMD:
        return unit_path(spec, config)
    raise RenderError(f"{spec.domain} has no process manager")


def pm2_log_files(spec: DeploymentSpec, config: AppConfig) -> Tuple[str, str]:
    """(error_file, out_file) for the pm2 app"""
    name = spec.process.app_name
    return (posixpath.join(config.pm2_log_dir, f"{name}-error.log"),
            posixpath.join(config.pm2_log_dir, f"{name}-out.log"))


def systemd_log_files(spec: DeploymentSpec) -> Tuple[str, str]:
    """(stdout, stderr) append targets for the systemd unit"""
    name = spec.process.service_name
    return f"/var/log/{name}.log", f"/var/log/{name}.error.log"


def _js(value) -> str:
    # JSON strings and numbers are valid JavaScript literals
    return json.dumps(value)


def _pm2_script(spec: DeploymentSpec) -> Tuple[str, str, bool]:
    """(script, args, bypass_interpreter) for the ecosystem entry"""
    command = spec.process.start_command
    args = list(command.args)
    if spec.app_kind is AppKind.PYTHON and "/" not in command.tool:
        return f"./venv/bin/{command.tool}", shlex.join(args), True
    if command.tool == "node" and args:
        return args[0], shlex.join(args[1:]), False
    return command.tool, shlex.join(args), False


def render_pm2_ecosystem(spec: DeploymentSpec, config: AppConfig) -> str:
    process = spec.process
    script, args, bypass_interpreter = _pm2_script(spec)
    error_file, out_file = pm2_log_files(spec, config)
    instances = _js(process.instances) if process.instances == "max" else process.instances

    lines: List[str] = [
        f"    name: {_js(process.app_name)},",
        f"    cwd: {_js(process.working_dir)},",
        f"    script: {_js(script)},",
    ]
    if args:
        lines.append(f"    args: {_js(args)},")
    if bypass_interpreter:
        lines.append("    interpreter: 'none',")
    env = ",\n".join(f"      {key}: {_js(value)}" for key, value in process.environment)
    lines.extend([
        "    env: {",
        env,
        "    },",
        f"    instances: {instances},",
        f"    exec_mode: {_js(process.exec_mode)},",
        "    autorestart: true,",
        "    watch: false,",
        f"    max_memory_restart: {_js(config.pm2_max_memory)},",
        f"    error_file: {_js(error_file)},",
        f"    out_file: {_js(out_file)},",
        "    merge_logs: true,",
        "    time: true",
    ])
    body = "\n".join(lines)
    return f"""// pm2 process definition for {spec.domain}, managed by webserver-setup
module.exports = {{
  apps: [{{
{body}
  }}]
}};
"""


def exec_start(spec: DeploymentSpec) -> str:
    """Absolute ExecStart line for the unit"""
    command = spec.process.start_command
    tool = command.tool
    if not tool.startswith("/"):
        if spec.app_kind is AppKind.PYTHON:
            tool = posixpath.join(spec.app_root, "venv", "bin", tool)
        elif tool in NODE_TOOLS:
            tool = f"/usr/bin/{tool}"
        else:
            raise RenderError(f"systemd needs an absolute path for '{tool}'")
    return shlex.join([tool, *command.args])


def _environment_line(key: str, value: str) -> str:
    entry = f"{key}={value}"
    if any(ch.isspace() for ch in entry):
        return f'Environment="{entry}"'
    return f"Environment={entry}"


def render_systemd_unit(spec: DeploymentSpec, config: AppConfig) -> str:
    process = spec.process
    stdout_log, stderr_log = systemd_log_files(spec)
    environment = "\n".join(_environment_line(key, value) for key, value in process.environment)
    return f"""# systemd unit for {spec.domain}, managed by webserver-setup
[Unit]
Description={process.app_name} {spec.app_kind.value} application
After=network.target

[Service]
Type=simple
User={config.service_user}
Group={config.service_group}
WorkingDirectory={process.working_dir}
{environment}
ExecStart={exec_start(spec)}
Restart=on-failure
RestartSec=10
StandardOutput=append:{stdout_log}
StandardError=append:{stderr_log}

[Install]
WantedBy=multi-user.target
"""


def render_supervisor(spec: DeploymentSpec, config: AppConfig) -> str:
    if spec.process.manager is ProcessManager.PM2:
        return render_pm2_ecosystem(spec, config)
    if spec.process.manager is ProcessManager.SYSTEMD:
        return render_systemd_unit(spec, config)
    raise RenderError(f"{spec.domain} has no process manager")

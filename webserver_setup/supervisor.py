# ABOUTME: Runtime control of the supervised application process through pm2 or systemd
# ABOUTME: Each call returns a TaskResult carrying the tool's output and timing

import time
import logging
from typing import List

from webserver_setup.models import AppConfig, DeploymentSpec, ProcessManager, TaskResult
from webserver_setup.supervisor_config import ecosystem_path, pm2_command
from webserver_setup.utils import run_command

logger = logging.getLogger(__name__)


def _task(cmd: List[str], **kwargs) -> TaskResult:
    start_time = time.perf_counter()
    result = run_command(cmd, **kwargs)
    return TaskResult(
        success=result.returncode == 0,
        output=(result.stdout or "").strip(),
        error=(result.stderr or "").strip(),
        execution_time=time.perf_counter() - start_time,
    )


class Pm2Supervisor:
    """pm2 running under the web server's service account"""

    def __init__(self, config: AppConfig, ecosystem_file: str):
        self.config = config
        self.ecosystem_file = ecosystem_file

    def _pm2(self, *args: str) -> TaskResult:
        return _task([*pm2_command(self.config), *args])

    def start(self, app_name: str) -> TaskResult:
        return self._pm2("start", self.ecosystem_file, "--only", app_name)

    def stop(self, app_name: str) -> TaskResult:
        return self._pm2("stop", app_name)

    def restart(self, app_name: str) -> TaskResult:
        """Start the app or reload it with the current ecosystem file"""
        return self._pm2("startOrReload", self.ecosystem_file, "--only", app_name, "--update-env")

    def save(self) -> TaskResult:
        return self._pm2("save")

    def configure_persistence(self, user: str) -> TaskResult:
        """Install the boot-time systemd hook that resurrects the saved process list"""
        return _task(["pm2", "startup", "systemd", "-u", user, "--hp", self.config.pm2_home])


class SystemdSupervisor:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def daemon_reload(self) -> TaskResult:
        return _task(["systemctl", "daemon-reload"])

    def start(self, app_name: str) -> TaskResult:
        return _task(["systemctl", "start", self.service_name])

    def stop(self, app_name: str) -> TaskResult:
        return _task(["systemctl", "stop", self.service_name])

    def restart(self, app_name: str) -> TaskResult:
        return _task(["systemctl", "restart", self.service_name])

    def save(self) -> TaskResult:
        # Unit files on disk are the saved state
        return TaskResult(success=True, output="systemd units need no save step")

    def configure_persistence(self, user: str) -> TaskResult:
        return _task(["systemctl", "enable", self.service_name])

    def is_enabled(self) -> bool:
        return _task(["systemctl", "is-enabled", "--quiet", self.service_name]).success


def supervisor_for(spec: DeploymentSpec, config: AppConfig):
    """Collaborator controlling the deployment's process, or None when nothing is supervised"""
    if spec.process.manager is ProcessManager.PM2:
        return Pm2Supervisor(config, ecosystem_path(spec))
    if spec.process.manager is ProcessManager.SYSTEMD:
        return SystemdSupervisor(spec.process.service_name)
    return None

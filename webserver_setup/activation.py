# ABOUTME: Makes written artifacts live through an enable, validate, reload state machine
# ABOUTME: Invalid configuration is rolled back before any service reload picks it up

import os
import shlex
import shutil
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from webserver_setup.errors import ActivationError
from webserver_setup.models import (
    ActivationOutcome, ActivationState, AppConfig, Artifact, ArtifactKind, DeploymentSpec,
    ProcessManager, WebServer, WriteOutcome,
)
from webserver_setup.supervisor import supervisor_for
from webserver_setup.utils import ensure_directory, run_command
from webserver_setup.writer import ArtifactWriter

logger = logging.getLogger(__name__)


def _check(cmd: List[str]) -> Tuple[bool, str]:
    """Run a command and return (success, combined diagnostic output)"""
    result = run_command(cmd)
    output = "\n".join(part.strip() for part in (result.stderr, result.stdout) if part and part.strip())
    return result.returncode == 0, output


class ActivationTarget:
    """No-op target; subclasses override the steps their artifact needs"""

    def is_enabled(self, artifact: Artifact) -> bool:
        return True

    def enable(self, artifact: Artifact) -> Tuple[bool, str]:
        return True, ""

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return True, ""

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        return True, ""

    def disable(self, artifact: Artifact) -> None:
        pass

    def refresh(self) -> None:
        """Called after a rollback so the service manager sees restored files"""


class NginxSiteTarget(ActivationTarget):
    def __init__(self, config: AppConfig):
        self.config = config
        self.enabled_dir = Path(config.nginx_sites_enabled)

    def _link(self, artifact: Artifact) -> Path:
        return self.enabled_dir / Path(artifact.path).name

    def is_enabled(self, artifact: Artifact) -> bool:
        link = self._link(artifact)
        return link.is_symlink() and os.readlink(link) == artifact.path

    def enable(self, artifact: Artifact) -> Tuple[bool, str]:
        link = self._link(artifact)
        try:
            if not self.is_enabled(artifact):
                self.enabled_dir.mkdir(parents=True, exist_ok=True)
                if link.is_symlink() or link.exists():
                    link.unlink()
                link.symlink_to(artifact.path)
                logger.info(f"Enabled nginx site {link}")
            default_site = self.enabled_dir / "default"
            if self.config.disable_default_site and (default_site.is_symlink() or default_site.exists()):
                default_site.unlink()
                logger.info("Disabled the default nginx site")
        except OSError as e:
            return False, f"Cannot link {link}: {e}"
        return True, ""

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["nginx", "-t"])

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        ok, output = _check(["systemctl", "reload", "nginx"])
        if ok:
            return ok, output
        logger.warning("systemctl reload nginx failed, trying nginx -s reload")
        return _check(["nginx", "-s", "reload"])

    def disable(self, artifact: Artifact) -> None:
        link = self._link(artifact)
        if link.is_symlink():
            link.unlink()
            logger.info(f"Disabled nginx site {link}")


class ApacheSiteTarget(ActivationTarget):
    def __init__(self, config: AppConfig):
        self.config = config

    def _site(self, artifact: Artifact) -> str:
        return Path(artifact.path).name

    def is_enabled(self, artifact: Artifact) -> bool:
        return (Path(self.config.apache_sites_enabled) / self._site(artifact)).exists()

    def enable(self, artifact: Artifact) -> Tuple[bool, str]:
        ok, output = _check(["a2ensite", self._site(artifact)])
        if not ok:
            return ok, output
        if self.config.disable_default_site:
            default_ok, default_output = _check(["a2dissite", "000-default.conf"])
            if not default_ok:
                logger.warning(f"Could not disable the default Apache site: {default_output}")
        return True, output

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["apache2ctl", "configtest"])

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["systemctl", "reload", "apache2"])

    def disable(self, artifact: Artifact) -> None:
        ok, output = _check(["a2dissite", self._site(artifact)])
        if not ok:
            logger.warning(f"Could not disable {self._site(artifact)}: {output}")


class Pm2Target(ActivationTarget):
    def __init__(self, spec: DeploymentSpec, config: AppConfig, supervisor):
        self.spec = spec
        self.config = config
        self.supervisor = supervisor

    def enable(self, artifact: Artifact) -> Tuple[bool, str]:
        try:
            ensure_directory(self.config.pm2_log_dir)
            if self.config.manage_ownership:
                shutil.chown(self.config.pm2_log_dir, self.config.service_user, self.config.service_group)
        except (OSError, LookupError) as e:
            return False, f"Cannot prepare {self.config.pm2_log_dir}: {e}"
        return True, ""

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["node", "--check", artifact.path])

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        app_name = self.spec.process.app_name
        for step in (lambda: self.supervisor.restart(app_name),
                     self.supervisor.save,
                     lambda: self.supervisor.configure_persistence(self.config.service_user)):
            result = step()
            if not result.success:
                return False, result.error or result.output
        return True, ""


class SystemdTarget(ActivationTarget):
    def __init__(self, spec: DeploymentSpec, supervisor):
        self.spec = spec
        self.supervisor = supervisor

    def is_enabled(self, artifact: Artifact) -> bool:
        return self.supervisor.is_enabled()

    def enable(self, artifact: Artifact) -> Tuple[bool, str]:
        reloaded = self.supervisor.daemon_reload()
        if not reloaded.success:
            return False, reloaded.error
        enabled = self.supervisor.configure_persistence(self.spec.process.service_name)
        return enabled.success, enabled.error or enabled.output

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["systemd-analyze", "verify", artifact.path])

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        result = self.supervisor.restart(self.spec.process.app_name)
        return result.success, result.error or result.output

    def disable(self, artifact: Artifact) -> None:
        ok, output = _check(["systemctl", "disable", self.spec.process.service_name])
        if not ok:
            logger.warning(f"Could not disable {self.spec.process.service_name}: {output}")

    def refresh(self) -> None:
        self.supervisor.daemon_reload()


class FirewallTarget(ActivationTarget):
    @staticmethod
    def rules(artifact: Artifact) -> List[List[str]]:
        return [
            shlex.split(line)
            for line in artifact.content.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]

    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        for rule in self.rules(artifact):
            ok, output = _check(["ufw", "--dry-run", *rule])
            if not ok:
                return False, f"ufw {' '.join(rule)}: {output}"
        return True, ""

    def reload(self, artifact: Artifact) -> Tuple[bool, str]:
        for rule in self.rules(artifact):
            ok, output = _check(["ufw", *rule])
            if not ok:
                return False, f"ufw {' '.join(rule)}: {output}"
        return _check(["ufw", "--force", "enable"])


class ScriptTarget(ActivationTarget):
    def validate(self, artifact: Artifact) -> Tuple[bool, str]:
        return _check(["bash", "-n", artifact.path])


class ActivationController:
    """Activates artifacts for one DeploymentSpec"""

    def __init__(self, spec: DeploymentSpec, config: AppConfig, writer: ArtifactWriter, supervisor=None):
        self.spec = spec
        self.config = config
        self.writer = writer
        self.supervisor = supervisor or supervisor_for(spec, config)
        self.targets: Dict[ArtifactKind, ActivationTarget] = self._build_targets()

    def _build_targets(self) -> Dict[ArtifactKind, ActivationTarget]:
        if self.spec.web_server is WebServer.NGINX:
            site = NginxSiteTarget(self.config)
        else:
            site = ApacheSiteTarget(self.config)

        if self.spec.process.manager is ProcessManager.PM2:
            process = Pm2Target(self.spec, self.config, self.supervisor)
        elif self.spec.process.manager is ProcessManager.SYSTEMD:
            process = SystemdTarget(self.spec, self.supervisor)
        else:
            process = ActivationTarget()

        scripts = ScriptTarget()
        return {
            ArtifactKind.HTTP_VHOST: site,
            ArtifactKind.SSL_VHOST: site,
            ArtifactKind.SUPERVISOR: process,
            ArtifactKind.FIREWALL: FirewallTarget(),
            ArtifactKind.ENV_FILE: ActivationTarget(),
            ArtifactKind.SCRIPT_UPDATE: scripts,
            ArtifactKind.SCRIPT_RESTART: scripts,
            ArtifactKind.SCRIPT_LOGS: scripts,
            ArtifactKind.SCRIPT_STATUS: scripts,
        }

    def _fail(self, artifact: Artifact, state: ActivationState, diagnostic: str,
              raise_on_failure: bool) -> ActivationOutcome:
        logger.error(f"{artifact.kind.value} {artifact.path}: {state.value}\n{diagnostic}")
        if raise_on_failure:
            raise ActivationError(artifact.kind.value, artifact.path, diagnostic)
        return ActivationOutcome(artifact.kind, artifact.path, state, diagnostic)

    def _roll_back(self, artifact: Artifact, target: ActivationTarget,
                   write_outcome: Optional[WriteOutcome], was_enabled: bool) -> None:
        if write_outcome is not None:
            self.writer.rollback(write_outcome)
            if write_outcome.previous_content is None and not was_enabled:
                target.disable(artifact)
        elif not was_enabled:
            target.disable(artifact)
        target.refresh()

    def activate(self, artifact: Artifact, write_outcome: Optional[WriteOutcome] = None,
                 raise_on_failure: bool = False) -> ActivationOutcome:
        """Drive one written artifact to ``reloaded`` or a failure state

        Raises:
            ActivationError: only when ``raise_on_failure`` is set.
        """
        if write_outcome is not None and write_outcome.skipped:
            return ActivationOutcome(artifact.kind, artifact.path, ActivationState.SKIPPED,
                                     "existing file kept")

        target = self.targets[artifact.kind]
        was_enabled = target.is_enabled(artifact)

        ok, diagnostic = target.enable(artifact)
        if not ok:
            self._roll_back(artifact, target, write_outcome, was_enabled)
            return self._fail(artifact, ActivationState.ENABLE_FAILED, diagnostic, raise_on_failure)
        logger.debug(f"{artifact.kind.value} enabled")

        ok, diagnostic = target.validate(artifact)
        if not ok:
            self._roll_back(artifact, target, write_outcome, was_enabled)
            return self._fail(artifact, ActivationState.VALIDATION_FAILED, diagnostic, raise_on_failure)
        logger.debug(f"{artifact.kind.value} validated")

        ok, diagnostic = target.reload(artifact)
        if not ok:
            return self._fail(artifact, ActivationState.RELOAD_FAILED, diagnostic, raise_on_failure)

        logger.info(f"Activated {artifact.kind.value} {artifact.path}")
        return ActivationOutcome(artifact.kind, artifact.path, ActivationState.RELOADED, diagnostic)

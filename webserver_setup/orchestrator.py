# ABOUTME: Sequences a full provisioning run: packages, application directory, artifacts
# ABOUTME: Collects per-artifact failures into a RunReport and records it in the run history

import os
import json
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from webserver_setup import commands
from webserver_setup.activation import ActivationController
from webserver_setup.apache_config import REQUIRED_MODULES
from webserver_setup.collaborators import (
    AptPackageManager, CertbotAuthority, SelfSignedAuthority, certificate_present, command_exists,
)
from webserver_setup.database import RunHistory
from webserver_setup.errors import (
    ActivationError, CollaboratorError, RenderError, SetupError, WriteError,
)
from webserver_setup.git_source import GitSourceManager
from webserver_setup.models import (
    ActivationOutcome, ActivationState, AppConfig, AppKind, ArtifactKind, ArtifactResult,
    Database, DeploymentSpec, FrontendMode, HELPER_SCRIPT_KINDS, ProcessManager, RunReport,
    SslMode, WebServer,
)
from webserver_setup.renderer import render, vhost_path
from webserver_setup.supervisor import supervisor_for
from webserver_setup.utils import ensure_directory, run_command, run_command_with_retry, run_timestamp
from webserver_setup.writer import ArtifactWriter

logger = logging.getLogger(__name__)

ESSENTIAL_PACKAGES = ["curl", "wget", "gnupg", "ca-certificates", "git", "unzip"]
PYTHON_PACKAGES = ["python3", "python3-venv", "python3-pip", "python3-dev", "build-essential"]
PYTHON_OPTIONAL_PACKAGES = ["libpq-dev", "pkg-config"]
MYSQL_CLIENT_DEV_PACKAGES = ["default-libmysqlclient-dev", "libmysqlclient-dev", "libmariadb-dev"]
PHP_PACKAGES = ["php", "php-fpm", "php-cli"]
PHP_EXTENSIONS = ["php-mysql", "php-pgsql", "php-sqlite3", "php-mbstring", "php-xml", "php-curl",
                  "php-zip", "php-gd", "php-intl", "php-bcmath", "php-redis"]

ProgressCallback = Callable[[str, str], None]


class HostOrchestrator:
    """Runs one DeploymentSpec against the local host"""

    def __init__(self, config: AppConfig, packages=None, git_source=None, history: Optional[RunHistory] = None,
                 run_id: Optional[str] = None, supervisor=None):
        self.config = config
        self.run_id = run_id or run_timestamp()
        self.log_file = config.log_file
        self.packages = packages or AptPackageManager(log_file=self.log_file)
        self.writer = ArtifactWriter(config, run_id=self.run_id)
        self.git_source = git_source or GitSourceManager(backup_root=str(self.writer.backup_root))
        self.history = history
        self.supervisor = supervisor
        self._controllers = {}

    # ----- helpers -------------------------------------------------------

    def _progress(self, callback: Optional[ProgressCallback], message: str, detail: str = ""):
        logger.info(message if not detail else f"{message} {detail}")
        if callback:
            callback(message, detail)

    def _install(self, report: RunReport, name: str, optional: bool = False) -> bool:
        result = self.packages.install(name, optional=optional)
        if not result.success and not optional:
            report.errors.append(CollaboratorError("packages", f"Failed to install {name}", detail=result.error))
        return result.success

    def _run(self, report: RunReport, step: str, cmd: List[str], cwd: str = None, env: dict = None,
             retry: bool = False) -> bool:
        runner = run_command_with_retry if retry else run_command
        result = runner(cmd, cwd=cwd, env=env, log_file=self.log_file)
        if result.returncode != 0:
            report.errors.append(CollaboratorError(step, f"'{' '.join(cmd)}' exited with {result.returncode}",
                                                   detail=(result.stderr or "").strip()))
            return False
        return True

    # ----- phase 1: packages --------------------------------------------

    def install_packages(self, spec: DeploymentSpec, report: RunReport,
                         progress_callback: Optional[ProgressCallback] = None):
        """Install everything the deployment needs

        Raises:
            CollaboratorError: when the web server itself cannot be installed.
        """
        self._progress(progress_callback, "Updating package index...")
        update = self.packages.update_index()
        if not update.success:
            report.warnings.append(f"Package index update failed: {update.error}")

        self._progress(progress_callback, "Installing essential packages...")
        for name in ESSENTIAL_PACKAGES:
            self.packages.install(name, optional=True)

        server_package = spec.web_server.service_name
        self._progress(progress_callback, f"Installing {server_package}...")
        result = self.packages.install(server_package)
        if not result.success:
            raise CollaboratorError("packages", f"Failed to install {server_package}", required=True,
                                    detail=result.error)

        if spec.web_server is WebServer.APACHE:
            if not self._run(report, "apache modules", ["a2enmod", *REQUIRED_MODULES]):
                report.warnings.append("Some Apache modules could not be enabled")

        self._install_runtime(spec, report, progress_callback)

        if spec.database is Database.MYSQL:
            self._progress(progress_callback, "Installing MySQL...")
            if not self.packages.install_first_available(["mysql-server", "mariadb-server"]).success:
                report.errors.append(CollaboratorError("packages", "Neither mysql-server nor mariadb-server installed"))
        elif spec.database is Database.POSTGRESQL:
            self._progress(progress_callback, "Installing PostgreSQL...")
            self._install(report, "postgresql")
            self._install(report, "postgresql-contrib", optional=True)

        if spec.firewall_enabled:
            self._install(report, "ufw")

        if spec.ssl.mode is SslMode.LETSENCRYPT:
            self._progress(progress_callback, "Installing certbot...")
            self._install(report, "certbot")
            self._install(report, CertbotAuthority(spec.web_server, self.config).plugin_package)

    def _node_major_version(self) -> Optional[str]:
        if not command_exists("node"):
            return None
        result = run_command(["node", "--version"])
        if result.returncode != 0:
            return None
        return result.stdout.strip().lstrip("v").split(".")[0]

    def _install_runtime(self, spec: DeploymentSpec, report: RunReport,
                         progress_callback: Optional[ProgressCallback]):
        needs_node = spec.app_kind.is_node_based or spec.process.manager is ProcessManager.PM2

        if needs_node:
            if self._node_major_version() != spec.node_version:
                self._progress(progress_callback, f"Installing Node.js {spec.node_version}...")
                repo = self.packages.add_nodesource_repository(spec.node_version)
                if not repo.success:
                    report.errors.append(CollaboratorError("nodesource", "Could not add the NodeSource repository",
                                                           detail=repo.error))
                self._install(report, "nodejs")

            binary_install = commands.BINARY_INSTALL_COMMANDS[spec.package_manager]
            if spec.app_kind.is_node_based and binary_install and not command_exists(spec.package_manager.value):
                self._progress(progress_callback, f"Installing {spec.package_manager.value}...")
                self._run(report, "package manager", binary_install.argv, retry=True)

            if spec.process.manager is ProcessManager.PM2 and not command_exists("pm2"):
                self._progress(progress_callback, "Installing PM2...")
                self._run(report, "pm2", ["npm", "install", "-g", "pm2"], retry=True)

        if spec.app_kind is AppKind.PYTHON:
            self._progress(progress_callback, "Setting up Python...")
            for name in PYTHON_PACKAGES:
                self._install(report, name)
            for name in PYTHON_OPTIONAL_PACKAGES:
                self.packages.install(name, optional=True)
            self.packages.install_first_available(MYSQL_CLIENT_DEV_PACKAGES, optional=True)

        if spec.app_kind is AppKind.PHP:
            self._progress(progress_callback, "Setting up PHP...")
            for name in PHP_PACKAGES:
                self._install(report, name)
            if spec.install_php_extensions:
                for name in PHP_EXTENSIONS:
                    self.packages.install(name, optional=True)
            installed = self.packages.installed_php_version()
            if installed and installed != spec.php_version:
                report.warnings.append(
                    f"PHP {installed} is installed but the vhost targets php{spec.php_version}-fpm; "
                    f"set php_version: {installed} and re-run"
                )
            service = f"php{spec.php_version}-fpm"
            self._run(report, "php-fpm", ["systemctl", "enable", "--now", service])

    # ----- phase 2: application directory -------------------------------

    def prepare_application(self, spec: DeploymentSpec, report: RunReport,
                            progress_callback: Optional[ProgressCallback] = None):
        self._progress(progress_callback, "Setting up application directory...", spec.app_root)
        if not self._ensure_app_root(spec, report):
            return

        if spec.git:
            self._progress(progress_callback, "Fetching source...", spec.git.repo_url)
            result = self.git_source.clone_or_update(spec.git.repo_url, spec.git.branch, spec.app_root)
            if not result.success:
                report.errors.append(CollaboratorError("git", f"Could not fetch {spec.git.repo_url}",
                                                       detail=result.error))
            else:
                commit = self.git_source.current_commit(spec.app_root)
                if commit:
                    self._progress(progress_callback, "Source checked out at", commit[:12])
            if not self._ensure_app_root(spec, report):
                return

        if spec.app_kind.is_node_based:
            self.apply_artifact(spec, ArtifactKind.ENV_FILE, report)

        self._install_dependencies(spec, report, progress_callback)
        self._set_ownership(spec, report)

        if spec.build_output and not os.path.isdir(spec.build_output):
            report.warnings.append(f"Build output {spec.build_output} does not exist yet")

    def _ensure_app_root(self, spec: DeploymentSpec, report: RunReport) -> bool:
        try:
            ensure_directory(spec.app_root)
        except OSError as e:
            logger.error(f"Cannot create {spec.app_root}: {e}")
            report.errors.append(WriteError(spec.app_root, f"Cannot create application directory: {e}"))
            return False
        return True

    def _package_scripts(self, app_root: str) -> dict:
        try:
            with open(os.path.join(app_root, "package.json")) as f:
                return json.load(f).get("scripts", {}) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read package.json scripts: {e}")
            return {}

    def _install_dependencies(self, spec: DeploymentSpec, report: RunReport,
                              progress_callback: Optional[ProgressCallback]):
        root = spec.app_root

        if spec.app_kind.is_node_based:
            if not os.path.exists(os.path.join(root, "package.json")):
                report.warnings.append(f"No package.json in {root}; skipped dependency install and build")
                return
            self._progress(progress_callback, f"Installing dependencies with {spec.package_manager.value}...")
            frozen, fallback = spec.install_commands
            first = run_command_with_retry(frozen.argv, cwd=root, log_file=self.log_file)
            if first.returncode != 0:
                logger.warning(f"'{frozen}' failed, falling back to '{fallback}'")
                self._run(report, "dependencies", fallback.argv, cwd=root, retry=True)

            if spec.build_command:
                scripts = self._package_scripts(root)
                build_script = spec.build_command.args[1] if len(spec.build_command.args) > 1 else ""
                if spec.app_kind is AppKind.NODEJS and build_script not in scripts:
                    logger.info("No build script declared, skipping build")
                else:
                    self._progress(progress_callback, f"Building {spec.app_kind.value} application...",
                                   str(spec.build_command))
                    built = self._run(report, "build", spec.build_command.argv, cwd=root,
                                      env={"NODE_ENV": "production"})
                    if built and spec.app_kind is AppKind.NEXTJS and spec.frontend_mode is FrontendMode.STANDALONE:
                        self._copy_standalone_assets(root, report)

        elif spec.app_kind is AppKind.PYTHON:
            self._progress(progress_callback, "Installing Python dependencies...")
            for command in spec.install_commands:
                if command.args[:2] == ("-m", "venv") and os.path.isdir(os.path.join(root, "venv")):
                    continue
                if "requirements.txt" in command.args and not os.path.exists(os.path.join(root, "requirements.txt")):
                    report.warnings.append(f"No requirements.txt in {root}")
                    continue
                self._run(report, "dependencies", command.argv, cwd=root, retry=command.tool != "python3")

    def _copy_standalone_assets(self, root: str, report: RunReport):
        """Next.js standalone bundles need static and public assets beside server.js"""
        base = Path(root)
        standalone = base / ".next" / "standalone"
        try:
            if (base / ".next" / "static").is_dir():
                shutil.copytree(base / ".next" / "static", standalone / ".next" / "static", dirs_exist_ok=True)
            if (base / "public").is_dir():
                shutil.copytree(base / "public", standalone / "public", dirs_exist_ok=True)
        except OSError as e:
            report.errors.append(CollaboratorError("build", f"Cannot copy assets into {standalone}", detail=str(e)))
            return
        logger.info(f"Copied static assets into {standalone}")

    def _set_ownership(self, spec: DeploymentSpec, report: RunReport):
        if not self.config.manage_ownership:
            return
        owner = f"{self.config.service_user}:{self.config.service_group}"
        self._run(report, "ownership", ["chown", "-R", owner, spec.app_root])

    # ----- artifacts -----------------------------------------------------

    def apply_artifact(self, spec: DeploymentSpec, kind: ArtifactKind, report: RunReport,
                       controller: Optional[ActivationController] = None) -> Optional[ActivationOutcome]:
        """Render, write and activate one artifact, recording the result"""
        controller = controller or self._controller(spec)
        try:
            artifact = render(spec, kind, self.config)
        except RenderError as e:
            report.errors.append(e)
            report.artifacts.append(ArtifactResult(kind, "", None, message=str(e)))
            return None

        try:
            outcome = self.writer.write(artifact)
        except WriteError as e:
            report.errors.append(e)
            report.artifacts.append(ArtifactResult(kind, artifact.path, None, message=e.message))
            return None

        try:
            activation = controller.activate(artifact, outcome)
        except WriteError as e:
            # Restoring the previous file failed
            report.errors.append(e)
            report.artifacts.append(ArtifactResult(kind, artifact.path, None, message=e.message))
            return None
        if activation.state.is_failure:
            report.errors.append(ActivationError(kind.value, artifact.path, activation.diagnostic))
        report.artifacts.append(ArtifactResult(kind, artifact.path, activation.state,
                                               backup_path=outcome.backup_path, message=activation.diagnostic))
        return activation

    def _controller(self, spec: DeploymentSpec) -> ActivationController:
        key = id(spec)
        if key not in self._controllers:
            supervisor = self.supervisor or supervisor_for(spec, self.config)
            self._controllers[key] = ActivationController(spec, self.config, self.writer, supervisor)
        return self._controllers[key]

    def _authority(self, spec: DeploymentSpec):
        if spec.ssl.mode is SslMode.LETSENCRYPT:
            return CertbotAuthority(spec.web_server, self.config, log_file=self.log_file)
        if spec.ssl.mode is SslMode.SELF_SIGNED:
            return SelfSignedAuthority(self.config, log_file=self.log_file)
        return None

    def https_ready(self, spec: DeploymentSpec) -> bool:
        """The certificate for an SSL spec is already on disk"""
        return spec.ssl.enabled and certificate_present(spec.ssl.cert_path, spec.ssl.key_path)

    def enable_existing_https(self, spec: DeploymentSpec, report: RunReport,
                              progress_callback: Optional[ProgressCallback] = None):
        """Activate the TLS vhost directly when its certificate already exists

        The TLS vhost carries the port 80 redirect as well, so the HTTP-only body is
        never written over a live HTTPS site. A certbot failure here only warns since
        the existing certificate keeps serving.
        """
        self._progress(progress_callback, "Certificate present, configuring HTTPS virtual host...")
        report.artifacts.append(ArtifactResult(ArtifactKind.HTTP_VHOST, vhost_path(spec, self.config),
                                               ActivationState.SKIPPED, message="served by the HTTPS virtual host"))
        activation = self.apply_artifact(spec, ArtifactKind.SSL_VHOST, report)
        if activation is None or activation.state is not ActivationState.RELOADED:
            return

        authority = self._authority(spec)
        if isinstance(authority, CertbotAuthority):
            self._progress(progress_callback, "Checking certificate...", spec.ssl.mode.value)
            cert = authority.obtain(list(spec.server_names), spec.ssl.email)
            if not cert.success:
                report.warnings.append(f"Certificate check failed, the existing certificate stays in use: {cert.error}")
            renewal = authority.enable_renewal()
            if not renewal.success:
                report.warnings.append(f"certbot.timer could not be enabled: {renewal.error}")

    def configure_ssl(self, spec: DeploymentSpec, report: RunReport,
                      progress_callback: Optional[ProgressCallback] = None):
        http_result = report.result_for(ArtifactKind.HTTP_VHOST)
        if not http_result or http_result.state is not ActivationState.RELOADED:
            report.warnings.append("SSL skipped because the HTTP virtual host is not live")
            report.artifacts.append(ArtifactResult(ArtifactKind.SSL_VHOST, vhost_path(spec, self.config),
                                                   ActivationState.SKIPPED, message="HTTP vhost not live"))
            return

        authority = self._authority(spec)

        if authority:
            self._progress(progress_callback, "Obtaining certificate...", spec.ssl.mode.value)
            cert = authority.obtain(list(spec.server_names), spec.ssl.email)
            if not cert.success:
                report.errors.append(CollaboratorError("certificate", f"{spec.ssl.mode.value} certificate failed",
                                                       detail=cert.error))
                report.artifacts.append(ArtifactResult(ArtifactKind.SSL_VHOST, vhost_path(spec, self.config),
                                                       ActivationState.SKIPPED, message=cert.error))
                return

        self._progress(progress_callback, "Enabling HTTPS...")
        self.apply_artifact(spec, ArtifactKind.SSL_VHOST, report)

        if isinstance(authority, CertbotAuthority):
            renewal = authority.enable_renewal()
            if not renewal.success:
                report.warnings.append(f"certbot.timer could not be enabled: {renewal.error}")

    # ----- run -----------------------------------------------------------

    def run(self, spec: DeploymentSpec, progress_callback: Optional[ProgressCallback] = None,
            install_packages: bool = True) -> RunReport:
        """Provision the host for ``spec``; failures after validation are collected, not raised"""
        report = RunReport(run_id=self.run_id, spec=spec, log_file=self.log_file)
        logger.info(f"Starting run {self.run_id} for {spec.domain}")

        try:
            if install_packages:
                self.install_packages(spec, report, progress_callback)

            self.prepare_application(spec, report, progress_callback)

            if spec.process.enabled:
                self._progress(progress_callback, f"Configuring {spec.process.manager.value}...")
                self.apply_artifact(spec, ArtifactKind.SUPERVISOR, report)

            https_ready = self.https_ready(spec)
            if https_ready:
                self.enable_existing_https(spec, report, progress_callback)
            else:
                self._progress(progress_callback, f"Configuring {spec.web_server.service_name} virtual host...")
                self.apply_artifact(spec, ArtifactKind.HTTP_VHOST, report)

            if spec.firewall_enabled:
                self._progress(progress_callback, "Configuring firewall...")
                self.apply_artifact(spec, ArtifactKind.FIREWALL, report)

            if spec.ssl.enabled and not https_ready:
                self.configure_ssl(spec, report, progress_callback)

            self._progress(progress_callback, "Creating helper scripts...")
            for kind in HELPER_SCRIPT_KINDS:
                self.apply_artifact(spec, kind, report)

        except CollaboratorError as e:
            report.errors.append(e)
            if e.required:
                logger.error(f"Aborting run: {e} {e.detail}")
                report.aborted = True
            else:
                logger.error(f"Run failed: {e} {e.detail}")
        except SetupError as e:
            logger.error(f"Run failed: {e}")
            report.errors.append(e)
        except OSError as e:
            logger.error(f"Run stopped by a filesystem error: {e}")
            report.errors.append(CollaboratorError("host", "Filesystem operation failed", detail=str(e)))

        report.finished_at = datetime.now()
        for line in report.summary_lines():
            logger.info(line)

        if self.history:
            self.history.record_run(report)
        return report

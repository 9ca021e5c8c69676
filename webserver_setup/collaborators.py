# ABOUTME: External collaborators for Debian/Ubuntu hosts: apt packages and TLS certificates
# ABOUTME: Certbot and openssl back the certificate authorities; apt backs package installation

import os
import re
import time
import shutil
import logging
import posixpath
from dataclasses import dataclass
from typing import List, Optional, Sequence

from webserver_setup.models import AppConfig, TaskResult, WebServer
from webserver_setup.utils import ensure_directory, run_command, run_command_with_retry

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
NODESOURCE_KEY_URL = "https://deb.nodesource.com/gpgkey/nodesource-repo.gpg.key"
NODESOURCE_KEYRING = "/etc/apt/keyrings/nodesource.gpg"
NODESOURCE_LIST = "/etc/apt/sources.list.d/nodesource.list"


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def certificate_present(cert_path: str, key_path: str) -> bool:
    return bool(cert_path and key_path) and os.path.isfile(cert_path) and os.path.isfile(key_path)


def _to_task(result, start_time: float) -> TaskResult:
    return TaskResult(
        success=result.returncode == 0,
        output=(result.stdout or "").strip(),
        error=(result.stderr or "").strip(),
        execution_time=time.perf_counter() - start_time,
    )


class AptPackageManager:
    """apt/dpkg package collaborator"""

    def __init__(self, log_file: Optional[str] = None):
        self.log_file = log_file

    def is_installed(self, name: str) -> bool:
        result = run_command(["dpkg-query", "-W", "-f=${Status}", name])
        return result.returncode == 0 and "install ok installed" in result.stdout

    def update_index(self) -> TaskResult:
        start_time = time.perf_counter()
        result = run_command_with_retry(["apt-get", "update"], env=APT_ENV, log_file=self.log_file)
        return _to_task(result, start_time)

    def install(self, name: str, optional: bool = False) -> TaskResult:
        """Install one package; optional packages only warn on failure"""
        if self.is_installed(name):
            logger.info(f"{name} is already installed")
            return TaskResult(success=True, output=f"{name} already installed")

        logger.info(f"Installing {name}...")
        start_time = time.perf_counter()
        result = run_command_with_retry(["apt-get", "install", "-y", name], env=APT_ENV,
                                        log_file=self.log_file)
        task = _to_task(result, start_time)
        if task.success:
            logger.info(f"{name} installed in {task.execution_time:.1f}s")
        elif optional:
            logger.warning(f"Optional package {name} could not be installed")
        else:
            logger.error(f"Failed to install {name}: {task.error}")
        return task

    def install_first_available(self, names: Sequence[str], optional: bool = False) -> TaskResult:
        """Install the first package of ``names`` that apt can provide"""
        last = TaskResult(success=False, output="", error="no candidates")
        for name in names:
            last = self.install(name, optional=True)
            if last.success:
                return last
        if not optional:
            logger.error(f"None of {', '.join(names)} could be installed")
        return last

    def add_nodesource_repository(self, node_version: str) -> TaskResult:
        """Register the NodeSource apt repository for a Node.js major version"""
        start_time = time.perf_counter()
        try:
            ensure_directory(posixpath.dirname(NODESOURCE_KEYRING))
        except OSError as e:
            return TaskResult(success=False, output="", error=str(e),
                              execution_time=time.perf_counter() - start_time)

        key = run_command_with_retry(["curl", "-fsSL", NODESOURCE_KEY_URL], log_file=self.log_file)
        if key.returncode != 0:
            return _to_task(key, start_time)

        dearmor = run_command(["gpg", "--dearmor", "--yes", "-o", NODESOURCE_KEYRING],
                              input_text=key.stdout, log_file=self.log_file)
        if dearmor.returncode != 0:
            return _to_task(dearmor, start_time)

        try:
            with open(NODESOURCE_LIST, "w") as f:
                f.write(f"deb [signed-by={NODESOURCE_KEYRING}] "
                        f"https://deb.nodesource.com/node_{node_version}.x nodistro main\n")
        except OSError as e:
            logger.error(f"Cannot write {NODESOURCE_LIST}: {e}")
            return TaskResult(success=False, output="", error=str(e),
                              execution_time=time.perf_counter() - start_time)
        return self.update_index()

    def installed_php_version(self) -> Optional[str]:
        """MAJOR.MINOR of the php CLI, if present"""
        result = run_command(["php", "-r", "echo PHP_MAJOR_VERSION.'.'.PHP_MINOR_VERSION;"])
        if result.returncode != 0:
            return None
        match = re.match(r"^(\d+\.\d+)", result.stdout.strip())
        return match.group(1) if match else None


@dataclass
class CertResult:
    success: bool
    cert_path: str = ""
    key_path: str = ""
    error: str = ""


class CertbotAuthority:
    """Let's Encrypt certificates through certbot's web server plugin"""

    def __init__(self, web_server: WebServer, config: AppConfig, log_file: Optional[str] = None):
        self.web_server = web_server
        self.config = config
        self.log_file = log_file

    @property
    def plugin_package(self) -> str:
        return f"python3-certbot-{self.web_server.value}"

    def obtain(self, domains: List[str], email: str) -> CertResult:
        cmd = ["certbot", "certonly", f"--{self.web_server.value}"]
        for domain in domains:
            cmd.extend(["-d", domain])
        cmd.extend(["--non-interactive", "--agree-tos", "--email", email, "--keep-until-expiring"])

        logger.info(f"Obtaining Let's Encrypt certificate for {', '.join(domains)}")
        result = run_command_with_retry(cmd, log_file=self.log_file)
        if result.returncode != 0:
            return CertResult(success=False, error=(result.stderr or result.stdout).strip())

        live_dir = posixpath.join(self.config.letsencrypt_live_dir, domains[0])
        return CertResult(success=True,
                          cert_path=posixpath.join(live_dir, "fullchain.pem"),
                          key_path=posixpath.join(live_dir, "privkey.pem"))

    def enable_renewal(self) -> TaskResult:
        start_time = time.perf_counter()
        return _to_task(run_command(["systemctl", "enable", "--now", "certbot.timer"]), start_time)


class SelfSignedAuthority:
    """One-year self-signed certificate generated with openssl"""

    def __init__(self, config: AppConfig, log_file: Optional[str] = None):
        self.config = config
        self.log_file = log_file

    def obtain(self, domains: List[str], email: str = "") -> CertResult:
        cert_dir = posixpath.join(self.config.ssl_dir, domains[0])
        cert_path = posixpath.join(cert_dir, "fullchain.pem")
        key_path = posixpath.join(cert_dir, "privkey.pem")
        if certificate_present(cert_path, key_path):
            logger.info(f"Reusing self-signed certificate in {cert_dir}")
            return CertResult(success=True, cert_path=cert_path, key_path=key_path)
        try:
            ensure_directory(cert_dir)
        except OSError as e:
            return CertResult(success=False, error=f"Cannot create {cert_dir}: {e}")

        san = ",".join(f"DNS:{domain}" for domain in domains)
        cmd = [
            "openssl", "req", "-x509", "-nodes", "-days", "365", "-newkey", "rsa:2048",
            "-keyout", key_path, "-out", cert_path,
            "-subj", f"/C=US/ST=State/L=City/O=Organization/CN={domains[0]}",
            "-addext", f"subjectAltName={san}",
        ]
        logger.info(f"Generating self-signed certificate for {domains[0]}")
        result = run_command(cmd, log_file=self.log_file)
        if result.returncode != 0:
            return CertResult(success=False, error=(result.stderr or result.stdout).strip())

        try:
            os.chmod(key_path, 0o600)
        except OSError as e:
            return CertResult(success=False, error=f"Cannot restrict {key_path}: {e}")
        logger.warning("Browsers will show a security warning for self-signed certificates")
        return CertResult(success=True, cert_path=cert_path, key_path=key_path)

# ABOUTME: Tests for apt, certbot and openssl collaborators and the process supervisors
# ABOUTME: Validates the exact commands issued and how their results are reported

import os
import pytest
from unittest.mock import patch

from webserver_setup.collaborators import (
    NODESOURCE_LIST, AptPackageManager, CertbotAuthority, SelfSignedAuthority, certificate_present,
)
from webserver_setup.models import WebServer
from webserver_setup.resolver import resolve
from webserver_setup.supervisor import Pm2Supervisor, SystemdSupervisor, supervisor_for


class TestAptPackageManager:
    """Test apt package installation"""

    def test_installed_package_is_skipped(self, fake_commands):
        with patch.object(AptPackageManager, "is_installed", return_value=True):
            result = AptPackageManager().install("nginx")
        assert result.success
        assert not fake_commands.ran("apt-get")

    def test_install(self, fake_commands):
        fake_commands.fail("dpkg-query")
        result = AptPackageManager().install("nginx")
        assert result.success
        assert fake_commands.ran("apt-get", "install", "-y", "nginx")

    def test_install_failure(self, fake_commands):
        fake_commands.fail("dpkg-query")
        fake_commands.fail("apt-get", "install", stderr="E: Unable to locate package nope")
        result = AptPackageManager().install("nope", optional=True)
        assert not result.success
        assert "Unable to locate" in result.error

    def test_install_first_available(self, fake_commands):
        fake_commands.fail("dpkg-query")
        fake_commands.fail("apt-get", "install", "-y", "mysql-server")
        result = AptPackageManager().install_first_available(["mysql-server", "mariadb-server"])
        assert result.success
        assert fake_commands.ran("apt-get", "install", "-y", "mariadb-server")

    def test_installed_php_version(self):
        with patch("webserver_setup.collaborators.run_command") as mock_run:
            mock_run.return_value.returncode = 0
            mock_run.return_value.stdout = "8.1"
            assert AptPackageManager().installed_php_version() == "8.1"

    def test_nodesource_repository(self, fake_commands, tmp_path):
        list_file = tmp_path / "nodesource.list"
        with patch("webserver_setup.collaborators.NODESOURCE_LIST", str(list_file)), \
                patch("webserver_setup.collaborators.NODESOURCE_KEYRING", str(tmp_path / "keyrings" / "ns.gpg")):
            result = AptPackageManager().add_nodesource_repository("22")

        assert result.success
        assert "node_22.x nodistro main" in list_file.read_text()
        assert fake_commands.index("curl") < fake_commands.index("gpg") < fake_commands.index("apt-get", "update")
        assert NODESOURCE_LIST.startswith("/etc/apt/")

    def test_nodesource_list_not_writable(self, fake_commands, tmp_path):
        blocker = tmp_path / "sources.list.d"
        blocker.write_text("")
        with patch("webserver_setup.collaborators.NODESOURCE_LIST", str(blocker / "nodesource.list")), \
                patch("webserver_setup.collaborators.NODESOURCE_KEYRING", str(tmp_path / "keyrings" / "ns.gpg")):
            result = AptPackageManager().add_nodesource_repository("22")

        assert not result.success
        assert result.error
        assert not fake_commands.ran("apt-get", "update")

    def test_nodesource_keyring_directory_not_creatable(self, fake_commands, tmp_path):
        blocker = tmp_path / "keyrings"
        blocker.write_text("")
        with patch("webserver_setup.collaborators.NODESOURCE_KEYRING", str(blocker / "apt" / "ns.gpg")):
            result = AptPackageManager().add_nodesource_repository("22")

        assert not result.success
        assert not fake_commands.ran("curl")


class TestCertificates:
    """Test certificate authorities"""

    def test_certbot(self, host_config, fake_commands):
        authority = CertbotAuthority(WebServer.APACHE, host_config)
        result = authority.obtain(["example.com", "www.example.com"], "ops@example.com")

        assert result.success
        assert result.cert_path == os.path.join(host_config.letsencrypt_live_dir, "example.com", "fullchain.pem")
        assert fake_commands.calls[-1] == [
            "certbot", "certonly", "--apache", "-d", "example.com", "-d", "www.example.com",
            "--non-interactive", "--agree-tos", "--email", "ops@example.com", "--keep-until-expiring",
        ]
        assert authority.plugin_package == "python3-certbot-apache"

    def test_certbot_failure(self, host_config, fake_commands):
        fake_commands.fail("certbot", stderr="Challenge failed for domain example.com")
        result = CertbotAuthority(WebServer.NGINX, host_config).obtain(["example.com"], "ops@example.com")
        assert not result.success
        assert "Challenge failed" in result.error

    def test_self_signed(self, host_config, fake_commands):
        key_path = os.path.join(host_config.ssl_dir, "example.com", "privkey.pem")

        def openssl_writes_key():
            with open(key_path, "w") as f:
                f.write("key")
            return False

        # Creates the key the way openssl would, without failing the command
        fake_commands.fail("openssl", when=openssl_writes_key)
        result = SelfSignedAuthority(host_config).obtain(["example.com", "www.example.com"])

        assert result.success
        assert result.key_path == key_path
        assert oct(os.stat(key_path).st_mode & 0o777) == oct(0o600)
        command = fake_commands.calls[-1]
        assert command[:3] == ["openssl", "req", "-x509"]
        assert "subjectAltName=DNS:example.com,DNS:www.example.com" in command

    def test_self_signed_reuses_existing_certificate(self, host_config, fake_commands):
        cert_dir = os.path.join(host_config.ssl_dir, "example.com")
        os.makedirs(cert_dir)
        for name in ("fullchain.pem", "privkey.pem"):
            with open(os.path.join(cert_dir, name), "w") as f:
                f.write(name)

        result = SelfSignedAuthority(host_config).obtain(["example.com"])

        assert result.success
        assert result.cert_path == os.path.join(cert_dir, "fullchain.pem")
        assert not fake_commands.ran("openssl")

    def test_self_signed_directory_not_creatable(self, host_config, fake_commands):
        os.makedirs(os.path.dirname(host_config.ssl_dir), exist_ok=True)
        with open(host_config.ssl_dir, "w") as f:
            f.write("")

        result = SelfSignedAuthority(host_config).obtain(["example.com"])

        assert not result.success
        assert "Cannot create" in result.error
        assert not fake_commands.ran("openssl")

    def test_certificate_present(self, tmp_path):
        cert, key = tmp_path / "fullchain.pem", tmp_path / "privkey.pem"
        cert.write_text("")
        assert not certificate_present(str(cert), str(key))
        key.write_text("")
        assert certificate_present(str(cert), str(key))
        assert not certificate_present("", str(key))


class TestSupervisors:
    """Test pm2 and systemd process control"""

    def test_supervisor_for(self, answers, host_config):
        assert isinstance(supervisor_for(resolve(answers(app_kind="nodejs"), host_config), host_config),
                          Pm2Supervisor)
        spec = resolve(answers(app_kind="python", process_manager="systemd"), host_config)
        assert isinstance(supervisor_for(spec, host_config), SystemdSupervisor)
        assert supervisor_for(resolve(answers(), host_config), host_config) is None

    def test_pm2_runs_as_service_user(self, host_config, fake_commands):
        supervisor = Pm2Supervisor(host_config, "/srv/app/ecosystem.config.js")
        assert supervisor.stop("app").success
        assert fake_commands.calls[-1] == [
            "sudo", "-u", "www-data", "env", f"PM2_HOME={host_config.pm2_home}/.pm2", "pm2", "stop", "app",
        ]

    def test_systemd(self, fake_commands):
        supervisor = SystemdSupervisor("example-com")
        fake_commands.fail("systemctl", "restart", stderr="Job failed")

        assert supervisor.start("example-com").success
        restart = supervisor.restart("example-com")
        assert not restart.success
        assert restart.error == "Job failed"
        assert supervisor.save().success
        assert fake_commands.calls[0] == ["systemctl", "start", "example-com"]

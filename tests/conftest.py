# ABOUTME: Shared fixtures for the webserver_setup test suite
# ABOUTME: Temporary-directory AppConfig, an answers factory and a recorder standing in for subprocess.run

import subprocess
from unittest.mock import patch

import pytest

from webserver_setup.models import AppConfig, RawAnswers


@pytest.fixture
def host_config(tmp_path):
    """AppConfig whose every host path lives below tmp_path"""
    root = tmp_path / "host"
    return AppConfig(
        nginx_sites_available=str(root / "etc/nginx/sites-available"),
        nginx_sites_enabled=str(root / "etc/nginx/sites-enabled"),
        apache_sites_available=str(root / "etc/apache2/sites-available"),
        apache_sites_enabled=str(root / "etc/apache2/sites-enabled"),
        systemd_unit_dir=str(root / "etc/systemd/system"),
        pm2_log_dir=str(root / "var/log/pm2"),
        pm2_home=str(root / "var/www"),
        web_root=str(root / "var/www"),
        backup_dir=str(root / "var/backups/webserver-setup"),
        log_file=str(root / "var/log/webserver-setup.log"),
        firewall_rules_dir=str(root / "etc/webserver-setup"),
        history_db=str(tmp_path / "history.db"),
        ssl_dir=str(root / "etc/ssl"),
        letsencrypt_live_dir=str(root / "etc/letsencrypt/live"),
        manage_ownership=False,
    )


@pytest.fixture
def answers():
    """Factory for RawAnswers with a root domain filled in"""
    def make(**overrides) -> RawAnswers:
        values = {"domain": "example.com"}
        values.update(overrides)
        return RawAnswers(**values)
    return make


class FakeCommands:
    """Stands in for subprocess.run and records every argv it is given"""

    def __init__(self):
        self.calls = []
        self.failures = []

    def fail(self, *prefix, returncode=1, stderr="failed", when=None):
        """Make commands starting with ``prefix`` fail, optionally only while ``when()`` holds"""
        self.failures.append((list(prefix), returncode, stderr, when))

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        for prefix, returncode, stderr, when in self.failures:
            if list(cmd[:len(prefix)]) == prefix and (when is None or when()):
                return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def ran(self, *prefix) -> bool:
        return any(call[:len(prefix)] == list(prefix) for call in self.calls)

    def index(self, *prefix) -> int:
        for position, call in enumerate(self.calls):
            if call[:len(prefix)] == list(prefix):
                return position
        raise ValueError(f"{prefix} never ran")


@pytest.fixture
def fake_commands():
    """Route every external command through a FakeCommands recorder"""
    fake = FakeCommands()
    with patch("webserver_setup.utils.subprocess.run", new=fake):
        yield fake

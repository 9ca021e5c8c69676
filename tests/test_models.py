# ABOUTME: Tests for data models and enums
# ABOUTME: Validates enum properties, RawAnswers parsing, AppConfig loading and RunReport status

import pytest
from datetime import datetime

from webserver_setup.errors import ActivationError
from webserver_setup.models import (
    ActivationOutcome, ActivationState, AppConfig, AppKind, ArtifactKind, ArtifactResult,
    Command, RawAnswers, RunReport, WebServer,
)
from webserver_setup.resolver import resolve


class TestEnums:
    """Test enum helpers"""

    def test_web_server_names(self):
        assert WebServer.NGINX.service_name == "nginx"
        assert WebServer.APACHE.service_name == "apache2"
        assert WebServer.APACHE.firewall_profile == "Apache Full"

    def test_app_kind_families(self):
        assert AppKind.REACT.is_frontend
        assert AppKind.REACT.is_node_based
        assert AppKind.NODEJS.is_node_based
        assert not AppKind.NODEJS.is_frontend
        assert not AppKind.PYTHON.is_node_based
        assert not AppKind.STATIC.is_frontend

    def test_artifact_kind_helpers(self):
        assert ArtifactKind.SCRIPT_LOGS.is_script
        assert not ArtifactKind.FIREWALL.is_script
        assert ArtifactKind.SSL_VHOST.is_vhost

    def test_failure_states(self):
        assert ActivationState.VALIDATION_FAILED.is_failure
        assert ActivationState.RELOAD_FAILED.is_failure
        assert not ActivationState.SKIPPED.is_failure
        assert not ActivationState.RELOADED.is_failure

    def test_activation_outcome_success(self):
        assert ActivationOutcome(ArtifactKind.HTTP_VHOST, "/x", ActivationState.RELOADED).success
        assert ActivationOutcome(ArtifactKind.ENV_FILE, "/x", ActivationState.SKIPPED).success
        assert not ActivationOutcome(ArtifactKind.HTTP_VHOST, "/x", ActivationState.ENABLE_FAILED).success


class TestCommand:
    """Test the structured command value"""

    def test_parse_and_render(self):
        command = Command.parse("gunicorn -w 4 'app:create_app()'")
        assert command.tool == "gunicorn"
        assert command.args == ("-w", "4", "app:create_app()")
        assert command.argv == ["gunicorn", "-w", "4", "app:create_app()"]
        assert str(command) == "gunicorn -w 4 'app:create_app()'"

    def test_parse_empty(self):
        with pytest.raises(ValueError):
            Command.parse("   ")


class TestRawAnswers:
    """Test building answers from answer files"""

    def test_from_dict_ignores_unknown_keys(self):
        raw = RawAnswers.from_dict({"domain": "example.com", "colour": "blue"})
        assert raw.domain == "example.com"
        assert not hasattr(raw, "colour")

    def test_from_dict_splits_subdomain_string(self):
        raw = RawAnswers.from_dict({"extra_subdomains": "api, admin ,,"})
        assert raw.extra_subdomains == ["api", "admin"]

    def test_defaults(self):
        raw = RawAnswers()
        assert raw.web_server == "nginx"
        assert raw.include_www is True
        assert raw.extra_subdomains == []


class TestAppConfig:
    """Test configuration loading"""

    def test_defaults(self):
        config = AppConfig()
        assert config.service_user == "www-data"
        assert config.php_version == "8.3"
        assert config.ssh_port == 22

    def test_from_yaml(self):
        config = AppConfig.from_yaml({
            "paths": {"web_root": "/srv/www", "backup_dir": "/srv/backups"},
            "nginx": {"sites_available": "/opt/nginx/available"},
            "service": {"user": "deploy", "manage_ownership": False},
            "supervisor": {"pm2_max_memory": "512M"},
            "ssl": {"self_signed_dir": "/opt/ssl"},
            "runtime": {"php_version": 8.2, "node_version": 22},
            "firewall": {"ssh_port": "2222"},
            "history": {"database": "/tmp/runs.db"},
        })
        assert config.web_root == "/srv/www"
        assert config.backup_dir == "/srv/backups"
        assert config.nginx_sites_available == "/opt/nginx/available"
        assert config.nginx_sites_enabled == "/etc/nginx/sites-enabled"
        assert config.service_user == "deploy"
        assert config.manage_ownership is False
        assert config.pm2_max_memory == "512M"
        assert config.ssl_dir == "/opt/ssl"
        assert config.php_version == "8.2"
        assert config.default_node_version == "22"
        assert config.ssh_port == 2222
        assert config.history_db == "/tmp/runs.db"

    def test_from_empty_yaml(self):
        assert AppConfig.from_yaml({}) == AppConfig()


class TestRunReport:
    """Test run status aggregation"""

    @pytest.fixture
    def report(self):
        spec = resolve(RawAnswers(domain="example.com", app_kind="static"))
        return RunReport(run_id="20260101_120000", spec=spec, log_file="/tmp/setup.log",
                         started_at=datetime(2026, 1, 1, 12, 0))

    def test_success(self, report):
        report.artifacts.append(ArtifactResult(ArtifactKind.HTTP_VHOST, "/etc/nginx/sites-available/example.com",
                                               ActivationState.RELOADED))
        assert report.success
        assert report.status == "success"

    def test_partial(self, report):
        report.errors.append(ActivationError("ssl_vhost", "/etc/nginx/sites-available/example.com",
                                             "nginx: [emerg] bad directive"))
        assert not report.success
        assert report.status == "partial"
        lines = report.summary_lines()
        assert any("ERROR [ssl_vhost]" in line and "bad directive" in line for line in lines)
        assert lines[-1] == "Operation log: /tmp/setup.log"

    def test_aborted(self, report):
        report.aborted = True
        assert report.status == "aborted"

    def test_result_for_returns_latest(self, report):
        report.artifacts.append(ArtifactResult(ArtifactKind.HTTP_VHOST, "/a", ActivationState.RELOAD_FAILED))
        report.artifacts.append(ArtifactResult(ArtifactKind.HTTP_VHOST, "/a", ActivationState.RELOADED))
        assert report.result_for(ArtifactKind.HTTP_VHOST).state is ActivationState.RELOADED
        assert report.result_for(ArtifactKind.SSL_VHOST) is None

    def test_artifact_result_to_dict(self):
        result = ArtifactResult(ArtifactKind.FIREWALL, "/etc/x.rules")
        assert result.to_dict() == {
            "kind": "firewall", "path": "/etc/x.rules", "state": "not_written",
            "backup_path": "", "message": "",
        }

# ABOUTME: Tests for the operational helper scripts
# ABOUTME: Validates fragment table coverage and script content per kind and process manager

from webserver_setup import host_scripts
from webserver_setup.models import AppConfig, AppKind, ArtifactKind, HELPER_SCRIPT_KINDS, ProcessManager
from webserver_setup.resolver import resolve
from webserver_setup.supervisor_config import pm2_command

CONFIG = AppConfig()


class TestFragmentTables:
    """Test that every kind and process manager has fragments"""

    def test_tables_are_total(self):
        assert set(host_scripts.DEPENDENCY_FRAGMENTS) == set(AppKind)
        for table in (host_scripts.RESTART_FRAGMENTS, host_scripts.LOG_FRAGMENTS, host_scripts.STATUS_FRAGMENTS):
            assert set(table) == set(ProcessManager)
        assert set(host_scripts.SCRIPT_RENDERERS) == set(HELPER_SCRIPT_KINDS)

    def test_every_script_renders_for_every_kind(self, answers):
        for kind in AppKind:
            spec = resolve(answers(app_kind=kind.value))
            for script_kind, renderer in host_scripts.SCRIPT_RENDERERS.items():
                content = renderer(spec, CONFIG)
                assert content.startswith("#!/bin/bash\n"), (kind, script_kind)


class TestScripts:
    """Test script contents"""

    def test_script_paths(self, answers):
        spec = resolve(answers(app_kind="static"))
        assert host_scripts.script_path(spec, ArtifactKind.SCRIPT_STATUS) == "/var/www/example.com/status.sh"

    def test_update_frontend(self, answers):
        spec = resolve(answers(app_kind="vue", package_manager="yarn", git_repo="https://github.com/o/a.git",
                               git_branch="prod"))
        content = host_scripts.render_update_script(spec, CONFIG)
        assert "git pull origin prod" in content
        assert "yarn install --frozen-lockfile || yarn install" in content
        assert "yarn run build" in content
        assert "pm2" not in content

    def test_update_standalone_copies_assets(self, answers):
        spec = resolve(answers(app_kind="nextjs", frontend_mode="standalone"))
        content = host_scripts.render_update_script(spec, CONFIG)
        assert "cp -r .next/static .next/standalone/.next/" in content
        assert "sudo -u www-data env PM2_HOME=/var/www/.pm2 pm2 restart example.com" in content

    def test_systemd_restart_and_logs(self, answers):
        spec = resolve(answers(app_kind="python", process_manager="systemd"))
        assert "sudo systemctl restart example-com" in host_scripts.render_restart_script(spec, CONFIG)
        assert "sudo journalctl -u example-com -n 50 --no-pager" in host_scripts.render_logs_script(spec, CONFIG)
        assert "venv/bin/pip install -r requirements.txt" in host_scripts.render_update_script(spec, CONFIG)

    def test_restart_reloads_web_server(self, answers):
        spec = resolve(answers(app_kind="php", web_server="apache"))
        content = host_scripts.render_restart_script(spec, CONFIG)
        assert "sudo systemctl reload apache2" in content
        assert "composer install" in host_scripts.render_update_script(spec, CONFIG)

    def test_status_mentions_certificate_for_letsencrypt(self, answers):
        spec = resolve(answers(ssl_mode="letsencrypt", ssl_email="ops@example.com"))
        assert "certbot certificates" in host_scripts.render_status_script(spec, CONFIG)
        assert "certbot" not in host_scripts.render_status_script(resolve(answers()), CONFIG)

    def test_pm2_commands_run_as_the_service_account(self, answers, host_config):
        spec = resolve(answers(app_kind="nodejs"), host_config)
        prefix = f"sudo -u www-data env PM2_HOME={host_config.pm2_home}/.pm2 pm2"
        assert f"{prefix} restart example.com\n" in host_scripts.render_restart_script(spec, host_config)
        assert f"{prefix} logs example.com --lines 50 --nostream\n" in host_scripts.render_logs_script(spec, host_config)
        assert f"{prefix} status example.com\n" in host_scripts.render_status_script(spec, host_config)
        assert f"{prefix} restart example.com\n" in host_scripts.render_update_script(spec, host_config)

    def test_scripts_and_supervisor_share_the_pm2_prefix(self, answers, host_config):
        host_config.service_user = "deploy"
        spec = resolve(answers(app_kind="nodejs"), host_config)
        prefix = " ".join(pm2_command(host_config))
        assert prefix.startswith("sudo -u deploy env PM2_HOME=")
        for renderer in host_scripts.SCRIPT_RENDERERS.values():
            content = renderer(spec, host_config)
            for line in content.splitlines():
                if "pm2 " in line and not line.startswith("echo"):
                    assert line.startswith(prefix), line

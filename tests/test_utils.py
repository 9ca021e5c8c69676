# ABOUTME: Tests for utility functions
# ABOUTME: Validates validators, command execution, retry logic, config loading and helpers

import pytest
import os
import logging
import subprocess
from datetime import datetime, timedelta
from unittest.mock import patch, MagicMock

from webserver_setup.utils import (
    validate_email, validate_domain, validate_git_url, validate_env_var,
    run_command, run_command_with_retry, retry_on_failure, load_config,
    setup_logging, run_timestamp, format_relative_date, read_yaml_file,
)
from webserver_setup.models import AppConfig


class TestValidation:
    """Test validation functions"""

    def test_validate_email(self):
        """Test email validation"""
        assert validate_email("test@example.com") == True
        assert validate_email("user.name@company.co.uk") == True
        assert validate_email("test+tag@example.com") == True

        assert validate_email("") == False
        assert validate_email(None) == False
        assert validate_email("not-an-email") == False
        assert validate_email("@example.com") == False
        assert validate_email("test@") == False

    def test_validate_domain(self):
        assert validate_domain("example.com") == True
        assert validate_domain("api.example.co.uk") == True
        assert validate_domain("my-site.io") == True

        assert validate_domain("localhost") == False
        assert validate_domain("-bad.com") == False
        assert validate_domain("bad-.com") == False
        assert validate_domain("spaces in.com") == False
        assert validate_domain("example.c") == False

    def test_validate_git_url(self):
        assert validate_git_url("https://github.com/org/app.git") == True
        assert validate_git_url("git@github.com:org/app.git") == True
        assert validate_git_url("ftp://example.com/app.git") == False
        assert validate_git_url("/srv/app") == False

    def test_validate_env_var(self):
        assert validate_env_var("API_KEY=abc") == True
        assert validate_env_var("EMPTY=") == True
        assert validate_env_var("1BAD=value") == False
        assert validate_env_var("NO_EQUALS") == False


class TestRunCommand:
    """Test command execution wrapper"""

    @patch('webserver_setup.utils.subprocess.run')
    def test_environment_is_merged(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["env"], 0, stdout="", stderr="")

        run_command(["env"], env={"NODE_ENV": "production"})

        env = mock_run.call_args.kwargs["env"]
        assert env["NODE_ENV"] == "production"
        assert "PATH" in env

    @patch('webserver_setup.utils.subprocess.run')
    def test_missing_executable(self, mock_run):
        mock_run.side_effect = FileNotFoundError("nginx")

        result = run_command(["nginx", "-t"])

        assert result.returncode == 127
        assert "command not found" in result.stderr

    @patch('webserver_setup.utils.subprocess.run')
    def test_output_appended_to_log_file(self, mock_run, tmp_path):
        mock_run.return_value = subprocess.CompletedProcess(
            ["nginx", "-t"], 1, stdout="", stderr="nginx: [emerg] unknown directive")
        log_file = tmp_path / "ops.log"

        result = run_command(["nginx", "-t"], log_file=str(log_file))

        assert result.returncode == 1
        content = log_file.read_text()
        assert "Command: nginx -t" in content
        assert "Exit Code: 1" in content
        assert "unknown directive" in content


class TestRetryLogic:
    """Test retry decorator and functions"""

    def test_retry_on_failure_eventual_success(self):
        """Test retry decorator with function that fails then succeeds"""
        call_count = 0

        @retry_on_failure(max_attempts=3, delay=0.01, backoff=2.0)
        def eventually_successful():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise Exception("Temporary failure")
            return "success"

        assert eventually_successful() == "success"
        assert call_count == 3

    def test_retry_on_failure_all_attempts_fail(self):
        """Test retry decorator when all attempts fail"""
        call_count = 0

        @retry_on_failure(max_attempts=3, delay=0.01, backoff=2.0)
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise Exception("Permanent failure")

        with pytest.raises(Exception) as exc_info:
            always_fails()

        assert "Permanent failure" in str(exc_info.value)
        assert call_count == 3

    def test_retry_only_listed_exceptions(self):
        call_count = 0

        @retry_on_failure(max_attempts=3, delay=0.01, exceptions=(ConnectionError,))
        def wrong_type():
            nonlocal call_count
            call_count += 1
            raise ValueError("not retried")

        with pytest.raises(ValueError):
            wrong_type()
        assert call_count == 1

    @patch('webserver_setup.utils.run_command')
    def test_run_command_with_retry_apt(self, mock_run_command):
        """Transient apt failures are retried"""
        mock_result_fail = MagicMock()
        mock_result_fail.returncode = 100
        mock_result_fail.stderr = "Could not resolve 'archive.ubuntu.com'"

        mock_result_success = MagicMock()
        mock_result_success.returncode = 0
        mock_result_success.stdout = "done"

        mock_run_command.side_effect = [mock_result_fail, mock_result_success]

        result = run_command_with_retry(["apt-get", "update"], max_attempts=3, delay=0.01)

        assert result.returncode == 0
        assert mock_run_command.call_count == 2

    @patch('webserver_setup.utils.run_command')
    def test_run_command_with_retry_permanent_failure(self, mock_run_command):
        """A non-transient failure is returned without retrying"""
        mock_result = MagicMock()
        mock_result.returncode = 100
        mock_result.stderr = "E: Unable to locate package nope"
        mock_run_command.return_value = mock_result

        result = run_command_with_retry(["apt-get", "install", "-y", "nope"], delay=0.01)

        assert result.returncode == 100
        assert mock_run_command.call_count == 1

    @patch('webserver_setup.utils.run_command')
    def test_run_command_with_retry_exhausted(self, mock_run_command):
        mock_result = MagicMock()
        mock_result.returncode = 1
        mock_result.stderr = "connection reset"
        mock_run_command.return_value = mock_result

        result = run_command_with_retry(["curl", "-fsSL", "https://example.com"], max_attempts=2, delay=0.01)

        assert result is mock_result
        assert mock_run_command.call_count == 2

    @patch('webserver_setup.utils.run_command')
    def test_run_command_with_retry_non_retriable(self, mock_run_command):
        """Test run_command_with_retry for non-retriable commands"""
        mock_result = MagicMock()
        mock_result.returncode = 0
        mock_run_command.return_value = mock_result

        result = run_command_with_retry(["nginx", "-t"], max_attempts=3)

        assert result.returncode == 0
        assert mock_run_command.call_count == 1


class TestConfigAndLogging:
    """Test configuration loading and log setup"""

    def test_load_config_from_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("service:\n  user: deploy\nfirewall:\n  ssh_port: 2222\n")

        config = load_config(str(config_file))

        assert config.service_user == "deploy"
        assert config.ssh_port == 2222

    def test_load_config_from_environment(self, tmp_path, monkeypatch):
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("paths:\n  web_root: /srv/www\n")
        monkeypatch.setenv("WEBSERVER_SETUP_CONFIG", str(config_file))

        assert load_config().web_root == "/srv/www"

    def test_load_config_missing_file(self, tmp_path):
        assert load_config(str(tmp_path / "absent.yaml")) == AppConfig()

    def test_read_yaml_file_invalid(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("key: [unclosed\n")
        assert read_yaml_file(str(bad)) == {}

    def test_setup_logging_writes_operation_log(self, tmp_path):
        config = AppConfig(log_file=str(tmp_path / "logs" / "setup.log"))

        log_file = setup_logging(config, console=False)
        logging.getLogger("webserver_setup.test").info("hello from the test")
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.flush()
            if isinstance(handler, logging.FileHandler):
                root.removeHandler(handler)
                handler.close()

        assert log_file == config.log_file
        with open(log_file) as f:
            assert "[INFO] hello from the test" in f.read()


class TestFormatting:
    """Test formatting helpers"""

    def test_run_timestamp(self):
        assert run_timestamp(datetime(2026, 3, 4, 5, 6, 7)) == "20260304_050607"

    def test_format_relative_date(self):
        now = datetime.now()
        assert format_relative_date(None) == ""
        assert format_relative_date(now) == "just now"
        assert format_relative_date(now - timedelta(minutes=5)) == "5 minutes ago"
        assert format_relative_date(now - timedelta(hours=1, minutes=1)) == "1 hour ago"
        assert format_relative_date(now - timedelta(days=3)) == "3 days ago"
        assert format_relative_date(now - timedelta(days=400)) == "1 year ago"

# ABOUTME: Utility functions for command execution, validation, logging and config loading
# ABOUTME: Provides common functionality used across the host setup engine

import re
import os
import subprocess
import logging
import time
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import List, Dict, Optional

import yaml
from dotenv import load_dotenv

from webserver_setup.models import AppConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DOMAIN_PATTERN = re.compile(
    r'^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?'
    r'(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*\.[a-zA-Z]{2,}$'
)
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
GIT_URL_PATTERN = re.compile(r'^(https?://|git@)')
ENV_VAR_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*=.*$')

# Commands that talk to the network and may fail transiently
RETRIABLE_COMMANDS = ['apt-get', 'git', 'curl', 'certbot', 'npm', 'pnpm', 'yarn', 'bun', 'pip']
TRANSIENT_MARKERS = ['network', 'timeout', 'timed out', 'connection', 'temporary', 'could not resolve']


class TransientCommandError(Exception):
    """A command failed with output that looks like a network hiccup"""


def retry_on_failure(max_attempts: int = 3, delay: float = 2.0, backoff: float = 2.0,
                     exceptions: tuple = (Exception,)):
    """Decorator to retry a function on failure with exponential backoff"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            current_delay = delay

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise

                    logger.warning(f"{func.__name__} attempt {attempt} failed: {e}. Retrying in {current_delay}s...")
                    time.sleep(current_delay)
                    current_delay *= backoff
                    attempt += 1
        return wrapper
    return decorator


def validate_email(email: str) -> bool:
    """Validate email format"""
    return bool(EMAIL_PATTERN.match(email or ""))


def validate_domain(domain: str) -> bool:
    """Validate a fully qualified domain name"""
    return bool(DOMAIN_PATTERN.match(domain or ""))


def validate_git_url(url: str) -> bool:
    """Accept http(s) and scp-style ssh remotes"""
    return bool(GIT_URL_PATTERN.match(url or ""))


def validate_env_var(entry: str) -> bool:
    return bool(ENV_VAR_PATTERN.match(entry or ""))


def run_command(cmd: List[str], cwd: str = None, env: Dict[str, str] = None,
                capture_output: bool = True, log_file: str = None,
                input_text: str = None) -> subprocess.CompletedProcess:
    """Run a command and return the result with logging and timing

    Args:
        cmd: Command as list of strings
        cwd: Working directory for command
        env: Environment variables to add
        capture_output: Whether to capture stdout/stderr
        log_file: Optional file to append full command output to
        input_text: Optional text fed to the command's stdin

    Returns:
        subprocess.CompletedProcess. A missing executable is reported as
        exit code 127 instead of raising, the way a shell reports it.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    command_line = ' '.join(cmd)
    start_time = time.perf_counter()
    start_timestamp = time.strftime(LOG_DATE_FORMAT)

    logger.debug(f"Starting command: {command_line} in {cwd or 'current directory'}")

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=full_env,
            capture_output=capture_output,
            input=input_text,
            text=True
        )
    except FileNotFoundError as e:
        result = subprocess.CompletedProcess(cmd, 127, stdout="", stderr=f"{cmd[0]}: command not found ({e})")

    duration = time.perf_counter() - start_time

    if log_file and capture_output:
        try:
            with open(log_file, 'a') as f:
                f.write(f"\n{'=' * 80}\n")
                f.write(f"Command: {command_line}\n")
                f.write(f"Directory: {cwd or 'current'}\n")
                f.write(f"Started: {start_timestamp}\n")
                f.write(f"Duration: {duration:.3f}s\n")
                f.write(f"Exit Code: {result.returncode}\n")
                f.write(f"{'=' * 80}\n")
                if result.stdout:
                    f.write("STDOUT:\n")
                    f.write(result.stdout)
                    f.write("\n")
                if result.stderr:
                    f.write("STDERR:\n")
                    f.write(result.stderr)
                    f.write("\n")
        except OSError as e:
            logger.warning(f"Failed to write to log file {log_file}: {e}")

    if result.returncode == 0:
        if duration > 5.0:
            logger.info(f"Command completed in {duration:.3f}s: {command_line}")
        else:
            logger.debug(f"Command completed in {duration:.3f}s: {command_line}")
    else:
        logger.error(f"Command failed after {duration:.3f}s with exit code {result.returncode}: {command_line}")
        if result.stderr:
            logger.error(f"STDERR output:\n{result.stderr}")

    return result


def run_command_with_retry(cmd: List[str], cwd: str = None, env: Dict[str, str] = None,
                           capture_output: bool = True, max_attempts: int = 3,
                           log_file: str = None, delay: float = 2.0) -> subprocess.CompletedProcess:
    """Run a command with retry logic for transient failures"""
    if not cmd or cmd[0] not in RETRIABLE_COMMANDS:
        return run_command(cmd, cwd, env, capture_output, log_file)

    last_result = {}

    @retry_on_failure(max_attempts=max_attempts, delay=delay, exceptions=(TransientCommandError,))
    def _run_with_retry():
        result = run_command(cmd, cwd, env, capture_output, log_file)
        last_result['value'] = result
        if result.returncode != 0:
            error_text = (result.stderr or "").lower()
            if any(marker in error_text for marker in TRANSIENT_MARKERS):
                raise TransientCommandError(result.stderr.strip())
        return result

    try:
        return _run_with_retry()
    except TransientCommandError:
        # Retries exhausted, hand back the last failed result
        return last_result['value']


def ensure_directory(path: str) -> Path:
    """Ensure directory exists and return Path object"""
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj


def read_yaml_file(file_path: str) -> Dict:
    """Read and parse YAML file"""
    try:
        with open(file_path, 'r') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read YAML file {file_path}: {e}")
        return {}


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load application configuration

    Reads ``.env`` first so ``WEBSERVER_SETUP_CONFIG`` can point at an
    alternative YAML file; a missing file yields the defaults.
    """
    load_dotenv()
    path = config_path or os.getenv("WEBSERVER_SETUP_CONFIG", "config.yaml")
    if os.path.exists(path):
        return AppConfig.from_yaml(read_yaml_file(path))
    logger.debug(f"No config file at {path}, using defaults")
    return AppConfig()


def setup_logging(config: AppConfig, level: int = logging.INFO, console: bool = True) -> str:
    """Configure the console and append-only operation log; returns the log path"""
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())

    log_file = config.log_file
    try:
        ensure_directory(os.path.dirname(log_file) or ".")
        handlers.append(logging.FileHandler(log_file, mode='a'))
    except OSError as e:
        # Non-root plan runs cannot write /var/log
        logger.warning(f"Cannot open operation log {log_file}: {e}")

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT,
                        handlers=handlers, force=True)
    return log_file


def run_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp naming one run's backup directory"""
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


def format_relative_date(date: Optional[datetime]) -> str:
    """Format a date as relative time (e.g., '2 hours ago', '3 days ago')"""
    if not date:
        return ""

    now = datetime.now()
    if date.tzinfo:
        date = date.replace(tzinfo=None)

    diff = now - date
    seconds = diff.total_seconds()

    if seconds < 60:
        return "just now"
    if seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    if diff.days < 7:
        return f"{diff.days} day{'s' if diff.days != 1 else ''} ago"
    if diff.days < 30:
        weeks = diff.days // 7
        return f"{weeks} week{'s' if weeks != 1 else ''} ago"
    if diff.days < 365:
        months = diff.days // 30
        return f"{months} month{'s' if months != 1 else ''} ago"
    years = diff.days // 365
    return f"{years} year{'s' if years != 1 else ''} ago"

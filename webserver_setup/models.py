# ABOUTME: Data models for host provisioning runs and application configuration
# ABOUTME: Defines RawAnswers, the resolved DeploymentSpec, artifacts, results and AppConfig

import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Tuple
from enum import Enum


class WebServer(str, Enum):
    """Supported web servers"""
    APACHE = "apache"
    NGINX = "nginx"

    @property
    def service_name(self) -> str:
        """Name of the systemd service and log directory"""
        return "apache2" if self is WebServer.APACHE else "nginx"

    @property
    def firewall_profile(self) -> str:
        """UFW application profile covering the ports the server binds"""
        return "Apache Full" if self is WebServer.APACHE else "Nginx Full"


class AppKind(str, Enum):
    """Application shapes the host can be provisioned for"""
    NODEJS = "nodejs"
    PYTHON = "python"
    PHP = "php"
    NEXTJS = "nextjs"
    NUXTJS = "nuxtjs"
    REACT = "react"
    VUE = "vue"
    ANGULAR = "angular"
    SVELTE = "svelte"
    STATIC = "static"
    PROXY = "proxy"

    @property
    def is_frontend(self) -> bool:
        return self in FRONTEND_KINDS

    @property
    def is_node_based(self) -> bool:
        return self is AppKind.NODEJS or self in FRONTEND_KINDS


FRONTEND_KINDS = frozenset({
    AppKind.NEXTJS, AppKind.NUXTJS, AppKind.REACT,
    AppKind.VUE, AppKind.ANGULAR, AppKind.SVELTE,
})


class FrontendMode(str, Enum):
    """Deployment mode of a frontend framework"""
    NONE = "none"
    SSR = "ssr"
    STATIC = "static"
    SPA = "spa"
    STANDALONE = "standalone"


class PackageManager(str, Enum):
    NPM = "npm"
    PNPM = "pnpm"
    YARN = "yarn"
    BUN = "bun"


class SslMode(str, Enum):
    NONE = "none"
    LETSENCRYPT = "letsencrypt"
    SELF_SIGNED = "selfsigned"
    EXISTING = "existing"


class ProcessManager(str, Enum):
    NONE = "none"
    PM2 = "pm2"
    SYSTEMD = "systemd"


class Database(str, Enum):
    NONE = "none"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"


class ArtifactKind(str, Enum):
    """Every file this tool generates and activates on the host"""
    HTTP_VHOST = "http_vhost"
    SSL_VHOST = "ssl_vhost"
    SUPERVISOR = "supervisor"
    FIREWALL = "firewall"
    ENV_FILE = "env_file"
    SCRIPT_UPDATE = "script_update"
    SCRIPT_RESTART = "script_restart"
    SCRIPT_LOGS = "script_logs"
    SCRIPT_STATUS = "script_status"

    @property
    def is_script(self) -> bool:
        return self in HELPER_SCRIPT_KINDS

    @property
    def is_vhost(self) -> bool:
        return self in (ArtifactKind.HTTP_VHOST, ArtifactKind.SSL_VHOST)


HELPER_SCRIPT_KINDS = (
    ArtifactKind.SCRIPT_UPDATE,
    ArtifactKind.SCRIPT_RESTART,
    ArtifactKind.SCRIPT_LOGS,
    ArtifactKind.SCRIPT_STATUS,
)


class ActivationState(str, Enum):
    """States an artifact passes through while it is made live"""
    WRITTEN = "written"
    ENABLED = "enabled"
    VALIDATED = "validated"
    RELOADED = "reloaded"
    SKIPPED = "skipped"
    ENABLE_FAILED = "enable_failed"
    VALIDATION_FAILED = "validation_failed"
    RELOAD_FAILED = "reload_failed"

    @property
    def is_failure(self) -> bool:
        return self in (
            ActivationState.ENABLE_FAILED,
            ActivationState.VALIDATION_FAILED,
            ActivationState.RELOAD_FAILED,
        )


@dataclass(frozen=True)
class Command:
    """A program invocation as a tool plus its argument vector"""
    tool: str
    args: Tuple[str, ...] = ()

    @property
    def argv(self) -> List[str]:
        return [self.tool, *self.args]

    @classmethod
    def parse(cls, command_line: str) -> 'Command':
        """Split an operator-supplied command line into a Command"""
        parts = shlex.split(command_line)
        if not parts:
            raise ValueError("Command line is empty")
        return cls(parts[0], tuple(parts[1:]))

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class GitSource:
    repo_url: str
    branch: str = "main"


@dataclass(frozen=True)
class SslSettings:
    """TLS settings; certificate paths are resolved for every mode except none"""
    mode: SslMode = SslMode.NONE
    email: str = ""
    cert_path: str = ""
    key_path: str = ""

    @property
    def enabled(self) -> bool:
        return self.mode is not SslMode.NONE


@dataclass(frozen=True)
class ProcessSettings:
    """Long-running process definition for the supervisor"""
    manager: ProcessManager = ProcessManager.NONE
    app_name: str = ""
    service_name: str = ""
    start_command: Optional[Command] = None
    working_dir: str = ""
    exec_mode: str = "fork"
    instances: str = "1"
    environment: Tuple[Tuple[str, str], ...] = ()

    @property
    def enabled(self) -> bool:
        return self.manager is not ProcessManager.NONE


@dataclass(frozen=True)
class DeploymentSpec:
    """The resolved, validated record of every choice for one run.

    Built only by ``resolver.resolve``; every renderer reads it and none
    recomputes port, domain or aliases on its own.
    """
    web_server: WebServer
    app_kind: AppKind
    frontend_mode: FrontendMode
    package_manager: PackageManager
    domain: str
    aliases: Tuple[str, ...]
    app_root: str
    needs_proxy: bool
    port: Optional[int]
    doc_root: Optional[str]
    build_output: Optional[str] = None
    git: Optional[GitSource] = None
    ssl: SslSettings = field(default_factory=SslSettings)
    process: ProcessSettings = field(default_factory=ProcessSettings)
    build_command: Optional[Command] = None
    install_commands: Tuple[Command, ...] = ()
    database: Database = Database.NONE
    firewall_enabled: bool = True
    node_version: str = "20"
    build_tool: str = ""
    php_version: str = ""
    install_php_extensions: bool = True
    api_url: str = ""
    env_vars: Tuple[str, ...] = ()
    ssh_port: int = 22

    @property
    def server_names(self) -> Tuple[str, ...]:
        """Primary domain followed by its aliases"""
        return (self.domain,) + self.aliases

    @property
    def upstream_name(self) -> str:
        return f"{self.domain.replace('.', '_')}_backend"

    @property
    def php_fpm_socket(self) -> str:
        return f"/run/php/php{self.php_version}-fpm.sock"

    def to_dict(self) -> dict:
        """Convert spec to dictionary for JSON serialization"""
        return {
            "web_server": self.web_server.value,
            "app_kind": self.app_kind.value,
            "frontend_mode": self.frontend_mode.value,
            "package_manager": self.package_manager.value,
            "domain": self.domain,
            "aliases": list(self.aliases),
            "app_root": self.app_root,
            "needs_proxy": self.needs_proxy,
            "port": self.port,
            "doc_root": self.doc_root,
            "build_output": self.build_output,
            "git": {"repo_url": self.git.repo_url, "branch": self.git.branch} if self.git else None,
            "ssl": {
                "mode": self.ssl.mode.value,
                "email": self.ssl.email,
                "cert_path": self.ssl.cert_path,
                "key_path": self.ssl.key_path,
            },
            "process": {
                "manager": self.process.manager.value,
                "app_name": self.process.app_name,
                "service_name": self.process.service_name,
                "start_command": str(self.process.start_command) if self.process.start_command else "",
                "working_dir": self.process.working_dir,
                "exec_mode": self.process.exec_mode,
                "instances": self.process.instances,
                "environment": dict(self.process.environment),
            },
            "build_command": str(self.build_command) if self.build_command else "",
            "install_commands": [str(cmd) for cmd in self.install_commands],
            "database": self.database.value,
            "firewall_enabled": self.firewall_enabled,
            "node_version": self.node_version,
            "php_version": self.php_version,
        }


@dataclass
class RawAnswers:
    """Operator selections as collected by a UI or answers file, before resolution"""
    web_server: str = "nginx"
    app_kind: str = "static"
    domain: str = ""
    frontend_mode: Optional[str] = None
    package_manager: str = "npm"
    node_version: Optional[str] = None
    build_tool: Optional[str] = None
    angular_project: str = "app"
    include_www: bool = True
    extra_subdomains: List[str] = field(default_factory=list)
    app_root: Optional[str] = None
    port: Optional[int] = None
    git_repo: Optional[str] = None
    git_branch: str = "main"
    php_version: Optional[str] = None
    php_doc_root: str = "public"
    install_php_extensions: bool = True
    process_manager: Optional[str] = None
    app_name: Optional[str] = None
    start_command: Optional[str] = None
    database: str = "none"
    firewall_enabled: bool = True
    ssl_mode: str = "none"
    ssl_email: str = ""
    ssl_cert_path: str = ""
    ssl_key_path: str = ""
    api_url: str = ""
    env_vars: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'RawAnswers':
        """Create answers from a flat dictionary, ignoring unknown keys"""
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in data.items() if key in known}
        if isinstance(values.get("extra_subdomains"), str):
            values["extra_subdomains"] = [
                part.strip() for part in values["extra_subdomains"].split(",") if part.strip()
            ]
        return cls(**values)


@dataclass(frozen=True)
class Artifact:
    """A rendered file: destination, content and permission mode"""
    kind: ArtifactKind
    path: str
    content: str
    mode: int = 0o644
    service_owned: bool = False
    create_only: bool = False


@dataclass
class TaskResult:
    """Result of an external command or collaborator call"""
    success: bool
    output: str
    error: str = ""
    execution_time: float = 0.0


@dataclass
class WriteOutcome:
    """What the writer did with one artifact"""
    artifact: Artifact
    backup_path: Optional[str] = None
    previous_content: Optional[str] = None
    changed: bool = True
    skipped: bool = False


@dataclass
class ActivationOutcome:
    kind: ArtifactKind
    path: str
    state: ActivationState
    diagnostic: str = ""

    @property
    def success(self) -> bool:
        return self.state in (ActivationState.RELOADED, ActivationState.SKIPPED)


@dataclass
class ArtifactResult:
    """Final state of one artifact in a run"""
    kind: ArtifactKind
    path: str
    state: Optional[ActivationState] = None
    backup_path: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "state": self.state.value if self.state else "not_written",
            "backup_path": self.backup_path or "",
            "message": self.message,
        }


@dataclass
class AppConfig:
    """Application configuration settings"""
    # Web server layout
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    apache_sites_available: str = "/etc/apache2/sites-available"
    apache_sites_enabled: str = "/etc/apache2/sites-enabled"
    disable_default_site: bool = True

    # Process supervision
    systemd_unit_dir: str = "/etc/systemd/system"
    pm2_log_dir: str = "/var/log/pm2"
    pm2_home: str = "/var/www"
    pm2_max_memory: str = "1G"

    # Ownership
    service_user: str = "www-data"
    service_group: str = "www-data"
    manage_ownership: bool = True

    # Paths
    web_root: str = "/var/www"
    backup_dir: str = "/var/backups/webserver-setup"
    log_file: str = "/var/log/webserver-setup.log"
    firewall_rules_dir: str = "/etc/webserver-setup"
    history_db: str = "webserver_setup.db"

    # TLS
    ssl_dir: str = "/etc/ssl"
    letsencrypt_live_dir: str = "/etc/letsencrypt/live"

    # Runtimes
    php_version: str = "8.3"
    default_node_version: str = "20"
    ssh_port: int = 22

    @classmethod
    def from_yaml(cls, data: dict) -> 'AppConfig':
        """Create config from YAML data"""
        config = cls()

        if 'paths' in data:
            paths = data['paths']
            config.web_root = paths.get('web_root', config.web_root)
            config.backup_dir = paths.get('backup_dir', config.backup_dir)
            config.log_file = paths.get('log_file', config.log_file)
            config.firewall_rules_dir = paths.get('firewall_rules_dir', config.firewall_rules_dir)

        if 'nginx' in data:
            config.nginx_sites_available = data['nginx'].get('sites_available', config.nginx_sites_available)
            config.nginx_sites_enabled = data['nginx'].get('sites_enabled', config.nginx_sites_enabled)

        if 'apache' in data:
            config.apache_sites_available = data['apache'].get('sites_available', config.apache_sites_available)
            config.apache_sites_enabled = data['apache'].get('sites_enabled', config.apache_sites_enabled)

        if 'service' in data:
            service = data['service']
            config.service_user = service.get('user', config.service_user)
            config.service_group = service.get('group', config.service_group)
            config.manage_ownership = service.get('manage_ownership', config.manage_ownership)
            config.disable_default_site = service.get('disable_default_site', config.disable_default_site)

        if 'supervisor' in data:
            supervisor = data['supervisor']
            config.systemd_unit_dir = supervisor.get('systemd_unit_dir', config.systemd_unit_dir)
            config.pm2_log_dir = supervisor.get('pm2_log_dir', config.pm2_log_dir)
            config.pm2_home = supervisor.get('pm2_home', config.pm2_home)
            config.pm2_max_memory = supervisor.get('pm2_max_memory', config.pm2_max_memory)

        if 'ssl' in data:
            config.ssl_dir = data['ssl'].get('self_signed_dir', config.ssl_dir)
            config.letsencrypt_live_dir = data['ssl'].get('letsencrypt_live_dir', config.letsencrypt_live_dir)

        if 'runtime' in data:
            config.php_version = str(data['runtime'].get('php_version', config.php_version))
            config.default_node_version = str(data['runtime'].get('node_version', config.default_node_version))

        if 'firewall' in data:
            config.ssh_port = int(data['firewall'].get('ssh_port', config.ssh_port))

        if 'history' in data:
            config.history_db = data['history'].get('database', config.history_db)

        return config


@dataclass
class RunRecord:
    """A past run as stored in the run history"""
    id: str
    domain: str
    web_server: str
    app_kind: str
    status: str
    started_at: datetime
    spec: Dict = field(default_factory=dict)
    artifacts: List[Dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Outcome of one orchestrated run"""
    run_id: str
    spec: DeploymentSpec
    log_file: str
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    artifacts: List[ArtifactResult] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def success(self) -> bool:
        return not self.aborted and not self.errors

    @property
    def status(self) -> str:
        if self.aborted:
            return "aborted"
        return "success" if not self.errors else "partial"

    def result_for(self, kind: ArtifactKind) -> Optional[ArtifactResult]:
        for result in reversed(self.artifacts):
            if result.kind is kind:
                return result
        return None

    def summary_lines(self) -> List[str]:
        lines = [f"Run {self.run_id} for {self.spec.domain}: {self.status}"]
        for result in self.artifacts:
            state = result.state.value if result.state else "not written"
            lines.append(f"  {result.kind.value:<15} {state:<18} {result.path}")
        for error in self.errors:
            kind = getattr(error, "kind", type(error).__name__)
            path = getattr(error, "path", "")
            diagnostic = getattr(error, "diagnostic", None) or str(error)
            lines.append(f"  ERROR [{kind}] {path}: {diagnostic} (see {self.log_file})")
        for warning in self.warnings:
            lines.append(f"  WARNING {warning}")
        lines.append(f"Operation log: {self.log_file}")
        return lines

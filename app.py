# ABOUTME: Streamlit web UI for webserver-setup
# ABOUTME: Collects deployment answers, previews the generated configuration and runs provisioning

import os
import time
import logging
from typing import List

import streamlit as st
import pandas as pd
from dotenv import load_dotenv

from webserver_setup.database import RunHistory
from webserver_setup.errors import ValidationError
from webserver_setup.models import (
    AppKind, ArtifactKind, Database, PackageManager, ProcessManager, RawAnswers, SslMode, WebServer,
)
from webserver_setup.orchestrator import HostOrchestrator
from webserver_setup.renderer import render_all
from webserver_setup.resolver import BUILD_TOOLS, LEGAL_FRONTEND_MODES, NODE_VERSIONS, resolve
from webserver_setup.utils import (
    format_relative_date, load_config, setup_logging, validate_domain, validate_email,
)

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Page configuration
st.set_page_config(
    page_title="Web Server Setup",
    page_icon="🌐",
    layout="wide",
    initial_sidebar_state="expanded"
)

KIND_LABELS = {
    AppKind.NODEJS: "Node.js application",
    AppKind.PYTHON: "Python (ASGI/WSGI) application",
    AppKind.PHP: "PHP application",
    AppKind.NEXTJS: "Next.js",
    AppKind.NUXTJS: "Nuxt",
    AppKind.REACT: "React",
    AppKind.VUE: "Vue",
    AppKind.ANGULAR: "Angular",
    AppKind.SVELTE: "SvelteKit",
    AppKind.STATIC: "Static site",
    AppKind.PROXY: "Reverse proxy to an existing service",
}

STATE_ICONS = {
    "reloaded": "🟢",
    "skipped": "⚪",
    "enable_failed": "❌",
    "validation_failed": "❌",
    "reload_failed": "🟠",
    "not_written": "❌",
}


@st.cache_resource
def get_config():
    """Load application configuration once per server process"""
    config = load_config()
    setup_logging(config, console=False)
    return config


@st.cache_resource
def get_history():
    return RunHistory(get_config().history_db)


def collect_answers() -> RawAnswers:
    """Render the answers form and return the operator's selections"""
    st.markdown("### 1. Server and application")
    col1, col2, col3 = st.columns(3)
    with col1:
        web_server = st.radio("Web server", [s.value for s in WebServer], index=1, horizontal=True)
    with col2:
        app_kind = st.selectbox("Application type", list(KIND_LABELS),
                                format_func=lambda kind: KIND_LABELS[kind])
    with col3:
        domain = st.text_input("Domain", placeholder="example.com")

    answers = RawAnswers(web_server=web_server, app_kind=app_kind.value, domain=domain.strip())

    col1, col2 = st.columns(2)
    with col1:
        answers.include_www = st.checkbox("Also serve www.<domain>", value=True,
                                          help="Ignored for subdomains")
    with col2:
        extras = st.text_input("Extra subdomains (comma-separated)", placeholder="api, admin")
        answers.extra_subdomains = [part.strip() for part in extras.split(",") if part.strip()]

    if app_kind in LEGAL_FRONTEND_MODES:
        modes = [mode.value for mode in LEGAL_FRONTEND_MODES[app_kind]]
        answers.frontend_mode = st.radio("Deployment mode", modes, horizontal=True)
    if app_kind in BUILD_TOOLS:
        answers.build_tool = st.radio("Build tool", BUILD_TOOLS[app_kind], horizontal=True)
    if app_kind is AppKind.ANGULAR:
        answers.angular_project = st.text_input("Angular project name", value="app")

    st.markdown("### 2. Runtime")
    col1, col2, col3 = st.columns(3)
    if app_kind.is_node_based:
        with col1:
            answers.package_manager = st.selectbox("Package manager", [m.value for m in PackageManager])
        with col2:
            answers.node_version = st.selectbox("Node.js version", NODE_VERSIONS, index=1)
    if app_kind is AppKind.PHP:
        with col1:
            answers.php_version = st.text_input("PHP version", value=get_config().php_version)
        with col2:
            answers.php_doc_root = st.text_input("Document root below the app", value="public")
        with col3:
            answers.install_php_extensions = st.checkbox("Install common extensions", value=True)

    col1, col2 = st.columns(2)
    with col1:
        answers.app_root = st.text_input(
            "Application directory", placeholder=f"{get_config().web_root}/<domain>") or None
    with col2:
        port = st.number_input("Application port (0 = default)", min_value=0, max_value=65535, value=0)
        answers.port = int(port) or None

    st.markdown("### 3. Source and process")
    col1, col2 = st.columns(2)
    with col1:
        answers.git_repo = st.text_input("Git repository (optional)",
                                         placeholder="https://github.com/org/app.git") or None
    with col2:
        answers.git_branch = st.text_input("Branch", value="main")

    if app_kind not in (AppKind.STATIC, AppKind.PHP, AppKind.PROXY):
        col1, col2, col3 = st.columns(3)
        with col1:
            manager = st.selectbox("Process manager", ["default"] + [m.value for m in ProcessManager])
            answers.process_manager = None if manager == "default" else manager
        with col2:
            answers.app_name = st.text_input("Process name", placeholder="derived from domain") or None
        with col3:
            answers.start_command = st.text_input("Start command",
                                                  placeholder="derived from app type") or None

    st.markdown("### 4. Database, firewall and TLS")
    col1, col2, col3 = st.columns(3)
    with col1:
        answers.database = st.selectbox("Database", [d.value for d in Database])
    with col2:
        answers.firewall_enabled = st.checkbox("Configure UFW firewall", value=True)
    with col3:
        answers.ssl_mode = st.selectbox("TLS certificate", [m.value for m in SslMode])

    if answers.ssl_mode == SslMode.LETSENCRYPT.value:
        answers.ssl_email = st.text_input("Let's Encrypt e-mail")
    elif answers.ssl_mode == SslMode.EXISTING.value:
        col1, col2 = st.columns(2)
        with col1:
            answers.ssl_cert_path = st.text_input("Certificate (fullchain) path")
        with col2:
            answers.ssl_key_path = st.text_input("Private key path")

    if app_kind.is_node_based or app_kind is AppKind.PYTHON:
        with st.expander("Environment"):
            answers.api_url = st.text_input("API URL exposed to the app (optional)")
            env_text = st.text_area("Extra variables, one KEY=value per line")
            answers.env_vars = [line.strip() for line in env_text.splitlines() if line.strip()]

    return answers


def quick_checks(answers: RawAnswers) -> List[str]:
    """Early form feedback before full resolution"""
    errors = []
    if not answers.domain:
        errors.append("Domain is required")
    elif not validate_domain(answers.domain.lower()):
        errors.append("Domain is not a valid hostname")
    if answers.ssl_mode == SslMode.LETSENCRYPT.value and not validate_email(answers.ssl_email):
        errors.append("A valid e-mail is required for Let's Encrypt")
    return errors


def show_plan(spec, config):
    """Show the resolved spec and every artifact that would be written"""
    st.markdown("### 📋 Resolved deployment")
    summary = spec.to_dict()
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Server names", len(spec.server_names))
    with col2:
        st.metric("Reverse proxy", f":{spec.port}" if spec.needs_proxy else "no")
    with col3:
        st.metric("Process manager", spec.process.manager.value)
    with col4:
        st.metric("TLS", spec.ssl.mode.value)
    with st.expander("All resolved settings"):
        st.json(summary)

    st.markdown("### 📄 Generated files")
    for artifact in render_all(spec, config):
        with st.expander(f"{artifact.kind.value}: {artifact.path} (mode {artifact.mode:o})"):
            language = "bash" if artifact.kind.is_script else None
            st.code(artifact.content, language=language)


def run_provisioning(spec, config, install_packages: bool):
    orchestrator = HostOrchestrator(config, history=get_history())

    with st.status("Provisioning host...", expanded=True) as status:
        def update_progress(step: str, detail: str = ""):
            status.update(label=step, state="running")
            if detail:
                st.write(f"✓ {detail}")

        report = orchestrator.run(spec, progress_callback=update_progress,
                                  install_packages=install_packages)

        if report.success:
            status.update(label="Host provisioned", state="complete")
        else:
            status.update(label=f"Run {report.status}", state="error")

    show_report(report.run_id, [result.to_dict() for result in report.artifacts],
                [str(error) for error in report.errors], report.warnings)
    if report.success:
        https = report.result_for(ArtifactKind.SSL_VHOST)
        scheme = "https" if https and https.state and not https.state.is_failure else "http"
        st.success(f"{spec.domain} is live at {scheme}://{spec.domain}")
        st.balloons()
    st.caption(f"Operation log: {report.log_file}")


def show_report(run_id: str, artifacts: List[dict], errors: List[str], warnings: List[str] = ()):
    st.markdown(f"#### Run `{run_id}`")
    if artifacts:
        df = pd.DataFrame(artifacts)
        df.insert(0, "", df["state"].map(lambda state: STATE_ICONS.get(state, "⚪")))
        st.dataframe(df, use_container_width=True, hide_index=True)
    for error in errors:
        st.error(error)
    for warning in warnings:
        st.warning(warning)


def show_history():
    """Past runs from the run history database"""
    history = get_history()
    col1, col2 = st.columns([3, 1])
    with col1:
        domain = st.text_input("Domain", placeholder="Filter by domain...")
    with col2:
        limit = st.number_input("Runs", min_value=5, max_value=200, value=20, step=5)

    runs = history.list_runs(domain=domain.strip() or None, limit=int(limit))
    if not runs:
        st.info("No runs recorded yet")
        return

    df = pd.DataFrame([{
        "Run": run.id,
        "Domain": run.domain,
        "Server": run.web_server,
        "App": run.app_kind,
        "Status": run.status,
        "Started": format_relative_date(run.started_at),
        "Errors": len(run.errors),
    } for run in runs])
    st.dataframe(df, use_container_width=True, hide_index=True)

    selected = st.selectbox("Inspect run", [run.id for run in runs])
    record = history.get_run(selected)
    if record:
        show_report(record.id, record.artifacts, record.errors)
        with st.expander("Deployment settings"):
            st.json(record.spec)


def show_sidebar(config):
    st.sidebar.markdown("## ⚙️ Host settings")
    st.sidebar.text(f"Web root: {config.web_root}")
    st.sidebar.text(f"Service user: {config.service_user}")
    st.sidebar.text(f"Backups: {config.backup_dir}")
    st.sidebar.text(f"Log: {config.log_file}")
    if os.geteuid() != 0:
        st.sidebar.warning("Not running as root: provisioning is disabled, previews still work")


def main():
    """Main application"""
    st.title("🌐 Web Server Setup")
    config = get_config()
    show_sidebar(config)

    tab1, tab2 = st.tabs(["🛠️ New deployment", "📜 History"])

    with tab1:
        answers = collect_answers()
        errors = quick_checks(answers)
        if errors:
            for error in errors:
                st.info(error)
            return

        try:
            spec = resolve(answers, config)
        except ValidationError as e:
            st.error(f"{e.field}: {e.message}")
            return

        show_plan(spec, config)

        st.divider()
        install_packages = st.checkbox("Install system packages", value=True)
        if st.button("🚀 Provision host", type="primary", disabled=os.geteuid() != 0):
            start = time.perf_counter()
            run_provisioning(spec, config, install_packages)
            st.caption(f"Finished in {time.perf_counter() - start:.1f}s")

    with tab2:
        show_history()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
# ABOUTME: Command-line entry point for unattended host provisioning from a YAML answers file
# ABOUTME: plan renders artifacts without side effects, apply runs the full provisioning

import argparse
import os
import sys
import logging
from pathlib import Path

from webserver_setup.database import RunHistory, resolve_db_path
from webserver_setup.errors import ValidationError
from webserver_setup.models import ArtifactKind, RawAnswers
from webserver_setup.orchestrator import HostOrchestrator
from webserver_setup.renderer import render_all
from webserver_setup.resolver import resolve
from webserver_setup.utils import format_relative_date, load_config, read_yaml_file, setup_logging

logger = logging.getLogger(__name__)


def load_answers(path: str) -> RawAnswers:
    data = read_yaml_file(path)
    if not data:
        raise ValidationError("answers", f"{path} is empty or unreadable")
    return RawAnswers.from_dict(data)


def print_changes(spec, config):
    """Show how this spec differs from the last successful run for the domain"""
    # plan has no side effects, so a missing history database is not created
    if not os.path.exists(resolve_db_path(config.history_db)):
        return
    changes = RunHistory(config.history_db).changes_since_last_success(spec)
    if changes is None:
        print(f"No successful run recorded for {spec.domain}\n")
    elif not changes:
        print(f"Unchanged since the last successful run for {spec.domain}\n")
    else:
        print(f"Changes since the last successful run for {spec.domain}:")
        for change in changes:
            print(f"  {change}")
        print()


def plan(spec, config, output_dir: str = None):
    """Print or write every artifact the deployment produces"""
    print_changes(spec, config)

    for artifact in render_all(spec, config):
        if output_dir:
            # SSL and HTTP vhosts share a host path, keep both apart here
            target = Path(output_dir) / artifact.kind.value / Path(artifact.path).name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(artifact.content)
            os.chmod(target, artifact.mode)
            print(f"{artifact.kind.value:<15} {artifact.path} -> {target}")
        else:
            print(f"==> {artifact.kind.value}: {artifact.path} (mode {artifact.mode:o})")
            print(artifact.content)


def apply(spec, config, skip_install: bool = False) -> int:
    history = RunHistory(config.history_db)
    orchestrator = HostOrchestrator(config, history=history)

    def progress(message: str, detail: str):
        print(f"  • {message} {detail}".rstrip())

    report = orchestrator.run(spec, progress_callback=progress, install_packages=not skip_install)

    print()
    for line in report.summary_lines():
        print(line)

    if report.success:
        https = report.result_for(ArtifactKind.SSL_VHOST)
        scheme = "https" if https and https.state and https.state.value == "reloaded" else "http"
        print(f"\n✅ {spec.domain} is configured: {scheme}://{spec.domain}")
        return 0
    print(f"\n❌ Run finished with {len(report.errors)} error(s). Details in {report.log_file}")
    return 1


def show_history(config, domain: str = None, limit: int = 20):
    history = RunHistory(config.history_db)
    runs = history.list_runs(domain=domain, limit=limit)
    if not runs:
        print("No runs recorded")
        return
    for run in runs:
        print(f"{run.id}  {run.status:<8} {run.domain:<30} {run.app_kind:<8} "
              f"{run.web_server:<7} {format_relative_date(run.started_at)}")


def main():
    parser = argparse.ArgumentParser(description='Provision a web server host for an application')
    parser.add_argument('command', choices=['plan', 'apply', 'history'],
                        help='Command to execute')
    parser.add_argument('answers', nargs='?',
                        help='YAML answers file describing the deployment')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to config file (default: $WEBSERVER_SETUP_CONFIG or config.yaml)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='plan: write artifacts below this directory instead of printing them')
    parser.add_argument('--skip-install', action='store_true',
                        help='apply: do not install packages, only (re)write and activate configuration')
    parser.add_argument('--domain', type=str, default=None,
                        help='history: only show runs for this domain')
    parser.add_argument('--limit', type=int, default=20,
                        help='history: number of runs to show (default: 20)')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config, level=logging.DEBUG if args.verbose else logging.INFO,
                  console=args.command == 'apply' or args.verbose)

    if args.command == 'history':
        show_history(config, args.domain, args.limit)
        return 0

    if not args.answers:
        parser.error(f"{args.command} needs an answers file")

    try:
        spec = resolve(load_answers(args.answers), config)
    except ValidationError as e:
        print(f"❌ Invalid answer for {e.field}: {e.message}", file=sys.stderr)
        return 2

    if args.command == 'plan':
        plan(spec, config, args.output_dir)
        return 0

    if os.geteuid() != 0:
        print("❌ apply must run as root", file=sys.stderr)
        return 1
    return apply(spec, config, args.skip_install)


if __name__ == '__main__':
    sys.exit(main())

"""CLI entrypoint for sfgit."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.prompt import Confirm, Prompt

from sfgit.command_runner import CommandRunner
from sfgit.config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_LOG_FILE,
    BatchFileError,
    ConfigError,
    PipelineConfig,
    load_batch_file,
    load_config,
    save_config,
    split_labels,
)
from sfgit.log_sink import AuditLog
from sfgit.pipeline import PipelineOrchestrator
from sfgit.project_setup import ProjectSetup, SetupStep
from sfgit.schemas import BatchReport, WorkUnit

logger = logging.getLogger(__name__)

EXIT_FINISHED = 0
EXIT_FATAL = 1
EXIT_CONFIG_ERROR = 2

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so tokens can live outside config.json."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported commands."""
    p = argparse.ArgumentParser(
        prog="sfgit",
        description="sfgit - publish Salesforce changesets and manifests to Git branches.",
    )
    p.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to the JSON configuration file (default: {DEFAULT_CONFIG_FILE}).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    sub.add_parser("init", help="Config wizard: gh auth, clone, SFDX project, org login.")

    connect_p = sub.add_parser("connect", help="Clone the Git repository into the project folder.")
    connect_p.add_argument("--repo-url", type=str, default="", help="Repository HTTPS URL.")
    connect_p.add_argument("--username", type=str, default="", help="Git username.")

    sub.add_parser("repo-info", help="Show information about the origin remote.")

    setup_p = sub.add_parser("setup-project", help="Create the SFDX project.")
    setup_p.add_argument("--name", type=str, default="", help="Project name (default: project folder).")

    org_p = sub.add_parser("authorize-org", help="Log in to the Salesforce org in a browser.")
    org_p.add_argument("--login-url", type=str, default="", help="Instance login URL.")

    sub.add_parser("org-info", help="Show which Salesforce username the pipeline retrieves as.")

    batch_p = sub.add_parser("batch", help="Publish the changesets listed in the batch JSON file.")
    batch_p.add_argument("--file", type=str, default="", help="Batch file (default: from config).")
    _add_run_options(batch_p)

    cs_p = sub.add_parser("changesets", help="Publish changesets named on the command line.")
    cs_p.add_argument("names", type=str, help="Comma-separated changeset names.")
    _add_run_options(cs_p)

    manifest_p = sub.add_parser("manifest", help="Publish the contents of a package.xml manifest.")
    manifest_p.add_argument("path", type=str, help="Location of the package.xml file.")
    manifest_p.add_argument("--branch", type=str, default="", help="Branch name for the work.")
    manifest_p.add_argument("--message", type=str, default="", help="Commit message.")
    manifest_p.add_argument("--pr-title", type=str, default="", help="Pull request title.")
    manifest_p.add_argument("--pr-body", type=str, default="", help="Pull request description.")
    manifest_p.add_argument("--report", type=str, default="", help="Write a JSON outcome report here.")

    sub.add_parser("auth-github", help="Authorize the GitHub CLI with the configured token.")
    sub.add_parser("show-config", help="Print the loaded configuration (secrets masked).")
    return p


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation.")
    parser.add_argument("--report", type=str, default="", help="Write a JSON outcome report here.")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and dispatch the command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        print(
            "\nTip: run 'sfgit init' for first-time setup, then\n"
            "     'sfgit batch' to publish the changesets in your batch file.",
            file=sys.stderr,
        )
        return EXIT_FATAL

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        AuditLog(DEFAULT_LOG_FILE, console=err_console).error(f"Configuration error: {exc}")
        return EXIT_CONFIG_ERROR

    log = AuditLog(config.log_path, console=console)
    log.add_secret(config.github_token.get_secret_value())
    log.quiet(f"Started sfgit {args.command}")
    handler = _COMMANDS[args.command]
    try:
        code = handler(args, config, log)
    except (ConfigError, BatchFileError) as exc:
        log.error(f"Configuration error: {exc}")
        return EXIT_CONFIG_ERROR
    except Exception as exc:
        logger.exception("Unexpected failure")
        log.error(f"Unexpected error: {exc!r}")
        return EXIT_FATAL
    log.record("Process completed", style="yellow")
    return code


def _runner(config: PipelineConfig, log: AuditLog) -> CommandRunner:
    return CommandRunner(log, cwd=config.project_path, timeout_seconds=config.command_timeout_seconds)


def _step_exit_code(steps: list[SetupStep]) -> int:
    return EXIT_FINISHED if all(step.ok for step in steps) else EXIT_FATAL


# ---------------------------------------------------------------------------
# Setup commands
# ---------------------------------------------------------------------------


def _run_init(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    return _step_exit_code(setup.run_wizard())


def _run_connect(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    step = setup.connect_repository(repo_url=args.repo_url, username=args.username)
    if step.result is not None and step.result.ok and args.repo_url:
        updated = config.model_copy(
            update={"github_repo_url": args.repo_url, "git_username": args.username or config.git_username}
        )
        save_config(updated, args.config)
        log.info(f"Saved repository settings to {args.config}")
    return _step_exit_code([step])


def _run_repo_info(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    return _step_exit_code([setup.repository_info()])


def _run_setup_project(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    return _step_exit_code([setup.setup_sfdx_project(args.name)])


def _run_authorize_org(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    return _step_exit_code([setup.authorize_org(args.login_url)])


def _show_org_info(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    log.progress(f"Connected to org using username: {config.salesforce_username}")
    return EXIT_FINISHED


def _run_auth_github(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    setup = ProjectSetup(config, _runner(config, log), log)
    return _step_exit_code([setup.authorize_github()])


def _show_config(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    console.print_json(json.dumps(config.to_display_dict()))
    return EXIT_FINISHED


# ---------------------------------------------------------------------------
# Publishing commands
# ---------------------------------------------------------------------------


def _publish(
    config: PipelineConfig,
    log: AuditLog,
    units: list[WorkUnit],
    *,
    report_path: str = "",
) -> BatchReport:
    orchestrator = PipelineOrchestrator(config, log=log)
    report = orchestrator.run(units)
    if report_path:
        report.save(report_path)
        log.info(f"Wrote outcome report to {report_path}")
    return report


def _confirm_labels(labels: list[str], *, assume_yes: bool, log: AuditLog) -> bool:
    if not labels:
        log.warn("No changeset names were provided")
        return False
    log.info(f"Loaded: {', '.join(labels)}")
    if assume_yes:
        return True
    return Confirm.ask("Continue downloading/pushing these change sets?", console=console)


def _run_batch(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    batch_path = Path(args.file) if args.file else config.batch_path
    labels = load_batch_file(batch_path)
    if not _confirm_labels(labels, assume_yes=args.yes, log=log):
        return EXIT_FINISHED
    _publish(config, log, [WorkUnit.changeset(label) for label in labels], report_path=args.report)
    return EXIT_FINISHED


def _run_changesets(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    labels = split_labels(args.names)
    if not _confirm_labels(labels, assume_yes=args.yes, log=log):
        return EXIT_FINISHED
    _publish(config, log, [WorkUnit.changeset(label) for label in labels], report_path=args.report)
    return EXIT_FINISHED


def _ask(prompt: str, current: str) -> str:
    value = str(current or "").strip()
    while not value:
        value = Prompt.ask(prompt, console=console).strip()
    return value


def _run_manifest(args: argparse.Namespace, config: PipelineConfig, log: AuditLog) -> int:
    manifest = Path(args.path).expanduser()
    if not manifest.is_absolute() and not manifest.is_file():
        manifest = config.project_path / manifest
    if not manifest.is_file():
        log.error(f"File not found: {args.path}. Please check the location and try again")
        return EXIT_FATAL

    branch = _ask("Enter the name for your Git branch (story|bug/user-story-name)", args.branch)
    message = _ask("Commit description (what is this branch for?)", args.message)
    pr_title, pr_body = args.pr_title, args.pr_body
    if config.auto_create_pull_request and not config.autofill_pull_request_details:
        pr_title = pr_title or Prompt.ask("Title for pull request", default="", console=console)
        pr_body = pr_body or Prompt.ask("Description for pull request", default="", console=console)

    unit = WorkUnit.manifest(
        manifest.resolve(),
        branch_label=branch,
        commit_message=message,
        pr_title=pr_title or None,
        pr_description=pr_body or None,
    )
    _publish(config, log, [unit], report_path=args.report)
    return EXIT_FINISHED


_COMMANDS: dict[str, Callable[[argparse.Namespace, PipelineConfig, AuditLog], int]] = {
    "init": _run_init,
    "connect": _run_connect,
    "repo-info": _run_repo_info,
    "setup-project": _run_setup_project,
    "authorize-org": _run_authorize_org,
    "org-info": _show_org_info,
    "batch": _run_batch,
    "changesets": _run_changesets,
    "manifest": _run_manifest,
    "auth-github": _run_auth_github,
    "show-config": _show_config,
}


if __name__ == "__main__":
    sys.exit(main())

# cli.py
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from cimatrix.config import load_pipeline
from cimatrix.errors import ConfigError
from cimatrix.history import DEFAULT_HISTORY_DIR, FileHistoryStore
from cimatrix.model import TriggerKind
from cimatrix.runner import (
    build_trigger,
    detect_ref,
    expand_pipeline,
    git_changed_paths,
    plan_pipeline,
    run_pipeline,
)
from cimatrix.tasks import CommandProvisioner, ShellTaskRunner
from cimatrix.ui.console import Console, ConsoleListener, get_console, set_console

DEFAULT_PIPELINE_FILES = ("cimatrix.yaml", "cimatrix.yml", "cimatrix_pipeline.py")

EXIT_FAILURE = 1
EXIT_CONFIG = 2


def find_pipeline_files() -> list[Path]:
    """Find candidate pipeline files in the current directory."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINE_FILES if (current_dir / name).exists()]
    for path in current_dir.glob("*_pipeline.py"):
        if path not in found:
            found.append(path)
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Raises:
        SystemExit: no pipeline, or more than one candidate
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or pass a different path:\n  cimatrix run my_pipeline.yaml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create cimatrix.yaml or pass a path:\n  cimatrix run my_pipeline.yaml",
        )
        sys.exit(EXIT_CONFIG)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in files],
            suggestion="cimatrix run cimatrix.yaml",
        )
        sys.exit(EXIT_CONFIG)
    return files[0]


def _load_or_exit(path: Path):
    console = get_console()
    console.print_debug(f"Loading pipeline from {path}")
    try:
        return load_pipeline(path)
    except ConfigError as e:
        console.print_error("Invalid pipeline", e.message, details=e.details)
        sys.exit(EXIT_CONFIG)


def _trigger_for(pipeline, event, ref, repo_root, git_diff, compare_ref):
    changed = git_changed_paths(repo_root, compare_ref) if git_diff else None
    if ref is None:
        ref = detect_ref(repo_root)
    return build_trigger(pipeline, event, repo_root=repo_root, ref=ref, changed=changed)


trigger_options = [
    click.option(
        "--event",
        type=click.Choice([k.value for k in TriggerKind]),
        default=TriggerKind.MANUAL.value,
        show_default=True,
        help="Event that triggered this run",
    ),
    click.option("--ref", default=None, help="Branch ref (defaults to the current git branch)"),
    click.option("--repo-root", default=".", show_default=True, help="Repository root for steps and fingerprints"),
    click.option("--history", "history_dir", default=DEFAULT_HISTORY_DIR, show_default=True, help="History directory"),
    click.option("--git-diff/--no-git-diff", default=False, help="Collect changed paths from git"),
    click.option("--compare-ref", default="origin/master", show_default=True, help="Git ref to diff against"),
]


def with_trigger_options(fn):
    for opt in reversed(trigger_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """cimatrix: matrix CI orchestrator with duplicate-run skipping."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline_file", required=False)
@with_trigger_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Maximum concurrent jobs")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel required jobs after the first required failure")
@click.option("--provision", default=None, help="Toolchain command template, e.g. 'rustup toolchain install {channel}'")
@click.option("--report-json", type=click.Path(dir_okay=False), default=None, help="Write the report as JSON")
@click.pass_context
def run(ctx, pipeline_file, event, ref, repo_root, history_dir, git_diff, compare_ref,
        workers, fail_fast, provision, report_json):
    """Run a pipeline and exit with its verdict."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    pipeline = _load_or_exit(path)

    try:
        trigger = _trigger_for(pipeline, event, ref, repo_root, git_diff, compare_ref)
        task_runner = ShellTaskRunner(repo_root)
        provisioner = CommandProvisioner(task_runner, provision) if provision else None

        console.print_run_started(
            pipeline=pipeline.name,
            event=trigger.event.value,
            job_count=len(expand_pipeline(pipeline)),
            fingerprint=trigger.fingerprint,
            ref=trigger.ref,
            changed=len(trigger.changed_paths),
        )

        report = run_pipeline(
            pipeline,
            trigger,
            task_runner=task_runner,
            provisioner=provisioner,
            history=FileHistoryStore(history_dir),
            max_workers=workers,
            fail_fast=fail_fast,
            listener=ConsoleListener(console),
        )
    except ConfigError as e:
        console.print_error("Invalid pipeline", e.message, details=e.details)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(report)
    if report_json:
        Path(report_json).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    sys.exit(report.exit_code)


@cli.command()
@click.argument("pipeline_file", required=False)
@with_trigger_options
@click.pass_context
def plan(ctx, pipeline_file, event, ref, repo_root, history_dir, git_diff, compare_ref):
    """Show expanded jobs and skip decisions without running anything."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    pipeline = _load_or_exit(path)

    try:
        trigger = _trigger_for(pipeline, event, ref, repo_root, git_diff, compare_ref)
        console.print_plan(plan_pipeline(pipeline, trigger, FileHistoryStore(history_dir)))
    except ConfigError as e:
        console.print_error("Invalid pipeline", e.message, details=e.details)
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    cli()

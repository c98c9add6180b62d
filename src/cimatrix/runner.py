# runner.py
from __future__ import annotations

import logging
import subprocess
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .aggregate import PipelineReport, aggregate
from .dispatcher import Dispatcher
from .fingerprint import compute_fingerprint
from .git_facts.git import (
    changed_files,
    current_ref,
    is_dirty,
    merge_base,
    repo_root as git_repo_root,
    working_tree_changes,
)
from .history import HistoryStore
from .job_runner import JobListener
from .matrix import expand_all
from .model import JobSpec, Pipeline, SkipDecision, TriggerContext, TriggerKind
from .skip import SkipDecider
from .tasks import ShellTaskRunner, TaskRunner, ToolchainProvisioner

logger = logging.getLogger(__name__)

# local dev ---> push / pull request ---> matrix ---> verdict


def git_changed_paths(repo_root: str | Path = ".", compare_ref: str = "origin/master") -> List[str]:
    """
    Changed files for this run:
      - dirty tree: staged + unstaged + untracked
      - clean tree: merge-base(compare_ref)..HEAD, falling back to HEAD~1
    """
    root = git_repo_root(cwd=repo_root)
    if is_dirty(cwd=root):
        return working_tree_changes(cwd=root)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        # first commit: nothing to diff against
        return []


def relevant_paths(changed: Sequence[str], patterns: Sequence[str]) -> Tuple[str, ...]:
    """Changed paths that fall under the pipeline's path globs (all of them if none declared)."""
    if not patterns:
        return tuple(changed)
    out = []
    for f in changed:
        for p in patterns:
            if fnmatch(f, p) or (p.endswith("/**") and f.startswith(p[:-2])) or f == p.rstrip("/"):
                out.append(f)
                break
    return tuple(out)


def build_trigger(
    pipeline: Pipeline,
    event: TriggerKind | str,
    *,
    repo_root: str | Path = ".",
    ref: Optional[str] = None,
    changed: Optional[Sequence[str]] = None,
    fingerprint: Optional[str] = None,
) -> TriggerContext:
    """
    Assemble the TriggerContext for one pipeline run.

    If no fingerprint is given, one is computed from the files under the
    pipeline's `paths` plus the ref. `changed` is narrowed to those same
    paths for display only; it does not decide which jobs run.
    """
    event = TriggerKind(event)
    if fingerprint is None:
        fingerprint, manifest = compute_fingerprint(repo_root, pipeline.paths or (".",), ref=ref)
        logger.debug("fingerprint %s over %d file(s)", fingerprint[:12], manifest["file_count"])

    return TriggerContext(
        event=event,
        fingerprint=fingerprint,
        ref=ref,
        changed_paths=relevant_paths(changed or (), pipeline.paths),
        do_not_skip=pipeline.do_not_skip,
    )


def detect_ref(repo_root: str | Path = ".") -> Optional[str]:
    try:
        return current_ref(cwd=repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def expand_pipeline(pipeline: Pipeline) -> List[JobSpec]:
    return expand_all(pipeline.matrices)


def plan_pipeline(
    pipeline: Pipeline,
    trigger: TriggerContext,
    history: Optional[HistoryStore] = None,
) -> List[Tuple[JobSpec, SkipDecision]]:
    """Expand the pipeline and decide skip for every job without running anything."""
    decider = SkipDecider(history, after_successful_duplicate=pipeline.skip_after_successful_duplicate)
    return [(job, decider.decide(job, trigger)) for job in expand_pipeline(pipeline)]


def run_pipeline(
    pipeline: Pipeline,
    trigger: TriggerContext,
    *,
    task_runner: Optional[TaskRunner] = None,
    provisioner: Optional[ToolchainProvisioner] = None,
    history: Optional[HistoryStore] = None,
    max_workers: Optional[int] = None,
    fail_fast: Optional[bool] = None,
    listener: Optional[JobListener] = None,
) -> PipelineReport:
    """
    Expand -> dispatch -> aggregate.

    Configuration errors (InvalidAxisSet / InvalidExclusionRule) are raised
    before any job starts. Everything after that is contained per job.
    """
    jobs = expand_pipeline(pipeline)
    logger.info("pipeline %s: %d job(s), event=%s", pipeline.name, len(jobs), trigger.event.value)

    dispatcher = Dispatcher(
        task_runner or ShellTaskRunner(),
        provisioner,
        SkipDecider(history, after_successful_duplicate=pipeline.skip_after_successful_duplicate),
        fail_fast=pipeline.fail_fast if fail_fast is None else fail_fast,
        listener=listener,
    )
    results = dispatcher.run(
        jobs,
        trigger,
        max_workers if max_workers is not None else pipeline.max_workers,
    )
    return aggregate(results)

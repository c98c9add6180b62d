"""Tests for the dispatcher and end-to-end pipeline runs."""

import pytest

from cimatrix.aggregate import aggregate
from cimatrix.dispatcher import Dispatcher
from cimatrix.dsl import define_pipeline, matrix, sh
from cimatrix.history import InMemoryHistoryStore
from cimatrix.matrix import expand, expand_all
from cimatrix.model import JobStatus, Policy, StepStatus, TriggerContext, TriggerKind, Verdict
from cimatrix.runner import run_pipeline
from cimatrix.skip import SkipDecider
from cimatrix.tasks import ToolchainProvisioner

from conftest import BrokenHistoryStore, FakeTaskRunner

AXES = {"os": ["linux", "macos"], "features": ["all", "none"]}


def build_matrix(**kwargs):
    return matrix(
        "test",
        sh("build", "build {os} {features}"),
        sh("lint", "lint {os} {features}"),
        sh("test", "test {os} {features}"),
        axes=AXES,
        **kwargs,
    )


class TestDispatcherScenarios:
    """End-to-end behaviour of one pipeline run."""

    def test_one_failed_build_fails_the_pipeline(self, task_runner, pr_trigger):
        """One failing job out of four: its later steps are not_run, the verdict is failure."""
        task_runner.exit_codes["build macos all"] = 1
        jobs = expand(build_matrix())

        results = Dispatcher(task_runner).run(jobs, pr_trigger, concurrency_limit=2)
        report = aggregate(results)

        assert len(results) == 4
        failed = [r for r in results if r.status is JobStatus.FAILED]
        assert [r.name for r in failed] == ["test (macos, all)"]
        assert [s.status for s in failed[0].steps] == [
            StepStatus.FAILED,
            StepStatus.NOT_RUN,
            StepStatus.NOT_RUN,
        ]
        assert sum(r.status is JobStatus.SUCCEEDED for r in results) == 3
        assert report.verdict is Verdict.FAILURE
        assert report.exit_code == 1

    def test_push_never_skips_even_with_identical_history(self, task_runner, push_trigger):
        """Push is in the do-not-skip set: every job runs."""
        jobs = expand(build_matrix())
        history = InMemoryHistoryStore({j.key: "fp-1" for j in jobs})

        results = Dispatcher(task_runner, decider=SkipDecider(history)).run(jobs, push_trigger)

        assert all(r.status is JobStatus.SUCCEEDED for r in results)
        assert all(r.decision.skip is False for r in results)
        assert len(task_runner.calls) == 12

    def test_best_effort_failure_does_not_fail_pipeline(self, task_runner, pr_trigger):
        """Best-effort failures are reported but never decisive."""
        task_runner.exit_codes["cargo +beta clippy"] = 1
        jobs = expand_all([
            build_matrix(),
            matrix("other", sh("clippy", "cargo +{rust} clippy"), axes={"rust": ["beta"]}, continue_on_error=True),
        ])

        report = aggregate(Dispatcher(task_runner).run(jobs, pr_trigger))

        assert report.verdict is Verdict.SUCCESS
        other = [line for line in report.lines if line.matrix == "other"]
        assert other[0].status is JobStatus.FAILED
        assert other[0].policy is Policy.BEST_EFFORT
        assert other[0].decisive is False

    def test_identical_pull_request_is_skipped(self, task_runner, pr_trigger):
        """Pull request with an already-successful fingerprint skips every job."""
        jobs = expand(build_matrix())
        history = InMemoryHistoryStore({j.key: "fp-1" for j in jobs})

        results = Dispatcher(task_runner, decider=SkipDecider(history)).run(jobs, pr_trigger)

        assert all(r.status is JobStatus.SKIPPED for r in results)
        assert task_runner.calls == []
        assert aggregate(results).verdict is Verdict.SUCCESS


class TestDispatcherScheduling:
    """Tests for ordering, concurrency and history recording."""

    def test_results_come_back_in_job_order(self, task_runner, pr_trigger):
        jobs = expand(build_matrix())

        results = Dispatcher(task_runner).run(jobs, pr_trigger, concurrency_limit=3)

        assert [r.job.key for r in results] == [j.key for j in jobs]

    def test_concurrency_limit_is_respected(self, task_runner, pr_trigger):
        """Never more than `limit` invocations at once."""
        jobs = expand(build_matrix())

        Dispatcher(task_runner).run(jobs, pr_trigger, concurrency_limit=1)

        assert task_runner.max_active == 1

    def test_invalid_limit_raises(self, task_runner, pr_trigger):
        with pytest.raises(ValueError):
            Dispatcher(task_runner).run(expand(build_matrix()), pr_trigger, concurrency_limit=0)

    def test_success_is_recorded_failure_is_not(self, task_runner, pr_trigger):
        """Only successful completions reach the history store."""
        task_runner.exit_codes["build linux none"] = 1
        jobs = expand(build_matrix())
        history = InMemoryHistoryStore()

        Dispatcher(task_runner, decider=SkipDecider(history)).run(jobs, pr_trigger)

        recorded = {j.name for j in jobs if history.lookup(j.key) == "fp-1"}
        assert recorded == {"test (linux, all)", "test (macos, all)", "test (macos, none)"}

    def test_broken_history_still_runs_everything(self, task_runner, pr_trigger):
        """History errors never stop the pipeline."""
        jobs = expand(build_matrix())

        results = Dispatcher(task_runner, decider=SkipDecider(BrokenHistoryStore())).run(jobs, pr_trigger)

        assert all(r.status is JobStatus.SUCCEEDED for r in results)


class TestFailFast:
    """Tests for fail-fast cancellation."""

    def test_fail_fast_cancels_queued_required_jobs(self, pr_trigger):
        """With one slot, jobs queued behind a failure never start."""
        runner = FakeTaskRunner(exit_codes={"build linux all": 1})
        jobs = expand(build_matrix())

        results = Dispatcher(runner, fail_fast=True).run(jobs, pr_trigger, concurrency_limit=1)

        assert [r.status for r in results] == [
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.CANCELLED,
            JobStatus.CANCELLED,
        ]
        assert runner.calls == ["build linux all"]

    def test_fail_fast_spares_best_effort_jobs(self, pr_trigger):
        """Best-effort jobs keep running after a required failure."""
        runner = FakeTaskRunner(exit_codes={"build linux all": 1})
        jobs = expand_all([
            build_matrix(),
            matrix("other", sh("clippy", "cargo clippy"), continue_on_error=True),
        ])

        results = Dispatcher(runner, fail_fast=True).run(jobs, pr_trigger, concurrency_limit=1)

        assert results[-1].policy is Policy.BEST_EFFORT
        assert results[-1].status is JobStatus.SUCCEEDED
        assert "cargo clippy" in runner.calls

    def test_without_fail_fast_every_job_runs(self, pr_trigger):
        """fail-fast off: a failure does not cancel siblings."""
        runner = FakeTaskRunner(exit_codes={"build linux all": 1})
        jobs = expand(build_matrix())

        results = Dispatcher(runner).run(jobs, pr_trigger, concurrency_limit=1)

        assert [r.status for r in results].count(JobStatus.CANCELLED) == 0
        assert [r.status for r in results].count(JobStatus.SUCCEEDED) == 3

    def test_matrix_fail_fast_only_cancels_its_own_matrix(self, pr_trigger):
        """A per-matrix fail-fast leaves other required matrices alone."""
        runner = FakeTaskRunner(exit_codes={"build linux all": 1})
        jobs = expand_all([
            build_matrix(fail_fast=True),
            matrix("docs", sh("doc", "cargo doc")),
        ])

        results = Dispatcher(runner).run(jobs, pr_trigger, concurrency_limit=1)

        assert [r.status for r in results[:4]].count(JobStatus.CANCELLED) == 3
        assert results[-1].status is JobStatus.SUCCEEDED

    def test_cancelled_required_job_fails_the_verdict(self, pr_trigger):
        runner = FakeTaskRunner(exit_codes={"build linux all": 1})
        jobs = expand(build_matrix())

        report = aggregate(Dispatcher(runner, fail_fast=True).run(jobs, pr_trigger, concurrency_limit=1))

        assert report.verdict is Verdict.FAILURE
        assert len(report.decisive) == 4


class CrashingProvisioner(ToolchainProvisioner):
    """Blows up for the `bad` variant only."""

    def provision(self, job, cancel_event):
        if job.variant_map["name"] == "bad":
            raise RuntimeError("kaboom")
        return None


class TestFailureContainment:
    """Tests for failures that reach jobs already running."""

    def test_fail_fast_cancels_running_required_job(self, pr_trigger):
        """A required failure cancels a sibling that is mid-step."""
        runner = FakeTaskRunner(exit_codes={"run broken": 1}, blocking={"run slow"})
        jobs = expand(matrix("m", sh("Run", "run {name}"), axes={"name": ["slow", "broken"]}))

        results = Dispatcher(runner, fail_fast=True).run(jobs, pr_trigger, concurrency_limit=2)

        assert [r.status for r in results] == [JobStatus.CANCELLED, JobStatus.FAILED]
        assert "run broken" in runner.calls

    def test_unexpected_error_fails_only_its_job(self, task_runner, pr_trigger):
        """A crash outside step invocation fails that job; the sibling still succeeds."""
        jobs = expand(matrix("m", sh("Run", "run {name}"), axes={"name": ["bad", "good"]}))

        results = Dispatcher(task_runner, CrashingProvisioner()).run(
            jobs, pr_trigger, concurrency_limit=2
        )

        assert [(r.status, r.error) for r in results] == [
            (JobStatus.FAILED, "RuntimeError: kaboom"),
            (JobStatus.SUCCEEDED, None),
        ]
        assert task_runner.calls == ["run good"]


class TestRunPipeline:
    """Tests for the expand -> dispatch -> aggregate entry point."""

    def test_run_pipeline_records_history(self, task_runner):
        """A second identical pull request run skips everything."""
        pipeline = define_pipeline("ci", build_matrix(), max_workers=2)
        trigger = TriggerContext(event=TriggerKind.PULL_REQUEST, fingerprint="fp-9")
        history = InMemoryHistoryStore()

        first = run_pipeline(pipeline, trigger, task_runner=task_runner, history=history)
        second = run_pipeline(pipeline, trigger, task_runner=task_runner, history=history)

        assert first.verdict is Verdict.SUCCESS
        assert second.counts()["skipped"] == 4
        assert len(task_runner.calls) == 12

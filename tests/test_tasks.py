"""Tests for the shell task runner and toolchain provisioning."""

import threading

import pytest

from cimatrix.dsl import matrix, sh
from cimatrix.errors import StepInvocationError
from cimatrix.matrix import expand
from cimatrix.model import Invocation
from cimatrix.tasks import TIMEOUT_EXIT_CODE, CommandProvisioner, ShellTaskRunner

from conftest import FakeTaskRunner


class TestShellTaskRunner:

    def test_exit_code_and_output(self, tmp_path):
        """Output is captured with stderr folded in."""
        runner = ShellTaskRunner(tmp_path, poll_interval=0.05)

        res = runner.invoke(Invocation(run="echo out; echo err 1>&2; exit 3"), threading.Event())

        assert res.exit_code == 3
        assert "out" in res.output
        assert "err" in res.output

    def test_env_and_cwd(self, tmp_path):
        """Invocation env and cwd are applied relative to the repo root."""
        (tmp_path / "sub").mkdir()
        runner = ShellTaskRunner(tmp_path, poll_interval=0.05)

        res = runner.invoke(Invocation(run="echo $GREETING; pwd", cwd="sub", env={"GREETING": "hi"}), threading.Event())

        assert res.exit_code == 0
        assert "hi" in res.output
        assert res.output.strip().endswith("sub")

    def test_missing_cwd_raises(self, tmp_path):
        runner = ShellTaskRunner(tmp_path)

        with pytest.raises(StepInvocationError, match="working directory not found"):
            runner.invoke(Invocation(run="true", cwd="nope"), threading.Event())

    def test_timeout(self, tmp_path):
        """A step past its timeout is terminated and reports exit 124."""
        runner = ShellTaskRunner(tmp_path, poll_interval=0.05)

        res = runner.invoke(Invocation(run="sleep 10", timeout=0.2), threading.Event())

        assert res.timed_out is True
        assert res.exit_code == TIMEOUT_EXIT_CODE

    def test_cancel_terminates(self, tmp_path):
        """A set cancel event stops a long-running command."""
        runner = ShellTaskRunner(tmp_path, poll_interval=0.05)
        cancel = threading.Event()
        cancel.set()

        res = runner.invoke(Invocation(run="sleep 10"), cancel)

        assert res.exit_code != 0


class TestCommandProvisioner:

    def test_renders_template_from_toolchain(self):
        """The command is filled from the job's toolchain settings."""
        runner = FakeTaskRunner()
        (job,) = expand(matrix("t", sh("Run", "true"), axes={"rust": ["beta"]}, toolchain={"channel": "{rust}"}))

        CommandProvisioner(runner, "rustup toolchain install {channel}").provision(job, threading.Event())

        assert runner.calls == ["rustup toolchain install beta"]

    def test_no_toolchain_does_nothing(self):
        runner = FakeTaskRunner()
        (job,) = expand(matrix("t", sh("Run", "true")))

        assert CommandProvisioner(runner, "rustup {channel}").provision(job, threading.Event()) is None
        assert runner.calls == []

    def test_non_zero_exit_raises(self):
        runner = FakeTaskRunner(exit_codes={"rustup toolchain install stable": 1})
        (job,) = expand(matrix("t", sh("Run", "true"), toolchain={"channel": "stable"}))

        with pytest.raises(StepInvocationError) as exc:
            CommandProvisioner(runner, "rustup toolchain install {channel}").provision(job, threading.Event())

        assert exc.value.exit_code == 1

    def test_missing_setting_raises(self):
        runner = FakeTaskRunner()
        (job,) = expand(matrix("t", sh("Run", "true"), toolchain={"channel": "stable"}))

        with pytest.raises(StepInvocationError, match="missing"):
            CommandProvisioner(runner, "rustup target add {target}").provision(job, threading.Event())

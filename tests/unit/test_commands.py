"""Unit tests for templated external commands."""

from __future__ import annotations

import pytest

from sluice.commands import render_command, run_command, run_or_raise, tail
from sluice.errors import InfrastructureError


class TestRenderCommand:
    def test_substitutes_and_splits(self) -> None:
        argv = render_command("deploy --ref ${ARTIFACT_REF} --env staging", {"ARTIFACT_REF": "abc"})

        assert argv == ["deploy", "--ref", "abc", "--env", "staging"]

    def test_unknown_placeholders_are_kept(self) -> None:
        assert render_command("echo ${MISSING}", {}) == ["echo", "${MISSING}"]

    def test_quoted_arguments_stay_whole(self) -> None:
        assert render_command("sh -c 'exit 1'", {}) == ["sh", "-c", "exit 1"]


class TestTail:
    def test_keeps_last_lines(self) -> None:
        text = "\n".join(str(i) for i in range(10)) + "\n"

        assert tail(text, 3) == "7\n8\n9"

    def test_empty_output(self) -> None:
        assert tail("") == ""


class TestRunCommand:
    """Tests for running commands without a shell."""

    def test_returns_completed_process(self) -> None:
        result = run_command("echo ${NAME}", {"NAME": "sluice"})

        assert result.returncode == 0
        assert result.stdout.strip() == "sluice"

    def test_non_zero_exit_is_returned(self) -> None:
        assert run_command("false", {}).returncode != 0

    def test_empty_command_is_infrastructure_error(self) -> None:
        with pytest.raises(InfrastructureError, match="empty command"):
            run_command("${NOTHING}", {"NOTHING": ""})

    def test_missing_executable_is_infrastructure_error(self) -> None:
        with pytest.raises(InfrastructureError, match="executable not found"):
            run_command("sluice-definitely-missing", {})

    def test_not_runnable_exit_code_is_infrastructure_error(self) -> None:
        with pytest.raises(InfrastructureError):
            run_command("sh -c 'exit 127'", {})

    def test_timeout_raises(self) -> None:
        with pytest.raises(TimeoutError, match="timed out"):
            run_command("sleep 5", {}, timeout=0.1)


class TestRunOrRaise:
    def test_returns_stdout(self) -> None:
        assert run_or_raise("echo ok", {}, component="test").strip() == "ok"

    def test_failure_is_infrastructure_error(self) -> None:
        with pytest.raises(InfrastructureError, match="deployer unavailable: exit code 2"):
            run_or_raise("sh -c 'exit 2'", {}, component="deployer")

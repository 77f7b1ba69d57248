import os
from unittest.mock import MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from perlwand.cli import app, parse_duration
from perlwand.errors import ValidationFailed
from perlwand.template import DEFAULT_CODE
from perlwand.types import Outcome, OutcomeKind, ProcessInfo

runner = CliRunner()


class TestParseDuration:
    """Tests for parse_duration function."""

    @pytest.mark.parametrize(
        "value,expected",
        [("5s", 5.0), ("500ms", 0.5), ("1m30s", 90.0), ("2", 2.0), ("0.25", 0.25), ("1h", 3600.0)],
    )
    def test_valid(self, value: str, expected: float):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "soon", "5 s", "5x", "0", "-1", "0s"])
    def test_invalid(self, value: str):
        with pytest.raises(typer.BadParameter):
            parse_duration(value)


class TestInjectCommand:
    """Tests for the 'inject' command."""

    @patch("perlwand.cli.run_injection")
    def test_success_prints_output(self, mock_run: MagicMock):
        mock_run.return_value = Outcome(OutcomeKind.SUCCESS, output="alpha\nbeta\n")

        result = runner.invoke(app, ["inject", "--pid", "4321"])

        assert result.exit_code == 0
        assert "alpha\nbeta\n" in result.stdout
        request = mock_run.call_args[0][0]
        assert request.pid == 4321
        assert request.code == DEFAULT_CODE
        assert request.timeout == 5.0
        assert request.force is False
        assert request.signals == {}

    @patch("perlwand.cli.run_injection")
    def test_options_build_request(self, mock_run: MagicMock):
        mock_run.return_value = Outcome(OutcomeKind.SUCCESS)

        result = runner.invoke(
            app,
            ["inject", "-p", "4321", "-c", "print $fh 1", "-t", "750ms", "-f", "-s"],
        )

        assert result.exit_code == 0
        request = mock_run.call_args[0][0]
        assert request.code == "print $fh 1"
        assert request.timeout == pytest.approx(0.75)
        assert request.force is True
        assert request.signals[2] == "INT"

    @patch("perlwand.cli.run_injection")
    def test_timeout_env_var(self, mock_run: MagicMock):
        mock_run.return_value = Outcome(OutcomeKind.SUCCESS)

        result = runner.invoke(app, ["inject", "-p", "4321"], env={"PERLWAND_TIMEOUT": "1m"})

        assert result.exit_code == 0
        assert mock_run.call_args[0][0].timeout == 60.0

    @patch("perlwand.cli.run_injection")
    def test_timeout_keeps_partial_output(self, mock_run: MagicMock):
        mock_run.return_value = Outcome(
            OutcomeKind.TIMED_OUT, output="partial\n", reason="GDB process timed out"
        )

        result = runner.invoke(app, ["inject", "-p", "4321"])

        assert result.exit_code == 1
        assert "partial" in result.stdout
        assert "timed out: GDB process timed out" in result.stderr

    @patch("perlwand.cli.run_injection")
    def test_validation_failure(self, mock_run: MagicMock):
        mock_run.return_value = Outcome(
            OutcomeKind.VALIDATION_FAILED,
            reason="double quotation marks are not allowed (use --force to override).",
        )

        result = runner.invoke(app, ["inject", "-p", "4321", "-c", 'print "x"'])

        assert result.exit_code == 1
        assert "double quotation marks" in result.stderr

    @patch("perlwand.cli.run_injection")
    def test_refuses_own_pid(self, mock_run: MagicMock):
        result = runner.invoke(app, ["inject", "-p", str(os.getpid())])

        assert result.exit_code == 1
        assert "Can't run on my own pid" in result.stderr
        mock_run.assert_not_called()

    @patch("perlwand.cli.run_injection")
    def test_bad_timeout_is_usage_error(self, mock_run: MagicMock):
        result = runner.invoke(app, ["inject", "-p", "4321", "-t", "forever"])

        assert result.exit_code == 2
        mock_run.assert_not_called()

    def test_pid_is_required(self):
        result = runner.invoke(app, ["inject"])

        assert result.exit_code == 2

    @patch("perlwand.cli.run_injection", side_effect=KeyboardInterrupt)
    def test_interrupt_during_setup(self, mock_run: MagicMock):
        result = runner.invoke(app, ["inject", "-p", "4321"])

        assert result.exit_code == 1
        assert "Interrupted" in result.stderr


class TestCheckCommand:
    """Tests for the 'check' command."""

    @patch("perlwand.cli.validate_code")
    def test_valid_code(self, mock_validate: MagicMock):
        result = runner.invoke(app, ["check", "-c", "print $fh 1"])

        assert result.exit_code == 0
        mock_validate.assert_called_once_with("print $fh 1")

    @patch("perlwand.cli.validate_code")
    def test_invalid_code(self, mock_validate: MagicMock):
        mock_validate.side_effect = ValidationFailed("Tests failed: syntax error")

        result = runner.invoke(app, ["check", "-c", "print $fh ("])

        assert result.exit_code == 1
        assert "syntax error" in result.stderr


class TestProcessesCommand:
    """Tests for the 'processes' command."""

    @patch("perlwand.cli.list_perl_processes")
    def test_lists_processes(self, mock_list: MagicMock):
        mock_list.return_value = [
            ProcessInfo(4321, "www-data", 2.5, 1.2, "/usr/bin/perl worker.pl")
        ]

        result = runner.invoke(app, ["processes"])

        assert result.exit_code == 0
        assert "4321" in result.stdout
        assert "worker.pl" in result.stdout

    @patch("perlwand.cli.list_perl_processes", return_value=[])
    def test_no_processes(self, mock_list: MagicMock):
        result = runner.invoke(app, ["processes"])

        assert result.exit_code == 1
        assert "No running Perl processes found" in result.stderr


class TestSignalsCommand:
    def test_lists_signals(self):
        result = runner.invoke(app, ["signals"])

        assert result.exit_code == 0
        assert "SIGINT" in result.stdout
        assert "SIGKILL" in result.stdout

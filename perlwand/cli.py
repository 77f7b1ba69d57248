import re
import subprocess

import typer

from perlwand.errors import InjectionError
from perlwand.operations import is_own_pid, list_perl_processes
from perlwand.session import run_injection
from perlwand.signals import format_signal_listing, signal_catalog
from perlwand.template import DEFAULT_CODE
from perlwand.types import InjectionRequest, OutcomeKind
from perlwand.ui import (
    configure_logging,
    print_info,
    print_signal_listing,
    print_step,
    print_success,
    render_processes_table,
)
from perlwand.validator import validate_code

app = typer.Typer()

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse "5s", "500ms", "1m30s" or a bare number of seconds."""
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        parts = _DURATION_PART.findall(value)
        if not parts or "".join(n + u for n, u in parts) != value:
            raise typer.BadParameter(
                f"'{value}' is not a duration (examples: 5s, 500ms, 1m30s)"
            )
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if seconds <= 0:
        raise typer.BadParameter("timeout must be positive")
    return seconds


@app.command(help="Inject Perl code into a running Perl process and print its output.")
def inject(
    pid: int = typer.Option(
        ..., "--pid", "-p", help="The PID of the Perl process to inject into."
    ),
    code: str = typer.Option(
        DEFAULT_CODE,
        "--code",
        "-c",
        help="Perl code to run inside the target. Print to $fh to return output. "
        "Defaults to dumping the target's call stack.",
    ),
    timeout: str = typer.Option(
        "5s",
        "--timeout",
        "-t",
        envvar="PERLWAND_TIMEOUT",
        help="How long to wait for the target to respond (e.g. 5s, 500ms, 1m).",
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip validation of the code before injecting."
    ),
    signals: bool = typer.Option(
        False,
        "--signals",
        "-s",
        help="On timeout, offer to send the target a signal to wake it up.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Log GDB's output and other debug details."
    ),
):
    configure_logging(verbose)
    if is_own_pid(pid):
        typer.echo("❌ Can't run on my own pid", err=True)
        raise typer.Exit(code=1)

    request = InjectionRequest(
        pid=pid,
        code=code,
        timeout=parse_duration(timeout),
        force=force,
        signals=signal_catalog() if signals else {},
    )

    print_step(f"Injecting into PID [cyan bold]{pid}[/cyan bold]...")
    try:
        outcome = run_injection(request)
    except KeyboardInterrupt:
        typer.echo("❌ Interrupted", err=True)
        raise typer.Exit(code=1)

    if outcome.output:
        typer.echo(outcome.output, nl=False)

    if not outcome.ok:
        if outcome.kind is OutcomeKind.TIMED_OUT and outcome.output:
            print_info("Partial output shown above.")
        typer.echo(f"❌ {outcome.kind.value}: {outcome.reason}", err=True)
        raise typer.Exit(code=1)

    print_success(f"Output received from PID [cyan]{pid}[/cyan]")


@app.command(help="Check Perl code for syntax errors without injecting it.")
def check(
    code: str = typer.Option(
        DEFAULT_CODE, "--code", "-c", help="The Perl code to check."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug details."),
):
    configure_logging(verbose)
    try:
        validate_code(code)
    except InjectionError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    print_success("Code is safe to inject.")


@app.command(help="List running Perl processes.")
def processes():
    try:
        found = list_perl_processes()
    except (OSError, subprocess.CalledProcessError) as e:
        typer.echo(f"❌ Failed to list processes: {e}", err=True)
        raise typer.Exit(code=1)

    if not found:
        typer.echo("❌ No running Perl processes found.", err=True)
        raise typer.Exit(code=1)
    render_processes_table(found)


@app.command(help="List the signals that can be sent to a stuck target.")
def signals():
    print_signal_listing(format_signal_listing(signal_catalog()))


if __name__ == "__main__":
    app()

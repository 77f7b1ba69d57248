import logging
import os

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from perlwand.types import ProcessInfo

# Global consoles for UI functions. Status goes to stderr so stdout carries
# only what the target process wrote.
_console = Console()
_status_console = Console(stderr=True)

# Check if we should use simple UI (e.g., when output is captured by a CI log)
_use_simple_ui = os.getenv("PERLWAND_SIMPLE_UI") == "1"


def configure_logging(verbose: bool = False) -> None:
    """Route perlwand's log records through rich, on stderr."""
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=verbose,
        show_path=False,
        markup=False,
    )
    logger = logging.getLogger("perlwand")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def render_processes_table(processes: list[ProcessInfo]):
    table = Table()

    table.add_column("PID", style="cyan", no_wrap=True, justify="right")
    table.add_column("User", style="magenta")
    table.add_column("CPU%", style="dim", justify="right")
    table.add_column("MEM%", style="dim", justify="right")
    table.add_column("Command", style="white", no_wrap=False)

    for proc in processes:
        # Shorten command for readability
        cmd_display = proc.command
        if len(cmd_display) > 80:
            cmd_display = cmd_display[:77] + "..."

        table.add_row(
            str(proc.pid),
            proc.user,
            f"{proc.cpu_percent:.1f}",
            f"{proc.mem_percent:.1f}",
            cmd_display,
        )

    _console.print(table)


def print_signal_listing(rows: list[str]):
    for row in rows:
        _console.print(row, markup=False, highlight=False)


def print_escalation_warning(console: Console | None = None):
    """Explain what sending a signal to a stuck target means."""
    console = console or _status_console
    console.print()

    message = (
        "The captive process is not responding. Send a signal to try to wake it up, "
        "or type [bold]Q[/bold] to abort.\n"
        "[yellow bold]WARNING:[/yellow bold] Waking a process with a signal will almost "
        "certainly crash it after debug output is acquired."
    )
    if _use_simple_ui:
        console.print("[yellow]" + "=" * 30 + " Unresponsive " + "=" * 31 + "[/yellow]")
        console.print(message)
        console.print("[yellow]" + "=" * 75 + "[/yellow]")
    else:
        console.print(
            Panel(
                message,
                border_style="yellow",
                title="Unresponsive Target",
                expand=False,
            )
        )


def print_success(message: str, prefix: str = "✅"):
    """Print a success message."""
    _status_console.print(f"[green]{prefix}[/green] {message}")


def print_info(message: str, prefix: str = "ℹ️"):
    """Print an info message."""
    _status_console.print(f"[blue]{prefix}[/blue]  {message}")


def print_step(message: str, prefix: str = "🔧"):
    """Print a step/progress message."""
    _status_console.print(f"[cyan]{prefix}[/cyan] {message}")

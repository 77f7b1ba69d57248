"""Process queries for perlwand."""

import logging
import os
import subprocess

from perlwand.errors import TargetNotFound
from perlwand.types import ProcessInfo

logger = logging.getLogger(__name__)


# ===== Target liveness =====


def is_own_pid(pid: int) -> bool:
    return pid == os.getpid()


def ensure_target_alive(pid: int) -> None:
    """Raise TargetNotFound unless ``pid`` names a live process."""
    if pid <= 0:
        raise TargetNotFound(f"cannot inject to PID {pid}: not a valid process ID")

    try:
        os.kill(pid, 0)
    except OverflowError:
        raise TargetNotFound(f"cannot inject to PID {pid}: not a valid process ID")
    except ProcessLookupError:
        raise TargetNotFound(f"cannot inject to PID {pid}: process not found")
    except PermissionError:
        # The process exists but belongs to someone else; GDB reports
        # whether it can attach.
        logger.debug("PID %d exists but cannot be signalled by us", pid)


# ===== Process listing =====


def parse_ps_output(output: str) -> list[ProcessInfo]:
    processes: list[ProcessInfo] = []
    for line in output.splitlines()[1:]:
        parts = line.split(None, 10)
        if len(parts) < 11:
            continue
        command = parts[10]
        executable = os.path.basename(command.split(None, 1)[0])
        if not executable.startswith("perl"):
            continue
        processes.append(
            ProcessInfo(
                pid=int(parts[1]),
                user=parts[0],
                cpu_percent=float(parts[2]),
                mem_percent=float(parts[3]),
                command=command,
            )
        )
    return processes


def list_perl_processes() -> list[ProcessInfo]:
    """List running Perl interpreters, excluding ourselves."""
    result = subprocess.run(["ps", "aux"], capture_output=True, text=True, check=True)
    return [p for p in parse_ps_output(result.stdout) if not is_own_pid(p.pid)]

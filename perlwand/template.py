"""Wrapper generation for code injected into a Perl process.

The wrapper localizes the interpreter state a snippet is likely to disturb
(``$_``, ``$@``, ``$!``, ``@_``, ``%SIG`` and ``$|``), opens the communication
pipe as ``$fh``, runs the snippet inside ``eval`` so a ``die`` is reported
on the pipe instead of escaping into the host program, and finally writes
the sentinel line. ``$fh`` goes out of scope at the end of the block, which
closes the writer side of the pipe.

The template is embedded in a double-quoted GDB expression, so it must never
contain a double quote or a ``#`` comment (lines are joined with
backslash-newline continuations).
"""

import os
import threading
import time
from pathlib import Path

from perlwand.errors import SetupFailed

TEMPLATE_PATH = Path(__file__).parent / "inject_template.pl"

DEFAULT_CODE = (
    "require Carp unless exists($INC{'Carp.pm'}); "
    "no warnings q{once}; "
    "local $Carp::MaxArgLen = 0; "
    "local $Carp::MaxArgNums = 0; "
    "print $fh Carp::longmess('INJECT')"
)

_stamp_lock = threading.Lock()
_last_stamp = 0


def unique_timestamp() -> int:
    """Nanosecond wall-clock timestamp, strictly increasing within this process."""
    global _last_stamp
    with _stamp_lock:
        stamp = time.time_ns()
        if stamp <= _last_stamp:
            stamp = _last_stamp + 1
        _last_stamp = stamp
        return stamp


def make_sentinel(target_pid: int) -> str:
    return f"END {unique_timestamp()} {os.getpid()}-{target_pid}"


def render_wrapper(code: str, pipe_path: str, sentinel: str) -> str:
    try:
        with open(TEMPLATE_PATH, "r") as f:
            template = f.read()
    except OSError as e:
        raise SetupFailed(f"Could not read the injection template: {e}") from e

    # Substitute the snippet last so placeholder-like text inside it survives.
    return (
        template.replace("{PIPE}", pipe_path)
        .replace("{SENTINEL}", sentinel)
        .replace("{CODE}", code)
    )

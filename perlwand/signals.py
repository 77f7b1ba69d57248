"""Signal catalog and the interactive escalation prompt.

When an injection times out the target is usually parked in a blocking
system call and never reaches the breakpoint. Sending it a signal can wake
it up, so the operator is offered the chance to pick one.
"""

import logging
import os
import select
import signal
import sys
import time
from typing import TextIO

from rich.console import Console
from rich.markup import escape

from perlwand.types import SignalAction, SignalChoice
from perlwand.ui import print_escalation_warning

logger = logging.getLogger(__name__)

SIGNAL_HELP = (
    "Type a case-insensitive signal name or number ('sigint', 'INT', and '2' "
    "are equivalent), 'L'/'?' to list available signals, or 'Q' to abort."
)
PROMPT = "Signal name, number, 'L' or '?': "

_LIST_REQUESTS = {"L", "?"}
_ABORT_REQUESTS = {"Q", "QUIT", "ABORT"}


def signal_catalog() -> dict[int, str]:
    """Map every valid signal number on this host to its name without "SIG".

    Numbers without a symbolic name (unnamed realtime signals) map to "".
    """
    catalog: dict[int, str] = {}
    for signum in sorted(int(s) for s in signal.valid_signals()):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = ""
        catalog[signum] = name[3:] if name.startswith("SIG") else name
    return catalog


def parse_signal(text: str, signals: dict[int, str]) -> int | None:
    """Resolve user input to a signal number, or None if it matches nothing."""
    text = text.strip().upper()
    if not text:
        return None

    if text.isdigit():
        signum = int(text)
        return signum if signum > 0 and signum in signals else None

    name = text[3:] if text.startswith("SIG") else text
    for signum, signame in signals.items():
        if signame and signame == name:
            return signum
    return None


def format_signal_listing(signals: dict[int, str], columns: int = 5) -> list[str]:
    """Rows roughly approximating the output of ``kill -l``."""
    entries = []
    for signum in sorted(signals):
        signame = signals[signum]
        label = f"SIG{signame}" if signame else "[unknown]"
        entries.append(f"{signum:2d}) {label:<16}")

    return [
        "".join(entries[i : i + columns]).rstrip()
        for i in range(0, len(entries), columns)
    ]


class EscalationPrompter:
    """Asks the operator for a signal to send to an unresponsive target.

    The input stream is opened on first use and released by ``close()``.
    Each wait for an answer is bounded by ``attempt_timeout`` seconds so a
    walked-away operator turns into a RETRY instead of a hung session.
    The signal catalog is only ever read.
    """

    def __init__(
        self,
        signals: dict[int, str],
        console: Console | None = None,
        stream: TextIO | None = None,
        attempt_timeout: float = 30.0,
    ):
        self.signals = signals
        self.console = console or Console(stderr=True)
        self.attempt_timeout = attempt_timeout
        self._stream = stream
        self._pending = b""
        self._opened = False
        self._closed = False

    def open(self) -> None:
        if self._opened:
            return
        if self._stream is None:
            self._stream = sys.stdin
        self._opened = True
        print_escalation_warning(self.console)
        self.console.print(SIGNAL_HELP)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Never close the process-wide stdin; only streams handed to us.
        if self._stream is not None and self._stream is not sys.stdin:
            self._stream.close()

    def _read_line(self) -> str | None:
        """Next input line, "" at end of input, None if no line arrived in time.

        Lines are split from raw reads on the descriptor so that several lines
        delivered in one read are all answered before waiting again.
        """
        try:
            fileno = self._stream.fileno()
        except (AttributeError, OSError, ValueError):
            # In-memory streams are always ready.
            return self._stream.readline()

        deadline = time.monotonic() + self.attempt_timeout
        while b"\n" not in self._pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            ready, _, _ = select.select([fileno], [], [], remaining)
            if not ready:
                return None
            chunk = os.read(fileno, 1024)
            if not chunk:
                line, self._pending = self._pending, b""
                return line.decode("utf-8", errors="replace")
            self._pending += chunk

        line, self._pending = self._pending.split(b"\n", 1)
        return line.decode("utf-8", errors="replace") + "\n"

    def print_signals(self) -> None:
        for row in format_signal_listing(self.signals):
            self.console.print(row, markup=False, highlight=False)

    def ask(self) -> SignalChoice:
        self.open()
        while True:
            self.console.print(PROMPT, end="", markup=False, highlight=False)
            line = self._read_line()
            if line is None:
                self.console.print()
                logger.debug("No answer within %.1fs", self.attempt_timeout)
                return SignalChoice(SignalAction.RETRY)
            if line == "":
                # End of input counts as giving up.
                return SignalChoice(SignalAction.ABORT)

            text = line.strip().upper()
            if not text:
                continue
            if text in _LIST_REQUESTS:
                self.print_signals()
                continue
            if text in _ABORT_REQUESTS:
                return SignalChoice(SignalAction.ABORT)

            signum = parse_signal(text, self.signals)
            if signum is not None:
                return SignalChoice(SignalAction.SEND, signum)

            self.console.print(
                f"Invalid input (no signal found as string or number): "
                f"'{escape(text)}'\n{SIGNAL_HELP}"
            )

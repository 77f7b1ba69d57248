"""Injection sessions: setup, the event multiplexer, and cleanup.

One session drives one GDB subprocess against one target. Several producer
threads (the communication pipe reader, GDB's stdout and stderr watchers,
GDB's exit waiter and, when escalation is on, the signal prompt) push events
onto a single queue. Only ``Multiplexer.run`` consumes that queue, owns the
captured output and decides how the session ends.
"""

import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import IO, Any, Protocol

from perlwand.channel import CommunicationChannel, split_sentinel
from perlwand.errors import (
    DebuggerLaunchFailed,
    InjectionError,
    SignalSendFailed,
)
from perlwand.gdb import build_command
from perlwand.locator import find_gdb
from perlwand.operations import ensure_target_alive
from perlwand.signals import EscalationPrompter
from perlwand.template import make_sentinel, render_wrapper
from perlwand.types import (
    InjectionRequest,
    Outcome,
    OutcomeKind,
    SignalAction,
    SignalChoice,
)
from perlwand.validator import validate_code

logger = logging.getLogger(__name__)

# Matched case-insensitively against GDB's stderr only, never the target's output.
FATAL_PATTERNS = ("permission denied", "operation not permitted")

# How long to keep reading the pipe after GDB exits cleanly without the
# sentinel having arrived.
DRAIN_WINDOW = 1.0

# Grace period between SIGTERM and SIGKILL when stopping GDB.
KILL_GRACE = 2.0


class EventKind(Enum):
    LINE = auto()
    CHANNEL_CLOSED = auto()
    DEBUGGER_FATAL = auto()
    DEBUGGER_EXITED = auto()
    SIGNAL_CHOICE = auto()


@dataclass
class Event:
    kind: EventKind
    payload: Any = None


class LineSource(Protocol):
    error: OSError | None

    def lines(self): ...

    def stop(self) -> None: ...


class Prompter(Protocol):
    def ask(self) -> SignalChoice: ...

    def close(self) -> None: ...


# ===== Producers =====


def watch_debugger_stream(
    stream: IO[str], desc: str, events: queue.Queue, detect_fatal: bool
) -> None:
    """Log every line GDB writes; report the first fatal one.

    Keeps draining after a fatal line so GDB never blocks on a full pipe.
    """
    reported = False
    try:
        for line in stream:
            line = line.rstrip("\n")
            logger.debug("GDB %s: %s", desc, line)
            if reported or not detect_fatal:
                continue
            # Don't deal with case in error detection.
            lowered = line.lower()
            if any(pattern in lowered for pattern in FATAL_PATTERNS):
                events.put(Event(EventKind.DEBUGGER_FATAL, f"GDB Failed: {line.strip()}"))
                reported = True
    except (OSError, ValueError) as e:
        events.put(
            Event(
                EventKind.DEBUGGER_FATAL,
                f"Failed while reading GDB's {desc}: {e}; use --verbose to see full output",
            )
        )


def wait_for_debugger(process: subprocess.Popen, events: queue.Queue) -> None:
    events.put(Event(EventKind.DEBUGGER_EXITED, process.wait()))


def pump_channel(reader: LineSource, events: queue.Queue) -> None:
    for line in reader.lines():
        events.put(Event(EventKind.LINE, line))
    events.put(Event(EventKind.CHANNEL_CLOSED, reader.error))


def _start_thread(target: Callable[..., None], name: str, *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name=name, daemon=True)
    thread.start()
    return thread


# ===== Multiplexer =====


class Multiplexer:
    """Fan-in loop that turns the producers' events into one Outcome.

    The timeout timer is a deadline checked by the loop itself. It is armed
    at start, disarmed while the operator is being prompted, and re-armed
    only after a signal was sent or a prompt went unanswered. Data arriving
    on the pipe never extends it.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        reader: LineSource,
        pid: int,
        sentinel: str,
        timeout: float,
        signals: dict[int, str] | None = None,
        prompter_factory: Callable[[dict[int, str]], Prompter] | None = None,
        send_signal: Callable[[int, int], None] = os.kill,
        clock: Callable[[], float] = time.monotonic,
        drain_window: float = DRAIN_WINDOW,
    ):
        self.process = process
        self.reader = reader
        self.pid = pid
        self.sentinel = sentinel
        self.timeout = timeout
        self.signals = signals or {}
        self.prompter_factory = prompter_factory or EscalationPrompter
        self.send_signal = send_signal
        self.clock = clock
        self.drain_window = drain_window

        self.events: queue.Queue[Event] = queue.Queue()
        self.deadline: float | None = None
        self.prompting = False
        self.debugger_exited = False
        self._lines: list[str] = []
        self._prompter: Prompter | None = None

    @property
    def escalation_enabled(self) -> bool:
        return bool(self.signals)

    @property
    def output(self) -> str:
        return "".join(f"{line}\n" for line in self._lines)

    # -- timer --

    def arm_timer(self, seconds: float | None = None) -> None:
        self.deadline = self.clock() + (self.timeout if seconds is None else seconds)

    def disarm_timer(self) -> None:
        self.deadline = None

    def _next_event(self) -> Event | None:
        """Block for the next event; None means the timer fired."""
        if self.deadline is None:
            return self.events.get()

        remaining = self.deadline - self.clock()
        if remaining <= 0:
            return None
        try:
            return self.events.get(timeout=remaining)
        except queue.Empty:
            return None

    # -- lifecycle --

    def start_producers(self) -> None:
        if self.process.stdout is not None:
            _start_thread(
                watch_debugger_stream, "gdb-stdout", self.process.stdout, "stdout", self.events, False
            )
        if self.process.stderr is not None:
            _start_thread(
                watch_debugger_stream, "gdb-stderr", self.process.stderr, "stderr", self.events, True
            )
        _start_thread(wait_for_debugger, "gdb-wait", self.process, self.events)
        _start_thread(pump_channel, "channel-reader", self.reader, self.events)

    def run(self) -> Outcome:
        self.start_producers()
        self.arm_timer()
        try:
            while True:
                event = self._next_event()
                if event is None:
                    outcome = self._on_timer()
                else:
                    outcome = self._dispatch(event)
                if outcome is not None:
                    return outcome
        except KeyboardInterrupt:
            return self._conclude(OutcomeKind.INTERRUPTED, "Interrupted")

    def close(self) -> None:
        if self._prompter is not None:
            self._prompter.close()
            self._prompter = None

    def _conclude(self, kind: OutcomeKind, reason: str | None = None) -> Outcome:
        logger.debug("Session concluded: %s", kind.value)
        return Outcome(kind=kind, output=self.output, reason=reason)

    # -- event handlers --

    def _dispatch(self, event: Event) -> Outcome | None:
        if event.kind is EventKind.LINE:
            return self._on_line(event.payload)
        if event.kind is EventKind.CHANNEL_CLOSED:
            return self._on_channel_closed(event.payload)
        if event.kind is EventKind.DEBUGGER_FATAL:
            return self._conclude(OutcomeKind.DEBUGGER_FAILED, event.payload)
        if event.kind is EventKind.DEBUGGER_EXITED:
            return self._on_debugger_exited(event.payload)
        if event.kind is EventKind.SIGNAL_CHOICE:
            return self._on_signal_choice(event.payload)
        raise ValueError(f"unknown event kind: {event.kind}")

    def _on_line(self, line: str) -> Outcome | None:
        final, payload = split_sentinel(line, self.sentinel)
        if final:
            if payload:
                self._lines.append(payload)
            return self._conclude(OutcomeKind.SUCCESS)

        logger.debug("Got data from captive process: %s", line)
        self._lines.append(line)
        return None

    def _on_channel_closed(self, error: OSError | None) -> Outcome | None:
        # A zero-length read is only conclusive once the reader's own error
        # state has been checked.
        if error is not None:
            return self._conclude(
                OutcomeKind.DEBUGGER_FAILED,
                f"Failed while reading the communication pipe: {error}",
            )
        return self._conclude(OutcomeKind.SUCCESS)

    def _on_debugger_exited(self, returncode: int) -> Outcome | None:
        if returncode != 0:
            return self._conclude(
                OutcomeKind.DEBUGGER_FAILED,
                f"GDB exited with status {returncode}; use --verbose to see its output",
            )

        logger.debug("GDB exited cleanly; draining the communication pipe")
        self.debugger_exited = True
        drain_deadline = self.clock() + self.drain_window
        if self.deadline is None or drain_deadline < self.deadline:
            self.deadline = drain_deadline
        return None

    def _on_timer(self) -> Outcome | None:
        if self.debugger_exited:
            logger.warning("GDB exited before the target wrote the end-of-output marker")
            return self._conclude(OutcomeKind.SUCCESS)

        if not self.escalation_enabled:
            return self._conclude(OutcomeKind.TIMED_OUT, "GDB process timed out")

        self.disarm_timer()
        self._prompt()
        return None

    def _on_signal_choice(self, choice: SignalChoice) -> Outcome | None:
        self.prompting = False

        if choice.action is SignalAction.ABORT:
            return self._conclude(OutcomeKind.INTERRUPTED, "Interrupted")

        if choice.action is SignalAction.RETRY:
            self.arm_timer()
            return None

        try:
            self.send_signal(self.pid, choice.signum)
        except OSError as e:
            logger.error("%s", SignalSendFailed(choice.signum, self.pid, e))
            self._prompt()
            return None

        logger.info("Sent signal %d to captive process (%d)", choice.signum, self.pid)
        # Stop prompting and wait to see if it wakes up.
        self.arm_timer()
        return None

    # -- escalation --

    def _prompt(self) -> None:
        if self.prompting:
            return
        if self._prompter is None:
            self._prompter = self.prompter_factory(self.signals)
        self.prompting = True
        _start_thread(self._ask, "signal-prompt", self._prompter)

    def _ask(self, prompter: Prompter) -> None:
        try:
            choice = prompter.ask()
        except (OSError, ValueError) as e:
            logger.error("Error reading line: %s", e)
            choice = SignalChoice(SignalAction.ABORT)
        self.events.put(Event(EventKind.SIGNAL_CHOICE, choice))


# ===== Session =====


def terminate_process(process: subprocess.Popen, grace: float = KILL_GRACE) -> None:
    """Stop GDB gently so it can detach, then firmly. Never raises."""
    if process.poll() is not None:
        return

    logger.debug("Stopping GDB (PID %d)", process.pid)
    try:
        process.terminate()
        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("GDB did not exit after SIGTERM; killing it")
            process.kill()
            process.wait(timeout=grace)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Could not stop GDB (PID %d): %s", process.pid, e)


class InjectionSession:
    """Owns every resource of one injection and releases them exactly once.

    Use as a context manager, or call ``cleanup()`` in a ``finally``.
    """

    def __init__(
        self,
        request: InjectionRequest,
        prompter_factory: Callable[[dict[int, str]], Prompter] | None = None,
    ):
        self.request = request
        self.prompter_factory = prompter_factory
        self.code: str | None = None
        self.sentinel: str | None = None
        self.channel: CommunicationChannel | None = None
        self.process: subprocess.Popen | None = None
        self.multiplexer: Multiplexer | None = None
        self._reader: LineSource | None = None
        self._cleaned_up = False

    def __enter__(self) -> "InjectionSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()

    def prepare(self) -> list[str]:
        """Run every setup stage and return the GDB command line.

        Raises an InjectionError subclass on the first failing stage; the
        debugger is never started in that case.
        """
        request = self.request
        self.code = validate_code(request.code, force=request.force)
        ensure_target_alive(request.pid)
        gdb_path = find_gdb()

        self.channel = CommunicationChannel.provision(request.pid)
        self.sentinel = make_sentinel(request.pid)
        self._reader = self.channel.reader(self.sentinel)

        wrapper = render_wrapper(self.code, self.channel.pipe_path, self.sentinel)
        return build_command(gdb_path, request.pid, wrapper)

    def launch(self, command: list[str]) -> subprocess.Popen:
        logger.debug("Starting command: %s", command)
        try:
            self.process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise DebuggerLaunchFailed(f"Could not start GDB: {e}") from e
        return self.process

    def run(self) -> Outcome:
        command = self.prepare()
        process = self.launch(command)
        self.multiplexer = Multiplexer(
            process=process,
            reader=self._reader,
            pid=self.request.pid,
            sentinel=self.sentinel,
            timeout=self.request.timeout,
            signals=self.request.signals,
            prompter_factory=self.prompter_factory,
        )
        return self.multiplexer.run()

    def cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        logger.debug("Cleaning up")

        if self._reader is not None:
            self._reader.stop()
        if self.multiplexer is not None:
            self.multiplexer.close()
        if self.process is not None:
            terminate_process(self.process)
        if self.channel is not None:
            self.channel.destroy()


def run_injection(
    request: InjectionRequest,
    prompter_factory: Callable[[dict[int, str]], Prompter] | None = None,
) -> Outcome:
    """Run one injection end to end. Always returns exactly one Outcome."""
    with InjectionSession(request, prompter_factory=prompter_factory) as session:
        try:
            return session.run()
        except InjectionError as e:
            return Outcome(kind=e.outcome_kind, reason=str(e))
        except OSError as e:
            logger.debug("Unexpected OS error during injection", exc_info=True)
            return Outcome(kind=OutcomeKind.SETUP_FAILED, reason=str(e))

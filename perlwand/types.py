"""Type definitions for perlwand."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class ProcessInfo:
    pid: int
    user: str
    cpu_percent: float
    mem_percent: float
    command: str


@dataclass
class InjectionRequest:
    pid: int
    code: str
    timeout: float  # seconds
    force: bool = False
    # Signal number -> name without the SIG prefix. Empty disables escalation.
    signals: dict[int, str] = field(default_factory=dict)


class OutcomeKind(Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed out"
    INTERRUPTED = "interrupted"
    DEBUGGER_FAILED = "debugger failed"
    VALIDATION_FAILED = "validation failed"
    SETUP_FAILED = "setup failed"


@dataclass
class Outcome:
    kind: OutcomeKind
    output: str = ""
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


class SignalAction(Enum):
    SEND = "send"
    RETRY = "retry"
    ABORT = "abort"


@dataclass
class SignalChoice:
    action: SignalAction
    signum: int = 0

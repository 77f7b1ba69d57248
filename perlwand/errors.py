"""Exceptions raised while preparing and running an injection."""

from perlwand.types import OutcomeKind


class InjectionError(Exception):
    """Base class for every failure perlwand reports to the user."""

    outcome_kind = OutcomeKind.SETUP_FAILED


class TargetNotFound(InjectionError):
    """The target PID does not refer to a live process."""


class BinaryNotFound(InjectionError):
    """A required helper executable (gdb, perl) could not be located."""


class ValidationFailed(InjectionError):
    outcome_kind = OutcomeKind.VALIDATION_FAILED

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class SetupFailed(InjectionError):
    """The staging directory or communication pipe could not be provisioned."""


class DebuggerLaunchFailed(InjectionError):
    pass


class SignalSendFailed(InjectionError):
    """Delivering an escalation signal failed. Logged, never fatal."""

    def __init__(self, signum: int, pid: int, cause: OSError):
        super().__init__(f"failed to send signal {signum} to PID {pid}: {cause}")
        self.signum = signum
        self.pid = pid
        self.cause = cause

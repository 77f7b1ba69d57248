"""Build the GDB command line that performs one injection."""

BREAKPOINT_FUNCTION = "Perl_despatch_signals"
EVAL_FUNCTION = "Perl_eval_pv"


def eval_directive(wrapper: str) -> str:
    """Turn the wrapped snippet into a single GDB ``call`` directive.

    Newlines become backslash-newline continuations inside the C string.
    """
    directive = f'call {EVAL_FUNCTION}("{wrapper}", 0)'
    return directive.replace("\n", "\\\n")


def build_directives(wrapper: str) -> list[str]:
    return [
        # Don't ask questions on the command line.
        "set confirm off",
        # Disable "press return to continue".
        "set pagination off",
        # Pass signals through to Perl without stopping the debugger.
        "handle all noprint nostop",
        # Register a pending signal with Perl.
        "set variable PL_sig_pending = 1",
        # Stop when we get to the safe-ish signal handler.
        f"break {BREAKPOINT_FUNCTION}",
        # Wait for signalling to happen.
        "continue",
        "delete breakpoints",
        eval_directive(wrapper),
        "detach",
        "quit",
    ]


def build_command(gdb_path: str, pid: int, wrapper: str) -> list[str]:
    command = [gdb_path, "-quiet", "-p", str(pid)]
    for directive in build_directives(wrapper):
        command.extend(["-ex", directive])
    return command

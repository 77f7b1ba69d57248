"""Offline syntax check of code before it is injected into a live process."""

import logging
import os
import subprocess
import tempfile

from perlwand.errors import SetupFailed, ValidationFailed
from perlwand.locator import find_perl
from perlwand.template import render_wrapper

logger = logging.getLogger(__name__)

DISCARD_PATH = "/dev/null"


def check_code_shape(code: str) -> None:
    """Reject snippets that can never be embedded in the GDB expression."""
    if not code:
        raise ValidationFailed("contains no data (use --force to override).")
    if '"' in code:
        raise ValidationFailed(
            "double quotation marks are not allowed (use --force to override)."
        )


def _unexpected_stderr(stderr: str, script_path: str) -> str:
    # `perl -c` always reports "<file> syntax OK" on stderr when it succeeds.
    lines = [
        line
        for line in stderr.splitlines()
        if line.strip() and line.strip() != f"{script_path} syntax OK"
    ]
    return "\n".join(lines)


def syntax_check(code: str, perl_path: str | None = None) -> None:
    """Compile the fully wrapped snippet with ``perl -c``.

    The wrapper writes to /dev/null, so nothing is executed against a real
    channel. A nonzero exit or any diagnostic on stderr fails validation.
    """
    perl_path = perl_path or find_perl()
    script = render_wrapper(code, DISCARD_PATH, str(os.getpid()))
    logger.debug("Testing code to inject: %s", script)

    script_path = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", suffix="-selftest.pl", prefix="perlwand-", delete=False
        ) as tmpfile:
            script_path = tmpfile.name
            tmpfile.write(script)

        result = subprocess.run(
            [perl_path, "-Mstrict", "-Mwarnings", "-c", script_path],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as e:
        raise SetupFailed(f"Could not test the code with {perl_path}: {e}") from e
    finally:
        if script_path is not None:
            try:
                os.unlink(script_path)
            except OSError:
                logger.debug("Could not remove test file %s", script_path)

    diagnostics = _unexpected_stderr(result.stderr or "", script_path)
    if result.returncode != 0 or diagnostics:
        raise ValidationFailed(
            f"Tests failed (use --force to override): perl exited with status "
            f"{result.returncode}; stderr: {diagnostics or result.stderr.strip()}",
            stderr=result.stderr or "",
        )
    logger.debug("Tests succeeded")


def validate_code(code: str, force: bool = False, perl_path: str | None = None) -> str:
    """Return the stripped snippet, or raise ValidationFailed (SetupFailed when
    perl cannot be run at all).

    With ``force`` set nothing is checked.
    """
    code = code.strip()
    if force:
        return code

    check_code_shape(code)
    syntax_check(code, perl_path=perl_path)
    return code

"""Find helper executables (gdb, perl) on this machine."""

import logging
import os
import shutil

from perlwand.errors import BinaryNotFound

logger = logging.getLogger(__name__)

_FALLBACK_DIRS = ["/usr/bin", "/usr/local/bin", "/bin"]


def is_executable_file(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def check_paths_for_bin(*paths: str | None) -> str | None:
    """Return the first path that is an executable regular file."""
    for path in paths:
        if path and is_executable_file(path):
            return path
    return None


def _fallback_paths(name: str) -> list[str]:
    paths = [os.path.join(directory, name) for directory in _FALLBACK_DIRS]

    homebrew_root = os.getenv("HOMEBREW_ROOT")
    if homebrew_root:
        paths.append(os.path.join(homebrew_root, name))
        paths.append(os.path.join(homebrew_root, "bin", name))
    return paths


def get_path_for_bin(name: str, *extra: str | None) -> str:
    """Locate ``name``: PATH first, then ``extra`` overrides, then the usual
    install locations. Raises BinaryNotFound when nothing matches."""
    found = shutil.which(name)
    if found is None:
        found = check_paths_for_bin(*extra)
    if found is None:
        # Try *really hard* to find the executable
        found = check_paths_for_bin(*_fallback_paths(name))

    if found is None:
        raise BinaryNotFound(f"couldn't find a '{name}' executable.")

    logger.debug("Using %s at %s", name, found)
    return found


def find_gdb() -> str:
    return get_path_for_bin("gdb", os.getenv("GDB"))


def find_perl() -> str:
    return get_path_for_bin("perl")

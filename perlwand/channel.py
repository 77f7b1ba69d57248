"""The named pipe the target process writes its output into.

Wire format: newline-delimited text. Every line is opaque payload except the
one carrying the session sentinel, which marks the end of the output.
"""

import logging
import os
import select
import shutil
import sys
import tempfile
import threading
from collections.abc import Iterator

from perlwand.errors import SetupFailed
from perlwand.template import unique_timestamp

logger = logging.getLogger(__name__)

PIPE_NAME = "communication_pipe.fifo"
_READ_SIZE = 4096


def remove_tree(path: str) -> None:
    """Recursively delete ``path``. Never raises."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove staging directory '%s': %s", path, e)


def make_world_writable_dir(target_pid: int) -> str:
    """Create a private staging directory anyone can write into.

    The target may run as a different user than we do, so the directory is
    chmod 0777. Falls back to the directory holding this program when the
    system temp directory is unusable.
    """
    prefix = f"perlwand-{os.getpid()}-{target_pid}-{unique_timestamp()}-"
    try:
        directory = tempfile.mkdtemp(prefix=prefix)
    except OSError as e:
        fallback = os.path.dirname(os.path.abspath(sys.argv[0]))
        logger.debug("Temp dir unavailable (%s), falling back to %s", e, fallback)
        try:
            directory = tempfile.mkdtemp(prefix=prefix, dir=fallback)
        except OSError as e:
            raise SetupFailed(f"Could not create a staging directory: {e}") from e

    try:
        os.chmod(directory, 0o777)
    except OSError as e:
        remove_tree(directory)
        raise SetupFailed(f"Could not chmod temp directory '{directory}': {e}") from e
    return directory


def split_sentinel(line: str, sentinel: str) -> tuple[bool, str]:
    """Return (is_final, payload). Text before the sentinel on the final line
    is output the snippet printed without a trailing newline."""
    if sentinel in line:
        head, _, _ = line.partition(sentinel)
        return True, head
    return False, line


class ChannelReader:
    """Blocking line iterator over the read end of the pipe.

    Polls with ``select`` so ``stop()`` ends iteration even when the target
    never writes. Read errors are recorded on ``error`` rather than raised.
    """

    def __init__(self, fd: int, sentinel: str, poll_interval: float = 0.1):
        self.fd = fd
        self.sentinel = sentinel
        self.poll_interval = poll_interval
        self.error: OSError | None = None
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def lines(self) -> Iterator[str]:
        buffer = b""
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([self.fd], [], [], self.poll_interval)
                if not ready:
                    continue
                chunk = os.read(self.fd, _READ_SIZE)
            except BlockingIOError:
                continue
            except OSError as e:
                if not self._stop.is_set():
                    self.error = e
                return

            if not chunk:
                # End of stream: every writer has closed the pipe.
                if buffer:
                    yield buffer.decode("utf-8", errors="replace")
                return

            buffer += chunk
            while b"\n" in buffer:
                raw, buffer = buffer.split(b"\n", 1)
                line = raw.decode("utf-8", errors="replace")
                yield line
                if self.sentinel in line:
                    return


class CommunicationChannel:
    """Staging directory plus the FIFO inside it. Owned by one session."""

    def __init__(self, directory: str, pipe_path: str, fd: int):
        self.directory = directory
        self.pipe_path = pipe_path
        self.fd: int | None = fd

    @classmethod
    def provision(cls, target_pid: int) -> "CommunicationChannel":
        directory = make_world_writable_dir(target_pid)
        pipe_path = os.path.join(directory, PIPE_NAME)
        try:
            os.mkfifo(pipe_path, 0o777)
            # mkfifo honours the umask
            os.chmod(pipe_path, 0o777)
            # Opened read/write so open() does not wait for the target to
            # connect as a writer. We never write to it.
            fd = os.open(pipe_path, os.O_RDWR | os.O_NONBLOCK)
        except OSError as e:
            remove_tree(directory)
            raise SetupFailed(
                f"Could not create communication pipe '{pipe_path}': {e}"
            ) from e

        logger.debug("Communication pipe ready at %s", pipe_path)
        return cls(directory, pipe_path, fd)

    def reader(self, sentinel: str) -> ChannelReader:
        if self.fd is None:
            raise SetupFailed("communication pipe is already closed")
        return ChannelReader(self.fd, sentinel)

    def close(self) -> None:
        if self.fd is not None:
            try:
                os.close(self.fd)
            except OSError:
                pass
            self.fd = None

    def destroy(self) -> None:
        """Close the read end and remove the directory. Safe to call twice."""
        self.close()
        remove_tree(self.directory)

"""
Child process and signal helpers for the setup steps.
"""

import signal
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

INTERRUPTED_EXIT_CODE = 130


class SetupError(RuntimeError):
    """Raised when the setup cannot continue."""


class SetupCancelled(Exception):
    """Raised when the user interrupts the setup."""


def was_interrupted(returncode: int) -> bool:
    """Return True if a child exit status means it was interrupted."""
    return returncode in (INTERRUPTED_EXIT_CODE, -signal.SIGINT, -signal.SIGTERM)


def run(
    args: Sequence[str],
    cwd: Optional[Path] = None,
    input: Optional[str] = None,
    stderr: Optional[int] = subprocess.PIPE,
) -> subprocess.CompletedProcess:
    """
    Run a command to completion and return the finished process.

    Stdout is always captured. Stderr is captured unless the caller passes
    ``stderr=None`` to leave it attached to the terminal.

    Args:
        args: Command and arguments
        cwd: Working directory for the command
        input: Text sent to the command's stdin
        stderr: Where the command's stderr goes

    Returns:
        The completed process. A non-zero exit status is left to the caller.

    Raises:
        SetupCancelled: If we were interrupted while waiting, or the child
            exited with an interrupt status
    """
    try:
        result = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            input=input,
            stdout=subprocess.PIPE,
            stderr=stderr,
            text=True,
            check=False,
        )
    except KeyboardInterrupt as e:
        raise SetupCancelled(f"Interrupted while running {args[0]}") from e
    if was_interrupted(result.returncode):
        raise SetupCancelled(f"{args[0]} was interrupted")
    return result


def _defer_interrupt(signum: int, frame: Any) -> None:
    pass


@contextmanager
def child_handles_interrupts() -> Iterator[None]:
    """
    Leave Ctrl+C to a foreground child process for the duration of the block.

    The terminal sends SIGINT to the whole process group, so the child sees it
    either way. Our handler becomes a no-op so that we don't tear down while the
    child is still restoring the terminal. The child reports the interrupt through
    its exit status. Handlers are reset to default across exec, so the child
    keeps its own Ctrl+C handling.
    """
    previous = signal.signal(signal.SIGINT, _defer_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)


def _raise_cancelled(signum: int, frame: Any) -> None:
    raise SetupCancelled(f"Received signal {signum}")


def install_termination_handler() -> None:
    """Treat SIGTERM like Ctrl+C: unwind and exit as cancelled."""
    signal.signal(signal.SIGTERM, _raise_cancelled)

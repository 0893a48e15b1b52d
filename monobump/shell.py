"""Shell and terminal utilities.

Provides a thin wrapper around git subprocess calls, plus the output
helpers the CLI uses to print section headers and fatal errors.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import NoReturn


def git(*args: str, cwd: Path | None = None, check: bool = True) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "status", "--short").
        cwd: Directory to run in (defaults to the process cwd).
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., tag lookup).

    Returns:
        Stdout from the git command with trailing whitespace removed.

    Raises:
        subprocess.CalledProcessError: On non-zero exit when ``check``.
        FileNotFoundError: If git is not installed.
    """
    result = subprocess.run(
        ["git", *args], capture_output=True, text=True, check=check, cwd=cwd
    )
    return result.stdout.rstrip()


def step(msg: str) -> None:
    """Print a visually distinct step header to stderr.

    Used to separate major phases of a command in terminal output, kept off
    stdout so JSON reports stay machine-readable.
    """
    print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}", file=sys.stderr)


def info(msg: str) -> None:
    print(f"  {msg}", file=sys.stderr)


def fatal(msg: str, code: int = 1) -> NoReturn:
    """Print an error message and exit with ``code``.

    Use for unrecoverable errors that should halt the command.
    """
    print(f"ERROR: {msg}", file=sys.stderr)
    sys.exit(code)

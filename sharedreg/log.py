"""Console output for sharedreg.

Two audiences read this output.  Someone attaching a cluster wants to
see which registry steps ran and which were skipped with a warning;
someone debugging a half-created registry also wants every engine
command, including the ``ps``/``inspect`` lookups that run on each
invocation.  Those lookups only show up with ``-v`` (:func:`set_verbose`).
Commands that change state are always echoed.

Colors are used per stream, so warnings stay colored on a terminal even
when stdout is piped.
"""

from __future__ import annotations

import shlex
import sys
from typing import TextIO

_COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "cyan": "\033[36m",
}

# None means "decide per stream"
_use_color: bool | None = None
_verbose = False


def _color_enabled(stream: TextIO | None = None) -> bool:
    if _use_color is not None:
        return _use_color
    stream = stream if stream is not None else sys.stdout
    return hasattr(stream, "isatty") and stream.isatty()


def set_color(enabled: bool | None) -> None:
    """Force colors on or off.  ``None`` restores terminal detection."""
    global _use_color
    _use_color = enabled


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    return _verbose


def _c(name: str, stream: TextIO | None = None) -> str:
    if _color_enabled(stream):
        return _COLORS.get(name, "")
    return ""


def _emit(stream: TextIO, tag: str, color: str, message: str) -> None:
    stream.write(f"{_c(color, stream)}[{tag}]{_c('reset', stream)} {message}\n")
    stream.flush()


# ── Public API ────────────────────────────────────────────────────────

def step(message: str) -> None:
    """Print a step header, e.g. ``=== Creating registry as registry.localhost:5000 ===``."""
    out = sys.stdout
    out.write(f"{_c('bold', out)}{_c('cyan', out)}=== {message} ==={_c('reset', out)}\n")
    out.flush()


def command(argv: list[str], *, quiet: bool = False) -> None:
    """Echo an engine command line, shell-quoted.

    *quiet* commands are read-only lookups and are shown in verbose mode only.
    """
    if quiet and not _verbose:
        return
    out = sys.stdout
    out.write(f"{_c('dim', out)}${_c('reset', out)} {shlex.join(argv)}\n")
    out.flush()


def debug(message: str) -> None:
    if _verbose:
        _emit(sys.stdout, "debug", "dim", message)


def info(message: str) -> None:
    _emit(sys.stdout, "info", "blue", message)


def warn(message: str) -> None:
    _emit(sys.stderr, "warn", "yellow", message)


def error(message: str) -> None:
    _emit(sys.stderr, "error", "red", message)


def success(message: str) -> None:
    _emit(sys.stdout, "ok", "green", message)

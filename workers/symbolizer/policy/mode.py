"""
Mode — parse the colon-separated symbolization directive.

One pass over the tokens produces a frozen ``SymbolizeMode``; every
implication between tokens is applied here and nowhere else:

  - no source token (``local`` / ``fastlocal`` / ``remote``) → both sources;
  - ``demangle=<level>`` → ``force`` for every stage that runs;
  - ``none`` / ``no`` → nothing runs.

Token order does not matter.  Unknown tokens raise ``ModeError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional


class SymbolizeError(Exception):
    """Base class for symbolizer errors surfaced to the caller."""


class ModeError(SymbolizeError, ValueError):
    """Unrecognized mode token or malformed demangle level."""


@unique
class DemangleLevel(str, Enum):
    NONE = "none"
    TEMPLATES = "templates"
    FULL = "full"


_DEMANGLE_PREFIX = "demangle="

MODE_USAGE = (
    "expecting [local|fastlocal|remote|none][:force][:demangle=[none|templates|full|default]]"
)


@dataclass(frozen=True)
class SymbolizeMode:
    """Which stages run and with which flags."""

    local: bool = True
    fast: bool = False
    remote: bool = True
    force: bool = False
    demangle: Optional[DemangleLevel] = None
    enabled: bool = True

    @property
    def run_demangle(self) -> bool:
        return self.enabled and self.demangle is not None


def _parse_demangle(token: str, mode: str) -> Optional[DemangleLevel]:
    level = token[len(_DEMANGLE_PREFIX):]
    if level == "default":
        return None
    try:
        return DemangleLevel(level)
    except ValueError:
        raise ModeError(
            f"unrecognized demangle level {level!r} in symbolization mode {mode!r}; {MODE_USAGE}"
        ) from None


def parse_mode(mode: Optional[str]) -> SymbolizeMode:
    """
    Parse *mode* into a ``SymbolizeMode``.

    Raises
    ------
    ModeError
        On any token outside the grammar.
    """
    local = fast = remote = force = False
    disabled = False
    demangle: Optional[DemangleLevel] = None

    for token in (mode or "").lower().split(":"):
        token = token.strip()
        if not token:
            continue
        if token in ("none", "no"):
            disabled = True
        elif token == "local":
            local = True
        elif token == "fastlocal":
            local = fast = True
        elif token == "remote":
            remote = True
        elif token == "force":
            force = True
        elif token.startswith(_DEMANGLE_PREFIX):
            demangle = _parse_demangle(token, mode or "")
        else:
            raise ModeError(
                f"unrecognized symbolization option {token!r} in {mode!r}; {MODE_USAGE}"
            )

    if not local and not remote:
        local = remote = True

    # Names are rewritten from fresh resolutions only.
    if demangle is not None:
        force = True

    return SymbolizeMode(
        local=local,
        fast=fast,
        remote=remote,
        force=force,
        demangle=demangle,
        enabled=not disabled,
    )

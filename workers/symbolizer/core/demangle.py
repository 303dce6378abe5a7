"""
Demangle — turn raw symbol names into display names.

Two layers:
  1. NameDemangler    — one raw symbol → display name at a detail level.
  2. DemangleSelector — apply the NameDemangler to every function of a
                        profile, honouring the force flag.

Classification (first match wins):
  - Go symbols (``example.com/pkg.(*T).M``, ``pkg.F[...]``): unchanged.
  - Java symbols (``java.lang.Float.<init>``): unchanged.
  - ``__Z…``: platform underscore dropped, then decoded as ``_Z…``.
  - ``_Z…``: decoded with the injected decoder.
  - other ``__…``: reserved identifiers, unchanged.
  - anything else: treated as already readable and simplified.

Decoding is delegated to a ``Decoder``: ``(raw) -> (decoded, ok)``.
The default runs ``c++filt``.  A failed decode falls back to
simplifying the raw name; it is never an error.
"""
from __future__ import annotations

import logging
import re
import subprocess
from typing import Callable, Dict, Iterable, Optional, Tuple

from symbolizer.config import settings
from symbolizer.core.model import Profile
from symbolizer.policy.mode import DemangleLevel

logger = logging.getLogger(__name__)

Decoder = Callable[[str], Tuple[str, bool]]

_ITANIUM_MARKER = "_Z"

_GO_TPARAMS = r"\[(?:\.\.\.|[\w.]+(?:,[\w.]+)*)\]"
_GO_SYMBOL_RE = re.compile(
    r"^(?:[\w.\-~]+/)*[\w.\-~]+"                 # import path and package
    r"(?:\.\(\*?\w+(?:" + _GO_TPARAMS + r")?\))?"  # optional (*Recv[...])
    r"\.\w+(?:" + _GO_TPARAMS + r")?$"             # func or method
)
_JAVA_SYMBOL_RE = re.compile(
    r"^(?:[A-Za-z_$][\w$]*\.)+(?:<init>|<clinit>|[A-Za-z_$][\w$]*)$"
)

_CLONE_SUFFIX_RE = re.compile(r"(?:\s*\[clone [^\]]*\])+$")
_TRAILING_QUALIFIERS_RE = re.compile(r"(?:\s*(?:const|volatile|noexcept|&&|&))+$")
_OPERATOR_RE = re.compile(r"\boperator\b")


# ── classification ───────────────────────────────────────────────────────────

def is_go_symbol(name: str) -> bool:
    if not _GO_SYMBOL_RE.match(name):
        return False
    # Dotted names without a path, receiver or type parameters read as Java.
    return "/" in name or ".(" in name or "[" in name


def is_java_symbol(name: str) -> bool:
    # "_ZN3foo3barEi.cold" is a split C++ function, not a Java path.
    if name.startswith((_ITANIUM_MARKER, "_" + _ITANIUM_MARKER)):
        return False
    return bool(_JAVA_SYMBOL_RE.match(name))


# ── simplification ───────────────────────────────────────────────────────────

def remove_matching(name: str, start: str, end: str) -> str:
    """Remove every balanced ``start…end`` group; give up on a stray *end*."""
    nesting = 0
    first = 0
    i = 0
    while i < len(name):
        ch = name[i]
        if ch == start:
            nesting += 1
            if nesting == 1:
                first = i
        elif ch == end:
            nesting -= 1
            if nesting < 0:
                return name
            if nesting == 0:
                name = name[:first] + name[i + 1:]
                i = first
                continue
        i += 1
    return name


def strip_parameters(name: str) -> str:
    """
    Drop a trailing parameter list (outermost balanced parentheses),
    together with any ``const``/ref qualifiers and ``[clone …]`` suffixes
    after it.  ``foo::bar(int)`` → ``foo::bar``.
    """
    s = _CLONE_SUFFIX_RE.sub("", name)
    m = _TRAILING_QUALIFIERS_RE.search(s)
    if m and s[:m.start()].endswith(")"):
        s = s[:m.start()]
    if not s.endswith(")"):
        return s

    depth = 0
    for i in range(len(s) - 1, -1, -1):
        if s[i] == ")":
            depth += 1
        elif s[i] == "(":
            depth -= 1
            if depth == 0:
                head = s[:i]
                # "operator()" — the parentheses are the operator token.
                if not head or head.rstrip().endswith("operator"):
                    return s
                return head.rstrip()
    return s


def strip_return_type(name: str) -> str:
    """Drop anything before the qualified name: ``int foo::baz<double>`` → ``foo::baz<double>``."""
    op = _OPERATOR_RE.search(name)
    head = name[:op.start()] if op else name
    depth = 0
    cut = -1
    for i, ch in enumerate(head):
        if ch in "<([":
            depth += 1
        elif ch in ">)]":
            depth -= 1
        elif ch == " " and depth == 0:
            cut = i
    return name[cut + 1:]


def simplify(name: str, level: DemangleLevel) -> str:
    """Reduce a readable C++ signature to what *level* displays."""
    if level == DemangleLevel.FULL:
        return name
    name = strip_return_type(strip_parameters(name))
    if level == DemangleLevel.NONE:
        name = remove_matching(name, "<", ">")
    return name


# ── decoder ──────────────────────────────────────────────────────────────────

class CxxFiltDecoder:
    """
    Decode Itanium-mangled names with ``c++filt``.

    Results are cached per instance.  ``prefetch`` decodes many names
    with one process.
    """

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None):
        self.executable = executable or settings.SYMBOLIZER_CXXFILT
        self.timeout = settings.SYMBOLIZER_CXXFILT_TIMEOUT if timeout is None else timeout
        self._cache: Dict[str, str] = {}
        self._available = True

    def _run(self, stdin: str) -> Optional[str]:
        if not self._available:
            return None
        try:
            proc = subprocess.run(
                [self.executable],
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("%s unavailable, names will not be decoded: %s", self.executable, e)
            self._available = False
            return None
        if proc.returncode != 0:
            logger.debug("%s exited %d: %s", self.executable, proc.returncode, proc.stderr.strip())
            return None
        return proc.stdout

    def prefetch(self, symbols: Iterable[str]) -> None:
        todo = sorted({s for s in symbols if s not in self._cache and "\n" not in s})
        if not todo:
            return
        out = self._run("\n".join(todo) + "\n")
        if out is None:
            return
        decoded = out.splitlines()
        if len(decoded) != len(todo):
            logger.debug("c++filt returned %d lines for %d symbols", len(decoded), len(todo))
            return
        self._cache.update(zip(todo, decoded))

    def __call__(self, symbol: str) -> Tuple[str, bool]:
        if symbol not in self._cache:
            self.prefetch([symbol])
        decoded = self._cache.get(symbol, symbol)
        return decoded, decoded != symbol


# ── demangler ────────────────────────────────────────────────────────────────

class NameDemangler:
    """Raw symbol → display name."""

    def __init__(self, decoder: Optional[Decoder] = None):
        self.decoder = decoder if decoder is not None else CxxFiltDecoder()

    def demangle(self, symbol: str, level: DemangleLevel) -> str:
        if is_go_symbol(symbol) or is_java_symbol(symbol):
            return symbol

        if symbol.startswith("_" + _ITANIUM_MARKER):
            candidate = symbol[1:]
        elif symbol.startswith(_ITANIUM_MARKER):
            candidate = symbol
        elif symbol.startswith("__"):
            return symbol
        else:
            return simplify(symbol, level)

        decoded, ok = self.decoder(candidate)
        if ok:
            return simplify(decoded, level)
        return simplify(candidate, level)

    def prefetch(self, symbols: Iterable[str]) -> None:
        """Let a batching decoder see every mangled candidate up front."""
        prefetch = getattr(self.decoder, "prefetch", None)
        if prefetch is None:
            return
        candidates = []
        for s in symbols:
            if s.startswith("_" + _ITANIUM_MARKER):
                candidates.append(s[1:])
            elif s.startswith(_ITANIUM_MARKER):
                candidates.append(s)
        prefetch(candidates)


class DemangleSelector:
    """Set ``Function.name`` from ``Function.system_name`` for a whole profile."""

    def __init__(self, demangler: Optional[NameDemangler] = None):
        self.demangler = demangler if demangler is not None else NameDemangler()

    def run(self, profile: Profile, force: bool, level: DemangleLevel) -> int:
        """
        Rename functions; returns how many names changed.

        Without *force*, functions whose name already differs from the
        raw name are left alone.
        """
        targets = [
            fn for fn in profile.functions
            if fn.system_name and (force or not fn.name or fn.name == fn.system_name)
        ]
        self.demangler.prefetch(fn.system_name for fn in targets)

        changed = 0
        for fn in targets:
            name = self.demangler.demangle(fn.system_name, level)
            if name != fn.name:
                fn.name = name
                changed += 1
        logger.debug("demangle=%s: %d/%d names changed", level.value, changed, len(targets))
        return changed

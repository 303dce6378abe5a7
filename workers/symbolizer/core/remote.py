"""
Remote symbolizer — resolve addresses through a symbol service.

For each mapping with locations needing resolution, the caller's
mapping sources name the profile URL(s) the mapping came from.  The
symbol endpoint is derived from the first usable URL, one lookup is
issued with every address of the mapping, and each ``0x<addr> <name>``
line of the answer becomes a single-frame ``Line``.

The lookup itself is injected: ``lookup(symbol_url, query) -> bytes``.
Retries and timeouts are its business.  A failing lookup is reported
and only affects its own mapping.
"""
from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse, urlunparse

import httpx

from symbolizer.config import settings
from symbolizer.core.diagnostics import DiagnosticSink, LoggingSink
from symbolizer.core.local import needs_resolution
from symbolizer.core.model import FunctionTable, Line, Location, Mapping, Profile

logger = logging.getLogger(__name__)

SymbolLookup = Callable[[str, str], bytes]

_SYMBOL_LINE_RE = re.compile(r"^(0x[0-9a-fA-F]+)\s+(.*?)\s*$")
_GPERFTOOLS_SUFFIXES = ("/pprof/heap", "/pprof/growth", "/pprof/profile", "/pprof/pmuprofile", "/pprof/contention")
_MAX_ADDRESS = (1 << 64) - 1


@dataclass(frozen=True)
class MappingSource:
    """A profile URL a mapping was fetched from, and the mapping start it reported."""

    source: str
    start: int = 0


MappingSources = Dict[str, List[MappingSource]]


@dataclass
class RemoteResult:
    """What one remote pass did."""

    mappings_resolved: int = 0
    locations_resolved: int = 0
    failed: List[str] = field(default_factory=list)


def symbol_url(source: str) -> str:
    """
    Symbol endpoint for a profile URL, or "" if *source* is not a URL.

    ``/debug/pprof/<x>`` and gperftools paths map to the sibling
    ``symbol`` handler; anything else to ``/symbolz`` on the same host.
    """
    parsed = urlparse(source)
    if not parsed.netloc:
        return ""
    path = parsed.path
    if "/debug/pprof/" in path or path.endswith(_GPERFTOOLS_SUFFIXES):
        path = posixpath.normpath(posixpath.join(path, "..", "symbol"))
    else:
        path = "/symbolz"
    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def _adjust(address: int, delta: int) -> int:
    adjusted = address + delta
    if adjusted < 0 or adjusted > _MAX_ADDRESS:
        raise ValueError(f"cannot adjust address {address:#x} by {delta}, it would overflow")
    return adjusted


def parse_symbols(body: bytes) -> Dict[int, str]:
    """Parse ``0x<addr> <name>`` lines; other lines are ignored."""
    symbols: Dict[int, str] = {}
    for raw in body.decode("utf-8", errors="replace").splitlines():
        m = _SYMBOL_LINE_RE.match(raw.strip())
        if m and m.group(2):
            symbols[int(m.group(1), 16)] = m.group(2)
    return symbols


class HttpSymbolLookup:
    """Default lookup: POST the address query to the symbol endpoint."""

    def __init__(self, timeout: Optional[float] = None, client: Optional[httpx.Client] = None):
        self.timeout = settings.SYMBOLIZER_REMOTE_TIMEOUT if timeout is None else timeout
        self._client = client

    def __call__(self, url: str, query: str) -> bytes:
        if self._client is not None:
            resp = self._client.post(url, content=query.encode())
        else:
            resp = httpx.post(url, content=query.encode(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.content


class RemoteSymbolizer:
    """Populate ``Location.lines`` from a remote symbol service."""

    def __init__(
        self,
        lookup: Optional[SymbolLookup] = None,
        sink: Optional[DiagnosticSink] = None,
    ):
        self.lookup = lookup if lookup is not None else HttpSymbolLookup()
        self.sink = sink if sink is not None else LoggingSink()

    def run(
        self,
        profile: Profile,
        force: bool = False,
        sources: Optional[MappingSources] = None,
    ) -> RemoteResult:
        """Resolve every mapping of *profile* that has a usable source URL."""
        sources = sources or {}
        functions = FunctionTable(profile)
        by_mapping = profile.locations_by_mapping()
        result = RemoteResult()

        for m in profile.mappings:
            locs = [loc for loc in by_mapping.get(m.id, []) if needs_resolution(loc, force)]
            if not locs:
                continue
            for src in self._sources_for(m, sources):
                url = symbol_url(src.source)
                if not url:
                    continue
                try:
                    n = self._symbolize_mapping(url, src.start - m.start, locs, functions)
                except Exception as e:
                    self.sink.warn(f"Remote symbolization failed for {m.file or m.id} via {url}: {e}")
                    result.failed.append(m.file)
                else:
                    result.mappings_resolved += 1
                    result.locations_resolved += n
                break
        return result

    @staticmethod
    def _sources_for(m: Mapping, sources: MappingSources) -> Sequence[MappingSource]:
        found = list(sources.get(m.file, []))
        if m.build_id:
            found.extend(sources.get(m.build_id, []))
        return found

    def _symbolize_mapping(
        self,
        url: str,
        delta: int,
        locs: List[Location],
        functions: FunctionTable,
    ) -> int:
        query = "+".join(f"{_adjust(loc.address, delta):#x}" for loc in locs)
        symbols = parse_symbols(self.lookup(url, query))

        # Validate every answer before touching the profile.
        lines: Dict[int, str] = {}
        for addr, name in symbols.items():
            lines[_adjust(addr, -delta)] = name

        resolved = 0
        for loc in locs:
            name = lines.get(loc.address)
            if name is None:
                continue
            loc.lines = [Line(function=functions.intern(name))]
            resolved += 1
        return resolved

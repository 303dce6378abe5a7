"""
Local symbolizer — resolve addresses from on-disk binaries.

Works mapping by mapping.  Every per-mapping problem (no file, file not
found, build-id mismatch) is reported to the diagnostic sink and the
mapping is skipped; the remaining mappings are still resolved and no
partial writes are made to a skipped mapping.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

from symbolizer.core.diagnostics import DiagnosticSink, LoggingSink
from symbolizer.core.elf_objtool import ElfObjTool, ObjFile, ObjTool
from symbolizer.core.model import FunctionTable, Line, Location, Mapping, Profile

logger = logging.getLogger(__name__)

MISSING_BINARIES_HINT = (
    "Some binary filenames not available. Symbolization may be incomplete.\n"
    "Try setting SYMBOLIZER_BINARY_PATH to the search path for local binaries."
)


@dataclass
class LocalResult:
    """What one local pass did."""

    mappings_resolved: int = 0
    locations_resolved: int = 0
    skipped: List[str] = field(default_factory=list)
    missing_binaries: bool = False


def _is_url(file: str) -> bool:
    parsed = urlparse(file)
    return bool(parsed.scheme) and "http" in parsed.scheme.lower() and bool(parsed.netloc)


def _display_name(m: Mapping) -> str:
    name = os.path.basename(m.file)
    if m.build_id:
        name += f" (build ID {m.build_id})"
    return name


def needs_resolution(loc: Location, force: bool) -> bool:
    """A location is resolved when forced or when it has no frames yet."""
    if loc.address == 0 or loc.mapping is None:
        return False
    if not loc.mapping.contains(loc.address):
        logger.debug(
            "location %d: address %#x outside mapping %d", loc.id, loc.address, loc.mapping.id
        )
        return False
    return force or not loc.lines


class LocalSymbolizer:
    """Populate ``Location.lines`` using an object tool."""

    def __init__(
        self,
        obj_tool: Optional[ObjTool] = None,
        sink: Optional[DiagnosticSink] = None,
    ):
        self.obj_tool = obj_tool if obj_tool is not None else ElfObjTool()
        self.sink = sink if sink is not None else LoggingSink()

    def _tool(self, fast: bool) -> ObjTool:
        if fast and isinstance(self.obj_tool, ElfObjTool):
            return self.obj_tool.with_fast_symbolization()
        return self.obj_tool

    def run(self, profile: Profile, fast: bool = False, force: bool = False) -> LocalResult:
        """Resolve every mapping of *profile* that has locations needing it."""
        obj_tool = self._tool(fast)
        functions = FunctionTable(profile)
        by_mapping = profile.locations_by_mapping()
        result = LocalResult()

        for midx, m in enumerate(profile.mappings):
            locs = [loc for loc in by_mapping.get(m.id, []) if needs_resolution(loc, force)]
            if not locs:
                continue

            if not m.file:
                if midx == 0:
                    self.sink.warn("Main binary filename not available.")
                else:
                    result.missing_binaries = True
                result.skipped.append(f"mapping {m.id}")
                continue

            if m.unsymbolizable() or _is_url(m.file):
                logger.debug("skipping pseudo-mapping %s", m.file)
                result.skipped.append(m.file)
                continue

            name = _display_name(m)
            try:
                obj = obj_tool.open(m.file, m.start, m.limit, m.offset, m.kernel_relocation_symbol)
            except Exception as e:
                self.sink.warn(f"Local symbolization failed for {name}: {e}")
                result.missing_binaries = True
                result.skipped.append(m.file)
                continue

            try:
                file_build_id = obj.build_id()
                if m.build_id and file_build_id and file_build_id != m.build_id:
                    self.sink.warn(f"Local symbolization failed for {name}: build ID mismatch")
                    result.skipped.append(m.file)
                    continue
                n = self._symbolize_mapping(locs, obj, functions)
            finally:
                obj.close()

            result.mappings_resolved += 1
            result.locations_resolved += n
            logger.debug("%s: resolved %d/%d locations", name, n, len(locs))

        if result.missing_binaries:
            self.sink.warn(MISSING_BINARIES_HINT)
        return result

    def _symbolize_mapping(
        self,
        locs: List[Location],
        obj: ObjFile,
        functions: FunctionTable,
    ) -> int:
        resolved = 0
        for loc in locs:
            try:
                frames = obj.source_line(obj.obj_addr(loc.address))
            except Exception as e:
                logger.debug("location %d (%#x): %s", loc.id, loc.address, e)
                continue
            if not frames:
                continue
            loc.lines = [
                Line(
                    function=functions.intern(fr.func, fr.file),
                    line=fr.line,
                    column=fr.column,
                )
                for fr in frames
            ]
            resolved += 1
        return resolved

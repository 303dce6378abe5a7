"""
DWARF frames — resolve one address to its inlined call chain.

Responsibilities:
  - Locate the Compilation Unit covering an address (.debug_aranges,
    falling back to CU top-DIE ranges).
  - Walk the DIE tree to the DW_TAG_subprogram containing the address
    and every DW_TAG_inlined_subroutine nested inside it.
  - Replay the CU line program to find (file, line, column) for the
    address; outer frames take their position from the call site
    (DW_AT_call_file / DW_AT_call_line / DW_AT_call_column) of the
    frame they inlined.
  - Normalize code ranges into [low, high) segments from
    DW_AT_low_pc / DW_AT_high_pc or DW_AT_ranges.

Frames are returned innermost first.
"""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Iterator, List, Optional, Tuple

from elftools.dwarf.compileunit import CompileUnit
from elftools.dwarf.die import DIE
from elftools.dwarf.dwarfinfo import DWARFInfo
from elftools.dwarf.lineprogram import LineProgram
from elftools.dwarf.ranges import BaseAddressEntry

logger = logging.getLogger(__name__)

_FRAME_TAGS = ("DW_TAG_subprogram", "DW_TAG_inlined_subroutine")

# DIEs that may enclose a function definition or an inlined call.
_SCOPE_TAGS = (
    "DW_TAG_namespace",
    "DW_TAG_class_type",
    "DW_TAG_structure_type",
    "DW_TAG_union_type",
    "DW_TAG_lexical_block",
    "DW_TAG_module",
)

_MAX_ORIGIN_DEPTH = 8


@dataclass(frozen=True)
class Frame:
    """One resolved frame: function plus source position."""

    func: str
    file: str = ""
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class AddressRange:
    """A half-open address range [low, high)."""
    low: int
    high: int


@dataclass(frozen=True)
class LineRow:
    """A single row from the line-number state machine."""
    address: int
    file_index: int
    line: int
    column: int
    end_sequence: bool


# ── attribute helpers ────────────────────────────────────────────────────────

def _decode(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


def _decode_attr(die: DIE, attr_name: str) -> Optional[str]:
    """Decode a string attribute from a DIE, returning None if absent."""
    if attr_name not in die.attributes:
        return None
    return _decode(die.attributes[attr_name].value)


def _int_attr(die: DIE, attr_name: str) -> int:
    if attr_name not in die.attributes:
        return 0
    return int(die.attributes[attr_name].value)


def _origins(die: DIE) -> Iterator[DIE]:
    """Yield *die* and the DIEs it refers to via abstract_origin / specification."""
    for _ in range(_MAX_ORIGIN_DEPTH):
        yield die
        for attr in ("DW_AT_abstract_origin", "DW_AT_specification"):
            if attr in die.attributes:
                die = die.get_DIE_from_attribute(attr)
                break
        else:
            return


def function_name(die: DIE) -> str:
    """Raw (linkage) name of a subprogram or inlined DIE, else its plain name."""
    for attr in ("DW_AT_linkage_name", "DW_AT_MIPS_linkage_name", "DW_AT_name"):
        for origin in _origins(die):
            name = _decode_attr(origin, attr)
            if name:
                return name
    return ""


# ── ranges ───────────────────────────────────────────────────────────────────

def normalize_ranges(die: DIE, cu: CompileUnit, dwarf: DWARFInfo) -> List[AddressRange]:
    """
    Compute the [low, high) address ranges of *die*.

    Handles three DWARF encodings:
      1. DW_AT_low_pc + DW_AT_high_pc  (address form — high is absolute)
      2. DW_AT_low_pc + DW_AT_high_pc  (offset form — high is size)
      3. DW_AT_ranges → .debug_ranges / .debug_rnglists section
    """
    attrs = die.attributes

    if "DW_AT_low_pc" in attrs and "DW_AT_high_pc" in attrs:
        low_pc = attrs["DW_AT_low_pc"].value
        high_attr = attrs["DW_AT_high_pc"]
        if high_attr.form == "DW_FORM_addr":
            high_pc = high_attr.value
        else:
            high_pc = low_pc + high_attr.value
        if high_pc > low_pc:
            return [AddressRange(low=low_pc, high=high_pc)]
        return []

    if "DW_AT_ranges" not in attrs:
        return []

    try:
        range_lists = dwarf.range_lists()
        if range_lists is None:
            return []
        entries = range_lists.get_range_list_at_offset(
            attrs["DW_AT_ranges"].value, cu=cu
        )
    except Exception as e:
        logger.debug("unreadable DW_AT_ranges at DIE %#x: %s", die.offset, e)
        return []

    top_die = cu.get_top_DIE()
    base = 0
    if "DW_AT_low_pc" in top_die.attributes:
        base = top_die.attributes["DW_AT_low_pc"].value

    result: List[AddressRange] = []
    for entry in entries:
        if isinstance(entry, BaseAddressEntry):
            base = entry.base_address
            continue
        if getattr(entry, "is_absolute", False):
            low, high = entry.begin_offset, entry.end_offset
        else:
            low, high = base + entry.begin_offset, base + entry.end_offset
        if high > low:
            result.append(AddressRange(low=low, high=high))
    return result


def _in_ranges(address: int, ranges: List[AddressRange]) -> bool:
    """Check whether *address* falls inside any of the [low, high) ranges."""
    return any(r.low <= address < r.high for r in ranges)


# ── line program ─────────────────────────────────────────────────────────────

def _build_line_table(line_program: LineProgram) -> List[LineRow]:
    """
    Replay the line-number state machine and collect all rows,
    sorted by address.  End-of-sequence rows are kept: they bound the
    last real row of each sequence.
    """
    rows: List[LineRow] = []
    for entry in line_program.get_entries():
        state = entry.state
        if state is None:
            continue
        rows.append(LineRow(
            address=state.address,
            file_index=state.file,
            line=state.line,
            column=state.column,
            end_sequence=bool(state.end_sequence),
        ))
    # A sequence that starts where another ends must win the lookup.
    rows.sort(key=lambda r: (r.address, not r.end_sequence))
    return rows


def _resolve_file(
    file_index: int,
    line_program: LineProgram,
    comp_dir: Optional[str],
) -> str:
    """
    Resolve a line-program file index to a path string.

    DWARF v4 uses 1-based file indices; DWARF v5 uses 0-based.
    """
    header = line_program.header
    version = header.get("version", 4)
    file_entries = header.get("file_entry", [])

    idx = file_index if version >= 5 else file_index - 1
    if idx < 0 or idx >= len(file_entries):
        return ""

    entry = file_entries[idx]
    name = _decode(entry.name)

    dir_index = entry.dir_index
    include_dirs = header.get("include_directory", [])

    dir_path = ""
    if include_dirs and (dir_index > 0 or version >= 5):
        adj = dir_index - 1 if version < 5 else dir_index
        if 0 <= adj < len(include_dirs):
            dir_path = _decode(include_dirs[adj])

    full = str(PurePosixPath(dir_path) / name) if dir_path else name

    if comp_dir and not PurePosixPath(full).is_absolute():
        full = str(PurePosixPath(comp_dir) / full)

    return full


# ── index ────────────────────────────────────────────────────────────────────

class _CUState:
    """Lazily built per-CU lookup state."""

    def __init__(self, cu: CompileUnit, dwarf: DWARFInfo):
        self.cu = cu
        top_die = cu.get_top_DIE()
        self.comp_dir = _decode_attr(top_die, "DW_AT_comp_dir")
        self.line_program = dwarf.line_program_for_CU(cu)
        self._rows: Optional[List[LineRow]] = None
        self._addrs: List[int] = []

    def rows(self) -> List[LineRow]:
        if self._rows is None:
            self._rows = _build_line_table(self.line_program) if self.line_program else []
            self._addrs = [r.address for r in self._rows]
        return self._rows

    def row_at(self, address: int) -> Optional[LineRow]:
        rows = self.rows()
        i = bisect.bisect_right(self._addrs, address) - 1
        if i < 0:
            return None
        row = rows[i]
        if row.end_sequence:
            return None
        return row

    def file_name(self, file_index: int) -> str:
        if self.line_program is None:
            return ""
        return _resolve_file(file_index, self.line_program, self.comp_dir)


class DwarfFrameIndex:
    """
    Address → frames lookup over one DWARFInfo.

    CU state is built on first use and kept for the lifetime of the
    index, which is owned by a single opened object file.
    """

    def __init__(self, dwarf: DWARFInfo):
        self._dwarf = dwarf
        self._cus: Dict[int, _CUState] = {}
        self._cu_ranges: Optional[List[Tuple[AddressRange, int]]] = None
        try:
            self._aranges = dwarf.get_aranges()
        except Exception as e:
            logger.debug("no usable .debug_aranges: %s", e)
            self._aranges = None

    def _state(self, cu: CompileUnit) -> _CUState:
        st = self._cus.get(cu.cu_offset)
        if st is None:
            st = _CUState(cu, self._dwarf)
            self._cus[cu.cu_offset] = st
        return st

    def _scan_cu_ranges(self) -> List[Tuple[AddressRange, int]]:
        if self._cu_ranges is None:
            self._cu_ranges = []
            for cu in self._dwarf.iter_CUs():
                for r in normalize_ranges(cu.get_top_DIE(), cu, self._dwarf):
                    self._cu_ranges.append((r, cu.cu_offset))
        return self._cu_ranges

    def _cu_for(self, address: int) -> Optional[_CUState]:
        offset = None
        if self._aranges is not None:
            offset = self._aranges.cu_offset_at_addr(address)
        if offset is None:
            for r, cu_offset in self._scan_cu_ranges():
                if r.low <= address < r.high:
                    offset = cu_offset
                    break
        if offset is None:
            return None
        cached = self._cus.get(offset)
        if cached is not None:
            return cached
        return self._state(self._dwarf.get_CU_at(offset))

    def _scope_chain(self, st: _CUState, address: int) -> List[DIE]:
        """Subprogram + nested inlined DIEs containing *address*, outermost first."""
        chain: List[DIE] = []

        def visit(die: DIE) -> bool:
            for child in die.iter_children():
                if child.tag in _FRAME_TAGS:
                    if _in_ranges(address, normalize_ranges(child, st.cu, self._dwarf)):
                        chain.append(child)
                        visit(child)
                        return True
                elif child.tag in _SCOPE_TAGS:
                    ranges = normalize_ranges(child, st.cu, self._dwarf)
                    if ranges and not _in_ranges(address, ranges):
                        continue
                    if visit(child):
                        return True
            return False

        visit(st.cu.get_top_DIE())
        return chain

    def frames(self, address: int) -> List[Frame]:
        """Frames for *address*, innermost first; empty if not covered."""
        st = self._cu_for(address)
        if st is None:
            return []
        chain = self._scope_chain(st, address)
        if not chain:
            return []

        row = st.row_at(address)
        if row is not None:
            file, line, column = st.file_name(row.file_index), row.line, row.column
        else:
            file, line, column = "", 0, 0

        frames: List[Frame] = []
        for die in reversed(chain):
            frames.append(Frame(func=function_name(die), file=file, line=line, column=column))
            if die.tag == "DW_TAG_inlined_subroutine":
                file = st.file_name(_int_attr(die, "DW_AT_call_file"))
                line = _int_attr(die, "DW_AT_call_line")
                column = _int_attr(die, "DW_AT_call_column")
        return frames

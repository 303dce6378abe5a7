"""
ELF object tool — open on-disk binaries and answer address queries.

Responsibilities:
  - Locate a mapping's binary, trying SYMBOLIZER_BINARY_PATH
    directories when the recorded path does not exist.
  - Read the GNU build-id from .note.gnu.build-id.
  - Translate profile addresses into the binary's own address space
    using the PT_LOAD segment that covers the mapping's file offset.
  - Resolve an address to frames: DWARF inline chains and line table
    in full mode, ELF symbol tables only in fast mode (or when the
    binary carries no DWARF).

``ObjTool`` / ``ObjFile`` are the collaborator protocols the local
symbolizer depends on; ``ElfObjTool`` is the default implementation.
"""
from __future__ import annotations

import bisect
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Protocol, Sequence, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from symbolizer.config import settings
from symbolizer.core.dwarf_frames import DwarfFrameIndex, Frame

logger = logging.getLogger(__name__)

_FUNC_SYMBOL_TYPES = ("STT_FUNC", "STT_GNU_IFUNC")
_PAGE_MASK = ~0xFFF


class ObjToolError(Exception):
    """The binary exists but cannot be used (not ELF, corrupt tables)."""


class ObjFile(Protocol):
    """An opened binary."""

    def build_id(self) -> str:
        ...

    def obj_addr(self, addr: int) -> int:
        ...

    def source_line(self, addr: int) -> List[Frame]:
        ...

    def close(self) -> None:
        ...


class ObjTool(Protocol):
    """Opens binaries for a mapping."""

    def open(
        self,
        file: str,
        start: int,
        limit: int,
        offset: int,
        relocation_symbol: str = "",
    ) -> ObjFile:
        ...


# ── build-id ─────────────────────────────────────────────────────────────────

def read_build_id(elffile: ELFFile) -> Optional[str]:
    """Read GNU build-id from .note.gnu.build-id section."""
    for section in elffile.iter_sections():
        if section.name == ".note.gnu.build-id":
            # The build-id is the desc field of the first NT_GNU_BUILD_ID note.
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    return note["n_desc"]
    return None


# ── symbol table ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _Symbol:
    start: int
    size: int
    name: str


def _read_symbols(elffile: ELFFile) -> List[_Symbol]:
    """Function symbols from .symtab and .dynsym, sorted by start address."""
    seen = set()
    symbols: List[_Symbol] = []
    for section_name in (".symtab", ".dynsym"):
        section = elffile.get_section_by_name(section_name)
        if section is None:
            continue
        for sym in section.iter_symbols():
            if sym["st_info"]["type"] not in _FUNC_SYMBOL_TYPES:
                continue
            if not sym.name or sym["st_value"] == 0:
                continue
            key = (sym["st_value"], sym.name)
            if key in seen:
                continue
            seen.add(key)
            symbols.append(_Symbol(start=sym["st_value"], size=sym["st_size"], name=sym.name))
    symbols.sort(key=lambda s: (s.start, s.name))
    return symbols


class _SymbolTable:
    def __init__(self, symbols: Sequence[_Symbol]):
        self._symbols = list(symbols)
        self._starts = [s.start for s in self._symbols]

    def __len__(self) -> int:
        return len(self._symbols)

    def find(self, name: str) -> Optional[_Symbol]:
        for s in self._symbols:
            if s.name == name:
                return s
        return None

    def lookup(self, addr: int) -> Optional[_Symbol]:
        i = bisect.bisect_right(self._starts, addr) - 1
        if i < 0:
            return None
        sym = self._symbols[i]
        if sym.size:
            return sym if addr < sym.start + sym.size else None
        # Unsized symbol: extends to the next one.
        if i + 1 < len(self._symbols) and addr >= self._symbols[i + 1].start:
            return None
        return sym


# ── opened binary ────────────────────────────────────────────────────────────

class ElfObjFile:
    """
    An opened ELF binary.

    The file handle stays open until ``close()`` because pyelftools
    reads DWARF data lazily.
    """

    def __init__(
        self,
        path: str,
        stream: BinaryIO,
        elffile: ELFFile,
        base: Tuple[int, int],
        symbols: _SymbolTable,
        build_id: str,
        fast: bool,
    ):
        self.path = path
        self._stream = stream
        self._elf = elffile
        self._base = base
        self._symbols = symbols
        self._build_id = build_id
        self._fast = fast
        self._dwarf: Optional[DwarfFrameIndex] = None

    def __enter__(self) -> "ElfObjFile":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def build_id(self) -> str:
        return self._build_id

    def obj_addr(self, addr: int) -> int:
        """Translate a profile address into the binary's virtual address."""
        runtime_origin, obj_origin = self._base
        return addr - runtime_origin + obj_origin

    def _dwarf_index(self) -> Optional[DwarfFrameIndex]:
        if self._dwarf is None and self._elf.has_dwarf_info():
            self._dwarf = DwarfFrameIndex(self._elf.get_dwarf_info())
        return self._dwarf

    def source_line(self, addr: int) -> List[Frame]:
        """Frames for binary address *addr*, innermost first."""
        if not self._fast:
            index = self._dwarf_index()
            if index is not None:
                frames = index.frames(addr)
                if frames:
                    return frames
        sym = self._symbols.lookup(addr)
        if sym is None:
            return []
        return [Frame(func=sym.name)]

    def close(self) -> None:
        self._stream.close()


# ── tool ─────────────────────────────────────────────────────────────────────

def _load_base(
    elffile: ELFFile,
    symbols: _SymbolTable,
    start: int,
    limit: int,
    offset: int,
    relocation_symbol: str,
) -> Tuple[int, int]:
    """
    Return (runtime_origin, obj_origin) such that
    ``obj_addr = addr - runtime_origin + obj_origin``.
    """
    if start == 0 and limit == 0:
        return (0, 0)

    e_type = elffile.header.e_type
    if e_type == "ET_EXEC":
        if relocation_symbol:
            sym = symbols.find(relocation_symbol)
            if sym is not None:
                return (start, sym.start)
        return (0, 0)

    for seg in elffile.iter_segments():
        if seg["p_type"] != "PT_LOAD":
            continue
        seg_start = seg["p_offset"] & _PAGE_MASK
        if seg_start <= offset < seg["p_offset"] + seg["p_filesz"]:
            return (start, offset - seg["p_offset"] + seg["p_vaddr"])

    if offset == 0:
        return (start, 0)
    raise ObjToolError(f"no loadable segment covers file offset {offset:#x}")


class ElfObjTool:
    """Default ``ObjTool``: reads binaries with pyelftools."""

    def __init__(self, search_dirs: Optional[Sequence[str]] = None, fast: bool = False):
        if search_dirs is None:
            search_dirs = settings.binary_search_dirs
        self.search_dirs = list(search_dirs)
        self.fast = fast

    def with_fast_symbolization(self, fast: bool = True) -> "ElfObjTool":
        """A copy of this tool that resolves names from symbol tables only."""
        return ElfObjTool(search_dirs=self.search_dirs, fast=fast)

    def locate(self, file: str) -> Optional[Path]:
        """Find *file* on disk, falling back to the binary search path."""
        candidates = [Path(file)]
        rel = file.lstrip("/")
        for d in self.search_dirs:
            candidates.append(Path(d) / rel)
            candidates.append(Path(d) / os.path.basename(file))
        for c in candidates:
            if c.is_file():
                return c
        return None

    def open(
        self,
        file: str,
        start: int,
        limit: int,
        offset: int,
        relocation_symbol: str = "",
    ) -> ElfObjFile:
        path = self.locate(file) if file else None
        if path is None:
            raise FileNotFoundError(f"unknown or non-existent file {file!r}")

        stream = open(path, "rb")
        try:
            elffile = ELFFile(stream)
            symbols = _SymbolTable(_read_symbols(elffile))
            base = _load_base(elffile, symbols, start, limit, offset, relocation_symbol)
            build_id = read_build_id(elffile) or ""
        except ELFError as e:
            stream.close()
            raise ObjToolError(f"{path}: not a readable ELF binary: {e}") from e
        except Exception:
            stream.close()
            raise

        logger.debug("opened %s (base %#x -> %#x, fast=%s)", path, base[0], base[1], self.fast)
        return ElfObjFile(str(path), stream, elffile, base, symbols, build_id, self.fast)

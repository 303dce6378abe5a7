"""
test_elf_objtool — reading real ELF binaries with pyelftools.

Uses a small C program compiled on the fly (see conftest.py).  Tests
are skipped when gcc is unavailable.

Tests verify:
  - The build-id note is read.
  - DWARF resolves a function address to its name, file and line.
  - Fast mode answers from the symbol table only.
  - An inlined call yields the inlined frame before its caller.
"""
import re

import pytest
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from symbolizer.core.diagnostics import CollectingSink
from symbolizer.core.elf_objtool import ElfObjTool, ObjToolError
from symbolizer.core.local import LocalSymbolizer
from symbolizer.core.model import Location, Mapping, Profile


def _symbol_address(binary, name):
    with open(binary, "rb") as f:
        elf = ELFFile(f)
        for section in elf.iter_sections():
            if not isinstance(section, SymbolTableSection):
                continue
            for sym in section.iter_symbols():
                if sym.name == name and sym["st_info"]["type"] == "STT_FUNC":
                    return sym["st_value"]
    raise AssertionError(f"symbol {name} not found")


def _inlined_address(binary):
    """Low PC of the first inlined subroutine in the binary."""
    with open(binary, "rb") as f:
        elf = ELFFile(f)
        for cu in elf.get_dwarf_info().iter_CUs():
            for die in cu.iter_DIEs():
                if die.tag == "DW_TAG_inlined_subroutine" and "DW_AT_low_pc" in die.attributes:
                    return die.attributes["DW_AT_low_pc"].value
    pytest.skip("compiler did not emit an inlined subroutine")


@pytest.fixture
def tool(inline_binary):
    return ElfObjTool(search_dirs=[])


class TestElfObjFile:
    def test_build_id(self, tool, inline_binary):
        with tool.open(str(inline_binary), 0, 0, 0) as obj:
            assert re.fullmatch(r"[0-9a-f]+", obj.build_id())

    def test_function_line(self, tool, inline_binary):
        addr = _symbol_address(inline_binary, "add")
        with tool.open(str(inline_binary), 0, 0, 0) as obj:
            frames = obj.source_line(obj.obj_addr(addr))
        assert frames
        assert frames[0].func == "add"
        assert frames[0].file.endswith(".c")
        assert frames[0].line > 0

    def test_fast_mode_symbol_table_only(self, inline_binary):
        addr = _symbol_address(inline_binary, "add")
        fast = ElfObjTool(search_dirs=[]).with_fast_symbolization()
        with fast.open(str(inline_binary), 0, 0, 0) as obj:
            frames = obj.source_line(addr)
        assert [f.func for f in frames] == ["add"]
        assert frames[0].line == 0
        assert frames[0].file == ""

    def test_inlined_frames(self, tool, inline_binary):
        addr = _inlined_address(inline_binary)
        with tool.open(str(inline_binary), 0, 0, 0) as obj:
            frames = obj.source_line(addr)
        assert len(frames) >= 2
        assert frames[0].func == "twice"
        assert frames[1].func == "compute"
        # The caller's line is the call site inside compute.
        assert frames[1].line > frames[0].line


class TestElfObjTool:
    def test_missing_file(self, tool, tmp_path):
        with pytest.raises(FileNotFoundError, match="unknown or non-existent file"):
            tool.open(str(tmp_path / "nope"), 0, 0, 0)

    def test_not_elf(self, tool, tmp_path):
        junk = tmp_path / "junk"
        junk.write_bytes(b"definitely not an ELF file" * 4)
        with pytest.raises(ObjToolError):
            tool.open(str(junk), 0, 0, 0)

    def test_search_dirs(self, inline_binary):
        tool = ElfObjTool(search_dirs=[str(inline_binary.parent)])
        assert tool.locate("/build/output/" + inline_binary.name) == inline_binary
        assert tool.locate("/build/output/missing") is None


class TestLocalWithElf:
    def test_profile_symbolized(self, tool, inline_binary):
        add = _symbol_address(inline_binary, "add")
        mapping = Mapping(id=1, file=str(inline_binary))
        profile = Profile(mappings=[mapping], locations=[Location(id=1, mapping=mapping, address=add)])
        sink = CollectingSink()

        result = LocalSymbolizer(tool, sink).run(profile)

        assert result.locations_resolved == 1
        fn = profile.locations[0].lines[0].function
        assert fn.name == fn.system_name == "add"
        assert fn.filename.endswith(".c")
        assert sink.messages == []

    def test_fast_profile_has_no_lines(self, tool, inline_binary):
        add = _symbol_address(inline_binary, "add")
        mapping = Mapping(id=1, file=str(inline_binary))
        profile = Profile(mappings=[mapping], locations=[Location(id=1, mapping=mapping, address=add)])

        LocalSymbolizer(tool, CollectingSink()).run(profile, fast=True)

        line = profile.locations[0].lines[0]
        assert line.function.name == "add"
        assert line.line == 0
        assert not profile.has_file_lines()

"""
Shared pytest fixtures for symbolizer tests.

Provides:
  - an in-memory profile with one mapping and five locations,
  - a mock object tool answering from a fixed address → frames table,
  - a table-driven stand-in for c++filt,
  - on-the-fly compilation of a small C program with gcc, producing a
    real ELF binary with DWARF and a build-id.  Tests using it are
    skipped when gcc is not available or does not produce ELF.
"""
import platform
import shutil
import subprocess
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from symbolizer.core.diagnostics import CollectingSink
from symbolizer.core.dwarf_frames import Frame
from symbolizer.core.model import Location, Mapping, Profile

MAPPING_FILE = "mapping"
BUILD_ID = "build-id"

# Innermost frame first; more than one frame means inlining.
MOCK_FRAMES: Dict[int, List[Frame]] = {
    0x1100: [Frame("fun11", "file11.src", 10, 1)],
    0x2200: [Frame("fun21", "file21.src", 20, 2), Frame("fun22", "file22.src", 20, 2)],
    0x3300: [
        Frame("fun31", "file31.src", 30, 3),
        Frame("fun32", "file32.src", 30, 3),
        Frame("fun33", "file33.src", 30, 3),
    ],
    0x4400: [
        Frame("fun41", "file41.src", 40, 4),
        Frame("fun42", "file42.src", 40, 4),
        Frame("fun43", "file43.src", 40, 4),
        Frame("fun44", "file44.src", 40, 4),
    ],
    0x4F00: [
        Frame("fun51", "file51.src", 50, 5),
        Frame("fun52", "file52.src", 50, 5),
        Frame("fun53", "file53.src", 50, 5),
        Frame("fun54", "file54.src", 50, 5),
        Frame("fun55", "file55.src", 50, 5),
    ],
}

# What c++filt prints for the mangled names used in the tests.
CXXFILT_TABLE: Dict[str, str] = {
    "_ZN3foo3barEi": "foo::bar(int)",
    "_ZdaPv": "operator delete[](void*)",
    "_Z3barPA5_i": "bar(int (*) [5])",
    "_Z3bazIdEiT_": "int baz<double>(double)",
    "_ZNK3foo3getEv": "foo::get() const",
    "_ZN3foo3barEi.cold": "foo::bar(int) [clone .cold]",
}


class MockObjFile:
    def __init__(self, frames: Dict[int, List[Frame]]):
        self.frames = frames
        self.closed = False

    def build_id(self) -> str:
        return BUILD_ID

    def obj_addr(self, addr: int) -> int:
        return addr

    def source_line(self, addr: int) -> List[Frame]:
        return list(self.frames.get(addr, []))

    def close(self) -> None:
        self.closed = True


class MockObjTool:
    """Knows exactly one binary, MAPPING_FILE."""

    def __init__(self, frames: Dict[int, List[Frame]] = MOCK_FRAMES):
        self.frames = frames
        self.opened: List[Tuple[str, int, int, int, str]] = []
        self.files: List[MockObjFile] = []

    def open(self, file, start, limit, offset, relocation_symbol=""):
        self.opened.append((file, start, limit, offset, relocation_symbol))
        if file != MAPPING_FILE:
            raise FileNotFoundError(f"unknown or non-existent file {file!r}")
        obj = MockObjFile(self.frames)
        self.files.append(obj)
        return obj


def table_decoder(symbol: str) -> Tuple[str, bool]:
    decoded = CXXFILT_TABLE.get(symbol)
    if decoded is None:
        return symbol, False
    return decoded, True


def make_profile() -> Profile:
    mapping = Mapping(id=1, start=0x1000, limit=0x5000, file=MAPPING_FILE, build_id=BUILD_ID)
    locations = [
        Location(id=i + 1, mapping=mapping, address=addr)
        for i, addr in enumerate(sorted(MOCK_FRAMES))
    ]
    return Profile(mappings=[mapping], locations=locations)


@pytest.fixture
def profile() -> Profile:
    """Unsymbolized profile: one mapping, five locations."""
    return make_profile()


@pytest.fixture
def obj_tool() -> MockObjTool:
    return MockObjTool()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def decoder():
    return table_decoder


# ── real binaries ─────────────────────────────────────────────────────────────

INLINE_C = textwrap.dedent("""\
    #include <stdio.h>

    static inline __attribute__((always_inline)) int twice(int x) {
        return x * 2;
    }

    int add(int a, int b) {
        int result = a + b;
        return result;
    }

    int compute(int n) {
        return twice(n) + 1;
    }

    int main(void) {
        int sum = add(3, 4);
        printf("sum=%d compute=%d\\n", sum, compute(sum));
        return 0;
    }
""")


def _gcc_produces_elf() -> bool:
    """Test if gcc produces ELF binaries (Linux/WSL) vs PE executables (Windows)."""
    if shutil.which("gcc") is None or platform.system() == "Windows":
        return False
    with tempfile.TemporaryDirectory() as tmpdir:
        test_c = Path(tmpdir) / "test.c"
        test_out = Path(tmpdir) / "test_out"
        test_c.write_text("int main() { return 0; }")
        try:
            subprocess.run(
                ["gcc", str(test_c), "-o", str(test_out)],
                check=True,
                capture_output=True,
                timeout=10,
            )
        except Exception:
            return False
        return test_out.exists() and test_out.read_bytes()[:4] == b"\x7fELF"


def _compile(source: str, output: Path, opt: str = "O0") -> Path:
    """Compile C source to an ELF binary with debug info and a build-id."""
    src_file = output.with_suffix(".c")
    src_file.write_text(source)
    cmd = [
        "gcc",
        f"-{opt}",
        "-g",
        "-std=c11",
        "-fno-omit-frame-pointer",
        "-Wl,--build-id",
        str(src_file),
        "-o", str(output),
    ]
    subprocess.run(cmd, check=True, capture_output=True, timeout=30)
    return output


@pytest.fixture(scope="session")
def gcc_ok():
    """Skip tests if gcc is not available or doesn't produce ELF binaries."""
    if not _gcc_produces_elf():
        pytest.skip("gcc producing ELF binaries is required for these tests")


@pytest.fixture(scope="session")
def inline_binary(tmp_path_factory, gcc_ok) -> Path:
    """INLINE_C compiled at -O0 with full debug info."""
    d = tmp_path_factory.mktemp("symbolizer_fixtures")
    return _compile(INLINE_C, d / "inline_prog", opt="O0")

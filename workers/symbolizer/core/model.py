"""
Profile model — the in-memory entities the symbolizer mutates.

Mappings, locations and functions are created by whatever parsed the
profile; symbolization only:
  - fills ``Location.lines`` (innermost frame first),
  - rewrites ``Function.name`` (never ``Function.system_name``),
  - appends to ``Profile.comments``.

Nothing is ever deleted.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple


# Pseudo-files that never denote an on-disk binary.
_UNSYMBOLIZABLE_PREFIXES = ("[", "linux-vdso", "/dev/dri/")


@dataclass(eq=False)
class Mapping:
    """A loaded binary region: address range plus binary identity."""

    id: int
    start: int = 0
    limit: int = 0
    offset: int = 0
    file: str = ""
    build_id: str = ""
    kernel_relocation_symbol: str = ""

    def unsymbolizable(self) -> bool:
        """True for pseudo-mappings such as ``[vdso]`` or ``//anon``."""
        return self.file.startswith(_UNSYMBOLIZABLE_PREFIXES) or self.file == "//anon"

    def contains(self, address: int) -> bool:
        """Whether *address* lies in ``[start, limit)``; a zero limit means unknown."""
        if self.limit == 0:
            return True
        return self.start <= address < self.limit


@dataclass(eq=False)
class Function:
    """A symbol.  ``system_name`` is the raw name as reported by the resolver."""

    id: int
    name: str = ""
    system_name: str = ""
    filename: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        """Dedup identity: raw name + filename."""
        return (self.system_name, self.filename)


@dataclass
class Line:
    """One frame of a location: function plus line and column."""

    function: Function
    line: int = 0
    column: int = 0


@dataclass(eq=False)
class Location:
    """A sampled instruction address and its resolved frames."""

    id: int
    mapping: Optional[Mapping] = None
    address: int = 0
    lines: List[Line] = field(default_factory=list)

    @property
    def symbolized(self) -> bool:
        return bool(self.lines)


@dataclass
class Profile:
    """Owner of all mappings, locations and functions, plus the audit comments."""

    mappings: List[Mapping] = field(default_factory=list)
    locations: List[Location] = field(default_factory=list)
    functions: List[Function] = field(default_factory=list)
    comments: List[str] = field(default_factory=list)

    # -- queries ---------------------------------------------------------------

    def has_functions(self) -> bool:
        """True if any location has a frame with a function name."""
        return any(
            ln.function.name for loc in self.locations for ln in loc.lines
        )

    def has_file_lines(self) -> bool:
        """True if any location has a frame with a filename and line number."""
        return any(
            ln.function.filename and ln.line
            for loc in self.locations
            for ln in loc.lines
        )

    def locations_by_mapping(self) -> Dict[int, List[Location]]:
        """Group locations by mapping id, preserving profile order."""
        groups: Dict[int, List[Location]] = {}
        for loc in self.locations:
            if loc.mapping is None:
                continue
            groups.setdefault(loc.mapping.id, []).append(loc)
        return groups

    def iter_lines(self) -> Iterator[Line]:
        for loc in self.locations:
            yield from loc.lines

    # -- mutation --------------------------------------------------------------

    def add_function(self, name: str, system_name: str, filename: str) -> Function:
        """Append a new function with the next free id."""
        fn = Function(
            id=len(self.functions) + 1,
            name=name,
            system_name=system_name,
            filename=filename,
        )
        self.functions.append(fn)
        return fn

    def copy(self) -> "Profile":
        """Deep copy; shared references between entities are preserved."""
        return copy.deepcopy(self)

    # -- dump ------------------------------------------------------------------

    def to_text(self) -> str:
        """
        Deterministic text dump of every entity.

        Two profiles with the same dump are indistinguishable to the
        symbolizer, so this is what "unchanged" is checked against.
        """
        out: List[str] = []
        out.append("Mappings")
        for m in self.mappings:
            out.append(
                f"{m.id}: {m.start:#x}/{m.limit:#x}/{m.offset:#x} "
                f"{m.file} {m.build_id}".rstrip()
            )
        out.append("Locations")
        for loc in self.locations:
            mid = loc.mapping.id if loc.mapping is not None else 0
            out.append(f"{loc.id}: {loc.address:#x} M={mid}")
            for ln in loc.lines:
                fn = ln.function
                out.append(
                    f"    {fn.id}: {fn.name} {fn.system_name} "
                    f"{fn.filename}:{ln.line}:{ln.column}"
                )
        out.append("Functions")
        for fn in self.functions:
            out.append(f"{fn.id}: {fn.name} {fn.system_name} {fn.filename}")
        out.append("Comments")
        out.extend(self.comments)
        return "\n".join(out) + "\n"

    def __str__(self) -> str:
        return self.to_text()


class FunctionTable:
    """
    Dedup table over a profile's functions, keyed by (raw name, filename).

    Seeded with the functions the profile already owns, so re-resolving
    a location reuses them instead of appending duplicates.
    """

    def __init__(self, profile: Profile):
        self._profile = profile
        self._by_key: Dict[Tuple[str, str], Function] = {}
        for fn in profile.functions:
            self._by_key.setdefault(fn.key, fn)

    def __len__(self) -> int:
        return len(self._by_key)

    def intern(self, system_name: str, filename: str = "") -> Function:
        """Return the function for this identity, creating it if needed."""
        fn = self._by_key.get((system_name, filename))
        if fn is None:
            fn = self._profile.add_function(system_name, system_name, filename)
            self._by_key[fn.key] = fn
        return fn

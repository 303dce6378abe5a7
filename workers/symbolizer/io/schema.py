"""
Schema — Pydantic model for the symbolization report.

Runtime contract fields (present in every report):
  package_name, symbolizer_version, schema_version.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from symbolizer import PACKAGE_NAME, SCHEMA_VERSION, SYMBOLIZER_VERSION


class ProfileCounts(BaseModel):
    """Resolution state of a profile at one point in time."""
    locations: int = 0
    symbolized_locations: int = 0
    functions: int = 0


class StageSummary(BaseModel):
    """One stage that ran."""
    stage: str                       # local | remote | demangle
    flags: List[str] = Field(default_factory=list)
    mappings_resolved: int = 0
    locations_resolved: int = 0
    names_changed: int = 0


class SymbolizeReport(BaseModel):
    """What one symbolization call did to a profile."""

    package_name: str = PACKAGE_NAME
    symbolizer_version: str = SYMBOLIZER_VERSION
    schema_version: str = SCHEMA_VERSION

    mode: str
    demangle: Optional[str] = None
    force: bool = False

    stages: List[StageSummary] = Field(default_factory=list)
    comments: List[str] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    before: ProfileCounts = Field(default_factory=ProfileCounts)
    after: ProfileCounts = Field(default_factory=ProfileCounts)

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
